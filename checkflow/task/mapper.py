"""Read mappers supported by the mapping workflow.

Each mapper is a fixed set of capabilities: its executable, the index files it
needs next to the reference, its default split size, the commands that split
and align reads, and the resources its jobs ask for.
"""

import re
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..engine.artifact import ArtifactStore, partial_path
from ..engine.errors import ConfigurationError

TECHNOLOGIES = {
    "SLX": "slx",
    "ILLUMINA": "slx",
    "454": "454",
    "LS454": "454",
}
MAPPER_ALIASES = {
    "bwa": "BWA",
    "bwa-mem2": "BWA_MEM2",
    "bwa_mem2": "BWA_MEM2",
    "ssaha": "SSAHA2",
    "ssaha2": "SSAHA2",
}


@dataclass(frozen=True)
class MapperSpec:
    exe: str
    technology: str
    index_suffixes: tuple[str, ...]
    split_reads: int
    version_command: str
    resources: Mapping[str, Mapping[str, int]] = field(default_factory=dict)


class Mapper(Enum):
    """Closed set of mappers and their capabilities."""

    BWA = MapperSpec(
        exe="bwa",
        technology="slx",
        index_suffixes=(".amb", ".ann", ".bwt", ".pac", ".sa"),
        split_reads=1000000,
        version_command='{exe} 2>&1 | grep -e "Version:"',
        resources={"map": {"memory_mb": 5000}, "merge": {"memory_mb": 2000}},
    )
    BWA_MEM2 = MapperSpec(
        exe="bwa-mem2",
        technology="slx",
        index_suffixes=(".0123", ".amb", ".ann", ".bwt.2bit.64", ".pac"),
        split_reads=2000000,
        version_command="{exe} version 2>&1 | tail -1",
        resources={
            "map": {"memory_mb": 16000, "n_cpu": 4},
            "merge": {"memory_mb": 2000},
        },
    )
    SSAHA2 = MapperSpec(
        exe="ssaha2",
        technology="454",
        index_suffixes=(".body", ".head", ".name", ".base", ".size"),
        split_reads=250000,
        version_command="{exe} -v 2>&1",
        resources={"map": {"memory_mb": 6900}, "merge": {"memory_mb": 2000}},
    )

    @property
    def exe(self) -> str:
        return self.value.exe

    @property
    def split_reads(self) -> int:
        return self.value.split_reads

    def index_paths(self, fa_path: str | Path) -> list[str]:
        return [f"{fa_path}{s}" for s in self.value.index_suffixes]

    def resource_hints(self, stage: str) -> dict[str, int]:
        return dict(self.value.resources.get(stage, {}))

    def version_args(self, executable: str | None = None) -> str:
        return self.value.version_command.format(exe=executable or self.exe)

    @staticmethod
    def parse_version(text: str) -> str | None:
        m = re.search(r"Version:\s*(\S+)", text) or re.search(
            r"(\d+(?:\.\d+)+[\w.-]*)", text
        )
        return m.group(1) if m else None

    def detect_version(self, executable: str | None = None) -> str:
        """Run the version command of the mapper and parse its output.

        Raises:
            ConfigurationError: If no version can be read
        """
        r = subprocess.run(
            self.version_args(executable),
            shell=True,
            executable="/bin/bash",
            capture_output=True,
            text=True,
            check=False,
        )
        version = self.parse_version(r.stdout + r.stderr)
        if not version:
            msg = f"version of {executable or self.exe} could not be determined"
            raise ConfigurationError(msg)
        return version

    def split_command(
        self,
        fq_paths: Sequence[str | Path],
        split_dir: str | Path,
        marker_path: str | Path,
        n_reads: int | None = None,
        gzip: str = "gzip",
    ) -> str:
        """Build the command splitting reads into numbered gzipped chunks.

        Files are named ``<split>.<read>.fastq.gz`` where ``split`` is a
        zero-padded index and ``read`` the 1-based position of the input. The
        number of splits is written to the marker once every chunk exists.
        """
        n_lines = 4 * int(n_reads or self.split_reads)
        d = shlex.quote(str(split_dir))
        splits = [
            (
                f"{gzip} -dcf {shlex.quote(str(p))}"
                f" | split -l {n_lines} -d -a 6 --additional-suffix=.{i}.fastq"
                f" --filter='{gzip} -c > $FILE.gz' - {d}/"
            )
            for i, p in enumerate(fq_paths, start=1)
        ]
        tmp = partial_path(marker_path)
        return " && ".join([
            f"set -eo pipefail && rm -rf {d} && mkdir -p {d}",
            *splits,
            f"ls {d} | grep -ce '\\.1\\.fastq\\.gz$' > {shlex.quote(str(tmp))}",
            ArtifactStore.publish_command([(tmp, Path(marker_path))]),
        ])

    def align_command(
        self,
        fa_path: str | Path,
        fq_paths: Sequence[str | Path],
        output_bam_path: str | Path,
        read_group: str,
        samtools: str = "samtools",
        executable: str | None = None,
        n_cpu: int = 1,
        insert_size: int = 2000,
        gzip: str = "gzip",
    ) -> str:
        """Build the command aligning one split to a coordinate-sorted bam."""
        exe = executable or self.exe
        fa = shlex.quote(str(fa_path))
        fqs = [shlex.quote(str(p)) for p in fq_paths]
        rg = shlex.quote(read_group)
        if self is Mapper.SSAHA2:
            pair = (
                f" -pair 20,{int(insert_size)} <({gzip} -dc {fqs[0]})"
                f" <({gzip} -dc {fqs[1]})"
                if len(fqs) > 1
                else f" <({gzip} -dc {fqs[0]})"
            )
            aligner = (
                f"{exe} -rtype 454 -best 1 -output sam_soft -save {fa}{pair}"
                f" | {samtools} view -bu -t {fa}.fai -"
                f" | {samtools} addreplacerg -r {rg} -u -"
            )
        else:
            aligner = f"{exe} mem -t {n_cpu} -R {rg} {fa} {' '.join(fqs)}"
        tmp = partial_path(output_bam_path, keep_extension=True)
        return (
            f"set -eo pipefail && {aligner}"
            f" | {samtools} fixmate -m -@ {n_cpu} - -"
            f" | {samtools} sort -@ {n_cpu} -T {shlex.quote(str(tmp))}.sort"
            f" -o {shlex.quote(str(tmp))} -"
            f" && {samtools} quickcheck {shlex.quote(str(tmp))}"
            " && " + ArtifactStore.publish_command([(tmp, Path(output_bam_path))])
        )


def select_mapper(
    technology: str, slx_mapper: str = "bwa", ls454_mapper: str = "ssaha2"
) -> Mapper:
    """Choose the mapper of a lane from its sequencing technology.

    Args:
        technology: Sequencing technology (``SLX``, ``ILLUMINA``, ``454``)
        slx_mapper: Mapper used for Illumina lanes
        ls454_mapper: Mapper used for 454 lanes

    Returns:
        Selected mapper

    Raises:
        ConfigurationError: If the technology or the mapper is unsupported
    """
    tech = TECHNOLOGIES.get(str(technology).upper())
    if not tech:
        msg = f"unsupported sequencing technology: {technology}"
        raise ConfigurationError(msg)
    name = slx_mapper if tech == "slx" else ls454_mapper
    member = MAPPER_ALIASES.get(str(name).lower())
    if not member:
        msg = f"unsupported mapper: {name}"
        raise ConfigurationError(msg)
    mapper = Mapper[member]
    if mapper.value.technology != tech:
        msg = f"{mapper.exe} cannot map {technology} reads"
        raise ConfigurationError(msg)
    return mapper
