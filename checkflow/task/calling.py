"""Chunked variant calling across population groups.

The genome is cut into ploidy-aware chunks, every chunk is called per
population, the chunk calls are concatenated per chromosome, merged across
populations, concatenated genome-wide and filtered. Concatenation always
follows the chunk plan, never the order in which jobs finished.
"""

import logging
import os
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..engine.artifact import ArtifactStore, CompletionOracle, partial_path
from ..engine.chunk import (
    Chunk,
    ChunkPlanner,
    PloidyMap,
    SexLookup,
    parse_region,
    read_fai,
)
from ..engine.dispatch import Job, sanitize_lock_id
from ..engine.errors import ConfigurationError
from ..engine.fanout import FanoutExecutor, Wave
from ..engine.graph import Action, ActionGraph, GraphReport, Status
from .mapping import wave_status

DEFAULT_FILTER_ARGS = "-s LowQual -e 'QUAL<10'"



def _q(path: object) -> str:
    return shlex.quote(str(path))

@dataclass(frozen=True)
class PopulationGroup:
    """Samples and their bams called together."""

    name: str
    members: tuple[tuple[str, str], ...]

    @classmethod
    def from_config(
        cls, name: str, members: Sequence[str | Mapping[str, str]]
    ) -> "PopulationGroup":
        pairs = []
        for m in members:
            if isinstance(m, str):
                pairs.append((Path(m).name.split(".")[0], m))
            elif m.get("bam"):
                pairs.append((str(m.get("sample") or Path(m["bam"]).stem), m["bam"]))
            else:
                msg = f"population member without a bam: {name}: {m}"
                raise ConfigurationError(msg)
        if not pairs:
            msg = f"empty population: {name}"
            raise ConfigurationError(msg)
        return cls(name=name, members=tuple(pairs))

    @property
    def samples(self) -> list[str]:
        return list(dict.fromkeys(s for s, _ in self.members))

    @property
    def bams(self) -> list[str]:
        return [b for _, b in self.members]


def load_ploidy_map(ploidy: object) -> PloidyMap:
    """Load the ploidy map named in the calling config.

    ``grch37`` selects the bundled layout, a string is read as a ploidy file and
    a list is read as records. Anything else means diploid everywhere.
    """
    if not ploidy:
        return PloidyMap()
    elif isinstance(ploidy, str) and ploidy.lower() == "grch37":
        return PloidyMap.grch37()
    elif isinstance(ploidy, str):
        return PloidyMap.from_file(ploidy)
    elif isinstance(ploidy, Sequence):
        return PloidyMap.from_records(ploidy)
    else:
        msg = f"invalid ploidy setting: {ploidy}"
        raise ConfigurationError(msg)


def plan_chunks(
    calling: Mapping[str, Any], fa_path: str | os.PathLike[str]
) -> list[Chunk]:
    """Build the chunk plan of a calling config.

    Regions default to every sequence of the reference index.

    Raises:
        ConfigurationError: If no chunk size is configured
        PlanningError: If a region or the chunk sizes are invalid
    """
    if not calling.get("chunk_size"):
        msg = "chunk_size is needed to plan chunks"
        raise ConfigurationError(msg)
    lengths = read_fai(f"{fa_path}.fai")
    regions = [
        parse_region(r, lengths=lengths)
        for r in (calling.get("regions") or list(lengths))
    ]
    planner = ChunkPlanner(
        chunk_size=int(calling["chunk_size"]),
        overlap=int(calling.get("overlap") or 0),
        ploidy_map=load_ploidy_map(calling.get("ploidy")),
    )
    return planner.plan(regions)


class CallingRun:
    """Paths and actions of the calling workflow under one output directory.

    Args:
        settings: Config with ``calling``, ``reference``, ``executables``,
            ``sample_sex`` and ``default_sex`` sections
        fanout: Fan-out executor used to submit jobs
        chunks: Chunk plan; built from the config if omitted
    """

    def __init__(
        self,
        settings: Mapping[str, Any],
        fanout: FanoutExecutor,
        chunks: Sequence[Chunk] | None = None,
    ) -> None:
        calling = settings.get("calling") or {}
        self.calling = calling
        self.store = ArtifactStore(calling.get("outdir") or "calls")
        self.root = self.store.root
        self.fanout = fanout
        self.oracle = CompletionOracle()
        reference = settings.get("reference") or {}
        if not reference.get("fa"):
            msg = "reference.fa is needed for calling"
            raise ConfigurationError(msg)
        self.fa = Path(reference["fa"]).resolve()
        self.exe = {
            "bcftools": "bcftools",
            "tabix": "tabix",
            **(settings.get("executables") or {}),
        }
        self.populations = [
            PopulationGroup.from_config(k, v)
            for k, v in (calling.get("populations") or {}).items()
        ]
        if not self.populations:
            msg = "no populations to call"
            raise ConfigurationError(msg)
        self.sex_lookup = SexLookup(
            sexes=settings.get("sample_sex"), default=settings.get("default_sex")
        )
        self.sexes = {
            s: self.sex_lookup(s) for p in self.populations for s in p.samples
        }
        self.ploidy_map = load_ploidy_map(calling.get("ploidy"))
        self.overlap = int(calling.get("overlap") or 0)
        self.chunks = (
            list(chunks) if chunks is not None else plan_chunks(calling, self.fa)
        )
        self.chromosomes = list(dict.fromkeys(c.region for c in self.chunks))
        self.sentinel = self.store.path("all_done")
        self.__logger = logging.getLogger(__name__)

    def __str__(self) -> str:
        return str(self.root)

    def ploidy_path(self) -> Path:
        return self.store.path("ploidy.txt")

    def bams_list(self, pop: PopulationGroup) -> Path:
        return self.store.path("lists", f"{pop.name}.bams")

    def samples_list(self, pop: PopulationGroup) -> Path:
        return self.store.path("lists", f"{pop.name}.samples")

    def chunk_vcf(self, pop: PopulationGroup, chunk: Chunk) -> Path:
        return self.store.path(pop.name, chunk.region, f"{chunk.name}.vcf.gz")

    def chrom_list(self, chrom: str, pop: PopulationGroup) -> Path:
        return self.store.path("lists", f"{chrom}-{pop.name}.list")

    def pop_chrom_vcf(self, pop: PopulationGroup, chrom: str) -> Path:
        return self.store.path(pop.name, f"{chrom}.vcf.gz")

    def chrom_vcf(self, chrom: str) -> Path:
        return self.store.path(f"{chrom}.vcf.gz")

    def all_list(self) -> Path:
        return self.store.path("lists", "all.list")

    def all_vcf(self) -> Path:
        return self.store.path("all.vcf.gz")

    def filtered_vcf(self) -> Path:
        return self.store.path("all.filt.vcf.gz")

    @staticmethod
    def with_index(vcf: Path) -> list[Path]:
        return [vcf, vcf.with_name(f"{vcf.name}.tbi")]

    def job(
        self,
        lock_id: str,
        command: str,
        outputs: Sequence[Path],
        stage: str,
        chunk: Chunk | None = None,
    ) -> Job:
        return Job(
            lock_id=sanitize_lock_id(lock_id),
            command=command,
            workdir=str(self.root),
            outputs=tuple(str(o) for o in outputs),
            resources=self.fanout.dispatcher.resolve(stage=stage, chunk=chunk),
        )

    def bgzip_and_publish(self, vcf: Path, body: str) -> str:
        """Wrap a command writing ``{tmp}`` into one that indexes and publishes."""
        tmp = partial_path(vcf, keep_extension=True)
        pairs = list(zip(self.with_index(tmp), self.with_index(vcf), strict=True))
        return (
            "set -eo pipefail && "
            + body.replace("{tmp}", _q(tmp))
            + f" && {self.exe['tabix']} -f -p vcf {_q(tmp)}"
            + " && "
            + ArtifactStore.publish_command(pairs)
        )

    def piecewise_status(self, wave: Wave, blocked: Sequence[str]) -> Status:
        """Settle a wave that left out the pieces whose inputs are missing."""
        status = wave_status(wave.wait())
        if blocked and status is Status.DONE:
            self.__logger.info("Waiting for inputs of %s:\t%s", wave.name, blocked)
            return Status.BLOCKED
        return status

    # prepare

    def prepare_requires(self) -> list[Path]:
        return [
            self.fa,
            Path(f"{self.fa}.fai"),
            *[Path(b) for p in self.populations for b in p.bams],
        ]

    def prepare_provides(self) -> list[Path]:
        return [
            self.ploidy_path(),
            *[self.bams_list(p) for p in self.populations],
            *[self.samples_list(p) for p in self.populations],
        ]

    def prepare(self) -> Status:
        self.store.write_text(self.ploidy_path(), self.ploidy_map.to_bcftools())
        for p in self.populations:
            self.store.write_text(
                self.bams_list(p),
                "".join(f"{Path(b).resolve()}{os.linesep}" for b in p.bams),
            )
            self.store.write_text(
                self.samples_list(p),
                "".join(
                    f"{s}\t{self.sexes[s]}{os.linesep}" for s in p.samples
                ),
            )
        return Status.DONE

    # call

    def call_provides(self) -> list[Path]:
        return [
            f
            for p in self.populations
            for c in self.chunks
            for f in self.with_index(self.chunk_vcf(p, c))
        ]

    def call(self) -> Status:
        wave = self.fanout.wave(f"call {self}")
        bcftools = self.exe["bcftools"]
        mpileup_args = self.calling.get("mpileup_args") or "-a AD,DP"
        call_args = self.calling.get("call_args") or "-mv"
        for p in self.populations:
            for c in self.chunks:
                vcf = self.chunk_vcf(p, c)
                wave.spawn(
                    self.job(
                        f"call.{p.name}.{c.name}",
                        self.bgzip_and_publish(
                            vcf,
                            f"{bcftools} mpileup -Ou -f {_q(self.fa)}"
                            f" -r {_q(c.name)} -b {_q(self.bams_list(p))}"
                            f" {mpileup_args}"
                            f" | {bcftools} call {call_args}"
                            f" --ploidy-file {_q(self.ploidy_path())}"
                            f" --samples-file {_q(self.samples_list(p))}"
                            " -Oz -o {tmp}",
                        ),
                        self.with_index(vcf),
                        stage="call",
                        chunk=c,
                    )
                )
        return wave_status(wave.wait())

    # concat

    def concat_requires(self, pop: PopulationGroup, chrom: str) -> list[Path]:
        return [
            f
            for c in self.chunks
            if c.region == chrom
            for f in self.with_index(self.chunk_vcf(pop, c))
        ]

    def concat_provides(self) -> list[Path]:
        return [
            self.pop_chrom_vcf(p, chrom)
            for p in self.populations
            for chrom in self.chromosomes
        ]

    def concat(self) -> Status:
        wave = self.fanout.wave(f"concat {self}")
        allow_overlaps = " -a -D" if self.overlap > 0 else ""
        blocked = []
        for p in self.populations:
            for chrom in self.chromosomes:
                vcf = self.pop_chrom_vcf(p, chrom)
                if self.oracle.is_complete(vcf):
                    continue
                elif self.oracle.missing(self.concat_requires(p, chrom)):
                    blocked.append(f"{p.name}/{chrom}")
                    continue
                list_path = self.chrom_list(chrom, p)
                self.store.write_text(
                    list_path,
                    "".join(
                        f"{self.chunk_vcf(p, c)}{os.linesep}"
                        for c in self.chunks
                        if c.region == chrom
                    ),
                )
                wave.spawn(
                    self.job(
                        f"concat.{p.name}.{chrom}",
                        self.bgzip_and_publish(
                            vcf,
                            f"{self.exe['bcftools']} concat{allow_overlaps}"
                            f" -f {_q(list_path)} -Oz -o {{tmp}}",
                        ),
                        self.with_index(vcf),
                        stage="concat",
                    )
                )
        return self.piecewise_status(wave, blocked)

    # merge_pops

    def merge_pops_requires(self, chrom: str) -> list[Path]:
        return [
            f
            for p in self.populations
            for f in self.with_index(self.pop_chrom_vcf(p, chrom))
        ]

    def merge_pops_provides(self) -> list[Path]:
        return [self.chrom_vcf(chrom) for chrom in self.chromosomes]

    def merge_pops(self) -> Status:
        wave = self.fanout.wave(f"merge_pops {self}")
        blocked = []
        for chrom in self.chromosomes:
            vcf = self.chrom_vcf(chrom)
            if self.oracle.is_complete(vcf):
                continue
            elif self.oracle.missing(self.merge_pops_requires(chrom)):
                blocked.append(chrom)
                continue
            inputs = [_q(self.pop_chrom_vcf(p, chrom)) for p in self.populations]
            if len(inputs) == 1:
                body = f"cp {inputs[0]} {{tmp}}"
            else:
                body = f"{self.exe['bcftools']} merge -Oz -o {{tmp}} " + " ".join(
                    inputs
                )
            wave.spawn(
                self.job(
                    f"merge_pops.{chrom}",
                    self.bgzip_and_publish(vcf, body),
                    self.with_index(vcf),
                    stage="merge_pops",
                )
            )
        return self.piecewise_status(wave, blocked)

    # concat_all

    def concat_all(self) -> Status:
        self.store.write_text(
            self.all_list(),
            "".join(f"{self.chrom_vcf(c)}{os.linesep}" for c in self.chromosomes),
        )
        wave = self.fanout.wave(f"concat_all {self}")
        wave.spawn(
            self.job(
                "concat_all",
                self.bgzip_and_publish(
                    self.all_vcf(),
                    f"{self.exe['bcftools']} concat -f {_q(self.all_list())}"
                    " -Oz -o {tmp}",
                ),
                self.with_index(self.all_vcf()),
                stage="concat_all",
            )
        )
        return wave_status(wave.wait())

    # filter

    def filter(self) -> Status:
        filter_args = self.calling.get("filter_args") or DEFAULT_FILTER_ARGS
        wave = self.fanout.wave(f"filter {self}")
        wave.spawn(
            self.job(
                "filter",
                self.bgzip_and_publish(
                    self.filtered_vcf(),
                    f"{self.exe['bcftools']} filter {filter_args}"
                    f" -Oz -o {{tmp}} {_q(self.all_vcf())}",
                ),
                self.with_index(self.filtered_vcf()),
                stage="filter",
            )
        )
        return wave_status(wave.wait())

    # cleanable unit

    def intermediates(self) -> list[Path]:
        folded = [
            f
            for p in self.populations
            for chrom in self.chromosomes
            if self.oracle.is_complete(self.pop_chrom_vcf(p, chrom))
            for c in self.chunks
            if c.region == chrom
            for f in self.with_index(self.chunk_vcf(p, c))
        ]
        return [self.store.job_dir, *folded]

    def deep_intermediates(self) -> list[Path]:
        return [
            *[self.store.path(p.name) for p in self.populations],
            self.store.path("lists"),
            *[f for c in self.chromosomes for f in self.with_index(self.chrom_vcf(c))],
        ]

    def finals(self) -> list[Path]:
        return [
            *self.with_index(self.all_vcf()),
            *self.with_index(self.filtered_vcf()),
        ]


CALLING_GRAPH = ActionGraph(
    actions=[
        Action(
            name="prepare",
            requires=CallingRun.prepare_requires,
            provides=CallingRun.prepare_provides,
            run=CallingRun.prepare,
        ),
        Action(
            name="call",
            requires=CallingRun.prepare_provides,
            provides=CallingRun.call_provides,
            run=CallingRun.call,
            isolates_failures=True,
        ),
        Action(
            name="concat",
            requires=CallingRun.prepare_provides,
            provides=CallingRun.concat_provides,
            run=CallingRun.concat,
            isolates_failures=True,
        ),
        Action(
            name="merge_pops",
            requires=CallingRun.prepare_provides,
            provides=CallingRun.merge_pops_provides,
            run=CallingRun.merge_pops,
        ),
        Action(
            name="concat_all",
            requires=CallingRun.merge_pops_provides,
            provides=lambda ctx: [ctx.all_vcf()],
            run=CallingRun.concat_all,
        ),
        Action(
            name="filter",
            requires=lambda ctx: [ctx.all_vcf()],
            provides=lambda ctx: [ctx.filtered_vcf()],
            run=CallingRun.filter,
        ),
    ],
    sentinel=lambda ctx: ctx.sentinel,
)


def run_calling(calling_run: CallingRun) -> GraphReport:
    """Run one pass of the calling workflow."""
    return CALLING_GRAPH.run(calling_run, unit=str(calling_run))
