"""Per-lane mapping workflow.

A lane directory holds the fastqs of one read group. The workflow splits the
reads, maps each split, merges the split bams, recalibrates base qualities,
computes statistics, records them in the tracking store and removes the
intermediates. Output names carry the mapstats id of the lane so that mappings
with different mappers or assemblies can live side by side.
"""

import logging
import re
import shlex
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from ..engine.artifact import ArtifactStore, CompletionOracle, partial_path
from ..engine.chunk import SexLookup
from ..engine.cleaner import RecoveryCleaner
from ..engine.dispatch import Job, sanitize_lock_id
from ..engine.errors import ConfigurationError, PartialOutputError
from ..engine.fanout import FanoutExecutor, WaveReport
from ..engine.graph import Action, ActionGraph, GraphReport, Status
from .core import CheckflowTask
from .mapper import Mapper, select_mapper
from .tracking import TrackingStore, combine_stats, parse_samtools_stats

STAT_SUFFIXES = ("stats", "flagstat")


def wave_status(report: WaveReport) -> Status:
    if report.complete:
        return Status.DONE
    elif report.failed:
        return Status.FAILED
    else:
        return Status.PENDING


def classify_reads(
    lane: str,
    fastqs: Sequence[str | Mapping[str, Any]],
    paired: bool | None = None,
) -> dict[str, list[dict[str, Any]]]:
    """Sort the fastqs of a lane into single-ended and paired read sets.

    Fastqs named ``<lane>_1.*`` and ``<lane>_2.*`` are paired, anything else is
    single-ended. An explicit ``type`` (0, 1 or 2) wins over the name. A lone
    ``_1`` fastq on an unpaired lane is single-ended.

    Args:
        lane: Lane name
        fastqs: Paths, or mappings with ``path`` and optional ``type``/``md5``
        paired: Whether the lane is paired, if known

    Returns:
        Mapping of ``se``/``pe`` to the fastq records of each set

    Raises:
        ConfigurationError: If the lane has no usable read set
    """
    records = [{"path": f} if isinstance(f, str) else dict(f) for f in fastqs]
    by_type: dict[int, dict[str, Any]] = {}
    for r in records:
        t = r.get("type")
        if t is not None and str(t) in {"0", "1", "2"}:
            by_type[int(t)] = r
            continue
        m = re.search(rf"{re.escape(lane)}_(\d)\.", Path(r["path"]).name)
        if m and m.group(1) in {"1", "2"}:
            by_type[int(m.group(1))] = r
        else:
            by_type[0] = r
    if len(records) == 1 and 0 not in by_type and 1 in by_type and not paired:
        by_type[0] = by_type.pop(1)
    read_sets = {}
    if 0 in by_type:
        read_sets["se"] = [by_type[0]]
    if 1 in by_type and 2 in by_type:
        read_sets["pe"] = [by_type[1], by_type[2]]
    if not read_sets:
        msg = f"lane {lane} has no compatible set of fastq files: {records}"
        raise ConfigurationError(msg)
    return read_sets


def select_reference(
    reference: Mapping[str, Any], sample: str | None, sex_lookup: SexLookup
) -> str:
    """Pick the reference fasta of a sample.

    Raises:
        ConfigurationError: If no reference applies to the sample
    """
    if reference.get("fa"):
        return str(reference["fa"])
    elif reference.get("male_fa") and reference.get("female_fa"):
        sex = sex_lookup.lookup(str(sample))
        return str(reference["male_fa" if sex == "M" else "female_fa"])
    else:
        msg = "reference.fa or both reference.male_fa and reference.female_fa needed"
        raise ConfigurationError(msg)


class LaneMapping:
    """Paths and actions of the mapping of one lane.

    Args:
        lane: Lane record (``name``, ``path``, ``fastqs``, ``technology``,
            ``sample``, ``paired``, ``insert_size``, ``library``)
        settings: Mapping settings (``reference``, ``mapping``, ``executables``,
            ``sample_sex``, ``default_sex``)
        tracking: Tracking store
        fanout: Fan-out executor used to submit jobs
        mapper_version: Version of the mapper; detected if omitted
    """

    def __init__(
        self,
        lane: Mapping[str, Any],
        settings: Mapping[str, Any],
        tracking: TrackingStore,
        fanout: FanoutExecutor,
        mapper_version: str | None = None,
    ) -> None:
        self.name = str(lane["name"])
        self.lane = lane
        self.store = ArtifactStore(lane.get("path") or self.name)
        self.root = self.store.root
        self.tracking = tracking
        self.fanout = fanout
        self.oracle = CompletionOracle()
        m = settings.get("mapping") or {}
        self.options = m
        self.exe = {
            "samtools": "samtools",
            "gatk": "gatk",
            "gzip": "gzip",
            **(settings.get("executables") or {}),
        }
        self.mapper = select_mapper(
            lane.get("technology") or "SLX",
            slx_mapper=m.get("slx_mapper") or "bwa",
            ls454_mapper=m.get("ls454_mapper") or "ssaha2",
        )
        self.read_sets = classify_reads(
            self.name, lane.get("fastqs") or [], paired=lane.get("paired")
        )
        reference = settings.get("reference") or {}
        sex_lookup = SexLookup(
            sexes=settings.get("sample_sex"), default=settings.get("default_sex")
        )
        self.fa = Path(
            select_reference(reference, lane.get("sample") or self.name, sex_lookup)
        ).resolve()
        self.assembly = str(reference.get("assembly_name") or self.fa.stem)
        self.known_sites = [str(p) for p in reference.get("known_sites_vcf") or []]
        self.do_recalibration = bool(m.get("do_recalibration", True))
        self.do_cleanup = bool(m.get("do_cleanup", True))
        mapper_exe = self.exe.get(self.mapper.exe, self.mapper.exe)
        version = (
            mapper_version
            or m.get("mapper_version")
            or self.mapper.detect_version(mapper_exe)
        )
        self.mapper_version = str(version)
        self.id = tracking.mapping_id(
            lane=self.name,
            mapper=self.mapper.exe,
            mapper_version=self.mapper_version,
            assembly=self.assembly,
        )
        self.sentinel = self.store.path(f".mapping_done_{self.id}")
        self.__logger = logging.getLogger(__name__)

    def __str__(self) -> str:
        return f"{self.name}/{self.id}"

    @property
    def dict_path(self) -> Path:
        return self.fa.parent.joinpath(f"{self.fa.stem}.dict")

    def fastq_paths(self, ended: str | None = None) -> list[Path]:
        ends = [ended] if ended else list(self.read_sets)
        return [
            self.store.path(r["path"])
            for e in ends
            for r in self.read_sets.get(e, [])
        ]

    def split_dir(self, ended: str) -> Path:
        return self.store.path(f"split_{ended}_{self.id}")

    def split_marker(self, ended: str) -> Path:
        return self.store.path(f".split_complete_{ended}_{self.id}")

    def mapping_marker(self, ended: str) -> Path:
        return self.store.path(f".mapping_complete_{ended}_{self.id}")

    def n_splits(self, ended: str) -> int:
        text = self.store.read_text(self.split_marker(ended))
        if not text.isdigit() or int(text) < 1:
            msg = f"unreadable number of splits in {self.split_marker(ended)}"
            raise PartialOutputError(msg)
        return int(text)

    def split_fastqs(self, ended: str, split: int) -> list[Path]:
        return [
            self.split_dir(ended).joinpath(f"{split:06d}.{i}.fastq.gz")
            for i in range(1, len(self.read_sets[ended]) + 1)
        ]

    def split_bams(self, ended: str) -> list[Path]:
        return [
            self.split_dir(ended).joinpath(f"{i:06d}.raw.sorted.bam")
            for i in range(self.n_splits(ended))
        ]

    def raw_bam(self, ended: str) -> Path:
        return self.store.path(f"{self.id}.{ended}.raw.sorted.bam")

    @staticmethod
    def recal_name(bam: Path) -> Path:
        return bam.with_name(
            re.sub(r"\.raw\.sorted\.bam$", ".recal.sorted.bam", bam.name)
        )

    @staticmethod
    def stats_paths(bam: Path) -> list[Path]:
        return [bam.with_name(f"{bam.name}.{s}") for s in STAT_SUFFIXES]

    def merged_bams(self) -> list[Path]:
        """Return the merge outputs, or their recalibrated names once raw is gone."""
        bams = []
        for e in self.read_sets:
            bam = self.raw_bam(e)
            if (
                self.do_recalibration
                and not self.oracle.is_complete(bam)
                and self.oracle.is_complete(self.recal_name(bam))
            ):
                bam = self.recal_name(bam)
            bams.append(bam)
        return bams

    def final_bams(self) -> list[Path]:
        bams = self.merged_bams()
        return [self.recal_name(b) for b in bams] if self.do_recalibration else bams

    def bqsr_table(self, bam: Path) -> Path:
        return bam.with_name(f"{bam.name}.bqsr.txt")

    def record_marker(self) -> Path:
        return self.store.path(f".record_complete_{self.id}")

    def cleanup_marker(self) -> Path:
        return self.store.path(f".cleanup_complete_{self.id}")

    def job(
        self, lock_id: str, command: str, outputs: Sequence[Path], **kwargs: Any
    ) -> Job:
        return Job(
            lock_id=sanitize_lock_id(lock_id),
            command=command,
            workdir=str(self.root),
            outputs=tuple(str(o) for o in outputs),
            resources=self.fanout.dispatcher.resolve(**kwargs),
        )

    def read_group(self) -> str:
        fields = {
            "ID": self.name,
            "SM": self.lane.get("sample") or self.name,
            "LB": self.lane.get("library") or self.name,
            "PL": "LS454" if self.mapper is Mapper.SSAHA2 else "ILLUMINA",
        }
        return "@RG\\t" + "\\t".join(f"{k}:{v}" for k, v in fields.items())

    # split

    def split_requires(self) -> list[Path]:
        return self.fastq_paths()

    def split_provides(self) -> list[Path]:
        return [self.split_marker(e) for e in self.read_sets]

    def split(self) -> Status:
        wave = self.fanout.wave(f"split {self}")
        for e, records in self.read_sets.items():
            checks = [
                f"{r['md5']}  {shlex.quote(str(self.store.path(r['path'])))}"
                for r in records
                if r.get("md5")
            ]
            command = self.mapper.split_command(
                fq_paths=self.fastq_paths(e),
                split_dir=self.split_dir(e),
                marker_path=self.split_marker(e),
                n_reads=self.options.get("split_reads"),
                gzip=self.exe["gzip"],
            )
            if checks:
                command = (
                    "set -eo pipefail && printf '%s\\n' "
                    + " ".join(shlex.quote(c) for c in checks)
                    + f" | md5sum -c - && {command}"
                )
            wave.spawn(
                self.job(
                    f"split_{e}_{self.id}",
                    command,
                    [self.split_marker(e)],
                    stage="split",
                    hints=self.mapper.resource_hints("split"),
                )
            )
        return wave_status(wave.wait())

    # map

    def map_requires(self) -> list[Path]:
        return [
            *self.fastq_paths(),
            self.fa,
            *map(Path, self.mapper.index_paths(self.fa)),
            Path(f"{self.fa}.fai"),
            self.dict_path,
            *self.split_provides(),
        ]

    def map_provides(self) -> list[Path]:
        return [self.mapping_marker(e) for e in self.read_sets]

    def settle_map(self) -> None:
        """Mark an end mapped once all of its split bams exist."""
        for e in self.read_sets:
            marker = self.mapping_marker(e)
            if self.oracle.is_complete(marker) or not self.oracle.is_complete(
                self.split_marker(e)
            ):
                continue
            if self.oracle.all_complete(self.split_bams(e)):
                self.store.touch(marker)

    def map(self) -> Status:
        wave = self.fanout.wave(f"map {self}")
        hints = self.mapper.resource_hints("map")
        for e in self.read_sets:
            if self.oracle.is_complete(self.mapping_marker(e)):
                continue
            for i, bam in enumerate(self.split_bams(e)):
                resources = self.fanout.dispatcher.resolve(stage="map", hints=hints)
                wave.spawn(
                    self.job(
                        f"map_{e}_{self.id}_{i}",
                        self.mapper.align_command(
                            fa_path=self.fa,
                            fq_paths=self.split_fastqs(e, i),
                            output_bam_path=bam,
                            read_group=self.read_group(),
                            samtools=self.exe["samtools"],
                            executable=self.exe.get(self.mapper.exe),
                            n_cpu=resources.n_cpu,
                            insert_size=int(self.lane.get("insert_size") or 2000),
                            gzip=self.exe["gzip"],
                        ),
                        [bam],
                        stage="map",
                        hints=hints,
                    )
                )
        status = wave_status(wave.wait())
        if status is Status.DONE:
            self.settle_map()
        return status

    # merge

    def merge_requires(self) -> list[Path]:
        requires = []
        for e in self.read_sets:
            if not self.oracle.is_complete(self.raw_bam(e)):
                requires.extend(self.split_bams(e))
        return requires

    def merge(self) -> Status:
        wave = self.fanout.wave(f"merge {self}")
        samtools = self.exe["samtools"]
        for e in self.read_sets:
            bam = self.raw_bam(e)
            tmp = partial_path(bam, keep_extension=True)
            q_tmp = shlex.quote(str(tmp))
            inputs = " ".join(shlex.quote(str(b)) for b in self.split_bams(e))
            if len(self.split_bams(e)) == 1:
                body = f"cp {inputs} {q_tmp}"
            else:
                body = f"{samtools} merge -f {q_tmp} {inputs}"
            wave.spawn(
                self.job(
                    f"merge_{e}_{self.id}",
                    f"set -eo pipefail && {body} && {samtools} quickcheck {q_tmp}"
                    " && " + ArtifactStore.publish_command([(tmp, bam)]),
                    [bam],
                    stage="merge",
                    hints=self.mapper.resource_hints("merge"),
                )
            )
        return wave_status(wave.wait())

    # recalibrate

    def recalibrate_requires(self) -> list[Path]:
        return [
            *self.merged_bams(),
            self.fa,
            self.dict_path,
            *(map(Path, self.known_sites) if self.do_recalibration else []),
        ]

    def settle_recalibrate(self) -> None:
        """Delete raw bams whose recalibrated versions exist."""
        if not self.do_recalibration:
            return
        for e in self.read_sets:
            raw = self.raw_bam(e)
            if raw.exists() and self.oracle.is_complete(self.recal_name(raw)):
                self.__logger.info("Remove a recalibrated raw bam:\t%s", raw)
                bai = raw.with_name(f"{raw.name}.bai")
                for p in [raw, bai, *self.stats_paths(raw)]:
                    p.unlink(missing_ok=True)

    def recalibrate(self) -> Status:
        if not self.do_recalibration:
            return Status.DONE
        wave = self.fanout.wave(f"recalibrate {self}")
        gatk = self.exe["gatk"]
        for bam in self.merged_bams():
            out = self.recal_name(bam)
            if self.oracle.is_complete(out):
                continue
            for p in self.stats_paths(bam):
                p.unlink(missing_ok=True)
            resources = self.fanout.dispatcher.resolve(stage="recalibrate")
            table = self.bqsr_table(bam)
            tmp = partial_path(out, keep_extension=True)
            q_bam, q_fa, q_table, q_tmp = (
                shlex.quote(str(p)) for p in (bam, self.fa, table, tmp)
            )
            java_options = CheckflowTask.generate_gatk_java_options(
                n_cpu=resources.n_cpu, memory_mb=resources.memory_mb
            )
            wave.spawn(
                self.job(
                    f"recalibrate_{self.id}.{bam.name}",
                    (
                        f"set -eo pipefail && {gatk} --java-options"
                        f" {shlex.quote(java_options)} BaseRecalibrator"
                        f" --input {q_bam} --reference {q_fa}"
                        + "".join(
                            f" --known-sites {shlex.quote(p)}" for p in self.known_sites
                        )
                        + f" --output {q_table}"
                        f" && {gatk} --java-options {shlex.quote(java_options)}"
                        f" ApplyBQSR --input {q_bam} --reference {q_fa}"
                        f" --bqsr-recal-file {q_table}"
                        " --static-quantized-quals 10 --static-quantized-quals 20"
                        " --static-quantized-quals 30 --use-original-qualities true"
                        " --create-output-bam-index false"
                        f" --output {q_tmp}"
                        f" && {self.exe['samtools']} quickcheck {q_tmp}"
                        " && " + ArtifactStore.publish_command([(tmp, out)])
                    ),
                    [out],
                    stage="recalibrate",
                )
            )
        status = wave_status(wave.wait())
        if status is Status.DONE:
            self.settle_recalibrate()
        return status

    # statistics

    def statistics_provides(self) -> list[Path]:
        return [p for b in self.final_bams() for p in self.stats_paths(b)]

    def statistics(self) -> Status:
        wave = self.fanout.wave(f"statistics {self}")
        samtools = self.exe["samtools"]
        for bam in self.final_bams():
            outputs = self.stats_paths(bam)
            pairs = [(partial_path(p), p) for p in outputs]
            q_bam = shlex.quote(str(bam))
            q_stats, q_flagstat = (shlex.quote(str(t)) for t, _ in pairs)
            wave.spawn(
                self.job(
                    f"statistics_{self.id}.{bam.name}",
                    f"set -eo pipefail && {samtools} stats {q_bam} > {q_stats}"
                    f" && {samtools} flagstat {q_bam} > {q_flagstat}"
                    " && " + ArtifactStore.publish_command(pairs),
                    outputs,
                    stage="statistics",
                    hints=self.mapper.resource_hints("statistics"),
                )
            )
        return wave_status(wave.wait())

    # record

    def record_requires(self) -> list[Path]:
        return [*self.final_bams(), *self.statistics_provides()]

    def record(self) -> Status:
        stats = combine_stats(
            parse_samtools_stats(self.stats_paths(b)[0]) for b in self.final_bams()
        )
        self.tracking.record_mapping(lane=self.name, mapstats_id=self.id, stats=stats)
        self.store.touch(self.record_marker())
        return Status.DONE

    # cleanup

    def cleanup(self) -> Status:
        if self.do_cleanup:
            RecoveryCleaner(self.oracle).clean(self)
        self.store.touch(self.cleanup_marker())
        return Status.DONE

    # cleanable unit

    def intermediates(self) -> list[Path]:
        return [
            self.store.job_dir,
            *[self.split_dir(e) for e in self.read_sets],
            *[self.bqsr_table(self.raw_bam(e)) for e in self.read_sets],
        ]

    def deep_intermediates(self) -> list[Path]:
        return [
            *[self.raw_bam(e) for e in self.read_sets if self.do_recalibration],
            *[self.mapping_marker(e) for e in self.read_sets],
            *[self.split_marker(e) for e in self.read_sets],
        ]

    def finals(self) -> list[Path]:
        return [
            *self.final_bams(),
            *self.statistics_provides(),
            self.record_marker(),
        ]


MAPPING_GRAPH = ActionGraph(
    actions=[
        Action(
            name="split",
            requires=LaneMapping.split_requires,
            provides=LaneMapping.split_provides,
            run=LaneMapping.split,
        ),
        Action(
            name="map",
            requires=LaneMapping.map_requires,
            provides=LaneMapping.map_provides,
            run=LaneMapping.map,
            settle=LaneMapping.settle_map,
        ),
        Action(
            name="merge",
            requires=LaneMapping.merge_requires,
            provides=LaneMapping.merged_bams,
            run=LaneMapping.merge,
        ),
        Action(
            name="recalibrate",
            requires=LaneMapping.recalibrate_requires,
            provides=LaneMapping.final_bams,
            run=LaneMapping.recalibrate,
            settle=LaneMapping.settle_recalibrate,
        ),
        Action(
            name="statistics",
            requires=LaneMapping.final_bams,
            provides=LaneMapping.statistics_provides,
            run=LaneMapping.statistics,
        ),
        Action(
            name="record",
            requires=LaneMapping.record_requires,
            provides=lambda ctx: [ctx.record_marker()],
            run=LaneMapping.record,
        ),
        Action(
            name="cleanup",
            requires=lambda ctx: [],
            provides=lambda ctx: [ctx.cleanup_marker()],
            run=LaneMapping.cleanup,
        ),
    ],
    sentinel=lambda ctx: ctx.sentinel,
)


def run_lane_mapping(lane_mapping: LaneMapping) -> GraphReport:
    """Run one pass of the mapping workflow over a lane."""
    return MAPPING_GRAPH.run(lane_mapping, unit=str(lane_mapping))

