"""Per-lane import of remote files.

Each file is fetched under a temporary name, checked against its md5,
summarized with ``samtools stats`` and only then renamed into place, summary
first. The summaries are recorded in the tracking store in one transaction.
"""

import logging
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..engine.artifact import ArtifactStore, partial_path
from ..engine.dispatch import Job, sanitize_lock_id
from ..engine.errors import ConfigurationError, PartialOutputError
from ..engine.fanout import FanoutExecutor
from ..engine.graph import Action, ActionGraph, GraphReport, Status
from .mapping import wave_status
from .tracking import TrackingStore, parse_samtools_stats

DEFAULT_FETCH_COMMAND = "iget -K {src} {dest}"


@dataclass(frozen=True)
class ImportFile:
    src: str
    md5: str | None = None

    @property
    def name(self) -> str:
        return Path(self.src).name

    @classmethod
    def from_config(cls, record: str | Mapping[str, Any]) -> "ImportFile":
        if isinstance(record, str):
            return cls(src=record)
        elif record.get("src"):
            return cls(src=str(record["src"]), md5=record.get("md5"))
        else:
            msg = f"import file without a source: {record}"
            raise ConfigurationError(msg)


class LaneImport:
    """Paths and actions of the import of one lane.

    Args:
        lane: Lane record with ``name``, ``path`` and ``files``
        settings: Config with ``import`` and ``executables`` sections
        tracking: Tracking store
        fanout: Fan-out executor used to submit jobs
    """

    def __init__(
        self,
        lane: Mapping[str, Any],
        settings: Mapping[str, Any],
        tracking: TrackingStore,
        fanout: FanoutExecutor,
    ) -> None:
        self.name = str(lane["name"])
        self.store = ArtifactStore(lane.get("path") or self.name)
        self.root = self.store.root
        self.tracking = tracking
        self.fanout = fanout
        self.files = [ImportFile.from_config(f) for f in lane.get("files") or []]
        if not self.files:
            msg = f"no files to import for lane {self.name}"
            raise ConfigurationError(msg)
        names = [f.name for f in self.files]
        if len(set(names)) != len(names):
            msg = f"duplicate file names in lane {self.name}: {names}"
            raise ConfigurationError(msg)
        options = settings.get("import") or {}
        self.fetch_command = str(options.get("fetch_command") or DEFAULT_FETCH_COMMAND)
        self.samtools = (settings.get("executables") or {}).get("samtools", "samtools")
        self.sentinel = self.store.path(".import_done")
        self.__logger = logging.getLogger(__name__)

    def __str__(self) -> str:
        return self.name

    def dest(self, f: ImportFile) -> Path:
        return self.store.path(f.name)

    def summary(self, f: ImportFile) -> Path:
        return self.store.path(f"{f.name}.bc")

    def checksum(self, f: ImportFile) -> Path:
        return self.store.path(f"{f.name}.md5")

    def record_marker(self) -> Path:
        return self.store.path(".import_recorded")

    def outputs(self, f: ImportFile) -> list[Path]:
        return [self.dest(f), self.summary(f), self.checksum(f)]

    def get_files_provides(self) -> list[Path]:
        return [p for f in self.files for p in self.outputs(f)]

    def fetch_job_command(self, f: ImportFile) -> str:
        """Build the command fetching, checking and summarizing one file."""
        dest = self.dest(f)
        tmp = dest.with_name(f"{dest.name}.tmp")
        tmp_bc = dest.with_name(f"{dest.name}.tmp.bc")
        tmp_md5 = partial_path(self.checksum(f))
        q = {k: shlex.quote(str(v)) for k, v in [("tmp", tmp), ("dest", dest)]}
        fetch = self.fetch_command.format(src=shlex.quote(f.src), dest=q["tmp"])
        if f.md5:
            md5 = shlex.quote(f.md5)
        elif Path(f.src).is_file():
            md5 = f"$(md5sum {shlex.quote(f.src)} | cut -d ' ' -f 1)"
        else:
            self.__logger.warning("No md5 to verify %s against", f.src)
            md5 = f"$(md5sum {q['tmp']} | cut -d ' ' -f 1)"
        return " && ".join([
            f"set -eo pipefail && rm -f {q['tmp']} && {fetch}",
            f"md5={md5}",
            f'echo "${{md5}}  "{q["tmp"]} | md5sum --status -c -',
            f'echo "${{md5}}  "{q["dest"]} > {shlex.quote(str(tmp_md5))}',
            f"{self.samtools} stats {q['tmp']} > {shlex.quote(str(tmp_bc))}",
            ArtifactStore.publish_command([
                (tmp, dest),
                (tmp_bc, self.summary(f)),
                (tmp_md5, self.checksum(f)),
            ]),
        ])

    def get_files(self) -> Status:
        wave = self.fanout.wave(f"get_files {self}")
        for f in self.files:
            wave.spawn(
                Job(
                    lock_id=sanitize_lock_id("get_files", f.name),
                    command=self.fetch_job_command(f),
                    workdir=str(self.root),
                    outputs=tuple(str(p) for p in self.outputs(f)),
                    resources=self.fanout.dispatcher.resolve(stage="get_files"),
                )
            )
        return wave_status(wave.wait())

    def record(self) -> Status:
        files = {}
        for f in self.files:
            stats = parse_samtools_stats(self.summary(f))
            if "raw_reads" not in stats:
                msg = f"no reads summarized in {self.summary(f)}"
                raise PartialOutputError(msg)
            md5 = self.store.read_text(self.checksum(f)).split()[0]
            files[f.name] = {**stats, "md5": md5}
        self.tracking.record_import(lane=self.name, files=files)
        self.store.touch(self.record_marker())
        return Status.DONE

    # cleanable unit

    def intermediates(self) -> list[Path]:
        return [
            self.store.job_dir,
            *[
                self.dest(f).with_name(f"{f.name}{s}")
                for f in self.files
                for s in (".tmp", ".tmp.bc")
            ],
        ]

    def deep_intermediates(self) -> list[Path]:
        return [self.record_marker()]

    def finals(self) -> list[Path]:
        return self.get_files_provides()


IMPORT_GRAPH = ActionGraph(
    actions=[
        Action(
            name="get_files",
            requires=lambda ctx: [],
            provides=LaneImport.get_files_provides,
            run=LaneImport.get_files,
        ),
        Action(
            name="record",
            requires=LaneImport.get_files_provides,
            provides=lambda ctx: [ctx.record_marker()],
            run=LaneImport.record,
        ),
    ],
    sentinel=lambda ctx: ctx.sentinel,
)


def run_lane_import(lane_import: LaneImport) -> GraphReport:
    """Run one pass of the import workflow over a lane."""
    return IMPORT_GRAPH.run(lane_import, unit=str(lane_import))

