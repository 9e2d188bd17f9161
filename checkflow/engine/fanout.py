"""Waves of independent jobs sharing one dispatcher."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .artifact import CompletionOracle
from .dispatch import HandleState, Job, JobDispatcher, JobHandle


@dataclass
class WaveReport:
    """Tally of one wave after ``Wave.wait``."""

    name: str
    skipped: int = 0
    submitted: int = 0
    locked: int = 0
    finished: int = 0
    failed: int = 0
    missing: list[Path] = field(default_factory=list)
    failures: list[JobHandle] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing

    def __str__(self) -> str:
        return (
            f"{self.name}: {self.skipped} skipped, {self.submitted} submitted,"
            f" {self.locked} locked, {self.finished} finished,"
            f" {self.failed} failed, {len(self.missing)} missing"
        )


class Wave:
    """A batch of jobs spawned together and waited on together.

    Args:
        name: Label used in logs
        dispatcher: Dispatcher that submits the jobs
    """

    def __init__(self, name: str, dispatcher: JobDispatcher) -> None:
        self.name = name
        self.dispatcher = dispatcher
        self.oracle = CompletionOracle()
        self.handles: list[JobHandle] = []
        self.__n_skipped = 0
        self.__outputs: list[str] = []
        self.__logger = logging.getLogger(__name__)

    def spawn(self, job: Job) -> JobHandle | None:
        """Submit a job unless its outputs are already complete."""
        self.__outputs.extend(job.outputs)
        if self.oracle.all_complete(job.outputs):
            self.__n_skipped += 1
            return None
        handle = self.dispatcher.submit(job)
        self.handles.append(handle)
        return handle

    def wait(self, block: bool | None = None) -> WaveReport:
        """Settle every spawned job and report what is still missing."""
        self.dispatcher.wait(self.handles, block=block)
        report = WaveReport(name=self.name, skipped=self.__n_skipped)
        for h in self.handles:
            if h.state is HandleState.SKIPPED:
                report.skipped += 1
            elif h.state is HandleState.SUBMITTED:
                report.submitted += 1
            elif h.state is HandleState.LOCKED:
                report.locked += 1
            elif h.state is HandleState.FINISHED:
                report.finished += 1
            else:
                report.failed += 1
                report.failures.append(h)
        report.missing = self.oracle.missing(dict.fromkeys(self.__outputs))
        self.__logger.info("%s", report)
        return report


class FanoutExecutor:
    """Create waves that share one dispatcher."""

    def __init__(self, dispatcher: JobDispatcher) -> None:
        self.dispatcher = dispatcher

    def wave(self, name: str) -> Wave:
        return Wave(name=name, dispatcher=self.dispatcher)
