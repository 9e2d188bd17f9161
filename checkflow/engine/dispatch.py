"""Job submission to a batch scheduler under per-job locks.

A job is submitted only if its outputs are incomplete and no live job holds
its lock. Locks are plain files created with ``O_EXCL`` under
``<workdir>/.jobs/``, so concurrent drivers sharing an output tree never submit
the same job twice. Every backend leaves an exit file behind when a command
ends, which is how a later invocation learns the outcome of a job submitted by
an earlier one.
"""

import logging
import os
import re
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from enum import Enum
from itertools import count
from pathlib import Path
from socket import gethostname

import psutil
import yaml
from shoper.shelloperator import ShellOperator

from .artifact import ArtifactStore, CompletionOracle, partial_path
from .chunk import Chunk, parse_region
from .errors import ConfigurationError, PartialOutputError, ToolFailure


class JobState(Enum):
    """What is known about a submitted job."""

    LIVE = "live"
    LOST = "lost"
    UNKNOWN = "unknown"
    DONE = "done"
    FAILED = "failed"


class HandleState(Enum):
    """Outcome of one submission attempt."""

    SKIPPED = "skipped"
    LOCKED = "locked"
    SUBMITTED = "submitted"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass(frozen=True)
class ResourceSpec:
    """Resources requested from the scheduler for one job."""

    queue: str | None = None
    memory_mb: int = 4096
    n_cpu: int = 1
    runtime_minutes: int | None = None
    options: str = ""

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}

    def merged(self, overrides: Mapping[str, object] | None) -> "ResourceSpec":
        """Return a copy with the given fields replaced."""
        if not overrides:
            return self
        unknown = set(overrides) - self.field_names()
        if unknown:
            msg = f"unknown resource keys: {sorted(unknown)}"
            raise ConfigurationError(msg)
        kwargs = {}
        for k, v in overrides.items():
            if k in {"memory_mb", "n_cpu", "runtime_minutes"} and v is not None:
                kwargs[k] = int(v)
            else:
                kwargs[k] = v
        return replace(self, **kwargs)


@dataclass(frozen=True)
class RegionOverride:
    region: str
    start: int
    end: int | None
    resources: Mapping[str, object]
    order: int = 0

    def span(self, chunk: Chunk) -> int:
        end = chunk.end if self.end is None else min(self.end, chunk.end)
        return max(0, end - max(self.start, chunk.start) + 1)

    @property
    def width(self) -> float:
        return float("inf") if self.end is None else self.end - self.start + 1


STAGE_DEFAULTS = {"recalibrate": {"queue": "normal", "memory_mb": 6500}}


class ResourceTable:
    """Stage defaults plus region-specific overrides.

    Args:
        stages: Mapping of stage name (or ``default``) to resource fields
        region_overrides: Mapping of ``region`` or ``region:from-to`` to
            resource fields applied to chunk jobs overlapping that span
    """

    def __init__(
        self,
        stages: Mapping[str, Mapping[str, object]] | None = None,
        region_overrides: Mapping[str, Mapping[str, object]] | None = None,
    ) -> None:
        stages = stages or {}
        self.default = ResourceSpec().merged(stages.get("default"))
        self.stages = {k: dict(v or {}) for k, v in stages.items() if k != "default"}
        for v in self.stages.values():
            ResourceSpec().merged(v)
        self.region_overrides = []
        for i, (k, v) in enumerate((region_overrides or {}).items()):
            r = parse_region(k)
            ResourceSpec().merged(v)
            self.region_overrides.append(
                RegionOverride(r.name, r.start, r.end, dict(v), order=i)
            )

    def resolve(
        self,
        stage: str,
        chunk: Chunk | None = None,
        hints: Mapping[str, object] | None = None,
    ) -> ResourceSpec:
        """Return the resources for a job of a stage, optionally on a chunk.

        Built-in stage defaults come first, then tool-specific hints, then the
        configured stage settings, then the best region override. The override
        overlapping the chunk the most wins; ties go to the narrowest span,
        then to the first declared.
        """
        spec = (
            self.default.merged(STAGE_DEFAULTS.get(stage))
            .merged(hints)
            .merged(self.stages.get(stage))
        )
        if chunk is None:
            return spec
        candidates = [
            o for o in self.region_overrides
            if o.region == chunk.region and o.span(chunk) > 0
        ]
        if not candidates:
            return spec
        best = min(candidates, key=lambda o: (-o.span(chunk), o.width, o.order))
        return spec.merged(best.resources)


@dataclass(frozen=True)
class Job:
    """A command to run on the cluster and the artifacts it publishes."""

    lock_id: str
    command: str
    workdir: str
    outputs: tuple[str, ...] = ()
    resources: ResourceSpec = field(default_factory=ResourceSpec)

    @property
    def job_dir(self) -> Path:
        return Path(self.workdir).joinpath(".jobs")

    def job_file(self, suffix: str) -> Path:
        return self.job_dir.joinpath(f"{self.lock_id}.{suffix}")


@dataclass
class JobHandle:
    job: Job
    state: HandleState
    job_id: str | None = None
    error: Exception | None = None


@dataclass
class LockRecord:
    lock_id: str
    job_id: str | None = None
    backend: str | None = None
    host: str | None = None
    pid: int | None = None
    submitted_at: str | None = None
    age_seconds: float = 0.0
    file_id: tuple[int, int] | None = None


def sanitize_lock_id(*parts: object) -> str:
    """Join key parts into a lock identifier usable as a file name."""
    return ".".join(
        re.sub(r"[^\w.:,+=-]", "_", str(p)) for p in parts if p not in (None, "")
    )


def write_exit_status(exit_path: str | os.PathLike[str], returncode: int) -> None:
    tmp = partial_path(exit_path)
    tmp.parent.mkdir(parents=True, exist_ok=True)
    tmp.write_text(f"{returncode}{os.linesep}", encoding="utf-8")
    os.replace(tmp, exit_path)


def read_exit_status(exit_path: str | os.PathLike[str]) -> int | None:
    p = Path(exit_path)
    if not p.is_file():
        return None
    text = p.read_text(encoding="utf-8").strip()
    return int(text) if re.fullmatch(r"-?\d+", text) else None


def _run_cmd(
    cmd: Sequence[str], timeout: float = 60.0, input_text: str | None = None
) -> tuple[int, str, str]:
    """Run a scheduler client command and capture its output."""
    logger = logging.getLogger(__name__)
    logger.debug("Run:\t%s", " ".join(cmd))
    try:
        r = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input_text,
            check=False,
        )
    except subprocess.TimeoutExpired:
        return -1, "", f"command timed out after {timeout}s"
    except OSError as e:
        return -1, "", str(e)
    return r.returncode, r.stdout, r.stderr


class Scheduler(ABC):
    """Interface of a batch scheduler backend."""

    name = "abstract"
    asynchronous = True

    @abstractmethod
    def submit(self, job: Job) -> str:
        """Submit a job and return its scheduler id.

        Raises:
            ToolFailure: If the scheduler refuses the job
        """
        raise NotImplementedError

    @abstractmethod
    def poll(self, job_id: str) -> JobState:
        """Return LIVE, LOST or UNKNOWN for a job without an exit file."""
        raise NotImplementedError

    def wait(self, job_ids: Sequence[str]) -> None:
        """Block until the given jobs have ended (synchronous backends)."""

    def shutdown(self) -> None:
        """Release the resources held by the backend."""

    @staticmethod
    def wrap(job: Job) -> str:
        """Return a command that runs the job and records its exit status."""
        exit_path = job.job_file("exit")
        tmp = partial_path(exit_path)
        return (
            f"cd {shlex.quote(str(job.workdir))}"
            f" && bash -c {shlex.quote(job.command)};"
            f" rc=$?; echo $rc > {shlex.quote(str(tmp))}"
            f" && mv -f {shlex.quote(str(tmp))} {shlex.quote(str(exit_path))};"
            " exit $rc"
        )


class LocalScheduler(Scheduler):
    """Run jobs on this host in a thread pool through ShellOperator.

    Args:
        n_worker: Maximum number of jobs running at once
        quiet: Suppress command output on the console
        executable: Shell used to run commands
    """

    name = "local"
    asynchronous = False

    def __init__(
        self, n_worker: int = 1, quiet: bool = True, executable: str = "/bin/bash"
    ) -> None:
        self.n_worker = max(1, int(n_worker))
        self.quiet = quiet
        self.executable = executable
        self.__pool = ThreadPoolExecutor(max_workers=self.n_worker)
        self.__futures: dict[str, Future] = {}
        self.__counter = count(1)
        self.__host = gethostname()

    def submit(self, job: Job) -> str:
        job_id = f"local:{self.__host}:{os.getpid()}:{next(self.__counter)}"
        job.job_dir.mkdir(parents=True, exist_ok=True)
        self.__futures[job_id] = self.__pool.submit(self._run, job)
        return job_id

    def _run(self, job: Job) -> int:
        logger = logging.getLogger(self.__class__.__name__)
        sh = ShellOperator(
            log_txt=str(job.job_file("o")),
            quiet=self.quiet,
            logger=logger,
            print_command=True,
            executable=self.executable,
        )
        returncode = 0
        try:
            sh.run(args=job.command, cwd=job.workdir, remove_if_failed=False)
        except subprocess.CalledProcessError as e:
            returncode = e.returncode or 1
        except OSError as e:
            logger.error("Failed to run %s: %s", job.lock_id, e)
            returncode = 127
        write_exit_status(job.job_file("exit"), returncode)
        return returncode

    def poll(self, job_id: str) -> JobState:
        f = self.__futures.get(job_id)
        if f is not None:
            return JobState.UNKNOWN if f.done() else JobState.LIVE
        m = re.fullmatch(r"local:(.+):(\d+):\d+", job_id)
        if not m or m.group(1) != self.__host:
            return JobState.UNKNOWN
        pid = int(m.group(2))
        if pid != os.getpid() and psutil.pid_exists(pid):
            return JobState.LIVE
        return JobState.LOST

    def wait(self, job_ids: Sequence[str]) -> None:
        futures = [self.__futures[i] for i in job_ids if i in self.__futures]
        wait_futures(futures)
        for f in futures:
            f.result()

    def shutdown(self) -> None:
        self.__pool.shutdown(wait=True)


class LsfScheduler(Scheduler):
    """Submit jobs with ``bsub`` and query them with ``bjobs``."""

    name = "lsf"
    live_states = {"PEND", "PSUSP", "RUN", "USUSP", "SSUSP", "WAIT", "PROV"}
    ended_states = {"DONE", "EXIT"}

    def __init__(self, bsub: str = "bsub", bjobs: str = "bjobs") -> None:
        self.bsub = bsub
        self.bjobs = bjobs

    def submission_args(self, job: Job) -> list[str]:
        r = job.resources
        args = [
            self.bsub,
            "-J", job.lock_id,
            "-o", str(job.job_file("o")),
            "-e", str(job.job_file("e")),
        ]
        if r.queue:
            args += ["-q", r.queue]
        if r.memory_mb:
            m = int(r.memory_mb)
            args += ["-M", str(m), "-R", f"select[mem>{m}] rusage[mem={m}]"]
        if r.n_cpu > 1:
            args += ["-n", str(r.n_cpu), "-R", "span[hosts=1]"]
        if r.runtime_minutes:
            args += ["-W", str(r.runtime_minutes)]
        return [*args, *shlex.split(r.options or ""), self.wrap(job)]

    def submit(self, job: Job) -> str:
        job.job_dir.mkdir(parents=True, exist_ok=True)
        rc, out, err = _run_cmd(self.submission_args(job))
        m = re.search(r"Job <(\d+)>", out)
        if rc != 0 or not m:
            msg = f"bsub failed for {job.lock_id}: {err.strip() or out.strip()}"
            raise ToolFailure(msg, returncode=rc, lock_id=job.lock_id)
        return m.group(1)

    def poll(self, job_id: str) -> JobState:
        rc, out, _ = _run_cmd([self.bjobs, "-noheader", "-o", "stat", job_id])
        stat = out.strip().split()[0] if (rc == 0 and out.strip()) else ""
        if stat in self.live_states:
            return JobState.LIVE
        elif stat in self.ended_states:
            return JobState.LOST
        else:
            return JobState.UNKNOWN


class SlurmScheduler(Scheduler):
    """Submit jobs with ``sbatch`` and query them with ``squeue``/``sacct``."""

    name = "slurm"
    live_states = {
        "PENDING", "RUNNING", "CONFIGURING", "COMPLETING", "SUSPENDED",
        "REQUEUED", "RESIZING", "STAGE_OUT", "SIGNALING",
    }

    def __init__(
        self, sbatch: str = "sbatch", squeue: str = "squeue", sacct: str = "sacct"
    ) -> None:
        self.sbatch = sbatch
        self.squeue = squeue
        self.sacct = sacct

    def submission_args(self, job: Job) -> list[str]:
        r = job.resources
        args = [
            self.sbatch,
            "--parsable",
            f"--job-name={job.lock_id}",
            f"--output={job.job_file('o')}",
            f"--error={job.job_file('e')}",
            f"--mem={int(r.memory_mb)}M",
            f"--cpus-per-task={int(r.n_cpu)}",
        ]
        if r.queue:
            args.append(f"--partition={r.queue}")
        if r.runtime_minutes:
            args.append(f"--time={int(r.runtime_minutes)}")
        return [*args, *shlex.split(r.options or ""), f"--wrap={self.wrap(job)}"]

    def submit(self, job: Job) -> str:
        job.job_dir.mkdir(parents=True, exist_ok=True)
        rc, out, err = _run_cmd(self.submission_args(job))
        job_id = out.strip().split(";")[0]
        if rc != 0 or not job_id.isdigit():
            msg = f"sbatch failed for {job.lock_id}: {err.strip() or out.strip()}"
            raise ToolFailure(msg, returncode=rc, lock_id=job.lock_id)
        return job_id

    def poll(self, job_id: str) -> JobState:
        rc, out, _ = _run_cmd([self.squeue, "-h", "-j", job_id, "-o", "%T"])
        state = out.strip().upper().rstrip("+") if rc == 0 else ""
        if state in self.live_states:
            return JobState.LIVE
        rc, out, _ = _run_cmd(
            [self.sacct, "-n", "-P", "-X", "-j", job_id, "--format=State"]
        )
        lines = [s.strip() for s in out.splitlines() if s.strip()] if rc == 0 else []
        if not lines:
            return JobState.UNKNOWN
        state = lines[0].split()[0].upper().rstrip("+")
        return JobState.LIVE if state in self.live_states else JobState.LOST


SCHEDULERS = {c.name: c for c in (LocalScheduler, LsfScheduler, SlurmScheduler)}


def build_scheduler(backend: str = "local", **kwargs: object) -> Scheduler:
    """Instantiate a scheduler backend by name.

    Raises:
        ConfigurationError: If the backend is unknown
    """
    if backend not in SCHEDULERS:
        msg = f"unknown scheduler backend: {backend} (choose from {sorted(SCHEDULERS)})"
        raise ConfigurationError(msg)
    return SCHEDULERS[backend](**kwargs)


class JobDispatcher:
    """Submit jobs exactly once per lock and settle their outcome.

    Args:
        scheduler: Scheduler backend
        resources: Resource table used to resolve job resources
        lock_ttl_hours: Age after which a lock of unknown status is stale
        block: Wait for asynchronous jobs to end in ``wait``
        poll_interval: Seconds between polls while blocking
    """

    def __init__(
        self,
        scheduler: Scheduler,
        resources: ResourceTable | None = None,
        lock_ttl_hours: float = 72.0,
        block: bool = False,
        poll_interval: float = 30.0,
    ) -> None:
        self.scheduler = scheduler
        self.resources = resources or ResourceTable()
        self.lock_ttl_seconds = float(lock_ttl_hours) * 3600
        self.block = block
        self.poll_interval = float(poll_interval)
        self.oracle = CompletionOracle()
        self.__logger = logging.getLogger(__name__)

    def resolve(
        self,
        stage: str,
        chunk: Chunk | None = None,
        hints: Mapping[str, object] | None = None,
    ) -> ResourceSpec:
        return self.resources.resolve(stage, chunk=chunk, hints=hints)

    def submit(self, job: Job) -> JobHandle:
        """Submit a job unless it is complete or locked by a live job."""
        lock = job.job_file("lock")
        if self.oracle.all_complete(job.outputs):
            self.release(job)
            return JobHandle(job=job, state=HandleState.SKIPPED)
        record = self.read_lock(lock, lock_id=job.lock_id)
        if record is not None:
            state = self.assess(job, record)
            if self._is_live(state, record):
                self.__logger.debug("Locked by a live job:\t%s", job.lock_id)
                return JobHandle(
                    job=job, state=HandleState.LOCKED, job_id=record.job_id
                )
            if not self._reclaim(job, record, state):
                self.__logger.debug("Lock changed hands:\t%s", job.lock_id)
                return JobHandle(job=job, state=HandleState.LOCKED)
        if not self._acquire(lock):
            self.__logger.debug("Lost the race for a lock:\t%s", job.lock_id)
            return JobHandle(job=job, state=HandleState.LOCKED)
        ArtifactStore(job.workdir).discard_partials(job.outputs)
        job.job_file("exit").unlink(missing_ok=True)
        try:
            job_id = self.scheduler.submit(job)
        except ToolFailure as e:
            self.__logger.error("Submission failed:\t%s", e)
            lock.unlink(missing_ok=True)
            return JobHandle(job=job, state=HandleState.FAILED, error=e)
        self._write_lock(
            lock,
            LockRecord(
                lock_id=job.lock_id,
                job_id=job_id,
                backend=self.scheduler.name,
                host=gethostname(),
                pid=os.getpid(),
                submitted_at=datetime.now(UTC).isoformat(timespec="seconds"),
            ),
        )
        self.__logger.info("Submitted %s:\t%s", job_id, job.lock_id)
        return JobHandle(job=job, state=HandleState.SUBMITTED, job_id=job_id)

    def wait(
        self, handles: Iterable[JobHandle], block: bool | None = None
    ) -> list[JobHandle]:
        """Bring submitted handles to a terminal dispatch state.

        Synchronous backends are waited on. Asynchronous ones count as settled
        once submitted, unless blocking was requested, in which case they are
        polled until every job has ended.
        """
        handles = list(handles)
        submitted = [h for h in handles if h.state is HandleState.SUBMITTED]
        if not submitted:
            return handles
        block = self.block if block is None else block
        if not self.scheduler.asynchronous:
            self.scheduler.wait([h.job_id for h in submitted])
        elif block:
            while any(self._poll_handle(h) is JobState.LIVE for h in submitted):
                time.sleep(self.poll_interval)
        else:
            return handles
        for h in submitted:
            self._settle(h)
        return handles

    def assess(self, job: Job, record: LockRecord) -> JobState:
        returncode = read_exit_status(job.job_file("exit"))
        if returncode is not None:
            return JobState.DONE if returncode == 0 else JobState.FAILED
        elif record.job_id:
            return self.scheduler.poll(record.job_id)
        else:
            return JobState.UNKNOWN

    def _is_live(self, state: JobState, record: LockRecord) -> bool:
        if state is JobState.LIVE:
            return True
        elif state is JobState.UNKNOWN:
            return record.age_seconds < self.lock_ttl_seconds
        else:
            return False

    def _poll_handle(self, handle: JobHandle) -> JobState:
        if read_exit_status(handle.job.job_file("exit")) is not None:
            return JobState.DONE
        return self.scheduler.poll(handle.job_id)

    def _settle(self, handle: JobHandle) -> None:
        job = handle.job
        returncode = read_exit_status(job.job_file("exit"))
        if returncode is None:
            if self.scheduler.poll(handle.job_id) is JobState.LOST:
                handle.state = HandleState.FAILED
                handle.error = ToolFailure(
                    f"job lost: {job.lock_id}", lock_id=job.lock_id
                )
                self.__logger.warning("%s", handle.error)
                self._archive_logs(job)
                self.release(job)
            return
        missing = self.oracle.missing(job.outputs)
        if returncode == 0 and not missing:
            handle.state = HandleState.FINISHED
            self.release(job)
            return
        elif returncode != 0:
            handle.error = ToolFailure(
                f"{job.lock_id} exited with status {returncode}",
                returncode=returncode,
                lock_id=job.lock_id,
            )
        else:
            handle.error = PartialOutputError(
                f"{job.lock_id} reported success but left missing or empty outputs:"
                f" {[str(m) for m in missing]}",
                returncode=returncode,
                lock_id=job.lock_id,
            )
        handle.state = HandleState.FAILED
        self.__logger.warning("%s", handle.error)
        self._archive_logs(job)
        self.release(job)

    def _reclaim(self, job: Job, record: LockRecord, state: JobState) -> bool:
        """Take over a lock judged stale from ``record``.

        Returns:
            False if another driver replaced the lock after it was read
        """
        if not self._claim_lock(job.job_file("lock"), record):
            return False
        if state is JobState.DONE:
            self.__logger.warning(
                "%s",
                PartialOutputError(
                    f"{job.lock_id} ended but its outputs are incomplete",
                    lock_id=job.lock_id,
                ),
            )
        elif state is JobState.FAILED:
            self.__logger.warning(
                "%s", ToolFailure(f"{job.lock_id} failed", lock_id=job.lock_id)
            )
        else:
            self.__logger.warning(
                "Reclaim a stale lock (%s, %.0fs old):\t%s",
                state.value,
                record.age_seconds,
                job.lock_id,
            )
        self._archive_logs(job)
        job.job_file("exit").unlink(missing_ok=True)
        return True

    def _claim_lock(self, lock: Path, record: LockRecord) -> bool:
        """Move a lock aside if it is still the file ``record`` was read from.

        The rename is atomic, so of several drivers reclaiming the same lock
        only one moves it. A lock replaced in the meantime is linked back into
        place without overwriting whatever holds the path by then.
        """
        tombstone = lock.with_name(
            f"{lock.name}.{gethostname()}.{os.getpid()}.{time.time_ns()}.stale"
        )
        try:
            os.rename(lock, tombstone)
        except FileNotFoundError:
            return False
        st = tombstone.stat()
        if (st.st_ino, st.st_mtime_ns) == record.file_id:
            tombstone.unlink()
            return True
        try:
            os.link(tombstone, lock)
        except FileExistsError:
            self.__logger.warning("Lock was replaced twice meanwhile:\t%s", lock)
        tombstone.unlink()
        return False

    def release(self, job: Job) -> None:
        for s in ("lock", "exit"):
            job.job_file(s).unlink(missing_ok=True)

    def _archive_logs(self, job: Job) -> None:
        for s in ("o", "e"):
            p = job.job_file(s)
            if p.is_file():
                os.replace(p, p.with_name(p.name + ".previous"))

    @staticmethod
    def _acquire(lock: Path) -> bool:
        lock.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(lock, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(yaml.safe_dump({"host": gethostname(), "pid": os.getpid()}))
        return True

    @staticmethod
    def _write_lock(lock: Path, record: LockRecord) -> None:
        tmp = partial_path(lock)
        d = {
            k: v
            for k, v in vars(record).items()
            if k not in {"age_seconds", "file_id"}
        }
        tmp.write_text(yaml.safe_dump(d, sort_keys=False), encoding="utf-8")
        os.replace(tmp, lock)

    @staticmethod
    def read_lock(lock: Path, lock_id: str) -> LockRecord | None:
        try:
            st = lock.stat()
            text = lock.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            d = yaml.safe_load(text) or {}
        except yaml.YAMLError:
            d = {}
        if not isinstance(d, dict):
            d = {}
        return LockRecord(
            lock_id=lock_id,
            job_id=(str(d["job_id"]) if d.get("job_id") is not None else None),
            backend=d.get("backend"),
            host=d.get("host"),
            pid=d.get("pid"),
            submitted_at=d.get("submitted_at"),
            age_seconds=max(0.0, time.time() - st.st_mtime),
            file_id=(st.st_ino, st.st_mtime_ns),
        )
