"""Tests for job dispatch under per-job locks.

Covers:
- ResourceTable resolution order and region override selection
- Skipping of complete jobs and cleanup of leftover locks
- Lock exclusivity between concurrent dispatchers
- Reclaiming of stale, lost and terminated locks
- Settling of finished, failed and partial jobs
- Asynchronous backends with and without blocking
- Submission arguments of the LSF and SLURM backends
- LocalScheduler running real shell commands
"""

import os
import time

import pytest
import yaml
from conftest import FakeScheduler

from checkflow.engine.chunk import Chunk
from checkflow.engine.dispatch import (
    HandleState,
    Job,
    JobDispatcher,
    LocalScheduler,
    LsfScheduler,
    ResourceSpec,
    ResourceTable,
    Scheduler,
    SlurmScheduler,
    build_scheduler,
    read_exit_status,
    sanitize_lock_id,
    write_exit_status,
)
from checkflow.engine.errors import (
    ConfigurationError,
    PartialOutputError,
    ToolFailure,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_job(workdir, lock_id="call.pop.1_1-100", outputs=("out.txt",), **kwargs):
    return Job(
        lock_id=lock_id,
        command="echo done > out.txt",
        workdir=str(workdir),
        outputs=tuple(str(workdir.joinpath(o)) for o in outputs),
        **kwargs,
    )


def _write_lock(job, age_hours=0.0, **record):
    lock = job.job_file("lock")
    lock.parent.mkdir(parents=True, exist_ok=True)
    lock.write_text(yaml.safe_dump({"lock_id": job.lock_id, **record}))
    if age_hours:
        t = time.time() - age_hours * 3600
        os.utime(lock, (t, t))
    return lock


# ---------------------------------------------------------------------------
# ResourceTable
# ---------------------------------------------------------------------------


class TestResourceTable:
    def test_defaults(self):
        assert ResourceTable().resolve("map") == ResourceSpec()

    def test_configured_default_applies_to_every_stage(self):
        table = ResourceTable(stages={"default": {"queue": "long"}})
        assert table.resolve("merge").queue == "long"

    def test_recalibration_has_its_own_defaults(self):
        spec = ResourceTable().resolve("recalibrate")
        assert (spec.queue, spec.memory_mb) == ("normal", 6500)

    def test_configured_stage_wins_over_hints(self):
        table = ResourceTable(stages={"map": {"memory_mb": "7000"}})
        spec = table.resolve("map", hints={"memory_mb": 5000, "n_cpu": 4})
        assert (spec.memory_mb, spec.n_cpu) == (7000, 4)

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError):
            ResourceTable(stages={"map": {"memory": 1}})

    def test_narrowest_override_wins_on_equal_overlap(self):
        table = ResourceTable(
            region_overrides={"X": {"memory_mb": 8000}, "X:1-100": {"memory_mb": 16000}}
        )
        assert table.resolve("call", chunk=Chunk("X", 1, 100)).memory_mb == 16000
        assert table.resolve("call", chunk=Chunk("X", 101, 200)).memory_mb == 8000
        assert table.resolve("call", chunk=Chunk("1", 1, 100)).memory_mb == 4096

    def test_largest_overlap_wins(self):
        table = ResourceTable(
            region_overrides={
                "X:50-200": {"memory_mb": 2000},
                "X:1-60": {"memory_mb": 3000},
            }
        )
        assert table.resolve("call", chunk=Chunk("X", 1, 100)).memory_mb == 3000
        assert table.resolve("call", chunk=Chunk("X", 1, 150)).memory_mb == 2000

    def test_declaration_order_breaks_ties(self):
        table = ResourceTable(
            region_overrides={
                "X:1-100": {"memory_mb": 1000},
                "X:01-100": {"memory_mb": 9000},
            }
        )
        assert table.resolve("call", chunk=Chunk("X", 1, 100)).memory_mb == 1000

    def test_resolution_does_not_mutate(self):
        table = ResourceTable(region_overrides={"X": {"memory_mb": 8000}})
        table.resolve("call", chunk=Chunk("X", 1, 100))
        assert table.resolve("call").memory_mb == 4096
        assert table.default == ResourceSpec()


# ---------------------------------------------------------------------------
# Helpers of the dispatch module
# ---------------------------------------------------------------------------


class TestDispatchHelpers:
    def test_sanitize_lock_id(self):
        assert sanitize_lock_id("call", "pop 1", "X:1-100") == "call.pop_1.X:1-100"

    def test_exit_status_round_trip(self, tmp_path):
        path = tmp_path.joinpath("j.exit")
        assert read_exit_status(path) is None
        write_exit_status(path, 3)
        assert read_exit_status(path) == 3

    def test_wrap_records_exit_status(self, tmp_path):
        job = _make_job(tmp_path)
        command = Scheduler.wrap(job)
        assert str(job.job_file("exit")) in command
        assert command.endswith("exit $rc")

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            build_scheduler("pbs")


# ---------------------------------------------------------------------------
# JobDispatcher.submit
# ---------------------------------------------------------------------------


class TestSubmit:
    def test_complete_job_is_skipped_and_lock_released(self, tmp_path):
        job = _make_job(tmp_path)
        tmp_path.joinpath("out.txt").write_text("done")
        lock = _write_lock(job, job_id="old")
        scheduler = FakeScheduler()
        handle = JobDispatcher(scheduler).submit(job)
        assert handle.state is HandleState.SKIPPED
        assert not lock.exists()
        assert scheduler.submitted == []

    def test_submission_writes_lock_record(self, tmp_path):
        scheduler = FakeScheduler(asynchronous=True)
        job = _make_job(tmp_path)
        handle = JobDispatcher(scheduler).submit(job)
        assert handle.state is HandleState.SUBMITTED
        record = JobDispatcher.read_lock(job.job_file("lock"), job.lock_id)
        assert record.job_id == handle.job_id
        assert record.backend == "fake"
        assert record.pid == os.getpid()

    def test_live_lock_blocks_a_second_dispatcher(self, tmp_path):
        job = _make_job(tmp_path)
        first = FakeScheduler(asynchronous=True)
        second = FakeScheduler(asynchronous=True)
        assert JobDispatcher(first).submit(job).state is HandleState.SUBMITTED
        assert JobDispatcher(second).submit(job).state is HandleState.LOCKED
        assert len(first.submitted) + len(second.submitted) == 1

    def test_lock_acquisition_is_exclusive(self, tmp_path):
        lock = tmp_path.joinpath(".jobs", "x.lock")
        assert JobDispatcher._acquire(lock)
        assert not JobDispatcher._acquire(lock)

    def test_young_lock_without_job_id_is_live(self, tmp_path):
        job = _make_job(tmp_path)
        _write_lock(job)
        scheduler = FakeScheduler()
        assert JobDispatcher(scheduler).submit(job).state is HandleState.LOCKED
        assert scheduler.submitted == []

    def test_old_lock_of_unknown_job_is_reclaimed(self, tmp_path):
        job = _make_job(tmp_path)
        _write_lock(job, age_hours=100, job_id="fake:99")
        job.job_file("o").write_text("old log")
        scheduler = FakeScheduler()
        handle = JobDispatcher(scheduler, lock_ttl_hours=72).submit(job)
        assert handle.state is HandleState.SUBMITTED
        assert scheduler.lock_ids == [job.lock_id]
        assert job.job_file("o").with_name(f"{job.lock_id}.o.previous").exists()

    def test_stale_lock_is_reclaimed_by_one_dispatcher(self, tmp_path, monkeypatch):
        job = _make_job(tmp_path)
        lock = _write_lock(job, age_hours=100, job_id="fake:99")
        first = FakeScheduler(asynchronous=True)
        second = FakeScheduler(asynchronous=True)
        late = JobDispatcher(second, lock_ttl_hours=72)
        judge = late.assess
        handles = []

        def judge_after_the_first_dispatcher(job, record):
            handles.append(JobDispatcher(first, lock_ttl_hours=72).submit(job))
            return judge(job, record)

        monkeypatch.setattr(late, "assess", judge_after_the_first_dispatcher)
        handles.append(late.submit(job))
        assert [h.state for h in handles] == [
            HandleState.SUBMITTED,
            HandleState.LOCKED,
        ]
        assert len(first.submitted) + len(second.submitted) == 1
        record = JobDispatcher.read_lock(lock, job.lock_id)
        assert record.job_id == handles[0].job_id
        assert sorted(p.name for p in lock.parent.iterdir()) == [lock.name]

    def test_lost_job_is_reclaimed_at_once(self, tmp_path):
        job = _make_job(tmp_path)
        _write_lock(job, job_id="fake:99")
        scheduler = FakeScheduler(lost={"fake:99"})
        assert JobDispatcher(scheduler).submit(job).state is HandleState.SUBMITTED

    def test_failed_job_with_exit_file_is_resubmitted(self, tmp_path):
        job = _make_job(tmp_path)
        _write_lock(job, job_id="fake:99")
        write_exit_status(job.job_file("exit"), 1)
        scheduler = FakeScheduler(asynchronous=True, lost=())
        handle = JobDispatcher(scheduler).submit(job)
        assert handle.state is HandleState.SUBMITTED
        assert read_exit_status(job.job_file("exit")) is None

    def test_stale_partials_are_removed(self, tmp_path):
        job = _make_job(tmp_path)
        partial = tmp_path.joinpath("out.txt.part")
        partial.write_text("half")
        JobDispatcher(FakeScheduler(asynchronous=True)).submit(job)
        assert not partial.exists()

    def test_refused_submission_fails_and_releases_lock(self, tmp_path):
        class RefusingScheduler(FakeScheduler):
            def submit(self, job):
                raise ToolFailure("queue closed", returncode=255)

        job = _make_job(tmp_path)
        handle = JobDispatcher(RefusingScheduler()).submit(job)
        assert handle.state is HandleState.FAILED
        assert not job.job_file("lock").exists()


# ---------------------------------------------------------------------------
# JobDispatcher.wait
# ---------------------------------------------------------------------------


class TestWait:
    def test_finished_job_releases_lock(self, tmp_path):
        dispatcher = JobDispatcher(FakeScheduler())
        job = _make_job(tmp_path)
        (handle,) = dispatcher.wait([dispatcher.submit(job)])
        assert handle.state is HandleState.FINISHED
        assert not job.job_file("lock").exists()

    def test_nonzero_exit_is_a_tool_failure(self, tmp_path):
        dispatcher = JobDispatcher(FakeScheduler(fail=["call"]))
        (handle,) = dispatcher.wait([dispatcher.submit(_make_job(tmp_path))])
        assert handle.state is HandleState.FAILED
        assert isinstance(handle.error, ToolFailure)
        assert handle.error.returncode == 1

    def test_zero_exit_without_outputs_is_partial(self, tmp_path):
        dispatcher = JobDispatcher(FakeScheduler(partial=["call"]))
        (handle,) = dispatcher.wait([dispatcher.submit(_make_job(tmp_path))])
        assert isinstance(handle.error, PartialOutputError)

    def test_asynchronous_jobs_stay_submitted_without_blocking(self, tmp_path):
        scheduler = FakeScheduler(asynchronous=True)
        dispatcher = JobDispatcher(scheduler)
        (handle,) = dispatcher.wait([dispatcher.submit(_make_job(tmp_path))])
        assert handle.state is HandleState.SUBMITTED
        assert handle.job.job_file("lock").exists()

    def test_blocking_wait_polls_until_the_end(self, tmp_path):
        scheduler = FakeScheduler(asynchronous=True)
        dispatcher = JobDispatcher(scheduler, block=True, poll_interval=0.01)
        handle = dispatcher.submit(_make_job(tmp_path))
        scheduler.finish_all()
        dispatcher.wait([handle])
        assert handle.state is HandleState.FINISHED

    def test_later_invocation_settles_earlier_job(self, tmp_path):
        scheduler = FakeScheduler(asynchronous=True)
        job = _make_job(tmp_path)
        JobDispatcher(scheduler).submit(job)
        scheduler.finish_all()
        handle = JobDispatcher(FakeScheduler()).submit(job)
        assert handle.state is HandleState.SKIPPED
        assert not job.job_file("lock").exists()


# ---------------------------------------------------------------------------
# Cluster backends
# ---------------------------------------------------------------------------


class TestClusterBackends:
    def test_lsf_arguments(self, tmp_path):
        job = _make_job(
            tmp_path,
            resources=ResourceSpec(
                queue="normal", memory_mb=6500, n_cpu=2, options="-P proj"
            ),
        )
        args = LsfScheduler().submission_args(job)
        assert args[:3] == ["bsub", "-J", job.lock_id]
        assert args[args.index("-q") + 1] == "normal"
        assert args[args.index("-M") + 1] == "6500"
        assert "select[mem>6500] rusage[mem=6500]" in args
        assert args[args.index("-n") + 1] == "2"
        assert args[-3:-1] == ["-P", "proj"]
        assert args[-1] == Scheduler.wrap(job)

    def test_slurm_arguments(self, tmp_path):
        job = _make_job(
            tmp_path, resources=ResourceSpec(queue="short", runtime_minutes=30)
        )
        args = SlurmScheduler().submission_args(job)
        assert args[:2] == ["sbatch", "--parsable"]
        assert "--partition=short" in args
        assert "--mem=4096M" in args
        assert "--time=30" in args
        assert args[-1] == f"--wrap={Scheduler.wrap(job)}"


# ---------------------------------------------------------------------------
# LocalScheduler
# ---------------------------------------------------------------------------


class TestLocalScheduler:
    def test_runs_job_in_its_workdir(self, tmp_path):
        scheduler = LocalScheduler(n_worker=2)
        dispatcher = JobDispatcher(scheduler)
        job = _make_job(tmp_path)
        try:
            (handle,) = dispatcher.wait([dispatcher.submit(job)])
        finally:
            scheduler.shutdown()
        assert handle.state is HandleState.FINISHED
        assert tmp_path.joinpath("out.txt").read_text().strip() == "done"
        assert handle.job_id.startswith("local:")

    def test_failed_command(self, tmp_path):
        scheduler = LocalScheduler()
        dispatcher = JobDispatcher(scheduler)
        job = Job(
            lock_id="fail",
            command="exit 3",
            workdir=str(tmp_path),
            outputs=(str(tmp_path.joinpath("never.txt")),),
        )
        try:
            (handle,) = dispatcher.wait([dispatcher.submit(job)])
        finally:
            scheduler.shutdown()
        assert handle.state is HandleState.FAILED
        assert isinstance(handle.error, ToolFailure)
