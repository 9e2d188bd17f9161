"""Shared fixtures: a fake scheduler that "runs" a job by writing its outputs."""

from pathlib import Path

import pytest

from checkflow.engine.dispatch import (
    Job,
    JobDispatcher,
    JobState,
    ResourceTable,
    Scheduler,
    write_exit_status,
)
from checkflow.engine.fanout import FanoutExecutor

SAMTOOLS_STATS = (
    "# This file was produced by samtools stats\n"
    "SN\traw total sequences:\t1000\n"
    "SN\treads mapped:\t990\n"
    "SN\treads mapped and paired:\t980\n"
    "SN\ttotal length:\t100000\n"
    "SN\tbases mapped (cigar):\t98000\n"
    "SN\tinsert size average:\t350.2\n"
    "SN\tinsert size standard deviation:\t45.7\n"
)
FAKE_MD5 = "0123456789abcdef0123456789abcdef"


def render_output(path: Path) -> str:
    name = path.name
    if name.startswith(".split_complete"):
        return "2\n"
    elif name.endswith((".stats", ".bc")):
        return SAMTOOLS_STATS
    elif name.endswith(".md5"):
        return f"{FAKE_MD5}  {name[: -len('.md5')]}\n"
    else:
        return f"{name}\n"


class FakeScheduler(Scheduler):
    """Scheduler that writes the outputs of a job instead of running it.

    Jobs whose lock id contains one of ``fail`` exit with status 1, and those
    containing one of ``partial`` exit with 0 without writing anything. An
    asynchronous scheduler keeps jobs live until ``finish_all`` is called.
    """

    name = "fake"

    def __init__(self, fail=(), partial=(), asynchronous=False, lost=()):
        self.fail = tuple(fail)
        self.partial = tuple(partial)
        self.asynchronous = asynchronous
        self.lost = set(lost)
        self.submitted: list[Job] = []
        self.pending: dict[str, Job] = {}

    def submit(self, job):
        job.job_dir.mkdir(parents=True, exist_ok=True)
        self.submitted.append(job)
        job_id = f"fake:{len(self.submitted)}"
        if self.asynchronous:
            self.pending[job_id] = job
        else:
            self.execute(job)
        return job_id

    def execute(self, job):
        if any(f in job.lock_id for f in self.fail):
            returncode = 1
        else:
            if not any(p in job.lock_id for p in self.partial):
                for o in map(Path, job.outputs):
                    o.parent.mkdir(parents=True, exist_ok=True)
                    o.write_text(render_output(o))
            returncode = 0
        write_exit_status(job.job_file("exit"), returncode)

    def finish_all(self):
        for job in self.pending.values():
            self.execute(job)
        self.pending.clear()

    def poll(self, job_id):
        if job_id in self.pending:
            return JobState.LIVE
        elif job_id in self.lost:
            return JobState.LOST
        else:
            return JobState.UNKNOWN

    @property
    def lock_ids(self):
        return [j.lock_id for j in self.submitted]


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


def make_fanout(scheduler, stages=None, region_overrides=None, **kwargs):
    return FanoutExecutor(
        JobDispatcher(
            scheduler=scheduler,
            resources=ResourceTable(stages=stages, region_overrides=region_overrides),
            poll_interval=0.01,
            **kwargs,
        )
    )


@pytest.fixture
def reference(tmp_path):
    """A tiny reference with its indices, dictionary and known sites."""
    ref_dir = tmp_path.joinpath("ref")
    ref_dir.mkdir()
    fa = ref_dir.joinpath("genome.fa")
    fa.write_text(">1\nACGT\n>X\nACGT\n")
    ref_dir.joinpath("genome.fa.fai").write_text(
        "1\t250\t3\t60\t61\nX\t200\t300\t60\t61\n"
    )
    ref_dir.joinpath("genome.dict").write_text("@HD\tVN:1.6\n")
    for s in (".amb", ".ann", ".bwt", ".pac", ".sa"):
        ref_dir.joinpath(f"genome.fa{s}").write_text("index\n")
    known_sites = ref_dir.joinpath("dbsnp.vcf.gz")
    known_sites.write_text("sites\n")
    return {"fa": str(fa), "known_sites_vcf": [str(known_sites)]}
