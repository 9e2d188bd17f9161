"""Tests for the chunked calling workflow.

Covers:
- PopulationGroup and ploidy config parsing
- A full pass converging to all_done with lists in chunk plan order
- Overlap-aware concatenation
- Region resource overrides applied to call jobs only
- Isolation of one failed chunk and idempotence
"""

import pytest
from conftest import FakeScheduler, make_fanout

from checkflow.engine.chunk import PloidyMap
from checkflow.engine.errors import ConfigurationError
from checkflow.engine.graph import ActionState, Status
from checkflow.task.calling import (
    CallingRun,
    PopulationGroup,
    load_ploidy_map,
    plan_chunks,
    run_calling,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path, reference):
    bam_dir = tmp_path.joinpath("bams")
    bam_dir.mkdir()
    bams = {}
    for s in ("a1", "a2", "b1"):
        bams[s] = bam_dir.joinpath(f"{s}.bam")
        bams[s].write_text("bam\n")
    return {
        "reference": reference,
        "sample_sex": {"a1": "M", "a2": "F"},
        "default_sex": "F",
        "calling": {
            "outdir": str(tmp_path.joinpath("calls")),
            "populations": {
                "popA": [str(bams["a1"]), str(bams["a2"])],
                "popB": [{"sample": "b1", "bam": str(bams["b1"])}],
            },
            "regions": ["1", "X"],
            "chunk_size": 150,
            "ploidy": [{"region": "X", "from": 101, "to": 200, "M": 1, "F": 2}],
        },
    }


def _calling_run(settings, scheduler, **kwargs):
    return CallingRun(settings=settings, fanout=make_fanout(scheduler, **kwargs))


# ---------------------------------------------------------------------------
# Config parsing
# ---------------------------------------------------------------------------


class TestPopulationGroup:
    def test_members_from_paths_and_records(self):
        p = PopulationGroup.from_config(
            "pop", ["/b/s1.sorted.bam", {"sample": "s2", "bam": "/b/x.bam"}]
        )
        assert p.samples == ["s1", "s2"]
        assert p.bams == ["/b/s1.sorted.bam", "/b/x.bam"]

    def test_empty_population(self):
        with pytest.raises(ConfigurationError):
            PopulationGroup.from_config("pop", [])

    def test_member_without_bam(self):
        with pytest.raises(ConfigurationError):
            PopulationGroup.from_config("pop", [{"sample": "s1"}])


class TestLoadPloidyMap:
    def test_diploid_by_default(self):
        assert load_ploidy_map(None).entries == ()

    def test_grch37(self):
        assert load_ploidy_map("GRCh37").to_bcftools() == (
            PloidyMap.grch37().to_bcftools()
        )

    def test_invalid(self):
        with pytest.raises(ConfigurationError):
            load_ploidy_map(42)


class TestPlanChunks:
    def test_plan_follows_regions_and_ploidy(self, settings, reference):
        chunks = plan_chunks(settings["calling"], reference["fa"])
        assert [c.name for c in chunks] == [
            "1:1-150",
            "1:151-250",
            "X:1-100",
            "X:101-200",
        ]
        assert chunks[-1].ploidy == (("F", 2), ("M", 1))

    def test_regions_default_to_the_reference_index(self, settings, reference):
        del settings["calling"]["regions"]
        chunks = plan_chunks(settings["calling"], reference["fa"])
        assert [c.region for c in chunks] == ["1", "1", "X", "X"]

    def test_chunk_size_is_required(self, settings, reference):
        del settings["calling"]["chunk_size"]
        with pytest.raises(ConfigurationError):
            plan_chunks(settings["calling"], reference["fa"])


# ---------------------------------------------------------------------------
# CallingRun
# ---------------------------------------------------------------------------


class TestCallingRun:
    def test_unknown_sex_without_default(self, settings):
        del settings["default_sex"]
        with pytest.raises(ConfigurationError):
            _calling_run(settings, FakeScheduler())

    def test_no_populations(self, settings):
        settings["calling"]["populations"] = {}
        with pytest.raises(ConfigurationError):
            _calling_run(settings, FakeScheduler())

    def test_full_pass(self, settings):
        scheduler = FakeScheduler()
        run = _calling_run(settings, scheduler)
        report = run_calling(run)
        assert report.status is Status.DONE
        assert run.sentinel.is_file()
        assert run.filtered_vcf().is_file()
        call_jobs = [i for i in scheduler.lock_ids if i.startswith("call.")]
        assert len(call_jobs) == 2 * len(run.chunks)
        assert scheduler.lock_ids[len(call_jobs) :] == [
            "concat.popA.1",
            "concat.popA.X",
            "concat.popB.1",
            "concat.popB.X",
            "merge_pops.1",
            "merge_pops.X",
            "concat_all",
            "filter",
        ]

    def test_prepared_lists(self, settings):
        run = _calling_run(settings, FakeScheduler())
        run_calling(run)
        samples = run.samples_list(run.populations[0]).read_text().splitlines()
        assert samples == ["a1\tM", "a2\tF"]
        assert "X\t101\t200\tM\t1" in run.ploidy_path().read_text()

    def test_concatenation_follows_the_plan(self, settings):
        run = _calling_run(settings, FakeScheduler())
        run_calling(run)
        pop = run.populations[1]
        listed = run.chrom_list("X", pop).read_text().splitlines()
        assert listed == [
            str(run.chunk_vcf(pop, c)) for c in run.chunks if c.region == "X"
        ]
        all_listed = run.all_list().read_text().splitlines()
        assert all_listed == [str(run.chrom_vcf("1")), str(run.chrom_vcf("X"))]

    def test_overlapping_chunks_are_deduplicated(self, settings):
        settings["calling"]["overlap"] = 10
        scheduler = FakeScheduler()
        run_calling(_calling_run(settings, scheduler))
        concat = [j for j in scheduler.submitted if j.lock_id.startswith("concat.")]
        assert concat
        assert all(" concat -a -D " in j.command for j in concat)

    def test_region_overrides_apply_to_call_jobs(self, settings):
        scheduler = FakeScheduler()
        run_calling(
            _calling_run(
                settings, scheduler, region_overrides={"X": {"memory_mb": 8000}}
            )
        )
        memory = {j.lock_id: j.resources.memory_mb for j in scheduler.submitted}
        assert memory["call.popA.X:101-200"] == 8000
        assert memory["call.popA.X:1-100"] == 8000
        assert memory["call.popA.1:1-150"] == 4096
        assert memory["concat.popA.X"] == 4096

    def test_failed_chunk_is_retried_alone(self, settings):
        run = _calling_run(settings, FakeScheduler(fail=["call.popB.X:101-200"]))
        report = run_calling(run)
        assert report.status is Status.FAILED
        assert report.states["call"] is ActionState.FAILED
        assert report.states["concat"] is ActionState.BLOCKED
        assert report.states["merge_pops"] is ActionState.BLOCKED
        pop_a, pop_b = run.populations
        assert all(run.chunk_vcf(pop_a, c).is_file() for c in run.chunks)
        assert run.pop_chrom_vcf(pop_a, "1").is_file()
        assert run.pop_chrom_vcf(pop_a, "X").is_file()
        assert run.pop_chrom_vcf(pop_b, "1").is_file()
        assert not run.pop_chrom_vcf(pop_b, "X").exists()
        assert run.chrom_vcf("1").is_file()
        assert not run.chrom_vcf("X").exists()
        assert not run.all_vcf().exists()

        scheduler = FakeScheduler()
        assert run_calling(_calling_run(settings, scheduler)).done
        assert scheduler.lock_ids == [
            "call.popB.X:101-200",
            "concat.popB.X",
            "merge_pops.X",
            "concat_all",
            "filter",
        ]

    def test_asynchronous_calls_leave_the_unit_pending(self, settings):
        scheduler = FakeScheduler(asynchronous=True)
        run = _calling_run(settings, scheduler)
        report = run_calling(run)
        assert report.status is Status.PENDING
        assert report.states["call"] is ActionState.DISPATCHED
        assert report.states["concat"] is ActionState.BLOCKED
        assert all(i.startswith("call.") for i in scheduler.lock_ids)

        scheduler.finish_all()
        report = run_calling(run)
        assert report.status is Status.PENDING
        assert report.states["concat"] is ActionState.DISPATCHED
        assert scheduler.lock_ids[2 * len(run.chunks) :] == [
            "concat.popA.1",
            "concat.popA.X",
            "concat.popB.1",
            "concat.popB.X",
        ]

    def test_finished_run_submits_nothing(self, settings):
        run_calling(_calling_run(settings, FakeScheduler()))
        scheduler = FakeScheduler()
        assert run_calling(_calling_run(settings, scheduler)).done
        assert scheduler.lock_ids == []
