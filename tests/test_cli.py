"""Tests for config handling and the command-line entry point.

Covers:
- read_config() normalization of paths, scheduler defaults and overrides
- Validation errors of malformed configs
- parse_resource_override()
- The bundled example config
- The init, plan and clean commands
"""

import sys

import pytest
import yaml

from checkflow.cli.main import main
from checkflow.cli.pipeline import (
    _read_config_yml,
    clean_outputs,
    parse_resource_override,
    print_chunk_plan,
    read_config,
)
from checkflow.cli.util import (
    fetch_executable,
    load_default_dict,
    print_log,
    print_yml,
    read_yml,
    render_luigi_log_cfg,
    write_config_yml,
)
from checkflow.engine.errors import ConfigurationError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yml(path, data):
    path.write_text(yaml.safe_dump(data))
    return path


@pytest.fixture
def minimal_config():
    return {
        "scheduler": {"backend": "local", "workers": 4},
        "reference": {"fa": "ref/genome.fa"},
        "lanes": [{"name": "L1", "fastqs": ["L1_1.fastq.gz", "L1_2.fastq.gz"]}],
    }


# ---------------------------------------------------------------------------
# read_config
# ---------------------------------------------------------------------------


class TestReadConfig:
    def test_paths_are_resolved(self, tmp_path, monkeypatch, minimal_config):
        monkeypatch.chdir(tmp_path)
        minimal_config["calling"] = {
            "chunk_size": 1000,
            "populations": {"p": ["a.bam"]},
        }
        cfg = _write_yml(tmp_path.joinpath("c.yml"), minimal_config)
        config = read_config(cfg, dest_dir_path=tmp_path.joinpath("out"))
        assert config["tracking_db"] == str(tmp_path.joinpath("out", "tracking.db"))
        assert config["calling"]["outdir"] == str(tmp_path.joinpath("out", "calls"))
        assert config["lanes"][0]["path"] == str(tmp_path.joinpath("L1"))
        assert config["reference"]["fa"] == str(tmp_path.joinpath("ref", "genome.fa"))
        assert config["imports"] == []

    def test_scheduler_defaults(self, tmp_path, minimal_config):
        cfg = _write_yml(tmp_path.joinpath("c.yml"), minimal_config)
        scheduler = read_config(cfg, dest_dir_path=tmp_path)["scheduler"]
        assert scheduler["workers"] == 4
        assert scheduler["lock_ttl_hours"] == 72
        assert scheduler["poll_interval"] == 30

    def test_resource_overrides(self, tmp_path, minimal_config):
        minimal_config["resources"] = {"map": {"memory_mb": 8000, "n_cpu": 2}}
        cfg = _write_yml(tmp_path.joinpath("c.yml"), minimal_config)
        resources = read_config(
            cfg,
            dest_dir_path=tmp_path,
            resource_overrides=["map:memory_mb=12000", "call:queue=long"],
        )["resources"]
        assert resources["map"] == {"memory_mb": 12000, "n_cpu": 2}
        assert resources["call"] == {"queue": "long"}

    def test_sample_sex_file(self, tmp_path, minimal_config):
        sexes = tmp_path.joinpath("sexes.txt")
        sexes.write_text("s1\tM\ns2\tF\n")
        minimal_config["sample_sex"] = str(sexes)
        cfg = _write_yml(tmp_path.joinpath("c.yml"), minimal_config)
        config = read_config(cfg, dest_dir_path=tmp_path)
        assert config["sample_sex"] == {"s1": "M", "s2": "F"}


class TestConfigValidation:
    @pytest.mark.parametrize(
        ("key", "value"),
        [
            ("scheduler", {"backend": "pbs"}),
            ("resources", {"map": 8000}),
            ("region_resources", {"X": 8000}),
            ("reference", ["genome.fa"]),
            ("reference", {"known_sites_vcf": "dbsnp.vcf.gz"}),
            ("reference", {"known_sites_vcf": ["a.vcf.gz", "a.vcf.gz"]}),
            ("sample_sex", ["s1"]),
            ("lanes", {"name": "L1"}),
            ("lanes", [{"fastqs": ["a.fq.gz"]}]),
            ("lanes", [{"name": "L1", "fastqs": []}]),
            ("lanes", [{"name": "L 1", "fastqs": ["a.fq.gz"]}]),
            (
                "lanes",
                [
                    {"name": "L1", "fastqs": ["a.fq.gz"]},
                    {"name": "L1", "fastqs": ["b.fq.gz"]},
                ],
            ),
            ("imports", [{"name": "I1", "fastqs": ["a.bam"]}]),
            ("calling", {"populations": {"p": ["a.bam"]}}),
        ],
    )
    def test_invalid_config(self, tmp_path, minimal_config, key, value):
        minimal_config[key] = value
        cfg = _write_yml(tmp_path.joinpath("c.yml"), minimal_config)
        with pytest.raises(ConfigurationError):
            _read_config_yml(cfg)

    def test_not_a_mapping(self, tmp_path):
        cfg = tmp_path.joinpath("c.yml")
        cfg.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            _read_config_yml(cfg)

    def test_bad_resource_override(self, tmp_path, minimal_config):
        cfg = _write_yml(tmp_path.joinpath("c.yml"), minimal_config)
        with pytest.raises(ConfigurationError):
            read_config(cfg, dest_dir_path=tmp_path, resource_overrides=["map=1"])


class TestParseResourceOverride:
    def test_integer_value(self):
        assert parse_resource_override("map:memory_mb=8000") == (
            "map",
            "memory_mb",
            8000,
        )

    def test_string_value(self):
        assert parse_resource_override("call:queue=long") == ("call", "queue", "long")

    def test_unknown_resource(self):
        with pytest.raises(ConfigurationError):
            parse_resource_override("map:gpus=1")

    def test_malformed(self):
        with pytest.raises(ConfigurationError):
            parse_resource_override("memory_mb=8000")


# ---------------------------------------------------------------------------
# Bundled example and commands
# ---------------------------------------------------------------------------


class TestExampleConfig:
    def test_example_is_valid(self, tmp_path):
        cfg = tmp_path.joinpath("checkflow.yml")
        write_config_yml(cfg)
        config = _read_config_yml(cfg)
        assert config == load_default_dict("example_checkflow")
        assert [d["name"] for d in config["lanes"]] == ["ERR000001"]

    def test_existing_file_is_kept(self, tmp_path):
        cfg = tmp_path.joinpath("checkflow.yml")
        cfg.write_text("custom: true\n")
        write_config_yml(cfg)
        assert cfg.read_text() == "custom: true\n"


class TestMain:
    def test_init(self, tmp_path, monkeypatch):
        cfg = tmp_path.joinpath("new.yml")
        monkeypatch.setattr(sys, "argv", ["checkflow", "init", f"--yml={cfg}"])
        main()
        assert cfg.is_file()

    def test_plan(self, tmp_path, monkeypatch, capsys, reference):
        cfg = _write_yml(
            tmp_path.joinpath("c.yml"),
            {
                "reference": {"fa": reference["fa"]},
                "calling": {
                    "chunk_size": 150,
                    "regions": ["1", "X:1-100"],
                    "populations": {"p": ["a.bam"]},
                },
            },
        )
        monkeypatch.setattr(sys, "argv", ["checkflow", "plan", f"--yml={cfg}"])
        main()
        assert capsys.readouterr().out.splitlines() == [
            "1:1-150\t.",
            "1:151-250\t.",
            "X:1-100\t.",
        ]

    def test_plan_without_calling(self, tmp_path, minimal_config):
        cfg = _write_yml(tmp_path.joinpath("c.yml"), minimal_config)
        with pytest.raises(ConfigurationError):
            print_chunk_plan(cfg)


class TestUtil:
    def test_print_log(self, capsys):
        print_log("Run a pass")
        assert capsys.readouterr().out == ">>\tRun a pass\n"

    def test_print_yml_keeps_key_order(self, capsys):
        print_yml({"lanes": [], "calling": {"chunk_size": 10}})
        assert capsys.readouterr().out.splitlines()[:2] == ["lanes: []", "calling:"]

    def test_missing_config(self, tmp_path):
        with pytest.raises(ConfigurationError):
            read_yml(tmp_path.joinpath("missing.yml"))

    def test_invalid_yaml(self, tmp_path):
        cfg = tmp_path.joinpath("c.yml")
        cfg.write_text("lanes: [a, b\n")
        with pytest.raises(ConfigurationError):
            read_yml(cfg)

    def test_fetch_executable(self, tmp_path):
        exe = tmp_path.joinpath("tool")
        exe.write_text("#!/bin/sh\n")
        exe.chmod(0o755)
        assert fetch_executable(str(exe)) == str(exe)
        assert fetch_executable(str(tmp_path.joinpath("nope")), True) is None
        with pytest.raises(ConfigurationError):
            fetch_executable("checkflow-no-such-tool")

    def test_render_luigi_log_cfg(self, tmp_path):
        cfg = render_luigi_log_cfg(
            tmp_path.joinpath("log"), run_name="map", file_log_level="INFO"
        )
        text = cfg.read_text()
        assert cfg == tmp_path.joinpath("log", "luigi.log.cfg")
        assert "level=INFO" in text
        assert str(tmp_path.joinpath("log", "luigi.map.")) in text


class TestClean:
    @pytest.fixture
    def calling_yml(self, tmp_path, reference):
        return _write_yml(
            tmp_path.joinpath("c.yml"),
            {
                "reference": {"fa": reference["fa"]},
                "default_sex": "F",
                "calling": {"chunk_size": 150, "populations": {"p": ["a.bam"]}},
            },
        )

    def test_dry_run_keeps_files(self, tmp_path, monkeypatch, calling_yml):
        job_dir = tmp_path.joinpath("out", "calls", ".jobs")
        job_dir.mkdir(parents=True)
        monkeypatch.setattr(
            sys,
            "argv",
            [
                "checkflow",
                "clean",
                f"--yml={calling_yml}",
                f"--dest-dir={tmp_path.joinpath('out')}",
                "--dry-run",
            ],
        )
        main()
        assert job_dir.is_dir()

    def test_clean_removes_job_files(self, tmp_path, calling_yml):
        job_dir = tmp_path.joinpath("out", "calls", ".jobs")
        job_dir.mkdir(parents=True)
        clean_outputs(calling_yml, dest_dir_path=tmp_path.joinpath("out"))
        assert not job_dir.exists()
