"""Workflow orchestration and configuration management for checkflow.

This module reads and validates the config, builds every unit of work once up
front so that configuration and planning errors surface before anything is
submitted, and hands the units to Luigi driver tasks.
"""

import logging
import os
import re
from collections.abc import Mapping, Sequence
from math import floor
from pathlib import Path
from pprint import pformat
from typing import Any

from psutil import cpu_count, virtual_memory

from ..engine.chunk import SexLookup, format_chunks
from ..engine.cleaner import RecoveryCleaner
from ..engine.dispatch import SCHEDULERS, ResourceSpec
from ..engine.errors import ConfigurationError
from ..engine.fanout import FanoutExecutor
from ..task.calling import CallingRun, plan_chunks
from ..task.controller import (
    PrintEnvVersions,
    RunChunkedCalling,
    RunLaneImport,
    RunLaneMapping,
)
from ..task.core import CheckflowTask
from ..task.importer import LaneImport
from ..task.mapping import LaneMapping
from ..task.tracking import TrackingStore
from .util import (
    build_luigi_tasks,
    fetch_executable,
    load_default_dict,
    print_log,
    print_yml,
    read_yml,
    render_luigi_log_cfg,
)

WORKFLOWS = ("map", "call", "import")
UNIT_SECTIONS = ("lanes", "imports")


def run_workflow(
    workflow: str,
    config_yml_path: str | os.PathLike[str],
    dest_dir_path: str | os.PathLike[str] = ".",
    max_n_worker: int | None = None,
    wait: bool = False,
    cleaning: str = "",
    resource_overrides: Sequence[str] = (),
    print_subprocesses: bool = False,
    console_log_level: str = "WARNING",
    file_log_level: str = "DEBUG",
) -> None:
    """Run one pass of a workflow over every configured unit.

    Every unit is built before any Luigi task, so a configuration or planning
    error stops the run before any job is submitted.

    Args:
        workflow: ``map``, ``call`` or ``import``
        config_yml_path: Path to the YAML configuration file
        dest_dir_path: Directory of logs, the tracking database and calls
        max_n_worker: Maximum number of concurrent jobs on the local backend
        wait: Block until cluster jobs have ended
        cleaning: ``clean`` or ``mr_proper`` to clean finished units
        resource_overrides: ``stage:key=value`` overrides of the resources
        print_subprocesses: Print the outputs of commands
        console_log_level: Console logging level
        file_log_level: File logging level

    Raises:
        ConfigurationError: If the config is invalid
        PlanningError: If the chunk plan is invalid
    """
    logger = logging.getLogger(__name__)
    if workflow not in WORKFLOWS:
        msg = f"unknown workflow: {workflow}"
        raise ConfigurationError(msg)
    dest_dir = Path(dest_dir_path).resolve()
    log_dir = dest_dir.joinpath("log")
    config = read_config(
        path=config_yml_path,
        dest_dir_path=dest_dir,
        resource_overrides=resource_overrides,
    )
    n_unit = {
        "map": len(config["lanes"]),
        "import": len(config["imports"]),
        "call": (1 if config.get("calling") else 0),
    }[workflow]
    if not n_unit:
        msg = f"nothing to run for the {workflow} workflow in {config_yml_path}"
        raise ConfigurationError(msg)
    n_total = int(max_n_worker or config["scheduler"].get("workers") or cpu_count())
    n_worker = max(1, min(n_total, n_unit))
    settings = {
        **{k: v for k, v in config.items() if k not in UNIT_SECTIONS},
        "scheduler": {
            **config["scheduler"],
            "workers": max(1, floor(n_total / n_worker)),
            "quiet": (not print_subprocesses),
            "wait": bool(wait or config["scheduler"].get("wait")),
        },
    }
    logger.debug("settings:%s%s", os.linesep, pformat(settings))

    fanout = CheckflowTask.build_fanout(
        scheduler_config=settings["scheduler"],
        resources=settings.get("resources"),
        region_resources=settings.get("region_resources"),
    )
    try:
        tasks = _build_driver_tasks(
            workflow=workflow,
            config=config,
            settings=settings,
            fanout=fanout,
            cleaning=cleaning,
        )
    finally:
        fanout.dispatcher.scheduler.shutdown()

    print_log(f"Run the {workflow} workflow:\t{dest_dir}")
    print_yml([
        {
            "config": [
                {"backend": settings["scheduler"]["backend"]},
                {"n_worker": n_worker},
                {"n_job_per_worker": settings["scheduler"]["workers"]},
                {"n_cpu": cpu_count()},
                {"memory_mb": int(virtual_memory().total / 1024 / 1024)},
            ]
        },
        {"input": [{"n_unit": len(tasks)}]},
    ])
    log_cfg_path = str(
        render_luigi_log_cfg(
            log_dir_path=log_dir,
            run_name=workflow,
            console_log_level=console_log_level,
            file_log_level=file_log_level,
        )
    )
    build_luigi_tasks(
        tasks=[
            PrintEnvVersions(
                command_paths=_command_paths(workflow, config),
                sh_config={
                    "log_dir_path": str(log_dir),
                    "quiet": (not print_subprocesses),
                    "executable": fetch_executable("bash"),
                },
            )
        ],
        workers=1,
        log_level=console_log_level,
        logging_conf_file=log_cfg_path,
        hide_summary=True,
    )
    build_luigi_tasks(
        tasks=tasks,
        workers=n_worker,
        log_level=console_log_level,
        logging_conf_file=log_cfg_path,
    )


def _build_driver_tasks(
    workflow: str,
    config: Mapping[str, Any],
    settings: Mapping[str, Any],
    fanout: FanoutExecutor,
    cleaning: str = "",
) -> list[RunLaneMapping | RunChunkedCalling | RunLaneImport]:
    if workflow == "map":
        tracking = TrackingStore(settings["tracking_db"])
        units = [
            LaneMapping(lane=d, settings=settings, tracking=tracking, fanout=fanout)
            for d in config["lanes"]
        ]
        return [
            RunLaneMapping(
                lane=d,
                settings=settings,
                mapper_version=u.mapper_version,
                sentinel_path=str(u.sentinel),
                cleaning=cleaning,
            )
            for d, u in zip(config["lanes"], units, strict=True)
        ]
    elif workflow == "import":
        tracking = TrackingStore(settings["tracking_db"])
        units = [
            LaneImport(lane=d, settings=settings, tracking=tracking, fanout=fanout)
            for d in config["imports"]
        ]
        return [
            RunLaneImport(
                lane=d,
                settings=settings,
                sentinel_path=str(u.sentinel),
                cleaning=cleaning,
            )
            for d, u in zip(config["imports"], units, strict=True)
        ]
    else:
        unit = CallingRun(settings=settings, fanout=fanout)
        return [
            RunChunkedCalling(
                settings=settings, sentinel_path=str(unit.sentinel), cleaning=cleaning
            )
        ]


def _command_paths(workflow: str, config: Mapping[str, Any]) -> list[str]:
    exe = config.get("executables") or {}
    if workflow == "map":
        m = config.get("mapping") or {}
        names = [
            m.get("slx_mapper") or "bwa",
            *([m["ls454_mapper"]] if m.get("ls454_mapper") else []),
            "samtools",
            *(["gatk"] if m.get("do_recalibration", True) else []),
        ]
    elif workflow == "import":
        fetch = (config.get("import") or {}).get("fetch_command") or "iget"
        names = [fetch.split()[0], "samtools"]
    else:
        names = ["bcftools", "tabix"]
    found = [fetch_executable(exe.get(n, n), ignore_errors=True) for n in names]
    return [p for p in found if p]


def print_chunk_plan(config_yml_path: str | os.PathLike[str]) -> None:
    """Print the chunk plan of the calling workflow.

    Raises:
        ConfigurationError: If the config has no calling section
        PlanningError: If the chunk plan is invalid
    """
    config = read_config(path=config_yml_path)
    if not config["reference"].get("fa"):
        msg = "reference.fa is needed to plan chunks"
        raise ConfigurationError(msg)
    elif not config.get("calling"):
        msg = "calling section is needed to plan chunks"
        raise ConfigurationError(msg)
    print(
        format_chunks(plan_chunks(config["calling"], config["reference"]["fa"])),
        end="",
        flush=True,
    )


def clean_outputs(
    config_yml_path: str | os.PathLike[str],
    dest_dir_path: str | os.PathLike[str] = ".",
    mr_proper: bool = False,
    dry_run: bool = False,
) -> None:
    """Remove the intermediates of every configured unit.

    With ``mr_proper``, deep intermediates are removed from units whose final
    results are complete. With ``dry_run``, nothing is removed and the paths
    that would be are only logged.
    """
    config = read_config(path=config_yml_path, dest_dir_path=dest_dir_path)
    fanout = CheckflowTask.build_fanout(scheduler_config=config["scheduler"])
    units = []
    if config["lanes"] or config["imports"]:
        tracking = TrackingStore(config["tracking_db"])
        units.extend(
            LaneMapping(lane=d, settings=config, tracking=tracking, fanout=fanout)
            for d in config["lanes"]
        )
        units.extend(
            LaneImport(lane=d, settings=config, tracking=tracking, fanout=fanout)
            for d in config["imports"]
        )
    if config.get("calling"):
        units.append(CallingRun(settings=config, fanout=fanout))
    fanout.dispatcher.scheduler.shutdown()
    cleaner = RecoveryCleaner(dry_run=dry_run)
    for u in units:
        removed = cleaner.mr_proper(u) if mr_proper else cleaner.clean(u)
        print_log(
            f"Clean {u}:\t{len(removed)} {'to remove' if dry_run else 'removed'}"
        )


def read_config(
    path: str | os.PathLike[str],
    dest_dir_path: str | os.PathLike[str] = ".",
    resource_overrides: Sequence[str] = (),
) -> dict[str, Any]:
    """Read, validate and normalize the YAML configuration file.

    Relative lane paths are resolved against the working directory, and the
    tracking database and calling output directory against the destination
    directory.

    Args:
        path: Path to the YAML configuration file
        dest_dir_path: Destination directory
        resource_overrides: ``stage:key=value`` overrides of the resources

    Returns:
        Normalized configuration dictionary

    Raises:
        ConfigurationError: If the configuration is invalid or malformed
    """
    logger = logging.getLogger(__name__)
    logger.info("config_yml_path:\t%s", path)
    config = _read_config_yml(path=path)
    dest_dir = Path(dest_dir_path).resolve()
    defaults = load_default_dict(stem="example_checkflow")["scheduler"]
    config["scheduler"] = {**defaults, **(config.get("scheduler") or {})}
    config["resources"] = _apply_resource_overrides(
        config.get("resources") or {}, resource_overrides
    )
    config["tracking_db"] = str(
        dest_dir.joinpath(config.get("tracking_db") or "tracking.db")
    )
    if isinstance(config.get("sample_sex"), str):
        config["sample_sex"] = SexLookup.from_file(
            Path(config["sample_sex"]).resolve()
        ).as_dict()
    reference = config.get("reference") or {}
    config["reference"] = {
        **reference,
        **{
            k: str(Path(reference[k]).resolve())
            for k in ("fa", "male_fa", "female_fa")
            if reference.get(k)
        },
    }
    for k in UNIT_SECTIONS:
        config[k] = [
            {**d, "path": str(Path(d.get("path") or d["name"]).resolve())}
            for d in config.get(k) or []
        ]
    if config.get("calling"):
        config["calling"] = {
            **config["calling"],
            "outdir": str(
                dest_dir.joinpath(config["calling"].get("outdir") or "calls")
            ),
        }
    logger.debug("config:%s%s", os.linesep, pformat(config))
    return config


def _read_config_yml(path: str | os.PathLike[str]) -> dict[str, Any]:
    config = read_yml(path=Path(path).resolve())
    if not isinstance(config, dict):
        msg = f"Invalid config structure: {config}"
        raise ConfigurationError(msg)
    for k in (
        "scheduler",
        "resources",
        "region_resources",
        "reference",
        "mapping",
        "calling",
        "import",
        "executables",
    ):
        if config.get(k) is not None and not isinstance(config[k], dict):
            msg = f"Expected dict for {k}, got {type(config[k])}"
            raise ConfigurationError(msg)
    backend = (config.get("scheduler") or {}).get("backend") or "local"
    if backend not in SCHEDULERS:
        msg = f"Unknown scheduler backend: {backend}"
        raise ConfigurationError(msg)
    for stage, d in (config.get("resources") or {}).items():
        if not isinstance(d, dict):
            msg = f"Expected dict for resources of {stage}, got {type(d)}"
            raise ConfigurationError(msg)
    for region, d in (config.get("region_resources") or {}).items():
        if not isinstance(d, dict):
            msg = f"Expected dict for resources of region {region}, got {type(d)}"
            raise ConfigurationError(msg)
    sample_sex = config.get("sample_sex")
    if sample_sex is not None and not isinstance(sample_sex, dict | str):
        msg = f"Expected dict or file path for sample_sex, got {type(sample_sex)}"
        raise ConfigurationError(msg)
    calling = config.get("calling")
    if calling is not None and not calling.get("chunk_size"):
        msg = "chunk_size is needed in the calling section"
        raise ConfigurationError(msg)
    known_sites = (config.get("reference") or {}).get("known_sites_vcf")
    if known_sites is not None:
        if not isinstance(known_sites, list):
            msg = f"Expected list for known_sites_vcf, got {type(known_sites)}"
            raise ConfigurationError(msg)
        elif not _has_unique_elements(known_sites):
            msg = "Duplicate elements found in known_sites_vcf"
            raise ConfigurationError(msg)
    for k in UNIT_SECTIONS:
        _validate_units(k, config.get(k))
    return config


def _validate_units(section: str, units: object) -> None:
    if units is None:
        return
    elif not isinstance(units, list):
        msg = f"Expected list for {section}, got {type(units)}"
        raise ConfigurationError(msg)
    for u in units:
        if not isinstance(u, dict):
            msg = f"Expected dict for a unit of {section}, got {type(u)}: {u}"
            raise ConfigurationError(msg)
        elif not u.get("name"):
            msg = f"Missing 'name' in a unit of {section}: {u}"
            raise ConfigurationError(msg)
        elif not re.fullmatch(r"[\w.+-]+", str(u["name"])):
            msg = f"Invalid unit name in {section}: {u['name']}"
            raise ConfigurationError(msg)
        key = "fastqs" if section == "lanes" else "files"
        if not isinstance(u.get(key), list) or not u[key]:
            msg = f"Expected a non-empty list for {key}: {u}"
            raise ConfigurationError(msg)
    if not _has_unique_elements([str(u["name"]) for u in units]):
        msg = f"Duplicate unit names found in {section}"
        raise ConfigurationError(msg)


def _has_unique_elements(elements: Sequence[object]) -> bool:
    return len(set(elements)) == len(tuple(elements))


def parse_resource_override(text: str) -> tuple[str, str, int | str]:
    """Parse a ``stage:key=value`` resource override.

    Raises:
        ConfigurationError: If the override is malformed or names no resource
    """
    m = re.fullmatch(r"([\w.-]+):(\w+)=(.*)", text.strip())
    if not m:
        msg = f"Invalid resource override (expected stage:key=value): {text}"
        raise ConfigurationError(msg)
    stage, key, value = m.groups()
    if key not in ResourceSpec.field_names():
        msg = f"Unknown resource in override: {key}"
        raise ConfigurationError(msg)
    return stage, key, (int(value) if value.isdigit() else value)


def _apply_resource_overrides(
    resources: Mapping[str, Mapping[str, Any]], overrides: Sequence[str]
) -> dict[str, dict[str, Any]]:
    applied = {k: dict(v) for k, v in resources.items()}
    for o in overrides:
        stage, key, value = parse_resource_override(o)
        applied.setdefault(stage, {})[key] = value
    return applied
