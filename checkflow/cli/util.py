"""Helpers shared by the checkflow commands.

Config files are YAML and bundled defaults live in ``checkflow/static``. Luigi
logs through a config rendered from ``checkflow/template`` into the log
directory of each run.
"""

import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from pprint import pformat
from typing import Any

import luigi
import yaml
from jinja2 import Environment, FileSystemLoader
from luigi.execution_summary import LuigiRunResult, LuigiStatusCode

from ..engine.errors import ConfigurationError

STATIC_DIR = Path(__file__).parent.parent.joinpath("static")
TEMPLATE_DIR = Path(__file__).parent.parent.joinpath("template")


def write_config_yml(
    path: str | os.PathLike[str], src_yml: str = "example_checkflow.yml"
) -> None:
    """Copy the bundled example config unless the file already exists.

    Args:
        path: Destination path for the configuration file
        src_yml: Name of the bundled example
    """
    dest = Path(path).resolve()
    if dest.is_file():
        print_log(f"Keep an existing config:\t{dest}")
        return
    print_log(f"Create a config YAML:\t{dest}")
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(STATIC_DIR.joinpath(src_yml), dest)


def print_log(message: str) -> None:
    """Print a progress message and log it at the debug level.

    Args:
        message: Message printed with a ``>>`` prefix
    """
    logging.getLogger(__name__).debug(message)
    print(f">>\t{message}", flush=True)


def fetch_executable(cmd: str, ignore_errors: bool = False) -> str | None:
    """Locate the executable a job will invoke.

    Args:
        cmd: Command name, or a path as given in the ``executables`` section
        ignore_errors: Return None instead of raising if it is missing

    Returns:
        Path to the executable, or None if missing and ``ignore_errors``

    Raises:
        ConfigurationError: If the command is missing and ``ignore_errors`` is
            False
    """
    if os.sep in cmd:
        found = cmd if os.access(cmd, os.X_OK) else None
    else:
        found = next(
            (
                str(c)
                for c in (
                    Path(p).joinpath(cmd)
                    for p in os.environ.get("PATH", "").split(os.pathsep)
                    if p
                )
                if os.access(c, os.X_OK)
            ),
            None,
        )
    if found or ignore_errors:
        return found
    msg = f"command not found: {cmd}"
    raise ConfigurationError(msg)


def read_yml(path: str | os.PathLike[str]) -> Any:
    """Parse a YAML file.

    Raises:
        ConfigurationError: If the file is missing or is not valid YAML
    """
    logger = logging.getLogger(__name__)
    try:
        with open(str(path), encoding="utf-8") as f:
            d = yaml.load(f, Loader=yaml.FullLoader)
    except FileNotFoundError as e:
        msg = f"config file not found: {path}"
        raise ConfigurationError(msg) from e
    except yaml.YAMLError as e:
        msg = f"invalid YAML in {path}: {e}"
        raise ConfigurationError(msg) from e
    logger.debug("YAML data:" + os.linesep + pformat(d))
    return d


def print_yml(data: object) -> None:
    """Print data as YAML keeping the key order.

    Args:
        data: Data to print, such as a normalized config
    """
    print(yaml.dump(data, sort_keys=False))


def load_default_dict(stem: str) -> dict[str, Any]:
    """Read a bundled YAML file by its name without the extension."""
    return read_yml(path=STATIC_DIR.joinpath(f"{stem}.yml"))


def render_luigi_log_cfg(
    log_dir_path: str | os.PathLike[str],
    run_name: str,
    console_log_level: str = "WARNING",
    file_log_level: str = "DEBUG",
) -> Path:
    """Render the Luigi logging config of one run into its log directory.

    Each run logs to its own ``luigi.<run_name>.<timestamp>.log.txt`` so that
    repeated invocations from cron never overwrite an earlier log.

    Args:
        log_dir_path: Directory of the config and the log files
        run_name: Name of the run used in the log file name
        console_log_level: Log level for console output
        file_log_level: Log level for file output

    Returns:
        Path to the rendered config
    """
    log_dir = Path(log_dir_path).resolve()
    if not log_dir.is_dir():
        print_log(f"Make a directory:\t{log_dir}")
        log_dir.mkdir(parents=True, exist_ok=True)
    log_cfg = log_dir.joinpath("luigi.log.cfg")
    log_txt = log_dir.joinpath(
        f"luigi.{run_name}.{datetime.now().strftime('%Y%m%d_%H%M%S')}.log.txt"
    )
    print_log(f"{'Overwrite' if log_cfg.exists() else 'Render'} a file:\t{log_cfg}")
    template = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR), encoding="utf8")
    ).get_template("luigi.log.cfg.j2")
    log_cfg.write_text(
        template.render({
            "console_log_level": console_log_level,
            "file_log_level": file_log_level,
            "log_txt_path": str(log_txt),
        })
        + os.linesep,
        encoding="utf-8",
    )
    return log_cfg


def build_luigi_tasks(
    check_scheduling_succeeded: bool = True,
    hide_summary: bool = False,
    **kwargs: object,
) -> LuigiRunResult:
    """Run Luigi tasks on the local Luigi scheduler.

    Failed tasks are reported but tolerated, since a unit that failed is
    retried by the next invocation. Only a scheduling failure is fatal.

    Args:
        check_scheduling_succeeded: Assert that scheduling succeeded
        hide_summary: Skip printing the execution summary
        **kwargs: Additional arguments passed to luigi.build()

    Returns:
        Detailed result of the build
    """
    r = luigi.build(local_scheduler=True, detailed_summary=True, **kwargs)
    if not hide_summary:
        print(
            os.linesep + os.linesep.join(["Execution summary:", r.summary_text, str(r)])
        )
    if check_scheduling_succeeded:
        assert r.scheduling_succeeded, r.one_line_summary
    if r.status in {
        LuigiStatusCode.FAILED,
        LuigiStatusCode.FAILED_AND_SCHEDULING_FAILED,
    }:
        logging.getLogger(__name__).warning(
            "Failed units are retried by the next run:\t%s", r.one_line_summary
        )
    return r
