#!/usr/bin/env python
"""
Re-entrant, file-checkpointed workflows on a batch compute cluster

Usage:
    checkflow init [--debug|--info] [--yml=<path>]
    checkflow map [--debug|--info] [--yml=<path>] [--dest-dir=<path>]
        [--workers=<int>] [--wait] [--clean|--mr-proper]
        [--resource=<spec>...] [--print-subprocesses]
    checkflow call [--debug|--info] [--yml=<path>] [--dest-dir=<path>]
        [--workers=<int>] [--wait] [--clean|--mr-proper]
        [--resource=<spec>...] [--print-subprocesses]
    checkflow import [--debug|--info] [--yml=<path>] [--dest-dir=<path>]
        [--workers=<int>] [--wait] [--clean|--mr-proper]
        [--resource=<spec>...] [--print-subprocesses]
    checkflow plan [--debug|--info] [--yml=<path>]
    checkflow clean [--debug|--info] [--yml=<path>] [--mr-proper]
        [--dest-dir=<path>] [--dry-run]
    checkflow -h|--help
    checkflow --version

Commands:
    init                    Create a config YAML template
    map                     Advance the mapping of every configured lane
                            (split, map, merge, recalibrate, statistics,
                             record, and cleanup)
    call                    Advance the chunked variant calling
    import                  Advance the import of every configured lane
    plan                    Print the chunk plan of the variant calling
    clean                   Remove the intermediates of every configured unit

Options:
    -h, --help              Print help and exit
    --version               Print version and exit
    --debug, --info         Execute a command with debug|info messages
    --yml=<path>            Specify a config YAML path [default: checkflow.yml]
    --dest-dir=<path>       Specify a destination directory path [default: .]
    --workers=<int>         Specify the maximum number of concurrent jobs
    --wait                  Wait for cluster jobs to end before returning
    --clean                 Remove intermediates of units that have finished
    --mr-proper             Remove every intermediate of finished units
    --dry-run               Only print what would be removed
    --resource=<spec>       Override a resource as stage:key=value
                            (e.g., map:memory_mb=8000)
    --print-subprocesses    Print STDOUT/STDERR outputs from subprocesses
"""

import logging
import os

from docopt import docopt

from .. import __version__
from .pipeline import clean_outputs, print_chunk_plan, run_workflow
from .util import write_config_yml


def main() -> None:
    args = docopt(__doc__, version=__version__)
    if args["--debug"]:
        log_level = "DEBUG"
    elif args["--info"]:
        log_level = "INFO"
    else:
        log_level = "WARNING"
    logging.basicConfig(
        format="%(asctime)s %(levelname)-8s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        level=log_level,
    )
    logger = logging.getLogger(__name__)
    logger.debug(f"args:{os.linesep}{args}")
    if args["init"]:
        write_config_yml(path=args["--yml"])
    elif args["plan"]:
        print_chunk_plan(config_yml_path=args["--yml"])
    elif args["clean"]:
        clean_outputs(
            config_yml_path=args["--yml"],
            dest_dir_path=args["--dest-dir"],
            mr_proper=args["--mr-proper"],
            dry_run=args["--dry-run"],
        )
    else:
        run_workflow(
            workflow=next(c for c in ("map", "call", "import") if args[c]),
            config_yml_path=args["--yml"],
            dest_dir_path=args["--dest-dir"],
            max_n_worker=args["--workers"],
            wait=args["--wait"],
            cleaning=(
                "mr_proper"
                if args["--mr-proper"]
                else ("clean" if args["--clean"] else "")
            ),
            resource_overrides=args["--resource"],
            print_subprocesses=args["--print-subprocesses"],
            console_log_level=log_level,
        )
