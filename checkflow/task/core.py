"""Base Luigi task of checkflow drivers.

Every driver runs one pass of an action graph over one unit of work. The base
class wires the pieces a pass needs (a scheduler backend, a dispatcher and a
fan-out executor) from the immutable config handed down as Luigi parameters,
and keeps the shell helpers used to report tool versions.
"""

import logging
import os
import sys
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import luigi
from shoper.shelloperator import ShellOperator

from ..engine.dispatch import JobDispatcher, ResourceTable, build_scheduler
from ..engine.errors import ToolFailure
from ..engine.fanout import FanoutExecutor
from ..engine.graph import GraphReport, Status


class CheckflowTask(luigi.Task):
    """Base task with logging, shell and dispatch helpers.

    Attributes:
        retry_count: Number of times Luigi retries the task on failure
    """

    retry_count = 0

    def __init__(self, *args: object, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)
        self.__sh = None
        self.__run_kwargs = {}

    @luigi.Task.event_handler(luigi.Event.PROCESSING_TIME)
    def print_execution_time(self, processing_time: float) -> None:
        """Print the elapsed time of a task when it finishes.

        Args:
            processing_time: Total processing time in seconds
        """
        logger = logging.getLogger("task-timer")
        message = (
            f"{self.__class__.__module__}.{self.__class__.__name__} - "
            f"total elapsed time:\t{timedelta(seconds=processing_time)}"
        )
        logger.info(message)
        print(message, flush=True)

    @classmethod
    def print_log(cls, message: str, new_line: bool = True) -> None:
        """Print a log message to both the logger and stdout.

        Args:
            message: Message to log and print
            new_line: Add a new line before the message
        """
        logger = logging.getLogger(cls.__name__)
        logger.info(message)
        print((os.linesep if new_line else "") + f">>\t{message}", flush=True)

    def setup_shell(
        self,
        run_id: str | None = None,
        log_dir_path: str | os.PathLike[str] | None = None,
        commands: str | Sequence[str] | None = None,
        quiet: bool = True,
        executable: str = "/bin/bash",
        **kwargs: object,
    ) -> None:
        """Configure the shell operator and print the versions of commands.

        Args:
            run_id: Identifier of the run used in the log file name
            log_dir_path: Directory of the shell log file
            commands: Executables whose versions are printed
            quiet: Suppress stdout from commands
            executable: Shell executable to use
            **kwargs: Additional arguments for shell execution
        """
        log_txt = (
            str(
                Path(log_dir_path)
                .joinpath(f"{self.__class__.__name__}.{run_id}.sh.log.txt")
                .resolve()
            )
            if log_dir_path and run_id
            else None
        )
        if log_dir_path:
            Path(log_dir_path).mkdir(parents=True, exist_ok=True)
        self.__sh = ShellOperator(
            log_txt=log_txt,
            quiet=quiet,
            logger=logging.getLogger(self.__class__.__name__),
            print_command=True,
            executable=executable,
        )
        self.__run_kwargs = {k: v for k, v in kwargs.items() if k in {"cwd", "env"}}
        if commands:
            self.run_shell(args=list(self.generate_version_commands(commands)))

    def run_shell(self, *args: object, **kwargs: object) -> None:
        """Execute shell commands with the configured ShellOperator."""
        logger = logging.getLogger(self.__class__.__name__)
        start_datetime = datetime.now(UTC)
        self.__sh.run(
            *args,
            **kwargs,
            **{k: v for k, v in self.__run_kwargs.items() if k not in kwargs},
        )
        logger.info("shell elapsed time:\t%s", datetime.now(UTC) - start_datetime)

    def print_env_versions(self) -> None:
        """Print the versions of Python and the operating system."""
        version_files = [
            Path("/proc/version"),
            *[
                o
                for o in Path("/etc").iterdir()
                if o.name.endswith(("-release", "_version"))
            ],
        ]
        self.run_shell(
            args=[
                f"{sys.executable} --version",
                "uname -a",
                *[f"cat {o}" for o in version_files if o.is_file()],
            ]
        )

    @staticmethod
    def generate_version_commands(commands: str | Sequence[str]) -> Iterable[str]:
        """Generate version commands of the tools invoked by jobs.

        Args:
            commands: Command name(s) to generate version commands for

        Yields:
            Version command strings
        """
        for c in [commands] if isinstance(commands, str) else commands:
            n = Path(c).name
            if n == "bwa":
                yield f'{c} 2>&1 | grep -e "Program:" -e "Version:"'
            elif n == "bwa-mem2":
                yield f"{c} version"
            elif n == "ssaha2":
                yield f"{c} -v"
            elif n in {"samtools", "bcftools", "tabix", "bgzip"}:
                yield f"{c} --version | head -1"
            elif n == "iget":
                yield f"{c} -h | tail -1"
            else:
                yield f"{c} --version"

    @staticmethod
    def generate_gatk_java_options(n_cpu: int = 1, memory_mb: int = 4096) -> str:
        """Generate Java options for GATK jobs.

        Args:
            n_cpu: Number of CPU threads for parallel GC
            memory_mb: Memory requested for the job

        Returns:
            String of Java options
        """
        return " ".join([
            "-Dsamjdk.compression_level=5",
            "-Dsamjdk.use_async_io_read_samtools=true",
            "-Dsamjdk.use_async_io_write_samtools=true",
            "-Dsamjdk.use_async_io_write_tribble=false",
            f"-Xmx{int(memory_mb * 0.8)}m",
            "-XX:+UseParallelGC",
            f"-XX:ParallelGCThreads={int(n_cpu)}",
        ])

    @staticmethod
    def build_fanout(
        scheduler_config: Mapping[str, object],
        resources: Mapping[str, Mapping[str, object]] | None = None,
        region_resources: Mapping[str, Mapping[str, object]] | None = None,
    ) -> FanoutExecutor:
        """Build a fan-out executor from the scheduler section of the config.

        Args:
            scheduler_config: ``backend``, ``workers``, ``lock_ttl_hours``,
                ``poll_interval`` and ``wait`` settings
            resources: Stage resource defaults
            region_resources: Region resource overrides

        Returns:
            Executor wrapping a dispatcher bound to the backend
        """
        backend = str(scheduler_config.get("backend") or "local")
        kwargs = (
            {
                "n_worker": int(scheduler_config.get("workers") or 1),
                "quiet": bool(scheduler_config.get("quiet", True)),
            }
            if backend == "local"
            else {}
        )
        return FanoutExecutor(
            JobDispatcher(
                scheduler=build_scheduler(backend, **kwargs),
                resources=ResourceTable(
                    stages=resources, region_overrides=region_resources
                ),
                lock_ttl_hours=float(scheduler_config.get("lock_ttl_hours") or 72),
                block=bool(scheduler_config.get("wait")),
                poll_interval=float(scheduler_config.get("poll_interval") or 30),
            )
        )

    def settle_report(self, report: GraphReport) -> None:
        """Log the result of a pass and fail the task if the unit failed.

        Raises:
            ToolFailure: If an action of the unit failed
        """
        if report.status is Status.DONE:
            self.print_log(f"Done:\t{report.unit}")
        elif report.status is Status.PENDING:
            self.print_log(f"In progress:\t{report}")
        else:
            msg = f"{report}: " + "; ".join(str(e) for e in report.errors)
            raise ToolFailure(msg)
