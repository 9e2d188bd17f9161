"""Luigi driver tasks of checkflow.

Each driver runs one pass of a workflow over one unit of work: a lane for
mapping and import, or the calling output directory. A unit that is still in
progress leaves its sentinel missing, so the next invocation picks it up again.
"""

from socket import gethostname

import luigi

from ..engine.artifact import Artifact
from ..engine.cleaner import RecoveryCleaner
from ..engine.fanout import FanoutExecutor
from ..engine.graph import GraphReport, Status
from .calling import CallingRun, run_calling
from .core import CheckflowTask
from .importer import LaneImport, run_lane_import
from .mapping import LaneMapping, run_lane_mapping
from .tracking import TrackingStore


class PrintEnvVersions(CheckflowTask):
    """Print the versions of the environment and of the tools jobs invoke.

    Parameters:
        command_paths: Executables whose versions are printed
        run_id: Identifier of this run (defaults to the hostname)
        sh_config: Shell configuration parameters
    """

    command_paths = luigi.ListParameter(default=[])
    run_id = luigi.Parameter(default=gethostname())
    sh_config = luigi.DictParameter(default={})
    __is_completed: bool = False

    def complete(self) -> bool:
        return self.__is_completed

    def run(self) -> None:
        self.print_log(f"Print environment versions:\t{self.run_id}")
        self.setup_shell(
            run_id=self.run_id, commands=self.command_paths, **self.sh_config
        )
        self.print_env_versions()
        self.__is_completed = True


class WorkflowPassTask(CheckflowTask):
    """Base driver running one pass of a workflow over one unit.

    Parameters:
        settings: Validated config shared by every unit
        sentinel_path: Sentinel written once the unit is complete
        cleaning: ``clean`` or ``mr_proper`` to clean the unit once complete
    """

    settings = luigi.DictParameter()
    sentinel_path = luigi.Parameter()
    cleaning = luigi.Parameter(default="")

    def output(self) -> Artifact:
        return Artifact(self.sentinel_path)

    def build_unit(self, fanout: FanoutExecutor) -> object:
        raise NotImplementedError

    def run_pass(self, unit: object) -> GraphReport:
        raise NotImplementedError

    def run(self) -> None:
        fanout = self.build_fanout(
            scheduler_config=self.settings.get("scheduler") or {},
            resources=self.settings.get("resources"),
            region_resources=self.settings.get("region_resources"),
        )
        try:
            unit = self.build_unit(fanout)
            self.print_log(f"Run a pass:\t{unit}")
            report = self.run_pass(unit)
        finally:
            fanout.dispatcher.scheduler.shutdown()
        if report.status is Status.DONE and self.cleaning:
            cleaner = RecoveryCleaner()
            if self.cleaning == "mr_proper":
                cleaner.mr_proper(unit)
            else:
                cleaner.clean(unit)
        self.settle_report(report)


class RunLaneMapping(WorkflowPassTask):
    """Map the reads of one lane.

    Parameters:
        lane: Lane record
        mapper_version: Mapper version resolved before the build
    """

    lane = luigi.DictParameter()
    mapper_version = luigi.Parameter()
    priority = 10

    def build_unit(self, fanout: FanoutExecutor) -> LaneMapping:
        return LaneMapping(
            lane=self.lane,
            settings=self.settings,
            tracking=TrackingStore(self.settings["tracking_db"]),
            fanout=fanout,
            mapper_version=self.mapper_version,
        )

    def run_pass(self, unit: LaneMapping) -> GraphReport:
        return run_lane_mapping(unit)


class RunChunkedCalling(WorkflowPassTask):
    """Call variants chunk by chunk across the configured populations."""

    def build_unit(self, fanout: FanoutExecutor) -> CallingRun:
        return CallingRun(settings=self.settings, fanout=fanout)

    def run_pass(self, unit: CallingRun) -> GraphReport:
        return run_calling(unit)


class RunLaneImport(WorkflowPassTask):
    """Fetch the files of one lane and record their summaries.

    Parameters:
        lane: Import lane record
    """

    lane = luigi.DictParameter()
    priority = 20

    def build_unit(self, fanout: FanoutExecutor) -> LaneImport:
        return LaneImport(
            lane=self.lane,
            settings=self.settings,
            tracking=TrackingStore(self.settings["tracking_db"]),
            fanout=fanout,
        )

    def run_pass(self, unit: LaneImport) -> GraphReport:
        return run_lane_import(unit)

