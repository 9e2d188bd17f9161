"""Ordered action tables evaluated against the artifacts on disk.

Each pass walks the actions of one unit in declared order. An action whose
outputs are complete is skipped, one whose inputs are incomplete blocks the
rest of the pass, and anything else is run. Nothing about the state of a unit
is stored besides its artifacts, so a pass may be repeated at any time.
"""

import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .artifact import ArtifactStore, CompletionOracle
from .errors import PartialOutputError, ToolFailure, TransactionalMetadataError

PathsOf = Callable[[Any], Iterable[str | os.PathLike[str]]]


class Status(Enum):
    """Result of running one action."""

    DONE = "done"
    PENDING = "pending"
    BLOCKED = "blocked"
    FAILED = "failed"


class ActionState(Enum):
    """State of an action as observed during one pass."""

    BLOCKED = "blocked"
    READY = "ready"
    DISPATCHED = "dispatched"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Action:
    """One step of a workflow.

    ``provides`` must name at least one artifact, otherwise the action always
    counts as done. ``settle`` runs before completion is checked and may
    publish provision markers derived from the state of later steps.

    An action with ``isolates_failures`` set is made of independent jobs. When
    some of them fail or are still running, the pass goes on so that later
    actions can use the outputs of the healthy ones. A later action must then
    check its own inputs piecewise and return ``Status.BLOCKED`` for the rest.
    """

    name: str
    requires: PathsOf
    provides: PathsOf
    run: Callable[[Any], Status]
    settle: Callable[[Any], None] | None = None
    isolates_failures: bool = False


@dataclass
class GraphReport:
    unit: str
    status: Status = Status.PENDING
    states: dict[str, ActionState] = field(default_factory=dict)
    errors: list[Exception] = field(default_factory=list)

    @property
    def done(self) -> bool:
        return self.status is Status.DONE

    def __str__(self) -> str:
        states = ", ".join(f"{k}={v.value}" for k, v in self.states.items())
        return f"{self.unit}: {self.status.value} ({states})"


class ActionGraph:
    """Evaluate an action table for one unit of work.

    Args:
        actions: Actions in execution order
        sentinel: Path, or callable of the context returning the path, of the
            marker published once every action is done
    """

    def __init__(
        self,
        actions: Iterable[Action],
        sentinel: Callable[[Any], str | os.PathLike[str]]
        | str
        | os.PathLike[str]
        | None = None,
    ) -> None:
        self.actions = list(actions)
        names = [a.name for a in self.actions]
        if len(set(names)) != len(names):
            msg = f"duplicate action names: {names}"
            raise ValueError(msg)
        self.sentinel = sentinel
        self.oracle = CompletionOracle()
        self.__logger = logging.getLogger(__name__)

    def sentinel_path(self, ctx: Any) -> Path | None:
        if self.sentinel is None:
            return None
        elif callable(self.sentinel):
            return Path(self.sentinel(ctx))
        else:
            return Path(self.sentinel)

    def run(self, ctx: Any, unit: str | None = None) -> GraphReport:
        """Run one pass over the actions.

        Args:
            ctx: Unit context handed to every action callable
            unit: Label of the unit used in logs

        Returns:
            Per-action states and the overall status of the unit
        """
        report = GraphReport(unit=unit or str(ctx))
        sentinel = self.sentinel_path(ctx)
        if sentinel and self.oracle.is_complete(sentinel):
            self.__logger.debug("Already done:\t%s", report.unit)
            report.states = {a.name: ActionState.DONE for a in self.actions}
            report.status = Status.DONE
            return report
        for a in self.actions:
            state = self._step(a, ctx, report)
            report.states[a.name] = state
            if state is not ActionState.DONE and not a.isolates_failures:
                break
        if any(s is not ActionState.DONE for s in report.states.values()):
            report.status = (
                Status.FAILED
                if ActionState.FAILED in report.states.values()
                else Status.PENDING
            )
            self.__logger.info("%s", report)
            return report
        if sentinel:
            ArtifactStore(sentinel.parent).touch(sentinel)
        report.status = Status.DONE
        self.__logger.info("%s", report)
        return report

    def _step(self, action: Action, ctx: Any, report: GraphReport) -> ActionState:
        try:
            if action.settle:
                action.settle(ctx)
            if self.oracle.all_complete(action.provides(ctx)):
                return ActionState.DONE
            missing = self.oracle.missing(action.requires(ctx))
            if missing:
                self.__logger.debug(
                    "%s/%s is blocked by:\t%s", report.unit, action.name, missing
                )
                return ActionState.BLOCKED
            self.__logger.info("Run %s:\t%s", action.name, report.unit)
            status = action.run(ctx)
            if status is Status.PENDING:
                return ActionState.DISPATCHED
            elif status is Status.BLOCKED:
                return ActionState.BLOCKED
            elif status is Status.FAILED:
                return ActionState.FAILED
            missing = self.oracle.missing(action.provides(ctx))
            if missing:
                msg = (
                    f"{action.name} finished but did not provide:"
                    f" {[str(m) for m in missing]}"
                )
                raise PartialOutputError(msg)
        except (ToolFailure, TransactionalMetadataError) as e:
            self.__logger.error("%s/%s failed:\t%s", report.unit, action.name, e)
            report.errors.append(e)
            return ActionState.FAILED
        return ActionState.DONE
