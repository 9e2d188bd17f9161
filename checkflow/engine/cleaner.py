"""Removal of intermediate files once they are no longer needed."""

import logging
import os
import shutil
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from .artifact import CompletionOracle


class CleanableUnit(Protocol):
    sentinel: Path | None

    def intermediates(self) -> Iterable[Path]: ...

    def deep_intermediates(self) -> Iterable[Path]: ...

    def finals(self) -> Iterable[Path]: ...


class RecoveryCleaner:
    """Delete intermediates of a unit without touching its final results.

    Args:
        oracle: Completion oracle used to check the final results
        dry_run: Only log what would be removed
    """

    def __init__(
        self, oracle: CompletionOracle | None = None, dry_run: bool = False
    ) -> None:
        self.oracle = oracle or CompletionOracle()
        self.dry_run = dry_run
        self.__logger = logging.getLogger(__name__)

    def clean(self, unit: CleanableUnit) -> list[Path]:
        """Remove the intermediates of a unit.

        Returns:
            Removed paths
        """
        return self._remove(unit.intermediates(), protected=self._protected(unit))

    def mr_proper(self, unit: CleanableUnit) -> list[Path]:
        """Remove every intermediate, but only once all final results exist.

        Returns:
            Removed paths, or an empty list if the unit is not finished
        """
        finals = list(unit.finals())
        if not self.oracle.all_complete(finals):
            self.__logger.warning(
                "Skip a deep clean of an unfinished unit:\t%s",
                self.oracle.missing(finals),
            )
            return []
        protected = self._protected(unit)
        return [
            *self._remove(unit.intermediates(), protected=protected),
            *self._remove(unit.deep_intermediates(), protected=protected),
        ]

    @staticmethod
    def _protected(unit: CleanableUnit) -> set[Path]:
        paths = [*unit.finals(), *([unit.sentinel] if unit.sentinel else [])]
        return {Path(p).resolve() for p in paths}

    def _remove(
        self, paths: Iterable[str | os.PathLike[str]], protected: set[Path]
    ) -> list[Path]:
        removed = []
        for p in map(Path, paths):
            r = p.resolve()
            if r in protected or any(r in f.parents for f in protected):
                self.__logger.debug("Keep a final result:\t%s", p)
                continue
            elif not p.exists():
                continue
            if self.dry_run:
                self.__logger.info("Would remove:\t%s", p)
            elif p.is_dir():
                self.__logger.info("Remove:\t%s", p)
                shutil.rmtree(p)
            else:
                self.__logger.info("Remove:\t%s", p)
                p.unlink()
            removed.append(p)
        return removed
