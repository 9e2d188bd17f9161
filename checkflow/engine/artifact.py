"""Artifacts, completion checks and atomic publishing.

Every output is written under a temporary name and renamed to its final name
only once it is fully written, so that a final name on disk always refers to a
complete file. A file counts as complete when it exists and is not empty.
"""

import logging
import os
import shlex
from collections.abc import Generator, Iterable, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

import luigi

PART_SUFFIX = ".part"
COMPOUND_EXTENSIONS = (".vcf.gz", ".fastq.gz", ".fq.gz", ".sam.gz", ".tsv.gz")


def is_complete(path: str | os.PathLike[str]) -> bool:
    """Return True if the path is a regular file with a non-zero size.

    Args:
        path: File path to check

    Returns:
        True if the file exists and is not empty
    """
    p = Path(path)
    return p.is_file() and p.stat().st_size > 0


def partial_path(path: str | os.PathLike[str], keep_extension: bool = False) -> Path:
    """Return the temporary name used while a file is being written.

    Args:
        path: Final file path
        keep_extension: Keep the file extension last (``x.part.bam``) for tools
            that infer the output format from it

    Returns:
        Temporary file path next to the final one
    """
    p = Path(path)
    if not keep_extension:
        return p.with_name(p.name + PART_SUFFIX)
    ext = next((e for e in COMPOUND_EXTENSIONS if p.name.endswith(e)), p.suffix)
    stem = p.name[: -len(ext)] if ext else p.name
    return p.with_name(f"{stem}{PART_SUFFIX}{ext}")


class Artifact(luigi.LocalTarget):
    """Luigi target whose existence means "complete, non-empty file".

    Luigi calls ``exists`` to decide whether a task is complete, so a driver
    task whose output is an Artifact reruns when its sentinel is empty.
    """

    def exists(self) -> bool:
        """Return True if the target is a complete, non-empty file."""
        return is_complete(self.path)

    def partial_path(self, keep_extension: bool = False) -> Path:
        """Return the temporary name of the target.

        Args:
            keep_extension: Keep the file extension last

        Returns:
            Temporary file path next to the target
        """
        return partial_path(self.path, keep_extension=keep_extension)

    @contextmanager
    def temporary_path(
        self, keep_extension: bool = False
    ) -> Generator[str, None, None]:
        """Yield a temporary path that is renamed to the target on success.

        A leftover temporary file is removed first, and the temporary file is
        removed again if the block raises.

        Args:
            keep_extension: Keep the file extension last

        Yields:
            Temporary file path as a string
        """
        tmp = self.partial_path(keep_extension=keep_extension)
        tmp.parent.mkdir(parents=True, exist_ok=True)
        tmp.unlink(missing_ok=True)
        try:
            yield str(tmp)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        os.replace(tmp, self.path)


class CompletionOracle:
    """Decide whether expected artifacts are already in place.

    Completion is read from the filesystem on every call and never cached.
    """

    def is_complete(self, path: str | os.PathLike[str]) -> bool:
        return is_complete(path)

    def all_complete(self, paths: Iterable[str | os.PathLike[str]]) -> bool:
        """Check a list of artifacts.

        Args:
            paths: Artifact paths

        Returns:
            True if every artifact is complete (also for an empty list)
        """
        return all(self.is_complete(p) for p in paths)

    def missing(self, paths: Iterable[str | os.PathLike[str]]) -> list[Path]:
        """List the artifacts that are absent or empty.

        Args:
            paths: Artifact paths

        Returns:
            Incomplete paths in the given order
        """
        return [Path(p) for p in paths if not self.is_complete(p)]


class ArtifactStore:
    """Path conventions and atomic publishing under one root directory.

    Args:
        root: Root directory of the unit of work (a lane or an output tree)
    """

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root).resolve()
        self.oracle = CompletionOracle()
        self.__logger = logging.getLogger(__name__)

    def path(self, *parts: str | os.PathLike[str]) -> Path:
        """Return a path under the root.

        Args:
            *parts: Path components relative to the root

        Returns:
            Absolute path
        """
        return self.root.joinpath(*[str(p) for p in parts])

    def artifact(self, *parts: str | os.PathLike[str]) -> Artifact:
        return Artifact(str(self.path(*parts)))

    @property
    def job_dir(self) -> Path:
        """Directory of the lock, exit and log files of jobs."""
        return self.root.joinpath(".jobs")

    @contextmanager
    def publish(
        self, *paths: str | os.PathLike[str], keep_extension: bool = False
    ) -> Generator[list[Path], None, None]:
        """Yield temporary paths and rename them to the final ones on success.

        The first path is the primary artifact and is renamed last, so its
        companions (indices) are already in place when it appears.

        Args:
            *paths: Final paths, primary first
            keep_extension: Keep file extensions last in the temporary names

        Yields:
            Temporary paths in the same order
        """
        finals = [Path(p) for p in paths]
        tmps = [partial_path(p, keep_extension=keep_extension) for p in finals]
        for t in tmps:
            t.parent.mkdir(parents=True, exist_ok=True)
            t.unlink(missing_ok=True)
        try:
            yield tmps
        except BaseException:
            for t in tmps:
                t.unlink(missing_ok=True)
            raise
        for t, f in reversed(list(zip(tmps, finals, strict=True))):
            os.replace(t, f)
            self.__logger.debug("Published:\t%s", f)

    @staticmethod
    def publish_command(pairs: Sequence[tuple[Path, Path]]) -> str:
        """Render the shell tail that moves temporary outputs into place.

        Args:
            pairs: ``(temporary, final)`` pairs, primary first

        Returns:
            Shell command string renaming companions first and the primary last
        """
        return " && ".join(
            f"mv -f {shlex.quote(str(t))} {shlex.quote(str(f))}"
            for t, f in reversed(pairs)
        )

    def discard_partials(self, paths: Iterable[str | os.PathLike[str]]) -> list[Path]:
        """Remove temporary files left behind by an interrupted write."""
        removed = []
        for p in paths:
            for t in {partial_path(p), partial_path(p, keep_extension=True)}:
                if t.is_file():
                    t.unlink()
                    removed.append(t)
                    self.__logger.info("Remove a partial file:\t%s", t)
        return removed

    def write_text(self, path: str | os.PathLike[str], text: str) -> Path:
        with self.publish(path) as (tmp,):
            tmp.write_text(text, encoding="utf-8")
        return Path(path)

    def touch(self, path: str | os.PathLike[str], message: str = "") -> Path:
        """Publish a non-empty marker file."""
        stamp = datetime.now(UTC).isoformat(timespec="seconds")
        return self.write_text(path, f"{message or stamp}{os.linesep}")

    @staticmethod
    def read_text(path: str | os.PathLike[str]) -> str:
        return Path(path).read_text(encoding="utf-8").strip()
