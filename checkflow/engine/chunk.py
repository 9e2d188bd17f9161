"""Partitioning of a genome into ploidy-aware chunks.

A region (a whole chromosome or a ``chrom:from-to`` span) is first cut at every
ploidy transition that falls inside it, then each piece is windowed with a
fixed width and step. Coordinates are 1-based and inclusive. The same inputs
always give the same ordered chunk list, which fixes the order of the final
concatenation.
"""

import logging
import os
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError, PlanningError

SEXES = ("M", "F")


@dataclass(frozen=True)
class Region:
    """A contiguous span of one sequence."""

    name: str
    start: int = 1
    end: int | None = None

    def __str__(self) -> str:
        if self.end is None:
            return self.name
        return f"{self.name}:{self.start}-{self.end}"


@dataclass(frozen=True)
class Chunk:
    """An independently processable window of a region."""

    region: str
    start: int
    end: int
    ploidy: tuple[tuple[str, int], ...] = ()

    @property
    def name(self) -> str:
        return f"{self.region}:{self.start}-{self.end}"

    def __len__(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class PloidyEntry:
    region: str
    start: int
    end: int
    ploidy: Mapping[str, int] = field(default_factory=dict)


def parse_region(text: str, lengths: Mapping[str, int] | None = None) -> Region:
    """Parse ``chrom``, ``chrom:from-to`` or ``chrom:from`` into a Region.

    Args:
        text: Region string
        lengths: Sequence lengths used to fill in a missing end

    Returns:
        Parsed region

    Raises:
        PlanningError: If the string is malformed or the bounds are inverted
    """
    m = re.fullmatch(r"([^:\s]+)(?::([\d,]+)(?:-([\d,]+))?)?", str(text).strip())
    if not m:
        msg = f"invalid region: {text}"
        raise PlanningError(msg)
    name = m.group(1)
    start = int(m.group(2).replace(",", "")) if m.group(2) else 1
    if m.group(3):
        end = int(m.group(3).replace(",", ""))
    else:
        end = (lengths or {}).get(name)
    if start < 1 or (end is not None and start > end):
        msg = f"inverted or non-positive region bounds: {text}"
        raise PlanningError(msg)
    return Region(name=name, start=start, end=end)


def read_fai(fai_path: str | os.PathLike[str]) -> dict[str, int]:
    """Read sequence lengths from a samtools FASTA index.

    Args:
        fai_path: Path to a ``.fai`` file

    Returns:
        Ordered mapping of sequence name to length
    """
    lengths = {}
    with Path(fai_path).open(encoding="utf-8") as f:
        for line in f:
            if line.strip():
                name, length = line.split("\t")[:2]
                lengths[name] = int(length)
    return lengths


class PloidyMap:
    """Per-sex ploidy of the genome, with a default for everything else.

    Args:
        entries: Ploidy overrides
        default_ploidy: Ploidy outside of every override
    """

    def __init__(
        self, entries: Iterable[PloidyEntry] = (), default_ploidy: int = 2
    ) -> None:
        self.entries = tuple(entries)
        self.default_ploidy = default_ploidy
        for e in self.entries:
            if e.start > e.end:
                msg = f"inverted ploidy span: {e.region}:{e.start}-{e.end}"
                raise PlanningError(msg)

    @classmethod
    def grch37(cls) -> "PloidyMap":
        """Return the GRCh37 sex-chromosome layout."""
        return cls(
            entries=[
                PloidyEntry("X", 1, 60000, {"M": 2, "F": 2}),
                PloidyEntry("X", 2699521, 154931043, {"M": 1, "F": 2}),
                PloidyEntry("Y", 1, 59373566, {"M": 1, "F": 0}),
                PloidyEntry("MT", 1, 16569, {"M": 1, "F": 1}),
            ]
        )

    @classmethod
    def from_records(cls, records: Sequence[Mapping[str, object]]) -> "PloidyMap":
        """Build a map from config records ``{region, from, to, M, F}``."""
        entries = []
        for r in records:
            try:
                entries.append(
                    PloidyEntry(
                        region=str(r["region"]),
                        start=int(r["from"]),
                        end=int(r["to"]),
                        ploidy={s: int(r[s]) for s in SEXES if s in r},
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                msg = f"invalid ploidy record: {r}"
                raise ConfigurationError(msg) from e
        return cls(entries=entries)

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> "PloidyMap":
        """Load a bcftools-style ploidy file (CHROM FROM TO SEX PLOIDY)."""
        spans: dict[tuple[str, int, int], dict[str, int]] = {}
        default_ploidy = 2
        with Path(path).open(encoding="utf-8") as f:
            for line in f:
                if not line.strip() or line.startswith("#"):
                    continue
                chrom, start, end, sex, ploidy = line.split()[:5]
                if chrom == "*":
                    default_ploidy = int(ploidy)
                else:
                    spans.setdefault((chrom, int(start), int(end)), {})[sex] = int(
                        ploidy
                    )
        return cls(
            entries=[PloidyEntry(c, s, e, p) for (c, s, e), p in spans.items()],
            default_ploidy=default_ploidy,
        )

    def overlapping(self, region: str, start: int, end: int) -> list[PloidyEntry]:
        return [
            e
            for e in self.entries
            if e.region == region and e.start <= end and start <= e.end
        ]

    def boundaries(self, region: str, start: int, end: int) -> list[int]:
        """Return the positions inside [start, end] where a new piece begins."""
        cuts = set()
        for e in self.overlapping(region, start, end):
            if start < e.start <= end:
                cuts.add(e.start)
            if start <= e.end < end:
                cuts.add(e.end + 1)
        return sorted(cuts)

    def ploidy_for(
        self, region: str, start: int, end: int
    ) -> tuple[tuple[str, int], ...]:
        """Return the sex-specific ploidy of a span that crosses no boundary."""
        merged: dict[str, int] = {}
        for e in self.overlapping(region, start, end):
            merged.update(e.ploidy)
        return tuple(sorted(merged.items()))

    def to_bcftools(self) -> str:
        """Render the map in the format of ``bcftools call --ploidy-file``."""
        lines = [
            f"{e.region}\t{e.start}\t{e.end}\t{s}\t{p}"
            for e in self.entries
            for s, p in sorted(e.ploidy.items())
        ] + [f"*\t*\t*\t{s}\t{self.default_ploidy}" for s in SEXES]
        return os.linesep.join(lines) + os.linesep


class SexLookup:
    """Sample to sex lookup backed by a mapping or a flat file.

    Args:
        sexes: Mapping of sample name to ``M`` or ``F``
        default: Sex assumed for samples missing from the mapping
    """

    def __init__(
        self, sexes: Mapping[str, str] | None = None, default: str | None = None
    ) -> None:
        self.__sexes = {k: self._normalize(v) for k, v in (sexes or {}).items()}
        self.default = self._normalize(default) if default else None

    @classmethod
    def from_file(
        cls, path: str | os.PathLike[str], default: str | None = None
    ) -> "SexLookup":
        sexes = {}
        with Path(path).open(encoding="utf-8") as f:
            for line in f:
                if line.strip() and not line.startswith("#"):
                    sample, sex = line.split()[:2]
                    sexes[sample] = sex
        return cls(sexes=sexes, default=default)

    @staticmethod
    def _normalize(sex: str) -> str:
        s = str(sex).strip().upper()[:1]
        if s not in SEXES:
            msg = f"unknown sex: {sex}"
            raise ConfigurationError(msg)
        return s

    def as_dict(self) -> dict[str, str]:
        return dict(self.__sexes)

    def __call__(self, sample: str) -> str:
        return self.lookup(sample)

    def lookup(self, sample: str) -> str:
        if sample in self.__sexes:
            return self.__sexes[sample]
        elif self.default:
            return self.default
        else:
            msg = f"sex could not be determined for sample: {sample}"
            raise ConfigurationError(msg)


class ChunkPlanner:
    """Split regions into bounded, ploidy-boundary-respecting windows.

    Args:
        chunk_size: Window width in bases
        overlap: Bases shared by adjacent windows of one piece
        ploidy_map: Ploidy transitions that no chunk may straddle

    Raises:
        PlanningError: If the window would not advance
    """

    def __init__(
        self, chunk_size: int, overlap: int = 0, ploidy_map: PloidyMap | None = None
    ) -> None:
        if chunk_size is None or int(chunk_size) <= 0:
            msg = f"chunk size must be positive: {chunk_size}"
            raise PlanningError(msg)
        elif int(overlap) < 0:
            msg = f"overlap must not be negative: {overlap}"
            raise PlanningError(msg)
        elif int(overlap) >= int(chunk_size):
            msg = f"overlap ({overlap}) must be smaller than chunk size ({chunk_size})"
            raise PlanningError(msg)
        self.chunk_size = int(chunk_size)
        self.overlap = int(overlap)
        self.ploidy_map = ploidy_map or PloidyMap()
        self.__logger = logging.getLogger(__name__)

    def plan(self, regions: Iterable[Region]) -> list[Chunk]:
        chunks = []
        for r in regions:
            if r.end is None:
                msg = f"length of the region is unknown: {r}"
                raise PlanningError(msg)
            elif r.start < 1 or r.start > r.end:
                msg = f"inverted or non-positive region bounds: {r}"
                raise PlanningError(msg)
            for start, end in self._pieces(r):
                chunks.extend(self._windows(r.name, start, end))
        self.__logger.debug("Planned %d chunks", len(chunks))
        return chunks

    def _pieces(self, region: Region) -> list[tuple[int, int]]:
        cuts = [
            region.start,
            *self.ploidy_map.boundaries(region.name, region.start, region.end),
            region.end + 1,
        ]
        return [(s, e - 1) for s, e in zip(cuts[:-1], cuts[1:], strict=True)]

    def _windows(self, name: str, start: int, end: int) -> list[Chunk]:
        step = self.chunk_size - self.overlap
        ploidy = self.ploidy_map.ploidy_for(name, start, end)
        windows = []
        pos = start
        while True:
            to = min(pos + self.chunk_size - 1, end)
            windows.append(Chunk(region=name, start=pos, end=to, ploidy=ploidy))
            if to >= end:
                return windows
            pos += step


def format_chunks(chunks: Iterable[Chunk]) -> str:
    """Serialize a plan with one ``name<TAB>ploidy`` line per chunk."""
    return "".join(
        "{}\t{}{}".format(
            c.name, ",".join(f"{s}={p}" for s, p in c.ploidy) or ".", os.linesep
        )
        for c in chunks
    )
