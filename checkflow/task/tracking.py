"""SQLite tracking store of lane status and mapping statistics.

Each update runs in one ``BEGIN IMMEDIATE`` transaction on a fresh connection,
so concurrent Luigi workers serialize on the database lock. Any failure rolls
the transaction back and surfaces as TransactionalMetadataError.
"""

import logging
import math
import os
import sqlite3
from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from pathlib import Path

from ..engine.errors import TransactionalMetadataError

MAPSTATS_FIELDS = (
    "raw_reads",
    "raw_bases",
    "reads_mapped",
    "reads_paired",
    "bases_mapped",
    "mean_insert",
    "sd_insert",
)
SAMTOOLS_SN_KEYS = {
    "raw total sequences": "raw_reads",
    "total length": "raw_bases",
    "reads mapped": "reads_mapped",
    "reads mapped and paired": "reads_paired",
    "bases mapped (cigar)": "bases_mapped",
    "insert size average": "mean_insert",
    "insert size standard deviation": "sd_insert",
}
LANE_FLAGS = ("imported", "mapped")

SCHEMA = """
CREATE TABLE IF NOT EXISTS lane (
    name TEXT PRIMARY KEY,
    imported INTEGER NOT NULL DEFAULT 0,
    mapped INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS mapstats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    lane TEXT NOT NULL,
    mapper TEXT NOT NULL,
    mapper_version TEXT NOT NULL,
    assembly TEXT NOT NULL,
    raw_reads INTEGER,
    raw_bases INTEGER,
    reads_mapped INTEGER,
    reads_paired INTEGER,
    bases_mapped INTEGER,
    mean_insert REAL,
    sd_insert REAL,
    UNIQUE (lane, mapper, mapper_version, assembly)
);
CREATE TABLE IF NOT EXISTS file (
    lane TEXT NOT NULL,
    name TEXT NOT NULL,
    md5 TEXT,
    raw_reads INTEGER,
    raw_bases INTEGER,
    mean_insert REAL,
    sd_insert REAL,
    imported INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (lane, name)
);
"""


def values_agree(stored: object, new: object) -> bool:
    """Compare a stored statistic with a new one.

    Integers must match exactly and floats up to a relative tolerance of 1e-9.
    """
    if stored is None or new is None:
        return stored is None and new is None
    elif isinstance(stored, int) and isinstance(new, int):
        return stored == new
    else:
        return math.isclose(float(stored), float(new), rel_tol=1e-9)


def _number(text: str) -> int | float:
    try:
        return int(text)
    except ValueError:
        return float(text)


def parse_samtools_stats(path: str | os.PathLike[str]) -> dict[str, int | float]:
    """Read the summary numbers of a ``samtools stats`` report.

    Args:
        path: Path to the report

    Returns:
        Mapping of tracking field name to value
    """
    stats = {}
    with Path(path).open(encoding="utf-8") as f:
        for line in f:
            if not line.startswith("SN\t"):
                continue
            cols = line.rstrip("\n").split("\t")
            key = cols[1].rstrip(":")
            if key in SAMTOOLS_SN_KEYS and len(cols) > 2:
                stats[SAMTOOLS_SN_KEYS[key]] = _number(cols[2])
    return stats


def combine_stats(
    stats_list: Iterable[Mapping[str, int | float]],
) -> dict[str, int | float]:
    """Sum the counts of several reports, keeping the paired insert size."""
    combined: dict[str, int | float] = {}
    for s in stats_list:
        for k in ("raw_reads", "raw_bases", "reads_mapped", "reads_paired"):
            combined[k] = combined.get(k, 0) + s.get(k, 0)
        combined["bases_mapped"] = combined.get("bases_mapped", 0) + s.get(
            "bases_mapped", 0
        )
        if s.get("mean_insert"):
            combined["mean_insert"] = s["mean_insert"]
            combined["sd_insert"] = s.get("sd_insert")
    return combined


class TrackingStore:
    """Lane and mapping metadata kept in a SQLite database.

    Args:
        db_path: Path to the database file (created if missing)
        timeout: Seconds to wait for the database lock
    """

    def __init__(self, db_path: str | os.PathLike[str], timeout: float = 60.0) -> None:
        self.db_path = Path(db_path).resolve()
        self.timeout = timeout
        self.__logger = logging.getLogger(__name__)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        con = self._connect()
        try:
            con.executescript(SCHEMA)
        except sqlite3.Error as e:
            msg = f"tracking store could not be created ({self.db_path}): {e}"
            raise TransactionalMetadataError(msg) from e
        finally:
            con.close()

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(
            str(self.db_path), timeout=self.timeout, isolation_level=None
        )
        con.row_factory = sqlite3.Row
        return con

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Yield a connection inside a transaction committed on success.

        Raises:
            TransactionalMetadataError: If the database operation fails
        """
        con = self._connect()
        try:
            con.execute("BEGIN IMMEDIATE")
            yield con
            con.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback(con)
            msg = f"tracking store update failed ({self.db_path}): {e}"
            raise TransactionalMetadataError(msg) from e
        except BaseException:
            self._rollback(con)
            raise
        finally:
            con.close()

    def _rollback(self, con: sqlite3.Connection) -> None:
        if con.in_transaction:
            self.__logger.warning("Roll back a transaction:\t%s", self.db_path)
            con.execute("ROLLBACK")

    def is_processed(self, lane: str, flag: str) -> bool:
        if flag not in LANE_FLAGS:
            msg = f"unknown lane flag: {flag}"
            raise ValueError(msg)
        with self.transaction() as con:
            row = con.execute(
                f"SELECT {flag} FROM lane WHERE name = ?", (lane,)
            ).fetchone()
        return bool(row and row[0])

    def mapping_id(
        self, lane: str, mapper: str, mapper_version: str, assembly: str
    ) -> int:
        """Return the mapstats id of a lane and mapping setup, creating it."""
        key = (lane, mapper, mapper_version, assembly)
        with self.transaction() as con:
            con.execute("INSERT OR IGNORE INTO lane (name) VALUES (?)", (lane,))
            con.execute(
                "INSERT OR IGNORE INTO mapstats"
                " (lane, mapper, mapper_version, assembly) VALUES (?, ?, ?, ?)",
                key,
            )
            row = con.execute(
                "SELECT id FROM mapstats WHERE lane = ? AND mapper = ?"
                " AND mapper_version = ? AND assembly = ?",
                key,
            ).fetchone()
        return int(row["id"])

    def mapstats(self, mapstats_id: int) -> dict[str, object]:
        with self.transaction() as con:
            row = con.execute(
                "SELECT * FROM mapstats WHERE id = ?", (mapstats_id,)
            ).fetchone()
        return dict(row) if row else {}

    def record_mapping(
        self, lane: str, mapstats_id: int, stats: Mapping[str, int | float]
    ) -> bool:
        """Store mapping statistics and mark the lane mapped.

        The statistics are only rewritten if they differ from the stored ones.

        Returns:
            True if the statistics were rewritten
        """
        if not stats.get("raw_bases"):
            msg = f"no raw bases recorded for lane {lane}; the bam must be empty"
            raise TransactionalMetadataError(msg)
        with self.transaction() as con:
            row = con.execute(
                "SELECT * FROM mapstats WHERE id = ? AND lane = ?",
                (mapstats_id, lane),
            ).fetchone()
            if row is None:
                msg = f"mapstats {mapstats_id} does not belong to lane {lane}"
                raise TransactionalMetadataError(msg)
            fields = [k for k in MAPSTATS_FIELDS if stats.get(k) is not None]
            needs_update = not all(values_agree(row[k], stats[k]) for k in fields)
            if needs_update:
                con.execute(
                    "UPDATE mapstats SET {} WHERE id = ?".format(
                        ", ".join(f"{k} = ?" for k in fields)
                    ),
                    (*[stats[k] for k in fields], mapstats_id),
                )
            con.execute("UPDATE lane SET mapped = 1 WHERE name = ?", (lane,))
        self.__logger.info(
            "%s mapping stats of %s", "Update" if needs_update else "Keep", lane
        )
        return needs_update

    def record_import(
        self, lane: str, files: Mapping[str, Mapping[str, object]]
    ) -> None:
        """Store per-file statistics and mark the files and the lane imported.

        Args:
            lane: Lane name
            files: Mapping of file name to ``md5`` and statistics
        """
        with self.transaction() as con:
            con.execute("INSERT OR IGNORE INTO lane (name) VALUES (?)", (lane,))
            for name, d in files.items():
                con.execute(
                    "INSERT OR REPLACE INTO file (lane, name, md5, raw_reads,"
                    " raw_bases, mean_insert, sd_insert, imported)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?, 1)",
                    (
                        lane,
                        name,
                        d.get("md5"),
                        d.get("raw_reads"),
                        d.get("raw_bases"),
                        d.get("mean_insert"),
                        d.get("sd_insert"),
                    ),
                )
            con.execute("UPDATE lane SET imported = 1 WHERE name = ?", (lane,))

    def files(self, lane: str) -> list[dict[str, object]]:
        with self.transaction() as con:
            rows = con.execute(
                "SELECT * FROM file WHERE lane = ? ORDER BY name", (lane,)
            ).fetchall()
        return [dict(r) for r in rows]
