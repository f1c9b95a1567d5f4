"""
Persistent photo index for Photo Sorter.

Uses SQLite (stdlib) to remember which relative photo path lives in which
bucket, so that a restart can serve photos before the first filesystem
reconciliation has finished.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Iterable, Optional

from photo_types import LOCATIONS, IndexIOError, Location


# ── Schema version ────────────────────────────────────────────

_SCHEMA_VERSION = 1

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- One row per photo file: path relative to its bucket, bucket name
CREATE TABLE IF NOT EXISTS photos (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    path      TEXT NOT NULL,
    location  TEXT NOT NULL,
    added_at  TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(path, location)
);

CREATE INDEX IF NOT EXISTS idx_photos_location ON photos(location, path);
"""


class PhotoIndex:
    """SQLite-backed mapping of bucket -> set of relative photo paths.

    The connection is shared between the event loop and worker threads, so
    every statement runs under ``self._lock``.
    """

    def __init__(self, db_path: Path = Path("data/photo_index.db")) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._init_schema()
        except (OSError, sqlite3.Error) as e:
            raise IndexIOError(f"Cannot open photo index {db_path}: {e}") from e
        print(f"[index] SQLite index: {db_path}")

    # ── Schema init ───────────────────────────────────────────

    def _init_schema(self) -> None:
        """Create tables if they don't exist and record the schema version."""
        self._conn.executescript(_SCHEMA_SQL)
        row = self._conn.execute(
            "SELECT value FROM meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO meta (key, value) VALUES ('schema_version', ?)",
                (str(_SCHEMA_VERSION),),
            )
        self._conn.commit()

    def _run(self, fn):
        with self._lock:
            try:
                return fn(self._conn)
            except sqlite3.Error as e:
                raise IndexIOError(str(e)) from e

    # ── Reads ─────────────────────────────────────────────────

    def query(self, location: Location) -> set[str]:
        """Return every indexed path in *location*."""
        rows = self._run(
            lambda c: c.execute(
                "SELECT path FROM photos WHERE location = ?", (str(location),)
            ).fetchall()
        )
        return {r["path"] for r in rows}

    def count(self, location: Location) -> int:
        row = self._run(
            lambda c: c.execute(
                "SELECT COUNT(*) FROM photos WHERE location = ?", (str(location),)
            ).fetchone()
        )
        return int(row[0])

    def counts(self) -> dict[str, int]:
        """Return per-bucket record counts (every bucket present, zero if empty)."""
        rows = self._run(
            lambda c: c.execute(
                "SELECT location, COUNT(*) AS n FROM photos GROUP BY location"
            ).fetchall()
        )
        result = {str(loc): 0 for loc in LOCATIONS}
        for r in rows:
            result[r["location"]] = int(r["n"])
        return result

    def path_at(self, location: Location, offset: int) -> Optional[str]:
        """Return the *offset*-th path of *location* in path order, or None."""
        row = self._run(
            lambda c: c.execute(
                "SELECT path FROM photos WHERE location = ? "
                "ORDER BY path LIMIT 1 OFFSET ?",
                (str(location), int(offset)),
            ).fetchone()
        )
        return None if row is None else row["path"]

    def contains(self, path: str, location: Location) -> bool:
        row = self._run(
            lambda c: c.execute(
                "SELECT 1 FROM photos WHERE path = ? AND location = ?",
                (path, str(location)),
            ).fetchone()
        )
        return row is not None

    def records(self) -> list[tuple[str, Location]]:
        """Return all (path, location) pairs."""
        rows = self._run(
            lambda c: c.execute(
                "SELECT path, location FROM photos ORDER BY location, path"
            ).fetchall()
        )
        return [(r["path"], Location.parse(r["location"])) for r in rows]

    # ── Writes ────────────────────────────────────────────────

    def add_many(self, location: Location, paths: Iterable[str]) -> int:
        """Insert *paths* into *location* in one transaction. Return rows added."""
        params = [(p, str(location)) for p in paths]
        if not params:
            return 0

        def _insert(c: sqlite3.Connection) -> int:
            before = c.total_changes
            with c:
                c.executemany(
                    "INSERT OR IGNORE INTO photos (path, location) VALUES (?, ?)",
                    params,
                )
            return c.total_changes - before

        return self._run(_insert)

    def remove_many(self, location: Location, paths: Iterable[str]) -> int:
        """Delete *paths* from *location* in one transaction. Return rows removed."""
        params = [(p, str(location)) for p in paths]
        if not params:
            return 0

        def _delete(c: sqlite3.Connection) -> int:
            before = c.total_changes
            with c:
                c.executemany(
                    "DELETE FROM photos WHERE path = ? AND location = ?", params
                )
            return c.total_changes - before

        return self._run(_delete)

    def add(self, path: str, location: Location) -> None:
        self.add_many(location, [path])

    def remove(self, path: str, location: Location) -> None:
        self.remove_many(location, [path])

    def move(self, path: str, source: Location, target: Location) -> None:
        """Move one record from *source* to *target* in a single transaction.

        Afterwards exactly one row ``(path, target)`` exists and no row
        ``(path, source)``, whatever the starting state was.
        """
        src, dst = str(source), str(target)
        if src == dst:
            self.add(path, target)
            return

        def _move(c: sqlite3.Connection) -> None:
            with c:
                exists = c.execute(
                    "SELECT 1 FROM photos WHERE path = ? AND location = ?",
                    (path, dst),
                ).fetchone()
                if exists:
                    c.execute(
                        "DELETE FROM photos WHERE path = ? AND location = ?",
                        (path, src),
                    )
                    return
                cur = c.execute(
                    "UPDATE photos SET location = ? WHERE path = ? AND location = ?",
                    (dst, path, src),
                )
                if cur.rowcount == 0:
                    c.execute(
                        "INSERT INTO photos (path, location) VALUES (?, ?)",
                        (path, dst),
                    )

        self._run(_move)

    # ── Cleanup ───────────────────────────────────────────────

    def close(self) -> None:
        with self._lock:
            self._conn.close()
