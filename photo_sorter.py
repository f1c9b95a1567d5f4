#!/usr/bin/env python3
"""
Photo Sorter — triage a photo folder one picture at a time.

Unrated photos live under the photo root; rating a photo moves it into
``sorted/1`` .. ``sorted/5`` (mirroring its sub-folders).  This module holds
the core: filesystem scanning, index reconciliation, the rating state
machine, the weighted random selector and folder rank rollups.

Usage:
    python photo_sorter.py --root photos --reconcile
    python photo_sorter.py --root photos --report folder-rankings.csv

Web UI:
    python server.py
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import io
import os
import sys
import time
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, TextIO, Union

import numpy as np
from tqdm import tqdm

from photo_index import PhotoIndex
from photo_types import (
    LOCATIONS,
    MAX_RANK,
    MIN_RANK,
    SORTED_DIRNAME,
    IndexIOError,
    InvalidRating,
    Location,
    MoveFailed,
    NoPhotosAvailable,
    PhotoNotFound,
    is_canonical_int,
    is_image_name,
    validate_relative_path,
)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

DEFAULT_RANK_WEIGHTS: dict[int, int] = {2: 20, 3: 30, 4: 30, 5: 20}


@dataclass
class Settings:
    root: Path = Path("photos")
    db_path: Path = Path("data/photo_index.db")
    thumbnail_dir: Path = Path("data/thumbnails")
    host: str = "127.0.0.1"
    port: int = 3000
    sorted_probability: float = 0.20
    rank_weights: dict[int, int] = field(
        default_factory=lambda: dict(DEFAULT_RANK_WEIGHTS)
    )
    max_attempts: int = 5
    reconcile_timeout: float = 3.0
    batch_size: int = 500
    max_depth: int = 3


def _env_number(environ, name: str, default, cast):
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        print(
            f"[config] Ignoring invalid {name}={raw!r}, using {default}",
            file=sys.stderr,
        )
        return default


def load_settings(environ: Optional[dict] = None) -> Settings:
    """Build Settings from PHOTO_SORTER_* environment variables."""
    env = os.environ if environ is None else environ
    defaults = Settings()
    probability = _env_number(
        env,
        "PHOTO_SORTER_SORTED_PROBABILITY",
        defaults.sorted_probability,
        float,
    )
    if not 0.0 <= probability <= 1.0:
        print(
            f"[config] PHOTO_SORTER_SORTED_PROBABILITY must be in [0, 1], "
            f"using {defaults.sorted_probability}",
            file=sys.stderr,
        )
        probability = defaults.sorted_probability
    return Settings(
        root=Path(env.get("PHOTO_SORTER_ROOT", str(defaults.root))),
        db_path=Path(env.get("PHOTO_SORTER_DB", str(defaults.db_path))),
        thumbnail_dir=Path(
            env.get("PHOTO_SORTER_THUMBNAILS", str(defaults.thumbnail_dir))
        ),
        host=env.get("PHOTO_SORTER_HOST", defaults.host),
        port=_env_number(env, "PHOTO_SORTER_PORT", defaults.port, int),
        sorted_probability=probability,
    )


# ---------------------------------------------------------------------------
# Filesystem scanner
# ---------------------------------------------------------------------------


@dataclass
class ScanResult:
    paths: set[str] = field(default_factory=set)
    failed: list[str] = field(default_factory=list)  # unreadable dirs ("." = bucket root)


def bucket_dir(root: Path, location: Location) -> Path:
    return root / location.directory if location.directory else root


def scan_location(
    root: Path, location: Location, exclude: Iterable[Path] = ()
) -> ScanResult:
    """Recursively collect image paths (relative, POSIX) under one bucket.

    Hidden entries are skipped, and so is ``sorted/`` when scanning the base
    bucket.  Unreadable directories are logged and listed in ``failed``.
    """
    bucket = bucket_dir(root, location)
    result = ScanResult()
    if not bucket.is_dir():
        return result

    skip = {p.resolve() for p in exclude}
    if location.is_base:
        skip.add((root / SORTED_DIRNAME).resolve())

    stack = [bucket]
    while stack:
        folder = stack.pop()
        try:
            entries = list(folder.iterdir())
        except OSError as e:
            print(f"[scan] Cannot read {folder}: {e}", file=sys.stderr)
            result.failed.append(folder.relative_to(bucket).as_posix())
            continue
        for entry in entries:
            if entry.name.startswith("."):
                continue
            try:
                if entry.is_dir():
                    if entry.resolve() not in skip:
                        stack.append(entry)
                elif entry.is_file() and is_image_name(entry.name):
                    result.paths.add(entry.relative_to(bucket).as_posix())
            except OSError as e:
                print(f"[scan] Cannot stat {entry}: {e}", file=sys.stderr)
    return result


def _under_failed(path: str, failed: list[str]) -> bool:
    for prefix in failed:
        if prefix == "." or path == prefix or path.startswith(prefix + "/"):
            return True
    return False


# ---------------------------------------------------------------------------
# Rating state machine
# ---------------------------------------------------------------------------

LIKE = "like"
DISLIKE = "dislike"

RatingAction = Union[str, int]


def parse_rating(value) -> int:
    """Return *value* as an int rating in 1..5 or raise InvalidRating."""
    if isinstance(value, bool):
        raise InvalidRating(f"Invalid rating: {value!r}")
    if isinstance(value, int):
        rating = value
    elif isinstance(value, float) and value.is_integer():
        rating = int(value)
    elif isinstance(value, str) and is_canonical_int(value.strip()):
        rating = int(value.strip())
    else:
        raise InvalidRating(f"Invalid rating: {value!r}")
    if not MIN_RANK <= rating <= MAX_RANK:
        raise InvalidRating(f"Rating must be between {MIN_RANK} and {MAX_RANK}")
    return rating


def next_location(current: Location, action: RatingAction) -> Location:
    """Apply the like / dislike / rate(k) transition table."""
    if action == LIKE:
        if current.is_base:
            return Location.sorted(4)
        return Location.sorted(min(current.rank + 1, MAX_RANK))
    if action == DISLIKE:
        if current.is_base:
            return Location.sorted(2)
        return Location.sorted(max(current.rank - 1, MIN_RANK))
    return Location.sorted(parse_rating(action))


# ---------------------------------------------------------------------------
# Weighted rank choice
# ---------------------------------------------------------------------------


def validate_rank_weights(weights: dict[int, int]) -> dict[int, int]:
    """Weights over ranks 2..5 summing to 100; rank 1 is never a primary target."""
    if weights.get(MIN_RANK, 0):
        raise ValueError("Rank 1 must not carry sampling weight")
    for rank, weight in weights.items():
        if not MIN_RANK <= rank <= MAX_RANK:
            raise ValueError(f"Unknown rank in weights: {rank}")
        if weight < 0:
            raise ValueError(f"Negative weight for rank {rank}")
    if sum(weights.values()) != 100:
        raise ValueError("Rank weights must sum to 100")
    return weights


def choose_rank(
    rng: np.random.Generator, weights: dict[int, int], available: Iterable[int]
) -> Optional[int]:
    """Pick a rank from *available* proportionally to *weights* (None if none left)."""
    available = set(available)
    candidates = [r for r in sorted(weights) if r in available and weights[r] > 0]
    if not candidates:
        return None
    p = np.array([weights[r] for r in candidates], dtype=float)
    return int(rng.choice(candidates, p=p / p.sum()))


# ---------------------------------------------------------------------------
# Folder rank rollups
# ---------------------------------------------------------------------------

ROOT_FOLDER = "."


@dataclass
class FolderAggregate:
    folder_path: str
    photos_by_rank: dict[int, int] = field(
        default_factory=lambda: {r: 0 for r in range(MIN_RANK, MAX_RANK + 1)}
    )
    unsorted_count: int = 0

    @property
    def photo_count(self) -> int:
        return sum(self.photos_by_rank.values())

    @property
    def total_photos(self) -> int:
        return self.photo_count + self.unsorted_count

    @property
    def average_rank(self) -> Optional[float]:
        if self.photo_count == 0:
            return None
        total = sum(rank * n for rank, n in self.photos_by_rank.items())
        return round(total / self.photo_count, 2)

    def add(self, location: Location) -> None:
        if location.is_base:
            self.unsorted_count += 1
        else:
            self.photos_by_rank[location.rank] += 1

    def to_dict(self) -> dict:
        """Serialise for JSON / web responses."""
        return {
            "folder": self.folder_path,
            "average_rank": self.average_rank,
            "photo_count": self.photo_count,
            "unsorted_count": self.unsorted_count,
            "total_photos": self.total_photos,
            "photos_by_rank": {str(r): n for r, n in self.photos_by_rank.items()},
        }


def normalize_folder(folder: Optional[str]) -> str:
    cleaned = (folder or "").strip().strip("/")
    if cleaned in ("", ROOT_FOLDER):
        return ROOT_FOLDER
    return validate_relative_path(cleaned)


def folder_of(path: str, max_depth: int = 3) -> str:
    """Folder of a photo path, truncated to *max_depth* segments."""
    parts = path.split("/")[:-1]
    if not parts:
        return ROOT_FOLDER
    return "/".join(parts[:max_depth])


def _with_ancestors(folder: str) -> list[str]:
    if folder == ROOT_FOLDER:
        return [folder]
    parts = folder.split("/")
    return ["/".join(parts[:i]) for i in range(len(parts), 0, -1)]


def compute_folder_aggregates(
    records: Iterable[tuple[str, Location]], max_depth: int = 3
) -> dict[str, FolderAggregate]:
    """Roll every photo up into its folder and all of that folder's ancestors."""
    aggregates: dict[str, FolderAggregate] = {}
    for path, location in records:
        for folder in _with_ancestors(folder_of(path, max_depth)):
            agg = aggregates.get(folder)
            if agg is None:
                agg = aggregates[folder] = FolderAggregate(folder)
            agg.add(location)
    return aggregates


def rank_folders(aggregates: Iterable[FolderAggregate]) -> list[FolderAggregate]:
    """Best average first; folders without rated photos last."""
    return sorted(
        aggregates,
        key=lambda a: (
            a.average_rank is None,
            -(a.average_rank or 0),
            a.folder_path,
        ),
    )


def folder_images(
    records: Iterable[tuple[str, Location]],
    folder: str,
    *,
    recursive: bool = False,
    limit: Optional[int] = None,
) -> tuple[list[dict], int]:
    """List photos in *folder* (best rank first). Return (page, total)."""
    folder = normalize_folder(folder)
    matches: list[tuple[str, Location]] = []
    for path, location in records:
        parent = path.rpartition("/")[0] or ROOT_FOLDER
        if recursive:
            hit = folder == ROOT_FOLDER or path.startswith(folder + "/")
        else:
            hit = parent == folder
        if hit:
            matches.append((path, location))

    matches.sort(key=lambda m: (m[1].is_base, -(m[1].rank or 0), m[0]))
    page = matches if limit is None else matches[:limit]
    images = [
        {
            "photo": path,
            "directory": location.directory,
            "location": str(location),
            "rank": location.rank,
        }
        for path, location in page
    ]
    return images, len(matches)


# ---------------------------------------------------------------------------
# CSV report
# ---------------------------------------------------------------------------

_CSV_HEADER = [
    "folder",
    "average_rank",
    "photo_count",
    "unsorted_count",
    "total_photos",
] + [f"rank_{r}" for r in range(MIN_RANK, MAX_RANK + 1)]


def _write_rankings(f: TextIO, aggregates: Iterable[FolderAggregate]) -> None:
    writer = csv.writer(f)
    writer.writerow(_CSV_HEADER)
    for a in aggregates:
        writer.writerow(
            [
                a.folder_path,
                a.average_rank if a.average_rank is not None else "",
                a.photo_count,
                a.unsorted_count,
                a.total_photos,
            ]
            + [a.photos_by_rank[r] for r in range(MIN_RANK, MAX_RANK + 1)]
        )


def folder_rankings_csv(aggregates: Iterable[FolderAggregate]) -> str:
    buf = io.StringIO()
    _write_rankings(buf, aggregates)
    return buf.getvalue()


def write_csv(aggregates: Iterable[FolderAggregate], csv_path: Path):
    csv_path.parent.mkdir(parents=True, exist_ok=True)
    with open(csv_path, "w", newline="", encoding="utf-8") as f:
        _write_rankings(f, aggregates)
    print(f"Report saved -> {csv_path}")


# ---------------------------------------------------------------------------
# Progress callback type
# ---------------------------------------------------------------------------

# on_progress(current_index, total, location_name)
ProgressCallback = Callable[[int, int, str], None]


# ---------------------------------------------------------------------------
# Library: index + filesystem, owned by whoever serves it
# ---------------------------------------------------------------------------


class PhotoLibrary:
    """The photo root, its index and the operations that keep them in step."""

    def __init__(
        self,
        settings: Settings,
        index: Optional[PhotoIndex] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        validate_rank_weights(settings.rank_weights)
        self.settings = settings
        self.root = settings.root
        self.index = index if index is not None else PhotoIndex(settings.db_path)
        self.rng = rng if rng is not None else np.random.default_rng()
        self._reconcile_task: Optional[asyncio.Task] = None
        self._path_locks: dict[str, asyncio.Lock] = {}
        self._path_users: dict[str, int] = defaultdict(int)
        self.ensure_directories()

    def ensure_directories(self) -> None:
        for location in LOCATIONS:
            bucket_dir(self.root, location).mkdir(parents=True, exist_ok=True)

    def photo_path(self, path: str, location: Location) -> Path:
        return bucket_dir(self.root, location) / path

    async def records(self) -> list[tuple[str, Location]]:
        return await asyncio.to_thread(self.index.records)

    async def counts(self) -> dict[str, int]:
        return await asyncio.to_thread(self.index.counts)

    # ── Reconciliation ────────────────────────────────────────

    async def reconcile(self, on_progress: Optional[ProgressCallback] = None) -> dict:
        """Bring the index in line with the filesystem.

        Only one pass runs at a time; concurrent callers await the running one.
        """
        task = self._reconcile_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(
                self._reconcile(on_progress)
            )
            self._reconcile_task = task
        return await asyncio.shield(task)

    async def _reconcile(self, on_progress: Optional[ProgressCallback]) -> dict:
        t0 = time.time()
        exclude = (self.settings.thumbnail_dir, self.settings.db_path.parent)
        added = removed = 0

        for i, location in enumerate(LOCATIONS):
            # Query before scan: a move landing mid-pass leaves only no-op writes.
            try:
                indexed = await asyncio.to_thread(self.index.query, location)
            except IndexIOError as e:
                print(f"[index] Cannot read {location}: {e}", file=sys.stderr)
                continue
            scan = await asyncio.to_thread(scan_location, self.root, location, exclude)

            to_add = sorted(scan.paths - indexed)
            to_remove = sorted(
                p for p in indexed - scan.paths if not _under_failed(p, scan.failed)
            )
            added += await self._apply_batches(self.index.add_many, location, to_add)
            removed += await self._apply_batches(
                self.index.remove_many, location, to_remove
            )
            if on_progress:
                on_progress(i + 1, len(LOCATIONS), str(location))

        counts = await self.counts()
        total = sum(counts.values())
        print(
            f"[index] Reconciled in {time.time() - t0:.1f}s: "
            f"+{added} -{removed}, {total} photos"
        )
        return {"added": added, "removed": removed, "total": total, "counts": counts}

    async def _apply_batches(self, op, location: Location, paths: list[str]) -> int:
        done = 0
        size = max(1, self.settings.batch_size)
        for start in range(0, len(paths), size):
            chunk = paths[start : start + size]
            try:
                done += await asyncio.to_thread(op, location, chunk)
            except IndexIOError as e:
                print(
                    f"[index] Batch update for {location} failed: {e}", file=sys.stderr
                )
        return done

    # ── Selection ─────────────────────────────────────────────

    async def select_next(self) -> tuple[str, Location]:
        """Pick the next photo to show, or raise NoPhotosAvailable."""
        hit = await self._select_once()
        if hit is not None:
            return hit

        try:
            await asyncio.wait_for(
                self.reconcile(), timeout=self.settings.reconcile_timeout
            )
        except asyncio.TimeoutError:
            print(
                f"[select] Reconciliation still running after "
                f"{self.settings.reconcile_timeout}s",
                file=sys.stderr,
            )

        hit = await self._select_once()
        if hit is not None:
            return hit
        raise NoPhotosAvailable("No photos available")

    async def _select_once(self) -> Optional[tuple[str, Location]]:
        prefer_sorted = self.rng.random() < self.settings.sorted_probability
        if prefer_sorted:
            sources = (self._sample_sorted, self._sample_base)
        else:
            sources = (self._sample_base, self._sample_sorted)
        for sample in sources:
            hit = await sample()
            if hit is not None:
                return hit
        # Rank 1 is only reached once everything else is exhausted.
        return await self._sample_bucket(Location.sorted(MIN_RANK))

    async def _sample_base(self) -> Optional[tuple[str, Location]]:
        return await self._sample_bucket(Location.base())

    async def _sample_sorted(self) -> Optional[tuple[str, Location]]:
        counts = await self.counts()
        available = {
            r
            for r in self.settings.rank_weights
            if counts.get(str(Location.sorted(r)), 0) > 0
        }
        while True:
            rank = choose_rank(self.rng, self.settings.rank_weights, available)
            if rank is None:
                return None
            hit = await self._sample_bucket(Location.sorted(rank))
            if hit is not None:
                return hit
            available.discard(rank)

    async def _sample_bucket(self, location: Location) -> Optional[tuple[str, Location]]:
        """Uniform pick from one bucket, evicting records whose file is gone."""
        for _ in range(self.settings.max_attempts):
            n = await asyncio.to_thread(self.index.count, location)
            if n == 0:
                return None
            offset = int(self.rng.integers(n))
            path = await asyncio.to_thread(self.index.path_at, location, offset)
            if path is None:
                continue
            if await asyncio.to_thread(self.photo_path(path, location).is_file):
                return path, location
            print(f"[select] Evicting missing photo {location}/{path}")
            await self._index_write(self.index.remove, path, location)
        return None

    # ── Rating ────────────────────────────────────────────────

    async def apply_rating(
        self, path: str, current: Location, action: RatingAction
    ) -> Location:
        """Move *path* out of *current* according to *action*. Return the new location."""
        path = validate_relative_path(path)
        target = next_location(current, action)

        lock = self._path_locks.get(path)
        if lock is None:
            lock = self._path_locks[path] = asyncio.Lock()
        self._path_users[path] += 1
        try:
            async with lock:
                return await self._move(path, current, target)
        finally:
            self._path_users[path] -= 1
            if self._path_users[path] == 0:
                del self._path_users[path]
                self._path_locks.pop(path, None)

    async def _move(self, path: str, current: Location, target: Location) -> Location:
        src = self.photo_path(path, current)
        if not await asyncio.to_thread(src.is_file):
            raise PhotoNotFound(f"Photo not found: {current}/{path}")

        if target == current:
            await self._index_write(self.index.add, path, current)
            return current

        dst = self.photo_path(path, target)

        def _rename() -> None:
            dst.parent.mkdir(parents=True, exist_ok=True)
            if dst.exists():
                raise FileExistsError(f"{dst} already exists")
            src.rename(dst)

        try:
            await asyncio.to_thread(_rename)
        except OSError as e:
            print(f"[rating] Error moving {src} -> {dst}: {e}", file=sys.stderr)
            raise MoveFailed(f"Error moving photo: {e}") from e

        await self._index_write(self.index.move, path, current, target)
        print(f"[rating] {path}: {current} -> {target}")
        return target

    async def _index_write(self, fn, *args) -> None:
        try:
            await asyncio.to_thread(fn, *args)
        except IndexIOError as e:
            print(f"[index] Write failed ({fn.__name__}): {e}", file=sys.stderr)

    # ── Cleanup ───────────────────────────────────────────────

    async def stop_reconcile(self) -> None:
        """Cancel a running reconciliation pass, if any."""
        task = self._reconcile_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def close(self) -> None:
        self.index.close()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Photo Sorter -- maintain the photo index and export folder rankings.",
    )
    p.add_argument(
        "--root",
        type=str,
        default=None,
        help="Photo root with unrated photos and sorted/1..5 (default: $PHOTO_SORTER_ROOT or photos/)",
    )
    p.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite index file (default: $PHOTO_SORTER_DB or data/photo_index.db)",
    )
    p.add_argument(
        "--reconcile", action="store_true", help="Rescan the photo root first"
    )
    p.add_argument("--report", type=str, default=None, help="Write folder rankings CSV")
    p.add_argument("--max-depth", type=int, default=3)
    return p.parse_args(argv)


def main(argv: Optional[list[str]] = None):
    args = parse_args(argv)
    settings = load_settings()
    if args.root:
        settings.root = Path(args.root)
    if args.db:
        settings.db_path = Path(args.db)
    settings.max_depth = args.max_depth

    print("=" * 60)
    print("  Photo Sorter")
    print("=" * 60)
    print(f"  Root      : {settings.root}")
    print(f"  Index     : {settings.db_path}")
    print(f"  Reconcile : {args.reconcile}")
    print(f"  Report    : {args.report or '-'}")
    print("=" * 60)

    library = PhotoLibrary(settings)
    try:
        if args.reconcile:
            pbar = tqdm(total=len(LOCATIONS), desc="  Scanning", unit="bucket")

            def cli_progress(current: int, total: int, name: str):
                pbar.set_postfix_str(name)
                pbar.update(1)

            result = asyncio.run(library.reconcile(on_progress=cli_progress))
            pbar.close()
            tqdm.write(f"  +{result['added']} added, -{result['removed']} removed")

        counts = library.index.counts()
        for name, n in counts.items():
            print(f"  {name:<9}: {n}")
        print(f"  {'total':<9}: {sum(counts.values())}")

        if args.report:
            aggregates = compute_folder_aggregates(
                library.index.records(), settings.max_depth
            )
            write_csv(rank_folders(aggregates.values()), Path(args.report))
    finally:
        library.close()


if __name__ == "__main__":
    main()
