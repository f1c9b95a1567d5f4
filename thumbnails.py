"""
On-disk thumbnail cache with a LIFO generation queue.

Thumbnails are keyed by the MD5 of the bucket-qualified relative path and
stored two levels deep (``ab/cd/abcd....jpg``).  Misses are pushed onto the
front of a stack and generated one at a time by a single worker task, so the
photo the user is looking at right now is resized before older requests.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import sys
import traceback
from collections import deque
from pathlib import Path
from typing import Callable

from PIL import Image, ImageOps

from photo_types import (
    OriginalNotFound,
    ThumbnailGenerationFailed,
    validate_relative_path,
)

THUMBNAIL_SIZE = 160
THUMBNAIL_QUALITY = 80

# generate(src, dst, size, quality)
ThumbnailGenerator = Callable[[Path, Path, int, int], None]


def generate_thumbnail(src: Path, dst: Path, size: int, quality: int) -> None:
    """Write a cover-fit *size* x *size* JPEG of *src* to *dst*."""
    dst.parent.mkdir(parents=True, exist_ok=True)
    tmp = dst.with_name(f".{dst.name}.{os.getpid()}.tmp")
    try:
        with Image.open(src) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode != "RGB":
                img = img.convert("RGB")
            thumb = ImageOps.fit(img, (size, size), Image.Resampling.LANCZOS)
            thumb.save(tmp, "JPEG", quality=quality)
        os.replace(tmp, dst)
    finally:
        if tmp.exists():
            tmp.unlink()


def cache_key(rel_path: str) -> str:
    return hashlib.md5(rel_path.encode("utf-8")).hexdigest()


class ThumbnailCache:
    """Lazily generated thumbnails for photos under *root*."""

    def __init__(
        self,
        root: Path,
        cache_dir: Path,
        *,
        size: int = THUMBNAIL_SIZE,
        quality: int = THUMBNAIL_QUALITY,
        generate: ThumbnailGenerator = generate_thumbnail,
    ) -> None:
        self.root = root
        self.cache_dir = cache_dir
        self.size = size
        self.quality = quality
        self._generate = generate
        self._stack: deque[tuple[Path, Path]] = deque()
        self._pending: dict[Path, asyncio.Future] = {}
        self._worker: asyncio.Task | None = None

    def cache_path_for(self, rel_path: str) -> Path:
        h = cache_key(rel_path)
        return self.cache_dir / h[:2] / h[2:4] / f"{h}.jpg"

    def pending_count(self) -> int:
        return len(self._pending)

    async def get(self, rel_path: str) -> Path:
        """Return the cached thumbnail for *rel_path*, generating it if needed."""
        rel_path = validate_relative_path(rel_path)
        src = self.root / rel_path
        if not await asyncio.to_thread(src.is_file):
            raise OriginalNotFound(f"Original not found: {rel_path}")

        dst = self.cache_path_for(rel_path)
        if await asyncio.to_thread(dst.is_file):
            return dst

        future = self._pending.get(dst)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._pending[dst] = future
            self._stack.appendleft((src, dst))
        elif (src, dst) in self._stack:
            # Asked again while still queued: it is what the user sees now.
            self._stack.remove((src, dst))
            self._stack.appendleft((src, dst))
        self._ensure_worker()
        return await asyncio.shield(future)

    def discard(self, rel_path: str) -> bool:
        """Delete the cached thumbnail for *rel_path*. Return True if one existed."""
        dst = self.cache_path_for(validate_relative_path(rel_path))
        try:
            dst.unlink()
        except FileNotFoundError:
            return False
        return True

    # ── Worker ────────────────────────────────────────────────

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._stack:
            src, dst = self._stack.popleft()
            future = self._pending.get(dst)
            try:
                await asyncio.to_thread(
                    self._generate, src, dst, self.size, self.quality
                )
            except Exception as e:
                print(f"[thumb] Failed to generate {src}: {e}", file=sys.stderr)
                if future is not None and not future.done():
                    future.set_exception(
                        ThumbnailGenerationFailed(f"Cannot create thumbnail: {e}")
                    )
            else:
                if future is not None and not future.done():
                    future.set_result(dst)
            finally:
                self._pending.pop(dst, None)

    async def close(self) -> None:
        """Stop the worker and fail anything still waiting."""
        self._stack.clear()
        waiting = list(self._pending.values())
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            except Exception:
                traceback.print_exc()
        for future in waiting:
            if not future.done():
                future.set_exception(
                    ThumbnailGenerationFailed("Thumbnail queue shut down")
                )
        self._pending.clear()
