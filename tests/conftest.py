"""Shared fixtures for Photo Sorter tests."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

# Keep `import server` from creating photos/ and data/ in the working tree.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="photo-sorter-tests-"))
os.environ.setdefault("PHOTO_SORTER_ROOT", str(_SESSION_DIR / "photos"))
os.environ.setdefault("PHOTO_SORTER_DB", str(_SESSION_DIR / "index.db"))
os.environ.setdefault("PHOTO_SORTER_THUMBNAILS", str(_SESSION_DIR / "thumbnails"))

from photo_index import PhotoIndex  # noqa: E402
from photo_sorter import PhotoLibrary, Settings  # noqa: E402


# ── Tiny test image helpers ───────────────────────────────────


def _create_test_image(
    path: Path, width: int = 64, height: int = 64, color=(128, 128, 128)
) -> Path:
    """Create a minimal valid image at *path* (format from the suffix)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGB", (width, height), color=color)
    img.save(path)
    return path


def place_photo(root: Path, location: str, rel_path: str, **kwargs) -> Path:
    """Create a photo at root/<bucket dir>/rel_path ("base" is the root itself)."""
    bucket = root if location == "base" else root / location
    return _create_test_image(bucket / rel_path, **kwargs)


# ── Photo root fixtures ───────────────────────────────────────


@pytest.fixture()
def photo_root(tmp_path: Path) -> Path:
    """Empty photo root with sorted/1..5 in place."""
    root = tmp_path / "photos"
    for rank in range(1, 6):
        (root / "sorted" / str(rank)).mkdir(parents=True)
    return root


@pytest.fixture()
def populated_root(photo_root: Path) -> Path:
    """Photo root with a few unrated and rated photos in nested folders."""
    place_photo(photo_root, "base", "a.jpg")
    place_photo(photo_root, "base", "trip/day1/b.jpg")
    place_photo(photo_root, "base", "trip/c.png")
    place_photo(photo_root, "sorted/3", "trip/d.jpg")
    place_photo(photo_root, "sorted/5", "e.jpg")
    return photo_root


# ── Index / library fixtures ──────────────────────────────────


@pytest.fixture()
def index(tmp_path: Path) -> PhotoIndex:
    """PhotoIndex backed by a temp-dir SQLite database."""
    idx = PhotoIndex(db_path=tmp_path / "index.db")
    yield idx
    idx.close()


def make_settings(root: Path, tmp_path: Path, **overrides) -> Settings:
    settings = Settings(
        root=root,
        db_path=tmp_path / "data" / "index.db",
        thumbnail_dir=tmp_path / "thumbs",
    )
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def make_library(root: Path, tmp_path: Path, seed: int = 0, **overrides) -> PhotoLibrary:
    return PhotoLibrary(
        make_settings(root, tmp_path, **overrides), rng=np.random.default_rng(seed)
    )


@pytest.fixture()
def library(populated_root: Path, tmp_path: Path) -> PhotoLibrary:
    lib = make_library(populated_root, tmp_path)
    yield lib
    lib.close()
