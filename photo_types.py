"""
Shared value types and error kinds for Photo Sorter.

A photo lives in exactly one bucket: the unrated ``base`` bucket (the photo
root itself) or one of the rating buckets ``sorted/1`` .. ``sorted/5``.
``Location`` is the only place where bucket strings are parsed or formatted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------


class PhotoSorterError(Exception):
    """Base class for every error the core reports to its callers."""


class NoPhotosAvailable(PhotoSorterError):
    pass


class PhotoNotFound(PhotoSorterError):
    pass


class InvalidRating(PhotoSorterError):
    pass


class InvalidPath(PhotoSorterError):
    pass


class InvalidLocation(PhotoSorterError):
    pass


class UnknownLocation(InvalidLocation):
    """Well-formed ``sorted/<n>`` naming a bucket that does not exist."""


class MoveFailed(PhotoSorterError):
    pass


class OriginalNotFound(PhotoSorterError):
    pass


class ThumbnailGenerationFailed(PhotoSorterError):
    pass


class IndexIOError(PhotoSorterError):
    pass


# ---------------------------------------------------------------------------
# Location (bucket)
# ---------------------------------------------------------------------------

MIN_RANK = 1
MAX_RANK = 5
SORTED_DIRNAME = "sorted"
BASE_NAME = "base"


def is_canonical_int(text: str) -> bool:
    """ASCII decimal without sign or leading zeros ("3", not "03" or "³")."""
    return text.isascii() and text.isdecimal() and str(int(text)) == text


@dataclass(frozen=True)
class Location:
    """A bucket: ``rank`` is None for base, 1..5 for a rating bucket."""

    rank: Optional[int] = None

    def __post_init__(self) -> None:
        if self.rank is not None and not (MIN_RANK <= self.rank <= MAX_RANK):
            raise InvalidLocation(f"Rank out of range: {self.rank}")

    @classmethod
    def base(cls) -> Location:
        return cls(None)

    @classmethod
    def sorted(cls, rank: int) -> Location:
        return cls(rank)

    @property
    def is_base(self) -> bool:
        return self.rank is None

    @property
    def directory(self) -> str:
        """Directory relative to the photo root ("" for base)."""
        if self.rank is None:
            return ""
        return f"{SORTED_DIRNAME}/{self.rank}"

    def qualify(self, path: str) -> str:
        """Path relative to the photo root, e.g. "sorted/3/trip/a.jpg"."""
        return f"{self.directory}/{path}" if self.directory else path

    def __str__(self) -> str:
        return BASE_NAME if self.rank is None else self.directory

    @classmethod
    def parse(cls, text: Optional[str]) -> Location:
        """Parse the index form ("base", "sorted/3") or the API form ("" for base)."""
        if text is None:
            raise InvalidLocation("Missing location")
        cleaned = str(text).strip().replace("\\", "/").strip("/")
        if cleaned in ("", BASE_NAME):
            return cls.base()
        parts = cleaned.split("/")
        if len(parts) == 2 and parts[0] == SORTED_DIRNAME and is_canonical_int(parts[1]):
            rank = int(parts[1])
            if MIN_RANK <= rank <= MAX_RANK:
                return cls.sorted(rank)
            raise UnknownLocation(f"Unknown location: {text!r}")
        raise InvalidLocation(f"Malformed location: {text!r}")


LOCATIONS: tuple[Location, ...] = (Location.base(),) + tuple(
    Location.sorted(r) for r in range(MIN_RANK, MAX_RANK + 1)
)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp"}


def is_image_name(name: str) -> bool:
    dot = name.rfind(".")
    return dot > 0 and name[dot:].lower() in IMAGE_EXTENSIONS


def validate_relative_path(path: Optional[str]) -> str:
    """Return *path* in POSIX form, or raise InvalidPath if it could escape its root."""
    if not path or not isinstance(path, str):
        raise InvalidPath("Missing path")
    if "\x00" in path or "\\" in path:
        raise InvalidPath(f"Invalid characters in path: {path!r}")
    if path.startswith("/"):
        raise InvalidPath(f"Absolute paths are not allowed: {path!r}")
    parts = [p for p in path.split("/") if p not in ("", ".")]
    if not parts or any(p == ".." for p in parts):
        raise InvalidPath(f"Invalid path: {path!r}")
    return "/".join(parts)
