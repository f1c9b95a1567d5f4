"""Tests for photo_sorter.py / photo_types.py — pure functions (no event loop)."""

from __future__ import annotations

import csv
from collections import Counter
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest

from photo_sorter import (
    DISLIKE,
    LIKE,
    FolderAggregate,
    choose_rank,
    compute_folder_aggregates,
    folder_images,
    folder_of,
    folder_rankings_csv,
    load_settings,
    main,
    next_location,
    normalize_folder,
    parse_rating,
    rank_folders,
    scan_location,
    validate_rank_weights,
    write_csv,
)
from photo_types import (
    LOCATIONS,
    InvalidLocation,
    InvalidPath,
    InvalidRating,
    Location,
    UnknownLocation,
    is_image_name,
    validate_relative_path,
)
from tests.conftest import place_photo

BASE = Location.base()


def S(rank: int) -> Location:
    return Location.sorted(rank)


# ── Location ──────────────────────────────────────────────────


class TestLocation:
    def test_parse_base_forms(self):
        assert Location.parse("base") == BASE
        assert Location.parse("") == BASE
        assert Location.parse("/") == BASE

    def test_parse_sorted(self):
        assert Location.parse("sorted/3") == S(3)
        assert Location.parse("/sorted/5/") == S(5)

    @pytest.mark.parametrize(
        "text", ["sorted/0", "sorted/6", "sorted", "sorted/x", "photos/unsorted", "../sorted/1", None]
    )
    def test_parse_rejects_malformed(self, text):
        with pytest.raises(InvalidLocation):
            Location.parse(text)

    @pytest.mark.parametrize(
        "text", ["sorted/\u00b2", "sorted/\u0663", "sorted/03", "sorted/+3", "sorted/ 3"]
    )
    def test_parse_rejects_non_canonical_digits(self, text):
        with pytest.raises(InvalidLocation) as exc:
            Location.parse(text)
        assert not isinstance(exc.value, UnknownLocation)

    @pytest.mark.parametrize("text", ["sorted/0", "sorted/6", "sorted/9"])
    def test_parse_unknown_bucket(self, text):
        with pytest.raises(UnknownLocation):
            Location.parse(text)

    def test_format(self):
        assert str(BASE) == "base"
        assert str(S(2)) == "sorted/2"
        assert BASE.directory == ""
        assert S(2).directory == "sorted/2"

    def test_qualify(self):
        assert BASE.qualify("trip/a.jpg") == "trip/a.jpg"
        assert S(4).qualify("trip/a.jpg") == "sorted/4/trip/a.jpg"

    def test_round_trip_all(self):
        for loc in LOCATIONS:
            assert Location.parse(str(loc)) == loc
            assert Location.parse(loc.directory) == loc

    def test_rank_out_of_range(self):
        with pytest.raises(InvalidLocation):
            Location.sorted(7)


# ── Paths / extensions ────────────────────────────────────────


class TestPaths:
    def test_normalises(self):
        assert validate_relative_path("trip//./a.jpg") == "trip/a.jpg"

    @pytest.mark.parametrize(
        "path", ["", "../a.jpg", "trip/../../a.jpg", "/etc/passwd", "a\\b.jpg", "a\x00.jpg", None]
    )
    def test_rejects(self, path):
        with pytest.raises(InvalidPath):
            validate_relative_path(path)

    def test_image_names(self):
        assert is_image_name("a.JPG")
        assert is_image_name("b.jpeg")
        assert is_image_name("c.Png")
        assert is_image_name("d.gif")
        assert is_image_name("e.bmp")
        assert not is_image_name("notes.txt")
        assert not is_image_name("photo.webp")
        assert not is_image_name(".jpg")


# ── Rating state machine ──────────────────────────────────────


class TestParseRating:
    @pytest.mark.parametrize("value,expected", [(1, 1), (5, 5), ("3", 3), (4.0, 4)])
    def test_valid(self, value, expected):
        assert parse_rating(value) == expected

    @pytest.mark.parametrize(
        "value",
        [0, 6, -1, "abc", "", 2.5, True, None, [3], "\u00b2", "\u0663", "03", "+3", "-1"],
    )
    def test_invalid(self, value):
        with pytest.raises(InvalidRating):
            parse_rating(value)


class TestTransitions:
    def test_like_from_base(self):
        assert next_location(BASE, LIKE) == S(4)

    def test_dislike_from_base(self):
        assert next_location(BASE, DISLIKE) == S(2)

    @pytest.mark.parametrize("rank,expected", [(1, 2), (2, 3), (3, 4), (4, 5), (5, 5)])
    def test_like_sorted(self, rank, expected):
        assert next_location(S(rank), LIKE) == S(expected)

    @pytest.mark.parametrize("rank,expected", [(1, 1), (2, 1), (3, 2), (4, 3), (5, 4)])
    def test_dislike_sorted(self, rank, expected):
        assert next_location(S(rank), DISLIKE) == S(expected)

    @pytest.mark.parametrize("current", LOCATIONS)
    @pytest.mark.parametrize("k", [1, 2, 3, 4, 5])
    def test_rate_is_absolute(self, current, k):
        assert next_location(current, k) == S(k)

    def test_repeated_like_clamps_at_five(self):
        loc = S(5)
        for _ in range(3):
            loc = next_location(loc, LIKE)
        assert loc == S(5)

    def test_repeated_dislike_clamps_at_one(self):
        loc = S(3)
        for _ in range(5):
            loc = next_location(loc, DISLIKE)
        assert loc == S(1)

    def test_unknown_action(self):
        with pytest.raises(InvalidRating):
            next_location(BASE, "love")


# ── Rank weights ──────────────────────────────────────────────


class TestRankWeights:
    def test_default_is_valid(self):
        assert validate_rank_weights({2: 20, 3: 30, 4: 30, 5: 20})

    def test_rank_one_rejected(self):
        with pytest.raises(ValueError, match="Rank 1"):
            validate_rank_weights({1: 10, 2: 10, 3: 30, 4: 30, 5: 20})

    def test_must_sum_to_100(self):
        with pytest.raises(ValueError, match="sum to 100"):
            validate_rank_weights({2: 20, 3: 30, 4: 30, 5: 10})

    def test_choose_rank_only_available(self):
        rng = np.random.default_rng(1)
        weights = {2: 20, 3: 30, 4: 30, 5: 20}
        picks = {choose_rank(rng, weights, {3, 5}) for _ in range(50)}
        assert picks == {3, 5}

    def test_choose_rank_none_left(self):
        rng = np.random.default_rng(1)
        assert choose_rank(rng, {2: 50, 3: 50}, set()) is None
        assert choose_rank(rng, {2: 50, 3: 50}, {1, 4}) is None

    def test_choose_rank_follows_weights(self):
        rng = np.random.default_rng(7)
        weights = {2: 20, 3: 30, 4: 30, 5: 20}
        counts = Counter(choose_rank(rng, weights, {2, 3, 4, 5}) for _ in range(4000))
        assert 1 not in counts
        assert counts[3] > counts[2]
        assert counts[4] > counts[5]
        assert counts[2] / 4000 == pytest.approx(0.2, abs=0.04)


# ── Scanner ───────────────────────────────────────────────────


class TestScanLocation:
    def test_base_skips_sorted_and_hidden(self, photo_root: Path):
        place_photo(photo_root, "base", "a.jpg")
        place_photo(photo_root, "base", "trip/B.JPG")
        place_photo(photo_root, "base", ".hidden/x.jpg")
        place_photo(photo_root, "sorted/3", "c.jpg")
        (photo_root / "notes.txt").write_text("hi")

        result = scan_location(photo_root, BASE)
        assert result.paths == {"a.jpg", "trip/B.JPG"}
        assert result.failed == []

    def test_sorted_bucket_paths_are_relative(self, photo_root: Path):
        place_photo(photo_root, "sorted/3", "trip/day1/c.png")
        assert scan_location(photo_root, S(3)).paths == {"trip/day1/c.png"}

    def test_missing_bucket_is_empty(self, tmp_path: Path):
        result = scan_location(tmp_path / "nope", S(2))
        assert result.paths == set()
        assert result.failed == []

    def test_excluded_directory(self, photo_root: Path):
        place_photo(photo_root, "base", "a.jpg")
        place_photo(photo_root, "base", "cache/ab/thumb.jpg")
        result = scan_location(photo_root, BASE, exclude=[photo_root / "cache"])
        assert result.paths == {"a.jpg"}

    def test_unreadable_directory_reported(self, photo_root: Path):
        place_photo(photo_root, "base", "a.jpg")
        place_photo(photo_root, "base", "locked/b.jpg")
        real_iterdir = Path.iterdir

        def flaky_iterdir(self):
            if self.name == "locked":
                raise PermissionError("denied")
            return real_iterdir(self)

        with patch.object(Path, "iterdir", flaky_iterdir):
            result = scan_location(photo_root, BASE)
        assert result.paths == {"a.jpg"}
        assert result.failed == ["locked"]


# ── Folder rollups ────────────────────────────────────────────


RECORDS = [
    ("a.jpg", BASE),
    ("trip/b.jpg", S(4)),
    ("trip/c.jpg", BASE),
    ("trip/day1/d.jpg", S(2)),
    ("trip/day1/e.jpg", S(5)),
    ("home/f.jpg", S(1)),
]


class TestFolderAggregates:
    def test_folder_of(self):
        assert folder_of("a.jpg") == "."
        assert folder_of("trip/b.jpg") == "trip"
        assert folder_of("a/b/c/d/e.jpg", max_depth=2) == "a/b"

    def test_parent_includes_children(self):
        aggs = compute_folder_aggregates(RECORDS)
        trip = aggs["trip"]
        assert trip.photo_count == 3
        assert trip.unsorted_count == 1
        assert trip.total_photos == 4
        assert trip.photos_by_rank == {1: 0, 2: 1, 3: 0, 4: 1, 5: 1}
        assert trip.average_rank == pytest.approx(3.67)

    def test_child_folder(self):
        day1 = compute_folder_aggregates(RECORDS)["trip/day1"]
        assert day1.total_photos == 2
        assert day1.average_rank == pytest.approx(3.5)

    def test_root_folder_only_root_photos(self):
        root = compute_folder_aggregates(RECORDS)["."]
        assert root.total_photos == 1
        assert root.average_rank is None

    def test_depth_truncation(self):
        aggs = compute_folder_aggregates([("a/b/c/d/x.jpg", S(3))], max_depth=2)
        assert set(aggs) == {"a", "a/b"}

    def test_conservation(self):
        for agg in compute_folder_aggregates(RECORDS).values():
            assert agg.total_photos == agg.photo_count + agg.unsorted_count
            assert sum(agg.photos_by_rank.values()) == agg.photo_count

    def test_to_dict(self):
        d = compute_folder_aggregates(RECORDS)["home"].to_dict()
        assert d["folder"] == "home"
        assert d["average_rank"] == 1.0
        assert d["photos_by_rank"]["1"] == 1

    def test_rank_folders_order(self):
        ranked = rank_folders(compute_folder_aggregates(RECORDS).values())
        names = [a.folder_path for a in ranked]
        assert names[:2] == ["trip", "trip/day1"]
        assert names[-1] == "."
        assert names.index("trip") < names.index("home")

    def test_empty_aggregate(self):
        agg = FolderAggregate("nothing")
        assert agg.total_photos == 0
        assert agg.average_rank is None


class TestFolderImages:
    def test_direct_children_only(self):
        images, total = folder_images(RECORDS, "trip")
        assert total == 2
        assert [i["photo"] for i in images] == ["trip/b.jpg", "trip/c.jpg"]
        assert images[0] == {
            "photo": "trip/b.jpg",
            "directory": "sorted/4",
            "location": "sorted/4",
            "rank": 4,
        }

    def test_recursive_best_first(self):
        images, total = folder_images(RECORDS, "trip", recursive=True)
        assert total == 4
        assert [i["rank"] for i in images] == [5, 4, 2, None]

    def test_limit(self):
        images, total = folder_images(RECORDS, "", recursive=True, limit=2)
        assert total == len(RECORDS)
        assert len(images) == 2

    def test_root_folder(self):
        images, _ = folder_images(RECORDS, "")
        assert [i["photo"] for i in images] == ["a.jpg"]

    def test_normalize_folder(self):
        assert normalize_folder("/trip/") == "trip"
        assert normalize_folder(None) == "."
        with pytest.raises(InvalidPath):
            normalize_folder("../etc")


# ── CSV report ────────────────────────────────────────────────


class TestCsv:
    def test_write_csv(self, tmp_path: Path):
        ranked = rank_folders(compute_folder_aggregates(RECORDS).values())
        out = tmp_path / "out" / "rankings.csv"
        write_csv(ranked, out)
        with open(out, newline="") as f:
            rows = list(csv.DictReader(f))
        assert rows[0]["folder"] == "trip"
        assert rows[0]["rank_5"] == "1"
        assert rows[-1]["average_rank"] == ""

    def test_csv_string_matches_header(self):
        text = folder_rankings_csv([])
        assert text.strip().split(",")[:2] == ["folder", "average_rank"]


# ── Settings ──────────────────────────────────────────────────


class TestLoadSettings:
    def test_defaults(self):
        s = load_settings({})
        assert s.root == Path("photos")
        assert s.port == 3000
        assert s.sorted_probability == pytest.approx(0.2)
        assert s.rank_weights == {2: 20, 3: 30, 4: 30, 5: 20}

    def test_from_env(self):
        s = load_settings(
            {
                "PHOTO_SORTER_ROOT": "/srv/photos",
                "PHOTO_SORTER_PORT": "8080",
                "PHOTO_SORTER_SORTED_PROBABILITY": "0.5",
            }
        )
        assert s.root == Path("/srv/photos")
        assert s.port == 8080
        assert s.sorted_probability == 0.5

    def test_invalid_numbers_fall_back(self):
        s = load_settings(
            {"PHOTO_SORTER_PORT": "http", "PHOTO_SORTER_SORTED_PROBABILITY": "2"}
        )
        assert s.port == 3000
        assert s.sorted_probability == pytest.approx(0.2)


# ── CLI ───────────────────────────────────────────────────────


class TestMain:
    def test_reconcile_and_report(self, populated_root: Path, tmp_path: Path, capsys):
        report = tmp_path / "rankings.csv"
        main(
            [
                "--root",
                str(populated_root),
                "--db",
                str(tmp_path / "cli.db"),
                "--reconcile",
                "--report",
                str(report),
            ]
        )
        out = capsys.readouterr().out
        assert "total    : 5" in out
        with open(report, newline="") as f:
            folders = {row["folder"] for row in csv.DictReader(f)}
        assert {"trip", "trip/day1", "."} <= folders
