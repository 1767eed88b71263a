import os
from pathlib import Path
from unittest.mock import patch

import pytest

from media_sync.normalizer import AliasTable, PathNormalizer
from media_sync.planner import TransferPlanner

LIBRARY = "/library"
SEASON_ONE = "/mnt/media/Shows/Breaking Bad/Season 1"


@pytest.fixture
def library(fs):
    fs.create_dir(LIBRARY)

    def add(*names):
        for name in names:
            fs.create_file(os.path.join(LIBRARY, name), contents="x")
    return add


def queued_pairs(plan):
    return {(Path(item.source_path).name, item.dest_dir) for item in plan.queue}


class TestTransferPlanner:

    def test_episode_with_companion_subtitles(self, library):
        library("Breaking.Bad.S01E02.mkv", "Breaking.Bad.S01E02.srt", "Breaking.Bad.S01E02.en.srt")
        plan = TransferPlanner("/mnt/media").plan(Path(LIBRARY))

        assert queued_pairs(plan) == {
            ("Breaking.Bad.S01E02.mkv", SEASON_ONE),
            ("Breaking.Bad.S01E02.srt", SEASON_ONE),
            ("Breaking.Bad.S01E02.en.srt", SEASON_ONE),
        }
        assert plan.queue[0].file_name == "Breaking.Bad.S01E02.mkv"
        assert plan.directories == {SEASON_ONE}
        assert plan.stats.parsed == 1
        assert plan.stats.companions == 2

    def test_nested_folders_and_seasons(self, library):
        library("Breaking Bad/Season 1/Breaking.Bad.S01E01.mkv",
                "Breaking Bad/Season 1/Breaking.Bad.S01E02.mkv",
                "Breaking Bad/Season 2/Breaking.Bad.2x01.mkv")
        plan = TransferPlanner("/mnt/media/").plan(Path(LIBRARY))

        assert len(plan.queue) == 3
        assert plan.sorted_directories() == [
            SEASON_ONE,
            "/mnt/media/Shows/Breaking Bad/Season 2",
        ]

    def test_planning_is_idempotent(self, library):
        library("Show.S01E01.mkv", "Show.S01E01.srt", "Other.Show.2x03.mp4", "notes.txt")
        planner = TransferPlanner("/mnt/media")
        first = planner.plan(Path(LIBRARY))
        second = planner.plan(Path(LIBRARY))

        assert first.queue == second.queue
        assert first.directories == second.directories
        assert first.skipped == second.skipped

    def test_junk_is_skipped(self, library):
        library("Show.S01E01.mkv", "Show.S01E01.sample.mkv", "Show.Trailer.mp4")
        plan = TransferPlanner("/mnt/media").plan(Path(LIBRARY))

        assert [item.file_name for item in plan.queue] == ["Show.S01E01.mkv"]
        reasons = {skipped.relative_path: skipped.reason for skipped in plan.skipped}
        assert reasons["Show.S01E01.sample.mkv"] == "junk: 'sample'"
        assert reasons["Show.Trailer.mp4"] == "junk: 'trailer'"

    def test_unrecognized_files_are_skipped(self, library):
        library("Home Movie.mkv", "Show.S01E01.nfo")
        plan = TransferPlanner("/mnt/media").plan(Path(LIBRARY))

        assert plan.queue == []
        assert plan.directories == set()
        assert plan.stats.skipped == 2

    def test_vobsub_pair_travels_together(self, library):
        library("Show.S01E03.mkv", "Show.S01E03.idx", "Show.S01E03.SUB")
        plan = TransferPlanner("/mnt/media").plan(Path(LIBRARY))

        names = [item.file_name for item in plan.queue]
        assert names[0] == "Show.S01E03.mkv"
        assert sorted(names[1:]) == ["Show.S01E03.SUB", "Show.S01E03.idx"]
        assert {item.dest_dir for item in plan.queue} == {"/mnt/media/Shows/Show/Season 1"}

    def test_orphan_subtitle_is_reported(self, library):
        library("Show.S01E01.mkv", "Show.S01E02.srt")
        plan = TransferPlanner("/mnt/media").plan(Path(LIBRARY))

        assert [item.file_name for item in plan.queue] == ["Show.S01E01.mkv"]
        assert plan.skipped[0].relative_path == "Show.S01E02.srt"
        assert plan.skipped[0].reason == "subtitle without a matching video"

    def test_year_and_alias_shape_the_folder(self, library):
        library("Doctor.Who.2005.S02E01.mkv", "The.Office.US.S01E01.mkv")
        normalizer = PathNormalizer(AliasTable({"The Office US": "The Office (US)"}))
        plan = TransferPlanner("/mnt/media", normalizer=normalizer).plan(Path(LIBRARY))

        assert plan.directories == {
            "/mnt/media/Shows/Doctor Who (2005)/Season 2",
            "/mnt/media/Shows/The Office (US)/Season 1",
        }

    def test_movies_go_to_flat_folder(self, library):
        library("Heat (1995).mkv", "Heat (1995).srt", "Heat.Trailer.mp4")
        planner = TransferPlanner("/mnt/media", media_type="Movies", episodic=False)
        plan = planner.plan(Path(LIBRARY))

        assert queued_pairs(plan) == {
            ("Heat (1995).mkv", "/mnt/media/Movies"),
            ("Heat (1995).srt", "/mnt/media/Movies"),
        }
        assert plan.stats.skipped == 1

    def test_unreadable_directory_is_counted(self, library):
        library("Show.S01E01.mkv")

        def fake_walk(top, onerror=None):
            onerror(PermissionError(13, "Permission denied", os.path.join(LIBRARY, "locked")))
            yield LIBRARY, [], ["Show.S01E01.mkv"]

        with patch("media_sync.planner.os.walk", side_effect=fake_walk):
            plan = TransferPlanner("/mnt/media").plan(Path(LIBRARY))

        assert plan.stats.walk_errors == 1
        assert [item.file_name for item in plan.queue] == ["Show.S01E01.mkv"]
