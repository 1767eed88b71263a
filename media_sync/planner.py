"""Builds the transfer plan for a local media library.

The planner walks the scan root once, classifies every file by name, and
produces the list of `TransferItem`s plus the set of remote directories that
must exist before any copy starts. It performs no network I/O, so a plan can
be printed during a dry run and tested without a remote host.
"""
import logging
import os
import posixpath
from pathlib import Path
from typing import Dict, List, Optional, Set

from .classifier import (
    VOBSUB_PAIR, EpisodeMatch, Junk, MovieMatch, SubtitleMatch, Unrecognized,
    classify, split_extension,
)
from .models import MediaFile, MediaKind, Plan, SkippedFile, TransferItem
from .normalizer import PathNormalizer

logger = logging.getLogger(__name__)

MOVIES_DIR_NAME = "Movies"
SHOWS_DIR_NAME = "Shows"


class TransferPlanner:
    """Plans the transfer of one media library.

    Attributes:
        dest_base (str): The remote base path, e.g. ``/mnt/media``.
        media_type (str): The library folder under `dest_base` (``Shows``).
        episodic (bool): True for TV libraries, False for movie libraries.
    """

    def __init__(self, dest_base: str, media_type: str = SHOWS_DIR_NAME,
                 normalizer: Optional[PathNormalizer] = None, episodic: bool = True):
        self.dest_base = dest_base.rstrip('/') or '/'
        self.media_type = media_type
        self.normalizer = normalizer or PathNormalizer()
        self.episodic = episodic
        self._walk_errors = 0

    def _on_walk_error(self, error: OSError) -> None:
        self._walk_errors += 1
        logger.warning(f"Cannot read directory '{error.filename}', skipping it: {error.strerror or error}")

    def scan(self, scan_root: Path) -> List[MediaFile]:
        """Enumerates every regular file under `scan_root`, sorted by relative path."""
        found: Dict[str, Path] = {}
        for dirpath, _dirnames, filenames in os.walk(scan_root, onerror=self._on_walk_error):
            for filename in filenames:
                full_path = Path(dirpath) / filename
                if not full_path.is_file():
                    continue
                relative = full_path.relative_to(scan_root).as_posix()
                found[relative] = full_path

        files = []
        for relative in sorted(found):
            result = classify(found[relative].name, self.episodic)
            files.append(MediaFile(path=found[relative], relative_path=relative, kind=_kind_of(result)))
        return files

    def destination_for(self, episode: EpisodeMatch, file_name: str) -> str:
        show_name = self.normalizer.normalize(episode.title, file_name)
        return posixpath.join(self.dest_base, self.media_type, show_name, f"Season {episode.season}")

    def plan(self, scan_root: Path) -> Plan:
        """Builds the plan for `scan_root`.

        Returns:
            A `Plan` whose queue holds every accepted video followed by its
            companion subtitles, and whose directory set covers every queued
            item's destination.
        """
        self._walk_errors = 0
        scan_root = Path(scan_root)
        files = self.scan(scan_root)
        plan = Plan()
        queued: Set[str] = set()

        subtitles_by_dir: Dict[Path, List[MediaFile]] = {}
        for media_file in files:
            if media_file.kind is MediaKind.SUBTITLE:
                subtitles_by_dir.setdefault(media_file.path.parent, []).append(media_file)

        def enqueue(source: Path, dest_dir: str) -> bool:
            key = str(source)
            if key in queued:
                return False
            queued.add(key)
            plan.queue.append(TransferItem(source_path=key, dest_dir=dest_dir))
            plan.directories.add(dest_dir)
            return True

        for media_file in files:
            if media_file.kind is not MediaKind.VIDEO:
                if media_file.kind is not MediaKind.SUBTITLE:
                    self._skip(plan, media_file.relative_path, _reason_of(classify(media_file.name, self.episodic)))
                continue

            result = classify(media_file.name, self.episodic)
            if isinstance(result, EpisodeMatch):
                dest_dir = self.destination_for(result, media_file.name)
            else:
                dest_dir = posixpath.join(self.dest_base, MOVIES_DIR_NAME)

            if not enqueue(media_file.path, dest_dir):
                continue
            plan.stats.parsed += 1
            logger.debug(f"Queued '{media_file.relative_path}' -> '{dest_dir}'")

            for companion in self._companions(media_file, subtitles_by_dir.get(media_file.path.parent, [])):
                if enqueue(companion, dest_dir):
                    plan.stats.companions += 1
                    logger.debug(f"Queued companion '{companion.name}' -> '{dest_dir}'")

        for media_file in files:
            if media_file.kind is MediaKind.SUBTITLE and str(media_file.path) not in queued:
                self._skip(plan, media_file.relative_path, "subtitle without a matching video")

        plan.stats.walk_errors = self._walk_errors
        logger.info(
            f"Planned {plan.stats.parsed} video(s) and {plan.stats.companions} subtitle(s) "
            f"into {len(plan.directories)} director(ies); skipped {plan.stats.skipped} file(s)."
        )
        return plan

    def _companions(self, video: MediaFile, siblings: List[MediaFile]) -> List[Path]:
        """Returns the subtitle files travelling with `video`, VobSub twins included."""
        video_stem, _ = split_extension(video.name)
        companions: List[Path] = []
        for subtitle in siblings:
            stem, _ = split_extension(subtitle.name)
            if stem == video_stem or stem.startswith(f"{video_stem}."):
                companions.append(subtitle.path)

        for subtitle in list(companions):
            stem, ext = split_extension(subtitle.name)
            twin_ext = VOBSUB_PAIR.get(ext)
            if not twin_ext:
                continue
            for candidate in (twin_ext, twin_ext.upper()):
                twin = subtitle.with_name(f"{stem}.{candidate}")
                if twin in companions:
                    break
                if twin.is_file():
                    companions.append(twin)
                    break
        return companions

    @staticmethod
    def _skip(plan: Plan, relative_path: str, reason: str) -> None:
        plan.skipped.append(SkippedFile(relative_path=relative_path, reason=reason))
        plan.stats.skipped += 1
        logger.info(f"Skipping '{relative_path}' ({reason}).")


def _kind_of(result) -> MediaKind:
    if isinstance(result, (EpisodeMatch, MovieMatch)):
        return MediaKind.VIDEO
    if isinstance(result, SubtitleMatch):
        return MediaKind.SUBTITLE
    if isinstance(result, Junk):
        return MediaKind.JUNK
    return MediaKind.UNRECOGNIZED


def _reason_of(result) -> str:
    if isinstance(result, Junk):
        return f"junk: '{result.token}'"
    if isinstance(result, Unrecognized):
        return result.reason
    return "not a video"
