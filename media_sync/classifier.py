"""Classifies media files by name.

`classify` is a pure function: it looks only at the file name, never at the
filesystem, and returns one of the `ParseResult` variants below. The planner
decides what to do with each variant.

Episode names are recognised in two shapes, tried in order:

- ``Show.Name.S01E02.mkv`` / ``Show Name - S1E2.mkv`` / ``Show.S01E02E03.mkv``
- ``Show_Name.1x02.mkv`` / ``Show_Name.1x02-03.mkv``
"""
import dataclasses
import re
from typing import Optional, Tuple, Union

VIDEO_EXTENSIONS = frozenset({
    'avi', 'divx', 'flv', 'm2ts', 'm4v', 'mkv', 'mov', 'mp4', 'mpeg', 'mpg',
    'ogm', 'ts', 'vob', 'webm', 'wmv',
})
SUBTITLE_EXTENSIONS = frozenset({'srt', 'ass', 'ssa', 'vtt', 'sub', 'idx'})
VOBSUB_PAIR = {'idx': 'sub', 'sub': 'idx'}

_SEP = r'[-._\s]'
JUNK_PATTERN = re.compile(r'(?<![A-Za-z0-9])(sample|trailer|extras?)(?![A-Za-z0-9])', re.IGNORECASE)
SXXEXX_PATTERN = re.compile(
    rf'^(?P<title>.+?){_SEP}+[Ss](?P<season>\d+){_SEP}*[Ee](?P<episode>\d+)'
    rf'(?:{_SEP}*[Ee](?P<episode_end>\d+))?'
)
NXNN_PATTERN = re.compile(
    rf'^(?P<title>.+?){_SEP}+(?P<season>\d+)[xX](?P<episode>\d+)'
    r'(?:-(?P<episode_end>\d+))?'
)
EPISODE_PATTERNS = (SXXEXX_PATTERN, NXNN_PATTERN)


@dataclasses.dataclass(frozen=True)
class EpisodeMatch:
    title: str
    season: int
    episode: int
    episode_end: Optional[int] = None
    extension: str = ''


@dataclasses.dataclass(frozen=True)
class MovieMatch:
    extension: str


@dataclasses.dataclass(frozen=True)
class SubtitleMatch:
    extension: str


@dataclasses.dataclass(frozen=True)
class Junk:
    token: str


@dataclasses.dataclass(frozen=True)
class Unrecognized:
    reason: str


ParseResult = Union[EpisodeMatch, MovieMatch, SubtitleMatch, Junk, Unrecognized]


def split_extension(file_name: str) -> Tuple[str, str]:
    """Splits a file name into (stem, lower-cased extension without the dot).

    A leading dot (hidden file) is not treated as an extension separator.
    """
    stem, dot, ext = file_name.rpartition('.')
    if not dot or not stem:
        return file_name, ''
    return stem, ext.lower()


def match_episode(file_name: str) -> Optional[EpisodeMatch]:
    """Returns the episode identity encoded in a file name, if any."""
    for pattern in EPISODE_PATTERNS:
        match = pattern.match(file_name)
        if not match:
            continue
        # int() is always base 10, so '08' and '09' are safe
        episode_end = match.group('episode_end')
        return EpisodeMatch(
            title=match.group('title'),
            season=int(match.group('season')),
            episode=int(match.group('episode')),
            episode_end=int(episode_end) if episode_end else None,
            extension=split_extension(file_name)[1],
        )
    return None


def classify(file_name: str, episodic: bool = True) -> ParseResult:
    """Classifies a single file name.

    Args:
        file_name: A bare file name, not a path.
        episodic: When True, videos must carry a season/episode marker.
            When False (movie libraries), any video extension is accepted.

    Returns:
        One of `EpisodeMatch`, `MovieMatch`, `SubtitleMatch`, `Junk` or
        `Unrecognized`.
    """
    junk = JUNK_PATTERN.search(file_name)
    if junk:
        return Junk(token=junk.group(1).lower())

    _stem, ext = split_extension(file_name)
    if ext in SUBTITLE_EXTENSIONS:
        return SubtitleMatch(extension=ext)

    if ext in VIDEO_EXTENSIONS:
        if not episodic:
            return MovieMatch(extension=ext)
        episode = match_episode(file_name)
        if episode is None:
            return Unrecognized(reason="unrecognized format")
        if episode.episode < 1:
            return Unrecognized(reason=f"invalid episode number {episode.episode}")
        return episode

    if episodic and match_episode(file_name) is not None:
        label = f"'.{ext}'" if ext else "(none)"
        return Unrecognized(reason=f"unsupported extension {label}")
    return Unrecognized(reason="unrecognized format")
