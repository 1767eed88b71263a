"""Data types shared by the planner, the strategies and the transfer engine."""
import dataclasses
from enum import Enum
from pathlib import Path
from typing import List, Set


class MediaKind(Enum):
    VIDEO = "video"
    SUBTITLE = "subtitle"
    JUNK = "junk"
    UNRECOGNIZED = "unrecognized"


@dataclasses.dataclass(frozen=True)
class MediaFile:
    """A file discovered under the scan root."""
    path: Path
    relative_path: str
    kind: MediaKind

    @property
    def name(self) -> str:
        return self.path.name


@dataclasses.dataclass(frozen=True)
class TransferItem:
    """One local file and the remote directory it is copied into."""
    source_path: str
    dest_dir: str

    @property
    def file_name(self) -> str:
        return Path(self.source_path).name

    @property
    def dest_path(self) -> str:
        return f"{self.dest_dir.rstrip('/')}/{self.file_name}"


@dataclasses.dataclass(frozen=True)
class SkippedFile:
    relative_path: str
    reason: str


@dataclasses.dataclass
class PlanStats:
    parsed: int = 0
    companions: int = 0
    skipped: int = 0
    walk_errors: int = 0


@dataclasses.dataclass
class Plan:
    """The output of a planning pass: what to copy, and where."""
    queue: List[TransferItem] = dataclasses.field(default_factory=list)
    directories: Set[str] = dataclasses.field(default_factory=set)
    skipped: List[SkippedFile] = dataclasses.field(default_factory=list)
    stats: PlanStats = dataclasses.field(default_factory=PlanStats)

    def sorted_directories(self) -> List[str]:
        return sorted(self.directories)
