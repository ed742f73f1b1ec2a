import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class TaskOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REQUEUED = "REQUEUED"
    ABANDONED = "ABANDONED"
    CANCELLED = "CANCELLED"  # abort-current or shutdown


class ClaimResult(str, Enum):
    CLAIMED = "CLAIMED"
    ALREADY_LOCKED = "ALREADY_LOCKED"
    FAILED = "FAILED"


class VideoFile(BaseModel):
    path: Path
    size_bytes: int
    mtime: float


class Task(BaseModel):
    """A source file discovered under a watched root.

    Identity is ``relative_path`` (posix form, relative to ``watch_root``).
    """

    relative_path: str
    watch_root: Path
    source_path: Path
    staging_path: Path
    output_path: Path
    failure_path: Path
    requeue_count: int = 0

    @property
    def batch_name(self) -> Optional[str]:
        """First folder of the relative path; files at the root have no batch."""
        parts = self.relative_path.split("/")
        return parts[0] if len(parts) > 1 else None

    @property
    def is_staged(self) -> bool:
        return self.source_path == self.staging_path


class LockRecord(BaseModel):
    machine_name: str = ""
    timestamp: str = ""

    @classmethod
    def for_machine(cls, machine_name: str) -> "LockRecord":
        return cls(machine_name=machine_name, timestamp=datetime.now().isoformat(timespec="milliseconds"))

    def is_valid(self) -> bool:
        return bool(self.machine_name.strip()) and bool(self.timestamp.strip())


UNSET = sys.maxsize


class CropRectangle(BaseModel):
    """Inclusive pixel bounds of the visible picture inside a frame."""

    left: int = UNSET
    right: int = 0
    top: int = UNSET
    bottom: int = 0
    source_width: int = 0
    source_height: int = 0

    @property
    def cropped_width(self) -> int:
        return self.right + 1 - self.left

    @property
    def cropped_height(self) -> int:
        return self.bottom + 1 - self.top

    def is_valid(self) -> bool:
        return (
            self.left >= 0
            and self.right >= 0
            and self.top >= 0
            and self.bottom >= 0
            and self.left <= self.right
            and self.top <= self.bottom
        )

    def covers_full_frame(self) -> bool:
        return (
            self.top == 0
            and self.left == 0
            and self.bottom == self.source_height - 1
            and self.right == self.source_width - 1
        )

    def merge_with(self, other: "CropRectangle") -> None:
        """Expands this rectangle so it also contains ``other``."""
        self.left = min(self.left, other.left)
        self.top = min(self.top, other.top)
        self.right = max(self.right, other.right)
        self.bottom = max(self.bottom, other.bottom)
        self.source_width = max(self.source_width, other.source_width)
        self.source_height = max(self.source_height, other.source_height)

    def inflate_to_modulus2(self) -> None:
        """Widens the rectangle by one pixel on any axis with an odd size.

        Prefers moving an odd left/top edge outward, then the right/bottom edge,
        and never narrows the rectangle.
        """
        if self.cropped_width % 2 == 1:
            if self.left > 0 and self.left % 2 == 1:
                self.left -= 1
            elif self.right < self.source_width - 1:
                self.right += 1
            elif self.left > 0:
                self.left -= 1

        if self.cropped_height % 2 == 1:
            if self.top > 0 and self.top % 2 == 1:
                self.top -= 1
            elif self.bottom < self.source_height - 1:
                self.bottom += 1
            elif self.top > 0:
                self.top -= 1

    def to_handbrake(self) -> str:
        """HandBrake ``--crop`` value: ``top:bottom:left:right`` as margins."""
        return (
            f"{self.top}:{self.source_height - 1 - self.bottom}"
            f":{self.left}:{self.source_width - 1 - self.right}"
        )

    def __str__(self) -> str:
        """``(source_width x source_height) top:bottom:left:right`` as row and column indices."""
        return f"({self.source_width}x{self.source_height}) {self.top}:{self.bottom}:{self.left}:{self.right}"


class EncodeProgress(BaseModel):
    percent: float = 0.0
    fps: float = 0.0
    avg_fps: float = 0.0
    eta_seconds: Optional[int] = None
    comment: str = ""


class AgentStatus(BaseModel):
    """Immutable snapshot of the agent's live state."""

    model_config = ConfigDict(frozen=True)

    agent_active: bool = False
    encoder_active: bool = False
    paused: bool = False
    percent_complete: float = 0.0
    fps: float = 0.0
    avg_fps: float = 0.0
    eta_seconds: Optional[int] = None
    current_task: Optional[str] = None
    comment: str = ""


# Track metadata, a tagged union keyed by ``kind``.

class _TrackBase(BaseModel):
    stream_index: int = Field(default=1, ge=1)  # 1-based, per kind
    format: str = ""
    codec_id: str = ""
    language: str = ""
    title: str = ""
    bit_rate: Optional[int] = None

    @property
    def is_english(self) -> bool:
        return self.language.lower() in ("en", "eng")

    @property
    def is_commentary(self) -> bool:
        return "comment" in self.title.lower()


class GeneralTrack(_TrackBase):
    kind: Literal["general"] = "general"
    duration_seconds: Optional[float] = None


class VideoTrack(_TrackBase):
    kind: Literal["video"] = "video"
    width: int = 0
    height: int = 0
    bit_depth: Optional[int] = None


class AudioTrack(_TrackBase):
    kind: Literal["audio"] = "audio"
    channels: int = 0


class TextTrack(_TrackBase):
    kind: Literal["text"] = "text"
    is_forced: bool = False
    is_default: bool = False


class MenuTrack(_TrackBase):
    kind: Literal["menu"] = "menu"


Track = Annotated[
    Union[GeneralTrack, VideoTrack, AudioTrack, TextTrack, MenuTrack],
    Field(discriminator="kind"),
]


class MediaTracks(BaseModel):
    tracks: List[Track] = Field(default_factory=list)

    def _of_kind(self, kind: str) -> list:
        return [t for t in self.tracks if t.kind == kind]

    @property
    def general(self) -> Optional[GeneralTrack]:
        found = self._of_kind("general")
        return found[0] if found else None

    @property
    def video(self) -> List[VideoTrack]:
        return self._of_kind("video")

    @property
    def audio(self) -> List[AudioTrack]:
        return self._of_kind("audio")

    @property
    def text(self) -> List[TextTrack]:
        return self._of_kind("text")

    @property
    def menu(self) -> List[MenuTrack]:
        return self._of_kind("menu")
