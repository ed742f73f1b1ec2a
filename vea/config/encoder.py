"""Per-batch encoder configuration (``encoder.yaml`` in the batch folder)."""

from typing import List
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_pascal

ENCODER_CONFIG_NAMES = ("encoder.yaml", "encoder.txt")
X26X_PRESETS = [
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
    "placebo",
]
X26X_ENCODERS = {"x264", "x265"}
AV1_ENCODER = "av1"


class _PascalModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)


class AudioTrackSelection(_PascalModel):
    """Flags which forcibly widen the scope of audio track selection."""
    all_tracks: bool = False
    all_tracks_no_commentary: bool = False
    all_english: bool = False
    all_english_no_commentary: bool = False

    @property
    def forced(self) -> bool:
        return any((self.all_tracks, self.all_tracks_no_commentary, self.all_english, self.all_english_no_commentary))


class SubtitleTrackSelection(_PascalModel):
    all_tracks: bool = False


class EncoderConfig(_PascalModel):
    encoder: str = "handbrake"
    video_encoder: str = "x265"  # x264, x265, av1; 10/12-bit variants chosen from probed bit depth
    video_encoder_preset: str = "medium"
    quality: int = 23
    handbrake_crop: str = "0:0:0:0"  # top:bottom:left:right, or "Smart"
    audio_track_selection: AudioTrackSelection = Field(default_factory=AudioTrackSelection)
    subtitle_track_selection: SubtitleTrackSelection = Field(default_factory=SubtitleTrackSelection)
    limited_range: bool = False
    start_time_seconds: int = 0
    duration_seconds: int = 0
    keep_input_for_debugging_afterward: bool = False

    @model_validator(mode="after")
    def check_validity(self):
        if self.limited_range:
            if self.start_time_seconds < 0:
                raise ValueError("StartTimeSeconds must be > -1")
            if self.duration_seconds < 1:
                raise ValueError("DurationSeconds must be > 0")

        if self.encoder != "handbrake":
            raise ValueError("Encoder must be handbrake")

        if self.video_encoder in X26X_ENCODERS:
            if self.video_encoder_preset not in X26X_PRESETS:
                raise ValueError(f"Unsupported VideoEncoderPreset: {self.video_encoder_preset}")
            if not 0 <= self.quality <= 51:
                raise ValueError("Unsupported Quality (range must be [0-51])")
        elif self.video_encoder == AV1_ENCODER:
            try:
                preset = int(self.video_encoder_preset)
            except ValueError:
                preset = 0
            if not 1 <= preset <= 13:
                raise ValueError("Unsupported VideoEncoderPreset. Accepted AV1 presets are integers from 1 to 13.")
            if not 0 <= self.quality <= 63:
                raise ValueError("Unsupported Quality (range must be [0-63])")
        else:
            raise ValueError("VideoEncoder must be x265 or x264 or av1")
        return self

    @property
    def smart_crop(self) -> bool:
        return self.handbrake_crop.strip().lower() == "smart"


def validation_messages(exc) -> List[str]:
    """Flattens a pydantic ValidationError into short readable lines."""
    lines = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        msg = err.get("msg", "")
        lines.append(f"{loc}: {msg}" if loc else msg)
    return lines
