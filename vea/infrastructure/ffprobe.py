import subprocess
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from vea.domain.errors import SetupError
from vea.domain.models import (
    AudioTrack,
    GeneralTrack,
    MediaTracks,
    MenuTrack,
    TextTrack,
    VideoTrack,
)
from .executables import resolve_executable

# ffprobe codec names mapped to the format identifiers used by track selection.
_FORMAT_NAMES = {
    "aac": "AAC",
    "ac3": "AC-3",
    "eac3": "E-AC-3",
    "dts": "DTS",
    "truehd": "MLP FBA",
    "flac": "FLAC",
    "mp3": "MPEG Audio",
    "hdmv_pgs_subtitle": "PGS",
    "dvd_subtitle": "VobSub",
    "subrip": "UTF-8",
    "ass": "ASS",
    "h264": "AVC",
    "hevc": "HEVC",
    "av1": "AV1",
    "mpeg2video": "MPEG Video",
}


class FFprobeAdapter:
    """Wrapper around ffprobe for durations and track listings."""

    def __init__(self, executable: str = "ffprobe"):
        self.executable = executable
        self.logger = logging.getLogger(__name__)

    def ensure_available(self) -> str:
        return resolve_executable(self.executable)

    @staticmethod
    def _to_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def _to_int(value: Any) -> Optional[int]:
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @classmethod
    def _parse_duration_tag(cls, value: Any) -> float:
        if value is None:
            return 0.0
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            pass
        if ":" in text:
            parts = text.split(":")
            if len(parts) in (2, 3):
                try:
                    parts_f = [float(p) for p in parts]
                except ValueError:
                    return 0.0
                if len(parts_f) == 2:
                    minutes, seconds = parts_f
                    return minutes * 60 + seconds
                hours, minutes, seconds = parts_f
                return hours * 3600 + minutes * 60 + seconds
        return 0.0

    def _run(self, args: List[str], file_path: Path) -> Dict[str, Any]:
        cmd = [self.executable, "-v", "quiet", "-print_format", "json", *args, str(file_path)]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise SetupError(f"ffprobe not found: {self.executable}") from exc
        if result.returncode != 0:
            raise RuntimeError(f"ffprobe failed for {file_path}: {result.stderr}")
        try:
            return json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"ffprobe returned invalid JSON for {file_path}: {exc}") from exc

    def get_duration(self, file_path: Path) -> float:
        """Total duration in seconds. Any failure is a SetupError."""
        try:
            data = self._run(["-show_format"], file_path)
        except RuntimeError as exc:
            raise SetupError(str(exc)) from exc

        # Fallback order: format.duration, format tags, bitrate/size
        fmt = data.get("format", {}) or {}
        duration = self._to_float(fmt.get("duration"))
        if duration <= 0:
            tags = fmt.get("tags", {}) or {}
            duration = self._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
        if duration <= 0:
            bit_rate = self._to_float(fmt.get("bit_rate"))
            size = self._to_float(fmt.get("size"))
            if bit_rate > 0 and size > 0:
                duration = (size * 8) / bit_rate
        if duration <= 0:
            raise SetupError(f"Unable to determine duration of {file_path}")
        return duration

    def probe_tracks(self, file_path: Path) -> Optional[MediaTracks]:
        """Track listing for a file, or None when probing is unavailable."""
        try:
            data = self._run(["-show_format", "-show_streams", "-show_chapters"], file_path)
        except (SetupError, RuntimeError) as exc:
            self.logger.warning(f"PROBE_UNAVAILABLE: {file_path.name}: {exc}")
            return None
        return self.parse_tracks(data)

    @classmethod
    def _bit_depth(cls, stream: Dict[str, Any]) -> Optional[int]:
        depth = cls._to_int(stream.get("bits_per_raw_sample"))
        if depth:
            return depth
        pix_fmt = stream.get("pix_fmt") or ""
        for bits in (10, 12):
            if f"p{bits}" in pix_fmt:
                return bits
        return 8 if pix_fmt else None

    @classmethod
    def parse_tracks(cls, data: Dict[str, Any]) -> MediaTracks:
        fmt = data.get("format", {}) or {}
        tracks: list = [
            GeneralTrack(
                format=fmt.get("format_name", ""),
                title=(fmt.get("tags", {}) or {}).get("title", ""),
                bit_rate=cls._to_int(fmt.get("bit_rate")),
                duration_seconds=cls._to_float(fmt.get("duration")) or None,
            )
        ]
        counters = {"video": 0, "audio": 0, "text": 0}

        for stream in data.get("streams", []):
            codec_type = stream.get("codec_type")
            kind = "text" if codec_type == "subtitle" else codec_type
            if kind not in counters:
                continue
            counters[kind] += 1
            codec = stream.get("codec_name", "") or ""
            tags = stream.get("tags", {}) or {}
            disposition = stream.get("disposition", {}) or {}
            common = dict(
                stream_index=counters[kind],
                format=_FORMAT_NAMES.get(codec, codec.upper()),
                codec_id=codec,
                language=tags.get("language", "") or "",
                title=tags.get("title", "") or "",
                bit_rate=cls._to_int(stream.get("bit_rate") or tags.get("BPS")),
            )
            if kind == "video":
                tracks.append(VideoTrack(
                    width=cls._to_int(stream.get("width")) or 0,
                    height=cls._to_int(stream.get("height")) or 0,
                    bit_depth=cls._bit_depth(stream),
                    **common,
                ))
            elif kind == "audio":
                tracks.append(AudioTrack(channels=cls._to_int(stream.get("channels")) or 0, **common))
            else:
                tracks.append(TextTrack(
                    is_forced=bool(disposition.get("forced")),
                    is_default=bool(disposition.get("default")),
                    **common,
                ))

        if data.get("chapters"):
            tracks.append(MenuTrack())
        return MediaTracks(tracks=tracks)
