import logging
import re
import threading
from pathlib import Path
from typing import Callable, List, Optional
from pydantic import BaseModel
from vea.config.encoder import EncoderConfig
from vea.cropping.crop_engine import CropEngine, FrameCallback
from vea.domain.errors import CropCancelled, DataInconsistency, OperatorCancellation, SetupError
from vea.domain.models import AudioTrack, CropRectangle, MediaTracks
from vea.infrastructure.ffprobe import FFprobeAdapter

CROP_REGEX = re.compile(r"^(\d+):(\d+):(\d+):(\d+)$")
AAC_FORMATS = {"AAC", "AAC LC", "A_AAC-2"}
AC3_FORMATS = {"AC-3", "E-AC-3"}

CropEngineFactory = Callable[[Path, Optional[FrameCallback]], CropEngine]


class BuiltArgs(BaseModel):
    args: List[str]
    tracks: Optional[MediaTracks] = None
    crop: Optional[CropRectangle] = None


def audio_bitrate_kbps(channels: int) -> int:
    if channels >= 7:
        return 360
    if channels == 6:
        return 250
    if channels == 5:
        return 224
    if channels == 4:
        return 192
    return 128


def _most_channels(tracks: List[AudioTrack]) -> Optional[AudioTrack]:
    return max(tracks, key=lambda a: a.channels) if tracks else None


class HandBrakeArgsBuilder:
    """Translates an encoder config and probed tracks into HandBrakeCLI arguments.

    Smart crop runs a CropEngine synchronously; any crop failure other than
    an operator cancellation degrades to no crop.
    """

    def __init__(self, probe: FFprobeAdapter, crop_engine_factory: Optional[CropEngineFactory] = None):
        self.probe = probe
        self.crop_engine_factory = crop_engine_factory
        self._active_crop: Optional[CropEngine] = None
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def abort_crop(self) -> None:
        with self._lock:
            engine = self._active_crop
        if engine is not None:
            engine.abort()

    def build(
        self,
        input_path: Path,
        output_path: Path,
        config: EncoderConfig,
        on_crop_progress: Optional[Callable[[float], None]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> BuiltArgs:
        tracks = self.probe.probe_tracks(input_path)
        crop = None
        crop_args: List[str] = []
        crop_value = config.handbrake_crop.strip()
        if config.smart_crop:
            crop = self.compute_smart_crop(input_path, on_crop_progress, should_cancel)
            if crop is not None:
                crop_args = ["--crop", crop.to_handbrake()]
        elif CROP_REGEX.match(crop_value):
            crop_args = ["--crop", crop_value]

        audio, has_english_audio, reencode_note = self.audio_args(config, tracks)
        subtitles, dub = self.subtitle_args(config, tracks)
        if not has_english_audio:
            # --native-dub would drop the only (foreign) audio
            dub = []

        args = ["-i", str(input_path), "-o", str(output_path)]
        args += self.video_args(config, tracks, crop_args)
        args += audio
        args += subtitles
        args += dub
        if output_path.suffix.lower() == ".mp4":
            args.append("-O")
        args += self.range_args(config)
        self.logger.debug(f"ARGS_BUILT: {input_path.name} {reencode_note}")
        return BuiltArgs(args=args, tracks=tracks, crop=crop)

    def compute_smart_crop(
        self,
        input_path: Path,
        on_progress: Optional[Callable[[float], None]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> Optional[CropRectangle]:
        """Runs a CropEngine over ``input_path``.

        ``should_cancel`` is checked before the engine is built and again once
        ``abort_crop`` can reach it.
        """
        if self.crop_engine_factory is None:
            return None
        cancelled = should_cancel or (lambda: False)
        if cancelled():
            raise CropCancelled("Smart crop cancelled before it started")

        def _on_frame(progress, image):
            if on_progress is not None:
                on_progress(progress)

        engine = self.crop_engine_factory(input_path, _on_frame)
        with self._lock:
            self._active_crop = engine
        try:
            if cancelled():
                raise CropCancelled("Smart crop cancelled before it started")
            self.logger.info(f"CROP_START: {input_path.name}")
            return engine.calculate()
        except OperatorCancellation:
            raise
        except (SetupError, DataInconsistency, RuntimeError, OSError, ValueError) as exc:
            self.logger.warning(f"CROP_FAILED: {input_path.name}: {exc} (continuing without crop)")
            return None
        finally:
            with self._lock:
                self._active_crop = None

    def video_encoder_name(self, config: EncoderConfig, tracks: Optional[MediaTracks]) -> str:
        encoder = config.video_encoder
        video = tracks.video[0] if tracks and tracks.video else None
        depth = video.bit_depth if video else None
        if encoder == "av1":
            return "svt_av1_10bit" if depth and depth >= 10 else "svt_av1"
        if depth == 10:
            return f"{encoder}_10bit"
        if depth == 12:
            return "x265_12bit" if encoder == "x265" else "x264_10bit"
        return encoder

    def video_args(self, config: EncoderConfig, tracks: Optional[MediaTracks], crop_args: List[str]) -> List[str]:
        return [
            "-e", self.video_encoder_name(config, tracks),
            "--encoder-preset", config.video_encoder_preset,
            "-q", str(config.quality),
            *crop_args,
            "--modulus", "2",
        ]

    def _forced_audio_selection(self, config: EncoderConfig, tracks: Optional[MediaTracks]) -> Optional[List[AudioTrack]]:
        selection = config.audio_track_selection
        if not selection.forced or tracks is None:
            return None
        audio = tracks.audio
        if selection.all_tracks:
            return list(audio)
        if selection.all_tracks_no_commentary:
            return [a for a in audio if not a.is_commentary]
        if selection.all_english:
            return [a for a in audio if a.is_english]
        return [a for a in audio if a.is_english and not a.is_commentary]

    def audio_args(self, config: EncoderConfig, tracks: Optional[MediaTracks]):
        """Returns (args, has_english_audio, note)."""
        if config.audio_track_selection.all_tracks and tracks is None:
            return ["--all-audio", "--aencoder", "copy"], True, "audio=all"

        forced = self._forced_audio_selection(config, tracks)
        has_english = bool(tracks) and any(a.is_english and not a.is_commentary and a.channels > 0 for a in tracks.audio)
        if forced:
            indexes = ",".join(str(a.stream_index) for a in forced)
            encoders = ",".join("copy" for _ in forced)
            return ["--audio", indexes, "--aencoder", encoders], has_english, f"audio={indexes} copy"

        chosen: Optional[AudioTrack] = None
        reencode = True
        kbps = 360
        if tracks is not None:
            english = [a for a in tracks.audio if a.is_english and not a.is_commentary and a.channels > 0]
            most = _most_channels(english)
            aac = _most_channels([a for a in english if a.format.upper() in AAC_FORMATS])
            ac3 = _most_channels([a for a in english if a.format.upper() in AC3_FORMATS])
            if aac and ac3:
                best = ac3 if ac3.channels > aac.channels else aac
            else:
                best = aac or ac3
            # Not worth copying a sub-5.1 track when another English track has more channels.
            if best is not None and best.channels <= 5 and most.channels > best.channels:
                best = None

            if best is not None:
                chosen = best
                reencode = False
            else:
                chosen = english[0] if english else None
                if chosen is None and len(tracks.audio) == 1:
                    chosen = tracks.audio[0]
                kbps = audio_bitrate_kbps(chosen.channels if chosen else 7)

        if chosen is not None:
            args = ["--audio", str(chosen.stream_index)]
        elif has_english:
            args = ["--audio-lang-list", "eng,und", "--first-audio"]
        else:
            args = ["--first-audio"]

        if reencode:
            args += ["--aencoder", "ca_aac", "--mixdown", "5_2_lfe", "--ab", str(kbps)]
            note = f"audio reencode {kbps}kbps"
        else:
            args += ["--aencoder", "copy"]
            note = "audio copy"
        return args, has_english, note

    def subtitle_args(self, config: EncoderConfig, tracks: Optional[MediaTracks]):
        """Returns (subtitle args, dub args)."""
        if config.subtitle_track_selection.all_tracks:
            return ["--all-subtitles"], ["--native-dub"]

        subtitles = ["--subtitle-lang-list", "eng", "--all-subtitles", "--native-language", "eng"]
        dub = ["--native-dub"]
        if tracks is None:
            return subtitles, dub

        text = tracks.text
        english = [t for t in text if t.is_english]
        if not english and text:
            if all(not t.language.strip() for t in text) or any(t.format.upper() == "PGS" for t in text):
                return ["--all-subtitles"], []
            return subtitles, dub

        if not any(t.is_default for t in english):
            # No default English track: make the first forced one the default.
            for i, track in enumerate(english):
                if track.is_forced:
                    indexes = ",".join(str(t.stream_index) for t in english)
                    return ["-s", indexes, f"--subtitle-default={i + 1}"], []
        return subtitles, dub

    @staticmethod
    def range_args(config: EncoderConfig) -> List[str]:
        if not config.limited_range:
            return []
        return [
            "--start-at", f"seconds:{config.start_time_seconds}",
            "--stop-at", f"seconds:{config.duration_seconds}",
        ]
