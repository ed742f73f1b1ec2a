import logging
import subprocess
from pathlib import Path
from typing import List
from vea.domain.errors import SetupError
from .executables import resolve_executable

# Seeking with -skip_frame nokey lands on keyframes; the select filter drops
# anything that is not an I-frame when samples are far enough apart to afford it.
KEYFRAME_FILTER_MIN_INTERVAL = 10


class FFmpegAdapter:
    """Single-frame snapshot extraction through ffmpeg."""

    def __init__(self, executable: str = "ffmpeg", timeout_s: float = 120.0):
        self.executable = executable
        self.timeout_s = timeout_s
        self.logger = logging.getLogger(__name__)

    def ensure_available(self) -> str:
        return resolve_executable(self.executable)

    def _build_snapshot_command(self, file_path: Path, offset_s: int, lossless: bool, keyframes_only: bool) -> List[str]:
        cmd = [
            self.executable,
            "-hide_banner",
            "-nostdin",
            "-loglevel", "error",
            "-skip_frame", "nokey",
            "-ss", str(offset_s),
            "-i", str(file_path),
        ]
        if keyframes_only:
            cmd.extend(["-vf", "select=eq(pict_type\\,I)"])
        cmd.extend([
            "-c:v", "png" if lossless else "mjpeg",
            "-vframes", "1",
            "-f", "image2pipe",
            "-",
        ])
        return cmd

    def snapshot(self, file_path: Path, offset_s: int, lossless: bool = True, keyframes_only: bool = False) -> bytes:
        """Returns one encoded still image taken at ``offset_s`` seconds."""
        cmd = self._build_snapshot_command(file_path, offset_s, lossless, keyframes_only)
        self.logger.debug(f"SNAPSHOT_CMD: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, timeout=self.timeout_s)
        except FileNotFoundError as exc:
            raise SetupError(f"ffmpeg not found: {self.executable}") from exc
        except subprocess.TimeoutExpired as exc:
            raise RuntimeError(f"ffmpeg snapshot timed out for {file_path} at {offset_s}s") from exc
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise RuntimeError(f"ffmpeg snapshot failed for {file_path} at {offset_s}s: {stderr}")
        if not result.stdout:
            raise RuntimeError(f"ffmpeg produced no image for {file_path} at {offset_s}s")
        return result.stdout
