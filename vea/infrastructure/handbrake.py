import logging
import os
import re
import subprocess
import sys
import threading
from typing import Callable, List, Optional
from pydantic import BaseModel
from vea.domain.errors import SetupError
from vea.domain.models import EncodeProgress
from .executables import resolve_executable

PROGRESS_REGEX = re.compile(r"Encoding: task \d+ of \d+, (.+?)\s*% \((.+?) fps, avg (.+?) fps, ETA (.+?)\)")
ETA_REGEX = re.compile(r"(\d\d)h(\d\d)m(\d\d)s")
SUCCESS_SENTINEL = "Encode done!"
MUXING_MARKER = "Muxing: this may take awhile"
FULL_PROGRESS_NOTE = "Note: HandBrake can spend several minutes at 100% progress."
BELOW_NORMAL_NICENESS = 10


def _to_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return 0.0


def parse_progress_line(line: str) -> Optional[EncodeProgress]:
    """Parses a HandBrakeCLI progress line; None for anything else."""
    match = PROGRESS_REGEX.search(line)
    if not match:
        return None
    percent = _to_float(match.group(1))
    eta_match = ETA_REGEX.search(match.group(4))
    eta = None
    if eta_match:
        hours, minutes, seconds = (int(g) for g in eta_match.groups())
        eta = hours * 3600 + minutes * 60 + seconds

    if MUXING_MARKER in line:
        comment = line.strip()
    elif percent == 100:
        comment = FULL_PROGRESS_NOTE
    else:
        comment = ""
    return EncodeProgress(
        percent=percent,
        fps=_to_float(match.group(2)),
        avg_fps=_to_float(match.group(3)),
        eta_seconds=eta,
        comment=comment,
    )


class EncodeResult(BaseModel):
    returncode: Optional[int] = None
    sentinel_seen: bool = False
    cancelled: bool = False
    stdout_lines: int = 0
    stderr_text: str = ""
    streams_drained: bool = True


class HandBrakeRunner:
    """Launches HandBrakeCLI and supervises it until exit or cancellation.

    stdout and stderr are drained on their own threads so the process never
    blocks on a full pipe. HandBrake rewrites its progress line with carriage
    returns; text mode splits those into separate lines.
    """

    def __init__(
        self,
        executable: str = "HandBrakeCLI",
        poll_interval_s: float = 0.5,
        stream_join_timeout_s: float = 5.0,
        below_normal_priority: bool = True,
    ):
        self.executable = executable
        self.poll_interval_s = poll_interval_s
        self.stream_join_timeout_s = stream_join_timeout_s
        self.below_normal_priority = below_normal_priority
        self.logger = logging.getLogger(__name__)
        self.stderr_logger = logging.getLogger(f"{__name__}.stderr")

    def ensure_available(self) -> str:
        return resolve_executable(self.executable)

    def _spawn(self, args: List[str]) -> subprocess.Popen:
        kwargs = {}
        if self.below_normal_priority and sys.platform == "win32":
            kwargs["creationflags"] = subprocess.BELOW_NORMAL_PRIORITY_CLASS
        try:
            process = subprocess.Popen(
                [self.executable, *args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                universal_newlines=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                **kwargs,
            )
        except FileNotFoundError as exc:
            raise SetupError(f"HandBrakeCLI not found: {self.executable}") from exc

        if self.below_normal_priority and sys.platform != "win32":
            try:
                os.setpriority(os.PRIO_PROCESS, process.pid, BELOW_NORMAL_NICENESS)
            except (OSError, AttributeError, TypeError) as exc:
                self.logger.debug(f"Could not lower HandBrake priority: {exc}")
        return process

    def run(
        self,
        args: List[str],
        on_progress: Optional[Callable[[EncodeProgress], None]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> EncodeResult:
        process = self._spawn(args)
        self.logger.info(f"HANDBRAKE_START: pid={process.pid}")

        result = EncodeResult()
        stderr_lines: List[str] = []

        def _read_stdout():
            if not process.stdout:
                return
            for line in process.stdout:
                result.stdout_lines += 1
                progress = parse_progress_line(line)
                if progress is not None and on_progress is not None:
                    on_progress(progress)

        def _read_stderr():
            if not process.stderr:
                return
            for line in process.stderr:
                line = line.rstrip("\r\n")
                if line == SUCCESS_SENTINEL:
                    result.sentinel_seen = True
                stderr_lines.append(line)
                self.stderr_logger.debug(line)

        readers = [
            threading.Thread(target=_read_stdout, name="StdOutReader", daemon=True),
            threading.Thread(target=_read_stderr, name="StdErrReader", daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            while True:
                try:
                    process.wait(timeout=self.poll_interval_s)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if should_cancel is not None and should_cancel():
                    result.cancelled = True
                    self._kill(process)
                    break
        except BaseException:
            self._kill(process)
            raise
        finally:
            for reader in readers:
                reader.join(timeout=self.stream_join_timeout_s)
                if reader.is_alive():
                    result.streams_drained = False
                    self.logger.warning(f"HANDBRAKE_STREAM: {reader.name} did not finish within {self.stream_join_timeout_s}s")

        result.returncode = process.returncode
        result.stderr_text = "\n".join(stderr_lines)
        self.logger.info(
            f"HANDBRAKE_END: pid={process.pid} code={result.returncode} "
            f"sentinel={result.sentinel_seen} cancelled={result.cancelled}"
        )
        return result

    def _kill(self, process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        self.logger.info(f"Killing HandBrake process {process.pid}")
        process.kill()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"HandBrake process {process.pid} did not exit after kill")
