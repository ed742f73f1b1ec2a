import logging
import math
import queue
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterator, List, Optional, Tuple
from vea.domain.errors import SetupError
from vea.infrastructure.ffmpeg import KEYFRAME_FILTER_MIN_INTERVAL, FFmpegAdapter
from vea.infrastructure.ffprobe import FFprobeAdapter

FrameSample = Tuple[float, Optional[bytes]]


def plan_offsets(duration_s: float, capture_interval_s: int, minimum_captures: int) -> Tuple[int, List[int]]:
    """Sampling interval and ordered offsets (seconds) for a video.

    The interval shrinks when it would yield fewer than ``minimum_captures + 1``
    samples, and is never below one second. Each offset leaves a full interval
    before the end of the video.
    """
    interval = int(capture_interval_s)
    if interval <= 0 or duration_s / interval < minimum_captures + 1:
        interval = int(math.floor(duration_s / (minimum_captures + 1)))
    interval = max(1, interval)

    offsets: List[int] = []
    offset = 0
    while offset + interval <= duration_s:
        offsets.append(offset)
        offset += interval
    return interval, offsets


class FrameSampler:
    """Pulls evenly spaced still frames from a video with a pool of ffmpeg workers.

    A sampler runs once. ``frames()`` probes the video up front, so missing
    tools and unreadable durations raise ``SetupError`` before any sampling,
    then returns a lazy iterator of ``(progress, image_bytes_or_None)`` pairs
    that always ends with ``(1.0, None)``.
    """

    def __init__(self, ffprobe: FFprobeAdapter, ffmpeg: FFmpegAdapter):
        self.ffprobe = ffprobe
        self.ffmpeg = ffmpeg
        self._abort = threading.Event()
        self._started = False
        self.logger = logging.getLogger(__name__)

    def abort(self) -> None:
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def frames(
        self,
        video_path: Path,
        capture_interval_s: int = 20,
        minimum_captures: int = 60,
        lossless: bool = True,
        max_threads: int = 1,
    ) -> Iterator[FrameSample]:
        if self._started:
            raise RuntimeError("FrameSampler instances are single-use.")
        self._started = True

        if not video_path.is_file():
            raise SetupError(f"Video file not found: {video_path}")
        self.ffprobe.ensure_available()
        self.ffmpeg.ensure_available()
        duration = self.ffprobe.get_duration(video_path)

        interval, offsets = plan_offsets(duration, capture_interval_s, minimum_captures)
        workers = max(1, max_threads or 1)
        self.logger.info(
            f"SAMPLER_START: {video_path.name} duration={duration:.1f}s interval={interval}s "
            f"samples={len(offsets)} workers={workers}"
        )
        return self._iterate(video_path, offsets, lossless, interval >= KEYFRAME_FILTER_MIN_INTERVAL, workers)

    def _iterate(self, video_path: Path, offsets: List[int], lossless: bool, keyframes_only: bool, workers: int) -> Iterator[FrameSample]:
        yield 0.0, None

        total = len(offsets)
        pending = deque(offsets)
        lock = threading.Lock()
        results: "queue.Queue[FrameSample]" = queue.Queue()
        finished = 0

        def _worker():
            nonlocal finished
            while not self._abort.is_set():
                with lock:
                    if not pending:
                        return
                    offset = pending.popleft()
                data = None
                try:
                    data = self.ffmpeg.snapshot(video_path, offset, lossless=lossless, keyframes_only=keyframes_only)
                except RuntimeError as exc:
                    if not self._abort.is_set():
                        self.logger.warning(f"SNAPSHOT_FAILED: {exc}")
                if self._abort.is_set():
                    data = None
                with lock:
                    finished += 1
                    results.put((finished / total, data))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="FrameSampler") as pool:
            futures = [pool.submit(_worker) for _ in range(workers)]
            try:
                while True:
                    try:
                        progress, data = results.get(timeout=0.1)
                    except queue.Empty:
                        if all(f.done() for f in futures) and results.empty():
                            break
                        continue
                    if self._abort.is_set():
                        data = None
                    yield progress, data
            except GeneratorExit:
                # Consumer went away; stop workers before the pool joins them.
                self._abort.set()
                raise
            for future in futures:
                future.result()

        self.logger.debug(f"SAMPLER_END: {video_path.name} aborted={self._abort.is_set()}")
        yield 1.0, None
