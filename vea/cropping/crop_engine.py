import io
import logging
import queue
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional
import numpy as np
from PIL import Image, ImageDraw
from vea.config.models import CropConfig
from vea.domain.errors import CropCancelled, DataInconsistency
from vea.domain.models import CropRectangle
from .buffer_pool import BufferPool
from .frame_sampler import FrameSampler
from .pixel_classifier import is_meaningful_pixels

FrameCallback = Callable[[float, Optional[Image.Image]], None]

_END = object()


class CropState(str, Enum):
    IDLE = "IDLE"
    SAMPLING = "SAMPLING"
    DONE = "DONE"
    ABORTED = "ABORTED"
    FAILED = "FAILED"


class CropEngine:
    """Computes the smallest rectangle holding the picture in every sampled frame.

    A producer thread iterates the FrameSampler into a bounded queue; a
    consumer thread decodes each frame and scans inward from the four edges,
    never past the current rectangle, so the rectangle only grows. As soon as
    it covers the whole frame there is nothing to crop and both threads stop.

    ``calculate()`` returns the rectangle (even width and height), or None when
    no frame had any content. Engines are single-use.
    """

    def __init__(
        self,
        video_path: Path,
        sampler: FrameSampler,
        settings: Optional[CropConfig] = None,
        on_frame: Optional[FrameCallback] = None,
        buffer_pool: Optional[BufferPool] = None,
    ):
        self.video_path = video_path
        self.sampler = sampler
        self.settings = settings or CropConfig()
        self.on_frame = on_frame
        self.buffer_pool = buffer_pool or BufferPool()
        self.rect = CropRectangle()
        self.state = CropState.IDLE
        self.frames_processed = 0
        self._abort = threading.Event()
        self._cancelled = False
        self._consumer: Optional[threading.Thread] = None
        self._consumer_error: Optional[BaseException] = None
        self._producer_error: Optional[BaseException] = None
        self.logger = logging.getLogger(__name__)

    def abort(self) -> None:
        """Cancels the computation from outside; ``calculate()`` raises CropCancelled."""
        self._cancelled = True
        self._stop()

    def _stop(self) -> None:
        self._abort.set()
        self.sampler.abort()

    def calculate(self) -> Optional[CropRectangle]:
        if self.state is not CropState.IDLE:
            raise RuntimeError("Cannot reuse a CropEngine instance.")
        self.state = CropState.SAMPLING
        start = time.monotonic()

        try:
            frames = self.sampler.frames(
                self.video_path,
                capture_interval_s=self.settings.capture_interval_s,
                minimum_captures=self.settings.minimum_captures,
                lossless=self.settings.lossless,
                max_threads=self.settings.resolved_threads(),
            )
        except Exception:
            self.state = CropState.FAILED
            raise

        frame_queue: "queue.Queue" = queue.Queue(maxsize=self.settings.queue_size)
        self._consumer = threading.Thread(target=self._consume, args=(frame_queue,), name="CropCalculations", daemon=True)
        producer = threading.Thread(target=self._produce, args=(frames, frame_queue), name="CropSampler", daemon=True)
        self._consumer.start()
        producer.start()
        producer.join()
        self._consumer.join()

        error = self._consumer_error or self._producer_error
        if error is not None:
            self.state = CropState.FAILED
            raise error
        if self._cancelled:
            self.state = CropState.ABORTED
            raise CropCancelled(f"Crop computation cancelled for {self.video_path}")

        self.state = CropState.DONE
        elapsed = time.monotonic() - start
        if not self.rect.is_valid():
            self.logger.info(f"CROP_END: {self.video_path.name} no content found frames={self.frames_processed} elapsed={elapsed:.1f}s")
            return None
        self.rect.inflate_to_modulus2()
        self.logger.info(f"CROP_END: {self.video_path.name} rect={self.rect} frames={self.frames_processed} elapsed={elapsed:.1f}s")
        return self.rect

    # -- producer -----------------------------------------------------------

    def _produce(self, frames, frame_queue: "queue.Queue") -> None:
        try:
            for item in frames:
                if not self._put(frame_queue, item):
                    # Queue stays full only after the consumer died; keep draining
                    # the sampler so its workers wind down.
                    self.sampler.abort()
        except Exception as exc:
            self._producer_error = exc
            self._stop()
        finally:
            self._put(frame_queue, _END)

    def _put(self, frame_queue: "queue.Queue", item) -> bool:
        while True:
            try:
                frame_queue.put(item, timeout=0.1)
                return True
            except queue.Full:
                if self._consumer is None or not self._consumer.is_alive():
                    return False

    # -- consumer -----------------------------------------------------------

    def _consume(self, frame_queue: "queue.Queue") -> None:
        while True:
            item = frame_queue.get()
            if item is _END:
                return
            if self._consumer_error is not None or self._abort.is_set():
                continue
            progress, data = item
            try:
                image = self._decode(data) if data is not None else None
                if image is not None:
                    self.process_image(image)
                if self.on_frame is not None:
                    self.on_frame(progress, image)
            except Exception as exc:
                self._consumer_error = exc
                self._stop()

    @staticmethod
    def _decode(data: bytes) -> Image.Image:
        image = Image.open(io.BytesIO(data))
        image.load()
        if image.mode != "RGB":
            image = image.convert("RGB")
        return image

    def process_image(self, image: Image.Image) -> bool:
        """Expands the rectangle with one RGB frame. Returns True if it changed."""
        width, height = image.size
        if self.frames_processed == 0:
            self.rect.source_width = width
            self.rect.source_height = height
        elif (width, height) != (self.rect.source_width, self.rect.source_height):
            raise DataInconsistency(
                f"Inconsistent frame size: {width}x{height}, expected "
                f"{self.rect.source_width}x{self.rect.source_height}"
            )

        with self.buffer_pool.checkout((height, width, 3)) as pixels:
            np.copyto(pixels, np.asarray(image, dtype=np.uint8))
            changed = self.expand(pixels)

        self.frames_processed += 1
        if changed and self.settings.debug_frames_dir and self.rect.is_valid():
            self._save_debug_frame(image)
        if self.rect.covers_full_frame():
            self.logger.info(f"CROP_FULL_FRAME: {self.video_path.name} after {self.frames_processed} frame(s)")
            self._stop()
        return changed

    def expand(self, pixels: np.ndarray) -> bool:
        """Scans inward from each edge, stopping at the first meaningful line."""
        height, width = pixels.shape[:2]
        rect = self.rect
        changed = False

        for y in range(0, min(height, rect.top)):
            if is_meaningful_pixels(pixels[y]):
                rect.top = y
                changed = True
                break

        for x in range(0, min(width, rect.left)):
            if is_meaningful_pixels(pixels[:, x]):
                rect.left = x
                changed = True
                break

        for x in range(width - 1, rect.right, -1):
            if is_meaningful_pixels(pixels[:, x]):
                rect.right = x
                changed = True
                break

        for y in range(height - 1, rect.bottom, -1):
            if is_meaningful_pixels(pixels[y]):
                rect.bottom = y
                changed = True
                break

        return changed

    def _save_debug_frame(self, image: Image.Image) -> None:
        out_dir = Path(self.settings.debug_frames_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        stem = f"{self.video_path.stem}-{self.frames_processed:04d}"
        image.save(out_dir / f"{stem}.png")
        marked = image.copy()
        draw = ImageDraw.Draw(marked)
        draw.rectangle((self.rect.left, self.rect.top, self.rect.right, self.rect.bottom), outline=(255, 0, 0))
        marked.save(out_dir / f"{stem}-rect.png")
