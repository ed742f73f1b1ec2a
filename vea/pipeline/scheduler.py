import logging
import threading
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional, Set
from vea.config.models import AppConfig
from vea.domain.events import TaskQueued
from vea.domain.models import Task, VideoFile
from vea.infrastructure.event_bus import EventBus
from vea.infrastructure.file_scanner import FileScanner


class TaskScheduler:
    """Discovers source files and keeps the FIFO work queue.

    The queue and the set of known relative paths share one lock. A path
    stays known from the scan that enqueues it until the supervisor releases
    it, so it cannot be queued twice while in flight.
    """

    def __init__(self, config: AppConfig, file_scanner: Optional[FileScanner] = None, event_bus: Optional[EventBus] = None):
        self.config = config
        self.file_scanner = file_scanner or FileScanner(config.general.extensions)
        self.event_bus = event_bus
        self._lock = threading.Lock()
        self._queue: Deque[Task] = deque()
        self._known: Set[str] = set()
        self.logger = logging.getLogger(__name__)

    def build_task(self, watch_root: Path, file_path: Path) -> Task:
        general = self.config.general
        relative = file_path.relative_to(watch_root)
        relative_output = relative.with_suffix(general.output_extension)
        return Task(
            relative_path=relative.as_posix(),
            watch_root=watch_root,
            source_path=file_path,
            staging_path=general.staging_input_dir / relative,
            output_path=general.output_dir / relative_output,
            failure_path=general.failure_dir / relative,
        )

    def scan_once(self) -> int:
        """Scans every watched root and enqueues unseen files. Returns files found."""
        found = 0
        for root in self.config.general.watch_roots():
            files: List[VideoFile] = self.file_scanner.scan_oldest_first(root)
            found += len(files)
            for video in files:
                task = self.build_task(root, video.path)
                with self._lock:
                    if task.relative_path in self._known:
                        continue
                    self._known.add(task.relative_path)
                    self._queue.append(task)
                self.logger.info(f"TASK_QUEUED: {task.relative_path}")
                if self.event_bus:
                    self.event_bus.publish(TaskQueued(task=task))
        return found

    def next_scan_delay(self, files_found: int) -> float:
        cfg = self.config.scheduler
        return min(max(files_found * cfg.per_file_delay_s, cfg.min_delay_s), cfg.max_delay_s)

    def run(self, stop_event: threading.Event) -> None:
        """Scan loop; returns when ``stop_event`` is set."""
        self.logger.info("Scheduler loop started")
        while not stop_event.is_set():
            try:
                delay = self.next_scan_delay(self.scan_once())
            except Exception as exc:
                self.logger.exception(f"SCAN_ERROR: {exc}")
                delay = self.config.scheduler.error_backoff_s
            stop_event.wait(delay)
        self.logger.info("Scheduler loop stopped")

    def next_task(self) -> Optional[Task]:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    def requeue(self, task: Task) -> None:
        """Appends ``task`` to the tail again; it stays known."""
        with self._lock:
            task.requeue_count += 1
            self._queue.append(task)

    def release(self, task: Task) -> None:
        with self._lock:
            self._known.discard(task.relative_path)

    def is_known(self, relative_path: str) -> bool:
        with self._lock:
            return relative_path in self._known

    def snapshot(self) -> List[Task]:
        with self._lock:
            return [task.model_copy() for task in self._queue]
