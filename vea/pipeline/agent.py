import logging
import threading
from pathlib import Path
from typing import List, Optional
from vea.config.models import AppConfig
from vea.cropping.buffer_pool import BufferPool
from vea.cropping.crop_engine import CropEngine, FrameCallback
from vea.cropping.frame_sampler import FrameSampler
from vea.domain.models import AgentStatus
from vea.infrastructure.event_bus import EventBus
from vea.infrastructure.ffmpeg import FFmpegAdapter
from vea.infrastructure.ffprobe import FFprobeAdapter
from vea.infrastructure.file_scanner import FileScanner
from vea.infrastructure.handbrake import HandBrakeRunner
from vea.infrastructure.housekeeping import HousekeepingService
from vea.infrastructure.lock_file import LockCoordinator
from .args_builder import HandBrakeArgsBuilder
from .scheduler import TaskScheduler
from .status import StatusPublisher
from .supervisor import EncodingSupervisor


class EncodingAgent:
    """Owns the scan loop and the encode loop, and the controls around them."""

    def __init__(
        self,
        config: AppConfig,
        event_bus: Optional[EventBus] = None,
        lock_coordinator: Optional[LockCoordinator] = None,
        runner: Optional[HandBrakeRunner] = None,
        ffprobe: Optional[FFprobeAdapter] = None,
    ):
        self.config = config
        self.event_bus = event_bus or EventBus()
        self.status = StatusPublisher(self.event_bus)
        self.ffprobe = ffprobe or FFprobeAdapter(config.tools.ffprobe)
        self.lock_coordinator = lock_coordinator or LockCoordinator(
            config.general.resolved_machine_name(),
            suffix=config.locking.suffix,
            grace_period_s=config.locking.grace_period_s,
        )
        self.runner = runner or HandBrakeRunner(
            config.tools.handbrake,
            poll_interval_s=config.encode.poll_interval_s,
            stream_join_timeout_s=config.encode.stream_join_timeout_s,
            below_normal_priority=config.encode.below_normal_priority,
        )
        self.buffer_pool = BufferPool()
        self.args_builder = HandBrakeArgsBuilder(self.ffprobe, self.create_crop_engine)
        self.scheduler: Optional[TaskScheduler] = None
        self.supervisor: Optional[EncodingSupervisor] = None
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._control_lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def create_crop_engine(self, video_path: Path, on_frame: Optional[FrameCallback] = None) -> CropEngine:
        crop = self.config.crop
        sampler = FrameSampler(self.ffprobe, FFmpegAdapter(self.config.tools.ffmpeg, timeout_s=crop.snapshot_timeout_s))
        return CropEngine(video_path, sampler, settings=crop, on_frame=on_frame, buffer_pool=self.buffer_pool)

    @property
    def active(self) -> bool:
        return self.status.snapshot().agent_active

    def start(self) -> None:
        """Checks tools, cleans leftovers and starts both loops. SetupError if HandBrake is missing."""
        with self._control_lock:
            if self._threads:
                raise RuntimeError("Agent already started")
            self.runner.ensure_available()
            self._housekeeping()
            self._spawn()

    def _housekeeping(self) -> None:
        general = self.config.general
        housekeeping = HousekeepingService(self.lock_coordinator)
        housekeeping.cleanup_stale_locks(general.watch_roots())
        housekeeping.cleanup_partial_outputs(general.staging_output_dir)

    def _spawn(self) -> None:
        self._stop_event = threading.Event()
        scanner = FileScanner(self.config.general.extensions)
        self.scheduler = TaskScheduler(self.config, scanner, self.event_bus)
        self.supervisor = EncodingSupervisor(
            self.config,
            self.scheduler,
            self.lock_coordinator,
            self.status,
            self.args_builder,
            self.runner,
            self.event_bus,
            self._stop_event,
        )
        self.status.set_agent_active(True, comment="")
        self._threads = [
            threading.Thread(target=self._guard, args=(self.scheduler.run, self._stop_event), name="Scheduling", daemon=True),
            threading.Thread(target=self._guard, args=(self.supervisor.run,), name="EncodingHandler", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        self.logger.info(f"Agent started on {self.lock_coordinator.machine_name}")

    def _guard(self, loop, *args) -> None:
        try:
            loop(*args)
        except Exception as exc:
            self.logger.exception(f"AGENT_LOOP_DIED: {threading.current_thread().name}: {exc}")
            self.status.set_agent_active(False, comment=f"{threading.current_thread().name} stopped: {exc}")
            self._stop_event.set()

    def shutdown(self, timeout: float = 10.0) -> None:
        """Stops both loops; an in-flight encode is killed."""
        with self._control_lock:
            self._stop_event.set()
            if self.supervisor is not None:
                self.supervisor.abort_current()
            for thread in self._threads:
                thread.join(timeout=timeout)
                if thread.is_alive():
                    self.logger.warning(f"{thread.name} did not stop within {timeout}s")
            self._threads = []
            self.status.set_agent_active(False)
            self.logger.info("Agent stopped")

    def restart(self) -> bool:
        """Restarts the loops if they are no longer running. False if still active."""
        if self.active:
            return False
        self.shutdown()
        with self._control_lock:
            self._spawn()
        return True

    def pause(self) -> None:
        self.status.set_paused(True)
        self.logger.info("Agent paused")

    def unpause(self) -> None:
        self.status.set_paused(False)
        self.logger.info("Agent unpaused")

    def abort_current(self) -> bool:
        """Kills the current encode and pauses so the staged file is not picked up again right away."""
        if self.supervisor is None:
            return False
        self.pause()
        return self.supervisor.abort_current()

    def status_snapshot(self) -> AgentStatus:
        return self.status.snapshot()

    def queued_tasks(self) -> List[str]:
        if self.scheduler is None:
            return []
        return [task.relative_path for task in self.scheduler.snapshot()]

    def recently_finished(self) -> List[str]:
        if self.supervisor is None:
            return []
        return self.supervisor.recently_finished()
