import logging
import os
import shlex
import shutil
import sys
import threading
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque, Dict, List, Optional, Tuple
from vea.config.encoder import EncoderConfig
from vea.config.loader import find_encoder_config, load_encoder_config
from vea.config.models import AppConfig
from vea.domain.errors import (
    ConfigError,
    ContentionError,
    EncodeFailure,
    OperatorCancellation,
    SourceVanished,
    TransientIOError,
)
from vea.domain.events import (
    CropProgressUpdated,
    EncodeProgressUpdated,
    EncodeStarted,
    TaskFinished,
    TaskStarted,
)
from vea.domain.models import ClaimResult, Task, TaskOutcome
from vea.infrastructure.event_bus import EventBus
from vea.infrastructure.handbrake import HandBrakeRunner
from vea.infrastructure.lock_file import LockCoordinator
from .args_builder import BuiltArgs, HandBrakeArgsBuilder
from .scheduler import TaskScheduler
from .status import StatusPublisher

if sys.platform != "win32":
    import fcntl
else:
    fcntl = None

STAGED_CONFIG_NAME = "encoder.yaml"


def can_open_exclusively(path: Path) -> bool:
    """True if ``path`` can be opened for writing with no other writer holding it."""
    try:
        with open(path, "r+b") as f:
            if fcntl is not None:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    except OSError:
        return False
    return True


def file_signature(path: Path) -> Optional[Tuple[int, int]]:
    """Size and modification time of ``path``, or None if it cannot be read."""
    try:
        st = path.stat()
    except OSError:
        return None
    return st.st_size, st.st_mtime_ns


class EncodingSupervisor:
    """Runs each dequeued task through config, claim, staging and encode.

    Every task ends in exactly one TaskOutcome. Whatever the outcome, the
    task's known marker is released (unless it was requeued) and the live
    status returns to idle.
    """

    def __init__(
        self,
        config: AppConfig,
        scheduler: TaskScheduler,
        lock_coordinator: LockCoordinator,
        status: StatusPublisher,
        args_builder: HandBrakeArgsBuilder,
        runner: HandBrakeRunner,
        event_bus: EventBus,
        stop_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.scheduler = scheduler
        self.lock = lock_coordinator
        self.status = status
        self.args_builder = args_builder
        self.runner = runner
        self.event_bus = event_bus
        self.stop_event = stop_event or threading.Event()
        self._abort_event = threading.Event()
        self._recent: Deque[str] = deque(maxlen=config.general.recent_tasks_max)
        self._recent_lock = threading.Lock()
        self._blocked_batches: Dict[Path, Optional[Tuple[Path, float]]] = {}
        self.current_task: Optional[Task] = None
        self.logger = logging.getLogger(__name__)

    # -- loop and controls ----------------------------------------------------

    def run(self) -> None:
        """Dispatch loop; returns when ``stop_event`` is set."""
        self.logger.info("Encoding loop started")
        sched = self.config.scheduler
        while not self.stop_event.is_set():
            if self.status.snapshot().paused:
                self.stop_event.wait(sched.pause_poll_s)
                continue
            task = self.scheduler.next_task()
            if task is None:
                self.stop_event.wait(sched.idle_poll_s)
                continue
            self.process_task(task)
        self.logger.info("Encoding loop stopped")

    def abort_current(self) -> bool:
        """Kills the in-flight encode (or crop computation). False when idle."""
        if self.current_task is None:
            return False
        self.logger.info(f"ABORT_REQUESTED: {self.current_task.relative_path}")
        self._abort_event.set()
        self.args_builder.abort_crop()
        return True

    def recently_finished(self) -> List[str]:
        """Relative paths of successfully encoded tasks, newest first."""
        with self._recent_lock:
            return list(reversed(self._recent))

    # -- per task -------------------------------------------------------------

    def process_task(self, task: Task) -> TaskOutcome:
        self._abort_event.clear()
        self.current_task = task
        outcome = TaskOutcome.ABANDONED
        message: Optional[str] = None
        self.logger.info(f"TASK_START: {task.relative_path}")
        self.event_bus.publish(TaskStarted(task=task))
        try:
            outcome = self._process(task)
        except SourceVanished as exc:
            message = str(exc)
            self.logger.info(f"TASK_VANISHED: {task.relative_path}")
        except ContentionError as exc:
            message = str(exc)
            self.logger.info(f"TASK_CONTENDED: {task.relative_path}: {exc}")
        except TransientIOError as exc:
            message = str(exc)
            outcome = self._requeue(task, exc)
        except ConfigError as exc:
            message = str(exc)
        except OperatorCancellation as exc:
            message = str(exc)
            outcome = TaskOutcome.CANCELLED
            self.logger.info(f"TASK_CANCELLED: {task.relative_path}: {exc}")
        except Exception as exc:
            message = str(exc)
            outcome = TaskOutcome.FAILED
            self.logger.exception(f"TASK_ERROR: {task.relative_path}: {exc}")
        finally:
            if outcome is not TaskOutcome.REQUEUED:
                self.scheduler.release(task)
            self.current_task = None
            self._abort_event.clear()
            self.status.reset_task()
            self.event_bus.publish(TaskFinished(task=task, outcome=outcome, message=message))
        self.logger.info(f"TASK_END: {task.relative_path} outcome={outcome.value}")
        return outcome

    def _process(self, task: Task) -> TaskOutcome:
        if not task.source_path.exists():
            raise SourceVanished(f"{task.source_path} no longer exists")

        encoder_config, raw_config = self._resolve_config(task)

        if not task.is_staged:
            self._claim_and_stage(task, raw_config)

        try:
            return self._encode(task, encoder_config)
        except EncodeFailure as exc:
            self._route_failure(task, encoder_config, exc)
            return TaskOutcome.FAILED

    def _resolve_config(self, task: Task) -> Tuple[EncoderConfig, str]:
        batch = task.batch_name
        if batch is None:
            self.logger.error(f"CONFIG_MISSING: {task.relative_path} is not inside a batch folder")
            raise ConfigError(f"{task.relative_path} is not inside a batch folder")

        batch_dir = task.watch_root / batch
        config_path = find_encoder_config(batch_dir)
        marker = None
        if config_path is not None:
            try:
                marker = (config_path, config_path.stat().st_mtime)
            except OSError:
                marker = None

        if batch_dir in self._blocked_batches and self._blocked_batches[batch_dir] == marker:
            self.logger.debug(f"CONFIG_BLOCKED: {batch} (unchanged since last failure)")
            raise ConfigError(f"Batch {batch} is blocked by an invalid encoder config")

        try:
            if config_path is None:
                raise ConfigError(f"No encoder config in {batch_dir}")
            encoder_config, raw = load_encoder_config(config_path)
        except ConfigError as exc:
            self._blocked_batches[batch_dir] = marker
            self.logger.error(f"CONFIG_INVALID: {exc}")
            raise
        self._blocked_batches.pop(batch_dir, None)
        return encoder_config, raw

    def _claim_and_stage(self, task: Task, raw_config: str) -> None:
        result = self.lock.try_claim(task.source_path, cancel_event=self.stop_event)
        if result is ClaimResult.ALREADY_LOCKED:
            raise ContentionError(f"{task.relative_path} is claimed by another agent")
        if result is ClaimResult.FAILED:
            if self.stop_event.is_set():
                raise OperatorCancellation("Shutdown during claim")
            raise ContentionError(f"Could not claim {task.relative_path}")

        try:
            self._wait_until_writable(task.source_path)
            task.staging_path.parent.mkdir(parents=True, exist_ok=True)
            self.logger.info(f"STAGING: {task.source_path} -> {task.staging_path}")
            shutil.move(str(task.source_path), str(task.staging_path))
        finally:
            self.lock.release(task.source_path)

        staged_config = self.config.general.staging_input_dir / task.batch_name / STAGED_CONFIG_NAME
        staged_config.parent.mkdir(parents=True, exist_ok=True)
        staged_config.write_text(raw_config, encoding="utf-8")

    def _wait_until_writable(self, path: Path) -> None:
        """Waits until no writer holds ``path`` and its size and mtime hold still for one poll interval."""
        staging = self.config.staging
        deadline = time.monotonic() + max(staging.writable_timeout_s, staging.poll_interval_s)
        previous = None
        while True:
            if not path.exists():
                raise SourceVanished(f"{path} disappeared while waiting to stage it")
            signature = file_signature(path)
            if signature is not None and signature == previous and can_open_exclusively(path):
                return
            if previous is not None and signature != previous:
                self.logger.debug(f"STAGING_WAIT: {path.name} is still being written")
            previous = signature
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransientIOError(f"{path.name} still not writable after {staging.writable_timeout_s:.0f}s")
            if self.stop_event.wait(min(staging.poll_interval_s, remaining)):
                raise OperatorCancellation("Shutdown while waiting to stage")

    def _requeue(self, task: Task, exc: Exception) -> TaskOutcome:
        limit = self.config.staging.max_requeues
        if limit is not None and task.requeue_count >= limit:
            self.logger.warning(f"TASK_GIVEUP: {task.relative_path} requeued {task.requeue_count} time(s): {exc}")
            return TaskOutcome.ABANDONED
        self.scheduler.requeue(task)
        self.logger.info(f"TASK_REQUEUED: {task.relative_path}: {exc}")
        return TaskOutcome.REQUEUED

    # -- encode ---------------------------------------------------------------

    def _temp_output_path(self, task: Task) -> Path:
        relative = Path(task.relative_path).with_suffix(self.config.general.output_extension)
        return self.config.general.staging_output_dir / relative

    def _encode(self, task: Task, encoder_config: EncoderConfig) -> TaskOutcome:
        staged = task.staging_path
        temp_output = self._temp_output_path(task)
        temp_output.parent.mkdir(parents=True, exist_ok=True)
        if temp_output.exists():
            temp_output.unlink()

        if task.output_path.exists():
            raise EncodeFailure(f"Output file already exists: {task.output_path}")

        built = self.args_builder.build(
            staged,
            temp_output,
            encoder_config,
            on_crop_progress=lambda fraction: self.event_bus.publish(CropProgressUpdated(task=task, fraction=fraction)),
            should_cancel=lambda: self._abort_event.is_set() or self.stop_event.is_set(),
        )
        if self._abort_event.is_set():
            raise OperatorCancellation("Aborted before encode")
        self._write_processing_record(task, built)

        self.logger.info(f"ENCODE_START: {staged.name}")
        self.logger.debug(f"ENCODE_CMD: {shlex.join(built.args)}")
        self.event_bus.publish(EncodeStarted(task=task, args=built.args))
        start_time = time.monotonic()
        result = self.runner.run(
            built.args,
            on_progress=lambda progress: self.event_bus.publish(EncodeProgressUpdated(task=task, progress=progress)),
            should_cancel=lambda: self._abort_event.is_set() or self.stop_event.is_set(),
        )
        elapsed = time.monotonic() - start_time

        if result.cancelled:
            self._discard(temp_output)
            reason = "shutdown" if self.stop_event.is_set() else "aborted by operator"
            raise OperatorCancellation(f"Encode {reason} after {elapsed:.0f}s")

        if not result.sentinel_seen:
            self._discard(temp_output)
            raise EncodeFailure(
                f"HandBrake exited with code {result.returncode} without reporting successful completion",
                stderr_text=result.stderr_text,
            )
        if not temp_output.exists():
            raise EncodeFailure(f"Expected output {temp_output} does not exist", stderr_text=result.stderr_text)

        self._publish_output(temp_output, task.output_path)
        if not encoder_config.keep_input_for_debugging_afterward:
            self.logger.info(f"Deleting staged input {staged}")
            staged.unlink()
        with self._recent_lock:
            self._recent.append(task.relative_path)
        self.logger.info(f"ENCODE_END: {staged.name} status=completed elapsed={elapsed:.1f}s")
        return TaskOutcome.SUCCEEDED

    def _publish_output(self, temp_output: Path, destination: Path) -> None:
        """Moves the output next to its destination, then renames it into place."""
        if destination.exists():
            raise EncodeFailure(f"Output file appeared during encode: {destination}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".partial")
        shutil.move(str(temp_output), str(partial))
        os.replace(partial, destination)
        self.logger.info(f"OUTPUT_PUBLISHED: {destination}")

    def _discard(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            self.logger.warning(f"Failed to delete {path}: {exc}")

    def _write_processing_record(self, task: Task, built: BuiltArgs) -> Path:
        records_dir = self.config.general.records_dir
        records_dir.mkdir(parents=True, exist_ok=True)
        staged = task.staging_path
        path = records_dir / f"{staged.name} {int(time.time() * 1000)}.info"
        tracks = built.tracks.model_dump_json(indent=2) if built.tracks else "null"
        crop = str(built.crop) if built.crop else "none"
        path.write_text(
            f"{staged.name}\n"
            f"Encoding began at [{datetime.now().isoformat(timespec='seconds')}] with configuration "
            f"\"{task.batch_name}\" using HandBrake args:\n{shlex.join(built.args)}\n\n"
            f"Smart crop: {crop}\n\n\n"
            f"Tracks:\n{tracks}\n",
            encoding="utf-8",
        )
        return path

    def failure_note_path(self, task: Task) -> Path:
        return task.output_path.parent / f"HANDBRAKE-LOG-{task.output_path.name}.txt"

    def _route_failure(self, task: Task, encoder_config: EncoderConfig, exc: EncodeFailure) -> None:
        staged = task.staging_path
        moved_to: Optional[Path] = None
        if not encoder_config.keep_input_for_debugging_afterward and staged.exists():
            moved_to = task.failure_path
            if moved_to.exists():
                moved_to = moved_to.with_name(f"{moved_to.stem}.{int(time.time() * 1000)}{moved_to.suffix}")
            moved_to.parent.mkdir(parents=True, exist_ok=True)
            self.logger.info(f"Moving {staged} to failure directory {moved_to}")
            shutil.move(str(staged), str(moved_to))

        note = self.failure_note_path(task)
        note.parent.mkdir(parents=True, exist_ok=True)
        lines = [
            f"There is reason to believe HandBrake has failed to encode \"{task.output_path.name}\" "
            f"at {datetime.now().isoformat(timespec='seconds')}.",
            f"Reason: {exc}",
            "Likely, the source file was damaged.",
        ]
        if moved_to is not None:
            lines.append(f"It has been moved so you can inspect it: \"{moved_to}\"")
        lines.append("This is a HandBrake log for the supposedly failed encoding process.")
        lines.append(exc.stderr_text)
        with open(note, "a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n\n")
        self.logger.error(f"ENCODE_FAILED: {task.relative_path}: {exc} (note: {note})")
