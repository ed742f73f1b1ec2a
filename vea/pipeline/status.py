import threading
from typing import Optional
from vea.domain.events import (
    CropProgressUpdated,
    EncodeProgressUpdated,
    EncodeStarted,
    TaskStarted,
)
from vea.domain.models import AgentStatus
from vea.infrastructure.event_bus import EventBus

_IDLE_TASK_FIELDS = dict(
    encoder_active=False,
    percent_complete=0.0,
    fps=0.0,
    avg_fps=0.0,
    eta_seconds=None,
    current_task=None,
    comment="",
)


class StatusPublisher:
    """Owns the live AgentStatus.

    The status is an immutable model replaced whole on every change, so
    ``snapshot()`` hands out a consistent copy without further locking.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._lock = threading.Lock()
        self._status = AgentStatus()
        if event_bus:
            self._setup_subscriptions(event_bus)

    def _setup_subscriptions(self, bus: EventBus):
        bus.subscribe(TaskStarted, self.on_task_started)
        bus.subscribe(EncodeStarted, self.on_encode_started)
        bus.subscribe(EncodeProgressUpdated, self.on_encode_progress)
        bus.subscribe(CropProgressUpdated, self.on_crop_progress)

    def snapshot(self) -> AgentStatus:
        return self._status

    def update(self, **changes) -> AgentStatus:
        with self._lock:
            self._status = self._status.model_copy(update=changes)
            return self._status

    def reset_task(self) -> AgentStatus:
        """Clears the current task and returns live counters to idle."""
        return self.update(**_IDLE_TASK_FIELDS)

    def set_agent_active(self, active: bool, comment: Optional[str] = None):
        changes = {"agent_active": active}
        if comment is not None:
            changes["comment"] = comment
        self.update(**changes)

    def set_paused(self, paused: bool):
        self.update(paused=paused)

    def on_task_started(self, event: TaskStarted):
        self.update(current_task=event.task.relative_path, comment="")

    def on_encode_started(self, event: EncodeStarted):
        self.update(encoder_active=True, comment="")

    def on_encode_progress(self, event: EncodeProgressUpdated):
        p = event.progress
        self.update(
            percent_complete=p.percent,
            fps=p.fps,
            avg_fps=p.avg_fps,
            eta_seconds=p.eta_seconds,
            comment=p.comment,
        )

    def on_crop_progress(self, event: CropProgressUpdated):
        self.update(comment=f"Computing crop: {event.fraction * 100:.0f}%")
