"""Domain events for the encoding agent.

Events flow through the EventBus and decouple the scheduler and supervisor
from status reporting. See `infrastructure/event_bus.py` for the pub/sub
mechanism.
"""

from typing import List, Optional
from pydantic import BaseModel
from .models import EncodeProgress, Task, TaskOutcome


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class TaskEvent(Event):
    task: Task


class TaskQueued(TaskEvent):
    """Emitted when the scanner enqueues a newly discovered file."""

    pass


class TaskStarted(TaskEvent):
    """Emitted when the supervisor dequeues a task."""

    pass


class EncodeStarted(TaskEvent):
    args: List[str]


class EncodeProgressUpdated(TaskEvent):
    progress: EncodeProgress


class CropProgressUpdated(TaskEvent):
    fraction: float


class TaskFinished(TaskEvent):
    """Emitted on every terminal path of a dequeued task."""

    outcome: TaskOutcome
    message: Optional[str] = None
