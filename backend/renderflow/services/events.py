"""Run event publishing.

The executor and scheduler publish RunEvent values through an
EventBroadcaster without knowing who is listening. Transport (websocket,
SSE, ...) lives outside this package and subscribes through
InMemoryBroadcaster.subscribe().
"""

import asyncio
import logging
from typing import Any, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from renderflow.schemas.run_state import LogEntry, parse_logs

logger = logging.getLogger(__name__)

EventKind = Literal["state", "progress", "step", "log", "done", "failed", "canceled"]


class RunEvent(BaseModel):
    """A single event in a run's stream."""

    kind: EventKind
    run_id: str
    data: Dict[str, Any] = Field(default_factory=dict)


class EventBroadcaster(Protocol):
    def publish(self, event: RunEvent) -> None:
        ...


class NullBroadcaster:
    """Discards every event."""

    def publish(self, event: RunEvent) -> None:
        return None


class InMemoryBroadcaster:
    """Fan-out of run events to per-run asyncio queues.

    Subscriber queues are bounded; when a slow subscriber's queue is full the
    event is dropped for that subscriber only. With keep_history=True every
    published event is also retained in order, which tests use to assert on
    event sequences.
    """

    def __init__(self, max_queue_size: int = 256, keep_history: bool = False):
        self._max_queue_size = max_queue_size
        self._keep_history = keep_history
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.history: List[RunEvent] = []

    def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.setdefault(run_id, []).append(queue)
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(run_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[run_id]

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, []))

    def publish(self, event: RunEvent) -> None:
        if self._keep_history:
            self.history.append(event)
        for queue in list(self._subscribers.get(event.run_id, [])):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Run {event.run_id}: subscriber queue full, dropping {event.kind} event")

    def events_for(self, run_id: str, kind: Optional[str] = None) -> List[RunEvent]:
        """Recorded events for a run, optionally filtered by kind."""
        return [
            e for e in self.history
            if e.run_id == run_id and (kind is None or e.kind == kind)
        ]


def state_event(run_id: str, status: str, progress: int, current_step: str, **extra: Any) -> RunEvent:
    data: Dict[str, Any] = {"status": status, "progress": progress, "currentStep": current_step}
    data.update(extra)
    return RunEvent(kind="state", run_id=run_id, data=data)


def progress_event(run_id: str, progress: int) -> RunEvent:
    return RunEvent(kind="progress", run_id=run_id, data={"progress": progress})


def step_event(run_id: str, step: str, message: str) -> RunEvent:
    return RunEvent(kind="step", run_id=run_id, data={"step": step, "message": message})


def log_event(run_id: str, entry: LogEntry) -> RunEvent:
    return RunEvent(kind="log", run_id=run_id, data={"log": entry.model_dump()})


def snapshot_event(run) -> RunEvent:
    """Initial state event for a new subscriber, built from a Run record."""
    logs = parse_logs(run.logs_json, run.id)
    return state_event(
        run.id,
        run.status,
        run.progress,
        run.current_step,
        logs=[entry.model_dump() for entry in logs],
    )
