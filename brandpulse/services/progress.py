"""Live progress for analysis runs.

``ProgressBroker`` is a transport-agnostic fan-out of ``ProgressEvent``s per
report id; the SSE route is one consumer. ``ProgressReporter`` is the single
writer for one run and owns the phase ranges, clamping and terminal rules.
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from loguru import logger

from brandpulse.config import settings
from brandpulse.models.events import EventType, ProgressEvent
from brandpulse.services import logger as log_service
from brandpulse.services.database import AnalysisStore, fire_and_forget


@dataclass(frozen=True)
class Phase:
    name: str
    start: int
    end: int


PHASES: tuple[Phase, ...] = (
    Phase("calling", 0, 70),
    Phase("classifying", 70, 80),
    Phase("aggregating", 80, 95),
    Phase("synthesizing", 95, 100),
)

_FINISHED_MEMORY = 1000


class Subscription:
    """Async iterator over one subscriber queue; stops after a terminal event."""

    def __init__(self, broker: "ProgressBroker", report_id: str, queue: asyncio.Queue):
        self._broker = broker
        self.report_id = report_id
        self.queue = queue
        self._done = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._done:
            raise StopAsyncIteration
        try:
            event = await self.queue.get()
        except BaseException:
            self.close()
            raise
        if event.is_terminal:
            self.close()
        return event

    def close(self) -> None:
        if not self._done:
            self._done = True
            self._broker._unregister(self.report_id, self.queue)


class ProgressBroker:
    def __init__(self, queue_size: int | None = None):
        self.queue_size = int(queue_size if queue_size is not None else settings.progress_queue_size)
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._latest: dict[str, ProgressEvent] = {}
        self._finished: OrderedDict[str, ProgressEvent] = OrderedDict()

    def subscriber_count(self, report_id: str) -> int:
        return len(self._subscribers.get(report_id, ()))

    def subscribe(self, report_id: str) -> Subscription:
        """Register a subscriber now and return an async iterator over its events.

        A late subscriber first receives the latest event already published
        for the run, or the terminal event if the run has finished.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        finished = self._finished.get(report_id)
        if finished is not None:
            queue.put_nowait(finished)
            return Subscription(self, report_id, queue)

        self._subscribers.setdefault(report_id, set()).add(queue)
        latest = self._latest.get(report_id)
        if latest is not None:
            queue.put_nowait(latest)
        return Subscription(self, report_id, queue)

    def publish(self, report_id: str, event: ProgressEvent) -> int:
        """Deliver ``event`` to every current subscriber without awaiting.

        Returns the number of queues the event reached. Events for a report
        without subscribers, or for a full queue, are dropped.
        """
        delivered = 0
        for queue in list(self._subscribers.get(report_id, ())):
            if event.is_terminal and queue.full():
                # make room so every subscriber can terminate
                queue.get_nowait()
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.debug(f"[{report_id}] progress queue full, dropping {event.type.value} event")

        if event.is_terminal:
            self._teardown(report_id, event)
        else:
            self._latest[report_id] = event
        return delivered

    def _teardown(self, report_id: str, terminal: ProgressEvent) -> None:
        self._subscribers.pop(report_id, None)
        self._latest.pop(report_id, None)
        self._finished[report_id] = terminal
        self._finished.move_to_end(report_id)
        while len(self._finished) > _FINISHED_MEMORY:
            self._finished.popitem(last=False)

    def _unregister(self, report_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(report_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            self._subscribers.pop(report_id, None)


class ProgressReporter:
    """Single writer of progress for one run.

    Progress never decreases, phases only move forward, and exactly one
    terminal event (``complete`` or ``error``) is emitted.
    """

    def __init__(
        self,
        report_id: str,
        broker: ProgressBroker,
        store: AnalysisStore | None = None,
        phases: tuple[Phase, ...] = PHASES,
    ):
        self.report_id = report_id
        self.broker = broker
        self.store = store
        self.phases = phases
        self._phase_index = -1
        self._progress = 0
        self._terminal = False

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def phase(self) -> Phase | None:
        return self.phases[self._phase_index] if self._phase_index >= 0 else None

    @property
    def finished(self) -> bool:
        return self._terminal

    def start(self, message: str = "Analysis started") -> None:
        self._emit(EventType.STATUS, self._progress, message, status="processing")
        self._persist_status("processing", self._progress)

    def enter_phase(self, name: str, message: str = "") -> None:
        index = next((i for i, p in enumerate(self.phases) if p.name == name), None)
        if index is None:
            raise ValueError(f"Unknown progress phase: {name}")
        if index <= self._phase_index:
            current = self.phases[self._phase_index].name
            raise ValueError(f"Phase {name!r} cannot follow {current!r}")
        self._phase_index = index
        phase = self.phases[index]
        log_service.log_pipeline_step(self.report_id, phase.name, "started")
        self._emit(EventType.PROGRESS, phase.start, message or phase.name.capitalize())
        self._persist_status("processing", self._progress)

    def advance(
        self,
        completed: int,
        total: int,
        message: str = "",
        counts: dict[str, int] | None = None,
    ) -> None:
        """Report ``completed`` of ``total`` units inside the current phase."""
        phase = self.phase
        if phase is None:
            raise ValueError("advance() called before any phase was entered")
        fraction = 1.0 if total <= 0 else min(max(completed / total, 0.0), 1.0)
        value = phase.start + int((phase.end - phase.start) * fraction)
        merged_counts = {"completed": completed, "total": total}
        if counts:
            merged_counts.update(counts)
        self._emit(EventType.PROGRESS, value, message, counts=merged_counts)

    def complete(self, message: str = "Analysis complete", data: dict[str, Any] | None = None) -> bool:
        if self._terminal:
            return False
        self._emit(EventType.COMPLETE, 100, message, status="completed", data=data)
        self._terminal = True
        return True

    def fail(self, message: str, data: dict[str, Any] | None = None) -> bool:
        if self._terminal:
            return False
        self._emit(EventType.ERROR, self._progress, message, status="failed", data=data)
        self._terminal = True
        return True

    def _emit(
        self,
        event_type: EventType,
        value: int,
        message: str,
        *,
        status: str | None = None,
        counts: dict[str, int] | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        if self._terminal:
            logger.debug(f"[{self.report_id}] ignoring {event_type.value} event after terminal event")
            return
        self._progress = max(self._progress, min(int(value), 100))
        phase = self.phase
        event = ProgressEvent(
            type=event_type,
            progress=self._progress,
            message=message,
            status=status,
            phase=phase.name if phase else None,
            counts=counts or {},
            data=data or {},
        )
        self.broker.publish(self.report_id, event)

    def _persist_status(self, status: str, progress: int) -> None:
        if self.store is None:
            return
        fire_and_forget(
            f"status {self.report_id}",
            self.store.update_status(self.report_id, status, progress=progress),
            report_id=self.report_id,
        )
