"""Sync event stream and audit logging.

Every operation phase transition, action terminal outcome and application
phase change produces one SyncEvent. Events go to:
1. Subscribers, through bounded queues (a slow consumer loses its oldest
   events, it never blocks a worker)
2. The structured audit log, for queries like "which revision pruned this
   resource?" or "when did this application last fail?"
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
CONTROLLER_VERSION = os.environ.get("KUBESYNC_VERSION", "dev")

DEFAULT_SUBSCRIBER_QUEUE_SIZE = 1000


class EventType(str, Enum):
    OPERATION_PHASE = "OperationPhaseChanged"
    ACTION_COMPLETED = "ActionCompleted"
    APPLICATION_PHASE = "ApplicationPhaseChanged"
    APPLICATION_REGISTERED = "ApplicationRegistered"
    APPLICATION_DEREGISTERED = "ApplicationDeregistered"


@dataclass(frozen=True)
class SyncEvent:
    """One entry of the event stream."""

    type: EventType
    application: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    operation_id: str | None = None
    revision: str | None = None

    # Phase transitions (operation or application)
    previous_phase: str | None = None
    phase: str | None = None

    # Action outcomes
    resource: str | None = None
    action: str | None = None
    status: str | None = None
    attempts: int | None = None

    message: str = ""
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization, omitting unset fields."""
        result = {k: v for k, v in asdict(self).items() if v is not None}
        result["type"] = self.type.value
        result["timestamp"] = self.timestamp.isoformat()
        return result


class EventSubscription:
    """A subscriber's bounded view of the event stream."""

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[SyncEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, event: SyncEvent) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self) -> SyncEvent:
        return await self._queue.get()

    def drain(self) -> list[SyncEvent]:
        """Return every queued event without waiting."""
        events: list[SyncEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> SyncEvent:
        return await self.get()


class EventRecorder:
    """Writes events to the structured audit log."""

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled
        self._instance_id = os.environ.get("HOSTNAME", "")

    def record(self, event: SyncEvent) -> None:
        """Log one event.

        Failures are logged at WARNING so they surface in default log
        filters; everything else at INFO.
        """
        if not self._enabled:
            return

        log_level = logging.INFO
        if event.status == "Failed" or event.phase in ("Failed", "Degraded"):
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Sync event",
            extra={
                "event": event.to_dict(),
                # Flatten key fields for easier querying
                "application": event.application,
                "event_type": event.type.value,
                "operation_id": event.operation_id,
                "revision": event.revision,
                "controller_version": CONTROLLER_VERSION,
                "controller_instance": self._instance_id,
            },
        )


class EventBus:
    """Fan-out of sync events to subscribers and the audit recorder."""

    def __init__(self, recorder: EventRecorder | None = None) -> None:
        self._recorder = recorder
        self._subscribers: list[EventSubscription] = []

    def subscribe(self, maxsize: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE) -> EventSubscription:
        subscription = EventSubscription(maxsize)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, event: SyncEvent) -> None:
        """Deliver an event; never blocks."""
        if self._recorder is not None:
            self._recorder.record(event)
        for subscription in self._subscribers:
            subscription._offer(event)
