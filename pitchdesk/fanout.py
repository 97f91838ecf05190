"""Status fanout: in-process change feed for submission rows.

Every persisted status transition is published as a ``StatusEvent``.  Delivery
is best effort: each subscriber owns a bounded queue and the oldest event is
dropped when it overflows, so subscribers must treat events as hints and
re-fetch current state (see ``pitchdesk.watcher``).
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from pitchdesk.models import Submission

log = logging.getLogger(__name__)

TABLE_SUBMISSIONS = "submissions"
EVENT_INSERT = "INSERT"
EVENT_UPDATE = "UPDATE"


@dataclass(frozen=True)
class StatusEvent:
    table: str
    event_type: str
    submission_id: int
    new_status: str
    old_status: str | None = None
    company_id: int | None = None
    display_name: str = ""
    new: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "event_type": self.event_type,
            "submission_id": self.submission_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "company_id": self.company_id,
            "display_name": self.display_name,
            "old": self.old,
            "new": self.new,
        }


def snapshot(submission: Submission) -> dict[str, Any]:
    """Row fields subscribers need to react without an extra fetch."""
    return {
        "id": submission.id,
        "startup_name": submission.startup_name,
        "analysis_status": submission.analysis_status,
        "analysis_error": submission.analysis_error,
        "company_id": submission.company_id,
    }


def submission_event(
    submission: Submission, old_status: str | None, event_type: str = EVENT_UPDATE,
) -> StatusEvent:
    new = snapshot(submission)
    old = {"id": submission.id, "analysis_status": old_status} if old_status is not None else {}
    return StatusEvent(
        table=TABLE_SUBMISSIONS,
        event_type=event_type,
        submission_id=submission.id,
        new_status=submission.analysis_status,
        old_status=old_status,
        company_id=submission.company_id,
        display_name=submission.startup_name,
        new=new,
        old=old,
    )


def format_sse(event: StatusEvent) -> str:
    return f"data: {json.dumps(event.to_payload())}\n\n"


class Subscription:
    """One subscriber's bounded queue, bound to the event loop that created it."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        table: str | None,
        event_type: str | None,
        maxsize: int,
    ):
        self._loop = loop
        self._queue: asyncio.Queue[StatusEvent] = asyncio.Queue(maxsize=maxsize)
        self.table = table
        self.event_type = event_type
        self.dropped = 0

    def matches(self, event: StatusEvent) -> bool:
        if self.table and event.table != self.table:
            return False
        if self.event_type and event.event_type != self.event_type:
            return False
        return True

    def deliver(self, event: StatusEvent) -> None:
        """Hand *event* to the subscriber's loop; safe from any thread."""
        try:
            self._loop.call_soon_threadsafe(self._put, event)
        except RuntimeError:
            log.warning("Subscriber loop closed, dropping event for submission %s", event.submission_id)

    def _put(self, event: StatusEvent) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            log.warning("Subscriber queue full, dropped oldest event")
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> StatusEvent | None:
        """Next event, or None when *timeout* elapses first."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def __aiter__(self) -> AsyncIterator[StatusEvent]:
        return self

    async def __anext__(self) -> StatusEvent:
        return await self._queue.get()


class StatusBroker:
    """Thread-safe publish/subscribe hub for StatusEvents."""

    def __init__(self, max_queue: int = 100):
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._max_queue = max_queue

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: StatusEvent) -> int:
        """Deliver *event* to every matching subscriber; returns how many matched."""
        with self._lock:
            subscriptions = list(self._subscriptions)
        matched = 0
        for sub in subscriptions:
            if sub.matches(event):
                sub.deliver(event)
                matched += 1
        log.info("Published %s %s for submission %s (%s -> %s) to %d subscriber(s)",
                 event.table, event.event_type, event.submission_id,
                 event.old_status, event.new_status, matched)
        return matched

    @asynccontextmanager
    async def subscribe(
        self, table: str | None = TABLE_SUBMISSIONS, event_type: str | None = None,
    ) -> AsyncIterator[Subscription]:
        sub = Subscription(asyncio.get_running_loop(), table, event_type, self._max_queue)
        with self._lock:
            self._subscriptions.append(sub)
        try:
            yield sub
        finally:
            with self._lock:
                self._subscriptions.remove(sub)


_broker = StatusBroker()


def get_broker() -> StatusBroker:
    return _broker
