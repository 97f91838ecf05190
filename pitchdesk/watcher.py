"""Submission watcher: follow one submission until it reaches a terminal state.

Push events and periodic polls are both treated as hints.  A hint never
carries state; it only schedules a re-fetch of the submission.  One fetch is
in flight at a time and hints that arrive meanwhile collapse into a single
follow-up fetch, so a missed or duplicated event heals within one polling
interval.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any, Protocol

import httpx
from sqlalchemy.orm import Session

from pitchdesk import services
from pitchdesk.config import get_settings
from pitchdesk.fanout import EVENT_UPDATE, TABLE_SUBMISSIONS, StatusBroker, get_broker
from pitchdesk.models import STATUS_COMPLETED, STATUS_FAILED, STATUS_PROCESSING, Company, Submission
from pitchdesk.utils import json_parse

log = logging.getLogger(__name__)

# Legacy rows may carry "error" instead of "failed"
FAILED_STATUSES = (STATUS_FAILED, "error")

Callback = Callable[..., Any]


class SubmissionSource(Protocol):
    async def fetch_submission(self, submission_id: int) -> dict | None: ...

    async def fetch_company(self, company_id: int) -> dict | None: ...

    async def listen(self, submission_id: int, notify: Callable[[], None]) -> None: ...


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class LocalSubmissionSource:
    """Reads through a session factory and listens on the in-process broker."""

    def __init__(self, session_factory: Callable[[], Session], broker: StatusBroker | None = None):
        self._session_factory = session_factory
        self._broker = broker or get_broker()

    def _load(self, model, entity_id: int, serialize) -> dict | None:
        session = self._session_factory()
        try:
            obj = services.get_entity(session, model, entity_id)
            return serialize(obj) if obj else None
        finally:
            session.close()

    async def fetch_submission(self, submission_id: int) -> dict | None:
        return self._load(Submission, submission_id, services.submission_detail)

    async def fetch_company(self, company_id: int) -> dict | None:
        return self._load(Company, company_id, services.company_summary)

    async def listen(self, submission_id: int, notify: Callable[[], None]) -> None:
        async with self._broker.subscribe(TABLE_SUBMISSIONS, EVENT_UPDATE) as sub:
            async for event in sub:
                if event.submission_id == submission_id:
                    notify()


class HttpSubmissionSource:
    """Talks to a running Pitchdesk API: REST for state, SSE for hints."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8001",
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(timeout))

    async def _get_json(self, path: str) -> dict | None:
        resp = await self._client.get(path)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def fetch_submission(self, submission_id: int) -> dict | None:
        return await self._get_json(f"/api/submissions/{submission_id}")

    async def fetch_company(self, company_id: int) -> dict | None:
        return await self._get_json(f"/api/companies/{company_id}")

    async def listen(self, submission_id: int, notify: Callable[[], None]) -> None:
        params = {"table": TABLE_SUBMISSIONS, "event": EVENT_UPDATE}
        async with self._client.stream("GET", "/api/events", params=params, timeout=None) as resp:
            resp.raise_for_status()
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                payload = json_parse(line[5:].strip(), None)
                if isinstance(payload, dict) and payload.get("submission_id") == submission_id:
                    notify()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------


async def _call(callback: Callback | None, *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class SubmissionWatcher:
    """Reconcile local knowledge of one submission with the server.

    Usage::

        async with SubmissionWatcher(source, sub_id, on_completed=open_company) as w:
            await w.wait()
    """

    def __init__(
        self,
        source: SubmissionSource,
        submission_id: int,
        on_processing: Callback | None = None,
        on_completed: Callback | None = None,
        on_failed: Callback | None = None,
        poll_interval: float | None = None,
        max_attempts: int | None = None,
    ):
        settings = get_settings()
        self.source = source
        self.submission_id = submission_id
        self.on_processing = on_processing
        self.on_completed = on_completed
        self.on_failed = on_failed
        self.poll_interval = settings.poll_interval_seconds if poll_interval is None else poll_interval
        self.max_attempts = settings.max_poll_attempts if max_attempts is None else max_attempts

        self.submission: dict | None = None
        self.company: dict | None = None
        self.last_status: str | None = None
        self.fetch_count = 0
        self.poll_attempts = 0
        self.done = False
        self.timed_out = False

        self._wake = asyncio.Event()
        self._closed = False
        self._task: asyncio.Task | None = None

    def hint(self) -> None:
        """Request a re-fetch; repeated hints before the fetch starts coalesce."""
        self._wake.set()

    def close(self) -> None:
        self._closed = True
        self._wake.set()

    async def run(self) -> dict | None:
        """Watch until a terminal state, the poll cap, or close(); returns the last snapshot."""
        listener = asyncio.create_task(self._listen())
        poller = asyncio.create_task(self._poll())
        try:
            self.hint()
            while not self._closed:
                await self._wake.wait()
                self._wake.clear()
                if self._closed:
                    break
                await self._refresh()
                if self.done or self.timed_out:
                    break
        finally:
            self._closed = True
            for task in (listener, poller):
                task.cancel()
            await asyncio.gather(listener, poller, return_exceptions=True)
        return self.submission

    async def wait(self, timeout: float | None = None) -> dict | None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())
        return await asyncio.wait_for(asyncio.shield(self._task), timeout)

    async def __aenter__(self) -> SubmissionWatcher:
        self._task = asyncio.create_task(self.run())
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()
        if self._task is not None:
            await self._task

    async def _listen(self) -> None:
        try:
            await self.source.listen(self.submission_id, self.hint)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("Push channel for submission %s unavailable, polling only: %s",
                        self.submission_id, exc)

    async def _poll(self) -> None:
        while self.poll_attempts < self.max_attempts:
            await asyncio.sleep(self.poll_interval)
            self.poll_attempts += 1
            self.hint()
        log.info("Polling cap (%d) reached for submission %s", self.max_attempts, self.submission_id)
        self.timed_out = True
        self.hint()

    async def _refresh(self) -> None:
        self.fetch_count += 1
        try:
            sub = await self.source.fetch_submission(self.submission_id)
        except Exception as exc:
            log.warning("Fetching submission %s failed, will retry on next hint: %s",
                        self.submission_id, exc)
            return
        if sub is None:
            log.warning("Submission %s no longer exists, stopping watcher", self.submission_id)
            self.done = True
            return

        self.submission = sub
        status = sub.get("analysis_status")
        previous, self.last_status = self.last_status, status

        if status == STATUS_PROCESSING and previous != STATUS_PROCESSING:
            await _call(self.on_processing, sub)
        elif status == STATUS_COMPLETED:
            company_id = sub.get("company_id")
            if company_id is not None:
                try:
                    self.company = await self.source.fetch_company(company_id)
                except Exception as exc:
                    log.warning("Fetching company %s failed, will retry on next hint: %s",
                                company_id, exc)
                    self.last_status = previous
                    return
            self.done = True
            await _call(self.on_completed, sub, self.company)
        elif status in FAILED_STATUSES:
            self.done = True
            await _call(self.on_failed, sub)
