"""
progress.py

Per-session progress channel between the remote scan worker and the controller.

The worker POSTs progress to /scan-sessions/{session_id}/progress while a
scan is in flight. main.py validates the body into a ProgressUpdate and hands
it to ProgressHub.publish(), which:
    1. drops updates whose userId does not own the session,
    2. persists the latest percentage/message/status (scan_sessions row),
    3. fans the update out to every in-process subscriber of that session,
    4. ends those subscriptions once status is "completed" or "error".

The same row carries the cancel flag. request_cancel() is the signal function
bound to a CancellationToken; the worker polls GET /scan-sessions/{id} and
stops at the next page boundary once it reads cancelled=true.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from _db import (
    db_create_scan_session,
    db_get_scan_session,
    db_request_cancel,
    db_update_scan_progress,
)

logger = logging.getLogger(__name__)

FINAL_PROGRESS_STATUSES = {"completed", "error"}


# ── Payload models ─────────────────────────────────────────────────────────────

class PageResult(BaseModel):
    pageNumber: int
    records: Optional[list[dict[str, Any]]] = None
    error: Optional[str] = None


class ProgressUpdate(BaseModel):
    percentage: float = 0
    message: Optional[str] = None
    status: str = "running"
    userId: Optional[str] = None
    pageResults: list[PageResult] = Field(default_factory=list)


ProgressCallback = Callable[[ProgressUpdate], None]


# ── Store ──────────────────────────────────────────────────────────────────────

class DbProgressStore:
    """scan_sessions-backed persistence. Blocking calls run in worker threads."""

    async def open(self, session_id: str, user_id: str, job_id: Optional[str], filename: Optional[str]) -> None:
        await asyncio.to_thread(db_create_scan_session, session_id, user_id, job_id, filename)

    async def save(self, session_id: str, update: ProgressUpdate) -> None:
        await asyncio.to_thread(
            db_update_scan_progress,
            session_id,
            update.status,
            update.percentage,
            update.message,
        )

    async def cancel(self, session_id: str) -> None:
        await asyncio.to_thread(db_request_cancel, session_id)

    async def get(self, session_id: str) -> Optional[dict]:
        return await asyncio.to_thread(db_get_scan_session, session_id)


# ── Subscriptions ──────────────────────────────────────────────────────────────

class Subscription:
    def __init__(self, hub: "ProgressHub", session_id: str, callback: ProgressCallback) -> None:
        self._hub = hub
        self.session_id = session_id
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        """Idempotent. No callback fires after this returns."""
        if not self.active:
            return
        self.active = False
        self._hub._remove(self)


class ProgressHub:
    def __init__(self, store=None) -> None:
        self.store = store if store is not None else DbProgressStore()
        self._subscribers: dict[str, list[Subscription]] = {}
        self._owners: dict[str, str] = {}

    async def open_session(
        self,
        session_id: str,
        user_id: str,
        job_id: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> None:
        self._owners[session_id] = user_id
        await self.store.open(session_id, user_id, job_id, filename)

    def subscribe(self, session_id: str, callback: ProgressCallback) -> Subscription:
        sub = Subscription(self, session_id, callback)
        self._subscribers.setdefault(session_id, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.session_id)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscribers.pop(sub.session_id, None)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, []))

    async def publish(self, session_id: str, update: ProgressUpdate) -> bool:
        """
        Deliver one progress update. Returns False if it was ignored because
        the sender does not own the session.
        """
        owner = self._owners.get(session_id)
        if owner is None:
            row = await self.store.get(session_id)
            owner = row.get("user_id") if row else None
        if owner is not None and update.userId and update.userId != owner:
            logger.warning(
                f"Ignoring progress for session {session_id}: "
                f"user {update.userId} does not own it."
            )
            return False

        await self.store.save(session_id, update)

        for sub in list(self._subscribers.get(session_id, [])):
            if not sub.active:
                continue
            try:
                sub.callback(update)
            except Exception as exc:
                logger.error(f"Progress subscriber for session {session_id} failed: {exc}", exc_info=True)

        if update.status in FINAL_PROGRESS_STATUSES:
            for sub in list(self._subscribers.get(session_id, [])):
                sub.unsubscribe()
        return True

    async def request_cancel(self, session_id: str) -> None:
        """Write the cancel flag the worker reads for this session."""
        await self.store.cancel(session_id)

    async def get_session(self, session_id: str) -> Optional[dict]:
        return await self.store.get(session_id)

    def close_session(self, session_id: str) -> None:
        self._owners.pop(session_id, None)
