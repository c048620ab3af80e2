"""
cancellation.py

Run-scoped cancellation flag.

Two observers:
    - the BatchController loop, which stops admitting jobs once it is set;
    - the remote worker, which learns about it through a cancel write keyed by
      the session id of the job in flight (see progress.ProgressHub).

The flag is never cleared. A new run gets a new token. Each bound session is
signalled at most once, even if cancel() is called repeatedly.
"""

import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

SignalFn = Callable[[str], Awaitable[None]]


class CancellationToken:
    def __init__(self) -> None:
        self._set = False
        self._sessions: dict[str, SignalFn] = {}
        self._signalled: set[str] = set()

    @property
    def is_set(self) -> bool:
        return self._set

    async def cancel(self) -> None:
        if self._set:
            return
        self._set = True
        logger.info("Cancellation requested.")
        for session_id, signal in list(self._sessions.items()):
            await self._signal(session_id, signal)

    async def bind(self, session_id: str, signal: SignalFn) -> None:
        """Attach the in-flight session. Signals immediately if already cancelled."""
        self._sessions[session_id] = signal
        if self._set:
            await self._signal(session_id, signal)

    def unbind(self, session_id: str) -> Optional[SignalFn]:
        return self._sessions.pop(session_id, None)

    async def _signal(self, session_id: str, signal: SignalFn) -> None:
        if session_id in self._signalled:
            return
        self._signalled.add(session_id)
        try:
            await signal(session_id)
            logger.info(f"Cancel signal written for session {session_id}.")
        except Exception as exc:
            # The worker will finish the whole request; reconciliation still
            # treats the job as cancelled because the flag is set.
            logger.error(f"Failed to send cancel signal for session {session_id}: {exc}")
