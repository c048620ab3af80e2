"""
scan_queue.py

Ordered, growable collection of ScanJobs.

Files may be appended while a run is draining the queue; waiters are woken
through an asyncio.Event instead of fixed-delay polling. Removal is allowed
only for jobs that have not started. A job that reached "scanning" stays in
the structural list so its credit bookkeeping can complete; it can only be
hidden from the visible list. Finished jobs are pruned when the next run
begins, so the last run stays visible in status snapshots until then.
"""

import asyncio
import logging
from typing import Iterable, Optional

from scan_job import STATUS_PENDING, ScanJob

logger = logging.getLogger(__name__)


class ScanQueue:
    def __init__(self, jobs: Optional[Iterable[ScanJob]] = None) -> None:
        self._jobs: list[ScanJob] = list(jobs or [])
        self._active_job_id: Optional[str] = None
        # Lazy: an Event must be created inside the running loop.
        self._grown: Optional[asyncio.Event] = None

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self):
        return iter(list(self._jobs))

    def _event(self) -> asyncio.Event:
        if self._grown is None:
            self._grown = asyncio.Event()
        return self._grown

    # ── Mutation ───────────────────────────────────────────────────────────────

    def append(self, *jobs: ScanJob) -> None:
        if not jobs:
            return
        self._jobs.extend(jobs)
        logger.info(
            f"Queued {len(jobs)} file(s): {[j.original_name for j in jobs]} "
            f"(queue size {len(self._jobs)})."
        )
        if self._grown is not None:
            self._grown.set()

    def remove(self, job_id: str) -> ScanJob:
        """Remove a job that has not started. Raises KeyError / ValueError."""
        job = self.get(job_id)
        if job is None:
            raise KeyError(job_id)
        if job.status != STATUS_PENDING or job.job_id == self._active_job_id:
            raise ValueError(
                f"Job {job_id} ({job.original_name}) has started and cannot be removed."
            )
        self._jobs.remove(job)
        logger.info(f"[{job.original_name}] Removed from queue.")
        return job

    def hide(self, job_id: str) -> None:
        job = self.get(job_id)
        if job is not None:
            job.hidden = True

    def prune_finished(self) -> int:
        """Drop terminal jobs. Call between runs, never while one is draining."""
        kept = [j for j in self._jobs if not j.is_terminal]
        pruned = len(self._jobs) - len(kept)
        if pruned:
            self._jobs = kept
            logger.info(f"Pruned {pruned} finished file(s) from the queue.")
        return pruned

    def set_active(self, job: Optional[ScanJob]) -> None:
        self._active_job_id = job.job_id if job else None

    # ── Reads ──────────────────────────────────────────────────────────────────

    def get(self, job_id: str) -> Optional[ScanJob]:
        for job in self._jobs:
            if job.job_id == job_id:
                return job
        return None

    def next_pending(self) -> Optional[ScanJob]:
        """First pending job in admission order."""
        for job in self._jobs:
            if job.status == STATUS_PENDING:
                return job
        return None

    def pending(self) -> list[ScanJob]:
        return [j for j in self._jobs if j.status == STATUS_PENDING]

    def visible(self) -> list[ScanJob]:
        return [j for j in self._jobs if not j.hidden]

    # ── Growth notification ────────────────────────────────────────────────────

    async def wait_for_growth(self, timeout: float) -> bool:
        """
        Wait up to `timeout` seconds for a new job to be appended.
        Returns True if the queue holds a pending job afterwards.
        """
        if self.next_pending() is not None:
            return True
        event = self._event()
        event.clear()
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.next_pending() is not None
