"""
batch_controller.py

Drains a ScanQueue one job at a time.

Run state machine:
    idle ──start()──► running ──► success     queue drained, no cancellation
                              ├─► cancelled   token set (operator cancel or credit abort)
                              └─► error       unexpected failure inside the loop

The queue outlives a run: jobs not started when a run ends stay pending for
the next one, and every run gets a fresh CancellationToken. Jobs finished by
an earlier run are pruned from the queue when the next run begins.

Credit decision protocol:
    A CreditDeductionError pauses the loop with awaiting_decision=True.
    resolve_credit_decision("retry") re-attempts the same job;
    resolve_credit_decision("abort") sets the token and ends the run.
    request_cancel() while paused counts as abort.

Export policy:
    separate  every job is exported by its runner as soon as it ends
    combine   records are collected; one combined workbook is written after
              the queue drains without cancellation. A cancelled or failed
              run exports what it collected per job instead, so partial data
              is never dropped.

Presentation layers read snapshot() or register with subscribe(listener);
they never mutate controller fields directly.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from cancellation import CancellationToken
from config import QUEUE_POLL_INTERVAL
from errors import CreditDeductionError, ExportError, IncompleteResultError, RemoteInvocationError
from export_sink import CombinedCollector
from scan_job import STATUS_DONE, ScanJob

logger = logging.getLogger(__name__)

# ── Run state constants ────────────────────────────────────────────────────────

RUN_IDLE      = "idle"
RUN_RUNNING   = "running"
RUN_SUCCESS   = "success"
RUN_CANCELLED = "cancelled"
RUN_ERROR     = "error"

MODE_SEPARATE = "separate"
MODE_COMBINE  = "combine"

DECISION_RETRY = "retry"
DECISION_ABORT = "abort"

SnapshotListener = Callable[[dict], None]


class BatchController:
    def __init__(
        self,
        queue,
        runner,
        mode: str = MODE_SEPARATE,
        export_sink=None,
        queue_wait: float = QUEUE_POLL_INTERVAL,
    ) -> None:
        if mode not in (MODE_SEPARATE, MODE_COMBINE):
            raise ValueError(f"Invalid export mode '{mode}'. Must be 'separate' or 'combine'.")
        self.queue = queue
        self.runner = runner
        self.mode = mode
        self.export_sink = export_sink
        self.queue_wait = queue_wait

        self.state = RUN_IDLE
        self.token = CancellationToken()
        self.awaiting_decision = False
        self.credit_error: Optional[str] = None
        self.run_error: Optional[str] = None
        self.current_job: Optional[ScanJob] = None
        self.failures: list[dict] = []
        self.combined_export_id: Optional[str] = None
        self.combined_export_error: Optional[str] = None
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

        self._decision: Optional[asyncio.Future] = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: list[SnapshotListener] = []

        self.runner.on_progress = lambda job, update: self._notify()

    @property
    def is_running(self) -> bool:
        return self.state == RUN_RUNNING

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    def _begin(self) -> None:
        if self.is_running:
            raise RuntimeError("A batch run is already active.")
        self.queue.prune_finished()
        self.state = RUN_RUNNING
        self.token = CancellationToken()
        self.awaiting_decision = False
        self.credit_error = None
        self.run_error = None
        self.failures = []
        self.combined_export_id = None
        self.combined_export_error = None
        self.started_at = time.time()
        self.finished_at = None
        logger.info(f"Batch run started ({self.mode} mode, {len(self.queue.pending())} pending file(s)).")
        self._notify()

    def start(self) -> asyncio.Task:
        """Begin a run in the background. Raises RuntimeError if one is active."""
        self._begin()
        self._task = asyncio.create_task(self._drain())
        return self._task

    async def run(self) -> str:
        """Run to completion in the caller's task. Returns the final run state."""
        self._begin()
        return await self._drain()

    async def wait(self) -> Optional[str]:
        if self._task is None:
            return None
        return await self._task

    # ── Loop ───────────────────────────────────────────────────────────────────

    async def _drain(self) -> str:
        collector = CombinedCollector() if self.mode == MODE_COMBINE else None
        exporter = collector if collector is not None else self.export_sink
        retry_job: Optional[ScanJob] = None

        try:
            while True:
                if self.token.is_set:
                    logger.info("Cancellation set, no further files will be started.")
                    break

                job = retry_job or self.queue.next_pending()
                retry_job = None
                if job is None:
                    if await self.queue.wait_for_growth(self.queue_wait):
                        continue
                    break

                self.current_job = job
                self.queue.set_active(job)
                self._notify()
                try:
                    await self.runner.run(job, self.token, exporter)

                except CreditDeductionError as exc:
                    logger.warning(f"[{job.original_name}] Credit deduction failed: {exc}")
                    decision = await self._await_decision(exc)
                    if decision == DECISION_RETRY:
                        logger.info(f"[{job.original_name}] Retrying credit deduction.")
                        retry_job = job
                        continue
                    logger.info("Run aborted after credit failure; remaining files stay queued.")
                    await self.token.cancel()
                    break

                except (IncompleteResultError, RemoteInvocationError) as exc:
                    self.failures.append({
                        "job_id":   job.job_id,
                        "filename": job.original_name,
                        "error":    str(exc),
                        "refunded": job.credits.refunded,
                        "refund_error": job.credits.refund_error,
                    })
                    self.queue.hide(job.job_id)
                    logger.error(f"[{job.original_name}] Job failed, continuing with next file: {exc}")

                finally:
                    self.queue.set_active(None)
                    self.current_job = None
                    self._notify()

        except Exception as exc:
            self.run_error = str(exc)
            self.state = RUN_ERROR
            logger.error(f"Batch run crashed: {exc}", exc_info=True)

        if self.state != RUN_ERROR:
            self.state = RUN_CANCELLED if self.token.is_set else RUN_SUCCESS

        if collector is not None:
            await self._export_collected(collector)

        self.finished_at = time.time()
        logger.info(
            f"Batch run finished: {self.state} "
            f"({len(self.failures)} failed, {len(self.queue.pending())} still pending)."
        )
        self._notify()
        return self.state

    # ── Combine-mode export ────────────────────────────────────────────────────

    async def _export_collected(self, collector: CombinedCollector) -> None:
        if self.export_sink is None or collector.record_count() == 0:
            return

        if self.state == RUN_SUCCESS:
            try:
                self.combined_export_id = await self.export_sink.export_combined(collector.items())
            except ExportError as exc:
                self.combined_export_error = str(exc)
                logger.error(f"Combined export failed: {exc}")
            return

        logger.info(f"Run ended {self.state}, exporting collected records per file.")
        for job in collector.jobs:
            if not job.records:
                continue
            try:
                job.export_id = await self.export_sink.export_job(job)
            except ExportError as exc:
                job.export_error = str(exc)
                logger.error(f"[{job.original_name}] Export failed: {exc}")

    # ── Credit decision ────────────────────────────────────────────────────────

    async def _await_decision(self, exc: CreditDeductionError) -> str:
        self.awaiting_decision = True
        self.credit_error = str(exc)
        self._decision = asyncio.get_running_loop().create_future()
        if self.token.is_set:
            self._decision.set_result(DECISION_ABORT)
        self._notify()
        try:
            return await self._decision
        finally:
            self._decision = None
            self.awaiting_decision = False
            self._notify()

    def resolve_credit_decision(self, decision: str) -> None:
        if decision not in (DECISION_RETRY, DECISION_ABORT):
            raise ValueError(f"Invalid decision '{decision}'. Must be 'retry' or 'abort'.")
        if self._decision is None or self._decision.done():
            raise RuntimeError("No credit decision is pending.")
        if decision == DECISION_RETRY:
            self.credit_error = None
        self._decision.set_result(decision)

    # ── Cancellation ───────────────────────────────────────────────────────────

    async def request_cancel(self) -> None:
        """
        Stop admitting files. The job in flight finishes its own bookkeeping;
        its remote session is told to stop after the current page.
        """
        if not self.is_running:
            return
        await self.token.cancel()
        if self._decision is not None and not self._decision.done():
            self._decision.set_result(DECISION_ABORT)
        self._notify()

    # ── Snapshots ──────────────────────────────────────────────────────────────

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception as exc:
                logger.error(f"Snapshot listener failed: {exc}", exc_info=True)

    def snapshot(self) -> dict:
        """Read-only view of the controller and its queue."""
        jobs = list(self.queue)
        finished = sum(1 for j in jobs if j.is_terminal)
        update = getattr(self.runner, "last_update", None) if self.current_job else None

        if self.started_at is None:
            elapsed = 0.0
        else:
            elapsed = (self.finished_at or time.time()) - self.started_at

        return {
            "state":             self.state,
            "mode":              self.mode,
            "awaiting_decision": self.awaiting_decision,
            "credit_error":      self.credit_error,
            "cancel_requested":  self.token.is_set,
            "error":             self.run_error,
            "elapsed_seconds":   round(elapsed, 1),
            "current_job":       self.current_job.to_summary() if self.current_job else None,
            "progress": {
                "percentage": update.percentage if update else None,
                "message":    update.message if update else None,
                "files_done": finished,
                "files_total": len(jobs),
            },
            "jobs":              [j.to_summary() for j in self.queue.visible()],
            "pending":           len(self.queue.pending()),
            "done":              sum(1 for j in jobs if j.status == STATUS_DONE),
            "failures":          list(self.failures),
            "combined_export_id":    self.combined_export_id,
            "combined_export_error": self.combined_export_error,
        }
