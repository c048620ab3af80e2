"""
job_runner.py

Drives exactly one ScanJob to a terminal state.

    deduct ──► scanning ──► submit (progress applied live) ──► reconcile ──► refund? ──► export?

Credit rules (one credit = one page):
    done        every requested page delivered      refund 0
    cancelled   token set, pages missing            refund required - processed
    error       pages missing, no cancellation      refund required (full)

A run that was not explicitly cancelled gets no partial credit: a partial
page set from a failed call is not trusted enough to bill for. Its records
are still exported, because partial recovery is part of the job.

Exactly one deduct, at most one refund and at most one export per job.
A CreditDeductionError leaves the job pending; nothing was charged.
"""

import logging
import secrets
import time
from typing import Callable, Optional

from cancellation import CancellationToken
from errors import ExportError, IncompleteResultError, RemoteInvocationError
from progress import ProgressUpdate
from scan_job import STATUS_CANCELLED, STATUS_DONE, STATUS_ERROR, ScanJob

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    """scan_<epoch ms>_<random>: correlates submit, progress and cancel flag."""
    return f"scan_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class JobRunner:
    def __init__(self, ledger, invoker, progress, user_id: str) -> None:
        self.ledger = ledger
        self.invoker = invoker
        self.progress = progress
        self.user_id = user_id
        # Latest progress update for the job in flight (read by the controller).
        self.last_update: Optional[ProgressUpdate] = None
        # Called as on_progress(job, update) after each applied update.
        self.on_progress: Optional[Callable[[ScanJob, ProgressUpdate], None]] = None

    # ── Progress ───────────────────────────────────────────────────────────────

    def _on_progress(self, job: ScanJob, update: ProgressUpdate) -> None:
        self.last_update = update
        for result in update.pageResults:
            if job.apply_page_result(result.pageNumber, result.records, result.error):
                logger.info(
                    f"[{job.original_name}] Page {result.pageNumber} received "
                    f"({job.processed_pages}/{len(job.requested_pages)})."
                )
        if self.on_progress is not None:
            self.on_progress(job, update)

    # ── Main entry point ───────────────────────────────────────────────────────

    async def run(self, job: ScanJob, token: CancellationToken, exporter=None) -> ScanJob:
        """
        Run `job` to a terminal state.

        Raises:
            CreditDeductionError   nothing charged, job still pending
            IncompleteResultError  pages missing without cancellation (after refund + export)
            RemoteInvocationError  the call failed without cancellation (after refund + export)
        """
        # Cleared first so a credit pause never shows the previous job's progress.
        self.last_update = None
        pages = job.requested_pages
        required = len(pages)
        job.credits.requested = required

        # ── 1. Admission ───────────────────────────────────────────────────────
        deduction = await self.ledger.deduct(self.user_id, required, job_ref=job.job_id)
        job.credits.deducted = deduction.amount
        logger.info(
            f"[{job.original_name}] Admitted: {required} page(s) charged, "
            f"balance {deduction.new_balance}."
        )

        # ── 2. Invocation ──────────────────────────────────────────────────────
        session_id = new_session_id()
        job.start(session_id)
        failure: Optional[RemoteInvocationError] = None
        subscription = None

        try:
            await self.progress.open_session(session_id, self.user_id, job.job_id, job.original_name)
            subscription = self.progress.subscribe(
                session_id, lambda update: self._on_progress(job, update)
            )
            await token.bind(session_id, self.progress.request_cancel)

            if token.is_set:
                logger.info(f"[{job.original_name}] Cancelled before submit, skipping scan call.")
            else:
                response = await self.invoker.submit(
                    job.file, job.original_name, pages, session_id, self.user_id
                )
                for outcome in response.pages:
                    job.apply_page_result(outcome.page_number, outcome.records, outcome.error)

        except RemoteInvocationError as exc:
            failure = exc
            logger.warning(f"[{job.original_name}] Scan call failed: {exc}")
        except Exception as exc:
            failure = RemoteInvocationError(f"Scan call failed: {exc}")
            logger.error(f"[{job.original_name}] Unexpected scan error: {exc}", exc_info=True)
        finally:
            if subscription is not None:
                subscription.unsubscribe()
            token.unbind(session_id)
            self.progress.close_session(session_id)

        # ── 3. Reconciliation ──────────────────────────────────────────────────
        processed = job.processed_pages
        to_raise: Optional[Exception] = None

        if processed >= required:
            if failure is not None:
                logger.warning(
                    f"[{job.original_name}] All pages arrived despite call failure: {failure}"
                )
            job.finish(STATUS_DONE)
            logger.info(f"[{job.original_name}] Done: {processed}/{required} page(s).")

        elif token.is_set:
            job.finish(STATUS_CANCELLED)
            logger.info(
                f"[{job.original_name}] Cancelled after {processed}/{required} page(s)."
            )
            await self._refund(job, required - processed)

        else:
            missing = job.missing_pages
            if failure is not None:
                to_raise = failure
            else:
                to_raise = IncompleteResultError(
                    f"Incomplete: missing pages {', '.join(str(p) for p in missing)}",
                    missing_pages=missing,
                )
            job.finish(STATUS_ERROR, str(to_raise))
            logger.error(
                f"[{job.original_name}] Failed with {processed}/{required} page(s): {to_raise}"
            )
            await self._refund(job, required)

        # ── 4. Export ──────────────────────────────────────────────────────────
        if job.records and exporter is not None:
            await self._export(job, exporter)

        if to_raise is not None:
            raise to_raise
        return job

    # ── Helpers ────────────────────────────────────────────────────────────────

    async def _refund(self, job: ScanJob, pages: int) -> None:
        if pages <= 0:
            return
        try:
            result = await self.ledger.refund(self.user_id, pages, job_ref=job.job_id)
            job.credits.refunded = result.amount
            logger.info(
                f"[{job.original_name}] Refunded {result.amount} page(s), "
                f"balance {result.new_balance}."
            )
        except Exception as exc:
            job.credits.refund_error = f"Refund of {pages} page(s) failed: {exc}"
            logger.error(f"[{job.original_name}] {job.credits.refund_error}", exc_info=True)

    async def _export(self, job: ScanJob, exporter) -> None:
        try:
            job.export_id = await exporter.export_job(job)
        except ExportError as exc:
            job.export_error = str(exc)
            logger.error(f"[{job.original_name}] Export failed: {exc}")
        except Exception as exc:
            job.export_error = f"Export failed: {exc}"
            logger.error(f"[{job.original_name}] Export failed: {exc}", exc_info=True)
