"""
ledger.py

Credit ledger client. One credit = one page submitted for extraction.

The authoritative balance lives in Postgres (ledger_accounts). The controller
only ever issues deltas, deduct(n) before a job starts, refund(n) when fewer
pages were processed, and trusts the balance the store returns.

Deduction retries transient store failures (connection drops, timeouts) with
linear backoff; an insufficient balance is final and never retried. Refunds
are not retried here: a failed refund is surfaced to the caller, which
records it on the job so the operator can see the unreconciled amount.

Known race: two sessions of the same operator deducting concurrently are
serialised per transaction by the store, but the controller makes no attempt
to coordinate admission across devices.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import psycopg2

from config import DEFAULT_CREDITS, LEDGER_MAX_RETRIES, LEDGER_RETRY_BACKOFF
from _db import (
    InsufficientCreditsError,
    db_deduct_credits,
    db_get_credits,
    db_refund_credits,
)
from errors import CreditDeductionError

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    amount: int
    new_balance: int


class CreditLedgerClient:
    def __init__(
        self,
        default_credits: int = DEFAULT_CREDITS,
        max_retries: int = LEDGER_MAX_RETRIES,
        retry_backoff: float = LEDGER_RETRY_BACKOFF,
    ) -> None:
        self.default_credits = default_credits
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff

    async def balance(self, user_id: str) -> int:
        return await asyncio.to_thread(db_get_credits, user_id, self.default_credits)

    async def deduct(
        self,
        user_id: str,
        pages: int,
        job_ref: Optional[str] = None,
    ) -> LedgerResult:
        """
        Charge `pages` credits. Raises CreditDeductionError if nothing was charged.
        """
        if pages <= 0:
            raise CreditDeductionError(
                f"Invalid number of pages to deduct: {pages}", requested=pages
            )

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                new_balance = await asyncio.to_thread(
                    db_deduct_credits, user_id, pages, self.default_credits, job_ref
                )
                logger.info(
                    f"Deducted {pages} credit(s) from {user_id}: {new_balance} remaining."
                )
                return LedgerResult(amount=pages, new_balance=new_balance)

            except InsufficientCreditsError as exc:
                logger.warning(f"Deduction refused for {user_id}: {exc}")
                raise CreditDeductionError(
                    str(exc), requested=pages, balance=exc.balance
                ) from exc

            except psycopg2.Error as exc:
                last_error = exc
                logger.error(
                    f"Ledger error deducting credits "
                    f"(attempt {attempt}/{self.max_retries}): {exc}"
                )
                if attempt < self.max_retries:
                    wait = attempt * self.retry_backoff
                    logger.info(f"Retrying deduction in {wait:.1f}s...")
                    await asyncio.sleep(wait)

        raise CreditDeductionError(
            f"Could not deduct credits: {last_error}", requested=pages
        )

    async def refund(
        self,
        user_id: str,
        pages: int,
        job_ref: Optional[str] = None,
    ) -> LedgerResult:
        if pages <= 0:
            return LedgerResult(amount=0, new_balance=await self.balance(user_id))
        new_balance = await asyncio.to_thread(
            db_refund_credits, user_id, pages, self.default_credits, job_ref
        )
        logger.info(f"Refunded {pages} credit(s) to {user_id}: {new_balance} remaining.")
        return LedgerResult(amount=pages, new_balance=new_balance)
