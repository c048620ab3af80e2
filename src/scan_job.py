"""
scan_job.py

Per-file scan state.

A ScanJob is created when a file is queued (status "pending") and is mutated
only by the JobRunner that currently owns it. Progress updates and the final
service response both go through apply_page_result(), which enforces:

    received_pages ⊆ pages requested
    records keys   ⊆ received_pages
    nothing changes once a terminal status has been set

The terminal status (done / error / cancelled) is set exactly once.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from page_range import expand_pages

# ── Job status constants ───────────────────────────────────────────────────────

STATUS_PENDING   = "pending"
STATUS_SCANNING  = "scanning"
STATUS_DONE      = "done"
STATUS_ERROR     = "error"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = {STATUS_DONE, STATUS_ERROR, STATUS_CANCELLED}


# ── Data structures ────────────────────────────────────────────────────────────

@dataclass
class CreditTransaction:
    requested: int = 0
    deducted: int = 0
    refunded: int = 0
    refund_error: Optional[str] = None

    @property
    def charged(self) -> int:
        return self.deducted - self.refunded


@dataclass
class ScanJob:
    file: bytes
    original_name: str
    total_pages: int
    pages_to_scan: Optional[list[int]] = None      # None = all pages
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = STATUS_PENDING
    received_pages: set[int] = field(default_factory=set)
    records: dict[int, list[dict]] = field(default_factory=dict)
    error: Optional[str] = None
    credits: CreditTransaction = field(default_factory=CreditTransaction)
    session_id: Optional[str] = None
    export_id: Optional[str] = None
    export_error: Optional[str] = None
    hidden: bool = False
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def __post_init__(self) -> None:
        if self.total_pages < 1:
            raise ValueError(f"total_pages must be >= 1, got {self.total_pages}")
        if self.pages_to_scan is not None:
            pages = sorted(set(self.pages_to_scan))
            if not pages or pages[0] < 1 or pages[-1] > self.total_pages:
                raise ValueError(
                    f"pages_to_scan {self.pages_to_scan} outside 1..{self.total_pages}"
                )
            self.pages_to_scan = pages

    # ── Derived values ─────────────────────────────────────────────────────────

    @property
    def requested_pages(self) -> list[int]:
        return expand_pages(self.pages_to_scan, self.total_pages)

    @property
    def processed_pages(self) -> int:
        return len(self.received_pages)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def missing_pages(self) -> list[int]:
        return [p for p in self.requested_pages if p not in self.received_pages]

    # ── Mutation ───────────────────────────────────────────────────────────────

    def start(self, session_id: str) -> None:
        """pending → scanning. Clears anything left from an earlier attempt."""
        if self.status != STATUS_PENDING:
            raise RuntimeError(
                f"Job {self.job_id} cannot start from status '{self.status}'"
            )
        self.status = STATUS_SCANNING
        self.session_id = session_id
        self.received_pages = set()
        self.records = {}
        self.error = None
        self.started_at = time.time()

    def apply_page_result(
        self,
        page_number: int,
        records: Optional[list[dict]],
        error: Optional[str] = None,
    ) -> bool:
        """
        Record one page as received. Returns True if the page was accepted.

        Rejected: job not scanning, page not requested, page carried an error,
        or page carried no data at all (records is None).
        """
        if self.status != STATUS_SCANNING:
            return False
        if page_number not in self.requested_pages:
            return False
        if error or records is None:
            return False

        self.received_pages.add(page_number)
        if records:
            self.records[page_number] = list(records)
        return True

    def finish(self, status: str, error: Optional[str] = None) -> None:
        """Set the terminal status. Allowed once, and only from scanning."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"'{status}' is not a terminal status")
        if self.status != STATUS_SCANNING:
            raise RuntimeError(
                f"Job {self.job_id} cannot finish from status '{self.status}'"
            )
        self.status = status
        self.error = error
        self.finished_at = time.time()
        # Upload bytes are not needed once the job is terminal.
        self.file = b""

    # ── Output ─────────────────────────────────────────────────────────────────

    def flatten_records(self) -> list[dict]:
        """All records in page order, each tagged with its page number."""
        rows: list[dict] = []
        for page in sorted(self.records):
            for record in self.records[page]:
                row = dict(record)
                row.setdefault("page", page)
                rows.append(row)
        return rows

    def to_summary(self) -> dict:
        """JSON-serialisable report for status payloads."""
        return {
            "job_id":          self.job_id,
            "filename":        self.original_name,
            "status":          self.status,
            "error":           self.error,
            "total_pages":     self.total_pages,
            "pages_to_scan":   self.pages_to_scan,
            "pages_requested": len(self.requested_pages),
            "pages_received":  self.processed_pages,
            "records":         sum(len(r) for r in self.records.values()),
            "credits": {
                "requested":    self.credits.requested,
                "deducted":     self.credits.deducted,
                "refunded":     self.credits.refunded,
                "refund_error": self.credits.refund_error,
            },
            "exported":        self.export_id is not None,
            "export_id":       self.export_id,
            "export_error":    self.export_error,
        }
