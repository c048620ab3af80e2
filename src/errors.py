"""
errors.py

Exception types raised by the scan controller.

    ScanError
    ├── InvalidRangeError      bad page selection; rejected before any deduction
    ├── CreditDeductionError   ledger refused the deduction; nothing was charged
    ├── IncompleteResultError  fewer pages came back than were requested
    ├── RemoteInvocationError  transport / timeout / service-reported failure
    └── ExportError            spreadsheet could not be built or stored

Only CreditDeductionError pauses a batch. The others are isolated to one job.
"""

from typing import Optional


class ScanError(Exception):
    """Base class for every controller-level failure."""


class InvalidRangeError(ScanError, ValueError):
    pass


class CreditDeductionError(ScanError):
    def __init__(self, message: str, requested: int = 0, balance: Optional[int] = None):
        super().__init__(message)
        self.requested = requested
        self.balance = balance


class IncompleteResultError(ScanError):
    def __init__(self, message: str, missing_pages: Optional[list[int]] = None):
        super().__init__(message)
        self.missing_pages = missing_pages or []


class RemoteInvocationError(ScanError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ExportError(ScanError):
    pass
