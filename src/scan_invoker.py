"""
scan_invoker.py

Async client for the remote scan (OCR) service.

One POST per job, perPage mode: the whole file goes up base64-encoded with
the list of pages to scan, and the response carries one result per page:

    request   {pdf_base64, fileName, mimeType, scanMode: "perPage",
               pageRange: [1, 3, 4], sessionId, userId}
    response  {success: true, pages: [{pageNumber, data, records, error}, ...]}

A page counts as delivered when it has data and no error; its records may be
an empty list. Older workers answer with a flat `records` list where every
record carries its own `page` field; that shape is regrouped per page.

Failures (transport, timeout, non-2xx, non-JSON, success=false) are raised as
RemoteInvocationError. No retries here: a failed job is refunded in full and
the operator re-queues the file.

Set MOCK_SCAN=true to skip the network; every requested page comes back
with zero records.
"""

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from config import API_KEY, MOCK_SCAN, SCAN_SERVICE_TIMEOUT, SCAN_SERVICE_URL
from errors import RemoteInvocationError
from pdf_processor import detect_mime_type

logger = logging.getLogger(__name__)

# ── Response types ─────────────────────────────────────────────────────────────

@dataclass
class PageOutcome:
    page_number: int
    records: Optional[list[dict]] = None     # None = page carried no data
    error: Optional[str] = None


@dataclass
class ScanResponse:
    success: bool
    pages: list[PageOutcome] = field(default_factory=list)


def _parse_page(raw: dict) -> Optional[PageOutcome]:
    try:
        page_number = int(raw.get("pageNumber"))
    except (TypeError, ValueError):
        return None

    records = raw.get("records")
    if not isinstance(records, list):
        # `data` without a records array still means the page was scanned.
        records = [] if raw.get("data") is not None else None
    return PageOutcome(
        page_number=page_number,
        records=[r for r in records if isinstance(r, dict)] if records is not None else None,
        error=raw.get("error") or None,
    )


def parse_scan_response(data: Any) -> ScanResponse:
    """Normalise a service response body into a ScanResponse."""
    if not isinstance(data, dict):
        raise RemoteInvocationError("Scan service returned a non-object JSON body.")

    if not data.get("success"):
        raise RemoteInvocationError(
            f"Scan service reported failure: {data.get('error') or 'unknown error'}"
        )

    pages: list[PageOutcome] = []
    if isinstance(data.get("pages"), list):
        for raw in data["pages"]:
            if isinstance(raw, dict):
                outcome = _parse_page(raw)
                if outcome is not None:
                    pages.append(outcome)

    elif isinstance(data.get("records"), list):
        grouped: dict[int, list[dict]] = {}
        for record in data["records"]:
            if not isinstance(record, dict):
                continue
            try:
                page_number = int(record.get("page"))
            except (TypeError, ValueError):
                continue
            grouped.setdefault(page_number, []).append(record)
        pages = [PageOutcome(page_number=p, records=rows) for p, rows in sorted(grouped.items())]

    return ScanResponse(success=True, pages=pages)


# ── Client ─────────────────────────────────────────────────────────────────────

class RemoteScanInvoker:
    def __init__(
        self,
        url: str = SCAN_SERVICE_URL,
        timeout: float = SCAN_SERVICE_TIMEOUT,
        mock: bool = MOCK_SCAN,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.mock = mock
        self._transport = transport
        # Created lazily inside the running event loop.
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json", "X-API-Key": API_KEY},
                timeout=httpx.Timeout(self.timeout, connect=30.0),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def submit(
        self,
        file: bytes,
        filename: str,
        page_numbers: list[int],
        session_id: str,
        user_id: str,
    ) -> ScanResponse:
        """Scan `page_numbers` of `file`. Raises RemoteInvocationError."""
        if self.mock:
            logger.info(f"[{filename}] MOCK_SCAN enabled, skipping scan service call.")
            return ScanResponse(
                success=True,
                pages=[PageOutcome(page_number=p, records=[]) for p in page_numbers],
            )

        payload = {
            "pdf_base64": base64.b64encode(file).decode("ascii"),
            "fileName":   filename,
            "mimeType":   detect_mime_type(filename),
            "scanMode":   "perPage",
            "pageRange":  list(page_numbers),
            "sessionId":  session_id,
            "userId":     user_id,
        }

        logger.info(
            f"[{filename}] Submitting {len(page_numbers)} page(s) to scan service "
            f"(session {session_id})."
        )
        try:
            response = await self._get_client().post(self.url, json=payload)
        except httpx.TimeoutException as exc:
            raise RemoteInvocationError(
                f"Scan service timed out after {self.timeout:.0f}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteInvocationError(f"Scan service unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise RemoteInvocationError(
                f"Scan service returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteInvocationError(
                "Scan service returned a non-JSON response.",
                status_code=response.status_code,
            ) from exc

        result = parse_scan_response(data)
        logger.info(f"[{filename}] Scan service returned {len(result.pages)} page result(s).")
        return result
