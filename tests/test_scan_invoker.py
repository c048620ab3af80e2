"""Tests for the scan service client, against httpx.MockTransport."""

import asyncio
import base64
import json

import httpx
import pytest

from errors import RemoteInvocationError
from scan_invoker import RemoteScanInvoker, parse_scan_response

URL = "http://scanner.test/scan"


def _invoker(handler) -> RemoteScanInvoker:
    return RemoteScanInvoker(url=URL, timeout=5, mock=False, transport=httpx.MockTransport(handler))


def _submit(invoker, filename="report.pdf", pages=(1, 3)):
    async def go():
        try:
            return await invoker.submit(b"%PDF-1.4 data", filename, list(pages), "scan_1_ab", "operator")
        finally:
            await invoker.aclose()
    return asyncio.run(go())


def test_request_payload_and_per_page_response():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        captured["api_key"] = request.headers.get("X-API-Key")
        return httpx.Response(200, json={
            "success": True,
            "scanMode": "perPage",
            "pages": [
                {"pageNumber": 1, "data": {"words": []}, "records": [{"name": "A"}]},
                {"pageNumber": 3, "data": {"words": []}},
            ],
        })

    result = _submit(_invoker(handler))

    body = captured["body"]
    assert base64.b64decode(body["pdf_base64"]) == b"%PDF-1.4 data"
    assert body["fileName"] == "report.pdf"
    assert body["mimeType"] == "application/pdf"
    assert body["scanMode"] == "perPage"
    assert body["pageRange"] == [1, 3]
    assert body["sessionId"] == "scan_1_ab"
    assert body["userId"] == "operator"
    assert captured["api_key"] == "test-api-key"

    assert [(p.page_number, p.records) for p in result.pages] == [(1, [{"name": "A"}]), (3, [])]


def test_page_without_data_or_records_is_not_delivered():
    result = parse_scan_response({
        "success": True,
        "pages": [
            {"pageNumber": 2, "data": None},
            {"pageNumber": 4, "error": "quota exceeded"},
        ],
    })
    assert result.pages[0].records is None
    assert result.pages[1].error == "quota exceeded"


def test_flat_records_are_grouped_by_page():
    result = parse_scan_response({
        "success": True,
        "records": [{"name": "a", "page": 2}, {"name": "b", "page": 1}, {"name": "c", "page": 2}],
    })
    assert [(p.page_number, len(p.records)) for p in result.pages] == [(1, 1), (2, 2)]


@pytest.mark.parametrize("response", [
    httpx.Response(500, text="internal error"),
    httpx.Response(200, text="<html>not json</html>"),
    httpx.Response(200, json={"success": False, "error": "bad pdf"}),
    httpx.Response(200, json=["not", "an", "object"]),
])
def test_failures_raise_remote_invocation_error(response):
    with pytest.raises(RemoteInvocationError):
        _submit(_invoker(lambda request: response))


def test_http_error_carries_status_code():
    with pytest.raises(RemoteInvocationError) as exc_info:
        _submit(_invoker(lambda request: httpx.Response(503, text="busy")))
    assert exc_info.value.status_code == 503


def test_transport_errors_are_wrapped():
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(RemoteInvocationError, match="unreachable"):
        _submit(_invoker(unreachable))
    with pytest.raises(RemoteInvocationError, match="timed out"):
        _submit(_invoker(slow))


def test_mock_mode_returns_every_page_empty():
    invoker = RemoteScanInvoker(url=URL, mock=True)
    result = asyncio.run(invoker.submit(b"x", "a.pdf", [2, 5], "scan_1_ab", "operator"))
    assert [(p.page_number, p.records) for p in result.pages] == [(2, []), (5, [])]
