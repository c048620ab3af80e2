"""API tests. No lifespan (no database): collaborators are swapped for fakes."""

import pytest
from fastapi.testclient import TestClient

import main
from conftest import FakeInvoker, FakeLedger, FakeSink, MemoryProgressStore
from pdf_processor import IntakeResult
from progress import ProgressHub
from scan_queue import ScanQueue

HEADERS = {"X-API-Key": "test-api-key"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main, "_queue", ScanQueue())
    monkeypatch.setattr(main, "_progress", ProgressHub(MemoryProgressStore()))
    monkeypatch.setattr(main, "_ledger", FakeLedger(credits=42))
    monkeypatch.setattr(main, "_invoker", FakeInvoker())
    monkeypatch.setattr(main, "_sink", FakeSink())
    monkeypatch.setattr(main, "_controller", main._new_controller("separate"))
    monkeypatch.setattr(
        main, "count_pages",
        lambda filename, content: IntakeResult(filename=filename, total_pages=5, is_pdf=True),
    )
    return TestClient(main.app)


def _upload(client, names=("report.pdf",), **form):
    files = [("files", (name, b"%PDF-1.4 fake", "application/pdf")) for name in names]
    return client.post("/batch/files", files=files, data=form, headers=HEADERS)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_auth_required(client):
    assert client.get("/batch/status").status_code == 401
    assert client.get("/batch/status", headers={"X-API-Key": "wrong"}).status_code == 401


def test_credits(client):
    response = client.get("/credits", headers=HEADERS)
    assert response.json()["credits"] == 42


def test_upload_with_page_range(client):
    response = _upload(client, page_range="1,3-4")
    assert response.status_code == 202
    job = response.json()["jobs"][0]
    assert job["pages_to_scan"] == [1, 3, 4]
    assert job["status"] == "pending"


def test_invalid_page_range_rejected_before_queueing(client):
    response = _upload(client, page_range="2-9")
    assert response.status_code == 422
    assert "exceeds" in response.json()["detail"]
    assert main._queue.pending() == []


def test_non_ascii_digit_in_page_range_rejected(client):
    response = _upload(client, page_range="1-³")
    assert response.status_code == 422
    assert main._queue.pending() == []


def test_page_range_ignored_for_multiple_files(client):
    response = _upload(client, names=("a.pdf", "b.pdf"), page_range="1")
    jobs = response.json()["jobs"]
    assert [j["pages_to_scan"] for j in jobs] == [None, None]
    assert [j["pages_requested"] for j in jobs] == [5, 5]


def test_unreadable_file_rejected(client, monkeypatch):
    monkeypatch.setattr(
        main, "count_pages",
        lambda filename, content: IntakeResult(filename=filename, error="Unsupported file type."),
    )
    assert _upload(client).status_code == 415


def test_remove_pending_file(client):
    job_id = _upload(client).json()["jobs"][0]["job_id"]
    assert client.delete(f"/batch/files/{job_id}", headers=HEADERS).status_code == 200
    assert client.delete(f"/batch/files/{job_id}", headers=HEADERS).status_code == 404


def test_remove_started_file_conflicts(client):
    job_id = _upload(client).json()["jobs"][0]["job_id"]
    main._queue.get(job_id).start("scan_1_a")
    assert client.delete(f"/batch/files/{job_id}", headers=HEADERS).status_code == 409


def test_run_requires_pending_files(client):
    assert client.post("/batch/run", json={"mode": "separate"}, headers=HEADERS).status_code == 409


def test_decision_without_pause_conflicts(client):
    response = client.post("/batch/decision", json={"decision": "retry"}, headers=HEADERS)
    assert response.status_code == 409
    response = client.post("/batch/decision", json={"decision": "maybe"}, headers=HEADERS)
    assert response.status_code == 422


def test_cancel_without_run_conflicts(client):
    assert client.post("/batch/cancel", headers=HEADERS).status_code == 409


def test_status_snapshot(client):
    _upload(client)
    snapshot = client.get("/batch/status", headers=HEADERS).json()
    assert snapshot["state"] == "idle"
    assert snapshot["pending"] == 1
    assert snapshot["jobs"][0]["filename"] == "report.pdf"


def test_progress_webhook_requires_api_key(client):
    response = client.post("/scan-sessions/scan_1_a/progress", json={"percentage": 10})
    assert response.status_code == 403


def test_progress_webhook_and_session_read(client):
    import asyncio

    asyncio.run(main._progress.open_session("scan_1_a", main.OPERATOR_ID, "job-1", "a.pdf"))

    response = client.post(
        "/scan-sessions/scan_1_a/progress",
        json={"percentage": 40, "message": "page 2/5", "userId": main.OPERATOR_ID,
              "pageResults": [{"pageNumber": 2, "records": []}]},
        headers=HEADERS,
    )
    assert response.json() == {"accepted": True}

    foreign = client.post(
        "/scan-sessions/scan_1_a/progress",
        json={"percentage": 90, "userId": "someone-else"},
        headers=HEADERS,
    )
    assert foreign.json() == {"accepted": False}

    session = client.get("/scan-sessions/scan_1_a", headers=HEADERS).json()
    assert session["percentage"] == 40
    assert session["cancelled"] is False
    assert client.get("/scan-sessions/missing", headers=HEADERS).status_code == 404


def test_download_missing_export(client, monkeypatch):
    monkeypatch.setattr(main, "db_get_export", lambda export_id: None)
    assert client.get("/exports/nope/download", headers=HEADERS).status_code == 404


def test_download_export(client, monkeypatch):
    monkeypatch.setattr(
        main, "db_get_export",
        lambda export_id: {"filename": "รายงาน.xlsx", "row_count": 1, "xlsx_bytes": b"PK\x03\x04data"},
    )
    response = client.get("/exports/e1/download", headers=HEADERS)
    assert response.status_code == 200
    assert response.content == b"PK\x03\x04data"
    assert "filename*=UTF-8''" in response.headers["content-disposition"]
