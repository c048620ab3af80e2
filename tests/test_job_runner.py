"""Tests for the per-job deduct → scan → reconcile → refund → export cycle."""

import asyncio

import pytest

from cancellation import CancellationToken
from conftest import USER_ID, FakeInvoker, FakeLedger, FakeSink, make_job
from errors import CreditDeductionError, IncompleteResultError, RemoteInvocationError
from job_runner import JobRunner, new_session_id
from page_range import resolve_pages
from progress import PageResult, ProgressUpdate
from scan_invoker import PageOutcome, ScanResponse
from scan_job import STATUS_CANCELLED, STATUS_DONE, STATUS_ERROR, STATUS_PENDING


def _pages(*page_numbers, records=True):
    return ScanResponse(
        success=True,
        pages=[
            PageOutcome(page_number=p, records=[{"name": f"row {p}"}] if records else [])
            for p in page_numbers
        ],
    )


def test_session_id_format():
    sid = new_session_id()
    prefix, millis, suffix = sid.split("_")
    assert prefix == "scan"
    assert millis.isdigit()
    assert suffix
    assert new_session_id() != sid


def test_all_pages_delivered_is_done_without_refund(ledger, hub, sink):
    invoker = FakeInvoker()
    runner = JobRunner(ledger, invoker, hub, USER_ID)
    job = make_job(total_pages=3)

    asyncio.run(runner.run(job, CancellationToken(), sink))

    assert job.status == STATUS_DONE
    assert ledger.deducts == [3]
    assert ledger.refunds == []
    assert job.credits.deducted - job.credits.refunded == 3
    assert invoker.calls[0].page_numbers == [1, 2, 3]
    assert len(sink.exports) == 1
    assert [r["page"] for r in sink.exports[0][1]] == [1, 2, 3]
    assert job.export_id == "export-1"


def test_incomplete_delivery_refunds_everything_and_raises(ledger, hub, sink):
    pages = resolve_pages(5, page_range="1,3-4")
    assert pages == [1, 3, 4]
    invoker = FakeInvoker(lambda call: _pages(1, 3))
    runner = JobRunner(ledger, invoker, hub, USER_ID)
    job = make_job(total_pages=5, pages=pages)

    with pytest.raises(IncompleteResultError) as exc_info:
        asyncio.run(runner.run(job, CancellationToken(), sink))

    assert exc_info.value.missing_pages == [4]
    assert job.status == STATUS_ERROR
    assert ledger.deducts == [3]
    assert ledger.refunds == [3]
    assert job.credits.deducted == job.credits.refunded == 3
    # Partial data is still exported.
    assert len(sink.exports) == 1
    assert sorted({r["page"] for r in sink.exports[0][1]}) == [1, 3]


def test_cancel_after_first_page_refunds_the_rest(ledger, hub, store, sink):
    token = CancellationToken()

    async def first_page_then_cancel(call):
        await hub.publish(call.session_id, ProgressUpdate(
            percentage=33,
            message="page 1 done",
            userId=USER_ID,
            pageResults=[PageResult(pageNumber=1, records=[{"name": "Somchai"}])],
        ))
        await token.cancel()
        return _pages(1)

    runner = JobRunner(ledger, FakeInvoker(first_page_then_cancel), hub, USER_ID)
    job = make_job(total_pages=5, pages=[1, 3, 4])

    asyncio.run(runner.run(job, token, sink))

    assert job.status == STATUS_CANCELLED
    assert job.error is None
    assert ledger.refunds == [2]
    assert job.credits.refunded == 3 - job.processed_pages
    assert store.cancelled == [job.session_id]
    # The final response supersedes the live update for page 1.
    assert sink.exports == [("report.pdf", [{"name": "row 1", "page": 1}])]


def test_cancelled_before_submit_skips_the_call(ledger, hub, store, sink):
    token = CancellationToken()
    asyncio.run(token.cancel())
    invoker = FakeInvoker()
    runner = JobRunner(ledger, invoker, hub, USER_ID)
    job = make_job(total_pages=2)

    asyncio.run(runner.run(job, token, sink))

    assert invoker.calls == []
    assert job.status == STATUS_CANCELLED
    assert ledger.refunds == [2]
    assert store.cancelled == [job.session_id]
    assert sink.exports == []


def test_deduction_failure_leaves_job_pending(hub, sink):
    ledger = FakeLedger(credits=1)
    invoker = FakeInvoker()
    runner = JobRunner(ledger, invoker, hub, USER_ID)
    job = make_job(total_pages=3)

    with pytest.raises(CreditDeductionError):
        asyncio.run(runner.run(job, CancellationToken(), sink))

    assert job.status == STATUS_PENDING
    assert job.session_id is None
    assert invoker.calls == []
    assert ledger.refunds == []
    assert ledger.credits == 1


def test_remote_failure_is_fully_refunded(ledger, hub, sink):
    def boom(call):
        raise RemoteInvocationError("Scan service timed out after 720s")

    runner = JobRunner(ledger, FakeInvoker(boom), hub, USER_ID)
    job = make_job(total_pages=4)

    with pytest.raises(RemoteInvocationError):
        asyncio.run(runner.run(job, CancellationToken(), sink))

    assert job.status == STATUS_ERROR
    assert "timed out" in job.error
    assert ledger.refunds == [4]
    assert sink.exports == []


def test_unexpected_invoker_error_is_wrapped(ledger, hub, sink):
    def broken(call):
        raise KeyError("pages")

    runner = JobRunner(ledger, FakeInvoker(broken), hub, USER_ID)
    job = make_job(total_pages=2)

    with pytest.raises(RemoteInvocationError):
        asyncio.run(runner.run(job, CancellationToken(), sink))
    assert ledger.refunds == [2]


def test_progress_pages_count_even_if_call_fails(ledger, hub, sink):
    async def progress_then_timeout(call):
        await hub.publish(call.session_id, ProgressUpdate(
            userId=USER_ID,
            pageResults=[PageResult(pageNumber=p, records=[]) for p in call.page_numbers],
        ))
        raise RemoteInvocationError("connection reset")

    runner = JobRunner(ledger, FakeInvoker(progress_then_timeout), hub, USER_ID)
    job = make_job(total_pages=2)

    asyncio.run(runner.run(job, CancellationToken(), sink))

    assert job.status == STATUS_DONE
    assert ledger.refunds == []
    # No records, nothing to export.
    assert sink.exports == []


def test_error_pages_and_foreign_pages_are_not_counted(ledger, hub, sink):
    def mixed(call):
        return ScanResponse(success=True, pages=[
            PageOutcome(page_number=1, records=[{"name": "a"}]),
            PageOutcome(page_number=2, records=None, error="OCR failed"),
            PageOutcome(page_number=3, records=None),
            PageOutcome(page_number=9, records=[{"name": "stray"}]),
        ])

    runner = JobRunner(ledger, FakeInvoker(mixed), hub, USER_ID)
    job = make_job(total_pages=3)

    with pytest.raises(IncompleteResultError):
        asyncio.run(runner.run(job, CancellationToken(), sink))

    assert job.received_pages == {1}
    assert set(job.records) == {1}
    assert ledger.refunds == [3]


def test_progress_from_another_user_is_ignored(ledger, hub, sink):
    async def spoofed(call):
        accepted = await hub.publish(call.session_id, ProgressUpdate(
            userId="intruder",
            pageResults=[PageResult(pageNumber=1, records=[{"name": "fake"}])],
        ))
        assert accepted is False
        return _pages(1, 2)

    runner = JobRunner(ledger, FakeInvoker(spoofed), hub, USER_ID)
    job = make_job(total_pages=2)

    asyncio.run(runner.run(job, CancellationToken(), sink))

    assert job.status == STATUS_DONE
    assert all(r["name"] != "fake" for r in job.flatten_records())


def test_subscription_is_released_after_run(ledger, hub, sink):
    seen = {}

    def capture(call):
        seen["session"] = call.session_id
        seen["subs_during"] = hub.subscriber_count(call.session_id)
        return _pages(1)

    runner = JobRunner(ledger, FakeInvoker(capture), hub, USER_ID)
    asyncio.run(runner.run(make_job(total_pages=1), CancellationToken(), sink))

    assert seen["subs_during"] == 1
    assert hub.subscriber_count(seen["session"]) == 0


def test_refund_failure_is_recorded_on_the_job(ledger, hub, sink):
    ledger.fail_refund = True
    runner = JobRunner(ledger, FakeInvoker(lambda call: _pages(1)), hub, USER_ID)
    job = make_job(total_pages=2)

    with pytest.raises(IncompleteResultError):
        asyncio.run(runner.run(job, CancellationToken(), sink))

    assert job.credits.refunded == 0
    assert "2 page(s)" in job.credits.refund_error
    assert job.to_summary()["credits"]["refund_error"] == job.credits.refund_error


def test_export_failure_keeps_credit_bookkeeping(ledger, hub):
    sink = FakeSink(fail=True)
    runner = JobRunner(ledger, FakeInvoker(), hub, USER_ID)
    job = make_job(total_pages=2)

    asyncio.run(runner.run(job, CancellationToken(), sink))

    assert job.status == STATUS_DONE
    assert job.export_id is None
    assert "disk full" in job.export_error
    assert ledger.deducts == [2]
    assert ledger.refunds == []
