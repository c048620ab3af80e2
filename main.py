"""
main.py

FastAPI entry point for ScanBatch.

Auth:
    Two methods accepted on all data endpoints:
      1. Bearer session token  (post /login, then pass Authorization: Bearer <token>)
      2. X-API-Key header      (remote scan worker / programmatic access)

    The progress webhook accepts the API key only. It is called by the
    scan worker, never by a browser.

Sessions are stored in PostgreSQL so they survive container restarts and
rolling redeploys.  Admin credentials are loaded from environment variables;
the password is verified against a bcrypt hash.

One operator, one queue: files are appended with POST /batch/files (also
while a run is draining the queue), a run is started with POST /batch/run,
and GET /batch/status returns the controller snapshot.

Local dev:  python main.py
"""

import asyncio
import logging
import os
import secrets
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional
from urllib.parse import quote

import bcrypt

# Ensure src/ is on the path so all module imports resolve
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "src"))

from fastapi import Depends, FastAPI, File, Form, HTTPException, Header, Request, Security, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security.api_key import APIKeyHeader
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from _db import (
    db_cleanup_scan_sessions,
    db_cleanup_sessions,
    db_create_session,
    db_delete_session,
    db_get_export,
    db_validate_session,
    init_db,
)
from batch_controller import MODE_SEPARATE, BatchController
from config import (
    ADMIN_PASSWORD_HASH,
    ADMIN_USERNAME,
    ALLOWED_ORIGINS,
    API_KEY,
    ENV,
    MAX_FILE_SIZE_MB,
)
from errors import InvalidRangeError
from export_sink import ExportSink
from job_runner import JobRunner
from ledger import CreditLedgerClient
from page_range import resolve_pages
from pdf_processor import count_pages
from progress import ProgressHub, ProgressUpdate
from scan_invoker import RemoteScanInvoker
from scan_job import ScanJob
from scan_queue import ScanQueue


# ── Logging ────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── Session Management ─────────────────────────────────────────────────────────
# Sessions are persisted in PostgreSQL so they survive container restarts
# and rolling redeploys.  Expired rows are pruned hourly by _cleanup_task().

SESSION_TIMEOUT_MINUTES = 480  # 8 hours


def _check_password(password: str) -> bool:
    """Verify password against bcrypt hash stored in ADMIN_PASSWORD_HASH env var.
    Falls back to credential-free login only when ENV=dev and no hash is set.
    """
    if ADMIN_PASSWORD_HASH:
        try:
            return bcrypt.checkpw(password.encode(), ADMIN_PASSWORD_HASH.encode())
        except ValueError:
            return False
    logger.warning(
        "ADMIN_PASSWORD_HASH is not set. "
        "Login is allowed without a password only in ENV=dev."
    )
    return ENV == "dev"


class LoginRequest(BaseModel):
    username: str
    password: str


def validate_session_token(token: Optional[str]) -> bool:
    """Check if token exists in PostgreSQL and has not expired."""
    if not token:
        return False
    try:
        return db_validate_session(token)
    except Exception as exc:
        logger.warning(f"Session validation DB error: {exc}")
        return False


# ── Authentication ─────────────────────────────────────────────────────────────

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(key: str = Security(_api_key_header)) -> None:
    """FastAPI dependency: raises 403 if API key is missing or wrong."""
    if not key or key != API_KEY:
        raise HTTPException(
            status_code=403,
            detail="Invalid or missing API key. Provide header: X-API-Key: <key>",
        )


async def require_auth(
    authorization: Optional[str] = Header(None),
    api_key: Optional[str] = Security(_api_key_header),
) -> None:
    """Accept either a valid Bearer session token or a valid API key."""
    if authorization and authorization.startswith("Bearer "):
        token = authorization.replace("Bearer ", "", 1)
        if await asyncio.to_thread(validate_session_token, token):
            return
    if api_key and api_key == API_KEY:
        return
    raise HTTPException(
        status_code=401,
        detail="Authentication required. Please login or provide a valid API key.",
    )


_auth = Depends(require_auth)
_worker = Depends(require_api_key)


# ── Rate Limiter ───────────────────────────────────────────────────────────────

_limiter = Limiter(key_func=get_remote_address)


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded. {exc.detail}"},
    )


# ── Upload limits ──────────────────────────────────────────────────────────────

_MAX_FILE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024


# ── Batch state ────────────────────────────────────────────────────────────────
# One ledger account: the admin operator. The queue persists across runs;
# each POST /batch/run builds a controller for the requested export mode.

OPERATOR_ID = ADMIN_USERNAME

_queue    = ScanQueue()
_progress = ProgressHub()
_ledger   = CreditLedgerClient()
_invoker  = RemoteScanInvoker()
_sink     = ExportSink()


def _new_controller(mode: str) -> BatchController:
    runner = JobRunner(_ledger, _invoker, _progress, OPERATOR_ID)
    return BatchController(_queue, runner, mode=mode, export_sink=_sink)


_controller = _new_controller(MODE_SEPARATE)


class RunRequest(BaseModel):
    mode: Literal["separate", "combine"] = MODE_SEPARATE


class DecisionRequest(BaseModel):
    decision: Literal["retry", "abort"]


# ── Background cleanup ─────────────────────────────────────────────────────────

async def _cleanup_task() -> None:
    """Hourly background task: purge expired login sessions and stale scan sessions."""
    while True:
        await asyncio.sleep(3600)

        try:
            removed = await asyncio.to_thread(db_cleanup_sessions)
            if removed:
                logger.info(f"Session cleanup: removed {removed} expired session(s).")
        except Exception as exc:
            logger.warning(f"Session cleanup error: {exc}")

        try:
            removed = await asyncio.to_thread(db_cleanup_scan_sessions, 24)
            if removed:
                logger.info(f"Scan session cleanup: removed {removed} stale session(s).")
        except Exception as exc:
            logger.warning(f"Scan session cleanup error: {exc}")


# ── App lifecycle ──────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()   # creates/verifies schema (idempotent)
    cleanup = asyncio.create_task(_cleanup_task())
    logger.info("ScanBatch API started.")
    yield
    cleanup.cancel()
    await _invoker.aclose()
    logger.info("ScanBatch API shutting down.")


# ── App setup ─────────────────────────────────────────────────────────────────

app = FastAPI(
    title="ScanBatch",
    description="Metered batch scanning of documents into spreadsheets.",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = _limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)

# CORS: restrict origins in production via ALLOWED_ORIGINS env var.
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["X-API-Key", "Authorization", "Content-Type"],
)


# ── Routes ─────────────────────────────────────────────────────────────────────

@app.get("/health", include_in_schema=False)
async def health_check():
    """Health probe, no auth required. Used by load balancers and Docker HEALTHCHECK."""
    return {"status": "ok"}


@app.post("/login")
async def login(credentials: LoginRequest):
    """
    Authenticate with username/password and receive a session token.
    Returns: { "token": "<session_token>", "expires_in": 28800 }
    """
    if credentials.username != ADMIN_USERNAME or not _check_password(credentials.password):
        raise HTTPException(status_code=401, detail="Invalid username or password.")

    token = secrets.token_urlsafe(32)
    expiry = datetime.now(tz=timezone.utc) + timedelta(minutes=SESSION_TIMEOUT_MINUTES)
    await asyncio.to_thread(db_create_session, token, expiry)

    logger.info(f"User '{credentials.username}' logged in.")
    return {
        "token": token,
        "expires_in": SESSION_TIMEOUT_MINUTES * 60,
        "message": "Login successful",
    }


@app.post("/logout")
async def logout(authorization: Optional[str] = Header(None)):
    """Invalidate current session token."""
    if authorization and authorization.startswith("Bearer "):
        token = authorization.replace("Bearer ", "", 1)
        await asyncio.to_thread(db_delete_session, token)
        return {"message": "Logged out successfully"}
    return {"message": "No active session to logout"}


@app.get("/credits", dependencies=[_auth])
async def get_credits():
    """Current page-credit balance of the operator account."""
    return {"user_id": OPERATOR_ID, "credits": await _ledger.balance(OPERATOR_ID)}


# ── Batch ──────────────────────────────────────────────────────────────────────

@app.post("/batch/files", dependencies=[_auth])
@_limiter.limit("20/minute")
async def add_files(
    request: Request,
    files: list[UploadFile] = File(...),
    start_page: Optional[int] = Form(None),
    end_page: Optional[int] = Form(None),
    page_range: Optional[str] = Form(None),
):
    """
    Queue one or more files (PDF or image). Allowed while a run is active.

    Page selection (start_page/end_page or page_range such as "1,3-5") applies
    only when exactly one PDF is uploaded; otherwise every page is scanned.
    An invalid selection is rejected with 422 before anything is queued.
    """
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded.")

    intake: list[tuple[str, bytes, int, bool]] = []
    for upload in files:
        if not upload.filename:
            raise HTTPException(status_code=400, detail="File missing filename.")

        content = await upload.read()
        if not content:
            raise HTTPException(status_code=400, detail=f"File '{upload.filename}' is empty.")

        if len(content) > _MAX_FILE_BYTES:
            raise HTTPException(
                status_code=413,
                detail=(
                    f"'{upload.filename}' is too large "
                    f"({len(content) // (1024*1024)} MB). "
                    f"Maximum allowed: {MAX_FILE_SIZE_MB} MB."
                ),
            )

        result = await asyncio.to_thread(count_pages, upload.filename, content)
        if result.error:
            raise HTTPException(status_code=415, detail=f"'{upload.filename}': {result.error}")

        intake.append((upload.filename, content, result.total_pages, result.is_pdf))

    selection_applies = len(intake) == 1 and intake[0][3]
    jobs: list[ScanJob] = []
    for filename, content, total_pages, _ in intake:
        pages = None
        if selection_applies:
            try:
                pages = resolve_pages(total_pages, start_page, end_page, page_range)
            except InvalidRangeError as exc:
                raise HTTPException(status_code=422, detail=str(exc))
        jobs.append(ScanJob(
            file=content,
            original_name=filename,
            total_pages=total_pages,
            pages_to_scan=pages,
        ))

    _queue.append(*jobs)
    return JSONResponse(
        content={"jobs": [j.to_summary() for j in jobs]},
        status_code=202,
    )


@app.delete("/batch/files/{job_id}", dependencies=[_auth])
async def remove_file(job_id: str):
    """Remove a queued file that has not started."""
    try:
        job = _queue.remove(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found.")
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"removed": job.job_id, "filename": job.original_name}


@app.post("/batch/run", dependencies=[_auth])
async def start_run(body: Optional[RunRequest] = None):
    """Start draining the queue. 409 if a run is already active."""
    global _controller
    mode = body.mode if body else MODE_SEPARATE

    if _controller.is_running:
        raise HTTPException(status_code=409, detail="A batch run is already active.")
    if not _queue.pending():
        raise HTTPException(status_code=409, detail="No pending files to scan.")

    _controller = _new_controller(mode)
    _controller.start()
    return JSONResponse(content=_controller.snapshot(), status_code=202)


@app.post("/batch/cancel", dependencies=[_auth])
async def cancel_run():
    """Stop after the file in flight; its remote session is told to stop."""
    if not _controller.is_running:
        raise HTTPException(status_code=409, detail="No batch run is active.")
    await _controller.request_cancel()
    return _controller.snapshot()


@app.post("/batch/decision", dependencies=[_auth])
async def credit_decision(body: DecisionRequest):
    """Answer a paused run after a credit failure: retry the same file, or abort."""
    try:
        _controller.resolve_credit_decision(body.decision)
    except RuntimeError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _controller.snapshot()


@app.get("/batch/status", dependencies=[_auth])
async def batch_status():
    return _controller.snapshot()


# ── Scan sessions (remote worker) ──────────────────────────────────────────────

@app.post("/scan-sessions/{session_id}/progress", dependencies=[_worker])
async def post_progress(session_id: str, update: ProgressUpdate):
    """Progress webhook for the scan worker. Updates from a non-owner are ignored."""
    accepted = await _progress.publish(session_id, update)
    return {"accepted": accepted}


@app.get("/scan-sessions/{session_id}", dependencies=[_auth])
async def get_scan_session(session_id: str):
    """Latest progress and the cancel flag the worker polls."""
    session = await _progress.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Scan session '{session_id}' not found.")
    return session


# ── Exports ────────────────────────────────────────────────────────────────────

@app.get("/exports/{export_id}/download", dependencies=[_auth])
async def download_export(export_id: str):
    """Download a generated workbook."""
    export = await asyncio.to_thread(db_get_export, export_id)
    if export is None:
        raise HTTPException(status_code=404, detail=f"Export '{export_id}' not found.")

    return Response(
        content=export["xlsx_bytes"],
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(export['filename'])}",
            "Content-Length": str(len(export["xlsx_bytes"])),
        },
    )


# ── Entry point ────────────────────────────────────────────────────────────────
# For local dev: python main.py

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
