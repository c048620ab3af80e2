"""
_db.py

Postgres persistence layer for ScanBatch.

All SQL lives here. The ledger, progress hub and export sink call these
functions (through asyncio.to_thread) and never touch psycopg2 directly.

Schema
------
ledger_accounts
    user_id           TEXT PRIMARY KEY
    credits           INT  NOT NULL          -- one credit = one page
    total_used_pages  INT  NOT NULL DEFAULT 0
    updated_at        TIMESTAMPTZ DEFAULT now()

credit_transactions
    id             SERIAL PRIMARY KEY
    user_id        TEXT NOT NULL REFERENCES ledger_accounts(user_id)
    kind           TEXT NOT NULL          -- deduct|refund
    pages          INT  NOT NULL
    balance_after  INT  NOT NULL
    job_ref        TEXT
    created_at     TIMESTAMPTZ DEFAULT now()

scan_sessions
    session_id           TEXT PRIMARY KEY
    user_id              TEXT NOT NULL
    job_id               TEXT
    filename             TEXT
    status               TEXT NOT NULL     -- running|completed|error
    percentage           REAL DEFAULT 0
    message              TEXT
    cancelled            BOOL DEFAULT FALSE
    cancel_requested_at  TIMESTAMPTZ
    created_at           TIMESTAMPTZ DEFAULT now()
    updated_at           TIMESTAMPTZ DEFAULT now()

exports
    export_id       TEXT PRIMARY KEY
    filename        TEXT NOT NULL
    row_count       INT  NOT NULL DEFAULT 0
    xlsx_bytes      BYTEA NOT NULL
    created_at      TIMESTAMPTZ DEFAULT now()

sessions
    token       TEXT PRIMARY KEY
    expires_at  TIMESTAMPTZ NOT NULL

Connection
----------
Uses psycopg2.pool.ThreadedConnectionPool, safe for use inside
asyncio.to_thread workers and from the async FastAPI event loop
(via asyncio.to_thread).
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool

from config import DATABASE_URL, DB_POOL_MAX

logger = logging.getLogger(__name__)

# ── Connection pool ────────────────────────────────────────────────────────────

_pool: Optional[ThreadedConnectionPool] = None


class InsufficientCreditsError(Exception):
    """Raised inside a ledger transaction when the balance cannot cover a deduction."""

    def __init__(self, requested: int, balance: int):
        super().__init__(
            f"Insufficient credits: need {requested} page(s), have {balance}."
        )
        self.requested = requested
        self.balance = balance


def _get_pool() -> ThreadedConnectionPool:
    global _pool
    if _pool is None:
        raise RuntimeError("Database pool not initialised. Call init_db() first.")
    return _pool


@contextmanager
def _conn():
    """Context manager: borrow a connection from the pool, return it after use."""
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


# ── Schema bootstrap ───────────────────────────────────────────────────────────

def init_db() -> None:
    """
    Create connection pool and ensure schema exists.
    Called once at server startup from main.py lifespan.
    Safe to call on an already-initialised DB (uses CREATE TABLE IF NOT EXISTS).
    """
    global _pool
    _pool = ThreadedConnectionPool(minconn=1, maxconn=DB_POOL_MAX, dsn=DATABASE_URL)
    logger.info("Postgres connection pool created.")

    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS ledger_accounts (
                    user_id          TEXT PRIMARY KEY,
                    credits          INT         NOT NULL,
                    total_used_pages INT         NOT NULL DEFAULT 0,
                    updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS credit_transactions (
                    id            SERIAL PRIMARY KEY,
                    user_id       TEXT NOT NULL REFERENCES ledger_accounts(user_id),
                    kind          TEXT NOT NULL,
                    pages         INT  NOT NULL,
                    balance_after INT  NOT NULL,
                    job_ref       TEXT,
                    created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_credit_transactions_user
                ON credit_transactions(user_id)
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS scan_sessions (
                    session_id          TEXT PRIMARY KEY,
                    user_id             TEXT NOT NULL,
                    job_id              TEXT,
                    filename            TEXT,
                    status              TEXT NOT NULL DEFAULT 'running',
                    percentage          REAL NOT NULL DEFAULT 0,
                    message             TEXT,
                    cancelled           BOOL NOT NULL DEFAULT FALSE,
                    cancel_requested_at TIMESTAMPTZ,
                    created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS exports (
                    export_id  TEXT PRIMARY KEY,
                    filename   TEXT        NOT NULL,
                    row_count  INT         NOT NULL DEFAULT 0,
                    xlsx_bytes BYTEA       NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            # ── Sessions table (PostgreSQL-backed auth sessions) ──────────────
            cur.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    token      TEXT PRIMARY KEY,
                    expires_at TIMESTAMPTZ NOT NULL
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_sessions_expires
                ON sessions(expires_at)
            """)
    logger.info("Database schema verified.")


# ── Ledger ─────────────────────────────────────────────────────────────────────

def _ensure_account(cur, user_id: str, default_credits: int) -> None:
    cur.execute(
        """
        INSERT INTO ledger_accounts (user_id, credits)
        VALUES (%s, %s)
        ON CONFLICT (user_id) DO NOTHING
        """,
        (user_id, default_credits),
    )


def db_get_credits(user_id: str, default_credits: int) -> int:
    """Current balance; creates the account with default_credits on first use."""
    with _conn() as conn:
        with conn.cursor() as cur:
            _ensure_account(cur, user_id, default_credits)
            cur.execute(
                "SELECT credits FROM ledger_accounts WHERE user_id = %s",
                (user_id,),
            )
            return int(cur.fetchone()[0])


def db_deduct_credits(
    user_id: str,
    pages: int,
    default_credits: int,
    job_ref: Optional[str] = None,
) -> int:
    """
    Fetch, check and persist a deduction in one transaction.
    Returns the new balance. Raises InsufficientCreditsError.
    """
    with _conn() as conn:
        with conn.cursor() as cur:
            _ensure_account(cur, user_id, default_credits)
            cur.execute(
                "SELECT credits FROM ledger_accounts WHERE user_id = %s FOR UPDATE",
                (user_id,),
            )
            current = int(cur.fetchone()[0])
            if current < pages:
                raise InsufficientCreditsError(pages, current)

            new_balance = current - pages
            cur.execute(
                """
                UPDATE ledger_accounts SET
                    credits          = %s,
                    total_used_pages = total_used_pages + %s,
                    updated_at       = now()
                WHERE user_id = %s
                """,
                (new_balance, pages, user_id),
            )
            cur.execute(
                """
                INSERT INTO credit_transactions (user_id, kind, pages, balance_after, job_ref)
                VALUES (%s, 'deduct', %s, %s, %s)
                """,
                (user_id, pages, new_balance, job_ref),
            )
            return new_balance


def db_refund_credits(
    user_id: str,
    pages: int,
    default_credits: int,
    job_ref: Optional[str] = None,
) -> int:
    """Return pages to the balance. Returns the new balance."""
    with _conn() as conn:
        with conn.cursor() as cur:
            _ensure_account(cur, user_id, default_credits)
            cur.execute(
                """
                UPDATE ledger_accounts SET
                    credits          = credits + %s,
                    total_used_pages = GREATEST(total_used_pages - %s, 0),
                    updated_at       = now()
                WHERE user_id = %s
                RETURNING credits
                """,
                (pages, pages, user_id),
            )
            new_balance = int(cur.fetchone()[0])
            cur.execute(
                """
                INSERT INTO credit_transactions (user_id, kind, pages, balance_after, job_ref)
                VALUES (%s, 'refund', %s, %s, %s)
                """,
                (user_id, pages, new_balance, job_ref),
            )
            return new_balance


# ── Scan sessions (progress + cancel flag) ─────────────────────────────────────

def db_create_scan_session(
    session_id: str,
    user_id: str,
    job_id: Optional[str],
    filename: Optional[str],
) -> None:
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO scan_sessions (session_id, user_id, job_id, filename)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (session_id) DO NOTHING
                """,
                (session_id, user_id, job_id, filename),
            )


def db_update_scan_progress(
    session_id: str,
    status: str,
    percentage: float,
    message: Optional[str],
) -> None:
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE scan_sessions SET
                    status     = %s,
                    percentage = %s,
                    message    = %s,
                    updated_at = now()
                WHERE session_id = %s
                """,
                (status, percentage, message, session_id),
            )


def db_request_cancel(session_id: str) -> None:
    """Set the cancel flag the remote worker reads. Never cleared."""
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE scan_sessions SET
                    cancelled           = TRUE,
                    cancel_requested_at = COALESCE(cancel_requested_at, now()),
                    updated_at          = now()
                WHERE session_id = %s
                """,
                (session_id,),
            )


def db_get_scan_session(session_id: str) -> Optional[dict]:
    with _conn() as conn:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(
                """
                SELECT session_id, user_id, job_id, filename, status,
                       percentage, message, cancelled, cancel_requested_at
                FROM scan_sessions
                WHERE session_id = %s
                """,
                (session_id,),
            )
            row = cur.fetchone()
            return dict(row) if row else None


def db_cleanup_scan_sessions(max_age_hours: int = 24) -> int:
    """Delete scan sessions untouched for max_age_hours. Returns rows removed."""
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM scan_sessions WHERE updated_at < now() - make_interval(hours => %s)",
                (max_age_hours,),
            )
            return cur.rowcount


# ── Exports ────────────────────────────────────────────────────────────────────

def db_save_export(export_id: str, filename: str, row_count: int, xlsx_bytes: bytes) -> None:
    """Persist a generated workbook."""
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO exports (export_id, filename, row_count, xlsx_bytes)
                VALUES (%s, %s, %s, %s)
                """,
                (export_id, filename, row_count, psycopg2.Binary(xlsx_bytes)),
            )


def db_get_export(export_id: str) -> Optional[dict]:
    """Return {filename, row_count, xlsx_bytes} or None."""
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT filename, row_count, xlsx_bytes FROM exports WHERE export_id = %s",
                (export_id,),
            )
            row = cur.fetchone()
            if not row:
                return None
            return {
                "filename":   row[0],
                "row_count":  row[1],
                "xlsx_bytes": bytes(row[2]),
            }


# ── Session CRUD ───────────────────────────────────────────────────────────────

def db_create_session(token: str, expires_at: datetime) -> None:
    """Persist a new login session."""
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "INSERT INTO sessions (token, expires_at) VALUES (%s, %s)",
                (token, expires_at),
            )


def db_validate_session(token: str) -> bool:
    """Return True if the token exists and has not expired."""
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT 1 FROM sessions WHERE token = %s AND expires_at > now()",
                (token,),
            )
            return cur.fetchone() is not None


def db_delete_session(token: str) -> None:
    """Remove a session (logout)."""
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM sessions WHERE token = %s", (token,))


def db_cleanup_sessions() -> int:
    """Delete all expired sessions. Returns the number of rows removed."""
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM sessions WHERE expires_at <= now()")
            return cur.rowcount
