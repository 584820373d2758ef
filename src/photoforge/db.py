import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from photoforge.dates import to_iso, utcnow


def _now() -> str:
    return to_iso(utcnow())


def _has_col(conn: sqlite3.Connection, table: str, col: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == col for r in rows)


class Database:
    """Handle on the SQLite file shared by every service.

    Each call opens its own connection, so a Database can be used from several
    threads at once. Writers go through `transaction()`, which takes SQLite's
    write lock up front (BEGIN IMMEDIATE); concurrent writers wait on the busy
    timeout instead of interleaving their read-modify-write steps.
    """

    def __init__(self, path: str, busy_timeout_sec: float = 30.0) -> None:
        self.path = path
        self.busy_timeout_sec = busy_timeout_sec

    def connect(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout_sec, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()


def init_db(database: Database) -> None:
    with database.transaction() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS accounts (
              account_id TEXT PRIMARY KEY,
              tier TEXT NOT NULL,
              credits_balance INTEGER NOT NULL DEFAULT 0 CHECK (credits_balance >= 0),
              monthly_credits INTEGER NOT NULL DEFAULT 0,
              rollover_cap INTEGER NOT NULL DEFAULT 0,
              credits_used_this_month INTEGER NOT NULL DEFAULT 0 CHECK (credits_used_this_month >= 0),
              last_credit_reset TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credit_transactions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              account_id TEXT NOT NULL,
              amount INTEGER NOT NULL,
              kind TEXT NOT NULL,
              job_id TEXT,
              external_ref TEXT,
              description TEXT NOT NULL DEFAULT '',
              idempotency_key TEXT UNIQUE,
              created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_credit_transactions_account ON credit_transactions (account_id, id)"
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              job_id TEXT PRIMARY KEY,
              account_id TEXT NOT NULL,
              status TEXT NOT NULL,
              credits_reserved INTEGER NOT NULL DEFAULT 0,
              credits_consumed INTEGER NOT NULL DEFAULT 0,
              image_count INTEGER NOT NULL DEFAULT 0,
              input_image_refs TEXT NOT NULL DEFAULT '[]',
              background_prompt TEXT NOT NULL,
              progress INTEGER NOT NULL DEFAULT 0,
              error TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )

        if not _has_col(conn, "jobs", "progress"):
            conn.execute("ALTER TABLE jobs ADD COLUMN progress INTEGER NOT NULL DEFAULT 0")
        if not _has_col(conn, "jobs", "credits_consumed"):
            conn.execute("ALTER TABLE jobs ADD COLUMN credits_consumed INTEGER NOT NULL DEFAULT 0")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS job_queue (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              job_id TEXT NOT NULL UNIQUE,
              account_id TEXT NOT NULL,
              payload TEXT NOT NULL,
              status TEXT NOT NULL DEFAULT 'waiting',
              enqueued_at TEXT NOT NULL
            )
            """
        )


# accounts


def insert_account(
    conn: sqlite3.Connection,
    account_id: str,
    tier: str,
    monthly_credits: int,
    rollover_cap: int,
    last_credit_reset: str,
) -> None:
    ts = _now()
    conn.execute(
        """
        INSERT INTO accounts (
          account_id, tier, monthly_credits, rollover_cap, last_credit_reset, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (account_id, tier, monthly_credits, rollover_cap, last_credit_reset, ts, ts),
    )


def get_account(conn: sqlite3.Connection, account_id: str) -> dict | None:
    row = conn.execute("SELECT * FROM accounts WHERE account_id=?", (account_id,)).fetchone()
    return dict(row) if row else None


def update_account(conn: sqlite3.Connection, account_id: str, **fields: Any) -> None:
    assignments = [f"{name} = ?" for name in fields]
    values: list[Any] = list(fields.values())
    assignments.append("updated_at = ?")
    values.append(_now())
    values.append(account_id)
    conn.execute(f"UPDATE accounts SET {', '.join(assignments)} WHERE account_id = ?", tuple(values))


def debit_if_covered(conn: sqlite3.Connection, account_id: str, amount: int) -> bool:
    cur = conn.execute(
        """
        UPDATE accounts
        SET credits_balance = credits_balance - ?,
            credits_used_this_month = credits_used_this_month + ?,
            updated_at = ?
        WHERE account_id = ? AND credits_balance >= ?
        """,
        (amount, amount, _now(), account_id, amount),
    )
    return cur.rowcount == 1


def list_reset_candidates(conn: sqlite3.Connection, reset_before: str, excluded_tier: str) -> list[dict]:
    rows = conn.execute(
        """
        SELECT account_id, last_credit_reset FROM accounts
        WHERE last_credit_reset <= ? AND tier != ?
        ORDER BY account_id
        """,
        (reset_before, excluded_tier),
    ).fetchall()
    return [dict(r) for r in rows]


# credit transactions


def add_transaction(
    conn: sqlite3.Connection,
    account_id: str,
    amount: int,
    kind: str,
    description: str,
    job_id: str | None = None,
    external_ref: str | None = None,
    idempotency_key: str | None = None,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO credit_transactions (
          account_id, amount, kind, job_id, external_ref, description, idempotency_key, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (account_id, amount, kind, job_id, external_ref, description, idempotency_key, _now()),
    )
    return int(cur.lastrowid)


def get_transaction_by_key(conn: sqlite3.Connection, idempotency_key: str) -> dict | None:
    row = conn.execute(
        "SELECT * FROM credit_transactions WHERE idempotency_key=?",
        (idempotency_key,),
    ).fetchone()
    return dict(row) if row else None


def list_transactions(
    conn: sqlite3.Connection,
    account_id: str,
    limit: int | None = None,
    job_id: str | None = None,
) -> list[dict]:
    sql = "SELECT * FROM credit_transactions WHERE account_id=?"
    values: list[Any] = [account_id]
    if job_id is not None:
        sql += " AND job_id=?"
        values.append(job_id)
    sql += " ORDER BY id DESC"
    if limit is not None:
        sql += " LIMIT ?"
        values.append(limit)
    rows = conn.execute(sql, tuple(values)).fetchall()
    return [dict(r) for r in rows]


def sum_transactions(conn: sqlite3.Connection, account_id: str) -> int:
    row = conn.execute(
        "SELECT COALESCE(SUM(amount), 0) total FROM credit_transactions WHERE account_id=?",
        (account_id,),
    ).fetchone()
    return int(row["total"])


# jobs


def _job_row(row: sqlite3.Row | None) -> dict | None:
    if not row:
        return None
    job = dict(row)
    job["input_image_refs"] = json.loads(job["input_image_refs"] or "[]")
    return job


def create_job(
    conn: sqlite3.Connection,
    job_id: str,
    account_id: str,
    credits_reserved: int,
    image_refs: list[str],
    background_prompt: str,
) -> None:
    ts = _now()
    conn.execute(
        """
        INSERT INTO jobs (
          job_id, account_id, status, credits_reserved, credits_consumed, image_count,
          input_image_refs, background_prompt, progress, created_at, updated_at
        )
        VALUES (?, ?, 'pending', ?, 0, ?, ?, ?, 0, ?, ?)
        """,
        (
            job_id,
            account_id,
            credits_reserved,
            len(image_refs),
            json.dumps(image_refs),
            background_prompt,
            ts,
            ts,
        ),
    )


def update_job_status(
    conn: sqlite3.Connection,
    job_id: str,
    status: str,
    error: str | None = None,
    progress: int | None = None,
    credits_consumed: int | None = None,
) -> None:
    fields = ["status = ?", "updated_at = ?"]
    values: list[Any] = [status, _now()]

    if error is not None:
        fields.append("error = ?")
        values.append(error)
    if progress is not None:
        fields.append("progress = ?")
        values.append(progress)
    if credits_consumed is not None:
        fields.append("credits_consumed = ?")
        values.append(credits_consumed)

    values.append(job_id)
    conn.execute(f"UPDATE jobs SET {', '.join(fields)} WHERE job_id = ?", tuple(values))


def get_job(conn: sqlite3.Connection, job_id: str) -> dict | None:
    row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
    return _job_row(row)


# queue outbox


def enqueue_job(conn: sqlite3.Connection, job_id: str, account_id: str, payload: dict) -> None:
    conn.execute(
        """
        INSERT INTO job_queue (job_id, account_id, payload, enqueued_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(job_id) DO NOTHING
        """,
        (job_id, account_id, json.dumps(payload), _now()),
    )


def list_queued_jobs(conn: sqlite3.Connection, limit: int = 100) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM job_queue WHERE status='waiting' ORDER BY id LIMIT ?",
        (limit,),
    ).fetchall()
    return [{**dict(r), "payload": json.loads(r["payload"])} for r in rows]
