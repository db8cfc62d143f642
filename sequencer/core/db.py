"""SQLite database operations."""

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Optional
from uuid import uuid4

from sequencer.outreach.models import (
    ACTIVE,
    COMPLETED,
    PENDING,
    Enrollment,
    Sequence,
    Step,
    StepLog,
)

DEFAULT_DB_PATH = Path("data/outreach.db")


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Get a database connection with row factory."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def to_iso(value: datetime) -> str:
    """Render a timestamp as fixed-width UTC ISO-8601 so string order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def init_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize database with schema."""
    conn = get_connection(db_path)

    conn.executescript("""
        CREATE TABLE IF NOT EXISTS outreach_sequences (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            steps_json TEXT NOT NULL,
            created_by TEXT,
            created_at TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS outreach_enrollments (
            id TEXT PRIMARY KEY,
            sequence_id TEXT NOT NULL REFERENCES outreach_sequences(id),
            contact_id TEXT NOT NULL,
            company_domain TEXT NOT NULL,
            enrolled_by TEXT NOT NULL,

            -- Sequence state
            current_step INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'active',
            next_step_due_at TIMESTAMP,

            created_at TIMESTAMP,
            updated_at TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS outreach_step_logs (
            id TEXT PRIMARY KEY,
            enrollment_id TEXT NOT NULL REFERENCES outreach_enrollments(id),
            step_index INTEGER NOT NULL,
            channel TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            completed_at TIMESTAMP,
            outcome TEXT,
            notes TEXT,
            draft_content TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_enrollments_status_due
            ON outreach_enrollments(status, next_step_due_at);
        CREATE INDEX IF NOT EXISTS idx_enrollments_contact
            ON outreach_enrollments(sequence_id, contact_id);
        CREATE INDEX IF NOT EXISTS idx_step_logs_enrollment
            ON outreach_step_logs(enrollment_id, step_index);

        -- At most one pending step per enrollment
        CREATE UNIQUE INDEX IF NOT EXISTS idx_step_logs_one_pending
            ON outreach_step_logs(enrollment_id) WHERE status = 'pending';

        CREATE TABLE IF NOT EXISTS snapshot_cache (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            expires_at TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS user_config (
            user_name TEXT PRIMARY KEY,
            freshsales_domain TEXT
        );
    """)

    conn.commit()
    conn.close()


# ---------------------------------------------------------------------------
# Sequences
# ---------------------------------------------------------------------------


def insert_sequence(
    db_path: Path,
    name: str,
    steps: list[Step],
    description: str = "",
    created_by: Optional[str] = None,
) -> str:
    """Insert a sequence. Returns the new sequence id."""
    sequence_id = str(uuid4())
    steps_json = json.dumps([s.to_dict() for s in steps])

    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO outreach_sequences (id, name, description, steps_json, created_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (sequence_id, name, description, steps_json, created_by, to_iso(utc_now()))
        )
        conn.commit()
        return sequence_id
    finally:
        conn.close()


def get_sequence(db_path: Path, sequence_id: str) -> Optional[Sequence]:
    """Get a sequence by ID."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM outreach_sequences WHERE id = ?", (sequence_id,)
        ).fetchone()
        return Sequence.from_row(row) if row else None
    finally:
        conn.close()


def get_sequences_by_ids(db_path: Path, sequence_ids: Iterable[str]) -> dict[str, Sequence]:
    """Batch-fetch sequences keyed by id."""
    ids = list(set(sequence_ids))
    if not ids:
        return {}

    placeholders = ",".join("?" for _ in ids)
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            f"SELECT * FROM outreach_sequences WHERE id IN ({placeholders})", ids
        ).fetchall()
        return {row["id"]: Sequence.from_row(row) for row in rows}
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Enrollments
# ---------------------------------------------------------------------------


def insert_enrollment(
    db_path: Path,
    sequence_id: str,
    contact_id: str,
    company_domain: str,
    enrolled_by: str,
    first_step: Step,
    now: Optional[datetime] = None,
) -> Enrollment:
    """Insert an enrollment at step 0 together with its pending step log."""
    now = now or utc_now()
    enrollment_id = str(uuid4())
    now_iso = to_iso(now)
    due_iso = to_iso(now + timedelta(days=first_step.delay_days))

    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO outreach_enrollments
            (id, sequence_id, contact_id, company_domain, enrolled_by,
             current_step, status, next_step_due_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
            """,
            (enrollment_id, sequence_id, contact_id, company_domain, enrolled_by,
             ACTIVE, due_iso, now_iso, now_iso)
        )
        conn.execute(
            """
            INSERT INTO outreach_step_logs (id, enrollment_id, step_index, channel, status)
            VALUES (?, ?, 0, ?, ?)
            """,
            (str(uuid4()), enrollment_id, first_step.channel, PENDING)
        )
        conn.commit()
    finally:
        conn.close()

    return get_enrollment(db_path, enrollment_id)


def get_enrollment(db_path: Path, enrollment_id: str) -> Optional[Enrollment]:
    """Get an enrollment by ID."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM outreach_enrollments WHERE id = ?", (enrollment_id,)
        ).fetchone()
        return Enrollment.from_row(row) if row else None
    finally:
        conn.close()


def find_enrollments_for_contacts(
    db_path: Path,
    sequence_id: str,
    contact_ids: list[str],
    statuses: Iterable[str],
) -> list[Enrollment]:
    """Find enrollments of the given contacts in a sequence, filtered by status."""
    statuses = list(statuses)
    if not contact_ids or not statuses:
        return []

    contact_marks = ",".join("?" for _ in contact_ids)
    status_marks = ",".join("?" for _ in statuses)
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            f"""
            SELECT * FROM outreach_enrollments
            WHERE sequence_id = ?
            AND contact_id IN ({contact_marks})
            AND status IN ({status_marks})
            """,
            (sequence_id, *contact_ids, *statuses)
        ).fetchall()
        return [Enrollment.from_row(row) for row in rows]
    finally:
        conn.close()


def list_enrollments(
    db_path: Path,
    contact_id: Optional[str] = None,
    status: Optional[str] = None,
    due_by: Optional[datetime] = None,
    limit: int = 100,
) -> list[Enrollment]:
    """List enrollments, newest first."""
    clauses = []
    params: list[Any] = []

    if contact_id:
        clauses.append("contact_id = ?")
        params.append(contact_id)
    if status:
        clauses.append("status = ?")
        params.append(status)
    if due_by:
        clauses.append("status = ? AND next_step_due_at <= ?")
        params.extend([ACTIVE, to_iso(due_by)])

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)

    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            f"SELECT * FROM outreach_enrollments {where} ORDER BY created_at DESC LIMIT ?",
            params
        ).fetchall()
        return [Enrollment.from_row(row) for row in rows]
    finally:
        conn.close()


def get_due_enrollments(db_path: Path, now: datetime, limit: int = 50) -> list[Enrollment]:
    """Get active enrollments whose next step is due, oldest due first."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            """
            SELECT * FROM outreach_enrollments
            WHERE status = ?
            AND next_step_due_at IS NOT NULL
            AND next_step_due_at <= ?
            ORDER BY next_step_due_at ASC
            LIMIT ?
            """,
            (ACTIVE, to_iso(now), limit)
        ).fetchall()
        return [Enrollment.from_row(row) for row in rows]
    finally:
        conn.close()


def update_enrollment_status(
    db_path: Path,
    enrollment_id: str,
    from_status: str,
    to_status: str,
    clear_due: bool = False,
) -> bool:
    """Move an enrollment between statuses if it is still in from_status.

    Returns False when a concurrent call changed the status first.
    """
    sql = "UPDATE outreach_enrollments SET status = ?, updated_at = ?"
    if clear_due:
        sql += ", next_step_due_at = NULL"
    sql += " WHERE id = ? AND status = ?"

    conn = get_connection(db_path)
    try:
        cursor = conn.execute(sql, (to_status, to_iso(utc_now()), enrollment_id, from_status))
        conn.commit()
        return cursor.rowcount == 1
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Step logs
# ---------------------------------------------------------------------------


def get_step_logs(db_path: Path, enrollment_id: str) -> list[StepLog]:
    """Get all step logs of an enrollment ordered by step index."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            """
            SELECT * FROM outreach_step_logs
            WHERE enrollment_id = ?
            ORDER BY step_index ASC, completed_at ASC
            """,
            (enrollment_id,)
        ).fetchall()
        return [StepLog.from_row(row) for row in rows]
    finally:
        conn.close()


def complete_step_and_advance(
    db_path: Path,
    enrollment_id: str,
    step_index: int,
    steps: list[Step],
    outcome: Optional[str] = None,
    notes: Optional[str] = None,
    draft_content: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Complete the pending log at step_index and move the enrollment forward.

    Runs in a single write transaction. The log update only matches a pending
    row, so a step can be completed once; the enrollment update only matches an
    active enrollment still at step_index. If either matches nothing the
    transaction is rolled back and False is returned.
    """
    now = now or utc_now()
    now_iso = to_iso(now)
    next_index = step_index + 1

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")

        cursor = conn.execute(
            """
            UPDATE outreach_step_logs
            SET status = ?, completed_at = ?, outcome = ?, notes = ?, draft_content = ?
            WHERE enrollment_id = ? AND step_index = ? AND status = ?
            """,
            (COMPLETED, now_iso, outcome, notes, draft_content,
             enrollment_id, step_index, PENDING)
        )
        if cursor.rowcount == 0:
            conn.rollback()
            return False

        if next_index >= len(steps):
            cursor = conn.execute(
                """
                UPDATE outreach_enrollments
                SET current_step = ?, status = ?, next_step_due_at = NULL, updated_at = ?
                WHERE id = ? AND status = ? AND current_step = ?
                """,
                (next_index, COMPLETED, now_iso, enrollment_id, ACTIVE, step_index)
            )
        else:
            next_step = steps[next_index]
            due_iso = to_iso(now + timedelta(days=next_step.delay_days))
            conn.execute(
                """
                INSERT INTO outreach_step_logs (id, enrollment_id, step_index, channel, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                (str(uuid4()), enrollment_id, next_index, next_step.channel, PENDING)
            )
            cursor = conn.execute(
                """
                UPDATE outreach_enrollments
                SET current_step = ?, next_step_due_at = ?, updated_at = ?
                WHERE id = ? AND status = ? AND current_step = ?
                """,
                (next_index, due_iso, now_iso, enrollment_id, ACTIVE, step_index)
            )

        if cursor.rowcount == 0:
            conn.rollback()
            return False

        conn.commit()
        return True
    except sqlite3.Error:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Snapshot cache and user config
# ---------------------------------------------------------------------------


def cache_get(db_path: Path, key: str) -> Optional[Any]:
    """Get a cached JSON value, or None if missing or expired."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT value, expires_at FROM snapshot_cache WHERE key = ?", (key,)
        ).fetchone()
    finally:
        conn.close()

    if not row:
        return None
    if row["expires_at"] and row["expires_at"] <= to_iso(utc_now()):
        return None
    return json.loads(row["value"])


def cache_set(db_path: Path, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
    """Store a JSON value in the snapshot cache."""
    expires_at = to_iso(utc_now() + timedelta(seconds=ttl_seconds)) if ttl_seconds else None

    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO snapshot_cache (key, value, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
            """,
            (key, json.dumps(value), expires_at)
        )
        conn.commit()
    finally:
        conn.close()


def get_user_crm_domain(db_path: Path, user_name: str) -> Optional[str]:
    """Get the Freshsales domain configured for a user."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT freshsales_domain FROM user_config WHERE user_name = ?", (user_name,)
        ).fetchone()
        return row["freshsales_domain"] if row and row["freshsales_domain"] else None
    finally:
        conn.close()


def set_user_crm_domain(db_path: Path, user_name: str, domain: Optional[str]) -> None:
    """Set (or clear) the Freshsales domain for a user."""
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO user_config (user_name, freshsales_domain) VALUES (?, ?)
            ON CONFLICT(user_name) DO UPDATE SET freshsales_domain = excluded.freshsales_domain
            """,
            (user_name, domain)
        )
        conn.commit()
    finally:
        conn.close()


def get_enrollment_stats(db_path: Path, now: Optional[datetime] = None) -> dict:
    """Get pipeline statistics."""
    now = now or utc_now()
    conn = get_connection(db_path)
    try:
        stats = {}

        # Count by status
        cursor = conn.execute(
            "SELECT status, COUNT(*) as count FROM outreach_enrollments GROUP BY status"
        )
        for row in cursor.fetchall():
            stats[row["status"]] = row["count"]

        # Count due now
        cursor = conn.execute(
            """
            SELECT COUNT(*) FROM outreach_enrollments
            WHERE status = ? AND next_step_due_at <= ?
            """,
            (ACTIVE, to_iso(now))
        )
        stats["due_now"] = cursor.fetchone()[0]

        return stats
    finally:
        conn.close()
