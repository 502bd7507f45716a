"""Database operations for papermind instances, documents and the processing queue."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

logger = logging.getLogger("papermind.db")

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


class QueueStatus:
    """Processing queue status values."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED)


def format_ts(dt: datetime | None) -> str | None:
    """Format a datetime as UTC text matching SQLite's datetime('now')."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class AiBot:
    id: int
    name: str
    model: str
    api_url: str
    api_key: str = ""
    system_prompt: str = ""


@dataclass
class Instance:
    id: int
    name: str
    api_url: str
    api_token: str
    owner_id: str = ""
    scan_cron_expression: str = "*/30 * * * *"
    auto_process_enabled: bool = False
    import_filter_tags: list[int] | None = None
    default_ai_bot_id: int | None = None
    auto_apply_title: bool = False
    auto_apply_correspondent: bool = False
    auto_apply_document_type: bool = False
    auto_apply_tags: bool = False
    auto_apply_date: bool = False
    last_scan_at: datetime | None = None
    next_scan_at: datetime | None = None


@dataclass
class Document:
    id: int
    instance_id: int
    remote_id: int
    title: str
    content: str
    correspondent_id: int | None
    tag_ids: list[int]
    document_date: str | None
    remote_modified: str | None


@dataclass
class QueueEntry:
    id: int
    instance_id: int
    remote_document_id: int
    document_id: int | None
    ai_bot_id: int | None
    status: str
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    last_error: str | None = None
    scheduled_for: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None


def init_db(db_path: Path) -> None:
    """Initialize database with schema."""
    schema_path = Path(__file__).parent / "schema.sql"
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        conn.executescript(schema_path.read_text())


@contextmanager
def get_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Get database connection with row factory."""
    # timeout=30.0 waits up to 30s for locks instead of failing immediately
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


# ============================================================================
# AI bots
# ============================================================================


def create_ai_bot(
    conn: sqlite3.Connection,
    name: str,
    model: str,
    api_url: str,
    api_key: str = "",
    system_prompt: str = "",
) -> int:
    """Create an AI bot and return its ID."""
    cursor = conn.execute(
        """
        INSERT INTO ai_bots (name, model, api_url, api_key, system_prompt)
        VALUES (?, ?, ?, ?, ?)
        RETURNING id
        """,
        (name, model, api_url, api_key, system_prompt),
    )
    return cursor.fetchone()[0]


def _row_to_ai_bot(row: sqlite3.Row) -> AiBot:
    return AiBot(
        id=row["id"],
        name=row["name"],
        model=row["model"],
        api_url=row["api_url"],
        api_key=row["api_key"],
        system_prompt=row["system_prompt"],
    )


def get_ai_bot(conn: sqlite3.Connection, bot_id: int) -> AiBot | None:
    cursor = conn.execute("SELECT * FROM ai_bots WHERE id = ?", (bot_id,))
    row = cursor.fetchone()
    return _row_to_ai_bot(row) if row else None


def list_ai_bots(conn: sqlite3.Connection) -> list[AiBot]:
    cursor = conn.execute("SELECT * FROM ai_bots ORDER BY id")
    return [_row_to_ai_bot(row) for row in cursor.fetchall()]


# ============================================================================
# Instances
# ============================================================================

_INSTANCE_UPDATABLE = {
    "name", "api_url", "api_token", "owner_id", "scan_cron_expression",
    "auto_process_enabled", "import_filter_tags", "default_ai_bot_id",
    "auto_apply_title", "auto_apply_correspondent", "auto_apply_document_type",
    "auto_apply_tags", "auto_apply_date", "last_scan_at", "next_scan_at",
}


def create_instance(
    conn: sqlite3.Connection,
    name: str,
    api_url: str,
    api_token: str,
    owner_id: str = "",
    scan_cron_expression: str = "*/30 * * * *",
    auto_process_enabled: bool = False,
    import_filter_tags: list[int] | None = None,
    default_ai_bot_id: int | None = None,
    auto_apply_title: bool = False,
    auto_apply_correspondent: bool = False,
    auto_apply_document_type: bool = False,
    auto_apply_tags: bool = False,
    auto_apply_date: bool = False,
) -> int:
    """Create a Paperless instance and return its ID."""
    cursor = conn.execute(
        """
        INSERT INTO instances (
            name, api_url, api_token, owner_id, scan_cron_expression,
            auto_process_enabled, import_filter_tags, default_ai_bot_id,
            auto_apply_title, auto_apply_correspondent, auto_apply_document_type,
            auto_apply_tags, auto_apply_date
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            name,
            api_url,
            api_token,
            owner_id,
            scan_cron_expression,
            1 if auto_process_enabled else 0,
            json.dumps(import_filter_tags or []),
            default_ai_bot_id,
            1 if auto_apply_title else 0,
            1 if auto_apply_correspondent else 0,
            1 if auto_apply_document_type else 0,
            1 if auto_apply_tags else 0,
            1 if auto_apply_date else 0,
        ),
    )
    instance_id = cursor.fetchone()[0]
    logger.debug("Created instance %d (%s)", instance_id, name)
    return instance_id


def _row_to_instance(row: sqlite3.Row) -> Instance:
    return Instance(
        id=row["id"],
        name=row["name"],
        api_url=row["api_url"],
        api_token=row["api_token"],
        owner_id=row["owner_id"],
        scan_cron_expression=row["scan_cron_expression"],
        auto_process_enabled=bool(row["auto_process_enabled"]),
        import_filter_tags=json.loads(row["import_filter_tags"]) if row["import_filter_tags"] else [],
        default_ai_bot_id=row["default_ai_bot_id"],
        auto_apply_title=bool(row["auto_apply_title"]),
        auto_apply_correspondent=bool(row["auto_apply_correspondent"]),
        auto_apply_document_type=bool(row["auto_apply_document_type"]),
        auto_apply_tags=bool(row["auto_apply_tags"]),
        auto_apply_date=bool(row["auto_apply_date"]),
        last_scan_at=parse_ts(row["last_scan_at"]),
        next_scan_at=parse_ts(row["next_scan_at"]),
    )


def get_instance(conn: sqlite3.Connection, instance_id: int) -> Instance | None:
    cursor = conn.execute("SELECT * FROM instances WHERE id = ?", (instance_id,))
    row = cursor.fetchone()
    return _row_to_instance(row) if row else None


def list_instances(conn: sqlite3.Connection) -> list[Instance]:
    cursor = conn.execute("SELECT * FROM instances ORDER BY id")
    return [_row_to_instance(row) for row in cursor.fetchall()]


def get_auto_process_instances(conn: sqlite3.Connection) -> list[Instance]:
    """Get all instances with auto-processing enabled."""
    cursor = conn.execute(
        "SELECT * FROM instances WHERE auto_process_enabled = 1 ORDER BY id"
    )
    return [_row_to_instance(row) for row in cursor.fetchall()]


def get_due_instances(conn: sqlite3.Connection, now: datetime) -> list[Instance]:
    """Get auto-processing instances that were never scanned or whose next scan has passed."""
    cursor = conn.execute(
        """
        SELECT * FROM instances
        WHERE auto_process_enabled = 1
        AND (next_scan_at IS NULL OR next_scan_at <= ?)
        ORDER BY id
        """,
        (format_ts(now),),
    )
    return [_row_to_instance(row) for row in cursor.fetchall()]


def update_instance_scan_times(
    conn: sqlite3.Connection,
    instance_id: int,
    last_scan_at: datetime,
    next_scan_at: datetime,
) -> None:
    conn.execute(
        "UPDATE instances SET last_scan_at = ?, next_scan_at = ? WHERE id = ?",
        (format_ts(last_scan_at), format_ts(next_scan_at), instance_id),
    )


def update_instance(conn: sqlite3.Connection, instance_id: int, **kwargs) -> None:
    """Update instance configuration fields. Unknown keys are ignored."""
    updates = {}
    for key, value in kwargs.items():
        if key not in _INSTANCE_UPDATABLE:
            continue
        if key == "import_filter_tags":
            value = json.dumps(value or [])
        elif key in ("last_scan_at", "next_scan_at"):
            value = format_ts(value)
        elif isinstance(value, bool):
            value = 1 if value else 0
        updates[key] = value
    if not updates:
        return

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    conn.execute(
        f"UPDATE instances SET {set_clause} WHERE id = ?",
        list(updates.values()) + [instance_id],
    )


# ============================================================================
# Documents
# ============================================================================


def upsert_document(
    conn: sqlite3.Connection,
    instance_id: int,
    remote_id: int,
    title: str,
    content: str,
    correspondent_id: int | None,
    tag_ids: list[int],
    document_date: str | None,
    remote_modified: str | None,
) -> int:
    """Create or update the local mirror of a remote document. Returns the local ID."""
    cursor = conn.execute(
        """
        INSERT INTO documents (
            instance_id, remote_id, title, content, correspondent_id,
            tag_ids, document_date, remote_modified
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (instance_id, remote_id) DO UPDATE SET
            title = excluded.title,
            content = excluded.content,
            correspondent_id = excluded.correspondent_id,
            tag_ids = excluded.tag_ids,
            document_date = excluded.document_date,
            remote_modified = excluded.remote_modified,
            updated_at = datetime('now')
        RETURNING id
        """,
        (
            instance_id,
            remote_id,
            title or "",
            content or "",
            correspondent_id,
            json.dumps(tag_ids or []),
            document_date,
            remote_modified,
        ),
    )
    return cursor.fetchone()[0]


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        instance_id=row["instance_id"],
        remote_id=row["remote_id"],
        title=row["title"],
        content=row["content"],
        correspondent_id=row["correspondent_id"],
        tag_ids=json.loads(row["tag_ids"]) if row["tag_ids"] else [],
        document_date=row["document_date"],
        remote_modified=row["remote_modified"],
    )


def get_document(conn: sqlite3.Connection, document_id: int) -> Document | None:
    cursor = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,))
    row = cursor.fetchone()
    return _row_to_document(row) if row else None


def get_document_by_remote_id(
    conn: sqlite3.Connection, instance_id: int, remote_id: int,
) -> Document | None:
    cursor = conn.execute(
        "SELECT * FROM documents WHERE instance_id = ? AND remote_id = ?",
        (instance_id, remote_id),
    )
    row = cursor.fetchone()
    return _row_to_document(row) if row else None


def update_document_fields(
    conn: sqlite3.Connection,
    document_id: int,
    title: str | None = None,
    correspondent_id: int | None = None,
    tag_ids: list[int] | None = None,
    document_date: str | None = None,
) -> None:
    """Update the given local document fields. None means leave unchanged."""
    updates: dict = {}
    if title is not None:
        updates["title"] = title
    if correspondent_id is not None:
        updates["correspondent_id"] = correspondent_id
    if tag_ids is not None:
        updates["tag_ids"] = json.dumps(tag_ids)
    if document_date is not None:
        updates["document_date"] = document_date
    if not updates:
        return

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    conn.execute(
        f"UPDATE documents SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        list(updates.values()) + [document_id],
    )


# ============================================================================
# Processing results
# ============================================================================


def create_processing_result(
    conn: sqlite3.Connection,
    document_id: int,
    ai_bot_id: int | None,
    result: dict,
    input_tokens: int = 0,
    output_tokens: int = 0,
    requested_by: str | None = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO processing_results (
            document_id, ai_bot_id, result_json, input_tokens, output_tokens, requested_by
        ) VALUES (?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (document_id, ai_bot_id, json.dumps(result), input_tokens, output_tokens, requested_by),
    )
    return cursor.fetchone()[0]


def get_latest_processing_result(conn: sqlite3.Connection, document_id: int) -> dict | None:
    cursor = conn.execute(
        """
        SELECT result_json FROM processing_results
        WHERE document_id = ?
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        (document_id,),
    )
    row = cursor.fetchone()
    return json.loads(row[0]) if row else None


def get_processed_remote_ids(conn: sqlite3.Connection, instance_id: int) -> set[int]:
    """Remote IDs of an instance's documents that have at least one stored analysis result."""
    cursor = conn.execute(
        """
        SELECT DISTINCT d.remote_id
        FROM documents d
        JOIN processing_results r ON r.document_id = d.id
        WHERE d.instance_id = ?
        """,
        (instance_id,),
    )
    return {row[0] for row in cursor.fetchall()}


# ============================================================================
# Processing queue
# ============================================================================


def _row_to_queue_entry(row: sqlite3.Row) -> QueueEntry:
    return QueueEntry(
        id=row["id"],
        instance_id=row["instance_id"],
        remote_document_id=row["remote_document_id"],
        document_id=row["document_id"],
        ai_bot_id=row["ai_bot_id"],
        status=row["status"],
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        last_error=row["last_error"],
        scheduled_for=parse_ts(row["scheduled_for"]),
        started_at=parse_ts(row["started_at"]),
        completed_at=parse_ts(row["completed_at"]),
        created_at=parse_ts(row["created_at"]),
    )


def create_queue_entry(
    conn: sqlite3.Connection,
    instance_id: int,
    remote_document_id: int,
    document_id: int | None,
    ai_bot_id: int | None,
    now: datetime,
    priority: int = 0,
    max_attempts: int = 3,
) -> int:
    """Insert a pending queue entry due immediately. Returns its ID."""
    ts = format_ts(now)
    cursor = conn.execute(
        """
        INSERT INTO processing_queue (
            instance_id, remote_document_id, document_id, ai_bot_id,
            status, priority, max_attempts, scheduled_for, created_at
        ) VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, ?)
        RETURNING id
        """,
        (instance_id, remote_document_id, document_id, ai_bot_id,
         priority, max_attempts, ts, ts),
    )
    return cursor.fetchone()[0]


def get_queued_remote_ids(conn: sqlite3.Connection, instance_id: int) -> set[int]:
    """Remote IDs present in the queue for an instance, in any status."""
    cursor = conn.execute(
        "SELECT remote_document_id FROM processing_queue WHERE instance_id = ?",
        (instance_id,),
    )
    return {row[0] for row in cursor.fetchall()}


def get_queue_entry(conn: sqlite3.Connection, entry_id: int) -> QueueEntry | None:
    cursor = conn.execute("SELECT * FROM processing_queue WHERE id = ?", (entry_id,))
    row = cursor.fetchone()
    return _row_to_queue_entry(row) if row else None


def list_queue_entries(
    conn: sqlite3.Connection,
    instance_id: int | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[QueueEntry]:
    query = "SELECT * FROM processing_queue WHERE 1=1"
    params: list = []
    if instance_id is not None:
        query += " AND instance_id = ?"
        params.append(instance_id)
    if status is not None:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, id DESC LIMIT ?"
    params.append(limit)
    cursor = conn.execute(query, params)
    return [_row_to_queue_entry(row) for row in cursor.fetchall()]


def mark_queue_entry_processing(
    conn: sqlite3.Connection, entry_id: int, now: datetime,
) -> QueueEntry | None:
    """Claim a pending entry for processing and return it.

    Returns None if the entry doesn't exist or is not pending.
    """
    cursor = conn.execute(
        """
        UPDATE processing_queue
        SET status = 'processing', started_at = ?
        WHERE id = ? AND status = 'pending'
        RETURNING *
        """,
        (format_ts(now), entry_id),
    )
    row = cursor.fetchone()
    return _row_to_queue_entry(row) if row else None


def set_queue_entry_completed(conn: sqlite3.Connection, entry_id: int, now: datetime) -> None:
    conn.execute(
        """
        UPDATE processing_queue
        SET status = 'completed', completed_at = ?, last_error = NULL
        WHERE id = ?
        """,
        (format_ts(now), entry_id),
    )


def set_queue_entry_failed(
    conn: sqlite3.Connection,
    entry_id: int,
    error: str,
    now: datetime,
    attempts: int | None = None,
) -> None:
    """Terminally fail an entry. attempts=None leaves the attempt count unchanged."""
    if attempts is None:
        conn.execute(
            """
            UPDATE processing_queue
            SET status = 'failed', last_error = ?, completed_at = ?
            WHERE id = ?
            """,
            (error, format_ts(now), entry_id),
        )
    else:
        conn.execute(
            """
            UPDATE processing_queue
            SET status = 'failed', attempts = ?, last_error = ?, completed_at = ?
            WHERE id = ?
            """,
            (attempts, error, format_ts(now), entry_id),
        )


def set_queue_entry_pending_retry(
    conn: sqlite3.Connection,
    entry_id: int,
    attempts: int,
    error: str,
    scheduled_for: datetime,
) -> None:
    """Put an entry back to pending for a later retry."""
    conn.execute(
        """
        UPDATE processing_queue
        SET status = 'pending',
            attempts = ?,
            last_error = ?,
            scheduled_for = ?,
            started_at = NULL
        WHERE id = ?
        """,
        (attempts, error, format_ts(scheduled_for), entry_id),
    )


def get_next_pending_entry_id(conn: sqlite3.Connection, now: datetime) -> int | None:
    """ID of the highest-priority, oldest pending entry that is due, or None."""
    cursor = conn.execute(
        """
        SELECT id FROM processing_queue
        WHERE status = 'pending' AND scheduled_for <= ?
        ORDER BY priority DESC, created_at ASC, id ASC
        LIMIT 1
        """,
        (format_ts(now),),
    )
    row = cursor.fetchone()
    return row[0] if row else None


def reset_stuck_entries(conn: sqlite3.Connection, started_before: datetime) -> int:
    """Reset processing entries started before the cutoff to pending. Returns count reset."""
    cursor = conn.execute(
        """
        UPDATE processing_queue
        SET status = 'pending', started_at = NULL
        WHERE status = 'processing'
        AND started_at < ?
        """,
        (format_ts(started_before),),
    )
    return cursor.rowcount


def count_queue_entries(
    conn: sqlite3.Connection, status: str, instance_id: int | None = None,
) -> int:
    if instance_id is None:
        cursor = conn.execute(
            "SELECT COUNT(*) FROM processing_queue WHERE status = ?",
            (status,),
        )
    else:
        cursor = conn.execute(
            "SELECT COUNT(*) FROM processing_queue WHERE status = ? AND instance_id = ?",
            (status, instance_id),
        )
    return cursor.fetchone()[0]


def retry_failed_entries(
    conn: sqlite3.Connection,
    instance_id: int,
    now: datetime,
    entry_id: int | None = None,
) -> int:
    """Reset failed entries of an instance (or one entry) to a fresh pending state."""
    query = """
        UPDATE processing_queue
        SET status = 'pending', attempts = 0, last_error = NULL,
            scheduled_for = ?, started_at = NULL, completed_at = NULL
        WHERE instance_id = ? AND status = 'failed'
    """
    params: list = [format_ts(now), instance_id]
    if entry_id is not None:
        query += " AND id = ?"
        params.append(entry_id)
    cursor = conn.execute(query, params)
    return cursor.rowcount
