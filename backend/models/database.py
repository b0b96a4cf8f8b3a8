"""SQLite-based persistence for the cost ledger and session history.

This module provides the SessionStore class backed by aiosqlite. All session
history operations are async and designed to fail gracefully -- a database
error should never crash a running session.

Tables:
    cost_records: Append-only ledger of CostRecord entries, one per
        completed session. Rows are never updated or deleted.
    session_history: Recent session summaries (newest first, capped).

Usage:
    >>> from models.database import SessionStore
    >>> store = SessionStore("./data/conductor.db")
    >>> await store.init()
    >>> await store.append_cost_record(record)
    >>> records = await store.read_cost_records()
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import CostRecord

logger = structlog.get_logger(__name__)


class SessionStore:
    """Async SQLite store for the cost ledger and session history.

    The cost ledger only supports append and read-all. Readers may aggregate
    it at any time since entries never change after append. History methods
    catch exceptions internally and log errors rather than propagating them.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    MAX_SESSION_HISTORY = 50

    def __init__(self, db_path: str) -> None:
        """Initialize the store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS cost_records (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        session_id TEXT NOT NULL,
                        model TEXT NOT NULL,
                        input_tokens INTEGER NOT NULL DEFAULT 0,
                        output_tokens INTEGER NOT NULL DEFAULT 0,
                        total_tokens INTEGER NOT NULL DEFAULT 0,
                        input_cost REAL NOT NULL DEFAULT 0,
                        output_cost REAL NOT NULL DEFAULT 0,
                        total_cost REAL NOT NULL DEFAULT 0,
                        timestamp REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS session_history (
                        id TEXT PRIMARY KEY,
                        project_name TEXT,
                        status TEXT NOT NULL,
                        bridge TEXT NOT NULL,
                        summary TEXT,
                        started_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_session_history_started_at
                    ON session_history(started_at DESC)
                """)
                await db.commit()
            logger.info("session_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error("session_store_init_failed", db_path=self.db_path, error=str(e))
            raise

    # -----------------------------------------------------------------
    # Cost ledger
    # -----------------------------------------------------------------

    async def append_cost_record(self, record: CostRecord) -> None:
        """Append one CostRecord to the ledger."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO cost_records
                    (session_id, model, input_tokens, output_tokens, total_tokens,
                     input_cost, output_cost, total_cost, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.session_id,
                    record.model,
                    record.input_tokens,
                    record.output_tokens,
                    record.total_tokens,
                    record.input_cost,
                    record.output_cost,
                    record.total_cost,
                    record.timestamp,
                ),
            )
            await db.commit()
        logger.debug(
            "cost_record_appended",
            session_id=record.session_id,
            total_cost=record.total_cost,
        )

    async def read_cost_records(self) -> list[CostRecord]:
        """Return the whole ledger in append order."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM cost_records ORDER BY seq ASC")
            rows = await cursor.fetchall()
        return [
            CostRecord(
                session_id=row["session_id"],
                model=row["model"],
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                total_tokens=row["total_tokens"],
                input_cost=row["input_cost"],
                output_cost=row["output_cost"],
                total_cost=row["total_cost"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    # -----------------------------------------------------------------
    # Session history
    # -----------------------------------------------------------------

    async def save_session(
        self,
        session_id: str,
        status: str,
        bridge: str,
        project_name: str | None = None,
        summary: dict[str, Any] | None = None,
        started_at: float | None = None,
    ) -> None:
        """Insert or update a session summary, keeping only the newest entries.

        Args:
            session_id: Unique session identifier.
            status: Current status string.
            bridge: Transport variant that ran the session.
            project_name: Optional project name.
            summary: Optional summary dict (stored as JSON).
            started_at: Unix timestamp when the session started (defaults to now).
        """
        now = time.time()
        summary_json = json.dumps(summary) if summary else None

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO session_history
                        (id, project_name, status, bridge, summary, started_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        summary = COALESCE(excluded.summary, session_history.summary),
                        updated_at = excluded.updated_at
                    """,
                    (
                        session_id,
                        project_name,
                        status,
                        bridge,
                        summary_json,
                        started_at or now,
                        now,
                    ),
                )
                await db.execute(
                    """
                    DELETE FROM session_history WHERE id NOT IN (
                        SELECT id FROM session_history
                        ORDER BY started_at DESC LIMIT ?
                    )
                    """,
                    (self.MAX_SESSION_HISTORY,),
                )
                await db.commit()
            logger.debug("session_saved", session_id=session_id, status=status)
        except Exception as e:
            logger.error("session_save_failed", session_id=session_id, error=str(e))

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        """Retrieve a single session summary, or None if not found."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM session_history WHERE id = ?",
                    (session_id,),
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                return _row_to_session(row)
        except Exception as e:
            logger.error("session_get_failed", session_id=session_id, error=str(e))
            return None

    async def list_sessions(self, limit: int = MAX_SESSION_HISTORY) -> list[dict[str, Any]]:
        """List recent sessions, newest first."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM session_history ORDER BY started_at DESC LIMIT ?",
                    (limit,),
                )
                rows = await cursor.fetchall()
                return [_row_to_session(row) for row in rows]
        except Exception as e:
            logger.error("session_list_failed", error=str(e))
            return []

    async def remove_session(self, session_id: str) -> bool:
        """Remove one session summary. Returns True if a row was deleted."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "DELETE FROM session_history WHERE id = ?", (session_id,)
                )
                await db.commit()
                return cursor.rowcount > 0
        except Exception as e:
            logger.error("session_remove_failed", session_id=session_id, error=str(e))
            return False

    async def clear_sessions(self) -> int:
        """Delete all session summaries. The cost ledger is left untouched."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("DELETE FROM session_history")
                await db.commit()
                deleted_count = cursor.rowcount
            logger.info("session_history_cleared", deleted_count=deleted_count)
            return deleted_count
        except Exception as e:
            logger.error("session_history_clear_failed", error=str(e))
            return 0


def _row_to_session(row: aiosqlite.Row) -> dict[str, Any]:
    session = dict(row)
    if session.get("summary"):
        try:
            session["summary"] = json.loads(session["summary"])
        except json.JSONDecodeError:
            session["summary"] = None
    return session
