"""Record store operations for the document generation queue."""
import json
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from docgen import settings
from docgen.errors import LinkError
from docgen.logging_conf import logger
from docgen.queue.models import DocgenRequest, FileRef, ItemStatus, QueuedItem, StatusUpdate

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS docgen_queue (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'QUEUED',
    request_json TEXT NOT NULL,
    request_hash TEXT UNIQUE,
    correlation_id TEXT,
    priority INTEGER,
    attempts INTEGER NOT NULL DEFAULT 0,
    locked_until TIMESTAMPTZ,
    scheduled_retry_at TIMESTAMPTZ,
    error TEXT,
    output_file_id TEXT,
    merged_docx_file_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS docgen_queue_eligible_idx
    ON docgen_queue (status, locked_until);
CREATE TABLE IF NOT EXISTS docgen_output_links (
    item_id TEXT NOT NULL REFERENCES docgen_queue(id),
    file_id TEXT NOT NULL,
    parent_type TEXT NOT NULL,
    parent_id TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (item_id, parent_type, parent_id)
);
"""


class Database:
    """Postgres-backed queue store.

    A single connection is shared; calls arrive from worker threads via
    ``asyncio.to_thread`` so every cursor is taken under a lock.
    """

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or settings.DATABASE_URL
        self._conn = None
        self._lock = threading.RLock()

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(self.dsn)
        return self._conn

    def close(self):
        with self._lock:
            if self._conn and not self._conn.closed:
                self._conn.close()
                self._conn = None

    @contextmanager
    def cursor(self):
        """Context manager for cursor with auto-commit/rollback."""
        with self._lock:
            conn = self.conn
            cur = conn.cursor(cursor_factory=RealDictCursor)
            try:
                yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()

    def ensure_schema(self) -> None:
        with self.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("Queue schema ready")

    def enqueue(self, request: DocgenRequest, correlation_id: Optional[str] = None, priority: Optional[int] = None) -> str:
        """Insert a QUEUED item, deduplicated on the request fingerprint.

        Returns the id of the new row, or of the existing row when the
        fingerprint was already queued.
        """
        item_id = str(uuid.uuid4())
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO docgen_queue (id, status, request_json, request_hash, correlation_id, priority)
                VALUES (%s, 'QUEUED', %s, %s, %s, %s)
                ON CONFLICT (request_hash) DO NOTHING
                RETURNING id
            """, (item_id, json.dumps(request.to_payload()), request.request_hash, correlation_id, priority))
            row = cur.fetchone()
            if row is not None:
                return row["id"]

            cur.execute("SELECT id FROM docgen_queue WHERE request_hash = %s", (request.request_hash,))
            existing = cur.fetchone()["id"]
        logger.info(f"Duplicate request {request.request_hash}, reusing item {existing}")
        return existing

    def fetch_eligible(self, limit: int) -> List[QueuedItem]:
        """Fetch QUEUED items whose lock is unset or lapsed."""
        with self.cursor() as cur:
            cur.execute("""
                SELECT *
                FROM docgen_queue
                WHERE status = 'QUEUED'
                  AND (locked_until IS NULL OR locked_until < NOW())
                ORDER BY priority DESC NULLS LAST, created_at ASC
                LIMIT %s
            """, (limit,))
            return [QueuedItem.from_row(row) for row in cur.fetchall()]

    def claim(self, item_id: str, locked_until: datetime) -> bool:
        """Mark item as PROCESSING (atomic claim)."""
        with self.cursor() as cur:
            cur.execute("""
                UPDATE docgen_queue
                SET status = 'PROCESSING', locked_until = %s, updated_at = NOW()
                WHERE id = %s
                  AND status = 'QUEUED'
                  AND (locked_until IS NULL OR locked_until < NOW())
                RETURNING id
            """, (locked_until, item_id))
            return cur.fetchone() is not None

    def update_status(self, item_id: str, update: StatusUpdate) -> None:
        """Write a status transition. Safe to repeat."""
        with self.cursor() as cur:
            cur.execute("""
                UPDATE docgen_queue
                SET status = %s,
                    attempts = COALESCE(%s, attempts),
                    error = %s,
                    scheduled_retry_at = %s,
                    locked_until = %s,
                    output_file_id = COALESCE(%s, output_file_id),
                    merged_docx_file_id = COALESCE(%s, merged_docx_file_id),
                    updated_at = NOW()
                WHERE id = %s
            """, (
                update.status.value,
                update.attempts,
                update.error,
                update.scheduled_retry_at,
                update.locked_until,
                update.output_file_id,
                update.merged_docx_file_id,
                item_id,
            ))
        if update.status == ItemStatus.FAILED:
            logger.warning(f"Failed: {item_id} after {update.attempts} attempt(s)")

    def release_expired_locks(self) -> int:
        """Return PROCESSING items whose lock lapsed to QUEUED."""
        with self.cursor() as cur:
            cur.execute("""
                UPDATE docgen_queue
                SET status = 'QUEUED', locked_until = NULL, updated_at = NOW()
                WHERE status = 'PROCESSING'
                  AND locked_until < NOW()
                RETURNING id
            """)
            count = len(cur.fetchall())
        if count > 0:
            logger.warning(f"Released {count} abandoned claims")
        return count

    def link_output(self, item_id: str, file_ref: FileRef, parents: Optional[Dict[str, Optional[str]]]) -> None:
        """Link a stored file to the item's parent records.

        Raises:
            LinkError: if the links cannot be written. The file itself is
                left in storage.
        """
        rows = [(item_id, file_ref.file_id, parent_type, str(parent_id))
                for parent_type, parent_id in (parents or {}).items() if parent_id]
        if not rows:
            return
        try:
            with self.cursor() as cur:
                cur.executemany("""
                    INSERT INTO docgen_output_links (item_id, file_id, parent_type, parent_id)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT DO NOTHING
                """, rows)
        except psycopg2.Error as e:
            raise LinkError(f"Could not link file {file_ref.file_id}: {e}",
                            {"item_id": item_id, "file_id": file_ref.file_id}) from e

    def ping(self) -> bool:
        with self.cursor() as cur:
            cur.execute("SELECT 1 AS ok")
            return cur.fetchone()["ok"] == 1
