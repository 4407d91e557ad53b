from __future__ import annotations

import uuid
from typing import Any

from docspeech.db.database import Database
from docspeech.types import DocumentStatus

# Documents in these states block a re-upload of the same content.
LIVE_STATUSES = ("pending", "processing", "completed")


class DocumentsRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    def enqueue(self, *, title: str, source_path: str, mime_type: str, content_hash: str) -> dict[str, Any]:
        document_id = str(uuid.uuid4())
        with self.db.lock:
            self.db.conn.execute(
                """
                INSERT INTO documents(id, title, source_path, mime_type, content_hash, status, stage, message)
                VALUES (?, ?, ?, ?, ?, 'pending', 'initializing', 'Waiting to be processed')
                """,
                (document_id, title, source_path, mime_type, content_hash),
            )
            self.db.conn.commit()

        document = self.get(document_id)
        if document is None:
            raise RuntimeError("Failed to create document")
        return document

    def get(self, document_id: str) -> dict[str, Any] | None:
        row = self.db.conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
        return dict(row) if row is not None else None

    def find_by_hash(self, content_hash: str) -> dict[str, Any] | None:
        placeholders = ",".join("?" for _ in LIVE_STATUSES)
        row = self.db.conn.execute(
            f"""
            SELECT * FROM documents
            WHERE content_hash = ? AND status IN ({placeholders})
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (content_hash, *LIVE_STATUSES),
        ).fetchone()
        return dict(row) if row is not None else None

    def claim_next(self) -> dict[str, Any] | None:
        with self.db.lock:
            self.db.conn.execute("BEGIN IMMEDIATE")
            row = self.db.conn.execute(
                """
                SELECT * FROM documents
                WHERE status = 'pending'
                ORDER BY created_at ASC, rowid ASC
                LIMIT 1
                """
            ).fetchone()
            if row is None:
                self.db.conn.commit()
                return None

            document_id = row["id"]
            self.db.conn.execute(
                """
                UPDATE documents
                SET status = 'processing', attempts = attempts + 1, error = NULL,
                    started_at = datetime('now'), updated_at = datetime('now')
                WHERE id = ?
                """,
                (document_id,),
            )
            self.db.conn.commit()

        return self.get(str(document_id))

    def update_progress(self, document_id: str, progress: int, stage: str, message: str) -> None:
        with self.db.lock:
            self.db.conn.execute(
                """
                UPDATE documents
                SET progress = ?, stage = ?, message = ?, updated_at = datetime('now')
                WHERE id = ?
                """,
                (progress, stage, message, document_id),
            )
            self.db.conn.commit()

    def save_extracted_text(self, document_id: str, text: str) -> None:
        with self.db.lock:
            self.db.conn.execute(
                "UPDATE documents SET extracted_text = ?, updated_at = datetime('now') WHERE id = ?",
                (text, document_id),
            )
            self.db.conn.commit()

    def mark_completed(
        self,
        document_id: str,
        *,
        mp3_path: str,
        flac_path: str | None,
        duration_seconds: float,
        success_rate: float,
    ) -> None:
        with self.db.lock:
            self.db.conn.execute(
                """
                UPDATE documents
                SET status = 'completed', progress = 100, stage = 'completed',
                    message = 'Conversion completed', mp3_path = ?, flac_path = ?,
                    duration_seconds = ?, success_rate = ?, error = NULL,
                    completed_at = datetime('now'), updated_at = datetime('now')
                WHERE id = ?
                """,
                (mp3_path, flac_path, duration_seconds, success_rate, document_id),
            )
            self.db.conn.commit()

    def mark_failed(self, document_id: str, error: str) -> None:
        with self.db.lock:
            self.db.conn.execute(
                """
                UPDATE documents
                SET status = 'failed', progress = -1, stage = 'failed', message = ?,
                    error = ?, completed_at = datetime('now'), updated_at = datetime('now')
                WHERE id = ?
                """,
                (f"Error: {error}", error, document_id),
            )
            self.db.conn.commit()

    def requeue(self, document_id: str, error: str) -> None:
        with self.db.lock:
            self.db.conn.execute(
                """
                UPDATE documents
                SET status = 'pending', progress = 0, stage = 'initializing',
                    message = 'Retrying after error', error = ?, updated_at = datetime('now')
                WHERE id = ?
                """,
                (error, document_id),
            )
            self.db.conn.commit()

    def increment_poll_count(self, document_id: str) -> int:
        """Increment poll_count and return the new value."""
        with self.db.lock:
            self.db.conn.execute(
                "UPDATE documents SET poll_count = poll_count + 1 WHERE id = ?",
                (document_id,),
            )
            self.db.conn.commit()
        row = self.db.conn.execute("SELECT poll_count FROM documents WHERE id = ?", (document_id,)).fetchone()
        return int(row["poll_count"]) if row else 0

    def list_documents(self, status: DocumentStatus | None = None, limit: int = 20) -> list[dict[str, Any]]:
        columns = """
            id, title, mime_type, status, attempts, progress, stage, message,
            duration_seconds, success_rate, error, created_at, updated_at, completed_at
        """
        if status is None:
            rows = self.db.conn.execute(
                f"SELECT {columns} FROM documents ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        else:
            rows = self.db.conn.execute(
                f"SELECT {columns} FROM documents WHERE status = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (status, limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        rows = self.db.conn.execute("SELECT status, COUNT(*) AS total FROM documents GROUP BY status").fetchall()
        counts = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
        counts.update({str(row["status"]): int(row["total"]) for row in rows})
        return counts
