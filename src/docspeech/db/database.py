from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock


class Database:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._initialize()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> Lock:
        return self._lock

    def _initialize(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")

            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS documents (
                  id TEXT PRIMARY KEY,
                  title TEXT NOT NULL,
                  source_path TEXT NOT NULL,
                  mime_type TEXT NOT NULL,
                  content_hash TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'pending',
                  attempts INTEGER NOT NULL DEFAULT 0,
                  poll_count INTEGER NOT NULL DEFAULT 0,
                  progress INTEGER NOT NULL DEFAULT 0,
                  stage TEXT,
                  message TEXT,
                  extracted_text TEXT,
                  mp3_path TEXT,
                  flac_path TEXT,
                  duration_seconds REAL,
                  success_rate REAL,
                  error TEXT,
                  created_at TEXT NOT NULL DEFAULT (datetime('now')),
                  updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                  started_at TEXT,
                  completed_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_documents_status_created_at
                ON documents(status, created_at);

                CREATE INDEX IF NOT EXISTS idx_documents_content_hash_status
                ON documents(content_hash, status);
                """
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
