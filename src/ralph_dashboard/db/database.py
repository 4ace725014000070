"""SQLite database for ralph-dashboard state.

One connection per Database. Every statement runs under a re-entrant lock,
so the HTTP handlers, the orchestrator and the task worker never interleave
a read-modify-write on the same rows.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Generator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from ralph_dashboard.core.models import utc_now

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS versions (
    version TEXT PRIMARY KEY,
    title TEXT,
    short_title TEXT,
    description TEXT,
    project TEXT
);

CREATE TABLE IF NOT EXISTS phases (
    version TEXT NOT NULL,
    id INTEGER NOT NULL,
    name TEXT NOT NULL,
    PRIMARY KEY (version, id)
);

CREATE TABLE IF NOT EXISTS epics (
    version TEXT NOT NULL,
    phase INTEGER NOT NULL,
    id INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    PRIMARY KEY (version, phase, id)
);

CREATE TABLE IF NOT EXISTS stories (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    intent TEXT,
    description TEXT,
    acceptance TEXT NOT NULL DEFAULT '[]',
    phase INTEGER NOT NULL,
    epic INTEGER NOT NULL,
    story_number INTEGER NOT NULL,
    target_version TEXT NOT NULL,
    depends_on TEXT NOT NULL DEFAULT '[]',
    tags TEXT NOT NULL DEFAULT '[]',
    passes INTEGER NOT NULL DEFAULT 0,
    merged INTEGER NOT NULL DEFAULT 0,
    skipped INTEGER NOT NULL DEFAULT 0,
    skip_reason TEXT,
    pr_url TEXT,
    merge_commit TEXT,
    working_branch TEXT,
    priority INTEGER NOT NULL DEFAULT 0,
    passed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_stories_version
    ON stories (target_version, phase, epic, story_number);

CREATE TABLE IF NOT EXISTS run_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    current_story TEXT,
    status TEXT NOT NULL DEFAULT 'idle',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_completed TEXT,
    last_error TEXT,
    failure_count INTEGER NOT NULL DEFAULT 0,
    started_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS checkpoints (
    story_id TEXT NOT NULL,
    stage TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    attempt INTEGER NOT NULL DEFAULT 0,
    at TEXT NOT NULL,
    PRIMARY KEY (story_id, stage)
);

CREATE TABLE IF NOT EXISTS handoffs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    story_id TEXT NOT NULL,
    from_agent TEXT NOT NULL,
    to_agent TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    payload TEXT NOT NULL DEFAULT '{}',
    rejection_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_handoffs_story ON handoffs (story_id, status);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued',
    version TEXT NOT NULL,
    params TEXT NOT NULL DEFAULT '{}',
    context TEXT,
    result TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    read_at TEXT,
    deleted_at TEXT
);

CREATE TABLE IF NOT EXISTS metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    story_id TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 0,
    duration_seconds REAL NOT NULL DEFAULT 0,
    success INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    created_at TEXT NOT NULL
);
"""


def to_json(value: Any) -> str:
    """Encode a value for a JSON text column."""
    return json.dumps(value, default=str)


def from_json(value: str | None, default: Any = None) -> Any:
    """Decode a JSON text column, returning default for NULL."""
    if value is None:
        return default
    return json.loads(value)


def now_iso() -> str:
    """Current UTC time as ISO 8601 text."""
    return utc_now().isoformat()


def iso(value: datetime | None) -> str | None:
    """Format an optional datetime as ISO 8601 text."""
    return value.isoformat() if value is not None else None


class Database:
    """SQLite database for dashboard state.

    Attributes:
        path: Database file path or ``:memory:``.
        conn: Underlying sqlite3 connection.

    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        """Open the database and create tables.

        Args:
            path: Database file path. Parent directories are created.

        """
        db_path = str(path)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.path = db_path
        # Shared across the server's event loop thread and worker threads
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        logger.debug("Opened database connection: %s", db_path)
        if db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA busy_timeout=5000")
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            self.conn.executescript(SCHEMA_SQL)
            self.conn.execute(
                "INSERT OR IGNORE INTO run_state (id, status, updated_at) VALUES (1, 'idle', ?)",
                (now_iso(),),
            )
            self.conn.commit()

    def close(self) -> None:
        logger.debug("Closing database connection")
        with self._lock:
            self.conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Hold the lock for a read-modify-write sequence.

        Commits on success, rolls back on exception. Nested calls join the
        outermost transaction.
        """
        with self._lock:
            self._depth += 1
            try:
                yield self.conn
            except Exception:
                if self._depth == 1:
                    self.conn.rollback()
                raise
            else:
                if self._depth == 1:
                    self.conn.commit()
            finally:
                self._depth -= 1

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a single write statement and commit.

        Returns:
            Number of affected rows.

        """
        with self.transaction() as conn:
            return conn.execute(sql, params).rowcount


def open_project_database(project_root: Path | str, db_path: str | Path) -> Database:
    """Open ``db_path`` relative to the project root (absolute paths as-is)."""
    path = Path(db_path)
    if not path.is_absolute():
        path = Path(project_root) / path
    return Database(path)
