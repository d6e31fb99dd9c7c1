"""cvgraph DB — SQLite file shared by the checkpoint store and thread registry.

Schema
------
Two tables live in a single SQLite file:

  checkpoints — append-only state snapshots, addressed by
                (thread_id, checkpoint_id), parent-linked per thread
  threads     — one row per conversation (owner, title, timestamps)

There is no foreign key between them: deleting a thread leaves its
checkpoints addressable by thread_id.

Thread-safety: every operation opens its own sqlite3 connection — no shared
connection state, so concurrent engine threads and readers are safe.  WAL mode
is enabled on first connection so history reads don't block writes.

Any ``sqlite3.Error`` raised inside ``Database.connect()`` is re-raised as
``PersistenceError``.

Usage
-----
    from cvgraph.db import Database

    db = Database("cv_builder.db")
    with db.connect() as conn:
        conn.execute("SELECT COUNT(*) FROM threads").fetchone()
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from cvgraph.errors import PersistenceError
from cvgraph.logging import get_logger

_log = get_logger("db")

_DDL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS checkpoints (
    thread_id            TEXT NOT NULL,
    checkpoint_id        TEXT NOT NULL,
    parent_checkpoint_id TEXT,
    state_snapshot       TEXT NOT NULL,
    step_metadata        TEXT NOT NULL DEFAULT '{}',
    created_at           TEXT NOT NULL,
    PRIMARY KEY (thread_id, checkpoint_id)
);

CREATE INDEX IF NOT EXISTS idx_checkpoints_created_at
    ON checkpoints(created_at);

CREATE TABLE IF NOT EXISTS threads (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    title       TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL,
    metadata    TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_threads_user_id
    ON threads(user_id, updated_at);
"""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class Database:
    """Handle on one SQLite file.

    Parameters
    ----------
    db_path :
        Path to the SQLite file.  Created (with parent directories) if it does
        not exist.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def __repr__(self) -> str:
        return f"Database({str(self.db_path)!r})"

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self.connect() as conn:
            conn.executescript(_DDL)
        _log.debug("Database ready  path=%s", self.db_path)

    # ── Public API ────────────────────────────────────────────────────────────

    @contextmanager
    def connect(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection; commit on success, roll back on error, always close.

        With ``immediate=True`` the block runs inside ``BEGIN IMMEDIATE`` so
        a read-then-write sequence holds the write lock throughout.
        """
        try:
            conn = self._open()
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot open {self.db_path}: {exc}") from exc
        try:
            if immediate:
                conn.isolation_level = None
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            if immediate:
                conn.execute("COMMIT")
            else:
                conn.commit()
        except sqlite3.Error as exc:
            self._rollback(conn, immediate)
            raise PersistenceError(f"{self.db_path}: {exc}") from exc
        except BaseException:
            self._rollback(conn, immediate)
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection, immediate: bool) -> None:
        try:
            if immediate:
                conn.execute("ROLLBACK")
            else:
                conn.rollback()
        except sqlite3.Error as exc:
            _log.debug("Rollback failed: %s", exc)

    def size_bytes(self) -> int:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT page_count * page_size AS size "
                "FROM pragma_page_count(), pragma_page_size()"
            ).fetchone()
        return int(row["size"] or 0)
