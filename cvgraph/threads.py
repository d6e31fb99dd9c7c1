"""cvgraph thread registry — lifecycle of conversation identities.

A Thread is a named, owned conversation.  Its checkpoints live in the
checkpoint store keyed by the same id; the registry never touches them, so
``delete()`` removes the thread from a user's list while its history stays
addressable.

``update()`` / ``delete()`` on an unknown id return ``None`` / ``False``
rather than raising — callers check the return value.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from cvgraph.db import Database, now_iso
from cvgraph.errors import IdentityError, PersistenceError
from cvgraph.logging import get_logger

_log = get_logger("threads")

_UNSET: Any = object()


@dataclass(frozen=True)
class Thread:
    id: str
    user_id: str
    title: str
    created_at: str
    updated_at: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": dict(self.metadata),
        }


def _row_to_thread(row) -> Thread:
    try:
        metadata = json.loads(row["metadata"] or "{}")
    except ValueError as exc:
        raise PersistenceError(f"corrupt metadata for thread {row['id']}: {exc}") from exc
    return Thread(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        metadata=metadata,
    )


def _dump_metadata(metadata: dict[str, Any]) -> str:
    try:
        return json.dumps(metadata, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise PersistenceError(f"cannot serialise thread metadata: {exc}") from exc


def default_title(when: datetime | None = None) -> str:
    when = when or datetime.now(timezone.utc)
    return f"Conversation {when.strftime('%Y-%m-%d')}"


class ThreadRegistry:
    """SQLite-backed CRUD for Thread records.

    Parameters
    ----------
    db :
        A ``Database`` or a path to the SQLite file (may be the same file the
        checkpoint store uses).
    """

    def __init__(self, db: Database | str | Path):
        self.db = db if isinstance(db, Database) else Database(db)
        _log.info("ThreadRegistry ready  path=%s", self.db.db_path)

    def create(
        self,
        user_id: str,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Thread:
        """Create a thread with a fresh UUID.  Title defaults to the creation date."""
        if not user_id:
            raise IdentityError("user_id is required to create a thread")
        thread_id = str(uuid4())
        ts = now_iso()
        with self.db.connect() as conn:
            conn.execute(
                """INSERT INTO threads (id, user_id, title, created_at, updated_at, metadata)
                   VALUES (?,?,?,?,?,?)""",
                (thread_id, user_id, title or default_title(), ts, ts,
                 _dump_metadata(metadata or {})),
            )
        _log.info("Thread created  id=%s  user=%s", thread_id, user_id)
        return self.get(thread_id)

    def get(self, thread_id: str) -> Thread | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)).fetchone()
        if row is None:
            _log.debug("Thread not found  id=%s", thread_id)
            return None
        return _row_to_thread(row)

    def list(self, user_id: str, limit: int = 50, offset: int = 0) -> list[Thread]:
        """Threads owned by *user_id*, most recently active first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """SELECT * FROM threads WHERE user_id = ?
                   ORDER BY updated_at DESC, id
                   LIMIT ? OFFSET ?""",
                (user_id, limit, offset),
            ).fetchall()
        _log.debug("Threads listed  user=%s  count=%d", user_id, len(rows))
        return [_row_to_thread(r) for r in rows]

    def update(
        self,
        thread_id: str,
        *,
        title: str | None = _UNSET,
        metadata: dict[str, Any] | None = _UNSET,
    ) -> Thread | None:
        """Partially update title and/or metadata.  Always refreshes updated_at."""
        sets = ["updated_at = ?"]
        values: list[Any] = [now_iso()]
        if title is not _UNSET and title is not None:
            sets.append("title = ?")
            values.append(title)
        if metadata is not _UNSET and metadata is not None:
            sets.append("metadata = ?")
            values.append(_dump_metadata(metadata))
        values.append(thread_id)

        with self.db.connect() as conn:
            cur = conn.execute(f"UPDATE threads SET {', '.join(sets)} WHERE id = ?", values)
        if cur.rowcount == 0:
            _log.warning("Thread not found for update  id=%s", thread_id)
            return None
        _log.info("Thread updated  id=%s", thread_id)
        return self.get(thread_id)

    def delete(self, thread_id: str) -> bool:
        """Remove the thread record only; its checkpoints are kept."""
        with self.db.connect() as conn:
            cur = conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
        deleted = cur.rowcount > 0
        if deleted:
            _log.info("Thread deleted  id=%s", thread_id)
        else:
            _log.warning("Thread not found for deletion  id=%s", thread_id)
        return deleted

    def touch(self, thread_id: str) -> None:
        """Refresh updated_at so listings sort by latest activity."""
        with self.db.connect() as conn:
            conn.execute("UPDATE threads SET updated_at = ? WHERE id = ?", (now_iso(), thread_id))

    # ── Utilities ─────────────────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT user_id, COUNT(*) AS n FROM threads GROUP BY user_id"
            ).fetchall()
        by_user = {r["user_id"]: r["n"] for r in rows}
        return {"total_threads": sum(by_user.values()), "threads_by_user": by_user}

    def clear(self) -> int:
        with self.db.connect() as conn:
            cur = conn.execute("DELETE FROM threads")
        _log.info("Threads cleared  rows=%d", cur.rowcount)
        return cur.rowcount

    def close(self) -> None:
        """No-op: connections are opened per call."""
