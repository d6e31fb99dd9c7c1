"""cvgraph checkpoint store — append-only, parent-linked state snapshots.

Every successful node execution (and every out-of-band ``update_state``)
writes one immutable ``Checkpoint``.  Checkpoints are addressed only by
``(thread_id, checkpoint_id)``; one thread's history is a single range scan.

Checkpoint ids
--------------
``<UTC timestamp, microseconds>-<6-digit sequence>``, e.g.
``2026-10-18T07:51:00.123456Z-000000``.  The id is assigned inside a
``BEGIN IMMEDIATE`` transaction: if the clock has not advanced past the
thread's latest id (same microsecond, or the clock stepped back), the latest
timestamp is reused and the sequence bumped.  Ids of one thread therefore
sort strictly in write order under plain string comparison.

Branching
---------
``parent_checkpoint_id`` may name *any* earlier checkpoint of the same thread,
not only the latest, so forks are representable.  Only the first checkpoint
of a thread has no parent.

Usage
-----
    store = CheckpointStore("cv_builder.db")
    cid = store.put("t-1", None, state, {"step": 0, "source": "update"})
    latest = store.get_latest("t-1")
    for ckpt in store.list("t-1"):      # newest first, lazy
        print(ckpt.checkpoint_id, ckpt.parent_checkpoint_id)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from cvgraph.db import Database, now_iso
from cvgraph.errors import IdentityError, PersistenceError
from cvgraph.logging import get_logger
from cvgraph.state import BlackboardState

_log = get_logger("checkpoint")

_SEQ_WIDTH = 6


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot of the blackboard at one point of a thread."""

    thread_id: str
    checkpoint_id: str
    parent_checkpoint_id: str | None
    state: BlackboardState
    step_metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    def to_record(self) -> dict[str, Any]:
        """Serialised form: JSON-compatible dict with the state snapshot inline."""
        return {
            "thread_id": self.thread_id,
            "checkpoint_id": self.checkpoint_id,
            "parent_checkpoint_id": self.parent_checkpoint_id,
            "state_snapshot": self.state.to_dict(),
            "step_metadata": dict(self.step_metadata),
            "created_at": self.created_at,
        }


def next_checkpoint_id(last_id: str | None, now: datetime | None = None) -> str:
    """Return an id that sorts strictly after *last_id*."""
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    if last_id:
        last_stamp, _, last_seq = last_id.rpartition("-")
        if not last_seq.isdigit():
            raise PersistenceError(f"malformed checkpoint id {last_id!r}")
        if stamp <= last_stamp:
            return f"{last_stamp}-{int(last_seq) + 1:0{_SEQ_WIDTH}d}"
    return f"{stamp}-{0:0{_SEQ_WIDTH}d}"


def _encode(value: Any, what: str) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise PersistenceError(f"cannot serialise {what}: {exc}") from exc


def _row_to_checkpoint(row) -> Checkpoint:
    try:
        snapshot = json.loads(row["state_snapshot"])
        step_metadata = json.loads(row["step_metadata"])
    except ValueError as exc:
        raise PersistenceError(
            f"corrupt checkpoint {row['thread_id']}/{row['checkpoint_id']}: {exc}"
        ) from exc
    return Checkpoint(
        thread_id=row["thread_id"],
        checkpoint_id=row["checkpoint_id"],
        parent_checkpoint_id=row["parent_checkpoint_id"],
        state=BlackboardState.from_dict(snapshot),
        step_metadata=step_metadata,
        created_at=row["created_at"],
    )


def _require_thread(thread_id: str) -> None:
    if not thread_id:
        raise IdentityError("thread_id is required")


class CheckpointHistory:
    """Lazy, restartable newest-first view over one thread's checkpoints.

    Each ``iter()`` runs a fresh query and streams rows from the cursor;
    nothing is cached between iterations.
    """

    def __init__(self, db: Database, thread_id: str):
        self._db = db
        self.thread_id = thread_id

    def __iter__(self) -> Iterator[Checkpoint]:
        with self._db.connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM checkpoints WHERE thread_id = ? ORDER BY checkpoint_id DESC",
                (self.thread_id,),
            )
            for row in cursor:
                yield _row_to_checkpoint(row)

    def __repr__(self) -> str:
        return f"CheckpointHistory(thread_id={self.thread_id!r})"


class CheckpointStore:
    """SQLite-backed checkpoint store.

    Parameters
    ----------
    db :
        A ``Database`` or a path to the SQLite file.

    Failures (I/O, serialisation) surface as ``PersistenceError`` and are not
    retried here.
    """

    def __init__(self, db: Database | str | Path):
        self.db = db if isinstance(db, Database) else Database(db)
        _log.info("CheckpointStore ready  path=%s", self.db.db_path)

    # ── Writes ────────────────────────────────────────────────────────────────

    def put(
        self,
        thread_id: str,
        parent_checkpoint_id: str | None,
        state: BlackboardState | dict[str, Any],
        step_metadata: dict[str, Any] | None = None,
    ) -> str:
        """Persist a new checkpoint and return its id.

        Raises
        ------
        IdentityError
            If *thread_id* is empty.
        PersistenceError
            On serialisation or database failure, or if *parent_checkpoint_id*
            does not name a checkpoint of this thread (or is omitted although
            the thread already has history).
        """
        _require_thread(thread_id)
        snapshot = state.to_dict() if isinstance(state, BlackboardState) else dict(state)
        state_json = _encode(snapshot, "state snapshot")
        meta_json = _encode(step_metadata or {}, "step metadata")

        with self.db.connect(immediate=True) as conn:
            row = conn.execute(
                "SELECT MAX(checkpoint_id) AS last_id FROM checkpoints WHERE thread_id = ?",
                (thread_id,),
            ).fetchone()
            last_id = row["last_id"]

            if parent_checkpoint_id is None and last_id is not None:
                raise PersistenceError(
                    f"thread {thread_id!r} already has checkpoints; a parent is required"
                )
            if parent_checkpoint_id is not None:
                exists = conn.execute(
                    "SELECT 1 FROM checkpoints WHERE thread_id = ? AND checkpoint_id = ?",
                    (thread_id, parent_checkpoint_id),
                ).fetchone()
                if exists is None:
                    raise PersistenceError(
                        f"parent checkpoint {parent_checkpoint_id!r} not found "
                        f"in thread {thread_id!r}"
                    )

            checkpoint_id = next_checkpoint_id(last_id)
            conn.execute(
                """INSERT INTO checkpoints
                   (thread_id, checkpoint_id, parent_checkpoint_id,
                    state_snapshot, step_metadata, created_at)
                   VALUES (?,?,?,?,?,?)""",
                (thread_id, checkpoint_id, parent_checkpoint_id,
                 state_json, meta_json, now_iso()),
            )

        _log.debug(
            "Checkpoint saved  thread=%s  id=%s  parent=%s",
            thread_id, checkpoint_id, parent_checkpoint_id,
        )
        return checkpoint_id

    def clear(self, thread_id: str | None = None) -> int:
        """Delete all checkpoints (or one thread's).  Returns rows removed."""
        with self.db.connect() as conn:
            if thread_id is None:
                cur = conn.execute("DELETE FROM checkpoints")
            else:
                cur = conn.execute("DELETE FROM checkpoints WHERE thread_id = ?", (thread_id,))
        _log.info("Checkpoints cleared  thread=%s  rows=%d", thread_id or "*", cur.rowcount)
        return cur.rowcount

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get_latest(self, thread_id: str) -> Checkpoint | None:
        _require_thread(thread_id)
        with self.db.connect() as conn:
            row = conn.execute(
                """SELECT * FROM checkpoints WHERE thread_id = ?
                   ORDER BY checkpoint_id DESC LIMIT 1""",
                (thread_id,),
            ).fetchone()
        if row is None:
            _log.debug("No checkpoint  thread=%s", thread_id)
            return None
        return _row_to_checkpoint(row)

    def get(self, thread_id: str, checkpoint_id: str) -> Checkpoint | None:
        _require_thread(thread_id)
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM checkpoints WHERE thread_id = ? AND checkpoint_id = ?",
                (thread_id, checkpoint_id),
            ).fetchone()
        return _row_to_checkpoint(row) if row else None

    def list(self, thread_id: str) -> CheckpointHistory:
        """Newest-first history of *thread_id* (lazy, restartable)."""
        _require_thread(thread_id)
        return CheckpointHistory(self.db, thread_id)

    def lineage(self, thread_id: str, checkpoint_id: str) -> Iterator[Checkpoint]:
        """Walk parent links from *checkpoint_id* back to the thread's root."""
        current = self.get(thread_id, checkpoint_id)
        while current is not None:
            yield current
            if current.parent_checkpoint_id is None:
                return
            current = self.get(thread_id, current.parent_checkpoint_id)

    # ── Utilities ─────────────────────────────────────────────────────────────

    def stats(self) -> dict[str, int]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n, COUNT(DISTINCT thread_id) AS t FROM checkpoints"
            ).fetchone()
        return {
            "checkpoint_count": row["n"],
            "thread_count": row["t"],
            "db_size_bytes": self.db.size_bytes(),
        }

    def close(self) -> None:
        """No-op: connections are opened per call."""
