"""Checkpoint store: ordering, parent links, branching, failure modes."""

from datetime import datetime, timedelta, timezone

import pytest

from cvgraph.checkpoint import CheckpointStore, next_checkpoint_id
from cvgraph.errors import IdentityError, PersistenceError
from cvgraph.state import BlackboardState, Message, merge_state


def _state(thread_id, n):
    return merge_state(
        BlackboardState.initial(thread_id, "u-1"),
        {"conversation_history": [Message.user(f"msg {i}") for i in range(n)]},
    )


def _chain(store, thread_id, n):
    """Write n linear checkpoints and return their ids oldest first."""
    ids, parent = [], None
    for i in range(n):
        parent = store.put(thread_id, parent, _state(thread_id, i + 1), {"step": i})
        ids.append(parent)
    return ids


# ── Checkpoint ids ────────────────────────────────────────────────────────────

def test_id_format():
    now = datetime(2026, 10, 18, 7, 51, 0, 123456, tzinfo=timezone.utc)
    assert next_checkpoint_id(None, now) == "2026-10-18T07:51:00.123456Z-000000"


def test_same_instant_bumps_sequence():
    now = datetime(2026, 10, 18, 7, 51, 0, 5, tzinfo=timezone.utc)
    first = next_checkpoint_id(None, now)
    second = next_checkpoint_id(first, now)
    third = next_checkpoint_id(second, now)
    assert first < second < third
    assert third.endswith("-000002")


def test_clock_stepping_back_still_sorts_after():
    now = datetime(2026, 10, 18, 7, 51, 0, tzinfo=timezone.utc)
    first = next_checkpoint_id(None, now)
    earlier = next_checkpoint_id(first, now - timedelta(seconds=5))
    assert earlier > first


def test_later_clock_resets_sequence():
    now = datetime(2026, 10, 18, 7, 51, 0, tzinfo=timezone.utc)
    first = next_checkpoint_id(next_checkpoint_id(None, now), now)
    later = next_checkpoint_id(first, now + timedelta(microseconds=1))
    assert later > first
    assert later.endswith("-000000")


def test_malformed_last_id():
    with pytest.raises(PersistenceError):
        next_checkpoint_id("not-an-id")


# ── put / get_latest / list ───────────────────────────────────────────────────

def test_empty_thread(checkpoints):
    assert checkpoints.get_latest("t-none") is None
    assert list(checkpoints.list("t-none")) == []


def test_latest_is_nth_and_parents_walk_back(checkpoints):
    ids = _chain(checkpoints, "t-1", 5)
    latest = checkpoints.get_latest("t-1")
    assert latest.checkpoint_id == ids[-1]
    assert len(latest.state.conversation_history) == 5

    walked = [c.checkpoint_id for c in checkpoints.lineage("t-1", latest.checkpoint_id)]
    assert walked == list(reversed(ids))
    root = checkpoints.get("t-1", walked[-1])
    assert root.parent_checkpoint_id is None


def test_ids_strictly_ordered_under_rapid_writes(checkpoints):
    ids = _chain(checkpoints, "t-1", 30)
    assert ids == sorted(ids)
    assert len(set(ids)) == 30


def test_list_newest_first_and_restartable(checkpoints):
    ids = _chain(checkpoints, "t-1", 4)
    history = checkpoints.list("t-1")
    first_pass = [c.checkpoint_id for c in history]
    second_pass = [c.checkpoint_id for c in history]
    assert first_pass == list(reversed(ids))
    assert first_pass == second_pass


def test_list_is_lazy(checkpoints):
    _chain(checkpoints, "t-1", 3)
    history = checkpoints.list("t-1")
    it = iter(history)
    newest = next(it)
    it.close()
    # a later write shows up in the next iteration
    checkpoints.put("t-1", newest.checkpoint_id, _state("t-1", 9))
    assert len(list(history)) == 4


def test_threads_are_isolated(checkpoints):
    _chain(checkpoints, "t-1", 2)
    _chain(checkpoints, "t-2", 3)
    assert len(list(checkpoints.list("t-1"))) == 2
    assert len(list(checkpoints.list("t-2"))) == 3
    assert checkpoints.get_latest("t-1").thread_id == "t-1"


def test_step_metadata_and_record(checkpoints):
    cid = checkpoints.put("t-1", None, _state("t-1", 1), {"step": 0, "source": "update"})
    ckpt = checkpoints.get("t-1", cid)
    assert ckpt.step_metadata == {"step": 0, "source": "update"}
    assert ckpt.created_at
    record = ckpt.to_record()
    assert record["state_snapshot"]["thread_id"] == "t-1"
    assert set(record) == {
        "thread_id", "checkpoint_id", "parent_checkpoint_id",
        "state_snapshot", "step_metadata", "created_at",
    }


def test_get_unknown_checkpoint(checkpoints):
    _chain(checkpoints, "t-1", 1)
    assert checkpoints.get("t-1", "2000-01-01T00:00:00.000000Z-000000") is None


# ── Branching ─────────────────────────────────────────────────────────────────

def test_branch_from_earlier_checkpoint(checkpoints):
    ids = _chain(checkpoints, "t-1", 3)
    branch = checkpoints.put("t-1", ids[0], _state("t-1", 7))
    assert branch > ids[-1]
    assert checkpoints.get("t-1", branch).parent_checkpoint_id == ids[0]
    assert checkpoints.get("t-1", ids[1]).parent_checkpoint_id == ids[0]
    assert checkpoints.get_latest("t-1").checkpoint_id == branch


# ── Failure modes ─────────────────────────────────────────────────────────────

def test_missing_thread_id(checkpoints):
    with pytest.raises(IdentityError):
        checkpoints.put("", None, _state("t-1", 1))
    with pytest.raises(IdentityError):
        checkpoints.get_latest("")
    with pytest.raises(IdentityError):
        checkpoints.list(None)


def test_unknown_parent(checkpoints):
    _chain(checkpoints, "t-1", 1)
    with pytest.raises(PersistenceError, match="not found"):
        checkpoints.put("t-1", "nope-000000", _state("t-1", 2))


def test_parent_from_another_thread(checkpoints):
    other = _chain(checkpoints, "t-2", 1)[0]
    with pytest.raises(PersistenceError):
        checkpoints.put("t-1", other, _state("t-1", 1))


def test_parent_required_once_history_exists(checkpoints):
    _chain(checkpoints, "t-1", 1)
    with pytest.raises(PersistenceError, match="parent is required"):
        checkpoints.put("t-1", None, _state("t-1", 2))


def test_unserialisable_state(checkpoints):
    with pytest.raises(PersistenceError, match="serialise"):
        checkpoints.put("t-1", None, {"thread_id": "t-1", "metadata": {"when": object()}})
    assert checkpoints.get_latest("t-1") is None


def test_corrupt_row(checkpoints, db):
    cid = _chain(checkpoints, "t-1", 1)[0]
    with db.connect() as conn:
        conn.execute("UPDATE checkpoints SET state_snapshot = '{oops' WHERE checkpoint_id = ?", (cid,))
    with pytest.raises(PersistenceError, match="corrupt"):
        checkpoints.get_latest("t-1")


# ── Utilities ─────────────────────────────────────────────────────────────────

def test_clear_one_thread_then_all(checkpoints):
    _chain(checkpoints, "t-1", 2)
    _chain(checkpoints, "t-2", 3)
    assert checkpoints.clear("t-1") == 2
    assert checkpoints.get_latest("t-1") is None
    assert checkpoints.clear() == 3
    assert checkpoints.stats()["checkpoint_count"] == 0


def test_stats(checkpoints):
    _chain(checkpoints, "t-1", 2)
    _chain(checkpoints, "t-2", 1)
    stats = checkpoints.stats()
    assert stats["checkpoint_count"] == 3
    assert stats["thread_count"] == 2
    assert stats["db_size_bytes"] > 0


def test_store_accepts_a_path(tmp_path):
    store = CheckpointStore(tmp_path / "nested" / "ck.db")
    store.put("t-1", None, _state("t-1", 1))
    assert store.get_latest("t-1") is not None
    store.close()
