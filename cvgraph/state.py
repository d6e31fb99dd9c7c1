"""cvgraph state — the blackboard record and its reducer-based merge.

Design
------
All nodes read one ``BlackboardState`` and return a *patch*: a plain dict
mapping field name → new value.  The patch never mutates the state; the
engine folds it in with ``merge_state``, which consults the reducer table:

    append   — new values are concatenated after the existing sequence
               (``conversation_history``, ``generated_artifacts``)
    replace  — last writer wins (every other field)

The policy is fixed per field in ``REDUCERS`` and never chosen per call.

``thread_id`` and ``user_id`` are identity tags: they follow the replace
policy but may only be written while still empty (or rewritten with the same
value).

Routing signals
---------------
``routing_signal`` is one of ``route-to-<node_name>``, ``done`` or ``error``.
Use ``route_to()`` to build one and ``target_of()`` / ``is_terminal()`` to
read one back.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import uuid4

from cvgraph.errors import StateValidationError
from cvgraph.logging import get_logger

_log = get_logger("state")

ROUTER = "router"
ROUTE_PREFIX = "route-to-"
DONE = "done"
ERROR = "error"
TERMINAL_SIGNALS = frozenset({DONE, ERROR})

APPEND = "append"
REPLACE = "replace"

SCHEMA_VERSION = "1.0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


# ── Routing signals ──────────────────────────────────────────────────────────

def route_to(node_name: str) -> str:
    """Return the routing signal that sends control to *node_name*."""
    return f"{ROUTE_PREFIX}{node_name}"


def target_of(signal: str | None) -> str | None:
    """Return the node name a ``route-to-X`` signal points at, else None."""
    if signal and signal.startswith(ROUTE_PREFIX):
        name = signal[len(ROUTE_PREFIX):]
        return name or None
    return None


def is_terminal(signal: str | None) -> bool:
    return signal in TERMINAL_SIGNALS


def is_valid_signal(signal: str | None) -> bool:
    return is_terminal(signal) or target_of(signal) is not None


# ── Records ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Message:
    """One role-tagged entry of the conversation history."""

    role: str
    content: str
    name: str | None = None

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, name: str | None = None) -> "Message":
        return cls(role="assistant", content=content, name=name)

    def to_dict(self) -> dict[str, Any]:
        data = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(role=data["role"], content=data["content"], name=data.get("name"))


@dataclass(frozen=True)
class Artifact:
    """A produced document: resume, cover letter or learning plan."""

    kind: str
    content: Any
    id: str = ""
    job_id: str | None = None
    generated_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, kind: str, content: Any, job_id: str | None = None, **metadata: Any) -> "Artifact":
        return cls(
            kind=kind,
            content=content,
            id=f"{kind}-{uuid4().hex[:12]}",
            job_id=job_id,
            generated_at=_now(),
            metadata=dict(metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "content": self.content,
            "id": self.id,
            "job_id": self.job_id,
            "generated_at": self.generated_at,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Artifact":
        return cls(
            kind=data["kind"],
            content=data.get("content"),
            id=data.get("id", ""),
            job_id=data.get("job_id"),
            generated_at=data.get("generated_at", ""),
            metadata=dict(data.get("metadata") or {}),
        )


# ── Reducer table ────────────────────────────────────────────────────────────

REDUCERS: dict[str, str] = {
    "conversation_history": APPEND,
    "user_profile": REPLACE,
    "active_job": REPLACE,
    "job_catalog": REPLACE,
    "analysis_results": REPLACE,
    "learning_plan": REPLACE,
    "retrieval_result": REPLACE,
    "generated_artifacts": APPEND,
    "active_node": REPLACE,
    "routing_signal": REPLACE,
    "thread_id": REPLACE,
    "user_id": REPLACE,
    "metadata": REPLACE,
}

IDENTITY_FIELDS = ("thread_id", "user_id")

# Accepted value types per replace-policy field (None = nullable).
_REPLACE_TYPES: dict[str, tuple[type, ...]] = {
    "user_profile": (dict, type(None)),
    "active_job": (dict, type(None)),
    "job_catalog": (dict,),
    "analysis_results": (dict, type(None)),
    "learning_plan": (dict, type(None)),
    "retrieval_result": (dict, type(None)),
    "active_node": (str, type(None)),
    "routing_signal": (str, type(None)),
    "thread_id": (str,),
    "user_id": (str,),
    "metadata": (dict,),
}

_APPEND_ITEMS: dict[str, type] = {
    "conversation_history": Message,
    "generated_artifacts": Artifact,
}


@dataclass(frozen=True)
class BlackboardState:
    """The single shared record every node reads and writes.

    Instances are immutable; ``merge_state`` returns a new one.
    """

    thread_id: str = ""
    user_id: str = ""
    conversation_history: tuple[Message, ...] = ()
    user_profile: dict[str, Any] | None = None
    active_job: dict[str, Any] | None = None
    job_catalog: dict[str, dict[str, Any]] = field(default_factory=dict)
    analysis_results: dict[str, Any] | None = None
    learning_plan: dict[str, Any] | None = None
    retrieval_result: dict[str, Any] | None = None
    generated_artifacts: tuple[Artifact, ...] = ()
    active_node: str | None = None
    routing_signal: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def initial(cls, thread_id: str, user_id: str = "", **overrides: Any) -> "BlackboardState":
        """Fresh state for a new conversation."""
        state = cls(
            thread_id=thread_id,
            user_id=user_id,
            active_node=ROUTER,
            metadata={"created_at": _now(), "version": SCHEMA_VERSION},
        )
        return merge_state(state, overrides) if overrides else state

    @property
    def last_message(self) -> Message | None:
        return self.conversation_history[-1] if self.conversation_history else None

    # ── serialisation ─────────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in _APPEND_ITEMS:
                value = [item.to_dict() for item in value]
            elif isinstance(value, dict):
                value = dict(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BlackboardState":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            _log.warning("Ignoring unknown state field(s) in snapshot: %s", sorted(unknown))
        kwargs: dict[str, Any] = {}
        for name in known & set(data):
            value = data[name]
            if name in _APPEND_ITEMS:
                item_cls = _APPEND_ITEMS[name]
                value = tuple(item_cls.from_dict(v) for v in value or ())
            kwargs[name] = value
        return cls(**kwargs)


# ── Validation & merge ───────────────────────────────────────────────────────

def _coerce_items(name: str, value: Any) -> tuple:
    item_cls = _APPEND_ITEMS[name]
    if isinstance(value, (item_cls, dict)):
        value = [value]
    elif not isinstance(value, (list, tuple)):
        raise StateValidationError(
            f"field '{name}' expects {item_cls.__name__} or a sequence of them, "
            f"got {type(value).__name__}"
        )
    items = []
    for v in value:
        if isinstance(v, dict):
            try:
                v = item_cls.from_dict(v)
            except (KeyError, TypeError) as exc:
                raise StateValidationError(f"field '{name}': malformed item {v!r}") from exc
        if not isinstance(v, item_cls):
            raise StateValidationError(
                f"field '{name}' expects {item_cls.__name__} items, got {type(v).__name__}"
            )
        items.append(v)
    return tuple(items)


def validate_patch(patch: dict[str, Any], state: BlackboardState | None = None) -> dict[str, Any]:
    """Check *patch* against the schema and return a normalised copy.

    Append-policy values are normalised to tuples of records (a single record
    or dict is accepted).  Raises StateValidationError on unknown fields,
    wrong types, or an attempt to rewrite a set identity tag.
    """
    if not isinstance(patch, dict):
        raise StateValidationError(f"patch must be a dict, got {type(patch).__name__}")

    unknown = [k for k in patch if k not in REDUCERS]
    if unknown:
        raise StateValidationError(f"unknown state field(s): {unknown}")

    clean: dict[str, Any] = {}
    for name, value in patch.items():
        if REDUCERS[name] == APPEND:
            clean[name] = _coerce_items(name, value)
            continue
        expected = _REPLACE_TYPES[name]
        if not isinstance(value, expected):
            raise StateValidationError(
                f"field '{name}' expects {[t.__name__ for t in expected]}, "
                f"got {type(value).__name__}"
            )
        if name in IDENTITY_FIELDS and state is not None:
            current = getattr(state, name)
            if current and value != current:
                raise StateValidationError(
                    f"identity field '{name}' is immutable ({current!r} → {value!r})"
                )
        clean[name] = value
    return clean


def merge_state(state: BlackboardState, patch: dict[str, Any]) -> BlackboardState:
    """Fold *patch* into *state* using the reducer table.  Returns a new state."""
    clean = validate_patch(patch, state)
    changes: dict[str, Any] = {}
    for name, value in clean.items():
        if REDUCERS[name] == APPEND:
            changes[name] = getattr(state, name) + value
        else:
            changes[name] = value
    return replace(state, **changes) if changes else state


def merge_all(state: BlackboardState, patches: Iterable[dict[str, Any]]) -> BlackboardState:
    for patch in patches:
        state = merge_state(state, patch)
    return state
