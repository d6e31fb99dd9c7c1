"""cvgraph engine — routing state machine, reducer merge, checkpointed loop.

Design
------
The engine owns a registry of named nodes and runs them against one thread's
blackboard:

  1. resolve the current node (an invocation always starts at ``router``)
  2. ``node.run(state)`` → patch (nodes never raise; failures become an
     ``error`` patch)
  3. ``merge_state(state, patch)`` using the per-field reducer table
  4. persist the merged state as a checkpoint parented to the previous one,
     touch the thread
  5. stop on ``done`` / ``error``, otherwise pick the next node and loop

Topology is hub-and-spoke: only the router fans out.  Every other node
returns to the router whatever non-terminal signal it emits, so at most one
specialist runs between two routing decisions.

    route(signal):
        route-to-X (X registered) → X
        done | error              → terminal
        anything else / unset     → router

Concurrency
-----------
Calls for the *same* thread are serialised with a per-thread lock held for
the whole read-latest → run → write-next sequence; different threads run in
parallel.  ``stream()`` holds the lock until the generator is exhausted or
closed.

Timeouts
--------
``node_timeout`` bounds one step, ``invoke_timeout`` the whole loop.  On
expiry the in-flight node's result is discarded (no checkpoint written) and
``WorkflowTimeoutError`` is raised; the last written checkpoint stays the
thread's durable state.

Hooks (observability)
---------------------
    engine.on("node_start", lambda thread_id, node_name, state: ...)
    engine.on("node_end",   lambda thread_id, node_name, signal, elapsed_s, state: ...)
    engine.on("node_error", lambda thread_id, node_name, exc: ...)
    engine.on("flow_end",   lambda thread_id, steps, state: ...)

Usage
-----
    engine = WorkflowEngine.from_settings(load_settings())
    thread = engine.threads.create("u1")
    engine.update_state(thread.id, {"user_profile": profile})
    final = engine.invoke(thread.id, {"conversation_history": [Message.user("build my resume")]})
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator

from cvgraph.checkpoint import CheckpointStore
from cvgraph.db import Database
from cvgraph.errors import IdentityError, MaxStepsExceeded, WorkflowTimeoutError
from cvgraph.logging import get_logger
from cvgraph.node import Node, Patch
from cvgraph.state import (
    ROUTER,
    BlackboardState,
    is_terminal,
    merge_state,
    target_of,
)
from cvgraph.threads import ThreadRegistry

if TYPE_CHECKING:
    from cvgraph.config import Settings
    from cvgraph.llm import ChatModel
    from cvgraph.retrieval import Retriever
    from cvgraph.runner import RunHandle

_log = get_logger("engine")

_VALID_HOOKS = {"node_start", "node_end", "node_error", "flow_end"}


@dataclass(frozen=True)
class StateSnapshot:
    """One entry of a thread's history, as returned by ``get_state_history``."""

    checkpoint_id: str
    parent_checkpoint_id: str | None
    state: BlackboardState
    step_metadata: dict[str, Any]
    created_at: str


class _ThreadLocks:
    """One lock per thread id, kept only while someone holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}   # thread_id -> [lock, users]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, thread_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(thread_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[thread_id]


class WorkflowEngine:
    """Execute the node graph for one thread at a time per thread id.

    Parameters
    ----------
    checkpoints :
        Where every merged state is persisted.
    threads :
        Optional registry; when set, each checkpoint write touches the thread
        and a new thread's ``user_id`` is taken from it.
    nodes :
        Nodes to register; the router (``entry``) must be among them before
        the first invocation.
    max_steps :
        Safety cap on loop iterations per invocation.
    invoke_timeout, node_timeout :
        Seconds; ``None`` disables the bound.
    """

    def __init__(
        self,
        checkpoints: CheckpointStore,
        threads: ThreadRegistry | None = None,
        nodes: Iterable[Node] = (),
        max_steps: int = 50,
        invoke_timeout: float | None = None,
        node_timeout: float | None = None,
        entry: str = ROUTER,
    ):
        self.checkpoints = checkpoints
        self.threads = threads
        self.max_steps = max_steps
        self.invoke_timeout = invoke_timeout
        self.node_timeout = node_timeout
        self.entry = entry
        self._nodes: dict[str, Node] = {}
        self._hooks: dict[str, list[Callable]] = {k: [] for k in _VALID_HOOKS}
        self._locks = _ThreadLocks()
        for node in nodes:
            self.add_node(node)

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        llm: "ChatModel | None" = None,
        retriever: "Retriever | None" = None,
    ) -> "WorkflowEngine":
        """Wire stores, the standard CV-builder nodes and limits from Settings."""
        from cvgraph.llm import LLMProvider
        from cvgraph.nodes import build_nodes

        db = Database(settings.db_path)
        return cls(
            checkpoints=CheckpointStore(db),
            threads=ThreadRegistry(db),
            nodes=build_nodes(llm or LLMProvider.from_settings(settings), retriever,
                              settings.retrieval_k),
            max_steps=settings.max_steps,
            invoke_timeout=settings.invoke_timeout,
            node_timeout=settings.node_timeout,
        )

    # ── Registry & routing ────────────────────────────────────────────────────

    def add_node(self, node: Node) -> "WorkflowEngine":
        if node.name in self._nodes:
            _log.warning("Overwriting node '%s'", node.name)
        self._nodes[node.name] = node
        return self

    @property
    def node_names(self) -> list[str]:
        return list(self._nodes)

    def route(self, signal: str | None) -> str | None:
        """Map a routing signal to the next node name; None means terminal."""
        if is_terminal(signal):
            return None
        target = target_of(signal)
        if target in self._nodes:
            return target
        if signal is not None:
            _log.warning("Unroutable signal %r → falling back to '%s'", signal, self.entry)
        return self.entry

    def next_node(self, current: str, signal: str | None) -> str | None:
        """Hub-and-spoke successor of *current* given the merged *signal*."""
        if is_terminal(signal):
            return None
        if current != self.entry:
            return self.entry
        return self.route(signal)

    # ── Hooks ─────────────────────────────────────────────────────────────────

    def on(self, event: str, callback: Callable) -> "WorkflowEngine":
        """Register *callback* for *event*.  Returns self for chaining."""
        if event not in _VALID_HOOKS:
            raise ValueError(f"Unknown hook event '{event}'. Valid: {_VALID_HOOKS}")
        self._hooks[event].append(callback)
        return self

    def _fire(self, event: str, *args) -> None:
        for cb in self._hooks[event]:
            try:
                cb(*args)
            except Exception as e:
                _log.warning("Hook '%s' raised: %s", event, e)

    # ── State access ──────────────────────────────────────────────────────────

    def get_state(self, thread_id: str, checkpoint_id: str | None = None) -> BlackboardState | None:
        """Latest (or a specific) persisted state of a thread; no node runs."""
        thread_id = self._resolve_thread(thread_id)
        if checkpoint_id is None:
            ckpt = self.checkpoints.get_latest(thread_id)
        else:
            ckpt = self.checkpoints.get(thread_id, checkpoint_id)
        return ckpt.state if ckpt else None

    def get_state_history(self, thread_id: str) -> Iterator[StateSnapshot]:
        """Newest-first snapshots of a thread, streamed from the store."""
        thread_id = self._resolve_thread(thread_id)
        for ckpt in self.checkpoints.list(thread_id):
            yield StateSnapshot(
                checkpoint_id=ckpt.checkpoint_id,
                parent_checkpoint_id=ckpt.parent_checkpoint_id,
                state=ckpt.state,
                step_metadata=ckpt.step_metadata,
                created_at=ckpt.created_at,
            )

    def update_state(
        self,
        thread_id: str,
        patch: Patch,
        *,
        as_node: str | None = None,
        initial_state: BlackboardState | None = None,
    ) -> str:
        """Merge *patch* and write a checkpoint without running any node.

        Returns the new checkpoint id.  Used for out-of-band corrections such
        as loading a profile before the first turn.
        """
        thread_id = self._resolve_thread(thread_id, patch)
        with self._locks.hold(thread_id):
            state, parent_id, step = self._load(thread_id, initial_state, None)
            state = merge_state(state, patch)
            checkpoint_id = self._persist(
                thread_id, parent_id, state,
                {"step": step + 1, "source": "update", "node": as_node, "writes": sorted(patch)},
            )
        _log.info("State updated  thread=%s  keys=%s", thread_id, sorted(patch))
        return checkpoint_id

    # ── Execution ─────────────────────────────────────────────────────────────

    def invoke(
        self,
        thread_id: str | None,
        input_patch: Patch | None = None,
        *,
        initial_state: BlackboardState | None = None,
        checkpoint_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BlackboardState | None:
        """Run the loop to a terminal signal and return the final state.

        Returns None only when cancelled before the first node ran.
        """
        final = None
        for final in self.stream(
            thread_id, input_patch,
            initial_state=initial_state,
            checkpoint_id=checkpoint_id,
            cancel_event=cancel_event,
        ):
            pass
        return final

    def stream(
        self,
        thread_id: str | None,
        input_patch: Patch | None = None,
        *,
        initial_state: BlackboardState | None = None,
        checkpoint_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[BlackboardState]:
        """Run the loop, yielding the merged state after every node.

        Parameters
        ----------
        thread_id :
            Conversation to run.  May instead be carried in
            ``input_patch["thread_id"]``; IdentityError if neither is set.
        input_patch :
            Merged into the loaded state before the router runs (typically a
            new user message).  Not checkpointed on its own: it lands in the
            first node's checkpoint.
        initial_state :
            Starting state when the thread has no checkpoint yet.  Defaults
            to ``BlackboardState.initial(thread_id, user_id)``.
        checkpoint_id :
            Resume from this earlier checkpoint instead of the latest; new
            checkpoints branch off it.
        cancel_event :
            Checked between nodes; when set the loop stops early.
        """
        # resolved here, not in the generator, so IdentityError surfaces at call time
        thread_id = self._resolve_thread(thread_id, input_patch)
        return self._stream(thread_id, input_patch or {}, initial_state, checkpoint_id, cancel_event)

    def _stream(
        self,
        thread_id: str,
        input_patch: Patch,
        initial_state: BlackboardState | None,
        checkpoint_id: str | None,
        cancel_event: threading.Event | None,
    ) -> Iterator[BlackboardState]:
        if self.entry not in self._nodes:
            raise ValueError(f"entry node '{self.entry}' is not registered")
        deadline = time.monotonic() + self.invoke_timeout if self.invoke_timeout else None

        with self._locks.hold(thread_id):
            state, parent_id, step = self._load(thread_id, initial_state, checkpoint_id)
            state = merge_state(state, {**input_patch, "routing_signal": None})
            current: str | None = self.entry
            iterations = 0
            flow_t0 = time.time()
            _log.info(
                "Invocation starting  thread=%s  parent=%s  step=%d",
                thread_id, parent_id or "—", step,
            )

            while current is not None:
                if cancel_event is not None and cancel_event.is_set():
                    _log.info("Invocation cancelled  thread=%s  before=%s", thread_id, current)
                    break
                if iterations >= self.max_steps:
                    raise MaxStepsExceeded(
                        f"thread {thread_id!r} exceeded max_steps={self.max_steps}"
                    )

                node = self._nodes[current]
                self._fire("node_start", thread_id, node.name, state)
                node_t0 = time.time()
                try:
                    patch = self._run_node(node, state, deadline)
                    state = merge_state(state, patch)
                    step += 1
                    parent_id = self._persist(
                        thread_id, parent_id, state,
                        {"step": step, "source": "loop", "node": node.name, "writes": sorted(patch)},
                    )
                except Exception as exc:
                    self._fire("node_error", thread_id, node.name, exc)
                    _log.error("Invocation aborted  thread=%s  node=%s: %s", thread_id, node.name, exc)
                    raise

                elapsed = time.time() - node_t0
                self._fire("node_end", thread_id, node.name, state.routing_signal, elapsed, state)
                iterations += 1
                yield state
                current = self.next_node(node.name, state.routing_signal)

            _log.info(
                "Invocation complete  thread=%s  steps=%d  signal=%s  total=%.2fs",
                thread_id, iterations, state.routing_signal, time.time() - flow_t0,
            )
            self._fire("flow_end", thread_id, iterations, state)

    def invoke_background(
        self,
        thread_id: str | None,
        input_patch: Patch | None = None,
        **kwargs: Any,
    ) -> "RunHandle":
        """Start ``invoke`` in a daemon thread and return a RunHandle immediately."""
        from cvgraph.runner import RunHandle

        thread_id = self._resolve_thread(thread_id, input_patch)
        done_event = threading.Event()
        cancel_event = threading.Event()
        stopped_event = threading.Event()
        result_box: list = []

        def _target():
            try:
                final = self.invoke(thread_id, input_patch, cancel_event=cancel_event, **kwargs)
                # the loop only ends on a terminal signal unless it was cancelled
                if final is None or not is_terminal(final.routing_signal):
                    stopped_event.set()
                result_box.append(final)
            except Exception as exc:
                result_box.append(exc)
            finally:
                done_event.set()

        worker = threading.Thread(target=_target, daemon=True, name=f"cvgraph-{thread_id}")
        worker.start()
        _log.info("Invocation started in background  thread=%s", thread_id)
        return RunHandle(thread_id, worker, done_event, result_box, cancel_event, stopped_event)

    # ── Internals ─────────────────────────────────────────────────────────────

    @staticmethod
    def _resolve_thread(thread_id: str | None, patch: Patch | None = None) -> str:
        linked = (patch or {}).get("thread_id")
        if thread_id and linked and linked != thread_id:
            raise IdentityError(f"thread id mismatch: {thread_id!r} vs patch {linked!r}")
        resolved = thread_id or linked
        if not resolved:
            raise IdentityError("thread_id is required")
        return resolved

    def _load(
        self,
        thread_id: str,
        initial_state: BlackboardState | None,
        checkpoint_id: str | None,
    ) -> tuple[BlackboardState, str | None, int]:
        """Return (state, parent checkpoint id, last step number)."""
        if checkpoint_id is not None:
            ckpt = self.checkpoints.get(thread_id, checkpoint_id)
            if ckpt is None:
                raise KeyError(f"No checkpoint {checkpoint_id!r} for thread {thread_id!r}")
        else:
            ckpt = self.checkpoints.get_latest(thread_id)

        if ckpt is not None:
            return ckpt.state, ckpt.checkpoint_id, int(ckpt.step_metadata.get("step", 0))

        if initial_state is not None:
            if initial_state.thread_id and initial_state.thread_id != thread_id:
                raise IdentityError(
                    f"initial state belongs to thread {initial_state.thread_id!r}, not {thread_id!r}"
                )
            state = merge_state(initial_state, {"thread_id": thread_id})
        else:
            user_id = ""
            if self.threads is not None:
                thread = self.threads.get(thread_id)
                user_id = thread.user_id if thread else ""
            state = BlackboardState.initial(thread_id, user_id)
        _log.debug("Fresh state  thread=%s  user=%s", thread_id, state.user_id or "—")
        return state, None, -1

    def _persist(
        self,
        thread_id: str,
        parent_id: str | None,
        state: BlackboardState,
        step_metadata: dict[str, Any],
    ) -> str:
        checkpoint_id = self.checkpoints.put(thread_id, parent_id, state, step_metadata)
        if self.threads is not None:
            self.threads.touch(thread_id)
        return checkpoint_id

    def _run_node(self, node: Node, state: BlackboardState, deadline: float | None) -> Patch:
        timeout = self.node_timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise WorkflowTimeoutError(
                    f"invocation timed out before node '{node.name}'", node.name
                )
            timeout = remaining if timeout is None else min(timeout, remaining)
        if timeout is None:
            return node.run(state)

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"cvgraph-{node.name}")
        future = executor.submit(node.run, state)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout as exc:
            raise WorkflowTimeoutError(
                f"node '{node.name}' exceeded {timeout:.2f}s; result discarded", node.name
            ) from exc
        finally:
            executor.shutdown(wait=False)
