"""cvgraph Node — one named computation step over the blackboard.

Design
------
Every Node is a three-phase processing unit:

    prep(state)              → Extract: read what this node needs from the state
    exec(prep_result)        → Transform: do the work (LLM call, retrieval, …)
    post(state, prep, exec)  → Load: build the patch, choose the routing signal

Unlike a mutating store, the state handed to a node is immutable: ``post``
*returns* a patch dict which the engine merges with the reducer table.

Contract enforced by ``Node.run``
---------------------------------
  • the returned patch always carries ``active_node = <node name>``
  • ``routing_signal`` is always set (``done`` when the node leaves it out)
  • nodes never raise: any exception from prep/exec/post, or a patch that
    fails schema validation, becomes an error patch — an assistant message
    describing the failure plus ``routing_signal = "error"``

Retry
-----
Set max_retries > 1 on any Node to automatically retry exec() on exception.
The node is NOT re-run from prep() — only exec() is retried.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from cvgraph.errors import NodeExecutionError, StateValidationError
from cvgraph.logging import get_logger
from cvgraph.state import (
    DONE,
    ERROR,
    BlackboardState,
    Message,
    is_valid_signal,
    validate_patch,
)

_log = get_logger("node")

Patch = dict[str, Any]


def error_patch(node_name: str, exc: BaseException) -> Patch:
    """Patch describing a failed step: a user-visible message and ``error``."""
    return {
        "conversation_history": [
            Message.assistant(f"Error in {node_name}: {exc}", name=node_name)
        ],
        "active_node": node_name,
        "routing_signal": ERROR,
    }


class Node(ABC):
    """Base class for all synchronous cvgraph nodes.

    Subclass and implement at minimum exec() and post().

    Attributes
    ----------
    name :
        Registry key and value written to ``active_node``.  Defaults to the
        class attribute ``name`` or the class name.
    max_retries :
        How many times to attempt exec() before giving up.  Default 1.
    retry_delay :
        Seconds to wait between retries.  Default 0.
    """

    name: str = ""
    max_retries: int = 1
    retry_delay: float = 0.0

    def __init__(self, name: str | None = None):
        self.name = name or self.name or self.__class__.__name__

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def prep(self, state: BlackboardState) -> Any:
        """Extract inputs from the blackboard.  Override as needed."""
        return state

    @abstractmethod
    def exec(self, prep_result: Any) -> Any:
        """Transform: do the actual work.  Must not touch the state."""

    @abstractmethod
    def post(self, state: BlackboardState, prep_result: Any, exec_result: Any) -> Patch:
        """Load: return the patch for this step, including ``routing_signal``."""

    # ── Runtime (called by the engine) ────────────────────────────────────────

    def run(self, state: BlackboardState) -> Patch:
        """Execute prep → exec (with retries) → post and return a valid patch.

        Never raises for failures inside the node; see module docstring.
        """
        t0 = time.time()
        _log.info("→ Node '%s' starting", self.name)
        try:
            prep_result = self.prep(state)
            exec_result = self._exec_with_retry(prep_result)
            patch = self.post(state, prep_result, exec_result)
            patch = self._finalise(state, patch)
        except Exception as exc:
            _log.error("Node '%s' failed: %s", self.name, exc)
            return error_patch(self.name, exc)

        _log.info(
            "← Node '%s' done  signal='%s'  %.2fs",
            self.name, patch["routing_signal"], time.time() - t0,
        )
        return patch

    def _exec_with_retry(self, prep_result: Any) -> Any:
        last_exc: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return self.exec(prep_result)
            except Exception as exc:
                last_exc = exc
                if attempt < self.max_retries:
                    _log.warning(
                        "Node '%s' exec attempt %d/%d failed: %s — retrying in %.1fs",
                        self.name, attempt, self.max_retries, exc, self.retry_delay,
                    )
                    if self.retry_delay > 0:
                        time.sleep(self.retry_delay)
        raise NodeExecutionError(
            f"{last_exc} (after {self.max_retries} attempt(s))", node_name=self.name
        ) from last_exc

    def _finalise(self, state: BlackboardState, patch: Patch | None) -> Patch:
        if patch is None:
            patch = {}
        if not isinstance(patch, dict):
            raise NodeExecutionError(
                f"post() must return a dict, got {type(patch).__name__}", node_name=self.name
            )
        patch = dict(patch)
        patch["active_node"] = self.name
        signal = patch.setdefault("routing_signal", DONE)
        if not is_valid_signal(signal):
            raise NodeExecutionError(f"invalid routing signal {signal!r}", node_name=self.name)
        try:
            return validate_patch(patch, state)
        except StateValidationError as exc:
            raise NodeExecutionError(f"invalid patch: {exc}", node_name=self.name) from exc


class AsyncNode(Node, ABC):
    """Base class for nodes whose exec step is asynchronous.

    Subclass and implement exec_async() instead of exec().
    The runtime calls exec_async() via asyncio.run() so the engine stays
    synchronous.  Use asyncio.gather() inside exec_async() for parallel
    sub-calls (e.g. several retrievers at once).
    """

    @abstractmethod
    async def exec_async(self, prep_result: Any) -> Any:
        """Async transform step.  Implement this instead of exec()."""

    def exec(self, prep_result: Any) -> Any:
        """Runs exec_async() on a new event loop.  Do not override."""
        return asyncio.run(self.exec_async(prep_result))


class FunctionNode(Node):
    """Wrap a plain ``fn(state) -> patch`` callable as a Node.

    Handy for stubs and small glue steps:

        engine.add_node(FunctionNode("router", lambda s: {"routing_signal": "done"}))
    """

    def __init__(self, name: str, fn: Callable[[BlackboardState], Patch]):
        super().__init__(name)
        self._fn = fn

    def exec(self, state: BlackboardState) -> Patch:
        return self._fn(state)

    def post(self, state: BlackboardState, prep_result: Any, exec_result: Patch) -> Patch:
        return exec_result
