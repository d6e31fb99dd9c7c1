"""cvgraph runner — handle for an invocation running in a background thread.

Usage
-----
    handle = engine.invoke_background(thread_id, {"conversation_history": [msg]})

    # returns immediately; the loop runs in a daemon thread
    print(handle.status)        # "running"

    final_state = handle.wait(timeout=60)   # block until done
    print(handle.status)        # "completed"

    # cancel a running invocation (cooperative, checked between nodes)
    handle.cancel()
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cvgraph.state import BlackboardState

from cvgraph.logging import get_logger

_log = get_logger("runner")


class RunHandle:
    """Handle for an engine invocation running in a background thread.

    Returned by :meth:`WorkflowEngine.invoke_background`.  Do not instantiate
    directly.
    """

    def __init__(
        self,
        thread_id: str,
        worker: threading.Thread,
        done_event: threading.Event,
        result_box: list,
        cancel_event: threading.Event,
        stopped_event: threading.Event,
    ):
        self.thread_id = thread_id
        self._worker = worker
        self._done = done_event
        self._result_box = result_box   # list[BlackboardState | None | Exception], len 1 when done
        self._cancel = cancel_event
        self._stopped = stopped_event   # set only if the loop ended before a terminal signal

    def __repr__(self) -> str:
        return f"RunHandle(thread_id={self.thread_id!r}, status={self.status!r})"

    # ── Status ────────────────────────────────────────────────────────────────

    @property
    def status(self) -> str:
        """``"running"`` | ``"cancelled"`` | ``"failed"`` | ``"completed"``."""
        if not self._done.is_set():
            return "running"
        result = self._result_box[0] if self._result_box else None
        if isinstance(result, Exception):
            return "failed"
        if self._stopped.is_set():
            return "cancelled"
        return "completed"

    @property
    def is_done(self) -> bool:
        return self._done.is_set()

    # ── Control ───────────────────────────────────────────────────────────────

    def wait(self, timeout: float | None = None) -> "BlackboardState | None":
        """Block until the invocation finishes and return the final state.

        Raises
        ------
        TimeoutError
            If *timeout* elapses first.  The invocation keeps running.
        Exception
            Re-raises whatever the invocation raised.
        """
        if not self._done.wait(timeout=timeout):
            raise TimeoutError(
                f"Invocation for thread '{self.thread_id}' did not complete within {timeout}s"
            )
        result = self._result_box[0]
        if isinstance(result, Exception):
            raise result
        return result

    def cancel(self) -> None:
        """Request cancellation; the loop stops before its next node."""
        _log.info("Cancel requested  thread=%s", self.thread_id)
        self._cancel.set()
