"""cvgraph error taxonomy.

Which errors cross which boundary
---------------------------------
IdentityError        — missing thread id; raised straight to the caller.
PersistenceError     — store / registry read or write failed; propagates out
                       of the engine loop, fatal to the current invocation.
NodeExecutionError   — raised inside a node; the node runtime turns it into a
                       ``routing_signal = "error"`` patch, so it never reaches
                       the engine.
StateValidationError — a patch that does not fit the blackboard schema.
RoutingAmbiguityError— model output without a recognisable routing signal;
                       resolved to ``router``.
WorkflowTimeoutError — per-node or per-invocation deadline exceeded.
MaxStepsExceeded     — loop safety cap hit.
"""

from __future__ import annotations


class CVGraphError(Exception):
    """Base class for every error raised by cvgraph."""


class IdentityError(CVGraphError, ValueError):
    """A thread id is required but was empty or missing."""


class PersistenceError(CVGraphError):
    """The checkpoint store or thread registry could not read or write."""


class StateValidationError(CVGraphError, ValueError):
    """A state patch names an unknown field, has a wrong type, or rewrites an identity tag."""


class NodeExecutionError(CVGraphError):
    """A node could not complete its step.

    Raised inside ``Node.exec`` / ``Node.post``; converted into an error patch
    by the node runtime.
    """

    def __init__(self, message: str, node_name: str = ""):
        super().__init__(message)
        self.node_name = node_name


class RoutingAmbiguityError(CVGraphError):
    """Model output carried no recognisable routing signal."""


class WorkflowTimeoutError(CVGraphError, TimeoutError):
    """A node or a whole invocation ran past its deadline."""

    def __init__(self, message: str, node_name: str | None = None):
        super().__init__(message)
        self.node_name = node_name


class MaxStepsExceeded(CVGraphError, RuntimeError):
    """The execution loop ran more iterations than ``max_steps`` allows."""
