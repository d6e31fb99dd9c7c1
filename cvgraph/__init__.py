"""cvgraph — durable, resumable workflow engine for a CV-builder assistant.

Specialised nodes share one blackboard state:
  every node is a nano-ETL unit  →  prep | exec | post → patch
  patches merge via a fixed reducer table  →  append or replace, per field
  every step is a parent-linked checkpoint  →  resumable, inspectable, forkable

Public API
----------
from cvgraph import WorkflowEngine, Node, BlackboardState, Message
"""

from cvgraph.state      import Artifact, BlackboardState, Message, merge_state, route_to
from cvgraph.node       import AsyncNode, FunctionNode, Node
from cvgraph.checkpoint import Checkpoint, CheckpointStore
from cvgraph.threads    import Thread, ThreadRegistry
from cvgraph.engine     import StateSnapshot, WorkflowEngine
from cvgraph.runner     import RunHandle
from cvgraph.config     import Settings, load_settings
from cvgraph.errors     import (
    CVGraphError,
    IdentityError,
    MaxStepsExceeded,
    NodeExecutionError,
    PersistenceError,
    RoutingAmbiguityError,
    StateValidationError,
    WorkflowTimeoutError,
)

__all__ = [
    "Artifact", "BlackboardState", "Message", "merge_state", "route_to",
    "AsyncNode", "FunctionNode", "Node",
    "Checkpoint", "CheckpointStore", "Thread", "ThreadRegistry",
    "StateSnapshot", "WorkflowEngine", "RunHandle",
    "Settings", "load_settings",
    "CVGraphError", "IdentityError", "MaxStepsExceeded", "NodeExecutionError",
    "PersistenceError", "RoutingAmbiguityError", "StateValidationError",
    "WorkflowTimeoutError",
]
__version__ = "0.1.0"
