"""Session state: the operation log, derived state, and its stores."""

from .models import (
    PHASE_ORDER,
    Clarification,
    ConfiguredNode,
    DiscoveredNode,
    IntentStep,
    Phase,
    ValidationResult,
    WorkflowGraph,
    WorkflowNode,
)
from .state import SessionState, apply_operations, export_workflow, import_workflow
from .store import FileSessionStore, InMemorySessionStore, SessionStore

__all__ = [
    "PHASE_ORDER",
    "Clarification",
    "ConfiguredNode",
    "DiscoveredNode",
    "FileSessionStore",
    "InMemorySessionStore",
    "IntentStep",
    "Phase",
    "SessionState",
    "SessionStore",
    "ValidationResult",
    "WorkflowGraph",
    "WorkflowNode",
    "apply_operations",
    "export_workflow",
    "import_workflow",
]
