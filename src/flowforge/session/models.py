"""Pydantic models for session state and the n8n workflow graph.

Graph models serialize with n8n's camelCase keys (``typeVersion``,
``onError``) through field aliases, so ``model_dump(by_alias=True)`` is the
exact export format.
"""

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_WORKFLOW_SETTINGS: dict[str, Any] = {
    "executionOrder": "v1",
    "saveDataSuccessExecution": "all",
    "saveDataErrorExecution": "all",
    "saveManualExecutions": True,
}

STICKY_NOTE_TYPE = "n8n-nodes-base.stickyNote"
NOOP_TYPE = "n8n-nodes-base.noOp"


class Phase(str, Enum):
    """Pipeline phases in execution order."""

    DISCOVERY = "discovery"
    CONFIGURATION = "configuration"
    BUILDING = "building"
    VALIDATION = "validation"
    DOCUMENTATION = "documentation"
    COMPLETE = "complete"


PHASE_ORDER: list[Phase] = [
    Phase.DISCOVERY,
    Phase.CONFIGURATION,
    Phase.BUILDING,
    Phase.VALIDATION,
    Phase.DOCUMENTATION,
    Phase.COMPLETE,
]


class DiscoveredNode(BaseModel):
    """A candidate node found during Discovery."""

    id: str
    type: str
    purpose: str = ""
    category: Optional[str] = None
    is_pre_configured: bool = False
    config: Optional[dict[str, Any]] = None
    step_id: Optional[str] = None
    relevance: Optional[float] = None

    @model_validator(mode="after")
    def check_template_config(self) -> "DiscoveredNode":
        """Pre-configured nodes always carry their template configuration."""
        if self.is_pre_configured and self.config is None:
            raise ValueError(f"Pre-configured node '{self.id}' has no template config")
        return self


class ValidationResult(BaseModel):
    """Outcome of validating a single node."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ConfiguredNode(BaseModel):
    """A node with parameters produced by the Configuration phase."""

    id: str
    type: str
    purpose: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    validated: bool = False
    validation_errors: list[str] = Field(default_factory=list)
    category: Optional[str] = None
    step_id: Optional[str] = None
    replaced_type: Optional[str] = None


class Clarification(BaseModel):
    """A question the pipeline needs answered before it can continue."""

    question_id: str
    question: str
    context: str = ""
    suggestions: list[str] = Field(default_factory=list)


class ClarificationExchange(BaseModel):
    """An answered clarification kept for the audit trail."""

    question_id: str
    question: str
    response: str


class IntentStep(BaseModel):
    """One logical step of the data flow found by intent analysis.

    ``after`` lists predecessor step ids. ``output`` is the output slot of
    the predecessor feeding this step (0 = IF true branch, 1 = false branch).
    """

    id: str
    description: str = ""
    task: Optional[str] = None
    capability: Optional[str] = None
    after: list[str] = Field(default_factory=list)
    output: int = Field(default=0, ge=0)


class ConnectionTarget(BaseModel):
    """Target end of an n8n connection."""

    node: str
    type: str = "main"
    index: int = 0


class WorkflowNode(BaseModel):
    """A node in the exported n8n workflow graph."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    name: str
    type: str
    type_version: Union[int, float] = Field(default=1, alias="typeVersion")
    position: list[float] = Field(default_factory=lambda: [0, 0], min_length=2, max_length=2)
    parameters: dict[str, Any] = Field(default_factory=dict)
    category: Optional[str] = None
    on_error: Optional[str] = Field(default=None, alias="onError")
    notes: Optional[str] = None
    credentials: Optional[dict[str, Any]] = None

    @property
    def is_sticky_note(self) -> bool:
        return self.type == STICKY_NOTE_TYPE


Connections = dict[str, dict[str, list[list[ConnectionTarget]]]]


class WorkflowGraph(BaseModel):
    """n8n workflow: nodes addressed by unique name plus typed connections."""

    name: str = ""
    nodes: list[WorkflowNode] = Field(default_factory=list)
    connections: Connections = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=lambda: dict(DEFAULT_WORKFLOW_SETTINGS))

    def node_by_name(self, name: str) -> Optional[WorkflowNode]:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def node_names(self) -> set[str]:
        return {node.name for node in self.nodes}

    def add_connection(self, source: str, target: str, source_output: int = 0, target_input: int = 0) -> None:
        """Connect ``source`` output slot to ``target`` input, padding empty slots."""
        slots = self.connections.setdefault(source, {}).setdefault("main", [])
        while len(slots) <= source_output:
            slots.append([])
        link = ConnectionTarget(node=target, index=target_input)
        if link not in slots[source_output]:
            slots[source_output].append(link)

    def remove_connection(self, source: str, target: str, source_output: int = 0) -> bool:
        """Remove a connection. Returns False when it did not exist."""
        slots = self.connections.get(source, {}).get("main", [])
        if source_output >= len(slots):
            return False
        before = len(slots[source_output])
        slots[source_output] = [link for link in slots[source_output] if link.node != target]
        removed = len(slots[source_output]) != before
        if not any(slots):
            self.connections.pop(source, None)
        return removed

    def iter_connections(self) -> list[tuple[str, int, ConnectionTarget]]:
        """Flatten connections into (source, output slot, target) triples."""
        flat = []
        for source, outputs in self.connections.items():
            for slot_index, slot in enumerate(outputs.get("main", [])):
                for link in slot:
                    flat.append((source, slot_index, link))
        return flat

    def connection_count(self) -> int:
        return len(self.iter_connections())

    def predecessors(self, name: str) -> list[tuple[str, int]]:
        """Return (source name, output slot) pairs feeding ``name``."""
        return [(source, slot) for source, slot, link in self.iter_connections() if link.node == name]

    def rename_node(self, old: str, new: str) -> None:
        node = self.node_by_name(old)
        if node is None:
            raise KeyError(old)
        node.name = new
        if old in self.connections:
            self.connections[new] = self.connections.pop(old)
        for _, _, link in self.iter_connections():
            if link.node == old:
                link.node = new

    def to_n8n(self) -> dict[str, Any]:
        """Export in n8n's JSON shape."""
        return self.model_dump(by_alias=True, exclude_none=True)
