"""Operation variants: the atomic state deltas recorded in a session's log.

``Operation`` is a closed union discriminated on ``type``. Every variant has
exactly one handler in ``flowforge.session.state``; adding a variant without a
handler fails at import time.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union, get_args

from pydantic import BaseModel, Field, TypeAdapter

from flowforge.session.models import (
    Clarification,
    ConfiguredNode,
    DiscoveredNode,
    IntentStep,
    Phase,
    ValidationResult,
    WorkflowGraph,
    WorkflowNode,
)

# Discovery


class DiscoverNode(BaseModel):
    type: Literal["discoverNode"] = "discoverNode"
    node: DiscoveredNode


class SelectNode(BaseModel):
    type: Literal["selectNode"] = "selectNode"
    node_id: str


class DeselectNode(BaseModel):
    type: Literal["deselectNode"] = "deselectNode"
    node_id: str


class RequestClarification(BaseModel):
    type: Literal["requestClarification"] = "requestClarification"
    clarification: Clarification


class ClarificationResponse(BaseModel):
    type: Literal["clarificationResponse"] = "clarificationResponse"
    question_id: str
    response: str


class SetUserPrompt(BaseModel):
    type: Literal["setUserPrompt"] = "setUserPrompt"
    prompt: str


class SetIntent(BaseModel):
    type: Literal["setIntent"] = "setIntent"
    steps: list[IntentStep]


# Configuration


class ConfigureNode(BaseModel):
    type: Literal["configureNode"] = "configureNode"
    node: ConfiguredNode


class UpdateNodeConfig(BaseModel):
    type: Literal["updateNodeConfig"] = "updateNodeConfig"
    node_id: str
    config: dict[str, Any]


class ValidateNode(BaseModel):
    type: Literal["validateNode"] = "validateNode"
    node_id: str
    result: ValidationResult


class AddValidationError(BaseModel):
    type: Literal["addValidationError"] = "addValidationError"
    node_id: str
    error: str


class SetConfigAnalysis(BaseModel):
    type: Literal["setConfigAnalysis"] = "setConfigAnalysis"
    analysis: dict[str, Any]


# Graph edits. Nodes are addressed by name, matching n8n connections.


class AddNode(BaseModel):
    type: Literal["addNode"] = "addNode"
    node: WorkflowNode


class AddField(BaseModel):
    type: Literal["addField"] = "addField"
    node: str
    path: str = Field(description="Dotted path inside the node, e.g. 'parameters.channelId'")
    value: Any = None


class UpdateField(BaseModel):
    type: Literal["updateField"] = "updateField"
    node: str
    path: str
    value: Any = None


class RemoveField(BaseModel):
    type: Literal["removeField"] = "removeField"
    node: str
    path: str


class AddConnection(BaseModel):
    type: Literal["addConnection"] = "addConnection"
    source: str
    target: str
    source_output: int = Field(default=0, ge=0)
    target_input: int = Field(default=0, ge=0)


class RemoveConnection(BaseModel):
    type: Literal["removeConnection"] = "removeConnection"
    source: str
    target: str
    source_output: int = Field(default=0, ge=0)


class RenameNode(BaseModel):
    type: Literal["renameNode"] = "renameNode"
    old_name: str
    new_name: str


class UpdateWorkflowSettings(BaseModel):
    type: Literal["updateWorkflowSettings"] = "updateWorkflowSettings"
    settings: dict[str, Any]


class SetWorkflowName(BaseModel):
    type: Literal["setWorkflowName"] = "setWorkflowName"
    name: str


class SetWorkflow(BaseModel):
    type: Literal["setWorkflow"] = "setWorkflow"
    workflow: WorkflowGraph


class AddStickyNote(BaseModel):
    type: Literal["addStickyNote"] = "addStickyNote"
    note: WorkflowNode
    visual_phase: str
    node_ids: list[str] = Field(default_factory=list)


# Control


class SetPhase(BaseModel):
    type: Literal["setPhase"] = "setPhase"
    phase: Phase


class CompletePhase(BaseModel):
    type: Literal["completePhase"] = "completePhase"
    phase: Phase


Operation = Annotated[
    Union[
        DiscoverNode,
        SelectNode,
        DeselectNode,
        RequestClarification,
        ClarificationResponse,
        SetUserPrompt,
        SetIntent,
        ConfigureNode,
        UpdateNodeConfig,
        ValidateNode,
        AddValidationError,
        SetConfigAnalysis,
        AddNode,
        AddField,
        UpdateField,
        RemoveField,
        AddConnection,
        RemoveConnection,
        RenameNode,
        UpdateWorkflowSettings,
        SetWorkflowName,
        SetWorkflow,
        AddStickyNote,
        SetPhase,
        CompletePhase,
    ],
    Field(discriminator="type"),
]

# Structural edits the validation fix loop may request from the LLM
FixOperation = Annotated[
    Union[
        AddField,
        UpdateField,
        RemoveField,
        AddConnection,
        RemoveConnection,
        AddNode,
        RenameNode,
        UpdateWorkflowSettings,
    ],
    Field(discriminator="type"),
]

OPERATION_ADAPTER: TypeAdapter = TypeAdapter(Operation)
FIX_OPERATION_ADAPTER: TypeAdapter = TypeAdapter(FixOperation)


def operation_variants() -> tuple[type[BaseModel], ...]:
    """Return every model class in the Operation union."""
    return get_args(get_args(Operation)[0])


def operation_types() -> set[str]:
    """Return the ``type`` tag of every Operation variant."""
    return {variant.model_fields["type"].default for variant in operation_variants()}


class OperationRecord(BaseModel):
    """One entry of the append-only operation log."""

    index: int
    phase: Phase
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    operation: Operation
