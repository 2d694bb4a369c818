"""Session state and the single place operations are applied to it.

``apply_operations`` is pure: it returns a new SessionState with the
operations applied and appended to the log, leaving the input untouched.
Persisting the result (and bumping ``version``) is the store's job.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from flowforge.core.exceptions import InvalidOperationError
from flowforge.session.models import (
    PHASE_ORDER,
    Clarification,
    ClarificationExchange,
    ConfiguredNode,
    DiscoveredNode,
    IntentStep,
    Phase,
    ValidationResult,
    WorkflowGraph,
    WorkflowNode,
)
from flowforge.session.operations import (
    AddConnection,
    AddField,
    AddNode,
    AddStickyNote,
    AddValidationError,
    ClarificationResponse,
    CompletePhase,
    ConfigureNode,
    DeselectNode,
    DiscoverNode,
    Operation,
    OperationRecord,
    RemoveConnection,
    RemoveField,
    RenameNode,
    RequestClarification,
    SelectNode,
    SetConfigAnalysis,
    SetIntent,
    SetPhase,
    SetUserPrompt,
    SetWorkflow,
    SetWorkflowName,
    UpdateField,
    UpdateNodeConfig,
    UpdateWorkflowSettings,
    ValidateNode,
    operation_variants,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionState(BaseModel):
    """Everything a session holds between phases."""

    id: str
    phase: Phase = Phase.DISCOVERY
    user_prompt: str = ""
    discovered: list[DiscoveredNode] = Field(default_factory=list)
    selected: list[str] = Field(default_factory=list)
    configured: dict[str, ConfiguredNode] = Field(default_factory=dict)
    validated: dict[str, ValidationResult] = Field(default_factory=dict)
    workflow: WorkflowGraph = Field(default_factory=WorkflowGraph)
    pending_clarifications: list[Clarification] = Field(default_factory=list)
    clarification_history: list[ClarificationExchange] = Field(default_factory=list)
    intent: list[IntentStep] = Field(default_factory=list)
    completed_phases: list[Phase] = Field(default_factory=list)
    config_analysis: Optional[dict[str, Any]] = None
    operation_log: list[OperationRecord] = Field(default_factory=list)
    version: int = 0
    active: bool = True
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)

    def discovered_by_id(self, node_id: str) -> Optional[DiscoveredNode]:
        for node in self.discovered:
            if node.id == node_id:
                return node
        return None

    def selected_nodes(self) -> list[DiscoveredNode]:
        """Selected nodes in selection order."""
        by_id = {node.id: node for node in self.discovered}
        return [by_id[node_id] for node_id in self.selected if node_id in by_id]

    def unconfigured_nodes(self) -> list[DiscoveredNode]:
        return [node for node in self.selected_nodes() if node.id not in self.configured]

    @property
    def current_clarification(self) -> Optional[Clarification]:
        """First pending clarification, the one surfaced to the caller."""
        return self.pending_clarifications[0] if self.pending_clarifications else None

    def is_phase_completed(self, phase: Phase) -> bool:
        return phase in self.completed_phases


# ---------------------------------------------------------------------------
# Handlers: one per Operation variant, mutating a private copy of the state
# ---------------------------------------------------------------------------


def _discover_node(state: SessionState, op: DiscoverNode) -> None:
    for i, existing in enumerate(state.discovered):
        if existing.id == op.node.id:
            state.discovered[i] = op.node
            return
    state.discovered.append(op.node)


def _select_node(state: SessionState, op: SelectNode) -> None:
    if state.discovered_by_id(op.node_id) is None:
        raise InvalidOperationError(op.type, f"node '{op.node_id}' was never discovered")
    if op.node_id not in state.selected:
        state.selected.append(op.node_id)


def _deselect_node(state: SessionState, op: DeselectNode) -> None:
    if op.node_id in state.configured:
        raise InvalidOperationError(op.type, f"node '{op.node_id}' is already configured")
    if op.node_id in state.selected:
        state.selected.remove(op.node_id)


def _request_clarification(state: SessionState, op: RequestClarification) -> None:
    qid = op.clarification.question_id
    if any(c.question_id == qid for c in state.pending_clarifications):
        raise InvalidOperationError(op.type, f"question '{qid}' is already pending")
    state.pending_clarifications.append(op.clarification)


def _clarification_response(state: SessionState, op: ClarificationResponse) -> None:
    for i, pending in enumerate(state.pending_clarifications):
        if pending.question_id == op.question_id:
            state.pending_clarifications.pop(i)
            state.clarification_history.append(
                ClarificationExchange(question_id=op.question_id, question=pending.question, response=op.response)
            )
            return
    raise InvalidOperationError(op.type, f"no pending question '{op.question_id}'")


def _set_user_prompt(state: SessionState, op: SetUserPrompt) -> None:
    state.user_prompt = op.prompt


def _set_intent(state: SessionState, op: SetIntent) -> None:
    state.intent = list(op.steps)


def _configure_node(state: SessionState, op: ConfigureNode) -> None:
    if op.node.id not in state.selected:
        raise InvalidOperationError(op.type, f"node '{op.node.id}' is not selected")
    state.configured[op.node.id] = op.node


def _require_configured(state: SessionState, op_type: str, node_id: str) -> ConfiguredNode:
    node = state.configured.get(node_id)
    if node is None:
        raise InvalidOperationError(op_type, f"node '{node_id}' is not configured")
    return node


def _update_node_config(state: SessionState, op: UpdateNodeConfig) -> None:
    node = _require_configured(state, op.type, op.node_id)
    node.config = {**node.config, **op.config}


def _validate_node(state: SessionState, op: ValidateNode) -> None:
    node = _require_configured(state, op.type, op.node_id)
    state.validated[op.node_id] = op.result
    if op.result.valid:
        node.validated = True


def _add_validation_error(state: SessionState, op: AddValidationError) -> None:
    node = _require_configured(state, op.type, op.node_id)
    node.validation_errors.append(op.error)
    result = state.validated.setdefault(op.node_id, ValidationResult(valid=False))
    result.errors.append(op.error)


def _set_config_analysis(state: SessionState, op: SetConfigAnalysis) -> None:
    state.config_analysis = dict(op.analysis)


def _add_node(state: SessionState, op: AddNode) -> None:
    if op.node.name in state.workflow.node_names():
        raise InvalidOperationError(op.type, f"a node named '{op.node.name}' already exists")
    state.workflow.nodes.append(op.node)


def _edit_node_fields(state: SessionState, op_type: str, name: str, edit: Callable[[dict[str, Any]], None]) -> None:
    """Apply ``edit`` to the node's alias-keyed dict and re-validate it."""
    for i, node in enumerate(state.workflow.nodes):
        if node.name == name:
            data = node.model_dump(by_alias=True)
            edit(data)
            try:
                state.workflow.nodes[i] = WorkflowNode.model_validate(data)
            except ValueError as e:
                raise InvalidOperationError(op_type, f"edit leaves node '{name}' invalid: {e}") from e
            return
    raise InvalidOperationError(op_type, f"no node named '{name}'")


def _split_path(op_type: str, path: str) -> list[str]:
    parts = [p for p in path.split(".") if p]
    if not parts:
        raise InvalidOperationError(op_type, "empty field path")
    return parts


def _add_field(state: SessionState, op: AddField) -> None:
    parts = _split_path(op.type, op.path)

    def edit(data: dict[str, Any]) -> None:
        target = data
        for key in parts[:-1]:
            target = target.setdefault(key, {})
            if not isinstance(target, dict):
                raise InvalidOperationError(op.type, f"'{key}' in '{op.path}' is not an object")
        target[parts[-1]] = op.value

    _edit_node_fields(state, op.type, op.node, edit)


def _walk_to_parent(op_type: str, data: dict[str, Any], parts: list[str], path: str) -> dict[str, Any]:
    target = data
    for key in parts[:-1]:
        target = target.get(key)  # type: ignore[assignment]
        if not isinstance(target, dict):
            raise InvalidOperationError(op_type, f"field '{path}' does not exist")
    if parts[-1] not in target:
        raise InvalidOperationError(op_type, f"field '{path}' does not exist")
    return target


def _update_field(state: SessionState, op: UpdateField) -> None:
    parts = _split_path(op.type, op.path)

    def edit(data: dict[str, Any]) -> None:
        _walk_to_parent(op.type, data, parts, op.path)[parts[-1]] = op.value

    _edit_node_fields(state, op.type, op.node, edit)


def _remove_field(state: SessionState, op: RemoveField) -> None:
    parts = _split_path(op.type, op.path)

    def edit(data: dict[str, Any]) -> None:
        del _walk_to_parent(op.type, data, parts, op.path)[parts[-1]]

    _edit_node_fields(state, op.type, op.node, edit)


def _add_connection(state: SessionState, op: AddConnection) -> None:
    names = state.workflow.node_names()
    for end in (op.source, op.target):
        if end not in names:
            raise InvalidOperationError(op.type, f"no node named '{end}'")
    state.workflow.add_connection(op.source, op.target, op.source_output, op.target_input)


def _remove_connection(state: SessionState, op: RemoveConnection) -> None:
    if not state.workflow.remove_connection(op.source, op.target, op.source_output):
        raise InvalidOperationError(op.type, f"no connection {op.source}[{op.source_output}] -> {op.target}")


def _rename_node(state: SessionState, op: RenameNode) -> None:
    names = state.workflow.node_names()
    if op.old_name not in names:
        raise InvalidOperationError(op.type, f"no node named '{op.old_name}'")
    if op.new_name in names:
        raise InvalidOperationError(op.type, f"a node named '{op.new_name}' already exists")
    state.workflow.rename_node(op.old_name, op.new_name)


def _update_workflow_settings(state: SessionState, op: UpdateWorkflowSettings) -> None:
    state.workflow.settings = {**state.workflow.settings, **op.settings}


def _set_workflow_name(state: SessionState, op: SetWorkflowName) -> None:
    state.workflow.name = op.name


def _set_workflow(state: SessionState, op: SetWorkflow) -> None:
    state.workflow = op.workflow.model_copy(deep=True)


def _add_sticky_note(state: SessionState, op: AddStickyNote) -> None:
    for i, node in enumerate(state.workflow.nodes):
        if node.name == op.note.name:
            state.workflow.nodes[i] = op.note
            return
    state.workflow.nodes.append(op.note)


def _set_phase(state: SessionState, op: SetPhase) -> None:
    current = PHASE_ORDER.index(state.phase)
    target = PHASE_ORDER.index(op.phase)
    if target < current:
        raise InvalidOperationError(op.type, f"cannot move back from '{state.phase.value}' to '{op.phase.value}'")
    if target > current + 1:
        raise InvalidOperationError(
            op.type, f"cannot skip from '{state.phase.value}' to '{op.phase.value}'; phases advance one at a time"
        )
    if target != current and state.pending_clarifications:
        raise InvalidOperationError(op.type, "a clarification is still waiting for a response")
    state.phase = op.phase


def _complete_phase(state: SessionState, op: CompletePhase) -> None:
    if op.phase != state.phase:
        raise InvalidOperationError(op.type, f"'{op.phase.value}' is not the current phase '{state.phase.value}'")
    if op.phase not in state.completed_phases:
        state.completed_phases.append(op.phase)


_HANDLERS: dict[type[BaseModel], Callable[[SessionState, Any], None]] = {
    DiscoverNode: _discover_node,
    SelectNode: _select_node,
    DeselectNode: _deselect_node,
    RequestClarification: _request_clarification,
    ClarificationResponse: _clarification_response,
    SetUserPrompt: _set_user_prompt,
    SetIntent: _set_intent,
    ConfigureNode: _configure_node,
    UpdateNodeConfig: _update_node_config,
    ValidateNode: _validate_node,
    AddValidationError: _add_validation_error,
    SetConfigAnalysis: _set_config_analysis,
    AddNode: _add_node,
    AddField: _add_field,
    UpdateField: _update_field,
    RemoveField: _remove_field,
    AddConnection: _add_connection,
    RemoveConnection: _remove_connection,
    RenameNode: _rename_node,
    UpdateWorkflowSettings: _update_workflow_settings,
    SetWorkflowName: _set_workflow_name,
    SetWorkflow: _set_workflow,
    AddStickyNote: _add_sticky_note,
    SetPhase: _set_phase,
    CompletePhase: _complete_phase,
}

_missing = set(operation_variants()) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"Operation variants without a handler: {sorted(cls.__name__ for cls in _missing)}")


def apply_operation_in_place(state: SessionState, operation: Operation) -> None:
    """Apply one operation to ``state`` without logging it.

    Used by runners that edit a private working copy (the validation fix
    loop) before handing the same operations to the orchestrator.
    """
    handler = _HANDLERS.get(type(operation))
    if handler is None:
        raise InvalidOperationError(getattr(operation, "type", type(operation).__name__), "unknown operation type")
    handler(state, operation)


def apply_operations(state: SessionState, operations: list[Operation]) -> SessionState:
    """Apply operations to a copy of ``state`` and append them to its log.

    Args:
        state: Current session state (not modified)
        operations: Operations in application order

    Returns:
        New state with the operations applied and logged

    Raises:
        InvalidOperationError: If any operation is illegal for the state. No
            partial result is returned in that case.
    """
    new_state = state.model_copy(deep=True)

    for operation in operations:
        if new_state.phase == Phase.COMPLETE:
            raise InvalidOperationError(operation.type, "session is complete and immutable")

        phase_at_apply = new_state.phase
        apply_operation_in_place(new_state, operation)

        next_index = new_state.operation_log[-1].index + 1 if new_state.operation_log else 0
        new_state.operation_log.append(OperationRecord(index=next_index, phase=phase_at_apply, operation=operation))

    if operations:
        logger.debug(
            f"Applied {len(operations)} operations to session {state.id}",
            extra={"session_id": state.id, "phase": new_state.phase.value},
        )
    return new_state


def export_workflow(state: SessionState) -> dict[str, Any]:
    """Export the session workflow in n8n's JSON shape after checking it."""
    from flowforge.core.workflow_schema import validate_workflow

    data = state.workflow.to_n8n()
    validate_workflow(data)
    return data


def import_workflow(data: dict[str, Any]) -> WorkflowGraph:
    """Load an exported n8n workflow back into a WorkflowGraph."""
    from flowforge.core.workflow_schema import validate_workflow

    validate_workflow(data)
    return WorkflowGraph.model_validate(data)
