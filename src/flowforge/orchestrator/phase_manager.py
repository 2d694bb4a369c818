"""Phase transitions and the per-phase operation allowlist."""

import logging
from dataclasses import dataclass
from typing import Optional

from flowforge.session.models import PHASE_ORDER, Phase
from flowforge.session.state import SessionState

logger = logging.getLogger(__name__)

ALWAYS_ALLOWED = frozenset({"setPhase", "completePhase"})

PHASE_OPERATIONS: dict[Phase, frozenset[str]] = {
    Phase.DISCOVERY: frozenset(
        {
            "discoverNode",
            "selectNode",
            "deselectNode",
            "requestClarification",
            "clarificationResponse",
            "setUserPrompt",
            "setIntent",
        }
    ),
    Phase.CONFIGURATION: frozenset(
        {
            "setConfigAnalysis",
            "configureNode",
            "updateNodeConfig",
            "validateNode",
            "addValidationError",
            "setUserPrompt",
        }
    ),
    Phase.BUILDING: frozenset(
        {
            "setWorkflow",
            "setWorkflowName",
            "addNode",
            "addConnection",
            "updateWorkflowSettings",
            "setUserPrompt",
        }
    ),
    Phase.VALIDATION: frozenset(
        {
            "addField",
            "updateField",
            "removeField",
            "addConnection",
            "removeConnection",
            "addNode",
            "renameNode",
            "updateWorkflowSettings",
            "validateNode",
            "addValidationError",
            "setWorkflow",
            "setUserPrompt",
        }
    ),
    Phase.DOCUMENTATION: frozenset({"setWorkflow", "setWorkflowName", "addStickyNote", "setUserPrompt"}),
    Phase.COMPLETE: frozenset(),
}


@dataclass
class TransitionCheck:
    can_progress: bool
    auto_transition: bool
    next_phase: Optional[Phase] = None
    reason: Optional[str] = None


class PhaseManager:
    """Decides when a session may move to its next phase.

    Holds no state; every decision is a function of the SessionState.
    """

    def next_phase(self, phase: Phase) -> Optional[Phase]:
        index = PHASE_ORDER.index(phase)
        return PHASE_ORDER[index + 1] if index + 1 < len(PHASE_ORDER) else None

    def allowed_operations(self, phase: Phase) -> frozenset[str]:
        if phase == Phase.COMPLETE:
            return frozenset()
        return PHASE_OPERATIONS[phase] | ALWAYS_ALLOWED

    def is_operation_allowed(self, phase: Phase, operation_type: str) -> bool:
        return operation_type in self.allowed_operations(phase)

    def can_transition(self, state: SessionState) -> TransitionCheck:
        phase = state.phase

        if phase == Phase.COMPLETE:
            return TransitionCheck(can_progress=False, auto_transition=False, reason="Workflow already complete")

        if state.pending_clarifications:
            return TransitionCheck(
                can_progress=False, auto_transition=False, reason="Waiting for clarification response"
            )

        if not state.is_phase_completed(phase):
            return TransitionCheck(
                can_progress=False, auto_transition=False, reason=f"Phase '{phase.value}' has not completed"
            )

        reason = self._unmet_postcondition(state)
        if reason:
            return TransitionCheck(can_progress=False, auto_transition=False, reason=reason)

        return TransitionCheck(can_progress=True, auto_transition=True, next_phase=self.next_phase(phase))

    @staticmethod
    def _unmet_postcondition(state: SessionState) -> Optional[str]:
        if state.phase == Phase.DISCOVERY and not state.selected:
            return "No nodes selected"
        if state.phase == Phase.CONFIGURATION:
            remaining = len([node_id for node_id in state.selected if node_id not in state.configured])
            if remaining:
                return f"{remaining} nodes still need configuration"
        if state.phase == Phase.BUILDING and not state.workflow.nodes:
            return "No nodes in workflow"
        return None
