"""Tests for phase transitions and the operation allowlist."""

import pytest

from flowforge.orchestrator import PhaseManager
from flowforge.session.models import (
    PHASE_ORDER,
    Clarification,
    ConfiguredNode,
    Phase,
    WorkflowGraph,
    WorkflowNode,
)
from flowforge.session.state import SessionState


@pytest.fixture
def manager():
    return PhaseManager()


def _state(phase: Phase = Phase.DISCOVERY, completed: bool = True, **kwargs) -> SessionState:
    return SessionState(id="s1", phase=phase, completed_phases=[phase] if completed else [], **kwargs)


class TestPhaseOrder:
    def test_next_phase_follows_order(self, manager) -> None:
        for current, following in zip(PHASE_ORDER, PHASE_ORDER[1:]):
            assert manager.next_phase(current) == following

    def test_complete_is_terminal(self, manager) -> None:
        assert manager.next_phase(Phase.COMPLETE) is None


class TestAllowlist:
    def test_phase_operations(self, manager) -> None:
        assert manager.is_operation_allowed(Phase.DISCOVERY, "selectNode")
        assert not manager.is_operation_allowed(Phase.DISCOVERY, "configureNode")
        assert manager.is_operation_allowed(Phase.VALIDATION, "renameNode")
        assert not manager.is_operation_allowed(Phase.BUILDING, "addStickyNote")
        assert manager.is_operation_allowed(Phase.DOCUMENTATION, "addStickyNote")

    def test_phase_control_is_always_allowed(self, manager) -> None:
        for phase in PHASE_ORDER[:-1]:
            assert manager.is_operation_allowed(phase, "completePhase")
            assert manager.is_operation_allowed(phase, "setPhase")

    def test_complete_allows_nothing(self, manager) -> None:
        assert manager.allowed_operations(Phase.COMPLETE) == frozenset()

    def test_prompt_can_change_before_completion(self, manager) -> None:
        for phase in PHASE_ORDER[:-1]:
            assert manager.is_operation_allowed(phase, "setUserPrompt")


class TestCanTransition:
    def test_complete_session(self, manager) -> None:
        check = manager.can_transition(_state(Phase.COMPLETE))
        assert not check.can_progress
        assert check.reason == "Workflow already complete"

    def test_pending_clarification_blocks(self, manager) -> None:
        state = _state(
            selected=["a"], pending_clarifications=[Clarification(question_id="q_1", question="Which channel?")]
        )
        check = manager.can_transition(state)
        assert not check.can_progress
        assert check.reason == "Waiting for clarification response"

    def test_phase_must_be_completed(self, manager) -> None:
        check = manager.can_transition(_state(completed=False, selected=["a"]))
        assert check.reason == "Phase 'discovery' has not completed"

    def test_discovery_needs_selection(self, manager) -> None:
        assert manager.can_transition(_state()).reason == "No nodes selected"

    def test_configuration_needs_every_node(self, manager) -> None:
        state = _state(
            Phase.CONFIGURATION,
            selected=["a", "b", "c"],
            configured={"a": ConfiguredNode(id="a", type="n8n-nodes-base.set")},
        )
        assert manager.can_transition(state).reason == "2 nodes still need configuration"

    def test_building_needs_nodes(self, manager) -> None:
        assert manager.can_transition(_state(Phase.BUILDING)).reason == "No nodes in workflow"

    def test_ready_to_progress(self, manager) -> None:
        check = manager.can_transition(_state(selected=["a"]))

        assert check.can_progress
        assert check.auto_transition
        assert check.next_phase == Phase.CONFIGURATION
        assert check.reason is None

    def test_documentation_leads_to_complete(self, manager) -> None:
        graph = WorkflowGraph(nodes=[WorkflowNode(id="a", name="a", type="n8n-nodes-base.set")])
        check = manager.can_transition(_state(Phase.DOCUMENTATION, workflow=graph))
        assert check.next_phase == Phase.COMPLETE
