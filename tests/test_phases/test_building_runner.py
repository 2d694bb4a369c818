"""Tests for the Building phase: names, connections, positions."""

import asyncio

import pytest

from flowforge.core.exceptions import BuildError
from flowforge.phases.building import (
    BuildingRunner,
    assign_names,
    build_graph,
    compute_positions,
    error_mode,
    plan_links,
    workflow_name,
)
from flowforge.planning.error_handler import ErrorType
from flowforge.session.models import ConfiguredNode, IntentStep, Phase
from flowforge.session.operations import CompletePhase, SetWorkflow, SetWorkflowName
from flowforge.session.state import SessionState


def _node(node_id, node_type, category=None, step_id=None, **config) -> ConfiguredNode:
    return ConfiguredNode(
        id=node_id,
        type=node_type,
        category=category,
        step_id=step_id,
        validated=True,
        config={"parameters": {}, **config},
    )


ORDER_NODES = [
    _node("task_receive_webhook", "n8n-nodes-base.webhook", "trigger", "s1", typeVersion=2),
    _node("task_send_slack_message", "n8n-nodes-base.slack", "output", "s3"),
    _node("task_send_email", "n8n-nodes-base.emailSend", "output", "s4"),
    _node("search_1", "n8n-nodes-base.if", "transform", "s2", typeVersion=2),
]

ORDER_STEPS = [
    IntentStep(id="s1", task="receive_webhook"),
    IntentStep(id="s2", capability="Check Amount", after=["s1"]),
    IntentStep(id="s3", task="send_slack_message", after=["s2"], output=0),
    IntentStep(id="s4", task="send_email", after=["s2"], output=1),
]


def _state(nodes=ORDER_NODES, steps=ORDER_STEPS, prompt="Route orders by amount") -> SessionState:
    return SessionState(
        id="s1",
        phase=Phase.BUILDING,
        user_prompt=prompt,
        selected=[node.id for node in nodes],
        configured={node.id: node for node in nodes},
        intent=list(steps),
    )


class TestBuildGraph:
    """The order scenario: webhook -> IF -> Slack (true) / email (false)."""

    def test_names_are_type_based(self) -> None:
        graph = build_graph(_state())
        assert [node.name for node in graph.nodes] == ["webhook", "slack", "emailSend", "if"]

    def test_node_ids_are_configured_ids(self) -> None:
        graph = build_graph(_state())
        assert graph.node_by_name("if").id == "search_1"

    def test_branch_connections(self) -> None:
        graph = build_graph(_state())

        assert graph.predecessors("if") == [("webhook", 0)]
        assert graph.predecessors("slack") == [("if", 0)]
        assert graph.predecessors("emailSend") == [("if", 1)]
        assert graph.connection_count() == 3

    def test_error_modes(self) -> None:
        graph = build_graph(_state())

        modes = {node.name: node.on_error for node in graph.nodes}
        assert modes == {
            "webhook": "stopWorkflow",
            "slack": "continueErrorOutput",
            "emailSend": "continueErrorOutput",
            "if": "continueRegularOutput",
        }

    def test_type_versions_and_positions(self) -> None:
        graph = build_graph(_state())

        assert graph.node_by_name("webhook").type_version == 2
        assert graph.node_by_name("slack").type_version == 1
        assert graph.node_by_name("webhook").position == [250, 300]
        assert graph.node_by_name("if").position == [550, 300]
        assert graph.node_by_name("slack").position == [850, 300]
        assert graph.node_by_name("emailSend").position == [850, 500]

    def test_explicit_on_error_is_kept(self) -> None:
        nodes = [_node("a", "n8n-nodes-base.webhook", "trigger", onError="continueRegularOutput")]
        graph = build_graph(_state(nodes=nodes, steps=[]))
        assert graph.nodes[0].on_error == "continueRegularOutput"

    def test_chain_without_plan_puts_trigger_first(self) -> None:
        nodes = [
            _node("b", "n8n-nodes-base.slack", "output"),
            _node("a", "n8n-nodes-base.scheduleTrigger", "trigger"),
            _node("c", "n8n-nodes-base.set", "transform"),
        ]

        graph = build_graph(_state(nodes=nodes, steps=[]))

        assert [node.name for node in graph.nodes] == ["scheduleTrigger", "slack", "set"]
        assert graph.predecessors("slack") == [("scheduleTrigger", 0)]
        assert graph.predecessors("set") == [("slack", 0)]

    def test_unvalidated_node_is_rejected(self) -> None:
        nodes = [ORDER_NODES[0].model_copy(update={"validated": False})]
        with pytest.raises(BuildError, match="not validated"):
            build_graph(_state(nodes=nodes, steps=[]))

    def test_no_configured_nodes(self) -> None:
        with pytest.raises(BuildError, match="No configured nodes"):
            build_graph(_state(nodes=[], steps=[]))


class TestPlanLinks:
    def test_unknown_predecessor_step(self) -> None:
        steps = [IntentStep(id="s1"), IntentStep(id="s2", after=["s9"])]
        nodes = [_node("a", "n8n-nodes-base.webhook", "trigger", "s1"), _node("b", "n8n-nodes-base.set", None, "s2")]

        with pytest.raises(BuildError, match="unknown step 's9'"):
            plan_links(steps, nodes)

    def test_predecessor_without_node(self) -> None:
        steps = [IntentStep(id="s1"), IntentStep(id="s2", after=["s1"])]
        nodes = [_node("b", "n8n-nodes-base.set", None, "s2")]

        with pytest.raises(BuildError, match="has no configured node"):
            plan_links(steps, nodes)

    def test_unbound_node_is_chained_after_previous(self) -> None:
        steps = [IntentStep(id="s1"), IntentStep(id="s2", after=["s1"])]
        nodes = [
            _node("a", "n8n-nodes-base.webhook", "trigger", "s1"),
            _node("b", "n8n-nodes-base.set", None, "s2"),
            _node("c", "n8n-nodes-base.noOp"),
        ]

        assert plan_links(steps, nodes) == [("a", 0, "b"), ("b", 0, "c")]

    def test_unbound_trigger_feeds_plan_roots(self) -> None:
        steps = [IntentStep(id="s1")]
        nodes = [_node("t", "n8n-nodes-base.webhook", "trigger"), _node("b", "n8n-nodes-base.set", None, "s1")]

        assert plan_links(steps, nodes) == [("t", 0, "b")]


class TestComputePositions:
    def test_cycle_is_rejected(self) -> None:
        with pytest.raises(BuildError, match="cycle"):
            compute_positions(["a", "b"], [("a", 0, "b"), ("b", 0, "a")])

    def test_occupied_slots_shift_down(self) -> None:
        positions = compute_positions(["a", "b", "c"], [("a", 0, "b"), ("a", 0, "c")])
        assert positions["b"] == [550, 300]
        assert positions["c"] == [550, 500]


class TestNaming:
    def test_duplicates_get_suffixes(self) -> None:
        nodes = [_node(str(i), "n8n-nodes-base.httpRequest") for i in range(3)]
        assert list(assign_names(nodes).values()) == ["httpRequest", "httpRequest_1", "httpRequest_2"]

    def test_workflow_name_uses_first_line(self) -> None:
        assert workflow_name("Post to Slack\nwith details") == "Post to Slack"

    def test_workflow_name_is_shortened(self) -> None:
        name = workflow_name("word " * 30)
        assert len(name) <= 60
        assert name.endswith("...")

    def test_empty_prompt(self) -> None:
        assert workflow_name("   ") == "Untitled workflow"

    def test_credentials_make_errors_continue(self) -> None:
        node = _node("x", "n8n-nodes-base.set", "transform", credentials={"api": {"id": ""}})
        assert error_mode(node) == "continueErrorOutput"


class TestBuildingRunner:
    def test_emits_workflow_name_and_completion(self, context) -> None:
        result = asyncio.run(BuildingRunner().execute(_state(), context))

        assert result.success
        assert isinstance(result.operations[0], SetWorkflow)
        assert result.operations[1] == SetWorkflowName(name="Route orders by amount")
        assert result.operations[2] == CompletePhase(phase=Phase.BUILDING)
        assert result.metrics == {"nodes": 4, "connections": 3}

    def test_topology_error_fails_phase(self, context) -> None:
        steps = [IntentStep(id="s1", after=["s2"]), IntentStep(id="s2", after=["s1"])]
        nodes = [_node("a", "n8n-nodes-base.set", None, "s1"), _node("b", "n8n-nodes-base.set", None, "s2")]

        result = asyncio.run(BuildingRunner().execute(_state(nodes=nodes, steps=steps), context))

        assert not result.success
        assert result.operations == []
        assert result.error.type == ErrorType.VALIDATION
        assert "cycle" in result.error.message
