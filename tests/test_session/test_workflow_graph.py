"""Tests for WorkflowGraph connections and n8n export/import."""

import pytest

from flowforge.core.exceptions import WorkflowSchemaError
from flowforge.session.models import WorkflowGraph, WorkflowNode
from flowforge.session.operations import OPERATION_ADAPTER, operation_types
from flowforge.session.state import SessionState, export_workflow, import_workflow


def _graph() -> WorkflowGraph:
    return WorkflowGraph(
        name="Orders",
        nodes=[
            WorkflowNode(id="a", name="webhook", type="n8n-nodes-base.webhook", type_version=2, position=[250, 300]),
            WorkflowNode(id="b", name="if", type="n8n-nodes-base.if", type_version=2, position=[450, 300]),
            WorkflowNode(id="c", name="slack", type="n8n-nodes-base.slack", position=[650, 250]),
        ],
    )


class TestConnections:
    """Connection bookkeeping keyed by node name."""

    def test_add_connection_pads_output_slots(self) -> None:
        """Connecting slot 1 first leaves an empty slot 0."""
        graph = _graph()
        graph.add_connection("if", "slack", source_output=1)

        slots = graph.connections["if"]["main"]
        assert len(slots) == 2
        assert slots[0] == []
        assert slots[1][0].node == "slack"

    def test_add_connection_is_idempotent(self) -> None:
        graph = _graph()
        graph.add_connection("webhook", "if")
        graph.add_connection("webhook", "if")
        assert graph.connection_count() == 1

    def test_remove_last_connection_drops_source_entry(self) -> None:
        graph = _graph()
        graph.add_connection("webhook", "if")
        assert graph.remove_connection("webhook", "if") is True
        assert "webhook" not in graph.connections

    def test_remove_unknown_slot(self) -> None:
        graph = _graph()
        graph.add_connection("webhook", "if")
        assert graph.remove_connection("webhook", "if", source_output=3) is False

    def test_predecessors_report_slots(self) -> None:
        graph = _graph()
        graph.add_connection("webhook", "if")
        graph.add_connection("if", "slack", source_output=1)
        assert graph.predecessors("slack") == [("if", 1)]
        assert graph.predecessors("webhook") == []

    def test_rename_node_rewrites_both_ends(self) -> None:
        graph = _graph()
        graph.add_connection("webhook", "if")
        graph.add_connection("if", "slack")

        graph.rename_node("if", "amount check")

        assert "amount check" in graph.connections
        assert graph.predecessors("amount check") == [("webhook", 0)]

    def test_rename_unknown_node(self) -> None:
        with pytest.raises(KeyError):
            _graph().rename_node("ghost", "x")


class TestExport:
    """Exported JSON uses n8n's keys."""

    def test_to_n8n_uses_camel_case_and_drops_none(self) -> None:
        graph = _graph()
        graph.nodes[2].on_error = "continueErrorOutput"

        data = graph.to_n8n()

        slack = data["nodes"][2]
        assert slack["typeVersion"] == 1
        assert slack["onError"] == "continueErrorOutput"
        assert "notes" not in slack
        assert "type_version" not in slack
        assert data["settings"]["executionOrder"] == "v1"

    def test_export_then_import_keeps_nodes_and_connections(self) -> None:
        """export_workflow output loads back into an equal graph."""
        graph = _graph()
        graph.add_connection("webhook", "if")
        graph.add_connection("if", "slack", source_output=1)
        state = SessionState(id="s1", workflow=graph)

        imported = import_workflow(export_workflow(state))

        assert [node.name for node in imported.nodes] == ["webhook", "if", "slack"]
        assert imported.predecessors("slack") == [("if", 1)]
        assert imported.to_n8n() == graph.to_n8n()

    def test_import_rejects_dangling_connection(self) -> None:
        data = _graph().to_n8n()
        data["connections"] = {"webhook": {"main": [[{"node": "ghost", "type": "main", "index": 0}]]}}

        with pytest.raises(WorkflowSchemaError, match="ghost"):
            import_workflow(data)

    def test_import_rejects_bad_position(self) -> None:
        data = _graph().to_n8n()
        data["nodes"][0]["position"] = [1]

        with pytest.raises(WorkflowSchemaError) as exc_info:
            import_workflow(data)
        assert exc_info.value.path == "nodes[0].position"

    def test_import_rejects_duplicate_names(self) -> None:
        data = _graph().to_n8n()
        data["nodes"][1]["name"] = "webhook"

        with pytest.raises(WorkflowSchemaError, match="Duplicate node name"):
            import_workflow(data)


class TestOperationUnion:
    """The tagged operation union."""

    def test_parses_camel_case_tag(self) -> None:
        op = OPERATION_ADAPTER.validate_python({"type": "selectNode", "node_id": "n1"})
        assert op.node_id == "n1"

    def test_unknown_tag_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            OPERATION_ADAPTER.validate_python({"type": "dropTable"})

    def test_every_operation_kind_is_registered(self) -> None:
        assert {"discoverNode", "addStickyNote", "renameNode", "completePhase"} <= operation_types()
        assert len(operation_types()) == 25
