"""End-to-end runs of the five-phase pipeline against the fake catalog."""

import asyncio
import json

from flowforge.core.exceptions import CatalogServiceError
from flowforge.core.workflow_schema import validate_workflow
from flowforge.session.models import NOOP_TYPE, Phase, WorkflowGraph
from tests.shared.scenarios import (
    MODEL,
    ORDER_PROMPT,
    clarification_intent,
    configure_by_node_type,
    frobnicate_intent,
    order_intent,
)

PHASES = [Phase.DISCOVERY, Phase.CONFIGURATION, Phase.BUILDING, Phase.VALIDATION, Phase.DOCUMENTATION]


def _order_responses(mock_llm_responses) -> None:
    mock_llm_responses.set_response(MODEL, "IntentAnalysis", order_intent())
    mock_llm_responses.set_response(MODEL, "NodeConfiguration", configure_by_node_type)


class TestOrderWorkflow:
    """webhook -> IF amount > 100 -> Slack (true) / email (false)."""

    def test_runs_every_phase(self, orchestrator, mock_llm_responses) -> None:
        _order_responses(mock_llm_responses)
        session_id = orchestrator.create_session(ORDER_PROMPT).id

        results = asyncio.run(orchestrator.advance(session_id))

        assert [r.phase for r in results] == PHASES
        assert all(r.success for r in results)
        state = orchestrator.get_session(session_id)
        assert state.phase == Phase.COMPLETE
        assert state.completed_phases == PHASES

    def test_final_graph(self, orchestrator, mock_llm_responses) -> None:
        _order_responses(mock_llm_responses)
        session_id = orchestrator.create_session(ORDER_PROMPT).id
        asyncio.run(orchestrator.advance(session_id))

        graph = orchestrator.get_session(session_id).workflow

        assert graph.name.startswith("When an order webhook arrives")
        assert graph.predecessors("if") == [("webhook", 0)]
        assert graph.predecessors("slack") == [("if", 0)]
        assert graph.predecessors("emailSend") == [("if", 1)]
        assert "conditions" in graph.node_by_name("if").parameters
        assert graph.node_by_name("slack").parameters["channelId"] == "#orders"
        stickies = [node for node in graph.nodes if node.is_sticky_note]
        assert [node.name for node in stickies] == [
            "Triggers Documentation",
            "Transform Documentation",
            "Outputs Documentation",
        ]
        assert graph.node_by_name("slack").position == [1270, 250]

    def test_every_node_is_validated(self, orchestrator, mock_llm_responses) -> None:
        _order_responses(mock_llm_responses)
        session_id = orchestrator.create_session(ORDER_PROMPT).id
        asyncio.run(orchestrator.advance(session_id))

        state = orchestrator.get_session(session_id)

        assert set(state.validated) == set(state.selected)
        assert all(result.valid for result in state.validated.values())

    def test_export_imports_back(self, orchestrator, mock_llm_responses) -> None:
        _order_responses(mock_llm_responses)
        session_id = orchestrator.create_session(ORDER_PROMPT).id
        asyncio.run(orchestrator.advance(session_id))
        graph = orchestrator.get_session(session_id).workflow

        exported = json.loads(json.dumps(graph.to_n8n()))

        validate_workflow(exported)
        assert WorkflowGraph.model_validate(exported) == graph

    def test_completed_session_is_immutable(self, orchestrator, mock_llm_responses) -> None:
        _order_responses(mock_llm_responses)
        session_id = orchestrator.create_session(ORDER_PROMPT).id
        asyncio.run(orchestrator.advance(session_id))
        version = orchestrator.get_session(session_id).version

        result = asyncio.run(orchestrator.run_phase(session_id))

        assert result.error.message == "Workflow already complete"
        assert orchestrator.get_session(session_id).version == version


class TestClarification:
    def test_pause_answer_and_finish(self, orchestrator, mock_llm_responses) -> None:
        mock_llm_responses.queue_response(MODEL, "IntentAnalysis", clarification_intent())
        mock_llm_responses.set_response(MODEL, "IntentAnalysis", order_intent())
        mock_llm_responses.set_response(MODEL, "NodeConfiguration", configure_by_node_type)
        session_id = orchestrator.create_session("Alert on big orders").id

        paused = asyncio.run(orchestrator.advance(session_id))

        assert paused[-1].paused
        question = orchestrator.get_session(session_id).current_clarification
        assert question.question == "Which Slack channel should receive alerts?"

        answered = asyncio.run(orchestrator.submit_clarification(session_id, question.question_id, "#orders"))
        assert answered.success

        results = asyncio.run(orchestrator.advance(session_id))

        assert [r.phase for r in results] == PHASES[1:]
        state = orchestrator.get_session(session_id)
        assert state.phase == Phase.COMPLETE
        assert state.clarification_history[0].response == "#orders"
        assert state.pending_clarifications == []


class TestDegradedRuns:
    def test_unconfigurable_node_becomes_noop(self, orchestrator, mock_llm_responses) -> None:
        mock_llm_responses.set_response(MODEL, "IntentAnalysis", frobnicate_intent())
        session_id = orchestrator.create_session("Frobnicate incoming data").id

        results = asyncio.run(orchestrator.advance(session_id))

        assert all(r.success for r in results)
        configuration = results[1]
        assert configuration.warnings == ["search_1: Replaced n8n-nodes-base.frobnicator with a NoOp placeholder"]
        graph = orchestrator.get_session(session_id).workflow
        noop = graph.node_by_name("noOp")
        assert noop.type == NOOP_TYPE
        assert "n8n-nodes-base.frobnicator" in noop.notes
        assert graph.predecessors("noOp") == [("webhook", 0)]

    def test_validation_service_outage_still_completes(self, orchestrator, catalog, mock_llm_responses) -> None:
        _order_responses(mock_llm_responses)
        catalog.fail("validate_workflow", CatalogServiceError("503 from catalog"))
        session_id = orchestrator.create_session(ORDER_PROMPT).id

        results = asyncio.run(orchestrator.advance(session_id))

        assert orchestrator.get_session(session_id).phase == Phase.COMPLETE
        validation = results[3]
        assert validation.warnings[0].startswith("Workflow validation service unavailable")

    def test_cancelled_between_runs(self, orchestrator, mock_llm_responses) -> None:
        _order_responses(mock_llm_responses)
        session_id = orchestrator.create_session(ORDER_PROMPT).id
        asyncio.run(orchestrator.run_discovery(session_id))
        orchestrator.cancel(session_id)

        assert asyncio.run(orchestrator.advance(session_id)) == []
        assert orchestrator.get_session(session_id).phase == Phase.DISCOVERY
