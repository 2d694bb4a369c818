"""Tests for the background PipelineWorker."""

import asyncio

import pytest

from flowforge.orchestrator import PipelineWorker
from flowforge.planning.error_handler import ErrorType
from flowforge.session.models import Phase
from tests.shared.scenarios import MODEL, ORDER_PROMPT, clarification_intent, configure_by_node_type, order_intent


class CrashingOrchestrator:
    async def advance(self, session_id):
        raise RuntimeError("advance blew up")


def _drain(worker: PipelineWorker, session_ids, concurrency: int = 1):
    async def run():
        worker.start(concurrency=concurrency)
        for session_id in session_ids:
            worker.enqueue(session_id)
        await worker.join()
        await worker.stop()

    asyncio.run(run())
    return {outcome.session_id: outcome for outcome in worker.outcomes}


class TestWorkerLifecycle:
    def test_concurrency_must_be_positive(self, orchestrator) -> None:
        with pytest.raises(ValueError):
            PipelineWorker(orchestrator).start(concurrency=0)

    def test_cannot_start_twice(self, orchestrator) -> None:
        async def run():
            worker = PipelineWorker(orchestrator)
            worker.start()
            try:
                with pytest.raises(RuntimeError, match="already started"):
                    worker.start()
            finally:
                await worker.stop()
            return worker.running

        assert asyncio.run(run()) is False


class TestWorkerOutcomes:
    def test_sessions_run_to_completion(self, orchestrator, mock_llm_responses) -> None:
        mock_llm_responses.set_response(MODEL, "IntentAnalysis", order_intent())
        mock_llm_responses.set_response(MODEL, "NodeConfiguration", configure_by_node_type)
        ids = [orchestrator.create_session(ORDER_PROMPT).id for _ in range(2)]

        outcomes = _drain(PipelineWorker(orchestrator), ids, concurrency=2)

        assert set(outcomes) == set(ids)
        for outcome in outcomes.values():
            assert outcome.success
            assert outcome.phase == Phase.COMPLETE
            assert outcome.phases_run == 5
            assert outcome.error is None
        for session_id in ids:
            assert orchestrator.get_session(session_id).phase == Phase.COMPLETE

    def test_paused_session(self, orchestrator, mock_llm_responses) -> None:
        mock_llm_responses.set_response(MODEL, "IntentAnalysis", clarification_intent())
        session_id = orchestrator.create_session("Send alerts").id

        outcome = _drain(PipelineWorker(orchestrator), [session_id])[session_id]

        assert outcome.success
        assert outcome.paused
        assert outcome.phase == Phase.DISCOVERY

    def test_failed_session(self, orchestrator) -> None:
        session_id = orchestrator.create_session(ORDER_PROMPT).id

        outcome = _drain(PipelineWorker(orchestrator), [session_id])[session_id]

        assert not outcome.success
        assert outcome.phase == Phase.DISCOVERY
        assert outcome.error is not None

    def test_missing_session(self, orchestrator) -> None:
        outcome = _drain(PipelineWorker(orchestrator), ["nope"])["nope"]

        assert not outcome.success
        assert outcome.phase is None
        assert outcome.error.type == ErrorType.CLIENT

    def test_crash_is_contained(self) -> None:
        worker = PipelineWorker(CrashingOrchestrator())

        outcomes = _drain(worker, ["a", "b"])

        assert [outcomes[key].success for key in ("a", "b")] == [False, False]
        assert outcomes["a"].error is not None
