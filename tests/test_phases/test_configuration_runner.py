"""Tests for the Configuration phase runner."""

import asyncio

import pytest

from flowforge.core.exceptions import CatalogServiceError
from flowforge.core.settings import PipelineSettings
from flowforge.phases import PhaseContext
from flowforge.phases.configuration import (
    ConfigurationRunner,
    auto_fill_missing,
    parse_type_version,
    split_node_level,
)
from flowforge.phases.discovery import DiscoveryRunner
from flowforge.planning.error_handler import ErrorType
from flowforge.session.models import NOOP_TYPE, ConfiguredNode, DiscoveredNode, Phase
from flowforge.session.operations import (
    CompletePhase,
    ConfigureNode,
    DiscoverNode,
    SelectNode,
    SetConfigAnalysis,
    ValidateNode,
)
from flowforge.session.state import SessionState, apply_operations
from tests.shared.scenarios import (
    MODEL,
    ORDER_PROMPT,
    configure_by_node_type,
    frobnicate_intent,
    order_intent,
)


def _discovered_state(context, mock_llm_responses, intent=None) -> SessionState:
    mock_llm_responses.set_response(MODEL, "IntentAnalysis", intent or order_intent())
    state = SessionState(id="s1", user_prompt=ORDER_PROMPT)
    result = asyncio.run(DiscoveryRunner().execute(state, context))
    state = apply_operations(state, result.operations)
    return state.model_copy(update={"phase": Phase.CONFIGURATION})


def _configured(result) -> dict[str, ConfiguredNode]:
    return {op.node.id: op.node for op in result.operations if isinstance(op, ConfigureNode)}


class TestConfigurationRunner:
    """Happy path for the order scenario."""

    def test_configures_every_selected_node(self, context, mock_llm_responses) -> None:
        state = _discovered_state(context, mock_llm_responses)
        mock_llm_responses.set_response(MODEL, "NodeConfiguration", configure_by_node_type)

        result = asyncio.run(ConfigurationRunner().execute(state, context))

        assert result.success
        assert isinstance(result.operations[0], SetConfigAnalysis)
        assert result.operations[-1] == CompletePhase(phase=Phase.CONFIGURATION)
        configured = _configured(result)
        assert list(configured) == state.selected
        assert all(node.validated for node in configured.values())
        assert result.warnings == []

    def test_template_values_survive_customization(self, context, mock_llm_responses) -> None:
        state = _discovered_state(context, mock_llm_responses)
        mock_llm_responses.set_response(MODEL, "NodeConfiguration", configure_by_node_type)

        configured = _configured(asyncio.run(ConfigurationRunner().execute(state, context)))

        webhook = configured["task_receive_webhook"].config
        assert webhook["parameters"] == {"httpMethod": "POST", "path": "orders"}
        # typeVersion is a node-level key, not a parameter
        assert webhook["typeVersion"] == 2
        slack = configured["task_send_slack_message"].config["parameters"]
        assert slack["channelId"] == "#orders"
        assert slack["select"] == "channel"

    def test_search_node_gets_generated_parameters_and_version(self, context, mock_llm_responses) -> None:
        state = _discovered_state(context, mock_llm_responses)
        mock_llm_responses.set_response(MODEL, "NodeConfiguration", configure_by_node_type)

        node = _configured(asyncio.run(ConfigurationRunner().execute(state, context)))["search_1"]

        assert node.type == "n8n-nodes-base.if"
        assert "number" in node.config["parameters"]["conditions"]
        assert node.config["typeVersion"] == 2

    def test_missing_required_field_is_auto_filled(self, context, mock_llm_responses) -> None:
        """An IF node configured without conditions still validates after auto-fill."""
        state = _discovered_state(context, mock_llm_responses)

        node = _configured(asyncio.run(ConfigurationRunner().execute(state, context)))["search_1"]

        assert node.validated
        assert node.config["parameters"]["conditions"] == {}
        assert len(context.catalog.calls_to("validate_node")) == 5

    def test_batches_reported_in_metrics(self, context, mock_llm_responses) -> None:
        state = _discovered_state(context, mock_llm_responses)

        result = asyncio.run(ConfigurationRunner().execute(state, context))

        assert result.metrics["batches"] == ["simple", "trigger", "condition"]
        assert result.metrics["configured"] == 4

    def test_essentials_fetched_once_per_type(self, context, mock_llm_responses) -> None:
        state = _discovered_state(context, mock_llm_responses)

        asyncio.run(ConfigurationRunner().execute(state, context))

        fetched = context.catalog.calls_to("get_node_essentials")
        assert sorted(fetched) == sorted(set(fetched))
        assert context.essentials_cache.get("n8n-nodes-base.if") is not None

    def test_nothing_to_configure_completes(self, context) -> None:
        state = SessionState(id="s1", phase=Phase.CONFIGURATION)

        result = asyncio.run(ConfigurationRunner().execute(state, context))

        assert result.success
        assert result.operations == [CompletePhase(phase=Phase.CONFIGURATION)]


class TestNoOpReplacement:
    """Nodes that cannot be configured become NoOp placeholders."""

    def test_unknown_node_type_is_replaced(self, context, mock_llm_responses) -> None:
        state = _discovered_state(context, mock_llm_responses, frobnicate_intent())

        result = asyncio.run(ConfigurationRunner().execute(state, context))

        assert result.success
        node = _configured(result)["search_1"]
        assert node.type == NOOP_TYPE
        assert node.replaced_type == "n8n-nodes-base.frobnicator"
        assert node.validated is True
        assert "n8n-nodes-base.frobnicator" in node.config["notes"]
        assert "validation errors" in node.config["notes"]
        assert "Unknown node type: n8n-nodes-base.frobnicator" in node.config["notes"]
        assert node.step_id == "s2"
        assert result.warnings == ["search_1: Replaced n8n-nodes-base.frobnicator with a NoOp placeholder"]

    def test_validation_result_carries_warning(self, context, mock_llm_responses) -> None:
        state = _discovered_state(context, mock_llm_responses, frobnicate_intent())

        result = asyncio.run(ConfigurationRunner().execute(state, context))

        validations = {op.node_id: op.result for op in result.operations if isinstance(op, ValidateNode)}
        assert validations["search_1"].valid is True
        assert validations["search_1"].warnings

    def test_unusable_completion_replaces_node(self, context, mock_llm_responses) -> None:
        state = _discovered_state(context, mock_llm_responses)
        mock_llm_responses.set_response(MODEL, "NodeConfiguration", "no idea")

        result = asyncio.run(ConfigurationRunner().execute(state, context))

        assert result.success
        configured = _configured(result)
        assert all(node.type == NOOP_TYPE for node in configured.values())
        assert "Configuration failed" in configured["search_1"].validation_errors[0]

    def test_retryable_catalog_error_replaces_node(self, context, mock_llm_responses) -> None:
        state = _discovered_state(context, mock_llm_responses)
        context.catalog.fail("validate_node", CatalogServiceError("catalog timeout"))

        result = asyncio.run(ConfigurationRunner().execute(state, context))

        assert result.success
        assert result.metrics["replaced"] == 4

    def test_non_retryable_catalog_error_fails_phase(self, context, mock_llm_responses) -> None:
        state = _discovered_state(context, mock_llm_responses)
        context.catalog.fail("validate_node", CatalogServiceError("401", retryable=False, status=401))

        result = asyncio.run(ConfigurationRunner().execute(state, context))

        assert not result.success
        assert result.operations == []
        assert result.error.type == ErrorType.CATALOG_SERVICE
        assert result.error.code == "catalog_auth"

    def test_applies_to_state(self, context, mock_llm_responses) -> None:
        state = _discovered_state(context, mock_llm_responses, frobnicate_intent())

        new_state = apply_operations(state, asyncio.run(ConfigurationRunner().execute(state, context)).operations)

        assert new_state.unconfigured_nodes() == []
        assert new_state.config_analysis["batches"]


class TrackingCompletion:
    """CompletionService that records how many calls overlap."""

    def __init__(self, delay: float = 0.01, fail_purpose: str = ""):
        self.delay = delay
        self.fail_purpose = fail_purpose
        self.in_flight = 0
        self.peak = 0
        self.finished = 0
        self.cancelled = 0

    async def complete(self, system, user, schema, prefill="{"):
        if self.fail_purpose and self.fail_purpose in user:
            raise CatalogServiceError("catalog rejected the key", retryable=False, status=401)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.in_flight -= 1
        self.finished += 1
        return {"parameters": {"value": "x"}}


def _selected_state(node_type: str, count: int, first_purpose: str = "") -> SessionState:
    operations = []
    for i in range(1, count + 1):
        purpose = first_purpose if i == 1 and first_purpose else f"step {i}"
        operations += [
            DiscoverNode(node=DiscoveredNode(id=f"n{i}", type=node_type, purpose=purpose)),
            SelectNode(node_id=f"n{i}"),
        ]
    state = apply_operations(SessionState(id="s1", user_prompt="Tidy up the order data"), operations)
    return state.model_copy(update={"phase": Phase.CONFIGURATION})


class TestBatchConcurrency:
    """Parallel batches are bounded; every other batch runs one node at a time."""

    def test_parallel_batch_overlaps_up_to_limit(self, catalog, pipeline_settings) -> None:
        completion = TrackingCompletion()
        context = PhaseContext(catalog=catalog, completion=completion, settings=pipeline_settings)

        result = asyncio.run(ConfigurationRunner().execute(_selected_state("n8n-nodes-base.set", 7), context))

        assert result.success
        assert result.metrics["batches"] == ["simple"]
        assert completion.finished == 7
        assert completion.peak == pipeline_settings.config_concurrency == 3

    def test_concurrency_setting_is_honoured(self, catalog) -> None:
        completion = TrackingCompletion()
        settings = PipelineSettings(config_concurrency=2)
        context = PhaseContext(catalog=catalog, completion=completion, settings=settings)

        asyncio.run(ConfigurationRunner().execute(_selected_state("n8n-nodes-base.set", 5), context))

        assert completion.peak == 2

    def test_code_batch_runs_sequentially(self, catalog, pipeline_settings) -> None:
        completion = TrackingCompletion()
        context = PhaseContext(catalog=catalog, completion=completion, settings=pipeline_settings)

        result = asyncio.run(ConfigurationRunner().execute(_selected_state("n8n-nodes-base.code", 4), context))

        assert result.success
        assert result.metrics["batches"] == ["code"]
        assert completion.finished == 4
        assert completion.peak == 1

    def test_failure_cancels_the_rest_of_the_batch(self, catalog, pipeline_settings) -> None:
        """A fatal error stops sibling configurations before the phase returns."""
        completion = TrackingCompletion(delay=5, fail_purpose="explode")
        context = PhaseContext(catalog=catalog, completion=completion, settings=pipeline_settings)
        state = _selected_state("n8n-nodes-base.set", 6, first_purpose="explode")

        async def run():
            result = await ConfigurationRunner().execute(state, context)
            return result, completion.in_flight, completion.cancelled

        result, in_flight, cancelled = asyncio.run(run())

        assert not result.success
        assert result.error.code == "catalog_auth"
        assert in_flight == 0
        assert cancelled >= 1
        assert completion.finished == 0


class TestHelpers:
    def test_split_node_level(self) -> None:
        node_level, parameters = split_node_level({"path": "x", "onError": "stopWorkflow", "typeVersion": 2})
        assert node_level == {"onError": "stopWorkflow", "typeVersion": 2}
        assert parameters == {"path": "x"}

    @pytest.mark.parametrize(
        "value,expected",
        [("2", 2), ("2.1", 2.1), (3, 3), ([1, 2, 2.2], 2.2), ("latest", None), (True, None), (None, None)],
    )
    def test_parse_type_version(self, value, expected) -> None:
        assert parse_type_version(value) == expected

    def test_auto_fill_defaults(self) -> None:
        essentials = {
            "requiredProperties": [
                {"name": "operation", "type": "options", "default": "insert"},
                {"name": "rows", "type": "number"},
            ]
        }

        filled = auto_fill_missing({"table": "t"}, ["schema", "operation", "rows", "mystery", "table"], essentials)

        assert filled == {"table": "t", "schema": "public", "operation": "insert", "rows": 0, "mystery": ""}
