"""Tests for catalog payload parsing and the MCP client's result handling."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from flowforge.catalog.client import (
    MCPCatalogClient,
    expand_env_vars,
    normalize_node_type,
    parse_node_validation,
    parse_search_results,
    parse_workflow_validation,
)
from flowforge.catalog.retry import BackoffPolicy
from flowforge.core.exceptions import CatalogServiceError
from flowforge.core.settings import CatalogSettings


def _client(**settings) -> MCPCatalogClient:
    return MCPCatalogClient(CatalogSettings(**settings), policy=BackoffPolicy(max_attempts=1))


class TestNormalizeNodeType:
    def test_base_nodes(self) -> None:
        assert normalize_node_type("nodes-base.slack") == "n8n-nodes-base.slack"

    def test_langchain_nodes(self) -> None:
        assert normalize_node_type("nodes-langchain.agent") == "@n8n/n8n-nodes-langchain.agent"

    def test_full_type_unchanged(self) -> None:
        assert normalize_node_type("n8n-nodes-base.if") == "n8n-nodes-base.if"


class TestParseSearchResults:
    """search_nodes payload shapes."""

    def test_results_wrapper(self) -> None:
        payload = {
            "results": [
                {"nodeType": "nodes-base.slack", "displayName": "Slack", "relevance": "high"},
                {"workflowNodeType": "n8n-nodes-base.if", "nodeType": "nodes-base.if", "score": 0.42},
            ]
        }

        results = parse_search_results(payload)

        assert [r.node_type for r in results] == ["n8n-nodes-base.slack", "n8n-nodes-base.if"]
        assert results[0].relevance == 1.0
        assert results[0].display_name == "Slack"
        assert results[1].relevance == 0.42

    def test_plain_list_and_junk_entries(self) -> None:
        payload = [{"type": "nodes-base.filter", "relevance": "low"}, "junk", {"displayName": "no type"}]

        results = parse_search_results(payload)

        assert len(results) == 1
        assert results[0].relevance == 0.3

    def test_unknown_label_and_bool(self) -> None:
        payload = [{"nodeType": "a", "relevance": "sky-high"}, {"nodeType": "b", "relevance": True}]
        assert [r.relevance for r in parse_search_results(payload)] == [0.0, 0.0]

    def test_non_list_payload(self) -> None:
        assert parse_search_results("no results") == []


class TestParseNodeValidation:
    """validate_node_operation payloads."""

    def test_missing_required_from_errors(self) -> None:
        payload = {
            "valid": False,
            "errors": [{"type": "missing_required", "property": "channelId", "message": "channelId is required"}],
            "missingRequiredFields": ["resource"],
        }

        result = parse_node_validation(payload)

        assert result.valid is False
        assert result.errors == ["channelId is required"]
        assert result.missing_required_fields == ["resource", "channelId"]

    def test_valid_derived_from_errors(self) -> None:
        assert parse_node_validation({"errors": []}).valid is True
        assert parse_node_validation({"errors": ["bad"]}).valid is False

    def test_is_valid_alias_and_warnings(self) -> None:
        result = parse_node_validation({"isValid": True, "warnings": [{"message": "deprecated option"}]})
        assert result.valid is True
        assert result.warnings == ["deprecated option"]

    def test_non_object_payload(self) -> None:
        with pytest.raises(CatalogServiceError) as exc_info:
            parse_node_validation("ok")
        assert exc_info.value.retryable is False


class TestParseWorkflowValidation:
    def test_issues_keep_node_names(self) -> None:
        payload = {
            "valid": False,
            "errors": [{"nodeName": "slack", "message": "channelId missing"}, "global problem"],
            "warnings": [{"node": "if", "message": "no false branch"}],
        }

        result = parse_workflow_validation(payload)

        assert result.valid is False
        assert [(e.node, e.message) for e in result.errors] == [("slack", "channelId missing"), (None, "global problem")]
        assert result.warnings[0].node == "if"

    def test_valid_defaults_from_errors(self) -> None:
        assert parse_workflow_validation({}).valid is True


class TestExpandEnvVars:
    def test_nested_expansion(self, monkeypatch) -> None:
        monkeypatch.setenv("CATALOG_TOKEN", "abc")
        data = {"headers": {"Authorization": "Bearer ${CATALOG_TOKEN}"}, "args": ["${CATALOG_TOKEN}", 3]}

        assert expand_env_vars(data) == {"headers": {"Authorization": "Bearer abc"}, "args": ["abc", 3]}

    def test_missing_variable_is_empty(self, monkeypatch) -> None:
        monkeypatch.delenv("FLOWFORGE_NOT_SET", raising=False)
        assert expand_env_vars("x${FLOWFORGE_NOT_SET}y") == "xy"


class TestExtractResult:
    """MCP CallToolResult handling."""

    def test_structured_content_wins(self) -> None:
        result = SimpleNamespace(structuredContent={"valid": True}, isError=False, content=[])
        assert _client()._extract_result("validate_workflow", result) == {"valid": True}

    def test_text_content_parsed_as_json(self) -> None:
        result = SimpleNamespace(structuredContent=None, isError=False, content=[SimpleNamespace(text='{"a": 1}')])
        assert _client()._extract_result("search_nodes", result) == {"a": 1}

    def test_plain_text_returned_as_is(self) -> None:
        result = SimpleNamespace(structuredContent=None, isError=False, content=[SimpleNamespace(text="hello")])
        assert _client()._extract_result("search_nodes", result) == "hello"

    def test_tool_error_is_not_retryable(self) -> None:
        result = SimpleNamespace(structuredContent=None, isError=True, content=[SimpleNamespace(text="Unknown task")])

        with pytest.raises(CatalogServiceError, match="Unknown task") as exc_info:
            _client()._extract_result("get_node_for_task", result)
        assert exc_info.value.retryable is False


class TestClientCalls:
    """Client methods with the transport stubbed out."""

    def test_connect_reports_missing_tools(self) -> None:
        client = _client()
        client._list_tools = AsyncMock(return_value=["search_nodes"])

        with pytest.raises(CatalogServiceError, match="missing tools"):
            asyncio.run(client.connect())

    def test_health_check_false_on_failure(self) -> None:
        client = _client()
        client._list_tools = AsyncMock(side_effect=ConnectionError("refused"))

        assert asyncio.run(client.health_check()) is False

    def test_unknown_task_is_none(self) -> None:
        client = _client()
        client._call_tool_once = AsyncMock(
            side_effect=CatalogServiceError("Catalog tool 'get_node_for_task' failed: Unknown task", retryable=False)
        )

        assert asyncio.run(client.get_task_template("fly_to_moon")) is None

    def test_validate_node_sends_ai_friendly_profile(self) -> None:
        client = _client()
        client._call_tool_once = AsyncMock(return_value={"valid": True})

        result = asyncio.run(client.validate_node("n8n-nodes-base.slack", {"text": "hi"}))

        assert result.valid is True
        client._call_tool_once.assert_awaited_once_with(
            "validate_node_operation",
            {"nodeType": "n8n-nodes-base.slack", "config": {"text": "hi"}, "profile": "ai-friendly"},
        )

    def test_http_transport_requires_url(self) -> None:
        client = _client(transport="http")

        with pytest.raises(CatalogServiceError, match="requires 'url'"):
            asyncio.run(client._with_session(AsyncMock()))
