"""Root-level test configuration and fixtures."""

import pytest

from flowforge.core.settings import PipelineSettings, SettingsManager
from flowforge.orchestrator import Orchestrator
from flowforge.phases import PhaseContext
from flowforge.planning.completion import CompletionClient
from flowforge.session.store import InMemorySessionStore
from tests.shared.llm_mock import create_mock_get_model
from tests.shared.scenarios import order_catalog


@pytest.fixture(autouse=True, scope="function")
def mock_llm_calls(monkeypatch, request):
    """Auto-applied fixture that mocks all LLM calls to prevent API usage."""
    mock_get_model = create_mock_get_model()
    monkeypatch.setattr("llm.get_model", mock_get_model)

    # Make the mock available to tests that want to configure it
    request.node.mock_llm = mock_get_model

    yield mock_get_model

    mock_get_model.reset()


@pytest.fixture
def mock_llm_responses(request):
    """Configure LLM mock responses for specific tests.

    Usage:
        def test_something(mock_llm_responses):
            mock_llm_responses.set_response(
                "anthropic/claude-sonnet-4-0",
                IntentAnalysis,
                {"intent": "...", "steps": []},
            )
    """
    if hasattr(request.node, "mock_llm"):
        return request.node.mock_llm
    return create_mock_get_model()


@pytest.fixture(autouse=True, scope="function")
def isolate_flowforge_config(tmp_path, monkeypatch):
    """Keep tests away from ~/.flowforge and from FLOWFORGE_* variables."""
    test_settings_path = tmp_path / ".flowforge" / "settings.json"

    original_init = SettingsManager.__init__

    def patched_settings_init(self, *args, **kwargs):
        if "settings_path" not in kwargs and (len(args) < 1 or args[0] is None):
            kwargs["settings_path"] = test_settings_path
        original_init(self, *args, **kwargs)

    monkeypatch.setattr(SettingsManager, "__init__", patched_settings_init)
    for name in ("FLOWFORGE_MODEL", "FLOWFORGE_VALIDATION_TIMEOUT", "FLOWFORGE_CATALOG_URL"):
        monkeypatch.delenv(name, raising=False)

    return {"settings_path": test_settings_path}


@pytest.fixture
def catalog():
    return order_catalog()


@pytest.fixture
def pipeline_settings():
    return PipelineSettings(validation_timeout=10, validation_max_attempts=3)


@pytest.fixture
def context(catalog, pipeline_settings):
    return PhaseContext(catalog=catalog, completion=CompletionClient(), settings=pipeline_settings)


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def orchestrator(store, context):
    return Orchestrator(store, context)
