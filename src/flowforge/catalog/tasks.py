"""Task template resolution.

Intent analysis names pre-configured catalog tasks ("receive_webhook",
"send_slack_message"). TaskResolver fetches those templates concurrently,
patches and caches them, and reports the ones that could not be loaded so
Discovery can search for them instead.
"""

import asyncio
import logging
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from flowforge.catalog.cache import TTLCache
from flowforge.catalog.client import NodeCatalog, normalize_node_type
from flowforge.catalog.patches import PatchRegistry, default_patch_registry
from flowforge.core.exceptions import CatalogServiceError

logger = logging.getLogger(__name__)

DEFAULT_TASK_CACHE_TTL = 15 * 60

# Search terms used when a task template cannot be loaded
TASK_FALLBACK_TERMS: dict[str, list[str]] = {
    # Webhooks
    "receive_webhook": ["webhook", "http trigger", "webhook trigger"],
    "webhook_with_response": ["webhook", "respond", "webhook response"],
    "webhook_with_error_handling": ["webhook", "error", "webhook error"],
    # Communication
    "send_slack_message": ["slack", "message", "notification"],
    "send_email": ["email", "mail", "smtp", "sendgrid"],
    # Database
    "query_postgres": ["postgres", "postgresql", "sql", "database"],
    "insert_postgres_data": ["postgres", "insert", "database"],
    "database_transaction_safety": ["postgres", "transaction", "database"],
    # HTTP
    "get_api_data": ["http", "api", "get", "request"],
    "post_json_request": ["http", "api", "post", "json"],
    "call_api_with_auth": ["http", "api", "auth", "authenticated"],
    "api_call_with_retry": ["http", "api", "retry", "resilient"],
    # AI
    "chat_with_ai": ["openai", "chat", "gpt", "ai"],
    "ai_agent_workflow": ["agent", "langchain", "ai agent"],
    "multi_tool_ai_agent": ["agent", "tools", "langchain"],
    "ai_rate_limit_handling": ["openai", "rate limit", "ai"],
    # Data processing
    "transform_data": ["code", "transform", "javascript"],
    "filter_data": ["filter", "if", "condition"],
    "process_webhook_data": ["code", "webhook", "process"],
    "fault_tolerant_processing": ["code", "error", "fault tolerant"],
    # Error handling
    "modern_error_handling_patterns": ["error", "onError", "error handling"],
    # Tools
    "use_google_sheets_as_tool": ["google sheets", "spreadsheet", "sheets"],
    "use_slack_as_tool": ["slack", "tool", "ai tool"],
}

FailureReason = Literal["not_found", "mcp_error", "invalid_response"]


class TaskNodeConfig(BaseModel):
    """A successfully resolved task template."""

    task_name: str
    node_type: str
    config: dict[str, Any]
    purpose: str = ""
    category: Optional[str] = None


class FailedTask(BaseModel):
    name: str
    reason: FailureReason
    error: Optional[str] = None


class TaskFetchResult(BaseModel):
    successful: list[TaskNodeConfig] = Field(default_factory=list)
    failed: list[FailedTask] = Field(default_factory=list)


class UnmatchedCapability(BaseModel):
    """Something the workflow needs that no task template covers."""

    name: str
    description: str = ""
    search_terms: list[str] = Field(default_factory=list)
    original_task_name: Optional[str] = None


class _InvalidTemplate(Exception):
    pass


def known_task_names() -> list[str]:
    return list(TASK_FALLBACK_TERMS)


def validate_task_names(names: list[str]) -> tuple[list[str], list[str]]:
    """Split task names into (known, unknown)."""
    known = [name for name in names if name in TASK_FALLBACK_TERMS]
    unknown = [name for name in names if name not in TASK_FALLBACK_TERMS]
    if unknown:
        logger.warning(f"Unknown task names detected: {', '.join(unknown)}")
    return known, unknown


def task_name_to_capability(name: str) -> str:
    """'send_slack_message' -> 'Send Slack Message'."""
    return " ".join(word[:1].upper() + word[1:] for word in name.replace("_", " ").split())


def to_capabilities(failed: list[FailedTask]) -> list[UnmatchedCapability]:
    """Turn failed task fetches into capabilities for gap search."""
    return [
        UnmatchedCapability(
            name=task_name_to_capability(f.name),
            description=f"Task template '{f.name}' was not found or failed to load",
            search_terms=list(TASK_FALLBACK_TERMS.get(f.name, [f.name.replace("_", " ")])),
            original_task_name=f.name,
        )
        for f in failed
    ]


class TaskResolver:
    """Fetch task templates through a NodeCatalog with caching and patches."""

    def __init__(
        self,
        catalog: NodeCatalog,
        cache: Optional[TTLCache[TaskNodeConfig]] = None,
        patches: Optional[PatchRegistry] = None,
    ):
        self.catalog = catalog
        self.cache: TTLCache[TaskNodeConfig] = cache or TTLCache(DEFAULT_TASK_CACHE_TTL)
        self.patches = patches or default_patch_registry

    async def fetch_tasks(self, names: list[str]) -> TaskFetchResult:
        """Resolve task names concurrently.

        Args:
            names: Exact task names from intent analysis

        Returns:
            Successful templates and failures, each in input order
        """
        unique = list(dict.fromkeys(names))
        logger.info(f"Fetching {len(unique)} task templates: {', '.join(unique)}")

        outcomes = await asyncio.gather(*(self._fetch_one(name) for name in unique))

        result = TaskFetchResult()
        for outcome in outcomes:
            if isinstance(outcome, TaskNodeConfig):
                result.successful.append(outcome)
            else:
                result.failed.append(outcome)

        logger.info(f"Task fetch complete: {len(result.successful)} successful, {len(result.failed)} failed")
        if result.failed:
            logger.warning(
                "Failed tasks will be searched instead: "
                + ", ".join(f"{f.name} ({f.reason})" for f in result.failed)
            )
        return result

    async def _fetch_one(self, name: str) -> Any:
        cached = self.cache.get(name)
        if cached is not None:
            logger.debug(f"Using cached template for task: {name}")
            return cached.model_copy(deep=True)

        try:
            payload = await self.catalog.get_task_template(name)
            if payload is None:
                logger.warning(f"Task not found: {name}")
                return FailedTask(name=name, reason="not_found")
            resolved = self._normalize(name, payload)
        except CatalogServiceError as e:
            logger.error(f"Failed to fetch task {name}: {e}")
            return FailedTask(name=name, reason="mcp_error", error=str(e))
        except _InvalidTemplate as e:
            logger.warning(f"Invalid template for task {name}: {e}")
            return FailedTask(name=name, reason="invalid_response", error=str(e))

        self.cache.set(name, resolved)
        logger.debug(f"Fetched task {name} ({resolved.node_type})")
        return resolved.model_copy(deep=True)

    def _normalize(self, name: str, payload: dict[str, Any]) -> TaskNodeConfig:
        node_type = payload.get("nodeType")
        parameters = payload.get("configuration", payload.get("config"))
        if not node_type or not isinstance(node_type, str):
            raise _InvalidTemplate("template has no nodeType")
        if not isinstance(parameters, dict):
            raise _InvalidTemplate("template has no configuration object")
        node_type = normalize_node_type(node_type)

        patched, applied = self.patches.apply(node_type, {"parameters": parameters})
        if applied:
            logger.debug(f"Applied patches to {name}: {', '.join(applied)}")

        return TaskNodeConfig(
            task_name=name,
            node_type=node_type,
            config=patched["parameters"],
            purpose=payload.get("description") or f"Pre-configured task: {name}",
            category=payload.get("category"),
        )

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.debug("Task template cache cleared")

    def cache_stats(self) -> dict[str, Any]:
        return self.cache.stats()
