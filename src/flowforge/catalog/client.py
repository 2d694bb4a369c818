"""Node catalog access over MCP.

The catalog is an n8n-mcp compatible MCP server. Every call opens its own
session (stdio or streamable HTTP), performs the ``initialize`` handshake,
calls one tool and closes, which keeps the client free of connection state
that could leak between phases.
"""

import asyncio
import json
import logging
import os
import re
from typing import Any, Optional, Protocol

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from pydantic import BaseModel, ConfigDict, Field

from flowforge.catalog.retry import BackoffPolicy, with_backoff
from flowforge.core.exceptions import CatalogServiceError
from flowforge.core.settings import CatalogSettings

logger = logging.getLogger(__name__)

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")

REQUIRED_TOOLS = (
    "search_nodes",
    "get_node_for_task",
    "get_node_essentials",
    "validate_node_operation",
    "validate_workflow",
)

RELEVANCE_LABELS = {"high": 1.0, "medium": 0.6, "low": 0.3}


class SearchResult(BaseModel):
    """A node type returned by a catalog search."""

    node_type: str
    display_name: str = ""
    description: str = ""
    category: Optional[str] = None
    package: Optional[str] = None
    relevance: float = 0.0


class NodeValidation(BaseModel):
    """Catalog verdict on one node configuration."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    missing_required_fields: list[str] = Field(default_factory=list)


class WorkflowIssue(BaseModel):
    node: Optional[str] = None
    message: str


class WorkflowValidation(BaseModel):
    """Catalog verdict on a whole workflow graph."""

    model_config = ConfigDict(extra="ignore")

    valid: bool
    errors: list[WorkflowIssue] = Field(default_factory=list)
    warnings: list[WorkflowIssue] = Field(default_factory=list)


class NodeCatalog(Protocol):
    """What the phase runners need from a node catalog."""

    async def connect(self) -> None: ...

    async def health_check(self) -> bool: ...

    async def search_nodes(self, query: str, limit: int = 10) -> list[SearchResult]: ...

    async def get_task_template(self, name: str) -> Optional[dict[str, Any]]:
        """Raw template payload for a task name, or None if the catalog has none."""
        ...

    async def get_node_essentials(self, node_type: str) -> Optional[dict[str, Any]]: ...

    async def validate_node(self, node_type: str, config: dict[str, Any]) -> NodeValidation: ...

    async def validate_workflow(self, workflow: dict[str, Any]) -> WorkflowValidation: ...


def expand_env_vars(data: Any) -> Any:
    """Recursively expand ``${VAR}`` references in strings, dicts and lists."""
    if isinstance(data, dict):
        return {key: expand_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [expand_env_vars(item) for item in data]
    if isinstance(data, str):

        def replacer(match: Any) -> str:
            env_var = match.group(1)
            env_value = os.environ.get(env_var, "")
            if not env_value:
                logger.warning(f"Environment variable {env_var} not found, using empty string")
            return env_value

        return ENV_VAR_PATTERN.sub(replacer, data)
    return data


def normalize_node_type(node_type: str) -> str:
    """Catalog short types ('nodes-base.slack') to workflow types ('n8n-nodes-base.slack')."""
    if node_type.startswith("nodes-base."):
        return f"n8n-{node_type}"
    if node_type.startswith("nodes-langchain."):
        return f"@n8n/n8n-{node_type}"
    return node_type


def _parse_relevance(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        return RELEVANCE_LABELS.get(value.lower(), 0.0)
    return 0.0


def _issue_message(issue: Any) -> str:
    if isinstance(issue, dict):
        return str(issue.get("message") or issue.get("error") or json.dumps(issue))
    return str(issue)


def parse_search_results(payload: Any) -> list[SearchResult]:
    """Normalize a ``search_nodes`` payload (a list, or ``{"results": [...]}``)."""
    if isinstance(payload, dict):
        payload = payload.get("results") or payload.get("nodes") or []
    if not isinstance(payload, list):
        return []

    results = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        node_type = item.get("workflowNodeType") or item.get("nodeType") or item.get("type")
        if not node_type:
            continue
        results.append(
            SearchResult(
                node_type=normalize_node_type(node_type),
                display_name=item.get("displayName") or item.get("name") or "",
                description=item.get("description") or "",
                category=item.get("category"),
                package=item.get("package"),
                relevance=_parse_relevance(item.get("relevance", item.get("score"))),
            )
        )
    return results


def parse_node_validation(payload: Any) -> NodeValidation:
    """Normalize a ``validate_node_operation`` payload."""
    if not isinstance(payload, dict):
        raise CatalogServiceError("validate_node_operation returned a non-object payload", retryable=False)

    errors = [_issue_message(e) for e in payload.get("errors") or []]
    missing = list(payload.get("missingRequiredFields") or [])
    for error in payload.get("errors") or []:
        if isinstance(error, dict) and error.get("type") == "missing_required" and error.get("property"):
            if error["property"] not in missing:
                missing.append(error["property"])

    valid = payload.get("valid", payload.get("isValid"))
    if valid is None:
        valid = not errors and not missing
    return NodeValidation(
        valid=bool(valid),
        errors=errors,
        warnings=[_issue_message(w) for w in payload.get("warnings") or []],
        missing_required_fields=missing,
    )


def parse_workflow_validation(payload: Any) -> WorkflowValidation:
    """Normalize a ``validate_workflow`` payload."""
    if not isinstance(payload, dict):
        raise CatalogServiceError("validate_workflow returned a non-object payload", retryable=False)

    def issues(key: str) -> list[WorkflowIssue]:
        found = []
        for item in payload.get(key) or []:
            node = item.get("node") or item.get("nodeName") if isinstance(item, dict) else None
            found.append(WorkflowIssue(node=node, message=_issue_message(item)))
        return found

    errors = issues("errors")
    return WorkflowValidation(valid=bool(payload.get("valid", not errors)), errors=errors, warnings=issues("warnings"))


class MCPCatalogClient:
    """NodeCatalog backed by an MCP server.

    Example:
        >>> client = MCPCatalogClient(CatalogSettings(command="npx", args=["-y", "n8n-mcp"]))
        >>> await client.connect()
        >>> results = await client.search_nodes("slack")
    """

    def __init__(self, settings: Optional[CatalogSettings] = None, policy: Optional[BackoffPolicy] = None):
        self.settings = settings or CatalogSettings()
        self.policy = policy or BackoffPolicy(
            max_attempts=self.settings.max_attempts,
            base_delay=self.settings.base_delay,
            max_delay=self.settings.max_delay,
        )

    async def connect(self) -> None:
        """Check the server is reachable and exposes every tool we call.

        Raises:
            CatalogServiceError: If the server cannot be reached or lacks tools
        """
        tools = await with_backoff(self._list_tools, self.policy, "catalog connect")
        missing = [name for name in REQUIRED_TOOLS if name not in tools]
        if missing:
            raise CatalogServiceError(f"Catalog server is missing tools: {', '.join(missing)}", retryable=False)
        logger.info(f"Connected to node catalog ({len(tools)} tools)")

    async def health_check(self) -> bool:
        try:
            await self.connect()
        except CatalogServiceError as e:
            logger.warning(f"Catalog health check failed: {e}")
            return False
        return True

    async def search_nodes(self, query: str, limit: int = 10) -> list[SearchResult]:
        payload = await self._call("search_nodes", {"query": query, "limit": limit})
        results = parse_search_results(payload)
        logger.debug(f"search_nodes('{query}') found {len(results)} nodes")
        return results

    async def get_task_template(self, name: str) -> Optional[dict[str, Any]]:
        try:
            payload = await self._call("get_node_for_task", {"task": name})
        except CatalogServiceError as e:
            message = str(e).lower()
            if "unknown task" in message or "not found" in message:
                return None
            raise
        if payload is None or (isinstance(payload, dict) and not payload):
            return None
        if not isinstance(payload, dict):
            return {"raw": payload}
        return payload

    async def get_node_essentials(self, node_type: str) -> Optional[dict[str, Any]]:
        payload = await self._call("get_node_essentials", {"nodeType": node_type})
        return payload if isinstance(payload, dict) else None

    async def validate_node(self, node_type: str, config: dict[str, Any]) -> NodeValidation:
        payload = await self._call(
            "validate_node_operation", {"nodeType": node_type, "config": config, "profile": "ai-friendly"}
        )
        return parse_node_validation(payload)

    async def validate_workflow(self, workflow: dict[str, Any]) -> WorkflowValidation:
        payload = await self._call("validate_workflow", {"workflow": workflow})
        return parse_workflow_validation(payload)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, tool: str, arguments: dict[str, Any]) -> Any:
        async def attempt() -> Any:
            return await self._call_tool_once(tool, arguments)

        return await with_backoff(attempt, self.policy, f"catalog tool '{tool}'")

    async def _call_tool_once(self, tool: str, arguments: dict[str, Any]) -> Any:
        async def run(session: ClientSession) -> Any:
            logger.debug(f"Calling catalog tool: {tool} with args: {arguments}")
            result = await session.call_tool(tool, arguments)
            return self._extract_result(tool, result)

        return await asyncio.wait_for(self._with_session(run), timeout=self.settings.timeout)

    async def _list_tools(self) -> list[str]:
        async def run(session: ClientSession) -> list[str]:
            response = await session.list_tools()
            return [t.name for t in response.tools]

        return await asyncio.wait_for(self._with_session(run), timeout=self.settings.timeout)

    async def _with_session(self, run: Any) -> Any:
        if self.settings.transport == "http":
            return await self._with_http_session(run)
        return await self._with_stdio_session(run)

    async def _with_stdio_session(self, run: Any) -> Any:
        env = expand_env_vars(self.settings.env)
        params = StdioServerParameters(
            command=self.settings.command,
            args=self.settings.args,
            env={**os.environ, **env} if env else None,
        )
        with open(os.devnull, "w") as errlog:
            async with stdio_client(params, errlog=errlog) as (read, write), ClientSession(read, write) as session:
                await session.initialize()
                return await run(session)

    async def _with_http_session(self, run: Any) -> Any:
        from mcp.client.streamable_http import streamablehttp_client

        if not self.settings.url:
            raise CatalogServiceError("HTTP catalog transport requires 'url'", retryable=False)

        headers = expand_env_vars(self.settings.headers)
        async with (
            streamablehttp_client(url=self.settings.url, headers=headers, timeout=self.settings.timeout) as (
                read,
                write,
                get_session_id,
            ),
            ClientSession(read, write) as session,
        ):
            await session.initialize()
            session_id = get_session_id()
            if session_id:
                logger.debug(f"HTTP catalog session established: {session_id}")
            return await run(session)

    def _extract_result(self, tool: str, mcp_result: Any) -> Any:
        """Extract a JSON payload from an MCP tool result.

        Priority order:
        1. structuredContent: typed JSON data (preferred)
        2. isError flag: tool-level failure, raised as a non-retryable error
        3. text content blocks, parsed as JSON when possible
        """
        if not mcp_result:
            return None

        structured = getattr(mcp_result, "structuredContent", None)
        if structured is not None:
            return structured

        if getattr(mcp_result, "isError", False):
            message = self._first_text(mcp_result) or "unknown tool error"
            raise CatalogServiceError(f"Catalog tool '{tool}' failed: {message}", retryable=False)

        text = self._first_text(mcp_result)
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    @staticmethod
    def _first_text(mcp_result: Any) -> Optional[str]:
        for content in getattr(mcp_result, "content", None) or []:
            if hasattr(content, "text"):
                return str(content.text)
        return None
