"""Structured completions through the ``llm`` library.

Runners depend on the CompletionService protocol, so tests and alternative
backends can stand in for CompletionClient. The client runs the blocking
``llm`` call in a worker thread, repairs almost-JSON once, and validates the
result against the pydantic schema the caller asked for.
"""

import asyncio
import json
import logging
from typing import Any, Optional, Protocol

import llm
from pydantic import BaseModel, ValidationError

from flowforge.core.exceptions import CompletionServiceError
from flowforge.core.settings import LLMSettings
from flowforge.planning.json_repair import repair_json

logger = logging.getLogger(__name__)


class CompletionService(Protocol):
    """Anything that turns a prompt into a schema-shaped dict."""

    async def complete(
        self, system: str, user: str, schema: type[BaseModel], prefill: str = "{"
    ) -> dict[str, Any]: ...


def _honour_prefill(content: str, prefill: str) -> str:
    """Prepend the prefill when the model continued it instead of echoing it."""
    if not prefill or content.startswith(prefill) or content[:1] in ("{", "[", "`"):
        return content
    if content.startswith('"') or prefill not in content:
        return prefill + content
    return content


def parse_completion(text: str, schema: type[BaseModel], prefill: str = "{") -> dict[str, Any]:
    """Parse model output into a validated dict.

    Args:
        text: Raw model output
        schema: Pydantic model the output must match
        prefill: Text the response is expected to start with

    Returns:
        ``schema.model_validate(...).model_dump()``

    Raises:
        CompletionServiceError: If the output is not usable JSON for ``schema``
    """
    if not text or not text.strip():
        raise CompletionServiceError("LLM returned empty response", raw_response=text)

    content = _honour_prefill(text.strip(), prefill)

    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        repaired = repair_json(content)
        try:
            data = json.loads(repaired)
        except json.JSONDecodeError as e:
            raise CompletionServiceError(
                f"Response is not valid JSON after repair: {e}", raw_response=text[:2000]
            ) from e
        logger.debug(f"Repaired malformed JSON for {schema.__name__}")

    try:
        return schema.model_validate(data).model_dump()
    except ValidationError as e:
        raise CompletionServiceError(
            f"Response does not match schema {schema.__name__}: {e.error_count()} errors", raw_response=text[:2000]
        ) from e


class CompletionClient:
    """CompletionService backed by ``llm.get_model(...).prompt(...)``."""

    def __init__(self, settings: Optional[LLMSettings] = None):
        self.settings = settings or LLMSettings()

    async def complete(
        self, system: str, user: str, schema: type[BaseModel], prefill: str = "{"
    ) -> dict[str, Any]:
        logger.debug(f"Requesting {schema.__name__} from {self.settings.model}")
        text = await asyncio.to_thread(self._prompt, system, user, schema)
        return parse_completion(text, schema, prefill)

    def _prompt(self, system: str, user: str, schema: type[BaseModel]) -> str:
        model = llm.get_model(self.settings.model)
        response = model.prompt(user, system=system, schema=schema, temperature=self.settings.temperature)
        text = response.text() if callable(response.text) else response.text
        return str(text or "")
