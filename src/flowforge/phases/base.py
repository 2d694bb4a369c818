"""Shared plumbing for the phase runners.

Every runner is a pocketflow AsyncNode that reads the session state and its
collaborators from the shared store and returns a PhaseResult. Runners never
mutate the state they are given; they describe changes as operations and
leave applying and persisting them to the orchestrator.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pocketflow import AsyncNode

from flowforge.catalog.cache import TTLCache
from flowforge.catalog.classifier import NodeClassifier
from flowforge.catalog.client import NodeCatalog
from flowforge.catalog.patches import PatchRegistry, default_patch_registry
from flowforge.catalog.search import GapSearch
from flowforge.catalog.tasks import TaskResolver
from flowforge.core.exceptions import PhaseExecutionError
from flowforge.core.settings import PipelineSettings
from flowforge.planning.completion import CompletionService
from flowforge.planning.error_handler import PhaseError, classify_error
from flowforge.session.models import Clarification, Phase
from flowforge.session.state import SessionState

logger = logging.getLogger(__name__)


@dataclass
class PhaseResult:
    """Outcome of one phase run.

    ``operations`` is empty when the phase failed; a failed phase never
    changes the session.
    """

    phase: Phase
    success: bool = True
    operations: list[Any] = field(default_factory=list)
    paused: bool = False
    clarification: Optional[Clarification] = None
    error: Optional[PhaseError] = None
    warnings: list[str] = field(default_factory=list)
    discovery_errors: list[str] = field(default_factory=list)
    timed_out: bool = False
    layout_hints: Optional[dict[str, Any]] = None
    metrics: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, phase: Phase, error: PhaseError) -> "PhaseResult":
        return cls(phase=phase, success=False, error=error)

    def raise_for_error(self) -> None:
        """Raise PhaseExecutionError if the phase failed."""
        if not self.success:
            raise PhaseExecutionError(self.phase.value, self.error)


@dataclass
class PhaseContext:
    """Collaborators shared by every runner of a pipeline.

    Caches live here rather than in the runners so they outlive a single
    phase run and can be cleared from outside.
    """

    catalog: NodeCatalog
    completion: CompletionService
    settings: PipelineSettings = field(default_factory=PipelineSettings)
    task_cache: Optional[TTLCache] = None
    essentials_cache: Optional[TTLCache] = None
    patches: PatchRegistry = field(default_factory=lambda: default_patch_registry)
    classifier: NodeClassifier = field(default_factory=NodeClassifier)
    resolver: TaskResolver = field(init=False)
    gap_search: GapSearch = field(init=False)

    def __post_init__(self) -> None:
        if self.task_cache is None:
            self.task_cache = TTLCache(self.settings.task_cache_ttl)
        if self.essentials_cache is None:
            self.essentials_cache = TTLCache(self.settings.essentials_cache_ttl)
        self.resolver = TaskResolver(self.catalog, cache=self.task_cache, patches=self.patches)
        self.gap_search = GapSearch(self.catalog)


class PhaseRunner(AsyncNode):
    """Base class for the five phase runners.

    Interface:
    - Reads: state (SessionState), context (PhaseContext), inputs (dict, optional)
    - Writes: phase_result (PhaseResult)
    - Actions: completed, paused, failed
    """

    phase: Phase

    def __init__(self, max_retries: int = 1, wait: float = 0) -> None:
        super().__init__(max_retries=max_retries, wait=wait)

    async def prep_async(self, shared: dict[str, Any]) -> dict[str, Any]:
        state = shared.get("state")
        context = shared.get("context")
        if state is None or context is None:
            raise ValueError("Missing required 'state' or 'context' in shared store")
        return {"state": state, "context": context, "inputs": dict(shared.get("inputs") or {})}

    async def exec_async(self, prep_res: dict[str, Any]) -> PhaseResult:
        state: SessionState = prep_res["state"]
        logger.debug(
            f"{type(self).__name__}: running for session {state.id}",
            extra={"phase": self.phase.value, "session_id": state.id},
        )
        return await self.run_phase(state, prep_res["context"], **prep_res["inputs"])

    async def run_phase(self, state: SessionState, context: PhaseContext, **inputs: Any) -> PhaseResult:
        raise NotImplementedError

    async def exec_fallback_async(self, prep_res: dict[str, Any], exc: Exception) -> PhaseResult:
        """Turn any runner exception into a failed PhaseResult."""
        error = classify_error(exc, self.phase.value)
        logger.error(
            f"{type(self).__name__} failed: {error.code}: {error.message}",
            extra={"phase": self.phase.value, "session_id": prep_res["state"].id},
        )
        return PhaseResult.failed(self.phase, error)

    async def post_async(self, shared: dict[str, Any], prep_res: dict[str, Any], exec_res: PhaseResult) -> str:
        shared["phase_result"] = exec_res
        if not exec_res.success:
            return "failed"
        if exec_res.paused:
            return "paused"
        return "completed"

    async def execute(self, state: SessionState, context: PhaseContext, **inputs: Any) -> PhaseResult:
        """Run the node against a fresh shared store and return its result."""
        shared: dict[str, Any] = {"state": state, "context": context, "inputs": inputs}
        await self.run_async(shared)
        return shared["phase_result"]
