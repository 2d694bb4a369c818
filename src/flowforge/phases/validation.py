"""Validation: check the graph and let the model repair it with fix operations.

Each attempt validates the graph with the catalog and the local schema, asks
for fix operations for whatever is still wrong and applies them to a working
copy. The loop is bounded by attempts and by a timeout; on timeout the fixes
applied so far are kept. The phase always completes; errors that survive the
loop are reported as warnings.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError

from flowforge.catalog.client import WorkflowIssue
from flowforge.core.exceptions import (
    CatalogServiceError,
    CompletionServiceError,
    InvalidOperationError,
    WorkflowSchemaError,
)
from flowforge.core.workflow_schema import validate_workflow
from flowforge.phases.base import PhaseContext, PhaseResult, PhaseRunner
from flowforge.planning.prompts.loader import load_prompt, render_prompt
from flowforge.planning.schemas import WorkflowFixes
from flowforge.session.models import Phase, ValidationResult, WorkflowGraph
from flowforge.session.operations import FIX_OPERATION_ADAPTER, CompletePhase, SetWorkflow, ValidateNode
from flowforge.session.state import SessionState, apply_operation_in_place

logger = logging.getLogger(__name__)

OUTDATED_VERSION_PATTERN = re.compile(r"outdated\s+typeversion", re.IGNORECASE)


@dataclass
class FixProgress:
    """What the fix loop has achieved so far; survives cancellation."""

    operations: list[Any] = field(default_factory=list)
    remaining: list[WorkflowIssue] = field(default_factory=list)
    attempts: int = 0
    rejected: list[str] = field(default_factory=list)
    stopped_reason: Optional[str] = None


def mentioned_nodes(issues: list[WorkflowIssue], names: set[str]) -> set[str]:
    """Node names an issue list refers to, explicitly or in its messages."""
    found = {issue.node for issue in issues if issue.node in names}
    for issue in issues:
        for name in names:
            if re.search(rf"(?<![\w-]){re.escape(name)}(?![\w-])", issue.message):
                found.add(name)
    return found


def local_issues(graph: WorkflowGraph) -> list[WorkflowIssue]:
    try:
        validate_workflow(graph.to_n8n())
    except WorkflowSchemaError as e:
        return [WorkflowIssue(message=str(e))]
    return []


async def collect_issues(graph: WorkflowGraph, context: PhaseContext) -> list[WorkflowIssue]:
    """Catalog errors, outdated typeVersion warnings, then local schema errors."""
    result = await context.catalog.validate_workflow(graph.to_n8n())
    issues = list(result.errors)
    issues += [w for w in result.warnings if OUTDATED_VERSION_PATTERN.search(w.message)]
    return issues + local_issues(graph)


class ValidationRunner(PhaseRunner):
    """Validate the workflow and apply model-proposed fixes.

    Interface:
    - Reads: state.workflow, state.configured
    - Operations: addField, updateField, removeField, addConnection,
      removeConnection, addNode, renameNode, updateWorkflowSettings,
      validateNode, setWorkflow, completePhase
    """

    phase = Phase.VALIDATION

    async def run_phase(self, state: SessionState, context: PhaseContext, **_: Any) -> PhaseResult:
        working = state.model_copy(deep=True)
        progress = FixProgress()
        timeout = context.settings.validation_timeout

        timed_out = False
        try:
            await asyncio.wait_for(self._fix_loop(working, context, progress), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(
                f"ValidationRunner: timed out after {timeout}s, keeping {len(progress.operations)} applied fixes",
                extra={"phase": self.phase.value, "session_id": state.id},
            )

        graph = working.workflow
        failing = mentioned_nodes(progress.remaining, graph.node_names())
        operations: list[Any] = list(progress.operations)
        for node in graph.nodes:
            if node.id in working.configured and node.name not in failing:
                operations.append(ValidateNode(node_id=node.id, result=ValidationResult(valid=True)))
        operations += [SetWorkflow(workflow=graph), CompletePhase(phase=self.phase)]

        warnings = [issue.message for issue in progress.remaining]
        warnings += progress.rejected
        if timed_out:
            warnings.append(f"Validation timed out after {timeout:.0f}s; applied fixes were kept")
        elif progress.stopped_reason:
            warnings.append(progress.stopped_reason)

        logger.info(
            f"ValidationRunner: {progress.attempts} fix attempts, {len(progress.operations)} fixes applied, "
            f"{len(progress.remaining)} issues remaining",
            extra={"phase": self.phase.value, "session_id": state.id},
        )
        return PhaseResult(
            phase=self.phase,
            operations=operations,
            warnings=warnings,
            timed_out=timed_out,
            metrics={
                "attempts": progress.attempts,
                "fixes_applied": len(progress.operations),
                "remaining_errors": len(progress.remaining),
            },
        )

    async def _fix_loop(self, working: SessionState, context: PhaseContext, progress: FixProgress) -> None:
        max_attempts = context.settings.validation_max_attempts
        progress.remaining = await self._issues_or_stop(working.workflow, context, progress)

        while progress.remaining and progress.attempts < max_attempts:
            progress.attempts += 1
            try:
                fixes = await self._request_fixes(working.workflow, progress.remaining, progress.attempts, context)
            except CompletionServiceError as e:
                progress.stopped_reason = f"Fix generation failed: {e}"
                logger.warning(progress.stopped_reason, extra={"phase": self.phase.value})
                return
            if not fixes:
                progress.stopped_reason = "The model proposed no fixes for the remaining errors"
                return

            for fix in fixes:
                try:
                    apply_operation_in_place(working, fix)
                except InvalidOperationError as e:
                    progress.rejected.append(f"Rejected fix: {e}")
                    logger.debug(f"Skipping fix that does not apply: {e}", extra={"phase": self.phase.value})
                    continue
                progress.operations.append(fix)

            progress.remaining = await self._issues_or_stop(working.workflow, context, progress)

        if progress.remaining:
            logger.warning(
                f"ValidationRunner: {len(progress.remaining)} issues left after {progress.attempts} attempts",
                extra={"phase": self.phase.value, "session_id": working.id},
            )

    async def _issues_or_stop(
        self, graph: WorkflowGraph, context: PhaseContext, progress: FixProgress
    ) -> list[WorkflowIssue]:
        try:
            return await collect_issues(graph, context)
        except CatalogServiceError as e:
            if not e.retryable:
                raise
            progress.stopped_reason = f"Workflow validation service unavailable, checked locally only: {e}"
            logger.warning(progress.stopped_reason, extra={"phase": self.phase.value})
            return local_issues(graph)

    async def _request_fixes(
        self, graph: WorkflowGraph, issues: list[WorkflowIssue], attempt: int, context: PhaseContext
    ) -> list[Any]:
        names = mentioned_nodes(issues, graph.node_names())
        affected = [node.model_dump(by_alias=True, exclude_none=True) for node in graph.nodes if node.name in names]
        user = render_prompt(
            "validation_fix",
            attempt=attempt,
            errors="\n".join(f"- {issue.node + ': ' if issue.node else ''}{issue.message}" for issue in issues),
            affected_nodes=json.dumps(affected, indent=2) if affected else "(none identified)",
            workflow_json=json.dumps(graph.to_n8n(), indent=2),
        )
        data = await context.completion.complete(load_prompt("system"), user, WorkflowFixes)
        fixes = []
        for raw in data.get("fixes", []):
            try:
                fixes.append(FIX_OPERATION_ADAPTER.validate_python(raw))
            except ValidationError as e:
                logger.debug(f"Dropping malformed fix {raw!r}: {e}", extra={"phase": self.phase.value})
        logger.debug(f"Attempt {attempt}: received {len(fixes)} fixes", extra={"phase": self.phase.value})
        return fixes
