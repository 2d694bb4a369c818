"""Discovery: turn the request into an intent plan and a set of selected nodes.

One completion call analyzes the request into ordered steps. Steps covered by
a task template resolve to pre-configured nodes; everything else goes through
gap search. Answering a clarification re-runs the analysis but keeps what is
already selected.
"""

import logging
from typing import Any, Optional

from flowforge.catalog.search import CapabilitySearchResult, best_match
from flowforge.catalog.tasks import (
    TaskNodeConfig,
    UnmatchedCapability,
    known_task_names,
    task_name_to_capability,
    to_capabilities,
    validate_task_names,
)
from flowforge.phases.base import PhaseContext, PhaseResult, PhaseRunner
from flowforge.planning.error_handler import client_error, validation_error
from flowforge.planning.prompts.loader import load_prompt, render_prompt
from flowforge.planning.schemas import IntentAnalysis
from flowforge.session.models import Clarification, DiscoveredNode, IntentStep, Phase
from flowforge.session.operations import (
    ClarificationResponse,
    CompletePhase,
    DiscoverNode,
    RequestClarification,
    SelectNode,
    SetIntent,
    SetUserPrompt,
)
from flowforge.session.state import SessionState, apply_operation_in_place

logger = logging.getLogger(__name__)

MAX_CLARIFICATION_ROUNDS = 3

TASK_NODE_PREFIX = "task_"
SEARCH_NODE_PREFIX = "search_"


def task_node_id(task_name: str) -> str:
    return f"{TASK_NODE_PREFIX}{task_name}"


def format_clarifications(state: SessionState) -> str:
    """Answered questions as a prompt section, or '' when there are none."""
    if not state.clarification_history:
        return ""
    lines = ["## Clarifications", ""]
    for exchange in state.clarification_history:
        lines.append(f"- Q ({exchange.question_id}): {exchange.question}")
        lines.append(f"  A: {exchange.response}")
    return "\n".join(lines)


def prune_intent(steps: list[IntentStep], bound: set[str]) -> list[IntentStep]:
    """Drop steps with no selected node, wiring their successors past them.

    A successor of a dropped step inherits the dropped step's predecessors
    and output slot. References to step ids that do not exist are kept so
    Building can reject them.
    """
    by_id = {step.id: step for step in steps}
    dropped = {step.id for step in steps if step.id not in bound}

    def resolve(step_id: str, output: int, seen: frozenset) -> list[tuple[str, int]]:
        if step_id not in dropped:
            return [(step_id, output)]
        if step_id in seen:
            return []
        gone = by_id[step_id]
        resolved: list[tuple[str, int]] = []
        for pred in gone.after:
            resolved.extend(resolve(pred, gone.output, seen | {step_id}))
        return resolved

    pruned = []
    for step in steps:
        if step.id in dropped:
            continue
        after: list[str] = []
        output = step.output
        for pred in step.after:
            for pred_id, pred_output in resolve(pred, step.output, frozenset()):
                if pred_id not in after:
                    after.append(pred_id)
                    if pred != pred_id:
                        output = pred_output
        pruned.append(step.model_copy(update={"after": after, "output": output}))
    return pruned


class DiscoveryRunner(PhaseRunner):
    """Analyze intent, resolve task templates and fill gaps by search.

    Interface:
    - Reads: state.user_prompt, state.pending_clarifications, state.selected
    - Inputs: clarification_response ({"question_id", "response"}, optional)
    - Operations: clarificationResponse, setUserPrompt, requestClarification,
      setIntent, discoverNode, selectNode, completePhase
    """

    phase = Phase.DISCOVERY

    async def run_phase(
        self,
        state: SessionState,
        context: PhaseContext,
        clarification_response: Optional[dict[str, str]] = None,
        **_: Any,
    ) -> PhaseResult:
        working = state.model_copy(deep=True)
        operations: list[Any] = []

        if clarification_response is not None:
            question_id = clarification_response.get("question_id", "")
            response = (clarification_response.get("response") or "").strip()
            if not any(c.question_id == question_id for c in working.pending_clarifications):
                return PhaseResult.failed(
                    self.phase, client_error(f"No pending question '{question_id}'", phase=self.phase.value)
                )
            if not response:
                return PhaseResult.failed(self.phase, client_error("The answer is empty", phase=self.phase.value))
            for op in (
                ClarificationResponse(question_id=question_id, response=response),
                SetUserPrompt(prompt=f"{working.user_prompt}\n\nClarification[{question_id}]: {response}"),
            ):
                apply_operation_in_place(working, op)
                operations.append(op)

        if not working.user_prompt.strip():
            return PhaseResult.failed(
                self.phase,
                client_error("The workflow request is empty", "Describe the automation you want", self.phase.value),
            )

        if working.pending_clarifications:
            logger.info(
                "DiscoveryRunner: waiting for clarification response",
                extra={"phase": self.phase.value, "session_id": state.id},
            )
            return PhaseResult(
                phase=self.phase, operations=operations, paused=True, clarification=working.current_clarification
            )

        analysis = await self._analyze_intent(working, context)

        rounds = len(working.clarification_history) + len(working.pending_clarifications)
        if analysis.clarification_needed and analysis.clarification is not None:
            if rounds < MAX_CLARIFICATION_ROUNDS:
                clarification = Clarification(
                    question_id=f"q_{rounds + 1}",
                    question=analysis.clarification.question,
                    context=analysis.clarification.context,
                    suggestions=analysis.clarification.suggestions,
                )
                operations.append(RequestClarification(clarification=clarification))
                logger.info(
                    f"DiscoveryRunner: requesting clarification {clarification.question_id}",
                    extra={"phase": self.phase.value, "session_id": state.id},
                )
                return PhaseResult(phase=self.phase, operations=operations, paused=True, clarification=clarification)
            logger.warning(
                f"DiscoveryRunner: clarification limit of {MAX_CLARIFICATION_ROUNDS} reached, continuing",
                extra={"phase": self.phase.value, "session_id": state.id},
            )

        node_ops, errors, bound = await self._discover_nodes(working, analysis, context)
        steps = prune_intent(analysis.steps, bound)

        selected_count = len(working.selected) + sum(1 for op in node_ops if isinstance(op, SelectNode))
        if selected_count == 0:
            return PhaseResult(
                phase=self.phase,
                success=False,
                error=validation_error(
                    "No nodes could be discovered",
                    "Name the services involved, for example 'Slack' or 'Postgres'",
                    self.phase.value,
                ),
                discovery_errors=errors,
            )

        operations.append(SetIntent(steps=steps))
        operations.extend(node_ops)
        operations.append(CompletePhase(phase=self.phase))

        logger.info(
            f"DiscoveryRunner: selected {selected_count} nodes for {len(steps)} steps",
            extra={"phase": self.phase.value, "session_id": state.id},
        )
        return PhaseResult(
            phase=self.phase,
            operations=operations,
            discovery_errors=errors,
            warnings=list(errors),
            metrics={"intent": analysis.intent, "steps": len(steps), "selected": selected_count},
        )

    async def _analyze_intent(self, state: SessionState, context: PhaseContext) -> IntentAnalysis:
        user = render_prompt(
            "discovery_intent",
            user_prompt=state.user_prompt,
            known_tasks="\n".join(f"- {name}" for name in known_task_names()),
            clarifications=format_clarifications(state),
        )
        data = await context.completion.complete(load_prompt("system"), user, IntentAnalysis)
        analysis = IntentAnalysis.model_validate(data)
        logger.info(
            f"DiscoveryRunner: intent '{analysis.intent}' with {len(analysis.steps)} steps, "
            f"{len(analysis.matched_tasks)} matched tasks",
            extra={"phase": self.phase.value, "session_id": state.id},
        )
        return analysis

    async def _discover_nodes(
        self, state: SessionState, analysis: IntentAnalysis, context: PhaseContext
    ) -> tuple[list[Any], list[str], set[str]]:
        """Resolve nodes for the plan.

        Returns:
            (discover/select operations, unresolved capability messages,
            ids of the steps that ended up with a node)
        """
        operations: list[Any] = []
        errors: list[str] = []
        bound: set[str] = set()

        # Nodes selected in an earlier round are kept and rebound to this plan
        for node in state.selected_nodes():
            if node.id.startswith(TASK_NODE_PREFIX):
                step_id = self._step_for_task(analysis.steps, node.id[len(TASK_NODE_PREFIX) :])
            else:
                step_id = self._step_for_capability(analysis.steps, node.purpose)
            if step_id != node.step_id:
                operations.append(DiscoverNode(node=node.model_copy(update={"step_id": step_id})))
            if step_id:
                bound.add(step_id)

        selected_ids = set(state.selected)
        selected_purposes = {node.purpose.strip().lower() for node in state.selected_nodes()}

        wanted = list(analysis.matched_tasks) + [step.task for step in analysis.steps if step.task]
        known, unknown = validate_task_names(list(dict.fromkeys(wanted)))
        to_fetch = [name for name in known if task_node_id(name) not in selected_ids]

        capabilities = list(analysis.unmatched_capabilities)
        if to_fetch:
            fetched = await context.resolver.fetch_tasks(to_fetch)
            for task in fetched.successful:
                node = self._task_node(task, analysis.steps)
                if node.step_id:
                    bound.add(node.step_id)
                operations += [DiscoverNode(node=node), SelectNode(node_id=node.id)]
            capabilities += to_capabilities(fetched.failed)

        for name in unknown:
            capabilities.append(
                UnmatchedCapability(
                    name=task_name_to_capability(name),
                    description=f"Unknown task '{name}'",
                    search_terms=[name.replace("_", " ")],
                    original_task_name=name,
                )
            )

        pending: list[tuple[UnmatchedCapability, Optional[str]]] = []
        seen_names: set[str] = set()
        for capability in capabilities:
            key = capability.name.strip().lower()
            if key in seen_names or key in selected_purposes:
                continue
            seen_names.add(key)
            if capability.original_task_name:
                step_id = self._step_for_task(analysis.steps, capability.original_task_name)
            else:
                step_id = self._step_for_capability(analysis.steps, capability.name)
            # A resolved task template beats a search result for the same step
            if step_id and step_id in bound:
                logger.debug(f"Capability '{capability.name}' already covered by a task template")
                continue
            pending.append((capability, step_id))

        if not pending:
            return operations, errors, bound

        results = await context.gap_search.search([capability for capability, _ in pending])
        next_index = sum(1 for node in state.discovered if node.id.startswith(SEARCH_NODE_PREFIX)) + 1
        for capability, step_id in pending:
            result: Optional[CapabilitySearchResult] = results.get(capability.name)
            match = best_match(result.nodes) if result else None
            if match is None:
                errors.append(f"No catalog node found for '{capability.name}'")
                continue
            node = DiscoveredNode(
                id=f"{SEARCH_NODE_PREFIX}{next_index}",
                type=match.node_type,
                purpose=capability.name,
                category=match.category,
                step_id=step_id,
                relevance=match.relevance,
            )
            next_index += 1
            if step_id:
                bound.add(step_id)
            operations += [DiscoverNode(node=node), SelectNode(node_id=node.id)]

        return operations, errors, bound

    @staticmethod
    def _task_node(task: TaskNodeConfig, steps: list[IntentStep]) -> DiscoveredNode:
        return DiscoveredNode(
            id=task_node_id(task.task_name),
            type=task.node_type,
            purpose=task.purpose,
            category=task.category,
            is_pre_configured=True,
            config=task.config,
            step_id=DiscoveryRunner._step_for_task(steps, task.task_name),
        )

    @staticmethod
    def _step_for_task(steps: list[IntentStep], task_name: str) -> Optional[str]:
        for step in steps:
            if step.task == task_name:
                return step.id
        return None

    @staticmethod
    def _step_for_capability(steps: list[IntentStep], capability_name: str) -> Optional[str]:
        wanted = capability_name.strip().lower()
        for step in steps:
            if step.capability and step.capability.strip().lower() == wanted:
                return step.id
        return None
