"""Building: assemble the workflow graph from configured nodes. No LLM calls.

Connections follow the intent plan: each step's node is fed by its
predecessor steps' nodes, from the predecessor output named by the step.
Without a plan the nodes are chained trigger first. Topology problems are
never patched; they raise BuildError and fail the phase.
"""

import logging
import re
from collections import defaultdict
from typing import Any, Optional

from flowforge.catalog.classifier import CatalogNode, is_http, is_trigger, needs_credentials
from flowforge.core.exceptions import BuildError, WorkflowSchemaError
from flowforge.core.workflow_schema import validate_workflow
from flowforge.phases.base import PhaseContext, PhaseResult, PhaseRunner
from flowforge.session.models import ConfiguredNode, IntentStep, Phase, WorkflowGraph, WorkflowNode
from flowforge.session.operations import CompletePhase, SetWorkflow, SetWorkflowName
from flowforge.session.state import SessionState

logger = logging.getLogger(__name__)

ORIGIN_X = 250
ORIGIN_Y = 300
DEPTH_SPACING = 300
LANE_SPACING = 200

EXTERNAL_CATEGORIES = ("integration", "output")

MAX_NAME_LENGTH = 60

# (source id, source output slot, target id)
Link = tuple[str, int, str]


def base_name(node_type: str) -> str:
    """'n8n-nodes-base.httpRequest' -> 'httpRequest'."""
    suffix = node_type.rsplit(".", 1)[-1]
    return suffix[:1].lower() + suffix[1:] if suffix else "node"


def assign_names(nodes: list[ConfiguredNode]) -> dict[str, str]:
    """Unique node names by id: 'slack', 'slack_1', 'slack_2', ..."""
    names: dict[str, str] = {}
    used: set[str] = set()
    counters: dict[str, int] = defaultdict(int)
    for node in nodes:
        base = base_name(node.type)
        name = base
        while name in used:
            counters[base] += 1
            name = f"{base}_{counters[base]}"
        used.add(name)
        names[node.id] = name
    return names


def workflow_name(prompt: str) -> str:
    """First line of the request, shortened to a workflow title."""
    first_line = prompt.strip().splitlines()[0] if prompt.strip() else "Untitled workflow"
    first_line = re.sub(r"\s+", " ", first_line)
    if len(first_line) <= MAX_NAME_LENGTH:
        return first_line
    return first_line[: MAX_NAME_LENGTH - 3].rstrip() + "..."


def _catalog_node(node: ConfiguredNode) -> CatalogNode:
    return CatalogNode(id=node.id, type=node.type, category=node.category, description=node.purpose)


def trigger_first(nodes: list[ConfiguredNode]) -> list[ConfiguredNode]:
    """Stable reorder putting trigger nodes first."""
    triggers = [node for node in nodes if is_trigger(_catalog_node(node))]
    return triggers + [node for node in nodes if node not in triggers]


def error_mode(node: ConfiguredNode) -> str:
    """Default onError for a node by its role in the workflow."""
    catalog_node = _catalog_node(node)
    if is_trigger(catalog_node):
        return "stopWorkflow"
    if (
        is_http(catalog_node)
        or node.category in EXTERNAL_CATEGORIES
        or node.config.get("credentials")
        or needs_credentials(catalog_node)
    ):
        return "continueErrorOutput"
    return "continueRegularOutput"


def plan_links(steps: list[IntentStep], nodes: list[ConfiguredNode]) -> list[Link]:
    """Derive connections from the intent plan.

    Nodes without a step in the plan are chained after the node before them
    (in trigger-first order), or feed the plan's roots when they come first.

    Raises:
        BuildError: If a step follows a step that does not exist or has no node
    """
    ordered = trigger_first(nodes)
    step_ids = {step.id for step in steps}

    node_for_step: dict[str, str] = {}
    for node in ordered:
        if node.step_id in step_ids and node.step_id not in node_for_step:
            node_for_step[node.step_id] = node.id

    if not node_for_step:
        return [(a.id, 0, b.id) for a, b in zip(ordered, ordered[1:])]

    links: list[Link] = []
    for step in steps:
        target = node_for_step.get(step.id)
        if target is None:
            continue
        for pred in step.after:
            if pred not in step_ids:
                raise BuildError(f"Step '{step.id}' follows unknown step '{pred}'")
            source = node_for_step.get(pred)
            if source is None:
                raise BuildError(f"Step '{step.id}' follows step '{pred}', which has no configured node")
            links.append((source, step.output, target))

    bound = set(node_for_step.values())
    has_incoming = {target for _, _, target in links}
    roots = [node_id for node_id in (n.id for n in ordered) if node_id in bound and node_id not in has_incoming]
    for i, node in enumerate(ordered):
        if node.id in bound:
            continue
        if i == 0:
            links.extend((node.id, 0, root) for root in roots)
        else:
            links.append((ordered[i - 1].id, 0, node.id))
    return links


def compute_positions(node_ids: list[str], links: list[Link]) -> dict[str, list[float]]:
    """x from the longest path to a root, y from the incoming output slot.

    Raises:
        BuildError: If the links contain a cycle
    """
    incoming: dict[str, list[tuple[str, int]]] = {node_id: [] for node_id in node_ids}
    outgoing: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
    for source, slot, target in links:
        incoming[target].append((source, slot))
        outgoing[source].append(target)

    remaining = {node_id: len(incoming[node_id]) for node_id in node_ids}
    ready = [node_id for node_id in node_ids if remaining[node_id] == 0]
    order: list[str] = []
    while ready:
        node_id = ready.pop(0)
        order.append(node_id)
        for target in outgoing[node_id]:
            remaining[target] -= 1
            if remaining[target] == 0:
                ready.append(target)
    if len(order) != len(node_ids):
        cyclic = sorted(node_id for node_id in node_ids if node_id not in order)
        raise BuildError(f"The workflow steps form a cycle through: {', '.join(cyclic)}")

    depth: dict[str, int] = {}
    lane: dict[str, int] = {}
    for node_id in order:
        preds = incoming[node_id]
        depth[node_id] = max((depth[source] + 1 for source, _ in preds), default=0)
        lane[node_id] = preds[0][1] if preds else 0

    positions: dict[str, list[float]] = {}
    occupied: set[tuple[int, int]] = set()
    for node_id in order:
        slot = (depth[node_id], lane[node_id])
        while slot in occupied:
            slot = (slot[0], slot[1] + 1)
        occupied.add(slot)
        positions[node_id] = [ORIGIN_X + slot[0] * DEPTH_SPACING, ORIGIN_Y + slot[1] * LANE_SPACING]
    return positions


def graph_node(node: ConfiguredNode, name: str, position: list[float]) -> WorkflowNode:
    """WorkflowNode for a configured node; node-level config keys are kept."""
    data: dict[str, Any] = {key: value for key, value in node.config.items() if key != "parameters"}
    data.update(
        {
            "id": node.id,
            "name": name,
            "type": node.type,
            "typeVersion": node.config.get("typeVersion", 1),
            "position": position,
            "parameters": node.config.get("parameters", {}),
            "category": node.category,
            "onError": node.config.get("onError") or error_mode(node),
        }
    )
    return WorkflowNode.model_validate(data)


def build_graph(state: SessionState) -> WorkflowGraph:
    """Assemble the graph for the configured nodes in selection order.

    Raises:
        BuildError: If a node is not validated or the topology is invalid
    """
    configured = [state.configured[node_id] for node_id in state.selected if node_id in state.configured]
    if not configured:
        raise BuildError("No configured nodes to build a workflow from")

    unvalidated = [node.id for node in configured if not node.validated]
    if unvalidated:
        raise BuildError(f"Nodes are not validated: {', '.join(unvalidated)}")

    ordered = trigger_first(configured)
    names = assign_names(ordered)
    links = plan_links(state.intent, ordered)
    positions = compute_positions([node.id for node in ordered], links)

    graph = WorkflowGraph(nodes=[graph_node(node, names[node.id], positions[node.id]) for node in ordered])
    for source, slot, target in links:
        graph.add_connection(names[source], names[target], source_output=slot)

    try:
        validate_workflow(graph.to_n8n())
    except WorkflowSchemaError as e:
        raise BuildError(str(e)) from e
    return graph


class BuildingRunner(PhaseRunner):
    """Turn configured nodes into a connected, positioned workflow graph.

    Interface:
    - Reads: state.configured, state.selected, state.intent, state.user_prompt
    - Operations: setWorkflow, setWorkflowName, completePhase
    """

    phase = Phase.BUILDING

    async def run_phase(self, state: SessionState, context: Optional[PhaseContext] = None, **_: Any) -> PhaseResult:
        graph = build_graph(state)
        name = workflow_name(state.user_prompt)

        logger.info(
            f"BuildingRunner: built '{name}' with {len(graph.nodes)} nodes and {graph.connection_count()} connections",
            extra={"phase": self.phase.value, "session_id": state.id},
        )
        return PhaseResult(
            phase=self.phase,
            operations=[SetWorkflow(workflow=graph), SetWorkflowName(name=name), CompletePhase(phase=self.phase)],
            metrics={"nodes": len(graph.nodes), "connections": graph.connection_count()},
        )
