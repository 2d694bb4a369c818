"""Phase-based layout for the finished workflow.

Nodes are grouped into visual phases (triggers, inputs, transforms, ...),
laid out left to right phase by phase, and each phase gets a sticky note
describing it. Everything here is deterministic: the same graph always
produces the same positions and notes.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from flowforge.session.models import STICKY_NOTE_TYPE, WorkflowGraph, WorkflowNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseDefinition:
    icon: str
    name: str
    description: str
    color: int


PHASE_DEFINITIONS: dict[str, PhaseDefinition] = {
    "triggers": PhaseDefinition("📥", "Triggers", "Workflow entry points", 5),
    "inputs": PhaseDefinition("📊", "Inputs", "Data collection", 5),
    "transforms": PhaseDefinition("⚙️", "Transform", "Processing & routing", 5),
    "decision": PhaseDefinition("🔀", "Decision", "Routing & conditional logic", 2),
    "aggregation": PhaseDefinition("🔄", "Data Merging", "Merge and combine data streams", 5),
    "storage": PhaseDefinition("💾", "Storage", "Save & persist data", 5),
    "integration": PhaseDefinition("🔗", "Integration", "External system updates", 5),
    "outputs": PhaseDefinition("🚀", "Outputs", "Actions & destinations", 6),
    "finalization": PhaseDefinition("✅", "Finalization", "Post-output processing", 5),
    "error": PhaseDefinition("⚠️", "Error Handling", "Error recovery and retry logic", 3),
}

PHASE_ORDER: list[str] = list(PHASE_DEFINITIONS)

CATEGORY_PHASES = {
    "trigger": "triggers",
    "input": "inputs",
    "output": "outputs",
    "transform": "transforms",
    "decision": "decision",
    "aggregation": "aggregation",
    "storage": "storage",
    "integration": "integration",
    "finalization": "finalization",
    "error": "error",
}

TRANSFORM_TYPES = [
    "code",
    "function",
    "set",
    "itemLists",
    "filter",
    "splitInBatches",
    "loop",
    "executeWorkflow",
    "wait",
    "noOp",
]
DECISION_TYPES = ["if", "switch", "router"]
AGGREGATION_TYPES = ["merge", "aggregate", "combine"]

# Layout constants
START_X = 470
NODE_SPACING = 200
BASE_Y = 300
STACK_BASE_Y = 250
VERTICAL_STACK_SPACING = 150
NODE_WIDTH = 150
NODE_HEIGHT = 100
STICKY_PADDING = 40
STICKY_TOP_SPACING = 200
STICKY_MIN_WIDTH = 310
STICKY_MIN_HEIGHT = 200
MULTI_ROW_NODE_COUNT = 3
MULTI_ROW_Y_RANGE = 90


def visual_phase(node: WorkflowNode) -> str:
    """Visual phase of a node: its category first, then its type suffix."""
    if node.category:
        phase = CATEGORY_PHASES.get(node.category.lower())
        if phase:
            return phase
        logger.debug(f"Unexpected node category '{node.category}' for {node.type}")

    suffix = node.type.rsplit(".", 1)[-1]
    if suffix.lower().endswith("trigger") or suffix == "webhook":
        return "triggers"
    if suffix in DECISION_TYPES:
        return "decision"
    if suffix in AGGREGATION_TYPES:
        return "aggregation"
    if suffix in TRANSFORM_TYPES:
        return "transforms"
    return "transforms"


def group_by_phase(nodes: list[WorkflowNode]) -> dict[str, list[str]]:
    """Node names per active visual phase, in phase order."""
    groups: dict[str, list[str]] = {phase: [] for phase in PHASE_ORDER}
    for node in nodes:
        groups[visual_phase(node)].append(node.name)
    return {phase: names for phase, names in groups.items() if names}


def workflow_shape(nodes: list[WorkflowNode], groups: dict[str, list[str]]) -> str:
    if any(node.type.rsplit(".", 1)[-1] == "executeWorkflowTrigger" for node in nodes):
        return "sub_workflow"
    if set(groups) == {"transforms"}:
        return "transform_only"
    if "triggers" in groups and "outputs" in groups:
        return "standard"
    return "custom"


def single_predecessors(graph: WorkflowGraph) -> dict[str, str]:
    """Target name -> source name for nodes with exactly one incoming connection."""
    incoming: dict[str, list[str]] = {}
    for source, _, link in graph.iter_connections():
        incoming.setdefault(link.node, []).append(source)
    return {target: sources[0] for target, sources in incoming.items() if len(sources) == 1}


def compute_layout(graph: WorkflowGraph, groups: dict[str, list[str]]) -> dict[str, list[float]]:
    """New [x, y] positions by node name.

    Within a phase, nodes fed by the same single predecessor are stacked in
    one column; every other node gets its own column.
    """
    predecessors = single_predecessors(graph)
    positions: dict[str, list[float]] = {}
    x = START_X

    for phase in PHASE_ORDER:
        names = groups.get(phase)
        if not names:
            continue

        clusters: dict[tuple[str, str], list[str]] = {}
        for name in names:
            key = ("fed_by", predecessors[name]) if name in predecessors else ("root", name)
            clusters.setdefault(key, []).append(name)

        phase_x = x
        for members in clusters.values():
            if len(members) > 1:
                for k, name in enumerate(members):
                    positions[name] = [phase_x, STACK_BASE_Y + k * VERTICAL_STACK_SPACING]
            else:
                positions[members[0]] = [phase_x, BASE_Y]
            phase_x += NODE_SPACING

        x = phase_x + NODE_SPACING

    return positions


def unified_sticky_height(groups: dict[str, list[str]], positions: dict[str, list[float]]) -> float:
    """One height for every sticky note: the tallest phase, with a floor."""
    heights = []
    for names in groups.values():
        ys = [positions[name][1] for name in names]
        span = max(ys) - min(ys) + NODE_HEIGHT
        heights.append(STICKY_TOP_SPACING + STICKY_PADDING + span + STICKY_PADDING)
    return max(heights + [STICKY_MIN_HEIGHT + STICKY_TOP_SPACING])


def sticky_notes(
    groups: dict[str, list[str]],
    positions: dict[str, list[float]],
    node_ids: dict[str, str],
    descriptions: Optional[dict[str, str]] = None,
) -> list[tuple[str, WorkflowNode, list[str]]]:
    """One sticky note per active phase.

    Returns:
        (visual phase, sticky node, ids of the nodes it covers) triples
    """
    if not groups:
        return []
    all_ys = [pos[1] for pos in positions.values()]
    top = min(all_ys) - STICKY_PADDING - STICKY_TOP_SPACING
    height = unified_sticky_height(groups, positions)

    notes = []
    for phase, names in groups.items():
        definition = PHASE_DEFINITIONS[phase]
        xs = [positions[name][0] for name in names]
        cluster_width = max(xs) - min(xs) + NODE_WIDTH
        center = (min(xs) + max(xs) + NODE_WIDTH) / 2
        width = max(STICKY_MIN_WIDTH, cluster_width + 2 * STICKY_PADDING)
        description = (descriptions or {}).get(phase) or definition.description
        note = WorkflowNode(
            id=f"sticky_{phase}",
            name=f"{definition.name} Documentation",
            type=STICKY_NOTE_TYPE,
            type_version=1,
            position=[center - width / 2, top],
            parameters={
                "content": f"## {definition.icon} {definition.name}\n{description}",
                "height": height,
                "width": width,
                "color": definition.color,
            },
        )
        notes.append((phase, note, [node_ids[name] for name in names]))
    return notes


def layout_hints(
    nodes: list[WorkflowNode], groups: dict[str, list[str]], positions: dict[str, list[float]]
) -> dict[str, Any]:
    requires_multi_row = False
    for names in groups.values():
        if len(names) > MULTI_ROW_NODE_COUNT:
            requires_multi_row = True
            break
        ys = [positions[name][1] for name in names]
        if len(ys) > 1 and max(ys) - min(ys) > MULTI_ROW_Y_RANGE:
            requires_multi_row = True
            break
    return {
        "present_phases": list(groups),
        "requires_multi_row": requires_multi_row,
        "pattern": workflow_shape(nodes, groups),
    }


@dataclass
class LayoutPlan:
    workflow: WorkflowGraph
    notes: list[tuple[str, WorkflowNode, list[str]]]
    hints: dict[str, Any]


def plan_layout(graph: WorkflowGraph) -> LayoutPlan:
    """Reposition the graph's nodes and produce its sticky notes.

    Existing sticky notes are dropped; the returned workflow contains only
    the repositioned workflow nodes.
    """
    workflow = graph.model_copy(deep=True)
    workflow.nodes = [node for node in workflow.nodes if not node.is_sticky_note]

    groups = group_by_phase(workflow.nodes)
    positions = compute_layout(workflow, groups)
    for node in workflow.nodes:
        node.position = positions[node.name]

    node_ids = {node.name: node.id for node in workflow.nodes}
    return LayoutPlan(
        workflow=workflow,
        notes=sticky_notes(groups, positions, node_ids),
        hints=layout_hints(workflow.nodes, groups, positions),
    )
