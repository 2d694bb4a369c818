"""Node classification and configuration batching.

The classifier groups catalog nodes by category, package, special type,
complexity and connection pattern, then assigns every node to exactly one
configuration batch. Batching decides how the Configuration phase prompts
for each node and whether nodes may be configured concurrently.
"""

import logging
from typing import Literal, Optional

from pydantic import BaseModel, Field

from flowforge.catalog.rules import RULE_SET_ORDER

logger = logging.getLogger(__name__)

DATABASE_TYPES = ["postgres", "mysql", "mongodb", "redis", "sqlite", "mssql"]
AI_MODEL_TYPES = ["openAi", "anthropic", "gemini", "cohere", "huggingFace", "ollama"]
CONDITION_TYPES = ["if", "switch", "filter", "router"]
LOOP_TYPES = ["loop", "splitInBatches", "itemLists"]
MERGE_TYPES = ["merge", "join", "combine", "aggregate"]
CODE_TYPES = ["code", "function", "functionItem"]

AUTH_MARKERS = ("credential", "auth", "api key")

Complexity = Literal["simple", "moderate", "complex"]
Strategy = Literal["minimal", "example-based", "credential-focused", "individual"]

COMPLEXITY_TOKENS = {"simple": 100, "moderate": 300, "complex": 500}

PROCESSING_ORDER = ["triggers", "inputs", "transforms", "conditions", "outputs", "error_handlers"]


class BatchSpec(BaseModel):
    id: str
    name: str
    strategy: Strategy
    max_tokens: int
    parallel: bool


BATCH_SPECS: list[BatchSpec] = [
    BatchSpec(id="simple", name="Simple Passthrough Nodes", strategy="minimal", max_tokens=500, parallel=True),
    BatchSpec(id="trigger", name="Trigger Nodes", strategy="example-based", max_tokens=800, parallel=False),
    BatchSpec(
        id="auth", name="Authentication Required Nodes", strategy="credential-focused", max_tokens=1200, parallel=False
    ),
    BatchSpec(id="ai", name="AI and Agent Nodes", strategy="individual", max_tokens=2000, parallel=False),
    BatchSpec(id="code", name="Code and Function Nodes", strategy="example-based", max_tokens=1500, parallel=False),
    BatchSpec(
        id="condition", name="Condition and Branching Nodes", strategy="example-based", max_tokens=1000, parallel=False
    ),
]


class CatalogNode(BaseModel):
    """What the classifier needs to know about a node."""

    id: str
    type: str
    category: Optional[str] = None
    description: str = ""
    package: Optional[str] = None

    @property
    def suffix(self) -> str:
        """'n8n-nodes-base.splitInBatches' -> 'splitinbatches'."""
        return self.type.rsplit(".", 1)[-1].lower()

    @property
    def package_name(self) -> str:
        if self.package:
            return self.package
        return self.type.rsplit(".", 1)[0] if "." in self.type else "unknown"


class ConfigurationBatch(BaseModel):
    id: str
    name: str
    node_ids: list[str]
    strategy: Strategy
    max_tokens: int
    priority: int
    parallel: bool


class ConfigurationHint(BaseModel):
    complexity: Complexity
    needs_credentials: bool
    can_be_ai_tool: bool
    typical_role: str
    suggested_config: list[str] = Field(default_factory=list)


class CategorizationResult(BaseModel):
    by_category: dict[str, list[str]] = Field(default_factory=dict)
    by_package: dict[str, list[str]] = Field(default_factory=dict)
    by_special_type: dict[str, list[str]] = Field(default_factory=dict)
    by_complexity: dict[str, list[str]] = Field(default_factory=dict)
    by_connection_pattern: dict[str, list[str]] = Field(default_factory=dict)
    batches: list[ConfigurationBatch] = Field(default_factory=list)
    rules_needed: list[str] = Field(default_factory=list)
    estimated_tokens: int = 0
    processing_order: list[str] = Field(default_factory=lambda: list(PROCESSING_ORDER))

    def batch_for(self, node_id: str) -> Optional[ConfigurationBatch]:
        for batch in self.batches:
            if node_id in batch.node_ids:
                return batch
        return None


# Predicates


def _contains_any(text: str, needles: list[str]) -> bool:
    lowered = text.lower()
    return any(needle.lower() in lowered for needle in needles)


def is_trigger(node: CatalogNode) -> bool:
    return node.category == "trigger" or node.suffix.endswith("trigger") or node.suffix == "webhook"


def is_database(node: CatalogNode) -> bool:
    return _contains_any(node.suffix, DATABASE_TYPES)


def is_ai_model(node: CatalogNode) -> bool:
    return _contains_any(node.suffix, AI_MODEL_TYPES)


def is_agent(node: CatalogNode) -> bool:
    return "agent" in node.suffix


def is_langchain(node: CatalogNode) -> bool:
    return "langchain" in node.package_name.lower() or "langchain" in node.type.lower()


def is_ai(node: CatalogNode) -> bool:
    return is_ai_model(node) or is_agent(node) or is_langchain(node)


def is_code(node: CatalogNode) -> bool:
    return node.suffix in {t.lower() for t in CODE_TYPES}


def is_condition(node: CatalogNode) -> bool:
    return node.suffix in {t.lower() for t in CONDITION_TYPES}


def is_loop(node: CatalogNode) -> bool:
    return node.suffix in {t.lower() for t in LOOP_TYPES}


def is_merge(node: CatalogNode) -> bool:
    return node.suffix in {t.lower() for t in MERGE_TYPES}


def is_webhook(node: CatalogNode) -> bool:
    return "webhook" in node.suffix


def is_http(node: CatalogNode) -> bool:
    return "httprequest" in node.suffix


def mentions_auth(node: CatalogNode) -> bool:
    description = node.description.lower()
    return any(marker in description for marker in AUTH_MARKERS)


def is_branching(node: CatalogNode) -> bool:
    return is_condition(node)


def is_aggregating(node: CatalogNode) -> bool:
    return is_merge(node)


def is_generating(node: CatalogNode) -> bool:
    return node.category == "trigger" or is_code(node) or is_ai_model(node)


def is_passthrough(node: CatalogNode) -> bool:
    return node.category == "transform" and not (is_condition(node) or is_loop(node) or is_merge(node))


def assess_complexity(node: CatalogNode) -> Complexity:
    if is_ai_model(node) or is_agent(node) or is_code(node) or is_database(node):
        return "complex"
    if is_condition(node) or is_loop(node) or mentions_auth(node):
        return "moderate"
    return "simple"


def assign_batch(node: CatalogNode) -> str:
    """Batch id for a node; the first matching rule wins."""
    if is_trigger(node):
        return "trigger"
    if is_database(node) or mentions_auth(node):
        return "auth"
    if is_ai(node):
        return "ai"
    if is_code(node):
        return "code"
    if is_condition(node) or is_loop(node) or is_branching(node):
        return "condition"
    return "simple"


def typical_role(node: CatalogNode) -> str:
    if is_trigger(node):
        return "workflow_starter"
    if node.category == "output":
        return "data_destination"
    if is_condition(node):
        return "flow_control"
    if is_loop(node):
        return "batch_processor"
    if is_merge(node):
        return "data_combiner"
    if node.category == "transform":
        return "data_transformer"
    return "general_processor"


def needs_credentials(node: CatalogNode) -> bool:
    description = node.description.lower()
    return (
        is_database(node)
        or "auth" in description
        or "api" in description
        or any(service in node.suffix for service in ("slack", "gmail", "sheets"))
    )


def suggested_config(node: CatalogNode) -> list[str]:
    """Configuration fields worth asking the model about for this kind of node."""
    suggestions: list[str] = []
    if is_trigger(node):
        suggestions += ["activation_method", "validation_rules"]
    if is_database(node):
        suggestions += ["connection_string", "query", "operation_type"]
    if is_ai_model(node):
        suggestions += ["model", "temperature", "max_tokens", "system_prompt"]
    if is_condition(node):
        suggestions += ["condition_expression", "branches", "fallback"]
    if is_code(node):
        suggestions += ["language", "code", "input_access", "output_format"]
    return suggestions


def configuration_hint(node: CatalogNode) -> ConfigurationHint:
    return ConfigurationHint(
        complexity=assess_complexity(node),
        needs_credentials=needs_credentials(node),
        can_be_ai_tool=is_langchain(node),
        typical_role=typical_role(node),
        suggested_config=suggested_config(node),
    )


def rules_for(nodes: list[CatalogNode]) -> list[str]:
    """Rule sets required by a group of nodes, in canonical order."""
    needed: set[str] = set()
    for node in nodes:
        if is_code(node):
            needed.add("CODE_NODE_RULES")
        if is_ai(node):
            needed.update(("AI_NODE_RULES", "AI_CONNECTION_RULES"))
        if is_webhook(node):
            needed.add("WEBHOOK_RULES")
        if is_database(node):
            needed.update(("DATABASE_RULES", "CREDENTIAL_RULES"))
        if is_condition(node):
            needed.update(("CONDITION_RULES", "EXPRESSION_RULES"))
        if is_loop(node):
            needed.add("LOOP_RULES")
        if node.category == "transform":
            needed.update(("TRANSFORM_RULES", "DATA_MAPPING_RULES"))
    return [name for name in RULE_SET_ORDER if name in needed]


def _ids(nodes: list[CatalogNode]) -> list[str]:
    return sorted(node.id for node in nodes)


class NodeClassifier:
    """Categorize nodes and plan configuration batches.

    The result depends only on the set of nodes, never on their order:
    every id list is sorted and batches follow a fixed order.
    """

    def categorize(self, nodes: list[CatalogNode]) -> CategorizationResult:
        logger.debug(f"Categorizing {len(nodes)} nodes")

        by_category: dict[str, list[CatalogNode]] = {}
        by_package: dict[str, list[CatalogNode]] = {}
        for node in nodes:
            by_category.setdefault(node.category or "uncategorized", []).append(node)
            by_package.setdefault(node.package_name, []).append(node)

        special = {
            "code": [n for n in nodes if is_code(n)],
            "ai_model": [n for n in nodes if is_ai_model(n)],
            "agent": [n for n in nodes if is_agent(n)],
            "database": [n for n in nodes if is_database(n)],
            "webhook": [n for n in nodes if is_webhook(n)],
            "http": [n for n in nodes if is_http(n)],
            "condition": [n for n in nodes if is_condition(n)],
            "loop": [n for n in nodes if is_loop(n)],
            "merge": [n for n in nodes if is_merge(n)],
        }
        complexity = {level: [n for n in nodes if assess_complexity(n) == level] for level in COMPLEXITY_TOKENS}
        patterns = {
            "passthrough": [n for n in nodes if is_passthrough(n)],
            "branching": [n for n in nodes if is_branching(n)],
            "aggregating": [n for n in nodes if is_aggregating(n)],
            "generating": [n for n in nodes if is_generating(n)],
        }

        result = CategorizationResult(
            by_category={key: _ids(group) for key, group in sorted(by_category.items())},
            by_package={key: _ids(group) for key, group in sorted(by_package.items())},
            by_special_type={key: _ids(group) for key, group in special.items()},
            by_complexity={key: _ids(group) for key, group in complexity.items()},
            by_connection_pattern={key: _ids(group) for key, group in patterns.items()},
            batches=self.create_batches(nodes),
            rules_needed=rules_for(nodes),
            estimated_tokens=sum(COMPLEXITY_TOKENS[level] * len(group) for level, group in complexity.items()),
        )

        logger.info(
            f"Categorization complete: {len(result.batches)} batches, "
            f"rules: {', '.join(result.rules_needed) or 'none'}"
        )
        return result

    def create_batches(self, nodes: list[CatalogNode]) -> list[ConfigurationBatch]:
        assigned: dict[str, list[CatalogNode]] = {}
        for node in nodes:
            assigned.setdefault(assign_batch(node), []).append(node)

        batches = []
        for spec in BATCH_SPECS:
            members = assigned.get(spec.id)
            if not members:
                continue
            batches.append(
                ConfigurationBatch(
                    id=spec.id,
                    name=spec.name,
                    node_ids=_ids(members),
                    strategy=spec.strategy,
                    max_tokens=spec.max_tokens,
                    priority=len(batches) + 1,
                    parallel=spec.parallel,
                )
            )
        return batches
