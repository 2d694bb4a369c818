"""Configuration: one completion call per selected node, then catalog validation.

Nodes are classified into batches first. The parallel batch is configured
concurrently under a semaphore; every other batch runs one node at a time in
batch order. A node that cannot be configured or validated is replaced by a
NoOp placeholder instead of failing the phase.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Optional, TypeVar

from flowforge.catalog.classifier import CatalogNode, ConfigurationBatch, rules_for
from flowforge.catalog.client import NodeValidation
from flowforge.catalog.rules import render_rules
from flowforge.core.exceptions import CatalogServiceError, CompletionServiceError
from flowforge.phases.base import PhaseContext, PhaseResult, PhaseRunner
from flowforge.planning.prompts.loader import load_prompt, render_prompt
from flowforge.planning.schemas import NodeConfiguration
from flowforge.session.models import NOOP_TYPE, ConfiguredNode, DiscoveredNode, Phase, ValidationResult
from flowforge.session.operations import CompletePhase, ConfigureNode, SetConfigAnalysis, ValidateNode
from flowforge.session.state import SessionState

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Keys that belong on the node itself, not inside its parameters
NODE_LEVEL_KEYS = (
    "onError",
    "retryOnFail",
    "maxTries",
    "waitBetweenTries",
    "alwaysOutputData",
    "continueOnFail",
    "notes",
    "typeVersion",
    "disabled",
    "executeOnce",
    "credentials",
    "color",
)

# Fallback values for missing required fields, by catalog property type
DEFAULT_BY_TYPE: dict[str, Any] = {
    "string": "",
    "number": 0,
    "boolean": False,
    "options": "",
    "multiOptions": [],
    "collection": {},
    "fixedCollection": {},
    "json": "{}",
}

NodeOutcome = tuple[ConfiguredNode, ValidationResult]


def split_node_level(config: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a flat template into (node-level settings, parameters)."""
    node_level = {key: config[key] for key in NODE_LEVEL_KEYS if key in config}
    parameters = {key: value for key, value in config.items() if key not in NODE_LEVEL_KEYS}
    return node_level, parameters


def parse_type_version(value: Any) -> Optional[float]:
    """'2.1' -> 2.1, '2' -> 2, anything unusable -> None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
        return int(number) if number.is_integer() else number
    if isinstance(value, list):
        numbers = [v for v in value if isinstance(v, (int, float)) and not isinstance(v, bool)]
        return max(numbers) if numbers else None
    return None


def essential_properties(essentials: Optional[dict[str, Any]]) -> list[dict[str, Any]]:
    if not essentials:
        return []
    props = list(essentials.get("requiredProperties") or []) + list(essentials.get("commonProperties") or [])
    return [prop for prop in props if isinstance(prop, dict) and prop.get("name")]


def auto_fill_missing(
    parameters: dict[str, Any], missing: list[str], essentials: Optional[dict[str, Any]]
) -> dict[str, Any]:
    """Fill missing required fields with safe defaults.

    ``schema`` becomes "public"; other fields take the catalog default, or a
    default for their property type.
    """
    filled = dict(parameters)
    props = {prop["name"]: prop for prop in essential_properties(essentials)}
    for name in missing:
        if name in filled:
            continue
        if name == "schema":
            filled[name] = "public"
            continue
        prop = props.get(name)
        if prop is not None and "default" in prop:
            filled[name] = prop["default"]
        elif prop is not None:
            filled[name] = DEFAULT_BY_TYPE.get(prop.get("type", "string"), "")
        else:
            filled[name] = ""
        logger.debug(f"Auto-filled missing field '{name}' with {filled[name]!r}")
    return filled


def replacement_notes(node: DiscoveredNode, errors: list[str]) -> str:
    lines = [
        f'This node replaced {node.type} with purpose "{node.purpose}" '
        f"(original category: {node.category or 'unknown'}) due to validation errors. "
        "Original validation errors:"
    ]
    lines += [f"- {error}" for error in errors] or ["- unknown error"]
    return "\n".join(lines)


def noop_replacement(node: DiscoveredNode, errors: list[str]) -> NodeOutcome:
    """NoOp placeholder for a node that could not be configured."""
    configured = ConfiguredNode(
        id=node.id,
        type=NOOP_TYPE,
        purpose=node.purpose,
        config={"parameters": {}, "notes": replacement_notes(node, errors)},
        validated=True,
        validation_errors=list(errors),
        category="transform",
        step_id=node.step_id,
        replaced_type=node.type,
    )
    warning = f"Replaced {node.type} with a NoOp placeholder"
    return configured, ValidationResult(valid=True, warnings=[warning])


def _catalog_node(node: DiscoveredNode) -> CatalogNode:
    return CatalogNode(id=node.id, type=node.type, category=node.category, description=node.purpose)


async def gather_or_cancel(*aws: Awaitable[T]) -> list[T]:
    """Gather awaitables as tasks; on the first failure cancel the rest and re-raise."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class ConfigurationRunner(PhaseRunner):
    """Configure and validate every selected node.

    Interface:
    - Reads: state.selected, state.discovered, state.configured, state.user_prompt
    - Operations: setConfigAnalysis, configureNode, validateNode, completePhase
    """

    phase = Phase.CONFIGURATION

    async def run_phase(self, state: SessionState, context: PhaseContext, **_: Any) -> PhaseResult:
        nodes = state.unconfigured_nodes()
        if not nodes:
            logger.info(
                "ConfigurationRunner: every selected node is already configured",
                extra={"phase": self.phase.value, "session_id": state.id},
            )
            return PhaseResult(phase=self.phase, operations=[CompletePhase(phase=self.phase)])

        essentials = await self._prefetch_essentials(context, nodes)
        analysis = context.classifier.categorize([_catalog_node(node) for node in nodes])

        by_id = {node.id: node for node in nodes}
        outcomes: dict[str, NodeOutcome] = {}
        for batch in analysis.batches:
            logger.info(
                f"ConfigurationRunner: batch '{batch.id}' with {len(batch.node_ids)} nodes "
                f"({'parallel' if batch.parallel else 'sequential'})",
                extra={"phase": self.phase.value, "session_id": state.id},
            )
            if batch.parallel:
                semaphore = asyncio.Semaphore(context.settings.config_concurrency)

                async def limited(node: DiscoveredNode, batch: ConfigurationBatch = batch) -> NodeOutcome:
                    async with semaphore:
                        return await self._configure_node(state, context, node, batch, essentials.get(node.type))

                results = await gather_or_cancel(*(limited(by_id[node_id]) for node_id in batch.node_ids))
                outcomes.update(zip(batch.node_ids, results))
            else:
                for node_id in batch.node_ids:
                    node = by_id[node_id]
                    outcomes[node_id] = await self._configure_node(
                        state, context, node, batch, essentials.get(node.type)
                    )

        operations: list[Any] = [SetConfigAnalysis(analysis=analysis.model_dump())]
        warnings: list[str] = []
        for node in nodes:
            configured, result = outcomes[node.id]
            operations += [ConfigureNode(node=configured), ValidateNode(node_id=node.id, result=result)]
            if configured.replaced_type:
                warnings.append(f"{node.id}: {result.warnings[0]}")
        operations.append(CompletePhase(phase=self.phase))

        replaced = sum(1 for configured, _ in outcomes.values() if configured.replaced_type)
        logger.info(
            f"ConfigurationRunner: configured {len(nodes)} nodes, {replaced} replaced by NoOp",
            extra={"phase": self.phase.value, "session_id": state.id},
        )
        return PhaseResult(
            phase=self.phase,
            operations=operations,
            warnings=warnings,
            metrics={
                "configured": len(nodes),
                "replaced": replaced,
                "batches": [batch.id for batch in analysis.batches],
                "estimated_tokens": analysis.estimated_tokens,
            },
        )

    async def _prefetch_essentials(
        self, context: PhaseContext, nodes: list[DiscoveredNode]
    ) -> dict[str, Optional[dict[str, Any]]]:
        """Fetch essentials once per unique node type through the cache."""
        types = list(dict.fromkeys(node.type for node in nodes))

        async def fetch(node_type: str) -> Optional[dict[str, Any]]:
            cached = context.essentials_cache.get(node_type)
            if cached is not None:
                return cached
            try:
                essentials = await context.catalog.get_node_essentials(node_type)
            except CatalogServiceError as e:
                if not e.retryable:
                    raise
                logger.warning(f"Could not fetch essentials for {node_type}: {e}", extra={"phase": self.phase.value})
                return None
            if essentials:
                context.essentials_cache.set(node_type, essentials)
            return essentials

        fetched = await gather_or_cancel(*(fetch(node_type) for node_type in types))
        return dict(zip(types, fetched))

    async def _configure_node(
        self,
        state: SessionState,
        context: PhaseContext,
        node: DiscoveredNode,
        batch: ConfigurationBatch,
        essentials: Optional[dict[str, Any]],
    ) -> NodeOutcome:
        try:
            config = await self._generate_config(state, context, node, batch, essentials)
            validation, config = await self._validate(context, node.type, config, essentials)
        except CompletionServiceError as e:
            logger.warning(f"Configuration of {node.id} failed: {e}", extra={"phase": self.phase.value})
            return noop_replacement(node, [f"Configuration failed: {e}"])
        except CatalogServiceError as e:
            if not e.retryable:
                raise
            logger.warning(f"Validation of {node.id} failed: {e}", extra={"phase": self.phase.value})
            return noop_replacement(node, [f"Validation service error: {e}"])

        if not validation.valid:
            errors = validation.errors or [f"Missing required field: {f}" for f in validation.missing_required_fields]
            logger.warning(
                f"Node {node.id} ({node.type}) failed validation, replacing with NoOp",
                extra={"phase": self.phase.value, "session_id": state.id},
            )
            return noop_replacement(node, errors)

        configured = ConfiguredNode(
            id=node.id,
            type=node.type,
            purpose=node.purpose,
            config=config,
            validated=True,
            category=node.category,
            step_id=node.step_id,
        )
        return configured, ValidationResult(valid=True, warnings=validation.warnings)

    async def _generate_config(
        self,
        state: SessionState,
        context: PhaseContext,
        node: DiscoveredNode,
        batch: ConfigurationBatch,
        essentials: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        if node.is_pre_configured:
            node_level, template = split_node_level(node.config or {})
            patched, _ = context.patches.apply(node.type, {"parameters": template})
            template = patched["parameters"]
            node_context = (
                "## Template configuration\n\n"
                "Customize this pre-configured template for the request. Keep the fields that already fit.\n\n"
                f"```json\n{json.dumps(template, indent=2)}\n```"
            )
        else:
            node_level, template = {}, {}
            node_context = self._essentials_context(essentials)

        user = render_prompt(
            "configuration",
            user_prompt=state.user_prompt,
            node_type=node.type,
            purpose=node.purpose or "(not specified)",
            category=node.category or "unknown",
            strategy=batch.strategy,
            node_context=node_context,
            rules=render_rules(rules_for([_catalog_node(node)])) or "No special rules.",
        )
        data = await context.completion.complete(load_prompt("system"), user, NodeConfiguration)
        generated = NodeConfiguration.model_validate(data)

        config: dict[str, Any] = {**node_level, "parameters": {**template, **generated.parameters}}
        if generated.credentials:
            config["credentials"] = generated.credentials
        if generated.notes:
            config["notes"] = generated.notes
        if "typeVersion" not in config and essentials:
            version = parse_type_version(essentials.get("version"))
            if version is not None:
                config["typeVersion"] = version

        patched, applied = context.patches.apply(node.type, config)
        if applied:
            logger.debug(f"Re-applied patches to {node.id}: {', '.join(applied)}")
        return patched

    @staticmethod
    def _essentials_context(essentials: Optional[dict[str, Any]]) -> str:
        if not essentials:
            return "## Node properties\n\nNo property information is available for this node type."
        props = {
            "requiredProperties": essentials.get("requiredProperties") or [],
            "commonProperties": essentials.get("commonProperties") or [],
        }
        return f"## Node properties\n\n```json\n{json.dumps(props, indent=2)}\n```"

    async def _validate(
        self,
        context: PhaseContext,
        node_type: str,
        config: dict[str, Any],
        essentials: Optional[dict[str, Any]],
    ) -> tuple[NodeValidation, dict[str, Any]]:
        parameters = config.get("parameters", {})
        result = await context.catalog.validate_node(node_type, parameters)
        if result.valid or not result.missing_required_fields:
            return result, config

        filled = auto_fill_missing(parameters, result.missing_required_fields, essentials)
        config = {**config, "parameters": filled}
        logger.debug(
            f"Re-validating {node_type} after filling {', '.join(result.missing_required_fields)}",
            extra={"phase": self.phase.value},
        )
        return await context.catalog.validate_node(node_type, filled), config
