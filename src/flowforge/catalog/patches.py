"""Preconfiguration patches for known catalog template quirks.

Patches run on node configurations (``{"parameters": {...}, ...}``) both when
a task template is fetched and after the model customizes it, so a template
or a generated config can never reintroduce a field layout the node rejects.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

NodeConfig = dict[str, Any]


@dataclass
class PreconfigurationPatch:
    node_type: str
    description: str
    apply: Callable[[NodeConfig], NodeConfig]


def _short_type(node_type: str) -> str:
    """'n8n-nodes-base.slack' and 'nodes-base.slack' both key as 'nodes-base.slack'."""
    return node_type[4:] if node_type.startswith("n8n-") else node_type


def _patch_slack_channel(config: NodeConfig) -> NodeConfig:
    params = config.setdefault("parameters", {})
    if "channel" in params:
        params["channelId"] = params.pop("channel")
        params["select"] = "channel"
    if params.get("channelId") and not params.get("select"):
        params["select"] = "channel"
    return config


class PatchRegistry:
    """Registry of patches keyed by node type."""

    def __init__(self, include_builtin: bool = True):
        self._patches: dict[str, list[PreconfigurationPatch]] = {}
        if include_builtin:
            self.register(
                PreconfigurationPatch(
                    node_type="nodes-base.slack",
                    description="Move Slack 'channel' to 'channelId' and add select=channel",
                    apply=_patch_slack_channel,
                )
            )

    def register(self, patch: PreconfigurationPatch) -> None:
        self._patches.setdefault(_short_type(patch.node_type), []).append(patch)

    def patches_for(self, node_type: str) -> list[PreconfigurationPatch]:
        return list(self._patches.get(_short_type(node_type), []))

    def apply(self, node_type: str, config: Optional[NodeConfig]) -> tuple[NodeConfig, list[str]]:
        """Apply every patch registered for ``node_type`` to a copy of ``config``.

        Returns:
            The patched config and the descriptions of the patches applied
        """
        patched = copy.deepcopy(config) if config else {}
        applied = []
        for patch in self.patches_for(node_type):
            patched = patch.apply(patched)
            applied.append(patch.description)
            logger.debug(f"Applied patch to {node_type}: {patch.description}")
        return patched, applied


default_patch_registry = PatchRegistry()
