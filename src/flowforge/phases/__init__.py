"""Phase runners for the five-phase pipeline."""

from .base import PhaseContext, PhaseResult, PhaseRunner
from .building import BuildingRunner
from .configuration import ConfigurationRunner
from .discovery import DiscoveryRunner
from .documentation import DocumentationRunner
from .validation import ValidationRunner

__all__ = [
    "BuildingRunner",
    "ConfigurationRunner",
    "DiscoveryRunner",
    "DocumentationRunner",
    "PhaseContext",
    "PhaseResult",
    "PhaseRunner",
    "ValidationRunner",
]
