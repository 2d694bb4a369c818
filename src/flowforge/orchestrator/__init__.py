"""Phase transitions, the orchestrator and the background worker."""

from .orchestrator import Orchestrator, default_runners
from .phase_manager import PhaseManager, TransitionCheck
from .worker import JobOutcome, PipelineWorker

__all__ = [
    "JobOutcome",
    "Orchestrator",
    "PhaseManager",
    "PipelineWorker",
    "TransitionCheck",
    "default_runners",
]
