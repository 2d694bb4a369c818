"""LLM-facing planning support: completions, JSON repair, prompts and error classification."""

from .completion import CompletionClient, CompletionService, parse_completion
from .error_handler import ErrorType, PhaseError, classify_error
from .json_repair import repair_json

__all__ = [
    "CompletionClient",
    "CompletionService",
    "ErrorType",
    "PhaseError",
    "classify_error",
    "parse_completion",
    "repair_json",
]
