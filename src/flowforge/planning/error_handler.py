"""Error classification and user-facing messages for phase failures.

Runner exceptions are turned into a structured PhaseError so the
orchestrator can report a failed phase without raising, and the CLI can
print something actionable instead of a traceback.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Optional

from flowforge.core.exceptions import (
    BuildError,
    CatalogServiceError,
    CompletionServiceError,
    InvalidOperationError,
    PhaseExecutionError,
    SessionConflictError,
    SessionNotFoundError,
    WorkflowSchemaError,
)

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """Where a failure came from."""

    VALIDATION = "validation"  # Bad workflow or nothing usable to build
    CATALOG_SERVICE = "catalog_service"  # Node catalog (MCP) failures
    COMPLETION_SERVICE = "completion_service"  # LLM failures or unusable output
    CLIENT = "client"  # Caller mistakes: unknown session, empty prompt


class PhaseError:
    """Structured error information for a failed phase."""

    def __init__(
        self,
        type: ErrorType,
        code: str,
        message: str,
        user_message: str,
        retryable: bool = False,
        suggestion: Optional[str] = None,
        retry_after: Optional[float] = None,
        phase: Optional[str] = None,
    ):
        """Initialize a phase error.

        Args:
            type: Error type for routing and handling
            code: Short machine-readable code, e.g. "rate_limited"
            message: Technical description, usually the exception text
            user_message: What went wrong, in plain words
            retryable: Whether retrying might help
            suggestion: Actionable steps the user can take
            retry_after: Seconds to wait before retrying, when known
            phase: Phase that failed
        """
        self.type = type
        self.code = code
        self.message = message
        self.user_message = user_message
        self.retryable = retryable
        self.suggestion = suggestion
        self.retry_after = retry_after
        self.phase = phase

    def format_for_cli(self, verbose: bool = False) -> str:
        """Format error for CLI display.

        Args:
            verbose: Include technical details if True

        Returns:
            Formatted error string for CLI output
        """
        where = f" during {self.phase}" if self.phase else ""
        lines = [f"❌ Workflow build failed{where}: {self.user_message}"]

        if self.suggestion:
            lines.append(f"👉 {self.suggestion}")

        if self.retryable:
            wait = f" in {self.retry_after:.0f}s" if self.retry_after else " in a moment"
            lines.append(f"🔄 This is likely temporary - please retry{wait}")

        if verbose:
            lines.append(f"🔍 Technical details ({self.type.value}/{self.code}): {self.message}")

        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage/transmission."""
        return {
            "type": self.type.value,
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "suggestion": self.suggestion,
            "retry_after": self.retry_after,
            "phase": self.phase,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhaseError":
        return cls(
            type=ErrorType(data["type"]),
            code=data["code"],
            message=data["message"],
            user_message=data["user_message"],
            retryable=data.get("retryable", False),
            suggestion=data.get("suggestion"),
            retry_after=data.get("retry_after"),
            phase=data.get("phase"),
        )

    def __repr__(self) -> str:
        return f"PhaseError({self.type.value}, {self.code!r}, {self.message!r})"


def client_error(message: str, suggestion: Optional[str] = None, phase: Optional[str] = None) -> PhaseError:
    """Error for requests the caller got wrong."""
    return PhaseError(
        type=ErrorType.CLIENT,
        code="bad_request",
        message=message,
        user_message=message,
        retryable=False,
        suggestion=suggestion,
        phase=phase,
    )


def validation_error(message: str, suggestion: Optional[str] = None, phase: Optional[str] = None) -> PhaseError:
    return PhaseError(
        type=ErrorType.VALIDATION,
        code="invalid_workflow",
        message=message,
        user_message=message,
        retryable=False,
        suggestion=suggestion,
        phase=phase,
    )


def _classify_by_type(exc: Exception, phase: Optional[str]) -> Optional[PhaseError]:
    if isinstance(exc, PhaseExecutionError) and isinstance(exc.error, PhaseError):
        return exc.error

    if isinstance(exc, SessionNotFoundError):
        return client_error(str(exc), "Check the session id with 'flowforge status'", phase)

    if isinstance(exc, SessionConflictError):
        return PhaseError(
            type=ErrorType.CLIENT,
            code="conflict",
            message=str(exc),
            user_message="The session was changed by another run",
            retryable=True,
            suggestion="Resume the session to continue from its latest state",
            phase=phase,
        )

    if isinstance(exc, (BuildError, WorkflowSchemaError, InvalidOperationError)):
        return PhaseError(
            type=ErrorType.VALIDATION,
            code="invalid_workflow",
            message=str(exc),
            user_message="The workflow could not be assembled",
            retryable=False,
            suggestion=getattr(exc, "suggestion", None) or "Try rephrasing the request with clearer steps",
            phase=phase,
        )

    if isinstance(exc, CatalogServiceError) and not exc.retryable:
        code = "catalog_auth" if exc.status in (401, 403) else "catalog_rejected"
        return PhaseError(
            type=ErrorType.CATALOG_SERVICE,
            code=code,
            message=str(exc),
            user_message="The node catalog rejected the request",
            retryable=False,
            suggestion="Check the catalog credentials: flowforge settings show",
            phase=phase,
        )

    if isinstance(exc, CompletionServiceError):
        return PhaseError(
            type=ErrorType.COMPLETION_SERVICE,
            code="malformed_response",
            message=str(exc),
            user_message="The model returned a response that could not be used",
            retryable=True,
            suggestion="Retry the build; malformed responses are usually transient",
            phase=phase,
        )

    if isinstance(exc, asyncio.TimeoutError):
        return _timeout_error(exc, phase, _service_for(exc))

    return None


def _service_for(exc: Exception) -> ErrorType:
    if isinstance(exc, CatalogServiceError):
        return ErrorType.CATALOG_SERVICE
    return ErrorType.COMPLETION_SERVICE


def _timeout_error(exc: Exception, phase: Optional[str], service: ErrorType) -> PhaseError:
    return PhaseError(
        type=service,
        code="timeout",
        message=str(exc) or "operation timed out",
        user_message="A service call timed out",
        retryable=True,
        suggestion="Check your connection and try again",
        retry_after=5.0,
        phase=phase,
    )


def classify_error(exc: Exception, phase: Optional[str] = None) -> PhaseError:
    """Classify an exception into a structured PhaseError.

    Known exception types are mapped first; everything else is classified by
    keywords in its message.

    Args:
        exc: The exception to classify
        phase: The phase in which it occurred

    Returns:
        PhaseError with appropriate classification and messaging
    """
    error_str = str(exc).lower()
    logger.debug(f"Classifying error: {type(exc).__name__}: {error_str[:200]}", extra={"phase": phase})

    typed = _classify_by_type(exc, phase)
    if typed is not None:
        return typed

    service = _service_for(exc)

    # Authentication errors
    if any(term in error_str for term in ["api key", "api_key", "unauthorized", "401", "403", "forbidden"]):
        return PhaseError(
            type=service,
            code="auth_failed",
            message=str(exc),
            user_message="Authentication failed",
            retryable=False,
            suggestion="Configure your API key:\n  1. Run: llm keys set anthropic\n  2. Enter your key",
            phase=phase,
        )

    # Rate limit errors
    if any(term in error_str for term in ["rate limit", "429", "quota", "too many requests"]):
        return PhaseError(
            type=service,
            code="rate_limited",
            message=str(exc),
            user_message="Rate limit or quota exceeded",
            retryable=True,
            suggestion="Wait a few minutes before retrying, or check your plan limits",
            retry_after=60.0,
            phase=phase,
        )

    # Network/timeout errors
    if any(term in error_str for term in ["timeout", "timed out", "connection", "network", "unreachable"]):
        return _timeout_error(exc, phase, service)

    # Overload and outages
    if any(term in error_str for term in ["overloaded", "503", "service unavailable", "500", "internal server"]):
        return PhaseError(
            type=service,
            code="service_unavailable",
            message=str(exc),
            user_message="The service is temporarily unavailable",
            retryable=True,
            suggestion="Wait a few moments and try again",
            retry_after=30.0,
            phase=phase,
        )

    # Malformed model output
    if any(term in error_str for term in ["json", "malformed", "parse", "schema"]):
        return PhaseError(
            type=ErrorType.COMPLETION_SERVICE,
            code="malformed_response",
            message=str(exc),
            user_message="The model returned a response that could not be used",
            retryable=True,
            suggestion="Retry the build",
            phase=phase,
        )

    if isinstance(exc, CatalogServiceError):
        return PhaseError(
            type=ErrorType.CATALOG_SERVICE,
            code="catalog_unavailable",
            message=str(exc),
            user_message="The node catalog could not be reached",
            retryable=True,
            suggestion="Check that the catalog server is installed and reachable",
            phase=phase,
        )

    return PhaseError(
        type=ErrorType.COMPLETION_SERVICE,
        code="unexpected",
        message=str(exc),
        user_message=f"Unexpected error in {phase}" if phase else "Unexpected error",
        retryable=True,
        suggestion="Please report this issue if it persists, with the output of --verbose",
        phase=phase,
    )
