"""Custom exceptions for flowforge."""

from typing import Optional


class FlowforgeError(Exception):
    """Base exception for all flowforge errors."""

    pass


class SessionNotFoundError(FlowforgeError):
    """Raised when a session cannot be found in the store."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found")


class SessionConflictError(FlowforgeError):
    """Raised when a save carries a version that is no longer current.

    The caller must reload the session and recompute its operations.
    """

    def __init__(self, session_id: str, expected_version: int, actual_version: int):
        self.session_id = session_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Session '{session_id}' was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class InvalidOperationError(FlowforgeError):
    """Raised when an operation cannot be applied to the session state."""

    def __init__(self, operation_type: str, reason: str):
        self.operation_type = operation_type
        self.reason = reason
        super().__init__(f"Cannot apply '{operation_type}': {reason}")


class CatalogServiceError(FlowforgeError):
    """Error talking to the node catalog service.

    Attributes:
        retryable: False for failures that retrying cannot fix (auth errors)
        status: Optional HTTP-like status code extracted from the failure
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        status: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        self.retryable = retryable
        self.status = status
        self.original_error = original_error

        if original_error:
            message = f"{message}\nOriginal error: {original_error!s}"

        super().__init__(message)


class CompletionServiceError(FlowforgeError):
    """Raised when the completion service returns an unusable response."""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        self.raw_response = raw_response
        super().__init__(message)


class BuildError(FlowforgeError):
    """Raised when the workflow graph cannot be assembled.

    Topology problems are never patched silently, so this aborts the
    Building phase.
    """

    pass


class WorkflowSchemaError(FlowforgeError):
    """Structural problem in a workflow graph, with a readable field path.

    Attributes:
        message: The validation error message
        path: Dotted path to the invalid field (e.g., "nodes[0].position")
        suggestion: Optional suggestion for fixing the error
    """

    def __init__(self, message: str, path: str = "", suggestion: str = ""):
        self.message = message
        self.path = path
        self.suggestion = suggestion

        full_message = "Workflow validation error"
        if path:
            full_message += f" at {path}"
        full_message += f": {message}"
        if suggestion:
            full_message += f"\n{suggestion}"

        super().__init__(full_message)


class PhaseExecutionError(FlowforgeError):
    """Raised by callers that want a failed phase as an exception.

    Wraps the structured PhaseError produced by the error handler.
    """

    def __init__(self, phase: str, error: object):
        self.phase = phase
        self.error = error
        message = getattr(error, "message", str(error))
        super().__init__(f"Phase '{phase}' failed: {message}")
