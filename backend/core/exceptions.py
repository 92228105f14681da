"""Custom exceptions for the workflow execution engine."""

from typing import Optional


class EngineError(Exception):
    """Base exception for the workflow execution engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code used by the management API
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(EngineError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ValidationError(EngineError):
    """Validation error exception (malformed workflow definitions)."""

    def __init__(self, message: str = "Validation failed"):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422)


class CapacityExceededError(EngineError):
    """Raised at submission time when the running-execution cap is reached."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(
            f"Maximum concurrent workflow executions reached ({limit})", 429
        )


class UnknownStepTypeError(EngineError):
    """Step carries a type tag the interpreter has no strategy for."""

    def __init__(self, step_type: str):
        self.step_type = step_type
        super().__init__(f"Unknown step type: {step_type}", 422)


class ToolNotFoundError(EngineError):
    """The tool backend does not know the requested tool."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' not found", 404)


class ToolNotPermittedError(EngineError):
    """The permission authority rejected a tool for the active mode."""

    def __init__(self, message: str, tool_name: Optional[str] = None, mode: Optional[str] = None):
        self.tool_name = tool_name
        self.mode = mode
        super().__init__(message, 403)

    @classmethod
    def for_mode(cls, tool_name: str, mode: str) -> "ToolNotPermittedError":
        return cls(
            f"Tool '{tool_name}' not allowed in current mode '{mode}'",
            tool_name=tool_name,
            mode=mode,
        )


class FileRestrictionError(ToolNotPermittedError):
    """A mode only allows edits to files matching a pattern."""

    def __init__(
        self,
        mode: str,
        pattern: str,
        description: Optional[str],
        file_path: str,
        tool_name: Optional[str] = None,
    ):
        self.pattern = pattern
        self.file_path = file_path
        tool_info = f"Tool '{tool_name}' in mode '{mode}'" if tool_name else f"This mode ({mode})"
        suffix = f" ({description})" if description else ""
        super().__init__(
            f"{tool_info} can only edit files matching pattern: {pattern}{suffix}. Got: {file_path}",
            tool_name=tool_name,
            mode=mode,
        )


class InvalidLoopItemsError(EngineError):
    """Loop items did not resolve to an ordered sequence."""

    def __init__(self, resolved_type: str):
        self.resolved_type = resolved_type
        super().__init__(
            f"Loop step requires a list of items, got {resolved_type}", 422
        )


class ExecutionTimeoutError(EngineError):
    """Elapsed wall-clock time exceeded the execution's budget."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Workflow execution timed out after {timeout}s", 408)
