"""
Base interface for tools executed by workflow steps.

Every built-in tool (shell command, file access, ...) inherits from
BaseTask and implements the execute() method.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class TaskResult:
    """Standardized result from tool execution."""

    def __init__(
        self,
        success: bool,
        output: Any = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        duration_ms: float = 0,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.metadata = metadata or {}
        self.duration_ms = duration_ms
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten into the raw mapping workflow steps extract outputs from.

        Keys of a dict ``output`` are lifted to the top level, so a step can
        declare ``outputs: {"log": "stdout"}`` instead of ``"output.stdout"``.
        """
        raw: Dict[str, Any] = {}
        if isinstance(self.output, dict):
            raw.update(self.output)
        raw.update({
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "metadata": self.metadata,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        })
        return raw


class BaseTask(ABC):
    """
    Abstract base class for all tool implementations.

    Subclasses must implement:
    - execute(parameters) -> TaskResult
    - tool_name (class property)
    """

    tool_name: str = "base"
    display_name: str = "Base Tool"
    description: str = "Abstract base tool"

    def __init__(self, workspace_root: str = ".", **options: Any):
        self.workspace_root = Path(workspace_root).resolve()
        self.options = options

    def resolve_path(self, path: str) -> Path:
        """Resolve a path relative to the workspace, refusing to leave it."""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.workspace_root / candidate
        candidate = candidate.resolve()
        if candidate != self.workspace_root and self.workspace_root not in candidate.parents:
            raise ValueError(f"Path is outside the workspace: {path}")
        return candidate

    @abstractmethod
    async def execute(self, parameters: Dict[str, Any]) -> TaskResult:
        """
        Execute the tool with resolved parameters.

        Args:
            parameters: Tool parameters, placeholders already resolved

        Returns:
            TaskResult with output or error
        """

    async def run(self, parameters: Dict[str, Any]) -> TaskResult:
        """
        Run the tool with timing and error handling.

        This is the entry point called by the task registry.
        """
        start = time.monotonic()
        try:
            logger.info("Tool starting", tool_name=self.tool_name)
            result = await self.execute(parameters or {})
            result.duration_ms = (time.monotonic() - start) * 1000

            logger.info(
                "Tool completed",
                tool_name=self.tool_name,
                success=result.success,
                duration_ms=round(result.duration_ms, 2),
            )
            return result

        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            logger.error(
                "Tool failed",
                tool_name=self.tool_name,
                error=str(e),
                duration_ms=round(duration_ms, 2),
            )
            return TaskResult(
                success=False,
                error=str(e),
                duration_ms=duration_ms,
            )

    @classmethod
    def get_parameter_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for the tool's parameters.

        Override in subclasses to define the expected shape.
        """
        return {"type": "object", "properties": {}}
