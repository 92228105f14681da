"""
Tool Registry: the engine's default tool backend.

Maps tool names to BaseTask implementations and runs them on behalf of
``tool`` and ``command`` steps.
"""

from typing import Any, Dict, Optional, Type

import structlog

from tasks.base_task import BaseTask
from tasks.implementations.command_task import COMMAND_TOOLS
from tasks.implementations.file_task import FILE_TOOLS

logger = structlog.get_logger(__name__)


class TaskRegistry:
    """Central registry for all tool implementations."""

    def __init__(self, workspace_root: str = ".", command_timeout: float = 300.0):
        self._tasks: Dict[str, Type[BaseTask]] = {}
        self._workspace_root = workspace_root
        self._command_timeout = command_timeout
        self._register_builtin_tasks()

    def _register_builtin_tasks(self):
        """Register all built-in tools."""
        for tool_name, task_class in COMMAND_TOOLS.items():
            self.register(tool_name, task_class)

        for tool_name, task_class in FILE_TOOLS.items():
            self.register(tool_name, task_class)

    def register(self, tool_name: str, task_class: Type[BaseTask]):
        """Register a new tool."""
        self._tasks[tool_name] = task_class

    def get(self, tool_name: str) -> Optional[Type[BaseTask]]:
        """Get a tool class by name."""
        return self._tasks.get(tool_name)

    def has_tool(self, name: str) -> bool:
        return name in self._tasks

    def create_instance(self, tool_name: str) -> Optional[BaseTask]:
        """Create a new instance of a tool by name."""
        task_class = self.get(tool_name)
        if task_class:
            return task_class(workspace_root=self._workspace_root, timeout=self._command_timeout)
        return None

    async def execute_tool(self, name: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Run a tool and return its flattened raw result."""
        task = self.create_instance(name)
        if task is None:
            return {
                "success": False,
                "error": f"Unknown tool: {name}",
                "available_tools": self.available_tools,
            }
        result = await task.run(parameters)
        return result.to_dict()

    def list_all(self) -> list:
        """List all registered tools with metadata."""
        return [
            {
                "tool_name": tool_name,
                "display_name": cls.display_name,
                "description": cls.description,
                "parameter_schema": cls.get_parameter_schema(),
            }
            for tool_name, cls in self._tasks.items()
        ]

    @property
    def available_tools(self) -> list:
        return list(self._tasks.keys())


# Singleton
_registry: Optional[TaskRegistry] = None


def get_task_registry() -> TaskRegistry:
    """Get or create the singleton tool registry."""
    global _registry
    if _registry is None:
        from app.config import get_settings

        settings = get_settings()
        _registry = TaskRegistry(
            workspace_root=settings.WORKSPACE_ROOT,
            command_timeout=settings.COMMAND_TIMEOUT_SECONDS,
        )
    return _registry
