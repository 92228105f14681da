"""Collaborator interfaces consumed by the workflow engine.

The engine never imports concrete tool or mode implementations; anything
matching these protocols can be plugged in (see tasks.registry and
core.modes for the in-process defaults).
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ToolBackend(Protocol):
    """Executes named tools and reports success or failure."""

    def has_tool(self, name: str) -> bool:
        ...

    async def execute_tool(self, name: str, parameters: dict[str, Any]) -> dict[str, Any]:
        """Run a tool. The returned mapping must contain a boolean ``success``."""
        ...


@runtime_checkable
class PermissionAuthority(Protocol):
    """Decides whether a tool may run in a given mode.

    May raise core.exceptions.FileRestrictionError with a human-readable
    reason instead of returning False.
    """

    def is_tool_allowed(self, name: str, parameters: dict[str, Any], mode: str) -> bool:
        ...


@runtime_checkable
class ModeProvider(Protocol):
    """Reports the active operating mode."""

    def current_mode(self) -> str:
        ...
