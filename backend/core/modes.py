"""Operating modes and tool permissions.

A mode grants tool groups; a group may carry options restricting it
further. The only option today is a file pattern on the ``edit`` group:

    ModeConfig(slug="architect", groups=["read", ("edit", GroupOptions(file_regex=r"\\.md$"))])

``ModeManager`` answers the engine's two questions: which mode is active,
and may this tool run with these parameters in that mode.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import structlog

from core.exceptions import FileRestrictionError, NotFoundError

logger = structlog.get_logger(__name__)


TOOL_GROUPS: dict[str, list[str]] = {
    "read": ["read_file", "search_files", "list_files", "list_code_definition_names"],
    "edit": ["write_to_file", "apply_diff", "insert_content", "search_and_replace"],
    "browser": ["browser_action"],
    "command": ["execute_command"],
    "mcp": ["use_mcp_tool", "access_mcp_resource"],
}

ALWAYS_AVAILABLE_TOOLS = frozenset({
    "ask_followup_question",
    "attempt_completion",
    "switch_mode",
    "new_task",
    "update_todo_list",
})

# Parameters whose presence means an edit tool actually writes
EDIT_OPERATION_PARAMS = ("diff", "content", "operations", "search", "replace", "args", "line")

_XML_PATH_PATTERN = re.compile(r"<path>([^<]+)</path>")


@dataclass(frozen=True)
class GroupOptions:
    file_regex: Optional[str] = None
    description: Optional[str] = None


GroupEntry = Union[str, tuple]


@dataclass
class ModeConfig:
    slug: str
    name: str
    description: str = ""
    groups: list[GroupEntry] = field(default_factory=list)

    def group_entries(self) -> list[tuple[str, Optional[GroupOptions]]]:
        entries = []
        for group in self.groups:
            if isinstance(group, str):
                entries.append((group, None))
            else:
                entries.append((group[0], group[1] if len(group) > 1 else None))
        return entries

    def tools(self) -> set[str]:
        tools = set(ALWAYS_AVAILABLE_TOOLS)
        for group_name, _ in self.group_entries():
            tools.update(TOOL_GROUPS.get(group_name, []))
        return tools


DEFAULT_MODES = [
    ModeConfig(
        slug="architect",
        name="Architect",
        description="Plan and design before implementation",
        groups=[
            "read",
            ("edit", GroupOptions(file_regex=r"\.md$", description="Markdown files only")),
            "browser",
            "mcp",
        ],
    ),
    ModeConfig(
        slug="code",
        name="Code",
        description="Write, modify, and refactor code",
        groups=["read", "edit", "browser", "command", "mcp"],
    ),
    ModeConfig(
        slug="ask",
        name="Ask",
        description="Get answers and explanations",
        groups=["read", "browser", "mcp"],
    ),
    ModeConfig(
        slug="debug",
        name="Debug",
        description="Diagnose and fix software issues",
        groups=["read", "edit", "browser", "command", "mcp"],
    ),
    ModeConfig(
        slug="orchestrator",
        name="Orchestrator",
        description="Coordinate tasks across multiple modes",
        groups=[],
    ),
]


def does_file_match_regex(file_path: str, pattern: str) -> bool:
    try:
        return re.search(pattern, file_path) is not None
    except re.error as e:
        logger.error("Invalid file pattern", pattern=pattern, error=str(e))
        return False


class ModeManager:
    """Tracks the active mode and validates tool use against it."""

    def __init__(self, default_mode: str = "code", modes: Optional[list[ModeConfig]] = None):
        self._modes: dict[str, ModeConfig] = {m.slug: m for m in (modes or DEFAULT_MODES)}
        if default_mode not in self._modes:
            raise NotFoundError(f"Mode '{default_mode}' not found")
        self._current = default_mode

    def current_mode(self) -> str:
        return self._current

    def get_mode(self, slug: str) -> Optional[ModeConfig]:
        return self._modes.get(slug)

    def list_modes(self) -> list[ModeConfig]:
        return list(self._modes.values())

    def register_mode(self, mode: ModeConfig) -> None:
        """Add a custom mode; a custom mode replaces a built-in one with the same slug."""
        self._modes[mode.slug] = mode

    def switch_mode(self, slug: str) -> dict[str, Any]:
        if slug not in self._modes:
            raise NotFoundError(f"Mode '{slug}' not found")
        previous, self._current = self._current, slug
        logger.info("Mode switched", previous_mode=previous, current_mode=slug)
        return {"success": True, "previous_mode": previous, "current_mode": slug}

    def tools_for_mode(self, slug: str) -> set[str]:
        mode = self.get_mode(slug)
        if mode is None:
            return set(ALWAYS_AVAILABLE_TOOLS)
        return mode.tools()

    def is_tool_allowed(self, name: str, parameters: dict[str, Any], mode: str) -> bool:
        """Check a tool against a mode.

        Raises:
            FileRestrictionError: an edit targets a file outside the mode's pattern
        """
        if name in ALWAYS_AVAILABLE_TOOLS:
            return True

        config = self.get_mode(mode)
        if config is None:
            return False

        parameters = parameters or {}
        for group_name, options in config.group_entries():
            if name not in TOOL_GROUPS.get(group_name, []):
                continue
            if options is None or not options.file_regex:
                return True
            if group_name == "edit":
                self._check_file_restriction(config, options, name, parameters)
            return True

        return False

    @staticmethod
    def _check_file_restriction(
        mode: ModeConfig,
        options: GroupOptions,
        tool_name: str,
        parameters: dict[str, Any],
    ) -> None:
        is_edit = any(parameters.get(p) for p in EDIT_OPERATION_PARAMS)
        paths: list[str] = []
        if parameters.get("path") and is_edit:
            paths.append(str(parameters["path"]))

        # Multi-file operations pass <path> elements inside an XML ``args`` string
        args = parameters.get("args")
        if isinstance(args, str):
            paths.extend(
                p.strip() for p in _XML_PATH_PATTERN.findall(args)
                if p.strip() and "<" not in p and ">" not in p
            )

        for path in paths:
            if not does_file_match_regex(path, options.file_regex):
                raise FileRestrictionError(
                    mode.name,
                    options.file_regex,
                    options.description,
                    path,
                    tool_name,
                )


_manager: Optional[ModeManager] = None


def get_mode_manager() -> ModeManager:
    """Get or create the singleton ModeManager."""
    global _manager
    if _manager is None:
        from app.config import get_settings

        _manager = ModeManager(default_mode=get_settings().DEFAULT_MODE)
    return _manager
