"""Workspace file tools: read, write and list."""

import asyncio
from pathlib import Path
from typing import Any, Dict

from tasks.base_task import BaseTask, TaskResult

MAX_LISTED_FILES = 500


class ReadFileTask(BaseTask):
    """Read a text file from the workspace."""

    tool_name = "read_file"
    display_name = "Read File"
    description = "Read the contents of a file"

    async def execute(self, parameters: Dict[str, Any]) -> TaskResult:
        path = parameters.get("path")
        if not path:
            return TaskResult(success=False, error="Missing required parameter: path")

        target = self.resolve_path(path)
        if not target.is_file():
            return TaskResult(success=False, error=f"File not found: {path}")

        content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
        return TaskResult(
            success=True,
            output={"path": path, "content": content, "lines": len(content.splitlines())},
        )


class WriteToFileTask(BaseTask):
    """Create or overwrite a text file in the workspace."""

    tool_name = "write_to_file"
    display_name = "Write File"
    description = "Write content to a file, creating directories as needed"

    async def execute(self, parameters: Dict[str, Any]) -> TaskResult:
        path = parameters.get("path")
        content = parameters.get("content")
        if not path or content is None:
            return TaskResult(success=False, error="Missing required parameters: path, content")

        target = self.resolve_path(path)

        def _write() -> int:
            target.parent.mkdir(parents=True, exist_ok=True)
            return target.write_text(str(content), encoding="utf-8")

        written = await asyncio.to_thread(_write)
        return TaskResult(success=True, output={"path": path, "bytes_written": written})


class ListFilesTask(BaseTask):
    """List files below a workspace directory."""

    tool_name = "list_files"
    display_name = "List Files"
    description = "List files in a directory"

    async def execute(self, parameters: Dict[str, Any]) -> TaskResult:
        path = parameters.get("path") or "."
        recursive = bool(parameters.get("recursive", False))

        target = self.resolve_path(path)
        if not target.is_dir():
            return TaskResult(success=False, error=f"Directory not found: {path}")

        def _list() -> tuple[list[str], bool]:
            entries = sorted(target.rglob("*") if recursive else target.iterdir())
            files = [
                _relative(entry, self.workspace_root) + ("/" if entry.is_dir() else "")
                for entry in entries[:MAX_LISTED_FILES]
            ]
            return files, len(entries) > MAX_LISTED_FILES

        files, truncated = await asyncio.to_thread(_list)
        return TaskResult(
            success=True,
            output={"path": path, "files": files, "count": len(files), "truncated": truncated},
        )


def _relative(entry: Path, root: Path) -> str:
    return entry.relative_to(root).as_posix()


FILE_TOOLS = {
    ReadFileTask.tool_name: ReadFileTask,
    WriteToFileTask.tool_name: WriteToFileTask,
    ListFilesTask.tool_name: ListFilesTask,
}
