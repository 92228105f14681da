"""Shell command tool used by ``command`` workflow steps."""

import asyncio
import os
import time
from typing import Any, Dict

import structlog

from tasks.base_task import BaseTask, TaskResult

logger = structlog.get_logger(__name__)

DANGEROUS_PATTERNS = ("rm -rf /", "mkfs", "dd if=", ": > /dev/", "chmod 777 /", ":(){ :|:& };:")


class ExecuteCommandTask(BaseTask):
    """Execute a shell command inside the workspace.

    Parameters:
        command: Shell command string (required)
        cwd: Working directory, relative to the workspace root
        timeout: Seconds before the process is killed (default from options)
        env: Extra environment variables
    """

    tool_name = "execute_command"
    display_name = "Execute Command"
    description = "Run a CLI command on the system"

    async def execute(self, parameters: Dict[str, Any]) -> TaskResult:
        command = parameters.get("command")
        if not command:
            return TaskResult(success=False, error="Missing required parameter: command")

        for pattern in DANGEROUS_PATTERNS:
            if pattern in command:
                return TaskResult(success=False, error=f"Blocked dangerous command pattern: {pattern}")

        try:
            working_dir = self.resolve_path(parameters.get("cwd") or ".")
        except ValueError as e:
            return TaskResult(success=False, error=str(e))
        if not working_dir.is_dir():
            return TaskResult(success=False, error=f"Working directory does not exist: {working_dir}")

        timeout = float(parameters.get("timeout") or self.options.get("timeout", 300))
        env = {**os.environ, **(parameters.get("env") or {})}
        started = time.monotonic()

        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(working_dir),
            env=env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Command timed out", command=command, timeout=timeout)
            return TaskResult(
                success=False,
                output={"command": command, "timed_out": True},
                error=f"Command timed out after {timeout}s",
            )

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        success = process.returncode == 0

        return TaskResult(
            success=success,
            output={
                "command": command,
                "working_directory": str(working_dir),
                "exit_code": process.returncode,
                "stdout": stdout_text,
                "stderr": stderr_text,
                "execution_time_ms": int((time.monotonic() - started) * 1000),
                "timed_out": False,
            },
            error=(stderr_text or f"Command exited with code {process.returncode}") if not success else None,
        )

    @classmethod
    def get_parameter_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["command"],
            "properties": {
                "command": {"type": "string", "description": "Shell command to execute"},
                "cwd": {"type": "string", "description": "Working directory"},
                "timeout": {"type": "number"},
                "env": {"type": "object"},
            },
        }


COMMAND_TOOLS = {
    ExecuteCommandTask.tool_name: ExecuteCommandTask,
}
