"""
Shell Command Tool - execution of shell commands with safety controls.

Commands run in their own process group inside the workspace. Whatever
happens to the call (completion, timeout or cancellation), the process group
is gone by the time the tool returns.
"""

import asyncio
import os
import re
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..errors import ErrorKind
from .base import BaseTool, ToolContext, ToolResult

logger = structlog.get_logger()


@dataclass
class ShellConfig:
    """Configuration for shell command execution."""

    enabled: bool = True
    timeout_seconds: int = 30
    max_output_lines: int = 500
    max_output_chars: int = 30000

    blocked_patterns: list[str] = field(default_factory=lambda: [
        r"rm\s+-rf\s+/(\s|$)",
        r"rm\s+-rf\s+~",
        r"mkfs",
        r"dd\s+if=",
        r":\(\)\s*\{\s*:\|:&\s*\};:",
        r"curl.*\|\s*sh",
        r"wget.*\|\s*sh",
    ])

    workspace_dir: Optional[str] = None


class ShellExecutor:
    """Runs one command at a time per call, releasing the process on every exit path."""

    def __init__(self, config: Optional[ShellConfig] = None):
        self.config = config or ShellConfig()
        self.workspace = Path(self.config.workspace_dir or Path.cwd()).expanduser().resolve()

    def check_command(self, command: str) -> str | None:
        """Return the reason a command is refused, or None when it may run."""
        if not self.config.enabled:
            return "Shell execution is disabled"

        for pattern in self.config.blocked_patterns:
            if re.search(pattern, command, re.IGNORECASE):
                return "Command contains blocked pattern"

        return None

    async def execute(
        self,
        command: str,
        context: ToolContext,
        timeout: Optional[float] = None,
    ) -> tuple[int, str, str]:
        """
        Execute a shell command.

        Returns:
            Tuple of (return_code, stdout, stderr)

        Raises:
            asyncio.TimeoutError: the command outlived its timeout
            OperationCancelled: the turn was cancelled while it ran
        """
        timeout = timeout or self.config.timeout_seconds

        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.workspace),
            env=os.environ.copy(),
            start_new_session=True,
        )
        context.emit(title=command, pid=process.pid)

        try:
            stdout, stderr = await context.cancel_token.guard(
                asyncio.wait_for(process.communicate(), timeout=timeout)
            )
        finally:
            if process.returncode is None:
                await self._kill(process)

        return (
            process.returncode,
            self._truncate_output(stdout.decode("utf-8", errors="replace")),
            self._truncate_output(stderr.decode("utf-8", errors="replace")),
        )

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        """Kill the command's whole process group and reap it."""
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        logger.info("Shell process killed", pid=process.pid)

    def _truncate_output(self, output: str) -> str:
        """Truncate output to configured limits."""
        lines = output.split("\n")

        if len(lines) > self.config.max_output_lines:
            omitted = len(lines) - self.config.max_output_lines
            output = "\n".join(lines[:self.config.max_output_lines])
            output += f"\n\n... (truncated, {omitted} more lines)"

        if len(output) > self.config.max_output_chars:
            output = output[:self.config.max_output_chars] + "\n\n... (truncated)"

        return output


class BashArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: str = Field(..., min_length=1, description="The shell command to execute")
    timeout: Optional[int] = Field(None, ge=1, le=600, description="Timeout in seconds")
    description: str = Field("", description="Short description of what the command does")


class BashTool(BaseTool):
    name = "bash"
    description = (
        "Execute a shell command in the workspace directory. "
        "Returns stdout, stderr and the exit code."
    )
    Args = BashArgs

    def __init__(self, executor: ShellExecutor):
        self.executor = executor

    async def run(self, args: BashArgs, context: ToolContext) -> ToolResult:
        title = args.description or args.command

        reason = self.executor.check_command(args.command)
        if reason:
            return ToolResult.error(ErrorKind.VALIDATION_ERROR, f"Command blocked: {reason}", title=title)

        timeout = args.timeout or self.executor.config.timeout_seconds
        try:
            return_code, stdout, stderr = await self.executor.execute(args.command, context, timeout)
        except asyncio.TimeoutError:
            return ToolResult.error(
                ErrorKind.TIMEOUT,
                f"Command timed out after {timeout} seconds",
                title=title,
            )

        output_parts = []
        if stdout:
            output_parts.append(stdout.rstrip("\n"))
        if stderr:
            output_parts.append(f"[stderr]\n{stderr.rstrip()}")
        if return_code != 0:
            output_parts.append(f"Exit code: {return_code}")
        if not output_parts:
            output_parts.append("Command completed successfully (no output)")

        return ToolResult.ok(
            title=title,
            output="\n\n".join(output_parts),
            metadata={"exit_code": return_code, "command": args.command},
        )


def create_shell_tools(workspace_dir: Optional[str] = None, timeout_seconds: int = 30) -> list[BaseTool]:
    """Create shell-related tools."""
    executor = ShellExecutor(ShellConfig(workspace_dir=workspace_dir, timeout_seconds=timeout_seconds))
    return [BashTool(executor)]
