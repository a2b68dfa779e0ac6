"""
File Operations Tools - glob and read within a workspace.

Paths are resolved relative to the workspace and may not escape it.
Filesystem work runs in a worker thread so the call can be cancelled.
"""

import asyncio
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .base import BaseTool, ToolContext, ToolResult

logger = structlog.get_logger()

MAX_GLOB_RESULTS = 100
DEFAULT_READ_LIMIT = 2000
MAX_LINE_LENGTH = 2000


class FileManager:
    """Resolves paths inside a safe workspace."""

    def __init__(self, workspace_dir: Optional[str] = None):
        self.workspace_dir = Path(workspace_dir or Path.cwd()).expanduser().resolve()

        self.blocked_paths = {
            "/etc/shadow", ".ssh", ".gnupg",
            ".aws", ".gcloud", "credentials",
        }

    def _is_safe_path(self, path: Path) -> bool:
        """Check if a path is safe to access."""
        resolved = path.resolve()

        if resolved != self.workspace_dir and not resolved.is_relative_to(self.workspace_dir):
            logger.warning("Path outside workspace", path=str(path))
            return False

        path_str = str(resolved).lower()
        for blocked in self.blocked_paths:
            if blocked.lower() in path_str:
                logger.warning("Blocked path pattern", path=str(path))
                return False

        return True

    def resolve(self, path: str) -> Path:
        """Normalize a path relative to workspace and check it."""
        p = Path(path).expanduser()

        if not p.is_absolute():
            p = self.workspace_dir / p

        if not self._is_safe_path(p):
            raise PermissionError(f"Access denied: {path}")

        return p.resolve()

    def glob(self, pattern: str, path: str = ".") -> tuple[list[str], bool]:
        """Files under ``path`` matching ``pattern``, newest first."""
        base = self.resolve(path)
        if not base.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {path}")

        matches = [
            p for p in base.glob(pattern)
            if p.is_file() and self._is_safe_path(p)
        ]
        matches.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        truncated = len(matches) > MAX_GLOB_RESULTS
        return [str(p.relative_to(self.workspace_dir)) for p in matches[:MAX_GLOB_RESULTS]], truncated

    def read_lines(self, path: str, offset: int, limit: int) -> tuple[list[str], int]:
        """Return ``limit`` lines starting at ``offset`` and the total line count."""
        file_path = self.resolve(path)

        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {path}")

        if not file_path.is_file():
            raise IsADirectoryError(f"Path is a directory: {path}")

        with open(file_path, encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()

        return lines[offset:offset + limit], len(lines)


class GlobArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pattern: str = Field(..., min_length=1, description="Glob pattern, e.g. '**/*.py'")
    path: str = Field(".", description="Directory to search in (default: workspace root)")


class GlobTool(BaseTool):
    name = "glob"
    description = (
        "Find files by glob pattern (e.g. '**/*.ts'). "
        "Returns matching paths relative to the workspace, most recently modified first."
    )
    Args = GlobArgs

    def __init__(self, files: FileManager):
        self.files = files

    async def run(self, args: GlobArgs, context: ToolContext) -> ToolResult:
        context.emit(title=args.pattern)
        matches, truncated = await context.cancel_token.guard(
            asyncio.to_thread(self.files.glob, args.pattern, args.path)
        )

        if not matches:
            output = "No files found"
        else:
            output = "\n".join(matches)
            if truncated:
                output += f"\n\n(Results are truncated to the first {MAX_GLOB_RESULTS} files.)"

        return ToolResult.ok(
            title=args.pattern,
            output=output,
            metadata={"count": len(matches), "truncated": truncated},
        )


class ReadArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(..., min_length=1, description="File to read, relative to the workspace")
    offset: int = Field(0, ge=0, description="Line number to start from (0-based)")
    limit: int = Field(DEFAULT_READ_LIMIT, ge=1, description="Maximum number of lines to read")


class ReadTool(BaseTool):
    name = "read"
    description = "Read a text file. Lines are returned numbered, starting at the requested offset."
    Args = ReadArgs

    def __init__(self, files: FileManager):
        self.files = files

    async def run(self, args: ReadArgs, context: ToolContext) -> ToolResult:
        lines, total = await context.cancel_token.guard(
            asyncio.to_thread(self.files.read_lines, args.path, args.offset, args.limit)
        )

        numbered = []
        for number, line in enumerate(lines, start=args.offset + 1):
            if len(line) > MAX_LINE_LENGTH:
                line = line[:MAX_LINE_LENGTH] + "..."
            numbered.append(f"{number:6d}\t{line}")

        shown_until = args.offset + len(lines)
        output = "\n".join(numbered)
        if shown_until < total:
            output += f"\n\n... (file has more lines, use offset={shown_until} to continue)"

        return ToolResult.ok(
            title=args.path,
            output=output,
            metadata={"lines": len(lines), "total_lines": total, "truncated": shown_until < total},
        )


def create_file_tools(workspace_dir: Optional[str] = None) -> list[BaseTool]:
    """Create file-related tools sharing one workspace."""
    files = FileManager(workspace_dir)
    return [GlobTool(files), ReadTool(files)]
