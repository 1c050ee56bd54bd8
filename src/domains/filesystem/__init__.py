"""Filesystem Domain - file access confined to the allowed paths.

Every operation is checked by the PathPolicy and then performed on the
resolved target from the policy decision.
"""

import os
import re

import aiofiles
import aiofiles.os
from pydantic import Field

from shared.logging import get_logger
from shared.models import ToolArguments, ToolCategory, ToolDescriptor, ToolResult
from domains.base import BaseAdapter
from mcp_server.policy import PathPolicy
from mcp_server.registry import ToolRegistry

logger = get_logger(__name__)

DEFAULT_MAX_DEPTH = 5


class PathArguments(ToolArguments):
    path: str = Field(..., description="Absolute path inside an allowed directory")


class WriteFileArguments(ToolArguments):
    path: str = Field(..., description="Absolute path to the file to write")
    content: str = Field(..., description="Content to write to the file")


class SearchFilesArguments(ToolArguments):
    path: str = Field(..., description="Directory to search in")
    pattern: str = Field(..., description="Filename pattern to match (supports * and ? wildcards)")
    max_depth: int = Field(
        default=DEFAULT_MAX_DEPTH,
        alias="maxDepth",
        ge=0,
        description="Maximum depth to search (default: 5)"
    )


def compile_wildcard(pattern: str) -> re.Pattern[str]:
    """Case-insensitive full-name matcher for ``*`` and ``?`` wildcards."""
    regex = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(f"^{regex}$", re.IGNORECASE)


def _entry_type(entry: os.DirEntry) -> str:
    if entry.is_dir(follow_symlinks=False):
        return "directory"
    if entry.is_file(follow_symlinks=False):
        return "file"
    return "other"


class FilesystemAdapter(BaseAdapter):
    """
    Filesystem domain adapter.

    Provides tools for:
    - Reading and writing files
    - Listing directories
    - Searching for files by name
    """

    category = ToolCategory.FILESYSTEM

    def __init__(self, policy: PathPolicy) -> None:
        self.policy = policy

    def descriptors(self) -> list[ToolDescriptor]:
        return [
            self._tool(
                "read_file",
                "Read the contents of a file. Only works within allowed paths.",
                self.read_file,
                PathArguments,
            ),
            self._tool(
                "write_file",
                "Write content to a file. Creates the file if it doesn't exist. Only works within allowed paths.",
                self.write_file,
                WriteFileArguments,
            ),
            self._tool(
                "list_directory",
                "List files and directories in a path. Only works within allowed paths.",
                self.list_directory,
                PathArguments,
            ),
            self._tool(
                "search_files",
                "Search for files matching a pattern within allowed paths.",
                self.search_files,
                SearchFilesArguments,
            ),
        ]

    async def read_file(self, args: PathArguments) -> ToolResult:
        decision = self.policy.evaluate(args.path)
        if not decision:
            return self._denied("read_file", decision)

        try:
            async with aiofiles.open(decision.target, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError as e:
            return self._not_found("read_file", f"Failed to read file: {e.strerror}: {args.path}")
        except (OSError, UnicodeDecodeError) as e:
            return self._error("read_file", f"Failed to read file: {e}", code="IO_ERROR")

        return self._success("read_file", content)

    async def write_file(self, args: WriteFileArguments) -> ToolResult:
        decision = self.policy.evaluate(args.path)
        if not decision:
            return self._denied("write_file", decision)

        target = decision.target
        try:
            await aiofiles.os.makedirs(os.path.dirname(target), exist_ok=True)
            async with aiofiles.open(target, "w", encoding="utf-8") as f:
                await f.write(args.content)
        except OSError as e:
            return self._error("write_file", f"Failed to write file: {e}", code="IO_ERROR")

        logger.info("File written", path=target, size=len(args.content))
        return self._success("write_file", f"Successfully wrote to {args.path}")

    async def list_directory(self, args: PathArguments) -> ToolResult:
        decision = self.policy.evaluate(args.path)
        if not decision:
            return self._denied("list_directory", decision)

        try:
            entries = await aiofiles.os.scandir(decision.target)
            with entries:
                items = [{"name": e.name, "type": _entry_type(e)} for e in entries]
        except FileNotFoundError as e:
            return self._not_found("list_directory", f"Failed to list directory: {e.strerror}: {args.path}")
        except OSError as e:
            return self._error("list_directory", f"Failed to list directory: {e}", code="IO_ERROR")

        items.sort(key=lambda item: item["name"])
        return self._json("list_directory", items)

    def search_files(self, args: SearchFilesArguments) -> ToolResult:
        """Walks the tree synchronously; the registry runs it off the event loop."""
        decision = self.policy.evaluate(args.path)
        if not decision:
            return self._denied("search_files", decision)

        matcher = compile_wildcard(args.pattern)
        matches: list[str] = []

        def search(directory: str, depth: int) -> None:
            if depth > args.max_depth:
                return
            try:
                with os.scandir(directory) as entries:
                    for entry in sorted(entries, key=lambda e: e.name):
                        if entry.is_dir(follow_symlinks=False):
                            search(entry.path, depth + 1)
                        elif matcher.match(entry.name):
                            matches.append(entry.path)
            except OSError:
                # Skip directories we can't read
                return

        search(decision.target, 0)
        return self._json("search_files", matches)


def register_filesystem_domain(registry: ToolRegistry, policy: PathPolicy) -> FilesystemAdapter:
    """Register the filesystem domain with the gateway."""
    adapter = FilesystemAdapter(policy)
    adapter.register(registry)
    return adapter
