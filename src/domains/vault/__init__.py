"""Vault Domain - read access to a markdown note vault.

Notes are ``.md`` files below the vault root. Hidden entries (leading
``.``) such as the editor's config folder are skipped. Every caller
supplied folder or note path is confined to the vault by a PathPolicy.
"""

import os
import re
from typing import Any, Iterator, Optional

import aiofiles
import yaml
from pydantic import Field

from shared.config import VaultSettings
from shared.logging import get_logger
from shared.models import ToolArguments, ToolCategory, ToolDescriptor, ToolResult
from domains.base import BaseAdapter
from mcp_server.policy import PathPolicy
from mcp_server.registry import ToolRegistry

logger = get_logger(__name__)

NOTE_SUFFIX = ".md"
MAX_LINE_LENGTH = 200
MAX_MATCHES_PER_NOTE = 5
NOT_AVAILABLE = "Vault not configured or not available"

_FRONTMATTER_RE = re.compile(r"\A---\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)(.*)\Z", re.DOTALL)
_WIKILINK_RE = re.compile(r"\[\[([^\]|]+)(?:\|[^\]]+)?\]\]")


class ListNotesArguments(ToolArguments):
    folder: str = Field(default="", description="Subfolder to list (relative to vault root). Leave empty for root.")
    include_metadata: bool = Field(
        default=False,
        alias="includeMetadata",
        description="Include frontmatter metadata in results (default: false)"
    )


class NoteArguments(ToolArguments):
    note: str = Field(..., min_length=1, description="Note name (without .md) or relative path")


class SearchNotesArguments(ToolArguments):
    query: str = Field(..., min_length=1, description="Text to search for in note content")
    case_sensitive: bool = Field(
        default=False,
        alias="caseSensitive",
        description="Case sensitive search (default: false)"
    )
    limit: int = Field(default=20, ge=1, description="Maximum results to return (default: 20)")


def parse_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """
    Split a note into its YAML frontmatter and body.

    Malformed or non-mapping frontmatter yields an empty dict.
    """
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return {}, content

    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        logger.debug("Unparseable frontmatter")
        data = None

    return (data if isinstance(data, dict) else {}), match.group(2)


def extract_wikilinks(content: str) -> list[str]:
    """Unique ``[[target]]`` / ``[[target|alias]]`` targets, in order of appearance."""
    return list(dict.fromkeys(m.strip() for m in _WIKILINK_RE.findall(content)))


class VaultAdapter(BaseAdapter):
    """
    Vault domain adapter.

    Provides tools for:
    - Listing notes, optionally with frontmatter
    - Reading a note with parsed frontmatter and links
    - Full-text search
    - Backlink lookup
    """

    category = ToolCategory.VAULT

    def __init__(self, settings: VaultSettings) -> None:
        self.settings = settings
        self.root: Optional[str] = os.path.realpath(settings.path) if settings.path else None
        self.policy = PathPolicy([self.root] if self.root else [])

    def descriptors(self) -> list[ToolDescriptor]:
        return [
            self._tool(
                "list_notes",
                "List all notes in the vault, optionally filtered by folder",
                self.list_notes,
                ListNotesArguments,
            ),
            self._tool(
                "read_note",
                "Read the contents of a note by name or path",
                self.read_note,
                NoteArguments,
            ),
            self._tool(
                "search_notes",
                "Search for notes containing specific text",
                self.search_notes,
                SearchNotesArguments,
            ),
            self._tool(
                "get_backlinks",
                "Find all notes that link to a specific note",
                self.get_backlinks,
                NoteArguments,
            ),
        ]

    @property
    def available(self) -> bool:
        return self.root is not None and os.path.isdir(self.root)

    def _relative(self, path: str) -> str:
        return os.path.relpath(path, self.root)

    def _walk_notes(self, directory: str) -> Iterator[str]:
        """
        Yield note paths below ``directory``, depth first, in name order.

        Each note is checked by the PathPolicy and yielded as its resolved
        target; symlinks leading out of the vault are skipped.
        """
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError:
            # Skip inaccessible directories
            return

        for entry in entries:
            if entry.name.startswith("."):
                continue
            if entry.is_dir(follow_symlinks=False):
                yield from self._walk_notes(entry.path)
            elif entry.name.endswith(NOTE_SUFFIX):
                decision = self.policy.evaluate(entry.path)
                if not decision:
                    logger.warning("Skipping note outside vault", path=entry.path)
                    continue
                if os.path.isfile(decision.target):
                    yield decision.target

    @staticmethod
    def _read(path: str) -> Optional[str]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except (OSError, UnicodeDecodeError):
            return None

    def list_notes(self, args: ListNotesArguments) -> ToolResult:
        if not self.available:
            return self._error("list_notes", NOT_AVAILABLE, code="NOT_CONFIGURED")

        decision = self.policy.evaluate(os.path.join(self.root, args.folder))
        if not decision:
            return self._denied("list_notes", decision)

        notes = []
        for path in self._walk_notes(decision.target):
            note: dict[str, Any] = {
                "name": os.path.basename(path)[: -len(NOTE_SUFFIX)],
                "path": self._relative(path),
            }
            if args.include_metadata:
                content = self._read(path)
                if content is not None:
                    note["metadata"] = parse_frontmatter(content)[0]
            notes.append(note)

        return self._json("list_notes", notes)

    async def read_note(self, args: NoteArguments) -> ToolResult:
        if not self.available:
            return self._error("read_note", NOT_AVAILABLE, code="NOT_CONFIGURED")

        note_path = args.note if args.note.endswith(NOTE_SUFFIX) else args.note + NOTE_SUFFIX
        decision = self.policy.evaluate(os.path.join(self.root, note_path))
        if not decision:
            return self._denied("read_note", decision)

        try:
            async with aiofiles.open(decision.target, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return self._not_found("read_note", f"Note not found: {args.note}")
        except (OSError, UnicodeDecodeError) as e:
            return self._error("read_note", f"Failed to read note: {e}", code="IO_ERROR")

        frontmatter, body = parse_frontmatter(content)
        return self._json("read_note", {
            "path": self._relative(decision.target),
            "frontmatter": frontmatter,
            "content": body,
            "wikilinks": extract_wikilinks(content),
        })

    def search_notes(self, args: SearchNotesArguments) -> ToolResult:
        if not self.available:
            return self._error("search_notes", NOT_AVAILABLE, code="NOT_CONFIGURED")

        def normalize(text: str) -> str:
            return text if args.case_sensitive else text.casefold()

        needle = normalize(args.query)
        results = []

        for path in self._walk_notes(self.root):
            if len(results) >= args.limit:
                break

            content = self._read(path)
            if content is None or needle not in normalize(content):
                continue

            matches = [
                {"line": number, "text": line[:MAX_LINE_LENGTH]}
                for number, line in enumerate(content.splitlines(), start=1)
                if needle in normalize(line)
            ]
            results.append({
                "path": self._relative(path),
                "matches": matches[:MAX_MATCHES_PER_NOTE],
            })

        return self._json("search_notes", {
            "query": args.query,
            "resultCount": len(results),
            "results": results,
        })

    def get_backlinks(self, args: NoteArguments) -> ToolResult:
        if not self.available:
            return self._error("get_backlinks", NOT_AVAILABLE, code="NOT_CONFIGURED")

        target = args.note[: -len(NOTE_SUFFIX)] if args.note.endswith(NOTE_SUFFIX) else args.note
        target = target.casefold()

        def links_to_target(link: str) -> bool:
            link = link.casefold()
            return link == target or link.endswith("/" + target)

        backlinks = []
        for path in self._walk_notes(self.root):
            content = self._read(path)
            if content is None:
                continue

            linking = [link for link in extract_wikilinks(content) if links_to_target(link)]
            if not linking:
                continue

            markers = [f"[[{link.casefold()}" for link in linking]
            context = next(
                (line for line in content.splitlines() if any(m in line.casefold() for m in markers)),
                ""
            )
            backlinks.append({
                "path": self._relative(path),
                "context": context[:MAX_LINE_LENGTH],
            })

        return self._json("get_backlinks", {
            "note": args.note,
            "backlinkCount": len(backlinks),
            "backlinks": backlinks,
        })


def register_vault_domain(registry: ToolRegistry, settings: VaultSettings) -> VaultAdapter:
    """Register the vault domain with the gateway."""
    adapter = VaultAdapter(settings)
    adapter.register(registry)
    return adapter
