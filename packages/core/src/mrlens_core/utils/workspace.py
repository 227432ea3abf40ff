"""Read-only browsing tools over a checkout, exposed to API-based assistants.

The hosted models cannot see the local filesystem, so the providers hand
them these three tools and run a tool-use loop. Every path is resolved
against the checkout root and anything that escapes it is refused.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from mrlens_core.utils.code import is_code_file

logger = logging.getLogger(__name__)

MAX_READ_CHARS = 20_000
MAX_LIST_ENTRIES = 500
MAX_SEARCH_HITS = 100
_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv"}

TOOL_SPECS = [
    {
        "name": "list_files",
        "description": "List files under a directory of the repository, recursively. Paths are relative to the repo root.",
        "input_schema": {
            "type": "object",
            "properties": {"path": {"type": "string", "description": "Directory to list. Defaults to the repo root."}},
        },
    },
    {
        "name": "read_file",
        "description": "Read a text file from the repository. Lines are prefixed with their line number.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "start_line": {"type": "integer", "minimum": 1},
                "end_line": {"type": "integer", "minimum": 1},
            },
            "required": ["path"],
        },
    },
    {
        "name": "search_code",
        "description": "Search repository files for a regular expression. Returns path:line: text matches.",
        "input_schema": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string"},
                "path": {"type": "string", "description": "Directory to search. Defaults to the repo root."},
            },
            "required": ["pattern"],
        },
    },
]


class WorkspaceError(ValueError):
    pass


class RepoBrowser:
    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _resolve(self, rel_path: str | None) -> Path:
        target = (self.root / (rel_path or ".")).resolve()
        if target != self.root and self.root not in target.parents:
            raise WorkspaceError(f"path outside the repository: {rel_path}")
        return target

    def _walk(self, base: Path):
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
            for name in sorted(filenames):
                yield Path(dirpath) / name

    def list_files(self, path: str = ".") -> str:
        base = self._resolve(path)
        if not base.is_dir():
            raise WorkspaceError(f"not a directory: {path}")
        entries = []
        for file_path in self._walk(base):
            entries.append(file_path.relative_to(self.root).as_posix())
            if len(entries) >= MAX_LIST_ENTRIES:
                entries.append(f"... (truncated at {MAX_LIST_ENTRIES} entries)")
                break
        return "\n".join(entries) or "(empty directory)"

    def read_file(self, path: str, start_line: int = 1, end_line: int | None = None) -> str:
        target = self._resolve(path)
        if not target.is_file():
            raise WorkspaceError(f"no such file: {path}")
        if not is_code_file(target.name):
            raise WorkspaceError(f"not a text file: {path}")
        data = target.read_bytes()
        if b"\0" in data[:8192]:
            raise WorkspaceError(f"binary file: {path}")

        lines = data.decode("utf-8", errors="replace").splitlines()
        start = max(start_line, 1)
        end = min(end_line or len(lines), len(lines))
        numbered = "\n".join(f"{n:>5}| {lines[n - 1]}" for n in range(start, end + 1))
        if len(numbered) > MAX_READ_CHARS:
            numbered = numbered[:MAX_READ_CHARS] + "\n... [file truncated, use start_line/end_line]"
        return numbered or "(no lines in range)"

    def search_code(self, pattern: str, path: str = ".") -> str:
        regex = re.compile(pattern)
        base = self._resolve(path)
        hits = []
        for file_path in self._walk(base):
            if not is_code_file(file_path.name):
                continue
            try:
                text = file_path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            rel = file_path.relative_to(self.root).as_posix()
            for number, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    hits.append(f"{rel}:{number}: {line.strip()[:200]}")
                    if len(hits) >= MAX_SEARCH_HITS:
                        hits.append(f"... (truncated at {MAX_SEARCH_HITS} matches)")
                        return "\n".join(hits)
        return "\n".join(hits) or "No matches."

    def dispatch(self, name: str, arguments: dict) -> str:
        """Run one tool call and return its text result.

        Errors are returned as text so the model can correct itself.
        """
        handlers = {"list_files": self.list_files, "read_file": self.read_file, "search_code": self.search_code}
        handler = handlers.get(name)
        if handler is None:
            return f"Error: unknown tool {name!r}"
        try:
            return handler(**(arguments or {}))
        except (WorkspaceError, re.error, OSError, TypeError) as e:
            logger.debug("Tool %s failed: %s", name, e)
            return f"Error: {e}"
