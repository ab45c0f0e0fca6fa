"""Search and discovery tools: search_files, list_files, list_code_definition_names."""

import os
import re
import logging
import subprocess
from collections import deque
from typing import Any, List, Optional

from backend import Backend, LocalBackend
from tools._common import (
    ToolResult, definition_lines, error_result, require,
    INVALID_PARAMETER, RESOURCE_NOT_FOUND, TIMEOUT,
)
from tools.gitignore import ignore_rules

logger = logging.getLogger(__name__)

_LIST_FILES_LIMIT = 200
_MAX_SEARCH_RESULTS = 300
_MAX_DEFINITIONS_PER_FILE = 100

_SOURCE_EXTENSIONS = frozenset({
    ".py", ".js", ".jsx", ".ts", ".tsx", ".go", ".rs", ".java", ".rb",
    ".c", ".h", ".cpp", ".hpp", ".cs", ".swift", ".kt", ".php",
})


def _directory_error(b: Backend, path: str) -> Optional[ToolResult]:
    if not b.exists(path):
        return ToolResult(success=False, output="", error=f"No such directory: {path}",
                          error_kind=RESOURCE_NOT_FOUND)
    if not b.is_dir(path):
        return ToolResult(success=False, output="", error=f"Not a directory: {path}",
                          error_kind=INVALID_PARAMETER)
    return None


def search_files(path: str, regex: str, file_pattern: Optional[str] = None,
                 backend: Optional[Backend] = None, working_directory: str = ".",
                 **kw: Any) -> ToolResult:
    """Regex search across the files under a directory (ripgrep, or grep without it)."""
    err = require(path, "path") or require(regex, "regex")
    if err:
        return err
    try:
        re.compile(regex)
    except re.error as e:
        return ToolResult(success=False, output="", error=f"Invalid regex {regex!r}: {e}",
                          error_kind=INVALID_PARAMETER)
    try:
        b = backend or LocalBackend(working_directory)
        if not b.exists(path):
            return ToolResult(success=False, output="", error=f"No such path: {path}",
                              error_kind=RESOURCE_NOT_FOUND)
        matches = b.search(regex, path, file_glob=file_pattern or None)
        if not matches:
            return ToolResult(success=True, output="Found 0 results.")

        shown = "\n".join(str(m) for m in matches[:_MAX_SEARCH_RESULTS])
        if len(matches) > _MAX_SEARCH_RESULTS:
            shown += f"\n\n... [{len(matches) - _MAX_SEARCH_RESULTS} more results not shown]"
        return ToolResult(success=True, output=f"Found {len(matches)} results.\n\n{shown}")
    except subprocess.TimeoutExpired:
        return ToolResult(success=False, output="", error="Search timed out", error_kind=TIMEOUT)
    except Exception as e:
        return error_result(e)


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() == "true"


def list_files(path: str, recursive: Any = False, backend: Optional[Backend] = None,
               working_directory: str = ".", **kw: Any) -> ToolResult:
    """Files and directories under a path, skipping what .gitignore excludes."""
    err = require(path, "path")
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        err = _directory_error(b, path)
        if err:
            return err

        rules = ignore_rules(b.working_directory)
        recurse = _truthy(recursive)
        found: List[str] = []
        truncated = False
        # Breadth-first, so a truncated listing still covers the top levels
        queue = deque([os.path.normpath(path)])
        while queue and not truncated:
            current = queue.popleft()
            for entry in b.list_dir(current):
                rel = os.path.normpath(os.path.join(current, entry.name))
                if rules.ignores(rel, entry.is_dir):
                    continue
                found.append(rel + "/" if entry.is_dir else rel)
                if entry.is_dir and recurse:
                    queue.append(rel)
                if len(found) >= _LIST_FILES_LIMIT:
                    truncated = True
                    break

        if not found:
            return ToolResult(success=True, output="No files found.")
        output = "\n".join(sorted(found))
        if truncated:
            output += (f"\n\n(Listing stopped at {_LIST_FILES_LIMIT} entries. "
                       "List a subdirectory to see more.)")
        return ToolResult(success=True, output=output)
    except Exception as e:
        return error_result(e)


def list_code_definition_names(path: str, backend: Optional[Backend] = None,
                               working_directory: str = ".", **kw: Any) -> ToolResult:
    """Class and function definitions in the source files directly inside a directory."""
    err = require(path, "path")
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        err = _directory_error(b, path)
        if err:
            return err

        sections = []
        for entry in b.list_dir(path):
            if entry.is_dir or os.path.splitext(entry.name)[1] not in _SOURCE_EXTENSIONS:
                continue
            rel = os.path.normpath(os.path.join(path, entry.name))
            defs = definition_lines(b.read_text(rel))
            if defs:
                sections.append(rel + "\n" + "\n".join(defs[:_MAX_DEFINITIONS_PER_FILE]))

        if not sections:
            return ToolResult(success=True, output="No source code definitions found.")
        return ToolResult(success=True, output="\n\n".join(sections))
    except Exception as e:
        return error_result(e)
