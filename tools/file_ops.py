"""File operation tools: read_file, write_to_file, replace_in_file."""

import re
import difflib
import logging
from typing import Any, List, Optional, Tuple

from backend import Backend, LocalBackend
from tools._common import (
    ToolResult, definition_lines, error_result, require,
    INVALID_PARAMETER, RESOURCE_NOT_FOUND,
)

logger = logging.getLogger(__name__)

_MAX_FULL_READ_LINES = 1000
_HEAD_LINES = 400
_TAIL_LINES = 100


def _abridged(path: str, lines: List[str]) -> str:
    """Outline plus head and tail of a file too long to return whole."""
    omitted = len(lines) - _HEAD_LINES - _TAIL_LINES
    outline = "\n".join(definition_lines("".join(lines))) or "(no definitions found)"
    return "\n".join([
        f"[{path}: {len(lines)} lines. Showing its outline, the first {_HEAD_LINES} "
        f"and the last {_TAIL_LINES} lines]",
        "-- outline --", outline, "",
        "-- head --", "".join(lines[:_HEAD_LINES]).rstrip(),
        f"... ({omitted} lines omitted) ...",
        "-- tail --", "".join(lines[-_TAIL_LINES:]).rstrip(),
    ])


def read_file(path: str, backend: Optional[Backend] = None,
              working_directory: str = ".", **kw: Any) -> ToolResult:
    """Contents of a file. Very long files are abridged."""
    err = require(path, "path")
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.exists(path):
            return ToolResult(success=False, output="", error=f"File not found: {path}",
                              error_kind=RESOURCE_NOT_FOUND)
        if b.is_dir(path):
            return ToolResult(success=False, output="",
                              error=f"Invalid path: {path} is a directory, not a file",
                              error_kind=INVALID_PARAMETER)

        content = b.read_text(path)
        lines = content.splitlines(keepends=True)
        if len(lines) <= _MAX_FULL_READ_LINES:
            return ToolResult(success=True, output=content)
        return ToolResult(success=True, output=_abridged(path, lines))
    except Exception as e:
        return error_result(e)


def _compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 60) -> str:
    """Generate a compact unified diff for the tool result."""
    old_lines = old_content.splitlines(keepends=True)
    new_lines = new_content.splitlines(keepends=True)
    diff = list(difflib.unified_diff(old_lines, new_lines, fromfile=path, tofile=path, lineterm=""))
    if not diff:
        return ""
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(line.rstrip() for line in diff)


def write_to_file(path: str, content: str, backend: Optional[Backend] = None,
                  working_directory: str = ".", **kw: Any) -> ToolResult:
    """Create a new file or completely overwrite an existing one."""
    err = require(path, "path")
    if err:
        return err
    if content is None:
        return require(None, "content")
    try:
        b = backend or LocalBackend(working_directory)
        old_content = ""
        is_new = not b.exists(path)
        if not is_new:
            old_content = b.read_text(path)
        b.write_text(path, content)
        line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        summary = f"{'Created' if is_new else 'Wrote'} {line_count} lines to {path}"
        if is_new:
            return ToolResult(success=True, output=summary)
        diff_text = _compact_diff(old_content, content, path)
        return ToolResult(success=True, output=f"{summary}\n{diff_text}" if diff_text else summary)
    except Exception as e:
        return error_result(e)


# ------------------------------------------------------------------
# SEARCH/REPLACE blocks
# ------------------------------------------------------------------

_BLOCK_RE = re.compile(
    r"<<<<<<< SEARCH\n(.*?)\n?=======\n(.*?)\n?>>>>>>> REPLACE",
    re.DOTALL,
)


def parse_replace_blocks(diff: str) -> List[Tuple[str, str]]:
    """Split a replace_in_file diff into (search, replace) pairs."""
    return [(m.group(1), m.group(2)) for m in _BLOCK_RE.finditer(diff.replace("\r\n", "\n"))]


def _line_trimmed_find(content: str, search: str) -> Optional[Tuple[int, int]]:
    """Find search in content ignoring leading/trailing whitespace on each line.
    Returns (start, end) character offsets or None."""
    content_lines = content.split("\n")
    search_lines = search.split("\n")
    if search_lines and search_lines[-1] == "":
        search_lines.pop()
    if not search_lines:
        return None
    wanted = [s.strip() for s in search_lines]
    for i in range(len(content_lines) - len(search_lines) + 1):
        window = content_lines[i:i + len(search_lines)]
        if [c.strip() for c in window] == wanted:
            start = sum(len(l) + 1 for l in content_lines[:i])
            end = start + sum(len(l) + 1 for l in window) - 1
            return start, end
    return None


def replace_in_file(path: str, diff: str, backend: Optional[Backend] = None,
                    working_directory: str = ".", **kw: Any) -> ToolResult:
    """Apply one or more SEARCH/REPLACE blocks to an existing file, in order."""
    err = require(path, "path") or require(diff, "diff")
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.exists(path):
            return ToolResult(success=False, output="", error=f"File not found: {path}",
                              error_kind=RESOURCE_NOT_FOUND)
        blocks = parse_replace_blocks(diff)
        if not blocks:
            return ToolResult(success=False, output="",
                              error="Invalid diff: no SEARCH/REPLACE blocks found",
                              error_kind=INVALID_PARAMETER)

        original = b.read_text(path)
        content = original
        for n, (search, replace) in enumerate(blocks, start=1):
            if search == "":
                # Empty SEARCH on an empty file means "write this content"
                if content:
                    return ToolResult(success=False, output="",
                                      error=f"Invalid diff: block {n} has an empty SEARCH section",
                                      error_kind=INVALID_PARAMETER)
                content = replace
                continue
            idx = content.find(search)
            if idx >= 0:
                content = content[:idx] + replace + content[idx + len(search):]
                continue
            span = _line_trimmed_find(content, search)
            if span is None:
                return ToolResult(
                    success=False, output="",
                    error=(f"Invalid diff: SEARCH block {n} does not match anything in {path}. "
                           "Read the file again and copy the lines exactly."),
                    error_kind=INVALID_PARAMETER,
                )
            content = content[:span[0]] + replace + content[span[1]:]

        b.write_text(path, content)
        diff_text = _compact_diff(original, content, path)
        summary = f"Applied {len(blocks)} edit(s) to {path}"
        return ToolResult(success=True, output=f"{summary}\n{diff_text}" if diff_text else summary)
    except Exception as e:
        return error_result(e)
