"""Shared types and helpers for the tools package."""

import re
import subprocess
from dataclasses import dataclass
from typing import List, Optional

# Structured failure kinds. Values match agent.errors.ErrorCategory.
INVALID_PARAMETER = "invalid_parameter"
MISSING_PARAMETER = "missing_parameter"
PERMISSION_DENIED = "permission_denied"
RESOURCE_NOT_FOUND = "resource_not_found"
TIMEOUT = "timeout"


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None
    # One of the kinds above when the tool knows why it failed
    error_kind: Optional[str] = None


def kind_for_exception(e: BaseException) -> Optional[str]:
    """Map a raised exception onto a failure kind, or None if it says nothing useful."""
    if isinstance(e, (FileNotFoundError, NotADirectoryError)):
        return RESOURCE_NOT_FOUND
    if isinstance(e, PermissionError):
        return PERMISSION_DENIED
    if isinstance(e, (TimeoutError, subprocess.TimeoutExpired)):
        return TIMEOUT
    if isinstance(e, (ValueError, IsADirectoryError)):
        return INVALID_PARAMETER
    return None


def error_result(e: BaseException) -> ToolResult:
    return ToolResult(success=False, output="", error=str(e), error_kind=kind_for_exception(e))


def require(value: Optional[str], name: str) -> Optional[ToolResult]:
    """Return a missing-parameter ToolResult if value is empty; else None."""
    if not (value or "").strip():
        return ToolResult(success=False, output="", error=f"Missing required parameter '{name}'",
                          error_kind=MISSING_PARAMETER)
    return None


# Lines that open a definition, across the common languages
_DEFINITION_PATTERNS = [
    re.compile(r"^\s*(?:async\s+)?def\s+\w+\s*\("),
    re.compile(r"^\s*class\s+\w+"),
    re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*\w+\s*\("),
    re.compile(r"^\s*(?:export\s+)?(?:const|let|var)\s+\w+\s*=\s*(?:async\s*)?(?:\([^)]*\)|\w+)\s*=>"),
    re.compile(r"^\s*(?:export\s+)?(?:abstract\s+)?(?:interface|type|enum)\s+\w+"),
    re.compile(r"^\s*(?:pub\s+)?(?:fn|struct|trait|impl)\s+\w+"),
    re.compile(r"^\s*func\s+(?:\([^)]*\)\s*)?\w+\s*\("),
    re.compile(r"^\s*(?:public|private|protected)\s+(?:static\s+)?[\w<>\[\]]+\s+\w+\s*\("),
]


def definition_lines(content: str) -> List[str]:
    """Definition lines of a source file, numbered as "{n:6}|{line}"."""
    return [
        f"{n:6}|{line.rstrip()}"
        for n, line in enumerate(content.splitlines(), start=1)
        if any(p.match(line) for p in _DEFINITION_PATTERNS)
    ]
