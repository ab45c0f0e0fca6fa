"""Tool execution dispatch and approval classification."""

import logging
from typing import Any, Dict, List, Optional

from backend import Backend
from tools._common import ToolResult, INVALID_PARAMETER
from tools.schemas import (
    TOOL_IMPLEMENTATIONS, REQUIRED_PARAMS,
    READ_TOOLS, EDIT_TOOLS, COMMAND_TOOLS,
)

logger = logging.getLogger(__name__)


def missing_params(name: str, inputs: Dict[str, Any]) -> List[str]:
    """Required parameters of `name` that are absent or blank in inputs.
    File content may legitimately be empty, so only its absence counts."""
    missing = []
    for p in REQUIRED_PARAMS.get(name, []):
        value = inputs.get(p)
        if value is None or (p != "content" and not str(value).strip()):
            missing.append(p)
    return missing


def approval_class(name: str) -> Optional[str]:
    """'read', 'edit' or 'command' for tools that need approval; None for control tools."""
    if name in READ_TOOLS:
        return "read"
    if name in EDIT_TOOLS:
        return "edit"
    if name in COMMAND_TOOLS:
        return "command"
    return None


def execute_tool(
    name: str,
    inputs: Dict[str, Any],
    working_directory: str = ".",
    backend: Optional[Backend] = None,
    **extra: Any,
) -> ToolResult:
    """Execute a tool by name with the given string parameters."""
    impl = TOOL_IMPLEMENTATIONS.get(name)
    if not impl:
        return ToolResult(success=False, output="", error=f"Unknown tool: {name}",
                          error_kind=INVALID_PARAMETER)
    kwargs = dict(inputs, working_directory=working_directory, backend=backend, **extra)
    try:
        return impl(**kwargs)
    except TypeError as e:
        return ToolResult(success=False, output="", error=f"Invalid arguments for {name}: {e}",
                          error_kind=INVALID_PARAMETER)
