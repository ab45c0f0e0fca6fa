"""Shell command tool."""

import logging
from typing import Any, Optional

from backend import Backend, CommandResult, LocalBackend
from tools._common import ToolResult, error_result, require

logger = logging.getLogger(__name__)

_MAX_OUTPUT_CHARS = 20000
_HEAD_LINES = 100
_TAIL_LINES = 50


def _clip(output: str) -> str:
    """Keep the start and end of long output; errors usually sit at the end."""
    if len(output) <= _MAX_OUTPUT_CHARS:
        return output
    lines = output.split("\n")
    if len(lines) > _HEAD_LINES + _TAIL_LINES:
        dropped = len(lines) - _HEAD_LINES - _TAIL_LINES
        return "\n".join(lines[:_HEAD_LINES] + [f"... [{dropped} lines omitted] ..."] + lines[-_TAIL_LINES:])
    half = _MAX_OUTPUT_CHARS // 2
    return output[:half] + "\n... [output clipped] ...\n" + output[-half:]


def format_command_output(result: CommandResult) -> str:
    sections = []
    if result.stdout:
        sections.append(result.stdout.rstrip("\n"))
    if result.stderr:
        sections.append("[stderr]\n" + result.stderr.rstrip("\n"))
    body = "\n".join(sections) or "(no output)"
    if result.exit_code != 0:
        body = f"[exit code: {result.exit_code}]\n{body}"
    return _clip(body)


def execute_command(command: str, timeout: Any = 120, backend: Optional[Backend] = None,
                    working_directory: str = ".", **kw: Any) -> ToolResult:
    """Run a shell command in the working directory.
    A non-zero exit code is part of the output, not a tool failure."""
    err = require(command, "command")
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        result = b.run_command(command, timeout=float(timeout))
        logger.debug(f"Command exited {result.exit_code} after {result.duration:.1f}s: {command}")
        return ToolResult(success=True, output=format_command_output(result))
    except Exception as e:
        logger.debug(f"execute_command failed: {e}")
        return error_result(e)
