"""
Tool definitions and implementations for the task engine.
Each tool takes string parameters and returns a ToolResult.
Tools use a Backend abstraction for file/command operations.
"""

from tools._common import ToolResult  # noqa: F401
from tools.gitignore import invalidate_gitignore_cache  # noqa: F401
from tools.file_ops import read_file, write_to_file, replace_in_file  # noqa: F401
from tools.search_ops import search_files, list_files, list_code_definition_names  # noqa: F401
from tools.external_ops import execute_command  # noqa: F401
from tools.schemas import (  # noqa: F401
    TOOL_DEFINITIONS,
    TOOL_USE_NAMES,
    TOOL_PARAM_NAMES,
    REQUIRED_PARAMS,
    READ_TOOLS,
    EDIT_TOOLS,
    COMMAND_TOOLS,
    CONTROL_TOOLS,
    TOOL_IMPLEMENTATIONS,
)
from tools.dispatch import execute_tool, missing_params, approval_class  # noqa: F401
