"""Tool definitions, parameter tables and dispatch maps."""

from typing import Any, Callable, Dict, FrozenSet, List

from tools.file_ops import read_file, write_to_file, replace_in_file
from tools.search_ops import search_files, list_files, list_code_definition_names
from tools.external_ops import execute_command


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "execute_command",
        "description": "Execute a CLI command in the working directory. Use it to run tests, "
                       "builds, git, or any other system operation. Prefer non-interactive commands.",
        "params": {
            "command": "The command to run.",
            "requires_approval": "'true' for commands with side effects (installs, deletes, "
                                 "network), 'false' for safe read-only commands.",
        },
        "required": ["command"],
    },
    {
        "name": "read_file",
        "description": "Read the contents of a file at the given path.",
        "params": {"path": "Path of the file, relative to the working directory."},
        "required": ["path"],
    },
    {
        "name": "write_to_file",
        "description": "Write content to a file, creating it (and its directories) if needed "
                       "and overwriting it otherwise. Always provide the COMPLETE file content.",
        "params": {
            "path": "Path of the file, relative to the working directory.",
            "content": "The full content to write.",
        },
        "required": ["path", "content"],
    },
    {
        "name": "replace_in_file",
        "description": "Replace sections of an existing file using SEARCH/REPLACE blocks:\n"
                       "<<<<<<< SEARCH\n[exact content to find]\n=======\n[new content]\n>>>>>>> REPLACE\n"
                       "Blocks are applied in order; each SEARCH must match the file exactly.",
        "params": {
            "path": "Path of the file, relative to the working directory.",
            "diff": "One or more SEARCH/REPLACE blocks.",
        },
        "required": ["path", "diff"],
    },
    {
        "name": "search_files",
        "description": "Regex search across files in a directory, returning matches with line numbers.",
        "params": {
            "path": "Directory to search recursively.",
            "regex": "The regular expression to search for.",
            "file_pattern": "Optional glob to filter files, e.g. '*.py'.",
        },
        "required": ["path", "regex"],
    },
    {
        "name": "list_files",
        "description": "List files and directories within a directory.",
        "params": {
            "path": "Directory to list.",
            "recursive": "'true' to list recursively, 'false' (default) for top level only.",
        },
        "required": ["path"],
    },
    {
        "name": "list_code_definition_names",
        "description": "List class, function and type definitions in the top-level source files of a directory.",
        "params": {"path": "Directory to inspect."},
        "required": ["path"],
    },
    {
        "name": "ask_followup_question",
        "description": "Ask the user a question when you need clarification to proceed.",
        "params": {"question": "The question to ask."},
        "required": ["question"],
    },
    {
        "name": "attempt_completion",
        "description": "Present the result of your work once the task is complete. "
                       "Only use this after confirming previous tool uses succeeded.",
        "params": {
            "result": "Final description of the result. Do not end with a question.",
            "command": "Optional CLI command that demonstrates the result.",
        },
        "required": ["result"],
    },
]

TOOL_USE_NAMES: FrozenSet[str] = frozenset(t["name"] for t in TOOL_DEFINITIONS)

TOOL_PARAM_NAMES: FrozenSet[str] = frozenset(
    p for t in TOOL_DEFINITIONS for p in t["params"]
)

REQUIRED_PARAMS: Dict[str, List[str]] = {t["name"]: list(t["required"]) for t in TOOL_DEFINITIONS}

# Tools that only read state
READ_TOOLS: FrozenSet[str] = frozenset({
    "read_file", "search_files", "list_files", "list_code_definition_names",
})

# Tools that modify files
EDIT_TOOLS: FrozenSet[str] = frozenset({"write_to_file", "replace_in_file"})

COMMAND_TOOLS: FrozenSet[str] = frozenset({"execute_command"})

# Tools handled by the task loop itself rather than a Backend
CONTROL_TOOLS: FrozenSet[str] = frozenset({"ask_followup_question", "attempt_completion"})

TOOL_IMPLEMENTATIONS: Dict[str, Callable[..., Any]] = {
    "execute_command": execute_command,
    "read_file": read_file,
    "write_to_file": write_to_file,
    "replace_in_file": replace_in_file,
    "search_files": search_files,
    "list_files": list_files,
    "list_code_definition_names": list_code_definition_names,
}
