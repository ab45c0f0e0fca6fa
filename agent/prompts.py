"""
System prompt composition and the response templates fed back to the model.
"""

import os
import platform
import time
from typing import Any, Dict, List, Optional

from tools import TOOL_DEFINITIONS


# Tool names for system prompt so the agent always knows what it can call
AVAILABLE_TOOL_NAMES = ", ".join(t["name"] for t in TOOL_DEFINITIONS)

INTERRUPTED_TOOL_RESULT = "Task was interrupted before this tool call could be completed."

INTERRUPTED_BY_USER = "[Response interrupted by user]"
INTERRUPTED_BY_API_ERROR = "[Response interrupted by API Error]"


# ============================================================
# System prompt
# ============================================================

_MOD_IDENTITY = """You are an expert software engineer working directly in the user's project. You can read and edit files, search the codebase and run commands through the tools below.

You work step by step: one tool per message, and you wait for its result before deciding the next step. You read before editing and verify after changing. When the task is complete you say so with attempt_completion."""

_MOD_TOOL_USE = """<tool_use>
Tool uses are formatted using XML-style tags. The tool name is enclosed in opening and closing tags, and each parameter is similarly enclosed within its own set of tags:

<tool_name>
<parameter1_name>value1</parameter1_name>
<parameter2_name>value2</parameter2_name>
</tool_name>

For example:

<read_file>
<path>src/main.py</path>
</read_file>

Always use this format so the tool call can be parsed and executed. Use exactly one tool per message.
</tool_use>"""

_MOD_RULES = """<rules>
- All paths are relative to the working directory. You cannot change directory; commands that need another directory must cd inside the command.
- Prefer replace_in_file for targeted edits; use write_to_file for new files or complete rewrites, always with the COMPLETE content.
- Use ask_followup_question only when information you need cannot be found with the other tools.
- Do not end attempt_completion with a question or an offer of further help.
- If a tool result reports an error, read it carefully; it may contain suggested parameters that are likely to work.
</rules>"""

_RESPONSE_TOOL_REMINDER = """# Reminder: Instructions for Tool Use

Tool uses are formatted using XML-style tags. The tool name is enclosed in opening and closing tags, and each parameter is similarly enclosed within its own set of tags. Here's the structure:

<tool_name>
<parameter1_name>value1</parameter1_name>
<parameter2_name>value2</parameter2_name>
...
</tool_name>

For example:

<attempt_completion>
<result>
I have completed the task...
</result>
</attempt_completion>

Always adhere to this format for all tool uses to ensure proper parsing and execution."""


def _format_tool(tool: Dict[str, Any]) -> str:
    lines = [f"## {tool['name']}", f"Description: {tool['description']}", "Parameters:"]
    for name, desc in tool["params"].items():
        req = "required" if name in tool["required"] else "optional"
        lines.append(f"- {name}: ({req}) {desc}")
    usage = "\n".join(f"<{p}>{p} here</{p}>" for p in tool["params"])
    lines.append(f"Usage:\n<{tool['name']}>\n{usage}\n</{tool['name']}>")
    return "\n".join(lines)


def compose_system_prompt(working_directory: str, custom_instructions: Optional[str] = None) -> str:
    """Assemble the system prompt: identity, tool-use format, tools, rules, environment."""
    tools = "\n\n".join(_format_tool(t) for t in TOOL_DEFINITIONS)
    parts = [
        _MOD_IDENTITY,
        _MOD_TOOL_USE,
        f"<tools>\n{tools}\n</tools>",
        _MOD_RULES,
        (
            "<system_information>\n"
            f"Operating System: {platform.system()} {platform.release()}\n"
            f"Default Shell: {os.environ.get('SHELL', 'sh')}\n"
            f"Current Working Directory: {working_directory}\n"
            "</system_information>"
        ),
    ]
    if custom_instructions:
        parts.append(f"<user_instructions>\n{custom_instructions.strip()}\n</user_instructions>")
    return "\n\n".join(parts)


# ============================================================
# Response templates
# ============================================================

def tool_denied() -> str:
    return "The user denied this operation."


def tool_denied_with_feedback(feedback: str) -> str:
    return f"The user denied this operation and provided the following feedback:\n<feedback>\n{feedback}\n</feedback>"


def tool_error(error: str) -> str:
    return f"The tool execution failed with the following error:\n<error>\n{error}\n</error>"


def no_tools_used() -> str:
    return f"""[ERROR] You did not use a tool in your previous response! Please retry with a tool use.

{_RESPONSE_TOOL_REMINDER}

# Next Steps

If you have completed the user's task, use the attempt_completion tool.
If you require additional information from the user, use the ask_followup_question tool.
Otherwise, if you have not completed the task and do not need additional information, then proceed with the next step of the task.
(This is an automated message, so do not respond to it conversationally.)"""


def too_many_mistakes(feedback: str) -> str:
    return ("You seem to be having trouble proceeding. The user has provided the following "
            f"feedback to help guide you:\n<feedback>\n{feedback}\n</feedback>")


def missing_tool_parameter_error(param_name: str) -> str:
    return (f"Missing value for required parameter '{param_name}'. Please retry with complete response."
            f"\n\n{_RESPONSE_TOOL_REMINDER}")


def tool_result(text: str, images: Optional[List[Dict[str, Any]]] = None) -> Any:
    """Plain text, or text followed by image blocks when there are images."""
    if images:
        return [{"type": "text", "text": text}, *images]
    return text


def user_feedback(text: str) -> str:
    return f"<feedback>\n{text}\n</feedback>"


# ============================================================
# Task resumption
# ============================================================

def ago_text(timestamp: float, now: Optional[float] = None) -> str:
    diff = (now if now is not None else time.time()) - timestamp
    minutes = int(diff // 60)
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days} day{'s' if days > 1 else ''} ago"
    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
    return "just now"


def task_resumption(last_activity: float, working_directory: str,
                    new_instructions: Optional[str] = None, now: Optional[float] = None) -> str:
    current = now if now is not None else time.time()
    text = (
        f"[TASK RESUMPTION] This task was interrupted {ago_text(last_activity, current)}. "
        "It may or may not be complete, so please reassess the task context. Be aware that the "
        "project state may have changed since then. The current working directory is now "
        f"'{working_directory}'. If the task has not been completed, retry the last step before "
        "interruption and proceed with completing the task.\n\n"
        "Note: If you previously attempted a tool use that the user did not provide a result for, "
        "you should assume the tool use was not successful and assess whether you should retry."
    )
    if current - last_activity < 30:
        text += (
            "\n\nIMPORTANT: If the last tool use was a replace_in_file or write_to_file that was "
            "interrupted, the file was reverted back to its original state before the interrupted "
            "edit, and you do NOT need to re-read the file as you already have its up-to-date contents."
        )
    if new_instructions:
        text += f"\n\nNew instructions for task continuation:\n<user_message>\n{new_instructions}\n</user_message>"
    return text


# ============================================================
# Environment details
# ============================================================

def environment_details(working_directory: str, file_listing: Optional[str] = None,
                        edited_files: Optional[List[str]] = None) -> str:
    """The <environment_details> block appended to each user turn."""
    lines = ["<environment_details>", f"# Current Time\n{time.strftime('%Y-%m-%d %H:%M:%S %Z')}"]
    if edited_files:
        lines.append("# Recently Modified Files\n" + "\n".join(edited_files))
    if file_listing is not None:
        lines.append(f"# Current Working Directory ({working_directory}) Files\n{file_listing}")
    lines.append("</environment_details>")
    return "\n\n".join(lines)
