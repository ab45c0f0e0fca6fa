"""
Agent event and ask/response data types.
"""

from dataclasses import dataclass
from typing import Dict, Any, Optional


@dataclass
class AgentEvent:
    """Event emitted during task execution"""
    type: str  # task_start, text, tool_call, tool_result, tool_retry, api_req_started, error, completion, ...
    content: str = ""
    data: Optional[Dict[str, Any]] = None
    partial: bool = False


@dataclass
class AskResponse:
    """The user's answer to an ask.
    response is "yes", "no" or "message" (free text in `text`)."""
    response: str
    text: str = ""

    @property
    def approved(self) -> bool:
        return self.response == "yes"


# Ask types the controller issues
ASK_MISTAKE_LIMIT = "mistake_limit_reached"
ASK_AUTO_APPROVAL_MAX = "auto_approval_max_req_reached"
ASK_API_REQ_FAILED = "api_req_failed"
ASK_TOOL = "tool"
ASK_COMMAND = "command"
ASK_FOLLOWUP = "followup"
ASK_COMPLETION_RESULT = "completion_result"
ASK_RESUME_TASK = "resume_task"
