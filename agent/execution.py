"""
The task loop: one turn per request, tool dispatch through the reliability
engine, and the abort sequence for interrupted streams.
"""

import asyncio
import functools
import logging
from typing import Any, Dict, List, Optional, Tuple

from checkpoints import CheckpointError
from tools import COMMAND_TOOLS, EDIT_TOOLS, TOOL_DEFINITIONS, execute_tool, missing_params

from .errors import (
    ErrorCategory,
    InvalidStateError,
    TaskAbortedError,
    ToolCallError,
    ToolCallFailure,
    ToolCallSuggestion,
)
from .events import (
    AgentEvent,
    AskResponse,
    ASK_API_REQ_FAILED,
    ASK_AUTO_APPROVAL_MAX,
    ASK_COMMAND,
    ASK_COMPLETION_RESULT,
    ASK_FOLLOWUP,
    ASK_MISTAKE_LIMIT,
    ASK_TOOL,
)
from .history import HistoryErrorCode
from .parser import (
    Presentation,
    StreamPresenter,
    TextContent,
    finalize_blocks,
    format_tool_call,
    parse_assistant_message,
    to_history_content,
    tool_description,
)
from .prompts import (
    INTERRUPTED_BY_API_ERROR,
    INTERRUPTED_BY_USER,
    missing_tool_parameter_error,
    no_tools_used,
    too_many_mistakes,
    tool_denied,
    tool_denied_with_feedback,
    tool_error,
    tool_result,
    user_feedback,
)
from .state import LoopPhase, TaskStatus
from .streaming import MidStreamError
from .truncation import compute_deleted_range

logger = logging.getLogger(__name__)

_TOOL_PARAMS = {t["name"]: frozenset(t["params"]) for t in TOOL_DEFINITIONS}

# Outcomes of a single tool use
_OK, _ERROR, _DENIED, _COMPLETED = "ok", "error", "denied", "completed"


class TaskEnded(Exception):
    """The loop stopped on a user decision. `reason` becomes the task's cancel reason."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _text(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def _tool_result_block(tool_use_id: str, content: Any) -> Dict[str, Any]:
    return {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}


class ExecutionMixin:
    """Mixin providing the turn loop and tool execution.

    Expects the host class to provide:
    - self.pipeline (StreamingRequestPipeline)
    - self.history (ConversationHistoryStore)
    - self.reliability (ToolCallReliabilityEngine)
    - self.state (TaskState), self.phase (LoopPhase), self._token (CancellationToken)
    - self.backend, self.working_directory, self.system_prompt, self.context_window
    - self._on_event / self._ask_callback
    - self.checkpoints (CheckpointTracker or None)
    - self._snapshot_file(), self.revert_all(), approvals via ContextMixin
    - self._save_item() via core
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.consecutive_mistakes: int = 0
        # Usage of the previous request; drives truncation of the next one
        self._last_usage: Optional[Dict[str, int]] = None
        self._is_streaming: bool = False
        self._did_finish_aborting_stream: bool = False

    # ------------------------------------------------------------------
    # Say / ask
    # ------------------------------------------------------------------

    async def _say(self, event_type: str, content: str = "", data: Optional[Dict[str, Any]] = None,
                   partial: bool = False) -> None:
        # A replaced loop must stay silent
        if self._token.abandoned:
            return
        await self._on_event(AgentEvent(type=event_type, content=content, data=data, partial=partial))

    async def _ask(self, ask_type: str, text: str = "") -> AskResponse:
        """Ask the user and wait. The task is paused while the question is open."""
        self._token.raise_if_cancelled()
        self.state.transition(TaskStatus.PAUSED)
        try:
            response = await self._ask_callback(ask_type, text)
        finally:
            if not self.state.is_terminal:
                self.state.transition(TaskStatus.ACTIVE)
        self._token.raise_if_cancelled()
        return response

    def _add_message(self, role: str, content: List[Dict[str, Any]]) -> None:
        if self._token.abandoned:
            raise TaskAbortedError("abandoned")
        result = self.history.add_message({"role": role, "content": content})
        if result.success:
            return
        if result.error.code == HistoryErrorCode.PERSISTENCE_ERROR:
            # Memory already holds the message; disk catches up on the next write
            logger.warning(f"History not persisted: {result.error.message}")
            return
        raise InvalidStateError(result.error.message)

    def _set_phase(self, phase: LoopPhase) -> None:
        logger.debug(f"Task {self.state.id}: {self.phase.value} -> {phase.value}")
        self.phase = phase

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(self, user_content: List[Dict[str, Any]], include_file_details: bool = True) -> None:
        """Run turns until the task completes. Each turn hands back the next user
        content, or None once attempt_completion has been accepted."""
        pending: List[List[Dict[str, Any]]] = [user_content]
        while pending:
            self._token.raise_if_cancelled()
            content = pending.pop()
            next_content = await self._run_turn(content, include_file_details)
            include_file_details = False
            if next_content is not None:
                pending.append(next_content)

    async def _run_turn(self, user_content: List[Dict[str, Any]],
                        include_file_details: bool) -> Optional[List[Dict[str, Any]]]:
        self._set_phase(LoopPhase.REQUESTING_COMPLETION)
        user_content = list(user_content)

        if self.consecutive_mistakes >= self.max_consecutive_mistakes:
            response = await self._ask(
                ASK_MISTAKE_LIMIT,
                "The model has made several mistakes in a row. Provide guidance to help it continue.",
            )
            if response.response == "no":
                raise TaskEnded(ASK_MISTAKE_LIMIT)
            if response.text:
                user_content.append(_text(too_many_mistakes(response.text)))
            self.consecutive_mistakes = 0

        if self._auto_approval_limit_reached():
            response = await self._ask(
                ASK_AUTO_APPROVAL_MAX,
                f"{self._consecutive_auto_approved} requests were auto-approved in a row. Continue?",
            )
            if not response.approved:
                raise TaskEnded(ASK_AUTO_APPROVAL_MAX)
            self._consecutive_auto_approved = 0

        user_content.append(_text(self._environment_details(include_file_details)))
        self._add_message("user", user_content)
        self._apply_truncation()

        blocks = await self._stream_assistant_turn()
        self._set_phase(LoopPhase.DECIDING)

        if not blocks:
            await self._say("error", "The model returned an empty response.")
            self._add_message("assistant", [_text("Failure: I did not provide a response.")])
            self.consecutive_mistakes += 1
            return [_text(no_tools_used())]

        content = to_history_content(blocks)
        self._add_message("assistant", content)

        tool_uses = [b for b in content if b["type"] == "tool_use"]
        if not tool_uses:
            self.consecutive_mistakes += 1
            return [_text(no_tools_used())]

        self._set_phase(LoopPhase.EXECUTING_TOOLS)
        results, completed = await self._execute_tool_uses(tool_uses)
        self._set_phase(LoopPhase.DECIDING)
        if completed:
            # Close out the tool calls so the log has no unmatched tool use
            self._add_message("user", results)
            return None
        return results

    def _apply_truncation(self) -> None:
        messages = self.history.get_current_history().data
        current = self.history.deleted_range
        new_range = compute_deleted_range(messages, current, self._last_usage, self.context_window)
        if new_range == current:
            return
        result = self.history.set_deleted_range(new_range)
        if not result.success and result.error.code == HistoryErrorCode.INVALID_STATE:
            logger.warning(f"Keeping deleted range {current}: {result.error.message}")

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream_assistant_turn(self) -> List[Any]:
        self._set_phase(LoopPhase.STREAMING_RESPONSE)
        messages = self.history.get_current_history(for_model=True).data
        await self._say("api_req_started", data={"messages": len(messages),
                                                 "deleted_range": self.history.deleted_range})

        assistant_text = ""
        presenter = StreamPresenter()
        usage = {"input_tokens": 0, "output_tokens": 0, "cache_write_tokens": 0, "cache_read_tokens": 0}
        cost = 0.0
        self._is_streaming = True
        self._did_finish_aborting_stream = False

        stream = self.pipeline.request(self.system_prompt, messages, self._token, self._confirm_retry)
        try:
            async for increment in stream:
                if increment.get("type") == "usage":
                    for key in usage:
                        usage[key] += increment.get(key, 0)
                    cost += increment.get("total_cost", 0.0)
                elif increment.get("type") == "text":
                    assistant_text += increment.get("text", "")
                    for presentation in presenter.update(parse_assistant_message(assistant_text)):
                        await self._present(presentation)
                self._token.raise_if_cancelled()
        except TaskAbortedError:
            await self._abort_stream("user_cancelled", assistant_text)
            raise
        except MidStreamError as e:
            await self._say("error", f"API request failed mid-stream: {e}")
            await self._abort_stream("streaming_failed", assistant_text)
            raise
        finally:
            self._is_streaming = False
            await stream.aclose()
            await self._record_usage(usage, cost)

        blocks = finalize_blocks(parse_assistant_message(assistant_text))
        for presentation in presenter.update(blocks):
            await self._present(presentation)
        return blocks

    async def _present(self, presentation: Presentation) -> None:
        block = presentation.block
        if isinstance(block, TextContent):
            await self._say("text", block.content, data={"index": presentation.index}, partial=block.partial)
        else:
            await self._say(
                "tool_call", tool_description(block.name, block.params),
                data={"index": presentation.index, "name": block.name, "params": dict(block.params)},
                partial=block.partial,
            )

    async def _confirm_retry(self, error: BaseException) -> bool:
        """First-chunk failures are retried only if the user says so."""
        await self._say("error", f"API request failed: {error}")
        response = await self._ask(ASK_API_REQ_FAILED, str(error))
        if response.approved:
            await self._say("api_req_retried")
            return True
        return False

    async def _record_usage(self, usage: Dict[str, int], cost: float) -> None:
        self.state.metrics.add_usage(
            input_tokens=usage["input_tokens"],
            output_tokens=usage["output_tokens"],
            cache_write_tokens=usage["cache_write_tokens"],
            cache_read_tokens=usage["cache_read_tokens"],
            total_cost=cost,
        )
        self._last_usage = dict(usage)
        await self._say("api_req_finished", data={**usage, "cost": cost})
        if not self._token.abandoned:
            self._save_item()

    async def abort_stream(self, cancel_reason: str, assistant_text: str = "") -> None:
        """Public entry to the abort sequence, e.g. for hosts that stop a stream themselves."""
        await self._abort_stream(cancel_reason, assistant_text)

    async def _abort_stream(self, cancel_reason: str, assistant_text: str) -> None:
        """Roll back the in-progress edit and record what streamed before the interruption."""
        self.revert_all()
        if self._token.abandoned:
            # A newer loop owns the history now
            self._did_finish_aborting_stream = True
            return
        marker = INTERRUPTED_BY_USER if cancel_reason == "user_cancelled" else INTERRUPTED_BY_API_ERROR
        text = assistant_text.strip()
        self._add_message("assistant", [_text(f"{text}\n\n{marker}" if text else marker)])
        self.state.cancel_reason = cancel_reason
        await self._say("interrupted", marker, data={"cancel_reason": cancel_reason})
        self._did_finish_aborting_stream = True
        logger.info(f"Task {self.state.id}: stream aborted ({cancel_reason})")

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _execute_tool_uses(self, tool_uses: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], bool]:
        """Run the turn's tool calls in order. Returns the tool_result blocks and
        whether attempt_completion was accepted."""
        results: List[Dict[str, Any]] = []
        rejected = False
        completed = False
        edited = False
        for tool_use in tool_uses:
            self._token.raise_if_cancelled()
            name, params = tool_use["name"], tool_use.get("input", {})
            if rejected or completed:
                reason = "the user rejecting a previous tool" if rejected else "the task being completed"
                results.append(_tool_result_block(
                    tool_use["id"], f"Skipping tool {tool_description(name, params)} due to {reason}."))
                continue

            content, outcome = await self._execute_tool_use(name, params)
            results.append(_tool_result_block(tool_use["id"], content))
            if outcome == _DENIED:
                rejected = True
            elif outcome == _COMPLETED:
                completed = True
            elif outcome == _OK and name in EDIT_TOOLS:
                edited = True

        if edited:
            await self._save_checkpoint()
        return results, completed

    async def _execute_tool_use(self, name: str, params: Dict[str, str]) -> Tuple[Any, str]:
        missing = missing_params(name, params)
        if missing:
            self.consecutive_mistakes += 1
            await self._say("error", f"Missing value for required parameter '{missing[0]}' of {name}. Retrying...")
            return tool_error(missing_tool_parameter_error(missing[0])), _ERROR

        if name == "ask_followup_question":
            response = await self._ask(ASK_FOLLOWUP, params["question"])
            self.consecutive_mistakes = 0
            return f"<answer>\n{response.text}\n</answer>", _OK

        if name == "attempt_completion":
            await self._say("completion", params["result"], data={"command": params.get("command")})
            response = await self._ask(ASK_COMPLETION_RESULT, params["result"])
            if response.response == "message" and response.text:
                self.consecutive_mistakes = 0
                return ("The user has provided feedback on the results. Consider their input to continue "
                        "the task, and then attempt completion again.\n" + user_feedback(response.text)), _OK
            return "The user accepted the result.", _COMPLETED

        feedback = ""
        if self._should_auto_approve(name, params):
            self._consecutive_auto_approved += 1
            await self._say("auto_approved", tool_description(name, params), data={"name": name})
        elif not self.was_previously_approved(name, params):
            ask_type = ASK_COMMAND if name in COMMAND_TOOLS else ASK_TOOL
            response = await self._ask(ask_type, format_tool_call(name, params))
            if response.response == "message":
                return tool_denied_with_feedback(response.text), _DENIED
            if not response.approved:
                return tool_denied(), _DENIED
            feedback = response.text
            self.remember_approval(name, params)

        self._snapshot_file(name, params)
        try:
            result = await self.reliability.execute(
                name, params, self._tool_operation(name),
                token=self._token, on_retry=self._on_tool_retry,
            )
        except ToolCallFailure as failure:
            self.clear_snapshots()
            self.consecutive_mistakes += 1
            await self._say("tool_result", failure.report.message,
                            data={"name": name, "success": False, "category": failure.report.category.value})
            return tool_error(failure.report.to_prompt()), _ERROR
        self.clear_snapshots()

        if name in EDIT_TOOLS:
            self._note_edited(params)
        self.consecutive_mistakes = 0
        await self._say("tool_result", result.output, data={"name": name, "success": True})
        text = result.output or "(no output)"
        if feedback:
            text = f"{text}\n\nThe user approved this operation and provided the following feedback:\n{user_feedback(feedback)}"
        return tool_result(text), _OK

    def _tool_operation(self, name: str):
        """The side-effecting call the reliability engine retries.
        A failed ToolResult is raised as ToolCallError carrying its structured kind."""
        allowed = _TOOL_PARAMS.get(name, frozenset())

        async def operation(params: Dict[str, str]) -> Any:
            inputs = {k: v for k, v in params.items() if k in allowed}
            loop = asyncio.get_event_loop()
            result = await loop.run_in_executor(None, functools.partial(
                execute_tool, name, inputs, self.working_directory, self.backend,
                timeout=self.command_timeout,
            ))
            if not result.success:
                category = ErrorCategory(result.error_kind) if result.error_kind else None
                raise ToolCallError(result.error or f"{name} failed", category=category, tool_name=name)
            return result

        return operation

    async def _on_tool_retry(self, tool_name: str, attempt: int, error: BaseException,
                             params: Dict[str, str], hints: List[ToolCallSuggestion]) -> None:
        await self._say(
            "tool_retry", f"Retrying {tool_name} (attempt {attempt}) after: {error}",
            data={"name": tool_name, "attempt": attempt, "params": params,
                  "hints": [h.suggested_parameters for h in hints]},
        )

    async def _save_checkpoint(self) -> None:
        if self.checkpoints is None:
            return
        loop = asyncio.get_event_loop()
        try:
            commit_hash = await loop.run_in_executor(
                None, self.checkpoints.commit, f"Task {self.state.id} checkpoint")
        except CheckpointError as e:
            logger.warning(f"Checkpoint commit failed: {e}")
            await self._say("checkpoint_warning", str(e))
            return
        await self._say("checkpoint_saved", commit_hash, data={"hash": commit_hash})
