"""
Main TaskLoopController class that drives one task through the request loop.
Inherits capabilities from ContextMixin and ExecutionMixin.
"""

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from backend import Backend, LocalBackend
from bedrock_service import GenerationConfig
from checkpoints import CheckpointError, CheckpointTracker
from config import AutoApprovalConfig, app_config, get_context_window, model_config
from task_store import HistoryItem, TaskStore

from .cancellation import CancellationToken, SessionEpoch
from .context import ContextMixin
from .errors import InvalidStateError, TaskAbortedError
from .events import AgentEvent, AskResponse, ASK_RESUME_TASK
from .execution import ExecutionMixin, TaskEnded
from .history import ConversationHistoryStore
from .prompts import INTERRUPTED_TOOL_RESULT, compose_system_prompt, task_resumption
from .reliability import ToolCallReliabilityEngine
from .state import TERMINAL_PHASES, LoopPhase, TaskState, TaskStatus
from .streaming import FirstChunkError, MidStreamError, StreamingRequestPipeline

logger = logging.getLogger(__name__)

EventCallback = Callable[[AgentEvent], Awaitable[None]]
AskCallback = Callable[[str, str], Awaitable[AskResponse]]


async def _ignore_event(event: AgentEvent) -> None:
    return None


async def _deny(ask_type: str, text: str) -> AskResponse:
    # Without an interactive host every question is answered "no"
    return AskResponse("no")


def _tool_use_ids(message: Dict[str, Any]) -> List[str]:
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [b["id"] for b in content if isinstance(b, dict) and b.get("type") == "tool_use"]


def _interrupted_results(tool_use_ids: List[str]) -> List[Dict[str, Any]]:
    return [{"type": "tool_result", "tool_use_id": tid, "content": INTERRUPTED_TOOL_RESULT}
            for tid in tool_use_ids]


def reconstruct_resume(messages: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Work out the history to keep and the user content to send when a task resumes.

    - Last message from the assistant: its tool calls never got results, so each
      gets an "interrupted" result in the new user content. History is kept.
    - Last message from the user: it is dropped from history and its content is
      reused, with interrupted results added for any of the preceding assistant
      tool calls it does not already answer.
    """
    if not messages:
        raise InvalidStateError("Cannot resume a task with no conversation history")

    last = messages[-1]
    if last.get("role") == "assistant":
        return list(messages), _interrupted_results(_tool_use_ids(last))

    existing = last.get("content")
    if isinstance(existing, str):
        content: List[Dict[str, Any]] = [{"type": "text", "text": existing}]
    else:
        content = [dict(b) for b in (existing or [])]

    previous = messages[-2] if len(messages) > 1 else None
    if previous is not None and previous.get("role") == "assistant":
        answered = {b.get("tool_use_id") for b in content if b.get("type") == "tool_result"}
        missing = [tid for tid in _tool_use_ids(previous) if tid not in answered]
        content = _interrupted_results(missing) + content

    return list(messages[:-1]), content


class TaskLoopController(ExecutionMixin, ContextMixin):
    """
    Drives a single task through the request loop.

    Flow:
    1. start_task / resume_task seeds the conversation history
    2. Each turn streams a response and parses tool calls out of its text
    3. Tool calls run in order, through approval and the reliability engine
    4. Tool results become the next user turn until attempt_completion is accepted

    The host answers questions through `ask` and receives progress through
    `on_event`. Controllers sharing one SessionEpoch replace each other: starting
    a task on one abandons the loops of all the others.
    """

    def __init__(
        self,
        provider: Any,
        working_directory: str = ".",
        backend: Optional[Backend] = None,
        task_store: Optional[TaskStore] = None,
        on_event: Optional[EventCallback] = None,
        ask: Optional[AskCallback] = None,
        epoch: Optional[SessionEpoch] = None,
        reliability: Optional[ToolCallReliabilityEngine] = None,
        pipeline: Optional[StreamingRequestPipeline] = None,
        model_id: Optional[str] = None,
        custom_instructions: Optional[str] = None,
        auto_approval: Optional[AutoApprovalConfig] = None,
        checkpoints_enabled: Optional[bool] = None,
        history_debounce_ms: Optional[int] = None,
    ):
        # Set core attributes before calling mixin __init__s
        self.provider = provider
        self.backend: Backend = backend or LocalBackend(os.path.abspath(working_directory))
        self.working_directory = self.backend.working_directory
        self.task_store = task_store or TaskStore()
        self._on_event = on_event or _ignore_event
        self._ask_callback = ask or _deny
        self.epoch = epoch or SessionEpoch()
        self.reliability = reliability or ToolCallReliabilityEngine()
        self.pipeline = pipeline or StreamingRequestPipeline(
            provider,
            GenerationConfig(max_tokens=model_config.max_tokens, temperature=model_config.temperature),
        )
        self.model_id = model_id or getattr(provider, "model_id", None) or model_config.model_id
        self.context_window = get_context_window(self.model_id)
        self.system_prompt = compose_system_prompt(self.working_directory, custom_instructions)
        self.max_consecutive_mistakes = app_config.max_consecutive_mistakes
        self.command_timeout = app_config.command_timeout
        self.checkpoints_enabled = (app_config.checkpoints_enabled
                                    if checkpoints_enabled is None else checkpoints_enabled)
        self._history_debounce_ms = history_debounce_ms

        super().__init__()
        if auto_approval is not None:
            self.auto_approval = auto_approval

        self.state: Optional[TaskState] = None
        self.phase = LoopPhase.IDLE
        self.history: Optional[ConversationHistoryStore] = None
        self.checkpoints: Optional[CheckpointTracker] = None
        self._item: Optional[HistoryItem] = None
        self._token = CancellationToken()
        self._disposed = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def task_id(self) -> Optional[str]:
        return self.state.id if self.state else None

    @property
    def is_streaming(self) -> bool:
        return self._is_streaming

    @property
    def did_finish_aborting_stream(self) -> bool:
        return self._did_finish_aborting_stream

    @property
    def abandoned(self) -> bool:
        return self._token.abandoned

    # ------------------------------------------------------------------
    # Starting and resuming
    # ------------------------------------------------------------------

    async def start_task(self, task: str, images: Optional[List[Dict[str, Any]]] = None) -> TaskState:
        """Create a task, seed its history with the request and run it to the end."""
        self._check_can_start()
        self._item = self.task_store.create_task(task, self.working_directory, self.model_id)
        self._open_task(self._item.id)
        try:
            result = self.history.initialize()
            if not result.success:
                raise InvalidStateError(result.error.message)
        except Exception:
            self._close_unstarted()
            raise

        user_content = [{"type": "text", "text": f"<task>\n{task}\n</task>"}]
        user_content.extend(images or [])
        await self._say("task_start", task, data={"task_id": self._item.id})
        await self._run_task(user_content)
        return self.state

    async def resume_task(self, task_id: str, new_instructions: Optional[str] = None) -> Optional[TaskState]:
        """Continue a persisted task after an abort or crash.

        Without `new_instructions` the user is asked first; a "no" leaves the
        task untouched and returns None.
        """
        self._check_can_start()
        item = self.task_store.load_item(task_id)
        if item is None:
            raise InvalidStateError(f"Unknown task: {task_id}")
        self._item = item
        self._open_task(task_id)
        try:
            user_content = await self._prepare_resume(item, new_instructions)
        except Exception:
            self._close_unstarted()
            raise
        if user_content is None:
            logger.info(f"Task {task_id}: resume declined")
            self._close_unstarted()
            return None
        await self._run_task(user_content)
        return self.state

    async def _prepare_resume(self, item: HistoryItem,
                              new_instructions: Optional[str]) -> Optional[List[Dict[str, Any]]]:
        """Load and repair the stored history. Returns the first user turn of the
        resumed loop, or None when the user declines to resume."""
        result = self.history.initialize()
        if not result.success:
            raise InvalidStateError(f"Cannot load history for {item.id}: {result.error.message}")
        messages = self.history.get_current_history().data

        if new_instructions is None:
            response = await self._ask(ASK_RESUME_TASK, item.task)
            if response.response == "no":
                return None
            if response.response == "message" and response.text:
                new_instructions = response.text

        modified, user_content = reconstruct_resume(messages)
        last_activity = messages[-1].get("ts", item.ts)
        user_content.append({
            "type": "text",
            "text": task_resumption(last_activity, self.working_directory, new_instructions),
        })
        result = self.history.overwrite_history(modified)
        if not result.success:
            logger.warning(f"History not persisted on resume: {result.error.message}")

        item.status = TaskStatus.ACTIVE.value
        item.cancel_reason = None
        await self._say("task_resumed", item.task, data={"task_id": item.id,
                                                         "new_instructions": new_instructions})
        return user_content

    def _check_can_start(self) -> None:
        if self._disposed:
            raise InvalidStateError("Controller has been disposed")
        if self.state is not None and self.phase not in TERMINAL_PHASES:
            raise InvalidStateError(f"Task {self.state.id} is still running")

    def _close_unstarted(self) -> None:
        """Undo _open_task for a task whose loop never ran."""
        self.state = None
        self.phase = LoopPhase.IDLE
        if self.history is not None and not self.history.disposed:
            self.history.discard()

    def _open_task(self, task_id: str) -> None:
        # Every earlier loop on this session stops writing from here on
        self._token = self.epoch.advance()
        self.state = TaskState(id=task_id)
        self.phase = LoopPhase.STARTING
        self.consecutive_mistakes = 0
        self._consecutive_auto_approved = 0
        self._last_usage = None
        self._edited_files = []
        if self.history is not None and not self.history.disposed:
            self.history.dispose()
        task_dir = self.task_store.task_dir(task_id)
        self.history = ConversationHistoryStore(task_dir, debounce_ms=self._history_debounce_ms)
        self.checkpoints = (CheckpointTracker(task_dir, self.working_directory)
                            if self.checkpoints_enabled else None)

    async def _run_task(self, user_content: List[Dict[str, Any]]) -> None:
        try:
            await self._run_loop(user_content, include_file_details=True)
        except TaskAbortedError:
            self.revert_all()
            reason = "abandoned" if self._token.abandoned else "user_cancelled"
            await self._finish(LoopPhase.ABORTED, TaskStatus.FAILED, reason)
            return
        except TaskEnded as e:
            await self._finish(LoopPhase.FAILED, TaskStatus.FAILED, e.reason)
            return
        except MidStreamError:
            # The turn is lost but the task is not; it stays resumable
            await self._finish(LoopPhase.ABORTED, TaskStatus.PAUSED, "streaming_failed")
            raise
        except FirstChunkError:
            await self._finish(LoopPhase.ABORTED, TaskStatus.PAUSED, "api_request_failed")
            raise
        except Exception:
            logger.exception(f"Task {self.state.id} failed")
            await self._finish(LoopPhase.FAILED, TaskStatus.FAILED, "error")
            raise
        await self._finish(LoopPhase.COMPLETED, TaskStatus.COMPLETED)

    async def _finish(self, phase: LoopPhase, status: TaskStatus, cancel_reason: Optional[str] = None) -> None:
        self.phase = phase
        self.state.transition(status, cancel_reason)
        if self._token.abandoned:
            # A newer loop owns the history file; drop unsaved writes
            self.history.discard()
            logger.info(f"Task {self.state.id}: abandoned loop exited")
            return
        self._save_item()
        result = self.history.flush()
        if not result.success:
            logger.warning(f"History flush failed: {result.error.message}")
        logger.info(f"Task {self.state.id} {status.value}"
                    + (f" ({self.state.cancel_reason})" if self.state.cancel_reason else ""))
        await self._say("task_end", status.value, data=self.state.to_dict())

    def _save_item(self) -> None:
        if self._item is None or self.state is None:
            return
        metrics = self.state.metrics
        item = self._item
        item.tokens_in = metrics.tokens_in
        item.tokens_out = metrics.tokens_out
        item.cache_writes = metrics.cache_writes
        item.cache_reads = metrics.cache_reads
        item.total_cost = metrics.cost
        item.status = self.state.status.value
        item.cancel_reason = self.state.cancel_reason
        try:
            self.task_store.save_item(item)
        except OSError as e:
            logger.warning(f"Failed to save task metadata for {item.id}: {e}")

    # ------------------------------------------------------------------
    # Abort and disposal
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """Stop the running task at its next suspension point."""
        if self.state is None or self.phase in TERMINAL_PHASES:
            return
        logger.info(f"Task {self.state.id}: abort requested")
        self._token.cancel()
        try:
            self.backend.cancel_running_command()
        except OSError as e:
            logger.warning(f"Failed to cancel running command: {e}")

    def dispose(self) -> None:
        """Release everything the controller holds. Each step runs even when an earlier one fails."""
        if self._disposed:
            return
        self._disposed = True
        superseded = self._token.abandoned
        steps = [
            ("cancel streams", self._token.abandon),
            ("close tools", self.backend.close),
            ("revert edits", self.revert_all),
        ]
        if self.history is not None and not self.history.disposed:
            # A superseded controller must not write over the newer owner's file
            release = self.history.discard if superseded else self.history.dispose
            steps.append(("release history", release))
        for label, step in steps:
            try:
                step()
            except Exception as e:
                logger.error(f"Dispose step '{label}' failed: {e}")
        logger.info("TaskLoopController disposed")

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def restore_checkpoint(self, commit_hash: str) -> bool:
        """Reset the working directory to a checkpoint. Failures are reported, not raised."""
        if self.checkpoints is None:
            await self._say("checkpoint_warning", "Checkpoints are not enabled for this task")
            return False
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, self.checkpoints.restore, commit_hash)
        except CheckpointError as e:
            logger.warning(f"Checkpoint restore failed: {e}")
            await self._say("checkpoint_warning", str(e))
            return False
        self._edited_files = []
        await self._say("checkpoint_restored", commit_hash, data={"hash": commit_hash})
        return True

    async def diff_since_checkpoint(self, commit_hash: str,
                                    rhs_hash: Optional[str] = None) -> Optional[List[Dict[str, str]]]:
        """Files changed since a checkpoint, or None when the diff could not be produced."""
        if self.checkpoints is None:
            await self._say("checkpoint_warning", "Checkpoints are not enabled for this task")
            return None
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, self.checkpoints.diff_since, commit_hash, rhs_hash)
        except CheckpointError as e:
            logger.warning(f"Checkpoint diff failed: {e}")
            await self._say("checkpoint_warning", str(e))
            return None
