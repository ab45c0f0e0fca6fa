import asyncio
import threading
import time

import pytest

from agent import (
    AskResponse,
    ConversationHistoryStore,
    FirstChunkError,
    InvalidStateError,
    LoopPhase,
    MidStreamError,
    SessionEpoch,
    StreamingRequestPipeline,
    TaskLoopController,
    TaskStatus,
    ToolCallReliabilityEngine,
    reconstruct_resume,
)
from agent.events import (
    ASK_API_REQ_FAILED,
    ASK_AUTO_APPROVAL_MAX,
    ASK_COMPLETION_RESULT,
    ASK_MISTAKE_LIMIT,
    ASK_TOOL,
)
from agent.patterns import ToolCallPatternAnalyzer
from agent.prompts import INTERRUPTED_BY_API_ERROR, INTERRUPTED_BY_USER, INTERRUPTED_TOOL_RESULT
from agent.truncation import max_allowed_size
from backend import LocalBackend
from config import AutoApprovalConfig
from task_store import TaskStore


READ_A = "Let me read the file.\n<read_file>\n<path>a.txt</path>\n</read_file>"
COMPLETE = "<attempt_completion>\n<result>All done.</result>\n</attempt_completion>"


class ScriptedModel:
    """Plays one scripted response per request, streamed in small text chunks."""

    def __init__(self, *responses, input_tokens=100):
        self.responses = list(responses)
        self.input_tokens = input_tokens
        self.requests = []

    def create_message(self, system_prompt, messages, config=None):
        self.requests.append(messages)
        response = self.responses.pop(0)
        yield {"type": "usage", "input_tokens": self.input_tokens, "output_tokens": 0,
               "cache_write_tokens": 0, "cache_read_tokens": 0, "total_cost": 0.001}
        if isinstance(response, Exception):
            raise response
        for i in range(0, len(response), 7):
            yield {"type": "text", "text": response[i:i + 7]}
        yield {"type": "usage", "input_tokens": 0, "output_tokens": 20,
               "cache_write_tokens": 0, "cache_read_tokens": 0, "total_cost": 0.002}


class FailingAfterText:
    def __init__(self):
        self.requests = []

    def create_message(self, system_prompt, messages, config=None):
        self.requests.append(messages)
        yield {"type": "text", "text": "Working on"}
        raise RuntimeError("connection reset by peer")


class RejectingModel:
    """Fails every request before the first increment."""

    def __init__(self):
        self.requests = []

    def create_message(self, system_prompt, messages, config=None):
        self.requests.append(messages)
        raise RuntimeError("ThrottlingException: rate exceeded")
        yield


class StallingModel:
    """Streams one text increment, then stalls until released."""

    def __init__(self):
        self.release = threading.Event()

    def create_message(self, system_prompt, messages, config=None):
        yield {"type": "text", "text": "Thinking about it"}
        self.release.wait(timeout=5)
        yield {"type": "text", "text": " some more"}


class Asker:
    def __init__(self, **answers):
        self.answers = answers
        self.asked = []

    async def __call__(self, ask_type, text):
        self.asked.append(ask_type)
        answer = self.answers.get(ask_type, AskResponse("yes"))
        if isinstance(answer, list):
            return answer.pop(0)
        return answer


def _controller(tmp_path, model, ask=None, on_event=None, **kwargs):
    work = tmp_path / "work"
    work.mkdir(exist_ok=True)
    (work / "a.txt").write_text("hello from a\n", encoding="utf-8")
    reliability = ToolCallReliabilityEngine(analyzer=ToolCallPatternAnalyzer())
    reliability.set_default_strategy(delay_ms=0)
    kwargs.setdefault("history_debounce_ms", 0)
    return TaskLoopController(
        model,
        working_directory=str(work),
        backend=LocalBackend(str(work)),
        task_store=TaskStore(str(tmp_path / "tasks")),
        on_event=on_event,
        ask=ask or Asker(),
        reliability=reliability,
        pipeline=StreamingRequestPipeline(model, poll_interval=0.01),
        checkpoints_enabled=False,
        **kwargs,
    )


def _messages(controller, task_id):
    return controller.task_store.read_history(task_id)["messages"]


def _texts(message):
    content = message["content"]
    return [b.get("text", "") for b in content if b.get("type") == "text"]


def test_task_runs_tools_until_completion(tmp_path):
    model = ScriptedModel(READ_A, COMPLETE)
    asker = Asker()
    events = []

    async def on_event(event):
        events.append(event)

    controller = _controller(tmp_path, model, ask=asker, on_event=on_event)
    state = asyncio.run(controller.start_task("Summarise a.txt"))

    assert state.status == TaskStatus.COMPLETED
    assert controller.phase == LoopPhase.COMPLETED
    assert asker.asked == [ASK_TOOL, ASK_COMPLETION_RESULT]

    messages = _messages(controller, state.id)
    assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant", "user"]
    assert "<task>\nSummarise a.txt\n</task>" in _texts(messages[0])[0]
    tool_use = messages[1]["content"][1]
    assert tool_use["name"] == "read_file"
    result = messages[2]["content"][0]
    assert result["tool_use_id"] == tool_use["id"]
    assert "hello from a" in result["content"]

    # The model saw the tool result rendered as text
    second_request = model.requests[1]
    rendered = [b["text"] for b in second_request[-1]["content"]]
    assert "[read_file for 'a.txt'] Result:" in rendered

    assert state.metrics.tokens_in == 200
    assert state.metrics.tokens_out == 40
    item = controller.task_store.load_item(state.id)
    assert item.status == "completed"
    assert item.tokens_in == 200

    types = [e.type for e in events]
    assert "completion" in types
    assert types[-1] == "task_end"
    assert any(e.type == "text" and e.partial for e in events)


def test_abort_while_increment_is_pending(tmp_path):
    model = StallingModel()
    controller = None

    async def on_event(event):
        if event.type == "text":
            controller.abort()

    controller = _controller(tmp_path, model, on_event=on_event)
    try:
        state = asyncio.run(controller.start_task("Do something slow"))
    finally:
        model.release.set()

    assert state.status == TaskStatus.FAILED
    assert state.cancel_reason == "user_cancelled"
    assert controller.phase == LoopPhase.ABORTED
    assert controller.did_finish_aborting_stream

    messages = _messages(controller, state.id)
    assert [m["role"] for m in messages] == ["user", "assistant"]
    last_text = _texts(messages[-1])[0]
    assert last_text.startswith("Thinking about it")
    assert last_text.endswith(INTERRUPTED_BY_USER)
    assert controller.task_store.load_item(state.id).cancel_reason == "user_cancelled"


def test_resume_after_abort_continues_the_same_task(tmp_path):
    stalled = StallingModel()
    first = None

    async def abort_on_text(event):
        if event.type == "text":
            first.abort()

    first = _controller(tmp_path, stalled, on_event=abort_on_text)
    try:
        aborted = asyncio.run(first.start_task("Long task"))
    finally:
        stalled.release.set()
    first.dispose()

    model = ScriptedModel(COMPLETE)
    second = _controller(tmp_path, model)
    state = asyncio.run(second.resume_task(aborted.id, new_instructions="carry on"))

    assert state.status == TaskStatus.COMPLETED
    assert state.id == aborted.id
    resumed_turn = " ".join(b["text"] for b in model.requests[0][-1]["content"])
    assert "[TASK RESUMPTION]" in resumed_turn
    assert "carry on" in resumed_turn
    messages = _messages(second, state.id)
    assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant", "user"]


def test_resume_declined_leaves_task_untouched(tmp_path):
    model = ScriptedModel(COMPLETE)
    controller = _controller(tmp_path, model)
    state = asyncio.run(controller.start_task("Finish quickly"))

    declining = _controller(tmp_path, ScriptedModel(), ask=Asker(resume_task=AskResponse("no")))
    assert asyncio.run(declining.resume_task(state.id)) is None
    assert declining.state is None


def test_denied_tool_skips_the_rest_of_the_turn(tmp_path):
    two_tools = READ_A + "\n<list_files>\n<path>.</path>\n</list_files>"
    model = ScriptedModel(two_tools, COMPLETE)
    asker = Asker(tool=AskResponse("no"))
    controller = _controller(tmp_path, model, ask=asker)
    state = asyncio.run(controller.start_task("Look around"))

    assert state.status == TaskStatus.COMPLETED
    results = _messages(controller, state.id)[2]["content"]
    assert results[0]["content"] == "The user denied this operation."
    assert results[1]["content"].startswith("Skipping tool [list_files for '.']")
    assert asker.asked.count(ASK_TOOL) == 1


def test_auto_approved_reads_do_not_ask(tmp_path):
    model = ScriptedModel(READ_A, COMPLETE)
    asker = Asker()
    controller = _controller(
        tmp_path, model, ask=asker,
        auto_approval=AutoApprovalConfig(enabled=True, max_requests=20, read_files=True,
                                         edit_files=False, execute_commands=False),
    )
    asyncio.run(controller.start_task("Read a"))
    assert asker.asked == [ASK_COMPLETION_RESULT]


def test_completion_feedback_keeps_the_task_going(tmp_path):
    model = ScriptedModel(COMPLETE, COMPLETE)
    asker = Asker(completion_result=[AskResponse("message", "also add tests"), AskResponse("yes")])
    controller = _controller(tmp_path, model, ask=asker)
    state = asyncio.run(controller.start_task("Write code"))

    assert state.status == TaskStatus.COMPLETED
    feedback_turn = _messages(controller, state.id)[2]["content"][0]["content"]
    assert "also add tests" in feedback_turn


def test_missing_parameter_counts_as_a_mistake(tmp_path):
    model = ScriptedModel("<read_file>\n</read_file>", COMPLETE)
    controller = _controller(tmp_path, model)
    state = asyncio.run(controller.start_task("Read something"))

    result = _messages(controller, state.id)[2]["content"][0]["content"]
    assert "Missing value for required parameter 'path'" in result
    assert state.status == TaskStatus.COMPLETED


def test_mistake_limit_declined_fails_the_task(tmp_path):
    model = ScriptedModel("No tools here.", "Still none.")
    asker = Asker(mistake_limit_reached=AskResponse("no"))
    controller = _controller(tmp_path, model, ask=asker)
    controller.max_consecutive_mistakes = 2
    state = asyncio.run(controller.start_task("Do it"))

    assert state.status == TaskStatus.FAILED
    assert state.cancel_reason == ASK_MISTAKE_LIMIT
    assert asker.asked == [ASK_MISTAKE_LIMIT]


def test_mid_stream_failure_pauses_the_task(tmp_path):
    model = FailingAfterText()
    asker = Asker()
    controller = _controller(tmp_path, model, ask=asker)

    with pytest.raises(MidStreamError):
        asyncio.run(controller.start_task("Fragile"))

    task_id = controller.task_id
    assert controller.state.status == TaskStatus.PAUSED
    assert controller.phase == LoopPhase.ABORTED
    assert controller.state.cancel_reason == "streaming_failed"
    assert asker.asked == []
    last = _messages(controller, task_id)[-1]
    assert _texts(last)[0].endswith(INTERRUPTED_BY_API_ERROR)
    item = controller.task_store.load_item(task_id)
    assert item.status == "paused"
    assert item.cancel_reason == "streaming_failed"
    controller.dispose()

    # The interrupted task can be picked up again
    resumed = _controller(tmp_path, ScriptedModel(COMPLETE))
    state = asyncio.run(resumed.resume_task(task_id, new_instructions="try again"))
    assert state.status == TaskStatus.COMPLETED


def test_declined_first_chunk_retry_pauses_the_task(tmp_path):
    model = RejectingModel()
    asker = Asker(api_req_failed=AskResponse("no"))
    controller = _controller(tmp_path, model, ask=asker)

    with pytest.raises(FirstChunkError):
        asyncio.run(controller.start_task("Throttled"))

    assert asker.asked == [ASK_API_REQ_FAILED]
    assert len(model.requests) == 1
    assert controller.state.status == TaskStatus.PAUSED
    assert controller.phase == LoopPhase.ABORTED
    assert controller.state.cancel_reason == "api_request_failed"

    # A paused task does not block the controller
    controller.pipeline = StreamingRequestPipeline(ScriptedModel(COMPLETE), poll_interval=0.01)
    state = asyncio.run(controller.start_task("Next one"))
    assert state.status == TaskStatus.COMPLETED


def test_failed_resume_leaves_the_controller_usable(tmp_path):
    controller = _controller(tmp_path, ScriptedModel(COMPLETE))
    empty = controller.task_store.create_task("never ran", str(tmp_path / "work"), "test-model")

    with pytest.raises(InvalidStateError):
        asyncio.run(controller.resume_task(empty.id, new_instructions="go"))
    assert controller.state is None
    assert controller.phase == LoopPhase.IDLE

    state = asyncio.run(controller.start_task("fresh"))
    assert state.status == TaskStatus.COMPLETED


def test_abandoned_loop_does_not_overwrite_newer_history(tmp_path):
    epoch = SessionEpoch()
    model = StallingModel()
    controller = None
    newer = []

    async def on_event(event):
        if event.type == "text" and not newer:
            # Another instance takes over the same task directory
            epoch.advance()
            store = ConversationHistoryStore(controller.task_store.task_dir(controller.task_id),
                                             debounce_ms=0)
            store.initialize()
            store.add_message({"role": "user", "content": [{"type": "text", "text": "NEW"}]})
            newer.append(store)

    controller = _controller(tmp_path, model, on_event=on_event, epoch=epoch, history_debounce_ms=200)
    try:
        state = asyncio.run(controller.start_task("Soon replaced"))
    finally:
        model.release.set()

    assert state.cancel_reason == "abandoned"
    assert controller.history.disposed
    time.sleep(0.4)
    messages = _messages(controller, state.id)
    assert [_texts(m) for m in messages] == [["NEW"]]
    controller.dispose()
    assert [_texts(m) for m in _messages(controller, state.id)] == [["NEW"]]


def test_auto_approval_cap_asks_and_resets(tmp_path):
    model = ScriptedModel(READ_A, READ_A, COMPLETE)
    asker = Asker()
    controller = _controller(
        tmp_path, model, ask=asker,
        auto_approval=AutoApprovalConfig(enabled=True, max_requests=1, read_files=True,
                                         edit_files=False, execute_commands=False),
    )
    state = asyncio.run(controller.start_task("Read a twice"))

    assert state.status == TaskStatus.COMPLETED
    assert asker.asked == [ASK_AUTO_APPROVAL_MAX, ASK_AUTO_APPROVAL_MAX, ASK_COMPLETION_RESULT]
    assert controller._consecutive_auto_approved == 0


def test_auto_approval_cap_declined_fails_the_task(tmp_path):
    model = ScriptedModel(READ_A, COMPLETE)
    asker = Asker(auto_approval_max_req_reached=AskResponse("no"))
    controller = _controller(
        tmp_path, model, ask=asker,
        auto_approval=AutoApprovalConfig(enabled=True, max_requests=1, read_files=True,
                                         edit_files=False, execute_commands=False),
    )
    state = asyncio.run(controller.start_task("Read a"))

    assert state.status == TaskStatus.FAILED
    assert state.cancel_reason == ASK_AUTO_APPROVAL_MAX
    assert len(model.requests) == 1


def test_mistake_limit_guidance_is_passed_to_the_model(tmp_path):
    model = ScriptedModel("No tools here.", "Still none.", COMPLETE)
    asker = Asker(mistake_limit_reached=AskResponse("message", "use read_file on a.txt"))
    controller = _controller(tmp_path, model, ask=asker)
    controller.max_consecutive_mistakes = 2
    state = asyncio.run(controller.start_task("Do it"))

    assert state.status == TaskStatus.COMPLETED
    assert asker.asked == [ASK_MISTAKE_LIMIT, ASK_COMPLETION_RESULT]
    assert controller.consecutive_mistakes == 0
    guided_turn = " ".join(_texts(_messages(controller, state.id)[4]))
    assert "<feedback>\nuse read_file on a.txt\n</feedback>" in guided_turn


def _request_events(tmp_path, input_tokens):
    events = []

    async def on_event(event):
        if event.type == "api_req_started":
            events.append(event.data)

    model = ScriptedModel(READ_A, READ_A, READ_A, COMPLETE)
    controller = _controller(tmp_path, model, on_event=on_event)
    model.input_tokens = input_tokens(controller)
    state = asyncio.run(controller.start_task("Keep reading"))
    assert state.status == TaskStatus.COMPLETED
    return controller, state, events


def test_usage_at_the_ceiling_truncates_before_the_next_request(tmp_path):
    # Each request reports input_tokens plus 20 output tokens
    controller, state, events = _request_events(
        tmp_path, lambda c: max_allowed_size(c.context_window) - 20)

    assert [e["messages"] for e in events] == [1, 3, 5, 5]
    assert [e["deleted_range"] for e in events] == [None, None, None, (2, 3)]
    assert controller.task_store.read_history(state.id)["deletedRange"] == [2, 3]


def test_usage_below_the_ceiling_keeps_the_full_history(tmp_path):
    controller, state, events = _request_events(
        tmp_path, lambda c: max_allowed_size(c.context_window) - 21)

    assert [e["messages"] for e in events] == [1, 3, 5, 7]
    assert all(e["deleted_range"] is None for e in events)
    assert "deletedRange" not in controller.task_store.read_history(state.id)


def test_replaced_controller_stops_writing(tmp_path):
    epoch = SessionEpoch()
    model = ScriptedModel(COMPLETE)
    controller = _controller(tmp_path, model, epoch=epoch)
    token = epoch.advance()
    assert not token.abandoned

    asyncio.run(controller.start_task("New task"))
    # Starting a task advanced the shared epoch past the older token
    assert token.abandoned


def test_disposed_controller_refuses_new_tasks(tmp_path):
    controller = _controller(tmp_path, ScriptedModel())
    controller.dispose()
    controller.dispose()
    with pytest.raises(InvalidStateError):
        asyncio.run(controller.start_task("too late"))


def test_revert_restores_in_progress_edits(tmp_path):
    controller = _controller(tmp_path, ScriptedModel())
    work = tmp_path / "work"
    controller._snapshot_file("write_to_file", {"path": "a.txt"})
    controller._snapshot_file("write_to_file", {"path": "new.txt"})
    (work / "a.txt").write_text("clobbered", encoding="utf-8")
    (work / "new.txt").write_text("created", encoding="utf-8")

    reverted = controller.revert_all()
    assert len(reverted) == 2
    assert (work / "a.txt").read_text(encoding="utf-8") == "hello from a\n"
    assert not (work / "new.txt").exists()


# ------------------------------------------------------------------
# Resume reconstruction
# ------------------------------------------------------------------

def _tool_use(tid, name="read_file"):
    return {"type": "tool_use", "id": tid, "name": name, "input": {"path": "a"}}


def test_reconstruct_after_assistant_message():
    messages = [
        {"role": "user", "content": [{"type": "text", "text": "task"}]},
        {"role": "assistant", "content": [{"type": "text", "text": "ok"}, _tool_use("t1"), _tool_use("t2")]},
    ]
    history, content = reconstruct_resume(messages)
    assert history == messages
    assert [b["tool_use_id"] for b in content] == ["t1", "t2"]
    assert all(b["content"] == INTERRUPTED_TOOL_RESULT for b in content)


def test_reconstruct_after_user_message_fills_missing_results():
    messages = [
        {"role": "user", "content": [{"type": "text", "text": "task"}]},
        {"role": "assistant", "content": [_tool_use("t1"), _tool_use("t2")]},
        {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "done"}]},
    ]
    history, content = reconstruct_resume(messages)
    assert history == messages[:2]
    by_id = {b["tool_use_id"]: b["content"] for b in content}
    assert by_id == {"t1": "done", "t2": INTERRUPTED_TOOL_RESULT}


def test_reconstruct_requires_history():
    with pytest.raises(InvalidStateError):
        reconstruct_resume([])
