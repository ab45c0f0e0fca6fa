import asyncio
import threading

import pytest

from agent.cancellation import CancellationToken
from agent.errors import TaskAbortedError
from agent.streaming import (
    FirstChunkError,
    MidStreamError,
    StreamController,
    StreamingRequestPipeline,
    StreamMetrics,
)

MESSAGES = [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]


class ScriptedProvider:
    """Each create_message call plays the next script; exceptions in a script are raised."""

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.calls = 0

    def create_message(self, system_prompt, messages, config=None):
        self.calls += 1
        script = self.scripts.pop(0)
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item


def _text(t):
    return {"type": "text", "text": t}


async def _collect(pipeline, token=None, confirm_retry=None):
    out = []
    async for increment in pipeline.request("system", MESSAGES, token, confirm_retry):
        out.append(increment)
    return out


def test_increments_arrive_in_order():
    provider = ScriptedProvider([{"type": "usage", "input_tokens": 5}, _text("a"), _text("b")])
    pipeline = StreamingRequestPipeline(provider, poll_interval=0.01)
    out = asyncio.run(_collect(pipeline))
    assert [i.get("text") for i in out] == [None, "a", "b"]
    summary = pipeline.metrics.summary()
    assert summary.total_requests == 1
    assert summary.successful_requests == 1


def test_first_chunk_failure_retries_when_confirmed():
    provider = ScriptedProvider([RuntimeError("throttled")], [_text("ok")])
    pipeline = StreamingRequestPipeline(provider, poll_interval=0.01)
    asked = []

    async def confirm(error):
        asked.append(str(error))
        return True

    out = asyncio.run(_collect(pipeline, confirm_retry=confirm))
    assert out == [_text("ok")]
    assert asked == ["throttled"]
    assert provider.calls == 2
    assert pipeline.metrics.summary().failed_requests == 1


def test_first_chunk_failure_raises_when_declined():
    provider = ScriptedProvider([RuntimeError("throttled")])
    pipeline = StreamingRequestPipeline(provider, poll_interval=0.01)

    async def decline(error):
        return False

    with pytest.raises(FirstChunkError) as exc_info:
        asyncio.run(_collect(pipeline, confirm_retry=decline))
    assert str(exc_info.value.error) == "throttled"
    assert provider.calls == 1


def test_first_chunk_failure_without_confirmation_is_not_retried():
    provider = ScriptedProvider([RuntimeError("boom")])
    pipeline = StreamingRequestPipeline(provider, poll_interval=0.01)
    with pytest.raises(FirstChunkError):
        asyncio.run(_collect(pipeline))


def test_mid_stream_failure_is_never_retried():
    provider = ScriptedProvider([_text("partial"), RuntimeError("connection lost")], [_text("unused")])
    pipeline = StreamingRequestPipeline(provider, poll_interval=0.01)
    asked = []

    async def confirm(error):
        asked.append(error)
        return True

    received = []

    async def run():
        async for increment in pipeline.request("system", MESSAGES, None, confirm):
            received.append(increment)

    with pytest.raises(MidStreamError):
        asyncio.run(run())
    assert received == [_text("partial")]
    assert asked == []
    assert provider.calls == 1


class BlockingProvider:
    """Yields one increment, then waits until released before yielding another."""

    def __init__(self):
        self.release = threading.Event()
        self.closed = threading.Event()

    def create_message(self, system_prompt, messages, config=None):
        try:
            yield _text("first")
            self.release.wait(timeout=5)
            yield _text("second")
            yield _text("third")
        finally:
            self.closed.set()


def test_abort_while_waiting_for_an_increment():
    provider = BlockingProvider()
    pipeline = StreamingRequestPipeline(provider, poll_interval=0.01)
    token = CancellationToken()
    received = []

    async def run():
        async for increment in pipeline.request("system", MESSAGES, token):
            received.append(increment)
            token.cancel()

    try:
        with pytest.raises(TaskAbortedError):
            asyncio.run(run())
        assert received == [_text("first")]
        assert pipeline.controller.progress.status == "stopped"
    finally:
        provider.release.set()


def test_abandoned_stream_tears_down_the_producer():
    provider = BlockingProvider()
    pipeline = StreamingRequestPipeline(provider, poll_interval=0.01)
    token = CancellationToken()

    async def run():
        async for _ in pipeline.request("system", MESSAGES, token):
            token.abandon()

    with pytest.raises(TaskAbortedError):
        asyncio.run(run())
    provider.release.set()
    # The producer stops at the next increment and closes the provider stream
    assert provider.closed.wait(timeout=5)


def test_stream_metrics_summary():
    metrics = StreamMetrics()
    metrics.start_request("a")
    metrics.complete_request("a", True)
    metrics.start_request("b")
    metrics.complete_request("b", False, "bad")
    summary = metrics.summary()
    assert summary.total_requests == 2
    assert summary.failed_requests == 1
    assert metrics.get_request_metric("b").error_message == "bad"
    metrics.clear()
    assert metrics.summary().total_requests == 0


def test_stream_controller_progress():
    updates = []
    controller = StreamController(on_progress=updates.append)
    controller.start()
    controller.pause()
    controller.resume()
    controller.stop()
    assert [u.status for u in updates] == ["active", "paused", "active", "stopped"]
    assert controller.progress.average_processing_time >= 0.0
