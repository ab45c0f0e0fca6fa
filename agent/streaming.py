"""
Streaming request pipeline.

Runs the provider's synchronous generator on a producer thread and hands its
increments to the event loop through a queue, the same way the agent loop has
always consumed Bedrock streams. The consumer polls with a short timeout so an
abort is noticed even while no increment is arriving.

Only a failure before the first increment can be retried, and only when the
caller confirms; a failure after content has streamed is raised as
MidStreamError and never retried here.
"""

import asyncio
import functools
import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from bedrock_service import GenerationConfig
from config import app_config

from .cancellation import CancellationToken
from .parser import render_messages

logger = logging.getLogger(__name__)

ConfirmRetry = Callable[[BaseException], Awaitable[bool]]

_DONE = object()


class FirstChunkError(Exception):
    """The request failed before any increment was received."""

    def __init__(self, error: BaseException):
        super().__init__(str(error))
        self.error = error


class MidStreamError(Exception):
    """The stream failed after at least one increment had been yielded."""

    def __init__(self, error: BaseException):
        super().__init__(str(error))
        self.error = error


# ------------------------------------------------------------------
# Metrics and progress
# ------------------------------------------------------------------

@dataclass
class RequestMetric:
    request_id: str
    start_time: float
    end_time: Optional[float] = None
    duration: Optional[float] = None  # ms
    success: bool = False
    error_message: Optional[str] = None


@dataclass
class MetricsSummary:
    total_requests: int
    successful_requests: int
    failed_requests: int
    average_response_time: float  # ms
    metrics: List[RequestMetric] = field(default_factory=list)


class StreamMetrics:
    """Per-request timings and outcomes, kept in memory only."""

    MAX_HISTORY = 1000

    def __init__(self):
        self._metrics: List[RequestMetric] = []

    def start_request(self, request_id: str) -> None:
        self._metrics.append(RequestMetric(request_id=request_id, start_time=time.time()))
        if len(self._metrics) > self.MAX_HISTORY:
            self._metrics = self._metrics[-self.MAX_HISTORY:]

    def complete_request(self, request_id: str, success: bool, error_message: Optional[str] = None) -> None:
        for metric in reversed(self._metrics):
            if metric.request_id == request_id:
                metric.end_time = time.time()
                metric.duration = (metric.end_time - metric.start_time) * 1000
                metric.success = success
                metric.error_message = error_message
                return

    def get_request_metric(self, request_id: str) -> Optional[RequestMetric]:
        return next((m for m in self._metrics if m.request_id == request_id), None)

    def summary(self) -> MetricsSummary:
        completed = [m for m in self._metrics if m.end_time is not None]
        successful = [m for m in completed if m.success]
        total = sum(m.duration or 0 for m in completed)
        return MetricsSummary(
            total_requests=len(completed),
            successful_requests=len(successful),
            failed_requests=len(completed) - len(successful),
            average_response_time=total / len(completed) if completed else 0.0,
            metrics=list(self._metrics),
        )

    def clear(self) -> None:
        self._metrics = []


@dataclass
class StreamProgress:
    status: str  # active, paused, stopped
    processing_time: float = 0.0  # ms, current request
    average_processing_time: float = 0.0
    error: Optional[BaseException] = None


class StreamController:
    """Status of the request in flight plus processing-time averages."""

    def __init__(self, on_progress: Optional[Callable[[StreamProgress], None]] = None):
        self._on_progress = on_progress
        self._start: Optional[float] = None
        self._times: List[float] = []
        self._progress = StreamProgress(status="stopped")

    @property
    def progress(self) -> StreamProgress:
        return self._progress

    def start(self) -> None:
        self._start = time.monotonic()
        self._emit("active")

    def pause(self) -> None:
        self._emit("paused")

    def resume(self) -> None:
        self._emit("active")

    def stop(self) -> None:
        self._record()
        self._emit("stopped")

    def error(self, error: BaseException) -> None:
        self._record()
        self._emit("stopped", error)

    def _record(self) -> None:
        if self._start is not None:
            self._times.append((time.monotonic() - self._start) * 1000)
            self._start = None

    def _emit(self, status: str, error: Optional[BaseException] = None) -> None:
        current = (time.monotonic() - self._start) * 1000 if self._start is not None else 0.0
        samples = self._times + ([current] if self._start is not None else [])
        average = sum(samples) / len(samples) if samples else 0.0
        last = self._times[-1] if status == "stopped" and self._times else current
        self._progress = StreamProgress(status=status, processing_time=last,
                                        average_processing_time=average, error=error)
        if self._on_progress is not None:
            self._on_progress(self._progress)


# ------------------------------------------------------------------
# Pipeline
# ------------------------------------------------------------------

class StreamingRequestPipeline:
    """Issues one model request and yields {"type": "usage"|"text", ...} increments.

    `provider` is anything with `create_message(system_prompt, messages, config)`
    returning a generator of increment dicts (BedrockService in production).
    """

    def __init__(
        self,
        provider: Any,
        generation_config: Optional[GenerationConfig] = None,
        poll_interval: Optional[float] = None,
        metrics: Optional[StreamMetrics] = None,
        controller: Optional[StreamController] = None,
    ):
        self.provider = provider
        self.generation_config = generation_config
        self.poll_interval = poll_interval if poll_interval is not None else app_config.stream_poll_interval
        self.metrics = metrics or StreamMetrics()
        self.controller = controller or StreamController()

    async def request(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        token: Optional[CancellationToken] = None,
        confirm_retry: Optional[ConfirmRetry] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Stream one response. A first-chunk failure is retried only while
        `confirm_retry(error)` returns True; otherwise FirstChunkError is raised."""
        rendered = render_messages(messages)
        while True:
            attempt = self._stream_once(system_prompt, rendered, token)
            try:
                async for increment in attempt:
                    yield increment
                return
            except FirstChunkError as e:
                if confirm_retry is None:
                    raise
                self.controller.pause()
                retry = await confirm_retry(e.error)
                if token is not None:
                    token.raise_if_cancelled()
                if not retry:
                    raise
                logger.info("Retrying request after first-chunk failure")
                self.controller.resume()
            finally:
                await attempt.aclose()

    async def _stream_once(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        token: Optional[CancellationToken],
    ) -> AsyncIterator[Dict[str, Any]]:
        request_id = uuid.uuid4().hex[:12]
        self.metrics.start_request(request_id)
        self.controller.start()

        chunk_queue: queue.Queue = queue.Queue()
        teardown = threading.Event()

        def _stream_producer():
            """Run the sync generator in a background thread, forwarding increments to the queue."""
            stream = None
            try:
                stream = self.provider.create_message(system_prompt, messages, self.generation_config)
                for increment in stream:
                    if teardown.is_set():
                        break
                    chunk_queue.put(increment)
                chunk_queue.put(_DONE)
            except Exception as exc:
                chunk_queue.put(exc)
            finally:
                # Closing the generator closes the provider's connection
                close = getattr(stream, "close", None)
                if close is not None:
                    close()

        producer_thread = threading.Thread(target=_stream_producer, daemon=True)
        producer_thread.start()

        loop = asyncio.get_event_loop()
        poll = functools.partial(chunk_queue.get, timeout=self.poll_interval)
        received = 0
        finished = False
        try:
            while True:
                if token is not None:
                    token.raise_if_cancelled()
                try:
                    item = await loop.run_in_executor(None, poll)
                except queue.Empty:
                    continue
                if item is _DONE:
                    break
                if isinstance(item, Exception):
                    logger.warning(f"Stream {request_id} failed after {received} increments: {item}")
                    if received == 0:
                        raise FirstChunkError(item) from item
                    raise MidStreamError(item) from item
                received += 1
                yield item
            finished = True
        except BaseException as e:
            self.metrics.complete_request(request_id, False, str(e))
            self.controller.error(e)
            raise
        finally:
            if not finished and (token is None or token.abandoned):
                # A replaced instance must not keep reading; tear the connection down
                teardown.set()
            elif not finished:
                logger.debug(f"Stream {request_id} left to drain after abort")

        self.metrics.complete_request(request_id, True)
        self.controller.stop()
        logger.debug(f"Stream {request_id} complete: {received} increments")
