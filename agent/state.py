"""
Task state and loop phases.
"""

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InvalidStateError


class TaskStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class LoopPhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    REQUESTING_COMPLETION = "requesting_completion"
    STREAMING_RESPONSE = "streaming_response"
    EXECUTING_TOOLS = "executing_tools"
    DECIDING = "deciding"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({LoopPhase.COMPLETED, LoopPhase.ABORTED, LoopPhase.FAILED})

_ALLOWED_TRANSITIONS = {
    TaskStatus.ACTIVE: {TaskStatus.PAUSED, TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.PAUSED: {TaskStatus.ACTIVE, TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}


@dataclass
class TaskMetrics:
    tokens_in: int = 0
    tokens_out: int = 0
    cache_writes: int = 0
    cache_reads: int = 0
    cost: float = 0.0
    duration: float = 0.0  # seconds

    @property
    def token_count(self) -> int:
        return self.tokens_in + self.tokens_out

    def add_usage(self, input_tokens: int = 0, output_tokens: int = 0, cache_write_tokens: int = 0,
                  cache_read_tokens: int = 0, total_cost: float = 0.0) -> None:
        self.tokens_in += input_tokens
        self.tokens_out += output_tokens
        self.cache_writes += cache_write_tokens
        self.cache_reads += cache_read_tokens
        self.cost += total_cost


@dataclass
class TaskState:
    """Status of the task a controller is running. Completed and failed are final."""
    id: str
    status: TaskStatus = TaskStatus.ACTIVE
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    metrics: TaskMetrics = field(default_factory=TaskMetrics)
    cancel_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def transition(self, status: TaskStatus, cancel_reason: Optional[str] = None) -> None:
        if status == self.status:
            return
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateError(f"Task {self.id}: cannot go from {self.status.value} to {status.value}")
        self.status = status
        if cancel_reason:
            self.cancel_reason = cancel_reason
        if self.is_terminal:
            self.end_time = time.time()
            self.metrics.duration = self.end_time - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data
