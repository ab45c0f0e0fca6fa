"""
Agent package - agentic task execution engine.

This package contains the task loop split into logical modules:
- events: AgentEvent and AskResponse data types, ask types
- state: TaskState, TaskStatus and loop phases
- cancellation: abort / abandon tokens and the session epoch
- history: ConversationHistoryStore with debounced persistence
- truncation: deleted-range computation for the context window
- streaming: StreamingRequestPipeline, stream metrics and progress
- parser: tool-call parsing out of assistant text, message rendering
- prompts: system prompt and response templates
- errors: error categories, classification and reports
- patterns: tool-call outcome history and suggestions
- reliability: ToolCallReliabilityEngine (retry with parameter adaptation)
- context: edit snapshots, approvals, environment details
- execution: the turn loop and tool dispatch
- core: TaskLoopController
"""

# Core classes and data types
from .core import TaskLoopController, reconstruct_resume
from .events import AgentEvent, AskResponse
from .state import LoopPhase, TaskState, TaskStatus
from .cancellation import CancellationToken, SessionEpoch

# Mixins
from .context import ContextMixin
from .execution import ExecutionMixin, TaskEnded

# Components
from .history import ConversationHistoryStore, HistoryErrorCode, HistoryResult, SyncStatus
from .streaming import (
    FirstChunkError,
    MidStreamError,
    StreamController,
    StreamingRequestPipeline,
    StreamMetrics,
)
from .reliability import RetryStrategy, ToolCallReliabilityEngine
from .patterns import ToolCallPatternAnalyzer
from .errors import (
    ErrorCategory,
    ErrorReport,
    InvalidStateError,
    TaskAbortedError,
    ToolCallError,
    ToolCallFailure,
)

__all__ = [
    # Main controller
    "TaskLoopController",
    "reconstruct_resume",

    # Data types
    "AgentEvent",
    "AskResponse",
    "LoopPhase",
    "TaskState",
    "TaskStatus",
    "CancellationToken",
    "SessionEpoch",

    # Mixins
    "ContextMixin",
    "ExecutionMixin",
    "TaskEnded",

    # History
    "ConversationHistoryStore",
    "HistoryErrorCode",
    "HistoryResult",
    "SyncStatus",

    # Streaming
    "FirstChunkError",
    "MidStreamError",
    "StreamController",
    "StreamingRequestPipeline",
    "StreamMetrics",

    # Reliability
    "RetryStrategy",
    "ToolCallReliabilityEngine",
    "ToolCallPatternAnalyzer",
    "ErrorCategory",
    "ErrorReport",
    "InvalidStateError",
    "TaskAbortedError",
    "ToolCallError",
    "ToolCallFailure",
]
