"""
Error types for the task engine and the tool-call error taxonomy.

Tool failures are classified into six categories. Classification prefers the
structured category carried by the error, then the exception type, and only
falls back to matching the message text.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from tools import REQUIRED_PARAMS

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    INVALID_PARAMETER = "invalid_parameter"
    MISSING_PARAMETER = "missing_parameter"
    PERMISSION_DENIED = "permission_denied"
    RESOURCE_NOT_FOUND = "resource_not_found"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# ------------------------------------------------------------------
# Exceptions
# ------------------------------------------------------------------

class InvalidStateError(Exception):
    """Operation not allowed in the current lifecycle state (including after dispose)."""
    pass


class TaskAbortedError(Exception):
    """Raised at a suspension point once cancellation has been observed."""
    pass


class ToolCallError(Exception):
    """A tool operation failed. `category` is the structured kind when the tool knows it."""

    def __init__(self, message: str, category: Optional[ErrorCategory] = None,
                 tool_name: Optional[str] = None):
        super().__init__(message)
        self.category = category
        self.tool_name = tool_name


class ToolCallFailure(Exception):
    """A tool call exhausted its retry budget. Carries the last error and its report."""

    def __init__(self, error: BaseException, report: "ErrorReport"):
        super().__init__(str(error))
        self.error = error
        self.report = report


# ------------------------------------------------------------------
# Classification
# ------------------------------------------------------------------

_SUBSTRING_RULES = [
    (("invalid", "malformed"), ErrorCategory.INVALID_PARAMETER),
    (("missing", "required"), ErrorCategory.MISSING_PARAMETER),
    (("permission", "access denied"), ErrorCategory.PERMISSION_DENIED),
    (("not found", "no such"), ErrorCategory.RESOURCE_NOT_FOUND),
    (("timeout", "timed out"), ErrorCategory.TIMEOUT),
]


def classify_message(message: str) -> ErrorCategory:
    """Substring classification. Rule order matters: the first match wins."""
    text = (message or "").lower()
    for needles, category in _SUBSTRING_RULES:
        if any(n in text for n in needles):
            return category
    return ErrorCategory.UNKNOWN


def classify_error(error: BaseException) -> ErrorCategory:
    category = getattr(error, "category", None)
    if category:
        try:
            return ErrorCategory(category)
        except ValueError:
            logger.debug(f"Unrecognised error category {category!r}, falling back")
    if isinstance(error, (FileNotFoundError, NotADirectoryError)):
        return ErrorCategory.RESOURCE_NOT_FOUND
    if isinstance(error, PermissionError):
        return ErrorCategory.PERMISSION_DENIED
    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT
    return classify_message(str(error))


# ------------------------------------------------------------------
# Reports and suggestions
# ------------------------------------------------------------------

@dataclass
class ToolCallSuggestion:
    """A parameter set that is likely to work better, with a confidence in [0, 1]."""
    tool_name: str
    suggested_parameters: Dict[str, str]
    confidence: float
    reasoning: str


@dataclass
class ErrorContext:
    tool_name: str
    parameters: Dict[str, str]
    timestamp: float
    retry_count: int


@dataclass
class ErrorReport:
    category: ErrorCategory
    message: str
    context: ErrorContext
    suggestions: List[ToolCallSuggestion] = field(default_factory=list)

    def to_prompt(self) -> str:
        """Render the report as the text the model sees in the tool error."""
        lines = [self.message]
        if self.suggestions:
            lines.append("")
            lines.append("Suggestions:")
            for s in self.suggestions[:3]:
                params = ", ".join(f"{k}={v!r}" for k, v in s.suggested_parameters.items())
                lines.append(f"- {s.reasoning} ({params}; confidence {s.confidence:.0%})")
        return "\n".join(lines)


_CATEGORY_HINTS = {
    ErrorCategory.INVALID_PARAMETER: "The provided parameter format is invalid. Please check the parameter requirements.",
    ErrorCategory.MISSING_PARAMETER: "A required parameter is missing. Please ensure all required parameters are provided.",
    ErrorCategory.PERMISSION_DENIED: "The operation was denied due to insufficient permissions.",
    ErrorCategory.RESOURCE_NOT_FOUND: "The requested resource could not be found. Please verify the resource exists.",
    ErrorCategory.TIMEOUT: "The operation timed out. This might be temporary, consider retrying.",
    ErrorCategory.UNKNOWN: "An unexpected error occurred.",
}

_PARAMETER_DEFAULTS = {
    "path": "./",
    "recursive": "false",
    "regex": ".*",
}


def escape_regex(pattern: str) -> str:
    return re.sub(r"([.*+?^${}()|\[\]\\])", r"\\\1", pattern)


def normalize_path(path: str) -> str:
    return path.replace("\\", "/")


def parent_path(path: str) -> Optional[str]:
    """'a/b.txt' -> 'a'. None when there is no parent segment."""
    parts = normalize_path(path).split("/")
    if len(parts) > 1:
        return "/".join(parts[:-1])
    return None


def default_parameter(name: str) -> str:
    return _PARAMETER_DEFAULTS.get(name, "")


class ErrorReporter:
    """Builds ErrorReports from a failed attempt plus the pattern history.

    `analyzer` is anything with `analyze_patterns(tool_name) -> PatternAnalysis`.
    """

    def __init__(self, analyzer: Any, max_history: int = 100):
        self._analyzer = analyzer
        self._max_history = max_history
        self._history: List[ErrorReport] = []

    def generate_report(self, error: BaseException, tool_name: str,
                        parameters: Dict[str, str], retry_count: int) -> ErrorReport:
        category = classify_error(error)
        suggestions = list(self._analyzer.analyze_patterns(tool_name).suggestions)
        suggestions.extend(self._category_suggestions(category, tool_name, parameters))
        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        report = ErrorReport(
            category=category,
            message=f"{error}\n\n{_CATEGORY_HINTS[category]}",
            context=ErrorContext(
                tool_name=tool_name,
                parameters=dict(parameters),
                timestamp=time.time(),
                retry_count=retry_count,
            ),
            suggestions=suggestions,
        )
        self._history.append(report)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]
        return report

    @property
    def history(self) -> List[ErrorReport]:
        return list(self._history)

    def clear(self) -> None:
        self._history = []

    def _category_suggestions(self, category: ErrorCategory, tool_name: str,
                              parameters: Dict[str, str]) -> List[ToolCallSuggestion]:
        out: List[ToolCallSuggestion] = []
        if category == ErrorCategory.INVALID_PARAMETER:
            if parameters.get("regex"):
                out.append(ToolCallSuggestion(
                    tool_name, {**parameters, "regex": escape_regex(parameters["regex"])}, 0.8,
                    "Escaped special regex characters to prevent syntax errors",
                ))
            if parameters.get("path"):
                out.append(ToolCallSuggestion(
                    tool_name, {**parameters, "path": normalize_path(parameters["path"])}, 0.9,
                    "Normalized path separators to forward slashes",
                ))
        elif category == ErrorCategory.MISSING_PARAMETER:
            missing = [p for p in REQUIRED_PARAMS.get(tool_name, []) if not parameters.get(p)]
            if missing:
                filled = dict(parameters)
                for p in missing:
                    filled[p] = default_parameter(p)
                out.append(ToolCallSuggestion(
                    tool_name, filled, 0.7,
                    f"Added missing required parameters: {', '.join(missing)}",
                ))
        elif category == ErrorCategory.RESOURCE_NOT_FOUND:
            if parameters.get("path"):
                parent = parent_path(parameters["path"])
                if parent is not None:
                    out.append(ToolCallSuggestion(
                        tool_name, {**parameters, "path": parent}, 0.6,
                        "Try searching in the parent directory",
                    ))
                if tool_name == "list_files" and not parameters.get("recursive"):
                    out.append(ToolCallSuggestion(
                        tool_name, {**parameters, "recursive": "true"}, 0.7,
                        "Try listing files recursively",
                    ))
        return out
