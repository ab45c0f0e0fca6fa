"""
Tool-call pattern history and analysis.

Every execution attempt is recorded as a ToolCallPattern. The analyzer looks at a
rolling window per tool and derives success rate, average duration, the most
common error categories and parameter suggestions from successful calls.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

from config import reliability_config

from .errors import ErrorCategory, ToolCallSuggestion

logger = logging.getLogger(__name__)


@dataclass
class ToolCallOutcome:
    success: bool
    duration: float  # milliseconds
    error_message: Optional[str] = None


@dataclass
class ToolCallPattern:
    tool_name: str
    parameters: Dict[str, str]
    outcome: ToolCallOutcome
    timestamp: float
    retry_count: int
    error_type: Optional[ErrorCategory] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["error_type"] = self.error_type.value if self.error_type else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCallPattern":
        error_type = data.get("error_type")
        return cls(
            tool_name=data["tool_name"],
            parameters=dict(data.get("parameters") or {}),
            outcome=ToolCallOutcome(**data["outcome"]),
            timestamp=float(data["timestamp"]),
            retry_count=int(data.get("retry_count", 0)),
            error_type=ErrorCategory(error_type) if error_type else None,
        )


@dataclass
class PatternAnalysis:
    success_rate: float = 0.0
    average_duration: float = 0.0
    common_errors: List[Tuple[ErrorCategory, int]] = field(default_factory=list)
    suggestions: List[ToolCallSuggestion] = field(default_factory=list)


def _matches(pattern_params: Dict[str, str], params: Dict[str, str]) -> bool:
    return all(params.get(k) == v for k, v in pattern_params.items())


class ToolCallPatternAnalyzer:
    """Rolling-window store of attempt patterns with per-tool analysis.

    When `storage_path` is given, patterns are loaded from and saved to that JSON
    file so the history survives restarts. Save failures are logged, never raised.
    """

    def __init__(
        self,
        storage_path: Optional[str] = None,
        window_hours: Optional[float] = None,
        min_success_rate: Optional[float] = None,
    ):
        hours = window_hours if window_hours is not None else reliability_config.pattern_window_hours
        self._window_seconds = hours * 3600
        self._min_success_rate = (min_success_rate if min_success_rate is not None
                                  else reliability_config.suggestion_min_success_rate)
        self._storage_path = storage_path
        self._patterns: List[ToolCallPattern] = []
        if storage_path:
            self._load()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def add_pattern(self, pattern: ToolCallPattern) -> None:
        self._patterns.append(pattern)
        self._prune()
        self._save()

    @property
    def patterns(self) -> List[ToolCallPattern]:
        return list(self._patterns)

    def clear(self) -> None:
        self._patterns = []
        self._save()

    def _prune(self, now: Optional[float] = None) -> None:
        cutoff = (now if now is not None else time.time()) - self._window_seconds
        self._patterns = [p for p in self._patterns if p.timestamp >= cutoff]

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_patterns(self, tool_name: str) -> PatternAnalysis:
        self._prune()
        tool_patterns = [p for p in self._patterns if p.tool_name == tool_name]
        if not tool_patterns:
            return PatternAnalysis()

        successes = [p for p in tool_patterns if p.outcome.success]
        return PatternAnalysis(
            success_rate=len(successes) / len(tool_patterns),
            average_duration=sum(p.outcome.duration for p in tool_patterns) / len(tool_patterns),
            common_errors=self._common_errors(tool_patterns),
            suggestions=self._suggestions(tool_name, tool_patterns),
        )

    @staticmethod
    def _common_errors(patterns: List[ToolCallPattern]) -> List[Tuple[ErrorCategory, int]]:
        counts: Dict[ErrorCategory, int] = {}
        for p in patterns:
            if not p.outcome.success and p.error_type:
                counts[p.error_type] = counts.get(p.error_type, 0) + 1
        return sorted(counts.items(), key=lambda kv: kv[1], reverse=True)

    def _suggestions(self, tool_name: str, patterns: List[ToolCallPattern]) -> List[ToolCallSuggestion]:
        suggestions = []
        for params in self._top_successful_parameters(patterns):
            rate, uses = self._success_rate(params, patterns)
            if rate > self._min_success_rate:
                suggestions.append(ToolCallSuggestion(
                    tool_name=tool_name,
                    suggested_parameters=params,
                    confidence=rate,
                    reasoning=self._reasoning(params, rate, uses),
                ))
        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        return suggestions

    @staticmethod
    def _top_successful_parameters(patterns: List[ToolCallPattern], top: int = 3) -> List[Dict[str, str]]:
        counts: Dict[str, List[Any]] = {}
        for p in patterns:
            if not p.outcome.success:
                continue
            key = json.dumps(p.parameters, sort_keys=True)
            if key in counts:
                counts[key][1] += 1
            else:
                counts[key] = [p.parameters, 1]
        ranked = sorted(counts.values(), key=lambda entry: entry[1], reverse=True)
        return [dict(entry[0]) for entry in ranked[:top]]

    @staticmethod
    def _success_rate(params: Dict[str, str], patterns: List[ToolCallPattern]) -> Tuple[float, int]:
        matching = [p for p in patterns if _matches(params, p.parameters)]
        if not matching:
            return 0.0, 0
        return sum(1 for p in matching if p.outcome.success) / len(matching), len(matching)

    @staticmethod
    def _reasoning(params: Dict[str, str], rate: float, uses: int) -> str:
        notes = []
        if params.get("path", "").startswith("./"):
            notes.append("Uses relative path which is generally safer")
        if "\\" in params.get("regex", ""):
            notes.append("Uses properly escaped regex pattern")
        if params.get("recursive") == "true":
            notes.append("Includes subdirectories in search")
        text = f"This parameter combination has a {rate * 100:.1f}% success rate over {uses} uses."
        if notes:
            text += " Notably: " + ". ".join(notes)
        return text

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        path = self._storage_path
        try:
            if not path or not os.path.exists(path):
                return
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self._patterns = [ToolCallPattern.from_dict(row) for row in data.get("patterns", [])]
            self._prune()
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load tool call patterns: {e}")
            self._patterns = []

    def _save(self) -> None:
        path = self._storage_path
        if not path:
            return
        try:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            tmp_path = path + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump({"patterns": [p.to_dict() for p in self._patterns],
                           "last_updated": int(time.time())}, f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.warning(f"Failed to save tool call patterns: {e}")
