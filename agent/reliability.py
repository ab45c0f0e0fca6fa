"""
Tool-call reliability engine.

Wraps every tool invocation with a per-tool retry strategy. Each attempt is
recorded as a pattern; failed attempts are classified, the parameters may be
adjusted by tool-specific heuristics, and once the retry budget is spent the
last error is raised together with an ErrorReport.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from config import reliability_config

from .cancellation import CancellationToken
from .errors import (
    ErrorCategory,
    ErrorReporter,
    TaskAbortedError,
    ToolCallFailure,
    ToolCallSuggestion,
    classify_error,
    default_parameter,
    escape_regex,
    normalize_path,
    parent_path,
)
from .patterns import PatternAnalysis, ToolCallOutcome, ToolCallPattern, ToolCallPatternAnalyzer
from tools import REQUIRED_PARAMS

logger = logging.getLogger(__name__)

Params = Dict[str, str]
Operation = Callable[[Params], Union[Any, Awaitable[Any]]]
RetryCallback = Callable[[str, int, BaseException, Params, List[ToolCallSuggestion]], Awaitable[None]]

_PARAMETER_ERRORS = (ErrorCategory.INVALID_PARAMETER, ErrorCategory.MISSING_PARAMETER)


@dataclass
class RetryStrategy:
    max_attempts: int
    delay_ms: int
    should_retry: Callable[[BaseException], bool]
    modify_parameters: Callable[[Params, BaseException], Params]

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")


# ------------------------------------------------------------------
# Heuristics
# ------------------------------------------------------------------

def _retry_unless_parameter_error(error: BaseException) -> bool:
    return classify_error(error) not in _PARAMETER_ERRORS


def _retry_on(*categories: ErrorCategory) -> Callable[[BaseException], bool]:
    def should_retry(error: BaseException) -> bool:
        return classify_error(error) in categories
    return should_retry


def _unchanged(params: Params, error: BaseException) -> Params:
    return dict(params)


def _path_fallback(params: Params, error: BaseException) -> Params:
    """Normalize separators on invalid paths; step up to the parent on missing resources."""
    out = dict(params)
    category = classify_error(error)
    path = out.get("path")
    if not path:
        return out
    if category == ErrorCategory.INVALID_PARAMETER:
        out["path"] = normalize_path(path)
    elif category == ErrorCategory.RESOURCE_NOT_FOUND:
        parent = parent_path(path)
        if parent is not None:
            out["path"] = parent
    return out


def _fill_defaults(tool_name: str) -> Callable[[Params, BaseException], Params]:
    def fill(params: Params, error: BaseException) -> Params:
        out = dict(params)
        for p in REQUIRED_PARAMS.get(tool_name, []):
            if not out.get(p) and default_parameter(p):
                out[p] = default_parameter(p)
        return out
    return fill


def _search_files_fix(params: Params, error: BaseException) -> Params:
    category = classify_error(error)
    if category == ErrorCategory.MISSING_PARAMETER:
        return _fill_defaults("search_files")(params, error)
    out = _path_fallback(params, error)
    if category == ErrorCategory.INVALID_PARAMETER and out.get("regex"):
        out["regex"] = escape_regex(out["regex"])
    return out


def _list_files_fix(params: Params, error: BaseException) -> Params:
    category = classify_error(error)
    if category == ErrorCategory.MISSING_PARAMETER:
        return _fill_defaults("list_files")(params, error)
    out = _path_fallback(params, error)
    if category == ErrorCategory.RESOURCE_NOT_FOUND:
        out["recursive"] = "true"
    return out


def default_strategy() -> RetryStrategy:
    return RetryStrategy(
        max_attempts=reliability_config.max_attempts,
        delay_ms=reliability_config.delay_ms,
        should_retry=_retry_unless_parameter_error,
        modify_parameters=_unchanged,
    )


def default_tool_strategies() -> Dict[str, RetryStrategy]:
    base = default_strategy()
    path_retry = _retry_on(
        ErrorCategory.RESOURCE_NOT_FOUND, ErrorCategory.INVALID_PARAMETER,
        ErrorCategory.TIMEOUT, ErrorCategory.UNKNOWN,
    )
    # Listing and searching also know how to fill in missing parameters
    fillable_retry = _retry_on(
        ErrorCategory.RESOURCE_NOT_FOUND, ErrorCategory.INVALID_PARAMETER,
        ErrorCategory.MISSING_PARAMETER, ErrorCategory.TIMEOUT, ErrorCategory.UNKNOWN,
    )
    return {
        "read_file": replace(base, should_retry=path_retry, modify_parameters=_path_fallback),
        "list_code_definition_names": replace(base, should_retry=path_retry,
                                              modify_parameters=_path_fallback),
        "search_files": replace(base, should_retry=fillable_retry, modify_parameters=_search_files_fix),
        "list_files": replace(base, should_retry=fillable_retry, modify_parameters=_list_files_fix),
        # Writes are replayable; a failed write leaves the file untouched
        "write_to_file": replace(base, max_attempts=2,
                                 should_retry=_retry_on(ErrorCategory.TIMEOUT, ErrorCategory.UNKNOWN)),
        "replace_in_file": replace(base, max_attempts=2,
                                   should_retry=_retry_on(ErrorCategory.TIMEOUT, ErrorCategory.UNKNOWN)),
        # Commands have side effects the engine cannot see; never replay them
        "execute_command": replace(base, max_attempts=1),
        "ask_followup_question": replace(base, max_attempts=1),
        "attempt_completion": replace(base, max_attempts=1),
    }


class ToolCallReliabilityEngine:
    """Runs tool operations under their retry strategy and owns the pattern history."""

    def __init__(
        self,
        analyzer: Optional[ToolCallPatternAnalyzer] = None,
        strategies: Optional[Dict[str, RetryStrategy]] = None,
    ):
        self.analyzer = analyzer or ToolCallPatternAnalyzer()
        self.reporter = ErrorReporter(self.analyzer)
        self._default = default_strategy()
        self._strategies: Dict[str, RetryStrategy] = (
            dict(strategies) if strategies is not None else default_tool_strategies()
        )

    # ------------------------------------------------------------------
    # Strategy table
    # ------------------------------------------------------------------

    def get_strategy(self, tool_name: str) -> RetryStrategy:
        return self._strategies.get(tool_name, self._default)

    def set_strategy(self, tool_name: str, strategy: Optional[RetryStrategy] = None,
                     **overrides: Any) -> RetryStrategy:
        """Install a strategy for a tool. Keyword overrides are merged into the
        given strategy, or into the tool's current one when none is given."""
        base = strategy or self.get_strategy(tool_name)
        merged = replace(base, **overrides) if overrides else base
        self._strategies[tool_name] = merged
        return merged

    def set_default_strategy(self, **overrides: Any) -> None:
        self._default = replace(self._default, **overrides)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        tool_name: str,
        parameters: Params,
        operation: Operation,
        token: Optional[CancellationToken] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> Any:
        """Run `operation(params)` until it succeeds or the strategy gives up.

        Raises ToolCallFailure (chained from the last error) when retries are
        exhausted or the error is not retryable. Cancellation is checked before
        every attempt and after every delay.
        """
        strategy = self.get_strategy(tool_name)
        params: Params = dict(parameters)
        last_error: Optional[BaseException] = None
        attempt = 0

        while attempt < strategy.max_attempts:
            if token is not None:
                token.raise_if_cancelled()
            started = time.monotonic()
            try:
                result = operation(dict(params))
                if inspect.isawaitable(result):
                    result = await result
            except (TaskAbortedError, asyncio.CancelledError):
                raise
            except Exception as e:
                last_error = e
                category = classify_error(e)
                self._record(tool_name, params, started, attempt, error=e, category=category)
                attempt += 1
                logger.info(f"Tool {tool_name} attempt {attempt}/{strategy.max_attempts} "
                            f"failed ({category.value}): {e}")

                if attempt >= strategy.max_attempts or not strategy.should_retry(e):
                    break
                params = strategy.modify_parameters(dict(params), e)

                hints = self.analyzer.analyze_patterns(tool_name).suggestions
                if on_retry is not None:
                    await on_retry(tool_name, attempt + 1, e, dict(params), hints)
                if strategy.delay_ms > 0:
                    await asyncio.sleep(strategy.delay_ms / 1000)
                continue

            self._record(tool_name, params, started, attempt)
            return result

        report = self.reporter.generate_report(last_error, tool_name, params, retry_count=attempt)
        raise ToolCallFailure(last_error, report) from last_error

    def _record(self, tool_name: str, params: Params, started: float, retry_count: int,
                error: Optional[BaseException] = None,
                category: Optional[ErrorCategory] = None) -> None:
        self.analyzer.add_pattern(ToolCallPattern(
            tool_name=tool_name,
            parameters=dict(params),
            outcome=ToolCallOutcome(
                success=error is None,
                duration=(time.monotonic() - started) * 1000,
                error_message=str(error) if error is not None else None,
            ),
            timestamp=time.time(),
            retry_count=retry_count,
            error_type=category,
        ))

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def analyze(self, tool_name: str) -> PatternAnalysis:
        return self.analyzer.analyze_patterns(tool_name)

    @property
    def patterns(self) -> List[ToolCallPattern]:
        return self.analyzer.patterns

    def failures(self) -> List[ToolCallPattern]:
        return [p for p in self.analyzer.patterns if not p.outcome.success]

    def clear_history(self) -> None:
        self.analyzer.clear()
        self.reporter.clear()
