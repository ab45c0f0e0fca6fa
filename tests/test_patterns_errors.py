import time

from agent.errors import (
    ErrorCategory,
    ErrorReporter,
    ToolCallError,
    classify_error,
    classify_message,
    escape_regex,
    parent_path,
)
from agent.patterns import ToolCallOutcome, ToolCallPattern, ToolCallPatternAnalyzer


def _pattern(tool, params, success, error_type=None, age=0.0):
    return ToolCallPattern(
        tool_name=tool,
        parameters=params,
        outcome=ToolCallOutcome(success=success, duration=10.0,
                                error_message=None if success else "failed"),
        timestamp=time.time() - age,
        retry_count=0,
        error_type=error_type,
    )


def test_structured_category_wins_over_message():
    error = ToolCallError("permission denied", category=ErrorCategory.TIMEOUT)
    assert classify_error(error) == ErrorCategory.TIMEOUT


def test_exception_type_before_substring():
    assert classify_error(FileNotFoundError("invalid name")) == ErrorCategory.RESOURCE_NOT_FOUND
    assert classify_error(PermissionError("x")) == ErrorCategory.PERMISSION_DENIED
    assert classify_error(TimeoutError("x")) == ErrorCategory.TIMEOUT


def test_substring_rules_in_order():
    assert classify_message("Invalid path") == ErrorCategory.INVALID_PARAMETER
    assert classify_message("required parameter path") == ErrorCategory.MISSING_PARAMETER
    assert classify_message("Access denied") == ErrorCategory.PERMISSION_DENIED
    assert classify_message("no such file") == ErrorCategory.RESOURCE_NOT_FOUND
    assert classify_message("request timed out") == ErrorCategory.TIMEOUT
    assert classify_message("something odd") == ErrorCategory.UNKNOWN


def test_helpers():
    assert escape_regex("a.b(c)") == r"a\.b\(c\)"
    assert parent_path("a\\b\\c.txt") == "a/b"
    assert parent_path("file.txt") is None


def test_analysis_rates_and_common_errors():
    analyzer = ToolCallPatternAnalyzer()
    analyzer.add_pattern(_pattern("read_file", {"path": "./a"}, True))
    analyzer.add_pattern(_pattern("read_file", {"path": "b"}, False, ErrorCategory.RESOURCE_NOT_FOUND))
    analyzer.add_pattern(_pattern("read_file", {"path": "c"}, False, ErrorCategory.RESOURCE_NOT_FOUND))
    analyzer.add_pattern(_pattern("read_file", {"path": "d"}, False, ErrorCategory.TIMEOUT))

    analysis = analyzer.analyze_patterns("read_file")
    assert analysis.success_rate == 0.25
    assert analysis.average_duration == 10.0
    assert analysis.common_errors[0] == (ErrorCategory.RESOURCE_NOT_FOUND, 2)


def test_suggestions_need_success_rate_above_floor():
    analyzer = ToolCallPatternAnalyzer(min_success_rate=0.7)
    # 7 of 10 exactly at the floor: not suggested
    for i in range(10):
        analyzer.add_pattern(_pattern("search_files", {"path": "./src", "regex": "x"}, i < 7))
    assert analyzer.analyze_patterns("search_files").suggestions == []

    # 8 of 10: suggested
    analyzer.clear()
    for i in range(10):
        analyzer.add_pattern(_pattern("search_files", {"path": "./src", "regex": "x"}, i < 8))
    suggestions = analyzer.analyze_patterns("search_files").suggestions
    assert len(suggestions) == 1
    assert suggestions[0].confidence == 0.8
    assert "relative path" in suggestions[0].reasoning


def test_patterns_outside_window_are_pruned():
    analyzer = ToolCallPatternAnalyzer(window_hours=1)
    analyzer.add_pattern(_pattern("read_file", {"path": "a"}, True, age=7200))
    analyzer.add_pattern(_pattern("read_file", {"path": "a"}, True))
    assert len(analyzer.patterns) == 1


def test_patterns_survive_restart(tmp_path):
    path = str(tmp_path / "patterns.json")
    analyzer = ToolCallPatternAnalyzer(storage_path=path)
    analyzer.add_pattern(_pattern("list_files", {"path": "."}, False, ErrorCategory.TIMEOUT))
    reloaded = ToolCallPatternAnalyzer(storage_path=path)
    assert len(reloaded.patterns) == 1
    assert reloaded.patterns[0].error_type == ErrorCategory.TIMEOUT


def test_report_includes_category_suggestions():
    reporter = ErrorReporter(ToolCallPatternAnalyzer())
    report = reporter.generate_report(
        ToolCallError("not found", category=ErrorCategory.RESOURCE_NOT_FOUND),
        "list_files", {"path": "a/b"}, retry_count=2,
    )
    assert report.category == ErrorCategory.RESOURCE_NOT_FOUND
    suggested = [s.suggested_parameters for s in report.suggestions]
    assert {"path": "a/b", "recursive": "true"} in suggested
    assert {"path": "a"} in suggested
    assert report.suggestions[0].confidence >= report.suggestions[-1].confidence
    assert "Suggestions:" in report.to_prompt()
    assert len(reporter.history) == 1
