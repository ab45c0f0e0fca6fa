"""
Context-window truncation.

History is never physically deleted. When the previous request's token usage
reaches the allowed ceiling, a soft-deleted range of whole user/assistant pairs
is chosen right after the first pair; the model sees the history without that
range. The range only moves when a new truncation is actually needed, so the
prompt-cache prefix stays stable between turns.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import TruncationConfig, truncation_config

logger = logging.getLogger(__name__)

DeletedRange = Tuple[int, int]

# Index where the removable span begins: messages 0 and 1 are the original task pair
FIRST_REMOVABLE_INDEX = 2


def max_allowed_size(context_window: int, config: Optional[TruncationConfig] = None) -> int:
    """Token ceiling for a context window: the window minus its reserved buffer."""
    cfg = config or truncation_config
    reserved = cfg.buffer_tiers.get(context_window)
    if reserved is not None:
        return context_window - reserved
    return int(max(context_window - cfg.fallback_buffer, context_window * cfg.fallback_ratio))


def reserved_buffer(context_window: int, config: Optional[TruncationConfig] = None) -> int:
    return context_window - max_allowed_size(context_window, config)


def usage_total(usage: Optional[Dict[str, int]]) -> int:
    """Tokens a request consumed: input + output + cache writes + cache reads."""
    if not usage:
        return 0
    return (
        usage.get("input_tokens", 0)
        + usage.get("output_tokens", 0)
        + usage.get("cache_write_tokens", 0)
        + usage.get("cache_read_tokens", 0)
    )


def should_truncate(total_tokens: int, context_window: int,
                    config: Optional[TruncationConfig] = None) -> bool:
    """The boundary is inclusive: usage equal to the ceiling triggers truncation."""
    return total_tokens >= max_allowed_size(context_window, config)


def next_truncation_range(messages: Sequence[Dict[str, Any]],
                          current_range: Optional[DeletedRange] = None) -> Optional[DeletedRange]:
    """Extend the deleted range to drop about half of the messages still retained.

    The removed count is always even, so the range closes on an assistant message
    and never splits a pair. Returns `current_range` unchanged when nothing more
    can be removed.
    """
    start_of_rest = current_range[1] + 1 if current_range else FIRST_REMOVABLE_INDEX
    to_remove = ((len(messages) - start_of_rest) // 4) * 2
    if to_remove <= 0:
        return current_range

    range_end = start_of_rest + to_remove - 1
    # Histories that do not strictly alternate: close on the nearest assistant turn ending a pair
    while range_end >= FIRST_REMOVABLE_INDEX and (
            range_end % 2 == 0 or messages[range_end].get("role") != "assistant"):
        range_end -= 1
    if range_end < FIRST_REMOVABLE_INDEX or (current_range and range_end <= current_range[1]):
        return current_range
    return (FIRST_REMOVABLE_INDEX, range_end)


def compute_deleted_range(
    messages: Sequence[Dict[str, Any]],
    current_range: Optional[DeletedRange],
    previous_usage: Optional[Dict[str, int]],
    context_window: int,
    config: Optional[TruncationConfig] = None,
) -> Optional[DeletedRange]:
    """Decide the deleted range for the next request.
    Below the ceiling the current range is returned as is."""
    total = usage_total(previous_usage)
    if not should_truncate(total, context_window, config):
        return current_range
    new_range = next_truncation_range(messages, current_range)
    if new_range != current_range:
        logger.info(
            f"Truncating history: {total} tokens >= ceiling {max_allowed_size(context_window, config)}; "
            f"deleted range {current_range} -> {new_range}"
        )
    return new_range


def truncated_messages(messages: Sequence[Dict[str, Any]],
                       deleted_range: Optional[DeletedRange]) -> List[Dict[str, Any]]:
    """The model-facing view: everything except the inclusive deleted range."""
    if not deleted_range:
        return list(messages)
    start, end = deleted_range
    return list(messages[:start]) + list(messages[end + 1:])


def validate_range(deleted_range: Optional[DeletedRange], message_count: int) -> Optional[str]:
    """Return a reason the range is illegal, or None when it is acceptable."""
    if deleted_range is None:
        return None
    start, end = deleted_range
    if start < FIRST_REMOVABLE_INDEX:
        return f"range {deleted_range} would delete the original task message"
    if end < start:
        return f"range {deleted_range} is empty or reversed"
    if start % 2 != 0 or end % 2 != 1:
        return f"range {deleted_range} splits a user/assistant pair"
    if end >= message_count:
        return f"range {deleted_range} is past the end of {message_count} messages"
    return None
