from agent.truncation import (
    FIRST_REMOVABLE_INDEX,
    compute_deleted_range,
    max_allowed_size,
    next_truncation_range,
    should_truncate,
    truncated_messages,
    validate_range,
)
from config import TruncationConfig


def _conversation(pairs):
    messages = []
    for i in range(pairs):
        messages.append({"role": "user", "content": [{"type": "text", "text": f"u{i}"}]})
        messages.append({"role": "assistant", "content": [{"type": "text", "text": f"a{i}"}]})
    return messages


def _usage(total):
    return {"input_tokens": total, "output_tokens": 0, "cache_write_tokens": 0, "cache_read_tokens": 0}


CONFIG = TruncationConfig(buffer_tiers={200000: 40000}, fallback_buffer=40000, fallback_ratio=0.8)


def test_tiered_window_ceiling():
    assert max_allowed_size(200000, CONFIG) == 160000


def test_untiered_window_uses_larger_of_buffer_and_ratio():
    # 100000 - 40000 = 60000 vs 100000 * 0.8 = 80000
    assert max_allowed_size(100000, CONFIG) == 80000


def test_boundary_is_inclusive():
    assert should_truncate(160000, 200000, CONFIG)
    assert not should_truncate(159999, 200000, CONFIG)


def test_below_ceiling_keeps_current_range():
    messages = _conversation(5)
    assert compute_deleted_range(messages, None, _usage(1000), 200000, CONFIG) is None
    assert compute_deleted_range(messages, (2, 3), _usage(1000), 200000, CONFIG) == (2, 3)


def test_range_repeats_when_no_new_truncation_needed():
    messages = _conversation(5)
    first = compute_deleted_range(messages, None, _usage(160000), 200000, CONFIG)
    again = compute_deleted_range(messages, first, _usage(10), 200000, CONFIG)
    assert again == first


def test_first_truncation_drops_half_of_the_rest_in_pairs():
    messages = _conversation(5)
    new_range = compute_deleted_range(messages, None, _usage(160000), 200000, CONFIG)
    assert new_range == (2, 5)
    assert messages[new_range[0]]["role"] == "user"
    assert messages[new_range[1]]["role"] == "assistant"


def test_truncation_extends_existing_range():
    messages = _conversation(5)
    assert next_truncation_range(messages, (2, 5)) == (2, 7)


def test_truncation_never_touches_the_task_pair():
    messages = _conversation(8)
    new_range = next_truncation_range(messages, None)
    assert new_range[0] == FIRST_REMOVABLE_INDEX
    view = truncated_messages(messages, new_range)
    assert view[0] == messages[0]
    assert view[1] == messages[1]


def test_nothing_to_remove_returns_current():
    messages = _conversation(2)
    assert next_truncation_range(messages, None) is None


def test_range_closes_on_assistant_when_roles_do_not_alternate():
    messages = _conversation(5)
    messages[5]["role"] = "user"
    new_range = next_truncation_range(messages, None)
    assert new_range == (2, 3)


def test_truncated_view_removes_inclusive_range():
    messages = _conversation(4)
    view = truncated_messages(messages, (2, 5))
    assert [m["content"][0]["text"] for m in view] == ["u0", "a0", "u3", "a3"]


def test_validate_range():
    assert validate_range(None, 4) is None
    assert validate_range((2, 5), 8) is None
    assert "original task" in validate_range((0, 1), 8)
    assert "splits" in validate_range((2, 4), 8)
    assert "past the end" in validate_range((2, 9), 8)
    assert "reversed" in validate_range((4, 3), 8)
