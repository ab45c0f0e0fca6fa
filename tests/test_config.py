import pytest

from config import (
    DEFAULT_CONTEXT_BUFFER_TIERS,
    DEFAULT_CONTEXT_WINDOW,
    _parse_buffer_tiers,
    calculate_cost,
    get_context_window,
    get_model_config,
)


def test_empty_tier_override_keeps_defaults():
    assert _parse_buffer_tiers("") == DEFAULT_CONTEXT_BUFFER_TIERS


def test_tier_override_is_parsed():
    assert _parse_buffer_tiers("64000:27000, 128000:30000,") == {64000: 27000, 128000: 30000}


def test_bad_tier_entry_raises():
    with pytest.raises(ValueError):
        _parse_buffer_tiers("64000:lots")


def test_unknown_model_falls_back():
    assert get_context_window("no-such-model") == DEFAULT_CONTEXT_WINDOW
    assert get_model_config("no-such-model")["name"] == "no-such-model"
    assert calculate_cost("no-such-model", 1000, 1000) == 0.0


def test_known_model_has_pricing():
    model_id = "us.anthropic.claude-sonnet-4-20250514-v1:0"
    assert get_context_window(model_id) == 200000
    assert calculate_cost(model_id, 1_000_000, 0) > 0
