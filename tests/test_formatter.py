from __future__ import annotations

from cordbridge.formatter import (
    format_cost,
    format_duration,
    format_tokens,
    format_turns,
    format_usage_footer,
)
from cordbridge.utils.helpers import truncate_string


def test_cost_below_a_cent_uses_fixed_marker() -> None:
    assert format_cost(0.0) == "<$0.01"
    assert format_cost(0.0099) == "<$0.01"
    assert format_cost(0.1234) == "$0.123"


def test_duration_and_turns() -> None:
    assert format_duration(12345) == "12.3s"
    assert format_turns(1) == "1 turn"
    assert format_turns(3) == "3 turns"


def test_tokens_are_abbreviated_without_decimals() -> None:
    assert format_tokens(999) == "999"
    assert format_tokens(12345) == "12k"
    assert format_tokens(200000) == "200k"


def test_usage_footer_only_shows_context_when_known() -> None:
    assert format_usage_footer(0.5, 4200, 2) == "-# $0.500 · 4.2s · 2 turns"
    assert (
        format_usage_footer(0.5, 4200, 1, context_used=50000, context_window=200000)
        == "-# $0.500 · 4.2s · 1 turn · 50k/200k context"
    )


def test_truncate_string_keeps_total_length() -> None:
    assert truncate_string("abcdefghij", 8) == "abcde..."
    assert truncate_string("short", 8) == "short"
