from __future__ import annotations

from chorus.engine.context import compute_context_metrics, context_level
from chorus.engine.models import DEFAULT_CONTEXT_WINDOW, ContextLevel
from chorus.shared.models.conversation import ConversationMessage, MessageType


def test_level_thresholds() -> None:
    assert context_level(0) == ContextLevel.LOW
    assert context_level(49.9) == ContextLevel.LOW
    assert context_level(50) == ContextLevel.MEDIUM
    assert context_level(75) == ContextLevel.HIGH
    assert context_level(90) == ContextLevel.CRITICAL
    assert context_level(100) == ContextLevel.CRITICAL


def test_no_usage_data_reports_zero_limit() -> None:
    metrics = compute_context_metrics([
        ConversationMessage(type=MessageType.USER, content="hi"),
    ])
    assert metrics.context_limit == 0
    assert metrics.context_used == 0
    assert metrics.context_percentage == 0
    assert metrics.level == ContextLevel.LOW


def test_occupancy_uses_latest_assistant_usage_only() -> None:
    messages = [
        ConversationMessage(type=MessageType.ASSISTANT, input_tokens=50_000, cache_read_tokens=0),
        ConversationMessage(
            type=MessageType.TOOL_USE,
            input_tokens=100,
            cache_read_tokens=119_900,
            cache_creation_tokens=30_000,
        ),
        ConversationMessage(
            type=MessageType.SYSTEM,
            content="Turn completed",
            cost_usd=0.25,
            num_turns=4,
            duration_ms=9000,
            output_tokens=321,
            context_window=200_000,
        ),
    ]
    metrics = compute_context_metrics(messages)
    assert metrics.context_used == 150_000
    assert metrics.context_limit == 200_000
    assert metrics.context_percentage == 75.0
    assert metrics.level == ContextLevel.HIGH
    assert metrics.total_cost == 0.25
    assert metrics.num_turns == 4
    assert metrics.output_tokens == 321
    assert metrics.to_dict()["level"] == "high"


def test_nested_usage_and_result_payload_are_read() -> None:
    messages = [
        ConversationMessage(
            type=MessageType.ASSISTANT,
            claude_message={"message": {"usage": {"input_tokens": 10, "cache_read_input_tokens": 90}}},
        ),
        ConversationMessage(
            type=MessageType.SYSTEM,
            claude_message={
                "type": "result",
                "total_cost_usd": 0.5,
                "num_turns": 2,
                "usage": {"output_tokens": 7},
                "modelUsage": {"m": {"inputTokens": 10, "contextWindow": 1000}},
            },
        ),
    ]
    metrics = compute_context_metrics(messages)
    assert metrics.context_used == 100
    assert metrics.context_limit == 1000
    assert metrics.context_percentage == 10.0
    assert metrics.total_cost == 0.5
    assert metrics.output_tokens == 7


def test_percentage_is_clamped() -> None:
    metrics = compute_context_metrics([
        ConversationMessage(type=MessageType.ASSISTANT, input_tokens=DEFAULT_CONTEXT_WINDOW * 2),
    ])
    assert metrics.context_limit == DEFAULT_CONTEXT_WINDOW
    assert metrics.context_percentage == 100.0
    assert metrics.level == ContextLevel.CRITICAL
