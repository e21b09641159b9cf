"""Context-window and usage metrics over a conversation's messages.

Pure functions; nothing here is persisted.

Token occupancy comes from the most recent assistant/tool_use message
(the current context window, not cumulative billing). Cost, turn
count, duration and output tokens come from the most recent terminal
result/system message, since streamed assistant output counts can be
partial.
"""
from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from chorus.shared.models.conversation import ConversationMessage, MessageType

from .models import DEFAULT_CONTEXT_WINDOW, ContextLevel, ContextMetrics
from .stream_parser import ModelUsage, primary_context_window

_USAGE_TYPES = (MessageType.ASSISTANT, MessageType.TOOL_USE)
_RESULT_TYPES = (MessageType.SYSTEM,)


def context_level(percentage: float) -> ContextLevel:
    if percentage >= 90:
        return ContextLevel.CRITICAL
    if percentage >= 75:
        return ContextLevel.HIGH
    if percentage >= 50:
        return ContextLevel.MEDIUM
    return ContextLevel.LOW


def _nested_usage(msg: ConversationMessage) -> dict[str, Any] | None:
    raw = msg.claude_message
    if not isinstance(raw, dict):
        return None
    message = raw.get("message")
    if isinstance(message, dict) and isinstance(message.get("usage"), dict):
        return message["usage"]
    return None


def _token_usage(msg: ConversationMessage) -> tuple[int, int, int] | None:
    """(input, cache_read, cache_creation) for a usage-bearing message."""
    if msg.input_tokens is not None:
        return (
            msg.input_tokens,
            msg.cache_read_tokens or 0,
            msg.cache_creation_tokens or 0,
        )
    usage = _nested_usage(msg)
    if usage is None:
        return None
    return (
        int(usage.get("input_tokens") or 0),
        int(usage.get("cache_read_input_tokens") or 0),
        int(usage.get("cache_creation_input_tokens") or 0),
    )


def _result_payload(msg: ConversationMessage) -> dict[str, Any] | None:
    raw = msg.claude_message
    if isinstance(raw, dict) and raw.get("type") == "result":
        return raw
    return None


def _is_terminal(msg: ConversationMessage) -> bool:
    if msg.type not in _RESULT_TYPES:
        return False
    return msg.cost_usd is not None or msg.num_turns is not None or (
        _result_payload(msg) is not None
    )


def _result_context_window(msg: ConversationMessage) -> int | None:
    if msg.context_window:
        return msg.context_window
    payload = _result_payload(msg)
    if payload is None or not isinstance(payload.get("modelUsage"), dict):
        return None
    return primary_context_window({
        name: ModelUsage.from_dict(entry)
        for name, entry in payload["modelUsage"].items()
    })


def compute_context_metrics(messages: Sequence[ConversationMessage]) -> ContextMetrics:
    """Derive ContextMetrics from the message history, newest first."""
    tokens: tuple[int, int, int] | None = None
    terminal: ConversationMessage | None = None

    for msg in reversed(messages):
        if tokens is None and msg.type in _USAGE_TYPES:
            tokens = _token_usage(msg)
        if terminal is None and _is_terminal(msg):
            terminal = msg
        if tokens is not None and terminal is not None:
            break

    if tokens is None and terminal is None:
        return ContextMetrics(context_limit=0)

    metrics = ContextMetrics()
    if tokens is not None:
        metrics.input_tokens, metrics.cache_read_tokens, metrics.cache_creation_tokens = tokens

    if terminal is not None:
        payload = _result_payload(terminal) or {}
        payload_usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
        metrics.total_cost = float(
            terminal.cost_usd
            if terminal.cost_usd is not None
            else payload.get("total_cost_usd") or 0.0
        )
        metrics.num_turns = int(
            terminal.num_turns
            if terminal.num_turns is not None
            else payload.get("num_turns") or 0
        )
        metrics.duration_ms = int(
            terminal.duration_ms
            if terminal.duration_ms is not None
            else payload.get("duration_ms") or 0
        )
        metrics.output_tokens = int(
            terminal.output_tokens
            if terminal.output_tokens is not None
            else payload_usage.get("output_tokens") or 0
        )
        metrics.context_limit = _result_context_window(terminal) or DEFAULT_CONTEXT_WINDOW

    metrics.context_used = (
        metrics.input_tokens + metrics.cache_read_tokens + metrics.cache_creation_tokens
    )
    if metrics.context_limit > 0:
        metrics.context_percentage = min(
            metrics.context_used / metrics.context_limit * 100, 100.0
        )
    metrics.level = context_level(metrics.context_percentage)
    return metrics
