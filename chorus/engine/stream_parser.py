"""Incremental parser for the agent's line-delimited JSON event stream.

The agent CLI (``--output-format stream-json``) writes one JSON object
per line on stdout. This module turns raw stdout bytes into a closed
set of typed events:

    system (subtype=init) -> SystemInitEvent
    system (other)        -> SystemEvent
    assistant             -> AssistantEvent  (text | tool_use | thinking | image)
    user                  -> UserEvent       (tool_result blocks)
    result                -> ResultEvent     (terminal)
    <not JSON>            -> RawTextEvent
    <JSON, unknown shape> -> UnknownEvent

Nothing is dropped: a line that is not JSON is surfaced as raw text, and
a truncated final line is parsed best-effort when the stream ends.
"""
from __future__ import annotations

import asyncio
import codecs
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from .errors import ProtocolParseError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


# ── Content blocks ──


@dataclass
class TextBlock:
    text: str = ""


@dataclass
class ToolUseBlock:
    id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ThinkingBlock:
    thinking: str = ""


@dataclass
class ImageBlock:
    source: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultBlock:
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False


@dataclass
class UnknownBlock:
    type: str = ""
    data: dict[str, Any] = field(default_factory=dict)


ContentBlock = (
    TextBlock | ToolUseBlock | ThinkingBlock | ImageBlock
    | ToolResultBlock | UnknownBlock
)


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


def _tool_result_text(content: Any) -> str:
    """Flatten tool_result content (string or list of blocks) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type") == "text":
                    parts.append(str(item.get("text", "")))
                else:
                    parts.append(json.dumps(item))
            else:
                parts.append(str(item))
        return "\n".join(parts)
    return json.dumps(content)


def parse_block(raw: Any) -> ContentBlock:
    """Parse one content block dict into its typed variant."""
    if not isinstance(raw, dict):
        return UnknownBlock(type=type(raw).__name__, data={"value": raw})
    block_type = raw.get("type", "")
    if block_type == "text":
        return TextBlock(text=str(raw.get("text", "")))
    if block_type == "tool_use":
        tool_input = raw.get("input")
        return ToolUseBlock(
            id=str(raw.get("id", "")),
            name=str(raw.get("name", "")),
            input=tool_input if isinstance(tool_input, dict) else {},
        )
    if block_type == "thinking":
        return ThinkingBlock(thinking=str(raw.get("thinking", "")))
    if block_type == "image":
        source = raw.get("source")
        return ImageBlock(source=source if isinstance(source, dict) else {})
    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(raw.get("tool_use_id", "")),
            content=_tool_result_text(raw.get("content")),
            is_error=bool(raw.get("is_error", False)),
        )
    return UnknownBlock(type=str(block_type), data=raw)


# ── Usage ──


@dataclass
class Usage:
    """Token usage block as reported by the API."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> Usage | None:
        if not isinstance(data, dict):
            return None
        return cls(
            input_tokens=_as_int(data.get("input_tokens")),
            output_tokens=_as_int(data.get("output_tokens")),
            cache_read_input_tokens=_as_int(data.get("cache_read_input_tokens")),
            cache_creation_input_tokens=_as_int(
                data.get("cache_creation_input_tokens")
            ),
        )


@dataclass
class ModelUsage:
    """Per-model usage from a result event's ``modelUsage`` map."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    context_window: int = 0
    cost_usd: float = 0.0

    @classmethod
    def from_dict(cls, data: Any) -> ModelUsage:
        if not isinstance(data, dict):
            return cls()
        return cls(
            input_tokens=_as_int(data.get("inputTokens")),
            output_tokens=_as_int(data.get("outputTokens")),
            cache_read_input_tokens=_as_int(data.get("cacheReadInputTokens")),
            cache_creation_input_tokens=_as_int(
                data.get("cacheCreationInputTokens")
            ),
            context_window=_as_int(data.get("contextWindow")),
            cost_usd=_as_float(data.get("costUSD")),
        )


def primary_context_window(model_usage: dict[str, ModelUsage]) -> int | None:
    """Context window of the model that carried the most input.

    Side models (e.g. a small model used for titles) show up in the
    usage map too; the main model is the one with the most
    input + cache-read tokens.
    """
    best: ModelUsage | None = None
    for usage in model_usage.values():
        if not usage.context_window:
            continue
        weight = usage.input_tokens + usage.cache_read_input_tokens
        if best is None or weight > best.input_tokens + best.cache_read_input_tokens:
            best = usage
    return best.context_window if best else None


# ── Events ──


@dataclass
class StreamEvent:
    """Base protocol event."""
    kind: str = ""
    raw: dict[str, Any] | None = None


@dataclass
class SystemInitEvent(StreamEvent):
    kind: str = "system/init"
    session_id: str = ""
    model: str = ""
    tools: list[str] = field(default_factory=list)
    cwd: str = ""
    permission_mode: str = ""


@dataclass
class SystemEvent(StreamEvent):
    kind: str = "system"
    subtype: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class AssistantEvent(StreamEvent):
    kind: str = "assistant"
    blocks: list[ContentBlock] = field(default_factory=list)
    message_id: str = ""
    model: str = ""
    usage: Usage | None = None
    session_id: str = ""
    parent_tool_use_id: str | None = None

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]


@dataclass
class UserEvent(StreamEvent):
    kind: str = "user"
    blocks: list[ContentBlock] = field(default_factory=list)
    session_id: str = ""

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]


@dataclass
class ResultEvent(StreamEvent):
    kind: str = "result"
    subtype: str = "success"
    is_error: bool = False
    result: str = ""
    session_id: str = ""
    usage: Usage | None = None
    model_usage: dict[str, ModelUsage] = field(default_factory=dict)
    total_cost_usd: float = 0.0
    duration_ms: int = 0
    duration_api_ms: int = 0
    num_turns: int = 0
    permission_denials: list[dict[str, Any]] = field(default_factory=list)

    @property
    def context_window(self) -> int | None:
        return primary_context_window(self.model_usage)


@dataclass
class RawTextEvent(StreamEvent):
    """A line that was not valid JSON. Agent output is never dropped."""
    kind: str = "raw"
    text: str = ""


@dataclass
class UnknownEvent(StreamEvent):
    """Valid JSON whose shape is not a recognised event."""
    kind: str = "unknown"
    type: str = ""


def _message_content(data: dict[str, Any]) -> tuple[dict[str, Any], list[Any]]:
    message = data.get("message")
    if not isinstance(message, dict):
        message = {}
    content = message.get("content")
    if isinstance(content, str):
        content = [{"type": "text", "text": content}]
    elif not isinstance(content, list):
        content = []
    return message, content


def parse_event(data: dict[str, Any]) -> StreamEvent:
    """Map a decoded JSON object onto its event variant. Never raises."""
    event_type = data.get("type")
    session_id = str(data.get("session_id") or "")

    if event_type == "system":
        subtype = str(data.get("subtype", ""))
        if subtype == "init":
            tools = data.get("tools")
            return SystemInitEvent(
                raw=data,
                session_id=session_id,
                model=str(data.get("model", "")),
                tools=[str(t) for t in tools] if isinstance(tools, list) else [],
                cwd=str(data.get("cwd", "")),
                permission_mode=str(data.get("permissionMode", "")),
            )
        return SystemEvent(raw=data, subtype=subtype, data=data)

    if event_type == "assistant":
        message, content = _message_content(data)
        return AssistantEvent(
            raw=data,
            blocks=[parse_block(b) for b in content],
            message_id=str(message.get("id", "")),
            model=str(message.get("model", "")),
            usage=Usage.from_dict(message.get("usage")),
            session_id=session_id,
            parent_tool_use_id=data.get("parent_tool_use_id"),
        )

    if event_type == "user":
        _message, content = _message_content(data)
        return UserEvent(
            raw=data,
            blocks=[parse_block(b) for b in content],
            session_id=session_id,
        )

    if event_type == "result":
        model_usage_raw = data.get("modelUsage")
        model_usage = {}
        if isinstance(model_usage_raw, dict):
            model_usage = {
                str(name): ModelUsage.from_dict(entry)
                for name, entry in model_usage_raw.items()
            }
        denials = data.get("permission_denials")
        return ResultEvent(
            raw=data,
            subtype=str(data.get("subtype", "success")),
            is_error=bool(data.get("is_error", False)),
            result=str(data.get("result") or ""),
            session_id=session_id,
            usage=Usage.from_dict(data.get("usage")),
            model_usage=model_usage,
            total_cost_usd=_as_float(data.get("total_cost_usd")),
            duration_ms=_as_int(data.get("duration_ms")),
            duration_api_ms=_as_int(data.get("duration_api_ms")),
            num_turns=_as_int(data.get("num_turns")),
            permission_denials=denials if isinstance(denials, list) else [],
        )

    return UnknownEvent(raw=data, type=str(event_type or ""))


def decode_line(line: str) -> dict[str, Any]:
    """Strictly decode one stream line. Raises ProtocolParseError."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ProtocolParseError(line, exc.msg) from exc
    if not isinstance(data, dict):
        raise ProtocolParseError(line, f"expected object, got {type(data).__name__}")
    return data


def parse_line(line: str) -> StreamEvent | None:
    """Parse one line into an event. Blank lines yield None."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        data = decode_line(stripped)
    except ProtocolParseError as exc:
        logger.debug("Stream line recovered as raw text: %s", exc.reason)
        return RawTextEvent(text=line.rstrip("\r"))
    return parse_event(data)


class StreamParser:
    """Buffers stdout bytes and yields events for each completed line.

    Multi-byte UTF-8 sequences split across chunks are decoded
    correctly. Call ``finish()`` at EOF to flush an unterminated line.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._finished = False

    @property
    def pending(self) -> str:
        """Text of the incomplete line currently buffered."""
        return self._buffer

    def feed(self, data: bytes) -> list[StreamEvent]:
        if self._finished:
            raise RuntimeError("StreamParser.feed() called after finish()")
        self._buffer += self._decoder.decode(data)
        if "\n" not in self._buffer:
            return []
        *complete, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in complete:
            event = parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def finish(self) -> list[StreamEvent]:
        """Flush the decoder and parse any truncated final line."""
        if self._finished:
            return []
        self._finished = True
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        event = parse_line(tail)
        if event is None:
            return []
        if isinstance(event, RawTextEvent):
            logger.debug("Unterminated final stream line kept as raw text")
        return [event]


async def parse_stream(
    reader: asyncio.StreamReader,
    *,
    chunk_size: int = READ_CHUNK_SIZE,
) -> AsyncIterator[StreamEvent]:
    """Yield events from a stream reader until EOF, in line order."""
    parser = StreamParser()
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        for event in parser.feed(chunk):
            yield event
    for event in parser.finish():
        yield event


@dataclass
class TurnUpdate:
    """What a single event contributed to the running turn."""
    text_delta: str = ""
    thinking_delta: str = ""
    new_tool_uses: list[ToolUseBlock] = field(default_factory=list)
    tool_results: list[ToolResultBlock] = field(default_factory=list)


class TurnAccumulator:
    """Builds the running assistant message for one turn.

    Text blocks are concatenated in arrival order. Each tool_use block
    is reported exactly once, keyed by its block id.
    """

    def __init__(self) -> None:
        self.text = ""
        self.tool_uses: dict[str, ToolUseBlock] = {}
        self.last_usage: Usage | None = None
        self.session_id: str | None = None
        self.result: ResultEvent | None = None
        self.raw_lines: list[str] = []

    def apply(self, event: StreamEvent) -> TurnUpdate:
        update = TurnUpdate()
        if isinstance(event, SystemInitEvent):
            if event.session_id:
                self.session_id = event.session_id
        elif isinstance(event, AssistantEvent):
            if event.usage is not None:
                self.last_usage = event.usage
            for block in event.blocks:
                if isinstance(block, TextBlock):
                    self.text += block.text
                    update.text_delta += block.text
                elif isinstance(block, ThinkingBlock):
                    update.thinking_delta += block.thinking
                elif isinstance(block, ToolUseBlock):
                    if block.id and block.id in self.tool_uses:
                        continue
                    key = block.id or f"tool-{len(self.tool_uses)}"
                    self.tool_uses[key] = block
                    update.new_tool_uses.append(block)
        elif isinstance(event, UserEvent):
            update.tool_results.extend(event.tool_results)
        elif isinstance(event, ResultEvent):
            self.result = event
            if event.session_id and not self.session_id:
                self.session_id = event.session_id
        elif isinstance(event, RawTextEvent):
            self.raw_lines.append(event.text)
        return update
