"""Turns protocol events into stored messages and UI events.

One TurnProcessor exists per running turn. Streamed text is forwarded
as ``stream-delta`` and held until the turn reaches a boundary (a tool
call or the result), at which point it is persisted as one assistant
message and the UI is told to ``stream-clear``. A turn that calls tools
therefore stores several assistant messages, each one followed by the
tool_use it led into, so the history reads in the order it streamed.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from chorus.adapters.events import (
    ChorusEvent,
    FileChanged,
    MessageAdded,
    StreamClear,
    StreamDelta,
    TodoUpdated,
)
from chorus.shared.models.conversation import ConversationMessage, MessageType
from chorus.shared.services.conversation_store import ConversationStore

from .models import EDIT_TOOLS, _utcnow, to_iso
from .stream_parser import (
    AssistantEvent,
    RawTextEvent,
    ResultEvent,
    StreamEvent,
    SystemInitEvent,
    ToolUseBlock,
    TurnAccumulator,
    UserEvent,
)

logger = logging.getLogger(__name__)

Emitter = Callable[[ChorusEvent], Awaitable[None]]
SessionHandler = Callable[[str, SystemInitEvent], Awaitable[None]]

TODO_TOOL = "TodoWrite"


def format_turn_summary(result: ResultEvent) -> str:
    """``Turn completed: 3 turns, $0.0123 USD, 4.2s``."""
    seconds = result.duration_ms / 1000 if result.duration_ms else 0.0
    return (
        f"Turn completed: {result.num_turns} turns, "
        f"${result.total_cost_usd:.4f} USD, {seconds:.1f}s"
    )


def tool_file_path(tool_input: dict[str, Any] | None) -> str | None:
    if not isinstance(tool_input, dict):
        return None
    for key in ("file_path", "notebook_path", "path"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class TurnProcessor:
    """Handles the event stream of one turn for one conversation."""

    def __init__(
        self,
        conversation_id: str,
        agent_id: str,
        store: ConversationStore,
        emit: Emitter,
        *,
        on_session: SessionHandler | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.agent_id = agent_id
        self._store = store
        self._emit = emit
        self._on_session = on_session
        self.accumulator = TurnAccumulator()
        self._pending_text = ""
        self._session_id: str | None = None

    @property
    def session_id(self) -> str | None:
        return self._session_id or self.accumulator.session_id

    async def append(self, message: ConversationMessage) -> ConversationMessage:
        if message.session_id is None:
            message.session_id = self.session_id
        self._store.append_message(self.conversation_id, message)
        await self._emit(MessageAdded(
            conversation_id=self.conversation_id,
            agent_id=self.agent_id,
            message=message.to_dict(),
        ))
        return message

    async def add_system(self, content: str, **fields: Any) -> ConversationMessage:
        return await self.append(ConversationMessage(
            type=MessageType.SYSTEM, content=content, **fields,
        ))

    async def add_error(self, content: str) -> ConversationMessage:
        return await self.append(ConversationMessage(type=MessageType.ERROR, content=content))

    async def _delta(self, text: str) -> None:
        if not text:
            return
        self._pending_text += text
        await self._emit(StreamDelta(conversation_id=self.conversation_id, delta=text))

    async def _flush_text(self, event: AssistantEvent | None = None, **fields: Any) -> None:
        text = self._pending_text
        self._pending_text = ""
        if not text.strip() and not fields:
            return
        await self.append(ConversationMessage(
            type=MessageType.ASSISTANT,
            content=text,
            claude_message=event.raw if event is not None else None,
            **fields,
        ))
        await self._emit(StreamClear(conversation_id=self.conversation_id))

    async def handle(self, event: StreamEvent) -> None:
        update = self.accumulator.apply(event)

        if isinstance(event, SystemInitEvent):
            self._session_id = event.session_id or self._session_id
            if self._on_session is not None and event.session_id:
                await self._on_session(self.conversation_id, event)
            return

        if isinstance(event, AssistantEvent):
            if update.thinking_delta:
                await self._emit(StreamDelta(
                    conversation_id=self.conversation_id,
                    delta=f"\n<thinking>{update.thinking_delta}</thinking>\n",
                ))
            await self._delta(update.text_delta)
            for block in update.new_tool_uses:
                await self._flush_text()
                await self._tool_use(block, event)
            return

        if isinstance(event, UserEvent):
            for block in update.tool_results:
                await self._tool_result(block.tool_use_id, block.content, block.is_error)
            return

        if isinstance(event, ResultEvent):
            await self._finish(event)
            return

        if isinstance(event, RawTextEvent):
            await self._delta(event.text + "\n")

    async def _tool_use(self, block: ToolUseBlock, event: AssistantEvent) -> None:
        usage = event.usage
        fields: dict[str, Any] = {}
        if usage is not None:
            fields = {
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "cache_read_tokens": usage.cache_read_input_tokens,
                "cache_creation_tokens": usage.cache_creation_input_tokens,
            }
        if block.name == TODO_TOOL:
            todos = block.input.get("todos") if isinstance(block.input, dict) else None
            await self._emit(TodoUpdated(
                conversation_id=self.conversation_id,
                todos=list(todos or []),
                timestamp=to_iso(_utcnow()) or "",
            ))
            content = "TodoWrite update"
        else:
            content = f"Using tool: {block.name}"
        await self.append(ConversationMessage(
            type=MessageType.TOOL_USE,
            content=content,
            tool_name=block.name,
            tool_input=dict(block.input) if isinstance(block.input, dict) else {},
            tool_use_id=block.id or None,
            claude_message=event.raw,
            **fields,
        ))

    async def _tool_result(self, tool_use_id: str, content: str, is_error: bool) -> None:
        tool = self.accumulator.tool_uses.get(tool_use_id)
        await self.append(ConversationMessage(
            type=MessageType.TOOL_RESULT,
            content=content,
            tool_use_id=tool_use_id or None,
            tool_name=tool.name if tool else None,
            is_tool_error=is_error,
        ))
        if tool is None or is_error or tool.name not in EDIT_TOOLS:
            return
        path = tool_file_path(tool.input)
        if path:
            await self._emit(FileChanged(
                conversation_id=self.conversation_id,
                file_path=path,
                tool_name=tool.name,
            ))

    async def _finish(self, result: ResultEvent) -> None:
        # Occupancy comes from the last assistant message; the result
        # carries the authoritative output count for the whole turn.
        usage = self.accumulator.last_usage or result.usage
        final = result.usage or usage
        fields: dict[str, Any] = {}
        if usage is not None:
            fields = {
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "cache_read_tokens": usage.cache_read_input_tokens,
                "cache_creation_tokens": usage.cache_creation_input_tokens,
            }
        if not self._pending_text and result.result and not self.accumulator.text:
            # Nothing was streamed; fall back to the result summary text
            self._pending_text = result.result
        if self._pending_text.strip():
            await self._flush_text(**fields)
        else:
            self._pending_text = ""
            await self._emit(StreamClear(conversation_id=self.conversation_id))

        for denial in result.permission_denials:
            tool = denial.get("tool_name") or denial.get("toolName") or "tool"
            await self.add_error(f"Permission denied: {tool}")

        if result.is_error and result.subtype != "success":
            logger.warning(
                "Turn for %s ended with result subtype %s",
                self.conversation_id[:8], result.subtype,
            )
        await self.add_system(
            format_turn_summary(result),
            cost_usd=result.total_cost_usd,
            duration_ms=result.duration_ms,
            num_turns=result.num_turns,
            output_tokens=final.output_tokens if final is not None else None,
            context_window=result.context_window,
            claude_message=result.raw,
        )
