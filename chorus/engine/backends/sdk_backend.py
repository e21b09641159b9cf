"""Claude Agent SDK backend.

Runs a turn through ``claude_agent_sdk.query()`` in-process. Tool
approvals arrive through the SDK's ``can_use_tool`` callback, which
blocks on the permission handler (the PermissionBroker) until the user
answers. SDK message objects are normalised into the same protocol
events the CLI backend produces.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import AsyncIterator
from dataclasses import asdict, is_dataclass
from typing import Any

from ..errors import ProcessSpawnError
from ..stream_parser import StreamEvent, parse_event
from .base import AgentBackend, TurnHandle, TurnRequest

logger = logging.getLogger(__name__)


def _block_to_dict(block: Any) -> dict[str, Any]:
    """Convert an SDK content block to its wire dict."""
    if isinstance(block, dict):
        return block
    kind = type(block).__name__
    if kind == "TextBlock":
        return {"type": "text", "text": block.text}
    if kind == "ThinkingBlock":
        return {"type": "thinking", "thinking": block.thinking}
    if kind == "ToolUseBlock":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if kind == "ToolResultBlock":
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": bool(block.is_error),
        }
    if is_dataclass(block):
        return {"type": kind, **asdict(block)}
    return {"type": kind}


def sdk_message_to_dict(message: Any) -> dict[str, Any]:
    """Normalise an SDK message object to the stream-json wire shape."""
    kind = type(message).__name__
    if kind == "SystemMessage":
        data = dict(getattr(message, "data", {}) or {})
        data.setdefault("type", "system")
        data.setdefault("subtype", getattr(message, "subtype", ""))
        return data
    if kind == "AssistantMessage":
        inner: dict[str, Any] = {
            "content": [_block_to_dict(b) for b in message.content],
            "model": getattr(message, "model", ""),
        }
        usage = getattr(message, "usage", None)
        if isinstance(usage, dict):
            inner["usage"] = usage
        return {
            "type": "assistant",
            "message": inner,
            "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
        }
    if kind == "UserMessage":
        content = message.content
        if not isinstance(content, str):
            content = [_block_to_dict(b) for b in content]
        return {"type": "user", "message": {"role": "user", "content": content}}
    if kind == "ResultMessage":
        data = {
            "type": "result",
            "subtype": message.subtype,
            "is_error": message.is_error,
            "duration_ms": message.duration_ms,
            "duration_api_ms": getattr(message, "duration_api_ms", 0),
            "num_turns": message.num_turns,
            "session_id": message.session_id,
            "total_cost_usd": getattr(message, "total_cost_usd", None),
            "usage": getattr(message, "usage", None),
            "result": getattr(message, "result", None),
        }
        model_usage = getattr(message, "model_usage", None)
        if isinstance(model_usage, dict):
            data["modelUsage"] = model_usage
        return data
    return {"type": kind}


class SdkTurnHandle(TurnHandle):
    """A turn running inside ``claude_agent_sdk.query()``."""

    def __init__(self, request: TurnRequest) -> None:
        self._request = request
        self._done = asyncio.Event()
        self._stopped = False

    async def _prompt_stream(self) -> AsyncIterator[dict[str, Any]]:
        yield {
            "type": "user",
            "message": {"role": "user", "content": self._request.prompt},
            "parent_tool_use_id": None,
        }
        # Input stays open until the turn ends so permission answers can flow
        await self._done.wait()

    async def _can_use_tool(self, tool_name: str, tool_input: dict[str, Any], _context: Any):
        from claude_agent_sdk import PermissionResultAllow, PermissionResultDeny

        handler = self._request.permission_handler
        if handler is None:
            return PermissionResultAllow(updated_input=tool_input)
        outcome = await handler(tool_name, tool_input)
        if outcome.approved:
            return PermissionResultAllow(updated_input=tool_input)
        # Any denial ends the turn; timeouts and stops included
        return PermissionResultDeny(message=outcome.message, interrupt=True)

    def _options(self):
        from claude_agent_sdk import ClaudeAgentOptions

        request = self._request
        settings = request.settings
        extra_args: dict[str, str | None] = {}
        if request.new_session_id and not request.resume_session_id:
            extra_args["session-id"] = request.new_session_id
        kwargs: dict[str, Any] = {
            "cwd": request.cwd,
            "permission_mode": settings.permission_mode.value,
            "allowed_tools": list(settings.allowed_tools),
            "can_use_tool": self._can_use_tool,
            "extra_args": extra_args,
        }
        if settings.model_flag:
            kwargs["model"] = settings.model_flag
        if request.resume_session_id:
            kwargs["resume"] = request.resume_session_id
        elif request.system_prompt:
            kwargs["system_prompt"] = {
                "type": "preset",
                "preset": "claude_code",
                "append": request.system_prompt,
            }
        return ClaudeAgentOptions(**kwargs)

    async def events(self) -> AsyncIterator[StreamEvent]:
        from claude_agent_sdk import query

        try:
            async for message in query(prompt=self._prompt_stream(), options=self._options()):
                event = parse_event(sdk_message_to_dict(message))
                yield event
                if event.kind == "result":
                    break
        finally:
            self._done.set()

    async def wait(self) -> int | None:
        return None

    async def terminate(self, timeout: float) -> bool:
        self._stopped = True
        self._done.set()
        return False


class ClaudeSdkBackend(AgentBackend):
    """Runs turns in-process through the Claude Agent SDK."""

    @property
    def name(self) -> str:
        return "sdk"

    @property
    def negotiates_permissions(self) -> bool:
        return True

    def is_available(self) -> bool:
        try:
            import claude_agent_sdk  # noqa: F401
        except ImportError:
            return False
        return shutil.which("claude") is not None

    async def start(self, request: TurnRequest) -> TurnHandle:
        try:
            import claude_agent_sdk  # noqa: F401
        except ImportError as exc:
            raise ProcessSpawnError("claude_agent_sdk", "claude-agent-sdk is not installed") from exc
        logger.info(
            "Starting SDK turn: conversation=%s cwd=%s resume=%s mode=%s",
            request.conversation_id[:8],
            request.cwd,
            (request.resume_session_id or "")[:8] or None,
            request.settings.permission_mode.value,
        )
        return SdkTurnHandle(request)
