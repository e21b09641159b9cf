"""Conversation and message models.

Persisted as camelCase JSON: conversations in ``conversations.json``,
messages one per line in ``{conversationId}-messages.jsonl``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from chorus.engine.models import (
    ConversationSettings,
    _make_id,
    _utcnow,
    from_iso,
    to_iso,
)

DEFAULT_TITLE = "New Conversation"
TITLE_MAX_LENGTH = 50


class MessageType(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    SYSTEM = "system"


def generate_title(message: str) -> str:
    """Derive a conversation title from the first user message."""
    clean = " ".join(message.split())
    if len(clean) <= TITLE_MAX_LENGTH:
        return clean or DEFAULT_TITLE
    return clean[: TITLE_MAX_LENGTH - 3] + "..."


@dataclass
class Conversation:
    id: str = field(default_factory=_make_id)
    agent_id: str = ""
    workspace_id: str = ""
    title: str = DEFAULT_TITLE
    session_id: str | None = None
    session_created_at: datetime | None = None
    branch_name: str | None = None
    worktree_path: str | None = None
    repo_path: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    message_count: int = 0
    settings: ConversationSettings = field(default_factory=ConversationSettings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "sessionCreatedAt": to_iso(self.session_created_at),
            "branchName": self.branch_name,
            "worktreePath": self.worktree_path,
            "repoPath": self.repo_path,
            "agentId": self.agent_id,
            "workspaceId": self.workspace_id,
            "title": self.title,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "messageCount": self.message_count,
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversation:
        return cls(
            id=str(data["id"]),
            agent_id=str(data.get("agentId", "")),
            workspace_id=str(data.get("workspaceId", "")),
            title=str(data.get("title") or DEFAULT_TITLE),
            session_id=data.get("sessionId") or None,
            session_created_at=from_iso(data.get("sessionCreatedAt")),
            branch_name=data.get("branchName") or None,
            worktree_path=data.get("worktreePath") or None,
            repo_path=data.get("repoPath") or None,
            created_at=from_iso(data.get("createdAt")) or _utcnow(),
            updated_at=from_iso(data.get("updatedAt")) or _utcnow(),
            message_count=int(data.get("messageCount") or 0),
            settings=ConversationSettings.from_dict(data.get("settings")),
        )


# camelCase key -> attribute for optional message fields
_OPTIONAL_FIELDS: dict[str, str] = {
    "sessionId": "session_id",
    "toolName": "tool_name",
    "toolInput": "tool_input",
    "toolUseId": "tool_use_id",
    "isToolError": "is_tool_error",
    "claudeMessage": "claude_message",
    "costUsd": "cost_usd",
    "durationMs": "duration_ms",
    "inputTokens": "input_tokens",
    "outputTokens": "output_tokens",
    "cacheReadTokens": "cache_read_tokens",
    "cacheCreationTokens": "cache_creation_tokens",
    "contextWindow": "context_window",
    "numTurns": "num_turns",
    "unpaired": "unpaired",
}


@dataclass
class ConversationMessage:
    type: MessageType
    content: str = ""
    uuid: str = field(default_factory=_make_id)
    timestamp: datetime = field(default_factory=_utcnow)
    session_id: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_use_id: str | None = None
    is_tool_error: bool | None = None
    # Raw protocol event this message was built from
    claude_message: dict[str, Any] | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_read_tokens: int | None = None
    cache_creation_tokens: int | None = None
    context_window: int | None = None
    num_turns: int | None = None
    # Set on a tool_result whose tool_use was never seen
    unpaired: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "uuid": self.uuid,
            "type": self.type.value,
            "content": self.content,
            "timestamp": to_iso(self.timestamp),
        }
        for key, attr in _OPTIONAL_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationMessage:
        kwargs: dict[str, Any] = {
            attr: data[key] for key, attr in _OPTIONAL_FIELDS.items() if key in data
        }
        return cls(
            type=MessageType(data["type"]),
            content=str(data.get("content", "")),
            uuid=str(data.get("uuid") or _make_id()),
            timestamp=from_iso(data.get("timestamp")) or _utcnow(),
            **kwargs,
        )
