"""Event types emitted by the Chorus engine.

Each event is a typed dataclass. ``event_to_dict`` produces the
camelCase wire shape consumed by UI frontends (``{"event": "...", ...}``)
and ``dict_to_event`` parses it back.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ChorusEvent:
    """Base event from the engine."""
    event_type: str = ""


@dataclass
class StreamDelta(ChorusEvent):
    event_type: str = "stream-delta"
    conversation_id: str = ""
    delta: str = ""


@dataclass
class StreamClear(ChorusEvent):
    event_type: str = "stream-clear"
    conversation_id: str = ""


@dataclass
class MessageAdded(ChorusEvent):
    event_type: str = "message"
    conversation_id: str = ""
    agent_id: str = ""
    message: dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusChanged(ChorusEvent):
    event_type: str = "status"
    agent_id: str = ""
    conversation_id: str | None = None
    status: str = "ready"
    error: str | None = None


@dataclass
class SessionUpdated(ChorusEvent):
    event_type: str = "session-update"
    conversation_id: str = ""
    session_id: str = ""
    session_created_at: str | None = None


@dataclass
class PermissionRequested(ChorusEvent):
    event_type: str = "permission-request"
    request_id: str = ""
    conversation_id: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass
class FileChanged(ChorusEvent):
    event_type: str = "file-changed"
    conversation_id: str = ""
    file_path: str = ""
    tool_name: str = ""


@dataclass
class TodoUpdated(ChorusEvent):
    event_type: str = "todo-update"
    conversation_id: str = ""
    todos: list[dict[str, Any]] = field(default_factory=list)
    timestamp: str = ""


@dataclass
class BranchCreated(ChorusEvent):
    event_type: str = "branch-created"
    conversation_id: str = ""
    branch_name: str = ""
    agent_name: str = ""
    worktree_path: str | None = None


@dataclass
class CommitCreated(ChorusEvent):
    event_type: str = "commit-created"
    conversation_id: str = ""
    branch_name: str = ""
    commit_hash: str = ""
    message: str = ""
    files: list[str] = field(default_factory=list)
    type: str = "turn"


@dataclass
class ConversationsDeleted(ChorusEvent):
    event_type: str = "conversations-deleted"
    conversation_ids: list[str] = field(default_factory=list)
    reason: str = ""


_EVENT_MAP: dict[str, type[ChorusEvent]] = {
    "stream-delta": StreamDelta,
    "stream-clear": StreamClear,
    "message": MessageAdded,
    "status": StatusChanged,
    "session-update": SessionUpdated,
    "permission-request": PermissionRequested,
    "file-changed": FileChanged,
    "todo-update": TodoUpdated,
    "branch-created": BranchCreated,
    "commit-created": CommitCreated,
    "conversations-deleted": ConversationsDeleted,
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _snake(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name)


def event_to_dict(event: ChorusEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        if f == "event_type":
            continue
        val = getattr(event, f)
        if val is not None:
            d[_camel(f)] = val
    d["event"] = event.event_type
    return d


def dict_to_event(data: dict[str, Any]) -> ChorusEvent:
    """Convert a wire dict back to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, ChorusEvent)
    valid_fields = set(cls.__dataclass_fields__)
    filtered = {}
    for key, value in data.items():
        name = _snake(key)
        if name in valid_fields and name != "event_type":
            filtered[name] = value
    filtered["event_type"] = event_type
    return cls(**filtered)
