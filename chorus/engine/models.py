"""Core data models for the Chorus agent engine.

Enums, settings dataclasses, permission records and derived metrics.
Single source of truth to avoid circular imports. Conversation and
message records live in ``chorus.shared.models.conversation``.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class PermissionMode(str, Enum):
    """Maps to the agent CLI/SDK permission modes."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"

    @classmethod
    def parse(cls, value: Any) -> PermissionMode | None:
        if isinstance(value, PermissionMode):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class ProcessState(str, Enum):
    """Agent process lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    KILLED = "killed"


class AgentStatus(str, Enum):
    """Conversation status as reported to collaborators."""
    READY = "ready"
    BUSY = "busy"
    ERROR = "error"


class ContextLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PermissionState(str, Enum):
    """Lifecycle of a single permission request."""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timedOut"
    CANCELLED = "cancelled"


class CommitType(str, Enum):
    TURN = "turn"
    STOP = "stop"
    MANUAL = "manual"


# Tools that never require a permission round-trip.
ALWAYS_AVAILABLE_TOOLS: frozenset[str] = frozenset({
    "Read",
    "Glob",
    "Grep",
    "LS",
    "NotebookRead",
    "Task",
    "TodoWrite",
    "AskUserQuestion",
    "ExitPlanMode",
})

# Tools that modify files on disk.
EDIT_TOOLS: frozenset[str] = frozenset({
    "Edit",
    "Write",
    "MultiEdit",
    "NotebookEdit",
})

# Tools the user is asked about in the default permission mode.
PERMISSION_TOOLS: frozenset[str] = EDIT_TOOLS | frozenset({
    "Bash",
    "WebFetch",
    "WebSearch",
})

# Tools that change the workspace; auto-denied in plan mode.
MUTATING_TOOLS: frozenset[str] = EDIT_TOOLS | frozenset({"Bash"})

DEFAULT_CONTEXT_WINDOW = 200_000
DEFAULT_MODEL = "default"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def from_iso(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ── Settings ──


@dataclass
class GitSettings:
    """Per-workspace Git automation switches."""
    auto_branch: bool = True
    auto_commit: bool = True
    use_worktrees: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "autoBranch": self.auto_branch,
            "autoCommit": self.auto_commit,
            "useWorktrees": self.use_worktrees,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GitSettings:
        if not isinstance(data, dict):
            return cls()
        return cls(
            auto_branch=bool(data.get("autoBranch", True)),
            auto_commit=bool(data.get("autoCommit", True)),
            use_worktrees=bool(data.get("useWorktrees", False)),
        )


@dataclass
class ConversationSettings:
    """Per-conversation overrides. ``None`` defers to the workspace."""
    permission_mode: PermissionMode | None = None
    allowed_tools: list[str] | None = None
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        if self.permission_mode is not None:
            d["permissionMode"] = self.permission_mode.value
        if self.allowed_tools is not None:
            d["allowedTools"] = list(self.allowed_tools)
        if self.model is not None:
            d["model"] = self.model
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ConversationSettings:
        if not isinstance(data, dict):
            return cls()
        tools = data.get("allowedTools")
        return cls(
            permission_mode=PermissionMode.parse(data.get("permissionMode")),
            allowed_tools=[str(t) for t in tools] if isinstance(tools, list) else None,
            model=data.get("model") if isinstance(data.get("model"), str) else None,
        )

    def merged(self, patch: ConversationSettings) -> ConversationSettings:
        """Return a copy with every non-None field of *patch* applied."""
        return ConversationSettings(
            permission_mode=patch.permission_mode or self.permission_mode,
            allowed_tools=(
                list(patch.allowed_tools)
                if patch.allowed_tools is not None
                else self.allowed_tools
            ),
            model=patch.model if patch.model is not None else self.model,
        )


@dataclass
class WorkspaceSettings:
    """Workspace defaults stored in ``.chorus/workspace-settings.json``."""
    default_permission_mode: PermissionMode = PermissionMode.DEFAULT
    default_allowed_tools: list[str] = field(default_factory=list)
    default_model: str = DEFAULT_MODEL
    git: GitSettings | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "defaultPermissionMode": self.default_permission_mode.value,
            "defaultAllowedTools": list(self.default_allowed_tools),
            "defaultModel": self.default_model,
        }
        if self.git is not None:
            d["git"] = self.git.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> WorkspaceSettings:
        if not isinstance(data, dict):
            return cls()
        tools = data.get("defaultAllowedTools")
        model = data.get("defaultModel")
        return cls(
            default_permission_mode=(
                PermissionMode.parse(data.get("defaultPermissionMode"))
                or PermissionMode.DEFAULT
            ),
            default_allowed_tools=(
                [str(t) for t in tools] if isinstance(tools, list) else []
            ),
            default_model=model if isinstance(model, str) and model else DEFAULT_MODEL,
            git=GitSettings.from_dict(data["git"]) if "git" in data else None,
        )


@dataclass
class ResolvedSettings:
    """Effective settings for one turn after conversation -> workspace -> default."""
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    allowed_tools: list[str] = field(default_factory=list)
    model: str = DEFAULT_MODEL
    git: GitSettings = field(default_factory=GitSettings)

    @property
    def model_flag(self) -> str | None:
        """Model id to pass to the agent, or None for the agent's default."""
        if not self.model or self.model == DEFAULT_MODEL:
            return None
        return self.model


# ── Permissions ──


@dataclass
class PermissionRequest:
    """A pending tool-permission question for the user."""
    conversation_id: str
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)
    request_id: str = ""
    issued_at: datetime = field(default_factory=_utcnow)
    state: PermissionState = PermissionState.PENDING

    def __post_init__(self) -> None:
        if not self.request_id:
            self.request_id = f"{self.conversation_id}-{_make_id()}"


@dataclass
class PermissionResponse:
    """The user's answer to a permission request."""
    approved: bool
    reason: str | None = None
    stop_completely: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionResponse:
        return cls(
            approved=bool(data.get("approved", False)),
            reason=data.get("reason") or None,
            stop_completely=bool(
                data.get("stopCompletely", data.get("stop_completely", False))
            ),
        )


@dataclass
class PermissionOutcome:
    """Terminal result handed back to the backend that asked."""
    state: PermissionState
    reason: str | None = None
    stop_completely: bool = False

    @property
    def approved(self) -> bool:
        return self.state == PermissionState.APPROVED

    @property
    def message(self) -> str:
        if self.reason:
            return self.reason
        if self.state == PermissionState.TIMED_OUT:
            return "Permission request timed out"
        if self.state == PermissionState.CANCELLED:
            return "Agent stopped"
        return "User denied permission"


# ── Metrics ──


@dataclass
class ContextMetrics:
    """Token and cost accounting derived from a conversation's messages."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    context_used: int = 0
    context_limit: int = DEFAULT_CONTEXT_WINDOW
    context_percentage: float = 0.0
    level: ContextLevel = ContextLevel.LOW
    total_cost: float = 0.0
    num_turns: int = 0
    duration_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "contextUsed": self.context_used,
            "contextLimit": self.context_limit,
            "contextPercentage": self.context_percentage,
            "level": self.level.value,
            "totalCost": self.total_cost,
            "numTurns": self.num_turns,
            "durationMs": self.duration_ms,
        }
