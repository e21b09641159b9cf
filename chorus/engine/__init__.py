"""Chorus engine: agent sessions, permission negotiation and Git automation."""
from .models import (
    AgentStatus,
    CommitType,
    ContextLevel,
    ContextMetrics,
    ConversationSettings,
    GitSettings,
    PermissionMode,
    PermissionResponse,
    ProcessState,
    ResolvedSettings,
    WorkspaceSettings,
)
from .config import EngineConfig
from .errors import (
    CascadeDeleteError,
    ChorusError,
    ConversationNotFoundError,
    GitCommandError,
    InvalidTransitionError,
    PermissionConflictError,
    PermissionDeniedError,
    ProcessExitError,
    ProcessSpawnError,
    ProtocolParseError,
    ProtocolViolationError,
    StaleRequestError,
)

__all__ = [
    # Core engine (lazy import to avoid circular deps)
    "ChorusEngine",
    # Models
    "AgentStatus",
    "CommitType",
    "ContextLevel",
    "ContextMetrics",
    "ConversationSettings",
    "GitSettings",
    "PermissionMode",
    "PermissionResponse",
    "ProcessState",
    "ResolvedSettings",
    "WorkspaceSettings",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "ChorusConfig",
    "load_yaml_config",
    # Components (lazy import)
    "GitAutomationController",
    "PermissionBroker",
    "ProcessSupervisor",
    "StreamParser",
    "compute_context_metrics",
    # Errors
    "CascadeDeleteError",
    "ChorusError",
    "ConversationNotFoundError",
    "GitCommandError",
    "InvalidTransitionError",
    "PermissionConflictError",
    "PermissionDeniedError",
    "ProcessExitError",
    "ProcessSpawnError",
    "ProtocolParseError",
    "ProtocolViolationError",
    "StaleRequestError",
]


def __getattr__(name: str):
    if name == "ChorusEngine":
        from .engine import ChorusEngine
        return ChorusEngine
    if name == "ChorusConfig":
        from .yaml_config import ChorusConfig
        return ChorusConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "GitAutomationController":
        from .git_automation import GitAutomationController
        return GitAutomationController
    if name == "PermissionBroker":
        from .permissions import PermissionBroker
        return PermissionBroker
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "StreamParser":
        from .stream_parser import StreamParser
        return StreamParser
    if name == "compute_context_metrics":
        from .context import compute_context_metrics
        return compute_context_metrics
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
