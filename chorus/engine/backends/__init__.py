"""Agent backends: the ``claude`` CLI and the Claude Agent SDK."""
from __future__ import annotations

from .base import AgentBackend, PermissionHandler, TurnHandle, TurnRequest
from .cli_backend import ClaudeCliBackend, build_command
from .sdk_backend import ClaudeSdkBackend

__all__ = [
    "AgentBackend",
    "ClaudeCliBackend",
    "ClaudeSdkBackend",
    "PermissionHandler",
    "TurnHandle",
    "TurnRequest",
    "build_command",
    "create_backend",
]


def create_backend(name: str, *, claude_command: str = "claude") -> AgentBackend:
    """Build a backend by name ("cli" or "sdk")."""
    if name == "sdk":
        return ClaudeSdkBackend()
    if name == "cli":
        return ClaudeCliBackend(command=claude_command)
    raise ValueError(f"Unknown backend {name!r}; expected 'cli' or 'sdk'")
