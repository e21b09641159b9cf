"""Abstract base for agent backends.

A backend runs one turn of an agent and exposes its output as a stream
of protocol events. Two implementations share this contract:

- ClaudeCliBackend: spawns the ``claude`` CLI per turn and parses its
  stream-json stdout. Permissions are fixed by flags at spawn time.
- ClaudeSdkBackend: drives ``claude_agent_sdk.query()`` in-process and
  routes tool approvals through a blocking ``can_use_tool`` callback.

The supervisor never branches on which one it holds.
"""
from __future__ import annotations

import abc
import logging
import shutil
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..models import PermissionOutcome, ResolvedSettings
from ..stream_parser import StreamEvent

logger = logging.getLogger(__name__)

# async def handler(tool_name, tool_input) -> PermissionOutcome
PermissionHandler = Callable[[str, dict[str, Any]], Awaitable[PermissionOutcome]]


@dataclass
class TurnRequest:
    """Everything a backend needs to run one turn."""
    conversation_id: str
    agent_id: str
    prompt: str
    cwd: str
    settings: ResolvedSettings = field(default_factory=ResolvedSettings)
    # Existing session to continue
    resume_session_id: str | None = None
    # Session id to request for a brand-new session
    new_session_id: str | None = None
    # Agent definition text; only sent when starting a new session
    system_prompt: str | None = None
    permission_handler: PermissionHandler | None = None


class TurnHandle(abc.ABC):
    """A running turn."""

    @abc.abstractmethod
    def events(self) -> AsyncIterator[StreamEvent]:
        """Yield protocol events in order until the turn ends."""

    @abc.abstractmethod
    async def wait(self) -> int | None:
        """Wait for the turn to end. Returns the exit code, if any."""

    @abc.abstractmethod
    async def terminate(self, timeout: float) -> bool:
        """Ask the turn to stop.

        Returns True when the event stream will end by itself, False
        when the caller must cancel the consuming task.
        """

    @property
    def stderr(self) -> str:
        return ""

    @property
    def pid(self) -> int | None:
        return None


class AgentBackend(abc.ABC):
    """Abstract backend interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'cli', 'sdk')."""

    @abc.abstractmethod
    async def start(self, request: TurnRequest) -> TurnHandle:
        """Start a turn. Raises ProcessSpawnError if it cannot start."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check whether the backend's runtime is installed."""

    @property
    def negotiates_permissions(self) -> bool:
        """Whether tool approvals are asked mid-turn via the handler."""
        return False

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a binary by preferring the configured command, then fallback.

        An unresolvable command is returned as-is so spawn errors can
        name what was configured.
        """
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug("Command %s not found; falling back to %s", command, fallback)
            return fallback
        return command or (fallback or "")
