"""Registry of live agent turns and known sessions.

Owned by one ProcessSupervisor instance; there is no module-level
state. Turns are keyed by conversation id (or by agent id when the
engine runs one process per agent). Sessions are tracked per
conversation and mirrored per agent so ``get_session_id(agent_id)``
and ``clear_session(agent_id)`` work without a store lookup.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from .backends.base import TurnHandle
from .lifecycle import LIVE_STATES, validate_transition
from .models import ProcessState, _utcnow

logger = logging.getLogger(__name__)


@dataclass
class SessionEntry:
    """State of one supervised key."""
    key: str
    conversation_id: str
    agent_id: str
    state: ProcessState = ProcessState.IDLE
    task: asyncio.Task | None = None
    handle: TurnHandle | None = None
    session_id: str | None = None
    session_created_at: datetime | None = None
    stopping: bool = False
    started_at: datetime = field(default_factory=_utcnow)

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    def transition(self, target: ProcessState) -> None:
        validate_transition(self.state, target)
        logger.debug(
            "Process %s: %s -> %s", self.key[:8], self.state.value, target.value
        )
        self.state = target


class SessionRegistry:
    """Keyed store of turn entries and session ids."""

    def __init__(self) -> None:
        self._entries: dict[str, SessionEntry] = {}
        self._agent_sessions: dict[str, str] = {}

    def get(self, key: str) -> SessionEntry | None:
        return self._entries.get(key)

    def ensure(self, key: str, conversation_id: str, agent_id: str) -> SessionEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = SessionEntry(key=key, conversation_id=conversation_id, agent_id=agent_id)
            self._entries[key] = entry
        else:
            entry.conversation_id = conversation_id
            entry.agent_id = agent_id
        return entry

    def remove(self, key: str) -> SessionEntry | None:
        return self._entries.pop(key, None)

    def live(self) -> list[SessionEntry]:
        return [e for e in self._entries.values() if e.is_live]

    def for_agent(self, agent_id: str) -> list[SessionEntry]:
        return [e for e in self._entries.values() if e.agent_id == agent_id]

    def for_conversation(self, conversation_id: str) -> SessionEntry | None:
        for entry in self._entries.values():
            if entry.conversation_id == conversation_id:
                return entry
        return None

    def set_session(
        self,
        key: str,
        session_id: str,
        created_at: datetime | None = None,
    ) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.session_id = session_id
            entry.session_created_at = created_at
            self._agent_sessions[entry.agent_id] = session_id

    def session_for_agent(self, agent_id: str) -> str | None:
        return self._agent_sessions.get(agent_id)

    def clear_agent_session(self, agent_id: str) -> None:
        self._agent_sessions.pop(agent_id, None)
        for entry in self.for_agent(agent_id):
            entry.session_id = None
            entry.session_created_at = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
