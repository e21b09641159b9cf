"""Process supervisor: owns the lifecycle of every agent turn.

At most one live turn exists per key. Starting a turn on a key that is
still running stops the old one and waits for it to exit first. Every
state change goes through ``lifecycle.validate_transition``::

    idle -> spawning -> running -> succeeded | failed | killed -> idle

A turn succeeds only when the backend delivered the terminal result
event and exited cleanly. Exit 0 without a result is a protocol
violation; a non-zero exit is an error carrying the code and stderr.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from ..adapters.events import ChorusEvent, SessionUpdated, StatusChanged
from .backends.base import AgentBackend, TurnRequest
from .errors import (
    ProcessExitError,
    ProcessSpawnError,
    ProtocolViolationError,
)
from .models import AgentStatus, ProcessState, _utcnow, to_iso
from .permissions import PermissionBroker
from .session_registry import SessionEntry, SessionRegistry
from .stream_parser import ResultEvent, StreamEvent, SystemInitEvent

logger = logging.getLogger(__name__)

Emitter = Callable[[ChorusEvent], Awaitable[None]]
EventHandler = Callable[[StreamEvent], Awaitable[None]]


@dataclass
class TurnOutcome:
    """How a supervised turn ended."""
    key: str
    conversation_id: str
    agent_id: str
    state: ProcessState = ProcessState.RUNNING
    exit_code: int | None = None
    error: Exception | None = None
    result: ResultEvent | None = None
    session_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == ProcessState.SUCCEEDED

    @property
    def killed(self) -> bool:
        return self.state == ProcessState.KILLED


FinishHandler = Callable[[TurnOutcome], Awaitable[None]]


class ProcessSupervisor:
    """Runs turns through a backend, one live turn per key."""

    def __init__(
        self,
        backend: AgentBackend,
        *,
        registry: SessionRegistry | None = None,
        broker: PermissionBroker | None = None,
        emit: Emitter | None = None,
        kill_timeout: float = 5.0,
    ) -> None:
        self._backend = backend
        self._registry = registry or SessionRegistry()
        self._broker = broker
        self._emit = emit
        self._kill_timeout = kill_timeout

    @property
    def backend(self) -> AgentBackend:
        return self._backend

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def state(self, key: str) -> ProcessState:
        entry = self._registry.get(key)
        return entry.state if entry else ProcessState.IDLE

    def is_running(self, key: str) -> bool:
        entry = self._registry.get(key)
        return entry is not None and entry.is_live

    async def _send(self, event: ChorusEvent) -> None:
        if self._emit is None:
            return
        try:
            await self._emit(event)
        except Exception:
            logger.exception("Event emit failed for %s", event.event_type)

    async def start_turn(
        self,
        key: str,
        request: TurnRequest,
        *,
        on_event: EventHandler | None = None,
        on_finish: FinishHandler | None = None,
    ) -> asyncio.Task[TurnOutcome]:
        """Start a turn under ``key``, replacing any live one.

        Returns the task driving the turn; awaiting it yields the
        TurnOutcome after ``on_finish`` has run.
        """
        existing = self._registry.get(key)
        if existing is not None and existing.is_live:
            logger.info("Replacing live turn for %s", key[:8])
            await self.stop(key)

        entry = self._registry.ensure(key, request.conversation_id, request.agent_id)
        entry.stopping = False
        entry.started_at = _utcnow()
        entry.transition(ProcessState.SPAWNING)
        await self._send(StatusChanged(
            agent_id=request.agent_id,
            conversation_id=request.conversation_id,
            status=AgentStatus.BUSY.value,
        ))
        entry.task = asyncio.create_task(
            self._run(entry, request, on_event, on_finish),
            name=f"turn-{key[:8]}",
        )
        return entry.task

    async def _run(
        self,
        entry: SessionEntry,
        request: TurnRequest,
        on_event: EventHandler | None,
        on_finish: FinishHandler | None,
    ) -> TurnOutcome:
        outcome = TurnOutcome(
            key=entry.key,
            conversation_id=request.conversation_id,
            agent_id=request.agent_id,
            state=entry.state,
        )
        reraise = False
        try:
            await self._drive(entry, request, on_event, outcome)
        except asyncio.CancelledError:
            outcome.state = ProcessState.KILLED
            reraise = not entry.stopping
        except ProcessSpawnError as exc:
            logger.error("Spawn failed for %s: %s", entry.key[:8], exc)
            outcome.state = ProcessState.FAILED
            outcome.error = exc
        except Exception as exc:
            logger.exception("Turn for %s crashed", entry.key[:8])
            outcome.state = ProcessState.FAILED
            outcome.error = exc
            if entry.handle is not None:
                await entry.handle.terminate(self._kill_timeout)

        await self._finish(entry, outcome, on_finish)
        if reraise:
            raise asyncio.CancelledError()
        return outcome

    async def _drive(
        self,
        entry: SessionEntry,
        request: TurnRequest,
        on_event: EventHandler | None,
        outcome: TurnOutcome,
    ) -> None:
        handle = await self._backend.start(request)
        entry.handle = handle
        entry.transition(ProcessState.RUNNING)
        outcome.state = ProcessState.RUNNING
        logger.info(
            "Turn running: key=%s pid=%s backend=%s",
            entry.key[:8], handle.pid, self._backend.name,
        )
        if entry.stopping:
            await handle.terminate(self._kill_timeout)

        async for event in handle.events():
            if isinstance(event, SystemInitEvent) and event.session_id:
                await self._on_session(entry, event.session_id)
                outcome.session_id = event.session_id
            elif isinstance(event, ResultEvent):
                outcome.result = event
                if event.session_id and not outcome.session_id:
                    outcome.session_id = event.session_id
            if on_event is not None:
                await on_event(event)

        code = await handle.wait()
        outcome.exit_code = code
        if entry.stopping:
            outcome.state = ProcessState.KILLED
        elif code not in (0, None):
            outcome.state = ProcessState.FAILED
            outcome.error = ProcessExitError(request.conversation_id, code, handle.stderr)
        elif outcome.result is None:
            outcome.state = ProcessState.FAILED
            outcome.error = ProtocolViolationError(request.conversation_id, code)
        else:
            outcome.state = ProcessState.SUCCEEDED

    async def _on_session(self, entry: SessionEntry, session_id: str) -> None:
        if session_id != entry.session_id or entry.session_created_at is None:
            self._registry.set_session(entry.key, session_id, _utcnow())
        await self._send(SessionUpdated(
            conversation_id=entry.conversation_id,
            session_id=session_id,
            session_created_at=to_iso(entry.session_created_at),
        ))

    async def _finish(
        self,
        entry: SessionEntry,
        outcome: TurnOutcome,
        on_finish: FinishHandler | None,
    ) -> None:
        entry.transition(outcome.state)
        entry.handle = None
        if outcome.error is not None:
            logger.warning("Turn for %s ended %s: %s", entry.key[:8], outcome.state.value, outcome.error)
        else:
            logger.info("Turn for %s ended %s", entry.key[:8], outcome.state.value)

        if on_finish is not None:
            try:
                await on_finish(outcome)
            except Exception:
                logger.exception("Turn finish handler failed for %s", entry.key[:8])

        entry.transition(ProcessState.IDLE)
        entry.task = None
        if outcome.error is not None:
            await self._send(StatusChanged(
                agent_id=outcome.agent_id,
                conversation_id=outcome.conversation_id,
                status=AgentStatus.ERROR.value,
                error=str(outcome.error),
            ))
        else:
            await self._send(StatusChanged(
                agent_id=outcome.agent_id,
                conversation_id=outcome.conversation_id,
                status=AgentStatus.READY.value,
            ))

    async def stop(self, key: str) -> bool:
        """Stop the live turn for ``key`` and wait for it to exit.

        Idempotent: returns False when nothing was running.
        """
        entry = self._registry.get(key)
        if entry is None or not entry.is_live or entry.task is None:
            return False
        task = entry.task
        entry.stopping = True
        if self._broker is not None:
            self._broker.cancel(entry.conversation_id)

        ends_by_itself = False
        if entry.handle is not None:
            ends_by_itself = await entry.handle.terminate(self._kill_timeout)
        if not ends_by_itself and not task.done():
            task.cancel()
        await asyncio.wait({task})
        logger.info("Stopped turn for %s", key[:8])
        return True

    async def stop_all(self) -> int:
        count = 0
        for entry in self._registry.live():
            if await self.stop(entry.key):
                count += 1
        return count

