"""Permission broker: correlates tool-approval requests with user answers.

Per conversation there is at most one outstanding request. A backend
that hits a tool needing approval calls ``check()``; the broker decides
from the active permission mode whether to ask at all, and if so emits
a ``permission-request`` event and suspends the caller until
``respond()`` (or the timeout, or ``cancel()``) resolves it.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from chorus.adapters.events import ChorusEvent, PermissionRequested

from .errors import PermissionConflictError, StaleRequestError
from .models import (
    ALWAYS_AVAILABLE_TOOLS,
    EDIT_TOOLS,
    MUTATING_TOOLS,
    PermissionMode,
    PermissionOutcome,
    PermissionRequest,
    PermissionResponse,
    PermissionState,
    ResolvedSettings,
)

logger = logging.getLogger(__name__)

Emitter = Callable[[ChorusEvent], Awaitable[None]]

PLAN_MODE_DENIAL = "Plan mode: changes are not allowed until the plan is approved"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


def evaluate_policy(tool_name: str, settings: ResolvedSettings) -> Decision:
    """Decide whether a tool call needs the user, without side effects."""
    mode = settings.permission_mode
    if mode == PermissionMode.BYPASS:
        return Decision.ALLOW
    if tool_name in ALWAYS_AVAILABLE_TOOLS or tool_name in settings.allowed_tools:
        return Decision.ALLOW
    if mode == PermissionMode.PLAN and tool_name in MUTATING_TOOLS:
        return Decision.DENY
    if mode == PermissionMode.ACCEPT_EDITS and tool_name in EDIT_TOOLS:
        return Decision.ALLOW
    return Decision.ASK


class _Pending:
    __slots__ = ("request", "future")

    def __init__(self, request: PermissionRequest, future: asyncio.Future) -> None:
        self.request = request
        self.future = future


class PermissionBroker:
    """Tracks outstanding permission requests across conversations."""

    def __init__(
        self,
        emit: Emitter | None = None,
        *,
        timeout_seconds: float = 300.0,
    ) -> None:
        self._emit = emit
        self._timeout = timeout_seconds
        self._pending: dict[str, _Pending] = {}
        self._by_conversation: dict[str, str] = {}

    def outstanding(self, conversation_id: str) -> PermissionRequest | None:
        request_id = self._by_conversation.get(conversation_id)
        if request_id is None:
            return None
        pending = self._pending.get(request_id)
        return pending.request if pending else None

    @property
    def outstanding_count(self) -> int:
        return len(self._pending)

    async def check(
        self,
        conversation_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        settings: ResolvedSettings,
    ) -> PermissionOutcome:
        """Apply the mode policy, asking the user only when needed."""
        decision = evaluate_policy(tool_name, settings)
        if decision == Decision.ALLOW:
            return PermissionOutcome(state=PermissionState.APPROVED)
        if decision == Decision.DENY:
            logger.info(
                "Auto-denied %s for conversation=%s (plan mode)",
                tool_name, conversation_id[:8],
            )
            return PermissionOutcome(
                state=PermissionState.DENIED, reason=PLAN_MODE_DENIAL,
            )
        return await self.request(conversation_id, tool_name, tool_input)

    async def request(
        self,
        conversation_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
    ) -> PermissionOutcome:
        """Emit a permission-request and wait for the answer."""
        existing = self._by_conversation.get(conversation_id)
        if existing is not None:
            raise PermissionConflictError(conversation_id, existing)

        loop = asyncio.get_running_loop()
        request = PermissionRequest(
            conversation_id=conversation_id,
            tool_name=tool_name,
            tool_input=dict(tool_input),
        )
        future: asyncio.Future[PermissionOutcome] = loop.create_future()
        self._pending[request.request_id] = _Pending(request, future)
        self._by_conversation[conversation_id] = request.request_id
        logger.info(
            "Permission request %s: conversation=%s tool=%s",
            request.request_id[-8:], conversation_id[:8], tool_name,
        )

        try:
            if self._emit is not None:
                await self._emit(PermissionRequested(
                    request_id=request.request_id,
                    conversation_id=conversation_id,
                    tool_name=tool_name,
                    tool_input=request.tool_input,
                ))
            timeout = self._timeout if self._timeout > 0 else None
            try:
                outcome = await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Permission request %s timed out after %.0fs",
                    request.request_id[-8:], self._timeout,
                )
                outcome = PermissionOutcome(state=PermissionState.TIMED_OUT)
            request.state = outcome.state
            return outcome
        finally:
            self._pending.pop(request.request_id, None)
            if self._by_conversation.get(conversation_id) == request.request_id:
                del self._by_conversation[conversation_id]
            if not future.done():
                future.cancel()

    def respond(self, request_id: str, response: PermissionResponse) -> PermissionRequest:
        """Resolve an outstanding request. Unknown ids raise StaleRequestError."""
        pending = self._pending.get(request_id)
        if pending is None or pending.future.done():
            logger.warning("No outstanding permission request %s", request_id)
            raise StaleRequestError(request_id)

        state = PermissionState.APPROVED if response.approved else PermissionState.DENIED
        pending.future.set_result(PermissionOutcome(
            state=state,
            reason=response.reason,
            stop_completely=response.stop_completely,
        ))
        logger.info(
            "Permission %s resolved: %s%s",
            request_id[-8:], state.value,
            " (stop completely)" if response.stop_completely else "",
        )
        return pending.request

    def cancel(self, conversation_id: str) -> bool:
        """Resolve the conversation's outstanding request as cancelled."""
        request_id = self._by_conversation.get(conversation_id)
        if request_id is None:
            return False
        pending = self._pending.get(request_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(PermissionOutcome(state=PermissionState.CANCELLED))
        logger.info("Permission %s cancelled (agent stopped)", request_id[-8:])
        return True

    def cancel_all(self) -> int:
        count = 0
        for conversation_id in list(self._by_conversation):
            if self.cancel(conversation_id):
                count += 1
        return count
