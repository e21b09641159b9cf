"""Claude CLI backend: one ``claude -p`` process per turn.

The process gets the prompt on the command line and stdin is closed
straight after spawn; the protocol is one-shot per turn. Its stdout is
line-delimited JSON (``--output-format stream-json --verbose``).

Permission mode and the allowed-tool list are passed as flags. The CLI
cannot ask for approval mid-turn in this mode; tools it refused are
reported in the result event's ``permission_denials``.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import AsyncIterator

from ..errors import ProcessSpawnError
from ..stream_parser import StreamEvent, parse_stream
from .base import AgentBackend, TurnHandle, TurnRequest

logger = logging.getLogger(__name__)


def build_command(command: str, request: TurnRequest) -> list[str]:
    """Build the CLI argv for one turn."""
    settings = request.settings
    cmd = [
        command,
        "-p", request.prompt,
        "--output-format", "stream-json",
        "--verbose",
    ]
    if request.resume_session_id:
        cmd += ["--resume", request.resume_session_id]
    elif request.new_session_id:
        cmd += ["--session-id", request.new_session_id]
    cmd += ["--permission-mode", settings.permission_mode.value]
    if settings.allowed_tools:
        cmd += ["--allowedTools", ",".join(settings.allowed_tools)]
    if settings.model_flag:
        cmd += ["--model", settings.model_flag]
    if request.system_prompt and not request.resume_session_id:
        cmd += ["--append-system-prompt", request.system_prompt]
    return cmd


class CliTurnHandle(TurnHandle):
    """Wraps the CLI subprocess for one turn."""

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self._stderr_task: asyncio.Task[bytes] | None = None
        if proc.stderr is not None:
            # Drain stderr concurrently so a chatty CLI cannot block on a full pipe
            self._stderr_task = asyncio.create_task(proc.stderr.read())
        self._stderr = ""

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def stderr(self) -> str:
        return self._stderr

    async def events(self) -> AsyncIterator[StreamEvent]:
        assert self._proc.stdout is not None
        async for event in parse_stream(self._proc.stdout):
            yield event

    async def wait(self) -> int | None:
        code = await self._proc.wait()
        if self._stderr_task is not None:
            try:
                raw = await self._stderr_task
            except asyncio.CancelledError:
                raw = b""
            self._stderr = raw.decode("utf-8", errors="replace")
            self._stderr_task = None
        return code

    async def terminate(self, timeout: float) -> bool:
        if self._proc.returncode is not None:
            return True
        pid = self._proc.pid
        try:
            self._proc.terminate()
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Agent process %d ignored SIGTERM; killing", pid)
                self._proc.kill()
                await self._proc.wait()
            logger.info("Agent process stopped (pid=%d)", pid)
        except ProcessLookupError:
            pass
        return True


class ClaudeCliBackend(AgentBackend):
    """Runs turns through the ``claude`` command-line tool."""

    def __init__(self, command: str = "claude") -> None:
        self._command = command

    @property
    def name(self) -> str:
        return "cli"

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    async def start(self, request: TurnRequest) -> TurnHandle:
        command = self.resolve_command(self._command)
        cmd = build_command(command, request)
        logger.info(
            "Spawning agent: conversation=%s cwd=%s resume=%s mode=%s",
            request.conversation_id[:8],
            request.cwd,
            (request.resume_session_id or "")[:8] or None,
            request.settings.permission_mode.value,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=request.cwd,
                env={**os.environ},
            )
        except FileNotFoundError as exc:
            if not os.path.isdir(request.cwd):
                raise ProcessSpawnError(
                    command, f"working directory does not exist: {request.cwd}"
                ) from exc
            raise ProcessSpawnError(
                command, "CLI not found. Install the Claude CLI or set CHORUS_CLAUDE_COMMAND."
            ) from exc
        except OSError as exc:
            raise ProcessSpawnError(command, str(exc)) from exc

        if proc.stdin is not None:
            proc.stdin.close()
        return CliTurnHandle(proc)
