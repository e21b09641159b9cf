from __future__ import annotations

import asyncio
import json
import stat
from pathlib import Path

import pytest

from chorus.engine.backends import ClaudeCliBackend, build_command
from chorus.engine.backends.base import TurnRequest
from chorus.engine.errors import ProcessSpawnError
from chorus.engine.models import PermissionMode, ResolvedSettings
from chorus.engine.stream_parser import (
    AssistantEvent,
    RawTextEvent,
    ResultEvent,
    SystemInitEvent,
)


def _request(cwd: str = ".", **overrides) -> TurnRequest:
    fields = {
        "conversation_id": "conv-1",
        "agent_id": "chorus",
        "prompt": "Add a README",
        "cwd": cwd,
    }
    fields.update(overrides)
    return TurnRequest(**fields)


def _fake_cli(tmp_path: Path, body: str) -> str:
    script = tmp_path / "fake-claude"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


def _echo(data: dict) -> str:
    return f"echo '{json.dumps(data)}'\n"


# ── build_command ──


def test_new_session_command() -> None:
    cmd = build_command("claude", _request(new_session_id="sess-new"))
    assert cmd[:6] == ["claude", "-p", "Add a README", "--output-format", "stream-json", "--verbose"]
    assert cmd[cmd.index("--session-id") + 1] == "sess-new"
    assert "--resume" not in cmd
    assert cmd[cmd.index("--permission-mode") + 1] == "default"
    assert "--allowedTools" not in cmd
    assert "--model" not in cmd


def test_resume_command_skips_system_prompt() -> None:
    cmd = build_command("claude", _request(
        resume_session_id="sess-old",
        new_session_id="ignored",
        system_prompt="You are a reviewer.",
    ))
    assert cmd[cmd.index("--resume") + 1] == "sess-old"
    assert "--session-id" not in cmd
    assert "--append-system-prompt" not in cmd


def test_settings_become_flags() -> None:
    settings = ResolvedSettings(
        permission_mode=PermissionMode.ACCEPT_EDITS,
        allowed_tools=["Bash", "WebFetch"],
        model="opus",
    )
    cmd = build_command("claude", _request(
        settings=settings, new_session_id="s", system_prompt="Agent definition",
    ))
    assert cmd[cmd.index("--permission-mode") + 1] == "acceptEdits"
    assert cmd[cmd.index("--allowedTools") + 1] == "Bash,WebFetch"
    assert cmd[cmd.index("--model") + 1] == "opus"
    assert cmd[cmd.index("--append-system-prompt") + 1] == "Agent definition"


# ── Spawning ──


@pytest.mark.asyncio
async def test_missing_binary_raises_spawn_error(tmp_path: Path) -> None:
    backend = ClaudeCliBackend(command="definitely-not-a-real-claude-binary")
    assert backend.is_available() is False
    with pytest.raises(ProcessSpawnError) as excinfo:
        await backend.start(_request(cwd=str(tmp_path)))
    assert "CLI not found" in str(excinfo.value)


@pytest.mark.asyncio
async def test_missing_working_directory_is_named(tmp_path: Path) -> None:
    command = _fake_cli(tmp_path, "exit 0\n")
    backend = ClaudeCliBackend(command=command)
    with pytest.raises(ProcessSpawnError) as excinfo:
        await backend.start(_request(cwd=str(tmp_path / "gone")))
    assert "working directory" in str(excinfo.value)


@pytest.mark.asyncio
async def test_streams_events_in_order(tmp_path: Path) -> None:
    body = (
        _echo({"type": "system", "subtype": "init", "session_id": "s-1"})
        + _echo({"type": "assistant", "message": {"content": [{"type": "text", "text": "Hi"}]}})
        + "echo 'plain output'\n"
        + _echo({"type": "result", "subtype": "success", "session_id": "s-1", "num_turns": 1})
        + "echo 'warning: something' >&2\n"
    )
    backend = ClaudeCliBackend(command=_fake_cli(tmp_path, body))
    handle = await backend.start(_request(cwd=str(tmp_path)))
    assert handle.pid is not None

    events = [event async for event in handle.events()]
    assert [type(e) for e in events] == [SystemInitEvent, AssistantEvent, RawTextEvent, ResultEvent]
    assert events[0].session_id == "s-1"
    assert events[2].text == "plain output"
    assert await handle.wait() == 0
    assert "warning: something" in handle.stderr


@pytest.mark.asyncio
async def test_nonzero_exit_code_is_reported(tmp_path: Path) -> None:
    backend = ClaudeCliBackend(command=_fake_cli(tmp_path, "echo 'boom' >&2\nexit 3\n"))
    handle = await backend.start(_request(cwd=str(tmp_path)))
    assert [event async for event in handle.events()] == []
    assert await handle.wait() == 3
    assert handle.stderr.strip() == "boom"


@pytest.mark.asyncio
async def test_prompt_and_cwd_reach_the_process(tmp_path: Path) -> None:
    body = 'printf "%s\\n" "$PWD" > seen.txt\nprintf "%s\\n" "$@" >> seen.txt\n'
    backend = ClaudeCliBackend(command=_fake_cli(tmp_path, body))
    handle = await backend.start(_request(cwd=str(tmp_path), new_session_id="s-2"))
    assert [event async for event in handle.events()] == []
    assert await handle.wait() == 0

    lines = (tmp_path / "seen.txt").read_text(encoding="utf-8").splitlines()
    assert Path(lines[0]).resolve() == tmp_path.resolve()
    assert lines[1:3] == ["-p", "Add a README"]
    assert "s-2" in lines


@pytest.mark.asyncio
async def test_terminate_ends_the_stream(tmp_path: Path) -> None:
    backend = ClaudeCliBackend(command=_fake_cli(tmp_path, "exec sleep 30\n"))
    handle = await backend.start(_request(cwd=str(tmp_path)))

    async def consume() -> list:
        return [event async for event in handle.events()]

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0.1)
    assert await handle.terminate(timeout=5) is True
    assert await asyncio.wait_for(consumer, timeout=5) == []
    assert await handle.wait() != 0
    # Already exited: terminating again is a no-op
    assert await handle.terminate(timeout=5) is True
