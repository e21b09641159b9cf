from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from chorus.engine.errors import ConversationNotFoundError
from chorus.engine.models import ConversationSettings, PermissionMode
from chorus.shared.models.conversation import (
    DEFAULT_TITLE,
    ConversationMessage,
    MessageType,
    generate_title,
)
from chorus.shared.services.conversation_store import ConversationStore


def test_create_and_reload_from_a_fresh_store(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    conv = store.create(
        "ws", "agent-a",
        settings=ConversationSettings(permission_mode=PermissionMode.PLAN),
        repo_path="/repo",
    )
    assert conv.title == DEFAULT_TITLE
    assert (tmp_path / "ws" / "agent-a" / "conversations.json").is_file()

    reopened = ConversationStore(tmp_path)
    loaded = reopened.get(conv.id)
    assert loaded.agent_id == "agent-a"
    assert loaded.repo_path == "/repo"
    assert loaded.settings.permission_mode == PermissionMode.PLAN


def test_unknown_conversation_raises(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    with pytest.raises(ConversationNotFoundError):
        store.get("missing")
    assert store.delete("missing") is False


def test_append_bumps_count_and_updated_at(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    conv = store.create("ws", "agent-a")
    before = conv.updated_at
    time.sleep(0.01)
    store.append_message(conv.id, ConversationMessage(type=MessageType.USER, content="one"))
    store.append_message(conv.id, ConversationMessage(type=MessageType.ASSISTANT, content="two"))

    loaded, messages = store.load(conv.id)
    assert loaded.message_count == 2
    assert loaded.updated_at > before
    assert [m.content for m in messages] == ["one", "two"]


def test_list_is_newest_first(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    first = store.create("ws", "agent-a")
    second = store.create("ws", "agent-a")
    time.sleep(0.01)
    store.append_message(first.id, ConversationMessage(type=MessageType.USER, content="bump"))
    assert [c.id for c in store.list("ws", "agent-a")] == [first.id, second.id]
    assert store.list("ws", "other") == []


def test_tool_result_without_tool_use_is_flagged(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    conv = store.create("ws", "agent-a")
    store.append_message(conv.id, ConversationMessage(
        type=MessageType.TOOL_USE, tool_name="Bash", tool_use_id="t1",
    ))
    paired = store.append_message(conv.id, ConversationMessage(
        type=MessageType.TOOL_RESULT, tool_use_id="t1", content="ok",
    ))
    orphan = store.append_message(conv.id, ConversationMessage(
        type=MessageType.TOOL_RESULT, tool_use_id="t-unknown", content="??",
    ))
    assert paired.unpaired is None
    assert orphan.unpaired is True
    stored = store.messages(conv.id)
    assert stored[-1].unpaired is True
    assert len(stored) == 3


def test_pairing_survives_reload(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    conv = store.create("ws", "agent-a")
    store.append_message(conv.id, ConversationMessage(
        type=MessageType.TOOL_USE, tool_name="Read", tool_use_id="t1",
    ))
    reopened = ConversationStore(tmp_path)
    result = reopened.append_message(conv.id, ConversationMessage(
        type=MessageType.TOOL_RESULT, tool_use_id="t1",
    ))
    assert result.unpaired is None


def test_truncated_trailing_line_is_skipped(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    conv = store.create("ws", "agent-a")
    store.append_message(conv.id, ConversationMessage(type=MessageType.USER, content="kept"))
    path = tmp_path / "ws" / "agent-a" / f"{conv.id}-messages.jsonl"
    with open(path, "a", encoding="utf-8") as f:
        f.write('{"uuid": "x", "type": "assis')
    assert [m.content for m in store.messages(conv.id)] == ["kept"]


def test_messages_file_is_camel_case_jsonl(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    conv = store.create("ws", "agent-a")
    store.append_message(conv.id, ConversationMessage(
        type=MessageType.TOOL_USE, tool_name="Write", tool_use_id="t1", input_tokens=12,
    ))
    path = tmp_path / "ws" / "agent-a" / f"{conv.id}-messages.jsonl"
    record = json.loads(path.read_text(encoding="utf-8").splitlines()[0])
    assert record["toolName"] == "Write"
    assert record["toolUseId"] == "t1"
    assert record["inputTokens"] == 12
    assert "costUsd" not in record


def test_delete_removes_messages_and_empty_dirs(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    conv = store.create("ws", "agent-a")
    store.append_message(conv.id, ConversationMessage(type=MessageType.USER, content="x"))
    assert store.delete(conv.id) is True
    assert not (tmp_path / "ws").exists()
    with pytest.raises(ConversationNotFoundError):
        store.get(conv.id)


def test_settings_merge_and_replace(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    conv = store.create("ws", "agent-a", settings=ConversationSettings(model="opus"))
    merged = store.update_settings(conv.id, ConversationSettings(allowed_tools=["Bash"]))
    assert merged.settings.model == "opus"
    assert merged.settings.allowed_tools == ["Bash"]
    replaced = store.replace_settings(conv.id, ConversationSettings())
    assert replaced.settings.model is None
    assert replaced.settings.allowed_tools is None


def test_session_and_branch_fields(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    conv = store.create("ws", "agent-a")
    created = datetime(2026, 1, 2, tzinfo=timezone.utc)
    store.set_session(conv.id, "sess-1", created)
    store.set_branch(conv.id, "chorus/agent-a/abc", "/wt", repo_path="/repo")
    loaded = ConversationStore(tmp_path).get(conv.id)
    assert loaded.session_id == "sess-1"
    assert loaded.session_created_at == created
    assert loaded.branch_name == "chorus/agent-a/abc"
    assert loaded.worktree_path == "/wt"
    assert loaded.repo_path == "/repo"


def test_delete_by_branch_spans_agents(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    a = store.create("ws", "agent-a")
    b = store.create("ws", "agent-b")
    c = store.create("ws", "agent-b")
    store.set_branch(a.id, "shared")
    store.set_branch(b.id, "shared")
    store.set_branch(c.id, "other")
    assert {x.id for x in store.find_by_branch("ws", "shared")} == {a.id, b.id}
    assert sorted(store.delete_by_branch("ws", "shared")) == sorted([a.id, b.id])
    assert [x.id for x in store.list_workspace("ws")] == [c.id]


def test_to_payload_shape(tmp_path: Path) -> None:
    store = ConversationStore(tmp_path)
    conv = store.create("ws", "agent-a", title="Hello")
    store.append_message(conv.id, ConversationMessage(type=MessageType.USER, content="hi"))
    payload = store.to_payload(conv.id)
    assert payload["conversation"]["title"] == "Hello"
    assert payload["conversation"]["messageCount"] == 1
    assert payload["messages"][0]["type"] == "user"


def test_generate_title() -> None:
    assert generate_title("  Fix   the bug  ") == "Fix the bug"
    assert generate_title("") == DEFAULT_TITLE
    long = generate_title("word " * 40)
    assert len(long) == 50
    assert long.endswith("...")
