from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import web

from chorus.engine.config import EngineConfig
from chorus.engine.engine import ChorusEngine
from chorus.engine.errors import (
    CascadeDeleteError,
    ConversationNotFoundError,
    GitCommandError,
    StaleRequestError,
)
from chorus.engine.git_automation import MergeResult
from chorus.engine.git_ops import NOT_A_REPOSITORY
from chorus.server import ChorusServer


@dataclass
class _Request:
    match_info: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    body: dict | None = None

    @property
    def can_read_body(self) -> bool:
        return self.body is not None

    async def json(self) -> dict:
        return self.body or {}


def _json_payload(resp) -> dict:
    return json.loads(resp.text)


def _build_server(tmp_path: Path) -> tuple[ChorusServer, ChorusEngine]:
    engine = ChorusEngine(EngineConfig(data_dir=str(tmp_path / "data")))
    return ChorusServer(engine), engine


def _mock_server() -> tuple[ChorusServer, MagicMock]:
    engine = MagicMock()
    return ChorusServer(engine), engine


@pytest.mark.asyncio
async def test_health(tmp_path: Path) -> None:
    server, _ = _build_server(tmp_path)
    payload = _json_payload(await server._handle_health(_Request()))
    assert payload["status"] == "ok"
    assert payload["backend"] == "cli"
    assert payload["subscribers"] == 0


@pytest.mark.asyncio
async def test_conversation_round_trip(tmp_path: Path) -> None:
    server, _ = _build_server(tmp_path)
    create = await server._handle_create_conversation(_Request(body={
        "workspaceId": "ws", "agentId": "chorus",
        "settings": {"permissionMode": "plan"},
    }))
    assert create.status == 201
    created = _json_payload(create)
    assert created["agentId"] == "chorus"
    assert created["settings"]["permissionMode"] == "plan"

    listed = _json_payload(await server._handle_list_conversations(
        _Request(query={"workspaceId": "ws", "agentId": "chorus"}),
    ))
    assert [c["id"] for c in listed["conversations"]] == [created["id"]]

    loaded = _json_payload(await server._handle_load_conversation(
        _Request(match_info={"id": created["id"]}),
    ))
    assert loaded["conversation"]["id"] == created["id"]
    assert loaded["messages"] == []

    metrics = _json_payload(await server._handle_metrics(_Request(match_info={"id": created["id"]})))
    assert metrics["contextLimit"] == 0

    deleted = _json_payload(await server._handle_delete_conversation(
        _Request(match_info={"id": created["id"]}),
    ))
    assert deleted == {"deleted": [created["id"]]}


@pytest.mark.asyncio
async def test_missing_fields_are_bad_requests(tmp_path: Path) -> None:
    server, _ = _build_server(tmp_path)
    with pytest.raises(web.HTTPBadRequest):
        await server._handle_list_conversations(_Request(query={"workspaceId": "ws"}))
    with pytest.raises(web.HTTPBadRequest):
        await server._handle_create_conversation(_Request(body={"workspaceId": "ws"}))
    with pytest.raises(web.HTTPBadRequest):
        await server._handle_send(_Request(match_info={"id": "c1"}, body={"message": ""}))


@pytest.mark.asyncio
async def test_workspace_settings_round_trip(tmp_path: Path) -> None:
    server, _ = _build_server(tmp_path)
    root = tmp_path / "ws-root"
    root.mkdir()
    saved = _json_payload(await server._handle_set_workspace_settings(_Request(body={
        "workspaceRoot": str(root), "defaultModel": "opus",
    })))
    assert saved["defaultModel"] == "opus"
    loaded = _json_payload(await server._handle_get_workspace_settings(
        _Request(query={"workspaceRoot": str(root)}),
    ))
    assert loaded["defaultModel"] == "opus"
    assert loaded["defaultPermissionMode"] == "default"


@pytest.mark.asyncio
async def test_send_starts_turn() -> None:
    server, engine = _mock_server()
    engine.send = AsyncMock()
    resp = await server._handle_send(_Request(
        match_info={"id": "c1"},
        body={"message": "  Add a README  ", "repoPath": "/repo"},
    ))
    assert resp.status == 202
    assert _json_payload(resp) == {"status": "started", "conversationId": "c1"}
    engine.send.assert_awaited_once_with(
        "c1", "Add a README", repo_path="/repo", session_id=None, agent_file_path=None,
    )


@pytest.mark.asyncio
async def test_stop_and_permission_handlers() -> None:
    server, engine = _mock_server()
    engine.stop = AsyncMock(return_value=True)
    resp = await server._handle_stop(_Request(
        match_info={"agent_id": "chorus"}, body={"conversationId": "c1"},
    ))
    assert _json_payload(resp) == {"stopped": True}
    engine.stop.assert_awaited_once_with("chorus", "c1")

    resp = await server._handle_respond_permission(_Request(
        match_info={"request_id": "c1-abc"},
        body={"approved": False, "stopCompletely": True},
    ))
    assert _json_payload(resp) == {"status": "resolved"}
    request_id, response = engine.respond_permission.call_args.args
    assert request_id == "c1-abc"
    assert response.approved is False
    assert response.stop_completely is True


@pytest.mark.asyncio
async def test_delete_branch_passes_workspace() -> None:
    server, engine = _mock_server()
    engine.delete_branch = AsyncMock(return_value=["c1", "c2"])
    resp = await server._handle_delete_branch(_Request(query={
        "repo": "/repo", "name": "agent/chorus/s1", "workspaceId": "ws", "force": "true",
    }))
    assert _json_payload(resp) == {"status": "deleted", "deletedConversations": ["c1", "c2"]}
    engine.delete_branch.assert_awaited_once_with(
        "/repo", "agent/chorus/s1", force=True, workspace_id="ws",
    )


@pytest.mark.asyncio
async def test_failed_merge_is_conflict_status() -> None:
    server, engine = _mock_server()
    engine.merge = AsyncMock(return_value=MergeResult(
        False, "feature", "main", False, error="CONFLICT", conflict_files=["a.txt"],
    ))
    resp = await server._handle_merge(_Request(body={
        "repo": "/repo", "source": "feature", "target": "main",
    }))
    assert resp.status == 409
    assert _json_payload(resp)["conflictFiles"] == ["a.txt"]


# ── Error mapping ──


async def _through_middleware(server: ChorusServer, handler, request: _Request):
    return await server._error_middleware(request, handler)


@pytest.mark.asyncio
async def test_not_found_maps_to_404() -> None:
    server, engine = _mock_server()
    engine.store.to_payload.side_effect = ConversationNotFoundError("nope")
    resp = await _through_middleware(
        server, server._handle_load_conversation, _Request(match_info={"id": "nope"}),
    )
    assert resp.status == 404
    assert "nope" in _json_payload(resp)["error"]


@pytest.mark.asyncio
async def test_stale_permission_maps_to_409() -> None:
    server, engine = _mock_server()
    engine.respond_permission.side_effect = StaleRequestError("c1-old")
    resp = await _through_middleware(
        server, server._handle_respond_permission,
        _Request(match_info={"request_id": "c1-old"}, body={"approved": True}),
    )
    assert resp.status == 409
    assert _json_payload(resp)["kind"] == "stale-request"


@pytest.mark.asyncio
async def test_cascade_failure_maps_to_409() -> None:
    server, engine = _mock_server()
    engine.delete_conversation = AsyncMock(side_effect=CascadeDeleteError(
        "c1", "agent/chorus/s1", "branch is not fully merged",
    ))
    resp = await _through_middleware(
        server, server._handle_delete_conversation, _Request(match_info={"id": "c1"}),
    )
    assert resp.status == 409
    payload = _json_payload(resp)
    assert payload["kind"] == "cascade-delete-failure"
    assert payload["branch"] == "agent/chorus/s1"


@pytest.mark.asyncio
async def test_git_failure_maps_to_422() -> None:
    server, engine = _mock_server()
    engine.git_status = AsyncMock(side_effect=GitCommandError(
        ["status"], "fatal: not a git repository", kind=NOT_A_REPOSITORY,
        suggestion="Open a folder that is a Git repository.",
    ))
    resp = await _through_middleware(
        server, server._handle_git_status, _Request(query={"repo": "/tmp/plain"}),
    )
    assert resp.status == 422
    payload = _json_payload(resp)
    assert payload["kind"] == "not-a-repository"
    assert payload["error"] == "fatal: not a git repository"
    assert payload["suggestion"] == "Open a folder that is a Git repository."


@pytest.mark.asyncio
async def test_invalid_json_body_maps_to_400() -> None:
    server, _ = _mock_server()

    class _BadBody(_Request):
        async def json(self) -> dict:
            return json.loads("{not json")

    resp = await _through_middleware(
        server, server._handle_create_conversation, _BadBody(body={}),
    )
    assert resp.status == 400
