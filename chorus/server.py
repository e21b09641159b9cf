"""HTTP + SSE server for the Chorus engine.

Exposes the engine's command surface as a JSON REST API and streams
every engine event to subscribers over Server-Sent Events.

Usage:
    chorus serve [--host HOST] [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from chorus.adapters.events import event_to_dict
from chorus.engine.engine import ChorusEngine
from chorus.engine.errors import (
    CascadeDeleteError,
    ChorusError,
    ConversationNotFoundError,
    GitCommandError,
    PermissionConflictError,
    StaleRequestError,
)
from chorus.engine.models import ConversationSettings, PermissionResponse

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 30.0


def _error(message: str, status: int, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


class ChorusServer:
    """aiohttp application around one ChorusEngine.

    Thin adapter: all state lives in the engine. This class only handles
    HTTP routing, SSE fan-out and error mapping.
    """

    def __init__(
        self,
        engine: ChorusEngine,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self._engine = engine
        self._host = host
        self._port = port
        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._error_middleware]
        )
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-chorus-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s", request.method, request.path_qs, req_id)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except ConversationNotFoundError as exc:
            return _error(str(exc), 404)
        except StaleRequestError as exc:
            return _error(str(exc), 409, kind="stale-request")
        except PermissionConflictError as exc:
            return _error(str(exc), 409, kind="permission-conflict")
        except CascadeDeleteError as exc:
            return _error(str(exc), 409, kind="cascade-delete-failure", branch=exc.branch)
        except GitCommandError as exc:
            return web.json_response(exc.to_dict(), status=422)
        except ChorusError as exc:
            return _error(str(exc), 400)
        except json.JSONDecodeError:
            return _error("Request body is not valid JSON", 400)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        # Conversations
        r.add_get("/conversations", self._handle_list_conversations)
        r.add_post("/conversations", self._handle_create_conversation)
        r.add_get("/conversations/{id}", self._handle_load_conversation)
        r.add_delete("/conversations/{id}", self._handle_delete_conversation)
        r.add_post("/conversations/{id}/settings", self._handle_update_settings)
        r.add_get("/conversations/{id}/metrics", self._handle_metrics)
        # Agent turns
        r.add_post("/conversations/{id}/send", self._handle_send)
        r.add_post("/agents/{agent_id}/stop", self._handle_stop)
        r.add_get("/agents/{agent_id}/session", self._handle_get_session)
        r.add_delete("/agents/{agent_id}/session", self._handle_clear_session)
        r.add_post("/permissions/{request_id}", self._handle_respond_permission)
        # Workspace settings
        r.add_get("/workspace/settings", self._handle_get_workspace_settings)
        r.add_post("/workspace/settings", self._handle_set_workspace_settings)
        # Git
        r.add_get("/git/status", self._handle_git_status)
        r.add_get("/git/log", self._handle_git_log)
        r.add_get("/git/branches", self._handle_list_branches)
        r.add_get("/git/agent-branches", self._handle_list_agent_branches)
        r.add_get("/git/diff", self._handle_diff_between_branches)
        r.add_get("/git/sync-status", self._handle_sync_status)
        r.add_get("/git/worktrees", self._handle_list_worktrees)
        r.add_post("/git/worktrees", self._handle_create_worktree)
        r.add_delete("/git/worktrees", self._handle_remove_worktree)
        r.add_post("/git/branches", self._handle_create_branch)
        r.add_delete("/git/branches", self._handle_delete_branch)
        r.add_post("/git/checkout", self._handle_checkout)
        r.add_post("/git/commit", self._handle_commit)
        r.add_get("/git/merge-analysis", self._handle_analyze_merge)
        r.add_post("/git/merge", self._handle_merge)
        r.add_post("/git/push", self._handle_push)
        r.add_post("/git/pull", self._handle_pull)
        r.add_post("/git/fetch", self._handle_fetch)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server, print the port to stdout, and run until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        sockets = getattr(getattr(site, "_server", None), "sockets", None) or []
        if sockets:
            self._port = sockets[0].getsockname()[1]
        sys.stdout.write(json.dumps({"port": self._port}) + "\n")
        sys.stdout.flush()
        logger.info("Chorus server listening on %s:%d", self._host, self._port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._engine.shutdown()
            await runner.cleanup()

    # ── Helpers ──

    @staticmethod
    def _query(request: web.Request, name: str) -> str:
        value = request.query.get(name, "").strip()
        if not value:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": f"Missing query parameter '{name}'"}),
                content_type="application/json",
            )
        return value

    @staticmethod
    async def _body(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        data = await request.json()
        if not isinstance(data, dict):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Request body must be a JSON object"}),
                content_type="application/json",
            )
        return data

    @staticmethod
    def _require(body: dict[str, Any], name: str) -> Any:
        value = body.get(name)
        if value in (None, ""):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": f"Missing field '{name}'"}),
                content_type="application/json",
            )
        return value

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "backend": self._engine.supervisor.backend.name,
            "subscribers": self._engine.events.subscriber_count,
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        subscription = self._engine.events.subscribe()
        logger.info(
            "SSE client connected req=%s active_clients=%d",
            request.get("req_id", "unknown"), self._engine.events.subscriber_count,
        )
        try:
            await response.write(b"event: connected\ndata: {}\n\n")
            while not subscription.closed:
                try:
                    event = await subscription.get(timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue
                payload = event_to_dict(event)
                data = json.dumps(payload)
                await response.write(f"event: {payload['event']}\ndata: {data}\n\n".encode())
        except (ConnectionResetError, asyncio.CancelledError):
            pass
        finally:
            subscription.close()
            logger.info(
                "SSE client disconnected req=%s active_clients=%d",
                request.get("req_id", "unknown"), self._engine.events.subscriber_count,
            )
        return response

    async def _handle_list_conversations(self, request: web.Request) -> web.Response:
        workspace_id = self._query(request, "workspaceId")
        agent_id = self._query(request, "agentId")
        conversations = self._engine.list_conversations(workspace_id, agent_id)
        return web.json_response({"conversations": [c.to_dict() for c in conversations]})

    async def _handle_create_conversation(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        conv = self._engine.create_conversation(
            self._require(body, "workspaceId"),
            self._require(body, "agentId"),
            title=body.get("title"),
            settings=ConversationSettings.from_dict(body.get("settings")),
            repo_path=body.get("repoPath"),
        )
        return web.json_response(conv.to_dict(), status=201)

    async def _handle_load_conversation(self, request: web.Request) -> web.Response:
        return web.json_response(self._engine.store.to_payload(request.match_info["id"]))

    async def _handle_delete_conversation(self, request: web.Request) -> web.Response:
        force = request.query.get("force", "").lower() in {"1", "true", "yes"}
        keep_branch = request.query.get("keepBranch", "").lower() in {"1", "true", "yes"}
        deleted = await self._engine.delete_conversation(
            request.match_info["id"], delete_branch=not keep_branch, force=force,
        )
        return web.json_response({"deleted": deleted})

    async def _handle_update_settings(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        conv = self._engine.update_conversation_settings(
            request.match_info["id"], ConversationSettings.from_dict(body),
        )
        return web.json_response(conv.to_dict())

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        return web.json_response(self._engine.metrics(request.match_info["id"]).to_dict())

    async def _handle_send(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        message = str(self._require(body, "message")).strip()
        conversation_id = request.match_info["id"]
        await self._engine.send(
            conversation_id,
            message,
            repo_path=body.get("repoPath"),
            session_id=body.get("sessionId"),
            agent_file_path=body.get("agentFilePath"),
        )
        return web.json_response({"status": "started", "conversationId": conversation_id}, status=202)

    async def _handle_stop(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        stopped = await self._engine.stop(
            request.match_info["agent_id"], body.get("conversationId"),
        )
        return web.json_response({"stopped": stopped})

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session_id = self._engine.get_session_id(
            request.match_info["agent_id"], request.query.get("conversationId") or None,
        )
        return web.json_response({"sessionId": session_id})

    async def _handle_clear_session(self, request: web.Request) -> web.Response:
        self._engine.clear_session(
            request.match_info["agent_id"], request.query.get("conversationId") or None,
        )
        return web.json_response({"status": "cleared"})

    async def _handle_respond_permission(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        request_id = request.match_info["request_id"]
        response = PermissionResponse.from_dict(body)
        logger.info(
            "Resolve permission request_id=%s approved=%s",
            request_id[-8:], response.approved,
        )
        self._engine.respond_permission(request_id, response)
        return web.json_response({"status": "resolved"})

    async def _handle_get_workspace_settings(self, request: web.Request) -> web.Response:
        root = self._query(request, "workspaceRoot")
        return web.json_response(self._engine.get_workspace_settings(root).to_dict())

    async def _handle_set_workspace_settings(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        root = self._require(body, "workspaceRoot")
        patch = {k: v for k, v in body.items() if k != "workspaceRoot"}
        return web.json_response(self._engine.set_workspace_settings(root, patch).to_dict())

    async def _handle_git_status(self, request: web.Request) -> web.Response:
        files = await self._engine.git_status(self._query(request, "repo"))
        return web.json_response({"files": [f.to_dict() for f in files]})

    async def _handle_git_log(self, request: web.Request) -> web.Response:
        limit = int(request.query.get("limit", "50"))
        commits = await self._engine.git_log(
            self._query(request, "repo"), branch=request.query.get("branch") or None, limit=limit,
        )
        return web.json_response({"commits": [c.to_dict() for c in commits]})

    async def _handle_list_branches(self, request: web.Request) -> web.Response:
        return web.json_response({
            "branches": await self._engine.list_branches(self._query(request, "repo")),
        })

    async def _handle_list_agent_branches(self, request: web.Request) -> web.Response:
        branches = await self._engine.list_agent_branches(self._query(request, "repo"))
        return web.json_response({"branches": [b.to_dict() for b in branches]})

    async def _handle_diff_between_branches(self, request: web.Request) -> web.Response:
        files = await self._engine.diff_between_branches(
            self._query(request, "repo"), self._query(request, "base"), self._query(request, "head"),
        )
        return web.json_response({"files": files})

    async def _handle_sync_status(self, request: web.Request) -> web.Response:
        status = await self._engine.sync_status(self._query(request, "repo"))
        return web.json_response(status.to_dict())

    async def _handle_list_worktrees(self, request: web.Request) -> web.Response:
        worktrees = await self._engine.list_worktrees(self._query(request, "repo"))
        return web.json_response({"worktrees": [w.to_dict() for w in worktrees]})

    async def _handle_create_worktree(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        worktree = await self._engine.create_worktree(
            self._require(body, "repo"),
            self._require(body, "path"),
            branch=body.get("branch"),
            new_branch=body.get("newBranch"),
            start_point=body.get("startPoint"),
        )
        return web.json_response(worktree.to_dict(), status=201)

    async def _handle_remove_worktree(self, request: web.Request) -> web.Response:
        await self._engine.remove_worktree(
            self._query(request, "repo"),
            self._query(request, "path"),
            force=request.query.get("force", "").lower() in {"1", "true", "yes"},
        )
        return web.json_response({"status": "removed"})

    async def _handle_create_branch(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        name = await self._engine.create_branch(
            self._require(body, "repo"),
            self._require(body, "name"),
            start_point=body.get("startPoint"),
            checkout=bool(body.get("checkout", False)),
        )
        return web.json_response({"name": name}, status=201)

    async def _handle_delete_branch(self, request: web.Request) -> web.Response:
        deleted = await self._engine.delete_branch(
            self._query(request, "repo"),
            self._query(request, "name"),
            force=request.query.get("force", "").lower() in {"1", "true", "yes"},
            workspace_id=request.query.get("workspaceId") or None,
        )
        return web.json_response({"status": "deleted", "deletedConversations": deleted})

    async def _handle_checkout(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        await self._engine.checkout(self._require(body, "repo"), self._require(body, "branch"))
        return web.json_response({"status": "ok"})

    async def _handle_commit(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        outcome = await self._engine.commit(
            self._require(body, "repo"),
            self._require(body, "message"),
            conversation_id=body.get("conversationId"),
        )
        return web.json_response(outcome.to_dict())

    async def _handle_analyze_merge(self, request: web.Request) -> web.Response:
        analysis = await self._engine.analyze_merge(
            self._query(request, "repo"),
            self._query(request, "source"),
            self._query(request, "target"),
        )
        return web.json_response(analysis.to_dict())

    async def _handle_merge(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        result = await self._engine.merge(
            self._require(body, "repo"),
            self._require(body, "source"),
            self._require(body, "target"),
            squash=bool(body.get("squash", False)),
            message=body.get("message"),
        )
        return web.json_response(result.to_dict(), status=200 if result.success else 409)

    async def _handle_push(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        output = await self._engine.push(
            self._require(body, "repo"),
            remote=body.get("remote"),
            branch=body.get("branch"),
            set_upstream=bool(body.get("setUpstream", False)),
        )
        return web.json_response({"output": output})

    async def _handle_pull(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        repo = self._require(body, "repo")
        if body.get("rebase"):
            output = await self._engine.pull_rebase(repo)
        else:
            output = await self._engine.pull(repo)
        return web.json_response({"output": output})

    async def _handle_fetch(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        output = await self._engine.fetch(self._require(body, "repo"), remote=body.get("remote"))
        return web.json_response({"output": output})
