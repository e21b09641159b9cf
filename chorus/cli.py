"""CLI entry point for the Chorus engine.

Usage:
    chorus serve [--port 8765] [--config chorus.yaml]
    chorus send --repo /path/to/repo "Add a README"
    chorus send --conversation ID "Now add tests"
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from chorus.adapters.events import event_to_dict
from chorus.engine.config import EngineConfig
from chorus.engine.engine import ChorusEngine
from chorus.engine.models import (
    ConversationSettings,
    PermissionMode,
    PermissionResponse,
    WorkspaceSettings,
)

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chorus",
        description="Agent session and Git automation engine",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (engine settings and workspace defaults)",
    )
    parser.add_argument(
        "--backend",
        choices=("cli", "sdk"),
        default=None,
        help="Agent backend (default: from config, else cli)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP + SSE server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=0, help="0 picks a free port")

    send = sub.add_parser("send", help="Run one turn and print events as JSON lines")
    send.add_argument("message", help="Prompt for the agent")
    send.add_argument("--conversation", default=None, help="Existing conversation id")
    send.add_argument("--repo", default=None, help="Repository / workspace root")
    send.add_argument("--workspace", default="default", help="Workspace id for new conversations")
    send.add_argument("--agent", default=None, help="Agent id for new conversations")
    send.add_argument("--agent-file", default=None, help="Agent definition appended to the system prompt")
    send.add_argument(
        "--permission-mode",
        choices=[m.value for m in PermissionMode],
        default=None,
    )
    send.add_argument("--model", default=None)
    send.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve every permission request (SDK backend)",
    )
    return parser


def _load_config(args: argparse.Namespace) -> tuple[EngineConfig, WorkspaceSettings | None]:
    if args.config:
        from chorus.engine.yaml_config import load_yaml_config
        loaded = load_yaml_config(args.config)
        config, defaults = loaded.engine, loaded.defaults
    else:
        config, defaults = EngineConfig.from_env(), None
    if args.backend:
        config.backend = args.backend
    return config, defaults


async def _run_send(engine: ChorusEngine, args: argparse.Namespace) -> int:
    if args.conversation:
        conversation_id = args.conversation
    else:
        settings = ConversationSettings(
            permission_mode=PermissionMode.parse(args.permission_mode),
            model=args.model,
        )
        conv = engine.create_conversation(
            args.workspace,
            args.agent or engine.config.default_agent_name,
            settings=settings,
            repo_path=args.repo,
        )
        conversation_id = conv.id

    subscription = engine.events.subscribe()
    task = await engine.send(
        conversation_id, args.message,
        repo_path=args.repo, agent_file_path=args.agent_file,
    )
    exit_code = 0
    try:
        while True:
            if task.done() and subscription.qsize() == 0:
                break
            try:
                event = await subscription.get(timeout=0.5)
            except asyncio.TimeoutError:
                continue
            payload = event_to_dict(event)
            print(json.dumps(payload), flush=True)
            if payload["event"] == "permission-request" and args.auto_approve:
                engine.respond_permission(
                    payload["requestId"], PermissionResponse(approved=True),
                )
            if payload["event"] == "status" and payload.get("status") == "error":
                exit_code = 1
        outcome = await task
        if outcome.error is not None:
            exit_code = 1
    finally:
        subscription.close()
        await engine.shutdown()
    return exit_code


def main() -> None:
    args = _build_parser().parse_args()

    config, defaults = _load_config(args)
    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    engine = ChorusEngine(config=config, workspace_defaults=defaults)

    if args.command == "serve":
        from chorus.server import ChorusServer
        server = ChorusServer(engine, host=args.host, port=args.port)
        try:
            asyncio.run(server.start())
        except KeyboardInterrupt:
            print("\nInterrupted.", file=sys.stderr)
        return

    try:
        sys.exit(asyncio.run(_run_send(engine, args)))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
