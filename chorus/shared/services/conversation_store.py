"""Conversation persistence: save and load conversations and messages.

Storage layout:
    {root}/{workspace_id}/{agent_id}/conversations.json
    {root}/{workspace_id}/{agent_id}/{conversation_id}-messages.jsonl

``conversations.json`` holds ``{"conversations": [...]}`` and is
rewritten atomically. Messages are append-only, one JSON object per
line; a truncated trailing line (crash mid-append) is skipped on load.

``messageCount`` and ``updatedAt`` are maintained here on every append;
callers never set them. Session and branch fields are written only by
the engine (``set_session`` / ``set_branch``).
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from chorus.engine.errors import ConversationNotFoundError, PairingViolationError
from chorus.engine.models import ConversationSettings, _utcnow
from chorus.shared.models.conversation import (
    Conversation,
    ConversationMessage,
    MessageType,
)
from chorus.shared.services.durable_write import (
    _sync_directory,
    append_json_line,
    atomic_write_json,
)

logger = logging.getLogger(__name__)

INDEX_FILENAME = "conversations.json"
MESSAGES_SUFFIX = "-messages.jsonl"


class ConversationStore:
    """JSON/JSONL-backed conversation and message store."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()
        # conversation id -> (workspace_id, agent_id)
        self._locations: dict[str, tuple[str, str]] = {}
        # conversation id -> tool_use ids seen so far
        self._tool_use_ids: dict[str, set[str]] = {}

    @property
    def root(self) -> Path:
        return self._root

    # ── Paths ──

    def _agent_dir(self, workspace_id: str, agent_id: str) -> Path:
        return self._root / workspace_id / agent_id

    def _index_path(self, workspace_id: str, agent_id: str) -> Path:
        return self._agent_dir(workspace_id, agent_id) / INDEX_FILENAME

    def _messages_path(self, workspace_id: str, agent_id: str, conversation_id: str) -> Path:
        return self._agent_dir(workspace_id, agent_id) / f"{conversation_id}{MESSAGES_SUFFIX}"

    # ── Index I/O ──

    def _read_index(self, workspace_id: str, agent_id: str) -> list[Conversation]:
        path = self._index_path(workspace_id, agent_id)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read conversation index %s: %s", path, exc)
            return []
        conversations: list[Conversation] = []
        for raw in data.get("conversations", []) if isinstance(data, dict) else []:
            try:
                conv = Conversation.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed conversation in %s: %s", path, exc)
                continue
            self._locations[conv.id] = (workspace_id, agent_id)
            conversations.append(conv)
        return conversations

    def _write_index(
        self, workspace_id: str, agent_id: str, conversations: list[Conversation]
    ) -> None:
        atomic_write_json(
            self._index_path(workspace_id, agent_id),
            {"conversations": [c.to_dict() for c in conversations]},
        )

    def _locate(self, conversation_id: str) -> tuple[str, str]:
        location = self._locations.get(conversation_id)
        if location is not None:
            return location
        if self._root.is_dir():
            for index_path in self._root.glob(f"*/*/{INDEX_FILENAME}"):
                agent_dir = index_path.parent
                workspace_id, agent_id = agent_dir.parent.name, agent_dir.name
                for conv in self._read_index(workspace_id, agent_id):
                    if conv.id == conversation_id:
                        return workspace_id, agent_id
        raise ConversationNotFoundError(conversation_id)

    def _update(
        self, conversation_id: str, mutate: Callable[[Conversation], None]
    ) -> Conversation:
        workspace_id, agent_id = self._locate(conversation_id)
        conversations = self._read_index(workspace_id, agent_id)
        for conv in conversations:
            if conv.id == conversation_id:
                mutate(conv)
                self._write_index(workspace_id, agent_id, conversations)
                return conv
        self._locations.pop(conversation_id, None)
        raise ConversationNotFoundError(conversation_id)

    # ── CRUD ──

    def list(self, workspace_id: str, agent_id: str) -> list[Conversation]:
        """Conversations for one agent, most recently updated first."""
        conversations = self._read_index(workspace_id, agent_id)
        conversations.sort(key=lambda c: c.updated_at, reverse=True)
        return conversations

    def list_workspace(self, workspace_id: str) -> list[Conversation]:
        workspace_dir = self._root / workspace_id
        if not workspace_dir.is_dir():
            return []
        result: list[Conversation] = []
        for index_path in sorted(workspace_dir.glob(f"*/{INDEX_FILENAME}")):
            result.extend(self._read_index(workspace_id, index_path.parent.name))
        return result

    def create(
        self,
        workspace_id: str,
        agent_id: str,
        *,
        title: str | None = None,
        settings: ConversationSettings | None = None,
        repo_path: str | None = None,
    ) -> Conversation:
        conv = Conversation(
            agent_id=agent_id,
            workspace_id=workspace_id,
            settings=settings or ConversationSettings(),
            repo_path=repo_path,
        )
        if title:
            conv.title = title
        conversations = self._read_index(workspace_id, agent_id)
        conversations.append(conv)
        self._write_index(workspace_id, agent_id, conversations)
        self._locations[conv.id] = (workspace_id, agent_id)
        self._tool_use_ids[conv.id] = set()
        logger.info(
            "Conversation created: %s (workspace=%s agent=%s)",
            conv.id[:8], workspace_id, agent_id,
        )
        return conv

    def get(self, conversation_id: str) -> Conversation:
        workspace_id, agent_id = self._locate(conversation_id)
        for conv in self._read_index(workspace_id, agent_id):
            if conv.id == conversation_id:
                return conv
        self._locations.pop(conversation_id, None)
        raise ConversationNotFoundError(conversation_id)

    def messages(self, conversation_id: str) -> list[ConversationMessage]:
        workspace_id, agent_id = self._locate(conversation_id)
        path = self._messages_path(workspace_id, agent_id, conversation_id)
        if not path.exists():
            return []
        messages: list[ConversationMessage] = []
        with open(path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    messages.append(ConversationMessage.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as exc:
                    logger.warning(
                        "Skipping malformed message line %d in %s: %s",
                        lineno, path.name, exc,
                    )
        return messages

    def load(self, conversation_id: str) -> tuple[Conversation, list[ConversationMessage]]:
        return self.get(conversation_id), self.messages(conversation_id)

    def delete(self, conversation_id: str) -> bool:
        """Remove a conversation and its messages. Returns False if absent."""
        try:
            workspace_id, agent_id = self._locate(conversation_id)
        except ConversationNotFoundError:
            return False
        conversations = self._read_index(workspace_id, agent_id)
        remaining = [c for c in conversations if c.id != conversation_id]
        if len(remaining) == len(conversations):
            self._locations.pop(conversation_id, None)
            return False

        messages_path = self._messages_path(workspace_id, agent_id, conversation_id)
        if messages_path.exists():
            messages_path.unlink()
        agent_dir = self._agent_dir(workspace_id, agent_id)
        if remaining:
            self._write_index(workspace_id, agent_id, remaining)
        else:
            index_path = self._index_path(workspace_id, agent_id)
            if index_path.exists():
                index_path.unlink()
            self._prune_empty(agent_dir)
        _sync_directory(agent_dir if agent_dir.exists() else self._root)

        self._locations.pop(conversation_id, None)
        self._tool_use_ids.pop(conversation_id, None)
        logger.info("Conversation deleted: %s", conversation_id[:8])
        return True

    def _prune_empty(self, agent_dir: Path) -> None:
        for directory in (agent_dir, agent_dir.parent):
            try:
                directory.rmdir()
            except OSError:
                # Not empty, or already gone
                return

    def update_settings(
        self, conversation_id: str, settings: ConversationSettings
    ) -> Conversation:
        """Merge non-None fields of *settings* into the conversation."""
        def mutate(conv: Conversation) -> None:
            conv.settings = conv.settings.merged(settings)
            conv.updated_at = _utcnow()
        return self._update(conversation_id, mutate)

    def replace_settings(
        self, conversation_id: str, settings: ConversationSettings
    ) -> Conversation:
        def mutate(conv: Conversation) -> None:
            conv.settings = settings
            conv.updated_at = _utcnow()
        return self._update(conversation_id, mutate)

    def set_title(self, conversation_id: str, title: str) -> Conversation:
        def mutate(conv: Conversation) -> None:
            conv.title = title
        return self._update(conversation_id, mutate)

    def set_session(
        self,
        conversation_id: str,
        session_id: str | None,
        created_at: datetime | None,
    ) -> Conversation:
        def mutate(conv: Conversation) -> None:
            conv.session_id = session_id
            conv.session_created_at = created_at
        return self._update(conversation_id, mutate)

    def set_branch(
        self,
        conversation_id: str,
        branch_name: str | None,
        worktree_path: str | None = None,
        repo_path: str | None = None,
    ) -> Conversation:
        def mutate(conv: Conversation) -> None:
            conv.branch_name = branch_name
            conv.worktree_path = worktree_path
            if repo_path is not None:
                conv.repo_path = repo_path
        return self._update(conversation_id, mutate)

    # ── Messages ──

    def _known_tool_uses(self, conversation_id: str) -> set[str]:
        known = self._tool_use_ids.get(conversation_id)
        if known is None:
            known = {
                m.tool_use_id
                for m in self.messages(conversation_id)
                if m.type == MessageType.TOOL_USE and m.tool_use_id
            }
            self._tool_use_ids[conversation_id] = known
        return known

    def append_message(
        self, conversation_id: str, message: ConversationMessage
    ) -> ConversationMessage:
        """Append a message; bumps messageCount and updatedAt.

        A tool_result without a prior matching tool_use is stored and
        flagged ``unpaired`` rather than rejected.
        """
        workspace_id, agent_id = self._locate(conversation_id)
        known = self._known_tool_uses(conversation_id)
        if message.type == MessageType.TOOL_USE and message.tool_use_id:
            known.add(message.tool_use_id)
        elif message.type == MessageType.TOOL_RESULT:
            if not message.tool_use_id or message.tool_use_id not in known:
                message.unpaired = True
                logger.warning(
                    "%s", PairingViolationError(conversation_id, message.tool_use_id)
                )

        append_json_line(
            self._messages_path(workspace_id, agent_id, conversation_id),
            message.to_dict(),
        )

        def mutate(conv: Conversation) -> None:
            conv.message_count += 1
            conv.updated_at = _utcnow()
        self._update(conversation_id, mutate)
        return message

    # ── Branch lookups ──

    def find_by_branch(self, workspace_id: str, branch_name: str) -> list[Conversation]:
        return [
            c for c in self.list_workspace(workspace_id)
            if c.branch_name == branch_name
        ]

    def delete_by_branch(self, workspace_id: str, branch_name: str) -> list[str]:
        """Delete every conversation pointing at *branch_name*."""
        deleted: list[str] = []
        for conv in self.find_by_branch(workspace_id, branch_name):
            if self.delete(conv.id):
                deleted.append(conv.id)
        return deleted

    def to_payload(self, conversation_id: str) -> dict[str, Any]:
        conv, messages = self.load(conversation_id)
        return {
            "conversation": conv.to_dict(),
            "messages": [m.to_dict() for m in messages],
        }
