"""Top-level Chorus engine.

Wires together the ConversationStore, ProcessSupervisor,
PermissionBroker and GitAutomationController behind one command
surface. Transport layers (``chorus.server``, ``chorus.cli``) only ever
talk to this class and subscribe to its EventBus.

Usage:
    engine = ChorusEngine()
    sub = engine.events.subscribe()
    conv = engine.create_conversation("ws", "agent", repo_path="/repo")
    await engine.send(conv.id, "Add a README")
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from chorus.adapters.event_bus import EventBus
from chorus.adapters.events import ConversationsDeleted, StatusChanged
from chorus.shared.models.conversation import (
    DEFAULT_TITLE,
    Conversation,
    ConversationMessage,
    MessageType,
    generate_title,
)
from chorus.shared.services.conversation_store import ConversationStore
from chorus.shared.services.workspace_settings import WorkspaceSettingsService

from .backends import AgentBackend, TurnRequest, create_backend
from .config import EngineConfig
from .context import compute_context_metrics
from .errors import CascadeDeleteError, GitCommandError, PermissionDeniedError
from .git_automation import (
    BranchSetup,
    CommitOutcome,
    GitAutomationController,
    MergeResult,
    parse_agent_branch,
)
from .git_ops import GitRunner, MergeAnalysis, SyncStatus
from .models import (
    AgentStatus,
    CommitType,
    ContextMetrics,
    ConversationSettings,
    PermissionOutcome,
    PermissionResponse,
    PermissionState,
    ResolvedSettings,
    WorkspaceSettings,
    _make_id,
    _utcnow,
)
from .permissions import PermissionBroker
from .session_registry import SessionRegistry
from .settings import resolve_settings
from .stream_parser import SystemInitEvent
from .supervisor import ProcessSupervisor, TurnOutcome
from .turn import TurnProcessor

logger = logging.getLogger(__name__)

BRANCH_DELETED = "branch-deleted"
USER_DELETED = "user-deleted"
STOPPED_MESSAGE = "Agent stopped by user"


@dataclass
class _ActiveTurn:
    """What the engine remembers about a conversation's latest turn."""
    prompt: str
    cwd: str
    repo: str | None
    settings: ResolvedSettings
    processor: TurnProcessor
    branch: BranchSetup | None = None
    task: asyncio.Task[TurnOutcome] | None = None


class ChorusEngine:
    """Agent session and Git automation engine."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        backend: AgentBackend | None = None,
        store: ConversationStore | None = None,
        events: EventBus | None = None,
        git: GitAutomationController | None = None,
        workspace_defaults: WorkspaceSettings | None = None,
    ) -> None:
        self._config = config or EngineConfig.from_env()
        self._events = events or EventBus()
        emit = self._events.emit
        self._store = store or ConversationStore(self._config.sessions_dir)
        self._broker = PermissionBroker(
            emit, timeout_seconds=self._config.permission_timeout_seconds,
        )
        self._backend = backend or create_backend(
            self._config.backend, claude_command=self._config.claude_command,
        )
        self._registry = SessionRegistry()
        self._supervisor = ProcessSupervisor(
            self._backend,
            registry=self._registry,
            broker=self._broker,
            emit=emit,
            kill_timeout=self._config.process_kill_timeout_seconds,
        )
        self._git = git or GitAutomationController(
            GitRunner(timeout=self._config.git_timeout_seconds),
            emit,
            worktree_root=self._config.worktree_root,
            commit_message_max_length=self._config.commit_message_max_length,
        )
        self._workspace_settings = WorkspaceSettingsService(workspace_defaults)
        self._turns: dict[str, _ActiveTurn] = {}
        self._stop_tasks: set[asyncio.Task] = set()

    # ── Accessors ──

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def broker(self) -> PermissionBroker:
        return self._broker

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def git(self) -> GitAutomationController:
        return self._git

    def _key(self, conv: Conversation) -> str:
        return conv.agent_id if self._config.one_process_per_agent else conv.id

    # ── Conversations ──

    def list_conversations(self, workspace_id: str, agent_id: str) -> list[Conversation]:
        return self._store.list(workspace_id, agent_id)

    def create_conversation(
        self,
        workspace_id: str,
        agent_id: str,
        *,
        title: str | None = None,
        settings: ConversationSettings | None = None,
        repo_path: str | None = None,
    ) -> Conversation:
        return self._store.create(
            workspace_id, agent_id, title=title, settings=settings, repo_path=repo_path,
        )

    def load_conversation(
        self, conversation_id: str
    ) -> tuple[Conversation, list[ConversationMessage]]:
        return self._store.load(conversation_id)

    def update_conversation_settings(
        self, conversation_id: str, settings: ConversationSettings
    ) -> Conversation:
        return self._store.update_settings(conversation_id, settings)

    def metrics(self, conversation_id: str) -> ContextMetrics:
        return compute_context_metrics(self._store.messages(conversation_id))

    async def delete_conversation(
        self,
        conversation_id: str,
        *,
        delete_branch: bool = True,
        force: bool = False,
    ) -> list[str]:
        """Delete a conversation, cascading through its automation branch.

        When the conversation owns an ``agent/...`` branch the branch is
        deleted first; if that fails nothing is deleted and
        CascadeDeleteError is raised. Every conversation on the branch
        is then removed and one ``conversations-deleted`` event emitted.
        """
        conv = self._store.get(conversation_id)
        repo = conv.repo_path
        branch = conv.branch_name

        if not (delete_branch and branch and repo):
            await self._stop_conversation(conv)
            self._store.delete(conversation_id)
            self._turns.pop(conversation_id, None)
            await self._events.emit(ConversationsDeleted(
                conversation_ids=[conversation_id], reason=USER_DELETED,
            ))
            return [conversation_id]

        try:
            return await self._delete_branch_cascade(
                conv.workspace_id, repo, branch, force=force, conversation_id=conversation_id,
            )
        except GitCommandError as exc:
            logger.warning("Cascade delete of %s aborted: %s", conversation_id[:8], exc)
            raise CascadeDeleteError(conversation_id, branch, str(exc)) from exc

    async def _delete_branch_cascade(
        self,
        workspace_id: str,
        repo: str,
        branch: str,
        *,
        force: bool = False,
        conversation_id: str | None = None,
    ) -> list[str]:
        """Delete *branch*, then every conversation of the workspace on it.

        Git runs first; a GitCommandError leaves every record untouched.
        Without *force* the merge check runs before any sibling turn is
        stopped or HEAD moves. An automation branch left checked out by
        its own turns is swapped for the default branch before deletion.
        """
        siblings = self._store.find_by_branch(workspace_id, branch)
        base: str | None = None
        if (
            siblings
            and parse_agent_branch(branch) is not None
            and await self._git.current_branch(repo) == branch
        ):
            base = await self._git.default_branch(repo)
            if base == branch:
                base = None
        if not force:
            await self._git.ensure_merged(repo, branch, into=base or "HEAD")

        for sibling in siblings:
            await self._stop_conversation(sibling)
        if not force and siblings:
            # A stop may have committed pending edits onto the branch
            await self._git.ensure_merged(repo, branch, into=base or "HEAD")
        if base:
            await self._git.checkout(repo, base)
        await self._git.delete_branch(repo, branch, force=force)

        deleted = self._store.delete_by_branch(workspace_id, branch)
        if (
            conversation_id is not None
            and conversation_id not in deleted
            and self._store.delete(conversation_id)
        ):
            deleted.append(conversation_id)
        for conv_id in deleted:
            self._turns.pop(conv_id, None)
        logger.info("Deleted branch %s and %d conversation(s)", branch, len(deleted))
        if deleted:
            await self._events.emit(ConversationsDeleted(
                conversation_ids=deleted, reason=BRANCH_DELETED,
            ))
        return deleted

    # ── Workspace settings ──

    def get_workspace_settings(self, workspace_root: str) -> WorkspaceSettings:
        return self._workspace_settings.load(workspace_root)

    def set_workspace_settings(
        self, workspace_root: str, patch: dict[str, Any] | WorkspaceSettings
    ) -> WorkspaceSettings:
        if isinstance(patch, WorkspaceSettings):
            settings = patch
        else:
            current = self._workspace_settings.load(workspace_root).to_dict()
            settings = WorkspaceSettings.from_dict({**current, **patch})
        self._workspace_settings.save(workspace_root, settings)
        return settings

    def resolve_settings(self, conv: Conversation) -> ResolvedSettings:
        workspace = (
            self._workspace_settings.load(conv.repo_path)
            if conv.repo_path
            else self._workspace_settings.defaults
        )
        return resolve_settings(conv.settings, workspace)

    # ── Sessions ──

    def _session_expired(self, conv: Conversation) -> bool:
        if conv.session_created_at is None:
            return False
        max_age = timedelta(days=self._config.session_max_age_days)
        return _utcnow() - conv.session_created_at > max_age

    def get_session_id(
        self, agent_id: str, conversation_id: str | None = None
    ) -> str | None:
        if conversation_id is not None:
            return self._store.get(conversation_id).session_id
        return self._registry.session_for_agent(agent_id)

    def clear_session(self, agent_id: str, conversation_id: str | None = None) -> None:
        """Forget the session so the next turn starts fresh."""
        self._registry.clear_agent_session(agent_id)
        if conversation_id is not None:
            self._store.set_session(conversation_id, None, None)
        logger.info("Session cleared for agent=%s conversation=%s", agent_id, conversation_id)

    async def _on_session(self, conversation_id: str, event: SystemInitEvent) -> None:
        conv = self._store.get(conversation_id)
        if conv.session_id != event.session_id:
            entry = self._registry.for_conversation(conversation_id)
            created_at = (
                entry.session_created_at
                if entry is not None and entry.session_id == event.session_id
                else None
            )
            self._store.set_session(conversation_id, event.session_id, created_at or _utcnow())
            logger.info(
                "Session %s bound to conversation %s",
                event.session_id[:8], conversation_id[:8],
            )

        active = self._turns.get(conversation_id)
        if active is None or active.branch is None or active.repo is None:
            return
        renamed = await self._git.adopt_session_id(
            active.repo, active.branch,
            agent_name=conv.agent_id, session_id=event.session_id,
        )
        if renamed.branch_name != active.branch.branch_name:
            active.branch = renamed
            self._store.set_branch(
                conversation_id, renamed.branch_name, renamed.worktree_path, active.repo,
            )

    # ── Turns ──

    async def _prepare_branch(
        self, conv: Conversation, repo: str, session_id: str, settings: ResolvedSettings
    ) -> BranchSetup | None:
        if conv.branch_name:
            setup = BranchSetup(conv.branch_name, conv.worktree_path)
            if conv.worktree_path is None and settings.git.auto_branch:
                try:
                    if await self._git.current_branch(repo) != conv.branch_name:
                        await self._git.checkout(repo, conv.branch_name)
                except GitCommandError as exc:
                    logger.warning("Could not check out %s: %s", conv.branch_name, exc)
            return setup
        setup = await self._git.ensure_session_branch(
            repo,
            conversation_id=conv.id,
            agent_name=conv.agent_id,
            session_id=session_id,
            settings=settings.git,
        )
        if setup is not None:
            self._store.set_branch(conv.id, setup.branch_name, setup.worktree_path, repo)
        return setup

    def _permission_handler(self, conversation_id: str, settings: ResolvedSettings):
        async def handler(tool_name: str, tool_input: dict[str, Any]) -> PermissionOutcome:
            outcome = await self._broker.check(conversation_id, tool_name, tool_input, settings)
            if outcome.approved:
                return outcome
            active = self._turns.get(conversation_id)
            if active is not None and outcome.state != PermissionState.CANCELLED:
                await active.processor.add_error(
                    str(PermissionDeniedError(tool_name, outcome.message))
                )
            if outcome.stop_completely:
                conv = self._store.get(conversation_id)
                self._schedule_stop(conv.agent_id, conversation_id)
            return outcome
        return handler

    async def send(
        self,
        conversation_id: str,
        message: str,
        *,
        repo_path: str | None = None,
        session_id: str | None = None,
        agent_file_path: str | None = None,
    ) -> asyncio.Task[TurnOutcome]:
        """Start a turn. Returns the task that drives it."""
        conv = self._store.get(conversation_id)
        if repo_path and repo_path != conv.repo_path:
            conv = self._store.set_branch(
                conversation_id, conv.branch_name, conv.worktree_path, repo_path,
            )
        settings = self.resolve_settings(conv)

        resume = session_id or conv.session_id
        if resume and session_id is None and self._session_expired(conv):
            logger.info(
                "Session %s for %s is older than %.0f days; starting fresh",
                resume[:8], conversation_id[:8], self._config.session_max_age_days,
            )
            self._store.set_session(conversation_id, None, None)
            resume = None
        new_session_id = None if resume else _make_id()

        repo = conv.repo_path
        cwd = conv.worktree_path or repo or os.getcwd()
        branch: BranchSetup | None = None
        if repo:
            branch = await self._prepare_branch(conv, repo, resume or new_session_id, settings)
            if branch is not None and branch.worktree_path:
                cwd = branch.worktree_path

        system_prompt = None
        if agent_file_path and not resume:
            try:
                system_prompt = Path(agent_file_path).expanduser().read_text(encoding="utf-8")
            except OSError as exc:
                logger.warning("Could not read agent file %s: %s", agent_file_path, exc)

        if conv.message_count == 0 and conv.title == DEFAULT_TITLE:
            self._store.set_title(conversation_id, generate_title(message))

        processor = TurnProcessor(
            conversation_id, conv.agent_id, self._store, self._events.emit,
            on_session=self._on_session,
        )
        await processor.append(ConversationMessage(
            type=MessageType.USER, content=message, session_id=resume,
        ))

        key = self._key(conv)
        entry = self._registry.ensure(key, conversation_id, conv.agent_id)
        if resume:
            self._registry.set_session(key, resume, conv.session_created_at)
        elif entry.session_id is not None:
            entry.session_id = None
            entry.session_created_at = None

        request = TurnRequest(
            conversation_id=conversation_id,
            agent_id=conv.agent_id,
            prompt=message,
            cwd=cwd,
            settings=settings,
            resume_session_id=resume,
            new_session_id=new_session_id,
            system_prompt=system_prompt,
            permission_handler=(
                self._permission_handler(conversation_id, settings)
                if self._backend.negotiates_permissions else None
            ),
        )
        active = _ActiveTurn(
            prompt=message, cwd=cwd, repo=repo, settings=settings,
            processor=processor, branch=branch,
        )
        self._turns[conversation_id] = active
        active.task = await self._supervisor.start_turn(
            key, request,
            on_event=processor.handle,
            on_finish=lambda outcome: self._on_turn_finished(active, outcome),
        )
        return active.task

    async def _on_turn_finished(self, active: _ActiveTurn, outcome: TurnOutcome) -> None:
        processor = active.processor
        if outcome.error is not None:
            await processor.add_error(str(outcome.error))
        if outcome.killed or active.repo is None:
            return
        await self._git.auto_commit(
            active.cwd,
            conversation_id=outcome.conversation_id,
            prompt=active.prompt,
            commit_type=CommitType.TURN,
            settings=active.settings.git,
        )

    async def wait(self, conversation_id: str) -> TurnOutcome | None:
        """Wait for the conversation's current turn, if any, to finish."""
        active = self._turns.get(conversation_id)
        if active is None or active.task is None:
            return None
        return await asyncio.shield(active.task)

    async def _stop_conversation(self, conv: Conversation) -> bool:
        key = self._key(conv)
        entry = self._registry.get(key)
        if entry is None or entry.conversation_id != conv.id:
            return False
        return await self._supervisor.stop(key)

    async def stop(self, agent_id: str, conversation_id: str | None = None) -> bool:
        """Stop the agent's turn(s). Idempotent.

        With a conversation id only that conversation is stopped.
        Returns True when a live turn was actually stopped.
        """
        if conversation_id is not None:
            targets = [self._store.get(conversation_id)]
        else:
            targets = [
                self._store.get(e.conversation_id)
                for e in self._registry.for_agent(agent_id)
                if e.is_live
            ]

        stopped_any = False
        for conv in targets:
            stopped = await self._stop_conversation(conv)
            stopped_any = stopped_any or stopped
            active = self._turns.get(conv.id)
            if stopped and active is not None:
                await active.processor.add_system(STOPPED_MESSAGE)
                if active.repo is not None:
                    await self._git.auto_commit(
                        active.cwd,
                        conversation_id=conv.id,
                        prompt=active.prompt,
                        commit_type=CommitType.STOP,
                        settings=active.settings.git,
                    )
            if not stopped:
                await self._events.emit(StatusChanged(
                    agent_id=conv.agent_id,
                    conversation_id=conv.id,
                    status=AgentStatus.READY.value,
                ))
        if not targets:
            await self._events.emit(StatusChanged(
                agent_id=agent_id, status=AgentStatus.READY.value,
            ))
        return stopped_any

    def _schedule_stop(self, agent_id: str, conversation_id: str) -> None:
        task = asyncio.create_task(self.stop(agent_id, conversation_id))
        self._stop_tasks.add(task)
        task.add_done_callback(self._stop_tasks.discard)

    def respond_permission(
        self, request_id: str, response: PermissionResponse | dict[str, Any]
    ) -> None:
        """Answer an outstanding permission request.

        Raises StaleRequestError for unknown or already-answered ids.
        """
        if isinstance(response, dict):
            response = PermissionResponse.from_dict(response)
        self._broker.respond(request_id, response)

    async def shutdown(self) -> None:
        self._broker.cancel_all()
        await self._supervisor.stop_all()
        if self._stop_tasks:
            await asyncio.gather(*self._stop_tasks, return_exceptions=True)
        self._events.close()
        logger.info("Engine shut down")

    # ── Git commands ──

    async def create_branch(
        self, repo: str, name: str, *, start_point: str | None = None, checkout: bool = False
    ) -> str:
        return await self._git.create_branch(repo, name, start_point=start_point, checkout=checkout)

    async def commit(
        self, repo: str, message: str, *, conversation_id: str | None = None
    ) -> CommitOutcome:
        return await self._git.commit(repo, message, conversation_id=conversation_id)

    async def analyze_merge(self, repo: str, source: str, target: str) -> MergeAnalysis:
        return await self._git.analyze_merge(repo, source, target)

    async def merge(
        self,
        repo: str,
        source: str,
        target: str,
        *,
        squash: bool = False,
        message: str | None = None,
    ) -> MergeResult:
        result = await self._git.merge(repo, source, target, squash=squash, message=message)
        if squash and result.success:
            outcome = await self._git.commit(
                repo,
                message or f"Squash merge {source} into {target}",
                stage_all=False,
            )
            result.commit_hash = outcome.commit_hash
        return result

    async def delete_branch(
        self,
        repo: str,
        name: str,
        *,
        force: bool = False,
        workspace_id: str | None = None,
    ) -> list[str]:
        """Delete a branch. With a workspace id, its conversations go too.

        Returns the ids of the conversations deleted with the branch.
        """
        if workspace_id is None:
            await self._git.delete_branch(repo, name, force=force)
            return []
        return await self._delete_branch_cascade(workspace_id, repo, name, force=force)

    async def push(
        self,
        repo: str,
        *,
        remote: str | None = None,
        branch: str | None = None,
        set_upstream: bool = False,
    ) -> str:
        return await self._git.push(repo, remote=remote, branch=branch, set_upstream=set_upstream)

    async def pull(self, repo: str) -> str:
        return await self._git.pull(repo)

    async def pull_rebase(self, repo: str) -> str:
        return await self._git.pull_rebase(repo)

    async def fetch(self, repo: str, *, remote: str | None = None) -> str:
        return await self._git.fetch(repo, remote=remote)

    async def sync_status(self, repo: str) -> SyncStatus:
        return await self._git.sync_status(repo)

    async def list_worktrees(self, repo: str):
        return await self._git.list_worktrees(repo)

    async def create_worktree(
        self,
        repo: str,
        path: str,
        *,
        branch: str | None = None,
        new_branch: str | None = None,
        start_point: str | None = None,
    ):
        return await self._git.create_worktree(
            repo, path, branch=branch, new_branch=new_branch, start_point=start_point,
        )

    async def remove_worktree(self, repo: str, path: str, *, force: bool = False) -> None:
        await self._git.remove_worktree(repo, path, force=force)

    async def list_agent_branches(self, repo: str):
        return await self._git.list_agent_branches(repo)

    async def git_status(self, repo: str):
        return await self._git.status(repo)

    async def git_log(self, repo: str, *, branch: str | None = None, limit: int = 50):
        return await self._git.log(repo, branch=branch, limit=limit)

    async def list_branches(self, repo: str) -> list[dict[str, Any]]:
        return await self._git.list_branches(repo)

    async def checkout(self, repo: str, branch: str) -> None:
        await self._git.checkout(repo, branch)

    async def diff_between_branches(self, repo: str, base: str, head: str):
        return await self._git.diff_between_branches(repo, base, head)
