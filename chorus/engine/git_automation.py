"""Git automation: per-session branches/worktrees, auto-commit, merge, sync.

The controller is the single source of truth for Git state changes it
makes: it emits ``branch-created`` and ``commit-created`` so consumers
subscribe instead of re-querying Git after every turn.

Branch names are ``agent/{agentName}/{sessionId}``, cut from the
workspace default branch (``main``, else ``master``, else the first
local branch). With ``useWorktrees`` each session also gets its own
working copy at a deterministic path:

    {worktree_root}/{repo_name}/{agentName}-{sessionId[:8]}

where ``worktree_root`` defaults to ``{repo_parent}/.chorus-worktrees``.

Nothing here touches a remote unless ``push``/``pull``/``pull_rebase``/
``fetch`` is called explicitly.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chorus.adapters.events import BranchCreated, ChorusEvent, CommitCreated

from .errors import GitCommandError
from .git_ops import (
    LOG_FORMAT,
    NO_REMOTE,
    UNKNOWN,
    AgentBranchInfo,
    CommitInfo,
    FileStatus,
    GitRunner,
    MergeAnalysis,
    SyncStatus,
    WorktreeInfo,
    parse_left_right,
    parse_log,
    parse_status,
    parse_worktrees,
)
from .models import CommitType, GitSettings

logger = logging.getLogger(__name__)

Emitter = Callable[[ChorusEvent], Awaitable[None]]

BRANCH_PREFIX = "agent"
DEFAULT_BRANCH_CANDIDATES = ("main", "master")
WORKTREE_DIRNAME = ".chorus-worktrees"

_INVALID_REF_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_ref_component(value: str) -> str:
    """Make *value* safe as a single path component of a Git ref."""
    clean = _INVALID_REF_CHARS.sub("-", value.strip())
    clean = re.sub(r"\.{2,}", ".", clean).strip(".-")
    if clean.endswith(".lock"):
        clean = clean[: -len(".lock")]
    return clean or "agent"


def agent_branch_name(agent_name: str, session_id: str) -> str:
    return (
        f"{BRANCH_PREFIX}/{sanitize_ref_component(agent_name)}/"
        f"{sanitize_ref_component(session_id)}"
    )


def parse_agent_branch(name: str) -> tuple[str, str] | None:
    """Split ``agent/{agentName}/{sessionId}`` into its parts."""
    parts = name.split("/")
    if len(parts) != 3 or parts[0] != BRANCH_PREFIX or not parts[1] or not parts[2]:
        return None
    return parts[1], parts[2]


def worktree_path_for(
    repo: Path | str, agent_name: str, session_id: str, root: str = ""
) -> Path:
    repo_path = Path(repo).expanduser().resolve()
    base = Path(root).expanduser() if root else repo_path.parent / WORKTREE_DIRNAME
    name = f"{sanitize_ref_component(agent_name)}-{sanitize_ref_component(session_id)[:8]}"
    return base / repo_path.name / name


def commit_message_for(prompt: str, commit_type: CommitType, max_length: int = 72) -> str:
    """Commit subject from the user's prompt, truncated to *max_length*."""
    subject = " ".join(prompt.split()) or "Agent changes"
    if commit_type == CommitType.STOP:
        subject = f"Stopped: {subject}"
    if len(subject) > max_length:
        subject = subject[: max_length - 3].rstrip() + "..."
    return subject


@dataclass
class BranchSetup:
    branch_name: str
    worktree_path: str | None = None
    created: bool = False

    @property
    def cwd_override(self) -> str | None:
        return self.worktree_path


@dataclass
class CommitOutcome:
    committed: bool
    commit_hash: str | None = None
    message: str = ""
    files: list[str] = field(default_factory=list)
    branch: str | None = None
    type: CommitType = CommitType.MANUAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "committed": self.committed,
            "commitHash": self.commit_hash,
            "message": self.message,
            "files": list(self.files),
            "branch": self.branch,
            "type": self.type.value,
        }


@dataclass
class MergeResult:
    success: bool
    source: str
    target: str
    squash: bool = False
    commit_hash: str | None = None
    error: str | None = None
    conflict_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "success": self.success,
            "source": self.source,
            "target": self.target,
            "squash": self.squash,
            "commitHash": self.commit_hash,
            "conflictFiles": list(self.conflict_files),
        }
        if self.error is not None:
            d["error"] = self.error
        return d


class GitAutomationController:
    """Branch, worktree, commit, merge and sync operations on local repos."""

    def __init__(
        self,
        runner: GitRunner | None = None,
        emit: Emitter | None = None,
        *,
        worktree_root: str = "",
        commit_message_max_length: int = 72,
    ) -> None:
        self._git = runner or GitRunner()
        self._emit = emit
        self._worktree_root = worktree_root
        self._commit_max = commit_message_max_length

    @property
    def runner(self) -> GitRunner:
        return self._git

    async def _fire(self, event: ChorusEvent) -> None:
        if self._emit is not None:
            await self._emit(event)

    # ── Queries ──

    async def is_repository(self, repo: Path | str) -> bool:
        result = await self._git.run(repo, "rev-parse", "--is-inside-work-tree")
        return result.ok and result.stdout.strip() == "true"

    async def current_branch(self, repo: Path | str) -> str | None:
        result = await self._git.run(repo, "branch", "--show-current")
        result.check()
        return result.stdout.strip() or None

    async def local_branches(self, repo: Path | str) -> list[str]:
        result = await self._git.run(
            repo, "for-each-ref", "--format=%(refname:short)", "refs/heads/"
        )
        result.check()
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def list_branches(self, repo: Path | str) -> list[dict[str, Any]]:
        current = await self.current_branch(repo)
        return [
            {"name": name, "isCurrent": name == current}
            for name in await self.local_branches(repo)
        ]

    async def branch_exists(self, repo: Path | str, name: str) -> bool:
        result = await self._git.run(
            repo, "rev-parse", "--verify", "--quiet", f"refs/heads/{name}"
        )
        return result.ok

    async def default_branch(self, repo: Path | str) -> str | None:
        """``main``, else ``master``, else the first local branch."""
        branches = await self.local_branches(repo)
        for candidate in DEFAULT_BRANCH_CANDIDATES:
            if candidate in branches:
                return candidate
        return branches[0] if branches else None

    async def status(self, repo: Path | str) -> list[FileStatus]:
        result = await self._git.run(repo, "status", "--porcelain", "--untracked-files=all")
        result.check()
        return parse_status(result.stdout)

    async def has_changes(self, repo: Path | str) -> bool:
        result = await self._git.run(repo, "status", "--porcelain")
        return result.ok and bool(result.stdout.strip())

    async def log(
        self, repo: Path | str, *, branch: str | None = None, limit: int = 50
    ) -> list[CommitInfo]:
        args = ["log", f"--format={LOG_FORMAT}", f"-n{max(1, limit)}"]
        if branch:
            args.append(branch)
        result = await self._git.run(repo, *args)
        if not result.ok and "does not have any commits" in result.stderr:
            return []
        result.check()
        return parse_log(result.stdout)

    async def diff_between_branches(
        self, repo: Path | str, base: str, head: str
    ) -> list[dict[str, str]]:
        """Files changed on *head* since it diverged from *base*."""
        result = await self._git.run(repo, "diff", "--name-status", f"{base}...{head}")
        result.check()
        files: list[dict[str, str]] = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) >= 2:
                files.append({"status": parts[0][:1], "path": parts[-1]})
        return files

    async def _ahead_behind(self, repo: Path | str, left: str, right: str) -> tuple[int, int]:
        result = await self._git.run(
            repo, "rev-list", "--left-right", "--count", f"{left}...{right}"
        )
        if not result.ok:
            return 0, 0
        return parse_left_right(result.stdout)

    # ── Branches ──

    async def create_branch(
        self,
        repo: Path | str,
        name: str,
        *,
        start_point: str | None = None,
        checkout: bool = False,
    ) -> str:
        args = ["checkout", "-b", name] if checkout else ["branch", name]
        if start_point:
            args.append(start_point)
        (await self._git.run(repo, *args, mutating=True)).check()
        logger.info("Created branch %s in %s", name, repo)
        return name

    async def checkout(self, repo: Path | str, branch: str) -> None:
        (await self._git.run(repo, "checkout", branch, mutating=True)).check()

    async def rename_branch(self, repo: Path | str, old: str, new: str) -> None:
        (await self._git.run(repo, "branch", "-m", old, new, mutating=True)).check()
        logger.info("Renamed branch %s -> %s", old, new)

    async def ensure_session_branch(
        self,
        repo: Path | str,
        *,
        conversation_id: str,
        agent_name: str,
        session_id: str,
        settings: GitSettings,
    ) -> BranchSetup | None:
        """Create (or reuse) the session's branch and optional worktree.

        Returns None when automation is off or the repo is unusable;
        failures are logged, never raised, so a turn can still run.
        """
        if not settings.auto_branch:
            return None
        if not await self.is_repository(repo):
            logger.info("Auto-branch skipped: %s is not a Git work tree", repo)
            return None

        branch = agent_branch_name(agent_name, session_id)
        try:
            base = await self.default_branch(repo)
            exists = await self.branch_exists(repo, branch)
            if settings.use_worktrees:
                path = worktree_path_for(repo, agent_name, session_id, self._worktree_root)
                existing = {
                    Path(w.path).resolve(): w for w in await self.list_worktrees(repo)
                }
                created = False
                if path.resolve() not in existing:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    if exists:
                        await self.create_worktree(repo, str(path), branch=branch)
                    else:
                        await self.create_worktree(
                            repo, str(path), new_branch=branch, start_point=base,
                        )
                        created = True
                setup = BranchSetup(branch, str(path), created)
            else:
                created = False
                if exists:
                    if await self.current_branch(repo) != branch:
                        await self.checkout(repo, branch)
                else:
                    current = await self.current_branch(repo)
                    start = None if current == base else base
                    await self.create_branch(repo, branch, start_point=start, checkout=True)
                    created = True
                setup = BranchSetup(branch, None, created)
        except GitCommandError as exc:
            logger.warning("Auto-branch failed for %s: %s", branch, exc)
            return None

        if setup.created:
            await self._fire(BranchCreated(
                conversation_id=conversation_id,
                branch_name=branch,
                agent_name=agent_name,
                worktree_path=setup.worktree_path,
            ))
        return setup

    async def adopt_session_id(
        self,
        repo: Path | str,
        setup: BranchSetup,
        *,
        agent_name: str,
        session_id: str,
    ) -> BranchSetup:
        """Rename a provisional session branch to the confirmed session id."""
        wanted = agent_branch_name(agent_name, session_id)
        if wanted == setup.branch_name:
            return setup
        target_repo = setup.worktree_path or repo
        if await self.branch_exists(repo, wanted):
            logger.warning("Branch %s already exists; keeping %s", wanted, setup.branch_name)
            return setup
        try:
            await self.rename_branch(target_repo, setup.branch_name, wanted)
        except GitCommandError as exc:
            logger.warning("Could not rename %s to %s: %s", setup.branch_name, wanted, exc)
            return setup
        return BranchSetup(wanted, setup.worktree_path, setup.created)

    async def ensure_merged(
        self, repo: Path | str, name: str, *, into: str = "HEAD"
    ) -> None:
        """Raise unless every commit of *name* is reachable from *into*.

        Mirrors the check ``git branch -d`` makes, so callers can refuse
        before touching worktrees or HEAD.
        """
        result = await self._git.run(repo, "merge-base", "--is-ancestor", name, into)
        if result.returncode == 1:
            raise GitCommandError(
                ["branch", "-d", name],
                f"error: the branch '{name}' is not fully merged",
                kind=UNKNOWN,
                suggestion="The branch has unmerged commits. Merge it or delete with force.",
                returncode=result.returncode,
            )
        result.check()

    async def delete_branch(
        self, repo: Path | str, name: str, *, force: bool = False
    ) -> None:
        """Delete a local branch; unmerged commits require *force*.

        The checked-out branch is refused. Without *force* the merge
        check runs before anything changes; a worktree holding the
        branch is then removed.
        """
        if name == await self.current_branch(repo):
            raise GitCommandError(
                ["branch", "-d", name],
                f"Cannot delete branch '{name}': it is currently checked out",
                kind=UNKNOWN,
                suggestion="Check out a different branch first.",
            )
        if not force:
            await self.ensure_merged(repo, name)
        for worktree in await self.list_worktrees(repo):
            if worktree.branch_name == name:
                await self.remove_worktree(repo, worktree.path, force=force)
        result = await self._git.run(repo, "branch", "-D" if force else "-d", name, mutating=True)
        result.check()
        logger.info("Deleted branch %s (force=%s)", name, force)

    async def list_agent_branches(self, repo: Path | str) -> list[AgentBranchInfo]:
        fmt = "%(refname:short)%1f%(objectname)%1f%(subject)%1f%(authorname)%1f%(authordate:iso-strict)"
        result = await self._git.run(
            repo, "for-each-ref", f"--format={fmt}", f"refs/heads/{BRANCH_PREFIX}/"
        )
        result.check()
        base = await self.default_branch(repo)
        current = await self.current_branch(repo)
        worktrees = {w.branch_name: w.path for w in await self.list_worktrees(repo)}
        branches: list[AgentBranchInfo] = []
        for line in result.stdout.splitlines():
            parts = line.split("\x1f")
            if len(parts) < 5:
                continue
            parsed = parse_agent_branch(parts[0])
            if parsed is None:
                continue
            behind, ahead = (0, 0)
            if base:
                behind, ahead = await self._ahead_behind(repo, base, parts[0])
            branches.append(AgentBranchInfo(
                name=parts[0],
                agent_name=parsed[0],
                session_id=parsed[1],
                last_commit=CommitInfo(parts[1], parts[2], parts[3], parts[4]),
                ahead=ahead,
                behind=behind,
                is_current=parts[0] == current,
                worktree_path=worktrees.get(parts[0]),
            ))
        return branches

    # ── Worktrees ──

    async def list_worktrees(self, repo: Path | str) -> list[WorktreeInfo]:
        result = await self._git.run(repo, "worktree", "list", "--porcelain")
        if not result.ok:
            return []
        return parse_worktrees(result.stdout)

    async def create_worktree(
        self,
        repo: Path | str,
        path: str,
        *,
        branch: str | None = None,
        new_branch: str | None = None,
        start_point: str | None = None,
    ) -> WorktreeInfo:
        args = ["worktree", "add"]
        if new_branch:
            args += ["-b", new_branch, path]
            if start_point:
                args.append(start_point)
        elif branch:
            args += [path, branch]
        else:
            args += ["--detach", path]
        (await self._git.run(repo, *args, mutating=True)).check()
        logger.info("Created worktree %s (branch=%s)", path, new_branch or branch)
        for worktree in await self.list_worktrees(repo):
            if Path(worktree.path).resolve() == Path(path).resolve():
                return worktree
        return WorktreeInfo(path=path, branch=new_branch or branch)

    async def remove_worktree(
        self, repo: Path | str, path: str, *, force: bool = False
    ) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(path)
        (await self._git.run(repo, *args, mutating=True)).check()
        logger.info("Removed worktree %s", path)

    # ── Commits ──

    async def commit(
        self,
        repo: Path | str,
        message: str,
        *,
        conversation_id: str | None = None,
        commit_type: CommitType = CommitType.MANUAL,
        stage_all: bool = True,
    ) -> CommitOutcome:
        """Stage and commit. Nothing to commit is a no-op, not an error."""
        async with self._git.lock_for(repo):
            if stage_all:
                (await self._git.run(repo, "add", "-A")).check()
            staged = await self._git.run(repo, "diff", "--cached", "--name-only")
            staged.check()
            files = [f for f in staged.stdout.splitlines() if f.strip()]
            if not files:
                logger.debug("Nothing to commit in %s", repo)
                return CommitOutcome(committed=False, message=message, type=commit_type)
            result = await self._git.run(repo, "commit", "-m", message)
            if not result.ok and "nothing to commit" in result.output:
                return CommitOutcome(committed=False, message=message, type=commit_type)
            result.check()
            head = await self._git.run(repo, "rev-parse", "HEAD")
            head.check()
            branch_result = await self._git.run(repo, "branch", "--show-current")

        outcome = CommitOutcome(
            committed=True,
            commit_hash=head.stdout.strip(),
            message=message,
            files=files,
            branch=branch_result.stdout.strip() or None,
            type=commit_type,
        )
        logger.info(
            "Committed %s on %s (%d files, type=%s)",
            outcome.commit_hash[:8], outcome.branch, len(files), commit_type.value,
        )
        await self._fire(CommitCreated(
            conversation_id=conversation_id or "",
            branch_name=outcome.branch or "",
            commit_hash=outcome.commit_hash or "",
            message=message,
            files=files,
            type=commit_type.value,
        ))
        return outcome

    async def auto_commit(
        self,
        repo: Path | str,
        *,
        conversation_id: str,
        prompt: str,
        commit_type: CommitType = CommitType.TURN,
        settings: GitSettings | None = None,
    ) -> CommitOutcome:
        """Commit the turn's changes with the prompt as message.

        Never raises: Git failures are logged and reported as not
        committed.
        """
        settings = settings or GitSettings()
        message = commit_message_for(prompt, commit_type, self._commit_max)
        if not settings.auto_commit:
            return CommitOutcome(committed=False, message=message, type=commit_type)
        if not await self.has_changes(repo):
            return CommitOutcome(committed=False, message=message, type=commit_type)
        try:
            return await self.commit(
                repo, message, conversation_id=conversation_id, commit_type=commit_type,
            )
        except GitCommandError as exc:
            logger.warning("Auto-commit failed in %s: %s", repo, exc)
            return CommitOutcome(committed=False, message=message, type=commit_type)

    # ── Merge ──

    async def _changed_since(self, repo: Path | str, base: str, ref: str) -> list[str]:
        result = await self._git.run(repo, "diff", "--name-only", base, ref)
        result.check()
        return [f for f in result.stdout.splitlines() if f.strip()]

    async def analyze_merge(
        self, repo: Path | str, source: str, target: str
    ) -> MergeAnalysis:
        """Preview merging *source* into *target*. Read-only.

        Conflict files are those changed on both sides since the merge
        base whose content still differs between the two tips. This is
        a conservative estimate, not a three-way merge simulation.
        """
        try:
            for ref in (source, target):
                check = await self._git.run(repo, "rev-parse", "--verify", "--quiet", ref)
                if not check.ok:
                    return MergeAnalysis(error=f"Unknown branch: {ref}")
            base_result = await self._git.run(repo, "merge-base", target, source)
            if not base_result.ok:
                return MergeAnalysis(
                    error=f"No common ancestor between {source} and {target}"
                )
            base = base_result.stdout.strip()
            behind, ahead = await self._ahead_behind(repo, target, source)
            source_files = await self._changed_since(repo, base, source)
            target_files = set(await self._changed_since(repo, base, target))
            overlap = sorted(f for f in source_files if f in target_files)
            conflicts: list[str] = []
            if overlap:
                differing = await self._git.run(
                    repo, "diff", "--name-only", target, source, "--", *overlap
                )
                differing.check()
                still_different = set(differing.stdout.splitlines())
                conflicts = [f for f in overlap if f in still_different]
        except GitCommandError as exc:
            return MergeAnalysis(error=str(exc))

        return MergeAnalysis(
            can_merge=not conflicts,
            behind_count=behind,
            ahead_count=ahead,
            conflict_files=conflicts,
            changed_files=source_files,
        )

    async def merge(
        self,
        repo: Path | str,
        source: str,
        target: str,
        *,
        squash: bool = False,
        message: str | None = None,
    ) -> MergeResult:
        """Check out *target* and merge *source* into it.

        With ``squash`` the changes are staged but not committed; the
        caller follows up with ``commit``. On failure the merge is
        aborted and the previously checked-out branch restored.
        """
        async with self._git.lock_for(repo):
            original = (await self._git.run(repo, "branch", "--show-current")).stdout.strip()
            checkout = await self._git.run(repo, "checkout", target)
            if not checkout.ok:
                return MergeResult(False, source, target, squash, error=str(checkout.error()))

            if squash:
                result = await self._git.run(repo, "merge", "--squash", source)
            else:
                args = ["merge", "--no-ff", "--no-edit"]
                if message:
                    args += ["-m", message]
                result = await self._git.run(repo, *args, source)

            if result.ok:
                head = await self._git.run(repo, "rev-parse", "HEAD")
                logger.info("Merged %s into %s (squash=%s)", source, target, squash)
                return MergeResult(
                    True, source, target, squash,
                    commit_hash=None if squash else head.stdout.strip(),
                )

            unmerged = await self._git.run(repo, "diff", "--name-only", "--diff-filter=U")
            conflicts = [f for f in unmerged.stdout.splitlines() if f.strip()]
            if squash:
                await self._git.run(repo, "reset", "--merge")
            else:
                await self._git.run(repo, "merge", "--abort")
            if original and original != target:
                await self._git.run(repo, "checkout", original)
            logger.warning("Merge of %s into %s failed: %s", source, target, result.output[:200])
            return MergeResult(
                False, source, target, squash,
                error=result.output or "merge failed",
                conflict_files=conflicts,
            )

    # ── Remote sync (explicit only) ──

    async def _remotes(self, repo: Path | str) -> list[str]:
        result = await self._git.run(repo, "remote")
        return [r.strip() for r in result.stdout.splitlines() if r.strip()] if result.ok else []

    async def sync_status(self, repo: Path | str) -> SyncStatus:
        branch = await self.current_branch(repo)
        status = SyncStatus(branch=branch)
        upstream = await self._git.run(
            repo, "rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"
        )
        if upstream.ok:
            status.upstream = upstream.stdout.strip() or None
        if branch:
            remote = await self._git.run(repo, "config", "--get", f"branch.{branch}.remote")
            if remote.ok:
                status.remote = remote.stdout.strip() or None
        if status.remote is None:
            remotes = await self._remotes(repo)
            status.remote = "origin" if "origin" in remotes else (remotes[0] if remotes else None)
        if status.upstream:
            status.ahead, status.behind = await self._ahead_behind_upstream(repo)
        return status

    async def _ahead_behind_upstream(self, repo: Path | str) -> tuple[int, int]:
        behind_ahead = await self._ahead_behind(repo, "@{u}", "HEAD")
        behind, ahead = behind_ahead
        return ahead, behind

    async def push(
        self,
        repo: Path | str,
        *,
        remote: str | None = None,
        branch: str | None = None,
        set_upstream: bool = False,
    ) -> str:
        status = await self.sync_status(repo)
        remote = remote or status.remote
        if remote is None:
            raise GitCommandError(
                ["push"],
                "No remote configured for this repository",
                kind=NO_REMOTE,
                suggestion="Add a remote with 'git remote add origin <url>'.",
            )
        branch = branch or status.branch
        args = ["push"]
        if set_upstream or not status.upstream:
            args.append("-u")
        args.append(remote)
        if branch:
            args.append(branch)
        result = await self._git.run(repo, *args, mutating=True)
        result.check()
        logger.info("Pushed %s to %s", branch, remote)
        return result.output

    async def pull(self, repo: Path | str, *, rebase: bool = False) -> str:
        args = ["pull", "--rebase" if rebase else "--no-rebase"]
        result = await self._git.run(repo, *args, mutating=True)
        result.check()
        return result.output

    async def pull_rebase(self, repo: Path | str) -> str:
        return await self.pull(repo, rebase=True)

    async def fetch(self, repo: Path | str, *, remote: str | None = None) -> str:
        args = ["fetch", remote] if remote else ["fetch", "--all"]
        result = await self._git.run(repo, *args, mutating=True)
        result.check()
        return result.output
