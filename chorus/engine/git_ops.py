"""Async Git command runner, failure classification and output parsers.

Every Git invocation goes through ``GitRunner.run``: no shell, bounded
by a timeout, never raising for a failed command (``GitResult.check()``
does that on request). Commands flagged ``mutating`` are serialised per
repository path with an ``asyncio.Lock``; separate worktrees have
separate paths and therefore do not block each other.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import GitCommandError

logger = logging.getLogger(__name__)

NON_FAST_FORWARD = "rejected-non-fast-forward"
NO_REMOTE = "no-remote"
AUTH_REQUIRED = "auth-required"
NOT_A_REPOSITORY = "not-a-repository"
UNKNOWN = "unknown"

_CLASSIFIERS: list[tuple[str, tuple[str, ...], str | None]] = [
    (
        NOT_A_REPOSITORY,
        ("not a git repository",),
        "Open a folder that is inside a Git repository, or run 'git init'.",
    ),
    (
        NON_FAST_FORWARD,
        ("non-fast-forward", "[rejected]", "fetch first", "updates were rejected"),
        "The remote has commits you don't have. Pull (or pull --rebase) and push again.",
    ),
    (
        AUTH_REQUIRED,
        (
            "authentication failed",
            "could not read username",
            "could not read password",
            "permission denied (publickey",
            "terminal prompts disabled",
            "the requested url returned error: 403",
            "invalid username or password",
        ),
        "Git needs credentials for this remote. Configure a credential helper or SSH key.",
    ),
    (
        NO_REMOTE,
        (
            "no configured push destination",
            "does not appear to be a git repository",
            "no remote repository specified",
            "has no upstream branch",
            "there is no tracking information",
            "no such remote",
            "no upstream configured",
        ),
        "Add a remote with 'git remote add origin <url>' or set an upstream branch.",
    ),
]


def classify_git_error(stderr: str) -> tuple[str, str | None]:
    """Map Git's stderr onto a failure kind and a user-facing suggestion."""
    lowered = stderr.lower()
    for kind, needles, suggestion in _CLASSIFIERS:
        if any(needle in lowered for needle in needles):
            return kind, suggestion
    return UNKNOWN, None


@dataclass
class GitResult:
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout + stderr, for messages Git splits across both."""
        return f"{self.stdout}\n{self.stderr}".strip()

    def error(self) -> GitCommandError:
        kind, suggestion = classify_git_error(self.stderr or self.stdout)
        return GitCommandError(
            self.args,
            self.stderr or self.stdout,
            kind=kind,
            suggestion=suggestion,
            returncode=self.returncode,
        )

    def check(self) -> GitResult:
        if not self.ok:
            raise self.error()
        return self


class GitRunner:
    """Runs git subprocesses with per-repository serialisation of mutations."""

    def __init__(self, *, timeout: float = 60.0, git_command: str = "git") -> None:
        self._timeout = timeout
        self._git = git_command
        self._locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def _key(repo: Path | str) -> str:
        return str(Path(repo).expanduser().resolve())

    def lock_for(self, repo: Path | str) -> asyncio.Lock:
        key = self._key(repo)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def run(
        self,
        repo: Path | str,
        *args: str,
        mutating: bool = False,
        timeout: float | None = None,
    ) -> GitResult:
        if mutating:
            async with self.lock_for(repo):
                return await self._exec(repo, list(args), timeout)
        return await self._exec(repo, list(args), timeout)

    async def _exec(
        self, repo: Path | str, args: list[str], timeout: float | None
    ) -> GitResult:
        cwd = Path(repo).expanduser()
        if not cwd.is_dir():
            return GitResult(
                args, 128, stderr=f"fatal: not a git repository: {cwd} does not exist"
            )
        env = {
            **os.environ,
            "GIT_TERMINAL_PROMPT": "0",
            "LC_ALL": "C",
        }
        logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
        try:
            proc = await asyncio.create_subprocess_exec(
                self._git,
                *args,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError:
            return GitResult(args, 127, stderr=f"{self._git}: command not found")

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=timeout or self._timeout
            )
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            logger.warning("git %s timed out in %s", " ".join(args), cwd)
            return GitResult(args, -1, stderr=f"git {args[0]} timed out")
        except asyncio.CancelledError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            raise

        result = GitResult(
            args,
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
        if not result.ok:
            logger.debug(
                "git %s exited %d: %s", " ".join(args), result.returncode,
                result.stderr.strip()[:200],
            )
        return result


# ── Parsed views ──


@dataclass
class WorktreeInfo:
    path: str
    head: str = ""
    branch: str | None = None
    detached: bool = False
    bare: bool = False
    locked: bool = False
    lock_reason: str | None = None

    @property
    def branch_name(self) -> str | None:
        if self.branch and self.branch.startswith("refs/heads/"):
            return self.branch[len("refs/heads/"):]
        return self.branch

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "head": self.head,
            "branch": self.branch_name,
            "detached": self.detached,
            "bare": self.bare,
            "locked": self.locked,
            "lockReason": self.lock_reason,
        }


def parse_worktrees(porcelain: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain``."""
    worktrees: list[WorktreeInfo] = []
    current: dict[str, Any] = {}
    for line in porcelain.splitlines():
        if not line:
            if current:
                worktrees.append(WorktreeInfo(**current))
                current = {}
            continue
        if line.startswith("worktree "):
            current["path"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["head"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True
        elif line == "detached":
            current["detached"] = True
        elif line.startswith("locked"):
            current["locked"] = True
            if " " in line:
                current["lock_reason"] = line.split(" ", 1)[1]
    if current:
        worktrees.append(WorktreeInfo(**current))
    return worktrees


@dataclass
class FileStatus:
    path: str
    index: str = " "
    worktree: str = " "

    @property
    def staged(self) -> bool:
        return self.index not in (" ", "?")

    @property
    def untracked(self) -> bool:
        return self.index == "?"

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "status": (self.index + self.worktree).strip(),
            "staged": self.staged,
            "untracked": self.untracked,
        }


def parse_status(porcelain: str) -> list[FileStatus]:
    """Parse ``git status --porcelain`` (v1)."""
    files: list[FileStatus] = []
    for line in porcelain.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        files.append(FileStatus(path=path.strip('"'), index=line[0], worktree=line[1]))
    return files


@dataclass
class CommitInfo:
    hash: str
    message: str
    author: str = ""
    date: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "message": self.message,
            "author": self.author,
            "date": self.date,
        }


LOG_FORMAT = "%H%x1f%s%x1f%an%x1f%aI"


def parse_log(output: str) -> list[CommitInfo]:
    """Parse ``git log --format=LOG_FORMAT``."""
    commits: list[CommitInfo] = []
    for line in output.splitlines():
        parts = line.split("\x1f")
        if len(parts) < 2 or not parts[0]:
            continue
        parts += [""] * (4 - len(parts))
        commits.append(CommitInfo(hash=parts[0], message=parts[1], author=parts[2], date=parts[3]))
    return commits


@dataclass
class MergeAnalysis:
    can_merge: bool = False
    behind_count: int = 0
    ahead_count: int = 0
    conflict_files: list[str] = field(default_factory=list)
    changed_files: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "canMerge": self.can_merge,
            "behindCount": self.behind_count,
            "aheadCount": self.ahead_count,
            "conflictFiles": list(self.conflict_files),
            "changedFiles": list(self.changed_files),
        }
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass
class SyncStatus:
    branch: str | None = None
    upstream: str | None = None
    remote: str | None = None
    ahead: int = 0
    behind: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch": self.branch,
            "upstream": self.upstream,
            "remote": self.remote,
            "ahead": self.ahead,
            "behind": self.behind,
        }


@dataclass
class AgentBranchInfo:
    name: str
    agent_name: str
    session_id: str
    last_commit: CommitInfo | None = None
    ahead: int = 0
    behind: int = 0
    is_current: bool = False
    worktree_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "agentName": self.agent_name,
            "sessionId": self.session_id,
            "lastCommit": self.last_commit.to_dict() if self.last_commit else None,
            "ahead": self.ahead,
            "behind": self.behind,
            "isCurrent": self.is_current,
            "worktreePath": self.worktree_path,
        }


def parse_left_right(output: str) -> tuple[int, int]:
    """Parse ``git rev-list --left-right --count A...B`` -> (left, right)."""
    parts = output.split()
    if len(parts) != 2:
        return 0, 0
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return 0, 0
