from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from chorus.adapters.events import BranchCreated, CommitCreated
from chorus.engine.errors import GitCommandError
from chorus.engine.git_automation import (
    BranchSetup,
    GitAutomationController,
    agent_branch_name,
    commit_message_for,
    parse_agent_branch,
    sanitize_ref_component,
    worktree_path_for,
)
from chorus.engine.git_ops import (
    NO_REMOTE,
    NON_FAST_FORWARD,
    NOT_A_REPOSITORY,
    AUTH_REQUIRED,
    UNKNOWN,
    GitRunner,
    classify_git_error,
    parse_left_right,
    parse_status,
    parse_worktrees,
)
from chorus.engine.models import CommitType, GitSettings


def _git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, text=True,
    )
    return result.stdout.strip()


def _init_repo(path: Path, files: dict[str, str] | None = None) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    _git(path, "init", "-q")
    _git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(path, "config", "user.name", "Test User")
    _git(path, "config", "user.email", "test@example.com")
    _git(path, "config", "commit.gpgsign", "false")
    for name, content in (files or {"README.md": "hello\n"}).items():
        (path / name).write_text(content, encoding="utf-8")
    _git(path, "add", "-A")
    _git(path, "commit", "-q", "-m", "initial")
    return path


def _commit_file(repo: Path, name: str, content: str, message: str) -> None:
    (repo / name).write_text(content, encoding="utf-8")
    _git(repo, "add", name)
    _git(repo, "commit", "-q", "-m", message)


class _Recorder:
    def __init__(self) -> None:
        self.events: list = []

    async def __call__(self, event) -> None:
        self.events.append(event)


# ── Pure helpers ──


def test_branch_names_follow_agent_pattern() -> None:
    assert agent_branch_name("chorus", "abc-123") == "agent/chorus/abc-123"
    assert agent_branch_name("my agent", "s/1") == "agent/my-agent/s-1"
    assert parse_agent_branch("agent/chorus/abc-123") == ("chorus", "abc-123")
    assert parse_agent_branch("main") is None
    assert parse_agent_branch("agent/only") is None


def test_sanitize_ref_component() -> None:
    assert sanitize_ref_component("..weird..name.lock") == "weird.name"
    assert sanitize_ref_component("  ") == "agent"


def test_commit_message_truncation() -> None:
    assert commit_message_for("add a README", CommitType.TURN) == "add a README"
    assert commit_message_for("fix", CommitType.STOP) == "Stopped: fix"
    long = commit_message_for("word " * 50, CommitType.TURN, max_length=20)
    assert len(long) <= 20
    assert long.endswith("...")
    assert commit_message_for("   ", CommitType.TURN) == "Agent changes"


def test_worktree_path_is_deterministic(tmp_path: Path) -> None:
    repo = tmp_path / "proj"
    repo.mkdir()
    first = worktree_path_for(repo, "chorus", "0123456789abcdef")
    assert first == tmp_path.resolve() / ".chorus-worktrees" / "proj" / "chorus-01234567"
    assert worktree_path_for(repo, "chorus", "0123456789abcdef") == first
    custom = worktree_path_for(repo, "chorus", "0123456789abcdef", str(tmp_path / "wt"))
    assert custom == tmp_path / "wt" / "proj" / "chorus-01234567"


@pytest.mark.parametrize(
    ("stderr", "kind"),
    [
        ("fatal: not a git repository (or any of the parent directories): .git", NOT_A_REPOSITORY),
        (" ! [rejected]        main -> main (non-fast-forward)", NON_FAST_FORWARD),
        ("fatal: Authentication failed for 'https://example.com/x.git/'", AUTH_REQUIRED),
        ("fatal: No configured push destination.", NO_REMOTE),
        ("fatal: 'origin' does not appear to be a git repository", NO_REMOTE),
        ("error: something else entirely", UNKNOWN),
    ],
)
def test_classify_git_error(stderr: str, kind: str) -> None:
    classified, suggestion = classify_git_error(stderr)
    assert classified == kind
    assert (suggestion is None) == (kind == UNKNOWN)


def test_parsers() -> None:
    worktrees = parse_worktrees(
        "worktree /repo\nHEAD abc\nbranch refs/heads/main\n\n"
        "worktree /wt/one\nHEAD def\ndetached\nlocked busy\n"
    )
    assert [w.branch_name for w in worktrees] == ["main", None]
    assert worktrees[1].detached and worktrees[1].locked
    assert worktrees[1].lock_reason == "busy"

    files = parse_status(" M a.py\n?? new.txt\nR  old.py -> renamed.py\n")
    assert [(f.path, f.staged, f.untracked) for f in files] == [
        ("a.py", False, False),
        ("new.txt", False, True),
        ("renamed.py", True, False),
    ]
    assert parse_left_right("3\t5\n") == (3, 5)
    assert parse_left_right("garbage") == (0, 0)


# ── Runner ──


@pytest.mark.asyncio
async def test_runner_reports_missing_directory(tmp_path: Path) -> None:
    result = await GitRunner().run(tmp_path / "missing", "status")
    assert not result.ok
    with pytest.raises(GitCommandError) as excinfo:
        result.check()
    assert excinfo.value.kind == NOT_A_REPOSITORY


@pytest.mark.asyncio
async def test_not_a_repository_is_classified(tmp_path: Path) -> None:
    controller = GitAutomationController()
    assert await controller.is_repository(tmp_path) is False
    with pytest.raises(GitCommandError) as excinfo:
        await controller.status(tmp_path)
    assert excinfo.value.kind == NOT_A_REPOSITORY
    assert excinfo.value.to_dict()["suggestion"]


# ── Branches ──


@pytest.mark.asyncio
async def test_default_branch_detection(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo")
    assert await controller.default_branch(repo) == "main"

    other = _init_repo(tmp_path / "other")
    _git(other, "branch", "-m", "main", "trunk")
    _git(other, "branch", "master")
    assert await controller.default_branch(other) == "master"

    third = _init_repo(tmp_path / "third")
    _git(third, "branch", "-m", "main", "zeta")
    _git(third, "branch", "alpha")
    assert await controller.default_branch(third) == "alpha"


@pytest.mark.asyncio
async def test_ensure_session_branch_creates_off_default(tmp_path: Path) -> None:
    recorder = _Recorder()
    controller = GitAutomationController(emit=recorder)
    repo = _init_repo(tmp_path / "repo")
    _git(repo, "checkout", "-q", "-b", "scratch")
    _commit_file(repo, "scratch.txt", "x\n", "scratch work")

    setup = await controller.ensure_session_branch(
        repo, conversation_id="conv-1", agent_name="chorus",
        session_id="sess-1", settings=GitSettings(),
    )
    assert setup == BranchSetup("agent/chorus/sess-1", None, True)
    assert await controller.current_branch(repo) == "agent/chorus/sess-1"
    assert _git(repo, "rev-parse", "HEAD") == _git(repo, "rev-parse", "main")
    assert [type(e) for e in recorder.events] == [BranchCreated]
    assert recorder.events[0].branch_name == "agent/chorus/sess-1"

    again = await controller.ensure_session_branch(
        repo, conversation_id="conv-1", agent_name="chorus",
        session_id="sess-1", settings=GitSettings(),
    )
    assert again is not None and again.created is False
    assert len(recorder.events) == 1


@pytest.mark.asyncio
async def test_ensure_session_branch_respects_settings(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo")
    assert await controller.ensure_session_branch(
        repo, conversation_id="c", agent_name="a", session_id="s",
        settings=GitSettings(auto_branch=False),
    ) is None
    plain = tmp_path / "plain"
    plain.mkdir()
    assert await controller.ensure_session_branch(
        plain, conversation_id="c", agent_name="a", session_id="s",
        settings=GitSettings(),
    ) is None
    assert await controller.current_branch(repo) == "main"


@pytest.mark.asyncio
async def test_worktree_mode_isolates_sessions(tmp_path: Path) -> None:
    controller = GitAutomationController(worktree_root=str(tmp_path / "wt"))
    repo = _init_repo(tmp_path / "repo")
    settings = GitSettings(use_worktrees=True)

    first = await controller.ensure_session_branch(
        repo, conversation_id="c1", agent_name="chorus", session_id="aaaa1111", settings=settings,
    )
    second = await controller.ensure_session_branch(
        repo, conversation_id="c2", agent_name="chorus", session_id="bbbb2222", settings=settings,
    )
    assert first is not None and second is not None
    assert first.worktree_path != second.worktree_path
    assert Path(first.worktree_path, "README.md").is_file()
    assert await controller.current_branch(repo) == "main"
    assert await controller.current_branch(first.worktree_path) == "agent/chorus/aaaa1111"

    listed = {w.branch_name for w in await controller.list_worktrees(repo)}
    assert {"main", "agent/chorus/aaaa1111", "agent/chorus/bbbb2222"} <= listed

    reused = await controller.ensure_session_branch(
        repo, conversation_id="c1", agent_name="chorus", session_id="aaaa1111", settings=settings,
    )
    assert reused is not None
    assert reused.worktree_path == first.worktree_path
    assert reused.created is False


@pytest.mark.asyncio
async def test_adopt_session_id_renames_branch(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo")
    setup = await controller.ensure_session_branch(
        repo, conversation_id="c", agent_name="chorus", session_id="provisional",
        settings=GitSettings(),
    )
    assert setup is not None
    renamed = await controller.adopt_session_id(
        repo, setup, agent_name="chorus", session_id="confirmed",
    )
    assert renamed.branch_name == "agent/chorus/confirmed"
    assert await controller.current_branch(repo) == "agent/chorus/confirmed"
    assert not await controller.branch_exists(repo, "agent/chorus/provisional")
    same = await controller.adopt_session_id(
        repo, renamed, agent_name="chorus", session_id="confirmed",
    )
    assert same is renamed


@pytest.mark.asyncio
async def test_delete_branch_rules(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo")
    await controller.create_branch(repo, "feature", checkout=True)
    _commit_file(repo, "feature.txt", "f\n", "feature work")

    with pytest.raises(GitCommandError, match="currently checked out"):
        await controller.delete_branch(repo, "feature")

    await controller.checkout(repo, "main")
    with pytest.raises(GitCommandError) as excinfo:
        await controller.delete_branch(repo, "feature")
    assert "force" in (excinfo.value.suggestion or "")
    assert await controller.branch_exists(repo, "feature")

    await controller.delete_branch(repo, "feature", force=True)
    assert not await controller.branch_exists(repo, "feature")

    await controller.create_branch(repo, "merged")
    await controller.delete_branch(repo, "merged")
    assert await controller.local_branches(repo) == ["main"]


@pytest.mark.asyncio
async def test_delete_branch_removes_its_worktree(tmp_path: Path) -> None:
    controller = GitAutomationController(worktree_root=str(tmp_path / "wt"))
    repo = _init_repo(tmp_path / "repo")
    setup = await controller.ensure_session_branch(
        repo, conversation_id="c", agent_name="chorus", session_id="s1",
        settings=GitSettings(use_worktrees=True),
    )
    assert setup is not None
    await controller.delete_branch(repo, setup.branch_name)
    assert not Path(setup.worktree_path).exists()
    assert not await controller.branch_exists(repo, setup.branch_name)


@pytest.mark.asyncio
async def test_refused_delete_keeps_worktree(tmp_path: Path) -> None:
    controller = GitAutomationController(worktree_root=str(tmp_path / "wt"))
    repo = _init_repo(tmp_path / "repo")
    setup = await controller.ensure_session_branch(
        repo, conversation_id="c", agent_name="chorus", session_id="s1",
        settings=GitSettings(use_worktrees=True),
    )
    assert setup is not None
    worktree = Path(setup.worktree_path)
    _commit_file(worktree, "agent.txt", "a\n", "agent work")

    with pytest.raises(GitCommandError, match="not fully merged"):
        await controller.delete_branch(repo, setup.branch_name)
    assert worktree.exists()
    assert (worktree / "agent.txt").exists()
    assert await controller.branch_exists(repo, setup.branch_name)

    await controller.delete_branch(repo, setup.branch_name, force=True)
    assert not worktree.exists()


@pytest.mark.asyncio
async def test_list_agent_branches(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo")
    await controller.create_branch(repo, "agent/chorus/s1", checkout=True)
    _commit_file(repo, "a.txt", "a\n", "agent work")
    await controller.create_branch(repo, "agent/bad", start_point="main")
    await controller.create_branch(repo, "topic", start_point="main")

    (info,) = await controller.list_agent_branches(repo)
    assert info.name == "agent/chorus/s1"
    assert info.agent_name == "chorus"
    assert info.session_id == "s1"
    assert info.ahead == 1
    assert info.behind == 0
    assert info.is_current is True
    assert info.last_commit is not None
    assert info.last_commit.message == "agent work"
    assert info.to_dict()["agentName"] == "chorus"


# ── Commits ──


@pytest.mark.asyncio
async def test_commit_with_nothing_staged_is_a_noop(tmp_path: Path) -> None:
    recorder = _Recorder()
    controller = GitAutomationController(emit=recorder)
    repo = _init_repo(tmp_path / "repo")
    before = _git(repo, "rev-parse", "HEAD")
    outcome = await controller.commit(repo, "nothing")
    assert outcome.committed is False
    assert _git(repo, "rev-parse", "HEAD") == before
    assert recorder.events == []


@pytest.mark.asyncio
async def test_auto_commit_uses_prompt_and_emits(tmp_path: Path) -> None:
    recorder = _Recorder()
    controller = GitAutomationController(emit=recorder)
    repo = _init_repo(tmp_path / "repo")
    (repo / "NOTES.md").write_text("notes\n", encoding="utf-8")

    outcome = await controller.auto_commit(
        repo, conversation_id="conv-1", prompt="write some notes",
    )
    assert outcome.committed is True
    assert outcome.files == ["NOTES.md"]
    assert outcome.branch == "main"
    assert _git(repo, "log", "-1", "--format=%s") == "write some notes"
    (event,) = recorder.events
    assert isinstance(event, CommitCreated)
    assert event.commit_hash == outcome.commit_hash
    assert event.type == "turn"
    assert event.conversation_id == "conv-1"

    again = await controller.auto_commit(repo, conversation_id="conv-1", prompt="x")
    assert again.committed is False


@pytest.mark.asyncio
async def test_auto_commit_disabled(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo")
    (repo / "x.txt").write_text("x\n", encoding="utf-8")
    outcome = await controller.auto_commit(
        repo, conversation_id="c", prompt="p", settings=GitSettings(auto_commit=False),
    )
    assert outcome.committed is False
    assert "x.txt" in _git(repo, "status", "--porcelain")


@pytest.mark.asyncio
async def test_auto_commit_outside_a_repository_is_skipped(tmp_path: Path) -> None:
    controller = GitAutomationController()
    outcome = await controller.auto_commit(tmp_path, conversation_id="c", prompt="p")
    assert outcome.committed is False


@pytest.mark.asyncio
async def test_log_and_status(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo")
    _commit_file(repo, "b.txt", "b\n", "second")
    (repo / "c.txt").write_text("c\n", encoding="utf-8")

    commits = await controller.log(repo, limit=5)
    assert [c.message for c in commits] == ["second", "initial"]
    assert commits[0].author == "Test User"
    assert [f.path for f in await controller.status(repo)] == ["c.txt"]
    assert await controller.has_changes(repo) is True


# ── Merge ──


@pytest.mark.asyncio
async def test_analyze_merge_flags_file_changed_on_both_sides(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo", {"shared.txt": "base\n", "other.txt": "o\n"})
    _git(repo, "checkout", "-q", "-b", "feature")
    _commit_file(repo, "shared.txt", "feature side\n", "feature edit")
    _commit_file(repo, "feature_only.txt", "f\n", "feature file")
    _git(repo, "checkout", "-q", "main")
    _commit_file(repo, "shared.txt", "main side\n", "main edit")

    refs_before = _git(repo, "show-ref")
    head_before = _git(repo, "rev-parse", "HEAD")
    analysis = await controller.analyze_merge(repo, "feature", "main")
    assert _git(repo, "show-ref") == refs_before
    assert _git(repo, "rev-parse", "HEAD") == head_before

    assert analysis.error is None
    assert analysis.conflict_files == ["shared.txt"]
    assert analysis.can_merge is False
    assert analysis.ahead_count == 2
    assert analysis.behind_count == 1
    assert sorted(analysis.changed_files) == ["feature_only.txt", "shared.txt"]
    assert analysis.to_dict()["canMerge"] is False


@pytest.mark.asyncio
async def test_analyze_merge_clean_and_unknown_branch(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo")
    _git(repo, "checkout", "-q", "-b", "feature")
    _commit_file(repo, "new.txt", "n\n", "feature")
    _git(repo, "checkout", "-q", "main")

    analysis = await controller.analyze_merge(repo, "feature", "main")
    assert analysis.can_merge is True
    assert analysis.conflict_files == []
    assert analysis.changed_files == ["new.txt"]

    missing = await controller.analyze_merge(repo, "nope", "main")
    assert missing.can_merge is False
    assert missing.error == "Unknown branch: nope"


@pytest.mark.asyncio
async def test_merge_conflict_is_aborted_cleanly(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo", {"shared.txt": "base\n"})
    _git(repo, "checkout", "-q", "-b", "feature")
    _commit_file(repo, "shared.txt", "feature side\n", "feature edit")
    _git(repo, "checkout", "-q", "main")
    _commit_file(repo, "shared.txt", "main side\n", "main edit")
    _git(repo, "checkout", "-q", "feature")
    main_before = _git(repo, "rev-parse", "main")

    result = await controller.merge(repo, "feature", "main")
    assert result.success is False
    assert result.conflict_files == ["shared.txt"]
    assert _git(repo, "rev-parse", "main") == main_before
    assert _git(repo, "status", "--porcelain") == ""
    assert await controller.current_branch(repo) == "feature"


@pytest.mark.asyncio
async def test_merge_no_ff_creates_merge_commit(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo")
    _git(repo, "checkout", "-q", "-b", "feature")
    _commit_file(repo, "f.txt", "f\n", "feature")

    result = await controller.merge(repo, "feature", "main", message="Merge feature")
    assert result.success is True
    assert await controller.current_branch(repo) == "main"
    assert result.commit_hash == _git(repo, "rev-parse", "HEAD")
    assert _git(repo, "log", "-1", "--format=%s") == "Merge feature"
    assert _git(repo, "rev-list", "--count", "--merges", "HEAD") == "1"


@pytest.mark.asyncio
async def test_squash_merge_needs_follow_up_commit(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo")
    _git(repo, "checkout", "-q", "-b", "feature")
    _commit_file(repo, "f.txt", "f\n", "feature one")
    _commit_file(repo, "g.txt", "g\n", "feature two")
    main_before = _git(repo, "rev-parse", "main")

    result = await controller.merge(repo, "feature", "main", squash=True)
    assert result.success is True
    assert result.commit_hash is None
    assert _git(repo, "rev-parse", "HEAD") == main_before

    outcome = await controller.commit(repo, "Squash feature", stage_all=False)
    assert outcome.committed is True
    assert sorted(outcome.files) == ["f.txt", "g.txt"]
    assert _git(repo, "rev-list", "--count", "main") == "2"


# ── Remote sync ──


@pytest.mark.asyncio
async def test_sync_status_without_remote(tmp_path: Path) -> None:
    controller = GitAutomationController()
    repo = _init_repo(tmp_path / "repo")
    status = await controller.sync_status(repo)
    assert status.branch == "main"
    assert status.upstream is None
    assert status.remote is None
    assert (status.ahead, status.behind) == (0, 0)

    with pytest.raises(GitCommandError) as excinfo:
        await controller.push(repo)
    assert excinfo.value.kind == NO_REMOTE
    assert excinfo.value.suggestion


@pytest.mark.asyncio
async def test_push_fetch_and_pull_against_local_remote(tmp_path: Path) -> None:
    controller = GitAutomationController()
    remote = tmp_path / "remote.git"
    subprocess.run(["git", "init", "-q", "--bare", str(remote)], check=True)
    repo = _init_repo(tmp_path / "repo")
    _git(repo, "remote", "add", "origin", str(remote))

    await controller.push(repo)
    status = await controller.sync_status(repo)
    assert status.upstream == "origin/main"
    assert status.remote == "origin"
    assert (status.ahead, status.behind) == (0, 0)

    _commit_file(repo, "local.txt", "l\n", "local only")
    status = await controller.sync_status(repo)
    assert (status.ahead, status.behind) == (1, 0)
    await controller.push(repo)

    clone = tmp_path / "clone"
    subprocess.run(["git", "clone", "-q", "-b", "main", str(remote), str(clone)], check=True)
    _git(clone, "config", "user.name", "Other")
    _git(clone, "config", "user.email", "other@example.com")
    _git(clone, "config", "commit.gpgsign", "false")
    _commit_file(clone, "remote.txt", "r\n", "from clone")
    _git(clone, "push", "-q", "origin", "HEAD:main")

    await controller.fetch(repo)
    status = await controller.sync_status(repo)
    assert (status.ahead, status.behind) == (0, 1)
    await controller.pull_rebase(repo)
    assert (repo / "remote.txt").is_file()
    assert (await controller.sync_status(repo)).behind == 0


@pytest.mark.asyncio
async def test_rejected_push_is_classified(tmp_path: Path) -> None:
    controller = GitAutomationController()
    remote = tmp_path / "remote.git"
    subprocess.run(["git", "init", "-q", "--bare", str(remote)], check=True)
    repo = _init_repo(tmp_path / "repo")
    _git(repo, "remote", "add", "origin", str(remote))
    await controller.push(repo)

    clone = tmp_path / "clone"
    subprocess.run(["git", "clone", "-q", "-b", "main", str(remote), str(clone)], check=True)
    _git(clone, "config", "user.name", "Other")
    _git(clone, "config", "user.email", "other@example.com")
    _git(clone, "config", "commit.gpgsign", "false")
    _commit_file(clone, "remote.txt", "r\n", "from clone")
    _git(clone, "push", "-q", "origin", "HEAD:main")

    _commit_file(repo, "local.txt", "l\n", "diverging")
    with pytest.raises(GitCommandError) as excinfo:
        await controller.push(repo)
    assert excinfo.value.kind == NON_FAST_FORWARD
