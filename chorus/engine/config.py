"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CHORUS_* env vars
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Async listener for engine events.
# Signature: async def listener(event: ChorusEvent) -> None
EventListener = Callable[[Any], Awaitable[None]]


async def fire_event(listener: EventListener | None, event: Any) -> None:
    """Invoke an event listener if set, logging and swallowing its errors."""
    if listener is None:
        return
    try:
        await listener(event)
    except Exception:
        # Never let listener errors break the engine
        logger.debug("Event listener raised", exc_info=True)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _default_data_dir() -> str:
    return str(Path.home() / ".chorus")


@dataclass
class EngineConfig:
    """Chorus engine configuration."""

    # Agent binary and backend selection ("cli" or "sdk")
    claude_command: str = "claude"
    backend: str = "cli"
    default_agent_name: str = "chorus"

    # Root for conversation/message storage
    data_dir: str = field(default_factory=_default_data_dir)

    # Max wait for a user answer to a permission request.
    # Set to 0 (or a negative value) to wait forever.
    permission_timeout_seconds: float = 300.0
    # Sessions older than this start fresh instead of resuming.
    session_max_age_days: float = 25.0
    # Grace period between SIGTERM and SIGKILL on stop.
    process_kill_timeout_seconds: float = 5.0
    # Per-invocation Git timeout.
    git_timeout_seconds: float = 60.0
    # Simple mode: one live process per agent rather than per conversation.
    one_process_per_agent: bool = False
    # Parent directory for automation worktrees; empty means beside the repo.
    worktree_root: str = ""
    # Max characters of the prompt kept in auto-commit messages.
    commit_message_max_length: int = 72

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from CHORUS_* environment variables."""
        chorus_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CHORUS_")
        }
        if chorus_vars:
            logger.info(
                "EngineConfig.from_env: CHORUS_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(chorus_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no CHORUS_* env vars set, using defaults")

        return cls(
            claude_command=os.getenv("CHORUS_CLAUDE_COMMAND", cls.claude_command),
            backend=os.getenv("CHORUS_BACKEND", cls.backend).strip().lower(),
            default_agent_name=os.getenv(
                "CHORUS_AGENT_NAME", cls.default_agent_name
            ),
            data_dir=os.getenv("CHORUS_DATA_DIR", "") or _default_data_dir(),
            permission_timeout_seconds=float(os.getenv(
                "CHORUS_PERMISSION_TIMEOUT", str(cls.permission_timeout_seconds)
            )),
            session_max_age_days=float(os.getenv(
                "CHORUS_SESSION_MAX_AGE_DAYS", str(cls.session_max_age_days)
            )),
            process_kill_timeout_seconds=float(os.getenv(
                "CHORUS_KILL_TIMEOUT", str(cls.process_kill_timeout_seconds)
            )),
            git_timeout_seconds=float(os.getenv(
                "CHORUS_GIT_TIMEOUT", str(cls.git_timeout_seconds)
            )),
            one_process_per_agent=_env_bool(
                "CHORUS_ONE_PROCESS_PER_AGENT", cls.one_process_per_agent
            ),
            worktree_root=os.getenv("CHORUS_WORKTREE_ROOT", cls.worktree_root),
            commit_message_max_length=int(os.getenv(
                "CHORUS_COMMIT_MESSAGE_MAX", str(cls.commit_message_max_length)
            )),
            log_level=os.getenv("CHORUS_LOG_LEVEL", cls.log_level).upper(),
        )

    @property
    def sessions_dir(self) -> Path:
        return Path(self.data_dir).expanduser() / "sessions"
