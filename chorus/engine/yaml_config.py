"""YAML configuration loader.

Loads a single YAML file that overrides the CHORUS_* env vars and the
engine's built-in settings defaults. When no YAML is provided,
``EngineConfig.from_env()`` works exactly as before.

File shape:
    engine:
      claude_command: /usr/local/bin/claude
      backend: sdk
      data_dir: ~/.chorus
      permission_timeout_seconds: 300
      session_max_age_days: 25

    defaults:
      permission_mode: acceptEdits
      allowed_tools: [Bash]
      model: default
      git:
        auto_branch: true
        auto_commit: true
        use_worktrees: false
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from .config import EngineConfig
from .models import GitSettings, PermissionMode, WorkspaceSettings

logger = logging.getLogger(__name__)


# snake_case spellings accepted in YAML alongside the wire values
_MODE_ALIASES = {
    "accept_edits": PermissionMode.ACCEPT_EDITS,
    "bypass": PermissionMode.BYPASS,
    "bypass_permissions": PermissionMode.BYPASS,
}


def _permission_mode(value: object) -> PermissionMode:
    mode = PermissionMode.parse(value) or _MODE_ALIASES.get(str(value))
    if mode is None:
        logger.warning("Unknown permission_mode %r in YAML defaults; using default", value)
        return PermissionMode.DEFAULT
    return mode


@dataclass
class ChorusConfig:
    """Engine settings plus workspace defaults from one YAML file."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    # Replaces the hard-coded settings defaults at the bottom of the
    # conversation -> workspace -> default resolution chain.
    defaults: WorkspaceSettings = field(default_factory=WorkspaceSettings)


def _engine_from_raw(engine_raw: dict) -> EngineConfig:
    base = EngineConfig.from_env()
    known = {f.name for f in fields(EngineConfig)}
    unknown = sorted(set(engine_raw) - known)
    if unknown:
        logger.warning("Ignoring unknown engine keys in YAML config: %s", ", ".join(unknown))
    for key, value in engine_raw.items():
        if key not in known or value is None:
            continue
        current = getattr(base, key)
        if isinstance(current, bool):
            value = bool(value)
        elif isinstance(current, float):
            value = float(value)
        elif isinstance(current, int):
            value = int(value)
        else:
            value = str(value)
        setattr(base, key, value)
    return base


def _defaults_from_raw(defaults_raw: dict) -> WorkspaceSettings:
    git_raw = defaults_raw.get("git")
    git = None
    if isinstance(git_raw, dict):
        git = GitSettings(
            auto_branch=bool(git_raw.get("auto_branch", True)),
            auto_commit=bool(git_raw.get("auto_commit", True)),
            use_worktrees=bool(git_raw.get("use_worktrees", False)),
        )
    tools = defaults_raw.get("allowed_tools") or []
    return WorkspaceSettings(
        default_permission_mode=_permission_mode(defaults_raw.get("permission_mode", "default")),
        default_allowed_tools=[str(t) for t in tools],
        default_model=str(defaults_raw.get("model") or "default"),
        git=git,
    )


def load_yaml_config(path: str | Path) -> ChorusConfig:
    """Read *path* into a ChorusConfig.

    Values in the ``engine`` section win over CHORUS_* env vars; the
    ``defaults`` section becomes the bottom of settings resolution.
    """
    path = Path(path).expanduser()
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except FileNotFoundError:
        logger.error("Config file %s does not exist", path.resolve())
        raise
    except yaml.YAMLError as exc:
        logger.error("Config file %s is not valid YAML: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    logger.info("Loaded config %s (sections: %s)", path, ", ".join(sorted(map(str, raw))) or "none")

    engine = _engine_from_raw(raw.get("engine") or {})
    defaults = _defaults_from_raw(raw.get("defaults") or {})
    return ChorusConfig(engine=engine, defaults=defaults)
