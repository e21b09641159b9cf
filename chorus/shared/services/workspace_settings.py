"""Workspace settings, stored in ``{workspaceRoot}/.chorus/workspace-settings.json``.

Shape: ``{defaultPermissionMode, defaultAllowedTools, defaultModel, git?}``.
Keys missing from the file fall back to the configured defaults.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path

from chorus.engine.models import WorkspaceSettings
from chorus.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

SETTINGS_DIRNAME = ".chorus"
SETTINGS_FILENAME = "workspace-settings.json"


def settings_path(workspace_root: Path | str) -> Path:
    return Path(workspace_root) / SETTINGS_DIRNAME / SETTINGS_FILENAME


class WorkspaceSettingsService:
    """Reads and writes per-workspace defaults."""

    def __init__(self, defaults: WorkspaceSettings | None = None) -> None:
        self._defaults = defaults or WorkspaceSettings()

    @property
    def defaults(self) -> WorkspaceSettings:
        return self._defaults

    def exists(self, workspace_root: Path | str) -> bool:
        return settings_path(workspace_root).is_file()

    def load(self, workspace_root: Path | str) -> WorkspaceSettings:
        """Return the workspace's settings merged over the defaults."""
        path = settings_path(workspace_root)
        if not path.is_file():
            return WorkspaceSettings.from_dict(self._defaults.to_dict())
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load workspace settings from %s: %s", path, exc)
            return WorkspaceSettings.from_dict(self._defaults.to_dict())
        if not isinstance(raw, dict):
            logger.warning("Ignoring workspace settings %s: not an object", path)
            raw = {}
        merged = {**self._defaults.to_dict(), **raw}
        return WorkspaceSettings.from_dict(merged)

    def save(self, workspace_root: Path | str, settings: WorkspaceSettings) -> Path:
        path = settings_path(workspace_root)
        atomic_write_json(path, settings.to_dict())
        logger.info("Workspace settings saved to %s", path)
        return path
