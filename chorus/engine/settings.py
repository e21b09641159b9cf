"""Settings resolution: conversation -> workspace -> built-in default."""
from __future__ import annotations

from .models import (
    DEFAULT_MODEL,
    ConversationSettings,
    GitSettings,
    PermissionMode,
    ResolvedSettings,
    WorkspaceSettings,
)


def resolve_settings(
    conversation: ConversationSettings | None,
    workspace: WorkspaceSettings | None,
) -> ResolvedSettings:
    """Return the effective settings for one turn.

    A conversation field that is ``None`` defers to the workspace; a
    missing workspace defers to the built-in defaults.
    """
    conversation = conversation or ConversationSettings()

    mode = conversation.permission_mode
    if mode is None:
        mode = workspace.default_permission_mode if workspace else PermissionMode.DEFAULT

    tools = conversation.allowed_tools
    if tools is None:
        tools = list(workspace.default_allowed_tools) if workspace else []

    model = conversation.model
    if not model:
        model = workspace.default_model if workspace else DEFAULT_MODEL

    git = workspace.git if workspace and workspace.git is not None else GitSettings()

    return ResolvedSettings(
        permission_mode=mode,
        allowed_tools=list(tools),
        model=model or DEFAULT_MODEL,
        git=git,
    )
