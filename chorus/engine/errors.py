"""Exception hierarchy for the Chorus engine.

Specific exceptions for each failure mode. Every subprocess and Git
failure is turned into one of these (or a typed result) before it
reaches a collaborator.
"""
from __future__ import annotations


class ChorusError(Exception):
    """Base exception for all engine errors."""


class ProcessSpawnError(ChorusError):
    """The agent binary is missing or could not be started."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn agent process '{command}': {reason}")


class ProtocolParseError(ChorusError):
    """A stream line could not be decoded as a protocol event.

    Raised only by strict helpers; the streaming parser recovers by
    emitting a raw-text event instead.
    """
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        preview = line if len(line) <= 80 else line[:77] + "..."
        super().__init__(f"Cannot parse stream line ({reason}): {preview}")


class ProtocolViolationError(ChorusError):
    """The agent process exited without the terminal result event."""
    def __init__(self, conversation_id: str, exit_code: int | None):
        self.conversation_id = conversation_id
        self.exit_code = exit_code
        super().__init__(
            f"Agent process for {conversation_id} exited with code "
            f"{exit_code} before emitting a result"
        )


class ProcessExitError(ChorusError):
    """The agent process exited with a non-zero status."""
    def __init__(self, conversation_id: str, exit_code: int, stderr: str = ""):
        self.conversation_id = conversation_id
        self.exit_code = exit_code
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"Agent process exited with code {exit_code}{detail}")


class PermissionDeniedError(ChorusError):
    """The user declined a tool call. Recoverable; aborts the turn only."""
    def __init__(self, tool_name: str, reason: str | None = None):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(
            f"Permission denied for {tool_name}"
            + (f": {reason}" if reason else "")
        )


class StaleRequestError(ChorusError):
    """A permission response referenced a request that is not outstanding."""
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Permission request is not outstanding: {request_id}")


class PermissionConflictError(ChorusError):
    """A second permission request was raised while one is outstanding."""
    def __init__(self, conversation_id: str, outstanding_id: str):
        self.conversation_id = conversation_id
        self.outstanding_id = outstanding_id
        super().__init__(
            f"Conversation {conversation_id} already has an outstanding "
            f"permission request ({outstanding_id})"
        )


class InvalidTransitionError(ChorusError, ValueError):
    """Process state machine was asked for a transition it does not allow."""


class PairingViolationError(ChorusError):
    """A tool_result arrived with no matching tool_use."""
    def __init__(self, conversation_id: str, tool_use_id: str | None):
        self.conversation_id = conversation_id
        self.tool_use_id = tool_use_id
        super().__init__(
            f"tool_result {tool_use_id!r} in {conversation_id} has no "
            f"matching tool_use"
        )


class ConversationNotFoundError(ChorusError):
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class GitCommandError(ChorusError):
    """A Git invocation failed.

    ``kind`` is one of ``rejected-non-fast-forward``, ``no-remote``,
    ``auth-required``, ``not-a-repository`` or ``unknown``. Unknown
    failures carry Git's own stderr verbatim in the message.
    """
    def __init__(
        self,
        command: list[str],
        stderr: str,
        kind: str = "unknown",
        suggestion: str | None = None,
        returncode: int | None = None,
    ):
        self.command = command
        self.stderr = stderr
        self.kind = kind
        self.suggestion = suggestion
        self.returncode = returncode
        message = stderr.strip() or f"git {' '.join(command)} failed"
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "error": str(self),
            "suggestion": self.suggestion,
        }


class CascadeDeleteError(ChorusError):
    """Branch deletion failed while deleting a conversation.

    The conversation record is left untouched.
    """
    def __init__(self, conversation_id: str, branch: str, reason: str):
        self.conversation_id = conversation_id
        self.branch = branch
        self.reason = reason
        super().__init__(
            f"Cannot delete conversation {conversation_id}: deleting branch "
            f"'{branch}' failed: {reason}"
        )
