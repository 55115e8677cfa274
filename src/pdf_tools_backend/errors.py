from __future__ import annotations

from typing import Optional, Sequence


class PdfToolsError(Exception):
    """Base error for every failure raised by the workspace and pipeline core."""


class InputError(PdfToolsError):
    """Raised when the client supplied a missing or malformed upload or parameter."""


class WorkspaceError(PdfToolsError):
    """Raised when a job directory cannot be created or written."""


class ToolFailure(PdfToolsError):
    """Raised when an external program exits non-zero, times out, or cannot be started."""

    def __init__(
        self,
        command: Sequence[str],
        output: str = "",
        returncode: Optional[int] = None,
        timed_out: bool = False,
        reason: Optional[str] = None,
    ) -> None:
        self.command = list(command)
        self.output = output
        self.returncode = returncode
        self.timed_out = timed_out
        if reason is None:
            if timed_out:
                reason = "timed out"
            elif returncode is None:
                reason = "could not be started"
            else:
                reason = f"exited with status {returncode}"
        self.reason = reason
        super().__init__(f"{self.command[0] if self.command else '<empty>'} {reason}")


class NamingResolutionError(PdfToolsError):
    """Raised when a page artifact cannot be located or renamed to its canonical name."""


class PathForbiddenError(PdfToolsError):
    """Raised when a client path tries to escape the storage root."""


class ArtifactNotFoundError(PdfToolsError):
    """Raised when a requested artifact does not exist."""


class OperationFailed(PdfToolsError):
    """
    A core failure translated into the operation's user-facing message.

    The original exception is kept as ``__cause__`` for logging; only
    ``public_message`` is ever sent to the client.
    """

    def __init__(self, public_message: str) -> None:
        self.public_message = public_message
        super().__init__(public_message)
