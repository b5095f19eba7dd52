"""Hierarchical exception types for windbag."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from windbag.shared.enums import CopyPhase, WorkerPhase


class WindbagError(Exception):
    """Base exception for all windbag errors."""


# ── Transport ───────────────────────────────────────────────────


class _HintedError(WindbagError):
    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(f"{message}, {hint}" if hint else message)
        self.hint = hint


class AuthenticationError(_HintedError):
    """Credentials are missing, unusable, or rejected by the remote host."""


class NetworkError(_HintedError):
    """Dial or transport failure, optionally annotated with an actionable hint."""


class TransportClosed(NetworkError):
    """A remote stream reached end-of-stream in the middle of an interaction."""


class CommandTimeoutError(NetworkError):
    """A single remote command did not complete in time."""


class TransferError(NetworkError):
    """Shipping a file to the remote host failed in a specific phase."""

    def __init__(self, message: str, *, phase: CopyPhase, written: int = 0) -> None:
        super().__init__(message)
        self.phase = phase
        self.written = written


# ── PowerShell ──────────────────────────────────────────────────


class SessionStateError(WindbagError):
    """A shell session was used outside of its single-use lifecycle."""


class RemoteCommandError(WindbagError):
    """A remote command reported failure through stderr or its exit status."""

    def __init__(self, message: str, *, command: str = "", stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.stdout = stdout
        self.stderr = stderr


# ── Docker ──────────────────────────────────────────────────────


class ArchiveError(WindbagError):
    """The local build context could not be read or archived."""


class RegistryError(WindbagError):
    """Registry manifest or token request failed."""


# ── Builder ─────────────────────────────────────────────────────


class BuildError(WindbagError):
    """A fleet build failed on one worker in one phase."""

    def __init__(self, message: str, *, worker: str = "", phase: WorkerPhase | None = None) -> None:
        super().__init__(message)
        self.worker = worker
        self.phase = phase
