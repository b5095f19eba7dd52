"""Domain enumerations used across all modules."""

from __future__ import annotations

from enum import Enum, unique


@unique
class SessionState(str, Enum):
    """Lifecycle of a single-use PowerShell session."""

    IDLE = "idle"
    INTERACTING = "interacting"
    CLOSED = "closed"


@unique
class WorkerPhase(str, Enum):
    """Per-worker build pipeline states."""

    UNCONNECTED = "unconnected"
    DIALING = "dialing"
    PREPARING = "preparing"
    CONTEXT_SHIPPED = "context_shipped"
    LOGGING_IN = "logging_in"
    BUILDING = "building"
    PUSHING = "pushing"
    MANIFESTING = "manifesting"
    DONE = "done"
    FAILED = "failed"


@unique
class CopyPhase(str, Enum):
    """Steps of shipping one file over SFTP."""

    CHANNEL = "channel"
    CREATE = "create"
    COPY = "copy"


@unique
class Isolation(str, Enum):
    """Container isolation technologies accepted by ``docker build``."""

    DEFAULT = "default"
    HYPERV = "hyperv"
    PROCESS = "process"


@unique
class ExecutorName(str, Enum):
    """PowerShell binaries available on Windows hosts."""

    POWERSHELL = "powershell.exe"
    PWSH = "pwsh.exe"


@unique
class IOFormat(str, Enum):
    """Values for ``-InputFormat`` / ``-OutputFormat``."""

    TEXT = "Text"
    XML = "XML"


@unique
class ExecutionPolicy(str, Enum):
    """Values for ``-ExecutionPolicy``."""

    DEFAULT = "Default"
    ALL_SIGNED = "AllSigned"
    BYPASS = "Bypass"
    REMOTE_SIGNED = "RemoteSigned"
    RESTRICTED = "Restricted"
    UNDEFINED = "Undefined"
    UNRESTRICTED = "Unrestricted"


@unique
class ReaderState(str, Enum):
    """Per-stream framing state while one command is in flight."""

    ACCUMULATING = "accumulating"
    MATCHED = "matched"
