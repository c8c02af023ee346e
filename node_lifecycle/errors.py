"""Exception hierarchy for node lifecycle operations.

Every failure raised by the package derives from ``NodeToolError`` so the
CLI can report the stage that failed and exit non-zero. Nothing in the
package retries or rolls back; errors abort the current command.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "NodeToolError",
    "ConfigError",
    "SpawnError",
    "NetworkError",
    "NetworkTimeoutError",
    "ProtocolError",
    "FormatError",
    "FilesystemError",
    "CallbackError",
    "NotFoundError",
    "OperationCancelled",
    "DataDirectoryBusy",
]


class NodeToolError(Exception):
    """Base exception for all node lifecycle failures.

    Attributes:
        stage: Name of the high-level step (download, backup, restore,
            sync, testnet, standalone) the error surfaced in. Filled in by
            the orchestrator when the error crosses a stage boundary.
        context: Free-form details useful in logs.
    """

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.stage = stage
        self.context = context or {}
        super().__init__(message)


class ConfigError(NodeToolError):
    """Raised when the settings file is malformed."""


class SpawnError(NodeToolError):
    """The node binary is missing or could not be launched."""


class NetworkError(NodeToolError):
    """Transport failure talking to a snapshot or genesis endpoint."""


class NetworkTimeoutError(NetworkError):
    """A bounded HTTP call ran out of time."""


class ProtocolError(NodeToolError):
    """A response did not have the expected shape."""


class FormatError(NodeToolError):
    """The snapshot could not be decompressed or unpacked."""


class FilesystemError(NodeToolError):
    """A filesystem operation (write, remove, copy) failed."""


class CallbackError(NodeToolError):
    """The operator supplied ready command exited non-zero."""

    def __init__(self, command: str, returncode: int, stage: Optional[str] = None) -> None:
        self.command = command
        self.returncode = returncode
        super().__init__(
            f"Ready command exited with status {returncode}: {command}",
            stage=stage,
            context={"command": command, "returncode": returncode},
        )


class NotFoundError(NodeToolError):
    """A required source directory does not exist."""


class OperationCancelled(NodeToolError):
    """The operator interrupted a supervised run."""


class DataDirectoryBusy(NodeToolError):
    """Another live process holds the advisory lock on the data directory."""

    def __init__(self, home: str, pid: Optional[int]) -> None:
        self.pid = pid
        owner = f"running process {pid}" if pid is not None else "a lock file without a readable pid"
        super().__init__(
            f"Data directory {home} is locked by {owner}",
            context={"home": home, "pid": pid},
        )
