"""
Error types for reconciliation and audit.

Every failure a run can record is one of these.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ErrorRecord:
    """A failure recorded during a run instead of being raised."""
    file: str
    error: str

    def to_dict(self):
        return {"file": self.file, "error": self.error}


class ReconciliationError(Exception):
    """Base class for errors raised inside the reconciliation engine."""


class FileAccessError(ReconciliationError):
    """A transcript file or directory is missing or unreadable."""

    def __init__(self, path: str, message: Optional[str] = None):
        self.path = path
        super().__init__(message or f"Cannot access {path}")


class RemoteError(ReconciliationError):
    """A remote host could not complete an operation."""

    def __init__(self, host: str, message: str):
        self.host = host
        super().__init__(f"{host}: {message}")


class RemoteTimeoutError(RemoteError):
    """A remote listing or transfer exceeded its timeout."""


class RemoteConnectionError(RemoteError):
    """The SSH connection itself failed."""


class RemoteTransferTooLarge(RemoteError):
    """A remote transfer exceeded the maximum buffer size."""


class StoreWriteError(ReconciliationError):
    """A single record could not be written to the event store."""

    def __init__(self, record: str, message: str):
        self.record = record
        super().__init__(f"{record}: {message}")


class UsageProviderError(ReconciliationError):
    """An external usage report could not be fetched or parsed."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class ConfigurationError(ReconciliationError, ValueError):
    """Invalid configuration, or no usable transcript source."""
