"""Exception types raised by the raft store and its backends.

Absence (missing items, variables, workspace files) is never an error;
those cases return None, False or an empty mapping instead.
"""
from typing import Optional


class RaftError(Exception):
    """Base class for all raftsync errors."""
    pass


class AuthenticationError(RaftError):
    """Credentials were rejected while connecting to the server."""

    def __init__(self, message: str, url: str = "", username: Optional[str] = None):
        self.url = url
        self.username = username
        super().__init__(message)


class WorkspaceUnavailableError(RaftError):
    """The local workspace could not be created, mapped or refreshed."""

    def __init__(self, message: str, local_path: Optional[str] = None):
        self.local_path = local_path
        super().__init__(message)


class CheckInConflictError(RaftError):
    """The server rejected a check-in (stale base version, permission, lock)."""

    def __init__(self, message: str, conflicts: Optional[list[str]] = None):
        self.conflicts = conflicts or []
        super().__init__(message)


class MalformedStoredDataError(RaftError):
    """A stored resource exists but does not parse."""

    def __init__(self, message: str, line_number: int = 0, resource: str = ""):
        self.line_number = line_number
        self.resource = resource
        if line_number:
            message = f"{message} (line {line_number})"
        super().__init__(message)


class BackendError(RaftError):
    """Transport or protocol failure talking to the version control server."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransientBackendError(BackendError):
    """Network-level failure (connection refused, reset, timeout)."""
    pass
