"""raftsync: rafts of typed configuration items stored in version control."""
from .config import RaftConfig, RaftInventory
from .errors import (
    AuthenticationError,
    BackendError,
    CheckInConflictError,
    MalformedStoredDataError,
    RaftError,
    WorkspaceUnavailableError,
)
from .naming import RaftItemType
from .raft_store import RaftItem, RaftStore, RaftUser

__version__ = "0.1.0"

__all__ = [
    "RaftConfig",
    "RaftInventory",
    "RaftItemType",
    "RaftItem",
    "RaftStore",
    "RaftUser",
    "RaftError",
    "AuthenticationError",
    "BackendError",
    "CheckInConflictError",
    "MalformedStoredDataError",
    "WorkspaceUnavailableError",
]
