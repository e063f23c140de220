"""Local workspace management: connection, mapping and pending changes."""
from .session import WorkspaceSession
from .state import PendingChange, WorkspaceState

__all__ = ["WorkspaceSession", "PendingChange", "WorkspaceState"]
