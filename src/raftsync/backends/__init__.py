"""Version control backends a raft can be stored in."""
from typing import TYPE_CHECKING
from urllib.parse import urlparse

from .base import (
    ChangeRequest,
    ChangeType,
    Credentials,
    RecursionType,
    ServerItem,
    VersionControlServer,
    WorkspaceInfo,
    WorkspaceRegistry,
)
from .filesystem import FileSystemServer
from .tfvc import TfvcServer

if TYPE_CHECKING:
    from ..config.settings import RaftConfig

__all__ = [
    "ChangeRequest",
    "ChangeType",
    "Credentials",
    "RecursionType",
    "ServerItem",
    "VersionControlServer",
    "WorkspaceInfo",
    "WorkspaceRegistry",
    "FileSystemServer",
    "TfvcServer",
    "create_backend",
]

# Backend registry, keyed by URL scheme ("" means a plain local path)
BACKEND_TYPES = {
    "": FileSystemServer,
    "file": FileSystemServer,
    "http": TfvcServer,
    "https": TfvcServer,
}


def create_backend(config: "RaftConfig") -> VersionControlServer:
    """Factory function to create the backend for a raft."""
    scheme = urlparse(config.base_url).scheme.lower()
    # Windows drive letters parse as a one-letter scheme
    if len(scheme) == 1:
        scheme = ""
    if scheme not in BACKEND_TYPES:
        raise ValueError(f"Unsupported server URL scheme: {scheme or config.base_url}")

    backend_class = BACKEND_TYPES[scheme]
    credentials = Credentials(
        username=config.username,
        password=config.get_password(),
        use_system_credentials=config.use_system_credentials,
    )
    return backend_class(
        config.base_url,
        credentials,
        WorkspaceRegistry(config.workspace_cache_path),
        timeout=config.timeout,
    )
