"""Connection and workspace settings for a single raft."""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..naming import (
    build_workspace_name,
    sanitize_workspace_name,
    server_path_prefix,
)

DEFAULT_SERVICE_TEMP_PATH = Path.home() / ".raftsync" / "temp"
RAFTS_FOLDER_NAME = "TFS-Rafts"


def get_service_temp_path() -> Path:
    """Service temp root from RAFTSYNC_TEMP_PATH or the default."""
    path_str = os.environ.get("RAFTSYNC_TEMP_PATH")
    return Path(path_str) if path_str else DEFAULT_SERVICE_TEMP_PATH


@dataclass
class RaftConfig:
    """Configuration for a raft backed by a version control server.

    base_url is a project collection URL (http/https) or a file:// URL
    pointing at a directory-backed server.
    """
    raft_name: str
    base_url: str
    username: Optional[str] = None
    password: Optional[str] = None
    password_env: str = "RAFTSYNC_PASSWORD"
    use_system_credentials: bool = False
    # Server folder of the raft is $/<workspace_name> unless server_path is set
    workspace_name: Optional[str] = None
    server_path: Optional[str] = None
    local_path: Optional[str] = None
    service_temp_path: Optional[str] = None
    timeout: int = 30
    retries: int = 1

    def get_password(self) -> str:
        """Get password from config or environment variable."""
        if self.password:
            return self.password
        return os.environ.get(self.password_env, "")

    @property
    def temp_root(self) -> Path:
        if self.service_temp_path:
            return Path(self.service_temp_path).expanduser()
        return get_service_temp_path()

    @property
    def resolved_local_path(self) -> Path:
        """Local mirror directory of the raft."""
        if self.local_path:
            return Path(self.local_path).expanduser()
        return self.temp_root / RAFTS_FOLDER_NAME / self.raft_name

    @property
    def resolved_workspace_name(self) -> str:
        """Workspace identifier registered for this raft."""
        if self.workspace_name:
            return sanitize_workspace_name(self.workspace_name)
        return build_workspace_name(str(self.resolved_local_path))

    @property
    def server_prefix(self) -> str:
        if self.server_path:
            return self.server_path.rstrip("/")
        return server_path_prefix(self.workspace_name or self.raft_name)

    @property
    def workspace_cache_path(self) -> Path:
        return self.temp_root / "workspaces.yaml"

    @classmethod
    def from_dict(cls, raft_name: str, data: dict) -> "RaftConfig":
        return cls(raft_name=raft_name, **data)
