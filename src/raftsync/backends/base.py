"""Capability contract for version control servers backing a raft.

A backend has to provide: connect with credentials, query items by path
pattern and recursion, download item content, check in a batch of
changes atomically, and report check-in permission. Workspaces (the
name -> folder mapping bound to a user and machine) are cached on the
client side in a small YAML registry shared by every backend.
"""
import fnmatch
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional

import yaml

from ..naming import split_server_path

logger = logging.getLogger(__name__)


class RecursionType(Enum):
    """How far below a path an item query descends."""
    NONE = "none"
    ONE_LEVEL = "one_level"
    FULL = "full"


class ChangeType(Enum):
    ADD = "add"
    EDIT = "edit"
    DELETE = "delete"


@dataclass
class Credentials:
    """Credentials presented when connecting.

    With use_system_credentials set, username/password are ignored and the
    backend relies on whatever identity the environment provides.
    """
    username: Optional[str] = None
    password: Optional[str] = None
    use_system_credentials: bool = False


@dataclass(frozen=True)
class ServerItem:
    """An item (file or folder) as reported by the server."""
    path: str
    version: int
    check_in_date: datetime
    is_folder: bool = False

    @property
    def name(self) -> str:
        return split_server_path(self.path)[1]


@dataclass
class ChangeRequest:
    """One change submitted as part of a check-in."""
    server_path: str
    change_type: ChangeType
    base_version: Optional[int] = None
    content: Optional[bytes] = None


@dataclass
class WorkspaceInfo:
    """A workspace: a named set of server folder -> local folder mappings."""
    name: str
    owner: str
    computer: str
    server_url: str
    mappings: dict[str, str] = field(default_factory=dict)

    def is_local_path_mapped(self, local_path: Path) -> bool:
        target = os.path.normcase(str(Path(local_path).resolve()))
        return any(
            os.path.normcase(str(Path(p).resolve())) == target
            for p in self.mappings.values()
        )

    def map(self, server_path: str, local_path: Path) -> None:
        self.mappings[server_path.rstrip("/")] = str(Path(local_path).resolve())

    def get_local_item(self, server_path: str) -> Optional[Path]:
        """Resolve a server path to its local path through the mappings.

        The longest matching server folder wins. Returns None for paths
        outside every mapping.
        """
        path = server_path.rstrip("/")
        best: Optional[str] = None
        for mapped in self.mappings:
            if path.lower() == mapped.lower() or path.lower().startswith(mapped.lower() + "/"):
                if best is None or len(mapped) > len(best):
                    best = mapped
        if best is None:
            return None

        relative = path[len(best):].lstrip("/")
        local_root = Path(self.mappings[best])
        if not relative:
            return local_root
        return local_root.joinpath(*PurePosixPath(relative).parts)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "owner": self.owner,
            "computer": self.computer,
            "server_url": self.server_url,
            "mappings": dict(self.mappings),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkspaceInfo":
        return cls(
            name=data["name"],
            owner=data.get("owner", ""),
            computer=data.get("computer", ""),
            server_url=data.get("server_url", ""),
            mappings=dict(data.get("mappings") or {}),
        )


class WorkspaceRegistry:
    """Client-side cache of workspaces, stored as YAML.

    Layout:

        workspaces:
          - name: demo
            owner: alice
            computer: build-01
            server_url: https://tfs.example.com/tfs/DefaultCollection
            mappings:
              $/demo: /var/tmp/raftsync/TFS-Rafts/demo
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> list[WorkspaceInfo]:
        if not self.path.exists():
            return []
        data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        return [WorkspaceInfo.from_dict(w) for w in data.get("workspaces", [])]

    def _save(self, workspaces: list[WorkspaceInfo]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(
            yaml.safe_dump(
                {"workspaces": [w.to_dict() for w in workspaces]},
                default_flow_style=False,
                sort_keys=False,
            ),
            encoding="utf-8",
        )
        os.replace(tmp, self.path)

    @staticmethod
    def _matches(info: WorkspaceInfo, name: str, owner: str, computer: str, server_url: str) -> bool:
        return (
            info.name.lower() == name.lower()
            and info.owner.lower() == owner.lower()
            and info.computer.lower() == computer.lower()
            and info.server_url.rstrip("/") == server_url.rstrip("/")
        )

    def query(self, name: str, owner: str, computer: str, server_url: str) -> list[WorkspaceInfo]:
        return [w for w in self._load() if self._matches(w, name, owner, computer, server_url)]

    def create(self, name: str, owner: str, computer: str, server_url: str) -> WorkspaceInfo:
        workspaces = self._load()
        for existing in workspaces:
            if self._matches(existing, name, owner, computer, server_url):
                return existing

        info = WorkspaceInfo(name=name, owner=owner, computer=computer, server_url=server_url)
        workspaces.append(info)
        self._save(workspaces)
        logger.info(f"Created workspace '{name}' for {owner} on {computer}")
        return info

    def update(self, info: WorkspaceInfo) -> None:
        workspaces = [
            w for w in self._load()
            if not self._matches(w, info.name, info.owner, info.computer, info.server_url)
        ]
        workspaces.append(info)
        self._save(workspaces)


def has_wildcard(segment: str) -> bool:
    return "*" in segment or "?" in segment


class VersionControlServer(ABC):
    """Abstract base class for version control backends."""

    def __init__(
        self,
        url: str,
        credentials: Credentials,
        registry: WorkspaceRegistry,
        timeout: int = 30,
    ):
        self.url = url
        self.credentials = credentials
        self.registry = registry
        self.timeout = timeout
        self.authorized_user: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.authorized_user is not None

    # Connection management
    @abstractmethod
    def connect(self) -> str:
        """Authenticate and return the authorized user name.

        Raises:
            AuthenticationError: If the credentials are rejected
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the connection and any server-side session."""
        pass

    @abstractmethod
    def has_check_in_permission(self, server_path: str) -> bool:
        pass

    # Items
    @abstractmethod
    def _query(self, scope_path: str, recursion: RecursionType) -> list[ServerItem]:
        """Non-deleted items at scope_path and below, down to recursion.

        The scope item itself is included when it exists.
        """
        pass

    @abstractmethod
    def download(self, server_path: str) -> Optional[bytes]:
        """Latest content of a file, or None if it does not exist."""
        pass

    @abstractmethod
    def check_in(self, changes: list[ChangeRequest], comment: str) -> int:
        """Commit all changes as a single changeset and return its id.

        Raises:
            CheckInConflictError: If the server rejects the check-in
        """
        pass

    def query_items(self, path_pattern: str, recursion: RecursionType) -> list[ServerItem]:
        """Query items matching a path whose last segment may hold wildcards.

        A wildcard pattern selects matching children of its parent folder
        (NONE) or matching items anywhere below it (ONE_LEVEL, FULL).
        """
        parent, last = split_server_path(path_pattern)
        if not has_wildcard(last):
            return self._query(path_pattern.rstrip("/"), recursion)

        scope_recursion = RecursionType.ONE_LEVEL if recursion == RecursionType.NONE else RecursionType.FULL
        pattern = last.lower()
        return [
            item for item in self._query(parent, scope_recursion)
            if item.path.rstrip("/").lower() != parent.rstrip("/").lower()
            and fnmatch.fnmatchcase(item.name.lower(), pattern)
        ]

    # Workspaces
    def query_workspace(self, name: str, computer: str) -> Optional[WorkspaceInfo]:
        matches = self.registry.query(name, self.authorized_user or "", computer, self.url)
        return matches[0] if matches else None

    def create_workspace(self, name: str, computer: str) -> WorkspaceInfo:
        return self.registry.create(name, self.authorized_user or "", computer, self.url)

    def update_workspace(self, info: WorkspaceInfo) -> None:
        self.registry.update(info)

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
