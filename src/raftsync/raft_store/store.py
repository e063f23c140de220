"""Raft store: typed items and a variable table kept in a version control workspace.

Handles:
- Listing, reading, writing and deleting raft items
- Reading and updating the variable table
- Committing pending changes as one check-in

Server layout under the raft's path prefix:

    $/<workspace>/
    ├── scripts/
    │   └── deploy.otter
    ├── roles/
    │   └── web.otter
    └── variables

Writes and deletes only stage pending changes in the local workspace;
nothing is visible to other users until commit().
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, BinaryIO, Iterator, Optional, Union

from ..backends import RecursionType, VersionControlServer, create_backend
from ..config.settings import RaftConfig
from ..errors import MalformedStoredDataError
from ..naming import (
    ITEM_EXTENSION,
    RaftItemType,
    item_name_from_server_path,
    item_server_path,
    item_type_from_server_path,
    join_server_path,
    type_folder_path,
    variables_server_path,
)
from ..workspace.session import WorkspaceSession, is_write_mode
from ..workspace.state import PendingChange
from .variables import parse_variables, serialize_variables, validate_variable_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RaftItem:
    """A named, typed document in a raft."""
    type: RaftItemType
    name: str
    last_modified: datetime


@dataclass
class RaftUser:
    """Minimal user identity for commit attribution."""
    name: str
    display_name: str = ""

    def __post_init__(self):
        if not self.display_name:
            self.display_name = self.name


def display_name_of(user: Any) -> str:
    """Display name of a user object or plain string."""
    if isinstance(user, str):
        return user
    name = getattr(user, "display_name", None) or getattr(user, "name", None)
    if not name:
        raise ValueError(f"Cannot determine display name of {user!r}")
    return str(name)


class RaftStore:
    """
    A raft persisted in a version control workspace.

    The connection and the workspace are opened on first use and kept for
    the lifetime of the store. close() releases the connection but leaves
    the local workspace in place for reuse.

    The variable table is read-modify-written as a whole. Two stores
    pointed at the same raft race on it; the last commit wins.
    """

    def __init__(
        self,
        config: RaftConfig,
        server: Optional[VersionControlServer] = None,
    ):
        """
        Initialize the raft store. Nothing is contacted until first use.

        Args:
            config: Raft settings
            server: Backend to use (default: chosen from config.base_url)
        """
        self.config = config
        self.raft_name = config.raft_name
        self.prefix = config.server_prefix
        self.session = WorkspaceSession(
            server=server or create_backend(config),
            raft_name=config.raft_name,
            workspace_name=config.resolved_workspace_name,
            server_prefix=self.prefix,
            local_path=config.resolved_local_path,
            retries=config.retries,
        )

    @classmethod
    def from_config(cls, config: RaftConfig) -> "RaftStore":
        return cls(config)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def close(self) -> None:
        """Release the server connection. Safe to call more than once."""
        self.session.close()

    @property
    def is_read_only(self) -> bool:
        """True if the authenticated user lacks check-in permission.

        Advisory only: mutations still work locally and fail at commit.
        """
        return not self.session.has_check_in_permission()

    # === Items ===

    def list_all_items(self) -> Iterator[RaftItem]:
        """Yield every item, grouped by type in declaration order."""
        for item_type in RaftItemType:
            folder = type_folder_path(self.prefix, item_type)
            for server_item in self.session.list_items(folder, RecursionType.ONE_LEVEL):
                if server_item.is_folder:
                    continue
                name = item_name_from_server_path(server_item.path)
                if name is None:
                    continue
                parsed_type = item_type_from_server_path(server_item.path)
                if parsed_type is None:
                    logger.debug(f"Skipping item in unrecognized folder: {server_item.path}")
                    continue
                yield RaftItem(parsed_type, name, server_item.check_in_date)

    def list_items(self, item_type: RaftItemType) -> Iterator[RaftItem]:
        """Yield the items of one type."""
        pattern = join_server_path(type_folder_path(self.prefix, item_type), "*" + ITEM_EXTENSION)
        for server_item in self.session.list_items(pattern, RecursionType.NONE):
            if server_item.is_folder:
                continue
            name = item_name_from_server_path(server_item.path)
            if name is not None:
                yield RaftItem(item_type, name, server_item.check_in_date)

    def get_item(self, item_type: RaftItemType, name: str) -> Optional[RaftItem]:
        """Get one item, or None if the server has no such item."""
        path = item_server_path(self.prefix, item_type, name)
        for server_item in self.session.list_items(path, RecursionType.NONE):
            if not server_item.is_folder:
                return RaftItem(item_type, name, server_item.check_in_date)
        return None

    def open_item(self, item_type: RaftItemType, name: str, mode: str = "rb") -> Optional[BinaryIO]:
        """
        Open an item's local copy.

        Write modes stage an add or edit first. Read mode returns None when
        there is no local copy.

        Args:
            item_type: Item type
            name: Item name
            mode: Binary file mode ("rb", "wb", "ab", "r+b", ...)
        """
        if "b" not in mode:
            raise ValueError(f"Raft items are binary; expected a binary mode, got {mode!r}")

        path = item_server_path(self.prefix, item_type, name)
        if is_write_mode(mode):
            return self.session.write_item(path, mode)
        return self.session.read_item(path)

    def read_item_bytes(self, item_type: RaftItemType, name: str) -> Optional[bytes]:
        stream = self.open_item(item_type, name, "rb")
        if stream is None:
            return None
        with stream:
            return stream.read()

    def write_item_bytes(self, item_type: RaftItemType, name: str, data: bytes) -> None:
        with self.open_item(item_type, name, "wb") as stream:
            stream.write(data)

    def delete_item(self, item_type: RaftItemType, name: str) -> bool:
        """Stage deletion of an item. Returns False if there was nothing to delete."""
        path = item_server_path(self.prefix, item_type, name)
        deleted = self.session.pend_delete(path)
        if deleted:
            logger.info(f"Raft {self.raft_name}: pending delete of {item_type.value} '{name}'")
        return deleted

    # === Variables ===

    @property
    def variables_path(self) -> str:
        return variables_server_path(self.prefix)

    def get_variables(self) -> dict[str, str]:
        """Read the variable table; empty if it has never been created."""
        stream = self.session.read_item(self.variables_path)
        if stream is None:
            return {}

        with stream:
            raw = stream.read()
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedStoredDataError(
                f"Variable table is not valid UTF-8: {e}",
                resource=self.variables_path,
            )
        return parse_variables(text)

    def set_variable(self, name: str, value: str) -> None:
        """Set (or overwrite) one variable."""
        validate_variable_name(name)
        variables = self.get_variables()
        variables[name] = value
        self._save_variables(variables)
        logger.debug(f"Raft {self.raft_name}: set variable {name}")

    def delete_variable(self, name: str) -> bool:
        """Remove one variable. Returns False if it was not set."""
        variables = self.get_variables()
        if name not in variables:
            return False
        del variables[name]
        self._save_variables(variables)
        logger.debug(f"Raft {self.raft_name}: deleted variable {name}")
        return True

    def _save_variables(self, variables: dict[str, str]) -> None:
        data = serialize_variables(variables).encode("utf-8")
        with self.session.write_item(self.variables_path, "wb") as stream:
            stream.write(data)

    # === Pending changes ===

    @property
    def pending_changes(self) -> list[PendingChange]:
        return self.session.pending_changes

    def refresh(self) -> int:
        """Get latest from the server. Returns the number of files updated."""
        if not self.session.is_workspace_open:
            self.session.open_workspace()
            return 0
        return self.session.get_latest()

    def revert(self) -> int:
        """Undo all pending changes. Returns how many were reverted."""
        count = self.session.undo_all()
        if count:
            logger.info(f"Raft {self.raft_name}: reverted {count} pending change(s)")
        return count

    def commit(self, user: Union[str, Any]) -> Optional[int]:
        """
        Check in all pending changes, attributed to a user.

        Args:
            user: Object with a display_name (or name) attribute, or a string

        Returns:
            Changeset id, or None if nothing was pending

        Raises:
            CheckInConflictError: If the server rejects the check-in
        """
        message = f"Updated by raftsync user {display_name_of(user)}."
        return self.session.commit(message)
