"""Workspace session: one connection and one local workspace per raft.

Both resources are created on first use and cached. The connection is
released by close(); the local workspace mapping is left in place so a
later session can reuse the mirror.
"""
import logging
import platform
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from ..backends.base import (
    ChangeRequest,
    ChangeType,
    RecursionType,
    ServerItem,
    VersionControlServer,
    WorkspaceInfo,
)
from ..errors import WorkspaceUnavailableError
from ..utils.connection import with_retry
from ..utils.logging_config import timed
from .state import PendingChange, WorkspaceState

logger = logging.getLogger(__name__)

WRITE_MODE_CHARS = set("wax+")


def is_write_mode(mode: str) -> bool:
    return bool(WRITE_MODE_CHARS & set(mode))


class WorkspaceSession:
    """Lazily connected workspace mapping a server folder to a local folder."""

    def __init__(
        self,
        server: VersionControlServer,
        raft_name: str,
        workspace_name: str,
        server_prefix: str,
        local_path: Path,
        retries: int = 1,
    ):
        """
        Initialize the session. Nothing is opened until first use.

        Args:
            server: Backend the workspace is bound to
            raft_name: Raft this session serves (used in logs)
            workspace_name: Sanitized workspace identifier
            server_prefix: Server folder mapped into the workspace, e.g. '$/demo'
            local_path: Local mirror directory
            retries: Attempts for network reads (1 means no retry)
        """
        self.server = server
        self.raft_name = raft_name
        self.workspace_name = workspace_name
        self.server_prefix = server_prefix.rstrip("/")
        self.local_root = Path(local_path)
        self.computer = platform.node() or "localhost"
        self._retry = with_retry(max_attempts=retries, min_wait=0.5, max_wait=5)

        self._user: Optional[str] = None
        self._workspace: Optional[WorkspaceInfo] = None
        self._state: Optional[WorkspaceState] = None

    # === Resource state ===

    @property
    def is_connected(self) -> bool:
        return self._user is not None

    @property
    def is_workspace_open(self) -> bool:
        return self._workspace is not None

    @property
    def authorized_user(self) -> Optional[str]:
        return self._user

    @timed("connect")
    def connect(self) -> str:
        """Connect to the server once; later calls return the cached user."""
        if self._user is None:
            self._user = self._retry(self.server.connect)()
        return self._user

    @timed("open_workspace")
    def open_workspace(self) -> WorkspaceInfo:
        """Open the workspace, or refresh it if it is already open."""
        if self._workspace is not None:
            self.get_latest()
            return self._workspace

        self.connect()

        workspace = self.server.query_workspace(self.workspace_name, self.computer)
        if workspace is None:
            workspace = self.server.create_workspace(self.workspace_name, self.computer)

        try:
            self.local_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceUnavailableError(
                f"Cannot create workspace folder {self.local_root}: {e}",
                local_path=str(self.local_root),
            )

        if not workspace.is_local_path_mapped(self.local_root):
            previous = workspace.mappings.get(self.server_prefix)
            if previous:
                logger.warning(
                    f"Remapping {self.server_prefix} from {previous} to {self.local_root}"
                )
            workspace.map(self.server_prefix, self.local_root)
            try:
                self.server.update_workspace(workspace)
            except OSError as e:
                raise WorkspaceUnavailableError(
                    f"Cannot save workspace mapping for {self.workspace_name}: {e}",
                    local_path=str(self.local_root),
                )
            logger.info(f"Mapped {self.server_prefix} to {self.local_root}")

        self._state = WorkspaceState.load(self.local_root)
        self._workspace = workspace
        self.get_latest()
        return workspace

    def _ensure_workspace(self) -> WorkspaceState:
        if self._workspace is None:
            self.open_workspace()
        return self._state

    def close(self) -> None:
        """Release the connection. Safe to call repeatedly or before any use."""
        if self._user is not None:
            self.server.close()
            logger.debug(f"Closed connection for raft {self.raft_name}")
        self._user = None
        self._workspace = None
        self._state = None

    # === Paths ===

    def local_path(self, server_path: str) -> Path:
        """Local path of a server item inside the workspace."""
        self._ensure_workspace()
        local = self._workspace.get_local_item(server_path)
        if local is None:
            raise ValueError(f"{server_path} is not mapped in workspace {self.workspace_name}")
        return local

    # === Get latest ===

    @timed("get_latest")
    def get_latest(self) -> int:
        """Bring the local mirror up to the server's latest version.

        Paths with pending changes are left alone. Returns the number of
        local files written or removed.
        """
        state = self._state
        if state is None:
            self.open_workspace()
            return 0

        server_items = [
            item for item in self._retry(self.server.query_items)(self.server_prefix, RecursionType.FULL)
            if not item.is_folder
        ]
        live_paths = {item.path for item in server_items}
        updated = 0

        try:
            for item in server_items:
                if state.get_pending(item.path) is not None:
                    continue
                local = self._workspace.get_local_item(item.path)
                if local is None:
                    continue
                if state.get_version(item.path) == item.version and local.exists():
                    continue

                content = self._retry(self.server.download)(item.path)
                if content is None:
                    continue
                local.parent.mkdir(parents=True, exist_ok=True)
                local.write_bytes(content)
                state.set_version(item.path, item.version)
                updated += 1
                logger.debug(f"Got {item.path} (version {item.version})")

            for path in list(state.versions):
                if path in live_paths or state.get_pending(path) is not None:
                    continue
                local = self._workspace.get_local_item(path)
                if local is not None and local.exists():
                    local.unlink()
                    updated += 1
                state.remove_version(path)
                logger.debug(f"Removed {path} (deleted on server)")

            state.save()
        except OSError as e:
            raise WorkspaceUnavailableError(
                f"Failed to update workspace {self.local_root}: {e}",
                local_path=str(self.local_root),
            )

        if updated:
            logger.info(f"Get latest for raft {self.raft_name}: {updated} file(s) updated")
        return updated

    # === Queries ===

    def list_items(self, path_pattern: str, recursion: RecursionType = RecursionType.NONE) -> Iterator[ServerItem]:
        """Lazily list non-deleted server items matching a path pattern."""
        self._ensure_workspace()
        yield from self._retry(self.server.query_items)(path_pattern, recursion)

    def has_check_in_permission(self) -> bool:
        self.connect()
        return self._retry(self.server.has_check_in_permission)(self.server_prefix)

    # === Local reads and writes ===

    def read_item(self, server_path: str) -> Optional[BinaryIO]:
        """Open the local copy of an item, or None if there is none."""
        local = self.local_path(server_path)
        if not local.is_file():
            return None
        return open(local, "rb")

    def write_item(self, server_path: str, mode: str = "wb") -> BinaryIO:
        """Stage an add or edit for an item and open its local copy for writing."""
        if "b" not in mode or not is_write_mode(mode):
            raise ValueError(f"Expected a binary write mode, got {mode!r}")

        local = self.local_path(server_path)
        try:
            local.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceUnavailableError(
                f"Cannot create folder for {server_path}: {e}",
                local_path=str(local.parent),
            )

        state = self._ensure_workspace()
        previous = state.get_pending(server_path)
        if local.exists():
            self.pend_edit(server_path)
        else:
            self.pend_add(server_path)

        try:
            return open(local, mode)
        except OSError:
            # Unstage whatever this call staged
            if previous is None:
                state.remove_pending(server_path)
            else:
                state.set_pending(previous)
            state.save()
            raise

    # === Pending changes ===

    @property
    def pending_changes(self) -> list[PendingChange]:
        return list(self._ensure_workspace().pending_changes)

    def _stage_write(self, server_path: str) -> PendingChange:
        state = self._ensure_workspace()
        existing = state.get_pending(server_path)
        if existing is not None and existing.change_type != ChangeType.DELETE:
            return existing

        base_version = state.get_version(server_path)
        if base_version is None:
            change = PendingChange(server_path, ChangeType.ADD)
        else:
            # Also covers re-writing an item whose delete is pending
            change = PendingChange(server_path, ChangeType.EDIT, base_version)

        state.set_pending(change)
        state.save()
        logger.debug(f"Pending {change.change_type.value}: {server_path}")
        return change

    def pend_add(self, server_path: str) -> PendingChange:
        """Stage an add (an edit if the server already has the item)."""
        return self._stage_write(server_path)

    def pend_edit(self, server_path: str) -> PendingChange:
        """Stage an edit (an add if the server has never seen the item)."""
        return self._stage_write(server_path)

    def pend_delete(self, server_path: str) -> bool:
        """Stage a delete and remove the local copy.

        Returns False when there is nothing to delete (already pending,
        or unknown both locally and on the server).
        """
        state = self._ensure_workspace()
        local = self.local_path(server_path)
        existing = state.get_pending(server_path)

        if existing is not None and existing.change_type == ChangeType.DELETE:
            return False

        if existing is not None and existing.change_type == ChangeType.ADD:
            state.remove_pending(server_path)
            local.unlink(missing_ok=True)
            state.save()
            logger.debug(f"Undid pending add: {server_path}")
            return True

        base_version = state.get_version(server_path)
        if base_version is None:
            return False

        state.set_pending(PendingChange(server_path, ChangeType.DELETE, base_version))
        local.unlink(missing_ok=True)
        state.save()
        logger.debug(f"Pending delete: {server_path}")
        return True

    def undo(self, server_path: str) -> bool:
        """Revert one pending change, restoring the server copy locally."""
        state = self._ensure_workspace()
        change = state.remove_pending(server_path)
        if change is None:
            return False

        local = self.local_path(server_path)
        if change.change_type == ChangeType.ADD:
            local.unlink(missing_ok=True)
        else:
            content = self._retry(self.server.download)(server_path)
            if content is None:
                local.unlink(missing_ok=True)
                state.remove_version(server_path)
            else:
                local.parent.mkdir(parents=True, exist_ok=True)
                local.write_bytes(content)
        state.save()
        logger.debug(f"Undid pending {change.change_type.value}: {server_path}")
        return True

    def undo_all(self) -> int:
        """Revert every pending change. Returns how many were reverted."""
        paths = [c.server_path for c in self.pending_changes]
        return sum(1 for path in paths if self.undo(path))

    # === Check-in ===

    @timed("commit")
    def commit(self, comment: str) -> Optional[int]:
        """Check in all pending changes as one changeset.

        Returns the changeset id, or None when nothing was pending.

        Raises:
            CheckInConflictError: If the server rejects the check-in
        """
        state = self._ensure_workspace()
        pending = state.pending_changes
        if not pending:
            logger.debug(f"Nothing to check in for raft {self.raft_name}")
            return None

        requests = []
        for change in pending:
            content = None
            if change.change_type != ChangeType.DELETE:
                local = self.local_path(change.server_path)
                try:
                    content = local.read_bytes()
                except OSError as e:
                    raise WorkspaceUnavailableError(
                        f"Pending {change.change_type.value} of {change.server_path} "
                        f"has no readable local file: {e}",
                        local_path=str(local),
                    )
            requests.append(ChangeRequest(
                server_path=change.server_path,
                change_type=change.change_type,
                base_version=change.base_version,
                content=content,
            ))

        # Never retried: a check-in is not idempotent
        changeset_id = self.server.check_in(requests, comment)

        for change in pending:
            if change.change_type == ChangeType.DELETE:
                state.remove_version(change.server_path)
            else:
                state.set_version(change.server_path, changeset_id)
        state.clear_pending()
        state.save()

        logger.info(
            f"Raft {self.raft_name}: checked in {len(requests)} change(s) as changeset {changeset_id}"
        )
        return changeset_id
