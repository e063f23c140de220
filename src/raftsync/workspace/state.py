"""Local bookkeeping for a workspace: item versions and pending changes.

Stored as <local root>/.raftsync/state.yaml so a workspace can be reused
by a later process:

    versions:
      $/demo/scripts/deploy.otter: 12
      $/demo/variables: 9
    pending:
      - path: $/demo/scripts/deploy.otter
        change: edit
        base_version: 12
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from ..backends.base import ChangeType
from ..errors import MalformedStoredDataError

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".raftsync"
STATE_FILE_NAME = "state.yaml"


@dataclass
class PendingChange:
    """A staged add, edit or delete that is not durable until check-in."""
    server_path: str
    change_type: ChangeType
    base_version: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "path": self.server_path,
            "change": self.change_type.value,
            "base_version": self.base_version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingChange":
        return cls(
            server_path=data["path"],
            change_type=ChangeType(data["change"]),
            base_version=data.get("base_version"),
        )


class WorkspaceState:
    """Versions of the items present locally plus the pending changes."""

    def __init__(self, local_root: Path):
        self.local_root = Path(local_root)
        self.versions: dict[str, int] = {}
        self._pending: dict[str, PendingChange] = {}

    @property
    def state_file(self) -> Path:
        return self.local_root / STATE_DIR_NAME / STATE_FILE_NAME

    @classmethod
    def load(cls, local_root: Path) -> "WorkspaceState":
        state = cls(local_root)
        if not state.state_file.exists():
            return state

        try:
            data = yaml.safe_load(state.state_file.read_text(encoding="utf-8")) or {}
            state.versions = {str(k): int(v) for k, v in (data.get("versions") or {}).items()}
            for entry in data.get("pending") or []:
                change = PendingChange.from_dict(entry)
                state._pending[change.server_path] = change
        except (yaml.YAMLError, KeyError, TypeError, ValueError) as e:
            raise MalformedStoredDataError(
                f"Workspace state is corrupt: {e}",
                resource=str(state.state_file),
            )

        logger.debug(
            f"Loaded workspace state from {state.state_file}: "
            f"{len(state.versions)} item(s), {len(state._pending)} pending"
        )
        return state

    def save(self) -> None:
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "versions": dict(sorted(self.versions.items())),
            "pending": [c.to_dict() for c in self._pending.values()],
        }
        tmp = self.state_file.with_suffix(".tmp")
        tmp.write_text(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8")
        os.replace(tmp, self.state_file)

    # === Versions ===

    def get_version(self, server_path: str) -> Optional[int]:
        return self.versions.get(server_path)

    def set_version(self, server_path: str, version: int) -> None:
        self.versions[server_path] = version

    def remove_version(self, server_path: str) -> None:
        self.versions.pop(server_path, None)

    # === Pending changes ===

    @property
    def pending_changes(self) -> list[PendingChange]:
        """Pending changes in the order they were first staged."""
        return list(self._pending.values())

    def get_pending(self, server_path: str) -> Optional[PendingChange]:
        return self._pending.get(server_path)

    def set_pending(self, change: PendingChange) -> None:
        self._pending[change.server_path] = change

    def remove_pending(self, server_path: str) -> Optional[PendingChange]:
        return self._pending.pop(server_path, None)

    def clear_pending(self) -> None:
        self._pending.clear()
