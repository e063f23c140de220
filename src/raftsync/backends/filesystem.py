"""Version control server kept in a local directory.

Used for file:// raft URLs, for offline rafts and in tests. Directory
layout:

    <root>/
    ├── index.yaml        # path -> version, check-in date, deleted flag
    ├── changesets.yaml   # check-in history
    ├── users.yaml        # optional: credentials and read-only users
    └── content/          # latest bytes per item, mirroring server paths

users.yaml, when present:

    users:
      alice: secret
      bob: hunter2
    readonly:
      - bob

Without users.yaml every user is accepted and may check in.
"""
import getpass
import logging
import os
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

import yaml

from .base import (
    ChangeRequest,
    ChangeType,
    Credentials,
    RecursionType,
    ServerItem,
    VersionControlServer,
    WorkspaceRegistry,
)
from ..errors import AuthenticationError, BackendError, CheckInConflictError

logger = logging.getLogger(__name__)


def path_from_url(url: str) -> Path:
    """Local directory for a file:// URL (plain paths are accepted too)."""
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(url2pathname(parsed.netloc + parsed.path) if parsed.netloc else url2pathname(parsed.path))
    return Path(url)


def _parent_folders(path: str) -> list[str]:
    """All ancestor folders of a server path, nearest first, excluding '$'."""
    parts = path.split("/")
    return ["/".join(parts[:i]) for i in range(len(parts) - 1, 1, -1)]


def _depth(path: str) -> int:
    return path.count("/")


def _resolve_key(index: dict[str, dict], server_path: str) -> Optional[str]:
    """Index key for a path, matched case-insensitively. Live entries win."""
    entry = index.get(server_path)
    if entry is not None and not entry.get("deleted"):
        return server_path
    fallback = server_path if entry is not None else None
    lowered = server_path.lower()
    for path, candidate in index.items():
        if path.lower() != lowered:
            continue
        if not candidate.get("deleted"):
            return path
        fallback = fallback or path
    return fallback


class FileSystemServer(VersionControlServer):
    """A centralized version control server backed by a directory."""

    def __init__(
        self,
        url: str,
        credentials: Credentials,
        registry: WorkspaceRegistry,
        timeout: int = 30,
    ):
        super().__init__(url, credentials, registry, timeout)
        self.root = path_from_url(url)

    @property
    def index_file(self) -> Path:
        return self.root / "index.yaml"

    @property
    def changesets_file(self) -> Path:
        return self.root / "changesets.yaml"

    @property
    def users_file(self) -> Path:
        return self.root / "users.yaml"

    @property
    def content_dir(self) -> Path:
        return self.root / "content"

    def _content_path(self, server_path: str) -> Path:
        relative = server_path[2:] if server_path.startswith("$/") else server_path
        return self.content_dir.joinpath(*PurePosixPath(relative).parts)

    def _read_yaml(self, path: Path) -> dict:
        if not path.exists():
            return {}
        try:
            return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise BackendError(f"Failed to read {path}: {e}")

    def _write_yaml(self, path: Path, data) -> None:
        tmp = path.with_suffix(".tmp")
        tmp.write_text(yaml.safe_dump(data, default_flow_style=False, sort_keys=True), encoding="utf-8")
        os.replace(tmp, path)

    def _load_index(self) -> dict[str, dict]:
        return self._read_yaml(self.index_file).get("items", {})

    def _require_connection(self) -> None:
        if not self.is_connected:
            raise BackendError("Not connected")

    # === Connection ===

    def connect(self) -> str:
        if self.is_connected:
            return self.authorized_user

        try:
            self.content_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackendError(f"Repository root {self.root} is not accessible: {e}")

        if self.credentials.use_system_credentials or not self.credentials.username:
            username = getpass.getuser()
            password = None
        else:
            username = self.credentials.username
            password = self.credentials.password

        users = self._read_yaml(self.users_file).get("users")
        if users is not None:
            if username not in users:
                raise AuthenticationError(f"Unknown user: {username}", url=self.url, username=username)
            if not self.credentials.use_system_credentials and str(users[username]) != (password or ""):
                raise AuthenticationError(f"Invalid password for {username}", url=self.url, username=username)

        self.authorized_user = username
        logger.info(f"Connected to {self.root} as {username}")
        return username

    def close(self) -> None:
        if self.is_connected:
            logger.debug(f"Disconnected from {self.root}")
        self.authorized_user = None

    def has_check_in_permission(self, server_path: str) -> bool:
        self._require_connection()
        readonly = self._read_yaml(self.users_file).get("readonly") or []
        return self.authorized_user not in readonly

    # === Items ===

    def _query(self, scope_path: str, recursion: RecursionType) -> list[ServerItem]:
        self._require_connection()
        scope = scope_path.rstrip("/") or "$"
        scope_key = scope.lower()
        index = self._load_index()

        files: dict[str, ServerItem] = {}
        folders: dict[str, ServerItem] = {}
        for path, entry in index.items():
            if entry.get("deleted"):
                continue
            item = ServerItem(
                path=path,
                version=int(entry["version"]),
                check_in_date=datetime.fromisoformat(entry["check_in_date"]),
            )
            files[path] = item
            # Folders are implied by the files below them
            for folder in _parent_folders(path):
                current = folders.get(folder)
                if current is None or current.version < item.version:
                    folders[folder] = ServerItem(
                        path=folder,
                        version=item.version,
                        check_in_date=item.check_in_date,
                        is_folder=True,
                    )

        if scope_key != "$":
            for path, item in files.items():
                if path.lower() == scope_key:
                    return [item]

        max_depth = {
            RecursionType.NONE: 0,
            RecursionType.ONE_LEVEL: 1,
            RecursionType.FULL: None,
        }[recursion]

        results = []
        for path, item in list(folders.items()) + list(files.items()):
            key = path.lower()
            if key == scope_key:
                results.append(item)
                continue
            if scope_key == "$":
                below = True
                distance = _depth(path)
            else:
                below = key.startswith(scope_key + "/")
                distance = _depth(path) - _depth(scope)
            if below and (max_depth is None or distance <= max_depth):
                results.append(item)

        if scope_key != "$" and not any(r.path.lower() == scope_key for r in results):
            return []

        results.sort(key=lambda i: i.path.lower())
        return results

    def download(self, server_path: str) -> Optional[bytes]:
        self._require_connection()
        index = self._load_index()
        key = _resolve_key(index, server_path)
        if key is None or index[key].get("deleted"):
            return None
        try:
            return self._content_path(key).read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise BackendError(f"Failed to read {server_path}: {e}")

    # === Check-in ===

    def check_in(self, changes: list[ChangeRequest], comment: str) -> int:
        self._require_connection()
        if not self.has_check_in_permission("$/"):
            raise CheckInConflictError(
                f"User {self.authorized_user} does not have check-in permission",
                conflicts=[c.server_path for c in changes],
            )

        index = self._load_index()
        conflicts = []
        # Paths compare case-insensitively; edits and deletes keep the stored case
        targets: dict[str, str] = {}
        for change in changes:
            lowered = change.server_path.lower()
            if lowered in targets:
                conflicts.append(f"{change.server_path}: changed more than once")
                continue
            key = _resolve_key(index, change.server_path)
            entry = index[key] if key is not None else None
            live = entry is not None and not entry.get("deleted")
            targets[lowered] = key if live else change.server_path
            if change.change_type == ChangeType.ADD:
                if live:
                    conflicts.append(f"{change.server_path}: item already exists")
            elif not live:
                conflicts.append(f"{change.server_path}: item no longer exists")
            elif change.base_version is not None and int(entry["version"]) != change.base_version:
                conflicts.append(
                    f"{change.server_path}: local version {change.base_version} "
                    f"is not the latest ({entry['version']})"
                )

        if conflicts:
            raise CheckInConflictError(
                f"Check-in rejected with {len(conflicts)} conflict(s)",
                conflicts=conflicts,
            )

        history = self._read_yaml(self.changesets_file).get("changesets", [])
        changeset_id = (history[-1]["id"] if history else 0) + 1
        now = datetime.now(timezone.utc)

        try:
            applied = []
            for change in changes:
                target = targets[change.server_path.lower()]
                applied.append({"path": target, "type": change.change_type.value})
                content_path = self._content_path(target)
                if change.change_type == ChangeType.DELETE:
                    content_path.unlink(missing_ok=True)
                    index[target] = {
                        "version": changeset_id,
                        "check_in_date": now.isoformat(),
                        "deleted": True,
                    }
                else:
                    content_path.parent.mkdir(parents=True, exist_ok=True)
                    content_path.write_bytes(change.content or b"")
                    index[target] = {
                        "version": changeset_id,
                        "check_in_date": now.isoformat(),
                        "deleted": False,
                    }

            history.append({
                "id": changeset_id,
                "committer": self.authorized_user,
                "date": now.isoformat(),
                "comment": comment,
                "changes": applied,
            })
            self._write_yaml(self.index_file, {"items": index})
            self._write_yaml(self.changesets_file, {"changesets": history})
        except OSError as e:
            raise BackendError(f"Check-in failed writing to {self.root}: {e}")

        logger.info(f"Checked in changeset {changeset_id} ({len(changes)} change(s))")
        return changeset_id

    def get_history(self, limit: int = 20) -> list[dict]:
        """Most recent changesets first."""
        history = self._read_yaml(self.changesets_file).get("changesets", [])
        return list(reversed(history))[:limit]
