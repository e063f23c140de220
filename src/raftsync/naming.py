"""Translation between raft items and server paths.

Server layout under a raft's path prefix:

    $/<workspace>/
    ├── modules/deploy.otter
    ├── scripts/hello.otter
    ├── ...
    └── variables

All functions here are pure.
"""
import re
from enum import Enum
from typing import Optional

SERVER_ROOT = "$/"
ITEM_EXTENSION = ".otter"
VARIABLES_FILE_NAME = "variables"

# Workspace naming restrictions of the backing store:
#  - max length of 64 characters
#  - cannot end with a space
#  - must not contain: " / : < > \ | * ? ;
MAX_WORKSPACE_NAME_LENGTH = 64
DISALLOWED_WORKSPACE_CHARS = '"/:<>\\|*?;'
_WORKSPACE_NAME_SANITIZER = re.compile("[" + re.escape(DISALLOWED_WORKSPACE_CHARS) + "]")
_ITEM_NAME_DISALLOWED = re.compile(r'[/\\:<>|*?";\x00-\x1f]')


class RaftItemType(Enum):
    """Categories of raft items. Declaration order is the listing order."""
    MODULE = "module"
    SCRIPT = "script"
    DEPLOYMENT_PLAN = "deployment-plan"
    ROLE = "role"
    CREDENTIALS = "credentials"
    VARIABLE_BANK = "variable-bank"
    ASSET = "asset"


# Folder name per item type. Kept as an ordered table of pairs so both
# directions are plain lookups.
_STANDARD_TYPE_NAMES: tuple[tuple[RaftItemType, str], ...] = (
    (RaftItemType.MODULE, "modules"),
    (RaftItemType.SCRIPT, "scripts"),
    (RaftItemType.DEPLOYMENT_PLAN, "deployment-plans"),
    (RaftItemType.ROLE, "roles"),
    (RaftItemType.CREDENTIALS, "credentials"),
    (RaftItemType.VARIABLE_BANK, "variable-banks"),
    (RaftItemType.ASSET, "assets"),
)

_TYPE_TO_FOLDER = dict(_STANDARD_TYPE_NAMES)
_FOLDER_TO_TYPE = {folder: item_type for item_type, folder in _STANDARD_TYPE_NAMES}


def standard_type_name(item_type: RaftItemType) -> str:
    """Get the server folder name for an item type."""
    return _TYPE_TO_FOLDER[item_type]


def parse_standard_type_name(folder_name: str) -> Optional[RaftItemType]:
    """Get the item type stored in a server folder, or None if unrecognized."""
    if not folder_name:
        return None
    return _FOLDER_TO_TYPE.get(folder_name.lower())


def parse_item_type(value: str) -> RaftItemType:
    """Parse an item type from its enum value, enum name or folder name.

    Raises:
        ValueError: If the value names no known type
    """
    text = value.strip()
    for item_type in RaftItemType:
        if text.lower() in (item_type.value, item_type.name.lower()):
            return item_type
    parsed = parse_standard_type_name(text)
    if parsed is None:
        raise ValueError(f"Unknown raft item type: {value}")
    return parsed


def sanitize_workspace_name(candidate: str) -> str:
    """Make a string acceptable as a workspace name.

    Disallowed characters become underscores, surrounding whitespace is
    trimmed and the result is capped at 64 characters.
    """
    name = _WORKSPACE_NAME_SANITIZER.sub("_", candidate)
    name = name.strip()
    if len(name) > MAX_WORKSPACE_NAME_LENGTH:
        name = name[:MAX_WORKSPACE_NAME_LENGTH].rstrip()
    return name


def build_workspace_name(disk_path: str, prefix: str = "RS-") -> str:
    """Derive a workspace name from the last segment of a disk path."""
    parts = [p for p in re.split(r"[/\\]", disk_path) if p]
    last = parts[-1] if parts else ""
    return sanitize_workspace_name(prefix + last)


def validate_item_name(name: str) -> str:
    """Check that an item name can be stored as a single file.

    Raises:
        ValueError: If the name is empty or contains path characters
    """
    if not name or not name.strip():
        raise ValueError("Item name must not be empty")
    if name in (".", "..") or _ITEM_NAME_DISALLOWED.search(name):
        raise ValueError(f"Invalid item name: {name!r}")
    return name


def server_path_prefix(workspace_name: str) -> str:
    """Server folder holding a raft, e.g. '$/demo'."""
    return SERVER_ROOT + workspace_name.strip("/")


def join_server_path(*parts: str) -> str:
    """Join server path segments with '/'."""
    cleaned = [p.strip("/") for p in parts if p and p.strip("/")]
    path = "/".join(cleaned)
    if path == "$":
        return SERVER_ROOT
    return path


def split_server_path(server_path: str) -> tuple[str, str]:
    """Split a server path into (parent folder, last segment)."""
    path = server_path.rstrip("/")
    parent, _, name = path.rpartition("/")
    if parent == "$":
        parent = SERVER_ROOT
    return parent, name


def type_folder_path(prefix: str, item_type: RaftItemType) -> str:
    return join_server_path(prefix, standard_type_name(item_type))


def item_server_path(prefix: str, item_type: RaftItemType, name: str) -> str:
    """Server path of an item, e.g. '$/demo/scripts/deploy.otter'."""
    validate_item_name(name)
    return join_server_path(prefix, standard_type_name(item_type), name + ITEM_EXTENSION)


def variables_server_path(prefix: str) -> str:
    return join_server_path(prefix, VARIABLES_FILE_NAME)


def item_name_from_server_path(server_path: str) -> Optional[str]:
    """Item name for an item file path, or None if it is not an item file."""
    _, file_name = split_server_path(server_path)
    if not file_name.lower().endswith(ITEM_EXTENSION):
        return None
    name = file_name[: -len(ITEM_EXTENSION)]
    return name or None


def item_type_from_server_path(server_path: str) -> Optional[RaftItemType]:
    """Item type from the folder an item file lives in."""
    parent, _ = split_server_path(server_path)
    _, folder = split_server_path(parent)
    return parse_standard_type_name(folder)
