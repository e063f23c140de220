"""MCP Server for raft repositories stored in version control.

Tools exposed:
- list_rafts: List all configured rafts
- list_items: List raft items (all types or one type)
- get_item: Get an item's metadata
- read_item: Read an item's content
- write_item: Write an item's content (pending until commit)
- delete_item: Delete an item (pending until commit)
- get_variables: Read the raft's variable table
- set_variable: Set a variable (pending until commit)
- delete_variable: Delete a variable (pending until commit)
- pending_changes: Show pending changes
- commit: Check in pending changes
- revert: Undo all pending changes
"""
import asyncio
import base64
import binascii
import json
import logging
import weakref
from functools import partial
from typing import Callable, Optional
from urllib.parse import quote, unquote

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    TextContent,
    Tool,
    Resource,
)
from pydantic import AnyUrl

from .config.inventory import RaftInventory
from .naming import RaftItemType, parse_item_type
from .raft_store.store import RaftItem, RaftStore, RaftUser
from .utils.logging_config import setup_logging, timed_section_sync

logger = logging.getLogger(__name__)

# Global inventory (initialized on first use)
inventory: Optional[RaftInventory] = None

ITEM_TYPES = [t.value for t in RaftItemType]

# A store is used by one thread at a time; calls on it are serialized here
_store_locks: "weakref.WeakKeyDictionary[RaftStore, asyncio.Lock]" = weakref.WeakKeyDictionary()


def get_inventory() -> RaftInventory:
    """Get or create the raft inventory."""
    global inventory
    if inventory is None:
        inventory = RaftInventory()
    return inventory


def _store_lock(store: RaftStore) -> asyncio.Lock:
    lock = _store_locks.get(store)
    if lock is None:
        lock = _store_locks[store] = asyncio.Lock()
    return lock


async def run_sync(store: RaftStore, func: Callable, *args, **kwargs):
    """Run a blocking store call off the event loop, one call per store at a time."""
    async with _store_lock(store):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))


def _text(payload: dict) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2, default=str))]


def _item_dict(item: RaftItem) -> dict:
    return {
        "type": item.type.value,
        "name": item.name,
        "last_modified": item.last_modified.isoformat(),
    }


# Create MCP server
server = Server("raftsync")


def _raft_property() -> dict:
    return {"type": "string", "description": "Raft name from rafts.yaml"}


def _item_properties() -> dict:
    return {
        "raft": _raft_property(),
        "type": {"type": "string", "enum": ITEM_TYPES, "description": "Item type"},
        "name": {"type": "string", "description": "Item name"},
    }


# === TOOLS ===

@server.list_tools()
async def list_tools() -> list[Tool]:
    """List all available tools."""
    return [
        Tool(
            name="list_rafts",
            description="List all configured rafts with their server URL and folder",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        Tool(
            name="list_items",
            description="List items in a raft, optionally restricted to one item type",
            inputSchema={
                "type": "object",
                "properties": {
                    "raft": _raft_property(),
                    "type": {"type": "string", "enum": ITEM_TYPES, "description": "Item type (optional)"},
                },
                "required": ["raft"],
            },
        ),
        Tool(
            name="get_item",
            description="Get metadata (last modified date) of a raft item",
            inputSchema={"type": "object", "properties": _item_properties(), "required": ["raft", "type", "name"]},
        ),
        Tool(
            name="read_item",
            description="Read the content of a raft item from the local workspace",
            inputSchema={"type": "object", "properties": _item_properties(), "required": ["raft", "type", "name"]},
        ),
        Tool(
            name="write_item",
            description="Write a raft item. The change is pending until commit.",
            inputSchema={
                "type": "object",
                "properties": {
                    **_item_properties(),
                    "content": {"type": "string", "description": "Text content (UTF-8)"},
                    "content_base64": {"type": "string", "description": "Binary content, base64 encoded"},
                },
                "required": ["raft", "type", "name"],
            },
        ),
        Tool(
            name="delete_item",
            description="Delete a raft item. The change is pending until commit.",
            inputSchema={"type": "object", "properties": _item_properties(), "required": ["raft", "type", "name"]},
        ),
        Tool(
            name="get_variables",
            description="Read the raft's variable table (includes uncommitted changes)",
            inputSchema={"type": "object", "properties": {"raft": _raft_property()}, "required": ["raft"]},
        ),
        Tool(
            name="set_variable",
            description="Set a raft variable. The change is pending until commit.",
            inputSchema={
                "type": "object",
                "properties": {
                    "raft": _raft_property(),
                    "name": {"type": "string", "description": "Variable name"},
                    "value": {"type": "string", "description": "Variable value"},
                },
                "required": ["raft", "name", "value"],
            },
        ),
        Tool(
            name="delete_variable",
            description="Delete a raft variable. The change is pending until commit.",
            inputSchema={
                "type": "object",
                "properties": {
                    "raft": _raft_property(),
                    "name": {"type": "string", "description": "Variable name"},
                },
                "required": ["raft", "name"],
            },
        ),
        Tool(
            name="pending_changes",
            description="List pending (uncommitted) changes of a raft",
            inputSchema={"type": "object", "properties": {"raft": _raft_property()}, "required": ["raft"]},
        ),
        Tool(
            name="commit",
            description="Check in all pending changes of a raft as one changeset",
            inputSchema={
                "type": "object",
                "properties": {
                    "raft": _raft_property(),
                    "author": {"type": "string", "description": "Display name credited in the check-in comment"},
                },
                "required": ["raft", "author"],
            },
        ),
        Tool(
            name="revert",
            description="Undo all pending changes of a raft",
            inputSchema={"type": "object", "properties": {"raft": _raft_property()}, "required": ["raft"]},
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    raft = arguments.get("raft")

    try:
        with timed_section_sync(f"tool:{name}", raft=raft):
            inv = get_inventory()

            if name == "list_rafts":
                return await handle_list_rafts(inv)

            elif name == "list_items":
                return await handle_list_items(inv, arguments["raft"], arguments.get("type"))

            elif name == "get_item":
                return await handle_get_item(inv, arguments["raft"], arguments["type"], arguments["name"])

            elif name == "read_item":
                return await handle_read_item(inv, arguments["raft"], arguments["type"], arguments["name"])

            elif name == "write_item":
                return await handle_write_item(
                    inv,
                    arguments["raft"],
                    arguments["type"],
                    arguments["name"],
                    content=arguments.get("content"),
                    content_base64=arguments.get("content_base64"),
                )

            elif name == "delete_item":
                return await handle_delete_item(inv, arguments["raft"], arguments["type"], arguments["name"])

            elif name == "get_variables":
                return await handle_get_variables(inv, arguments["raft"])

            elif name == "set_variable":
                return await handle_set_variable(inv, arguments["raft"], arguments["name"], arguments["value"])

            elif name == "delete_variable":
                return await handle_delete_variable(inv, arguments["raft"], arguments["name"])

            elif name == "pending_changes":
                return await handle_pending_changes(inv, arguments["raft"])

            elif name == "commit":
                return await handle_commit(inv, arguments["raft"], arguments["author"])

            elif name == "revert":
                return await handle_revert(inv, arguments["raft"])

            else:
                return [TextContent(type="text", text=f"Unknown tool: {name}")]

    except Exception as e:
        logger.exception(f"Tool {name} failed")
        return _text({"action": name, "success": False, "error": str(e), "error_type": type(e).__name__})


# === TOOL HANDLERS ===

async def handle_list_rafts(inv: RaftInventory) -> list[TextContent]:
    """List all configured rafts."""
    rafts = []
    for raft_id in inv.get_raft_ids():
        settings = inv.get_settings(raft_id)
        rafts.append({
            "raft": raft_id,
            "base_url": settings.base_url,
            "server_path": settings.server_prefix,
            "local_path": str(settings.resolved_local_path),
        })
    return _text({"rafts": rafts, "count": len(rafts)})


async def handle_list_items(inv: RaftInventory, raft: str, item_type: Optional[str]) -> list[TextContent]:
    store = inv.get_store(raft)
    if item_type:
        parsed = parse_item_type(item_type)
        items = await run_sync(store, lambda: list(store.list_items(parsed)))
    else:
        items = await run_sync(store, lambda: list(store.list_all_items()))
    return _text({"raft": raft, "items": [_item_dict(i) for i in items], "count": len(items)})


async def handle_get_item(inv: RaftInventory, raft: str, item_type: str, name: str) -> list[TextContent]:
    store = inv.get_store(raft)
    item = await run_sync(store, store.get_item, parse_item_type(item_type), name)
    if item is None:
        return _text({"raft": raft, "found": False, "type": item_type, "name": name})
    return _text({"raft": raft, "found": True, **_item_dict(item)})


async def handle_read_item(inv: RaftInventory, raft: str, item_type: str, name: str) -> list[TextContent]:
    store = inv.get_store(raft)
    data = await run_sync(store, store.read_item_bytes, parse_item_type(item_type), name)
    if data is None:
        return _text({"raft": raft, "found": False, "type": item_type, "name": name})

    payload = {"raft": raft, "found": True, "type": item_type, "name": name, "size": len(data)}
    try:
        payload["content"] = data.decode("utf-8")
    except UnicodeDecodeError:
        payload["content_base64"] = base64.b64encode(data).decode("ascii")
    return _text(payload)


async def handle_write_item(
    inv: RaftInventory,
    raft: str,
    item_type: str,
    name: str,
    content: Optional[str] = None,
    content_base64: Optional[str] = None,
) -> list[TextContent]:
    if content is None and content_base64 is None:
        raise ValueError("Either content or content_base64 is required")

    if content_base64 is not None:
        try:
            data = base64.b64decode(content_base64, validate=True)
        except binascii.Error as e:
            raise ValueError(f"content_base64 is not valid base64: {e}")
    else:
        data = content.encode("utf-8")

    store = inv.get_store(raft)
    await run_sync(store, store.write_item_bytes, parse_item_type(item_type), name, data)
    return _text({
        "action": "write_item",
        "success": True,
        "raft": raft,
        "type": item_type,
        "name": name,
        "size": len(data),
        "hint": "Use commit to check in the change",
    })


async def handle_delete_item(inv: RaftInventory, raft: str, item_type: str, name: str) -> list[TextContent]:
    store = inv.get_store(raft)
    deleted = await run_sync(store, store.delete_item, parse_item_type(item_type), name)
    return _text({"action": "delete_item", "success": True, "deleted": deleted, "raft": raft, "name": name})


async def handle_get_variables(inv: RaftInventory, raft: str) -> list[TextContent]:
    store = inv.get_store(raft)
    variables = await run_sync(store, store.get_variables)
    return _text({"raft": raft, "variables": variables, "count": len(variables)})


async def handle_set_variable(inv: RaftInventory, raft: str, name: str, value: str) -> list[TextContent]:
    store = inv.get_store(raft)
    await run_sync(store, store.set_variable, name, value)
    return _text({"action": "set_variable", "success": True, "raft": raft, "name": name})


async def handle_delete_variable(inv: RaftInventory, raft: str, name: str) -> list[TextContent]:
    store = inv.get_store(raft)
    deleted = await run_sync(store, store.delete_variable, name)
    return _text({"action": "delete_variable", "success": True, "deleted": deleted, "raft": raft, "name": name})


async def handle_pending_changes(inv: RaftInventory, raft: str) -> list[TextContent]:
    store = inv.get_store(raft)
    changes = await run_sync(store, lambda: store.pending_changes)
    return _text({
        "raft": raft,
        "pending": [{"path": c.server_path, "change": c.change_type.value} for c in changes],
        "count": len(changes),
    })


async def handle_commit(inv: RaftInventory, raft: str, author: str) -> list[TextContent]:
    store = inv.get_store(raft)
    changeset = await run_sync(store, store.commit, RaftUser(name=author))
    return _text({
        "action": "commit",
        "success": True,
        "raft": raft,
        "changeset": changeset,
        "committed": changeset is not None,
    })


async def handle_revert(inv: RaftInventory, raft: str) -> list[TextContent]:
    store = inv.get_store(raft)
    count = await run_sync(store, store.revert)
    return _text({"action": "revert", "success": True, "raft": raft, "reverted": count})


# === RESOURCES ===

@server.list_resources()
async def list_resources() -> list[Resource]:
    """List every item of every raft as a resource."""
    inv = get_inventory()
    resources = []

    for raft_id in inv.get_raft_ids():
        store = inv.get_store(raft_id)
        items = await run_sync(store, lambda: list(store.list_all_items()))
        for item in items:
            resources.append(Resource(
                uri=AnyUrl(f"raft://{quote(raft_id, safe='')}/{item.type.value}/{quote(item.name, safe='')}"),
                name=f"{raft_id}: {item.type.value} {item.name}",
                description=f"Last modified {item.last_modified.isoformat()}",
                mimeType="text/plain",
            ))

    return resources


@server.read_resource()
async def read_resource(uri: AnyUrl) -> str:
    """Read a resource."""
    # Parse URI: raft://raft_id/type/name
    uri_str = str(uri)
    if uri_str.startswith("raft://"):
        parts = uri_str[7:].split("/", 2)
        if len(parts) == 3:
            raft_id, item_type, name = (unquote(p) for p in parts)
            result = await handle_read_item(get_inventory(), raft_id, item_type, name)
            return result[0].text

    return json.dumps({"error": f"Unknown resource: {uri}"})


def main():
    """Run the MCP server."""
    # stdout carries the MCP protocol; log to file only
    setup_logging(console=False)

    async def run():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass
    finally:
        if inventory:
            inventory.close_all()


if __name__ == "__main__":
    main()
