#!/usr/bin/env python3
"""Command line access to rafts.

Usage:
    raftsync [--config FILE] --raft NAME <command> [args]

Commands:
    list [--type TYPE]            List items
    cat TYPE NAME                 Print an item's content
    put TYPE NAME [FILE]          Write an item from FILE or stdin
    rm TYPE NAME                  Delete an item
    vars                          Print the variable table
    set-var NAME VALUE            Set a variable
    unset-var NAME                Delete a variable
    status                        Show pending changes
    commit [--author NAME]        Check in pending changes
    revert                        Undo pending changes

Environment variables:
    RAFTSYNC_CONFIG      Path to rafts.yaml
    RAFTSYNC_PASSWORD    Server password or personal access token
"""
import argparse
import getpass
import logging
import sys
from pathlib import Path

from .config.inventory import RaftInventory
from .errors import RaftError
from .naming import parse_item_type
from .raft_store.store import RaftStore, RaftUser
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="raftsync",
        description="Read and update rafts stored in version control",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    raftsync --raft demo list --type script
    echo "echo hi" | raftsync --raft demo put script deploy
    raftsync --raft demo set-var environment production
    raftsync --raft demo commit --author alice
""",
    )
    parser.add_argument("--config", type=str, help="rafts.yaml path (default: search)")
    parser.add_argument("--raft", required=True, help="Raft name from rafts.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    list_parser = sub.add_parser("list", help="List items")
    list_parser.add_argument("--type", type=parse_item_type, help="Restrict to one item type")

    for name, help_text in (("cat", "Print an item"), ("rm", "Delete an item")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("type", type=parse_item_type)
        p.add_argument("name")

    put_parser = sub.add_parser("put", help="Write an item")
    put_parser.add_argument("type", type=parse_item_type)
    put_parser.add_argument("name")
    put_parser.add_argument("file", nargs="?", type=Path, help="Source file (default: stdin)")

    sub.add_parser("vars", help="Print variables")

    set_parser = sub.add_parser("set-var", help="Set a variable")
    set_parser.add_argument("name")
    set_parser.add_argument("value")

    unset_parser = sub.add_parser("unset-var", help="Delete a variable")
    unset_parser.add_argument("name")

    sub.add_parser("status", help="Show pending changes")

    commit_parser = sub.add_parser("commit", help="Check in pending changes")
    commit_parser.add_argument("--author", default=None, help="Display name (default: current user)")

    sub.add_parser("revert", help="Undo pending changes")
    return parser


def run_command(store: RaftStore, args: argparse.Namespace) -> int:
    """Execute one parsed command against a store. Returns the exit code."""
    out = sys.stdout

    if args.command == "list":
        items = store.list_items(args.type) if args.type else store.list_all_items()
        for item in items:
            out.write(f"{item.type.value:16s} {item.name:32s} {item.last_modified.isoformat()}\n")
        return 0

    if args.command == "cat":
        data = store.read_item_bytes(args.type, args.name)
        if data is None:
            logger.error(f"No {args.type.value} named '{args.name}'")
            return 1
        if hasattr(out, "buffer"):
            out.flush()
            out.buffer.write(data)
        else:
            out.write(data.decode("utf-8", "replace"))
        return 0

    if args.command == "put":
        data = args.file.read_bytes() if args.file else sys.stdin.buffer.read()
        store.write_item_bytes(args.type, args.name, data)
        return 0

    if args.command == "rm":
        if not store.delete_item(args.type, args.name):
            logger.warning(f"No {args.type.value} named '{args.name}' to delete")
        return 0

    if args.command == "vars":
        for name, value in sorted(store.get_variables().items()):
            out.write(f"{name}={value}\n")
        return 0

    if args.command == "set-var":
        store.set_variable(args.name, args.value)
        return 0

    if args.command == "unset-var":
        if not store.delete_variable(args.name):
            logger.warning(f"Variable '{args.name}' is not set")
        return 0

    if args.command == "status":
        changes = store.pending_changes
        if not changes:
            out.write("No pending changes\n")
        for change in changes:
            out.write(f"{change.change_type.value:6s} {change.server_path}\n")
        return 0

    if args.command == "commit":
        author = args.author or getpass.getuser()
        changeset = store.commit(RaftUser(name=author))
        if changeset is None:
            out.write("Nothing to commit\n")
        else:
            out.write(f"Checked in changeset {changeset}\n")
        return 0

    if args.command == "revert":
        count = store.revert()
        out.write(f"Reverted {count} change(s)\n")
        return 0

    logger.error(f"Unknown command: {args.command}")
    return 2


def main(argv=None) -> int:
    """Main entry point for the raftsync CLI."""
    args = build_parser().parse_args(argv)

    setup_logging()
    if args.verbose:
        for handler in logging.getLogger("raftsync").handlers:
            handler.setLevel(logging.DEBUG)

    try:
        inventory = RaftInventory(args.config)
    except (FileNotFoundError, OSError) as e:
        logger.error(str(e))
        return 1

    try:
        store = inventory.get_store(args.raft)
    except KeyError as e:
        logger.error(str(e.args[0]) if e.args else str(e))
        return 1
    except (TypeError, ValueError) as e:
        # Missing or unknown settings, or an unsupported server URL
        logger.error(f"Invalid configuration for raft {args.raft}: {e}")
        return 1

    try:
        return run_command(store, args)
    except (RaftError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    finally:
        inventory.close_all()


if __name__ == "__main__":
    sys.exit(main())
