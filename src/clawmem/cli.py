"""Command-line front end for the memory engine.

Every command builds a Memory from load_config(), runs one operation and
prints plain text. Commands return 0 on success and 1 on error.
"""

import argparse
import asyncio
import os
import sys
from typing import Awaitable, Callable

from .config import load_config
from .errors import ClawMemError
from .logging import configure_logger
from .memory import Memory
from .models import MemoryRecord

DEFAULT_USER = "default"


def _get_memory() -> Memory:
    """Create a Memory with config loaded from disk and environment."""
    config = load_config()
    event_log = configure_logger(config.data_dir / "logs")
    return Memory(config, event_log=event_log)


def _run(handler: Callable[[Memory, argparse.Namespace], Awaitable[int]], args: argparse.Namespace) -> int:
    """Run an async command against a fresh Memory, mapping errors to exit codes."""

    async def runner() -> int:
        async with _get_memory() as memory:
            return await handler(memory, args)

    try:
        return asyncio.run(runner())
    except (ClawMemError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _format_record(record: MemoryRecord, show_score: bool = False) -> str:
    score = f"{record.score:.3f}  " if show_score and record.score is not None else ""
    flags = "" if record.is_latest else " (superseded)"
    return (
        f"{score}[{record.category}/{record.memory_type.value}] {record.memory}"
        f"  ({record.id}, v{record.version}){flags}"
    )


async def _add(memory: Memory, args: argparse.Namespace) -> int:
    text = " ".join(args.text).strip()
    if not text:
        print("Error: nothing to add.", file=sys.stderr)
        return 1
    result = await memory.add(
        [{"role": "user", "content": text}],
        user_id=args.user,
        custom_instructions=args.instructions,
        enable_graph=False if args.no_graph else None,
    )
    for record in result.added:
        print(f"+ {_format_record(record)}")
    for record in result.updated:
        print(f"~ {_format_record(record)}")
    print(
        f"\nAdded: {len(result.added)}, updated: {len(result.updated)}, "
        f"skipped: {result.deduplicated}"
    )
    return 0


async def _search(memory: Memory, args: argparse.Namespace) -> int:
    results = await memory.search(
        " ".join(args.query),
        user_id=args.user,
        limit=args.limit,
        threshold=args.threshold,
        category=args.category,
        memory_type=args.type,
        keyword_search=args.keyword,
        from_date=args.from_date,
        to_date=args.to_date,
    )
    if not results:
        print("No memories found.")
        return 0
    for record in results:
        print(_format_record(record, show_score=True))
    return 0


async def _list(memory: Memory, args: argparse.Namespace) -> int:
    records = await memory.get_all(
        args.user,
        category=args.category,
        memory_type=args.type,
        limit=args.limit,
        only_latest=not args.all,
    )
    if not records:
        print("No memories found.")
        return 0
    for record in records:
        print(_format_record(record))
    print(f"\nTotal: {len(records)} memory(ies)")
    return 0


async def _get(memory: Memory, args: argparse.Namespace) -> int:
    record = await memory.get(args.id)
    if record is None:
        print(f"Error: Memory '{args.id}' not found.", file=sys.stderr)
        return 1
    print(f"ID:         {record.id}")
    print(f"Memory:     {record.memory}")
    print(f"User:       {record.user_id}")
    print(f"Category:   {record.category}")
    print(f"Type:       {record.memory_type.value}")
    print(f"Version:    {record.version}")
    print(f"Latest:     {'yes' if record.is_latest else 'no'}")
    print(f"Created:    {record.created_at}")
    print(f"Updated:    {record.updated_at}")
    if record.event_date:
        print(f"Event date: {record.event_date}")
    return 0


async def _history(memory: Memory, args: argparse.Namespace) -> int:
    entries = await memory.history(args.id)
    if not entries:
        print("No history.")
        return 0
    for entry in entries:
        change = entry.new_value if entry.previous_value is None else (
            f"{entry.previous_value!r} -> {entry.new_value!r}"
        )
        print(f"{entry.created_at}  {entry.action.value:<7} {change}")
    return 0


async def _forget(memory: Memory, args: argparse.Namespace) -> int:
    if args.all:
        removed = await memory.delete_all(args.user, purge_history=args.purge_history)
        print(f"Deleted {removed} memory(ies) for {args.user}.")
        return 0
    if not args.id:
        print("Error: give a memory id or --all.", file=sys.stderr)
        return 1
    if not await memory.delete(args.id):
        print(f"Error: Memory '{args.id}' not found.", file=sys.stderr)
        return 1
    print(f"Deleted memory: {args.id}")
    return 0


async def _retention(memory: Memory, args: argparse.Namespace) -> int:
    if not memory.config.forgetting_rules.enabled:
        print("No forgetting rules configured.")
        return 0
    result = await memory.retention_scan(args.user, auto_delete=args.delete)
    for record in result.expired:
        print(f"- {_format_record(record)}")
    if args.delete:
        print(f"\nExpired: {len(result.expired)}, deleted: {result.deleted}")
    else:
        print(f"\nExpired: {len(result.expired)} (dry run, use --delete to remove)")
    return 0


async def _graph(memory: Memory, args: argparse.Namespace) -> int:
    if memory.graph_store is None:
        print("Graph is disabled.")
        return 0
    if args.entities:
        entities = await memory.graph_entities(args.user)
        for entity in entities:
            print(f"{entity.name} ({entity.type})")
        print(f"\nTotal: {len(entities)} entity(ies)")
        return 0

    if args.entity:
        relations = await memory.graph_neighbors(args.entity, args.user)
    elif args.search:
        relations = await memory.graph_search(args.search, args.user, limit=args.limit)
    else:
        relations = await memory.graph_relations(args.user)
    if not relations:
        print("No relations found.")
        return 0
    for rel in relations:
        print(f"{rel.source_name} --{rel.relationship}--> {rel.target_name}  ({rel.confidence:.2f})")
    return 0


async def _profile(memory: Memory, args: argparse.Namespace) -> int:
    profile = await memory.profile(args.user)
    summary = profile.summary()
    print(summary if summary else f"No memories for {args.user}.")
    return 0


def cmd_add(args: argparse.Namespace) -> int:
    """Extract and store memories from text."""
    return _run(_add, args)


def cmd_search(args: argparse.Namespace) -> int:
    """Search memories."""
    return _run(_search, args)


def cmd_list(args: argparse.Namespace) -> int:
    """List memories."""
    return _run(_list, args)


def cmd_get(args: argparse.Namespace) -> int:
    """Show one memory."""
    return _run(_get, args)


def cmd_history(args: argparse.Namespace) -> int:
    """Show the audit trail of a memory."""
    return _run(_history, args)


def cmd_forget(args: argparse.Namespace) -> int:
    """Delete one memory or all of a user's memories."""
    return _run(_forget, args)


def cmd_retention(args: argparse.Namespace) -> int:
    """Run the retention sweep."""
    return _run(_retention, args)


def cmd_graph(args: argparse.Namespace) -> int:
    """Inspect the entity graph."""
    return _run(_graph, args)


def cmd_profile(args: argparse.Namespace) -> int:
    """Print the user profile."""
    return _run(_profile, args)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="clawmem",
        description="Local long-term memory for AI agents",
    )
    user_parent = argparse.ArgumentParser(add_help=False)
    user_parent.add_argument(
        "-u", "--user",
        default=os.getenv("CLAWMEM_USER", DEFAULT_USER),
        help="User id (default: $CLAWMEM_USER or 'default')",
    )

    subparsers = parser.add_subparsers(dest="command", help="Sub-command help")

    # add command
    add_parser = subparsers.add_parser("add", parents=[user_parent], help="Add memories from text")
    add_parser.add_argument("text", nargs="+", help="Text to remember")
    add_parser.add_argument("-i", "--instructions", help="Extra extraction instructions")
    add_parser.add_argument("--no-graph", action="store_true", help="Skip entity extraction")

    # search command
    search_parser = subparsers.add_parser("search", parents=[user_parent], help="Search memories")
    search_parser.add_argument("query", nargs="+", help="Search query")
    search_parser.add_argument("-n", "--limit", type=int, help="Max results")
    search_parser.add_argument("-t", "--threshold", type=float, help="Minimum score")
    search_parser.add_argument("-c", "--category", help="Filter by category")
    search_parser.add_argument("--type", help="Filter by memory type")
    search_parser.add_argument("-k", "--keyword", action="store_true", help="Blend keyword search")
    search_parser.add_argument("--from", dest="from_date", help="Earliest date (ISO 8601)")
    search_parser.add_argument("--to", dest="to_date", help="Latest date (ISO 8601)")

    # list command
    list_parser = subparsers.add_parser("list", parents=[user_parent], help="List memories")
    list_parser.add_argument("-c", "--category", help="Filter by category")
    list_parser.add_argument("--type", help="Filter by memory type")
    list_parser.add_argument("-n", "--limit", type=int, default=100, help="Max results")
    list_parser.add_argument(
        "-a", "--all",
        action="store_true",
        help="Include superseded versions",
    )

    # get command
    get_parser = subparsers.add_parser("get", help="Show a memory")
    get_parser.add_argument("id", help="Memory id")

    # history command
    history_parser = subparsers.add_parser("history", help="Show a memory's history")
    history_parser.add_argument("id", help="Memory id")

    # forget command
    forget_parser = subparsers.add_parser("forget", parents=[user_parent], help="Delete memories")
    forget_parser.add_argument("id", nargs="?", help="Memory id")
    forget_parser.add_argument("--all", action="store_true", help="Delete all memories of the user")
    forget_parser.add_argument(
        "--purge-history",
        action="store_true",
        help="With --all, also clear the user's history",
    )

    # retention command
    retention_parser = subparsers.add_parser(
        "retention", parents=[user_parent], help="Find expired memories"
    )
    retention_parser.add_argument("--delete", action="store_true", help="Delete expired memories")

    # graph command
    graph_parser = subparsers.add_parser("graph", parents=[user_parent], help="Inspect the graph")
    graph_parser.add_argument("-s", "--search", help="Search relations by entity name")
    graph_parser.add_argument("-e", "--entity", help="Relations of one entity")
    graph_parser.add_argument("--entities", action="store_true", help="List entities")
    graph_parser.add_argument("-n", "--limit", type=int, default=10, help="Max search results")

    # profile command
    subparsers.add_parser("profile", parents=[user_parent], help="Show the user profile")

    return parser


def run_cli(argv: list[str] | None = None) -> int:
    """Run the CLI with given arguments.

    Args:
        argv: Command-line arguments. Uses sys.argv[1:] if None.

    Returns:
        Exit code (0 for success, non-zero for error).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "add": cmd_add,
        "search": cmd_search,
        "list": cmd_list,
        "get": cmd_get,
        "history": cmd_history,
        "forget": cmd_forget,
        "retention": cmd_retention,
        "graph": cmd_graph,
        "profile": cmd_profile,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    return handler(args)
