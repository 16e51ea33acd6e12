"""
taskflow-watch -- mount a data facade and print the live collections.

Usage:
  taskflow-watch                         # watch every family, Ctrl-C to stop
  taskflow-watch --family tasks --once   # print one snapshot and exit
  taskflow-watch --demo                  # in-memory store with sample rows

Environment:
  DATABASE_URL      Postgres DSN (same as --database-url). Empty = in-memory.
  LOG_LEVEL         Logging level (default INFO)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from datetime import UTC, datetime

from taskflow import __version__
from taskflow.config import settings
from taskflow.errors import LoadError, SubscriptionError
from taskflow.repos.factory import open_store
from taskflow.repos.memory_store import MemoryStore
from taskflow.services.data_facade import DataFacade

FAMILIES = ("tasks", "messages", "users")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="taskflow-watch", description="Watch the Taskflow replica")
    p.add_argument("--database-url", default=None, help="Postgres DSN (default: $DATABASE_URL)")
    p.add_argument("--family", choices=(*FAMILIES, "all"), default="all")
    p.add_argument("--channel", choices=("team", "client"), default=None, help="Only show one chat channel")
    p.add_argument("--once", action="store_true", help="Print the first snapshot and exit")
    p.add_argument("--demo", action="store_true", help="Seed the in-memory store with sample rows")
    p.add_argument("-v", "--verbose", action="store_true")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p.parse_args(argv)


def render(facade: DataFacade, family: str, channel: str | None = None) -> list[str]:
    """Plain-text lines for one family."""
    if family == "tasks":
        lines = []
        for task in facade.tasks.list():
            done = task.completed_sub_items
            lines.append(f"  [{task.progress:3d}%] {task.title} ({task.priority}) {done}/{len(task.sub_items)} sub-items")
            for sub in task.sub_items:
                mark = "x" if sub.completed else " "
                lines.append(f"         [{mark}] {sub.title}")
        return lines
    if family == "messages":
        return [
            f"  #{m.channel} {m.created_at:%Y-%m-%d %H:%M} {m.sender_name}: {m.content}"
            if m.created_at is not None
            else f"  #{m.channel} {m.sender_name}: {m.content}"
            for m in facade.messages.list(channel=channel)
        ]
    return [f"  {p.name} <{p.email}> {p.role}" for p in facade.users.list()]


def print_family(facade: DataFacade, family: str, channel: str | None = None) -> None:
    manager = facade.family(family)
    lines = render(facade, family, channel)
    print(f"== {family} ({len(lines)} lines, version {manager.loaded_version}) ==")
    for line in lines:
        print(line)


def seed_demo(store: MemoryStore) -> None:
    """A small sample dataset for trying the watcher without a database."""
    now = datetime.now(UTC)
    alice, bob = str(uuid.uuid4()), str(uuid.uuid4())
    task_id = str(uuid.uuid4())
    store.seed("users", [
        {"id": str(uuid.uuid4()), "user_id": alice, "name": "Alice", "email": "alice@example.com", "created_at": now},
        {"id": str(uuid.uuid4()), "user_id": bob, "name": "Bob", "email": "bob@example.com", "created_at": now},
    ])
    store.seed("user_roles", [{"id": str(uuid.uuid4()), "user_id": alice, "role": "admin"}])
    store.seed("tasks", [{
        "id": task_id, "title": "Launch site", "progress": 40, "priority": "high",
        "assignees": [alice], "created_at": now, "updated_at": now,
    }])
    store.seed("subtasks", [
        {"id": str(uuid.uuid4()), "task_id": task_id, "title": "Copy review", "completed": True,
         "created_at": now, "updated_at": now},
        {"id": str(uuid.uuid4()), "task_id": task_id, "title": "DNS cutover", "completed": False,
         "created_at": now, "updated_at": now},
    ])
    store.seed("messages", [
        {"id": str(uuid.uuid4()), "sender_id": alice, "content": "Kickoff at 10", "channel": "team", "created_at": now},
    ])


async def watch(args: argparse.Namespace) -> int:
    families = FAMILIES if args.family == "all" else (args.family,)

    async with open_store(args.database_url) as (store, feed):
        if args.demo:
            if not isinstance(store, MemoryStore):
                print("Error: --demo only works with the in-memory store", file=sys.stderr)
                return 2
            seed_demo(store)

        facade = DataFacade(store, feed)
        try:
            await facade.start()
        except (LoadError, SubscriptionError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        try:
            for family in families:
                print_family(facade, family, args.channel)
            if args.once:
                return 0

            changed: asyncio.Queue[str] = asyncio.Queue()
            facade.subscribe_changes(changed.put_nowait)
            while True:
                family = await changed.get()
                if family in families:
                    print_family(facade, family, args.channel)
        finally:
            await facade.close()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(watch(args))
    except KeyboardInterrupt:
        print("\nStopped.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
