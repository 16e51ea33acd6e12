"""
Tests for the replica managers.

Covers the snapshot/event race, mutation semantics (remote only, errors
wrapped), denormalized joins on live events, and channel lifecycle.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from factories import eventually, message_row, person_row, settle, sub_row, task_row

from taskflow.errors import LoadError, MutationError, StoreError, SubscriptionError
from taskflow.repos.memory_store import MemoryStore
from taskflow.services.join_resolver import JoinResolver
from taskflow.services.replica_manager import (
    STALE_REPLAY,
    MessageReplica,
    PersonReplica,
    TaskReplica,
)

pytestmark = pytest.mark.asyncio


def titles(replica):
    return [t.title for t in replica.list()]


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    async def test_loading_until_first_snapshot(self, seeded, resolver):
        replica = TaskReplica(seeded, seeded, resolver)
        assert replica.loading
        assert replica.list() == []
        await replica.start()
        assert not replica.loading
        assert titles(replica) == ["Launch"]
        await replica.close()

    async def test_cascade_scenario(self, seeded, resolver):
        async with TaskReplica(seeded, seeded, resolver) as replica:
            [task] = replica.list()
            assert [s.id for s in task.sub_items] == ["s1"]

            await replica.delete_task("t1")
            await eventually(lambda: replica.list() == [])
            assert replica.get("t1") is None
            assert replica.get_sub_item("s1") is None

    async def test_close_releases_every_channel(self, seeded, resolver):
        replica = TaskReplica(seeded, seeded, resolver)
        await replica.start()
        assert seeded.open_channels() == 2
        await replica.close()
        assert seeded.open_channels() == 0

    async def test_restart_opens_fresh_channels_only(self, seeded, resolver):
        replica = MessageReplica(seeded, seeded, resolver)
        await replica.start()
        await replica.close()
        await replica.start()
        assert seeded.open_channels("messages") == 1

        changes = []
        replica.subscribe_changes(changes.append)
        await replica.send_message("again", "team", "u1")
        await eventually(lambda: len(replica.list()) == 3)
        await settle()
        assert changes == ["messages"]
        await replica.close()

    async def test_failed_first_load(self, store, resolver):
        store.read = AsyncMock(side_effect=StoreError("relation does not exist"))
        replica = TaskReplica(store, store, resolver)
        with pytest.raises(LoadError):
            await replica.start()
        assert replica.loading
        assert isinstance(replica.load_error, LoadError)
        assert store.open_channels() == 0

    async def test_subscription_failure_releases_opened_channels(self, seeded, resolver):
        real_subscribe = seeded.subscribe

        async def flaky_subscribe(collection, event_mask):
            if collection == "subtasks":
                raise StoreError("feed down")
            return await real_subscribe(collection, event_mask)

        seeded.subscribe = flaky_subscribe
        replica = TaskReplica(seeded, seeded, resolver)
        with pytest.raises(SubscriptionError):
            await replica.start()
        assert seeded.open_channels() == 0

    async def test_cancelled_start_releases_opened_channels(self, gated_store):
        gated_store.seed("tasks", [task_row("t1", "Launch")])
        gated_store.hold("tasks")
        replica = TaskReplica(gated_store, gated_store, JoinResolver(gated_store))
        starting = asyncio.create_task(replica.start())
        await gated_store.entered.wait()
        assert gated_store.open_channels() == 2

        starting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await starting
        assert gated_store.open_channels() == 0
        gated_store.release()

    async def test_listener_unsubscribe(self, seeded, resolver):
        async with TaskReplica(seeded, seeded, resolver) as replica:
            calls = []
            unsubscribe = replica.subscribe_changes(calls.append)
            unsubscribe()
            await replica.create_task({"title": "Quiet"})
            await eventually(lambda: len(replica.list()) == 2)
            assert calls == []


# ============================================================================
# Snapshot/event race
# ============================================================================


class TestSnapshotRace:
    async def test_update_during_load_is_not_lost(self, gated_store, resolver):
        gated_store.seed("tasks", [task_row("t1", "Before")])
        replica = TaskReplica(gated_store, gated_store, JoinResolver(gated_store))

        gated_store.hold("tasks")
        starting = asyncio.create_task(replica.start())
        await gated_store.entered.wait()

        # The snapshot rows are already captured; this write races the load.
        await gated_store.update_patch("tasks", "t1", {"title": "After"})
        await eventually(lambda: len(replica._buffer) == 1)
        assert replica.loading

        gated_store.release()
        await starting
        assert titles(replica) == ["After"]
        await replica.close()

    async def test_insert_during_load_is_not_lost(self, gated_store):
        replica = TaskReplica(gated_store, gated_store, JoinResolver(gated_store))
        gated_store.hold("tasks")
        starting = asyncio.create_task(replica.start())
        await gated_store.entered.wait()

        await gated_store.insert("tasks", task_row("t2", "Raced"))
        await eventually(lambda: len(replica._buffer) == 1)

        gated_store.release()
        await starting
        assert titles(replica) == ["Raced"]
        await replica.close()

    async def test_stale_buffered_update_skipped(self, gated_store):
        gated_store.seed("tasks", [task_row("t1", "Current", minute=10)])
        replica = TaskReplica(gated_store, gated_store, JoinResolver(gated_store))
        gated_store.hold("tasks")
        starting = asyncio.create_task(replica.start())
        await gated_store.entered.wait()

        old = task_row("t1", "Old", minute=5)
        gated_store.publish("tasks", {"kind": "UPDATE", "new": old})
        await eventually(lambda: len(replica._buffer) == 1)

        gated_store.release()
        await starting
        assert titles(replica) == ["Current"]
        assert replica.anomaly_counts[STALE_REPLAY] == 1
        await replica.close()

    async def test_events_apply_directly_after_load(self, seeded, resolver):
        async with TaskReplica(seeded, seeded, resolver) as replica:
            await replica.update_task("t1", {"title": "Renamed"})
            await eventually(lambda: titles(replica) == ["Renamed"])
            assert replica._buffer == []

    async def test_refetch_replaces_state(self, seeded, resolver):
        async with TaskReplica(seeded, seeded, resolver) as replica:
            # Rows written behind the feed's back only show up on refetch.
            seeded.seed("tasks", [task_row("t2", "Hidden", minute=3)])
            await settle()
            assert titles(replica) == ["Launch"]

            await replica.refetch()
            assert titles(replica) == ["Launch", "Hidden"]
            assert replica.loaded_version == 2

    async def test_failed_refetch_keeps_previous_snapshot(self, seeded, resolver):
        async with TaskReplica(seeded, seeded, resolver) as replica:
            real_read = seeded.read
            seeded.read = AsyncMock(side_effect=StoreError("timeout"))
            with pytest.raises(LoadError):
                await replica.refetch()
            seeded.read = real_read

            assert titles(replica) == ["Launch"]
            assert not replica.loading
            assert replica.load_error is not None

            await replica.update_task("t1", {"progress": 30})
            await eventually(lambda: replica.get("t1").progress == 30)


# ============================================================================
# Mutations
# ============================================================================


class TestMutations:
    async def test_mutation_never_touches_local_state(self, seeded, resolver):
        # Writes go to `seeded`; the replica listens to a feed that stays silent.
        silent_feed = MemoryStore()
        replica = TaskReplica(seeded, silent_feed, resolver)
        await replica.start()

        row = await replica.create_task({"title": "Remote only"})
        await replica.update_task("t1", {"title": "Changed remotely"})
        await settle()

        assert row["title"] == "Remote only"
        assert titles(replica) == ["Launch"]
        await replica.close()

    async def test_failed_mutation_raises_and_keeps_state(self, seeded, resolver):
        async with TaskReplica(seeded, seeded, resolver) as replica:
            seeded.insert = AsyncMock(side_effect=StoreError("permission denied"))
            with pytest.raises(MutationError) as exc_info:
                await replica.create_task({"title": "Nope"})
            assert isinstance(exc_info.value.cause, StoreError)
            assert titles(replica) == ["Launch"]

    async def test_update_of_missing_row_is_mutation_error(self, seeded, resolver):
        async with TaskReplica(seeded, seeded, resolver) as replica:
            with pytest.raises(MutationError):
                await replica.update_task("ghost", {"title": "x"})

    async def test_invalid_input_is_mutation_error(self, seeded, resolver):
        async with TaskReplica(seeded, seeded, resolver) as replica:
            with pytest.raises(MutationError) as exc_info:
                await replica.create_task({"title": ""})
            assert exc_info.value.operation == "tasks.create"

    async def test_update_task_drops_sub_items(self, seeded, resolver):
        async with TaskReplica(seeded, seeded, resolver) as replica:
            await replica.update_task("t1", {"title": "Kept", "sub_items": []})
            await eventually(lambda: titles(replica) == ["Kept"])
            assert [s.id for s in replica.get("t1").sub_items] == ["s1"]

    async def test_sub_item_operations(self, seeded, resolver):
        async with TaskReplica(seeded, seeded, resolver) as replica:
            row = await replica.add_sub_item("t1", "DNS cutover")
            assert row["priority"] == "medium"
            await eventually(lambda: len(replica.get("t1").sub_items) == 2)

            sub = replica.get_sub_item(row["id"])
            await replica.toggle_sub_item(sub.id, sub.completed)
            await eventually(lambda: replica.get_sub_item(row["id"]).completed)
            assert replica.get("t1").completed_sub_items == 1

            await replica.toggle_sub_item(sub.id, True)
            await eventually(lambda: not replica.get_sub_item(row["id"]).completed)
            assert replica.get("t1").completed_sub_items == 0

            await replica.update_sub_item(row["id"], {"title": "DNS + TLS"})
            await eventually(lambda: replica.get_sub_item(row["id"]).title == "DNS + TLS")

            await replica.remove_sub_item(row["id"])
            await eventually(lambda: [s.id for s in replica.get("t1").sub_items] == ["s1"])

    async def test_add_sub_item_to_missing_task_fails(self, seeded, resolver):
        async with TaskReplica(seeded, seeded, resolver) as replica:
            with pytest.raises(MutationError):
                await replica.add_sub_item("ghost", "Nowhere")

    async def test_progress_clamped(self, seeded, resolver):
        async with TaskReplica(seeded, seeded, resolver) as replica:
            row = await replica.create_task({"title": "Overachiever", "progress": 140})
            assert row["progress"] == 100


# ============================================================================
# Messages
# ============================================================================


class TestMessages:
    async def test_double_insert_keeps_second_content(self, seeded, resolver):
        async with MessageReplica(seeded, seeded, resolver) as replica:
            seeded.publish("messages", {"kind": "INSERT", "new": message_row("m9", "u1", "first", minute=9)})
            seeded.publish("messages", {"kind": "INSERT", "new": message_row("m9", "u1", "second", minute=9)})
            await eventually(lambda: any(m.content == "second" for m in replica.list()))
            assert [m.id for m in replica.list()].count("m9") == 1

    async def test_new_message_gets_sender_name(self, seeded, resolver):
        async with MessageReplica(seeded, seeded, resolver) as replica:
            lookups = resolver.lookups
            await replica.send_message("hello", "team", "u2")
            await eventually(lambda: len(replica.list()) == 3)
            assert replica.list()[-1].sender_name == "Bob"
            assert resolver.lookups == lookups

    async def test_unindexed_sender_is_looked_up(self, seeded, resolver):
        async with MessageReplica(seeded, seeded, resolver) as replica:
            seeded.seed("users", [person_row("p3", "u3", "Cara")])
            await replica.send_message("new here", "team", "u3")
            await eventually(lambda: len(replica.list()) == 3)
            assert replica.list()[-1].sender_name == "Cara"
            assert resolver.lookups == 1

    async def test_unknown_sender(self, seeded, resolver):
        async with MessageReplica(seeded, seeded, resolver) as replica:
            await replica.send_message("who am i", "team", "nobody")
            await eventually(lambda: len(replica.list()) == 3)
            assert replica.list()[-1].sender_name == "Unknown"

    async def test_channel_filter_and_order(self, seeded, resolver):
        async with MessageReplica(seeded, seeded, resolver) as replica:
            assert [m.id for m in replica.list()] == ["m1", "m2"]
            assert [m.id for m in replica.list(channel="client")] == ["m2"]

    async def test_messages_are_immutable(self, seeded, resolver):
        async with MessageReplica(seeded, seeded, resolver) as replica:
            with pytest.raises(MutationError):
                await replica.update_by_id("m1", {"content": "edited"})

    async def test_delete_message(self, seeded, resolver):
        async with MessageReplica(seeded, seeded, resolver) as replica:
            await replica.delete_by_id("m1")
            await eventually(lambda: [m.id for m in replica.list()] == ["m2"])


# ============================================================================
# Users
# ============================================================================


class TestUsers:
    async def test_person_without_role_is_client(self, seeded, resolver):
        async with PersonReplica(seeded, seeded, resolver) as replica:
            assert replica.by_user_id("u2").role == "client"
            assert replica.by_user_id("u1").role == "admin"

    async def test_role_event_updates_person(self, seeded, resolver):
        async with PersonReplica(seeded, seeded, resolver) as replica:
            await seeded.insert("user_roles", {"user_id": "u2", "role": "employee"})
            await eventually(lambda: replica.by_user_id("u2").role == "employee")

            await seeded.delete("user_roles", "r1")
            await eventually(lambda: replica.by_user_id("u1").role == "client")

    async def test_deleting_one_of_several_roles(self, seeded, resolver):
        seeded.seed("user_roles", [{"id": "r2", "user_id": "u1", "role": "employee"}])
        async with PersonReplica(seeded, seeded, resolver) as replica:
            assert replica.by_user_id("u1").role == "admin"

            await seeded.delete("user_roles", "r2")
            await settle()
            assert replica.by_user_id("u1").role == "admin"

            await seeded.delete("user_roles", "r1")
            await eventually(lambda: replica.by_user_id("u1").role == "client")

    async def test_role_record_moved_between_users(self, seeded, resolver):
        async with PersonReplica(seeded, seeded, resolver) as replica:
            await seeded.update_patch("user_roles", "r1", {"user_id": "u2"})
            await eventually(lambda: replica.by_user_id("u2").role == "admin")
            assert replica.by_user_id("u1").role == "client"

    async def test_new_person_gets_role(self, seeded, resolver):
        async with PersonReplica(seeded, seeded, resolver) as replica:
            seeded.seed("user_roles", [{"id": "r3", "user_id": "u3", "role": "employee"}])
            await seeded.insert("users", person_row("p3", "u3", "Cara"))
            await eventually(lambda: replica.by_user_id("u3") is not None)
            assert replica.by_user_id("u3").role == "employee"
            assert resolver.sender_name("u3") == "Cara"

    async def test_directory_is_read_only(self, seeded, resolver):
        async with PersonReplica(seeded, seeded, resolver) as replica:
            with pytest.raises(MutationError):
                await replica.create({"name": "Mallory"})
            with pytest.raises(MutationError):
                await replica.delete_by_id("p1")
