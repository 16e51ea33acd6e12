"""Tests for ChangeEventSubscriber: delivery order, sequencing, teardown."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from factories import eventually, settle

from taskflow.errors import StoreError, SubscriptionError
from taskflow.services.change_feed import ChangeEventSubscriber

pytestmark = pytest.mark.asyncio


class TestDelivery:
    async def test_events_delivered_in_order_with_sequence(self, store):
        seen = []

        async def handler(event):
            seen.append(event)

        subscriber = ChangeEventSubscriber(store)
        await subscriber.subscribe("messages", handler)
        for i in range(3):
            store.publish("messages", {"kind": "INSERT", "new": {"id": f"m{i}", "content": str(i)}})

        await eventually(lambda: len(seen) == 3)
        assert [e.record_id for e in seen] == ["m0", "m1", "m2"]
        assert [e.sequence for e in seen] == [1, 2, 3]
        assert all(e.received_at for e in seen)
        await subscriber.close()

    async def test_event_mask_filters_kinds(self, store):
        seen = []

        async def handler(event):
            seen.append(event.kind)

        subscriber = ChangeEventSubscriber(store)
        await subscriber.subscribe("messages", handler, event_mask={"INSERT", "DELETE"})
        store.publish("messages", {"kind": "UPDATE", "new": {"id": "m1"}})
        store.publish("messages", {"kind": "DELETE", "oldId": "m1"})

        await eventually(lambda: seen == ["DELETE"])
        await subscriber.close()

    async def test_malformed_payload_skipped(self, store):
        seen = []

        async def handler(event):
            seen.append(event.record_id)

        subscriber = ChangeEventSubscriber(store)
        await subscriber.subscribe("tasks", handler)
        store.publish("tasks", {"kind": "INSERT", "new": {"title": "no id"}})
        store.publish("tasks", {"kind": "INSERT", "new": {"id": "t1"}})

        await eventually(lambda: seen == ["t1"])
        await subscriber.close()

    async def test_handler_error_does_not_stop_pump(self, store):
        seen = []

        async def handler(event):
            if event.record_id == "bad":
                raise RuntimeError("boom")
            seen.append(event.record_id)

        subscriber = ChangeEventSubscriber(store)
        await subscriber.subscribe("tasks", handler)
        store.publish("tasks", {"kind": "INSERT", "new": {"id": "bad"}})
        store.publish("tasks", {"kind": "INSERT", "new": {"id": "good"}})

        await eventually(lambda: seen == ["good"])
        await subscriber.close()


class TestTeardown:
    async def test_unsubscribe_releases_channel(self, store):
        subscriber = ChangeEventSubscriber(store)
        handle = await subscriber.subscribe("tasks", AsyncMock())
        assert store.open_channels("tasks") == 1

        await subscriber.unsubscribe(handle)
        assert store.open_channels("tasks") == 0
        assert handle.closed
        assert subscriber.handles == []

    async def test_unsubscribe_is_idempotent(self, store):
        subscriber = ChangeEventSubscriber(store)
        handle = await subscriber.subscribe("tasks", AsyncMock())
        await subscriber.unsubscribe(handle)
        await subscriber.unsubscribe(handle)
        assert store.open_channels() == 0

    async def test_old_channel_never_delivers_after_resubscribe(self, store):
        old_handler, new_handler = AsyncMock(), AsyncMock()
        subscriber = ChangeEventSubscriber(store)
        old = await subscriber.subscribe("tasks", old_handler)
        await subscriber.unsubscribe(old)
        await subscriber.subscribe("tasks", new_handler)

        store.publish("tasks", {"kind": "INSERT", "new": {"id": "t1"}})
        await eventually(lambda: new_handler.await_count == 1)
        await settle()
        assert old_handler.await_count == 0
        await subscriber.close()

    async def test_subscribe_failure_raises(self, store):
        store.subscribe = AsyncMock(side_effect=StoreError("feed down"))
        subscriber = ChangeEventSubscriber(store)
        with pytest.raises(SubscriptionError) as exc_info:
            await subscriber.subscribe("tasks", AsyncMock())
        assert exc_info.value.collection == "tasks"
        assert subscriber.handles == []
