"""
Unit tests for live access-record subscriptions.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock

from service_directory_access.app.access.models import AccessStatus
from service_directory_access.app.persistence.memory import InMemoryAccessStore
from service_directory_access.app.subscriptions.manager import SubscriptionManager
from shared.errors import StoreUnavailable


class TestSubscriptionManager:
    """Test cases for SubscriptionManager."""

    @pytest.fixture
    def store(self):
        return InMemoryAccessStore()

    @pytest.fixture
    def manager(self, store):
        return SubscriptionManager(store, store.list_all)

    @pytest.mark.asyncio
    async def test_initial_snapshot(self, manager, store, make_record):
        await store.put(make_record("a@x.com"))
        snapshots = []

        await manager.subscribe(snapshots.append)

        assert len(snapshots) == 1
        assert [r.subject_id for r in snapshots[0]] == ["a@x.com"]

    @pytest.mark.asyncio
    async def test_empty_store_delivers_empty_snapshot(self, manager):
        snapshots = []

        await manager.subscribe(snapshots.append)

        assert snapshots == [[]]

    @pytest.mark.asyncio
    async def test_snapshot_after_each_change(self, manager, store, make_record):
        snapshots = []
        await manager.subscribe(snapshots.append)

        await store.put(make_record("a@x.com"))
        await store.put(make_record("b@x.com", status=AccessStatus.DENIED))
        await store.delete("a@x.com")

        assert [len(s) for s in snapshots] == [0, 1, 2, 1]
        assert snapshots[-1][0].subject_id == "b@x.com"

    @pytest.mark.asyncio
    async def test_async_callback(self, manager, store, make_record):
        callback = AsyncMock()

        await manager.subscribe(callback)
        await store.put(make_record("a@x.com"))

        assert callback.await_count == 2

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, manager, store, make_record):
        snapshots = []
        unsubscribe = await manager.subscribe(snapshots.append)

        unsubscribe()
        unsubscribe()
        await store.put(make_record("a@x.com"))

        assert len(snapshots) == 1
        assert manager.subscriptions == {}
        assert store._listeners == []

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_affect_others(self, manager, store, make_record):
        def broken(records):
            raise RuntimeError("render failed")

        snapshots = []
        await manager.subscribe(broken)
        await manager.subscribe(snapshots.append)

        await store.put(make_record("a@x.com"))

        assert len(snapshots) == 2
        assert len(manager.subscriptions) == 2

    @pytest.mark.asyncio
    async def test_malformed_document_skipped(self, manager, store, make_record):
        await store.put(make_record("good@x.com"))
        store.documents["bad@x.com"] = {"subject_id": "bad@x.com", "status": "pending"}
        snapshots = []

        await manager.subscribe(snapshots.append)

        assert [r.subject_id for r in snapshots[0]] == ["good@x.com"]

    @pytest.mark.asyncio
    async def test_loader_failure_keeps_subscription(self, store, make_record):
        loader = AsyncMock(side_effect=[StoreUnavailable(), []])
        manager = SubscriptionManager(store, loader)
        snapshots = []

        await manager.subscribe(snapshots.append)
        await store.put(make_record("a@x.com"))

        assert snapshots == [[]]
        assert len(manager.subscriptions) == 1

    @pytest.mark.asyncio
    async def test_subscription_stats(self, manager, store, make_record):
        await manager.subscribe(lambda records: None)
        await manager.subscribe(lambda records: None)
        await store.put(make_record("a@x.com"))

        stats = manager.get_subscription_stats()

        assert stats["active_subscriptions"] == 2
        assert stats["snapshots_delivered"] == 4

    @pytest.mark.asyncio
    async def test_close_drops_everything(self, manager, store):
        await manager.subscribe(lambda records: None)

        await manager.close()

        assert manager.subscriptions == {}
        assert store._listeners == []

    @pytest.mark.asyncio
    async def test_callback_may_write_to_store(self, manager, store, make_record):
        snapshots = []

        async def on_change(records):
            snapshots.append(len(records))
            if not records:
                await store.put(make_record("a@x.com"))

        await asyncio.wait_for(manager.subscribe(on_change), timeout=2)

        assert snapshots == [0, 1]

    @pytest.mark.asyncio
    async def test_older_snapshot_never_follows_newer(self, manager, store, make_record):
        """A write from one callback must not let another subscriber go back in time."""
        seen = []

        async def writer(records):
            if len(records) == 1:
                await store.put(make_record("b@x.com"))

        await manager.subscribe(writer)
        await manager.subscribe(lambda records: seen.append(len(records)))

        await store.put(make_record("a@x.com"))

        assert seen == [0, 2]
