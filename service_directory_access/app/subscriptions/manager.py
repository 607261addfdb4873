"""
Live subscriptions to the directory access record set.
"""

import asyncio
import inspect
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime

from shared.logging import get_logger
from shared.errors import AccessLayerException
from shared.metrics import MetricsCollector
from ..access.models import AccessRecord, utcnow
from ..persistence.base import AccessStore

SnapshotCallback = Callable[[List[AccessRecord]], Any]
SnapshotLoader = Callable[[], Awaitable[List[AccessRecord]]]


@dataclass
class Subscription:
    """Subscription data."""
    subscription_id: str
    on_change: SnapshotCallback
    created_at: datetime = field(default_factory=utcnow)
    last_snapshot_at: Optional[datetime] = None
    snapshot_count: int = 0
    last_sequence: int = 0


class SubscriptionManager:
    """Pushes full record snapshots to subscribers.

    Each subscriber gets the current snapshot when it subscribes and a fresh
    one after every store change, whichever process made it. A subscriber never
    receives an older snapshot after a newer one, and callbacks run outside
    the load lock so they may write to the store themselves. A failing subscriber or an unreadable snapshot is
    logged and never closes the stream for anyone else.
    """

    def __init__(self, store: AccessStore, loader: SnapshotLoader,
                 metrics: Optional[MetricsCollector] = None):
        self.logger = get_logger("directory_access.subscriptions.manager")
        self.store = store
        self.loader = loader
        self.metrics = metrics

        self.subscriptions: Dict[str, Subscription] = {}
        self._cancel_watch: Optional[Callable[[], None]] = None
        self._publish_lock = asyncio.Lock()
        self._sequence = 0

    async def subscribe(self, on_change: SnapshotCallback) -> Callable[[], None]:
        """Register ``on_change`` and deliver the initial snapshot.

        Returns the unsubscribe callable; calling it more than once is a no-op.
        """
        subscription_id = str(uuid.uuid4())
        subscription = Subscription(subscription_id=subscription_id, on_change=on_change)
        self.subscriptions[subscription_id] = subscription

        if self._cancel_watch is None:
            self._cancel_watch = self.store.watch(self._on_store_change)

        self._update_gauge()
        self.logger.info("Subscription created", subscription_id=subscription_id)

        loaded = await self._load_next_snapshot()
        if loaded is not None:
            await self._deliver(subscription, *loaded)

        def unsubscribe():
            self.unsubscribe(subscription_id)

        return unsubscribe

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription."""
        subscription = self.subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False

        if not self.subscriptions and self._cancel_watch is not None:
            self._cancel_watch()
            self._cancel_watch = None

        self._update_gauge()
        self.logger.info(
            "Subscription removed",
            subscription_id=subscription_id,
            snapshot_count=subscription.snapshot_count
        )
        return True

    async def publish(self):
        """Reload the record set and push it to every subscriber."""
        if not self.subscriptions:
            return

        loaded = await self._load_next_snapshot()
        if loaded is None:
            return

        for subscription in list(self.subscriptions.values()):
            await self._deliver(subscription, *loaded)

    async def close(self):
        """Drop all subscriptions."""
        for subscription_id in list(self.subscriptions):
            self.unsubscribe(subscription_id)

    def get_subscription_stats(self) -> Dict[str, Any]:
        return {
            "active_subscriptions": len(self.subscriptions),
            "snapshots_delivered": sum(s.snapshot_count for s in self.subscriptions.values()),
        }

    async def _on_store_change(self, subject_id: str):
        self.logger.debug("Access record changed", subject_id=subject_id)
        await self.publish()

    async def _load_next_snapshot(self) -> Optional[Tuple[int, List[AccessRecord]]]:
        """Load a snapshot and number it; loads are serialized, delivery is not."""
        async with self._publish_lock:
            try:
                snapshot = await self.loader()
            except AccessLayerException as e:
                self.logger.error("Failed to load access snapshot", code=e.code, error=e.message)
                return None

            self._sequence += 1
            return self._sequence, snapshot

    async def _deliver(self, subscription: Subscription, sequence: int, snapshot: List[AccessRecord]):
        # Callbacks may write to the store and trigger newer snapshots; never go backwards
        if subscription.subscription_id not in self.subscriptions or sequence <= subscription.last_sequence:
            return

        subscription.last_sequence = sequence
        try:
            result = subscription.on_change(list(snapshot))
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.error(
                "Subscriber failed to handle snapshot",
                subscription_id=subscription.subscription_id,
                error=str(e)
            )
            return

        subscription.snapshot_count += 1
        subscription.last_snapshot_at = utcnow()

    def _update_gauge(self):
        if self.metrics is not None:
            self.metrics.set_gauge("access_subscriptions_active", len(self.subscriptions))
