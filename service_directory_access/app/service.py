"""
Entitlement service: pairs the engine with the access store.

All writes are single-record read-modify-write cycles. Administrative
transitions are conditional on the status and version that were read, so a
transition that loses a race is re-read and re-validated instead of
clobbering the winner.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from shared.logging import get_logger, set_admin_context
from shared.errors import (
    AccessLayerException, ConcurrentModification, RecordNotFound, StoreUnavailable, ValidationError
)
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.retry import RetryConfig, call_with_retry
from .access.engine import EntitlementEngine
from .access.models import (
    AccessRecord, AccessStatus, AccessType, DisplayStatus, FilterCategory, Stats,
    SubjectAccessResponse, SubjectAccessStatus, as_utc, utcnow
)
from .cache.redis_cache import RedisCache
from .persistence.base import AccessStore
from .subscriptions.manager import SnapshotCallback, SubscriptionManager


class EntitlementService:
    """Directory access operations exposed to the admin UI and billing."""

    def __init__(
        self,
        store: AccessStore,
        engine: Optional[EntitlementEngine] = None,
        cache: Optional[RedisCache] = None,
        metrics: Optional[MetricsCollector] = None,
        unit_price: float = 29.99,
        paid_access_days: int = 30,
        transition_retry_attempts: int = 2,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.logger = get_logger("directory_access.service")
        self.store = store
        self.engine = engine or EntitlementEngine()
        self.cache = cache
        self.metrics = metrics or get_metrics_collector("directory_access")
        self.unit_price = unit_price
        self.paid_access_days = paid_access_days
        self.clock = clock
        self.retry_config = RetryConfig(
            max_attempts=max(1, transition_retry_attempts),
            base_delay=0.05,
            max_delay=0.5,
        )
        self.subscriptions = SubscriptionManager(store, self.list_records, self.metrics)
        self._cancel_cache_watch: Optional[Callable[[], None]] = None
        # Bumped on every invalidation so an in-flight check never caches a stale answer
        self._cache_generations: Dict[str, int] = {}

    async def start(self):
        await self.store.start()
        if self.cache is not None:
            await self.cache.start()
            # Billing and other processes write to the store directly
            self._cancel_cache_watch = self.store.watch(self._invalidate_cached_access)

    async def stop(self):
        await self.subscriptions.close()
        if self._cancel_cache_watch is not None:
            self._cancel_cache_watch()
            self._cancel_cache_watch = None
        await self.store.stop()
        if self.cache is not None:
            await self.cache.stop()

    # Queries

    async def subscribe(self, on_change: SnapshotCallback) -> Callable[[], None]:
        """Stream the full record set, newest request first, to ``on_change``."""
        return await self.subscriptions.subscribe(on_change)

    async def list_records(self, category: FilterCategory = FilterCategory.ALL,
                           now: Optional[datetime] = None) -> List[AccessRecord]:
        async with self._store_operation("list_all"):
            records = await self.store.list_all()
        return self.engine.filter_by_category(records, category, now or self.clock())

    async def get_record(self, subject_id: str) -> AccessRecord:
        async with self._store_operation("get"):
            record = await self.store.get(subject_id)
        if record is None:
            raise RecordNotFound(subject_id)
        return record

    def compute_stats(self, records: Iterable[AccessRecord], now: Optional[datetime] = None) -> Stats:
        """Dashboard counters; revenue counts currently entitled paid seats only."""
        now = now or self.clock()
        records = list(records)

        pending_count = len(self.engine.filter_by_category(records, FilterCategory.PENDING, now))
        active_paid_count = sum(
            1 for record in records
            if self.engine.classify(record, now) == DisplayStatus.ACTIVE_PAID
        )

        return Stats(
            total=len(records),
            pending_count=pending_count,
            active_paid_count=active_paid_count,
            estimated_monthly_revenue=round(active_paid_count * self.unit_price, 2),
        )

    async def check_access(self, subject_id: str) -> SubjectAccessResponse:
        """Member-facing gate: may ``subject_id`` open the directory now?"""
        if self.cache is not None:
            cached = await self.cache.get_subject_access(subject_id)
            if cached is not None:
                self.metrics.increment_counter("access_checks_total", status=cached.status.value)
                return cached

        generation = self._cache_generations.get(subject_id, 0)
        now = self.clock()
        async with self._store_operation("get"):
            record = await self.store.get(subject_id)

        if record is None:
            response = SubjectAccessResponse(subject_id=subject_id, status=SubjectAccessStatus.NO_ACCESS)
        else:
            response = SubjectAccessResponse(
                subject_id=subject_id,
                status=self.engine.subject_access(record, now),
                expiry_date=record.expiry_date if record.access_type == AccessType.PAID else None,
            )

        if self.cache is not None and self._cache_generations.get(subject_id, 0) == generation:
            await self.cache.set_subject_access(response, now)
            # A change landed while the entry was being written
            if self._cache_generations.get(subject_id, 0) != generation:
                await self.cache.invalidate_subject(subject_id)

        self.metrics.increment_counter("access_checks_total", status=response.status.value)
        return response

    # Administrative transitions

    async def approve(self, subject_id: str, admin_id: str) -> AccessRecord:
        return await self._transition(subject_id, admin_id, "approve", self.engine.apply_approve)

    async def deny(self, subject_id: str, admin_id: str) -> AccessRecord:
        return await self._transition(subject_id, admin_id, "deny", self.engine.apply_deny)

    async def revoke(self, subject_id: str, admin_id: str) -> AccessRecord:
        return await self._transition(subject_id, admin_id, "revoke", self.engine.apply_revoke)

    async def remove(self, subject_id: str):
        """Delete a record from any state."""
        try:
            async with self._store_operation("delete"):
                deleted = await self.store.delete(subject_id)
            if not deleted:
                raise RecordNotFound(subject_id)
        except AccessLayerException as e:
            self.metrics.record_transition("remove", e.code.lower())
            raise

        self.metrics.record_transition("remove", "ok")
        await self._invalidate_cached_access(subject_id)
        self.logger.info("Access record deleted", subject_id=subject_id)

    # Record creation by members and billing

    async def request_manual_approval(self, subject_id: str, user_name: Optional[str] = None,
                                      user_photo: Optional[str] = None) -> AccessRecord:
        """Create a pending manual-approval request for ``subject_id``.

        A pending request or current access blocks a new request; a denied,
        revoked or expired record is replaced. The write is conditional on the
        record that was checked, so a purchase landing in between is never
        overwritten.
        """
        saved = await call_with_retry(
            self._attempt_request,
            subject_id,
            user_name,
            user_photo,
            exceptions=(ConcurrentModification,),
            config=self.retry_config,
        )

        await self._invalidate_cached_access(subject_id)
        self.metrics.record_business_event("directory_access_request")
        self.logger.info(
            "Directory access requested",
            subject_id=subject_id,
            user_name=saved.user_name,
            notify="admins"
        )
        return saved

    async def grant_paid_access(self, subject_id: str, user_name: Optional[str] = None,
                                user_photo: Optional[str] = None,
                                purchased_at: Optional[datetime] = None,
                                duration_days: Optional[int] = None) -> AccessRecord:
        """Record a completed purchase as an active paid grant.

        A purchase writes a fresh paid record over whatever the subject held
        before, which is also how renewals extend the expiry date. A naive
        ``purchased_at`` is taken as UTC.
        """
        purchased_at = as_utc(purchased_at) if purchased_at is not None else self.clock()
        if duration_days is None:
            duration_days = self.paid_access_days
        if duration_days < 1:
            raise ValidationError("duration_days must be positive", {"duration_days": duration_days})

        saved = await call_with_retry(
            self._attempt_purchase,
            subject_id,
            user_name,
            user_photo,
            purchased_at,
            duration_days,
            exceptions=(ConcurrentModification,),
            config=self.retry_config,
        )

        await self._invalidate_cached_access(subject_id)
        self.metrics.record_business_event("directory_access_purchase")
        self.logger.info(
            "Paid directory access granted",
            subject_id=subject_id,
            expiry_date=saved.expiry_date.isoformat(),
            amount=self.unit_price
        )
        return saved

    # Internals

    async def _attempt_request(self, subject_id: str, user_name: Optional[str],
                               user_photo: Optional[str]) -> AccessRecord:
        now = self.clock()
        async with self._store_operation("get"):
            existing = await self.store.get(subject_id)

        if existing is not None and (
            existing.status == AccessStatus.PENDING or self.engine.is_currently_entitled(existing, now)
        ):
            raise ValidationError(
                "Access already requested or granted",
                {"subject_id": subject_id, "status": existing.status.value}
            )

        record = AccessRecord(
            subject_id=subject_id,
            access_type=AccessType.MANUAL_APPROVAL,
            status=AccessStatus.PENDING,
            approved=False,
            requested_at=now,
            user_name=user_name or "Unknown",
            user_photo=user_photo,
        )

        async with self._store_operation("put"):
            return await self.store.put(record, expected_version=existing.version if existing else 0)

    async def _attempt_purchase(self, subject_id: str, user_name: Optional[str], user_photo: Optional[str],
                                purchased_at: datetime, duration_days: int) -> AccessRecord:
        async with self._store_operation("get"):
            existing = await self.store.get(subject_id)

        record = AccessRecord(
            subject_id=subject_id,
            access_type=AccessType.PAID,
            status=AccessStatus.ACTIVE,
            approved=True,
            requested_at=existing.requested_at if existing is not None else purchased_at,
            purchased_at=purchased_at,
            expiry_date=purchased_at + timedelta(days=duration_days),
            user_name=user_name or (existing.user_name if existing is not None else None) or "Unknown",
            user_photo=user_photo or (existing.user_photo if existing is not None else None),
        )

        async with self._store_operation("put"):
            return await self.store.put(record, expected_version=existing.version if existing else 0)

    async def _transition(self, subject_id: str, admin_id: str, transition: str,
                          apply: Callable[[AccessRecord, str, datetime], AccessRecord]) -> AccessRecord:
        set_admin_context(admin_id)
        try:
            record = await call_with_retry(
                self._attempt_transition,
                subject_id,
                admin_id,
                apply,
                exceptions=(ConcurrentModification,),
                config=self.retry_config,
            )
        except AccessLayerException as e:
            self.metrics.record_transition(transition, e.code.lower())
            self.logger.warning(
                "Access transition failed",
                subject_id=subject_id,
                transition=transition,
                code=e.code
            )
            raise

        self.metrics.record_transition(transition, "ok")
        await self._invalidate_cached_access(subject_id)
        self.logger.info(
            "Access transition applied",
            subject_id=subject_id,
            transition=transition,
            status=record.status.value
        )
        return record

    async def _attempt_transition(self, subject_id: str, admin_id: str,
                                  apply: Callable[[AccessRecord, str, datetime], AccessRecord]) -> AccessRecord:
        current = await self.get_record(subject_id)
        updated = apply(current, admin_id, self.clock())

        async with self._store_operation("update"):
            return await self.store.update(updated, current.status, current.version)

    async def _invalidate_cached_access(self, subject_id: str):
        if self.cache is not None:
            self._cache_generations[subject_id] = self._cache_generations.get(subject_id, 0) + 1
            await self.cache.invalidate_subject(subject_id)

    @asynccontextmanager
    async def _store_operation(self, operation: str):
        """Time a store call and wrap driver failures as StoreUnavailable."""
        try:
            with self.metrics.time_operation("store_operation_duration_seconds", operation=operation):
                yield
        except AccessLayerException:
            raise
        except Exception as e:
            self.logger.error("Access store call failed", operation=operation, error=str(e))
            raise StoreUnavailable(
                "Access store call failed",
                {"operation": operation, "error": str(e)}
            ) from e
