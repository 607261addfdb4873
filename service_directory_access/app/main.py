"""
Directory Access service: admin and billing API over the entitlement service.
"""

import asyncio
from typing import List, Optional
from datetime import datetime

from fastapi import Query, WebSocket, WebSocketDisconnect
from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ValidationError

from .access.engine import EntitlementEngine
from .access.models import (
    AccessRecord, FilterCategory, AdminActionRequest, AccessRequestCreate, PaidAccessGrantRequest,
    AccessRecordResponse, AccessRecordListResponse, StatsResponse, SubjectAccessResponse
)
from .cache.redis_cache import RedisCache
from .persistence.base import AccessStore
from .persistence.memory import InMemoryAccessStore
from .persistence.postgres import PostgresAccessStore
from .service import EntitlementService


def offer_latest(queue: asyncio.Queue, item):
    """Queue ``item`` for a single-slot outbox, replacing anything not yet sent."""
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(item)


class DirectoryAccessService(BaseService):
    """Directory Access service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store: Optional[AccessStore] = None,
                 cache: Optional[RedisCache] = None, use_cache: bool = True):
        super().__init__("directory_access", 8020, config)

        if store is None:
            store = self._create_store()
        if cache is None and use_cache and self.config.store_backend != "memory":
            cache = RedisCache(self.config.redis_url, default_ttl=self.config.access_cache_ttl)

        self.engine = EntitlementEngine()
        self.entitlements = EntitlementService(
            store=store,
            engine=self.engine,
            cache=cache,
            metrics=self.metrics,
            unit_price=self.config.unit_price,
            paid_access_days=self.config.paid_access_days,
            transition_retry_attempts=self.config.transition_retry_attempts,
        )

        self._setup_directory_access_routes()

    def _create_store(self) -> AccessStore:
        if self.config.store_backend == "memory":
            return InMemoryAccessStore()
        if self.config.store_backend == "postgres":
            return PostgresAccessStore(self.config.postgres_dsn)
        raise ValidationError(
            f"Unknown store backend {self.config.store_backend}",
            {"store_backend": self.config.store_backend}
        )

    def _record_response(self, record: AccessRecord, now: datetime) -> AccessRecordResponse:
        return AccessRecordResponse.from_record(
            record,
            display_status=self.engine.classify(record, now),
            currently_entitled=self.engine.is_currently_entitled(record, now),
        )

    def _snapshot_payload(self, records: List[AccessRecord]) -> dict:
        now = self.entitlements.clock()
        stats = self.entitlements.compute_stats(records, now)
        return {
            "type": "snapshot",
            "records": [self._record_response(r, now).model_dump(mode="json") for r in records],
            "stats": StatsResponse(**stats.__dict__).model_dump(mode="json"),
        }

    def _setup_directory_access_routes(self):
        """Set up directory-access routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "directory_access",
                "message": "Directory Access Service",
                "version": "1.0.0",
                "capabilities": ["entitlement_engine", "live_subscriptions", "caching", "persistence"]
            }

        @self.app.get("/stats")
        async def get_service_stats():
            """Get directory access service statistics."""
            stats = {"subscriptions": self.entitlements.subscriptions.get_subscription_stats()}
            if self.entitlements.cache is not None:
                stats["cache"] = await self.entitlements.cache.get_cache_stats()
            return stats

        @self.app.get("/directory-access/records", response_model=AccessRecordListResponse)
        async def list_records(
            category: FilterCategory = Query(FilterCategory.ALL, description="Administrative filter")
        ):
            """List access records, newest request first."""
            now = self.entitlements.clock()
            records = await self.entitlements.list_records(category, now)
            return AccessRecordListResponse(
                records=[self._record_response(r, now) for r in records],
                total=len(records),
                category=category
            )

        @self.app.get("/directory-access/stats", response_model=StatsResponse)
        async def get_stats():
            """Dashboard counters over the current record set."""
            now = self.entitlements.clock()
            records = await self.entitlements.list_records(FilterCategory.ALL, now)
            stats = self.entitlements.compute_stats(records, now)
            return StatsResponse(**stats.__dict__)

        @self.app.get("/directory-access/{subject_id}/access", response_model=SubjectAccessResponse)
        async def check_access(subject_id: str):
            """Member-facing access decision."""
            return await self.entitlements.check_access(subject_id)

        @self.app.post("/directory-access/requests", response_model=AccessRecordResponse, status_code=201)
        async def request_access(request: AccessRequestCreate):
            """Submit a manual approval request."""
            record = await self.entitlements.request_manual_approval(
                request.subject_id, request.user_name, request.user_photo
            )
            return self._record_response(record, self.entitlements.clock())

        @self.app.post("/directory-access/paid", response_model=AccessRecordResponse, status_code=201)
        async def grant_paid_access(request: PaidAccessGrantRequest):
            """Record a completed purchase reported by billing."""
            record = await self.entitlements.grant_paid_access(
                request.subject_id,
                user_name=request.user_name,
                user_photo=request.user_photo,
                purchased_at=request.purchased_at,
                duration_days=request.duration_days,
            )
            return self._record_response(record, self.entitlements.clock())

        @self.app.post("/directory-access/{subject_id}/approve", response_model=AccessRecordResponse)
        async def approve(subject_id: str, request: AdminActionRequest):
            """Approve a pending manual request."""
            record = await self.entitlements.approve(subject_id, request.admin_id)
            return self._record_response(record, self.entitlements.clock())

        @self.app.post("/directory-access/{subject_id}/deny", response_model=AccessRecordResponse)
        async def deny(subject_id: str, request: AdminActionRequest):
            """Deny a pending manual request."""
            record = await self.entitlements.deny(subject_id, request.admin_id)
            return self._record_response(record, self.entitlements.clock())

        @self.app.post("/directory-access/{subject_id}/revoke", response_model=AccessRecordResponse)
        async def revoke(subject_id: str, request: AdminActionRequest):
            """Revoke active access."""
            record = await self.entitlements.revoke(subject_id, request.admin_id)
            return self._record_response(record, self.entitlements.clock())

        @self.app.delete("/directory-access/{subject_id}")
        async def remove(subject_id: str):
            """Delete an access record."""
            await self.entitlements.remove(subject_id)
            return {"success": True, "message": "Access record deleted"}

        @self.app.websocket("/directory-access/stream")
        async def stream(websocket: WebSocket):
            """Push the full record set on connect and after every change."""
            await websocket.accept()
            # A slow client only ever receives the newest snapshot
            outbox: asyncio.Queue = asyncio.Queue(maxsize=1)

            def on_change(records: List[AccessRecord]):
                offer_latest(outbox, self._snapshot_payload(records))

            async def pump():
                while True:
                    await websocket.send_json(await outbox.get())

            unsubscribe = await self.entitlements.subscribe(on_change)
            sender = asyncio.create_task(pump())
            try:
                # Clients only ever close; this returns control on disconnect
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                self.logger.info("Stream client disconnected")
            finally:
                unsubscribe()
                sender.cancel()
                results = await asyncio.gather(sender, return_exceptions=True)
                if isinstance(results[0], Exception):
                    self.logger.warning("Stream sender failed", error=str(results[0]))

    async def _check_dependencies(self):
        """Check directory access dependencies."""
        dependencies = {}

        try:
            dependencies["store"] = "ok" if await self.entitlements.store.health_check() else "error"
        except Exception:
            dependencies["store"] = "error"

        if self.entitlements.cache is not None:
            try:
                dependencies["redis"] = "ok" if await self.entitlements.cache.health_check() else "error"
            except Exception:
                dependencies["redis"] = "error"

        return dependencies

    async def start(self):
        """Start directory access components."""
        await self.entitlements.start()
        self.logger.info("Directory access service started")

    async def stop(self):
        """Stop directory access components."""
        await self.entitlements.stop()
        self.logger.info("Directory access service stopped")


def create_app(**kwargs):
    """Create directory access service application."""
    service = DirectoryAccessService(**kwargs)
    return service.app


if __name__ == "__main__":
    service = DirectoryAccessService()
    service.run()
