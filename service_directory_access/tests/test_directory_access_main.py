"""
Unit tests for Directory Access main service.
"""

import asyncio
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch
from fastapi.testclient import TestClient

from service_directory_access.app.access.models import utcnow
from service_directory_access.app.main import DirectoryAccessService, offer_latest
from service_directory_access.app.persistence.memory import InMemoryAccessStore
from service_directory_access.app.persistence.postgres import PostgresAccessStore
from shared.config import get_config
from shared.errors import ValidationError


class TestDirectoryAccessService:
    """Test cases for DirectoryAccessService."""

    @pytest.fixture
    def config(self):
        return get_config("directory_access", 8020, store_backend="memory")

    @pytest.fixture
    def store(self):
        return InMemoryAccessStore()

    @pytest.fixture
    def service(self, config, store):
        return DirectoryAccessService(config=config, store=store, use_cache=False)

    @pytest.fixture
    def client(self, service):
        with TestClient(service.app) as client:
            yield client

    @pytest.fixture
    def pending(self, client):
        response = client.post("/directory-access/requests", json={
            "subject_id": "a@x.com",
            "user_name": "Ada"
        })
        assert response.status_code == 201
        return response.json()

    def test_root_endpoint(self, client):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "directory_access"
        assert "entitlement_engine" in data["capabilities"]

    def test_service_stats(self, client, pending):
        with client.websocket_connect("/directory-access/stream") as websocket:
            websocket.receive_json()

            response = client.get("/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["subscriptions"]["active_subscriptions"] == 1
        assert data["subscriptions"]["snapshots_delivered"] == 1
        assert "cache" not in data

    def test_service_stats_include_cache(self, config, store):
        cache = AsyncMock()
        cache.get_cache_stats.return_value = {"access_keys": 2, "hit_rate": 0.5}
        service = DirectoryAccessService(config=config, store=store, cache=cache)

        with TestClient(service.app) as client:
            response = client.get("/stats")

        assert response.status_code == 200
        assert response.json()["cache"] == {"access_keys": 2, "hit_rate": 0.5}

    def test_naive_purchase_time_rejected(self, client, pending):
        response = client.post("/directory-access/paid", json={
            "subject_id": "buyer@x.com",
            "purchased_at": "2024-03-01T12:00:00"
        })

        assert response.status_code == 422
        listing = client.get("/directory-access/records")
        assert listing.status_code == 200
        assert [r["subject_id"] for r in listing.json()["records"]] == ["a@x.com"]

    def test_zero_duration_rejected(self, client):
        response = client.post("/directory-access/paid", json={
            "subject_id": "buyer@x.com",
            "duration_days": 0
        })

        assert response.status_code == 422

    def test_health_endpoint(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "directory_access"
        assert data["status"] == "ok"
        assert data["dependencies"]["store"] == "ok"

    @patch("service_directory_access.app.main.DirectoryAccessService._check_dependencies")
    def test_health_degraded(self, mock_check_deps, client):
        mock_check_deps.return_value = {"store": "error"}

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "access_transitions_total" in response.text

    def test_service_initialization(self, config):
        service = DirectoryAccessService(config=config)

        assert service.service_name == "directory_access"
        assert service.port == 8020
        assert isinstance(service.entitlements.store, InMemoryAccessStore)
        assert service.entitlements.cache is None

    def test_postgres_backend_selected(self):
        config = get_config("directory_access", 8020, store_backend="postgres")
        service = DirectoryAccessService(config=config, use_cache=False)

        assert isinstance(service.entitlements.store, PostgresAccessStore)

    def test_unknown_backend_rejected(self):
        config = get_config("directory_access", 8020, store_backend="firestore")

        with pytest.raises(ValidationError):
            DirectoryAccessService(config=config)

    def test_request_access(self, pending):
        assert pending["subject_id"] == "a@x.com"
        assert pending["status"] == "pending"
        assert pending["display_status"] == "pending_approval"
        assert pending["currently_entitled"] is False

    def test_duplicate_request_rejected(self, client, pending):
        response = client.post("/directory-access/requests", json={"subject_id": "a@x.com"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_invalid_request_body(self, client):
        response = client.post("/directory-access/requests", json={"subject_id": "a"})
        assert response.status_code == 422

    def test_approve(self, client, pending):
        response = client.post("/directory-access/a@x.com/approve", json={"admin_id": "admin1"})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "active"
        assert data["approved"] is True
        assert data["approved_by"] == "admin1"
        assert data["display_status"] == "manually_approved"

    def test_invalid_transition_conflict(self, client, pending):
        client.post("/directory-access/a@x.com/deny", json={"admin_id": "admin2"})

        response = client.post("/directory-access/a@x.com/approve", json={"admin_id": "admin2"})

        assert response.status_code == 409
        data = response.json()
        assert data["code"] == "INVALID_TRANSITION"
        assert data["details"]["status"] == "denied"

    def test_missing_record(self, client):
        response = client.post("/directory-access/ghost@x.com/revoke", json={"admin_id": "admin1"})

        assert response.status_code == 404
        assert response.json()["code"] == "RECORD_NOT_FOUND"

    def test_store_unavailable(self, client, store):
        with patch.object(store, "list_all", AsyncMock(side_effect=OSError("connection refused"))):
            response = client.get("/directory-access/records")

        assert response.status_code == 503
        assert response.json()["code"] == "STORE_UNAVAILABLE"

    def test_remove(self, client, pending):
        response = client.delete("/directory-access/a@x.com")
        assert response.status_code == 200
        assert response.json()["success"] is True

        response = client.delete("/directory-access/a@x.com")
        assert response.status_code == 404

    def test_grant_paid_access(self, client):
        response = client.post("/directory-access/paid", json={
            "subject_id": "buyer@x.com",
            "duration_days": 7
        })

        assert response.status_code == 201
        data = response.json()
        assert data["access_type"] == "paid"
        assert data["display_status"] == "active_paid"
        assert data["currently_entitled"] is True

    def test_list_records_by_category(self, client, pending):
        client.post("/directory-access/paid", json={"subject_id": "buyer@x.com"})

        response = client.get("/directory-access/records", params={"category": "paid"})

        assert response.status_code == 200
        data = response.json()
        assert data["category"] == "paid"
        assert data["total"] == 1
        assert data["records"][0]["subject_id"] == "buyer@x.com"

    def test_list_records_unknown_category(self, client):
        response = client.get("/directory-access/records", params={"category": "archived"})
        assert response.status_code == 422

    def test_stats(self, client, pending):
        client.post("/directory-access/paid", json={"subject_id": "buyer@x.com"})
        client.post("/directory-access/paid", json={
            "subject_id": "lapsed@x.com",
            "purchased_at": (utcnow() - timedelta(days=40)).isoformat()
        })

        response = client.get("/directory-access/stats")

        assert response.status_code == 200
        assert response.json() == {
            "total": 3,
            "pending_count": 1,
            "active_paid_count": 1,
            "estimated_monthly_revenue": 29.99,
        }

    def test_check_access(self, client, pending):
        assert client.get("/directory-access/a@x.com/access").json()["status"] == "pending"
        assert client.get("/directory-access/nobody@x.com/access").json()["status"] == "no_access"

    def test_stream_snapshots(self, client, pending):
        with client.websocket_connect("/directory-access/stream") as websocket:
            initial = websocket.receive_json()
            assert initial["type"] == "snapshot"
            assert [r["subject_id"] for r in initial["records"]] == ["a@x.com"]
            assert initial["stats"]["pending_count"] == 1

            client.post("/directory-access/a@x.com/approve", json={"admin_id": "admin1"})

            update = websocket.receive_json()
            assert update["records"][0]["status"] == "active"
            assert update["stats"]["pending_count"] == 0

    def test_stream_unsubscribes_on_disconnect(self, client, service):
        with client.websocket_connect("/directory-access/stream") as websocket:
            websocket.receive_json()
            assert len(service.entitlements.subscriptions.subscriptions) == 1

        client.post("/directory-access/requests", json={"subject_id": "late@x.com"})

        assert service.entitlements.subscriptions.subscriptions == {}


class TestOfferLatest:
    """Test cases for the single-slot stream outbox."""

    @pytest.mark.asyncio
    async def test_unsent_snapshot_replaced(self):
        outbox = asyncio.Queue(maxsize=1)

        offer_latest(outbox, {"seq": 1})
        offer_latest(outbox, {"seq": 2})
        offer_latest(outbox, {"seq": 3})

        assert outbox.qsize() == 1
        assert await outbox.get() == {"seq": 3}

    @pytest.mark.asyncio
    async def test_empty_outbox_accepts(self):
        outbox = asyncio.Queue(maxsize=1)

        offer_latest(outbox, {"seq": 1})

        assert outbox.get_nowait() == {"seq": 1}
