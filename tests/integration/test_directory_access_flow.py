"""
Integration tests for the Directory Access request lifecycle.
"""

import pytest
from fastapi.testclient import TestClient

from service_directory_access.app.main import DirectoryAccessService
from service_directory_access.app.persistence.memory import InMemoryAccessStore
from shared.config import get_config


class TestDirectoryAccessFlow:
    """End-to-end flows through the HTTP and WebSocket surface."""

    @pytest.fixture
    def client(self):
        service = DirectoryAccessService(
            config=get_config("directory_access", 8020, store_backend="memory"),
            store=InMemoryAccessStore(),
            use_cache=False
        )
        with TestClient(service.app) as client:
            yield client

    def _admin(self, client, action, subject_id, admin_id="admin1"):
        return client.post(f"/directory-access/{subject_id}/{action}", json={"admin_id": admin_id})

    def test_manual_request_lifecycle(self, client):
        """Request, approve, revoke, request again, deny, delete."""
        assert client.post("/directory-access/requests", json={"subject_id": "m@x.com"}).status_code == 201
        assert client.get("/directory-access/m@x.com/access").json()["status"] == "pending"

        approved = self._admin(client, "approve", "m@x.com")
        assert approved.status_code == 200
        assert client.get("/directory-access/m@x.com/access").json()["status"] == "granted"

        # A second approval from a stale admin view is rejected
        assert self._admin(client, "approve", "m@x.com", "admin2").status_code == 409

        assert self._admin(client, "revoke", "m@x.com").json()["status"] == "revoked"
        assert client.get("/directory-access/m@x.com/access").json()["status"] == "denied"

        # Revoked subjects may ask again
        assert client.post("/directory-access/requests", json={"subject_id": "m@x.com"}).status_code == 201
        denied = self._admin(client, "deny", "m@x.com", "admin2")
        assert denied.json()["denied_by"] == "admin2"
        assert denied.json()["display_status"] == "denied"

        assert client.delete("/directory-access/m@x.com").status_code == 200
        assert client.get("/directory-access/m@x.com/access").json()["status"] == "no_access"

    def test_paid_access_and_dashboard(self, client):
        client.post("/directory-access/requests", json={"subject_id": "m@x.com"})
        client.post("/directory-access/paid", json={"subject_id": "p1@x.com"})
        client.post("/directory-access/paid", json={"subject_id": "p2@x.com"})

        stats = client.get("/directory-access/stats").json()
        assert stats["total"] == 3
        assert stats["pending_count"] == 1
        assert stats["active_paid_count"] == 2
        assert stats["estimated_monthly_revenue"] == 59.98

        self._admin(client, "revoke", "p2@x.com")

        stats = client.get("/directory-access/stats").json()
        assert stats["active_paid_count"] == 1
        assert client.get("/directory-access/p2@x.com/access").json()["status"] == "denied"

        approved = client.get("/directory-access/records", params={"category": "approved"}).json()
        assert [r["subject_id"] for r in approved["records"]] == ["p1@x.com"]

    def test_live_dashboard(self, client):
        with client.websocket_connect("/directory-access/stream") as websocket:
            assert websocket.receive_json()["records"] == []

            client.post("/directory-access/requests", json={"subject_id": "m@x.com"})
            snapshot = websocket.receive_json()
            assert snapshot["stats"]["pending_count"] == 1

            self._admin(client, "deny", "m@x.com")
            snapshot = websocket.receive_json()
            assert snapshot["records"][0]["display_status"] == "denied"
            assert snapshot["stats"]["pending_count"] == 0

            client.delete("/directory-access/m@x.com")
            assert websocket.receive_json()["stats"]["total"] == 0
