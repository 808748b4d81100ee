"""
בדיקות ל-endpoints של ה-event ledger — /api/admin/webhook-events

מכסה:
- אימות X-Admin-API-Key (401 / 403)
- activity, stats, רשומה בודדת (404), cleanup ידני
"""
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest

from app.core.config import settings

BASE = "/api/admin/webhook-events"
SOURCE = "shop.example.com"


class TestAdminAuth:
    """X-Admin-API-Key"""

    @pytest.mark.integration
    async def test_missing_key_401(self, test_client: httpx.AsyncClient):
        response = await test_client.get(f"{BASE}/stats", params={"source": SOURCE})
        assert response.status_code == 401

    @pytest.mark.integration
    async def test_wrong_key_403(self, test_client: httpx.AsyncClient):
        response = await test_client.get(
            f"{BASE}/stats", params={"source": SOURCE}, headers={"X-Admin-API-Key": "wrong"}
        )
        assert response.status_code == 403

    @pytest.mark.integration
    async def test_key_not_configured_403(self, test_client: httpx.AsyncClient, admin_headers):
        with patch.object(settings, "ADMIN_API_KEY", ""):
            response = await test_client.get(
                f"{BASE}/stats", params={"source": SOURCE}, headers=admin_headers
            )
        assert response.status_code == 403


class TestAdminReports:
    """activity / stats / record / cleanup"""

    @pytest.mark.integration
    async def test_activity(self, test_client, gate, clock, admin_headers):
        await gate.is_duplicate("evt_a", SOURCE, "orders/create")
        clock.advance(minutes=1)
        await gate.is_duplicate("evt_b", SOURCE, "products/update")
        await gate.is_duplicate("evt_c", "other-shop", "orders/create")

        response = await test_client.get(
            f"{BASE}/activity", params={"source": SOURCE}, headers=admin_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert [e["event_key"] for e in data["events"]] == ["evt_b", "evt_a"]
        assert "raw_payload" not in data["events"][0]

    @pytest.mark.integration
    async def test_activity_limit_validated(self, test_client, admin_headers):
        response = await test_client.get(
            f"{BASE}/activity", params={"source": SOURCE, "limit": 0}, headers=admin_headers
        )
        assert response.status_code == 422

    @pytest.mark.integration
    async def test_stats(self, test_client, gate, admin_headers):
        await gate.is_duplicate("evt_a", SOURCE, "orders/create")
        await gate.is_duplicate("evt_a", SOURCE, "orders/create")
        await gate.mark_processed("evt_b", SOURCE, "orders/create", processed=False, error="timeout")

        response = await test_client.get(
            f"{BASE}/stats", params={"source": SOURCE}, headers=admin_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["duplicates"] == 1
        assert data["failed"] == 1
        assert data["by_topic"] == {"orders/create": 2}
        assert data["degraded"] is False

    @pytest.mark.integration
    async def test_single_record_with_payload(self, test_client, gate, admin_headers):
        await gate.mark_processed("evt_p", SOURCE, "orders/create", processed=True, raw_payload=b'{"id": 5}')

        response = await test_client.get(f"{BASE}/evt_p", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["raw_payload"] == '{"id": 5}'
        assert response.json()["processed"] is True

    @pytest.mark.integration
    async def test_single_record_key_with_slashes(self, test_client, gate, admin_headers):
        """מזהי ספק כמו gid של Shopify מכילים '/'"""
        key = "shopify/Webhook/7f3a"
        await gate.mark_processed(key, SOURCE, "orders/create", processed=True)

        response = await test_client.get(f"{BASE}/{key}", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["event_key"] == key

    @pytest.mark.integration
    async def test_single_record_404(self, test_client, admin_headers):
        response = await test_client.get(f"{BASE}/missing-key", headers=admin_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_3003"

    @pytest.mark.integration
    async def test_manual_cleanup(self, test_client, gate, clock, admin_headers):
        # הרשומה נוצרה לפני שנים לפי השעון הידני — פג תוקפה ביחס לזמן האמיתי
        clock.now = clock.now - timedelta(days=3650)
        await gate.is_duplicate("evt_old", SOURCE, "orders/create")

        response = await test_client.post(f"{BASE}/cleanup", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"deleted": 1}
        assert await gate.get_record("evt_old") is None
