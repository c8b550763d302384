"""
Tests for API endpoints.
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from fastapi import status

from conftest import FakePage


def cache_rows(cache, age, count=3):
    from scrapers.utils.extractors import ExtractedRow

    rows = [ExtractedRow(trip_id=f"UP-NW_UNW{900 + i}_V1_A") for i in range(count)]
    cache.upsert('PALATINE', 'OTC', rows, now=datetime.now(timezone.utc) - age)


class TestRootEndpoint:
    """Test the root endpoint."""

    def test_root_returns_json(self, client):
        """Test that root endpoint returns expected JSON."""
        response = client.get("/")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["message"] == "Crowding API"
        assert "version" in data


class TestCrowdingEndpoint:
    """Test the crowding endpoint."""

    def test_serves_fresh_cache(self, client, cache, coordinator):
        """Test cached rows are returned without scraping."""
        cache_rows(cache, timedelta(minutes=1))

        response = client.get("/api/crowding?origin=PALATINE&destination=OTC&line=UP-NW")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert len(data["crowding"]) == 3
        assert data["stale"] is False
        assert data["error"] is None
        assert data["request_id"]
        assert coordinator.navigation_count == 0

    def test_scrapes_on_miss(self, client, coordinator):
        """Test a cache miss scrapes the page."""
        response = client.get("/api/crowding?origin=palatine&destination=otc&line=up-nw")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert len(data["crowding"]) == 20
        assert coordinator.navigation_count == 1
        delayed = {entry["trip_id"]: entry for entry in data["crowding"]}["UP-NW_UNW604_V1_A"]
        assert delayed["scheduled_departure"] == "7:02 AM"
        assert delayed["predicted_departure"] == "7:09 AM"
        assert delayed["crowding"] == "low"

    def test_defaults(self, client, coordinator):
        """Test the route defaults to PALATINE -> OTC on UP-NW."""
        response = client.get("/api/crowding")

        assert response.status_code == status.HTTP_200_OK
        assert len(response.json()["crowding"]) == 20

    def test_failure_falls_back_to_stale(self, client, cache, driver):
        """Test a failed scrape serves rows up to 24 hours old."""
        cache_rows(cache, timedelta(hours=3))
        driver.queue_pages(FakePage(status=403))

        response = client.get("/api/crowding?origin=PALATINE&destination=OTC&force=true")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["stale"] is True
        assert len(data["crowding"]) == 3
        assert "WAF_BLOCK" in data["error"]

    def test_failure_without_cache_is_empty(self, client, driver):
        """Test a failed scrape with nothing cached still answers 200."""
        driver.queue_pages(FakePage(status=403))

        response = client.get("/api/crowding?origin=PALATINE&destination=OTC")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["crowding"] == []
        assert data["stale"] is False
        assert "WAF_BLOCK" in data["error"]

    def test_open_circuit_falls_back(self, client, cache, coordinator):
        cache_rows(cache, timedelta(hours=1))
        coordinator.breaker.trip()

        response = client.get("/api/crowding?force=true")

        data = response.json()
        assert data["stale"] is True
        assert "CIRCUIT_OPEN" in data["error"]
        assert coordinator.navigation_count == 0

    def test_invalid_line(self, client):
        """Test an unsupported line is rejected."""
        response = client.get("/api/crowding?origin=PALATINE&destination=OTC&line=RI")

        assert response.status_code == status.HTTP_400_BAD_REQUEST


class TestCrowdingTimeout:
    """
    Test the API deadline on a slow scrape.

    TestClient runs each request in its own short-lived event loop, which would
    cancel the background scrape, so these call the endpoint in one loop.
    """

    @pytest.fixture(autouse=True)
    def short_deadline(self, monkeypatch):
        from api.config import settings

        monkeypatch.setattr(settings, "api_request_timeout", 0.05)

    def _request(self, coordinator, **params):
        from starlette.requests import Request
        from api.main import app, get_crowding

        app.state.coordinator = coordinator
        query = dict(origin="PALATINE", destination="OTC", line="UP-NW", force=False)
        query.update(params)

        async def scenario():
            response = await get_crowding(Request({"type": "http", "app": app}), **query)
            while coordinator.in_flight:
                await asyncio.sleep(0.01)
            return response

        try:
            return asyncio.run(scenario())
        finally:
            app.state.coordinator = None

    def test_timeout_falls_back_to_stale(self, coordinator, cache, driver):
        """Test a slow scrape answers from stale rows and still persists afterwards."""
        cache_rows(cache, timedelta(hours=3))
        driver.queue_pages(FakePage(html=driver.default_html, goto_delay=0.3))

        response = self._request(coordinator, force=True)

        assert response.stale is True
        assert len(response.crowding) == 3
        assert response.error.startswith("Request timeout")
        assert len(cache.get("PALATINE", "OTC", max_age_minutes=10)) == 20
        assert coordinator.stats.success_count == 1

    def test_timeout_without_cache_is_empty(self, coordinator, cache, driver):
        driver.queue_pages(FakePage(html=driver.default_html, goto_delay=0.3))

        response = self._request(coordinator)

        assert response.crowding == []
        assert response.stale is False
        assert response.error.startswith("Request timeout")
        assert len(cache.get("PALATINE", "OTC", max_age_minutes=10)) == 20


class TestScrapeStatsEndpoint:
    """Test the diagnostics endpoint."""

    def test_stats_after_scrape(self, client):
        client.get("/api/crowding")

        response = client.get("/api/scrape-stats")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["stats"]["total_attempts"] == 1
        assert data["stats"]["success_rate"] == "100%"
        assert data["stats"]["successful_routes"] == ["PALATINE->OTC"]
        assert data["circuit_breaker"]["state"] == "closed"
        assert "server_time" in data
        assert "transit_time" in data


class TestMarkStaleEndpoint:
    """Test forcing re-scrapes while keeping fallback rows."""

    def test_mark_stale(self, client, cache, coordinator):
        cache_rows(cache, timedelta(minutes=1))

        response = client.post("/api/crowding/mark-stale")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"success": True, "rows": 3}
        assert cache.get('PALATINE', 'OTC', max_age_minutes=60) == []
        assert len(cache.get_stale('PALATINE', 'OTC')) == 3
