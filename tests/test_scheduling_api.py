"""
HTTP tests for the scheduling routes and error mapping.
The lifespan is not run; services are built over in-memory stores.
"""
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from main import app
from services.auto_assignment import AssignmentService, AutoAssignmentEngine
from services.booking_aggregator import BookingAggregator
from services.cache_sync import CacheSyncOrchestrator
from services.guide_resolver import GuideConflictResolver
from services.single_flight import SingleFlight
from fakes import FUTURE, NOW, bokun_raw, cache_row, guide, local_booking


SLOT = ("NIGHT_TOUR", FUTURE, "19:00")


@pytest.fixture
def client(local_store, cache_store, remote, catalog, clock):
    aggregator = BookingAggregator(local_store, cache_store, remote, catalog, clock=clock)
    resolver = GuideConflictResolver(local_store, cache_store)
    app.state.services = SimpleNamespace(
        aggregator=aggregator,
        resolver=resolver,
        engine=AutoAssignmentEngine(aggregator, resolver, local_store, SingleFlight()),
        assignments=AssignmentService(local_store, cache_store, resolver),
        cache_sync=CacheSyncOrchestrator(cache_store, remote, catalog, today=lambda: NOW.date()),
    )
    yield TestClient(app)
    del app.state.services


class TestBookings:

    def test_list_bookings(self, client, local_store, cache_store):
        local_store.add_booking(local_booking(1, booking_time="19:00"))
        cache_store.add(cache_row("BK1", booking_time="10:00"))

        response = client.get("/bookings")

        assert response.status_code == 200
        assert [b["dedup_key"] for b in response.json()] == ["BK1", "local:1"]
        assert response.headers["X-Trace-ID"]

    def test_filters_from_query(self, client, local_store):
        local_store.add_booking(local_booking(1, status="PENDING"))
        local_store.add_booking(local_booking(2))

        response = client.get("/bookings", params={"status": "PENDING", "source": "local"})

        assert [b["id"] for b in response.json()] == [1]

    def test_inverted_range_is_422(self, client):
        response = client.get("/bookings", params={"start_date": "2026-05-10", "end_date": "2026-05-01"})

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_local_store_down_is_503(self, client, local_store):
        local_store.fail = True

        response = client.get("/bookings")

        assert response.status_code == 503
        assert response.json()["error_code"] == "STORE_UNAVAILABLE"


class TestGuides:

    def test_assign_then_conflict(self, client, local_store):
        local_store.add_guide(guide("x", "Xena"), SLOT)
        local_store.add_booking(local_booking(1))

        first = client.put("/bookings/local:1/guide", json={"guide_id": "x", "notes": "gate 3"})
        second = client.put("/bookings/local:1/guide", json={"guide_id": "x"})

        assert first.status_code == 200
        assert first.json()["assigned_guide_id"] == "x"
        assert second.status_code == 409
        assert second.json()["error_code"] == "CONFLICT"

    def test_remove_guide(self, client, local_store):
        local_store.add_guide(guide("x", "Xena"), SLOT)
        local_store.add_booking(local_booking(1))
        client.put("/bookings/local:1/guide", json={"guide_id": "x"})

        response = client.delete("/bookings/local:1/guide")

        assert response.json() == {"booking_ref": "local:1", "removed_guide_id": "x"}

    def test_update_notes(self, client, local_store):
        local_store.add_booking(local_booking(1))

        response = client.patch("/bookings/local:1/guide/notes", json={"notes": "vip"})

        assert response.status_code == 204
        assert local_store.bookings[1].guide_notes == "vip"

    def test_available_guides(self, client, local_store, cache_store):
        local_store.add_guide(guide("x", "Xena"), SLOT)
        local_store.add_guide(guide("y", "Yoko"), SLOT)
        cache_store.add(cache_row("BK100", guide_id="x"))

        response = client.get("/guides/available", params={
            "tour_type": "NIGHT_TOUR", "date": FUTURE.isoformat(), "time_slot": "19:00",
        })

        assert response.status_code == 200
        assert [g["id"] for g in response.json()] == ["y"]

    def test_available_guides_cache_down_is_503(self, client, local_store, cache_store):
        local_store.add_guide(guide("x", "Xena"), SLOT)
        cache_store.fail = True

        response = client.get("/guides/available", params={
            "tour_type": "NIGHT_TOUR", "date": FUTURE.isoformat(), "time_slot": "19:00",
        })

        assert response.status_code == 503
        assert response.json()["error_code"] == "SOURCE_UNAVAILABLE"

    def test_guide_schedule(self, client, local_store):
        local_store.add_booking(local_booking(1, guide_id="x"))

        response = client.get("/guides/x/schedule", params={"start": "2026-05-01", "end": "2026-05-31"})

        assert [b["dedup_key"] for b in response.json()] == ["local:1"]


class TestJobs:

    def test_auto_assign(self, client, local_store):
        local_store.add_guide(guide("x", "Xena"), SLOT)
        local_store.add_booking(local_booking(1))
        local_store.add_booking(local_booking(2))

        response = client.post("/assignments/auto")

        body = response.json()
        assert response.status_code == 200
        assert (body["assigned"], body["no_candidates"], body["failed"]) == (1, 1, 0)

    def test_cache_sync_and_health(self, client, remote):
        remote.responses["932404"] = [bokun_raw(1)]

        sync = client.post("/cache/sync").json()
        health = client.get("/cache/health").json()

        assert sync["total_bookings_cached"] == 1
        assert health["is_stale"] is False
        assert health["total_cached_bookings"] == 1

    def test_clear_cache(self, client, cache_store):
        cache_store.add(cache_row("BK1"))

        assert client.delete("/cache").json() == {"deleted": 1}

    def test_liveness(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}
