"""Unit tests for the HTTP surface."""

from __future__ import annotations

import pytest
import yaml
from fastapi.testclient import TestClient

from ride_auction.config import get_server_config
from ride_auction.main import app


@pytest.fixture
def client(monkeypatch, tmp_path):
    """Client running the full lifespan against a fresh in-memory store."""
    config_path = tmp_path / "server.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "auction": {"window_seconds": 120, "bid_ttl_seconds": 300},
                "storage": {"backend": "in_memory"},
                "notifications": {"backend": "log"},
            }
        )
    )
    monkeypatch.setenv("RIDE_AUCTION_CONFIG_PATH", str(config_path))
    get_server_config.cache_clear()
    with TestClient(app) as test_client:
        yield test_client
    get_server_config.cache_clear()


def create_booking(client: TestClient, **overrides) -> dict:
    payload = {
        "rider_id": "rider_1",
        "pickup": {"label": "MG Road Metro", "lat": 12.9756, "lng": 77.6066},
        "drop": {"label": "Indiranagar"},
        "vehicle_type": "CAR_ECONOMY",
        "estimated_price": "150.00",
    }
    payload.update(overrides)
    response = client.post("/bookings", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def place_bid(client: TestClient, booking_id: str, driver_id: str, amount, eta: int = 5):
    return client.post(
        f"/bookings/{booking_id}/bids",
        json={"driver_id": driver_id, "amount": amount, "eta_minutes": eta},
    )


class TestMetaEndpoints:
    def test_ping(self, client):
        response = client.get("/ping")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_root_reports_auction_settings(self, client):
        body = client.get("/").json()
        assert body["auction"]["window_seconds"] == 120
        assert body["storage_backend"] == "in_memory"

    def test_admin_health_counts_timers(self, client):
        create_booking(client)
        body = client.get("/admin/health").json()
        assert body["status"] == "healthy"
        assert body["pending_expiry_timers"] == 1

    def test_admin_config(self, client):
        body = client.get("/admin/config").json()
        assert body["auction"]["bid_ttl_seconds"] == 300
        assert body["request_schemas"] == ["bid_submission", "booking_request", "cancel_request"]


class TestBookingEndpoints:
    def test_create_booking(self, client):
        booking = create_booking(client)

        assert booking["booking_id"].startswith("bkg_")
        assert booking["bidding_state"] == "open"
        assert booking["bidding_end_time"].endswith("Z")
        assert booking["estimated_price"] == "150.00"
        assert booking["winning_bid_id"] is None

    def test_create_booking_schema_violation(self, client):
        response = client.post("/bookings", json={"pickup": {"label": "x"}, "vehicle_type": "BIKE"})
        assert response.status_code == 422
        assert "rider_id" in response.json()["detail"]

    def test_create_booking_window_out_of_bounds(self, client):
        response = client.post(
            "/bookings",
            json={
                "rider_id": "rider_1",
                "pickup": {"label": "x"},
                "vehicle_type": "BIKE",
                "bidding_duration_seconds": 5,
            },
        )
        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "invalid_booking"

    def test_unknown_booking(self, client):
        response = client.get("/bookings/bkg_missing")
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "booking_not_found"

    def test_cancel_without_body(self, client):
        booking = create_booking(client)

        response = client.post(f"/bookings/{booking['booking_id']}/cancel")

        assert response.status_code == 200
        assert response.json()["bidding_state"] == "cancelled"

    def test_cancel_twice_conflicts(self, client):
        booking = create_booking(client)
        client.post(f"/bookings/{booking['booking_id']}/cancel", json={"reason": "found a cab"})

        response = client.post(f"/bookings/{booking['booking_id']}/cancel")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "auction_already_resolved"
        assert detail["bidding_state"] == "cancelled"


class TestBidEndpoints:
    def test_bid_lifecycle(self, client):
        """Test a full bid round through the API."""
        booking_id = create_booking(client)["booking_id"]

        first = place_bid(client, booking_id, "D1", "100.00")
        second = place_bid(client, booking_id, "D2", 90)
        assert first.status_code == 201
        assert second.status_code == 201

        bids = client.get(f"/bookings/{booking_id}/bids").json()["bids"]
        assert [bid["driver_id"] for bid in bids] == ["D2", "D1"]
        assert bids[0]["amount"] == "90"

        status = client.get(f"/bookings/{booking_id}/status").json()
        assert status["bid_count"] == 2
        assert status["lowest_bid_amount"] == "90"
        assert 0 < status["seconds_remaining"] <= 120

        accepted = client.put(f"/bookings/{booking_id}/accept-bid/{first.json()['bid_id']}")
        assert accepted.status_code == 200
        body = accepted.json()
        assert body["bidding_state"] == "resolved"
        assert body["winning_bid_id"] == first.json()["bid_id"]
        statuses = {bid["driver_id"]: bid["status"] for bid in body["bids"]}
        assert statuses == {"D1": "accepted", "D2": "rejected"}

    def test_duplicate_bid_conflicts(self, client):
        booking_id = create_booking(client)["booking_id"]
        place_bid(client, booking_id, "D1", 100)

        response = place_bid(client, booking_id, "D1", 95)

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "duplicate_bid"
        assert detail["bidding_state"] == "open"

    def test_replace_bid(self, client):
        booking_id = create_booking(client)["booking_id"]
        first_bid = place_bid(client, booking_id, "D1", 100).json()

        response = client.post(
            f"/bookings/{booking_id}/bids",
            json={"driver_id": "D1", "amount": 95, "eta_minutes": 4, "replace": True},
        )

        assert response.status_code == 201
        assert response.json()["bid_id"] == first_bid["bid_id"]
        assert response.json()["revision"] == 2

    def test_bid_schema_violation(self, client):
        booking_id = create_booking(client)["booking_id"]
        response = place_bid(client, booking_id, "D1", 0)
        assert response.status_code == 422

    def test_numeric_amount_limited_to_cents(self, client):
        """Test that numeric and string amounts share the two-decimal limit."""
        booking_id = create_booking(client)["booking_id"]

        numeric = place_bid(client, booking_id, "D1", 100.123)
        textual = place_bid(client, booking_id, "D1", "100.123")

        assert numeric.status_code == 422
        assert numeric.json()["detail"]["error"] == "invalid_bid"
        assert textual.status_code == 422
        assert place_bid(client, booking_id, "D1", 100.12).status_code == 201

    def test_second_accept_conflicts(self, client):
        booking_id = create_booking(client)["booking_id"]
        d1 = place_bid(client, booking_id, "D1", 100).json()
        d2 = place_bid(client, booking_id, "D2", 90).json()
        client.put(f"/bookings/{booking_id}/accept-bid/{d1['bid_id']}")

        response = client.put(f"/bookings/{booking_id}/accept-bid/{d2['bid_id']}")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "auction_already_resolved"

    def test_bid_after_resolution_conflicts(self, client):
        booking_id = create_booking(client)["booking_id"]
        d1 = place_bid(client, booking_id, "D1", 100).json()
        client.put(f"/bookings/{booking_id}/accept-bid/{d1['bid_id']}")

        response = place_bid(client, booking_id, "D3", 80)

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "auction_closed"

    def test_accept_unknown_bid(self, client):
        booking_id = create_booking(client)["booking_id"]
        response = client.put(f"/bookings/{booking_id}/accept-bid/bid_missing")
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "bid_not_found"


class TestDriverEndpoints:
    def test_available_bookings_nearest_first(self, client):
        far = create_booking(client, pickup={"label": "Airport", "lat": 13.1986, "lng": 77.7066})
        near = create_booking(client)
        taken = create_booking(client)
        place_bid(client, taken["booking_id"], "D7", 100)

        response = client.get(
            "/drivers/D7/available-bookings", params={"lat": 12.9756, "lng": 77.6066}
        )

        assert response.status_code == 200
        offers = response.json()["available_bookings"]
        assert [offer["booking_id"] for offer in offers] == [
            near["booking_id"],
            far["booking_id"],
        ]
        assert offers[0]["distance_km"] == 0.0

    def test_invalid_coordinates(self, client):
        response = client.get("/drivers/D7/available-bookings", params={"lat": 123})
        assert response.status_code == 422
