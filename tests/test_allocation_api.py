from __future__ import annotations

import inspect
from dataclasses import replace

import pytest
from fastapi import FastAPI
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from app import create_app
from fleetslot.controllers.allocation_controller import router as allocation_router
from fleetslot.utils.config import get_settings


CAR_1 = "DGL-HEADDRESS-CAR-001"
CAR_2 = "DGL-HEADDRESS-CAR-002"
CAR_3 = "DGL-HEADDRESS-CAR-003"
WINDOW = {"start_time": "2030-01-01T00:00:00Z", "end_time": "2030-01-31T00:00:00Z"}


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        cas_retry_backoff_seconds=0.0,
        reclamation_enabled=False,
        seed_demo_materials=True,
    )


@pytest.fixture
def client(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api.db"))
    with TestClient(app) as test_client:
        yield test_client


def test_reserve_release_flow(client):
    response = client.post("/reserve", json={"campaign_id": "CAMP", "material_ids": [CAR_1, CAR_2], **WINDOW})
    assert response.status_code == 201
    body = response.json()
    assert [item["material_id"] for item in body["reservations"]] == [CAR_1, CAR_2]
    assert all(item["slot_number"] == 1 for item in body["reservations"])

    availability = client.post("/availability", json={"material_ids": [CAR_1, CAR_3]})
    assert availability.status_code == 200
    views = availability.json()
    assert views[0]["occupied_slots"] == 1
    assert views[0]["available_slots"] == 4
    assert views[1]["occupied_slots"] == 0
    assert views[1]["can_accept"] is True

    released = client.post("/release", json={"campaign_id": "CAMP"})
    assert released.status_code == 200
    assert released.json()["material_ids"] == [CAR_1, CAR_2]

    again = client.post("/release", json={"campaign_id": "CAMP", "material_ids": [CAR_1]})
    assert again.status_code == 200

    summary = client.get("/summary").json()
    assert summary["occupied_slots"] == 0
    assert summary["materials_by_status"]["available"] == 2


def test_error_mapping(client):
    ok = client.post("/reserve", json={"campaign_id": "FIRST", "material_ids": [CAR_1], **WINDOW})
    assert ok.status_code == 201

    conflict = client.post(
        "/reserve",
        json={
            "campaign_id": "SECOND",
            "material_ids": [CAR_1],
            "start_time": "2030-01-15T00:00:00Z",
            "end_time": "2030-02-15T00:00:00Z",
        },
    )
    assert conflict.status_code == 409

    unknown = client.post("/reserve", json={"campaign_id": "X", "material_ids": ["NOPE"], **WINDOW})
    assert unknown.status_code == 404

    inverted = client.post(
        "/reserve",
        json={
            "campaign_id": "X",
            "material_ids": [CAR_2],
            "start_time": "2030-02-01T00:00:00Z",
            "end_time": "2030-01-01T00:00:00Z",
        },
    )
    assert inverted.status_code == 422

    rewindow = client.post(
        "/reserve",
        json={
            "campaign_id": "FIRST",
            "material_ids": [CAR_1],
            "start_time": "2030-03-01T00:00:00Z",
            "end_time": "2030-03-02T00:00:00Z",
        },
    )
    assert rewindow.status_code == 400

    maintenance = client.post(f"/materials/{CAR_2}/status", json={"maintenance": True})
    assert maintenance.status_code == 200
    assert maintenance.json()["status"] == "MAINTENANCE"
    blocked = client.post("/reserve", json={"campaign_id": "Y", "material_ids": [CAR_2], **WINDOW})
    assert blocked.status_code == 409


def test_validate_window_and_selection(client):
    client.post("/reserve", json={"campaign_id": "BUSY", "material_ids": [CAR_2], **WINDOW})

    report = client.post(
        "/validate_window",
        json={"material_ids": [CAR_1, CAR_2, CAR_3], "required_count": 2, **WINDOW},
    ).json()
    assert report["eligible_count"] == 2
    assert report["can_place"] is True

    selected = client.post(
        "/select_materials",
        json={
            "candidates": [
                {"material_id": CAR_1, "material_type": "HEADDRESS", "vehicle_type": "CAR", "category": "DIGITAL"},
                {"material_id": CAR_2, "material_type": "HEADDRESS", "vehicle_type": "CAR", "category": "DIGITAL"},
                {"material_id": CAR_3, "material_type": "HEADDRESS", "vehicle_type": "CAR", "category": "DIGITAL"},
            ],
            **WINDOW,
        },
    ).json()
    assert [item["material_id"] for item in selected["materials"]] == [CAR_3, CAR_1]


def test_reserve_by_filters_shortfall_is_conflict(client):
    response = client.post(
        "/reserve_by_filters",
        json={
            "campaign_id": "FLEX",
            "material_type": "HEADDRESS",
            "vehicle_type": "CAR",
            "category": "DIGITAL",
            "device_count": 4,
            **WINDOW,
        },
    )
    assert response.status_code == 409
    assert "Only 3 devices available, but 4 requested" in response.json()["detail"]

    response = client.post(
        "/reserve_by_filters",
        json={
            "campaign_id": "FLEX",
            "material_type": "HEADDRESS",
            "vehicle_type": "CAR",
            "category": "DIGITAL",
            "device_count": 2,
            **WINDOW,
        },
    )
    assert response.status_code == 201
    assert [item["material_id"] for item in response.json()["reservations"]] == [CAR_2, CAR_3]


def test_slots_and_pending_endpoints(client):
    resized = client.post(f"/materials/{CAR_1}/slots", json={"total_slots": 1})
    assert resized.status_code == 200
    assert resized.json()["total_slots"] == 1

    too_big = client.post(f"/materials/{CAR_1}/slots", json={"total_slots": 11})
    assert too_big.status_code == 400

    client.post("/reserve", json={"campaign_id": "ONLY", "material_ids": [CAR_1], **WINDOW})
    queued = client.post(
        f"/materials/{CAR_1}/pending",
        json={"campaign_id": "WAITING", "requested_start_time": "2030-02-01T00:00:00Z", "priority": 5},
    )
    assert queued.status_code == 201
    listed = client.get(f"/materials/{CAR_1}/pending").json()
    assert [entry["campaign_id"] for entry in listed] == ["WAITING"]

    invalid = client.post(
        f"/materials/{CAR_1}/pending",
        json={"campaign_id": "BAD", "requested_start_time": "2030-02-01T00:00:00Z", "priority": 42},
    )
    assert invalid.status_code == 422


def test_campaign_lifecycle_and_reclaim(client):
    created = client.post(
        "/campaigns",
        json={"campaign_id": "LIFE", "material_ids": [CAR_1], **WINDOW},
    )
    assert created.status_code == 201
    assert created.json()["status"] == "PENDING"

    duplicate = client.post("/campaigns", json={"campaign_id": "LIFE", **WINDOW})
    assert duplicate.status_code == 409

    paid = client.post("/campaigns/LIFE/payment", json={"payment_status": "PAID"})
    assert paid.status_code == 200
    assert paid.json()["payment_status"] == "PAID"

    assert client.get("/campaigns/MISSING").status_code == 404
    assert client.post("/campaigns/MISSING/payment", json={"payment_status": "PAID"}).status_code == 404

    reclaimed = client.post("/reclaim")
    assert reclaimed.status_code == 200
    report = reclaimed.json()
    assert report["unpaid"]["cleaned_count"] == 0
    assert report["expired"]["cleaned_count"] == 0


def test_registry_endpoints(client):
    registered = client.post(
        "/materials",
        json={"material_id": "NEW-1", "material_type": "LCD", "vehicle_type": "BUS", "category": "DIGITAL"},
    )
    assert registered.status_code == 201

    listed = client.get("/materials", params={"vehicle_type": "BUS"}).json()
    assert {item["material_id"] for item in listed} == {"NEW-1", "NDGL-POSTER-BUS-001"}


def test_missing_service_returns_503():
    app = FastAPI()
    app.include_router(allocation_router)
    with TestClient(app) as test_client:
        response = test_client.get("/summary")
    assert response.status_code == 503


def test_naive_and_zoned_timestamps_are_compared_as_utc(client):
    mixed = client.post(
        "/reserve",
        json={
            "campaign_id": "MIXED",
            "material_ids": [CAR_1],
            "start_time": "2030-01-01T00:00:00",
            "end_time": "2030-01-10T00:00:00Z",
        },
    )
    assert mixed.status_code == 201
    assert mixed.json()["reservations"][0]["start_time"].startswith("2030-01-01T00:00:00")

    inverted = client.post(
        "/validate_window",
        json={
            "material_ids": [CAR_2],
            "start_time": "2030-01-10T00:00:00",
            "end_time": "2030-01-01T00:00:00Z",
        },
    )
    assert inverted.status_code == 422


def test_concurrent_campaign_create_keeps_winner_slots(client, monkeypatch):
    created = client.post("/campaigns", json={"campaign_id": "RACE", "material_ids": [CAR_1], **WINDOW})
    assert created.status_code == 201

    # both requests passed the existence check before either inserted the campaign
    monkeypatch.setattr(client.app.state.repository, "get_campaign", lambda campaign_id: None)

    same_material = client.post("/campaigns", json={"campaign_id": "RACE", "material_ids": [CAR_1], **WINDOW})
    assert same_material.status_code == 409
    other_material = client.post("/campaigns", json={"campaign_id": "RACE", "material_ids": [CAR_2], **WINDOW})
    assert other_material.status_code == 409

    monkeypatch.undo()
    holding = client.app.state.allocation_service.store.find_materials_holding("RACE")
    assert holding == [CAR_1]


def test_route_handlers_are_synchronous(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "routes.db"))
    endpoints = [route.endpoint for route in app.routes if isinstance(route, APIRoute)]

    assert endpoints
    assert not [endpoint.__name__ for endpoint in endpoints if inspect.iscoroutinefunction(endpoint)]
