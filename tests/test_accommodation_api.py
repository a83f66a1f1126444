"""HTTP contract tests for the accommodation and integrity endpoints."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app import create_app
from housing.domain.errors import AllocationStorageError
from housing.domain.models import Gender
from housing.services.cache_service import CacheService


ADMIN = {"X-Actor": "admin@example.org"}


@pytest.fixture
def client(settings):
    app = create_app(settings, cache=CacheService())
    with TestClient(app) as test_client:
        yield test_client


def _allocate(client, registrant_id: int, room_id: int):
    return client.post(
        "/accommodations/allocate",
        json={"registrant_id": registrant_id, "room_id": room_id},
        headers=ADMIN,
    )


def test_accommodations_overview_lists_seeded_rooms(client) -> None:
    response = client.get("/accommodations")

    assert response.status_code == 200
    body = response.json()
    assert len(body["rooms"]) == 10
    assert body["stats"]["total_registrants"] == 0
    assert body["stats"]["allocation_rate"] == 0
    assert set(body["unallocated_by_gender"]) == {"Male", "Female"}


def test_overview_with_allocation_of_deleted_registrant(client, repository, make_registrant, make_room) -> None:
    room_id = make_room("Overview Room", Gender.MALE, capacity=2)
    kept = make_registrant("Kept", Gender.MALE, age=20)
    removed = make_registrant("Removed", Gender.MALE, age=21)
    assert _allocate(client, kept, room_id).status_code == 201
    assert _allocate(client, removed, room_id).status_code == 201
    with repository.transaction() as conn:
        conn.execute("DELETE FROM Registrants WHERE id = ?;", (removed,))

    response = client.get("/accommodations")

    assert response.status_code == 200
    stats = response.json()["stats"]
    assert stats["total_registrants"] == 1
    assert stats["allocated_registrants"] == 1
    assert stats["allocation_rate"] == 100
    assert stats["occupied_spaces"] == 2


def test_mutation_without_actor_is_unauthorized(client, make_registrant, make_room) -> None:
    room_id = make_room("Header Room")
    registrant_id = make_registrant("No Header")

    response = client.post(
        "/accommodations/allocate",
        json={"registrant_id": registrant_id, "room_id": room_id},
    )
    blank = client.post(
        "/accommodations/allocate",
        json={"registrant_id": registrant_id, "room_id": room_id},
        headers={"X-Actor": "   "},
    )

    assert response.status_code == 401
    assert blank.status_code == 401


def test_allocate_then_repeat_is_conflict(client, make_registrant, make_room) -> None:
    room_id = make_room("API Room")
    registrant_id = make_registrant("API Person")

    created = _allocate(client, registrant_id, room_id)
    repeated = _allocate(client, registrant_id, room_id)

    assert created.status_code == 201
    assert created.json()["allocated_by"] == "admin@example.org"
    assert created.json()["age_gap_tolerance"] == 3
    assert repeated.status_code == 409
    assert repeated.json()["detail"]["kind"] == "already-allocated"


def test_allocation_rule_violation_returns_typed_detail(client, make_registrant, make_room) -> None:
    room_id = make_room("Women Only", Gender.FEMALE)
    registrant_id = make_registrant("Wrong Room", Gender.MALE)

    response = _allocate(client, registrant_id, room_id)

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["kind"] == "gender-mismatch"
    assert detail["message"]


def test_unknown_registrant_is_not_found(client, make_room) -> None:
    room_id = make_room("Empty Room")

    response = _allocate(client, 999_999, room_id)

    assert response.status_code == 404
    assert response.json()["detail"]["kind"] == "not-found"


def test_invalid_allocate_payload_is_rejected(client) -> None:
    response = client.post(
        "/accommodations/allocate",
        json={"registrant_id": 0, "room_id": "abc"},
        headers=ADMIN,
    )
    assert response.status_code == 422


def test_allocation_detail_history_and_deallocation(client, make_registrant, make_room) -> None:
    room_id = make_room("Detail Room")
    registrant_id = make_registrant("Detail Person")
    assert _allocate(client, registrant_id, room_id).status_code == 201

    detail = client.get(f"/accommodations/allocation/{registrant_id}")
    assert detail.status_code == 200
    assert detail.json()["room"]["room_id"] == room_id
    assert detail.json()["registrant"]["full_name"] == "Detail Person"

    removed = client.delete(
        f"/accommodations/allocation/{registrant_id}",
        params={"reason": "moved out"},
        headers=ADMIN,
    )
    assert removed.status_code == 200
    assert removed.json()["is_active"] is False
    assert removed.json()["deallocation_reason"] == "moved out"

    again = client.delete(f"/accommodations/allocation/{registrant_id}", headers=ADMIN)
    assert again.status_code == 404
    assert again.json()["detail"]["kind"] == "not-allocated"

    assert client.get(f"/accommodations/allocation/{registrant_id}").status_code == 404
    history = client.get(f"/accommodations/allocation/{registrant_id}/history").json()
    assert len(history) == 1
    assert history[0]["deallocated_by"] == "admin@example.org"


def test_age_gap_config_round_trip(client) -> None:
    assert client.get("/accommodations/age-gap-config").json() == {
        "age_gap_years": 3,
        "minimum": 1,
        "maximum": 20,
    }

    rejected = client.put("/accommodations/age-gap-config", json={"age_gap_years": 25}, headers=ADMIN)
    assert rejected.status_code == 400
    assert rejected.json()["detail"]["kind"] == "policy-out-of-range"

    updated = client.put("/accommodations/age-gap-config", json={"age_gap_years": 5}, headers=ADMIN)
    assert updated.status_code == 200
    assert client.get("/accommodations/age-gap-config").json()["age_gap_years"] == 5


def test_age_gap_config_requires_integer(client) -> None:
    response = client.put("/accommodations/age-gap-config", json={"age_gap_years": "5"}, headers=ADMIN)
    assert response.status_code == 422


def test_search_and_unallocated_filters(client, make_registrant, make_room) -> None:
    room_id = make_room("Search Room")
    housed = make_registrant("Jordan Housed", phone_number="555-0100")
    make_registrant("Jordan Waiting")
    make_registrant("Sam Waiting", Gender.FEMALE)
    assert _allocate(client, housed, room_id).status_code == 201

    found = client.get("/accommodations/search", params={"q": "jordan"}).json()
    assert {item["registrant"]["full_name"]: item["room_name"] for item in found} == {
        "Jordan Housed": "Search Room",
        "Jordan Waiting": None,
    }

    waiting = client.get("/accommodations/unallocated", params={"gender": "Male"}).json()
    assert [item["full_name"] for item in waiting] == ["Jordan Waiting"]


def test_export_returns_csv_attachment(client, make_registrant) -> None:
    make_registrant("Csv Person", email_address="csv@example.org")

    response = client.get("/accommodations/export")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment" in response.headers["content-disposition"]
    lines = response.text.strip().splitlines()
    assert lines[0] == "Full Name,Gender,Date of Birth,Phone Number,Email Address,Room Name"
    assert "csv@example.org" in lines[1]


def test_room_catalog_endpoints(client) -> None:
    created = client.post(
        "/accommodations/rooms",
        json={"name": "  Annex  ", "gender": "Female", "capacity": 3},
        headers=ADMIN,
    )
    assert created.status_code == 201
    room = created.json()
    assert room["name"] == "Annex"
    assert room["is_active"] is True

    duplicate = client.post(
        "/accommodations/rooms",
        json={"name": "Annex", "gender": "Female", "capacity": 2},
        headers=ADMIN,
    )
    assert duplicate.status_code == 409

    patched = client.patch(
        f"/accommodations/rooms/{room['room_id']}",
        json={"capacity": 1, "description": "quiet wing"},
        headers=ADMIN,
    )
    assert patched.status_code == 200
    assert patched.json()["capacity"] == 1
    assert patched.json()["description"] == "quiet wing"

    assert client.patch("/accommodations/rooms/999999", json={"capacity": 2}, headers=ADMIN).status_code == 404
    assert client.patch(f"/accommodations/rooms/{room['room_id']}", json={}, headers=ADMIN).status_code == 422
    assert client.post(
        "/accommodations/rooms",
        json={"name": "Zero", "gender": "Male", "capacity": 0},
        headers=ADMIN,
    ).status_code == 422


def test_room_occupants_include_ages(client, make_registrant, make_room) -> None:
    room_id = make_room("Occupied")
    registrant_id = make_registrant("Occupant", age=22)
    assert _allocate(client, registrant_id, room_id).status_code == 201

    occupants = client.get(f"/accommodations/rooms/{room_id}/occupants").json()

    assert [item["registrant"]["registrant_id"] for item in occupants] == [registrant_id]
    assert occupants[0]["age"] in (22, 23)
    assert client.get("/accommodations/rooms/999999/occupants").status_code == 404


def test_storage_failure_is_server_error(client, make_registrant, make_room, monkeypatch) -> None:
    room_id = make_room("Broken Storage")
    registrant_id = make_registrant("Unlucky")

    def fail(**kwargs):
        raise AllocationStorageError("disk I/O error")

    monkeypatch.setattr(client.app.state.allocation_service.ledger, "create_allocation", fail)

    response = _allocate(client, registrant_id, room_id)

    assert response.status_code == 500
    assert response.json()["detail"] == "Allocation could not be stored"


# --- Integrity reconciler ---

def test_integrity_status_starts_idle(client) -> None:
    body = client.get("/integrity/status").json()

    assert body["running"] is False
    assert body["state"] == "idle"
    assert body["config"]["auto_resolve_types"] == ["orphaned-reference"]
    assert body["last_report"] is None


def test_integrity_run_reports_capacity_conflict(client, make_registrant, make_room) -> None:
    room_id = make_room("Shrinking", capacity=2)
    for name in ("Resident A", "Resident B"):
        assert _allocate(client, make_registrant(name), room_id).status_code == 201
    assert client.patch(f"/accommodations/rooms/{room_id}", json={"capacity": 1}, headers=ADMIN).status_code == 200

    response = client.post("/integrity", json={"action": "run"}, headers=ADMIN)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Integrity check completed"
    conflicts = body["report"]["conflicts"]
    assert [item["conflict_type"] for item in conflicts] == ["capacity-exceeded"]
    assert conflicts[0]["severity"] == "high"
    assert body["report"]["reported"] == [conflicts[0]["conflict_id"]]
    assert body["status"]["cycles_completed"] == 1

    reports = client.get("/integrity/reports").json()
    assert len(reports) == 1


def test_integrity_config_update_and_rejection(client) -> None:
    updated = client.post(
        "/integrity",
        json={"action": "config", "config": {"interval_seconds": 600, "retroactive_age_gap": True}},
        headers=ADMIN,
    )
    assert updated.status_code == 200
    assert updated.json()["message"] == "Config updated"
    assert updated.json()["status"]["config"]["interval_seconds"] == 600
    assert updated.json()["status"]["config"]["retroactive_age_gap"] is True

    unsafe = client.post(
        "/integrity",
        json={"action": "config", "config": {"auto_resolve_types": ["capacity-exceeded"]}},
        headers=ADMIN,
    )
    assert unsafe.status_code == 400

    missing = client.post("/integrity", json={"action": "config"}, headers=ADMIN)
    assert missing.status_code == 422


def test_integrity_start_and_stop(client) -> None:
    started = client.post("/integrity", json={"action": "start"}, headers=ADMIN)
    assert started.status_code == 200
    assert started.json()["message"] == "Service started"
    assert started.json()["status"]["running"] is True
    assert started.json()["status"]["next_run_at"] is not None

    stopped = client.post("/integrity", json={"action": "stop"}, headers=ADMIN)
    assert stopped.json()["message"] == "Service stopped"
    assert stopped.json()["status"]["running"] is False


def test_integrity_commands_require_actor(client) -> None:
    assert client.post("/integrity", json={"action": "run"}).status_code == 401
    assert client.post("/integrity", json={"action": "explode"}, headers=ADMIN).status_code == 422
