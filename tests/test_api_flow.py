from __future__ import annotations

import inspect
import sqlite3
from dataclasses import replace
from datetime import timedelta

from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from admission.main import create_app
from admission.utils.config import get_settings
from admission.utils.timeutils import utc_now


ADMIN_TOKEN = "secret-admin-token"


def _build_test_settings(tmp_path, filename: str, admin_token: str | None = ADMIN_TOKEN):
    get_settings.cache_clear()
    return replace(
        get_settings(),
        database_path=tmp_path / filename,
        admin_token=admin_token,
        seed_sample_data=True,
        overdue_sweep_enabled=False,
        ledger_check_enabled=False,
    )


def _login(client: TestClient, admin_id: str = "warden-1") -> dict[str, str]:
    response = client.post("/login", json={"admin_token": ADMIN_TOKEN, "admin_id": admin_id})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def _booking_payload(accommodation_id: int = 1, guests: int = 1) -> dict:
    check_in = utc_now().date() + timedelta(days=7)
    return {
        "booking_type": "accommodation",
        "accommodation_id": accommodation_id,
        "check_in": check_in.isoformat(),
        "check_out": (check_in + timedelta(days=30)).isoformat(),
        "number_of_guests": guests,
    }


def test_booking_end_to_end_flow(tmp_path) -> None:
    app = create_app(_build_test_settings(tmp_path, "api_flow.db"))
    with TestClient(app) as client:
        admin = _login(client)
        client.put(
            "/accommodations/1",
            json={"title": "Ikeja Brothers Lodge", "max_bookings": 1, "guest_capacity": 2},
            headers=admin,
        ).raise_for_status()

        first = client.post("/bookings", json=_booking_payload(), headers={"X-Requester-Id": "user-1"})
        assert first.status_code == 201, first.text
        assert first.json()["status"] == "pending"
        second = client.post("/bookings", json=_booking_payload(), headers={"X-Requester-Id": "user-2"})
        assert second.status_code == 201, second.text
        first_id = first.json()["request_id"]
        second_id = second.json()["request_id"]

        pending = client.get("/bookings/pending", params={"accommodation_id": 1}, headers=admin)
        assert pending.status_code == 200
        assert [item["request_id"] for item in pending.json()["bookings"]] == [first_id, second_id]

        approved = client.post(
            f"/bookings/{first_id}/decision",
            json={"decision": "approve", "admin_notes": "  welcome  "},
            headers=admin,
        )
        assert approved.status_code == 200, approved.text
        assert approved.json()["decided_by"] == "warden-1"
        assert approved.json()["admin_notes"] == "welcome"
        assert approved.json()["payment_due_at"] is not None

        refused = client.post(
            f"/bookings/{second_id}/decision",
            json={"decision": "approve"},
            headers=admin,
        )
        assert refused.status_code == 409
        assert refused.json()["detail"]["code"] == "capacity_exceeded"
        assert refused.json()["detail"]["max_bookings"] == 1

        repeated = client.post(
            f"/bookings/{first_id}/decision",
            json={"decision": "approve"},
            headers=admin,
        )
        assert repeated.status_code == 409
        assert repeated.json()["detail"]["code"] == "already_decided"

        stats = client.get("/accommodations/1/stats")
        assert stats.status_code == 200
        assert stats.json()["approved_count"] == 1
        assert stats.json()["status_bucket"] == "full"
        assert stats.json()["can_accept_bookings"] is False

        confirmed = client.post(f"/payments/{first_id}/verified", headers=admin)
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "confirmed"

        cancelled = client.post(f"/bookings/{second_id}/cancel", headers={"X-Requester-Id": "user-2"})
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

        mine = client.get("/bookings/mine", headers={"X-Requester-Id": "user-1"})
        assert mine.status_code == 200
        assert mine.json()["total"] == 1
        assert mine.json()["bookings"][0]["status"] == "confirmed"

        overview = client.get("/accommodations/overview", params={"limit": 2}, headers=admin)
        assert overview.status_code == 200
        body = overview.json()
        assert body["pagination"]["total_accommodations"] == 5
        assert len(body["accommodations"]) == 2
        assert body["accommodations"][0]["accommodation_id"] == 1

        reconcile = client.post("/maintenance/reconcile", headers=admin)
        assert reconcile.status_code == 200
        assert reconcile.json() == {"checked": 5, "healed": []}

        sweep = client.post("/maintenance/overdue_sweep", headers=admin)
        assert sweep.status_code == 200
        assert sweep.json()["scanned"] == 0


def test_error_mapping_and_access_rules(tmp_path) -> None:
    app = create_app(_build_test_settings(tmp_path, "api_errors.db"))
    with TestClient(app) as client:
        admin = _login(client)

        bad_dates = _booking_payload()
        bad_dates["check_out"] = bad_dates["check_in"]
        response = client.post("/bookings", json=bad_dates, headers={"X-Requester-Id": "user-1"})
        assert response.status_code == 400
        assert response.json()["detail"] == {
            "code": "validation_error",
            "message": "check_out must be after check_in",
            "field": "check_out",
        }

        missing = client.post("/bookings", json=_booking_payload(accommodation_id=999), headers={"X-Requester-Id": "u"})
        assert missing.status_code == 404

        anonymous = client.post("/bookings", json=_booking_payload())
        assert anonymous.status_code == 401

        created = client.post("/bookings", json=_booking_payload(), headers={"X-Requester-Id": "user-1"})
        request_id = created.json()["request_id"]

        assert client.get(f"/bookings/{request_id}", headers={"X-Requester-Id": "user-1"}).status_code == 200
        assert client.get(f"/bookings/{request_id}", headers={"X-Requester-Id": "user-2"}).status_code == 404
        assert client.get(f"/bookings/{request_id}").status_code == 401
        assert client.get(f"/bookings/{request_id}", headers=admin).status_code == 200

        no_bearer = client.post(f"/bookings/{request_id}/decision", json={"decision": "approve"})
        assert no_bearer.status_code == 401
        wrong_bearer = client.post(
            f"/bookings/{request_id}/decision",
            json={"decision": "approve"},
            headers={"Authorization": "Bearer not-a-session"},
        )
        assert wrong_bearer.status_code == 401

        bad_decision = client.post(
            f"/bookings/{request_id}/decision",
            json={"decision": "maybe"},
            headers=admin,
        )
        assert bad_decision.status_code == 422

        not_overdue = client.post(f"/bookings/{request_id}/release", headers=admin)
        assert not_overdue.status_code == 409
        assert not_overdue.json()["detail"]["current_status"] == "pending"

        bad_login = client.post("/login", json={"admin_token": "wrong"})
        assert bad_login.status_code == 401


def test_program_enrollment_over_http(tmp_path) -> None:
    app = create_app(_build_test_settings(tmp_path, "api_program.db"))
    with TestClient(app) as client:
        response = client.post(
            "/bookings",
            json={"booking_type": "program", "program_id": 1},
            headers={"X-Requester-Id": "user-9"},
        )
        assert response.status_code == 201, response.text
        assert response.json()["booking_type"] == "program"
        assert response.json()["accommodation_id"] is None

        duplicate = client.post(
            "/bookings",
            json={"booking_type": "program", "program_id": 1},
            headers={"X-Requester-Id": "user-9"},
        )
        assert duplicate.status_code == 400
        assert duplicate.json()["detail"]["field"] == "program_id"


def test_auth_disabled_uses_default_admin(tmp_path) -> None:
    app = create_app(_build_test_settings(tmp_path, "api_open.db", admin_token=None))
    with TestClient(app) as client:
        created = client.post("/bookings", json=_booking_payload(), headers={"X-Requester-Id": "user-1"})
        request_id = created.json()["request_id"]

        decided = client.post(f"/bookings/{request_id}/decision", json={"decision": "reject"})

        assert decided.status_code == 200
        assert decided.json()["decided_by"] == "admin"
        assert client.post("/login", json={"admin_token": "anything"}).status_code == 503


def test_admin_listings_for_all_and_overdue_bookings(tmp_path) -> None:
    settings = _build_test_settings(tmp_path, "api_listings.db")
    app = create_app(settings)
    with TestClient(app) as client:
        admin = _login(client)
        user = {"X-Requester-Id": "user-1"}
        first = client.post("/bookings", json=_booking_payload(accommodation_id=1), headers=user).json()
        second = client.post("/bookings", json=_booking_payload(accommodation_id=2), headers=user).json()
        for request_id in (first["request_id"], second["request_id"]):
            client.post(
                f"/bookings/{request_id}/decision",
                json={"decision": "approve"},
                headers=admin,
            ).raise_for_status()

        assert client.get("/bookings/overdue", headers=admin).json()["bookings"] == []

        due = (utc_now() - timedelta(days=8, hours=1)).isoformat(timespec="microseconds")
        with sqlite3.connect(settings.database_path) as conn:
            conn.execute(
                "UPDATE BookingRequests SET payment_due_at = ? WHERE id = ?;",
                (due, first["request_id"]),
            )

        overdue = client.get("/bookings/overdue", headers=admin)
        assert overdue.status_code == 200, overdue.text
        body = overdue.json()
        assert [item["booking"]["request_id"] for item in body["bookings"]] == [first["request_id"]]
        assert body["bookings"][0]["days_past_due"] == 9
        assert body["bookings"][0]["escalation_level"] == "gentle"
        assert body["summary"]["total_overdue"] == 1
        assert body["summary"]["escalation_breakdown"]["gentle"] == 1
        assert body["summary"]["average_days_overdue"] == 9

        everything = client.get("/bookings", params={"limit": 1}, headers=admin)
        assert everything.status_code == 200, everything.text
        listing = everything.json()
        assert listing["total"] == 2
        assert listing["pages"] == 2
        assert listing["bookings"][0]["request_id"] == second["request_id"]
        assert listing["status_counts"]["approved"] == 2
        assert listing["status_counts"]["pending"] == 0

        filtered = client.get("/bookings", params={"status": "pending"}, headers=admin)
        assert filtered.json()["total"] == 0

        assert client.get("/bookings").status_code == 401
        assert client.get("/bookings/overdue").status_code == 401


def test_background_workers_follow_the_app_lifespan(tmp_path) -> None:
    settings = replace(
        _build_test_settings(tmp_path, "api_workers.db"),
        overdue_sweep_enabled=True,
        ledger_check_enabled=True,
    )
    app = create_app(settings)
    with TestClient(app):
        assert app.state.overdue_sweeper.running
        assert app.state.consistency_service.running
    assert not app.state.overdue_sweeper.running
    assert not app.state.consistency_service.running


def test_route_handlers_run_in_the_threadpool(tmp_path) -> None:
    app = create_app(_build_test_settings(tmp_path, "api_routes.db"))

    handlers = [route.endpoint for route in app.routes if isinstance(route, APIRoute)]

    assert handlers
    assert not [handler.__name__ for handler in handlers if inspect.iscoroutinefunction(handler)]


def test_sessions_per_admin_are_capped(tmp_path) -> None:
    settings = replace(_build_test_settings(tmp_path, "api_sessions.db"), max_sessions_per_admin=2)
    app = create_app(settings)
    with TestClient(app) as client:
        oldest = _login(client)
        middle = _login(client)
        newest = _login(client)
        other_admin = _login(client, admin_id="warden-2")

        assert client.get("/bookings/pending", headers=oldest).status_code == 401
        assert client.get("/bookings/pending", headers=middle).status_code == 200
        assert client.get("/bookings/pending", headers=newest).status_code == 200
        assert client.get("/bookings/pending", headers=other_admin).status_code == 200
