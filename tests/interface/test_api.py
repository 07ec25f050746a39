"""HTTP interface tests (FastAPI TestClient)."""
import pytest
from fastapi.testclient import TestClient

from interface.api import OutcomeRequest, create_app


@pytest.fixture
def client(temp_db, orchestrator, auditor):
    app = create_app(temp_db, orchestrator=orchestrator, auditor=auditor)
    return TestClient(app)


def outcome_payload(appointment_id, new_result, **overrides):
    payload = {
        "appointment_id": appointment_id,
        "member_name": "Jordan Lee",
        "attempt_date": "2024-01-28",
        "new_result": new_result,
        "editor": "Sam",
        "source_label": "outcome_form",
    }
    payload.update(overrides)
    return payload


class TestOutcomeRoute:
    """POST /api/outcomes"""

    def test_apply_sale(self, client, temp_db, make_appointment):
        appointment_id = make_appointment()

        response = client.post("/api/outcomes",
                               json=outcome_payload(appointment_id, "Tier-A-Sale"))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "applied"
        assert body["did_increment_loyalty"] is True
        assert temp_db.get_appointment_info(appointment_id)["status"] == "purchased"

    def test_missing_appointment_is_conflict(self, client):
        response = client.post("/api/outcomes",
                               json=outcome_payload(9999, "No-show"))

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["status"] == "failed"
        assert "not found" in body["error"]

    def test_missing_required_field(self, client, make_appointment):
        payload = outcome_payload(make_appointment(), "No-show")
        del payload["editor"]

        assert client.post("/api/outcomes", json=payload).status_code == 422

    def test_commission_field_ignored(self, client, temp_db,
                                      make_appointment):
        appointment_id = make_appointment()
        response = client.post("/api/outcomes", json=outcome_payload(
            appointment_id, "Tier-C-Sale", commission_amount=999
        ))

        run_id = response.json()["run_id"]
        assert str(temp_db.get_run_info(run_id)["commission_amount"]) == "3.00"

    def test_second_visit(self, client, temp_db, make_appointment):
        appointment_id = make_appointment()
        response = client.post("/api/outcomes", json=outcome_payload(
            appointment_id, "Booked 2nd intro",
            second_visit={"start_at": "2024-02-03T09:30:00",
                          "coach_name": "Avery"},
        ))

        body = response.json()
        assert body["new_appointment_start_at"] == "2024-02-03T09:30:00"
        assert body["new_appointment_coach"] == "Avery"
        second = temp_db.get_appointment_info(body["new_appointment_id"])
        assert second["originating_appointment_id"] == appointment_id

    def test_request_to_params(self):
        request = OutcomeRequest(**outcome_payload(3, "No-show",
                                                   objection="price"))
        params = request.to_params()

        assert params.appointment_id == 3
        assert params.objection == "price"
        assert params.second_visit is None


class TestAuditRoutes:
    """GET /api/audit, POST /api/audit/fixes/{fix_action}, history"""

    def test_run_audit(self, client, make_appointment):
        make_appointment(is_vip=True)

        body = client.get("/api/audit").json()

        assert body["total_checks"] == 13
        assert body["fail_count"] == 1
        assert "saved_id" not in body

    def test_run_audit_and_save(self, client):
        body = client.get("/api/audit", params={"save": "true"}).json()

        history = client.get("/api/audit/history").json()["data"]
        assert history[0]["id"] == body["saved_id"]
        assert history[0]["run_by"] == "api"

    def test_history_limit(self, client):
        for _ in range(3):
            client.get("/api/audit", params={"save": "true"})

        history = client.get("/api/audit/history",
                             params={"limit": 2}).json()["data"]
        assert len(history) == 2

    def test_run_fix(self, client, temp_db, make_appointment):
        appointment_id = make_appointment(is_vip=True)

        response = client.post("/api/audit/fixes/fix_vip_booking_types")

        assert response.status_code == 200
        assert response.json() == {"fixed": 1, "error": None}
        assert temp_db.get_appointment_info(appointment_id)["booking_type"] == "vip"

    def test_unknown_fix(self, client):
        response = client.post("/api/audit/fixes/fix_everything")
        assert response.status_code == 400


class TestMiscRoutes:

    def test_due_follow_ups(self, client, make_appointment, apply):
        appointment_id = make_appointment()
        apply(appointment_id, "No-show")

        data = client.get("/api/follow-ups/due").json()["data"]

        assert [d["touch_number"] for d in data] == [1, 2, 3]
        assert data[0]["appointment_id"] == appointment_id
        assert data[0]["scheduled_date"] == "2024-01-28"

    def test_vip_follow_ups_not_listed(self, client, make_appointment,
                                       apply):
        apply(make_appointment(is_vip=True, booking_type="vip"), "No-show")
        assert client.get("/api/follow-ups/due").json()["data"] == []

    def test_mark_follow_up_sent(self, client, temp_db, make_appointment,
                                 apply):
        appointment_id = make_appointment()
        apply(appointment_id, "No-show")
        entry_id = temp_db.get_follow_ups(appointment_id)[0]["id"]

        response = client.post(f"/api/follow-ups/{entry_id}/sent",
                               json={"editor": "Sam"})

        assert response.status_code == 200
        assert response.json()["status"] == "sent"
        assert response.json()["sent_by"] == "Sam"
        data = client.get("/api/follow-ups/due").json()["data"]
        assert [d["touch_number"] for d in data] == [2, 3]

    def test_snooze_follow_up(self, client, temp_db, make_appointment,
                              apply):
        appointment_id = make_appointment()
        apply(appointment_id, "No-show")
        entry_id = temp_db.get_follow_ups(appointment_id)[0]["id"]

        response = client.post(f"/api/follow-ups/{entry_id}/snooze",
                               json={"until": "2999-01-01"})

        assert response.status_code == 200
        assert response.json()["snoozed_until"] == "2999-01-01"
        assert temp_db.get_follow_ups(appointment_id)[0]["status"] == "snoozed"
        data = client.get("/api/follow-ups/due").json()["data"]
        assert entry_id not in [d["id"] for d in data]

    @pytest.mark.parametrize("action, body", [
        ("sent", {"editor": "Sam"}),
        ("snooze", {"until": "2024-02-20"}),
    ])
    def test_unknown_follow_up(self, client, action, body):
        response = client.post(f"/api/follow-ups/9999/{action}", json=body)
        assert response.status_code == 404

    def test_health(self, client):
        assert client.get("/health").json() == {
            "status": "ok", "database": "sqlite"
        }
