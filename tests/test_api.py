"""
HTTP API tests: actor resolution, error envelope and the request flow end to end.
"""

import pytest

from app.models import db
from app.models.approval import Approval
from tests.conftest import headers_for


@pytest.fixture()
def api_request(client, manager, client_user):
    """Create and send a two-item request through the API."""
    res = client.post("/api/v1/requests", headers=headers_for(manager), json={
        "client_id": client_user.id,
        "title": "KYC documents",
        "due_date": "2024-03-31",
        "channels": ["email", "sms"],
        "items": [
            {"particular": "Passport", "document_type": "id_proof"},
            {"particular": "Utility bill", "document_type": "address_proof"},
        ],
    })
    assert res.status_code == 201
    data = res.get_json()
    assert client.post(f"/api/v1/requests/{data['id']}/send", headers=headers_for(manager)).status_code == 200
    return data


def _transition(client, user, item_id, action, **body):
    return client.post(f"/api/v1/items/{item_id}/transition", headers=headers_for(user),
                       json={"action": action, **body})


# ═════════════════════════════════════════════════════════════════════════════
# Plumbing
# ═════════════════════════════════════════════════════════════════════════════


class TestPlumbing:
    def test_health_needs_no_actor(self, client):
        assert client.get("/api/v1/health").get_json() == {"status": "ok"}
        live = client.get("/api/v1/health/live")
        assert live.status_code == 200
        assert live.get_json()["checks"]["database"]["status"] == "ok"

    def test_missing_actor_is_401(self, client):
        res = client.get("/api/v1/requests")
        assert res.status_code == 401
        assert res.get_json()["error"]["code"] == "ERR_UNAUTHENTICATED"

    def test_inactive_actor_is_401(self, client, team_member):
        team_member.is_active = False
        db.session.commit()
        assert client.get("/api/v1/requests", headers=headers_for(team_member)).status_code == 401

    def test_non_json_body_is_415(self, client, manager):
        res = client.post("/api/v1/requests", headers=headers_for(manager), data="title=x",
                          content_type="application/x-www-form-urlencoded")
        assert res.status_code == 415

    def test_error_envelope(self, client, manager):
        res = client.get("/api/v1/requests/9999", headers=headers_for(manager))
        assert res.status_code == 404
        error = res.get_json()["error"]
        assert set(error) == {"code", "message", "retryable", "details"}
        assert error["code"] == "ERR_NOT_FOUND"
        assert error["retryable"] is False

    def test_validation_error(self, client, manager):
        res = client.post("/api/v1/requests", headers=headers_for(manager), json={"title": "no client"})
        assert res.status_code == 422
        assert res.get_json()["error"]["code"] == "ERR_VALIDATION_INVALID"


# ═════════════════════════════════════════════════════════════════════════════
# Request flow
# ═════════════════════════════════════════════════════════════════════════════


class TestRequestFlow:
    def test_one_approved_one_rejected_stays_in_progress(self, client, api_request, client_user, reviewer):
        detail = client.get(f"/api/v1/requests/{api_request['id']}", headers=headers_for(reviewer)).get_json()
        passport, bill = (i["id"] for i in detail["items"])

        assert _transition(client, client_user, passport, "submit").status_code == 200
        assert _transition(client, client_user, bill, "submit").status_code == 200

        pending = client.get("/api/v1/approvals/pending", headers=headers_for(reviewer)).get_json()
        assert pending["total"] == 2
        by_item = {a["related_id"]: a["id"] for a in pending["items"]}

        approved = client.post(f"/api/v1/approvals/{by_item[passport]}/approve", headers=headers_for(reviewer))
        assert approved.get_json()["status"] == "approved"

        rejected = _transition(client, reviewer, bill, "reject", comments="Older than three months")
        assert rejected.status_code == 200
        assert rejected.get_json()["status"] == "not_received"
        assert rejected.get_json()["request_cycle"] == 1

        request = client.get(f"/api/v1/requests/{api_request['id']}", headers=headers_for(client_user)).get_json()
        assert request["status"] == "in_progress"
        actions = client.get(f"/api/v1/items/{bill}/actions", headers=headers_for(client_user)).get_json()
        assert actions["actions"] == ["submit"]

        reminders = client.get(f"/api/v1/reminders?item_id={bill}&status=pending",
                               headers=headers_for(reviewer)).get_json()
        assert {r["cycle"] for r in reminders["items"]} == {1}
        assert {r["channel"] for r in reminders["items"]} >= {"email", "sms"}

    def test_invalid_transition_is_409(self, client, api_request, reviewer):
        detail = client.get(f"/api/v1/requests/{api_request['id']}", headers=headers_for(reviewer)).get_json()
        res = _transition(client, reviewer, detail["items"][0]["id"], "approve")
        assert res.status_code == 409
        assert res.get_json()["error"]["code"] == "ERR_INVALID_TRANSITION"

    def test_missing_remarks_is_422(self, client, api_request, client_user, reviewer):
        item_id = client.get(f"/api/v1/requests/{api_request['id']}",
                             headers=headers_for(reviewer)).get_json()["items"][0]["id"]
        _transition(client, client_user, item_id, "submit")
        approval = Approval.query.filter_by(related_id=item_id).one()

        res = client.post(f"/api/v1/approvals/{approval.id}/reject", headers=headers_for(reviewer), json={})
        assert res.status_code == 422
        assert res.get_json()["error"]["code"] == "ERR_MISSING_REMARKS"

    def test_second_decision_is_409(self, client, api_request, client_user, reviewer, manager):
        item_id = client.get(f"/api/v1/requests/{api_request['id']}",
                             headers=headers_for(reviewer)).get_json()["items"][0]["id"]
        _transition(client, client_user, item_id, "submit")
        approval = Approval.query.filter_by(related_id=item_id).one()

        assert client.post(f"/api/v1/approvals/{approval.id}/approve", headers=headers_for(reviewer)).status_code == 200
        res = client.post(f"/api/v1/approvals/{approval.id}/approve", headers=headers_for(manager))
        assert res.status_code == 409
        assert res.get_json()["error"]["code"] == "ERR_ALREADY_REVIEWED"

    def test_cancelled_request_is_closed(self, client, api_request, manager, client_user):
        res = client.post(f"/api/v1/requests/{api_request['id']}/cancel", headers=headers_for(manager),
                          json={"reason": "duplicate"})
        assert res.get_json()["status"] == "cancelled"

        item_id = api_request["items"][0]["id"]
        res = _transition(client, client_user, item_id, "submit")
        assert res.status_code == 409
        assert res.get_json()["error"]["code"] == "ERR_REQUEST_CLOSED"

    def test_client_is_forbidden_from_staff_routes(self, client, api_request, client_user):
        res = client.post(f"/api/v1/requests/{api_request['id']}/cancel", headers=headers_for(client_user))
        assert res.status_code == 403
        assert res.get_json()["error"]["code"] == "ERR_FORBIDDEN"

    def test_listing_and_summary(self, client, api_request, manager, client_user):
        listed = client.get("/api/v1/requests", headers=headers_for(client_user)).get_json()
        assert [r["id"] for r in listed["items"]] == [api_request["id"]]

        summary = client.get("/api/v1/requests/summary", headers=headers_for(manager)).get_json()
        assert summary["by_status"]["sent"] == 1

        overdue = client.get("/api/v1/requests/overdue?as_of=2024-04-02", headers=headers_for(manager)).get_json()
        assert overdue["total"] == 1
        assert overdue["as_of"] == "2024-04-02"


# ═════════════════════════════════════════════════════════════════════════════
# Clients, tasks, schedules
# ═════════════════════════════════════════════════════════════════════════════


class TestOtherRoutes:
    def test_client_create_is_idempotent(self, client, manager):
        body = {"email": "new.client@example.test", "full_name": "New Client"}
        first = client.post("/api/v1/clients", headers=headers_for(manager), json=body)
        second = client.post("/api/v1/clients", headers=headers_for(manager), json=body)
        assert (first.status_code, second.status_code) == (201, 200)
        assert first.get_json()["id"] == second.get_json()["id"]
        assert second.get_json()["created"] is False

    def test_schedule_preview(self, client, team_member):
        res = client.post("/api/v1/schedules/preview", headers=headers_for(team_member), json={
            "frequency": "monthly", "day_rule": "1st", "start_date": "2024-01-01",
            "after": "2024-01-15", "count": 3,
        })
        assert res.status_code == 200
        assert res.get_json()["occurrences"] == [
            {"occurrence_date": "2024-02-01", "due_date": "2024-02-08"},
            {"occurrence_date": "2024-03-01", "due_date": "2024-03-08"},
            {"occurrence_date": "2024-04-01", "due_date": "2024-04-08"},
        ]

    def test_schedule_preview_rejects_bad_rule(self, client, team_member):
        res = client.post("/api/v1/schedules/preview", headers=headers_for(team_member), json={
            "frequency": "fortnightly", "start_date": "2024-01-01",
        })
        assert res.status_code == 422
        assert res.get_json()["error"]["code"] == "ERR_INVALID_SCHEDULE"

    def test_task_lifecycle(self, client, manager, client_user):
        res = client.post("/api/v1/tasks", headers=headers_for(manager), json={
            "name": "Annual return", "task_type": "one_time", "sla_days": 10, "client_id": client_user.id,
        })
        assert res.status_code == 201
        task = res.get_json()
        assert task["status"] == "not_started"

        started = client.post(f"/api/v1/tasks/{task['id']}/transition", headers=headers_for(manager),
                              json={"action": "start"})
        assert started.get_json()["status"] == "in_progress"
        bad = client.post(f"/api/v1/tasks/{task['id']}/transition", headers=headers_for(manager),
                          json={"action": "resume"})
        assert bad.status_code == 409

    def test_scheduler_admin_routes(self, client, admin, manager):
        jobs = client.get("/api/v1/scheduler/jobs", headers=headers_for(admin))
        assert jobs.status_code == 200
        assert client.post("/api/v1/scheduler/jobs/reminder_dispatch/run", headers=headers_for(manager)).status_code == 403
