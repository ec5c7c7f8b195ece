"""AI verification results and the match short-circuit."""

import pytest

from app.core.exceptions import PermissionDenied, ValidationError
from app.models import db
from app.models.request import RequestChecklistItem
from app.services import verification_service
from app.services.checklist_lifecycle import transition_item
from tests.conftest import actor_for


@pytest.fixture()
def received_item(make_request, client_user):
    data = make_request()
    item_id = db.session.scalars(
        db.select(RequestChecklistItem.id).where(RequestChecklistItem.request_id == data["id"])
        .order_by(RequestChecklistItem.sort_order)
    ).first()
    transition_item(item_id, "submit", actor_for(client_user))
    return item_id


def test_match_moves_item_to_review_when_enabled(app, received_item, team_member, monkeypatch):
    monkeypatch.setitem(app.config, "AI_AUTO_APPROVE_ON_MATCH", True)
    result = verification_service.record_result(
        received_item, actor_for(team_member), match_status="match",
        field_name="pan_number", expected_value="ABCDE1234F", actual_value="ABCDE1234F", confidence_score=0.97,
    )

    assert result["match_status"] == "match"
    assert db.session.get(RequestChecklistItem, received_item).status == "under_review"


def test_match_is_recorded_only_by_default(received_item, team_member):
    verification_service.record_result(received_item, actor_for(team_member), match_status="match")
    assert db.session.get(RequestChecklistItem, received_item).status == "received"


def test_mismatch_never_moves_item(app, received_item, team_member, monkeypatch):
    monkeypatch.setitem(app.config, "AI_AUTO_APPROVE_ON_MATCH", True)
    verification_service.record_result(received_item, actor_for(team_member), match_status="mismatch",
                                       flagged_issues=["name differs"])
    assert db.session.get(RequestChecklistItem, received_item).status == "received"
    assert verification_service.latest_match_status(received_item) == "mismatch"


def test_results_history(received_item, team_member):
    verification_service.record_result(received_item, actor_for(team_member), match_status="partial")
    verification_service.record_result(received_item, actor_for(team_member), match_status="missing")

    rows = verification_service.results_for_item(received_item, actor_for(team_member))
    assert [r["match_status"] for r in rows] == ["partial", "missing"]
    assert verification_service.latest_match_status(received_item) == "missing"


@pytest.mark.parametrize("kwargs", [
    {"match_status": "maybe"},
    {"match_status": "match", "confidence_score": 1.5},
])
def test_invalid_result(received_item, team_member, kwargs):
    with pytest.raises(ValidationError):
        verification_service.record_result(received_item, actor_for(team_member), **kwargs)


def test_client_cannot_record(received_item, client_user):
    with pytest.raises(PermissionDenied):
        verification_service.record_result(received_item, actor_for(client_user), match_status="match")
