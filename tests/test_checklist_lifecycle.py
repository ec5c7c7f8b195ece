"""
Checklist item state machine tests.

Covers:
    1. Client submit / reviewer decisions through the maker-checker gate
    2. Invalid transitions, closed and draft requests
    3. Remarks, dependencies and role checks
    4. Re-request cycle: submitted_at reset, fresh reminder with retry_count 0
    5. Audit sink failures never roll back a transition
    6. Concurrent writers: the loser gets ConcurrentModificationError
"""

import pytest
from sqlalchemy import update

from app.core.exceptions import (
    ConcurrentModificationError,
    InvalidTransitionError,
    MissingRemarksError,
    PermissionDenied,
    RequestClosedError,
)
from app.models import db
from app.models.approval import Approval
from app.models.audit import AuditLog
from app.models.reminder import Reminder
from app.models.request import RequestChecklistItem
from app.services import checklist_lifecycle, request_lifecycle
from app.services.checklist_lifecycle import get_available_actions, transition_item, validate_transition
from tests.conftest import actor_for, make_user


def _item(item_id):
    return db.session.get(RequestChecklistItem, item_id)


@pytest.fixture()
def sent(make_request):
    return make_request()


@pytest.fixture()
def first_item(sent):
    return _first_item_id(sent["id"])


def _first_item_id(request_id):
    return db.session.scalars(
        db.select(RequestChecklistItem.id)
        .where(RequestChecklistItem.request_id == request_id)
        .order_by(RequestChecklistItem.sort_order, RequestChecklistItem.id)
    ).first()


# ═════════════════════════════════════════════════════════════════════════════
# Transition table
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitionTable:
    def test_validate_transition(self):
        item = RequestChecklistItem(status="not_received")
        assert validate_transition(item, "submit") == {"valid": True, "to": "received", "reason": None}
        assert validate_transition(item, "approve")["valid"] is False
        assert validate_transition(item, "bogus")["reason"] == "Unknown action 'bogus'"

    def test_available_actions(self):
        assert get_available_actions(RequestChecklistItem(status="not_received")) == ["submit"]
        assert set(get_available_actions(RequestChecklistItem(status="received"))) == {
            "start_review", "approve", "reject", "re_request",
        }
        assert get_available_actions(RequestChecklistItem(status="approved")) == []
        assert get_available_actions(RequestChecklistItem(status="rejected")) == ["re_request"]


# ═════════════════════════════════════════════════════════════════════════════
# Happy path through the approval gate
# ═════════════════════════════════════════════════════════════════════════════


class TestSubmitAndReview:
    def test_client_submit_opens_pending_approval(self, sent, first_item, client_user):
        result = transition_item(first_item, "submit", actor_for(client_user))

        assert result["status"] == "received"
        assert result["submitted_at"] is not None
        approval = Approval.query.filter_by(approval_type="request_item", related_id=first_item).one()
        assert approval.action is None
        assert approval.submitted_by == client_user.id
        assert request_lifecycle.get_request(sent["id"], actor_for(client_user))["status"] == "in_progress"

    def test_reviewer_approve_is_routed_through_approval(self, sent, first_item, client_user, reviewer):
        transition_item(first_item, "submit", actor_for(client_user))
        result = transition_item(first_item, "approve", actor_for(reviewer))

        assert result["status"] == "approved"
        item = _item(first_item)
        assert item.reviewed_by == reviewer.id
        approval = Approval.query.filter_by(approval_type="request_item", related_id=first_item).one()
        assert approval.action == "approved"
        assert approval.reviewer_id == reviewer.id

    def test_start_review_then_approve(self, sent, first_item, client_user, reviewer):
        transition_item(first_item, "submit", actor_for(client_user))
        assert transition_item(first_item, "start_review", actor_for(reviewer))["status"] == "under_review"
        assert transition_item(first_item, "approve", actor_for(reviewer))["status"] == "approved"

    def test_direct_decision_when_item_approvals_are_not_gated(self, app, sent, first_item, client_user, reviewer,
                                                                monkeypatch):
        monkeypatch.setitem(app.config, "APPROVAL_REQUIRED_FOR", [])
        transition_item(first_item, "submit", actor_for(client_user))
        assert Approval.query.count() == 0
        assert transition_item(first_item, "approve", actor_for(reviewer))["status"] == "approved"

    def test_client_cannot_see_internal_comments(self, sent, first_item, client_user, reviewer):
        transition_item(first_item, "submit", actor_for(client_user))
        transition_item(first_item, "start_review", actor_for(reviewer), internal_comments="looks scanned")
        client_view = request_lifecycle.get_request(sent["id"], actor_for(client_user))
        staff_view = request_lifecycle.get_request(sent["id"], actor_for(reviewer))
        assert "internal_comments" not in client_view["items"][0]
        assert staff_view["items"][0]["internal_comments"] == "looks scanned"


# ═════════════════════════════════════════════════════════════════════════════
# Rejections of invalid operations
# ═════════════════════════════════════════════════════════════════════════════


class TestInvalidOperations:
    def test_approve_before_submit(self, sent, first_item, reviewer):
        with pytest.raises(InvalidTransitionError):
            transition_item(first_item, "approve", actor_for(reviewer))
        assert _item(first_item).status == "not_received"

    def test_unknown_or_internal_action(self, sent, first_item, reviewer):
        with pytest.raises(InvalidTransitionError):
            transition_item(first_item, "reset", actor_for(reviewer))

    def test_submit_on_draft_request(self, make_request, client_user):
        draft = make_request(send=False)
        item_id = _first_item_id(draft["id"])
        with pytest.raises(InvalidTransitionError):
            transition_item(item_id, "submit", actor_for(client_user))

    def test_submit_on_cancelled_request(self, sent, first_item, manager, client_user):
        request_lifecycle.cancel_request(sent["id"], actor_for(manager), reason="client withdrew")
        with pytest.raises(RequestClosedError):
            transition_item(first_item, "submit", actor_for(client_user))

    def test_reject_requires_remarks(self, sent, first_item, client_user, reviewer):
        transition_item(first_item, "submit", actor_for(client_user))
        with pytest.raises(MissingRemarksError):
            transition_item(first_item, "reject", actor_for(reviewer))
        assert _item(first_item).status == "received"
        assert Approval.query.filter_by(related_id=first_item).one().action is None

    def test_client_cannot_review(self, sent, first_item, client_user):
        transition_item(first_item, "submit", actor_for(client_user))
        with pytest.raises(PermissionDenied):
            transition_item(first_item, "approve", actor_for(client_user))

    def test_team_member_cannot_decide_gated_item(self, sent, first_item, client_user, team_member):
        transition_item(first_item, "submit", actor_for(client_user))
        with pytest.raises(PermissionDenied):
            transition_item(first_item, "approve", actor_for(team_member))

    def test_other_client_cannot_submit(self, org, sent, first_item):
        stranger = make_user(org, "client", "stranger@customer.test")
        with pytest.raises(PermissionDenied):
            transition_item(first_item, "submit", actor_for(stranger))

    def test_dependency_must_be_received_first(self, make_request, manager, client_user):
        draft = make_request([{"particular": "Signed agreement", "document_type": "agreement"}], send=False)
        first = _first_item_id(draft["id"])
        dependent = request_lifecycle.add_item(draft["id"], actor_for(manager), {
            "particular": "Stamped copy", "document_type": "agreement", "dependency_item_id": first,
        })
        request_lifecycle.send_request(draft["id"], actor_for(manager))

        with pytest.raises(InvalidTransitionError):
            transition_item(dependent["id"], "submit", actor_for(client_user))
        transition_item(first, "submit", actor_for(client_user))
        assert transition_item(dependent["id"], "submit", actor_for(client_user))["status"] == "received"


# ═════════════════════════════════════════════════════════════════════════════
# Re-request cycle
# ═════════════════════════════════════════════════════════════════════════════


class TestReRequest:
    def test_re_request_resets_item_and_schedules_fresh_reminder(self, sent, first_item, client_user, reviewer):
        original = Reminder.query.filter_by(item_id=first_item, cycle=0, offset_days=None).one()
        # An earlier cycle's delivery history must not leak into the next cycle
        original.retry_count = 2
        db.session.commit()

        transition_item(first_item, "submit", actor_for(client_user))
        result = transition_item(first_item, "re_request", actor_for(reviewer), comments="Page 2 is missing")

        assert result["status"] == "not_received"
        item = _item(first_item)
        assert item.submitted_at is None
        assert item.request_cycle == 1
        assert item.client_comments == "Page 2 is missing"

        fresh = Reminder.query.filter_by(item_id=first_item, cycle=1, offset_days=None).one()
        assert fresh.status == "pending"
        assert fresh.retry_count == 0
        assert "Page 2 is missing" in fresh.message_body
        assert db.session.get(Reminder, original.id).status == "cancelled"

    def test_rejected_item_can_be_re_requested(self, app, sent, first_item, client_user, reviewer, monkeypatch):
        monkeypatch.setitem(app.config, "REJECT_TRIGGERS_RE_REQUEST", False)
        transition_item(first_item, "submit", actor_for(client_user))
        assert transition_item(first_item, "reject", actor_for(reviewer), comments="blurry")["status"] == "rejected"
        assert Reminder.query.filter_by(item_id=first_item, status="pending").count() == 0

        result = transition_item(first_item, "re_request", actor_for(reviewer), comments="please rescan")
        assert result["status"] == "not_received"
        assert Reminder.query.filter_by(item_id=first_item, cycle=1, status="pending").count() >= 1

    def test_second_cycle_submission_opens_new_approval(self, sent, first_item, client_user, reviewer):
        transition_item(first_item, "submit", actor_for(client_user))
        transition_item(first_item, "re_request", actor_for(reviewer), comments="wrong year")
        transition_item(first_item, "submit", actor_for(client_user))

        approvals = Approval.query.filter_by(related_id=first_item).order_by(Approval.id).all()
        assert [a.action for a in approvals] == ["re_request", None]


# ═════════════════════════════════════════════════════════════════════════════
# Concurrent writers
# ═════════════════════════════════════════════════════════════════════════════


class TestConcurrentWriters:
    @pytest.fixture()
    def racing_writer(self, monkeypatch):
        """Bump the item's version right after it is read, as a second writer would."""
        real_get = checklist_lifecycle._get_item

        def read_then_race(item_id):
            item = real_get(item_id)
            db.session.execute(
                update(RequestChecklistItem)
                .where(RequestChecklistItem.id == item_id)
                .values(version_id=RequestChecklistItem.version_id + 1)
                .execution_options(synchronize_session=False)
            )
            return item

        monkeypatch.setattr(checklist_lifecycle, "_get_item", read_then_race)
        return monkeypatch

    def test_loser_gets_concurrent_modification(self, sent, first_item, client_user, racing_writer):
        with pytest.raises(ConcurrentModificationError):
            transition_item(first_item, "submit", actor_for(client_user))

        assert _item(first_item).status == "not_received"
        assert Approval.query.count() == 0

    def test_retry_after_losing_succeeds(self, sent, first_item, client_user, racing_writer):
        with pytest.raises(ConcurrentModificationError):
            transition_item(first_item, "submit", actor_for(client_user))
        racing_writer.undo()

        assert transition_item(first_item, "submit", actor_for(client_user))["status"] == "received"


# ═════════════════════════════════════════════════════════════════════════════
# Audit
# ═════════════════════════════════════════════════════════════════════════════


class TestAudit:
    def test_transitions_are_audited(self, sent, first_item, client_user):
        transition_item(first_item, "submit", actor_for(client_user))
        row = AuditLog.query.filter_by(entity_type="request_item", action="request_item.submit").one()
        assert row.entity_id == str(first_item)
        assert row.performed_by == client_user.id
        assert row.diff["old"]["status"] == "not_received"
        assert row.diff["new"]["status"] == "received"

    def test_audit_failure_does_not_block_transition(self, sent, first_item, client_user, monkeypatch):
        def broken_sink(**kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr("app.services.audit.write_audit", broken_sink)
        result = transition_item(first_item, "submit", actor_for(client_user))
        assert result["status"] == "received"
        assert _item(first_item).status == "received"

