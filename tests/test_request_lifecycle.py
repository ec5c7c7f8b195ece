"""
Request state machine tests.

Covers:
    1. Derived status: completed iff every mandatory item is approved,
       whatever order the approvals arrive in
    2. Send validation (channels, items, draft only)
    3. Cancel: terminal, reminders cancelled, approvals withdrawn
    4. Draft edits, overdue listing, summary, tenant isolation
    5. Request sign-off gate and lost races on send / cancel
"""

import itertools
import re
from datetime import date, timedelta

import pytest
from sqlalchemy import update

from app.core.exceptions import (
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDenied,
    RequestClosedError,
    ValidationError,
)
from app.models import db
from app.models.approval import Approval
from app.models.reminder import Reminder
from app.models.request import DataRequest, RequestChecklistItem
from app.services import approval_service, request_lifecycle
from app.services.checklist_lifecycle import transition_item
from app.services.request_lifecycle import derive_status
from tests.conftest import actor_for, make_user


def _item_ids(request_id):
    return list(db.session.scalars(
        db.select(RequestChecklistItem.id)
        .where(RequestChecklistItem.request_id == request_id)
        .order_by(RequestChecklistItem.sort_order, RequestChecklistItem.id)
    ))


def _status(request_id):
    return db.session.get(DataRequest, request_id).status


# ═════════════════════════════════════════════════════════════════════════════
# Pure derivation
# ═════════════════════════════════════════════════════════════════════════════


class TestDeriveStatus:
    @staticmethod
    def _items(*specs):
        return [RequestChecklistItem(status=s, is_mandatory=m, request_cycle=c) for s, m, c in specs]

    def test_sent_until_something_moves(self):
        request = DataRequest(status="sent")
        assert derive_status(request, self._items(("not_received", True, 0))) == "sent"
        assert derive_status(request, self._items(("received", True, 0))) == "in_progress"

    def test_re_requested_item_keeps_request_in_progress(self):
        request = DataRequest(status="in_progress")
        assert derive_status(request, self._items(("not_received", True, 1))) == "in_progress"

    def test_optional_items_do_not_block_completion(self):
        request = DataRequest(status="in_progress")
        items = self._items(("approved", True, 0), ("not_received", False, 0))
        assert derive_status(request, items) == "completed"

    def test_all_optional_items_must_all_be_approved(self):
        request = DataRequest(status="in_progress")
        assert derive_status(request, self._items(("approved", False, 0), ("received", False, 0))) == "in_progress"

    def test_closed_and_draft_are_sticky(self):
        approved = self._items(("approved", True, 0))
        assert derive_status(DataRequest(status="cancelled"), approved) == "cancelled"
        assert derive_status(DataRequest(status="draft"), approved) == "draft"


class TestCompletionProperty:
    ITEMS = [
        {"particular": "Bank statement", "document_type": "financial_statement"},
        {"particular": "PAN card", "document_type": "id_proof"},
        {"particular": "Rent agreement", "document_type": "agreement"},
        {"particular": "Cover letter", "document_type": "other", "is_mandatory": False},
    ]

    @pytest.mark.parametrize("order", list(itertools.permutations(range(3))))
    def test_completed_iff_all_mandatory_approved(self, order, make_request, client_user, reviewer):
        data = make_request(self.ITEMS)
        ids = _item_ids(data["id"])
        mandatory = ids[:3]
        for item_id in mandatory:
            transition_item(item_id, "submit", actor_for(client_user))
        assert _status(data["id"]) == "in_progress"

        approved = set()
        for idx in order:
            transition_item(mandatory[idx], "approve", actor_for(reviewer))
            approved.add(idx)
            expected = "completed" if len(approved) == 3 else "in_progress"
            assert _status(data["id"]) == expected

        request = db.session.get(DataRequest, data["id"])
        assert request.completed_at is not None
        assert db.session.get(RequestChecklistItem, ids[3]).status == "not_received"

    def test_completion_cancels_outstanding_reminders(self, make_request, client_user, reviewer):
        data = make_request([{"particular": "Bank statement", "document_type": "financial_statement"},
                             {"particular": "Cover letter", "document_type": "other", "is_mandatory": False}])
        first = _item_ids(data["id"])[0]
        transition_item(first, "submit", actor_for(client_user))
        transition_item(first, "approve", actor_for(reviewer))

        assert _status(data["id"]) == "completed"
        assert Reminder.query.filter_by(request_id=data["id"], status="pending").count() == 0

    def test_completed_request_rejects_further_item_changes(self, make_request, client_user, reviewer):
        data = make_request([{"particular": "Bank statement", "document_type": "financial_statement"},
                             {"particular": "Cover letter", "document_type": "other", "is_mandatory": False}])
        first, optional = _item_ids(data["id"])
        transition_item(first, "submit", actor_for(client_user))
        transition_item(first, "approve", actor_for(reviewer))

        with pytest.raises(RequestClosedError):
            transition_item(optional, "submit", actor_for(client_user))


class TestRequestSignOff:
    ONE_ITEM = [{"particular": "Bank statement", "document_type": "financial_statement"}]

    @pytest.fixture(autouse=True)
    def gate_requests(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "APPROVAL_REQUIRED_FOR", ["request_item", "request"])

    @pytest.fixture()
    def awaiting_sign_off(self, make_request, client_user, reviewer):
        data = make_request(self.ONE_ITEM)
        (item_id,) = _item_ids(data["id"])
        transition_item(item_id, "submit", actor_for(client_user))
        transition_item(item_id, "approve", actor_for(reviewer))
        return data["id"]

    def _sign_off(self, request_id):
        return Approval.query.filter_by(approval_type="request", related_id=request_id).order_by(Approval.id)

    def test_all_items_approved_waits_for_sign_off(self, awaiting_sign_off, reviewer):
        assert _status(awaiting_sign_off) == "in_progress"
        assert db.session.get(DataRequest, awaiting_sign_off).completed_at is None
        pending = self._sign_off(awaiting_sign_off).one()
        assert pending.action is None
        assert pending.submitted_by == reviewer.id

    def test_approved_sign_off_completes_request(self, awaiting_sign_off, manager):
        approval_service.approve(self._sign_off(awaiting_sign_off).one().id, actor_for(manager))

        assert _status(awaiting_sign_off) == "completed"
        assert db.session.get(DataRequest, awaiting_sign_off).completed_at is not None
        assert Reminder.query.filter_by(request_id=awaiting_sign_off, status="pending").count() == 0

    @pytest.mark.parametrize("decision", ["reject", "re_request"])
    def test_sent_back_sign_off_keeps_request_open(self, decision, awaiting_sign_off, org, manager, reviewer):
        signoff = self._sign_off(awaiting_sign_off).one()
        getattr(approval_service, decision)(signoff.id, actor_for(manager), "numbers do not tie out")

        assert _status(awaiting_sign_off) == "in_progress"
        assert db.session.get(DataRequest, awaiting_sign_off).completed_at is None

        # A fresh sign-off can be opened and approved later
        again = approval_service.submit_for_approval(org.id, "request", awaiting_sign_off, actor_for(reviewer))
        assert again["id"] != signoff.id
        approval_service.approve(again["id"], actor_for(manager))
        assert _status(awaiting_sign_off) == "completed"


# ═════════════════════════════════════════════════════════════════════════════
# Creation & send
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateAndSend:
    def test_create_draft(self, make_request):
        data = make_request(send=False)
        assert data["status"] == "draft"
        assert re.fullmatch(r"REQ-\d{8}-[0-9A-F]{6}", data["request_number"])
        assert data["channels"] == ["email"]
        assert [i["status"] for i in data["items"]] == ["not_received", "not_received"]
        assert Reminder.query.count() == 0

    def test_send(self, make_request, manager):
        data = make_request(send=False)
        sent = request_lifecycle.send_request(data["id"], actor_for(manager))
        assert sent["status"] == "sent"
        assert sent["sent_at"] is not None
        assert Reminder.query.filter_by(request_id=data["id"]).count() == 2

    def test_send_twice_is_invalid(self, make_request, manager):
        data = make_request()
        with pytest.raises(InvalidTransitionError):
            request_lifecycle.send_request(data["id"], actor_for(manager))

    def test_send_requires_a_channel(self, make_request, manager):
        data = make_request(send=False, enabled=[])
        with pytest.raises(InvalidTransitionError):
            request_lifecycle.send_request(data["id"], actor_for(manager))
        assert _status(data["id"]) == "draft"

    def test_send_requires_items(self, make_request, manager):
        data = make_request([], send=False)
        with pytest.raises(InvalidTransitionError):
            request_lifecycle.send_request(data["id"], actor_for(manager))

    def test_invalid_payloads(self, org, manager, client_user, team_member):
        with pytest.raises(ValidationError):
            request_lifecycle.create_request(org.id, actor_for(manager), client_id=client_user.id, title=" ")
        with pytest.raises(ValidationError):
            request_lifecycle.create_request(org.id, actor_for(manager), client_id=team_member.id, title="x")
        with pytest.raises(ValidationError):
            request_lifecycle.create_request(org.id, actor_for(manager), client_id=client_user.id, title="x",
                                             channels=["fax"])
        with pytest.raises(ValidationError):
            request_lifecycle.create_request(org.id, actor_for(manager), client_id=client_user.id, title="x",
                                             items=[{"particular": "Thing", "document_type": "selfie"}])
        assert DataRequest.query.count() == 0

    def test_client_cannot_create(self, org, client_user):
        with pytest.raises(PermissionDenied):
            request_lifecycle.create_request(org.id, actor_for(client_user), client_id=client_user.id, title="x")


# ═════════════════════════════════════════════════════════════════════════════
# Draft edits
# ═════════════════════════════════════════════════════════════════════════════


class TestDraftEdits:
    def test_add_item_and_channels_on_draft(self, make_request, team_member):
        data = make_request(send=False)
        item = request_lifecycle.add_item(data["id"], actor_for(team_member),
                                          {"particular": "Utility bill", "document_type": "address_proof"})
        assert item["sort_order"] == 2
        updated = request_lifecycle.update_channels(data["id"], actor_for(team_member), ["whatsapp", "sms"])
        assert updated["channels"] == ["whatsapp", "sms"]

    def test_edits_refused_after_send(self, make_request, manager):
        data = make_request()
        with pytest.raises(InvalidTransitionError):
            request_lifecycle.add_item(data["id"], actor_for(manager), {"particular": "Late addition"})
        with pytest.raises(InvalidTransitionError):
            request_lifecycle.update_channels(data["id"], actor_for(manager), ["sms"])

    def test_dependency_must_belong_to_request(self, make_request, manager):
        other = make_request()
        data = make_request(send=False)
        foreign_item = _item_ids(other["id"])[0]
        with pytest.raises(ValidationError):
            request_lifecycle.add_item(data["id"], actor_for(manager), {
                "particular": "Stamped copy", "dependency_item_id": foreign_item,
            })


# ═════════════════════════════════════════════════════════════════════════════
# Cancel
# ═════════════════════════════════════════════════════════════════════════════


class TestCancel:
    def test_cancel_is_terminal(self, make_request, manager):
        data = make_request()
        cancelled = request_lifecycle.cancel_request(data["id"], actor_for(manager), reason="Client left")

        assert cancelled["status"] == "cancelled"
        assert cancelled["cancel_reason"] == "Client left"
        assert Reminder.query.filter_by(request_id=data["id"], status="pending").count() == 0
        assert Reminder.query.filter_by(request_id=data["id"], status="cancelled").count() == 2

        with pytest.raises(RequestClosedError):
            request_lifecycle.cancel_request(data["id"], actor_for(manager))
        with pytest.raises(RequestClosedError):
            request_lifecycle.send_request(data["id"], actor_for(manager))

    def test_draft_can_be_cancelled(self, make_request, manager):
        data = make_request(send=False)
        assert request_lifecycle.cancel_request(data["id"], actor_for(manager))["status"] == "cancelled"

    def test_team_member_cannot_cancel(self, make_request, team_member):
        data = make_request()
        with pytest.raises(PermissionDenied):
            request_lifecycle.cancel_request(data["id"], actor_for(team_member))


class TestConcurrentWriters:
    @pytest.fixture()
    def race_next_read(self, monkeypatch):
        """Arm a second writer that bumps the request's version right after it is read."""
        real_get = request_lifecycle._get_request

        def read_then_race(request_id):
            request = real_get(request_id)
            db.session.execute(
                update(DataRequest)
                .where(DataRequest.id == request_id)
                .values(version_id=DataRequest.version_id + 1)
                .execution_options(synchronize_session=False)
            )
            return request

        def arm():
            monkeypatch.setattr(request_lifecycle, "_get_request", read_then_race)

        return arm

    def test_send_loses_to_concurrent_writer(self, make_request, manager, race_next_read):
        data = make_request(send=False)
        race_next_read()
        with pytest.raises(ConcurrentModificationError):
            request_lifecycle.send_request(data["id"], actor_for(manager))

        assert _status(data["id"]) == "draft"
        assert Reminder.query.filter_by(request_id=data["id"]).count() == 0

    def test_cancel_loses_to_concurrent_writer(self, make_request, manager, race_next_read):
        data = make_request()
        race_next_read()
        with pytest.raises(ConcurrentModificationError):
            request_lifecycle.cancel_request(data["id"], actor_for(manager), reason="duplicate")

        assert _status(data["id"]) == "sent"
        assert Reminder.query.filter_by(request_id=data["id"], status="pending").count() == 2


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


class TestQueries:
    def test_client_sees_only_own_requests(self, org, make_request, manager, client_user):
        mine = make_request()
        stranger = make_user(org, "client", "other@customer.test")
        request_lifecycle.create_request(org.id, actor_for(manager), client_id=stranger.id, title="Theirs",
                                         items=[{"particular": "ID"}])

        listed = request_lifecycle.list_requests(org.id, actor_for(client_user)).all()
        assert [r.id for r in listed] == [mine["id"]]
        assert len(request_lifecycle.list_requests(org.id, actor_for(manager)).all()) == 2
        with pytest.raises(PermissionDenied):
            request_lifecycle.get_request(mine["id"], actor_for(stranger))

    def test_other_organization_is_isolated(self, make_request, other_org):
        data = make_request()
        outsider = make_user(other_org, "admin", "admin@globex.test")
        with pytest.raises(PermissionDenied):
            request_lifecycle.get_request(data["id"], actor_for(outsider))
        with pytest.raises(PermissionDenied):
            request_lifecycle.cancel_request(data["id"], actor_for(outsider))

    def test_unknown_request(self, manager):
        with pytest.raises(NotFoundError):
            request_lifecycle.get_request(99999, actor_for(manager))

    def test_overdue_and_summary(self, org, make_request, manager):
        make_request(due_date="2024-01-31")
        make_request(due_date="2024-03-31")
        make_request(due_date="2024-01-15", send=False)

        today = date(2024, 2, 1)
        overdue = request_lifecycle.overdue_requests(org.id, today)
        assert [r.due_date for r in overdue] == [date(2024, 1, 31)]

        summary = request_lifecycle.request_summary(org.id, actor_for(manager), today=today)
        assert summary["total"] == 3
        assert summary["by_status"]["sent"] == 2
        assert summary["by_status"]["draft"] == 1
        assert summary["overdue"] == 1

        # Overdue is a listing, not a status
        assert {r.status for r in overdue} == {"sent"}
        assert request_lifecycle.overdue_requests(org.id, today - timedelta(days=30)) == []
