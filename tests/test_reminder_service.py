"""
Reminder & retry engine tests.

Covers:
    1. Scheduling at send time, pre-due offsets, top-up sweep
    2. Dispatch success, receipts and attempt records
    3. Failure path: bounded retries, backoff, single escalation
    4. Skips: not due, live lease, late cancellation, stale cycle
    5. Operator actions: cancel, retry a failed reminder
"""

from datetime import date, datetime, time, timedelta, timezone

import pytest
from sqlalchemy import update

from app.core.exceptions import InvalidTransitionError, PermissionDenied, RequestClosedError
from app.models import db
from app.models.notification import Notification
from app.models.reminder import Reminder, ReminderAttempt
from app.models.request import DataRequest, RequestChecklistItem
from app.services import request_lifecycle, reminder_service
from app.services.channels import register_sender
from app.services.checklist_lifecycle import transition_item
from app.services.reminder_service import BackoffPolicy, dispatch, dispatch_due_reminders
from app.utils.helpers import as_utc, utcnow
from tests.conftest import actor_for

ONE_ITEM = [{"particular": "Form 16", "document_type": "tax_document"}]


def _reminder_for(request_id):
    return Reminder.query.filter_by(request_id=request_id, offset_days=None).one()


def _fresh(reminder_id):
    reminder = db.session.get(Reminder, reminder_id)
    db.session.refresh(reminder)
    return reminder


@pytest.fixture()
def single(make_request):
    """Sent request with one item, email only; returns its send-time reminder id."""
    data = make_request(ONE_ITEM)
    return _reminder_for(data["id"]).id


# ═════════════════════════════════════════════════════════════════════════════
# Backoff policy
# ═════════════════════════════════════════════════════════════════════════════


class TestBackoffPolicy:
    def test_exponential_doubles_and_caps(self):
        policy = BackoffPolicy("exponential", base_seconds=300, max_seconds=1000)
        assert [policy.delay(n).total_seconds() for n in (1, 2, 3, 4)] == [300, 600, 1000, 1000]

    def test_fixed(self):
        policy = BackoffPolicy("fixed", base_seconds=60)
        assert policy.delay(1) == policy.delay(5) == timedelta(seconds=60)

    def test_from_config_rejects_unknown_kind(self):
        with pytest.raises(ValueError):
            BackoffPolicy.from_config({"REMINDER_BACKOFF_POLICY": "linear"})


# ═════════════════════════════════════════════════════════════════════════════
# Scheduling
# ═════════════════════════════════════════════════════════════════════════════


class TestScheduling:
    def test_one_reminder_per_enabled_channel_per_mandatory_item(self, make_request):
        data = make_request([
            {"particular": "PAN card", "document_type": "id_proof"},
            {"particular": "Optional note", "document_type": "other", "is_mandatory": False},
        ], enabled=["email", "sms"])
        rows = Reminder.query.filter_by(request_id=data["id"]).all()

        assert sorted(r.channel for r in rows) == ["email", "sms"]
        assert {r.status for r in rows} == {"pending"}
        assert {r.retry_count for r in rows} == {0}
        assert {r.cycle for r in rows} == {0}

    def test_pre_due_reminders_at_nine_utc(self, make_request):
        due = utcnow().date() + timedelta(days=10)
        data = make_request(ONE_ITEM, due_date=due.isoformat())
        pre_due = Reminder.query.filter(
            Reminder.request_id == data["id"], Reminder.offset_days.is_not(None),
        ).order_by(Reminder.offset_days).all()

        assert [r.offset_days for r in pre_due] == [1, 3]
        assert as_utc(pre_due[0].scheduled_at) == datetime.combine(
            due - timedelta(days=1), time(9, 0), tzinfo=timezone.utc)

    def test_top_up_is_idempotent(self, org, make_request):
        due = utcnow().date() + timedelta(days=10)
        data = make_request(ONE_ITEM, due_date=due.isoformat())
        request = db.session.get(DataRequest, data["id"])
        request.pre_due_reminders = [5, 3]
        db.session.commit()

        assert reminder_service.top_up_pre_due_reminders(org.id) == 1
        assert reminder_service.top_up_pre_due_reminders(org.id) == 0


# ═════════════════════════════════════════════════════════════════════════════
# Dispatch
# ═════════════════════════════════════════════════════════════════════════════


class TestDispatchSuccess:
    def test_sent_with_receipt(self, single, fake_sender, client_user):
        result = dispatch(single, utcnow() + timedelta(seconds=1), worker_id="w1")

        assert result.ok
        assert result.receipt_id == "fake-1"
        reminder = _fresh(single)
        assert reminder.status == "sent"
        assert reminder.provider_receipt_id == "fake-1"
        assert reminder.locked_by is None
        assert fake_sender.sent[0]["user_id"] == client_user.id
        assert fake_sender.sent[0]["metadata"]["cycle"] == 0

        (attempt,) = ReminderAttempt.query.filter_by(reminder_id=single).all()
        assert attempt.outcome == "sent"
        assert attempt.worker_id == "w1"

    def test_sent_reminder_is_not_resent(self, single, fake_sender):
        now = utcnow() + timedelta(seconds=1)
        dispatch(single, now)
        assert dispatch(single, now + timedelta(minutes=5)).outcome == "skipped"
        assert fake_sender.attempts == 1

    def test_log_only_default_sender(self, single):
        result = dispatch(single, utcnow() + timedelta(seconds=1))
        assert result.ok
        assert result.receipt_id.startswith("log-")

    def test_sweep_summary(self, org, make_request, fake_sender):
        make_request()
        summary = dispatch_due_reminders(org.id, utcnow() + timedelta(seconds=1), worker_id="sweeper")
        assert summary == {"due": 2, "sent": 2, "failed": 0, "skipped": 0, "escalated": 0}
        assert dispatch_due_reminders(org.id, utcnow() + timedelta(seconds=2))["due"] == 0


class TestDispatchFailure:
    def test_failure_reschedules_with_backoff(self, single, fake_sender):
        fake_sender.fail = True
        now = utcnow() + timedelta(seconds=1)
        result = dispatch(single, now)

        assert result.outcome == "failed"
        assert result.retry_count == 1
        assert result.next_attempt_at == now + timedelta(seconds=60)
        reminder = _fresh(single)
        assert reminder.status == "pending"
        assert "gateway unavailable" in reminder.last_error

        # Not due again until the backoff has elapsed
        assert dispatch(single, now + timedelta(seconds=30)).outcome == "skipped"
        assert fake_sender.attempts == 1

    def test_exhaustion_escalates_once(self, single, fake_sender, manager):
        fake_sender.fail = True
        now = utcnow() + timedelta(seconds=1)
        counts = []
        for step in range(3):
            result = dispatch(single, now + timedelta(seconds=61 * step))
            counts.append(result.retry_count)
        assert counts == [1, 2, 3]
        assert result.status == "failed"
        assert result.escalated is True

        reminder = _fresh(single)
        assert reminder.retry_count == reminder.max_retries == 3
        assert reminder.escalated_at is not None

        fourth = dispatch(single, now + timedelta(hours=1))
        assert fourth.outcome == "skipped"
        assert fake_sender.attempts == 3
        assert _fresh(single).retry_count == 3

        alerts = Notification.query.filter_by(category="escalation", entity_type="reminder").all()
        assert [a.user_id for a in alerts] == [manager.id]
        assert ReminderAttempt.query.filter_by(reminder_id=single, outcome="failed").count() == 3

    def test_unexpected_sender_error_counts_as_failure(self, single):
        class Exploding:
            channel = "email"

            def send(self, *args):
                raise RuntimeError("socket closed")

        register_sender("email", Exploding())
        result = dispatch(single, utcnow() + timedelta(seconds=1))
        assert result.outcome == "failed"
        assert "RuntimeError" in result.error

    def test_inactive_recipient_fails(self, single, client_user, fake_sender):
        client_user.is_active = False
        db.session.commit()
        result = dispatch(single, utcnow() + timedelta(seconds=1))
        assert result.outcome == "failed"
        assert fake_sender.attempts == 0


class TestDispatchSkips:
    def test_not_yet_due(self, single, fake_sender):
        assert dispatch(single, utcnow() - timedelta(hours=1)).outcome == "skipped"
        assert fake_sender.attempts == 0

    def test_live_lease_blocks_other_worker(self, single, fake_sender):
        now = utcnow() + timedelta(seconds=1)
        db.session.execute(
            update(Reminder).where(Reminder.id == single)
            .values(locked_by="worker-a", lease_expires_at=now + timedelta(seconds=120))
        )
        db.session.commit()

        assert dispatch(single, now, worker_id="worker-b").outcome == "skipped"
        assert dispatch(single, now + timedelta(seconds=121), worker_id="worker-b").outcome == "sent"
        assert fake_sender.attempts == 1

    def test_cancelled_request_cancels_reminders(self, single, manager, fake_sender):
        request_id = _fresh(single).request_id
        request_lifecycle.cancel_request(request_id, actor_for(manager), reason="duplicate")

        assert _fresh(single).status == "cancelled"
        assert dispatch(single, utcnow() + timedelta(seconds=1)).outcome == "skipped"
        assert fake_sender.attempts == 0

    def test_late_cancellation_is_honoured_after_claim(self, single, fake_sender):
        # Request closed by a writer that bypassed the reminder cleanup
        request_id = _fresh(single).request_id
        db.session.execute(update(DataRequest).where(DataRequest.id == request_id).values(status="cancelled"))
        db.session.commit()

        result = dispatch(single, utcnow() + timedelta(seconds=1))
        assert result.outcome == "skipped"
        assert "cancelled" in result.error
        assert _fresh(single).status == "cancelled"
        assert fake_sender.attempts == 0
        assert ReminderAttempt.query.filter_by(reminder_id=single).one().outcome == "skipped"

    def test_reminder_from_previous_cycle_is_not_sent(self, single, fake_sender):
        item_id = _fresh(single).item_id
        db.session.execute(
            update(RequestChecklistItem).where(RequestChecklistItem.id == item_id).values(request_cycle=1)
        )
        db.session.commit()

        result = dispatch(single, utcnow() + timedelta(seconds=1))
        assert result.outcome == "skipped"
        assert "cycle 1" in result.error
        assert fake_sender.attempts == 0

    def test_submitted_item_reminders_are_dropped(self, single, client_user, fake_sender):
        item_id = _fresh(single).item_id
        transition_item(item_id, "submit", actor_for(client_user))
        result = dispatch(single, utcnow() + timedelta(seconds=1))
        assert result.outcome == "skipped"
        assert fake_sender.attempts == 0


# ═════════════════════════════════════════════════════════════════════════════
# Operator actions
# ═════════════════════════════════════════════════════════════════════════════


class TestOperatorActions:
    def test_cancel_pending(self, single, team_member, client_user):
        with pytest.raises(PermissionDenied):
            reminder_service.cancel_reminder(single, actor_for(client_user))
        assert reminder_service.cancel_reminder(single, actor_for(team_member))["status"] == "cancelled"
        with pytest.raises(InvalidTransitionError):
            reminder_service.cancel_reminder(single, actor_for(team_member))

    def test_retry_failed_creates_fresh_reminder(self, single, fake_sender, team_member):
        fake_sender.fail = True
        now = utcnow() + timedelta(seconds=1)
        for step in range(3):
            dispatch(single, now + timedelta(seconds=61 * step))

        fresh = reminder_service.retry_failed_reminder(single, actor_for(team_member))
        assert fresh["id"] != single
        assert fresh["status"] == "pending"
        assert fresh["retry_count"] == 0
        assert _fresh(single).status == "failed"

        with pytest.raises(InvalidTransitionError):
            reminder_service.retry_failed_reminder(fresh["id"], actor_for(team_member))

    def test_retry_on_closed_request_is_refused(self, single, fake_sender, manager):
        fake_sender.fail = True
        now = utcnow() + timedelta(seconds=1)
        for step in range(3):
            dispatch(single, now + timedelta(seconds=61 * step))
        request_lifecycle.cancel_request(_fresh(single).request_id, actor_for(manager))

        with pytest.raises(RequestClosedError):
            reminder_service.retry_failed_reminder(single, actor_for(manager))

    def test_list_and_detail(self, org, single, fake_sender, team_member):
        dispatch(single, utcnow() + timedelta(seconds=1), worker_id="w9")
        listed = reminder_service.list_reminders(org.id, actor_for(team_member), status="sent")
        assert [r.id for r in listed] == [single]

        detail = reminder_service.get_reminder(single, actor_for(team_member))
        assert [a["outcome"] for a in detail["attempts"]] == ["sent"]
        assert detail["attempts"][0]["worker_id"] == "w9"


def test_pre_due_send_time_is_utc_morning():
    assert reminder_service.pre_due_send_time(date(2024, 3, 10), 3) == datetime(
        2024, 3, 7, 9, 0, tzinfo=timezone.utc)
