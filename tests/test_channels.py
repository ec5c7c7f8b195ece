"""Channel sender tests: outbound HTTP is replaced by a session double."""

import pytest
import requests

from app.core.exceptions import DispatchFailure
from app.models.notification import Notification
from app.services import channels
from app.services.channels import (
    HttpGatewaySender,
    InAppSender,
    LogOnlySender,
    Recipient,
    SmtpEmailSender,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._payload = payload
        self.text = text
        self.content = b"{}" if payload is not None else b""

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse(200, {"id": "wamid.1"})
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error:
            raise self.error
        return self.response


RECIPIENT = Recipient(user_id=7, organization_id=1, email="client@customer.test",
                      phone="+15550100", full_name="Client")


class TestHttpGatewaySender:
    def _sender(self, session):
        return HttpGatewaySender(channel="whatsapp", url="https://gateway.test/send", token="t0k", session=session)

    def test_success_returns_provider_receipt(self):
        session = FakeSession()
        receipt = self._sender(session).send(RECIPIENT, None, "Please upload", {"reminder_id": 3}, 5)

        assert receipt == "wamid.1"
        call = session.calls[0]
        assert call["timeout"] == 5
        assert call["headers"]["Authorization"] == "Bearer t0k"
        assert call["json"]["to"] == "+15550100"
        assert call["json"]["metadata"] == {"reminder_id": 3}

    def test_empty_body_gets_generated_receipt(self):
        session = FakeSession(FakeResponse(202))
        assert self._sender(session).send(RECIPIENT, None, "hi", {}, 5).startswith("whatsapp-")

    def test_timeout_is_a_dispatch_failure(self):
        session = FakeSession(error=requests.Timeout("slow"))
        with pytest.raises(DispatchFailure) as exc:
            self._sender(session).send(RECIPIENT, None, "hi", {}, 2.5)
        assert "timed out after 2.5s" in str(exc.value)
        assert exc.value.retryable is True

    def test_connection_error_is_a_dispatch_failure(self):
        session = FakeSession(error=requests.ConnectionError("refused"))
        with pytest.raises(DispatchFailure):
            self._sender(session).send(RECIPIENT, None, "hi", {}, 5)

    def test_non_2xx_keeps_provider_status(self):
        session = FakeSession(FakeResponse(503, text="maintenance"))
        with pytest.raises(DispatchFailure) as exc:
            self._sender(session).send(RECIPIENT, None, "hi", {}, 5)
        assert exc.value.provider_status == 503
        assert exc.value.details["channel"] == "whatsapp"

    def test_missing_phone(self):
        session = FakeSession()
        no_phone = Recipient(user_id=8, organization_id=1, email="x@y.test")
        with pytest.raises(DispatchFailure):
            self._sender(session).send(no_phone, None, "hi", {}, 5)
        assert session.calls == []


class TestOtherSenders:
    def test_log_only_sender(self):
        assert LogOnlySender("sms").send(RECIPIENT, None, "hi", {}, 5).startswith("log-")

    def test_smtp_sender_needs_email(self):
        sender = SmtpEmailSender(server="smtp.test")
        with pytest.raises(DispatchFailure):
            sender.send(Recipient(user_id=9, organization_id=1), "s", "b", {}, 5)

    def test_in_app_sender_writes_notification(self, org, client_user):
        recipient = Recipient.from_user(client_user)
        receipt = InAppSender().send(recipient, "Documents pending", "2 items outstanding",
                                     {"related_type": "request", "related_id": 12}, 5)

        notif = Notification.query.filter_by(user_id=client_user.id).one()
        assert receipt == f"notification-{notif.id}"
        assert notif.category == "reminder"
        assert notif.entity_type == "request"
        assert notif.entity_id == 12


class TestRegistry:
    def test_defaults_in_testing(self):
        assert isinstance(channels.get_sender("email"), LogOnlySender)
        assert isinstance(channels.get_sender("sms"), LogOnlySender)
        assert isinstance(channels.get_sender("in_app"), InAppSender)

    def test_gateway_url_selects_http_sender(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "CHANNEL_PROVIDER_URLS", {"whatsapp": "https://gateway.test/wa"})
        sender = channels.get_sender("whatsapp")
        assert isinstance(sender, HttpGatewaySender)
        assert sender.url == "https://gateway.test/wa"

    def test_mail_server_selects_smtp(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.acme.test")
        sender = channels.get_sender("email")
        assert isinstance(sender, SmtpEmailSender)
        assert sender.server == "smtp.acme.test"

    def test_override_and_restore(self, fake_sender):
        assert channels.get_sender("voice") is fake_sender
        channels.register_sender("voice", None)
        assert isinstance(channels.get_sender("voice"), LogOnlySender)

    def test_unknown_channel(self):
        with pytest.raises(ValueError):
            channels.register_sender("fax", LogOnlySender("fax"))
        with pytest.raises(ValueError):
            channels.get_sender("pigeon")
