"""Tests for email/SMS delivery, background dispatch, audit sinks and log redaction."""

import json
import smtplib

import httpx
import pytest

from riskgate.logging import _redact_pii
from riskgate.service.audit import MemoryAuditSink, safe_record
from riskgate.service.notifier import (
    BackgroundDispatcher,
    DeliveryNotifier,
    EmailService,
    HttpSmsGateway,
    redact_email,
    redact_phone,
)


class TestEmailTemplates:
    """Templates render to subject, HTML and plain text."""

    def test_mfa_code_template(self):
        subject, html, text = EmailService().render("mfa_code", {"code": "123456", "expires_minutes": 5})
        assert subject == "Your verification code"
        assert "123456" in text and "5 minutes" in text
        assert "<p>Your verification code is 123456." in html

    def test_html_is_escaped(self):
        _, html, text = EmailService().render("new_device_login", {"device": "<script>x</script>"})
        assert "<script>" in text
        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    def test_unknown_template(self):
        with pytest.raises(ValueError):
            EmailService().render("newsletter", {})


class TestEmailService:
    def test_not_configured_without_host(self):
        assert not EmailService(from_email="noreply@example.com").is_configured
        assert EmailService(smtp_host="smtp.example.com", smtp_user="noreply@example.com").is_configured

    async def test_dev_mode_logs_instead_of_sending(self):
        assert await EmailService().send("alice@example.com", "account_locked", {"minutes": 15})

    async def test_connection_failure_reports_false(self, monkeypatch):
        class RefusingSMTP:
            def __init__(self, *args, **kwargs):
                raise ConnectionRefusedError("connection refused")

        monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)
        service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
        assert not await service.send("alice@example.com", "account_locked", {"minutes": 15})

    async def test_sends_over_starttls(self, monkeypatch):
        sent = []

        class RecordingSMTP:
            def __init__(self, host, port, timeout):
                self.host = host

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def starttls(self, context):
                sent.append("starttls")

            def login(self, user, password):
                sent.append(("login", user))

            def sendmail(self, from_addr, to_addr, message):
                sent.append(("sendmail", from_addr, to_addr))

        monkeypatch.setattr(smtplib, "SMTP", RecordingSMTP)
        service = EmailService(
            smtp_host="smtp.example.com",
            smtp_user="mailer",
            smtp_password="pw",
            from_email="noreply@example.com",
        )
        assert await service.send("alice@example.com", "low_backup_codes", {"remaining": 2})
        assert sent == [
            "starttls",
            ("login", "mailer"),
            ("sendmail", "noreply@example.com", "alice@example.com"),
        ]


class TestSmsGateway:
    """HTTP SMS delivery through httpx."""

    async def test_posts_message_with_bearer_token(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(202)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            gateway = HttpSmsGateway("https://sms.test/send", token="sms-token", client=client)
            assert await gateway.send("555-123-4567", "Your code is 123456")
        request = requests[0]
        assert request.headers["Authorization"] == "Bearer sms-token"
        assert json.loads(request.content) == {"to": "555-123-4567", "message": "Your code is 123456"}

    async def test_gateway_error_reports_false(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=transport) as client:
            gateway = HttpSmsGateway("https://sms.test/send", client=client)
            assert not await gateway.send("555-123-4567", "hi")

    async def test_unreachable_gateway_reports_false(self):
        def handler(request):
            raise httpx.ConnectError("no route", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            gateway = HttpSmsGateway("https://sms.test/send", client=client)
            assert not await gateway.send("555-123-4567", "hi")

    async def test_dev_mode(self):
        assert await HttpSmsGateway().send("555-123-4567", "hi")

    async def test_delivery_notifier_routes_by_channel(self, settings):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200)

        configured = settings.model_copy(update={"sms_gateway_url": "https://sms.test/send"})
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = DeliveryNotifier.from_settings(configured, client=client)
            assert await notifier.send_sms("555-123-4567", "hi")
            assert await notifier.send_email("alice@example.com", "account_locked", {"minutes": 15})
        assert len(requests) == 1


class TestBackgroundDispatcher:
    """Fire-and-forget work never raises into the caller."""

    async def test_drain_waits_for_completion(self):
        dispatcher = BackgroundDispatcher()
        done = []

        async def work():
            done.append(True)
            return True

        dispatcher.submit(work(), event="test_work")
        assert dispatcher.pending == 1
        await dispatcher.drain()
        assert done == [True]
        assert dispatcher.pending == 0

    async def test_failures_are_contained(self):
        dispatcher = BackgroundDispatcher()

        async def explode():
            raise ConnectionError("gateway down")

        task = dispatcher.submit(explode(), event="test_work")
        await dispatcher.drain()
        assert isinstance(task.exception(), ConnectionError)
        assert dispatcher.pending == 0


class TestAuditSinks:
    async def test_memory_sink_records_events(self, audit, clock):
        assert await safe_record(audit, "user", "u1", "mfa_enabled", "u1", {"method": "totp"})
        event = audit.events[0]
        assert (event.entity_type, event.action, event.metadata) == ("user", "mfa_enabled", {"method": "totp"})
        assert event.recorded_at == clock()
        assert audit.actions("device") == []

    async def test_failing_sink_is_swallowed(self):
        class BrokenSink:
            async def record(self, *args):
                raise RuntimeError("disk full")

        assert await safe_record(BrokenSink(), "user", "u1", "login", None) is False

    async def test_metadata_defaults_to_empty(self):
        sink = MemoryAuditSink()
        await safe_record(sink, "session", "s1", "logout", "u1")
        assert sink.events[0].metadata == {}


class TestRedaction:
    def test_contact_redaction_helpers(self):
        assert redact_email("alice@example.com") == "al***@example.com"
        assert redact_email("garbage") == "redacted"
        assert redact_phone("555-123-4567") == "***67"

    def test_log_processor_masks_sensitive_keys(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "mfa_code_sent", "email": "alice@example.com", "code": "1234", "user_id": "u1"},
        )
        assert event["email"] == "al***om"
        assert event["code"] == "***"
        assert event["user_id"] == "u1"
        assert event["event"] == "mfa_code_sent"
