from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Awaitable, Dict, Optional, Set

import httpx

from riskgate.config import Settings
from riskgate.logging import get_logger

logger = get_logger(__name__)

# template_id -> (subject, body); bodies are str.format templates over ``data``
EMAIL_TEMPLATES: Dict[str, tuple[str, str]] = {
    "mfa_code": (
        "Your verification code",
        "Your verification code is {code}.\n\nIt expires in {expires_minutes} minutes. "
        "If you did not try to sign in, change your password.",
    ),
    "low_backup_codes": (
        "You are running low on backup codes",
        "Only {remaining} backup codes remain on your account.\n\n"
        "Generate a new set from your security settings.",
    ),
    "new_device_login": (
        "New sign-in to your account",
        "A new device signed in to your account: {device}.\n\n"
        "If this was not you, revoke the session and change your password.",
    ),
    "account_locked": (
        "Your account has been locked",
        "Your account was locked after repeated failed sign-in attempts.\n\n"
        "It will unlock automatically in {minutes} minutes.",
    ),
}


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def redact_phone(phone: str) -> str:
    digits = [ch for ch in phone if ch.isdigit()]
    return f"***{''.join(digits[-2:])}" if digits else "redacted"


class EmailService:
    """Templated transactional email over SMTP.

    Falls back to logging when SMTP is not configured (dev mode). Sending is
    blocking, so the async entry point runs it in a worker thread.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "RiskGate",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def render(self, template_id: str, data: Dict[str, Any]) -> tuple[str, str, str]:
        try:
            subject, template = EMAIL_TEMPLATES[template_id]
        except KeyError:
            raise ValueError(f"unknown email template: {template_id}") from None
        text_body = template.format(**data)
        paragraphs = "".join(
            f"<p>{escape(part)}</p>" for part in text_body.split("\n\n") if part
        )
        html_body = (
            '<!DOCTYPE html><html><head><meta charset="utf-8"></head>'
            f"<body><h1>{escape(subject)}</h1>{paragraphs}"
            f"<p>{escape(self.from_name)}</p></body></html>"
        )
        return subject, html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=redact_email(to_email))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        except OSError as e:
            logger.error(
                "email_connection_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

    async def send(self, address: str, template_id: str, data: Dict[str, Any]) -> bool:
        subject, html_body, text_body = self.render(template_id, data)
        return await asyncio.to_thread(
            self._send_email, address, subject, html_body, text_body
        )


class HttpSmsGateway:
    """Posts ``{"to", "message"}`` to an HTTP SMS gateway with a bearer token."""

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.token = token
        self._client = client
        self._timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

    async def _post(self, body: dict[str, str]) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        if self._client is not None:
            return await self._client.post(
                self.url, json=body, headers=headers, timeout=self._timeout
            )
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(self.url, json=body, headers=headers)

    async def send(self, phone: str, message: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", to=redact_phone(phone), length=len(message))
            return True
        try:
            response = await self._post({"to": phone, "message": message})
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_gateway_rejected",
                to=redact_phone(phone),
                status_code=exc.response.status_code,
            )
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "sms_gateway_unreachable",
                to=redact_phone(phone),
                error_type=type(exc).__name__,
            )
            return False
        logger.info("sms_sent", to=redact_phone(phone))
        return True


class DeliveryNotifier:
    """Notifier backed by SMTP email and an HTTP SMS gateway."""

    def __init__(self, email: EmailService, sms: HttpSmsGateway) -> None:
        self.email = email
        self.sms = sms

    @classmethod
    def from_settings(
        cls, settings: Settings, *, client: Optional[httpx.AsyncClient] = None
    ) -> "DeliveryNotifier":
        return cls(
            EmailService.from_settings(settings),
            HttpSmsGateway(
                settings.sms_gateway_url,
                token=settings.sms_gateway_token,
                client=client,
            ),
        )

    async def send_sms(self, phone: str, message: str) -> bool:
        return await self.sms.send(phone, message)

    async def send_email(
        self, address: str, template_id: str, data: Dict[str, Any]
    ) -> bool:
        return await self.email.send(address, template_id, data)


class BackgroundDispatcher:
    """Fire-and-forget delivery that never blocks or fails the caller.

    Tasks are kept referenced until done; failures and ``False`` results are
    logged under the event name given at submit time.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Awaitable[Any], *, event: str, **log_fields: Any) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                logger.warning(f"{event}_cancelled", **log_fields)
                return
            exc = finished.exception()
            if exc is not None:
                logger.error(
                    f"{event}_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    **log_fields,
                )
            elif finished.result() is False:
                logger.warning(f"{event}_not_delivered", **log_fields)

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used on shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
