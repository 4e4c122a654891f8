"""Outbound mail submission over SMTP.

Replies stay attached to their conversation only through ``In-Reply-To``
and ``References``; both are copied onto the outgoing message exactly as
the caller supplied them.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import format_datetime, make_msgid
from typing import Any, Callable, List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from teammail.errors import (
    MailboxAuthenticationError,
    MailboxConnectionError,
    MailDispatchError,
)

from .connection_config import ConnectionConfigResolver, MailAuth, SmtpConfig
from .connection_store import TeamEmailConnection
from .oauth2_flow import OAuthTokens

logger = logging.getLogger(__name__)

XOAUTH2_SUCCESS = 235
XOAUTH2_CHALLENGE = 334


class OutgoingEmail(BaseModel):
    """A message to send from a team mailbox."""

    to: List[str]
    subject: str
    text: str = ""
    html: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    cc: List[str] = Field(default_factory=list)

    @field_validator("to", "cc", mode="before")
    @classmethod
    def _as_list(cls, value: Union[str, List[str], None]) -> List[str]:  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return list(value)

    @field_validator("subject", "in_reply_to", "references")
    @classmethod
    def _single_line(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and ("\r" in value or "\n" in value):
            raise ValueError("header values may not contain CR or LF")
        return value

    @field_validator("to", "cc")
    @classmethod
    def _single_line_addresses(cls, value: List[str]) -> List[str]:
        if any("\r" in address or "\n" in address for address in value):
            raise ValueError("addresses may not contain CR or LF")
        return value

    @model_validator(mode="after")
    def _check_content(self) -> "OutgoingEmail":
        if not self.to:
            raise ValueError("at least one recipient is required")
        if not self.text and not self.html:
            raise ValueError("text or html body is required")
        return self


class SendResult(BaseModel):
    message_id: str
    refreshed_tokens: Optional[OAuthTokens] = None


def default_smtp_factory(config: SmtpConfig) -> smtplib.SMTP:
    """Open an SMTP transport: implicit TLS, or STARTTLS when offered."""
    context = config.tls.create_ssl_context()
    if config.secure:
        return smtplib.SMTP_SSL(config.host, config.port, timeout=config.timeout, context=context)
    client = smtplib.SMTP(config.host, config.port, timeout=config.timeout)
    try:
        client.ehlo()
        if client.has_extn("starttls"):
            client.starttls(context=context)
            client.ehlo()
    except (smtplib.SMTPException, OSError):
        client.close()
        raise
    return client


class MailDispatcher:
    """Send mail as a connection's mailbox address."""

    def __init__(
        self,
        resolver: ConnectionConfigResolver,
        *,
        smtp_factory: Callable[[SmtpConfig], Any] = default_smtp_factory,
        now: Callable[..., datetime] = datetime.now,
    ) -> None:
        self.resolver = resolver
        self._smtp_factory = smtp_factory
        self._now = now

    async def send_email(
        self, connection: TeamEmailConnection, email: OutgoingEmail
    ) -> SendResult:
        """Submit ``email`` through the connection's SMTP server.

        Raises:
            MissingCredentialError: Connection lacks credentials
            MailboxAuthenticationError: SMTP login rejected
            MailboxConnectionError: Server unreachable
            MailDispatchError: Server refused the message
        """
        resolved = await self.resolver.resolve_smtp_config(connection)
        config: SmtpConfig = resolved.config  # type: ignore[assignment]
        message = self.build_message(config.from_address, email)
        message_id = str(message["Message-ID"])

        try:
            await asyncio.to_thread(self._deliver, config, message)
        except smtplib.SMTPAuthenticationError as exc:
            raise MailboxAuthenticationError(
                "SMTP server rejected the credentials",
                details={"connection_id": connection.id, "smtp_code": exc.smtp_code},
            ) from exc
        except (smtplib.SMTPConnectError, smtplib.SMTPServerDisconnected) as exc:
            raise MailboxConnectionError(
                f"SMTP connection to {config.host}:{config.port} failed",
                details={"connection_id": connection.id},
            ) from exc
        except smtplib.SMTPException as exc:
            raise MailDispatchError(
                f"SMTP submission failed: {type(exc).__name__}",
                details={
                    "connection_id": connection.id,
                    "smtp_code": getattr(exc, "smtp_code", None),
                },
            ) from exc
        except OSError as exc:
            raise MailboxConnectionError(
                f"Could not reach {config.host}:{config.port}: {type(exc).__name__}",
                details={"connection_id": connection.id},
            ) from exc

        logger.info(
            "Sent email",
            extra={
                "connection_id": connection.id,
                "recipients": len(email.to) + len(email.cc),
                "is_reply": bool(email.in_reply_to),
            },
        )
        return SendResult(message_id=message_id, refreshed_tokens=resolved.refreshed_tokens)

    async def verify(self, connection: TeamEmailConnection) -> None:
        """Connect and authenticate without sending anything."""
        resolved = await self.resolver.resolve_smtp_config(connection)
        config: SmtpConfig = resolved.config  # type: ignore[assignment]
        try:
            await asyncio.to_thread(self._login_only, config)
        except smtplib.SMTPAuthenticationError as exc:
            raise MailboxAuthenticationError(
                "SMTP server rejected the credentials",
                details={"connection_id": connection.id, "smtp_code": exc.smtp_code},
            ) from exc
        except OSError as exc:
            raise MailboxConnectionError(
                f"Could not reach {config.host}:{config.port}: {type(exc).__name__}",
                details={"connection_id": connection.id},
            ) from exc

    def build_message(self, from_address: str, email: OutgoingEmail) -> EmailMessage:
        message = EmailMessage()
        message["From"] = from_address
        message["To"] = ", ".join(email.to)
        if email.cc:
            message["Cc"] = ", ".join(email.cc)
        message["Subject"] = email.subject
        message["Date"] = format_datetime(self._now(timezone.utc))
        message["Message-ID"] = make_msgid(domain=from_address.rpartition("@")[2] or None)
        if email.in_reply_to:
            message["In-Reply-To"] = email.in_reply_to
        if email.references:
            message["References"] = email.references

        message.set_content(email.text or "")
        if email.html:
            message.add_alternative(email.html, subtype="html")
        return message

    def _deliver(self, config: SmtpConfig, message: EmailMessage) -> None:
        client = self._smtp_factory(config)
        try:
            self._authenticate(client, config.auth)
            client.send_message(message)
        finally:
            try:
                client.quit()
            except (smtplib.SMTPException, OSError):
                client.close()

    def _login_only(self, config: SmtpConfig) -> None:
        client = self._smtp_factory(config)
        try:
            self._authenticate(client, config.auth)
        finally:
            try:
                client.quit()
            except (smtplib.SMTPException, OSError):
                client.close()

    @staticmethod
    def _authenticate(client: Any, auth: MailAuth) -> None:
        if not auth.uses_oauth:
            client.login(auth.user, auth.password.get_secret_value())
            return
        client.ehlo_or_helo_if_needed()
        code, response = client.docmd("AUTH", "XOAUTH2 " + auth.xoauth2.get_secret_value())
        if code == XOAUTH2_CHALLENGE:
            # Server sent an error challenge; an empty reply ends the exchange
            code, response = client.docmd("")
        if code != XOAUTH2_SUCCESS:
            raise smtplib.SMTPAuthenticationError(code, response)


__all__ = ["MailDispatcher", "OutgoingEmail", "SendResult", "default_smtp_factory"]
