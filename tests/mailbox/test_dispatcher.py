"""Tests for outbound SMTP submission."""

from __future__ import annotations

import base64
import smtplib
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest
from pydantic import ValidationError

from teammail.errors import (
    MailboxAuthenticationError,
    MailboxConnectionError,
    MailDispatchError,
)
from teammail.mailbox.connection_config import ConnectionConfigResolver
from teammail.mailbox.dispatcher import MailDispatcher, OutgoingEmail
from teammail.mailbox.oauth2_flow import OAuthCredentialManager

from tests.conftest import FIXED_NOW, FakeSmtp, fixed_clock


@pytest.fixture
def connection(store, password_request):
    return store.create_connection(password_request)


@pytest.fixture
def dispatcher(codec, fake_smtp):
    return MailDispatcher(
        ConnectionConfigResolver(codec), smtp_factory=fake_smtp.factory, now=fixed_clock
    )


@pytest.fixture
def oauth_dispatcher(codec, fake_smtp):
    manager = OAuthCredentialManager(
        client_id="client-id",
        client_secret="client-secret",
        codec=codec,
        transport=httpx.MockTransport(
            lambda r: httpx.Response(200, json={"access_token": "fresh-access", "expires_in": 3600})
        ),
    )
    return MailDispatcher(
        ConnectionConfigResolver(codec, manager), smtp_factory=fake_smtp.factory, now=fixed_clock
    )


def _reply(**kwargs) -> OutgoingEmail:
    fields = {
        "to": "alice@example.com",
        "subject": "Re: Leaking tap",
        "text": "A plumber is on the way.",
        "in_reply_to": "<root@example.com>",
        "references": "<root@example.com> <second@example.com>",
    }
    fields.update(kwargs)
    return OutgoingEmail(**fields)


class TestSendEmail:
    @pytest.mark.asyncio
    async def test_password_send(self, dispatcher, fake_smtp, connection):
        result = await dispatcher.send_email(connection, _reply())

        assert fake_smtp.logins == [("support@agency.example", "app-password")]
        assert len(fake_smtp.sent) == 1
        message = fake_smtp.sent[0]
        assert message["From"] == "support@agency.example"
        assert message["To"] == "alice@example.com"
        assert message["Subject"] == "Re: Leaking tap"
        assert message["Date"] == format_datetime(FIXED_NOW)
        assert message["Message-ID"] == result.message_id
        assert result.message_id.endswith("@agency.example>")
        assert result.refreshed_tokens is None
        assert fake_smtp.quit_called is True
        assert fake_smtp.configs[0].secure is True

    @pytest.mark.asyncio
    async def test_threading_headers_copied_verbatim(self, dispatcher, fake_smtp, connection):
        await dispatcher.send_email(connection, _reply())

        message = fake_smtp.sent[0]
        assert message["In-Reply-To"] == "<root@example.com>"
        assert message["References"] == "<root@example.com> <second@example.com>"

    @pytest.mark.asyncio
    async def test_new_thread_has_no_threading_headers(self, dispatcher, fake_smtp, connection):
        await dispatcher.send_email(connection, _reply(in_reply_to=None, references=None))

        message = fake_smtp.sent[0]
        assert message["In-Reply-To"] is None
        assert message["References"] is None

    @pytest.mark.asyncio
    async def test_html_alternative_and_cc(self, dispatcher, fake_smtp, connection):
        await dispatcher.send_email(
            connection, _reply(html="<p>A plumber is on the way.</p>", cc=["ops@agency.example"])
        )

        message = fake_smtp.sent[0]
        assert message["Cc"] == "ops@agency.example"
        assert message.get_content_type() == "multipart/alternative"
        assert "plumber" in message.get_body(("html",)).get_content()
        assert "plumber" in message.get_body(("plain",)).get_content()

    @pytest.mark.asyncio
    async def test_wrong_password(self, codec, store, password_request):
        server = FakeSmtp(password="rotated")
        dispatcher = MailDispatcher(ConnectionConfigResolver(codec), smtp_factory=server.factory)
        connection = store.create_connection(password_request)

        with pytest.raises(MailboxAuthenticationError) as exc_info:
            await dispatcher.send_email(connection, _reply())

        assert exc_info.value.details["smtp_code"] == 535
        assert "app-password" not in repr(exc_info.value.to_dict())
        assert server.sent == []

    @pytest.mark.asyncio
    async def test_recipient_refused(self, dispatcher, fake_smtp, connection):
        def _refuse(message):
            raise smtplib.SMTPRecipientsRefused({"alice@example.com": (550, b"No such user")})

        fake_smtp.send_message = _refuse
        with pytest.raises(MailDispatchError):
            await dispatcher.send_email(connection, _reply())
        assert fake_smtp.quit_called is True

    @pytest.mark.asyncio
    async def test_server_disconnected(self, dispatcher, fake_smtp, connection):
        def _drop(message):
            raise smtplib.SMTPServerDisconnected("Connection unexpectedly closed")

        fake_smtp.send_message = _drop
        with pytest.raises(MailboxConnectionError):
            await dispatcher.send_email(connection, _reply())

    @pytest.mark.asyncio
    async def test_unreachable(self, codec, connection):
        def _refuse(config):
            raise ConnectionRefusedError("refused")

        dispatcher = MailDispatcher(ConnectionConfigResolver(codec), smtp_factory=_refuse)
        with pytest.raises(MailboxConnectionError):
            await dispatcher.send_email(connection, _reply())


class TestXOAuth2:
    @pytest.mark.asyncio
    async def test_xoauth2_command(self, oauth_dispatcher, fake_smtp, store, oauth_request):
        connection = store.create_connection(oauth_request)

        result = await oauth_dispatcher.send_email(connection, _reply())

        assert fake_smtp.logins == []
        cmd, args = fake_smtp.commands[0]
        assert cmd == "AUTH"
        mechanism, token = args.split(" ", 1)
        assert mechanism == "XOAUTH2"
        assert base64.b64decode(token).decode() == (
            "user=agency@gmail.com\x01auth=Bearer old-access\x01\x01"
        )
        assert result.refreshed_tokens is None
        assert len(fake_smtp.sent) == 1

    @pytest.mark.asyncio
    async def test_refreshed_tokens_returned(self, oauth_dispatcher, store, oauth_request):
        connection = store.create_connection(oauth_request).model_copy(
            update={"oauth_token_expires_at": datetime.now(timezone.utc) - timedelta(minutes=1)}
        )

        result = await oauth_dispatcher.send_email(connection, _reply())

        assert result.refreshed_tokens.access_token == "fresh-access"
        assert result.refreshed_tokens.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_challenge_then_failure(self, oauth_dispatcher, fake_smtp, store, oauth_request):
        fake_smtp.xoauth2_code = 334
        connection = store.create_connection(oauth_request)

        with pytest.raises(MailboxAuthenticationError):
            await oauth_dispatcher.send_email(connection, _reply())

        assert [c[0] for c in fake_smtp.commands] == ["AUTH", ""]
        assert fake_smtp.sent == []


class TestVerify:
    @pytest.mark.asyncio
    async def test_verify_logs_in_only(self, dispatcher, fake_smtp, connection):
        await dispatcher.verify(connection)
        assert fake_smtp.logins == [("support@agency.example", "app-password")]
        assert fake_smtp.sent == []
        assert fake_smtp.quit_called is True

    @pytest.mark.asyncio
    async def test_verify_rejected(self, codec, connection):
        dispatcher = MailDispatcher(
            ConnectionConfigResolver(codec), smtp_factory=FakeSmtp(password="x").factory
        )
        with pytest.raises(MailboxAuthenticationError):
            await dispatcher.verify(connection)


class TestOutgoingEmail:
    def test_single_recipient_coerced(self):
        assert _reply().to == ["alice@example.com"]

    def test_requires_recipient(self):
        with pytest.raises(ValidationError):
            OutgoingEmail(to=[], subject="s", text="t")

    def test_requires_body(self):
        with pytest.raises(ValidationError):
            OutgoingEmail(to="a@b.c", subject="s")

    def test_html_only_allowed(self):
        assert OutgoingEmail(to="a@b.c", subject="s", html="<p>x</p>").text == ""

    @pytest.mark.parametrize(
        "field, value",
        [
            ("subject", "Hello\r\nBcc: victim@example.com"),
            ("in_reply_to", "<root@example.com>\nX-Injected: 1"),
            ("references", "<a@x>\r<b@x>"),
            ("to", ["alice@example.com\nBcc: victim@example.com"]),
        ],
    )
    def test_rejects_line_breaks_in_headers(self, field, value):
        fields = {"to": "alice@example.com", "subject": "s", "text": "t", field: value}
        with pytest.raises(ValidationError):
            OutgoingEmail(**fields)


class _BrokenStartTls:
    instances: list = []

    def __init__(self, *args, **kwargs) -> None:
        self.closed = False
        _BrokenStartTls.instances.append(self)

    def ehlo(self):
        return 250, b"ok"

    def has_extn(self, name):
        return name == "starttls"

    def starttls(self, context=None):
        raise smtplib.SMTPNotSupportedError("STARTTLS extension not supported by server.")

    def close(self):
        self.closed = True


class TestDefaultSmtpFactory:
    def test_failed_starttls_closes_socket(self, monkeypatch):
        from teammail.mailbox import dispatcher as dispatcher_module
        from teammail.mailbox.connection_config import MailAuth, SmtpConfig

        _BrokenStartTls.instances = []
        monkeypatch.setattr(dispatcher_module.smtplib, "SMTP", _BrokenStartTls)
        config = SmtpConfig(
            host="smtp.agency.example",
            port=587,
            secure=False,
            auth=MailAuth(user="desk@agency.example"),
            from_address="desk@agency.example",
        )

        with pytest.raises(smtplib.SMTPNotSupportedError):
            dispatcher_module.default_smtp_factory(config)

        assert _BrokenStartTls.instances[0].closed is True
