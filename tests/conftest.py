"""Shared test fixtures and fake protocol servers."""

from __future__ import annotations

import smtplib
from datetime import date, datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

import pytest
from imapclient.exceptions import LoginError

from teammail.configuration.settings import ProtocolSettings
from teammail.privacy.encryption import SecretCodec

TEST_KEY = "0123456789abcdef" * 4
FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock(tz=None) -> datetime:
    return FIXED_NOW


# ============================================================================
# Fake IMAP server
# ============================================================================


class _FakeSocket:
    def __init__(self) -> None:
        self.timeouts: List[float] = []

    def settimeout(self, value: float) -> None:
        self.timeouts.append(value)


class FakeImapClient:
    """In-memory stand-in for ``imapclient.IMAPClient``.

    Mirrors real server behaviour that matters to the fetcher, including
    ``UID N:*`` matching the highest UID even when it is below ``N``.
    """

    def __init__(self, password: str = "app-password") -> None:
        self.password = password
        self.messages: Dict[int, bytes] = {}
        self.searches: List[List[Any]] = []
        self.fetches: List[tuple] = []
        self.logins: List[tuple] = []
        self.selected: Optional[str] = None
        self.logged_out = False
        self.shut_down = False
        self.search_error: Optional[Exception] = None
        self.logout_error: Optional[Exception] = None
        self.configs: List[Any] = []
        self._socket = _FakeSocket()

    def factory(self, config: Any) -> "FakeImapClient":
        self.configs.append(config)
        return self

    # imapclient surface -------------------------------------------------

    def capabilities(self) -> List[bytes]:
        return [b"IMAP4rev1"]

    def login(self, user: str, password: str) -> None:
        if password != self.password:
            raise LoginError("[AUTHENTICATIONFAILED] Invalid credentials")
        self.logins.append(("password", user))

    def oauth2_login(self, user: str, access_token: str) -> None:
        self.logins.append(("oauth2", user, access_token))

    def socket(self) -> _FakeSocket:
        return self._socket

    def select_folder(self, folder: str, readonly: bool = False) -> Dict[bytes, Any]:
        self.selected = folder
        return {b"EXISTS": len(self.messages), b"UIDVALIDITY": 1}

    def search(self, criteria: List[Any]) -> List[int]:
        self.searches.append(list(criteria))
        if self.search_error is not None:
            raise self.search_error
        if criteria[0] == "UID":
            start = int(criteria[1].split(":")[0])
            matched = [uid for uid in self.messages if uid >= start]
            if not matched and self.messages:
                matched = [max(self.messages)]
            return sorted(matched)
        return sorted(self.messages)

    def fetch(self, uids: List[int], items: List[str]) -> Dict[int, Dict[bytes, Any]]:
        self.fetches.append((list(uids), list(items)))
        return {
            uid: {b"BODY[]": self.messages[uid], b"SEQ": uid}
            for uid in uids
            if uid in self.messages
        }

    def logout(self) -> None:
        if self.logout_error is not None:
            raise self.logout_error
        self.logged_out = True

    def shutdown(self) -> None:
        self.shut_down = True


# ============================================================================
# Fake SMTP server
# ============================================================================


class FakeSmtp:
    """Records what an ``smtplib.SMTP`` client would have sent."""

    def __init__(self, password: str = "app-password", xoauth2_code: int = 235) -> None:
        self.password = password
        self.xoauth2_code = xoauth2_code
        self.sent: List[EmailMessage] = []
        self.commands: List[tuple] = []
        self.logins: List[tuple] = []
        self.quit_called = False
        self.configs: List[Any] = []

    def factory(self, config: Any) -> "FakeSmtp":
        self.configs.append(config)
        return self

    def login(self, user: str, password: str) -> None:
        if password != self.password:
            raise smtplib.SMTPAuthenticationError(535, b"5.7.8 Bad credentials")
        self.logins.append((user, password))

    def ehlo_or_helo_if_needed(self) -> None:
        pass

    def docmd(self, cmd: str, args: str = "") -> tuple:
        self.commands.append((cmd, args))
        if cmd == "AUTH":
            return self.xoauth2_code, b"ok"
        return 535, b"5.7.8 failed"

    def send_message(self, message: EmailMessage) -> Dict[str, Any]:
        self.sent.append(message)
        return {}

    def quit(self) -> None:
        self.quit_called = True

    def close(self) -> None:
        pass


# ============================================================================
# Message builders
# ============================================================================


def make_raw_email(
    *,
    subject: str = "Leaking tap",
    sender: str = "Alice Martin <alice@example.com>",
    to: str = "support@agency.example",
    text: Optional[str] = "The kitchen tap is leaking.",
    html: Optional[str] = None,
    message_id: str = "<msg-1@example.com>",
    in_reply_to: Optional[str] = None,
    references: Optional[str] = None,
    attachment: Optional[tuple] = None,
) -> bytes:
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to
    msg["Subject"] = subject
    msg["Date"] = "Wed, 01 May 2024 10:00:00 +0000"
    msg["Message-ID"] = message_id
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references
    if text is not None:
        msg.set_content(text)
    if html is not None:
        if text is None:
            msg.set_content(html, subtype="html")
        else:
            msg.add_alternative(html, subtype="html")
    if attachment is not None:
        filename, maintype, subtype, data = attachment
        msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes()


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def codec() -> SecretCodec:
    return SecretCodec(TEST_KEY)


@pytest.fixture
def protocol() -> ProtocolSettings:
    return ProtocolSettings(fetch_batch_size=2)


@pytest.fixture
def fake_imap() -> FakeImapClient:
    return FakeImapClient()


@pytest.fixture
def fake_smtp() -> FakeSmtp:
    return FakeSmtp()


@pytest.fixture
def store(tmp_path, codec):
    from teammail.mailbox.connection_store import ConnectionStateStore

    store = ConnectionStateStore(tmp_path / "teammail.db", codec)
    yield store
    store.close()


@pytest.fixture
def password_request():
    from pydantic import SecretStr

    from teammail.mailbox.connection_store import CreateConnectionRequest

    return CreateConnectionRequest(
        team_id="team-1",
        email_address="support@agency.example",
        provider="custom",
        imap_host="imap.agency.example",
        smtp_host="smtp.agency.example",
        imap_password=SecretStr("app-password"),
        sync_from_date=date(2024, 4, 1),
    )


@pytest.fixture
def oauth_request():
    from teammail.mailbox.connection_store import AuthMethod, CreateConnectionRequest
    from teammail.mailbox.oauth2_flow import OAuthTokens

    return CreateConnectionRequest(
        team_id="team-2",
        email_address="agency@gmail.com",
        provider="gmail",
        auth_method=AuthMethod.OAUTH,
        oauth_tokens=OAuthTokens(
            access_token="old-access",
            refresh_token="refresh-1",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        ),
    )
