"""IMAP session lifecycle for one sync cycle.

An ``ImapSession`` wraps a single ``imapclient.IMAPClient`` and walks an
explicit state machine::

    DISCONNECTED -> CONNECTED -> FOLDER_OPEN -> SEARCHING -> FETCHING -> CLOSED

Every transition is a coroutine; the blocking imapclient call runs in a
worker thread so the event loop keeps serving other mailboxes. Sessions
are opened per cycle and never pooled.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import ssl
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError
from imapclient.imapclient import SocketTimeout

from teammail.errors import (
    MailboxAuthenticationError,
    MailboxConnectionError,
    MailboxProtocolError,
    SessionStateError,
)

from .connection_config import ImapConfig

logger = logging.getLogger(__name__)

BODY_PEEK = "BODY.PEEK[]"
BODY_KEY = b"BODY[]"


class SessionState(str, Enum):
    """Lifecycle states for an IMAP session."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    FOLDER_OPEN = "folder_open"
    SEARCHING = "searching"
    FETCHING = "fetching"
    CLOSED = "closed"


_ALLOWED_TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.DISCONNECTED: frozenset({SessionState.CONNECTED, SessionState.CLOSED}),
    SessionState.CONNECTED: frozenset({SessionState.FOLDER_OPEN, SessionState.CLOSED}),
    SessionState.FOLDER_OPEN: frozenset({SessionState.SEARCHING, SessionState.CLOSED}),
    SessionState.SEARCHING: frozenset({SessionState.FETCHING, SessionState.CLOSED}),
    SessionState.FETCHING: frozenset({SessionState.FETCHING, SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


def default_client_factory(config: ImapConfig) -> IMAPClient:
    """Open the TCP/TLS connection described by ``config``."""
    ssl_context = config.tls.create_ssl_context()
    client = IMAPClient(
        host=config.host,
        port=config.port,
        ssl=config.secure,
        ssl_context=ssl_context,
        timeout=SocketTimeout(connect=config.connect_timeout, read=config.auth_timeout),
        use_uid=True,
    )
    try:
        if not config.secure and b"STARTTLS" in client.capabilities():
            client.starttls(ssl_context)
    except (IMAPClientError, OSError):
        client.shutdown()
        raise
    return client


class ImapSession:
    """One authenticated IMAP session bound to a single folder.

    Use as an async context manager; the session is always closed on exit::

        async with ImapSession(config) as session:
            await session.open_folder("INBOX")
            uids = await session.search(["UNSEEN"])
    """

    def __init__(
        self,
        config: ImapConfig,
        *,
        client_factory: Callable[[ImapConfig], Any] = default_client_factory,
        connection_id: Optional[str] = None,
    ) -> None:
        self.config = config
        self._client_factory = client_factory
        self._connection_id = connection_id
        self._client: Any = None
        self.state = SessionState.DISCONNECTED
        self.folder: Optional[str] = None

    async def __aenter__(self) -> "ImapSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection and authenticate."""
        self._require(SessionState.CONNECTED)
        try:
            self._client = await asyncio.to_thread(self._client_factory, self.config)
        except (socket.timeout, ssl.SSLError, OSError, IMAPClientError) as exc:
            raise MailboxConnectionError(
                f"Could not connect to {self.config.host}:{self.config.port}: "
                f"{type(exc).__name__}",
                details=self._details(),
            ) from exc
        # From here on close() must run even if login fails
        self.state = SessionState.CONNECTED
        try:
            await asyncio.to_thread(self._login)
        except LoginError as exc:
            await self.close()
            raise MailboxAuthenticationError(details=self._details()) from exc
        except (socket.timeout, OSError, IMAPClientError) as exc:
            await self.close()
            raise MailboxConnectionError(
                f"Authentication did not complete: {type(exc).__name__}",
                details=self._details(),
            ) from exc
        logger.debug("IMAP session authenticated", extra=self._details())

    async def open_folder(self, folder: str) -> int:
        """Select ``folder`` read-only. Returns the EXISTS count."""
        self._require(SessionState.FOLDER_OPEN)
        response = await self._call(self._client.select_folder, folder, readonly=True)
        self.folder = folder
        self.state = SessionState.FOLDER_OPEN
        return int(response.get(b"EXISTS", 0))

    async def search(self, criteria: Sequence[Any]) -> List[int]:
        """Run a UID SEARCH in the open folder."""
        self._require(SessionState.SEARCHING)
        self.state = SessionState.SEARCHING
        uids = await self._call(self._client.search, list(criteria))
        return sorted(int(uid) for uid in uids)

    async def fetch(self, uids: Iterable[int]) -> Dict[int, bytes]:
        """Fetch raw RFC 822 bytes without setting ``\\Seen``.

        UIDs the server did not return (expunged meanwhile) are absent from
        the result.
        """
        self._require(SessionState.FETCHING)
        self.state = SessionState.FETCHING
        uid_list = list(uids)
        if not uid_list:
            return {}
        response = await self._call(self._client.fetch, uid_list, [BODY_PEEK])
        messages: Dict[int, bytes] = {}
        for uid, data in response.items():
            raw = data.get(BODY_KEY)
            if raw is not None:
                messages[int(uid)] = raw
        return messages

    async def close(self) -> None:
        """Log out, falling back to a socket shutdown. Safe to call twice."""
        if self.state == SessionState.CLOSED:
            return
        client, self._client = self._client, None
        self.state = SessionState.CLOSED
        if client is None:
            return
        try:
            await asyncio.to_thread(client.logout)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                f"Error during logout: {type(exc).__name__}", extra=self._details()
            )
            try:
                await asyncio.to_thread(client.shutdown)
            except Exception:  # noqa: BLE001
                logger.debug("Socket shutdown after failed logout also failed")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _login(self) -> None:
        auth = self.config.auth
        if auth.uses_oauth:
            self._client.oauth2_login(auth.user, auth.access_token.get_secret_value())
        else:
            self._client.login(auth.user, auth.password.get_secret_value())
        sock = self._client.socket() if hasattr(self._client, "socket") else None
        if sock is not None:
            sock.settimeout(self.config.socket_timeout)

    def _require(self, target: SessionState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise SessionStateError(
                f"Cannot move IMAP session from {self.state.value} to {target.value}",
                details={"from": self.state.value, "to": target.value},
            )

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except IMAPClientError as exc:
            raise MailboxProtocolError(
                f"IMAP command failed: {exc}", details=self._details()
            ) from exc
        except (socket.timeout, OSError) as exc:
            raise MailboxConnectionError(
                f"IMAP connection lost: {type(exc).__name__}", details=self._details()
            ) from exc

    def _details(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {"host": self.config.host, "port": self.config.port}
        if self._connection_id:
            details["connection_id"] = self._connection_id
        return details


__all__ = ["ImapSession", "SessionState", "default_client_factory"]
