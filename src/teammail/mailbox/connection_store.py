"""Persistent state for team mailbox connections.

Each team owns at most one ``TeamEmailConnection``. The row holds the
endpoints, encrypted credential material, and the incremental-sync
watermark (``last_uid``). Plaintext secrets only exist inside
``CreateConnectionRequest`` and are sealed with ``SecretCodec`` before the
INSERT; nothing readable ever reaches the database or the logs.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from pydantic import BaseModel, Field, SecretStr, model_validator

from teammail.errors import ConnectionNotFoundError, InvalidConfigError
from teammail.privacy.encryption import SecretCodec

from .oauth2_flow import OAuthTokens
from .providers import get_provider

logger = logging.getLogger(__name__)

DEFAULT_SYNC_WINDOW = timedelta(days=30)
MAX_ERROR_LENGTH = 1000


class AuthMethod(str, Enum):
    """Credential family used by a connection."""

    PASSWORD = "password"
    OAUTH = "oauth"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TeamEmailConnection(BaseModel):
    """A team's configured mailbox, as persisted."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    team_id: str
    provider: str = "custom"
    email_address: str
    auth_method: AuthMethod

    imap_host: str
    imap_port: int = Field(default=993, gt=0, lt=65536)
    imap_use_ssl: bool = True
    imap_username: str
    imap_password_encrypted: Optional[str] = None

    smtp_host: str
    smtp_port: int = Field(default=465, gt=0, lt=65536)
    smtp_use_tls: bool = True
    smtp_username: str
    smtp_password_encrypted: Optional[str] = None

    oauth_access_token: Optional[str] = Field(default=None, description="Encrypted")
    oauth_refresh_token: Optional[str] = Field(default=None, description="Encrypted")
    oauth_token_expires_at: Optional[datetime] = None

    last_uid: int = Field(default=0, ge=0)
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    sync_from_date: Optional[date] = None
    is_active: bool = True

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_credential_family(self) -> "TeamEmailConnection":
        if self.auth_method == AuthMethod.PASSWORD:
            if self.oauth_access_token or self.oauth_refresh_token:
                raise ValueError("password connections must not carry OAuth tokens")
        elif self.imap_password_encrypted or self.smtp_password_encrypted:
            raise ValueError("oauth connections must not carry passwords")
        return self


class CreateConnectionRequest(BaseModel):
    """Input for ``ConnectionStateStore.create_connection``.

    Endpoint fields left as ``None`` are filled from the provider preset.
    Usernames default to the email address.
    """

    team_id: str
    email_address: str
    provider: str = "custom"
    auth_method: AuthMethod = AuthMethod.PASSWORD

    imap_host: Optional[str] = None
    imap_port: Optional[int] = None
    imap_use_ssl: Optional[bool] = None
    imap_username: Optional[str] = None
    imap_password: Optional[SecretStr] = None

    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None
    smtp_use_tls: Optional[bool] = None
    smtp_username: Optional[str] = None
    smtp_password: Optional[SecretStr] = None

    oauth_tokens: Optional[OAuthTokens] = None
    sync_from_date: Optional[date] = None
    is_active: bool = True

    @model_validator(mode="after")
    def _check_credentials(self) -> "CreateConnectionRequest":
        if self.auth_method == AuthMethod.PASSWORD:
            if self.imap_password is None or not self.imap_password.get_secret_value():
                raise ValueError("imap_password is required for password connections")
            if self.oauth_tokens is not None:
                raise ValueError("password connections must not carry OAuth tokens")
        else:
            if self.oauth_tokens is None or not self.oauth_tokens.refresh_token:
                raise ValueError("oauth connections require tokens with a refresh_token")
            if self.imap_password is not None or self.smtp_password is not None:
                raise ValueError("oauth connections must not carry passwords")
        return self


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


SCHEMA = """
CREATE TABLE IF NOT EXISTS team_email_connections (
    id TEXT PRIMARY KEY,
    team_id TEXT NOT NULL UNIQUE,
    provider TEXT NOT NULL,
    email_address TEXT NOT NULL,
    auth_method TEXT NOT NULL,
    imap_host TEXT NOT NULL,
    imap_port INTEGER NOT NULL,
    imap_use_ssl INTEGER NOT NULL,
    imap_username TEXT NOT NULL,
    imap_password_encrypted TEXT,
    smtp_host TEXT NOT NULL,
    smtp_port INTEGER NOT NULL,
    smtp_use_tls INTEGER NOT NULL,
    smtp_username TEXT NOT NULL,
    smtp_password_encrypted TEXT,
    oauth_access_token TEXT,
    oauth_refresh_token TEXT,
    oauth_token_expires_at TEXT,
    last_uid INTEGER NOT NULL DEFAULT 0,
    last_sync_at TEXT,
    last_error TEXT,
    sync_from_date TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_connections_active ON team_email_connections(is_active);
"""

_COLUMNS = (
    "id, team_id, provider, email_address, auth_method, "
    "imap_host, imap_port, imap_use_ssl, imap_username, imap_password_encrypted, "
    "smtp_host, smtp_port, smtp_use_tls, smtp_username, smtp_password_encrypted, "
    "oauth_access_token, oauth_refresh_token, oauth_token_expires_at, "
    "last_uid, last_sync_at, last_error, sync_from_date, is_active, "
    "created_at, updated_at"
)


def _iso(value: Optional[datetime | date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class ConnectionStateStore:
    """SQLite-backed store for team mailbox connections.

    Writes are serialized through a lock so the store can be shared by the
    concurrent sync tasks of ``MailboxSyncService``.
    """

    def __init__(
        self,
        path: Path,
        codec: SecretCodec,
        *,
        now: Callable[..., datetime] = datetime.now,
    ) -> None:
        """Initialize the store.

        Args:
            path: Path to SQLite database file
            codec: Codec used to seal credentials before persisting
            now: Clock, called as ``now(timezone.utc)``
        """
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()
        self._codec = codec
        self._now = now

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            self._conn.commit()
            self._conn.close()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def build_connection(self, request: CreateConnectionRequest) -> TeamEmailConnection:
        """Apply presets and seal credentials without persisting anything.

        Raises:
            InvalidConfigError: Endpoints missing after applying the preset
            UnknownProviderError: ``request.provider`` has no preset
        """
        preset = get_provider(request.provider)
        now = self._utcnow()

        imap_host = request.imap_host or preset.imap_host
        smtp_host = request.smtp_host or preset.smtp_host
        if not imap_host or not smtp_host:
            raise InvalidConfigError(
                "IMAP and SMTP hosts are required for this provider",
                details={"provider": preset.name, "team_id": request.team_id},
            )

        imap_password_encrypted = smtp_password_encrypted = None
        access_token = refresh_token = None
        expires_at = None
        if request.auth_method == AuthMethod.PASSWORD:
            imap_secret = request.imap_password.get_secret_value()
            smtp_secret = (
                request.smtp_password.get_secret_value()
                if request.smtp_password is not None
                else imap_secret
            )
            imap_password_encrypted = self._codec.encrypt(imap_secret)
            smtp_password_encrypted = self._codec.encrypt(smtp_secret)
        else:
            tokens = request.oauth_tokens
            access_token = self._codec.encrypt(tokens.access_token)
            refresh_token = self._codec.encrypt(tokens.refresh_token)
            expires_at = tokens.expires_at

        connection = TeamEmailConnection(
            team_id=request.team_id,
            provider=preset.name,
            email_address=request.email_address,
            auth_method=request.auth_method,
            imap_host=imap_host,
            imap_port=request.imap_port or preset.imap_port,
            imap_use_ssl=_first_set(request.imap_use_ssl, preset.imap_use_ssl),
            imap_username=request.imap_username or request.email_address,
            imap_password_encrypted=imap_password_encrypted,
            smtp_host=smtp_host,
            smtp_port=request.smtp_port or preset.smtp_port,
            smtp_use_tls=_first_set(request.smtp_use_tls, preset.smtp_use_tls),
            smtp_username=request.smtp_username or request.email_address,
            smtp_password_encrypted=smtp_password_encrypted,
            oauth_access_token=access_token,
            oauth_refresh_token=refresh_token,
            oauth_token_expires_at=expires_at,
            sync_from_date=request.sync_from_date or (now - DEFAULT_SYNC_WINDOW).date(),
            is_active=request.is_active,
            created_at=now,
            updated_at=now,
        )
        return connection

    def create_connection(self, request: CreateConnectionRequest) -> TeamEmailConnection:
        """Persist a new connection with its credentials encrypted.

        Raises:
            InvalidConfigError: Endpoints missing after applying the preset,
                or the team already has a connection
            UnknownProviderError: ``request.provider`` has no preset
        """
        connection = self.build_connection(request)
        try:
            with self._lock:
                with self._conn:
                    self._conn.execute(
                        f"INSERT INTO team_email_connections({_COLUMNS}) "
                        f"VALUES ({', '.join('?' * 25)})",
                        self._to_row(connection),
                    )
        except sqlite3.IntegrityError as exc:
            raise InvalidConfigError(
                "Team already has an email connection",
                details={"team_id": request.team_id},
            ) from exc

        logger.info(
            "Created email connection",
            extra={
                "connection_id": connection.id,
                "team_id": connection.team_id,
                "provider": connection.provider,
                "auth_method": connection.auth_method.value,
            },
        )
        return connection

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_connection(self, connection_id: str) -> TeamEmailConnection:
        rows = self._select("WHERE id = ?", (connection_id,))
        if not rows:
            raise ConnectionNotFoundError(details={"connection_id": connection_id})
        return rows[0]

    def get_connection_for_team(self, team_id: str) -> Optional[TeamEmailConnection]:
        rows = self._select("WHERE team_id = ?", (team_id,))
        return rows[0] if rows else None

    def list_connections(self, team_id: Optional[str] = None) -> List[TeamEmailConnection]:
        if team_id is None:
            return self._select("ORDER BY created_at", ())
        return self._select("WHERE team_id = ? ORDER BY created_at", (team_id,))

    def get_active_connections(self) -> List[TeamEmailConnection]:
        """Connections the scheduler should sync this cycle."""
        return self._select("WHERE is_active = 1 ORDER BY created_at", ())

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_last_uid(self, connection_id: str, uid: int) -> None:
        """Advance the watermark, stamp ``last_sync_at`` and clear ``last_error``.

        The stored value never decreases.
        """
        now = _iso(self._utcnow())
        self._update(
            connection_id,
            """
            UPDATE team_email_connections
            SET last_uid = MAX(last_uid, ?),
                last_sync_at = ?,
                last_error = NULL,
                updated_at = ?
            WHERE id = ?
            """,
            (uid, now, now, connection_id),
        )
        logger.debug(
            "Advanced sync watermark",
            extra={"connection_id": connection_id, "last_uid": uid},
        )

    def record_error(self, connection_id: str, message: str) -> None:
        """Store a failed cycle's error, leaving the watermark untouched."""
        now = _iso(self._utcnow())
        self._update(
            connection_id,
            """
            UPDATE team_email_connections
            SET last_error = ?, last_sync_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (message[:MAX_ERROR_LENGTH], now, now, connection_id),
        )

    def update_oauth_tokens(self, connection_id: str, tokens: OAuthTokens) -> None:
        """Persist refreshed tokens, sealing them first."""
        if tokens.refresh_token is None:
            raise InvalidConfigError(
                "Refreshed tokens must keep the refresh token",
                details={"connection_id": connection_id},
            )
        if self.get_connection(connection_id).auth_method != AuthMethod.OAUTH:
            raise InvalidConfigError(
                "Connection does not use OAuth2",
                details={"connection_id": connection_id},
            )
        now = _iso(self._utcnow())
        self._update(
            connection_id,
            """
            UPDATE team_email_connections
            SET oauth_access_token = ?,
                oauth_refresh_token = ?,
                oauth_token_expires_at = ?,
                updated_at = ?
            WHERE id = ? AND auth_method = 'oauth'
            """,
            (
                self._codec.encrypt(tokens.access_token),
                self._codec.encrypt(tokens.refresh_token),
                _iso(tokens.expires_at),
                now,
                connection_id,
            ),
        )
        logger.info("Stored refreshed OAuth tokens", extra={"connection_id": connection_id})

    def set_active(self, connection_id: str, active: bool) -> None:
        now = _iso(self._utcnow())
        self._update(
            connection_id,
            "UPDATE team_email_connections SET is_active = ?, updated_at = ? WHERE id = ?",
            (int(active), now, connection_id),
        )

    def delete_connection(self, connection_id: str) -> None:
        self._update(
            connection_id,
            "DELETE FROM team_email_connections WHERE id = ?",
            (connection_id,),
        )
        logger.info("Deleted email connection", extra={"connection_id": connection_id})

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _update(self, connection_id: str, sql: str, params: Sequence[Any]) -> None:
        with self._lock:
            with self._conn:
                cur = self._conn.execute(sql, params)
        if cur.rowcount == 0:
            raise ConnectionNotFoundError(details={"connection_id": connection_id})

    def _select(self, clause: str, params: Sequence[Any]) -> List[TeamEmailConnection]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(f"SELECT {_COLUMNS} FROM team_email_connections {clause}", params)
            rows = cur.fetchall()
        return [self._from_row(row) for row in rows]

    @staticmethod
    def _to_row(c: TeamEmailConnection) -> tuple:
        return (
            c.id,
            c.team_id,
            c.provider,
            c.email_address,
            c.auth_method.value,
            c.imap_host,
            c.imap_port,
            int(c.imap_use_ssl),
            c.imap_username,
            c.imap_password_encrypted,
            c.smtp_host,
            c.smtp_port,
            int(c.smtp_use_tls),
            c.smtp_username,
            c.smtp_password_encrypted,
            c.oauth_access_token,
            c.oauth_refresh_token,
            _iso(c.oauth_token_expires_at),
            c.last_uid,
            _iso(c.last_sync_at),
            c.last_error,
            _iso(c.sync_from_date),
            int(c.is_active),
            _iso(c.created_at),
            _iso(c.updated_at),
        )

    @staticmethod
    def _from_row(row: Sequence[Any]) -> TeamEmailConnection:
        return TeamEmailConnection(
            id=row[0],
            team_id=row[1],
            provider=row[2],
            email_address=row[3],
            auth_method=AuthMethod(row[4]),
            imap_host=row[5],
            imap_port=row[6],
            imap_use_ssl=bool(row[7]),
            imap_username=row[8],
            imap_password_encrypted=row[9],
            smtp_host=row[10],
            smtp_port=row[11],
            smtp_use_tls=bool(row[12]),
            smtp_username=row[13],
            smtp_password_encrypted=row[14],
            oauth_access_token=row[15],
            oauth_refresh_token=row[16],
            oauth_token_expires_at=_parse_datetime(row[17]),
            last_uid=row[18],
            last_sync_at=_parse_datetime(row[19]),
            last_error=row[20],
            sync_from_date=date.fromisoformat(row[21]) if row[21] else None,
            is_active=bool(row[22]),
            created_at=_parse_datetime(row[23]),
            updated_at=_parse_datetime(row[24]),
        )

    def _utcnow(self) -> datetime:
        return self._now(timezone.utc)


def _first_set(value: Optional[bool], default: bool) -> bool:
    return default if value is None else value


__all__ = [
    "AuthMethod",
    "ConnectionStateStore",
    "CreateConnectionRequest",
    "TeamEmailConnection",
]
