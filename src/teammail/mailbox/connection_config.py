"""Turn a stored connection into live IMAP/SMTP session parameters.

Resolution decrypts credentials for the duration of one operation and, for
OAuth connections, refreshes an expiring access token exactly once. The
refreshed token set is handed back to the caller instead of being written
here, so the sync cycle decides when it is persisted.
"""

from __future__ import annotations

import logging
import ssl
from typing import Optional, Tuple, Union

import certifi
from pydantic import BaseModel, Field, SecretStr

from teammail.configuration.settings import ProtocolSettings
from teammail.errors import MissingConfigError, MissingCredentialError
from teammail.privacy.encryption import SecretCodec

from .connection_store import AuthMethod, TeamEmailConnection
from .oauth2_flow import OAuthCredentialManager, OAuthTokens, generate_xoauth2_token

logger = logging.getLogger(__name__)


class TlsOptions(BaseModel):
    """Certificate policy for a session."""

    verify: bool = True
    minimum_version: str = "TLSv1_2"

    def create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = getattr(ssl.TLSVersion, self.minimum_version)
        if self.verify:
            context.check_hostname = True
            context.verify_mode = ssl.CERT_REQUIRED
        else:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context


class MailAuth(BaseModel):
    """Either a password or an OAuth2 access token, never both."""

    user: str
    password: Optional[SecretStr] = None
    access_token: Optional[SecretStr] = None
    xoauth2: Optional[SecretStr] = Field(
        default=None, description="Base64 SASL XOAUTH2 initial response"
    )

    @property
    def uses_oauth(self) -> bool:
        return self.access_token is not None


class ImapConfig(BaseModel):
    host: str
    port: int
    secure: bool
    auth: MailAuth
    connect_timeout: float = 30.0
    auth_timeout: float = 10.0
    socket_timeout: float = 120.0
    tls: TlsOptions = Field(default_factory=TlsOptions)


class SmtpConfig(BaseModel):
    host: str
    port: int
    secure: bool = Field(..., description="Implicit TLS; otherwise STARTTLS when offered")
    auth: MailAuth
    from_address: str
    timeout: float = 30.0
    tls: TlsOptions = Field(default_factory=TlsOptions)


class ResolvedConfig(BaseModel):
    """Session parameters plus any tokens refreshed while resolving them."""

    config: Union[ImapConfig, SmtpConfig]
    refreshed_tokens: Optional[OAuthTokens] = None


class ConnectionConfigResolver:
    """Build session configs from ``TeamEmailConnection`` rows."""

    def __init__(
        self,
        codec: SecretCodec,
        oauth: Optional[OAuthCredentialManager] = None,
        protocol: Optional[ProtocolSettings] = None,
    ) -> None:
        self.codec = codec
        self.oauth = oauth
        self.protocol = protocol or ProtocolSettings()

    async def resolve_imap_config(self, connection: TeamEmailConnection) -> ResolvedConfig:
        """Resolve IMAP parameters, refreshing the OAuth token if it is expiring.

        Raises:
            MissingCredentialError: Credentials for the auth method are absent
            TokenRefreshError: The provider rejected the refresh token
        """
        auth, refreshed = await self._resolve_auth(
            connection,
            user=connection.imap_username,
            password_encrypted=connection.imap_password_encrypted,
        )
        config = ImapConfig(
            host=connection.imap_host,
            port=connection.imap_port,
            secure=connection.imap_use_ssl,
            auth=auth,
            connect_timeout=self.protocol.connect_timeout_seconds,
            auth_timeout=self.protocol.auth_timeout_seconds,
            socket_timeout=self.protocol.socket_timeout_seconds,
            tls=self._tls_options(),
        )
        return ResolvedConfig(config=config, refreshed_tokens=refreshed)

    async def resolve_smtp_config(self, connection: TeamEmailConnection) -> ResolvedConfig:
        """Resolve SMTP parameters; same credential rules as IMAP."""
        auth, refreshed = await self._resolve_auth(
            connection,
            user=connection.smtp_username,
            password_encrypted=connection.smtp_password_encrypted,
        )
        config = SmtpConfig(
            host=connection.smtp_host,
            port=connection.smtp_port,
            secure=connection.smtp_use_tls,
            auth=auth,
            from_address=connection.email_address,
            timeout=self.protocol.connect_timeout_seconds,
            tls=self._tls_options(),
        )
        return ResolvedConfig(config=config, refreshed_tokens=refreshed)

    async def _resolve_auth(
        self,
        connection: TeamEmailConnection,
        *,
        user: str,
        password_encrypted: Optional[str],
    ) -> Tuple[MailAuth, Optional[OAuthTokens]]:
        if connection.auth_method == AuthMethod.PASSWORD:
            if not password_encrypted:
                raise MissingCredentialError(
                    "Password connection has no stored password",
                    details={"connection_id": connection.id},
                )
            return MailAuth(user=user, password=SecretStr(self.codec.decrypt(password_encrypted))), None

        if not connection.oauth_access_token or not connection.oauth_refresh_token:
            raise MissingCredentialError(
                "OAuth connection has no stored tokens",
                details={"connection_id": connection.id},
            )
        if self.oauth is None:
            raise MissingConfigError(
                "OAuth connections require an OAuth client",
                details={"connection_id": connection.id},
            )

        access_token = self.codec.decrypt(connection.oauth_access_token)
        refreshed: Optional[OAuthTokens] = None
        if self.oauth.is_token_expired(connection.oauth_token_expires_at):
            refresh_token = self.codec.decrypt(connection.oauth_refresh_token)
            result = await self.oauth.refresh_access_token(refresh_token)
            access_token = result.access_token
            refreshed = OAuthTokens(
                access_token=result.access_token,
                refresh_token=refresh_token,
                expires_at=result.expires_at,
            )
            logger.info(
                "Access token expiring; refreshed before session",
                extra={"connection_id": connection.id},
            )

        # XOAUTH2 identifies the mailbox by address, not login name
        auth = MailAuth(
            user=connection.email_address,
            access_token=SecretStr(access_token),
            xoauth2=SecretStr(generate_xoauth2_token(connection.email_address, access_token)),
        )
        return auth, refreshed

    def _tls_options(self) -> TlsOptions:
        return TlsOptions(verify=self.protocol.reject_unauthorized)


__all__ = [
    "ConnectionConfigResolver",
    "ImapConfig",
    "MailAuth",
    "ResolvedConfig",
    "SmtpConfig",
    "TlsOptions",
]
