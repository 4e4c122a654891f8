"""OAuth2 credential lifecycle for team mailboxes.

This module covers the authorization-code flow used to connect a mailbox
with OAuth2 (Gmail by default): building the consent URL, exchanging the
returned code, refreshing and revoking tokens, confirming the account
identity, and sealing the CSRF ``state`` parameter that travels through the
redirect.

Tokens are only ever held in memory here; persistence (encrypted) is the
job of ``ConnectionStateStore``.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, Field, ValidationError

from teammail.errors import (
    InvalidOAuthStateError,
    MissingConfigError,
    SecretError,
    TokenExchangeError,
    TokenRefreshError,
    UserInfoError,
)
from teammail.privacy.encryption import SecretCodec

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_MARGIN = timedelta(minutes=5)
DEFAULT_STATE_MAX_AGE = timedelta(minutes=10)
# Tolerated clock drift for states minted by another process
STATE_CLOCK_SKEW = timedelta(seconds=60)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class OAuthProviderConfig(BaseModel):
    """Endpoints and scopes of an OAuth2 provider supporting XOAUTH2."""

    name: str
    authorization_endpoint: str
    token_endpoint: str
    revocation_endpoint: str
    userinfo_endpoint: str
    scopes: List[str]


GOOGLE_PROVIDER = OAuthProviderConfig(
    name="gmail",
    authorization_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
    token_endpoint="https://oauth2.googleapis.com/token",
    revocation_endpoint="https://oauth2.googleapis.com/revoke",
    userinfo_endpoint="https://www.googleapis.com/oauth2/v2/userinfo",
    scopes=[
        "https://mail.google.com/",  # Full mailbox access (IMAP + SMTP)
        "https://www.googleapis.com/auth/userinfo.email",
    ],
)


class OAuthTokens(BaseModel):
    """In-memory token set. Never persisted unencrypted."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    scope: List[str] = Field(default_factory=list)


class RefreshedAccessToken(BaseModel):
    """Result of a refresh-token grant (the refresh token is not rotated)."""

    access_token: str
    expires_at: datetime


class OAuthState(BaseModel):
    """Payload sealed into the ``state`` parameter."""

    team_id: str
    user_id: str
    timestamp: int = Field(..., description="Milliseconds since the epoch")


class UserInfo(BaseModel):
    """Identity of the account that granted access."""

    id: str
    email: str
    verified_email: bool = False
    picture: Optional[str] = None


class AuthorizationResult(BaseModel):
    """Everything the callback handler needs to create a connection."""

    state: OAuthState
    tokens: OAuthTokens
    user_info: UserInfo


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def generate_xoauth2_token(email: str, access_token: str) -> str:
    """Build the base64 SASL XOAUTH2 initial response for IMAP/SMTP."""
    auth_string = f"user={email}\x01auth=Bearer {access_token}\x01\x01"
    return base64.b64encode(auth_string.encode("utf-8")).decode("ascii")


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _error_fields(response: httpx.Response) -> Dict[str, Optional[str]]:
    try:
        payload = response.json()
    except ValueError:
        return {"error": None, "error_description": response.text[:200] or None}
    if not isinstance(payload, dict):
        return {"error": None, "error_description": None}
    error = payload.get("error")
    # Some providers nest the error object
    if isinstance(error, dict):
        return {
            "error": error.get("status") or str(error.get("code", "")) or None,
            "error_description": error.get("message"),
        }
    return {"error": error, "error_description": payload.get("error_description")}


# ---------------------------------------------------------------------------
# Credential manager
# ---------------------------------------------------------------------------


class OAuthCredentialManager:
    """Authorization-code flow, token refresh and state signing."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        codec: SecretCodec,
        provider: OAuthProviderConfig = GOOGLE_PROVIDER,
        expiry_margin: timedelta = DEFAULT_EXPIRY_MARGIN,
        state_max_age: timedelta = DEFAULT_STATE_MAX_AGE,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Callable[..., datetime] = datetime.now,
    ) -> None:
        """Initialize the manager.

        Args:
            client_id: OAuth client identifier
            client_secret: OAuth client secret
            codec: Codec used to seal the ``state`` parameter
            provider: Provider endpoints (Google by default)
            expiry_margin: Tokens this close to expiry count as expired
            state_max_age: Default validity window of a state parameter
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests inject a mock)
            now: Clock, called as ``now(timezone.utc)``
        """
        self.client_id = client_id
        self._client_secret = client_secret
        self.codec = codec
        self.provider = provider
        self.expiry_margin = expiry_margin
        self.state_max_age = state_max_age
        self.timeout = timeout
        self._transport = transport
        self._now = now

    @classmethod
    def from_settings(
        cls, settings: Any, codec: SecretCodec, **kwargs: Any
    ) -> "OAuthCredentialManager":
        return cls(
            client_id=settings.oauth.client_id,
            client_secret=settings.oauth.client_secret.get_secret_value(),
            codec=codec,
            expiry_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
            state_max_age=timedelta(seconds=settings.oauth_state_max_age_seconds),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Authorization flow
    # ------------------------------------------------------------------

    def generate_authorization_url(
        self, team_id: str, user_id: str, redirect_uri: str
    ) -> str:
        """Build the consent URL carrying a freshly sealed state."""
        self._require_client()
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.provider.scopes),
            "access_type": "offline",  # Request refresh token
            "prompt": "consent",  # Re-issue the refresh token on re-consent
            "state": self.encrypt_state(team_id, user_id),
        }
        return f"{self.provider.authorization_endpoint}?{urlencode(params)}"

    async def exchange_code_for_tokens(self, code: str, redirect_uri: str) -> OAuthTokens:
        """Exchange an authorization code for access and refresh tokens.

        Raises:
            TokenExchangeError: Provider rejected the code or was unreachable
        """
        self._require_client()
        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        payload = await self._post_token(data, TokenExchangeError)
        if not payload.get("refresh_token"):
            logger.warning(
                "Token exchange returned no refresh token",
                extra={"provider": self.provider.name},
            )
        return OAuthTokens(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=self._expiry_from(payload, TokenExchangeError),
            scope=str(payload.get("scope") or "").split(),
        )

    async def refresh_access_token(self, refresh_token: str) -> RefreshedAccessToken:
        """Obtain a new access token; callers keep the original refresh token.

        Raises:
            TokenRefreshError: Provider rejected the refresh token
        """
        self._require_client()
        data = {
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "grant_type": "refresh_token",
        }
        payload = await self._post_token(data, TokenRefreshError)
        logger.info("Refreshed OAuth access token", extra={"provider": self.provider.name})
        return RefreshedAccessToken(
            access_token=payload["access_token"],
            expires_at=self._expiry_from(payload, TokenRefreshError),
        )

    async def revoke_access(self, token: str) -> bool:
        """Best-effort revocation. Returns whether the provider confirmed it."""
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.provider.revocation_endpoint,
                    data={"token": token},
                )
        except httpx.HTTPError as exc:
            logger.warning(f"Token revocation request failed: {type(exc).__name__}")
            return False

        if response.status_code != 200:
            logger.warning(
                f"Token revocation returned {response.status_code}; "
                "token may already be revoked",
                extra={"provider": self.provider.name},
            )
            return False
        return True

    async def get_user_info(self, access_token: str) -> UserInfo:
        """Fetch the identity behind ``access_token``.

        Raises:
            UserInfoError: Token rejected or endpoint unreachable
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(
                    self.provider.userinfo_endpoint,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as exc:
            raise UserInfoError(
                f"User info request failed: {type(exc).__name__}",
                error="network_error",
            ) from exc

        if not response.is_success:
            raise UserInfoError(status_code=response.status_code, **_error_fields(response))
        try:
            return UserInfo.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise UserInfoError("User info response was not understood") from exc

    async def complete_authorization(
        self, *, code: str, state: str, redirect_uri: str
    ) -> AuthorizationResult:
        """Validate ``state`` then exchange ``code`` and confirm the account.

        Raises:
            InvalidOAuthStateError: State is malformed, forged or expired. The
                caller must restart the flow rather than retry.
        """
        decoded = self.decrypt_and_validate_state(state)
        if decoded is None:
            raise InvalidOAuthStateError()
        tokens = await self.exchange_code_for_tokens(code, redirect_uri)
        user_info = await self.get_user_info(tokens.access_token)
        return AuthorizationResult(state=decoded, tokens=tokens, user_info=user_info)

    # ------------------------------------------------------------------
    # State parameter
    # ------------------------------------------------------------------

    def encrypt_state(self, team_id: str, user_id: str) -> str:
        state = OAuthState(
            team_id=team_id,
            user_id=user_id,
            timestamp=int(self._utcnow().timestamp() * 1000),
        )
        return self.codec.encrypt_json(state.model_dump())

    def decrypt_and_validate_state(
        self, state: str, max_age: Optional[timedelta] = None
    ) -> Optional[OAuthState]:
        """Return the decoded state, or ``None`` if it must be rejected."""
        max_age = self.state_max_age if max_age is None else max_age
        try:
            decoded = OAuthState.model_validate(self.codec.decrypt_json(state))
        except (SecretError, ValidationError):
            logger.warning("Rejected OAuth state: undecodable")
            return None

        age_ms = int(self._utcnow().timestamp() * 1000) - decoded.timestamp
        if age_ms > max_age.total_seconds() * 1000:
            logger.warning("Rejected OAuth state: expired", extra={"age_ms": age_ms})
            return None
        if age_ms < -STATE_CLOCK_SKEW.total_seconds() * 1000:
            logger.warning("Rejected OAuth state: issued in the future")
            return None
        return decoded

    # ------------------------------------------------------------------
    # Token helpers
    # ------------------------------------------------------------------

    def generate_xoauth2_token(self, email: str, access_token: str) -> str:
        return generate_xoauth2_token(email, access_token)

    def is_token_expired(self, expires_at: Optional[datetime]) -> bool:
        """True once ``expires_at`` is within the safety margin of now."""
        if expires_at is None:
            return True
        return _ensure_aware(expires_at) - self.expiry_margin <= self._utcnow()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_client(self) -> None:
        if not self.client_id or not self._client_secret:
            raise MissingConfigError(
                "OAuth client id and secret are not configured",
                details={"settings": "oauth.client_id, oauth.client_secret"},
            )

    async def _post_token(self, data: Dict[str, str], error_cls: type) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.provider.token_endpoint, data=data)
        except httpx.HTTPError as exc:
            raise error_cls(
                f"Token endpoint unreachable: {type(exc).__name__}",
                error="network_error",
            ) from exc

        if not response.is_success:
            fields = _error_fields(response)
            logger.error(
                f"Token endpoint returned {response.status_code}",
                extra={"provider": self.provider.name, "error": fields["error"]},
            )
            raise error_cls(status_code=response.status_code, **fields)

        try:
            payload = response.json()
        except ValueError as exc:
            raise error_cls("Token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise error_cls("Token endpoint response has no access_token")
        return payload

    def _expiry_from(self, payload: Dict[str, Any], error_cls: type) -> datetime:
        raw = payload.get("expires_in")
        if raw is None:
            raw = 3600
        try:
            expires_in = int(raw)
        except (TypeError, ValueError) as exc:
            raise error_cls("Token endpoint returned an invalid expires_in") from exc
        return self._utcnow() + timedelta(seconds=expires_in)

    def _utcnow(self) -> datetime:
        return _ensure_aware(self._now(timezone.utc))


__all__ = [
    "AuthorizationResult",
    "GOOGLE_PROVIDER",
    "OAuthCredentialManager",
    "OAuthProviderConfig",
    "OAuthState",
    "OAuthTokens",
    "RefreshedAccessToken",
    "UserInfo",
    "generate_xoauth2_token",
]
