"""Centralized error definitions for teammail.

Every failure the engine surfaces derives from ``TeamMailError`` so callers
(the scheduler, the OAuth callback handler, the CLI) can catch a single base
class and still branch on ``code``.

Usage:
    from teammail.errors import TeamMailError, MissingCredentialError

    try:
        result = await fetcher.fetch_new_emails(connection)
    except TeamMailError as e:
        store.record_error(connection.id, e.safe_message)

Error payloads never carry secrets: ``details`` holds identifiers and
provider error codes only.
"""

from __future__ import annotations

from teammail.errors.user_messages import (
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class TeamMailError(Exception):
    """Base exception for all teammail errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether retrying on a later cycle can succeed
        details: Additional non-sensitive error details
    """

    code: str = "TEAMMAIL_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        """Get recovery suggestion."""
        return get_recovery_suggestion(self)

    @property
    def safe_message(self) -> str:
        """Message suitable for persisting as ``last_error``."""
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(TeamMailError):
    """Base error for configuration problems. Never retried automatically."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"
    recoverable = False


class InvalidConfigError(ConfigurationError):
    """Configuration failed validation."""

    code = "INVALID_CONFIG"
    default_message = "Invalid configuration"


class MissingConfigError(ConfigurationError):
    """A required configuration value is absent."""

    code = "MISSING_CONFIG"
    default_message = "Required configuration is missing"


class InvalidEncryptionKeyError(ConfigurationError):
    """The symmetric key is not exactly 32 bytes of hex."""

    code = "INVALID_ENCRYPTION_KEY"
    default_message = "Encryption key must be 64 hexadecimal characters (32 bytes)"


class MissingCredentialError(ConfigurationError):
    """A connection lacks the credentials its auth method requires."""

    code = "MISSING_CREDENTIAL"
    default_message = "Connection is missing credentials for its auth method"


class UnknownProviderError(ConfigurationError):
    """No preset exists for the requested mail provider."""

    code = "UNKNOWN_PROVIDER"
    default_message = "Unknown mail provider"


# =============================================================================
# Secret Errors
# =============================================================================


class SecretError(TeamMailError):
    """Base error for encrypted secret handling."""

    code = "SECRET_ERROR"
    default_message = "Secret could not be processed"
    recoverable = False


class MalformedSecretError(SecretError):
    """Encrypted value is not an ``iv:tag:ciphertext`` triple."""

    code = "MALFORMED_SECRET"
    default_message = "Encrypted secret is malformed"


class AuthenticationTagError(SecretError):
    """Authentication tag did not verify (corruption or wrong key)."""

    code = "AUTHENTICATION_TAG_MISMATCH"
    default_message = "Encrypted secret failed authentication"


# =============================================================================
# OAuth Errors
# =============================================================================


class OAuthError(TeamMailError):
    """Base error for OAuth2 operations."""

    code = "OAUTH_ERROR"
    default_message = "OAuth operation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        error: str | None = None,
        error_description: str | None = None,
        status_code: int | None = None,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        merged = dict(details or {})
        if error:
            merged["error"] = error
        if error_description:
            merged["error_description"] = error_description
        if status_code is not None:
            merged["status_code"] = status_code
        super().__init__(message, user_message=user_message, details=merged)


class TokenExchangeError(OAuthError):
    """Authorization code could not be exchanged for tokens."""

    code = "TOKEN_EXCHANGE_FAILED"
    default_message = "Failed to exchange authorization code"


class TokenRefreshError(OAuthError):
    """Refresh-token grant was rejected."""

    code = "TOKEN_REFRESH_FAILED"
    default_message = "Failed to refresh access token"


class UserInfoError(OAuthError):
    """Identity endpoint rejected the access token."""

    code = "USER_INFO_FAILED"
    default_message = "Failed to fetch account identity"


class InvalidOAuthStateError(OAuthError):
    """State parameter was malformed, forged, or expired."""

    code = "INVALID_OAUTH_STATE"
    default_message = "Authorization state is invalid or expired"
    recoverable = False


# =============================================================================
# Mailbox Errors
# =============================================================================


class MailboxError(TeamMailError):
    """Base error for IMAP/SMTP protocol operations."""

    code = "MAILBOX_ERROR"
    default_message = "Mailbox operation failed"


class MailboxConnectionError(MailboxError):
    """Could not reach the mail server (DNS, TCP, TLS, timeout)."""

    code = "MAILBOX_CONNECTION_ERROR"
    default_message = "Could not connect to the mail server"


class MailboxAuthenticationError(MailboxError):
    """Server rejected the credentials."""

    code = "MAILBOX_AUTH_FAILED"
    default_message = "Mail server rejected the credentials"


class MailboxProtocolError(MailboxError):
    """Search, select or fetch failed mid-session."""

    code = "MAILBOX_PROTOCOL_ERROR"
    default_message = "Mail server returned an error"


class SessionStateError(MailboxError):
    """An IMAP session operation was attempted in the wrong state."""

    code = "SESSION_STATE_ERROR"
    default_message = "Invalid IMAP session state transition"
    recoverable = False


class MailDispatchError(MailboxError):
    """Outbound message could not be submitted."""

    code = "MAIL_DISPATCH_FAILED"
    default_message = "Failed to send email"


class MessageParseError(MailboxError):
    """A single fetched message could not be parsed as MIME."""

    code = "MESSAGE_PARSE_ERROR"
    default_message = "Email message could not be parsed"


# =============================================================================
# Store Errors
# =============================================================================


class StoreError(TeamMailError):
    """Base error for persisted connection state."""

    code = "STORE_ERROR"
    default_message = "Connection store operation failed"


class ConnectionNotFoundError(StoreError):
    """No connection with the given identifier exists."""

    code = "CONNECTION_NOT_FOUND"
    default_message = "Email connection not found"
    recoverable = False


# =============================================================================
# Error Handler
# =============================================================================


def handle_error(error: Exception) -> str:
    """Handle an error and return a user-friendly message.

    Args:
        error: The exception to handle

    Returns:
        User-friendly error message with recovery suggestion
    """
    return format_error_for_user(error)


def is_recoverable(error: Exception) -> bool:
    """Check if an error may succeed on a later cycle.

    Unknown exceptions (socket errors, timeouts) count as recoverable since
    the watermark has not moved.
    """
    if isinstance(error, TeamMailError):
        return error.recoverable
    return True


__all__ = [
    # Base
    "TeamMailError",
    # Configuration
    "ConfigurationError",
    "InvalidConfigError",
    "MissingConfigError",
    "InvalidEncryptionKeyError",
    "MissingCredentialError",
    "UnknownProviderError",
    # Secrets
    "SecretError",
    "MalformedSecretError",
    "AuthenticationTagError",
    # OAuth
    "OAuthError",
    "TokenExchangeError",
    "TokenRefreshError",
    "UserInfoError",
    "InvalidOAuthStateError",
    # Mailbox
    "MailboxError",
    "MailboxConnectionError",
    "MailboxAuthenticationError",
    "MailboxProtocolError",
    "SessionStateError",
    "MailDispatchError",
    "MessageParseError",
    # Store
    "StoreError",
    "ConnectionNotFoundError",
    # Handlers
    "handle_error",
    "is_recoverable",
]
