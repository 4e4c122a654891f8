"""User-friendly error messages for teammail.

Maps error codes to human-readable messages and recovery suggestions. The
UI layer that renders these lives outside this package; the CLI uses them
directly.

Privacy Note:
- Messages NEVER include passwords, tokens or message content
- Detail keys that look like secrets are filtered before display
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    "INVALID_CONFIG": "The configuration is invalid. Check settings.",
    "MISSING_CONFIG": "Required configuration is missing.",
    "INVALID_ENCRYPTION_KEY": "The encryption key is not a valid 256-bit key.",
    "MISSING_CREDENTIAL": "This mailbox connection has no usable credentials.",
    "UNKNOWN_PROVIDER": "This email provider isn't supported.",
    # Secret errors
    "SECRET_ERROR": "A stored credential couldn't be read.",
    "MALFORMED_SECRET": "A stored credential is corrupted.",
    "AUTHENTICATION_TAG_MISMATCH": "A stored credential failed its integrity check.",
    # OAuth errors
    "OAUTH_ERROR": "The mailbox authorization failed.",
    "TOKEN_EXCHANGE_FAILED": "We couldn't complete the mailbox authorization.",
    "TOKEN_REFRESH_FAILED": "The mailbox authorization has expired or was revoked.",
    "USER_INFO_FAILED": "We couldn't confirm the mailbox account.",
    "INVALID_OAUTH_STATE": "The authorization request expired or was tampered with.",
    # Mailbox errors
    "MAILBOX_ERROR": "A mailbox operation failed.",
    "MAILBOX_CONNECTION_ERROR": "We couldn't reach the mail server.",
    "MAILBOX_AUTH_FAILED": "The mail server rejected the login.",
    "MAILBOX_PROTOCOL_ERROR": "The mail server returned an error.",
    "SESSION_STATE_ERROR": "An internal mailbox session error occurred.",
    "MAIL_DISPATCH_FAILED": "The email couldn't be sent.",
    "MESSAGE_PARSE_ERROR": "An email couldn't be read and was set aside.",
    # Store errors
    "STORE_ERROR": "The mailbox settings couldn't be saved.",
    "CONNECTION_NOT_FOUND": "This mailbox connection no longer exists.",
    # Generic
    "TEAMMAIL_ERROR": "An unexpected error occurred.",
    "UNKNOWN_ERROR": "Something went wrong.",
}


RECOVERY_SUGGESTIONS: dict[str, str] = {
    # Configuration errors
    "CONFIGURATION_ERROR": "Check ~/.teammail/config.json and the TEAMMAIL_* environment.",
    "INVALID_CONFIG": "Fix the reported field in ~/.teammail/config.json or the TEAMMAIL_* environment.",
    "MISSING_CONFIG": "Set the missing TEAMMAIL_* environment variable.",
    "INVALID_ENCRYPTION_KEY": "Generate a key with: teammail generate-key",
    "MISSING_CREDENTIAL": "Reconnect the mailbox to store fresh credentials.",
    "UNKNOWN_PROVIDER": "Use the 'custom' provider and enter the IMAP/SMTP servers manually.",
    # Secret errors
    "SECRET_ERROR": "Reconnect the mailbox.",
    "MALFORMED_SECRET": "Reconnect the mailbox to re-encrypt its credentials.",
    "AUTHENTICATION_TAG_MISMATCH": "Check that TEAMMAIL_ENCRYPTION_KEY matches the key used when the mailbox was connected.",
    # OAuth errors
    "OAUTH_ERROR": "Restart the mailbox connection flow.",
    "TOKEN_EXCHANGE_FAILED": "Restart the mailbox connection flow.",
    "TOKEN_REFRESH_FAILED": "Reconnect the mailbox to grant access again.",
    "USER_INFO_FAILED": "Restart the mailbox connection flow.",
    "INVALID_OAUTH_STATE": "Start the authorization again from the settings page.",
    # Mailbox errors
    "MAILBOX_ERROR": "The next sync will retry automatically.",
    "MAILBOX_CONNECTION_ERROR": "Check the IMAP/SMTP host, port and TLS settings. The next sync will retry.",
    "MAILBOX_AUTH_FAILED": "Check the password or use an app password if two-factor authentication is on.",
    "MAILBOX_PROTOCOL_ERROR": "The next sync will retry automatically.",
    "SESSION_STATE_ERROR": "If this persists, please report the issue.",
    "MAIL_DISPATCH_FAILED": "Check the SMTP settings and try again.",
    "MESSAGE_PARSE_ERROR": "Inspect it with: teammail quarantine list",
    # Store errors
    "STORE_ERROR": "Check that the database path is writable.",
    "CONNECTION_NOT_FOUND": "List connections with: teammail connections list",
    # Generic
    "TEAMMAIL_ERROR": "If this persists, please report the issue.",
    "UNKNOWN_ERROR": "Try again. Report if the issue continues.",
}


_SENSITIVE_DETAIL_KEYS = ("password", "token", "secret", "key", "xoauth2", "body")


# =============================================================================
# Helper Functions
# =============================================================================


def _error_code(error: Any) -> str:
    if hasattr(error, "code"):
        return error.code
    if isinstance(error, str):
        return error
    return type(error).__name__.upper()


def get_user_message(error: Any) -> str:
    """Get user-friendly message for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        User-friendly error message
    """
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error."""
    return RECOVERY_SUGGESTIONS.get(
        _error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"]
    )


def format_error_for_user(error: Any) -> str:
    """Format a complete user-friendly error message."""
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)

    return f"{message}\n\nSuggestion: {suggestion}"


def format_error_for_cli(error: Any) -> str:
    """Format error for CLI output.

    Args:
        error: The error to format

    Returns:
        CLI-formatted error message
    """
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)
    code = getattr(error, "code", "ERROR")

    lines = [
        f"Error [{code}]: {message}",
        "",
        f"Suggestion: {suggestion}",
    ]

    details = getattr(error, "details", None)
    if details:
        lines.append("")
        lines.append("Details:")
        for key, value in details.items():
            if any(marker in key.lower() for marker in _SENSITIVE_DETAIL_KEYS):
                continue
            lines.append(f"  {key}: {value}")

    return "\n".join(lines)


__all__ = [
    "ERROR_MESSAGES",
    "RECOVERY_SUGGESTIONS",
    "get_user_message",
    "get_recovery_suggestion",
    "format_error_for_user",
    "format_error_for_cli",
]
