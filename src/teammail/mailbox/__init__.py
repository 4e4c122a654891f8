"""Team mailbox connections, incremental sync and outbound mail."""

from .providers import PROVIDERS, ProviderPreset, detect_provider, get_provider
from .oauth2_flow import (
    GOOGLE_PROVIDER,
    AuthorizationResult,
    OAuthCredentialManager,
    OAuthProviderConfig,
    OAuthState,
    OAuthTokens,
    RefreshedAccessToken,
    UserInfo,
    generate_xoauth2_token,
)
from .connection_store import (
    AuthMethod,
    ConnectionStateStore,
    CreateConnectionRequest,
    TeamEmailConnection,
)
from .connection_config import (
    ConnectionConfigResolver,
    ImapConfig,
    MailAuth,
    ResolvedConfig,
    SmtpConfig,
    TlsOptions,
)
from .connection_manager import ImapSession, SessionState
from .email_parser import EmailAttachment, EmailParser, ParsedEmailMessage
from .quarantine import QuarantinedMessage, QuarantineStore
from .sync_engine import FetchResult, IncrementalMailFetcher, build_search_criteria
from .dispatcher import MailDispatcher, OutgoingEmail, SendResult
from .orchestrator import (
    ConnectionTestResult,
    EmailConsumer,
    MailboxSyncService,
    SyncOutcome,
)

__all__ = [
    # Providers
    "PROVIDERS",
    "ProviderPreset",
    "detect_provider",
    "get_provider",
    # OAuth
    "GOOGLE_PROVIDER",
    "AuthorizationResult",
    "OAuthCredentialManager",
    "OAuthProviderConfig",
    "OAuthState",
    "OAuthTokens",
    "RefreshedAccessToken",
    "UserInfo",
    "generate_xoauth2_token",
    # Connections
    "AuthMethod",
    "ConnectionStateStore",
    "CreateConnectionRequest",
    "TeamEmailConnection",
    "ConnectionConfigResolver",
    "ImapConfig",
    "MailAuth",
    "ResolvedConfig",
    "SmtpConfig",
    "TlsOptions",
    "ImapSession",
    "SessionState",
    # Messages
    "EmailAttachment",
    "EmailParser",
    "ParsedEmailMessage",
    "QuarantinedMessage",
    "QuarantineStore",
    # Sync and send
    "FetchResult",
    "IncrementalMailFetcher",
    "build_search_criteria",
    "MailDispatcher",
    "OutgoingEmail",
    "SendResult",
    "ConnectionTestResult",
    "EmailConsumer",
    "MailboxSyncService",
    "SyncOutcome",
]
