"""Scheduler-facing sync cycle.

``MailboxSyncService`` strings the engine together for one cycle::

    get_active_connections -> fetch_new_emails -> persist refreshed tokens
        -> consumer(emails) -> update_last_uid  (or record_error)

The watermark moves only after the consumer has accepted the batch, so a
crash in between re-delivers the same messages on the next cycle instead
of losing them. Consumers must therefore tolerate duplicates (key on
``message_id``).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

import httpx
from pydantic import BaseModel

from teammail.configuration.settings import EngineSettings
from teammail.errors import ConnectionNotFoundError, TeamMailError, is_recoverable
from teammail.privacy.encryption import SecretCodec

from .connection_config import ConnectionConfigResolver, ImapConfig
from .connection_manager import ImapSession, default_client_factory
from .connection_store import (
    ConnectionStateStore,
    CreateConnectionRequest,
    TeamEmailConnection,
)
from .dispatcher import MailDispatcher, OutgoingEmail, SendResult, default_smtp_factory
from .email_parser import ParsedEmailMessage
from .oauth2_flow import OAuthCredentialManager
from .quarantine import QuarantineStore
from .sync_engine import IncrementalMailFetcher

logger = logging.getLogger(__name__)

EmailConsumer = Callable[[TeamEmailConnection, List[ParsedEmailMessage]], Awaitable[None]]


class SyncOutcome(BaseModel):
    """Result of one connection's cycle, successful or not."""

    connection_id: str
    team_id: str
    success: bool
    fetched: int = 0
    skipped: int = 0
    last_uid: int = 0
    error: Optional[str] = None
    recoverable: bool = True


class ConnectionTestResult(BaseModel):
    """Outcome of probing IMAP and SMTP before saving a connection."""

    imap_ok: bool = False
    smtp_ok: bool = False
    message_count: Optional[int] = None
    imap_error: Optional[str] = None
    smtp_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.imap_ok and self.smtp_ok


async def _discard(connection: TeamEmailConnection, emails: List[ParsedEmailMessage]) -> None:
    logger.debug(
        "No consumer configured; discarding fetched messages",
        extra={"connection_id": connection.id, "count": len(emails)},
    )


class MailboxSyncService:
    """Run fetch cycles and outbound sends against persisted connections."""

    def __init__(
        self,
        store: ConnectionStateStore,
        fetcher: IncrementalMailFetcher,
        *,
        dispatcher: Optional[MailDispatcher] = None,
        consumer: Optional[EmailConsumer] = None,
        max_concurrent: int = 4,
    ) -> None:
        """Initialize the service.

        Args:
            store: Connection state store
            fetcher: Incremental fetcher for inbound mail
            dispatcher: SMTP dispatcher, required for sending and connection tests
            consumer: Business-layer callback receiving each non-empty batch
            max_concurrent: Upper bound on connections synced at once
        """
        self.store = store
        self.fetcher = fetcher
        self.dispatcher = dispatcher
        self.consumer = consumer or _discard
        self.max_concurrent = max_concurrent

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        *,
        consumer: Optional[EmailConsumer] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client_factory: Callable[..., Any] = default_client_factory,
        smtp_factory: Callable[..., Any] = default_smtp_factory,
    ) -> "MailboxSyncService":
        """Wire every component from one settings object."""
        codec = SecretCodec.from_settings(settings)
        oauth = None
        if settings.oauth.is_configured:
            oauth = OAuthCredentialManager.from_settings(settings, codec, transport=transport)
        resolver = ConnectionConfigResolver(codec, oauth, settings.protocol)
        quarantine = (
            QuarantineStore(settings.database_path) if settings.quarantine_unparsable else None
        )
        fetcher = IncrementalMailFetcher(
            resolver,
            quarantine=quarantine,
            protocol=settings.protocol,
            client_factory=client_factory,
        )
        return cls(
            ConnectionStateStore(settings.database_path, codec),
            fetcher,
            dispatcher=MailDispatcher(resolver, smtp_factory=smtp_factory),
            consumer=consumer,
            max_concurrent=settings.max_concurrent_syncs,
        )

    def close(self) -> None:
        """Close the connection store and any quarantine store."""
        self.store.close()
        if self.fetcher.quarantine is not None:
            self.fetcher.quarantine.close()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def sync_connection(self, connection: TeamEmailConnection) -> SyncOutcome:
        """Run one cycle for ``connection``. Never raises for mailbox failures."""
        log_extra = {"connection_id": connection.id, "team_id": connection.team_id}
        try:
            result = await self.fetcher.fetch_new_emails(connection)
            if result.refreshed_tokens is not None:
                self.store.update_oauth_tokens(connection.id, result.refreshed_tokens)
            if result.emails:
                await self.consumer(connection, result.emails)
            self.store.update_last_uid(connection.id, result.max_uid)
        except TeamMailError as exc:
            message = exc.safe_message
            logger.error(f"Sync failed: {message}", extra=log_extra)
            self._record_error(connection.id, message)
            return SyncOutcome(
                connection_id=connection.id,
                team_id=connection.team_id,
                success=False,
                last_uid=connection.last_uid,
                error=message,
                recoverable=exc.recoverable,
            )
        except Exception as exc:  # noqa: BLE001
            message = f"[UNEXPECTED_ERROR] {type(exc).__name__}"
            logger.exception("Sync failed unexpectedly", extra=log_extra)
            self._record_error(connection.id, message)
            return SyncOutcome(
                connection_id=connection.id,
                team_id=connection.team_id,
                success=False,
                last_uid=connection.last_uid,
                error=message,
                recoverable=is_recoverable(exc),
            )

        return SyncOutcome(
            connection_id=connection.id,
            team_id=connection.team_id,
            success=True,
            fetched=len(result.emails),
            skipped=len(result.skipped_uids),
            last_uid=max(connection.last_uid, result.max_uid),
        )

    async def sync_active_connections(self) -> List[SyncOutcome]:
        """Sync every active connection, at most ``max_concurrent`` at a time."""
        connections = self.store.get_active_connections()
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def _bounded(connection: TeamEmailConnection) -> SyncOutcome:
            async with semaphore:
                return await self.sync_connection(connection)

        outcomes = await asyncio.gather(*(_bounded(c) for c in connections))
        failed = sum(1 for o in outcomes if not o.success)
        logger.info(
            f"Sync cycle finished: {len(outcomes) - failed} ok, {failed} failed",
            extra={"connections": len(outcomes)},
        )
        return list(outcomes)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_email(self, connection_id: str, email: OutgoingEmail) -> SendResult:
        """Send from a stored connection, persisting any refreshed tokens."""
        dispatcher = self._require_dispatcher()
        connection = self.store.get_connection(connection_id)
        result = await dispatcher.send_email(connection, email)
        if result.refreshed_tokens is not None:
            self.store.update_oauth_tokens(connection.id, result.refreshed_tokens)
        return result

    # ------------------------------------------------------------------
    # Connection probing
    # ------------------------------------------------------------------

    async def test_connection(self, request: CreateConnectionRequest) -> ConnectionTestResult:
        """Log in to IMAP and SMTP with ``request`` without persisting it."""
        dispatcher = self._require_dispatcher()
        connection = self.store.build_connection(request)
        result = ConnectionTestResult()

        try:
            resolved = await self.fetcher.resolver.resolve_imap_config(connection)
            config: ImapConfig = resolved.config  # type: ignore[assignment]
            async with ImapSession(
                config,
                client_factory=self.fetcher.client_factory,
                connection_id=connection.id,
            ) as session:
                result.message_count = await session.open_folder(
                    self.fetcher.protocol.inbox_folder
                )
            result.imap_ok = True
        except TeamMailError as exc:
            result.imap_error = exc.user_message

        try:
            await dispatcher.verify(connection)
            result.smtp_ok = True
        except TeamMailError as exc:
            result.smtp_error = exc.user_message

        logger.info(
            "Connection test finished",
            extra={"team_id": request.team_id, "imap_ok": result.imap_ok, "smtp_ok": result.smtp_ok},
        )
        return result

    def _record_error(self, connection_id: str, message: str) -> None:
        try:
            self.store.record_error(connection_id, message)
        except ConnectionNotFoundError:
            logger.warning(
                "Connection removed during sync; error not recorded",
                extra={"connection_id": connection_id},
            )

    def _require_dispatcher(self) -> MailDispatcher:
        if self.dispatcher is None:
            raise RuntimeError("MailboxSyncService was created without a dispatcher")
        return self.dispatcher


__all__ = [
    "ConnectionTestResult",
    "EmailConsumer",
    "MailboxSyncService",
    "SyncOutcome",
]
