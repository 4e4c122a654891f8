"""Incremental inbox fetching.

One call to ``IncrementalMailFetcher.fetch_new_emails`` is one sync cycle
for one mailbox: resolve credentials, open a session, pick a search
strategy from the connection's history, fetch and parse the matches, and
report the new high-water mark. The caller persists that mark only after
it has consumed the returned messages, which gives at-least-once delivery.

Search strategy, in strict priority order:

1. ``last_uid > 0``: ``UID <last_uid + 1>:*``
2. ``sync_from_date`` set: ``SINCE <date>``
3. otherwise: ``UNSEEN``
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, Field

from teammail.configuration.settings import ProtocolSettings
from teammail.errors import MessageParseError

from .connection_config import ConnectionConfigResolver
from .connection_manager import ImapSession, default_client_factory
from .connection_store import TeamEmailConnection
from .email_parser import EmailParser, ParsedEmailMessage
from .oauth2_flow import OAuthTokens
from .quarantine import QuarantineStore

logger = logging.getLogger(__name__)


class FetchResult(BaseModel):
    """Outcome of one fetch cycle."""

    emails: List[ParsedEmailMessage] = Field(default_factory=list)
    max_uid: int = Field(..., ge=0, description="Watermark to persist on success")
    refreshed_tokens: Optional[OAuthTokens] = Field(
        default=None, description="Tokens refreshed while resolving the session"
    )
    skipped_uids: List[int] = Field(
        default_factory=list, description="Fetched but unparsable messages"
    )


def build_search_criteria(last_uid: int, sync_from_date: Optional[date]) -> List[Any]:
    if last_uid > 0:
        return ["UID", f"{last_uid + 1}:*"]
    if sync_from_date is not None:
        return ["SINCE", sync_from_date]
    return ["UNSEEN"]


def _chunks(uids: List[int], size: int) -> List[List[int]]:
    return [uids[i : i + size] for i in range(0, len(uids), size)]


class IncrementalMailFetcher:
    """Pull new inbox messages for a connection."""

    def __init__(
        self,
        resolver: ConnectionConfigResolver,
        *,
        parser: Optional[EmailParser] = None,
        quarantine: Optional[QuarantineStore] = None,
        protocol: Optional[ProtocolSettings] = None,
        client_factory: Callable[..., Any] = default_client_factory,
    ) -> None:
        """Initialize the fetcher.

        Args:
            resolver: Turns connections into IMAP session configs
            parser: MIME parser (a default one is created if omitted)
            quarantine: Where to park unparsable messages; ``None`` drops them
            protocol: Folder and batch settings
            client_factory: Builds the underlying IMAP client (tests inject a fake)
        """
        self.resolver = resolver
        self.parser = parser or EmailParser()
        self.quarantine = quarantine
        self.protocol = protocol or resolver.protocol
        self.client_factory = client_factory

    async def fetch_new_emails(self, connection: TeamEmailConnection) -> FetchResult:
        """Fetch and parse every message newer than the connection's watermark.

        Raises:
            MissingCredentialError: Connection lacks credentials
            TokenRefreshError: OAuth refresh was rejected
            MailboxConnectionError: Server unreachable or connection lost
            MailboxAuthenticationError: Login rejected
            MailboxProtocolError: Select, search or fetch failed
        """
        resolved = await self.resolver.resolve_imap_config(connection)
        last_uid = connection.last_uid
        criteria = build_search_criteria(last_uid, connection.sync_from_date)
        log_extra = {"connection_id": connection.id, "strategy": criteria[0]}

        async with ImapSession(
            resolved.config,
            client_factory=self.client_factory,
            connection_id=connection.id,
        ) as session:
            await session.open_folder(self.protocol.inbox_folder)
            found = await session.search(criteria)

            # "N:*" always matches the highest UID, even when it is below N
            matched = [uid for uid in found if uid > last_uid]
            if not matched:
                logger.info("No new messages", extra=log_extra)
                return FetchResult(
                    max_uid=last_uid, refreshed_tokens=resolved.refreshed_tokens
                )

            max_uid = max(last_uid, max(matched))
            emails: List[ParsedEmailMessage] = []
            skipped: List[int] = []
            for batch in _chunks(matched, self.protocol.fetch_batch_size):
                raw_messages = await session.fetch(batch)
                for uid in batch:
                    raw = raw_messages.get(uid)
                    if raw is None:
                        # Expunged between SEARCH and FETCH
                        logger.debug("Message vanished before fetch", extra={"uid": uid})
                        continue
                    parsed = self._parse(connection, uid, raw)
                    if parsed is None:
                        skipped.append(uid)
                    else:
                        emails.append(parsed)

        logger.info(
            f"Fetched {len(emails)} new messages",
            extra={
                **log_extra,
                "matched": len(matched),
                "skipped": len(skipped),
                "max_uid": max_uid,
            },
        )
        return FetchResult(
            emails=emails,
            max_uid=max_uid,
            refreshed_tokens=resolved.refreshed_tokens,
            skipped_uids=skipped,
        )

    def _parse(
        self, connection: TeamEmailConnection, uid: int, raw: bytes
    ) -> Optional[ParsedEmailMessage]:
        try:
            return self.parser.parse_message(raw, uid)
        except MessageParseError as exc:
            logger.warning(
                "Dropping unparsable message",
                extra={"connection_id": connection.id, "uid": uid, "error": exc.code},
            )
            if self.quarantine is not None:
                self.quarantine.park(
                    connection_id=connection.id,
                    uid=uid,
                    raw_message=raw,
                    error_message=exc.safe_message,
                )
            return None


__all__ = ["FetchResult", "IncrementalMailFetcher", "build_search_criteria"]
