"""Tests for the sync cycle and outbound sends."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import List

import httpx
import pytest

from teammail.configuration.settings import EngineSettings
from teammail.mailbox.connection_config import ConnectionConfigResolver
from teammail.mailbox.dispatcher import MailDispatcher, OutgoingEmail
from teammail.mailbox.oauth2_flow import OAuthCredentialManager
from teammail.mailbox.orchestrator import MailboxSyncService
from teammail.mailbox.quarantine import QuarantineStore
from teammail.mailbox.sync_engine import IncrementalMailFetcher

from tests.conftest import TEST_KEY, FakeImapClient, FakeSmtp, make_raw_email


class _RecordingConsumer:
    def __init__(self) -> None:
        self.batches: List[tuple] = []
        self.error: Exception | None = None

    async def __call__(self, connection, emails) -> None:
        if self.error is not None:
            raise self.error
        self.batches.append((connection.id, [e.uid for e in emails]))


@pytest.fixture
def consumer():
    return _RecordingConsumer()


@pytest.fixture
def oauth_manager(codec):
    return OAuthCredentialManager(
        client_id="client-id",
        client_secret="client-secret",
        codec=codec,
        transport=httpx.MockTransport(
            lambda r: httpx.Response(200, json={"access_token": "fresh-access", "expires_in": 3600})
        ),
    )


def _service(store, codec, protocol, imap_factory, smtp_factory, consumer, oauth=None, **kwargs):
    resolver = ConnectionConfigResolver(codec, oauth, protocol)
    return MailboxSyncService(
        store,
        IncrementalMailFetcher(resolver, client_factory=imap_factory),
        dispatcher=MailDispatcher(resolver, smtp_factory=smtp_factory),
        consumer=consumer,
        **kwargs,
    )


@pytest.fixture
def service(store, codec, protocol, fake_imap, fake_smtp, consumer, oauth_manager):
    return _service(
        store, codec, protocol, fake_imap.factory, fake_smtp.factory, consumer, oauth_manager
    )


def _expire_tokens(store, connection_id: str) -> None:
    with store._conn:
        store._conn.execute(
            "UPDATE team_email_connections SET oauth_token_expires_at = ? WHERE id = ?",
            ((datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat(), connection_id),
        )


class TestSyncConnection:
    @pytest.mark.asyncio
    async def test_successful_cycle(self, service, store, fake_imap, consumer, password_request):
        connection = store.create_connection(password_request)
        fake_imap.messages = {50: make_raw_email(), 51: make_raw_email(), 53: make_raw_email()}

        outcome = await service.sync_connection(connection)

        assert outcome.success is True
        assert outcome.fetched == 3
        assert outcome.last_uid == 53
        assert consumer.batches == [(connection.id, [50, 51, 53])]
        stored = store.get_connection(connection.id)
        assert stored.last_uid == 53
        assert stored.last_sync_at is not None
        assert stored.last_error is None

    @pytest.mark.asyncio
    async def test_next_cycle_is_incremental(self, service, store, fake_imap, consumer, password_request):
        connection = store.create_connection(password_request)
        fake_imap.messages = {50: make_raw_email(), 53: make_raw_email()}
        await service.sync_connection(connection)

        fake_imap.messages[54] = make_raw_email()
        outcome = await service.sync_connection(store.get_connection(connection.id))

        assert fake_imap.searches[-1] == ["UID", "54:*"]
        assert consumer.batches[-1] == (connection.id, [54])
        assert outcome.last_uid == 54

    @pytest.mark.asyncio
    async def test_no_new_messages(self, service, store, consumer, password_request):
        connection = store.create_connection(password_request)

        outcome = await service.sync_connection(connection)

        assert outcome.success is True
        assert outcome.fetched == 0
        assert consumer.batches == []
        assert store.get_connection(connection.id).last_sync_at is not None

    @pytest.mark.asyncio
    async def test_refreshed_tokens_persisted_before_watermark(
        self, service, store, codec, fake_imap, consumer, oauth_request
    ):
        connection = store.create_connection(oauth_request)
        _expire_tokens(store, connection.id)
        fake_imap.messages = {5: make_raw_email()}
        seen = {}

        async def _inspect(conn, emails):
            stored = store.get_connection(conn.id)
            seen["access"] = codec.decrypt(stored.oauth_access_token)
            seen["last_uid"] = stored.last_uid

        service.consumer = _inspect
        outcome = await service.sync_connection(store.get_connection(connection.id))

        assert outcome.success is True
        assert seen == {"access": "fresh-access", "last_uid": 0}
        stored = store.get_connection(connection.id)
        assert codec.decrypt(stored.oauth_refresh_token) == "refresh-1"
        assert stored.last_uid == 5
        assert fake_imap.logins[-1] == ("oauth2", "agency@gmail.com", "fresh-access")

    @pytest.mark.asyncio
    async def test_fetch_failure_recorded(self, store, codec, protocol, fake_smtp, consumer, password_request):
        server = FakeImapClient(password="rotated")
        service = _service(store, codec, protocol, server.factory, fake_smtp.factory, consumer)
        connection = store.create_connection(password_request)
        store.update_last_uid(connection.id, 10)

        outcome = await service.sync_connection(store.get_connection(connection.id))

        assert outcome.success is False
        assert outcome.recoverable is True
        assert outcome.error.startswith("[MAILBOX_AUTH_FAILED]")
        stored = store.get_connection(connection.id)
        assert stored.last_uid == 10
        assert stored.last_error == outcome.error
        assert "app-password" not in stored.last_error

    @pytest.mark.asyncio
    async def test_consumer_failure_keeps_watermark(self, service, store, fake_imap, consumer, password_request):
        connection = store.create_connection(password_request)
        fake_imap.messages = {50: make_raw_email()}
        consumer.error = RuntimeError("downstream unavailable")

        outcome = await service.sync_connection(connection)

        assert outcome.success is False
        assert outcome.error == "[UNEXPECTED_ERROR] RuntimeError"
        stored = store.get_connection(connection.id)
        assert stored.last_uid == 0
        assert stored.last_error == "[UNEXPECTED_ERROR] RuntimeError"

    @pytest.mark.asyncio
    async def test_oauth_without_client_is_not_recoverable(
        self, store, codec, protocol, fake_imap, fake_smtp, consumer, oauth_request
    ):
        service = _service(store, codec, protocol, fake_imap.factory, fake_smtp.factory, consumer)
        connection = store.create_connection(oauth_request)

        outcome = await service.sync_connection(connection)

        assert outcome.success is False
        assert outcome.recoverable is False
        assert outcome.error.startswith("[MISSING_CONFIG]")

    @pytest.mark.asyncio
    async def test_deleted_connection_does_not_raise(self, store, codec, protocol, fake_smtp, consumer, password_request):
        server = FakeImapClient(password="rotated")
        service = _service(store, codec, protocol, server.factory, fake_smtp.factory, consumer)
        connection = store.create_connection(password_request)
        store.delete_connection(connection.id)

        outcome = await service.sync_connection(connection)

        assert outcome.success is False


class TestSyncActiveConnections:
    @pytest.mark.asyncio
    async def test_syncs_only_active(self, service, store, fake_imap, consumer, password_request):
        first = store.create_connection(password_request)
        second = store.create_connection(password_request.model_copy(update={"team_id": "team-2"}))
        inactive = store.create_connection(password_request.model_copy(update={"team_id": "team-3"}))
        store.set_active(inactive.id, False)
        fake_imap.messages = {1: make_raw_email()}

        outcomes = await service.sync_active_connections()

        assert {o.connection_id for o in outcomes} == {first.id, second.id}
        assert all(o.success for o in outcomes)

    @pytest.mark.asyncio
    async def test_failure_isolated(self, store, codec, protocol, fake_imap, fake_smtp, consumer, password_request):
        def _factory(config):
            if config.host == "imap.down.example":
                raise ConnectionRefusedError("refused")
            return fake_imap.factory(config)

        service = _service(store, codec, protocol, _factory, fake_smtp.factory, consumer)
        healthy = store.create_connection(password_request)
        broken = store.create_connection(
            password_request.model_copy(update={"team_id": "team-2", "imap_host": "imap.down.example"})
        )
        fake_imap.messages = {1: make_raw_email()}

        outcomes = {o.connection_id: o for o in await service.sync_active_connections()}

        assert outcomes[healthy.id].success is True
        assert outcomes[broken.id].success is False
        assert outcomes[broken.id].error.startswith("[MAILBOX_CONNECTION_ERROR]")
        assert store.get_connection(healthy.id).last_uid == 1
        assert store.get_connection(broken.id).last_uid == 0

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, store, codec, protocol, fake_imap, fake_smtp, password_request):
        active = 0
        peak = 0

        async def _slow_consumer(connection, emails):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        service = _service(
            store, codec, protocol, fake_imap.factory, fake_smtp.factory, _slow_consumer,
            max_concurrent=2,
        )
        for i in range(5):
            store.create_connection(password_request.model_copy(update={"team_id": f"team-{i}"}))
        fake_imap.messages = {1: make_raw_email()}

        outcomes = await service.sync_active_connections()

        assert len(outcomes) == 5
        assert peak <= 2


class TestSendEmail:
    @pytest.mark.asyncio
    async def test_send_persists_refreshed_tokens(self, service, store, codec, fake_smtp, oauth_request):
        connection = store.create_connection(oauth_request)
        _expire_tokens(store, connection.id)

        result = await service.send_email(
            connection.id, OutgoingEmail(to="alice@example.com", subject="Hi", text="Hello")
        )

        assert result.message_id
        assert len(fake_smtp.sent) == 1
        stored = store.get_connection(connection.id)
        assert codec.decrypt(stored.oauth_access_token) == "fresh-access"
        assert codec.decrypt(stored.oauth_refresh_token) == "refresh-1"

    @pytest.mark.asyncio
    async def test_send_requires_dispatcher(self, store, codec, protocol, fake_imap, password_request):
        service = MailboxSyncService(
            store,
            IncrementalMailFetcher(
                ConnectionConfigResolver(codec, protocol=protocol),
                client_factory=fake_imap.factory,
            ),
        )
        connection = store.create_connection(password_request)
        with pytest.raises(RuntimeError):
            await service.send_email(
                connection.id, OutgoingEmail(to="a@b.c", subject="s", text="t")
            )


class TestConnectionTest:
    @pytest.mark.asyncio
    async def test_both_sides_ok(self, service, store, fake_imap, fake_smtp, password_request):
        fake_imap.messages = {1: make_raw_email(), 2: make_raw_email()}

        result = await service.test_connection(password_request)

        assert result.success is True
        assert result.message_count == 2
        assert fake_smtp.logins
        assert store.list_connections() == []

    @pytest.mark.asyncio
    async def test_reports_each_side(self, store, codec, protocol, consumer, password_request):
        service = _service(
            store, codec, protocol,
            FakeImapClient(password="other").factory,
            FakeSmtp().factory,
            consumer,
        )

        result = await service.test_connection(password_request)

        assert result.imap_ok is False
        assert result.imap_error == "The mail server rejected the login."
        assert result.smtp_ok is True
        assert result.success is False


def test_from_settings(tmp_path):
    settings = EngineSettings(encryption_key=TEST_KEY, database_path=tmp_path / "engine.db")
    service = MailboxSyncService.from_settings(settings)
    try:
        assert service.fetcher.resolver.oauth is None
        assert isinstance(service.fetcher.quarantine, QuarantineStore)
        assert service.dispatcher is not None
        assert service.max_concurrent == 4
    finally:
        service.close()


def test_from_settings_with_oauth(tmp_path):
    settings = EngineSettings(
        encryption_key=TEST_KEY,
        database_path=tmp_path / "engine.db",
        quarantine_unparsable=False,
        oauth={"client_id": "cid", "client_secret": "secret"},
        token_refresh_margin_seconds=60,
    )
    service = MailboxSyncService.from_settings(settings)
    try:
        oauth = service.fetcher.resolver.oauth
        assert oauth.expiry_margin == timedelta(seconds=60)
        assert service.fetcher.quarantine is None
    finally:
        service.close()


def test_close_releases_both_stores(tmp_path):
    settings = EngineSettings(encryption_key=TEST_KEY, database_path=tmp_path / "engine.db")
    service = MailboxSyncService.from_settings(settings)
    service.close()

    with pytest.raises(sqlite3.ProgrammingError):
        service.fetcher.quarantine.count()
    with pytest.raises(sqlite3.ProgrammingError):
        service.store.list_connections()
