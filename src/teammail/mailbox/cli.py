"""CLI commands for team mailbox management."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import NoReturn, Optional

import typer
from pydantic import SecretStr, ValidationError
from rich.console import Console
from rich.table import Table

from teammail.configuration.settings import EngineSettings, load_settings
from teammail.errors import TeamMailError
from teammail.errors.user_messages import format_error_for_cli
from teammail.privacy.encryption import SecretCodec, generate_key

from .connection_store import AuthMethod, ConnectionStateStore, CreateConnectionRequest
from .oauth2_flow import OAuthCredentialManager
from .orchestrator import MailboxSyncService
from .providers import detect_provider
from .quarantine import QuarantineStore

# Rich console for formatted output
console = Console()
error_console = Console(stderr=True)

app = typer.Typer(help="Team mailbox integration and synchronization")
connections_app = typer.Typer(help="Manage team mailbox connections")
oauth_app = typer.Typer(help="OAuth2 authorization helpers")
quarantine_app = typer.Typer(help="Inspect unparsable messages")
app.add_typer(connections_app, name="connections")
app.add_typer(oauth_app, name="oauth")
app.add_typer(quarantine_app, name="quarantine")

ConfigOption = typer.Option(None, "--config", "-c", help="Path to config.json")
JsonOption = typer.Option(False, "--json", help="Output as JSON")


def _fail(error: Exception, json_output: bool) -> NoReturn:
    if json_output:
        payload = error.to_dict() if isinstance(error, TeamMailError) else {"error": str(error)}
        print(json.dumps(payload, default=str))
    else:
        error_console.print(format_error_for_cli(error))
    raise typer.Exit(1)


def _settings(config: Optional[Path], json_output: bool = False) -> EngineSettings:
    try:
        return load_settings(config)
    except TeamMailError as e:
        _fail(e, json_output)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("generate-key")
def generate_key_command() -> None:
    """Print a fresh encryption key for TEAMMAIL_ENCRYPTION_KEY."""
    print(generate_key())


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


@connections_app.command("list")
def list_connections(
    team: Optional[str] = typer.Option(None, "--team", "-t", help="Filter by team id"),
    config: Optional[Path] = ConfigOption,
    json_output: bool = JsonOption,
) -> None:
    """List configured mailbox connections."""
    settings = _settings(config, json_output)
    store = ConnectionStateStore(settings.database_path, SecretCodec.from_settings(settings))
    try:
        connections = store.list_connections(team)
    finally:
        store.close()

    if json_output:
        print(json.dumps([
            {
                "id": c.id,
                "team_id": c.team_id,
                "email_address": c.email_address,
                "provider": c.provider,
                "auth_method": c.auth_method.value,
                "is_active": c.is_active,
                "last_uid": c.last_uid,
                "last_sync_at": c.last_sync_at.isoformat() if c.last_sync_at else None,
                "last_error": c.last_error,
            }
            for c in connections
        ]))
        return

    if not connections:
        console.print("[yellow]No mailbox connections configured[/yellow]")
        return

    table = Table(title="Mailbox connections")
    table.add_column("ID", style="cyan")
    table.add_column("Team")
    table.add_column("Email")
    table.add_column("Auth")
    table.add_column("Active")
    table.add_column("Last UID", justify="right")
    table.add_column("Last error", style="red")
    for c in connections:
        table.add_row(
            c.id,
            c.team_id,
            c.email_address,
            c.auth_method.value,
            "✓" if c.is_active else "✗",
            str(c.last_uid),
            c.last_error or "",
        )
    console.print(table)


@connections_app.command("add")
def add_connection(
    team: str = typer.Option(..., "--team", "-t", help="Team id"),
    email: str = typer.Option(..., "--email", "-e", help="Mailbox address"),
    provider: Optional[str] = typer.Option(None, "--provider", help="gmail, outlook, yahoo, icloud, custom"),
    imap_host: Optional[str] = typer.Option(None, "--imap-host"),
    imap_port: Optional[int] = typer.Option(None, "--imap-port"),
    smtp_host: Optional[str] = typer.Option(None, "--smtp-host"),
    smtp_port: Optional[int] = typer.Option(None, "--smtp-port"),
    password: Optional[str] = typer.Option(None, "--password", help="Mailbox or app password"),
    test: bool = typer.Option(True, "--test/--no-test", help="Verify IMAP and SMTP first"),
    config: Optional[Path] = ConfigOption,
    json_output: bool = JsonOption,
) -> None:
    """Connect a mailbox with password authentication.

    OAuth mailboxes are connected through the web callback; see ``oauth url``.
    """
    settings = _settings(config, json_output)
    if not password:
        if sys.stdin.isatty() and not json_output:
            password = typer.prompt("Mailbox password", hide_input=True)
        else:
            _fail(ValueError("Password required. Use --password <password> flag."), json_output)

    try:
        request = CreateConnectionRequest(
            team_id=team,
            email_address=email,
            provider=provider or detect_provider(email),
            auth_method=AuthMethod.PASSWORD,
            imap_host=imap_host,
            imap_port=imap_port,
            smtp_host=smtp_host,
            smtp_port=smtp_port,
            imap_password=SecretStr(password),
        )
    except ValidationError as e:
        _fail(ValueError(f"Invalid connection: {e.error_count()} field error(s)"), json_output)

    service = MailboxSyncService.from_settings(settings)
    try:
        if test:
            result = asyncio.run(service.test_connection(request))
            if not result.success:
                if json_output:
                    print(json.dumps(result.model_dump()))
                else:
                    error_console.print(f"IMAP: {result.imap_error or 'ok'}")
                    error_console.print(f"SMTP: {result.smtp_error or 'ok'}")
                raise typer.Exit(1)
        connection = service.store.create_connection(request)
    except TeamMailError as e:
        _fail(e, json_output)
    finally:
        service.close()

    if json_output:
        print(json.dumps({"id": connection.id, "team_id": team, "email_address": email}))
    else:
        console.print("[bold green]✓ Mailbox connected[/bold green]")
        console.print(f"Connection ID: {connection.id}")
        console.print(f"IMAP: {connection.imap_host}:{connection.imap_port}")
        console.print(f"SMTP: {connection.smtp_host}:{connection.smtp_port}")


@connections_app.command("deactivate")
def deactivate_connection(
    connection_id: str = typer.Argument(..., help="Connection id"),
    config: Optional[Path] = ConfigOption,
    json_output: bool = JsonOption,
) -> None:
    """Stop syncing a connection without deleting it."""
    settings = _settings(config, json_output)
    store = ConnectionStateStore(settings.database_path, SecretCodec.from_settings(settings))
    try:
        store.set_active(connection_id, False)
    except TeamMailError as e:
        _fail(e, json_output)
    finally:
        store.close()

    if json_output:
        print(json.dumps({"id": connection_id, "is_active": False}))
    else:
        console.print(f"[bold green]✓ Connection {connection_id} deactivated[/bold green]")


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@app.command("sync")
def sync(
    config: Optional[Path] = ConfigOption,
    json_output: bool = JsonOption,
) -> None:
    """Run one sync cycle for every active connection."""
    settings = _settings(config, json_output)
    service = MailboxSyncService.from_settings(settings)
    try:
        outcomes = asyncio.run(service.sync_active_connections())
    finally:
        service.close()

    if json_output:
        print(json.dumps([o.model_dump() for o in outcomes]))
    else:
        table = Table(title="Sync results")
        table.add_column("Connection", style="cyan")
        table.add_column("Team")
        table.add_column("Status")
        table.add_column("Fetched", justify="right")
        table.add_column("Skipped", justify="right")
        table.add_column("Last UID", justify="right")
        for o in outcomes:
            table.add_row(
                o.connection_id,
                o.team_id,
                "[green]ok[/green]" if o.success else f"[red]{o.error}[/red]",
                str(o.fetched),
                str(o.skipped),
                str(o.last_uid),
            )
        console.print(table)

    if any(not o.success for o in outcomes):
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@oauth_app.command("url")
def authorization_url(
    team: str = typer.Option(..., "--team", "-t", help="Team id"),
    user: str = typer.Option(..., "--user", "-u", help="Id of the user starting the flow"),
    redirect_uri: Optional[str] = typer.Option(None, "--redirect-uri"),
    config: Optional[Path] = ConfigOption,
    json_output: bool = JsonOption,
) -> None:
    """Print the consent URL that starts the OAuth2 flow."""
    settings = _settings(config, json_output)
    redirect = redirect_uri or settings.oauth.redirect_uri
    if not redirect:
        _fail(ValueError("Redirect URI required. Use --redirect-uri or configure oauth.redirect_uri."), json_output)

    manager = OAuthCredentialManager.from_settings(settings, SecretCodec.from_settings(settings))
    try:
        url = manager.generate_authorization_url(team, user, redirect)
    except TeamMailError as e:
        _fail(e, json_output)

    if json_output:
        print(json.dumps({"url": url}))
    else:
        console.print(url)


# ---------------------------------------------------------------------------
# Quarantine
# ---------------------------------------------------------------------------


@quarantine_app.command("list")
def list_quarantined(
    connection_id: Optional[str] = typer.Option(None, "--connection", help="Filter by connection id"),
    limit: int = typer.Option(50, "--limit", "-n"),
    config: Optional[Path] = ConfigOption,
    json_output: bool = JsonOption,
) -> None:
    """List messages parked because they could not be parsed."""
    settings = _settings(config, json_output)
    store = QuarantineStore(settings.database_path)
    try:
        messages = store.list(connection_id=connection_id, limit=limit)
    finally:
        store.close()

    if json_output:
        print(json.dumps([
            {
                "connection_id": m.connection_id,
                "uid": m.uid,
                "size": m.size,
                "error_message": m.error_message,
                "quarantined_at": m.quarantined_at.isoformat(),
                "retry_count": m.retry_count,
            }
            for m in messages
        ]))
        return

    if not messages:
        console.print("[green]No quarantined messages[/green]")
        return

    table = Table(title="Quarantined messages")
    table.add_column("Connection", style="cyan")
    table.add_column("UID", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Error", style="red")
    table.add_column("Parked at")
    for m in messages:
        table.add_row(
            m.connection_id,
            str(m.uid),
            str(m.size),
            m.error_message,
            m.quarantined_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


__all__ = ["app"]
