"""Typed settings for the teammail engine.

Settings are wrapped in a Pydantic model so every component receives a
validated configuration object through its constructor. Secrets (encryption
key, OAuth client secret) are held as ``SecretStr`` and are masked whenever
settings are written back to disk.

Resolution order (highest wins):
1. Explicit overrides passed to ``load_settings``
2. ``TEAMMAIL_*`` environment variables
3. JSON config file (``~/.teammail/config.json`` by default)
4. Model defaults
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from teammail.errors import InvalidConfigError, InvalidEncryptionKeyError


DEFAULT_CONFIG_PATH = Path.home() / ".teammail" / "config.json"
DEFAULT_DATABASE_PATH = Path.home() / ".teammail" / "teammail.db"

_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


class OAuthClientSettings(BaseModel):
    """OAuth2 client registration with the mail provider."""

    client_id: str = Field(default="", description="OAuth client identifier")
    client_secret: SecretStr = Field(
        default=SecretStr(""), description="OAuth client secret"
    )
    redirect_uri: Optional[str] = Field(
        default=None, description="Default redirect URI for the callback handler"
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret.get_secret_value())


class ProtocolSettings(BaseModel):
    """Fixed IMAP/SMTP session parameters shared by every connection."""

    connect_timeout_seconds: float = Field(default=30.0, gt=0)
    auth_timeout_seconds: float = Field(default=10.0, gt=0)
    socket_timeout_seconds: float = Field(
        default=120.0, gt=0, description="Read timeout once authenticated"
    )
    reject_unauthorized: bool = Field(
        default=True, description="Verify server TLS certificates"
    )
    inbox_folder: str = Field(default="INBOX")
    fetch_batch_size: int = Field(default=50, ge=1, le=500)


class EngineSettings(BaseModel):
    """Root configuration for the mailbox engine."""

    encryption_key: SecretStr = Field(
        ..., description="AES-256 key as 64 hexadecimal characters"
    )
    oauth: OAuthClientSettings = Field(default_factory=OAuthClientSettings)
    protocol: ProtocolSettings = Field(default_factory=ProtocolSettings)
    database_path: Path = Field(default=DEFAULT_DATABASE_PATH)
    token_refresh_margin_seconds: int = Field(default=300, ge=0, le=3600)
    oauth_state_max_age_seconds: int = Field(default=600, ge=1)
    max_concurrent_syncs: int = Field(default=4, ge=1, le=64)
    quarantine_unparsable: bool = Field(
        default=True, description="Park raw bytes of unparsable messages"
    )

    @field_validator("encryption_key")
    @classmethod
    def _validate_key(cls, value: SecretStr) -> SecretStr:  # type: ignore[override]
        if not _HEX_KEY_PATTERN.match(value.get_secret_value()):
            raise ValueError(
                "encryption_key must be exactly 64 hexadecimal characters (32 bytes)"
            )
        return value

    @field_validator("database_path")
    @classmethod
    def _expand_path(cls, value: Path) -> Path:  # type: ignore[override]
        return value.expanduser()

    @property
    def encryption_key_bytes(self) -> bytes:
        return bytes.fromhex(self.encryption_key.get_secret_value())


def load_settings(
    path: Optional[Path] = None,
    *,
    overrides: Optional[Dict[str, Any]] = None,
) -> EngineSettings:
    """Load settings from disk and environment.

    A missing config file is not an error; the environment alone may supply
    everything required.

    Raises:
        InvalidEncryptionKeyError: The encryption key is absent or malformed
        InvalidConfigError: Any other validation failure
    """

    path = path or DEFAULT_CONFIG_PATH
    data: Dict[str, Any] = {}
    if path.exists():
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise InvalidConfigError(
                f"Config file {path} is not valid JSON", details={"path": str(path)}
            ) from exc

    data = _apply_env_overrides(data)
    data = _apply_overrides(data, overrides or {})
    return validate_settings(data)


def validate_settings(data: Dict[str, Any]) -> EngineSettings:
    """Validate a raw mapping, translating pydantic errors into config errors."""

    try:
        return EngineSettings.model_validate(data)
    except ValidationError as exc:
        fields = {".".join(str(p) for p in err["loc"]) for err in exc.errors()}
        if "encryption_key" in fields:
            raise InvalidEncryptionKeyError(
                details={"fields": sorted(fields)}
            ) from None
        raise InvalidConfigError(
            f"Invalid configuration: {', '.join(sorted(fields))}",
            details={"fields": sorted(fields)},
        ) from None


def save_settings(settings: EngineSettings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Persist settings to disk, leaving secrets to the environment."""

    payload = settings.model_dump(mode="json")
    payload = _drop_secret_fields(payload)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2))


def _apply_overrides(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(data)
    _set_env_override(data, "encryption_key", "TEAMMAIL_ENCRYPTION_KEY")
    _set_env_override(data, "database_path", "TEAMMAIL_DATABASE_PATH")
    _set_env_override(data, "max_concurrent_syncs", "TEAMMAIL_MAX_CONCURRENT_SYNCS", cast_int=True)
    _set_env_override(
        data, "quarantine_unparsable", "TEAMMAIL_QUARANTINE_UNPARSABLE", cast_bool=True
    )

    oauth = dict(data.get("oauth") or {})
    _set_env_override(oauth, "client_id", "TEAMMAIL_OAUTH_CLIENT_ID")
    _set_env_override(oauth, "client_secret", "TEAMMAIL_OAUTH_CLIENT_SECRET")
    _set_env_override(oauth, "redirect_uri", "TEAMMAIL_OAUTH_REDIRECT_URI")
    data["oauth"] = oauth

    protocol = dict(data.get("protocol") or {})
    _set_env_override(
        protocol, "reject_unauthorized", "TEAMMAIL_TLS_REJECT_UNAUTHORIZED", cast_bool=True
    )
    data["protocol"] = protocol
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_bool: bool = False,
    cast_int: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    if cast_bool:
        mapping[key] = raw.lower() in {"1", "true", "yes"}
    elif cast_int:
        try:
            mapping[key] = int(raw)
        except ValueError as exc:
            raise InvalidConfigError(
                f"{env_name} must be an integer", details={"variable": env_name}
            ) from exc
    else:
        mapping[key] = raw


def _drop_secret_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    payload.pop("encryption_key", None)
    oauth = payload.get("oauth") or {}
    oauth.pop("client_secret", None)
    return payload


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_DATABASE_PATH",
    "EngineSettings",
    "OAuthClientSettings",
    "ProtocolSettings",
    "load_settings",
    "save_settings",
    "validate_settings",
]
