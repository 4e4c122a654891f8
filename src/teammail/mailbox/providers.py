"""Known mail provider presets.

Presets fill the IMAP/SMTP endpoint fields a team leaves blank when
connecting a mailbox. The ``custom`` preset carries no hosts; every field
must then be supplied explicitly.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from teammail.errors import UnknownProviderError


class ProviderPreset(BaseModel):
    """Default endpoints and capabilities for a mail provider."""

    name: str
    label: str
    imap_host: Optional[str] = None
    imap_port: int = 993
    imap_use_ssl: bool = True
    smtp_host: Optional[str] = None
    smtp_port: int = 465
    smtp_use_tls: bool = True
    supports_oauth: bool = False
    domains: List[str] = Field(default_factory=list)
    setup_instructions: Optional[str] = None


PROVIDERS: Dict[str, ProviderPreset] = {
    "gmail": ProviderPreset(
        name="gmail",
        label="Gmail / Google Workspace",
        imap_host="imap.gmail.com",
        smtp_host="smtp.gmail.com",
        supports_oauth=True,
        domains=["gmail.com", "googlemail.com"],
        setup_instructions=(
            "Use 'Sign in with Google', or enable 2-Step Verification and "
            "create an app password at https://myaccount.google.com/apppasswords."
        ),
    ),
    "outlook": ProviderPreset(
        name="outlook",
        label="Outlook / Microsoft 365",
        imap_host="outlook.office365.com",
        smtp_host="smtp.office365.com",
        smtp_port=587,
        smtp_use_tls=False,
        domains=["outlook.com", "hotmail.com", "live.com"],
        setup_instructions=(
            "IMAP access must be enabled for the mailbox. Accounts with "
            "two-factor authentication need an app password."
        ),
    ),
    "yahoo": ProviderPreset(
        name="yahoo",
        label="Yahoo Mail",
        imap_host="imap.mail.yahoo.com",
        smtp_host="smtp.mail.yahoo.com",
        domains=["yahoo.com", "yahoo.fr"],
        setup_instructions="Generate an app password in Yahoo account security settings.",
    ),
    "icloud": ProviderPreset(
        name="icloud",
        label="iCloud Mail",
        imap_host="imap.mail.me.com",
        smtp_host="smtp.mail.me.com",
        smtp_port=587,
        smtp_use_tls=False,
        domains=["icloud.com", "me.com", "mac.com"],
        setup_instructions="Generate an app-specific password at https://appleid.apple.com.",
    ),
    "custom": ProviderPreset(
        name="custom",
        label="Other (IMAP/SMTP)",
        setup_instructions="Enter the IMAP and SMTP server settings from your provider.",
    ),
}


def get_provider(name: str) -> ProviderPreset:
    try:
        return PROVIDERS[name.lower()]
    except KeyError:
        raise UnknownProviderError(
            f"Unknown mail provider: {name}",
            details={"provider": name, "supported": sorted(PROVIDERS)},
        ) from None


def detect_provider(email_address: str) -> str:
    """Guess the provider from the address domain, ``custom`` if unknown."""
    domain = email_address.rpartition("@")[2].lower()
    for preset in PROVIDERS.values():
        if domain in preset.domains:
            return preset.name
    return "custom"


__all__ = ["PROVIDERS", "ProviderPreset", "detect_provider", "get_provider"]
