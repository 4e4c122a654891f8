"""Tests for provider presets."""

import pytest

from teammail.errors import UnknownProviderError
from teammail.mailbox.providers import PROVIDERS, detect_provider, get_provider


def test_gmail_preset():
    preset = get_provider("gmail")
    assert preset.imap_host == "imap.gmail.com"
    assert preset.imap_port == 993
    assert preset.smtp_host == "smtp.gmail.com"
    assert preset.smtp_port == 465
    assert preset.supports_oauth is True


def test_starttls_presets_use_submission_port():
    for name in ("outlook", "icloud"):
        preset = get_provider(name)
        assert preset.smtp_port == 587
        assert preset.smtp_use_tls is False


def test_lookup_is_case_insensitive():
    assert get_provider("Gmail").name == "gmail"


def test_custom_has_no_hosts():
    custom = PROVIDERS["custom"]
    assert custom.imap_host is None
    assert custom.smtp_host is None


def test_unknown_provider():
    with pytest.raises(UnknownProviderError) as exc_info:
        get_provider("aol")
    assert "gmail" in exc_info.value.details["supported"]


@pytest.mark.parametrize(
    "address, expected",
    [
        ("team@gmail.com", "gmail"),
        ("team@Hotmail.com", "outlook"),
        ("team@me.com", "icloud"),
        ("team@agency.example", "custom"),
        ("not-an-address", "custom"),
    ],
)
def test_detect_provider(address, expected):
    assert detect_provider(address) == expected
