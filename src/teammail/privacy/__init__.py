"""Secret protection for persisted mailbox credentials."""

from .encryption import SecretCodec, generate_key

__all__ = ["SecretCodec", "generate_key"]
