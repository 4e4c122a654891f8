"""RFC 822 / MIME parsing for fetched mailbox messages.

Raw bytes from ``BODY.PEEK[]`` become a ``ParsedEmailMessage`` carrying
the threading headers (``Message-ID``, ``In-Reply-To``, ``References``),
rendered participants, both body flavours and every attachment with its
raw content. Parsed messages are not persisted here; the business layer
consuming a sync cycle owns them.

Bodies and attachment contents are never logged.
"""

from __future__ import annotations

import html
import logging
import uuid
from datetime import datetime, timezone
from email import message_from_bytes
from email.message import EmailMessage as StdEmailMessage
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from typing import List, Optional, Tuple

import html2text
from pydantic import BaseModel, ConfigDict, Field

from teammail.errors import MessageParseError

logger = logging.getLogger(__name__)


class EmailAttachment(BaseModel):
    """Attachment extracted from a MIME part, content included."""

    filename: str
    content_type: str
    size: int = Field(..., ge=0, description="Decoded size in bytes")
    content: bytes = Field(default=b"", repr=False)
    content_id: Optional[str] = None
    is_inline: bool = False


class ParsedEmailMessage(BaseModel):
    """Structured view of one inbound message."""

    model_config = ConfigDict(populate_by_name=True)

    uid: int
    message_id: str
    in_reply_to: Optional[str] = None
    references: Optional[str] = Field(
        default=None, description="Space-joined Message-IDs of the thread chain"
    )
    from_: str = Field(..., alias="from")
    to: List[str] = Field(default_factory=list)
    subject: str = ""
    text: Optional[str] = Field(default=None, repr=False)
    html: Optional[str] = Field(default=None, repr=False)
    date: datetime
    attachments: List[EmailAttachment] = Field(default_factory=list)

    @property
    def is_reply(self) -> bool:
        return bool(self.in_reply_to or self.references)


class EmailParser:
    """Parse raw RFC 822 bytes into ``ParsedEmailMessage``."""

    def __init__(self) -> None:
        # Configure html2text for clean conversion
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = True
        self.html_converter.ignore_emphasis = False
        self.html_converter.body_width = 0  # No line wrapping

    def parse_message(self, raw_message: bytes, uid: int) -> ParsedEmailMessage:
        """Parse one message.

        Args:
            raw_message: Raw RFC 822/MIME bytes
            uid: IMAP UID the bytes were fetched under

        Raises:
            MessageParseError: The bytes are not a usable MIME message
        """
        if not raw_message:
            raise MessageParseError("Message body is empty", details={"uid": uid})

        try:
            msg = message_from_bytes(raw_message, policy=email_policy)
            if not msg.keys():
                raise MessageParseError("Message has no headers", details={"uid": uid})

            text, html_body = self._extract_body(msg)
            return ParsedEmailMessage(
                uid=uid,
                message_id=self._extract_message_id(msg, uid),
                in_reply_to=self._extract_in_reply_to(msg),
                references=self._extract_references(msg),
                from_=self._extract_from(msg),
                to=self._extract_to(msg),
                subject=str(msg.get("Subject", "") or "").strip(),
                text=text,
                html=html_body,
                date=self._extract_date(msg),
                attachments=self._extract_attachments(msg),
            )
        except MessageParseError:
            raise
        except Exception as e:  # noqa: BLE001
            logger.error(
                "Failed to parse email message",
                extra={"uid": uid, "error_type": type(e).__name__},
            )
            raise MessageParseError(
                f"Email parsing failed: {type(e).__name__}", details={"uid": uid}
            ) from e

    # ------------------------------------------------------------------
    # Headers
    # ------------------------------------------------------------------

    def _extract_message_id(self, msg: StdEmailMessage, uid: int) -> str:
        message_id = str(msg.get("Message-ID", "") or "").strip()
        if not message_id:
            fallback_id = f"<generated-{uuid.uuid4()}@teammail.local>"
            logger.warning("Message missing Message-ID, generated fallback", extra={"uid": uid})
            return fallback_id
        return message_id

    def _extract_in_reply_to(self, msg: StdEmailMessage) -> Optional[str]:
        in_reply_to = str(msg.get("In-Reply-To", "") or "").strip()
        return in_reply_to or None

    def _extract_references(self, msg: StdEmailMessage) -> Optional[str]:
        """Collapse every ``References`` header into one space-joined string."""
        values = msg.get_all("References") or []
        ids: List[str] = []
        for value in values:
            ids.extend(str(value).split())
        return " ".join(ids) or None

    def _extract_from(self, msg: StdEmailMessage) -> str:
        addresses = _render_addresses(msg.get_all("From") or [])
        if not addresses:
            logger.warning("Message missing From header")
            return ""
        return addresses[0]

    def _extract_to(self, msg: StdEmailMessage) -> List[str]:
        return _render_addresses(msg.get_all("To") or [])

    def _extract_date(self, msg: StdEmailMessage) -> datetime:
        """Parse ``Date``; falls back to the time of parsing."""
        date_header = msg.get("Date")
        if date_header:
            try:
                parsed = parsedate_to_datetime(str(date_header))
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return parsed
            except (TypeError, ValueError, IndexError):
                logger.warning("Failed to parse Date header, using current time")
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Bodies
    # ------------------------------------------------------------------

    def _extract_body(self, msg: StdEmailMessage) -> Tuple[Optional[str], Optional[str]]:
        """Return ``(text, html)``; each side is derived from the other if absent."""
        body_plain = None
        body_html = None

        for part in msg.walk():
            if not _is_body_part(part):
                continue
            content_type = part.get_content_type()
            if content_type == "text/plain" and body_plain is None:
                body_plain = _decode_text(part)
            elif content_type == "text/html" and body_html is None:
                body_html = _decode_text(part)

        text = body_plain
        if text is None and body_html is not None:
            text = self.html_converter.handle(body_html).strip()
        if body_html is None and body_plain is not None:
            body_html = _text_as_html(body_plain)
        return text, body_html

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def _extract_attachments(self, msg: StdEmailMessage) -> List[EmailAttachment]:
        attachments: List[EmailAttachment] = []
        if not msg.is_multipart():
            return attachments

        for part in msg.walk():
            if part.is_multipart() or _is_body_part(part):
                continue
            disposition = part.get_content_disposition()
            filename = part.get_filename()
            payload = part.get_payload(decode=True) or b""
            content_id = str(part.get("Content-ID", "") or "").strip("<>").strip()
            attachments.append(
                EmailAttachment(
                    filename=filename or f"attachment-{len(attachments) + 1}",
                    content_type=part.get_content_type(),
                    size=len(payload),
                    content=payload,
                    content_id=content_id or None,
                    is_inline=disposition == "inline",
                )
            )
        return attachments


def _render_addresses(values: List[object]) -> List[str]:
    rendered = []
    for name, address in getaddresses([str(v) for v in values]):
        if not address:
            continue
        rendered.append(f"{name} <{address}>" if name else address)
    return rendered


def _is_body_part(part: StdEmailMessage) -> bool:
    return (
        part.get_content_type() in ("text/plain", "text/html")
        and part.get_content_disposition() != "attachment"
        and part.get_filename() is None
    )


def _decode_text(part: StdEmailMessage) -> Optional[str]:
    try:
        return part.get_content()
    except (LookupError, UnicodeDecodeError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _text_as_html(text: str) -> str:
    paragraphs = [p.strip() for p in text.replace("\r\n", "\n").split("\n\n") if p.strip()]
    return "".join(
        f"<p>{html.escape(p).replace(chr(10), '<br/>')}</p>" for p in paragraphs
    )


__all__ = ["EmailAttachment", "EmailParser", "ParsedEmailMessage"]
