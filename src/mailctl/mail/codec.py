"""Message codec: raw RFC822 payloads to normalized messages.

AIDEV-NOTE: Everything here is pure and stateless so payloads from one batch
can be decoded concurrently off the event loop. Missing or malformed header
fields degrade to defaults; CodecError is reserved for payloads that cannot
be read as a message at all (empty, or without a single header field).
Headers are parsed with the compat32 policy because it never raises on
access, then decoded explicitly.
"""

import logging
import re
from collections.abc import Iterator
from datetime import UTC, datetime
from email import policy as email_policy
from email.header import Header, decode_header
from email.message import Message as RawMessage
from email.parser import BytesParser
from email.utils import parsedate_to_datetime

from mailctl.errors import AttachmentNotFoundError, CodecError
from mailctl.mail.models import Attachment, AttachmentContent, Message

logger = logging.getLogger(__name__)

# Lenient address pattern; anything around the address (display names,
# angle brackets, group syntax) is ignored.
ADDRESS_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9._-]+\.[a-zA-Z0-9_-]+")

MESSAGE_TYPE = "message/rfc822"


def decode_header_value(value: str | Header | None) -> str:
    """Decode an email header value handling various encodings.

    AIDEV-NOTE: Email headers can be encoded in various ways (quoted-printable, base64, etc.)
    This function handles those encodings and returns a plain string.
    """
    if not value:
        return ""

    try:
        parts = decode_header(value)
        decoded_parts = []
        for data, charset in parts:
            if isinstance(data, bytes):
                charset = charset or "utf-8"
                if charset == "unknown-8bit":
                    charset = "utf-8"
                try:
                    decoded_parts.append(data.decode(charset, errors="replace"))
                except (LookupError, UnicodeDecodeError):
                    decoded_parts.append(data.decode("utf-8", errors="replace"))
            else:
                decoded_parts.append(data)
        return "".join(decoded_parts).strip()
    except Exception:
        # If decoding fails, return the original value
        return str(value).strip()


def extract_addresses(value: str) -> list[str]:
    """Return every address-looking token in ``value``, in order."""
    return ADDRESS_PATTERN.findall(value)


def parse_date(value: str, fallback: datetime) -> datetime:
    """Parse a Date header, falling back when absent or unparseable."""
    if not value:
        return fallback
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _decode_text(part: RawMessage, payload: bytes) -> str:
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except (LookupError, UnicodeDecodeError):
        return payload.decode("utf-8", errors="replace")


def _is_attachment_disposition(part: RawMessage) -> bool:
    return "attachment" in str(part.get("Content-Disposition", "")).lower()


def _leaves(part: RawMessage) -> Iterator[RawMessage]:
    """Yield the non-multipart parts of ``part`` in MIME order.

    AIDEV-NOTE: An attached message/rfc822 is yielded whole; its own parts
    belong to the forwarded message, not to this one.
    """
    if part.get_content_type() == MESSAGE_TYPE or not part.is_multipart():
        yield part
        return
    for subpart in part.get_payload():
        yield from _leaves(subpart)


def _leaf_payload(part: RawMessage) -> bytes | None:
    if part.get_content_type() == MESSAGE_TYPE and part.is_multipart():
        inner = part.get_payload(0)
        return inner.as_bytes()
    payload = part.get_payload(decode=True)
    return payload if isinstance(payload, bytes) else None


def _attachment_from(part: RawMessage, payload: bytes) -> AttachmentContent:
    fallback = "message.eml" if part.get_content_type() == MESSAGE_TYPE else "attachment"
    filename = decode_header_value(part.get_filename()) or fallback
    return AttachmentContent(
        filename=filename,
        content_type=part.get_content_type() or "application/octet-stream",
        size=len(payload),
        content=payload,
    )


def extract_parts(
    msg: RawMessage,
) -> tuple[str | None, str | None, list[AttachmentContent]]:
    """Extract text body, HTML body, and attachments from a parsed message.

    Returns:
        Tuple of (text, html, attachments). The first text/plain and the first
        text/html leaf not marked as an attachment are the bodies. Every other
        leaf is an attachment, inline images and forwarded messages included,
        kept in MIME order, which is the order ``extract_attachment`` indexes.
    """
    body_text: str | None = None
    body_html: str | None = None
    attachments: list[AttachmentContent] = []

    multipart = msg.is_multipart()
    for part in _leaves(msg):
        payload = _leaf_payload(part)
        if payload is None:
            continue

        content_type = part.get_content_type()
        is_text = part.get_content_maintype() == "text"
        if not multipart and is_text:
            # A single-part text message is always the body, whatever its disposition.
            if content_type == "text/html":
                body_html = _decode_text(part, payload)
            else:
                body_text = _decode_text(part, payload)
        elif multipart and _is_attachment_disposition(part):
            attachments.append(_attachment_from(part, payload))
        elif content_type == "text/plain" and body_text is None:
            body_text = _decode_text(part, payload)
        elif content_type == "text/html" and body_html is None:
            body_html = _decode_text(part, payload)
        else:
            attachments.append(_attachment_from(part, payload))

    return body_text, body_html, attachments


def parse_payload(raw: bytes) -> RawMessage:
    """Parse ``raw`` into a message structure or raise CodecError."""
    if not isinstance(raw, bytes | bytearray) or not raw.strip():
        raise CodecError("Empty message payload")
    msg = BytesParser(policy=email_policy.compat32).parsebytes(bytes(raw))
    if not msg.keys():
        raise CodecError("Payload has no header fields")
    return msg


def _address_header(msg: RawMessage, name: str) -> list[str]:
    values = msg.get_all(name) or []
    return extract_addresses(", ".join(decode_header_value(v) for v in values))


def parse_message(
    raw: bytes,
    seq: int,
    *,
    flags: list[str] | None = None,
    now: datetime | None = None,
) -> Message:
    """Decode a raw payload into a Message.

    Args:
        raw: Full RFC822 message bytes.
        seq: Sequence number the payload was fetched under.
        flags: IMAP flags reported with the payload.
        now: Substitute for a missing Date header (defaults to the current time).

    Raises:
        CodecError: If the payload cannot be read as a message.
    """
    msg = parse_payload(raw)
    try:
        body_text, body_html, attachments = extract_parts(msg)
        if body_text is None and body_html is None:
            body_text = ""

        return Message(
            seq=seq,
            message_id=decode_header_value(msg.get("Message-ID")),
            subject=decode_header_value(msg.get("Subject")),
            sender=decode_header_value(msg.get("From")),
            to=_address_header(msg, "To"),
            cc=_address_header(msg, "Cc"),
            bcc=_address_header(msg, "Bcc"),
            date=parse_date(
                decode_header_value(msg.get("Date")), now or datetime.now(UTC)
            ),
            text=body_text,
            html=body_html,
            flags=list(flags or []),
            attachments=[
                Attachment(
                    filename=a.filename, content_type=a.content_type, size=a.size
                )
                for a in attachments
            ],
        )
    except Exception as e:
        raise CodecError(f"Could not decode message {seq}: {e}") from e


def extract_attachment(raw: bytes, index: int) -> AttachmentContent:
    """Return the ``index``-th attachment of a raw payload, with content.

    Raises:
        CodecError: If the payload cannot be read as a message.
        AttachmentNotFoundError: If there is no attachment at ``index``.
    """
    msg = parse_payload(raw)
    try:
        _, _, attachments = extract_parts(msg)
    except Exception as e:
        raise CodecError(f"Could not decode attachments: {e}") from e
    if index < 0 or index >= len(attachments):
        raise AttachmentNotFoundError(
            f"Attachment {index} not found ({len(attachments)} attachments)"
        )
    return attachments[index]
