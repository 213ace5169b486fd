"""Pydantic models for mail entities.

AIDEV-NOTE: These are the normalized shapes callers receive from the
controller. Sequence numbers (``Message.seq``) are only meaningful together
with the mailbox that was selected when they were fetched.
"""

from datetime import datetime
from pathlib import Path

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    computed_field,
    model_validator,
)


class Endpoint(BaseModel):
    """Host/port/TLS triple for one server link."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(..., min_length=1, description="Server hostname")
    port: int = Field(..., ge=1, le=65535, description="Server port")
    secure: bool = Field(default=True, description="Use implicit TLS")


class AccountCredentials(BaseModel):
    """Credentials and endpoints for a single account."""

    model_config = ConfigDict(frozen=True)

    user: str = Field(..., min_length=1, description="Login name, also the sender")
    password: SecretStr = Field(..., description="Password or app token")
    imap: Endpoint = Field(..., description="Retrieval endpoint")
    smtp: Endpoint = Field(..., description="Transmission endpoint")


class Mailbox(BaseModel):
    """A mailbox and its children."""

    name: str = Field(..., description="Last path segment")
    path: str = Field(..., description="Full hierarchical path")
    delimiter: str | None = Field(None, description="Hierarchy delimiter")
    flags: list[str] = Field(default_factory=list, description="LIST flags")
    special_use: str | None = Field(None, description="Special-use flag, if any")
    children: list["Mailbox"] = Field(default_factory=list, description="Children")


class MailboxStatus(BaseModel):
    """Metadata returned when a mailbox is opened."""

    path: str = Field(..., description="Selected mailbox path")
    exists: int = Field(..., ge=0, description="Number of messages")
    uid_validity: int | None = Field(None, description="UIDVALIDITY, if reported")


class Attachment(BaseModel):
    """Attachment descriptor (without content)."""

    filename: str = Field(default="attachment", description="Declared filename")
    content_type: str = Field(
        default="application/octet-stream", description="Declared MIME type"
    )
    size: int = Field(..., ge=0, description="Decoded size in bytes")


class AttachmentContent(Attachment):
    """Attachment descriptor including decoded bytes."""

    content: bytes = Field(..., description="Decoded attachment bytes")


class Message(BaseModel):
    """Normalized message entity."""

    seq: int = Field(..., ge=1, description="Sequence number in the selected mailbox")
    message_id: str = Field(default="", description="Message-ID header")
    subject: str = Field(default="", description="Decoded subject")
    sender: str = Field(default="", description="Decoded From header")
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    date: datetime = Field(..., description="Date header, or decode time")
    text: str | None = Field(None, description="Plain text body")
    html: str | None = Field(None, description="HTML body")
    flags: list[str] = Field(default_factory=list, description="IMAP flags")
    attachments: list[Attachment] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def seen(self) -> bool:
        """Whether the message carries the \\Seen flag."""
        return "\\Seen" in self.flags


class OutboundAttachment(BaseModel):
    """Attachment source for an outgoing message."""

    filename: str = Field(..., min_length=1, description="Filename to advertise")
    content_type: str | None = Field(
        None, description="MIME type; guessed from the filename when absent"
    )
    content: bytes | None = Field(None, description="Inline bytes")
    path: Path | None = Field(None, description="File to read at send time")

    @model_validator(mode="after")
    def check_single_source(self) -> "OutboundAttachment":
        """Require exactly one of ``content`` and ``path``."""
        if (self.content is None) == (self.path is None):
            raise ValueError("exactly one of content or path must be set")
        return self


class OutboundMessageRequest(BaseModel):
    """A message to transmit. Consumed by a single send call."""

    to: list[str] = Field(default_factory=list, description="Primary recipients")
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list, description="Envelope-only")
    subject: str = Field(default="")
    text: str | None = Field(None, description="Plain text body")
    html: str | None = Field(None, description="HTML body")
    attachments: list[OutboundAttachment] = Field(default_factory=list)

    @property
    def all_recipients(self) -> list[str]:
        """Envelope recipients in to, cc, bcc order."""
        return [*self.to, *self.cc, *self.bcc]


class SendResult(BaseModel):
    """Outcome of a successful transmission."""

    message_id: str = Field(..., description="Generated Message-ID")
    response: str = Field(..., description="Relay acknowledgement")
    rejected: list[str] = Field(
        default_factory=list, description="Recipients refused by the relay"
    )
