"""Pydantic schemas for API request/response validation.

AIDEV-NOTE: Domain models (Mailbox, Message, MailboxStatus, SendResult)
are returned as-is; these schemas only cover what differs at the HTTP
boundary: byte content travels as base64 and outbound attachments may not
reference server-side files.
"""

import base64

from pydantic import Base64Bytes, BaseModel, Field

from mailctl.mail.models import (
    AttachmentContent,
    OutboundAttachment,
    OutboundMessageRequest,
)
from mailctl.session.state import SessionState

# Session


class ConnectResponse(BaseModel):
    """Result of a successful connect."""

    success: bool = Field(..., description="Always true; failures are error responses")


class StatusResponse(BaseModel):
    """Current session state."""

    connected: bool = Field(..., description="Whether operations may be issued")
    state: SessionState = Field(..., description="Lifecycle state")
    selected_mailbox: str | None = Field(None, description="Currently open mailbox")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Server status")
    state: SessionState = Field(..., description="Mail session state")
    connected: bool = Field(..., description="Whether the mail session is usable")


# Mailboxes and messages


class SelectMailboxRequest(BaseModel):
    """Mailbox to open."""

    path: str = Field(..., min_length=1, description="Full mailbox path")


class SetFlagRequest(BaseModel):
    """Add or remove one flag."""

    flag: str = Field(..., min_length=1, description="seen, flagged, \\Seen, $Label ...")
    value: bool = Field(True, description="True adds the flag, false removes it")


class MarkReadRequest(BaseModel):
    """Mark a message read or unread."""

    mailbox: str = Field(..., min_length=1, description="Mailbox holding the message")
    read: bool = Field(True, description="True marks read, false unread")


class AttachmentContentResponse(BaseModel):
    """Attachment bytes, base64 encoded."""

    filename: str = Field(..., description="Attachment filename")
    content_type: str = Field(..., description="MIME type")
    size: int = Field(..., ge=0, description="Decoded size in bytes")
    content_base64: str = Field(..., description="Base64 encoded content")

    @classmethod
    def from_content(cls, attachment: AttachmentContent) -> "AttachmentContentResponse":
        return cls(
            filename=attachment.filename,
            content_type=attachment.content_type,
            size=attachment.size,
            content_base64=base64.b64encode(attachment.content).decode("ascii"),
        )


# Sending


class OutboundAttachmentRequest(BaseModel):
    """Inline attachment for a send request."""

    filename: str = Field(..., min_length=1, description="Attachment filename")
    content_type: str | None = Field(None, description="MIME type (guessed when omitted)")
    content_base64: Base64Bytes = Field(..., description="Base64 encoded content")


class SendRequest(BaseModel):
    """Message to submit from the connected account."""

    to: list[str] = Field(default_factory=list, description="Primary recipients")
    cc: list[str] = Field(default_factory=list, description="Carbon-copy recipients")
    bcc: list[str] = Field(default_factory=list, description="Envelope-only recipients")
    subject: str = Field("", description="Subject header")
    text: str | None = Field(None, description="Plain text body")
    html: str | None = Field(None, description="HTML body")
    attachments: list[OutboundAttachmentRequest] = Field(
        default_factory=list, description="Inline attachments"
    )

    def to_outbound(self) -> OutboundMessageRequest:
        return OutboundMessageRequest(
            to=self.to,
            cc=self.cc,
            bcc=self.bcc,
            subject=self.subject,
            text=self.text,
            html=self.html,
            attachments=[
                OutboundAttachment(
                    filename=a.filename,
                    content_type=a.content_type,
                    content=a.content_base64,
                )
                for a in self.attachments
            ],
        )


# Errors


class ErrorResponse(BaseModel):
    """Error response."""

    kind: str = Field(..., description="Stable error tag")
    detail: str = Field(..., description="Human-readable detail")
