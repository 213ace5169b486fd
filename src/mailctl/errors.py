"""Caller-facing error taxonomy.

AIDEV-NOTE: Every failure that leaves the controller is one of these.
Callers (and the HTTP boundary) branch on ``kind``, never on ``detail``.
Library exceptions are chained with ``raise ... from exc`` so the original
traceback stays available in logs.
"""

from enum import StrEnum


class ErrorKind(StrEnum):
    """Stable tags carried by every surfaced failure."""

    # Usage errors
    NOT_CONNECTED = "not_connected"
    NO_MAILBOX_SELECTED = "no_mailbox_selected"
    INVALID_REQUEST = "invalid_request"
    ALREADY_CONNECTED = "already_connected"
    # Not found
    MAILBOX_NOT_FOUND = "mailbox_not_found"
    MESSAGE_NOT_FOUND = "message_not_found"
    ATTACHMENT_NOT_FOUND = "attachment_not_found"
    # Transport
    UNREACHABLE_HOST = "unreachable_host"
    AUTH_FAILED = "auth_failed"
    CONNECTION_LOST = "connection_lost"
    TRANSMISSION_REJECTED = "transmission_rejected"
    # Codec
    CODEC_ERROR = "codec_error"


class MailSessionError(Exception):
    """Base class for all controller failures."""

    kind: ErrorKind

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict[str, str]:
        """Return the serializable ``{"kind", "detail"}`` form."""
        return {"kind": str(self.kind), "detail": self.detail}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind!s}, detail={self.detail!r})"


class UsageError(MailSessionError):
    """The caller invoked an operation in a state that forbids it."""


class NotFoundError(MailSessionError):
    """The target no longer exists on the server."""


class TransportError(MailSessionError):
    """Network or server-originated failure."""


class CodecError(MailSessionError):
    """A payload could not be decoded into a message structure."""

    kind = ErrorKind.CODEC_ERROR


class NotConnectedError(UsageError):
    kind = ErrorKind.NOT_CONNECTED


class NoMailboxSelectedError(UsageError):
    kind = ErrorKind.NO_MAILBOX_SELECTED


class InvalidRequestError(UsageError):
    kind = ErrorKind.INVALID_REQUEST


class AlreadyConnectedError(UsageError):
    kind = ErrorKind.ALREADY_CONNECTED


class MailboxNotFoundError(NotFoundError):
    kind = ErrorKind.MAILBOX_NOT_FOUND


class MessageNotFoundError(NotFoundError):
    kind = ErrorKind.MESSAGE_NOT_FOUND


class AttachmentNotFoundError(NotFoundError):
    kind = ErrorKind.ATTACHMENT_NOT_FOUND


class UnreachableHostError(TransportError):
    kind = ErrorKind.UNREACHABLE_HOST


class AuthFailedError(TransportError):
    kind = ErrorKind.AUTH_FAILED


class ConnectionLostError(TransportError):
    kind = ErrorKind.CONNECTION_LOST


class TransmissionRejectedError(TransportError):
    kind = ErrorKind.TRANSMISSION_REJECTED
