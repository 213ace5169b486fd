"""Transmission link: stateless SMTP submission via aiosmtplib.

AIDEV-NOTE: No connection is kept between calls. ``verify_capability``
and every ``send`` open their own connection (connect, opportunistic
STARTTLS, AUTH when advertised, QUIT). Relay refusals are reported as
TransmissionRejected and never fault the session; the retrieval link is
independent and the next send starts from a fresh connection.
"""

import asyncio
import logging
import mimetypes
from collections.abc import Callable
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

import aiosmtplib

from mailctl.config import Settings, get_settings
from mailctl.errors import (
    AuthFailedError,
    InvalidRequestError,
    TransmissionRejectedError,
    UnreachableHostError,
)
from mailctl.mail.codec import ADDRESS_PATTERN
from mailctl.mail.models import (
    AccountCredentials,
    Endpoint,
    OutboundAttachment,
    OutboundMessageRequest,
    SendResult,
)

logger = logging.getLogger(__name__)

SmtpFactory = Callable[[Endpoint, float], aiosmtplib.SMTP]


def default_smtp_factory(endpoint: Endpoint, timeout: float) -> aiosmtplib.SMTP:
    """Create an unconnected aiosmtplib client for ``endpoint``."""
    return aiosmtplib.SMTP(
        hostname=endpoint.host,
        port=endpoint.port,
        use_tls=endpoint.secure,
        timeout=timeout,
    )


def validate_request(request: OutboundMessageRequest) -> None:
    """Reject requests that must never reach the relay.

    Raises:
        InvalidRequestError: No primary recipient, a malformed address, or
            neither subject nor body.
    """
    if not request.to:
        raise InvalidRequestError("At least one 'to' recipient is required")
    bad = [a for a in request.all_recipients if not ADDRESS_PATTERN.fullmatch(a.strip())]
    if bad:
        raise InvalidRequestError(f"Invalid recipient address(es): {', '.join(bad)}")
    if not request.subject.strip() and not request.text and not request.html:
        raise InvalidRequestError("Message has neither a subject nor a body")


def _attachment_bytes(attachment: OutboundAttachment) -> bytes:
    if attachment.content is not None:
        return attachment.content
    if attachment.path is None:
        raise InvalidRequestError(f"Attachment {attachment.filename!r} has no content or path")
    try:
        return attachment.path.read_bytes()
    except OSError as e:
        raise InvalidRequestError(
            f"Cannot read attachment {attachment.filename!r} from {attachment.path}: {e}"
        ) from e


def compose_message(sender: str, request: OutboundMessageRequest) -> EmailMessage:
    """Build the RFC 5322 message for ``request``.

    Bcc recipients are left out of the headers; they only go on the envelope.
    """
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = ", ".join(request.to)
    if request.cc:
        msg["Cc"] = ", ".join(request.cc)
    msg["Subject"] = request.subject
    msg["Date"] = formatdate(localtime=False, usegmt=True)
    domain = sender.rpartition("@")[2] or None
    msg["Message-ID"] = make_msgid(domain=domain)

    if request.text is not None:
        msg.set_content(request.text)
        if request.html is not None:
            msg.add_alternative(request.html, subtype="html")
    elif request.html is not None:
        msg.set_content(request.html, subtype="html")
    else:
        msg.set_content("")

    for attachment in request.attachments:
        data = _attachment_bytes(attachment)
        content_type = (
            attachment.content_type
            or mimetypes.guess_type(attachment.filename)[0]
            or "application/octet-stream"
        )
        maintype, _, subtype = content_type.partition("/")
        msg.add_attachment(
            data,
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
        )
    return msg


class TransmissionSession:
    """Submits messages for one account."""

    def __init__(
        self,
        settings: Settings | None = None,
        smtp_factory: SmtpFactory | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._factory = smtp_factory or default_smtp_factory
        # Sends are serialized; concurrent sends are not needed.
        self.lock = asyncio.Lock()

    def _client(self, endpoint: Endpoint) -> aiosmtplib.SMTP:
        return self._factory(endpoint, float(self.settings.command_timeout_seconds))

    async def _authenticate(self, smtp: aiosmtplib.SMTP, credentials: AccountCredentials) -> None:
        if not smtp.esmtp_extensions:
            await smtp.ehlo()
        if smtp.supports_extension("auth"):
            await smtp.login(credentials.user, credentials.password.get_secret_value())
        else:
            logger.debug("Relay %s does not advertise AUTH; sending unauthenticated", smtp.hostname)

    async def verify_capability(self, credentials: AccountCredentials) -> None:
        """Check that the relay is reachable and accepts the credentials.

        Raises:
            UnreachableHostError: If the relay cannot be reached.
            AuthFailedError: If the relay rejects the credentials.
        """
        endpoint = credentials.smtp
        try:
            async with self._client(endpoint) as smtp:
                await self._authenticate(smtp, credentials)
        except aiosmtplib.SMTPAuthenticationError as e:
            raise AuthFailedError(f"SMTP login refused for {credentials.user}: {e}") from e
        except (aiosmtplib.SMTPException, OSError, TimeoutError) as e:
            raise UnreachableHostError(
                f"Cannot use SMTP relay {endpoint.host}:{endpoint.port}: {e!r}"
            ) from e
        logger.info("SMTP relay %s:%d verified", endpoint.host, endpoint.port)

    async def send(
        self, credentials: AccountCredentials, request: OutboundMessageRequest
    ) -> SendResult:
        """Validate, compose and submit ``request``.

        AIDEV-NOTE: Every relay failure is a TransmissionRejectedError, whatever
        its cause (unreachable, login refused, dropped, timed out, refused
        data); ``detail`` says which. The session stays CONNECTED.

        Raises:
            InvalidRequestError: Before any network round-trip, see validate_request.
            TransmissionRejectedError: If the message could not be submitted.
        """
        validate_request(request)
        msg = compose_message(credentials.user, request)
        recipients = [a.strip() for a in request.all_recipients]
        endpoint = credentials.smtp

        async with self.lock:
            smtp = self._client(endpoint)
            try:
                await smtp.connect()
            except (aiosmtplib.SMTPException, OSError, TimeoutError) as e:
                raise TransmissionRejectedError(
                    f"Cannot reach SMTP relay {endpoint.host}:{endpoint.port}: {e!r}"
                ) from e
            try:
                await self._authenticate(smtp, credentials)
                rejected, response = await smtp.send_message(
                    msg, sender=credentials.user, recipients=recipients
                )
            except aiosmtplib.SMTPAuthenticationError as e:
                raise TransmissionRejectedError(
                    f"SMTP login refused for {credentials.user}: {e}"
                ) from e
            except (
                aiosmtplib.SMTPServerDisconnected,
                aiosmtplib.SMTPTimeoutError,
                OSError,
                TimeoutError,
            ) as e:
                raise TransmissionRejectedError(
                    f"SMTP relay dropped the connection: {e!r}"
                ) from e
            except aiosmtplib.SMTPException as e:
                raise TransmissionRejectedError(f"SMTP relay refused the message: {e}") from e
            finally:
                await self._quit(smtp)

        if rejected:
            logger.warning("Relay refused %d recipient(s): %s", len(rejected), ", ".join(rejected))
        logger.info(
            "Sent message %s to %d recipient(s), subject=%s",
            msg["Message-ID"],
            len(recipients) - len(rejected),
            request.subject[:50] + "..." if len(request.subject) > 50 else request.subject,
        )
        return SendResult(
            message_id=str(msg["Message-ID"]),
            response=response,
            rejected=sorted(rejected),
        )

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        if not smtp.is_connected:
            return
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, TimeoutError) as e:
            logger.debug("SMTP QUIT failed: %r", e)
            smtp.close()
