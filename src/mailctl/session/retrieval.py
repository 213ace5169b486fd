"""Retrieval link: the long-lived IMAP session.

AIDEV-NOTE: This class only talks to the wire. It assumes the caller
(MailController) holds ``Session.lock`` and has already checked the gate,
so commands never interleave on the connection. Transport failures
(socket errors, aioimaplib aborts, timeouts) propagate as-is for the
controller to turn into ConnectionLost; protocol-level refusals are mapped
here because only here is the meaning of a NO known.

Every command is capped by COMMAND_TIMEOUT_SECONDS so a dead peer cannot
hold the session lock forever.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import aioimaplib

from mailctl.config import Settings, get_settings
from mailctl.errors import (
    AuthFailedError,
    ConnectionLostError,
    InvalidRequestError,
    MailboxNotFoundError,
    MessageNotFoundError,
    UnreachableHostError,
)
from mailctl.mail.codec import extract_attachment, parse_message
from mailctl.mail.models import (
    AccountCredentials,
    AttachmentContent,
    Endpoint,
    Mailbox,
    MailboxStatus,
    Message,
)
from mailctl.session.state import Session
from mailctl.session.wire import (
    FetchRecord,
    MailboxCounters,
    build_mailbox_tree,
    encode_mailbox_name,
    parse_fetch_response,
    parse_list_response,
    quote_mailbox,
    response_text,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Exceptions that mean the link itself is gone or wedged.
LINK_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    TimeoutError,
    aioimaplib.Abort,
    aioimaplib.CommandTimeout,
    aioimaplib.Error,
)

ImapFactory = Callable[[Endpoint, float], Any]

# BODY.PEEK keeps fetches from setting \Seen.
FETCH_ITEMS = "(UID FLAGS BODY.PEEK[])"


def default_imap_factory(endpoint: Endpoint, timeout: float) -> aioimaplib.IMAP4:
    """Create an aioimaplib client; it starts connecting immediately."""
    imap_class = aioimaplib.IMAP4_SSL if endpoint.secure else aioimaplib.IMAP4
    return imap_class(host=endpoint.host, port=endpoint.port, timeout=timeout)


def _abort_transport(client: Any) -> None:
    protocol = getattr(client, "protocol", None)
    transport = getattr(protocol, "transport", None)
    if transport is not None:
        transport.abort()


class RetrievalSession:
    """Owns the IMAP connection for one Session."""

    def __init__(
        self,
        session: Session,
        settings: Settings | None = None,
        imap_factory: ImapFactory | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self._factory = imap_factory or default_imap_factory
        self._client: Any = None
        self._counters = MailboxCounters()

    @property
    def client(self) -> Any:
        """The live aioimaplib client.

        Raises:
            ConnectionLostError: If the link was closed or aborted.
        """
        if self._client is None:
            raise ConnectionLostError("Retrieval link is closed")
        return self._client

    @property
    def is_open(self) -> bool:
        return self._client is not None

    @property
    def message_count(self) -> int:
        """Message count of the selected mailbox as last reported."""
        return self._counters.exists

    async def _call(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        return await asyncio.wait_for(
            awaitable, timeout or self.settings.command_timeout_seconds
        )

    # Lifecycle

    async def open(self, credentials: AccountCredentials) -> None:
        """Connect, wait for the greeting and log in.

        Raises:
            UnreachableHostError: If the server cannot be reached in time.
            AuthFailedError: If LOGIN is refused.
        """
        endpoint = credentials.imap
        timeout = self.settings.connect_timeout_seconds
        try:
            client = self._factory(endpoint, self.settings.command_timeout_seconds)
            self._client = client
            # The client task carries connection errors (refused, DNS...)
            await self._call(client._client_task, timeout)
            await self._call(client.wait_hello_from_server(), timeout)
            response = await self._call(
                client.login(credentials.user, credentials.password.get_secret_value()),
                timeout,
            )
        except LINK_ERRORS as e:
            self.abort()
            raise UnreachableHostError(
                f"Cannot reach IMAP server {endpoint.host}:{endpoint.port}: {e!r}"
            ) from e

        if response.result != "OK":
            await self.close()
            raise AuthFailedError(
                f"IMAP login refused for {credentials.user}: {response_text(response.lines)}"
            )
        logger.info("IMAP login ok for %s at %s:%d", credentials.user, endpoint.host, endpoint.port)

    async def close(self) -> None:
        """Best-effort LOGOUT; never raises."""
        client, self._client = self._client, None
        self._counters = MailboxCounters()
        if client is None:
            return
        try:
            await asyncio.wait_for(
                client.logout(), self.settings.disconnect_grace_seconds
            )
        except Exception as e:
            logger.warning("IMAP logout failed, dropping connection: %r", e)
            _abort_transport(client)

    def abort(self) -> None:
        """Drop the connection without a LOGOUT.

        An operation in flight on the link fails with a transport error.
        """
        client, self._client = self._client, None
        self._counters = MailboxCounters()
        if client is not None:
            _abort_transport(client)

    async def noop(self) -> None:
        """NOOP; refreshes the message count of the selected mailbox."""
        response = await self._call(self.client.noop())
        if response.result != "OK":
            raise ConnectionLostError(f"Server refused NOOP: {response_text(response.lines)}")
        self._counters.absorb(response.lines)

    # Mailboxes

    async def list_mailboxes(self) -> list[Mailbox]:
        response = await self._call(self.client.list('""', "*"))
        if response.result != "OK":
            raise ConnectionLostError(f"Server refused LIST: {response_text(response.lines)}")
        mailboxes = parse_list_response(response.lines)
        logger.debug("Listed %d mailboxes", len(mailboxes))
        return build_mailbox_tree(mailboxes)

    async def select_mailbox(self, path: str) -> MailboxStatus:
        """SELECT ``path`` and record it as the selected mailbox.

        A refused SELECT leaves no mailbox selected (the server has already
        deselected the previous one).

        Raises:
            MailboxNotFoundError: If the server refuses the mailbox.
        """
        response = await self._call(
            self.client.select(quote_mailbox(encode_mailbox_name(path)))
        )
        if response.result != "OK":
            self.session.clear_selection()
            self._counters = MailboxCounters()
            raise MailboxNotFoundError(
                f"Mailbox {path!r} not found: {response_text(response.lines)}"
            )
        self._counters = MailboxCounters()
        self._counters.absorb(response.lines)
        self.session.select(path)
        logger.info("Selected %s (%d messages)", path, self._counters.exists)
        return self._status(path)

    async def ensure_selected(self, path: str) -> MailboxStatus:
        """Select ``path`` unless it already is; refresh the count either way."""
        if self.session.selected_mailbox == path:
            await self.noop()
            return self._status(path)
        return await self.select_mailbox(path)

    def _status(self, path: str) -> MailboxStatus:
        return MailboxStatus(
            path=path,
            exists=self._counters.exists,
            uid_validity=self._counters.uid_validity,
        )

    # Messages

    async def fetch_batch(self, path: str, limit: int) -> list[Message]:
        """Fetch and decode the newest ``limit`` messages of ``path``.

        Messages that are missing from the FETCH response or fail to decode
        are logged and skipped. The result is ordered by descending sequence
        number.

        Raises:
            MailboxNotFoundError: If ``path`` cannot be selected.
        """
        await self.ensure_selected(path)
        exists = self._counters.exists
        if limit == 0 or exists == 0:
            return []

        start = max(1, exists - limit + 1)
        response = await self._call(self.client.fetch(f"{start}:{exists}", FETCH_ITEMS))
        if response.result != "OK":
            logger.warning(
                "FETCH %d:%d in %s returned %s: %s",
                start,
                exists,
                path,
                response.result,
                response_text(response.lines),
            )
        records = parse_fetch_response(response.lines)
        self._counters.absorb(response.lines)

        wanted = []
        for seq in range(exists, start - 1, -1):
            record = records.get(seq)
            if record is None or record.payload is None:
                logger.warning("Message %d in %s was not returned by the server; skipping", seq, path)
                continue
            wanted.append(record)

        messages = await self._decode_all(wanted, path)
        logger.info("Fetched %d/%d messages from %s", len(messages), exists - start + 1, path)
        return messages

    async def _decode_all(self, records: list[FetchRecord], path: str) -> list[Message]:
        """Decode payloads concurrently, preserving the order of ``records``."""
        semaphore = asyncio.Semaphore(self.settings.decode_concurrency)

        async def decode(record: FetchRecord) -> Message:
            async with semaphore:
                return await asyncio.to_thread(
                    parse_message, record.payload or b"", record.seq, flags=record.flags
                )

        results = await asyncio.gather(
            *(decode(record) for record in records), return_exceptions=True
        )

        messages: list[Message] = []
        for record, result in zip(records, results, strict=True):
            if isinstance(result, Exception):
                logger.warning("Skipping message %d in %s: %s", record.seq, path, result)
                continue
            if isinstance(result, BaseException):
                raise result
            messages.append(result)
        return messages

    def _check_seq(self, seq: int) -> None:
        if seq < 1 or seq > self._counters.exists:
            raise MessageNotFoundError(
                f"Message {seq} not found in {self.session.selected_mailbox!r} "
                f"({self._counters.exists} messages)"
            )

    async def store_flag(self, seq: int, flag: str, value: bool) -> None:
        """Add or remove ``flag`` on message ``seq`` of the selected mailbox.

        Raises:
            MessageNotFoundError: If ``seq`` is out of range or the server refuses.
        """
        self._check_seq(seq)
        action = "+FLAGS.SILENT" if value else "-FLAGS.SILENT"
        response = await self._call(self.client.store(str(seq), action, f"({flag})"))
        self._counters.absorb(response.lines)
        if response.result != "OK":
            raise MessageNotFoundError(
                f"Server refused STORE on message {seq}: {response_text(response.lines)}"
            )
        logger.debug("STORE %s %s %s", seq, action, flag)

    async def delete_message(self, seq: int) -> int:
        """Flag ``seq`` as \\Deleted and EXPUNGE the whole mailbox.

        Returns:
            The message count after the expunge.
        """
        await self.store_flag(seq, "\\Deleted", True)
        response = await self._call(self.client.expunge())
        self._counters.absorb(response.lines)
        if response.result != "OK":
            raise InvalidRequestError(
                f"Server refused EXPUNGE on {self.session.selected_mailbox!r}: "
                f"{response_text(response.lines)}"
            )
        logger.info(
            "Expunged %s after deleting message %d (%d remain)",
            self.session.selected_mailbox,
            seq,
            self._counters.exists,
        )
        return self._counters.exists

    async def fetch_raw(self, seq: int) -> bytes:
        """Return the full payload of message ``seq`` without setting \\Seen."""
        self._check_seq(seq)
        response = await self._call(self.client.fetch(str(seq), "(BODY.PEEK[])"))
        self._counters.absorb(response.lines)
        record = parse_fetch_response(response.lines).get(seq)
        if response.result != "OK" or record is None or record.payload is None:
            raise MessageNotFoundError(
                f"Message {seq} could not be fetched: {response_text(response.lines)}"
            )
        return record.payload

    async def fetch_attachment(self, seq: int, index: int) -> AttachmentContent:
        """Fetch message ``seq`` and return its ``index``-th attachment."""
        raw = await self.fetch_raw(seq)
        return await asyncio.to_thread(extract_attachment, raw, index)
