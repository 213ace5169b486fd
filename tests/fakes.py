"""In-memory test doubles for the IMAP and SMTP links.

AIDEV-NOTE: FakeImapServer hands out clients that mimic the parts of
aioimaplib.IMAP4 the retrieval session uses (``_client_task``,
``protocol.transport``, command coroutines returning ``Response(result,
lines)`` with bytearray literals). Every command yields to the event loop
while "on the wire", and a second command arriving on the same client
before the first has finished is recorded in ``server.overlaps`` and fails
with AssertionError.

SpySmtpServer does the same for aiosmtplib.SMTP and counts every
connection attempt, so tests can prove a request never reached the relay.
"""

import asyncio
from collections import namedtuple
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.message import EmailMessage
from email.utils import format_datetime
from types import SimpleNamespace
from typing import Any

import aiosmtplib

from mailctl.mail.models import Endpoint
from mailctl.session.wire import encode_mailbox_name

Response = namedtuple("Response", "result lines")


def make_payload(
    subject: str = "Test Subject",
    sender: str = "sender@example.com",
    to: list[str] | None = None,
    cc: list[str] | None = None,
    body: str = "hello",
    html: str | None = None,
    date: datetime | None = None,
    message_id: str | None = None,
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build RFC822 bytes for a test message."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = ", ".join(to or ["recipient@example.com"])
    if cc:
        msg["Cc"] = ", ".join(cc)
    msg["Subject"] = subject
    msg["Date"] = format_datetime(date or datetime(2024, 5, 1, 12, 0, tzinfo=UTC))
    msg["Message-ID"] = message_id or f"<{abs(hash((subject, body)))}@example.com>"
    msg.set_content(body)
    if html is not None:
        msg.add_alternative(html, subtype="html")
    for filename, content_type, content in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes()


MALFORMED_PAYLOAD = b"this is not a message at all\r\n"


# IMAP


@dataclass
class StoredMessage:
    uid: int
    payload: bytes
    flags: set[str] = field(default_factory=set)


@dataclass
class FakeMailbox:
    path: str
    flags: list[str] = field(default_factory=lambda: ["\\HasNoChildren"])
    messages: list[StoredMessage] = field(default_factory=list)
    uid_validity: int = 1700000000
    next_uid: int = 1


def _parse_set(message_set: str, count: int) -> list[int]:
    seqs: list[int] = []
    for part in message_set.split(","):
        if ":" in part:
            low, high = part.split(":", 1)
            start = int(low)
            end = count if high == "*" else int(high)
            seqs.extend(range(min(start, end), max(start, end) + 1))
        else:
            seqs.append(count if part == "*" else int(part))
    return seqs


def _unquote(name: str) -> str:
    if len(name) >= 2 and name[0] == '"' and name[-1] == '"':
        return name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return name


class FakeTransport:
    def __init__(self, client: "FakeImapClient") -> None:
        self._client = client

    def abort(self) -> None:
        self._client.dropped.set()


class FakeImapClient:
    """One connection to a FakeImapServer."""

    def __init__(self, server: "FakeImapServer", endpoint: Endpoint, timeout: float) -> None:
        self.server = server
        self.endpoint = endpoint
        self.timeout = timeout
        self.selected: FakeMailbox | None = None
        self.in_flight: str | None = None
        self.logged_in = False
        self.logged_out = False
        self.dropped = asyncio.Event()
        self.protocol = SimpleNamespace(transport=FakeTransport(self))
        self._client_task: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if server.reachable:
            self._client_task.set_result(None)
        else:
            self._client_task.set_exception(ConnectionRefusedError("connection refused"))

    @property
    def aborted(self) -> bool:
        return self.dropped.is_set()

    async def _wire(self, name: str, *args: Any) -> None:
        """Record a command and hold the wire for its round-trip."""
        if self.in_flight is not None:
            self.server.overlaps.append((self.in_flight, name))
            raise AssertionError(f"{name} sent while {self.in_flight} was in flight")
        if self.aborted:
            raise ConnectionResetError("connection aborted")
        self.in_flight = name
        self.server.commands.append((name, *args))
        try:
            if name in self.server.fail_commands:
                raise self.server.fail_commands.pop(name)
            if name in self.server.hang_commands:
                await self.dropped.wait()
            else:
                # Yield at least once so an interleaving caller would be caught
                await asyncio.sleep(self.server.latency)
                await asyncio.sleep(0)
            if self.aborted:
                raise ConnectionResetError("connection aborted")
        finally:
            self.in_flight = None

    async def wait_hello_from_server(self) -> None:
        await self._wire("HELLO")

    async def login(self, user: str, password: str) -> Response:
        await self._wire("LOGIN", user)
        if self.server.users.get(user) != password:
            return Response("NO", [b"[AUTHENTICATIONFAILED] Authentication failed."])
        self.logged_in = True
        return Response("OK", [b"LOGIN completed"])

    async def logout(self) -> Response:
        await self._wire("LOGOUT")
        self.logged_out = True
        return Response("OK", [b"BYE Logging out", b"LOGOUT completed"])

    async def noop(self) -> Response:
        await self._wire("NOOP")
        lines = []
        if self.selected is not None:
            lines.append(f"{len(self.selected.messages)} EXISTS".encode())
        lines.append(b"NOOP completed.")
        return Response("OK", lines)

    async def list(self, reference: str, pattern: str) -> Response:
        await self._wire("LIST", reference, pattern)
        lines = []
        for mailbox in self.server.mailboxes.values():
            flags = " ".join(mailbox.flags)
            name = encode_mailbox_name(mailbox.path).replace("\\", "\\\\").replace('"', '\\"')
            lines.append(f'({flags}) "{self.server.delimiter}" "{name}"'.encode())
        lines.append(b"LIST completed.")
        return Response("OK", lines)

    async def select(self, mailbox: str) -> Response:
        await self._wire("SELECT", mailbox)
        wire_name = _unquote(mailbox)
        target = next(
            (m for m in self.server.mailboxes.values() if encode_mailbox_name(m.path) == wire_name),
            None,
        )
        self.selected = target
        if target is None:
            return Response("NO", [b"[NONEXISTENT] Unknown Mailbox"])
        return Response(
            "OK",
            [
                b"FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)",
                f"{len(target.messages)} EXISTS".encode(),
                b"0 RECENT",
                f"OK [UIDVALIDITY {target.uid_validity}] UIDs valid".encode(),
                b"[READ-WRITE] Select completed.",
            ],
        )

    async def fetch(self, message_set: str, items: str) -> Response:
        await self._wire("FETCH", message_set, items)
        mailbox = self.selected
        if mailbox is None:
            return Response("BAD", [b"No mailbox selected"])
        lines: list[bytes | bytearray] = []
        count = len(mailbox.messages)
        for seq in _parse_set(message_set, count):
            if seq < 1 or seq > count or seq in self.server.withhold_seqs:
                continue
            stored = mailbox.messages[seq - 1]
            self.server.fetched.append(seq)
            flags = " ".join(sorted(stored.flags))
            prefix = f"{seq} FETCH ("
            if "UID" in items:
                prefix += f"UID {stored.uid} FLAGS ({flags}) "
            lines.append(f"{prefix}BODY[] {{{len(stored.payload)}}}".encode())
            lines.append(bytearray(stored.payload))
            lines.append(b")")
        lines.append(b"FETCH completed.")
        return Response("OK", lines)

    async def store(self, message_set: str, action: str, flags: str) -> Response:
        await self._wire("STORE", message_set, action, flags)
        mailbox = self.selected
        if mailbox is None:
            return Response("BAD", [b"No mailbox selected"])
        names = flags.strip("()").split()
        count = len(mailbox.messages)
        seqs = _parse_set(message_set, count)
        if any(seq < 1 or seq > count for seq in seqs):
            return Response("NO", [b"Invalid message sequence number"])
        for seq in seqs:
            stored = mailbox.messages[seq - 1]
            if action.startswith("+"):
                stored.flags.update(names)
            else:
                stored.flags.difference_update(names)
        return Response("OK", [b"STORE completed."])

    async def expunge(self) -> Response:
        await self._wire("EXPUNGE")
        mailbox = self.selected
        if mailbox is None:
            return Response("BAD", [b"No mailbox selected"])
        if self.server.refuse_expunge:
            return Response("NO", [b"Mailbox is read-only"])
        lines: list[bytes] = []
        kept: list[StoredMessage] = []
        for stored in mailbox.messages:
            if "\\Deleted" in stored.flags:
                # Sequence numbers shift down as earlier messages go
                lines.append(f"{len(kept) + 1} EXPUNGE".encode())
            else:
                kept.append(stored)
        mailbox.messages = kept
        lines.append(b"EXPUNGE completed.")
        return Response("OK", lines)


class FakeImapServer:
    """Mailboxes plus the clients connected to them."""

    def __init__(self, users: dict[str, str] | None = None, delimiter: str = "/") -> None:
        self.users = users or {}
        self.delimiter = delimiter
        self.mailboxes: dict[str, FakeMailbox] = {}
        self.clients: list[FakeImapClient] = []
        self.commands: list[tuple[Any, ...]] = []
        self.overlaps: list[tuple[str, str]] = []
        self.fetched: list[int] = []
        self.reachable = True
        self.latency = 0.0
        self.withhold_seqs: set[int] = set()
        self.hang_commands: set[str] = set()
        self.fail_commands: dict[str, BaseException] = {}
        self.refuse_expunge = False
        self.add_mailbox("INBOX")

    def factory(self, endpoint: Endpoint, timeout: float) -> FakeImapClient:
        client = FakeImapClient(self, endpoint, timeout)
        self.clients.append(client)
        return client

    @property
    def client(self) -> FakeImapClient:
        """The most recently created client."""
        return self.clients[-1]

    def add_mailbox(self, path: str, flags: list[str] | None = None) -> FakeMailbox:
        mailbox = FakeMailbox(path=path, flags=flags or ["\\HasNoChildren"])
        self.mailboxes[path] = mailbox
        return mailbox

    def add_message(self, path: str, payload: bytes, flags: set[str] | None = None) -> int:
        """Append a message; returns its sequence number."""
        mailbox = self.mailboxes[path]
        mailbox.messages.append(StoredMessage(uid=mailbox.next_uid, payload=payload, flags=set(flags or ())))
        mailbox.next_uid += 1
        return len(mailbox.messages)

    def command_names(self) -> list[str]:
        return [command[0] for command in self.commands]


# SMTP



@dataclass
class SentMessage:
    sender: str
    recipients: list[str]
    message: EmailMessage


class SpySmtpClient:
    """Mimics the aiosmtplib.SMTP surface used by the transmission session."""

    def __init__(self, server: "SpySmtpServer", endpoint: Endpoint, timeout: float) -> None:
        self.server = server
        self.hostname = endpoint.host
        self.port = endpoint.port
        self.timeout = timeout
        self.esmtp_extensions: dict[str, str] = {}
        self.is_connected = False

    async def __aenter__(self) -> "SpySmtpClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self.is_connected:
            await self.quit()

    async def connect(self) -> None:
        self.server.connections += 1
        self.server.events.append("connect")
        if not self.server.reachable:
            raise ConnectionRefusedError("connection refused")
        self.is_connected = True

    async def ehlo(self) -> None:
        self.server.events.append("ehlo")
        if self.server.advertise_auth:
            self.esmtp_extensions = {"auth": "PLAIN LOGIN", "size": "10240000"}
        else:
            self.esmtp_extensions = {"size": "10240000"}

    def supports_extension(self, extension: str) -> bool:
        return extension.lower() in self.esmtp_extensions

    async def login(self, username: str, password: str) -> None:
        self.server.events.append("login")
        if self.server.users.get(username) != password:
            raise aiosmtplib.SMTPAuthenticationError(535, "5.7.8 Authentication failed")

    async def send_message(
        self, message: EmailMessage, sender: str, recipients: list[str]
    ) -> tuple[dict[str, aiosmtplib.SMTPResponse], str]:
        self.server.events.append("send")
        if self.server.drop_on_send:
            self.is_connected = False
            raise aiosmtplib.SMTPServerDisconnected("Connection lost")
        if self.server.refuse_data:
            raise aiosmtplib.SMTPDataError(554, "5.7.1 Message rejected")
        rejected = {
            r: aiosmtplib.SMTPResponse(550, "5.1.1 No such user")
            for r in recipients
            if r in self.server.unknown_recipients
        }
        self.server.sent.append(SentMessage(sender, list(recipients), message))
        return rejected, "250 2.0.0 Ok: queued as 4F2A1"

    async def quit(self) -> None:
        self.server.events.append("quit")
        self.is_connected = False

    def close(self) -> None:
        self.is_connected = False


class SpySmtpServer:
    """Records every connection and accepted message."""

    def __init__(self, users: dict[str, str] | None = None) -> None:
        self.users = users or {}
        self.reachable = True
        self.advertise_auth = True
        self.refuse_data = False
        self.drop_on_send = False
        self.unknown_recipients: set[str] = set()
        self.connections = 0
        self.events: list[str] = []
        self.sent: list[SentMessage] = []

    def factory(self, endpoint: Endpoint, timeout: float) -> SpySmtpClient:
        return SpySmtpClient(self, endpoint, timeout)

    def reset(self) -> None:
        """Forget connections made so far (e.g. by connect's verification)."""
        self.connections = 0
        self.events.clear()
        self.sent.clear()


def fill_mailbox(server: FakeImapServer, count: int, path: str = "INBOX") -> None:
    """Add ``count`` messages with subjects "Message 1".."Message N"."""
    for i in range(1, count + 1):
        server.add_message(path, make_payload(subject=f"Message {i}", body=f"Body {i}"))
