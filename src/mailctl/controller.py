"""Controller facade: the single entry point for one mail account.

AIDEV-NOTE: The controller owns one Session, one RetrievalSession and one
TransmissionSession. Every retrieval operation runs inside ``_retrieval()``,
which holds ``Session.lock`` (so IMAP commands never interleave), checks the
gate, and turns any link failure into ConnectionLost + FAULTED. Sends only
share the connected gate; they run on their own connection and lock.

There is no module-level instance: whoever needs a controller constructs one
(the HTTP app keeps its own on ``app.state``).
"""

import asyncio
import contextlib
import logging
import re
from collections.abc import AsyncIterator, Callable

from mailctl.config import Settings, get_settings
from mailctl.errors import (
    ConnectionLostError,
    InvalidRequestError,
    MailSessionError,
    NotConnectedError,
)
from mailctl.mail.models import (
    AccountCredentials,
    AttachmentContent,
    Mailbox,
    MailboxStatus,
    Message,
    OutboundMessageRequest,
    SendResult,
)
from mailctl.session.retrieval import LINK_ERRORS, ImapFactory, RetrievalSession
from mailctl.session.state import Session, SessionState, StateListener
from mailctl.session.transmission import SmtpFactory, TransmissionSession

logger = logging.getLogger(__name__)

FRIENDLY_FLAGS = {
    "seen": "\\Seen",
    "answered": "\\Answered",
    "flagged": "\\Flagged",
    "deleted": "\\Deleted",
    "draft": "\\Draft",
}

# Characters that cannot appear in an IMAP flag atom.
INVALID_FLAG_CHARS = re.compile(r'[\s()"{%*\]]')


def normalize_flag(flag: str) -> str:
    """Map a friendly or raw flag name to its wire form.

    ``"seen"`` becomes ``\\Seen``; system flags (``\\Seen``) and keywords
    (``$Label``) pass through unchanged.

    Raises:
        InvalidRequestError: If ``flag`` is empty or not a valid flag atom.
    """
    name = flag.strip()
    if name.lower() in FRIENDLY_FLAGS:
        return FRIENDLY_FLAGS[name.lower()]
    if not name or INVALID_FLAG_CHARS.search(name) or "\\" in name[1:]:
        raise InvalidRequestError(f"Invalid flag name: {flag!r}")
    return name


class MailController:
    """Connect, browse, mutate and send for one account.

    AIDEV-NOTE: Callers only ever see MailSessionError subclasses; internal
    states and library exceptions do not leak past this class.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        imap_factory: ImapFactory | None = None,
        smtp_factory: SmtpFactory | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session = Session()
        self.retrieval = RetrievalSession(self.session, self.settings, imap_factory)
        self.transmission = TransmissionSession(self.settings, smtp_factory)

    # State

    def is_connected(self) -> bool:
        """Never fails, never blocks."""
        return self.session.is_connected

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def selected_mailbox(self) -> str | None:
        return self.session.selected_mailbox

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener(old, new, detail)`` for state transitions.

        Returns:
            A callable that unsubscribes the listener.
        """
        return self.session.subscribe(listener)

    # Lifecycle

    async def connect(self, credentials: AccountCredentials) -> bool:
        """Open the retrieval link and verify the transmission link.

        Raises:
            AlreadyConnectedError: If a connect is in progress or done.
            UnreachableHostError: If either server cannot be reached.
            AuthFailedError: If either server rejects the credentials.
        """
        async with self.session.lock:
            self.session.begin_connect(credentials)
            try:
                await self.retrieval.open(credentials)
                await self.transmission.verify_capability(credentials)
                if self.session.state is not SessionState.CONNECTING:
                    raise ConnectionLostError("Session was torn down while connecting")
            except MailSessionError as e:
                await self.retrieval.close()
                self.session.mark_faulted(e.detail)
                raise
            except BaseException:
                self.retrieval.abort()
                self.session.mark_faulted("connect interrupted")
                raise
            self.session.mark_connected()
        return True

    async def disconnect(self) -> None:
        """Tear the session down; never raises.

        Waits up to DISCONNECT_GRACE_SECONDS for an in-flight retrieval
        operation, then aborts its link (that operation fails with
        ConnectionLost). Credentials and selection are dropped either way.
        """
        lock = self.session.lock
        acquired = False
        try:
            await asyncio.wait_for(lock.acquire(), self.settings.disconnect_grace_seconds)
            acquired = True
        except TimeoutError:
            logger.warning(
                "Retrieval operation still running after %ss; aborting the link",
                self.settings.disconnect_grace_seconds,
            )
            self.retrieval.abort()
        try:
            await self.retrieval.close()
            self.session.reset("disconnected")
        finally:
            if acquired:
                lock.release()

    async def shutdown(self) -> None:
        """Disconnect and drop all state listeners."""
        await self.disconnect()
        self.session.clear_listeners()

    async def ping(self) -> bool:
        """NOOP the retrieval link unless it is busy or not connected.

        Returns:
            False if the ping was skipped.

        Raises:
            ConnectionLostError: If the link turned out to be dead.
        """
        if not self.session.is_connected or self.session.lock.locked():
            return False
        async with self._retrieval():
            await self.retrieval.noop()
        return True

    # Retrieval

    @contextlib.asynccontextmanager
    async def _retrieval(self) -> AsyncIterator[None]:
        # Fail fast without queueing behind the lock
        self.session.require_connected()
        async with self.session.lock:
            self.session.require_connected()
            try:
                yield
            except (*LINK_ERRORS, ConnectionLostError) as e:
                raise self._link_failed(e) from e
            except asyncio.CancelledError:
                # The link may be mid-response; it cannot be reused.
                self._link_failed(ConnectionLostError("operation cancelled"))
                raise

    def _link_failed(self, exc: BaseException) -> ConnectionLostError:
        if isinstance(exc, ConnectionLostError):
            detail = exc.detail
        else:
            detail = f"Retrieval link lost: {exc!r}"
        self.retrieval.abort()
        self.session.mark_faulted(detail)
        return ConnectionLostError(detail)

    async def list_mailboxes(self) -> list[Mailbox]:
        """Return the mailbox tree (roots with nested children)."""
        async with self._retrieval():
            return await self.retrieval.list_mailboxes()

    async def select_mailbox(self, path: str) -> MailboxStatus:
        """Open ``path`` and make it the selected mailbox.

        Raises:
            MailboxNotFoundError: If the server refuses it; nothing stays selected.
        """
        if not path.strip():
            raise InvalidRequestError("Mailbox path must not be empty")
        async with self._retrieval():
            return await self.retrieval.select_mailbox(path)

    async def fetch_batch(self, path: str | None = None, limit: int | None = None) -> list[Message]:
        """Return the newest ``limit`` messages of ``path``, newest first.

        Defaults come from DEFAULT_MAILBOX and DEFAULT_FETCH_LIMIT.
        Undecodable messages are skipped.

        Raises:
            InvalidRequestError: If ``limit`` is negative.
            MailboxNotFoundError: If ``path`` cannot be selected.
        """
        self.session.require_connected()
        path = path if path is not None else self.settings.default_mailbox
        limit = limit if limit is not None else self.settings.default_fetch_limit
        if not path.strip():
            raise InvalidRequestError("Mailbox path must not be empty")
        if limit < 0:
            raise InvalidRequestError(f"limit must not be negative, got {limit}")
        async with self._retrieval():
            return await self.retrieval.fetch_batch(path, limit)

    async def set_flag(self, seq: int, flag: str, value: bool = True) -> None:
        """Add (``value=True``) or remove ``flag`` on message ``seq``.

        Raises:
            NoMailboxSelectedError: If no mailbox is open.
            MessageNotFoundError: If ``seq`` does not exist in the mailbox.
        """
        wire_flag = normalize_flag(flag)
        async with self._retrieval():
            self.session.require_mailbox()
            await self.retrieval.store_flag(seq, wire_flag, value)

    async def mark_as_read(self, path: str, seq: int, read: bool = True) -> None:
        """Select ``path`` if needed, then set or clear \\Seen on ``seq``."""
        if not path.strip():
            raise InvalidRequestError("Mailbox path must not be empty")
        async with self._retrieval():
            await self.retrieval.ensure_selected(path)
            await self.retrieval.store_flag(seq, "\\Seen", read)

    async def delete_message(self, seq: int) -> None:
        """Flag ``seq`` as deleted and expunge the selected mailbox.

        AIDEV-NOTE: EXPUNGE compacts the whole mailbox, so every message
        already flagged \\Deleted is removed too, and all sequence numbers
        above ``seq`` shift down.
        """
        async with self._retrieval():
            self.session.require_mailbox()
            await self.retrieval.delete_message(seq)

    async def fetch_attachment_content(self, seq: int, index: int) -> AttachmentContent:
        """Return the bytes of the ``index``-th attachment of message ``seq``.

        Raises:
            NoMailboxSelectedError: If no mailbox is open.
            MessageNotFoundError: If ``seq`` does not exist.
            AttachmentNotFoundError: If there is no attachment at ``index``.
            CodecError: If the message cannot be decoded.
        """
        async with self._retrieval():
            self.session.require_mailbox()
            return await self.retrieval.fetch_attachment(seq, index)

    # Transmission

    async def send(self, request: OutboundMessageRequest) -> SendResult:
        """Submit ``request`` from the connected account.

        Does not need a selected mailbox. Relay failures do not change the
        session state.

        Raises:
            NotConnectedError: If the session is not connected.
            ConnectionLostError: If the session is FAULTED.
            InvalidRequestError: Before any round-trip, for unsendable requests.
            TransmissionRejectedError: If the relay could not take the message.
        """
        self.session.require_connected()
        credentials = self.session.credentials
        if credentials is None:
            raise NotConnectedError("Session holds no credentials; call connect first")
        return await self.transmission.send(credentials, request)
