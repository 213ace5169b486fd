"""Session lifecycle state machine.

AIDEV-NOTE: One Session per controller. It is the only shared mutable state:
lifecycle state, selected mailbox and held credentials. Writes happen only
while ``Session.lock`` is held by the controller; the lock also serializes
every command on the retrieval link.

    DISCONNECTED --connect--> CONNECTING --ok--> CONNECTED --disconnect--> DISCONNECTED
                               |                  |
                               +--fail--> FAULTED <+--transport error
    FAULTED --connect--> CONNECTING,  FAULTED --disconnect--> DISCONNECTED
"""

import asyncio
import logging
from collections.abc import Callable
from enum import StrEnum

from mailctl.errors import (
    AlreadyConnectedError,
    ConnectionLostError,
    NoMailboxSelectedError,
    NotConnectedError,
)
from mailctl.mail.models import AccountCredentials

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    """Lifecycle of the coupled retrieval + transmission links."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAULTED = "faulted"


# listener(old_state, new_state, detail)
StateListener = Callable[[SessionState, SessionState, str], None]

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.DISCONNECTED: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset({SessionState.CONNECTED, SessionState.FAULTED}),
    SessionState.CONNECTED: frozenset(
        {SessionState.DISCONNECTED, SessionState.FAULTED}
    ),
    SessionState.FAULTED: frozenset(
        {SessionState.CONNECTING, SessionState.DISCONNECTED}
    ),
}


class Session:
    """State, selection and credentials for one account.

    AIDEV-NOTE: FAULTED rejects operations with ConnectionLost, DISCONNECTED
    with NotConnected, so callers can tell a lost link from a clean
    disconnect. Only connect or disconnect leave FAULTED.
    """

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self._state = SessionState.DISCONNECTED
        self._selected_mailbox: str | None = None
        self._credentials: AccountCredentials | None = None
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def selected_mailbox(self) -> str | None:
        return self._selected_mailbox

    @property
    def credentials(self) -> AccountCredentials | None:
        return self._credentials

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    # Transitions

    def begin_connect(self, credentials: AccountCredentials) -> None:
        """Enter CONNECTING holding ``credentials``.

        Raises:
            AlreadyConnectedError: If a connect is in progress or done.
        """
        if self._state in (SessionState.CONNECTING, SessionState.CONNECTED):
            raise AlreadyConnectedError(
                f"Session is already {self._state}; disconnect first"
            )
        self._credentials = credentials
        self._selected_mailbox = None
        self._transition(SessionState.CONNECTING, f"connecting as {credentials.user}")

    def mark_connected(self) -> None:
        self._transition(SessionState.CONNECTED, "links established")

    def mark_faulted(self, detail: str) -> None:
        """Drop to FAULTED after an unrecoverable transport error.

        No-op unless CONNECTING or CONNECTED, so a late failure from an
        aborted operation cannot resurrect a session that was torn down.
        """
        if self._state not in (SessionState.CONNECTING, SessionState.CONNECTED):
            return
        self._credentials = None
        self._selected_mailbox = None
        self._transition(SessionState.FAULTED, detail)

    def reset(self, detail: str = "disconnected") -> None:
        """Return to DISCONNECTED, dropping credentials and selection."""
        self._credentials = None
        self._selected_mailbox = None
        if self._state is SessionState.DISCONNECTED:
            return
        if self._state is SessionState.CONNECTING:
            # Teardown is unconditional; a half-open connect is reported as
            # a fault before settling.
            self._transition(SessionState.FAULTED, "connect abandoned")
        self._transition(SessionState.DISCONNECTED, detail)

    # Selection

    def select(self, path: str) -> None:
        self.require_connected()
        self._selected_mailbox = path

    def clear_selection(self) -> None:
        self._selected_mailbox = None

    # Gates

    def require_connected(self) -> None:
        """Raise unless CONNECTED.

        Raises:
            ConnectionLostError: If FAULTED, until the caller connects again.
            NotConnectedError: If DISCONNECTED or still CONNECTING.
        """
        if self._state is SessionState.FAULTED:
            raise ConnectionLostError("Session link was lost; connect again")
        if self._state is not SessionState.CONNECTED:
            raise NotConnectedError(f"Session is {self._state}; call connect first")

    def require_mailbox(self) -> str:
        """Return the selected mailbox or raise.

        Raises:
            ConnectionLostError: If FAULTED.
            NotConnectedError: If DISCONNECTED or CONNECTING.
            NoMailboxSelectedError: If no mailbox has been opened.
        """
        self.require_connected()
        if self._selected_mailbox is None:
            raise NoMailboxSelectedError("No mailbox selected; open one first")
        return self._selected_mailbox

    # Observers

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener`` for state transitions.

        Returns:
            A callable that removes the listener. Calling it twice is harmless.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def clear_listeners(self) -> None:
        self._listeners.clear()

    def _transition(self, new: SessionState, detail: str) -> None:
        old = self._state
        if new not in _TRANSITIONS[old]:
            raise RuntimeError(f"Illegal session transition {old} -> {new}")
        self._state = new
        log = logger.error if new is SessionState.FAULTED else logger.info
        log("Session %s -> %s: %s", old, new, detail)

        for listener in list(self._listeners):
            try:
                listener(old, new, detail)
            except Exception:
                logger.exception("State listener failed for %s -> %s", old, new)
