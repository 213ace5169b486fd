"""Background keepalive for the retrieval link.

AIDEV-NOTE: Idle IMAP connections are dropped by servers and middleboxes
without the client noticing until the next command. This task NOOPs the
link every KEEPALIVE_INTERVAL_SECONDS so a dead link is detected (and the
session moves to FAULTED, visible to state listeners) while nobody is using
it. It never reconnects; that is the caller's decision.
"""

import asyncio
import contextlib
import logging

from mailctl.config import Settings, get_settings
from mailctl.controller import MailController
from mailctl.errors import ConnectionLostError

logger = logging.getLogger(__name__)


class KeepaliveTask:
    """Periodic NOOP on one controller's retrieval link."""

    def __init__(self, controller: MailController, settings: Settings | None = None) -> None:
        self.controller = controller
        self.settings = settings or get_settings()
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def enabled(self) -> bool:
        return self.settings.keepalive_interval_seconds > 0

    async def start(self) -> None:
        """Start the keepalive loop; a no-op when disabled or already running."""
        if not self.enabled:
            logger.debug("Keepalive disabled")
            return

        if self._task is not None:
            logger.warning("Keepalive task already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(
            "Keepalive task started (interval: %ds)",
            self.settings.keepalive_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop the keepalive loop gracefully."""
        if self._task is None:
            return

        logger.info("Stopping keepalive task...")
        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except TimeoutError:
            logger.warning("Keepalive task did not stop gracefully, cancelling...")
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        self._task = None
        logger.info("Keepalive task stopped")

    async def _run(self) -> None:
        """Main loop for the keepalive task."""
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.settings.keepalive_interval_seconds,
                )
                # Stop was requested
                break
            except TimeoutError:
                pass

            try:
                await self._ping_once()
            except Exception:
                logger.exception("Error during keepalive")

    async def _ping_once(self) -> bool:
        """Ping the link once.

        Returns:
            True if a NOOP went out and succeeded.
        """
        try:
            pinged = await self.controller.ping()
        except ConnectionLostError as e:
            # The controller has already moved the session to FAULTED.
            logger.warning("Keepalive found the retrieval link dead: %s", e.detail)
            return False
        if not pinged:
            logger.debug("Keepalive skipped (not connected or busy)")
        return pinged

    @property
    def is_running(self) -> bool:
        """Check if the keepalive task is currently running."""
        return self._task is not None and not self._task.done()
