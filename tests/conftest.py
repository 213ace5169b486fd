"""Pytest configuration and fixtures for mailctl tests.

AIDEV-NOTE: This provides fixtures wiring a MailController to the in-memory
IMAP server and spy SMTP relay from ``fakes``, plus account credentials
those doubles accept.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fakes import FakeImapServer, SpySmtpServer

from mailctl.config import Settings
from mailctl.controller import MailController
from mailctl.mail.models import AccountCredentials, Endpoint

USER = "alice@example.com"
PASSWORD = "correct horse battery staple"


@pytest.fixture
def test_settings() -> Settings:
    """Create settings for testing with short timeouts."""
    return Settings(
        HTTP_PORT=18030,
        BIND_ADDRESS="127.0.0.1",
        COMMAND_TIMEOUT_SECONDS=5,
        CONNECT_TIMEOUT_SECONDS=5,
        DISCONNECT_GRACE_SECONDS=0.2,
        DECODE_CONCURRENCY=4,
        KEEPALIVE_INTERVAL_SECONDS=0,
        CORS_ORIGINS="",
    )


@pytest.fixture
def credentials() -> AccountCredentials:
    """Credentials accepted by both test doubles."""
    return AccountCredentials(
        user=USER,
        password=PASSWORD,
        imap=Endpoint(host="imap.example.com", port=993),
        smtp=Endpoint(host="smtp.example.com", port=465),
    )


@pytest.fixture
def imap_server() -> FakeImapServer:
    """In-memory IMAP server with INBOX, Archive and Sent."""
    server = FakeImapServer(users={USER: PASSWORD})
    server.add_mailbox("Archive", flags=["\\HasNoChildren", "\\Archive"])
    server.add_mailbox("Sent", flags=["\\HasNoChildren", "\\Sent"])
    return server


@pytest.fixture
def smtp_server() -> SpySmtpServer:
    """Spy SMTP relay accepting the test account."""
    return SpySmtpServer(users={USER: PASSWORD})


@pytest.fixture
def controller(
    test_settings: Settings, imap_server: FakeImapServer, smtp_server: SpySmtpServer
) -> MailController:
    """A controller wired to the test doubles, not yet connected."""
    return MailController(
        test_settings,
        imap_factory=imap_server.factory,
        smtp_factory=smtp_server.factory,
    )


@pytest_asyncio.fixture
async def connected(
    controller: MailController, credentials: AccountCredentials
) -> AsyncGenerator[MailController, None]:
    """A connected controller; disconnected afterwards."""
    await controller.connect(credentials)
    yield controller
    await controller.disconnect()
