"""Main entry point for mailctl.

AIDEV-NOTE: This module serves the controller over a local HTTP API and
handles graceful shutdown (stop keepalive, disconnect the mail session).
"""

import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from functools import partial
from typing import NoReturn

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from mailctl.api.routes import mail_error_handler, validation_error_handler
from mailctl.api.routes import router as api_router
from mailctl.config import Settings, get_settings
from mailctl.controller import MailController
from mailctl.errors import MailSessionError
from mailctl.tasks import KeepaliveTask

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(
    settings: Settings | None = None, controller: MailController | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    AIDEV-NOTE: This function creates the FastAPI app with:
    - Security headers middleware
    - CORS configuration (restrictive by default)
    - Error handlers rendering {"kind", "detail"}
    - API routes
    The controller is stored on ``app.state`` so tests can inject one
    built with fake IMAP/SMTP factories.
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="mailctl",
        description="Mail session controller: one IMAP + SMTP account over a local API",
        version="0.1.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )
    app.state.settings = settings
    app.state.controller = controller or MailController(settings)

    # Add security headers middleware
    @app.middleware("http")
    async def add_security_headers(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        # Responses carry mail content and must not be cached
        response.headers["Cache-Control"] = "no-store"
        return response

    # Configure CORS
    if settings.cors_origins_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins_list,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )

    app.add_exception_handler(MailSessionError, mail_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.include_router(api_router)

    return app


def print_banner(settings: Settings) -> None:
    """Print startup banner."""
    banner = f"""
╔═══════════════════════════════════════════════════════════════╗
║                          mailctl                               ║
║                Mail Session Controller v0.1.0                  ║
╠═══════════════════════════════════════════════════════════════╣
║  HTTP: {settings.bind_address}:{settings.http_port:<5}                                      ║
╠═══════════════════════════════════════════════════════════════╣
║  ⚠️  WARNING: The API accepts account credentials and          ║
║  serves mail content. Keep it bound to a trusted interface.    ║
╚═══════════════════════════════════════════════════════════════╝
"""
    print(banner)


async def run_server() -> NoReturn:
    """Run the HTTP API until SIGINT/SIGTERM."""
    settings = get_settings()
    configure_logging(settings)

    # Setup signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info("Received signal %s, shutting down...", sig.name)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, partial(handle_signal, sig))

    controller = MailController(settings)
    app = create_app(settings, controller)

    keepalive = KeepaliveTask(controller, settings)
    await keepalive.start()

    config = uvicorn.Config(
        app,
        host=settings.bind_address,
        port=settings.http_port,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
    http_server = uvicorn.Server(config)

    try:
        print_banner(settings)
        logger.info("mailctl started")

        # Run HTTP server in a task
        http_task = asyncio.create_task(http_server.serve())

        # Wait for shutdown signal
        await shutdown_event.wait()

        # Graceful shutdown
        http_server.should_exit = True
        await http_task

    finally:
        await keepalive.stop()
        await controller.shutdown()
        logger.info("mailctl shutdown complete")

    # This should never be reached but satisfies type checker
    sys.exit(0)


def main() -> None:
    """Main entry point."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run_server())


if __name__ == "__main__":
    main()
