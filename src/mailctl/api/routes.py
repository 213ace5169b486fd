"""REST API routes for mailctl.

AIDEV-NOTE: Thin adapter over MailController. The controller lives on
``app.state.controller`` (one per app, no global). Every MailSessionError is
rendered by ``mail_error_handler`` as ``{"kind", "detail"}``; clients branch
on ``kind``.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from mailctl.api.schemas import (
    AttachmentContentResponse,
    ConnectResponse,
    ErrorResponse,
    HealthResponse,
    MarkReadRequest,
    SelectMailboxRequest,
    SendRequest,
    SetFlagRequest,
    StatusResponse,
)
from mailctl.controller import MailController
from mailctl.errors import (
    CodecError,
    ErrorKind,
    MailSessionError,
    NotFoundError,
    TransportError,
    UsageError,
)
from mailctl.mail.models import (
    AccountCredentials,
    Mailbox,
    MailboxStatus,
    Message,
    SendResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["API"])

_CONFLICT_KINDS = frozenset(
    {
        ErrorKind.ALREADY_CONNECTED,
        ErrorKind.NOT_CONNECTED,
        ErrorKind.NO_MAILBOX_SELECTED,
    }
)

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


def status_for_error(exc: MailSessionError) -> int:
    """Map an error kind to its HTTP status code."""
    if exc.kind in _CONFLICT_KINDS:
        return 409
    if exc.kind is ErrorKind.AUTH_FAILED:
        return 401
    if exc.kind is ErrorKind.TRANSMISSION_REJECTED:
        return 422
    if isinstance(exc, UsageError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, CodecError):
        return 422
    if isinstance(exc, TransportError):
        return 502
    return 500


async def mail_error_handler(request: Request, exc: MailSessionError) -> JSONResponse:
    """Render a MailSessionError as ``{"kind", "detail"}``."""
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.warning("%s %s failed: %r", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report request validation errors without echoing the submitted values.

    AIDEV-NOTE: FastAPI's default handler includes each offending ``input``,
    which for /api/connect would put the password in the response.
    """
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={"kind": "validation_error", "detail": errors},
    )


def get_controller(request: Request) -> MailController:
    """Dependency to get the app's controller."""
    controller: MailController = request.app.state.controller
    return controller


Controller = Annotated[MailController, Depends(get_controller)]


# Session endpoints


@router.post(
    "/connect",
    response_model=ConnectResponse,
    responses={**_ERROR_RESPONSES, 401: {"model": ErrorResponse}},
    summary="Connect",
    description="Open the IMAP link and verify the SMTP relay for one account.",
)
async def connect(credentials: AccountCredentials, controller: Controller) -> ConnectResponse:
    """Connect the session."""
    return ConnectResponse(success=await controller.connect(credentials))


@router.post(
    "/disconnect",
    status_code=204,
    summary="Disconnect",
    description="Tear the session down. Never fails.",
)
async def disconnect(controller: Controller) -> Response:
    """Disconnect the session."""
    await controller.disconnect()
    return Response(status_code=204)


@router.get(
    "/status",
    response_model=StatusResponse,
    summary="Session status",
)
async def status(controller: Controller) -> StatusResponse:
    """Report connection state and selected mailbox."""
    return StatusResponse(
        connected=controller.is_connected(),
        state=controller.state,
        selected_mailbox=controller.selected_mailbox,
    )


# Mailbox endpoints


@router.get(
    "/mailboxes",
    response_model=list[Mailbox],
    responses=_ERROR_RESPONSES,
    summary="List mailboxes",
    description="Get the mailbox tree.",
)
async def list_mailboxes(controller: Controller) -> list[Mailbox]:
    """List all mailboxes as a tree."""
    return await controller.list_mailboxes()


@router.post(
    "/mailboxes/select",
    response_model=MailboxStatus,
    responses=_ERROR_RESPONSES,
    summary="Select mailbox",
)
async def select_mailbox(body: SelectMailboxRequest, controller: Controller) -> MailboxStatus:
    """Open a mailbox."""
    return await controller.select_mailbox(body.path)


# Message endpoints


@router.get(
    "/messages",
    response_model=list[Message],
    responses=_ERROR_RESPONSES,
    summary="Fetch messages",
    description="Fetch the newest messages of a mailbox, newest first.",
)
async def fetch_messages(
    controller: Controller,
    mailbox: Annotated[str | None, Query(description="Mailbox path")] = None,
    limit: Annotated[int | None, Query(description="Maximum number of messages")] = None,
) -> list[Message]:
    """Fetch a batch of messages."""
    return await controller.fetch_batch(mailbox, limit)


@router.post(
    "/messages/{seq}/flags",
    status_code=204,
    responses=_ERROR_RESPONSES,
    summary="Set or clear a flag",
)
async def set_flag(seq: int, body: SetFlagRequest, controller: Controller) -> Response:
    """Set or clear a flag on a message in the selected mailbox."""
    await controller.set_flag(seq, body.flag, body.value)
    return Response(status_code=204)


@router.post(
    "/messages/{seq}/read",
    status_code=204,
    responses=_ERROR_RESPONSES,
    summary="Mark read or unread",
)
async def mark_as_read(seq: int, body: MarkReadRequest, controller: Controller) -> Response:
    """Mark a message read or unread."""
    await controller.mark_as_read(body.mailbox, seq, body.read)
    return Response(status_code=204)


@router.delete(
    "/messages/{seq}",
    status_code=204,
    responses=_ERROR_RESPONSES,
    summary="Delete message",
    description=(
        "Flag the message deleted and expunge the selected mailbox. "
        "Every message already flagged deleted is removed too."
    ),
)
async def delete_message(seq: int, controller: Controller) -> Response:
    """Delete a message."""
    await controller.delete_message(seq)
    return Response(status_code=204)


@router.get(
    "/messages/{seq}/attachments/{index}",
    response_model=AttachmentContentResponse,
    responses={**_ERROR_RESPONSES, 422: {"model": ErrorResponse}},
    summary="Download attachment",
)
async def fetch_attachment(seq: int, index: int, controller: Controller) -> AttachmentContentResponse:
    """Fetch one attachment's content."""
    attachment = await controller.fetch_attachment_content(seq, index)
    return AttachmentContentResponse.from_content(attachment)


# Sending


@router.post(
    "/send",
    response_model=SendResult,
    responses={**_ERROR_RESPONSES, 422: {"model": ErrorResponse}},
    summary="Send message",
)
async def send(body: SendRequest, controller: Controller) -> SendResult:
    """Submit a message from the connected account."""
    return await controller.send(body.to_outbound())


# Utility endpoints


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check(controller: Controller) -> HealthResponse:
    """Check server health."""
    return HealthResponse(
        status="healthy",
        state=controller.state,
        connected=controller.is_connected(),
    )
