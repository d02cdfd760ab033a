"""Outreach send routes.

Sends a tracked e-mail from the signed-in user's connected Gmail mailbox
and exposes the cooldown state for a recipient, so the compose screen can
warn before the user writes a message that would be rejected.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from outreach.core.auth import auth_client
from outreach.core.db import get_session
from outreach.core.tracing import mask_email
from outreach.models.mailbox_accounts import MailboxAccount
from outreach.services import cooldown_ledger
from outreach.services.outbound import (
    CooldownActiveError,
    GmailNotConnectedError,
    OutboundError,
    OutboundRequest,
    send_outbound,
)

logger = logging.getLogger(__name__)

outreach_router = APIRouter(prefix="/outreach", tags=["outreach"])


class SendResponse(BaseModel):
    """Response model for a successful send."""
    tracking_id: str
    message_id: str
    thread_id: str
    message_number: int


class CooldownResponse(BaseModel):
    recipient: str
    is_blocked: bool
    blocked_until: str | None = None
    days_remaining: int = 0
    email_count: int = 0


def _get_account(session: Session, user_id: str) -> MailboxAccount:
    account = session.exec(select(MailboxAccount).where(MailboxAccount.user_id == user_id)).first()
    if account is None:
        raise GmailNotConnectedError()
    return account


@outreach_router.post("/send", response_model=SendResponse)
async def send_outreach_email(
    request: OutboundRequest,
    auth_session=Depends(auth_client.require_session),
    session: Session = Depends(get_session),
) -> SendResponse:
    """Send one tracked outreach e-mail to a recruiter.

    Raises:
        HTTPException 400: Gmail not connected
        HTTPException 429: Recipient in cooldown (detail carries days_remaining) or daily limit reached
        HTTPException 502/503/504: Token refresh or Gmail send failed
    """
    user_id = auth_session["user"]["sub"]

    try:
        account = _get_account(session, user_id)
        result = await send_outbound(session, account, request)
    except CooldownActiveError as e:
        raise HTTPException(
            status_code=e.status_code,
            detail={
                "message": e.message,
                "error_code": e.error_code,
                "days_remaining": e.days_remaining,
                "blocked_until": e.blocked_until.isoformat(),
            },
        )
    except OutboundError as e:
        logger.info(
            "Outreach send rejected",
            extra={"user_id": user_id, "error_code": e.error_code, "recipient": mask_email(str(request.recipient))}
        )
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return SendResponse(
        tracking_id=result.tracking_token,
        message_id=result.provider_message_id,
        thread_id=str(result.thread_id),
        message_number=result.message_number,
    )


@outreach_router.get("/cooldowns/{recipient}", response_model=CooldownResponse)
async def get_cooldown(
    recipient: str,
    auth_session=Depends(auth_client.require_session),
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    user_id = auth_session["user"]["sub"]
    info = cooldown_ledger.get_cooldown_info(session, user_id, recipient)
    return {
        "recipient": cooldown_ledger.normalize_email(recipient),
        "is_blocked": info.is_blocked,
        "blocked_until": info.blocked_until.isoformat() if info.blocked_until else None,
        "days_remaining": info.days_remaining,
        "email_count": info.email_count,
    }
