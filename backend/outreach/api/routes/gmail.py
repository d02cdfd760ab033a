"""Gmail connection routes.

The frontend runs Google's consent screen with the client id from
``/gmail/client-id`` and posts the returned authorization code to
``/gmail/connect``; the backend exchanges it and stores the refresh token.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from outreach.auth.google_oauth import TokenRefreshError
from outreach.core.auth import auth_client
from outreach.core.config import settings
from outreach.core.db import get_session
from outreach.integrations.gmail_service import GmailServiceError
from outreach.services import mailbox_connection

logger = logging.getLogger(__name__)

gmail_router = APIRouter(prefix="/gmail", tags=["gmail"])


class ConnectRequest(BaseModel):
    code: str
    redirect_uri: str


class ConnectResponse(BaseModel):
    success: bool
    email: str
    message: str


class StatusResponse(BaseModel):
    connected: bool
    email: str | None = None
    subscription_tier: str | None = None


@gmail_router.get("/client-id")
async def get_client_id() -> dict[str, str]:
    """Public OAuth client id for the frontend consent redirect."""
    if not settings.GOOGLE_CLIENT_ID:
        raise HTTPException(status_code=400, detail="Google OAuth client is not configured")
    return {"client_id": settings.GOOGLE_CLIENT_ID}


@gmail_router.post("/connect", response_model=ConnectResponse)
async def connect_gmail(
    request: ConnectRequest,
    auth_session=Depends(auth_client.require_session),
    session: Session = Depends(get_session),
) -> ConnectResponse:
    """Exchange an authorization code and store the mailbox connection.

    Raises:
        HTTPException 400/401: Code rejected by Google or no refresh token available
        HTTPException 403: A required Gmail scope was not granted
        HTTPException 502/503/504: Google unavailable
    """
    user = auth_session["user"]
    user_id = user["sub"]

    try:
        account = await mailbox_connection.connect_gmail(
            session,
            user_id,
            request.code,
            request.redirect_uri,
            name=user.get("name"),
        )
    except (TokenRefreshError, GmailServiceError) as e:
        logger.info("Gmail connect failed", extra={"user_id": user_id, "error_code": e.error_code})
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return ConnectResponse(
        success=True,
        email=account.email,
        message="Gmail connected successfully",
    )


@gmail_router.get("/status", response_model=StatusResponse)
async def get_status(
    auth_session=Depends(auth_client.require_session),
    session: Session = Depends(get_session),
) -> StatusResponse:
    account = mailbox_connection.get_account(session, auth_session["user"]["sub"])
    if account is None or not account.google_refresh_token:
        return StatusResponse(connected=False, email=account.email if account else None)
    return StatusResponse(
        connected=True,
        email=account.email,
        subscription_tier=account.subscription_tier,
    )


@gmail_router.delete("/connect", status_code=204)
async def disconnect_gmail(
    auth_session=Depends(auth_client.require_session),
    session: Session = Depends(get_session),
) -> None:
    mailbox_connection.disconnect_gmail(session, auth_session["user"]["sub"])
