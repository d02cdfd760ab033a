"""Connect and disconnect a user's Gmail mailbox.

Connecting stores the Google refresh token on the user's ``MailboxAccount``
(creating the account on first connect). Sends and reply polling read the
token from there.
"""

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from outreach.auth.google_oauth import TokenRefreshError, exchange_authorization_code
from outreach.core.timeutils import utcnow
from outreach.core.tracing import mask_email
from outreach.integrations import gmail_service
from outreach.models.mailbox_accounts import MailboxAccount, SubscriptionTier

logger = logging.getLogger(__name__)


class MissingRefreshTokenError(TokenRefreshError):
    """Raised when Google returned no refresh token and none is stored yet."""

    def __init__(self):
        super().__init__(
            message=(
                "Google did not return offline access. Remove the app from your Google "
                "account permissions and connect Gmail again."
            ),
            status_code=400,
            error_code="missing_refresh_token"
        )


def get_account(session: Session, user_id: str) -> MailboxAccount | None:
    return session.exec(select(MailboxAccount).where(MailboxAccount.user_id == user_id)).first()


def _apply_connection(
    account: MailboxAccount,
    email: str,
    refresh_token: str | None,
    name: str | None,
    now: datetime,
) -> None:
    account.email = email
    if refresh_token:
        account.google_refresh_token = refresh_token
    if name and not account.name:
        account.name = name
    account.gmail_token_refreshed_at = now
    account.updated_at = now


async def connect_gmail(
    session: Session,
    user_id: str,
    code: str,
    redirect_uri: str,
    name: str | None = None,
    now: datetime | None = None,
) -> MailboxAccount:
    """Finish the OAuth connect flow for ``user_id``.

    A reconnect without a new refresh token keeps the stored one.

    Raises:
        TokenRefreshError: If the code exchange failed (including
            ``MissingRefreshTokenError`` when no refresh token is available)
        GmailServiceError: If the mailbox profile could not be read
    """
    now = now or utcnow()

    tokens = await exchange_authorization_code(code, redirect_uri)
    profile = await gmail_service.get_profile(tokens.access_token)
    email = profile["emailAddress"].strip().lower()

    account = get_account(session, user_id)
    if account is None:
        if not tokens.refresh_token:
            raise MissingRefreshTokenError()
        account = MailboxAccount(
            user_id=user_id,
            email=email,
            name=name,
            google_refresh_token=tokens.refresh_token,
            subscription_tier=SubscriptionTier.FREE.value,
            gmail_token_refreshed_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(account)
        try:
            session.commit()
        except IntegrityError:
            # Concurrent connect for the same user created the row first
            session.rollback()
            account = get_account(session, user_id)
            if account is None:
                raise
            _apply_connection(account, email, tokens.refresh_token, name, now)
            session.add(account)
            session.commit()
    else:
        if not tokens.refresh_token and not account.google_refresh_token:
            raise MissingRefreshTokenError()
        _apply_connection(account, email, tokens.refresh_token, name, now)
        session.add(account)
        session.commit()

    session.refresh(account)
    logger.info(
        "Gmail connected",
        extra={
            "user_id": user_id,
            "email": mask_email(email),
            "new_refresh_token": bool(tokens.refresh_token),
        }
    )
    return account


def disconnect_gmail(session: Session, user_id: str, now: datetime | None = None) -> MailboxAccount | None:
    """Forget the stored refresh token; counters and history are kept."""
    account = get_account(session, user_id)
    if account is None:
        return None

    account.google_refresh_token = None
    account.updated_at = now or utcnow()
    session.add(account)
    session.commit()
    session.refresh(account)
    logger.info("Gmail disconnected", extra={"user_id": user_id})
    return account
