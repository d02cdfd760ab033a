"""Request authentication helpers.

The dashboard's auth layer signs the user into a Starlette session cookie
(``request.session["user"]`` with ``sub`` and ``email``). Scheduled job
routes are called by cron and authenticate with a shared secret header.
"""

import hmac
import logging
from typing import Any

from fastapi import Header, HTTPException, Request

from outreach.core.config import settings

logger = logging.getLogger(__name__)


class SessionAuthClient:
    """Resolves the signed-in user from the session cookie."""

    def require_session(self, request: Request) -> dict[str, Any]:
        user = request.session.get("user") if "session" in request.scope else None
        if not user or not user.get("sub"):
            raise HTTPException(status_code=401, detail="Not authenticated")
        return {"user": user}


auth_client = SessionAuthClient()


def require_cron_secret(x_cron_secret: str | None = Header(default=None)) -> None:
    """Dependency guarding scheduled job routes."""
    if not settings.CRON_SECRET:
        logger.error("CRON_SECRET is not configured; refusing job trigger")
        raise HTTPException(status_code=503, detail="Scheduled jobs are not configured")

    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, settings.CRON_SECRET):
        raise HTTPException(status_code=401, detail="Invalid cron secret")
