"""Scheduled job triggers for external cron.

Both routes require the shared ``X-Cron-Secret`` header. The same
entrypoints are called by the in-process scheduler when it is enabled.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from outreach.auth.google_oauth import ConfigurationError
from outreach.core.auth import require_cron_secret
from outreach.core.db import get_session
from outreach.services.cooldown_ledger import sweep_expired_cooldowns
from outreach.services.inbound_poller import poll_replies

logger = logging.getLogger(__name__)

jobs_router = APIRouter(
    prefix="/jobs",
    tags=["jobs"],
    dependencies=[Depends(require_cron_secret)],
)


@jobs_router.post("/poll-replies")
async def trigger_poll_replies() -> dict[str, Any]:
    """Run one inbound reply reconciliation pass.

    Returns:
        ``{"processed", "errors", "accounts_checked", "skipped"}``
    """
    try:
        summary = await poll_replies()
    except ConfigurationError as e:
        logger.error("Reply poll aborted", extra={"error_code": e.error_code})
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return summary.as_dict()


@jobs_router.post("/cleanup-cooldowns")
async def trigger_cleanup_cooldowns(
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    """Notify about recently expired cooldowns and purge old records."""
    summary = await sweep_expired_cooldowns(session)
    return summary.as_dict()
