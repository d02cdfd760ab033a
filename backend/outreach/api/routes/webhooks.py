"""Delivery-provider webhook receiver.

Always answers 200 so the provider does not retry payloads we cannot use;
the body says whether the event was applied.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from outreach.core.db import get_session
from outreach.services import delivery_tracker

logger = logging.getLogger(__name__)

webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@webhooks_router.post("/email")
async def receive_email_webhook(
    request: Request,
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    try:
        raw = await request.json()
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        return {"success": False, "message": "Invalid JSON body"}

    if not isinstance(raw, dict):
        return {"success": False, "message": "Webhook body must be an object"}

    try:
        payload = delivery_tracker.parse_webhook(raw)
    except ValueError as e:
        logger.warning("Rejected webhook payload", extra={"error": str(e)})
        return {"success": False, "message": str(e)}

    try:
        outcome = delivery_tracker.handle_webhook(session, payload)
    except Exception as e:
        session.rollback()
        logger.error(
            "Failed to apply webhook event",
            extra={"type": payload.type, "error": str(e)}
        )
        return {"success": False, "message": "Failed to apply event"}

    if outcome.record is None:
        return {"success": True, "applied": False, "reason": outcome.ignored_reason}

    return {"success": True, "applied": True, "status": outcome.record.status}
