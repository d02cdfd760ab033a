"""Open pixel and click-through endpoints embedded in outbound mail.

These are hit by mail clients, not by the dashboard, so they never fail
visibly: whatever happens while recording, the client still gets its pixel
or its redirect.
"""

import base64
import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse, Response
from sqlmodel import Session

from outreach.core.config import settings
from outreach.core.db import get_session
from outreach.services import delivery_tracker
from outreach.services.delivery_tracker import TrackingEvent

logger = logging.getLogger(__name__)

tracking_router = APIRouter(prefix="/track", tags=["tracking"])

TRANSPARENT_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

PIXEL_EVENTS = {e.value for e in TrackingEvent if e != TrackingEvent.CLICK}

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _pixel_response() -> Response:
    return Response(content=TRANSPARENT_GIF, media_type="image/gif", headers=NO_CACHE_HEADERS)


def _redirect(url: str | None, known_token: bool) -> RedirectResponse:
    # Only links from mail we sent are followed; anything else lands on the fallback
    is_http = bool(url) and url.lower().startswith(("http://", "https://"))
    target = url if known_token and is_http else settings.TRACKING_FALLBACK_URL
    return RedirectResponse(url=target, status_code=302)


def _record_click(session: Session, token: str | None, url: str | None) -> bool:
    """Record the click; True if ``token`` belongs to a tracked message."""
    if not token:
        return False
    try:
        outcome = delivery_tracker.record_click(session, token, url)
    except Exception as e:
        session.rollback()
        logger.error("Failed to record click", extra={"tracking_id": token, "error": str(e)})
        return False
    return outcome.record is not None


@tracking_router.get("")
async def track_event(
    id: str | None = Query(None, description="Tracking token"),
    event: str = Query("open", description="open, delivered, bounce or click"),
    url: str | None = Query(None, description="Click-through target"),
    session: Session = Depends(get_session),
) -> Response:
    """Record an open/delivered/bounce pixel hit, or a click with redirect."""
    if event == "click":
        known = _record_click(session, id, url)
        return _redirect(url, known)

    if id and event in PIXEL_EVENTS:
        try:
            delivery_tracker.apply_event(session, id, TrackingEvent(event))
        except Exception as e:
            session.rollback()
            logger.error(
                "Failed to record tracking event",
                extra={"tracking_id": id, "event": event, "error": str(e)}
            )

    return _pixel_response()


@tracking_router.get("/click")
async def track_click(
    id: str | None = Query(None, description="Tracking token"),
    url: str | None = Query(None, description="Click-through target"),
    session: Session = Depends(get_session),
) -> RedirectResponse:
    known = _record_click(session, id, url)
    return _redirect(url, known)
