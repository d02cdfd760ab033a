"""Analytics API routes for outreach delivery metrics."""

from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select, and_

from outreach.core.auth import auth_client
from outreach.core.db import get_session
from outreach.models.email_tracking import EmailTracking, TrackingStatus

analytics_router = APIRouter(prefix="/analytics", tags=["analytics"])


def parse_window(window: str) -> timedelta:
    """Parse window parameter into timedelta."""
    if window == "7d":
        return timedelta(days=7)
    elif window == "30d":
        return timedelta(days=30)
    else:
        raise ValueError(f"Invalid window: {window}. Must be '7d' or '30d'")


def _rate(count: int, total: int) -> float:
    return round(count / total * 100, 2) if total > 0 else 0


def calculate_metrics(records: list[EmailTracking]) -> dict[str, Any]:
    """Calculate delivery funnel metrics from tracking records.

    A record counts toward every stage it reached: a clicked e-mail is also
    delivered and opened. Rates are percentages of e-mails sent.
    """
    sent = len(records)
    delivered = opened = clicked = bounced = replied = 0

    for record in records:
        if record.status == TrackingStatus.BOUNCED.value or record.bounced_at:
            bounced += 1
        if record.delivered_at or record.status in (
            TrackingStatus.DELIVERED.value,
            TrackingStatus.OPENED.value,
            TrackingStatus.CLICKED.value,
        ):
            delivered += 1
        if record.opened_at or record.status in (TrackingStatus.OPENED.value, TrackingStatus.CLICKED.value):
            opened += 1
        if record.clicked_at or record.status == TrackingStatus.CLICKED.value:
            clicked += 1
        if record.replied_at:
            replied += 1

    return {
        "sent": sent,
        "delivered": delivered,
        "opened": opened,
        "clicked": clicked,
        "bounced": bounced,
        "replied": replied,
        "delivery_rate": _rate(delivered, sent),
        "open_rate": _rate(opened, sent),
        "click_rate": _rate(clicked, sent),
        "bounce_rate": _rate(bounced, sent),
        "reply_rate": _rate(replied, sent),
    }


@analytics_router.get("/tracking-summary")
async def get_tracking_summary(
    window: Literal["7d", "30d"] = Query("7d", description="Time window for analytics"),
    auth_session=Depends(auth_client.require_session),
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    """Get delivery metrics for the caller's sends in the window.

    Example Response:
    {
      "window": "7d",
      "period_start": "2025-10-19T00:00:00+00:00",
      "period_end": "2025-10-26T00:00:00+00:00",
      "metrics": {"sent": 20, "delivered": 19, "opened": 11, "clicked": 4,
                  "bounced": 1, "replied": 3, "open_rate": 55.0, ...},
      "trend": {"previous": {"sent": 15, ...}}
    }
    """
    user_id = auth_session["user"]["sub"]

    try:
        window_delta = parse_window(window)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    period_end = datetime.now(timezone.utc)
    period_start = period_end - window_delta
    previous_start = period_start - window_delta

    current = session.exec(
        select(EmailTracking).where(
            EmailTracking.user_id == user_id,
            EmailTracking.sent_at >= period_start,
        )
    ).all()

    previous = session.exec(
        select(EmailTracking).where(
            and_(
                EmailTracking.user_id == user_id,
                EmailTracking.sent_at >= previous_start,
                EmailTracking.sent_at < period_start,
            )
        )
    ).all()

    return {
        "window": window,
        "period_start": period_start.isoformat(),
        "period_end": period_end.isoformat(),
        "metrics": calculate_metrics(list(current)),
        "trend": {"previous": calculate_metrics(list(previous))},
    }
