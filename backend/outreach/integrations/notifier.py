"""Notifications telling a user that recruiters can be contacted again."""

import html
import logging
import httpx
from sqlmodel import Session

from outreach.core.config import settings
from outreach.core.tracing import mask_email
from outreach.models.notifications import UserNotification

logger = logging.getLogger(__name__)

MAX_LISTED_RECIPIENTS = 3


class NotificationError(Exception):
    """Raised when a notification could not be delivered."""

    def __init__(self, message: str, error_code: str = "notification_error"):
        self.message = message
        self.error_code = error_code
        super().__init__(self.message)


def format_recipient_list(recipients: list[str]) -> str:
    """``a, b, c and 2 more`` style summary of recipient addresses."""
    if len(recipients) > MAX_LISTED_RECIPIENTS:
        shown = ", ".join(recipients[:MAX_LISTED_RECIPIENTS])
        return f"{shown} and {len(recipients) - MAX_LISTED_RECIPIENTS} more"
    return ", ".join(recipients)


def _render_email_html(name: str | None, recipients: list[str]) -> str:
    items = "".join(f"<li>{html.escape(r)}</li>" for r in recipients)
    compose_url = f"{settings.FRONTEND_HOST.rstrip('/')}/compose"
    return (
        "<div style=\"font-family: Arial, sans-serif; max-width: 600px;\">"
        "<h2>Good News! Recruiters Available</h2>"
        f"<p>Hi {html.escape(name or 'there')},</p>"
        "<p>You can now contact the following recruiter(s) again:</p>"
        f"<ul>{items}</ul>"
        f"<p><a href=\"{compose_url}\">Compose Email</a></p>"
        "</div>"
    )


class AvailabilityNotifier:
    """Creates the in-app notification and, when configured, an e-mail copy."""

    def notify_in_app(self, session: Session, user_id: str, recipients: list[str]) -> UserNotification:
        notification = UserNotification(
            user_id=user_id,
            title="Recruiters Available to Contact",
            message=f"You can now send emails to: {format_recipient_list(recipients)}",
            type="cooldown_expired",
            recruiter_emails=list(recipients),
        )
        session.add(notification)
        session.commit()
        session.refresh(notification)
        return notification

    @property
    def email_enabled(self) -> bool:
        return bool(settings.RESEND_API_KEY)

    async def notify_by_email(self, to_address: str, name: str | None, recipients: list[str]) -> None:
        """Send the e-mail copy through Resend.

        Raises:
            NotificationError: If Resend rejects the request or is unreachable
        """
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    settings.RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {settings.RESEND_API_KEY}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "from": settings.NOTIFICATION_FROM_ADDRESS,
                        "to": to_address,
                        "subject": f"{len(recipients)} Recruiter(s) Available to Contact",
                        "html": _render_email_html(name, recipients),
                    },
                    timeout=settings.GMAIL_HTTP_TIMEOUT_SECONDS,
                )
        except httpx.HTTPError as e:
            raise NotificationError(f"Resend request failed: {e}", error_code="network_error") from e

        if response.status_code >= 400:
            logger.error(
                "Resend rejected availability e-mail",
                extra={"to": mask_email(to_address), "status_code": response.status_code}
            )
            raise NotificationError(
                f"Resend returned {response.status_code}", error_code="provider_rejected"
            )
