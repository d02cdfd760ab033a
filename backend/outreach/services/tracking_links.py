"""Tracking token generation and HTML rewriting for outbound mail."""

import re
import secrets
from urllib.parse import urlencode

from outreach.core.config import settings

ANCHOR_HREF_RE = re.compile(r"<a\s+([^>]*\s+)?href=[\"']([^\"']+)[\"']([^>]*)>", re.IGNORECASE)


def generate_tracking_token() -> str:
    return secrets.token_urlsafe(24)


def build_pixel_url(token: str) -> str:
    return f"{settings.TRACKING_BASE_URL}?{urlencode({'id': token, 'event': 'open'})}"


def build_click_url(token: str, url: str) -> str:
    return f"{settings.TRACKING_BASE_URL}/click?{urlencode({'id': token, 'url': url})}"


def _is_trackable(url: str) -> bool:
    lowered = url.lower()
    if not lowered.startswith(("http://", "https://")):
        return False
    return not url.startswith(settings.TRACKING_BASE_URL)


def wrap_links_with_tracking(html_body: str, token: str) -> str:
    """Point every http(s) anchor at the click-through endpoint.

    mailto:, tel:, relative and already-tracked links are left untouched.
    """
    def replace(match: re.Match) -> str:
        before, url, after = match.group(1) or "", match.group(2), match.group(3) or ""
        if not _is_trackable(url):
            return match.group(0)
        return f'<a {before}href="{build_click_url(token, url)}"{after}>'

    return ANCHOR_HREF_RE.sub(replace, html_body)


def inject_tracking(html_body: str, token: str) -> str:
    """Wrap links and append a hidden 1x1 open-tracking pixel."""
    body = wrap_links_with_tracking(html_body, token)
    pixel = f'<img src="{build_pixel_url(token)}" width="1" height="1" style="display:none;" alt="" />'
    return body + pixel
