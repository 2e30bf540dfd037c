"""
Email Tracking Service.

Builds open-tracking pixel URLs and injects them into campaign HTML.
Recording the open itself goes through ``email_event_service.record_open``
so pixel hits and provider webhooks share one ingestion path.
"""

import base64
import re
from urllib.parse import urlencode
from uuid import UUID

from eventcrm.core.config import settings


# 1x1 transparent GIF
TRANSPARENT_GIF = base64.b64decode(
    "R0lGODlhAQABAIAAAP///wAAACH5BAEAAAAALAAAAAABAAEAAAICRAEAOw=="
)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}

_BODY_CLOSE = re.compile(r"</body\s*>", re.IGNORECASE)


def get_tracking_base_url() -> str:
    """Get the base URL for tracking endpoints."""
    return (settings.API_BASE_URL or "http://localhost:8000").rstrip("/")


def get_tracking_pixel_url(campaign_id: UUID, contact_id: UUID) -> str:
    """Get the URL for the tracking pixel (open tracking)."""
    query = urlencode({"campaign_id": str(campaign_id), "contact_id": str(contact_id)})
    return f"{get_tracking_base_url()}/track/open?{query}"


def inject_tracking_pixel(html_body: str, campaign_id: UUID, contact_id: UUID) -> str:
    """
    Inject a 1x1 tracking pixel into the email body.

    Adds the pixel just before the last closing </body> tag,
    or at the end if no </body> tag exists.
    """
    pixel_url = get_tracking_pixel_url(campaign_id, contact_id)
    pixel_html = (
        f'<img src="{pixel_url}" width="1" height="1" '
        'style="display:block;width:1px;height:1px;border:0;" alt="" />'
    )

    matches = list(_BODY_CLOSE.finditer(html_body))
    if matches:
        pos = matches[-1].start()
        return html_body[:pos] + pixel_html + html_body[pos:]

    return html_body + pixel_html
