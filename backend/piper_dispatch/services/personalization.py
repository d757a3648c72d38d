"""
Per-recipient message rendering.

Substitutes recipient placeholders, routes links through the click tracker,
and embeds the unsubscribe link and open pixel.
"""

from __future__ import annotations

import base64
import hashlib
import re
from dataclasses import dataclass
from typing import Optional

from piper_dispatch.core.config import settings
from piper_dispatch.models.campaign import Campaign, CampaignRecipient
from piper_dispatch.services import tracking_token

PLACEHOLDER_PATTERN = re.compile(r"\{\{([a-zA-Z_][a-zA-Z0-9_\.]*)\}\}")
HREF_PATTERN = re.compile(
    r'(<a\s[^>]*href=["\'])([^"\']+)(["\'][^>]*>)',
    re.IGNORECASE,
)
BODY_CLOSE_PATTERN = re.compile(r"</body>", re.IGNORECASE)
UNSUBSCRIBE_PLACEHOLDER = "{{unsubscribeUrl}}"

_SKIPPED_PREFIXES = ("mailto:", "tel:", "javascript:", "#")


@dataclass
class RenderedMessage:
    subject: str
    html_body: str
    message_id: str
    tracking_token: str


def substitute_variables(content: str, variables: dict[str, str]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left untouched."""
    def replace_var(match):
        return variables.get(match.group(1), match.group(0))

    return PLACEHOLDER_PATTERN.sub(replace_var, content)


def recipient_variables(recipient: CampaignRecipient) -> dict[str, str]:
    return {
        "firstName": recipient.first_name or "",
        "lastName": recipient.last_name or "",
        "email": recipient.email or "",
        "subscriberId": str(recipient.subscriber_id or ""),
    }


def link_id_for(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()[:8]


def encode_url(url: str) -> str:
    return base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii")


def decode_url(value: str) -> Optional[str]:
    """Reverse :func:`encode_url`; ``None`` if the value does not decode."""
    if not value:
        return None
    # a "+" that arrived unescaped in a query string decodes as a space
    normalized = value.replace(" ", "+").strip().replace("+", "-").replace("/", "_").rstrip("=")
    padding = "=" * (-len(normalized) % 4)
    try:
        return base64.b64decode(normalized + padding, altchars=b"-_", validate=True).decode("utf-8")
    except ValueError:
        return None


def _base_url(base_url: Optional[str]) -> str:
    return (base_url or settings.tracking_base_url).rstrip("/")


def click_url(
    message_id: str,
    recipient_id: str,
    campaign_id: str,
    url: str,
    base_url: Optional[str] = None,
) -> str:
    token = tracking_token.encode(message_id, recipient_id, campaign_id, link_id_for(url))
    sig = tracking_token.signature_query(token)
    query = f"url={encode_url(url)}"
    query = f"{sig}&{query}" if sig else f"?{query}"
    return f"{_base_url(base_url)}/click/{token}{query}"


def open_pixel_url(token: str, base_url: Optional[str] = None) -> str:
    return f"{_base_url(base_url)}/open/{token}{tracking_token.signature_query(token)}"


def unsubscribe_url(token: str, base_url: Optional[str] = None) -> str:
    return f"{_base_url(base_url)}/unsubscribe/{token}{tracking_token.signature_query(token)}"


def wrap_links_in_html(
    html_body: str,
    message_id: str,
    recipient_id: str,
    campaign_id: str,
    base_url: Optional[str] = None,
) -> str:
    """Route every http(s) ``<a href>`` through the click tracker.

    Non-web schemes, in-page anchors and unresolved placeholders are kept
    as written.
    """
    tracker_prefix = f"{_base_url(base_url)}/click/"

    def _wrap_link(match):
        prefix, url, suffix = match.group(1), match.group(2), match.group(3)
        lowered = url.strip().lower()
        if (
            lowered.startswith(_SKIPPED_PREFIXES)
            or "{{" in url
            or url.startswith(tracker_prefix)
            or not lowered.startswith(("http://", "https://"))
        ):
            return match.group(0)
        tracked = click_url(message_id, recipient_id, campaign_id, url.strip(), base_url)
        return f"{prefix}{tracked}{suffix}"

    return HREF_PATTERN.sub(_wrap_link, html_body)


def _insert_before_body_close(html_body: str, fragment: str) -> str:
    matches = list(BODY_CLOSE_PATTERN.finditer(html_body))
    if not matches:
        return html_body + fragment
    index = matches[-1].start()
    return html_body[:index] + fragment + html_body[index:]


def add_unsubscribe_link(html_body: str, url: str) -> str:
    if UNSUBSCRIBE_PLACEHOLDER in html_body:
        return html_body.replace(UNSUBSCRIBE_PLACEHOLDER, url)
    footer = (
        '<p style="font-size:12px;color:#888;text-align:center;">'
        f'<a href="{url}">Unsubscribe</a></p>'
    )
    return _insert_before_body_close(html_body, footer)


def add_open_pixel(html_body: str, url: str) -> str:
    pixel = (
        f'<img src="{url}" width="1" height="1" alt="" '
        'style="display:none;border:0;" />'
    )
    return _insert_before_body_close(html_body, pixel)


def render_message(
    campaign: Campaign,
    recipient: CampaignRecipient,
    message_id: str,
    base_url: Optional[str] = None,
) -> RenderedMessage:
    """Build the personalized subject and tracked HTML for one recipient."""
    campaign_id = str(campaign.id)
    subscriber_id = str(recipient.subscriber_id)
    variables = recipient_variables(recipient)

    subject = substitute_variables(campaign.subject or "", variables)

    # Links first so the injected unsubscribe link is not click-wrapped
    html_body = wrap_links_in_html(
        campaign.content or "", message_id, subscriber_id, campaign_id, base_url
    )
    html_body = substitute_variables(html_body, variables)

    token = tracking_token.encode(message_id, subscriber_id, campaign_id)
    html_body = add_unsubscribe_link(html_body, unsubscribe_url(token, base_url))
    html_body = add_open_pixel(html_body, open_pixel_url(token, base_url))

    return RenderedMessage(
        subject=subject,
        html_body=html_body,
        message_id=message_id,
        tracking_token=token,
    )
