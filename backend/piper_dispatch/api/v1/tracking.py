"""
Public email tracking endpoints.

These endpoints are unauthenticated because they are embedded in outgoing
emails as pixel URLs, click-through links, and unsubscribe links. A token
that cannot be decoded never produces a server error: the pixel is still
served and the click still redirects.

Routes:
    GET  /track/open/{token}          - 1x1 transparent pixel (records open)
    GET  /track/click/{token}         - Click redirect (records click, redirects)
    GET  /track/unsubscribe/{token}   - Unsubscribe confirmation page
    POST /track/unsubscribe/{token}   - Process unsubscribe
    POST /track/spam/{token}          - Spam complaint (feedback loop)
    POST /track/bounce                - Bounce webhook from mail server
"""

from __future__ import annotations

import html
import logging
from typing import Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from pydantic import BaseModel, Field

from piper_dispatch.core.exceptions import MalformedTokenError
from piper_dispatch.models.tracking import ComplaintType
from piper_dispatch.services.personalization import decode_url
from piper_dispatch.services.tracking_service import RequestMeta, TrackingService, tracking_service
from piper_dispatch.services.tracking_token import TrackingToken, decode_verified

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/track", tags=["Tracking"])

# Transparent 1x1 GIF pixel (43 bytes)
TRACKING_PIXEL = (
    b"\x47\x49\x46\x38\x39\x61\x01\x00\x01\x00\x80\x00\x00"
    b"\xff\xff\xff\x00\x00\x00\x21\xf9\x04\x00\x00\x00\x00"
    b"\x00\x2c\x00\x00\x00\x00\x01\x00\x01\x00\x00\x02\x02"
    b"\x44\x01\x00\x3b"
)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


def get_tracking_service() -> TrackingService:
    return tracking_service


def _request_meta(request: Request) -> RequestMeta:
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip = forwarded.split(",")[0].strip() if forwarded else None
    if not ip and request.client:
        ip = request.client.host
    return RequestMeta(ip=ip, user_agent=request.headers.get("User-Agent"))


def _decode(token: str, sig: Optional[str], kind: str) -> Optional[TrackingToken]:
    try:
        return decode_verified(token, sig)
    except MalformedTokenError as e:
        logger.warning("Malformed %s tracking token %r: %s", kind, token[:64], e)
        return None


def _pixel_response() -> Response:
    return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=NO_CACHE_HEADERS)


@router.get("/open/{token:path}")
async def track_open(
    token: str,
    request: Request,
    sig: Optional[str] = Query(None, description="Token signature"),
    service: TrackingService = Depends(get_tracking_service),
):
    """Record an email open event and return a 1x1 transparent pixel.

    Embedded in emails as: <img src="{tracking_base_url}/open/{token}" width="1" height="1" />
    """
    decoded = _decode(token, sig, "open")
    if decoded is not None:
        try:
            await service.record_open(decoded, _request_meta(request))
        except Exception as exc:
            # Never break email rendering
            logger.error("Error recording open for %s: %s", decoded.message_id, exc, exc_info=True)
    return _pixel_response()


@router.get("/click/{token:path}")
async def track_click(
    token: str,
    request: Request,
    url: Optional[str] = Query(None, description="Base64url-encoded destination URL"),
    sig: Optional[str] = Query(None, description="Token signature"),
    service: TrackingService = Depends(get_tracking_service),
):
    """Record a link click and redirect to the original destination URL."""
    destination = decode_url(url) if url else None
    if not destination or urlparse(destination).scheme not in ("http", "https"):
        raise HTTPException(status_code=400, detail="Invalid destination URL")

    decoded = _decode(token, sig, "click")
    if decoded is not None:
        try:
            await service.record_click(decoded, destination, _request_meta(request))
        except Exception as exc:
            # Still redirect so the user experience isn't broken
            logger.error("Error recording click for %s: %s", decoded.message_id, exc, exc_info=True)

    return RedirectResponse(url=destination, status_code=302)


@router.get("/unsubscribe/{token:path}", response_class=HTMLResponse)
async def unsubscribe_page(
    token: str,
    sig: Optional[str] = Query(None, description="Token signature"),
):
    """Display an unsubscribe confirmation page."""
    if _decode(token, sig, "unsubscribe") is None:
        return HTMLResponse(
            content=_unsubscribe_html("Invalid or expired unsubscribe link.", error=True),
            status_code=400,
        )
    return HTMLResponse(content=_unsubscribe_html())


@router.post("/unsubscribe/{token:path}", response_class=HTMLResponse)
async def process_unsubscribe(
    token: str,
    request: Request,
    sig: Optional[str] = Query(None, description="Token signature"),
    reason: Optional[str] = Form(None),
    service: TrackingService = Depends(get_tracking_service),
):
    """Process an unsubscribe request."""
    decoded = _decode(token, sig, "unsubscribe")
    if decoded is None:
        return HTMLResponse(
            content=_unsubscribe_html("Invalid or expired unsubscribe link.", error=True),
            status_code=400,
        )

    reason = reason or request.query_params.get("reason")
    await service.record_unsubscribe(decoded, _request_meta(request), reason=reason)

    return HTMLResponse(
        content=_unsubscribe_html(
            message="You have been successfully unsubscribed. You will no longer receive these emails.",
            success=True,
        ),
    )


class SpamComplaintPayload(BaseModel):
    complaint_type: ComplaintType = ComplaintType.SPAM
    feedback: Optional[str] = Field(None, max_length=2000)


@router.post("/spam/{token:path}")
async def report_spam(
    token: str,
    request: Request,
    payload: SpamComplaintPayload = SpamComplaintPayload(),
    sig: Optional[str] = Query(None, description="Token signature"),
    service: TrackingService = Depends(get_tracking_service),
):
    """Record a spam complaint relayed by a mailbox provider feedback loop."""
    decoded = _decode(token, sig, "spam")
    if decoded is None:
        raise HTTPException(status_code=400, detail="Invalid or expired tracking token")

    event = await service.record_spam_complaint(
        decoded,
        _request_meta(request),
        complaint_type=payload.complaint_type.value,
        feedback=payload.feedback,
    )
    return {"status": "recorded", "complaint_type": event.complaint_type}


class BounceWebhookPayload(BaseModel):
    """Bounce webhook payload from mail server."""
    message_id: str = Field(..., min_length=1)
    reason: Optional[str] = None


@router.post("/bounce")
async def handle_bounce_webhook(
    payload: BounceWebhookPayload,
    service: TrackingService = Depends(get_tracking_service),
):
    """Process a bounce notification from the mail server."""
    matched = await service.record_bounce(payload.message_id, payload.reason)
    return {
        "status": "processed" if matched else "unknown_message",
        "message_id": payload.message_id,
    }


def _unsubscribe_html(
    message: str = "",
    error: bool = False,
    success: bool = False,
) -> str:
    """Generate a simple unsubscribe HTML page."""
    if error:
        body = f"""
        <div style="text-align:center;padding:60px 20px;">
            <h1 style="color:#ef4444;">Error</h1>
            <p style="color:#64748b;font-size:18px;">{html.escape(message)}</p>
        </div>
        """
    elif success:
        body = f"""
        <div style="text-align:center;padding:60px 20px;">
            <h1 style="color:#10b981;">Unsubscribed</h1>
            <p style="color:#64748b;font-size:18px;">{html.escape(message)}</p>
        </div>
        """
    else:
        body = f"""
        <div style="text-align:center;padding:60px 20px;">
            <h1 style="color:#1e293b;">Unsubscribe</h1>
            <p style="color:#64748b;font-size:18px;margin-bottom:30px;">
                Are you sure you want to unsubscribe from future emails?
            </p>
            <form method="POST">
                <textarea name="reason" rows="3" placeholder="Tell us why (optional)" style="
                    width:100%;max-width:400px;margin-bottom:16px;padding:8px;
                "></textarea><br>
                <button type="submit" style="
                    background-color:#ef4444;color:white;border:none;padding:12px 32px;
                    font-size:16px;border-radius:8px;cursor:pointer;
                ">
                    Yes, Unsubscribe Me
                </button>
            </form>
        </div>
        """

    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Unsubscribe</title>
</head>
<body style="margin:0;padding:0;background-color:#f8fafc;font-family:-apple-system,BlinkMacSystemFont,sans-serif;">
    <div style="max-width:500px;margin:0 auto;">
        {body}
    </div>
</body>
</html>"""
