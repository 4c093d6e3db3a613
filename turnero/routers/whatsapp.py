from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Dict

from fastapi import APIRouter, Depends, Form, HTTPException, Request, Response, status

from ..deps import Services, get_services
from ..services.inbound import InboundMessage

logger = logging.getLogger(__name__)
router = APIRouter()

EMPTY_TWIML = "<Response></Response>"


def compute_twilio_signature(auth_token: str, url: str, params: Dict[str, str]) -> str:
    """Twilio request signature: URL plus sorted params, HMAC-SHA1, base64."""
    data = url + "".join(f"{k}{params[k]}" for k in sorted(params.keys()))
    digest = hmac.new(
        auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1
    ).digest()
    return base64.b64encode(digest).decode("utf-8")


async def _maybe_verify_twilio_signature(request: Request, services: Services) -> None:
    """Reject unsigned or mis-signed webhooks when verification is enabled."""
    cfg = services.settings.whatsapp
    if not cfg.verify_twilio_signatures or not cfg.twilio_auth_token:
        return

    twilio_sig = request.headers.get("X-Twilio-Signature")
    if not twilio_sig:
        logger.warning("twilio_signature_missing", extra={"path": str(request.url)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Twilio signature",
        )

    url = f"{request.url.scheme}://{request.url.netloc}{request.url.path}"
    params: Dict[str, str] = {}
    for key, value in request.query_params.multi_items():
        params[key] = value
    form = await request.form()
    for key, value in form.items():
        params[str(key)] = str(value)

    expected_sig = compute_twilio_signature(cfg.twilio_auth_token, url, params)
    if not hmac.compare_digest(expected_sig, twilio_sig):
        logger.warning("twilio_signature_invalid", extra={"path": str(request.url)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Twilio signature",
        )


@router.post("/webhook", response_class=Response)
async def whatsapp_webhook(
    request: Request,
    From: str = Form(...),
    To: str = Form(...),
    Body: str = Form(default=""),
    services: Services = Depends(get_services),
) -> Response:
    """Inbound WhatsApp message from Twilio.

    Replies are sent through the transport, so the TwiML answer is always
    empty and the status is 200 once the request is authenticated.
    """
    await _maybe_verify_twilio_signature(request, services)

    result = await services.inbound.handle(
        InboundMessage(from_phone=From, to_phone=To, body=Body)
    )
    if not result.handled:
        logger.info(
            "whatsapp_webhook_unhandled",
            extra={"to": To, "reason": result.reason},
        )
    return Response(content=EMPTY_TWIML, media_type="text/xml")
