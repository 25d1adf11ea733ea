# routes/webhooks.py
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from app.container import Services
from app.providers.stripe_processor import verify_stripe_signature
from app.webhooks.events import parse_stripe_event
from deps.services import get_services
from schemas import WebhookAckResponse
from services.observability import get_request_id
from services.redaction import event_summary
from settings import settings


router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])
logger = logging.getLogger("gigpay.webhooks")


@router.post("/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(req: Request, services: Services = Depends(get_services)):
    raw = await req.body()

    ok, err = verify_stripe_signature(
        raw=raw,
        signature_header=req.headers.get("Stripe-Signature"),
        secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance=int(settings.STRIPE_WEBHOOK_TOLERANCE_S),
    )
    if not ok:
        # nothing is parsed or stored for an unauthenticated delivery
        logger.warning("webhook_rejected provider=stripe reason=%s request_id=%s", err, get_request_id())
        if err == "WEBHOOK_SECRET_NOT_CONFIGURED":
            raise HTTPException(status_code=500, detail=err)
        raise HTTPException(status_code=401, detail=err)

    try:
        payload = json.loads(raw)
        event = parse_stripe_event(payload)
    except ValueError as e:
        logger.warning("webhook_malformed provider=stripe err=%s request_id=%s", type(e).__name__, get_request_id())
        raise HTTPException(status_code=400, detail="INVALID_PAYLOAD")

    logger.info("webhook_received provider=stripe summary=%s request_id=%s", event_summary(payload), get_request_id())

    try:
        # handling can block on processor calls and refund backoff
        ack = await run_in_threadpool(services.webhooks.handle_event, event)
    except Exception:
        # 5xx makes the processor redeliver
        logger.exception("webhook_processing_failed event_id=%s kind=%s", event.event_id, event.kind)
        raise HTTPException(status_code=500, detail="WEBHOOK_PROCESSING_FAILED")

    return WebhookAckResponse(event_id=ack.event_id, applied=ack.applied, duplicate=ack.duplicate, reason=ack.reason)
