from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from fitspace.utils.logger import logger
from ..engine import BillingEngine
from ..events.models import IngestOutcome, IngestResult
from ..shared.exceptions import ConfigurationError, ValidationError
from ..shared.models import IngestResponse
from .dependencies import get_engine, raise_http_error

router = APIRouter(tags=["billing-webhooks"])


def _response(result: IngestResult) -> IngestResponse:
    return IngestResponse(
        outcome=result.outcome.value,
        event_id=result.event_id,
        subscription_id=result.subscription_id,
        detail=result.detail,
    )


@router.post("/webhook", response_model=IngestResponse)
async def stripe_webhook(request: Request, engine: BillingEngine = Depends(get_engine)) -> IngestResponse:
    """Stripe-signed webhook intake."""
    payload = await request.body()
    try:
        stripe_event = engine.webhooks.construct_event(payload, request.headers.get("stripe-signature"))
    except ConfigurationError as e:
        logger.error(f"[STRIPE] Webhook rejected: {e}")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")
    except ValidationError as e:
        logger.warning(f"[STRIPE] Webhook rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    event = engine.webhooks.translate(stripe_event)
    if event is None:
        return IngestResponse(outcome=IngestOutcome.IGNORED.value, event_id=stripe_event.get("id"))

    try:
        result = await engine.processor.ingest(event)
    except Exception as e:
        raise_http_error(e, "[STRIPE]")
    return _response(result)


@router.post("/events", response_model=IngestResponse)
async def ingest_event(body: Dict[str, Any], engine: BillingEngine = Depends(get_engine)) -> IngestResponse:
    """Pre-normalised events from trusted internal producers."""
    try:
        result = await engine.processor.ingest(body)
    except Exception as e:
        raise_http_error(e, "[EVENTS]")
    return _response(result)
