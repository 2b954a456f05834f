"""Stripe webhook endpoint."""

from fastapi import APIRouter, Request, status

from src.api.core.dependencies import StripeWebhookServiceDep
from src.api.core.exceptions.base import UpscalerException
from src.api.core.messages import MessageCode
from src.modules.billing.stripe.service import (
    WebhookPayloadError,
    WebhookSignatureError,
)
from src.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/stripe", tags=["stripe"])

MAX_WEBHOOK_PAYLOAD_BYTES = 1024 * 1024


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    webhook_service: StripeWebhookServiceDep,
):
    """Verify and process a Stripe event.

    Always answers 200 once the signature checks out, including for events
    whose handler failed, so Stripe does not retry into the idempotency gate.
    """
    payload = await request.body()

    if not payload:
        raise UpscalerException(
            MessageCode.BAD_REQUEST,
            status.HTTP_400_BAD_REQUEST,
            details={"description": "Empty webhook payload"},
        )

    if len(payload) > MAX_WEBHOOK_PAYLOAD_BYTES:
        raise UpscalerException(
            MessageCode.BAD_REQUEST,
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            details={"description": "Webhook payload too large"},
        )

    signature = request.headers.get("stripe-signature")
    if not signature:
        raise UpscalerException(
            MessageCode.BAD_REQUEST,
            status.HTTP_400_BAD_REQUEST,
            details={"description": "Missing stripe-signature header"},
        )

    try:
        event = webhook_service.construct_event(payload, signature)
    except WebhookSignatureError as e:
        logger.warning("Webhook signature verification failed", error=str(e))
        raise UpscalerException(
            MessageCode.WEBHOOK_SIGNATURE_INVALID, status.HTTP_400_BAD_REQUEST
        )
    except WebhookPayloadError as e:
        logger.warning("Webhook payload rejected", error=str(e))
        raise UpscalerException(
            MessageCode.INVALID_INPUT,
            status.HTTP_400_BAD_REQUEST,
            details={"description": "Invalid webhook data"},
        )

    outcome = await webhook_service.handle_event(event)
    logger.info(
        "Webhook handled",
        event_id=event["id"],
        event_type=event["type"],
        status=outcome.value,
    )
    return {"received": True, "status": outcome.value}
