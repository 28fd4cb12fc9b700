"""
Delivery router.

Called by the checkout flow once orders are marked completed. Delivery is
scheduled as a background task so the caller gets 202 immediately; the
order's success never depends on the files being fetched, watermarked or
emailed.

Environment variables
---------------------
DELIVERY_WEBHOOK_SECRET   Shared secret checked in the X-Webhook-Secret header.

Endpoints:
  POST /order-completed            - deliver a batch of orders (auth: X-Webhook-Secret)
  POST /orders/{order_id}/resend   - re-deliver one order (auth: X-Webhook-Secret)
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException

from app.config import get_delivery_webhook_secret
from app.models.delivery import DeliveryAcceptedResponse, OrderCompletedRequest
from app.services.delivery import run_delivery_in_background

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def _verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None),
) -> None:
    """
    Verify that the request carries the shared delivery secret.

    Raises 401 if the secret is missing, unconfigured, or does not match.
    """
    expected = get_delivery_webhook_secret()
    if not expected:
        logger.warning(
            "DELIVERY_WEBHOOK_SECRET is not configured; all delivery requests will be rejected"
        )
        raise HTTPException(status_code=401, detail="Webhook secret not configured")

    if not x_webhook_secret or not hmac.compare_digest(
        x_webhook_secret.encode(), expected.encode()
    ):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/order-completed", status_code=202, response_model=DeliveryAcceptedResponse)
async def order_completed(
    body: OrderCompletedRequest,
    background_tasks: BackgroundTasks,
    _: None = Depends(_verify_webhook_secret),
) -> DeliveryAcceptedResponse:
    """Schedule delivery for newly completed orders."""
    logger.info(f"Scheduling delivery for {len(body.order_ids)} order(s): {body.order_ids}")
    background_tasks.add_task(run_delivery_in_background, body.order_ids)
    return DeliveryAcceptedResponse(order_count=len(body.order_ids))


@router.post(
    "/orders/{order_id}/resend", status_code=202, response_model=DeliveryAcceptedResponse
)
async def resend_order(
    order_id: str,
    background_tasks: BackgroundTasks,
    _: None = Depends(_verify_webhook_secret),
) -> DeliveryAcceptedResponse:
    """Re-run delivery for a single order, e.g. after a support request."""
    order_id = order_id.strip()
    if not order_id:
        raise HTTPException(status_code=400, detail="order_id is required")

    logger.info(f"Scheduling re-delivery for order {order_id}")
    background_tasks.add_task(run_delivery_in_background, [order_id])
    return DeliveryAcceptedResponse(order_count=1)
