"""
Payments API Endpoints.

Payment intent creation for the customer, and the payment gateway webhook.
The webhook is trusted: signature verification happens upstream, and the
engine acts as the system actor.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends

from api.dependencies import get_actor, get_engine, unwrap
from api.models import OrderResponse, PaymentIntentResponse, PaymentWebhookRequest
from domain.actor import ActorContext
from services.engine import FulfillmentEngine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/orders/{order_id}/payment-intent",
    response_model=PaymentIntentResponse,
    summary="Create Payment Intent",
    description="Create a payment intent for an unpaid order. Never retried automatically."
)
def create_payment_intent(
    order_id: UUID,
    actor: ActorContext = Depends(get_actor),
    engine: FulfillmentEngine = Depends(get_engine),
):
    order, intent = unwrap(engine.create_payment_intent(actor, order_id))
    return PaymentIntentResponse(
        order_id=order.order_id,
        intent_id=intent.intent_id,
        client_secret=intent.client_secret,
        amount=intent.amount,
        currency=intent.currency,
    )


@router.post(
    "/payments/webhook",
    response_model=OrderResponse,
    summary="Payment Gateway Webhook",
    description="Record the outcome of a payment intent."
)
def payment_webhook(
    request: PaymentWebhookRequest,
    engine: FulfillmentEngine = Depends(get_engine),
):
    """
    Gateway callback.

    - `succeeded`: the order becomes paid and its reserved stock is consumed.
      Repeated callbacks for the same intent are harmless.
    - `failed`: the order is cancelled and its reservations are released.
    """
    logger.info("Payment webhook for intent %s: %s", request.intent_id, request.status)
    if request.status == "succeeded":
        result = engine.record_payment(request.intent_id)
    else:
        result = engine.record_payment_failure(request.intent_id, request.message or "Payment failed")
    return OrderResponse.from_order(unwrap(result))
