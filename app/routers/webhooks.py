"""
Stripe Webhook Router
=====================

POST /api/webhooks/stripe

1. Verify ``Stripe-Signature`` against the raw body. Unverifiable → 400,
   stores untouched.
2. Translate to a BillingEvent. Types we do not handle → 200 ignored.
3. Reconcile in a worker thread bounded by ``webhook_timeout_s``.

Any processing failure surfaces as a 5xx so Stripe redelivers; duplicates
of an already-applied event come back as 200 ``duplicate``.
"""

import logging

from fastapi import APIRouter, Depends, Request

from app.config import settings
from app.core.async_utils import run_sync
from app.services.billing_reconciler import BillingEventReconciler, get_billing_reconciler
from app.services.stripe_gateway import StripeGateway, get_stripe_gateway

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe", summary="Stripe Webhook", description="Receive Stripe billing events.")
async def stripe_webhook(
    request: Request,
    gateway: StripeGateway = Depends(get_stripe_gateway),
    reconciler: BillingEventReconciler = Depends(get_billing_reconciler),
):
    payload = await request.body()
    event = gateway.verify_and_parse(payload, request.headers.get("Stripe-Signature"))

    billing_event = gateway.to_billing_event(event)
    if billing_event is None:
        return {"received": True, "status": "ignored"}

    outcome = await run_sync(
        reconciler.apply,
        billing_event,
        timeout=settings.webhook_timeout_s,
        timeout_code="TT-DB-003",
    )
    return {"received": True, "status": outcome.status.value}
