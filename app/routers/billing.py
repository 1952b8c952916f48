"""
Billing Router — Stripe Checkout
=================================

- POST /api/billing/checkout  {plan?}  → hosted subscription checkout URL
- POST /api/billing/topup     {pack}   → hosted one-off top-up checkout URL

The ledger is not touched here. Seconds are granted when Stripe confirms
the payment through POST /api/webhooks/stripe.
"""

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from app.auth.bearer_auth import AuthenticatedAccount, get_current_account
from app.config import settings
from app.core.async_utils import run_sync
from app.services.stripe_gateway import StripeGateway, get_stripe_gateway

logger = logging.getLogger(__name__)

router = APIRouter()


class CheckoutRequest(BaseModel):
    plan: Optional[str] = None


class TopupRequest(BaseModel):
    pack: Union[int, str]


class CheckoutResponse(BaseModel):
    url: str


def _return_origin(request: Request) -> str:
    """Redirect back to the caller's origin only if it is one we serve."""
    origin = (request.headers.get("origin") or "").rstrip("/")
    if origin and origin in settings.cors_origins:
        return origin
    return settings.public_origin


@router.post("/checkout", response_model=CheckoutResponse, summary="Start a subscription checkout")
async def create_checkout(
    body: CheckoutRequest,
    request: Request,
    account: AuthenticatedAccount = Depends(get_current_account),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    url = await run_sync(
        gateway.create_subscription_checkout,
        account.account_id,
        account.email,
        body.plan,
        _return_origin(request),
        timeout=settings.provider_timeout_s + 5,
        timeout_code="TT-PRV-001",
    )
    return CheckoutResponse(url=url)


@router.post("/topup", response_model=CheckoutResponse, summary="Start a top-up checkout")
async def create_topup(
    body: TopupRequest,
    request: Request,
    account: AuthenticatedAccount = Depends(get_current_account),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    url = await run_sync(
        gateway.create_topup_checkout,
        account.account_id,
        account.email,
        body.pack,
        _return_origin(request),
        timeout=settings.provider_timeout_s + 5,
        timeout_code="TT-PRV-001",
    )
    return CheckoutResponse(url=url)
