"""
Payments API.

- POST /api/payments/create-intent   one-time payment intent
- POST /api/payments/subscriptions   start a subscription (optional trial)
- GET  /api/payments/history         caller's payment mirror rows
- POST /api/payments/webhook         provider webhook (signature-authenticated)
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from starlette.concurrency import run_in_threadpool

from agrilease.core.auth import AuthContext, get_current_user
from agrilease.features.billing import service as billing_service
from agrilease.features.pricing.catalog import PlanCatalog, get_catalog
from agrilease.models.events import ProviderEventResult
from agrilease.models.payment import (
    CreatePaymentIntentRequest,
    CreateSubscriptionRequest,
    Payment,
    PaymentHoldResult,
    SubscriptionResult,
)

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/create-intent", response_model=PaymentHoldResult, status_code=201)
def create_intent(body: CreatePaymentIntentRequest, ctx: AuthContext = Depends(get_current_user)):
    return billing_service.create_payment_hold(
        ctx.user_id,
        body.amount,
        body.purpose,
        metadata=body.metadata,
        manual_capture=body.manual_capture,
    )


@router.post("/subscriptions", response_model=SubscriptionResult, status_code=201)
def create_subscription(
    body: CreateSubscriptionRequest,
    ctx: AuthContext = Depends(get_current_user),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """
    Subscribe the caller to a tier.

    Errors:
        409: already active, or another creation in progress
        502/503: payment provider failure / unavailable
    """
    return billing_service.create_subscription(
        ctx.user_id,
        body.tier,
        body.billing_period,
        body.use_trial,
        catalog,
    )


@router.get("/history", response_model=List[Payment])
def payment_history(
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(get_current_user),
):
    return billing_service.get_payment_history(ctx.user_id, limit=limit)


@router.post("/webhook", response_model=ProviderEventResult)
async def provider_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    """
    Handle provider webhook events.

    The raw body is required for signature verification. Replayed event ids
    return duplicate=true and change nothing.
    """
    body = await request.body()
    return await run_in_threadpool(billing_service.handle_provider_event, body, stripe_signature)
