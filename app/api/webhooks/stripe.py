"""
Stripe Webhook Receiver — חיובים ומנויים.

ה-id של האירוע ב-body (evt_...) הוא מפתח ה-idempotency; Stripe שולח
אותו id בכל retry. חשבונות Connect מזוהים לפי ``account``.
"""
from fastapi import APIRouter, Depends

from app.api.dependencies.idempotency import get_idempotency_gate, get_webhook_dispatcher
from app.api.dependencies.webhook_auth import VerifiedWebhook, verify_stripe_webhook
from app.api.webhooks.common import handle_verified_webhook
from app.domain.services.idempotency_gate import EventIdempotencyGate
from app.domain.services.webhook_dispatcher import WebhookDispatcher

router = APIRouter()


@router.post(
    "",
    summary="Stripe webhook",
    description="קבלת webhook מ-Stripe — אימות Stripe-Signature, סינון כפילויות ו-dispatch.",
)
async def stripe_webhook(
    webhook: VerifiedWebhook = Depends(verify_stripe_webhook),
    gate: EventIdempotencyGate = Depends(get_idempotency_gate),
    handlers: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> dict:
    return await handle_verified_webhook(webhook, gate, handlers)
