"""
Shopify Webhook Receiver — products/*, orders/*, app/uninstalled וכו'.

source = X-Shopify-Shop-Domain, topic = X-Shopify-Topic.
X-Shopify-Webhook-Id (קבוע בין retries של Shopify) משמש כמפתח האירוע.
"""
from fastapi import APIRouter, Depends

from app.api.dependencies.idempotency import get_idempotency_gate, get_webhook_dispatcher
from app.api.dependencies.webhook_auth import VerifiedWebhook, verify_shopify_webhook
from app.api.webhooks.common import handle_verified_webhook
from app.domain.services.idempotency_gate import EventIdempotencyGate
from app.domain.services.webhook_dispatcher import WebhookDispatcher

router = APIRouter()


@router.post(
    "",
    summary="Shopify webhook",
    description="קבלת webhook מ-Shopify — אימות HMAC, סינון כפילויות ו-dispatch.",
)
async def shopify_webhook(
    webhook: VerifiedWebhook = Depends(verify_shopify_webhook),
    gate: EventIdempotencyGate = Depends(get_idempotency_gate),
    handlers: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> dict:
    return await handle_verified_webhook(webhook, gate, handlers)
