"""
Site Webhook Receiver — אתרים מותאמים ו-WordPress plugin.

הפלאגין שולח X-Seology-Source (דומיין), X-Seology-Topic וחתימת
``sha256=<hex>``. X-Seology-Event-Id אופציונלי; בלעדיו המפתח נגזר מה-body.
"""
from fastapi import APIRouter, Depends

from app.api.dependencies.idempotency import get_idempotency_gate, get_webhook_dispatcher
from app.api.dependencies.webhook_auth import VerifiedWebhook, verify_site_webhook
from app.api.webhooks.common import handle_verified_webhook
from app.domain.services.idempotency_gate import EventIdempotencyGate
from app.domain.services.webhook_dispatcher import WebhookDispatcher

router = APIRouter()


@router.post(
    "",
    summary="Site webhook",
    description="קבלת webhook מאתר מחובר — אימות HMAC hex, סינון כפילויות ו-dispatch.",
)
async def site_webhook(
    webhook: VerifiedWebhook = Depends(verify_site_webhook),
    gate: EventIdempotencyGate = Depends(get_idempotency_gate),
    handlers: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> dict:
    return await handle_verified_webhook(webhook, gate, handlers)
