"""
הזרימה המשותפת לכל receiver אחרי אימות החתימה:

    derive_key → is_duplicate → parse → dispatch → mark_processed

כפילות מחזירה 200 מיד (השולח לא צריך לנסות שוב).
כשל ב-handler או JSON לא תקין נרשמים ב-ledger כ-processed=False ועדיין
מחזירים 200 — retry מהשולח לא יתקן payload שבור, ו-replay נעשה ידנית.
"""
import json
from typing import Any

from app.api.dependencies.webhook_auth import VerifiedWebhook
from app.core.logging import get_logger
from app.domain.services.idempotency_gate import EventIdempotencyGate
from app.domain.services.webhook_dispatcher import WebhookDispatcher, WebhookEvent

logger = get_logger(__name__)

_MAX_ERROR_LENGTH = 1000


def _error_text(error: Exception) -> str:
    text = str(error) or type(error).__name__
    return text[:_MAX_ERROR_LENGTH]


def _response(event_key: str, *, duplicate: bool, processed: bool, degraded: bool) -> dict[str, Any]:
    return {
        "success": True,
        "duplicate": duplicate,
        "processed": processed,
        "degraded": degraded,
        "event_key": event_key,
    }


async def handle_verified_webhook(
    webhook: VerifiedWebhook,
    gate: EventIdempotencyGate,
    handlers: WebhookDispatcher,
) -> dict[str, Any]:
    """עיבוד webhook מאומת דרך ה-idempotency gate."""
    event_key = gate.derive_key(
        webhook.headers,
        webhook.body,
        webhook.source,
        webhook.topic,
        webhook.event_id,
    )

    check = await gate.is_duplicate(event_key, webhook.source, webhook.topic)
    if check.duplicate:
        return _response(event_key, duplicate=True, processed=False, degraded=False)

    async def record(processed: bool, error: str | None = None) -> None:
        await gate.mark_processed(
            event_key,
            webhook.source,
            webhook.topic,
            processed=processed,
            raw_payload=webhook.body,
            headers=webhook.headers,
            error=error,
        )

    payload = webhook.payload
    if not webhook.parsed:
        try:
            payload = json.loads(webhook.body) if webhook.body else {}
        except ValueError as e:
            logger.warning(
                "Webhook body is not valid JSON",
                extra_data={
                    "provider": webhook.provider,
                    "source": webhook.source,
                    "topic": webhook.topic,
                    "event_key": event_key,
                },
            )
            await record(False, f"invalid JSON payload: {_error_text(e)}")
            return _response(event_key, duplicate=False, processed=False, degraded=check.degraded)

    event = WebhookEvent(
        provider=webhook.provider,
        source=webhook.source,
        topic=webhook.topic,
        event_key=event_key,
        payload=payload,
        headers=webhook.headers,
    )
    try:
        await handlers.dispatch(event)
    except Exception as e:
        logger.error(
            "Webhook handler failed",
            extra_data={
                "provider": webhook.provider,
                "source": webhook.source,
                "topic": webhook.topic,
                "event_key": event_key,
                "error": str(e),
            },
            exc_info=True,
        )
        await record(False, _error_text(e))
        return _response(event_key, duplicate=False, processed=False, degraded=check.degraded)

    await record(True)
    return _response(event_key, duplicate=False, processed=True, degraded=check.degraded)
