"""
אימות webhooks נכנסים — dependency לכל ספק.

כל dependency קורא את ה-body הגולמי (לפני JSON parsing), מאמת חתימה
ומחזיר VerifiedWebhook עם source/topic שנדרשים לגזירת ה-event key.

שימוש:
    @router.post("")
    async def shopify_webhook(
        webhook: VerifiedWebhook = Depends(verify_shopify_webhook),
        ...
    ):
        ...
"""
import json
from dataclasses import dataclass, field
from typing import Any

from fastapi import Header, Request

from app.core.config import settings
from app.core.exceptions import (
    InvalidSignatureError,
    InvalidWebhookPayloadError,
    MissingWebhookHeadersError,
    WebhookSecretNotConfiguredError,
)
from app.core.logging import get_logger
from app.core.signatures import verify_hex_hmac, verify_shopify_hmac, verify_stripe_signature

logger = get_logger(__name__)


@dataclass
class VerifiedWebhook:
    """בקשת webhook שהחתימה שלה אומתה."""

    provider: str
    source: str
    topic: str
    body: bytes
    headers: dict[str, str]
    # מזהה אירוע מתוך ה-body (Stripe) — גובר על כותרות ועל hash
    event_id: str | None = None
    # payload שכבר פוענח בשלב האימות (Stripe צריך אותו כדי לדעת source/topic)
    payload: Any = None
    parsed: bool = field(default=False)


def _missing(**values: str | None) -> list[str]:
    return [name for name, value in values.items() if not value]


async def verify_shopify_webhook(
    request: Request,
    x_shopify_hmac_sha256: str | None = Header(None),
    x_shopify_topic: str | None = Header(None),
    x_shopify_shop_domain: str | None = Header(None),
) -> VerifiedWebhook:
    """
    אימות ``X-Shopify-Hmac-Sha256``.

    - כותרת חובה חסרה — 401.
    - SHOPIFY_WEBHOOK_SECRET לא מוגדר — 500 (אי אפשר לאמת).
    - HMAC לא תואם — 401.
    """
    missing = _missing(
        **{
            "X-Shopify-Hmac-Sha256": x_shopify_hmac_sha256,
            "X-Shopify-Topic": x_shopify_topic,
            "X-Shopify-Shop-Domain": x_shopify_shop_domain,
        }
    )
    if missing:
        logger.warning("Shopify webhook without required headers", extra_data={"missing": missing})
        raise MissingWebhookHeadersError("shopify", missing)

    secret = settings.SHOPIFY_WEBHOOK_SECRET
    if not secret:
        logger.error("SHOPIFY_WEBHOOK_SECRET not configured — rejecting webhook")
        raise WebhookSecretNotConfiguredError("shopify", "SHOPIFY_WEBHOOK_SECRET")

    body = await request.body()
    if not verify_shopify_hmac(body, x_shopify_hmac_sha256, secret):
        logger.warning(
            "Invalid Shopify webhook HMAC signature",
            extra_data={"shop": x_shopify_shop_domain, "topic": x_shopify_topic},
        )
        raise InvalidSignatureError("shopify")

    return VerifiedWebhook(
        provider="shopify",
        source=x_shopify_shop_domain.strip().lower(),
        topic=x_shopify_topic.strip(),
        body=body,
        headers=dict(request.headers),
    )


async def verify_stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None),
) -> VerifiedWebhook:
    """
    אימות ``Stripe-Signature`` ופענוח האירוע.

    Stripe מחזיר 400 (לא 401) על חתימה חסרה/שגויה — אותו דבר כאן.
    source = ``account`` (Connect) או "stripe", topic = ``type``, מזהה = ``id``.
    """
    if not stripe_signature:
        raise InvalidSignatureError("stripe", status_code=400)

    secret = settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured — rejecting webhook")
        raise WebhookSecretNotConfiguredError("stripe", "STRIPE_WEBHOOK_SECRET")

    body = await request.body()
    if not verify_stripe_signature(
        body,
        stripe_signature,
        secret,
        tolerance_seconds=settings.STRIPE_SIGNATURE_TOLERANCE_SECONDS,
    ):
        logger.warning("Stripe webhook signature verification failed")
        raise InvalidSignatureError("stripe", status_code=400)

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise InvalidWebhookPayloadError("stripe", "body is not valid JSON") from e

    if not isinstance(payload, dict) or not payload.get("type"):
        raise InvalidWebhookPayloadError("stripe", "event type is missing")

    return VerifiedWebhook(
        provider="stripe",
        source=str(payload.get("account") or "stripe"),
        topic=str(payload["type"]),
        body=body,
        headers=dict(request.headers),
        event_id=payload.get("id") or None,
        payload=payload,
        parsed=True,
    )


async def verify_site_webhook(
    request: Request,
    x_seology_source: str | None = Header(None),
    x_seology_topic: str | None = Header(None),
    x_seology_signature: str | None = Header(None),
) -> VerifiedWebhook:
    """
    אימות webhook מאתר מותאם / WordPress plugin.

    החתימה: ``sha256=<hex>`` של HMAC-SHA256 עם SITE_WEBHOOK_SECRET.
    """
    missing = _missing(
        **{
            "X-Seology-Source": x_seology_source,
            "X-Seology-Topic": x_seology_topic,
            "X-Seology-Signature": x_seology_signature,
        }
    )
    if missing:
        logger.warning("Site webhook without required headers", extra_data={"missing": missing})
        raise MissingWebhookHeadersError("site", missing)

    secret = settings.SITE_WEBHOOK_SECRET
    if not secret:
        logger.error("SITE_WEBHOOK_SECRET not configured — rejecting webhook")
        raise WebhookSecretNotConfiguredError("site", "SITE_WEBHOOK_SECRET")

    body = await request.body()
    if not verify_hex_hmac(body, x_seology_signature, secret):
        logger.warning(
            "Invalid site webhook signature",
            extra_data={"source": x_seology_source, "topic": x_seology_topic},
        )
        raise InvalidSignatureError("site")

    return VerifiedWebhook(
        provider="site",
        source=x_seology_source.strip(),
        topic=x_seology_topic.strip(),
        body=body,
        headers=dict(request.headers),
    )
