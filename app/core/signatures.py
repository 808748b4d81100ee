"""
Webhook signature verification.

שלושה פורמטים נתמכים:
- Shopify: ``X-Shopify-Hmac-Sha256`` = base64(HMAC-SHA256(secret, body))
- Stripe: ``Stripe-Signature`` = ``t=<unix>,v1=<hex>`` מעל ``"<t>.<body>"``
- אתרים מותאמים: ``X-Seology-Signature`` = ``sha256=<hex>`` או hex בלבד

כל הפונקציות מקבלות את ה-body הגולמי בדיוק כפי שהתקבל — חתימה מחושבת
על בתים, ו-JSON שעבר parse + serialize מחדש לא יאומת.
כל ההשוואות ב-hmac.compare_digest (עמיד ל-timing attacks).
"""
import base64
import hashlib
import hmac
import time

_HEX_PREFIX = "sha256="


def _as_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def compute_hex_signature(body: bytes | str, secret: str) -> str:
    """HMAC-SHA256 hex digest — used by custom sites and by tests to sign payloads."""
    return hmac.new(secret.encode("utf-8"), _as_bytes(body), hashlib.sha256).hexdigest()


def compute_shopify_hmac(body: bytes | str, secret: str) -> str:
    """HMAC-SHA256 base64 digest as Shopify sends it."""
    digest = hmac.new(secret.encode("utf-8"), _as_bytes(body), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_shopify_hmac(body: bytes | str, header_value: str | None, secret: str) -> bool:
    """אימות X-Shopify-Hmac-Sha256. סוד ריק או כותרת חסרה — תמיד False."""
    if not header_value or not secret:
        return False
    expected = compute_shopify_hmac(body, secret)
    return hmac.compare_digest(expected, header_value.strip())


def verify_hex_hmac(body: bytes | str, header_value: str | None, secret: str) -> bool:
    """אימות חתימת hex (עם או בלי קידומת ``sha256=``)."""
    if not header_value or not secret:
        return False
    provided = header_value.strip()
    if provided.lower().startswith(_HEX_PREFIX):
        provided = provided[len(_HEX_PREFIX):]
    expected = compute_hex_signature(body, secret)
    return hmac.compare_digest(expected, provided.lower())


def parse_stripe_signature_header(header_value: str) -> tuple[int | None, list[str]]:
    """
    פירוק ``t=...,v1=...,v1=...`` לזוג (timestamp, רשימת חתימות v1).

    חלקים לא מוכרים (v0, scheme עתידי) מדולגים. timestamp לא מספרי → None.
    """
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header_value.split(","):
        name, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if name == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif name == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def compute_stripe_signature(body: bytes | str, secret: str, timestamp: int) -> str:
    """Hex HMAC over ``"<timestamp>.<body>"`` — the ``v1`` scheme."""
    signed_payload = f"{timestamp}.".encode("utf-8") + _as_bytes(body)
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_stripe_signature(
    body: bytes | str,
    header_value: str | None,
    secret: str,
    *,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> bool:
    """
    אימות Stripe-Signature.

    Args:
        body: ה-body הגולמי.
        header_value: ערך הכותרת ``Stripe-Signature``.
        secret: סוד ה-endpoint (``whsec_...``).
        tolerance_seconds: הפרש מקסימלי בין ``t`` לזמן הנוכחי (הגנת replay).
        now: זמן נוכחי ב-epoch seconds (לבדיקות).
    """
    if not header_value or not secret:
        return False

    timestamp, signatures = parse_stripe_signature_header(header_value)
    if timestamp is None or not signatures:
        return False

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        return False

    expected = compute_stripe_signature(body, secret, timestamp)
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)
