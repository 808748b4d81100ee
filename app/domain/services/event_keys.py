"""
גזירת מפתח idempotency לאירוע webhook נכנס.

סדר עדיפויות:
1. מזהה ייחודי מהספק (ארגומנט event_id או אחת מכותרות PROVIDER_EVENT_ID_HEADERS)
   — מוחזר כמו שהוא. הספק מבטיח ייחודיות, והמזהה שורד retry גם אם ה-body השתנה.
   מזהה ארוך מ-MAX_KEY_LENGTH מוחלף ב-SHA-256 שלו.
2. אחרת — SHA-256 hex על source, topic, body ו-bucket זמן אופציונלי מהכותרות.

הפונקציות כאן טהורות: אותו קלט → אותו מפתח, בלי I/O ובלי לוגים.
"""
from __future__ import annotations

import hashlib
from collections.abc import Mapping
from datetime import datetime

from app.core.exceptions import EventKeyDerivationError

# כותרות שמכילות מזהה אירוע ייחודי מהספק, לפי סדר עדיפות (lowercase)
PROVIDER_EVENT_ID_HEADERS: tuple[str, ...] = (
    "x-shopify-webhook-id",
    "x-shopify-event-id",
    "x-github-delivery",
    "x-seology-event-id",
    "x-event-id",
    "eventid",
    "idempotency-key",
)

# כותרות עם זמן שליחה מקורי — זהה בין retries של אותו אירוע
TIMESTAMP_HEADERS: tuple[str, ...] = (
    "x-shopify-triggered-at",
    "x-webhook-timestamp",
)

# כותרות שנשמרות ב-snapshot של הרשומה. חתימות וטוקנים לא נשמרים לעולם.
SNAPSHOT_HEADERS: frozenset[str] = frozenset({
    "content-type",
    "user-agent",
    "x-shopify-topic",
    "x-shopify-shop-domain",
    "x-shopify-api-version",
    "x-shopify-triggered-at",
    "x-seology-source",
    "x-seology-topic",
    "x-webhook-timestamp",
    *PROVIDER_EVENT_ID_HEADERS,
})

DEFAULT_TIMESTAMP_BUCKET_SECONDS = 300

# אורך מקסימלי של event_key / source / topic — עמודות String(255) ב-webhook_event_records
MAX_KEY_LENGTH = 255


def normalize_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    """מיפוי כותרות ל-dict עם שמות lowercase (כותרות HTTP לא רגישות לרישיות)."""
    if not headers:
        return {}
    return {str(name).lower(): str(value) for name, value in headers.items()}


def find_provider_event_id(headers: Mapping[str, str] | None) -> str | None:
    """מחזיר את המזהה הראשון שנמצא לפי PROVIDER_EVENT_ID_HEADERS, או None."""
    normalized = normalize_headers(headers)
    for name in PROVIDER_EVENT_ID_HEADERS:
        value = normalized.get(name, "").strip()
        if value:
            return value
    return None


def _parse_epoch_seconds(raw: str) -> float | None:
    """epoch (שניות/מילישניות) או ISO-8601. ערך לא ניתן לפירוש → None."""
    raw = raw.strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        pass
    else:
        # מילישניות — Shopify/Zapier שולחים לפעמים epoch ב-ms
        return value / 1000.0 if value > 1e11 else value

    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.timestamp()


def timestamp_bucket(
    headers: Mapping[str, str] | None,
    bucket_seconds: int = DEFAULT_TIMESTAMP_BUCKET_SECONDS,
) -> str | None:
    """bucket גס של זמן השליחה מהכותרות (או None אם אין כותרת תקינה)."""
    normalized = normalize_headers(headers)
    for name in TIMESTAMP_HEADERS:
        raw = normalized.get(name)
        if raw is None:
            continue
        epoch = _parse_epoch_seconds(raw)
        if epoch is not None:
            return str(int(epoch // bucket_seconds))
    return None


def _length_prefixed(part: bytes) -> bytes:
    # קידומת אורך מונעת התנגשות בין ("ab", "c") ל-("a", "bc")
    return str(len(part)).encode("ascii") + b":" + part


def _require(value: str | None, field: str) -> str:
    if value is None or not str(value).strip():
        raise EventKeyDerivationError(f"'{field}' is required to derive an event key", field=field)
    if len(str(value)) > MAX_KEY_LENGTH:
        raise EventKeyDerivationError(
            f"'{field}' exceeds {MAX_KEY_LENGTH} characters", field=field
        )
    return str(value)


def _bounded_provider_id(provider_id: str) -> str:
    """מזהה ספק שנכנס לעמודה — כמו שהוא. ארוך מדי → SHA-256 שלו (יציב בין retries)."""
    if len(provider_id) <= MAX_KEY_LENGTH:
        return provider_id
    return hashlib.sha256(_length_prefixed(provider_id.encode("utf-8"))).hexdigest()


def derive_event_key(
    headers: Mapping[str, str] | None,
    body: bytes | str,
    source: str,
    topic: str,
    event_id: str | None = None,
    *,
    bucket_seconds: int = DEFAULT_TIMESTAMP_BUCKET_SECONDS,
) -> str:
    """
    גזירת event key דטרמיניסטית.

    Args:
        headers: כותרות הבקשה (שמות לא רגישים לרישיות).
        body: ה-body הגולמי בדיוק כפי שהתקבל — לפני JSON parsing.
        source: מזהה המקור (דומיין חנות, חשבון Stripe, מזהה אתר).
        topic: סוג האירוע.
        event_id: מזהה ספק שנמצא ב-body (למשל Stripe ``evt_...``).
        bucket_seconds: גודל bucket הזמן לגזירת hash.

    Raises:
        EventKeyDerivationError: source/topic חסרים או ארוכים מדי, או body מסוג לא נתמך.
    """
    source = _require(source, "source")
    topic = _require(topic, "topic")

    if event_id is not None and str(event_id).strip():
        return _bounded_provider_id(str(event_id).strip())

    provider_id = find_provider_event_id(headers)
    if provider_id:
        return _bounded_provider_id(provider_id)

    if isinstance(body, str):
        body_bytes = body.encode("utf-8")
    elif isinstance(body, (bytes, bytearray, memoryview)):
        body_bytes = bytes(body)
    else:
        raise EventKeyDerivationError(
            f"body must be bytes or str, got {type(body).__name__}", field="body"
        )

    digest = hashlib.sha256()
    digest.update(_length_prefixed(source.encode("utf-8")))
    digest.update(_length_prefixed(topic.encode("utf-8")))
    digest.update(_length_prefixed(body_bytes))
    bucket = timestamp_bucket(headers, bucket_seconds)
    if bucket is not None:
        digest.update(_length_prefixed(bucket.encode("ascii")))
    return digest.hexdigest()


def snapshot_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    """תת-קבוצה של הכותרות לשמירה ברשומה (audit) — ללא חתימות/טוקנים."""
    normalized = normalize_headers(headers)
    return {name: value for name, value in normalized.items() if name in SNAPSHOT_HEADERS}
