"""
Event Idempotency Gate — האם webhook נכנס כבר טופל?

הזרימה בכל receiver:
1. derive_key() על הכותרות וה-body הגולמי
2. is_duplicate() — תצפית ראשונה נרשמת ומחזירה duplicate=False,
   כל תצפית חוזרת מגדילה attempt_count ומחזירה duplicate=True
3. עיבוד האירוע (רק אם לא כפול)
4. mark_processed() עם תוצאת העיבוד

מדיניות שגיאות:
- כשל אחסון ב-is_duplicate → fail open (duplicate=False, degraded=True).
  כפילות שהוחמצה ניתנת לתיקון; אירוע לגיטימי שנחסם — לא.
- כשל אחסון ב-mark_processed / cleanup / דוחות → נרשם ללוג ונבלע.
  כשל ב-bookkeeping לעולם לא מבטל את תוצאת העיבוד עצמו.
- מפתח ריק / context חסר → EventKeyDerivationError (באג אצל הקורא).
"""
from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from app.core.config import settings
from app.core.exceptions import EventKeyDerivationError
from app.core.logging import get_logger
from app.domain.services.event_keys import MAX_KEY_LENGTH, derive_event_key, snapshot_headers
from app.domain.services.ledger.base_ledger import (
    BaseEventLedger,
    EventRecordView,
    LedgerStats,
    ensure_utc,
)

logger = get_logger(__name__)

DEFAULT_RETENTION = timedelta(hours=24)
DEFAULT_ACTIVITY_LIMIT = 50
MAX_ACTIVITY_LIMIT = 500


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DuplicateCheck:
    """
    תוצאת is_duplicate.

    degraded=True — ה-ledger לא היה זמין וה-gate פתח (fail open).
    attempt_count — מספר התצפיות אחרי הכתיבה (None כשה-gate ב-degraded).
    """

    duplicate: bool
    degraded: bool = False
    attempt_count: int | None = None

    def __bool__(self) -> bool:
        return self.duplicate


def _require_key(event_key: str) -> None:
    if not event_key or not str(event_key).strip():
        raise EventKeyDerivationError("event_key must be a non-empty string", field="event_key")
    if len(str(event_key)) > MAX_KEY_LENGTH:
        raise EventKeyDerivationError(
            f"event_key exceeds {MAX_KEY_LENGTH} characters", field="event_key"
        )


class EventIdempotencyGate:
    """Idempotency gate מעל ledger מוזרק."""

    def __init__(
        self,
        ledger: BaseEventLedger,
        *,
        retention: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
        bucket_seconds: int | None = None,
        store_raw_payload: bool | None = None,
        max_payload_bytes: int | None = None,
    ) -> None:
        self.ledger = ledger
        self.retention = retention or timedelta(hours=settings.WEBHOOK_RETENTION_HOURS)
        self._clock = clock
        self._bucket_seconds = bucket_seconds or settings.WEBHOOK_TIMESTAMP_BUCKET_SECONDS
        self._store_raw_payload = (
            settings.WEBHOOK_STORE_RAW_PAYLOAD if store_raw_payload is None else store_raw_payload
        )
        self._max_payload_bytes = max_payload_bytes or settings.WEBHOOK_MAX_STORED_PAYLOAD_BYTES

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def derive_key(
        self,
        headers: Mapping[str, str] | None,
        body: bytes | str,
        source: str,
        topic: str,
        event_id: str | None = None,
    ) -> str:
        """גזירת event key — ראה event_keys.derive_event_key."""
        return derive_event_key(
            headers, body, source, topic, event_id, bucket_seconds=self._bucket_seconds
        )

    async def is_duplicate(self, event_key: str, source: str, topic: str) -> DuplicateCheck:
        """
        בדיקת כפילות + רישום התצפית.

        לא מסדר עיבוד מקביל של אותו מפתח — רק מדווח אם הוא נצפה קודם.
        """
        _require_key(event_key)
        now = self._now()
        try:
            sighting = await self.ledger.record_sighting(
                event_key,
                source,
                topic,
                now=now,
                expires_at=now + self.retention,
            )
        except Exception as e:
            logger.error(
                "Event ledger unavailable — failing open",
                extra_data={
                    "event_key": event_key,
                    "source": source,
                    "topic": topic,
                    "backend": self.ledger.backend_name,
                    "error": str(e),
                },
                exc_info=True,
            )
            return DuplicateCheck(duplicate=False, degraded=True)

        if sighting.created:
            return DuplicateCheck(duplicate=False, attempt_count=sighting.record.attempt_count)

        logger.info(
            "Duplicate webhook event observed",
            extra_data={
                "event_key": event_key,
                "source": source,
                "topic": topic,
                "attempt_count": sighting.record.attempt_count,
                "processed": sighting.record.processed,
            },
        )
        return DuplicateCheck(duplicate=True, attempt_count=sighting.record.attempt_count)

    def _prepare_payload(self, raw_payload: bytes | str | None) -> str | None:
        if raw_payload is None or not self._store_raw_payload:
            return None
        if isinstance(raw_payload, str):
            raw_payload = raw_payload.encode("utf-8")
        if len(raw_payload) > self._max_payload_bytes:
            raw_payload = raw_payload[: self._max_payload_bytes]
        return raw_payload.decode("utf-8", errors="replace")

    async def mark_processed(
        self,
        event_key: str,
        source: str,
        topic: str,
        *,
        processed: bool,
        raw_payload: bytes | str | None = None,
        headers: Mapping[str, str] | None = None,
        error: str | None = None,
    ) -> None:
        """
        רישום תוצאת העיבוד (best-effort).

        expires_at = now + retention. error נשמר רק כש-processed=False;
        עיבוד מוצלח מנקה שגיאה קודמת.
        """
        _require_key(event_key)
        now = self._now()
        try:
            await self.ledger.upsert(
                event_key,
                source,
                topic,
                now=now,
                expires_at=now + self.retention,
                processed=processed,
                raw_payload=self._prepare_payload(raw_payload),
                headers=snapshot_headers(headers) if headers is not None else None,
                error=None if processed else (error or None),
            )
        except Exception as e:
            logger.error(
                "Failed to record webhook processing outcome",
                extra_data={
                    "event_key": event_key,
                    "source": source,
                    "topic": topic,
                    "processed": processed,
                    "backend": self.ledger.backend_name,
                    "error": str(e),
                },
                exc_info=True,
            )
            return

        if not processed:
            logger.warning(
                "Webhook event processing failed",
                extra_data={
                    "event_key": event_key,
                    "source": source,
                    "topic": topic,
                    "error": error,
                },
            )

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        """מחיקת רשומות עם expires_at < now. מחזיר כמה נמחקו (0 בכשל)."""
        cutoff = ensure_utc(now) if now is not None else self._now()
        try:
            deleted = await self.ledger.delete_expired(cutoff)
        except Exception as e:
            logger.error(
                "Event ledger cleanup failed",
                extra_data={
                    "cutoff": cutoff.isoformat(),
                    "backend": self.ledger.backend_name,
                    "error": str(e),
                },
                exc_info=True,
            )
            return 0

        logger.info(
            "Expired webhook event records removed",
            extra_data={"deleted": deleted, "cutoff": cutoff.isoformat()},
        )
        return deleted

    async def get_record(self, event_key: str) -> EventRecordView | None:
        """רשומה בודדת (None אם אין, או אם ה-ledger לא זמין)."""
        try:
            return await self.ledger.find(event_key)
        except Exception as e:
            logger.error(
                "Event ledger lookup failed",
                extra_data={"event_key": event_key, "error": str(e)},
                exc_info=True,
            )
            return None

    async def get_activity(
        self,
        source: str,
        topic: str | None = None,
        limit: int = DEFAULT_ACTIVITY_LIMIT,
    ) -> list[EventRecordView]:
        """הרשומות האחרונות של מקור (last_seen_at יורד)."""
        limit = max(1, min(int(limit), MAX_ACTIVITY_LIMIT))
        try:
            return await self.ledger.list_records(source, topic, limit)
        except Exception as e:
            logger.error(
                "Event ledger activity query failed",
                extra_data={"source": source, "topic": topic, "error": str(e)},
                exc_info=True,
            )
            return []

    async def get_stats(self, source: str, since: datetime | None = None) -> LedgerStats:
        """סטטיסטיקה למקור: total / duplicates / failed / by_topic."""
        try:
            return await self.ledger.stats(source, ensure_utc(since))
        except Exception as e:
            logger.error(
                "Event ledger stats query failed",
                extra_data={"source": source, "error": str(e)},
                exc_info=True,
            )
            return LedgerStats(degraded=True)
