"""
ממשק בסיסי ל-event ledger — Dependency Inversion.

ה-gate תלוי רק בממשק הזה ולא ב-ORM או ב-Redis ישירות.
כל מימוש אחראי על:
- יצירה/עדכון של רשומה אחת לפי event_key (ללא טרנזקציות מרובות שורות)
- מחיקת רשומות שפג תוקפן במשפט אחד
- עטיפת כל כשל אחסון ב-LedgerError (ה-gate מחליט מה לעשות איתו)
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite מחזיר datetime נאיבי — כל הזמנים ב-ledger נשמרים ב-UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class EventRecordView:
    """תמונת מצב של רשומת ledger — מה שכל adapter מחזיר לקוראים."""

    event_key: str
    source: str
    topic: str
    processed: bool
    attempt_count: int
    first_seen_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    last_error: str | None = None
    raw_payload: str | None = None
    received_headers: dict[str, str] | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.attempt_count > 1

    def to_dict(self, include_payload: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "event_key": self.event_key,
            "source": self.source,
            "topic": self.topic,
            "processed": self.processed,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "first_seen_at": self.first_seen_at,
            "last_seen_at": self.last_seen_at,
            "expires_at": self.expires_at,
            "received_headers": self.received_headers,
        }
        if include_payload:
            data["raw_payload"] = self.raw_payload
        return data


@dataclass(frozen=True)
class Sighting:
    """תוצאת record_sighting: הרשומה אחרי הכתיבה + האם נוצרה עכשיו."""

    record: EventRecordView
    created: bool


@dataclass
class LedgerStats:
    """אגרגציה לדשבורד: total / duplicates (attempt_count > 1) / failed / לפי topic."""

    total: int = 0
    duplicates: int = 0
    failed: int = 0
    by_topic: dict[str, int] = field(default_factory=dict)
    # True כשה-ledger לא היה זמין והמספרים ריקים
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "by_topic": dict(self.by_topic),
            "degraded": self.degraded,
        }


class BaseEventLedger(ABC):
    """ממשק אחיד לאחסון רשומות אירועים."""

    backend_name: str = "base"

    @abstractmethod
    async def find(self, event_key: str) -> EventRecordView | None:
        """
        שליפת רשומה לפי מפתח.

        Raises:
            LedgerError: בכשלון אחסון.
        """

    @abstractmethod
    async def record_sighting(
        self,
        event_key: str,
        source: str,
        topic: str,
        *,
        now: datetime,
        expires_at: datetime,
    ) -> Sighting:
        """
        רישום תצפית באירוע.

        מפתח חדש → רשומה עם attempt_count=1, processed=False.
        מפתח קיים → attempt_count += 1 ו-last_seen_at=max(last_seen_at, now)
        (expires_at לא זז).

        Raises:
            LedgerError: בכשלון אחסון.
        """

    @abstractmethod
    async def upsert(
        self,
        event_key: str,
        source: str,
        topic: str,
        *,
        now: datetime,
        expires_at: datetime,
        processed: bool,
        raw_payload: str | None = None,
        headers: dict[str, str] | None = None,
        error: str | None = None,
    ) -> EventRecordView:
        """
        יצירה או עדכון של תוצאת העיבוד.

        raw_payload/headers = None משאירים את הערך הקיים.
        error נכתב ל-last_error; None מנקה אותו.

        Raises:
            LedgerError: בכשלון אחסון.
        """

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        """מחיקת כל הרשומות עם expires_at < now. מחזיר מספר רשומות שנמחקו."""

    @abstractmethod
    async def list_records(
        self,
        source: str,
        topic: str | None = None,
        limit: int = 50,
    ) -> list[EventRecordView]:
        """רשומות של מקור, החדשות ביותר (last_seen_at) קודם."""

    @abstractmethod
    async def stats(self, source: str, since: datetime | None = None) -> LedgerStats:
        """אגרגציה של רשומות המקור (first_seen_at >= since אם סופק)."""
