"""
Event Record Model — ה-ledger של webhook-ים שנצפו (idempotency).

שורה אחת לכל event_key. תצפית חוזרת באותו מפתח מעדכנת את השורה
(attempt_count, last_seen_at) ולעולם לא מוסיפה שורה חדשה.
שורות נמחקות ע"י ה-sweep התקופתי אחרי expires_at.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text

from app.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventRecord(Base):
    """רשומת ledger — אירוע נכנס אחד"""

    __tablename__ = "webhook_event_records"

    event_key = Column(String(255), primary_key=True)
    source = Column(String(255), nullable=False)
    topic = Column(String(255), nullable=False)
    raw_payload = Column(Text, nullable=True)
    received_headers = Column(JSON, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    attempt_count = Column(Integer, nullable=False, default=1)
    last_error = Column(Text, nullable=True)
    first_seen_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_seen_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_webhook_event_records_source_topic", "source", "topic"),
        Index("ix_webhook_event_records_expires_at", "expires_at"),
        Index("ix_webhook_event_records_source_last_seen", "source", "last_seen_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EventRecord key={self.event_key!r} source={self.source!r} "
            f"topic={self.topic!r} attempts={self.attempt_count}>"
        )
