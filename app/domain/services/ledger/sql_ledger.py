"""
SQLAlchemy Event Ledger — מימוש ה-ledger מעל טבלת webhook_event_records.

גישה אופטימיסטית (כמו ב-idempotency של webhooks עד היום): INSERT קודם
בתוך savepoint, ואם המפתח כבר קיים (IntegrityError) — UPDATE אטומי
``attempt_count = attempt_count + 1``. כך אין חלון race בין בדיקה להוספה.

כל כתיבה נעשית commit מיד, כדי שהרשומה תישמר גם אם העיבוד שאחריה נכשל.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import case, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import LedgerError
from app.core.logging import get_logger
from app.db.models.event_record import EventRecord
from app.domain.services.ledger.base_ledger import (
    BaseEventLedger,
    EventRecordView,
    LedgerStats,
    Sighting,
    ensure_utc,
)

logger = get_logger(__name__)

# מחיקה בין INSERT שנכשל ל-UPDATE (sweep מקבילי) — ניסיון נוסף אחד מספיק
_MAX_WRITE_ATTEMPTS = 2


def _to_view(record: EventRecord) -> EventRecordView:
    return EventRecordView(
        event_key=record.event_key,
        source=record.source,
        topic=record.topic,
        processed=bool(record.processed),
        attempt_count=int(record.attempt_count or 1),
        first_seen_at=ensure_utc(record.first_seen_at),
        last_seen_at=ensure_utc(record.last_seen_at),
        expires_at=ensure_utc(record.expires_at),
        last_error=record.last_error,
        raw_payload=record.raw_payload,
        received_headers=record.received_headers,
    )


class SqlAlchemyEventLedger(BaseEventLedger):
    """Ledger על session אסינכרוני — session של הבקשה או של ה-task."""

    backend_name = "database"

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _fail(self, operation: str, exc: Exception) -> LedgerError:
        """rollback כדי שה-session יישאר שמיש לשאר הבקשה, ועטיפה ב-LedgerError."""
        try:
            await self._session.rollback()
        except SQLAlchemyError:
            logger.warning(
                "Rollback after ledger failure also failed",
                extra_data={"operation": operation},
                exc_info=True,
            )
        return LedgerError(operation, str(exc), details={"backend": self.backend_name})

    async def _try_insert(self, values: dict) -> bool:
        """INSERT בתוך savepoint. False אם המפתח כבר קיים."""
        try:
            async with self._session.begin_nested():
                await self._session.execute(insert(EventRecord).values(**values))
        except IntegrityError:
            return False
        await self._session.commit()
        return True

    async def _load(self, event_key: str) -> EventRecord | None:
        result = await self._session.execute(
            select(EventRecord)
            .where(EventRecord.event_key == event_key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find(self, event_key: str) -> EventRecordView | None:
        try:
            record = await self._load(event_key)
        except SQLAlchemyError as exc:
            raise await self._fail("find", exc) from exc
        return _to_view(record) if record is not None else None

    async def record_sighting(
        self,
        event_key: str,
        source: str,
        topic: str,
        *,
        now: datetime,
        expires_at: datetime,
    ) -> Sighting:
        try:
            for _ in range(_MAX_WRITE_ATTEMPTS):
                created = await self._try_insert({
                    "event_key": event_key,
                    "source": source,
                    "topic": topic,
                    "processed": False,
                    "attempt_count": 1,
                    "first_seen_at": now,
                    "last_seen_at": now,
                    "expires_at": expires_at,
                })
                if created:
                    break

                result = await self._session.execute(
                    update(EventRecord)
                    .where(EventRecord.event_key == event_key)
                    .values(
                        attempt_count=EventRecord.attempt_count + 1,
                        # לא אחורה — בקשה שקראה את השעון מוקדם יותר יכולה לכתוב אחרונה
                        last_seen_at=case(
                            (EventRecord.last_seen_at < now, now),
                            else_=EventRecord.last_seen_at,
                        ),
                    )
                    .execution_options(synchronize_session=False)
                )
                await self._session.commit()
                if result.rowcount:
                    break
            else:
                raise LedgerError(
                    "record_sighting",
                    "record vanished between insert and update",
                    details={"backend": self.backend_name, "event_key": event_key},
                )

            record = await self._load(event_key)
        except SQLAlchemyError as exc:
            raise await self._fail("record_sighting", exc) from exc

        if record is None:
            raise LedgerError(
                "record_sighting",
                "record not readable after write",
                details={"backend": self.backend_name, "event_key": event_key},
            )
        return Sighting(record=_to_view(record), created=created)

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
        outcome: dict = {
            "processed": processed,
            "last_error": error,
            "expires_at": expires_at,
        }
        if raw_payload is not None:
            outcome["raw_payload"] = raw_payload
        if headers is not None:
            outcome["received_headers"] = headers

        try:
            for _ in range(_MAX_WRITE_ATTEMPTS):
                created = await self._try_insert({
                    "event_key": event_key,
                    "source": source,
                    "topic": topic,
                    "attempt_count": 1,
                    "first_seen_at": now,
                    "last_seen_at": now,
                    **outcome,
                })
                if created:
                    break

                result = await self._session.execute(
                    update(EventRecord)
                    .where(EventRecord.event_key == event_key)
                    .values(**outcome)
                    .execution_options(synchronize_session=False)
                )
                await self._session.commit()
                if result.rowcount:
                    break
            else:
                raise LedgerError(
                    "upsert",
                    "record vanished between insert and update",
                    details={"backend": self.backend_name, "event_key": event_key},
                )

            record = await self._load(event_key)
        except SQLAlchemyError as exc:
            raise await self._fail("upsert", exc) from exc

        if record is None:
            raise LedgerError(
                "upsert",
                "record not readable after write",
                details={"backend": self.backend_name, "event_key": event_key},
            )
        return _to_view(record)

    async def delete_expired(self, now: datetime) -> int:
        try:
            result = await self._session.execute(
                delete(EventRecord)
                .where(EventRecord.expires_at < now)
                .execution_options(synchronize_session=False)
            )
            await self._session.commit()
        except SQLAlchemyError as exc:
            raise await self._fail("delete_expired", exc) from exc
        return result.rowcount or 0

    async def list_records(
        self,
        source: str,
        topic: str | None = None,
        limit: int = 50,
    ) -> list[EventRecordView]:
        query = select(EventRecord).where(EventRecord.source == source)
        if topic:
            query = query.where(EventRecord.topic == topic)
        query = (
            query.order_by(EventRecord.last_seen_at.desc(), EventRecord.event_key)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        try:
            result = await self._session.execute(query)
        except SQLAlchemyError as exc:
            raise await self._fail("list_records", exc) from exc
        return [_to_view(record) for record in result.scalars().all()]

    async def stats(self, source: str, since: datetime | None = None) -> LedgerStats:
        conditions = [EventRecord.source == source]
        if since is not None:
            conditions.append(EventRecord.first_seen_at >= since)

        totals_query = select(
            func.count(EventRecord.event_key),
            func.coalesce(
                func.sum(case((EventRecord.attempt_count > 1, 1), else_=0)), 0
            ),
            func.coalesce(
                func.sum(
                    case(
                        (
                            (EventRecord.processed.is_(False))
                            & (EventRecord.last_error.is_not(None)),
                            1,
                        ),
                        else_=0,
                    )
                ),
                0,
            ),
        ).where(*conditions)
        by_topic_query = (
            select(EventRecord.topic, func.count(EventRecord.event_key))
            .where(*conditions)
            .group_by(EventRecord.topic)
        )

        try:
            total, duplicates, failed = (await self._session.execute(totals_query)).one()
            by_topic_rows = (await self._session.execute(by_topic_query)).all()
        except SQLAlchemyError as exc:
            raise await self._fail("stats", exc) from exc

        return LedgerStats(
            total=int(total or 0),
            duplicates=int(duplicates or 0),
            failed=int(failed or 0),
            by_topic={topic: int(count) for topic, count in by_topic_rows},
        )
