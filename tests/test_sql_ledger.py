"""
בדיקות ל-SqlAlchemyEventLedger — app/domain/services/ledger/sql_ledger.py

רצות מול SQLite in-memory. מכסה insert-or-increment, upsert של תוצאה,
מחיקת רשומות שפג תוקפן, activity ו-stats.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import LedgerError
from app.db.models.event_record import EventRecord
from app.domain.services.ledger.sql_ledger import SqlAlchemyEventLedger

from tests.conftest import FIXED_NOW

EXPIRES = FIXED_NOW + timedelta(hours=24)


async def _sight(ledger, key, source="shop.example.com", topic="products/update", *, now=FIXED_NOW):
    return await ledger.record_sighting(key, source, topic, now=now, expires_at=now + timedelta(hours=24))


class TestRecordSighting:
    """INSERT אופטימיסטי + increment אטומי"""

    @pytest.mark.integration
    async def test_first_sighting_creates_record(self, sql_ledger):
        sighting = await _sight(sql_ledger, "k1")

        assert sighting.created is True
        record = sighting.record
        assert record.attempt_count == 1
        assert record.processed is False
        assert record.first_seen_at == FIXED_NOW
        assert record.expires_at == EXPIRES

    @pytest.mark.integration
    async def test_repeat_sighting_increments(self, sql_ledger):
        await _sight(sql_ledger, "k1")
        later = FIXED_NOW + timedelta(minutes=5)
        sighting = await _sight(sql_ledger, "k1", now=later)

        assert sighting.created is False
        assert sighting.record.attempt_count == 2
        assert sighting.record.last_seen_at == later
        # תצפית חוזרת לא מזיזה את first_seen_at / expires_at
        assert sighting.record.first_seen_at == FIXED_NOW
        assert sighting.record.expires_at == EXPIRES

    @pytest.mark.integration
    async def test_single_row_per_key(self, sql_ledger, db_session):
        for _ in range(4):
            await _sight(sql_ledger, "k1")

        rows = (await db_session.execute(select(EventRecord))).scalars().all()
        assert len(rows) == 1
        assert rows[0].attempt_count == 4

    @pytest.mark.integration
    async def test_last_seen_never_moves_backwards(self, sql_ledger):
        latest = FIXED_NOW + timedelta(minutes=5)
        await _sight(sql_ledger, "k9")
        await _sight(sql_ledger, "k9", now=latest)

        sighting = await _sight(sql_ledger, "k9", now=latest - timedelta(seconds=1))

        assert sighting.record.attempt_count == 3
        assert sighting.record.last_seen_at == latest


@pytest.fixture
async def racing_ledgers(async_engine):
    """
    שני ledgers על sessions נפרדים. ה-INSERT של slow ממתין עד ש-fast סיים,
    כך ששני הקוראים עברו את "המפתח לא קיים" ו-slow מפסיד במרוץ.
    """
    session_maker = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as slow_session, session_maker() as fast_session:
        slow = SqlAlchemyEventLedger(slow_session)
        fast = SqlAlchemyEventLedger(fast_session)
        fast_done = asyncio.Event()
        original_insert = slow._try_insert

        async def insert_after_fast(values):
            await fast_done.wait()
            return await original_insert(values)

        slow._try_insert = insert_after_fast
        yield slow, fast, fast_done


class TestConcurrentWrites:
    """שני קוראים מקבילים על אותו מפתח — שורה אחת, ספירה מדויקת"""

    @pytest.mark.integration
    async def test_racing_first_sightings(self, racing_ledgers, db_session):
        slow, fast, fast_done = racing_ledgers

        async def fast_sighting():
            try:
                return await _sight(fast, "k1")
            finally:
                fast_done.set()

        slow_result, fast_result = await asyncio.gather(_sight(slow, "k1"), fast_sighting())

        assert fast_result.created is True
        assert slow_result.created is False
        assert slow_result.record.attempt_count == 2
        rows = (await db_session.execute(select(EventRecord))).scalars().all()
        assert len(rows) == 1

    @pytest.mark.integration
    async def test_racing_outcomes(self, racing_ledgers, db_session):
        slow, fast, fast_done = racing_ledgers

        async def fast_outcome():
            try:
                return await fast.upsert(
                    "k2", "shop.example.com", "products/update",
                    now=FIXED_NOW, expires_at=EXPIRES, processed=True,
                )
            finally:
                fast_done.set()

        slow_view, _ = await asyncio.gather(
            slow.upsert(
                "k2", "shop.example.com", "products/update",
                now=FIXED_NOW, expires_at=EXPIRES, processed=False, error="timeout",
            ),
            fast_outcome(),
        )

        assert slow_view.attempt_count == 1
        assert slow_view.processed is False
        assert slow_view.last_error == "timeout"
        rows = (await db_session.execute(select(EventRecord))).scalars().all()
        assert len(rows) == 1


class TestUpsert:
    """רישום תוצאת עיבוד"""

    @pytest.mark.integration
    async def test_upsert_after_sighting_keeps_attempts(self, sql_ledger):
        await _sight(sql_ledger, "k1")
        await _sight(sql_ledger, "k1")

        view = await sql_ledger.upsert(
            "k1", "shop.example.com", "products/update",
            now=FIXED_NOW, expires_at=EXPIRES + timedelta(hours=1),
            processed=True, raw_payload='{"id": 1}', headers={"content-type": "application/json"},
        )

        assert view.processed is True
        assert view.attempt_count == 2
        assert view.raw_payload == '{"id": 1}'
        assert view.received_headers == {"content-type": "application/json"}
        assert view.expires_at == EXPIRES + timedelta(hours=1)

    @pytest.mark.integration
    async def test_upsert_without_sighting_creates(self, sql_ledger):
        view = await sql_ledger.upsert(
            "k2", "shop", "orders/create",
            now=FIXED_NOW, expires_at=EXPIRES, processed=False, error="timeout",
        )
        assert view.attempt_count == 1
        assert view.processed is False
        assert view.last_error == "timeout"

    @pytest.mark.integration
    async def test_success_clears_error_and_keeps_payload(self, sql_ledger):
        await sql_ledger.upsert(
            "k3", "shop", "t", now=FIXED_NOW, expires_at=EXPIRES,
            processed=False, raw_payload="body", error="boom",
        )
        view = await sql_ledger.upsert(
            "k3", "shop", "t", now=FIXED_NOW, expires_at=EXPIRES, processed=True,
        )
        assert view.last_error is None
        assert view.raw_payload == "body"


class TestDeleteExpired:
    """sweep"""

    @pytest.mark.integration
    async def test_deletes_only_expired(self, sql_ledger):
        await _sight(sql_ledger, "old", now=FIXED_NOW - timedelta(hours=30))
        await _sight(sql_ledger, "fresh", now=FIXED_NOW)

        deleted = await sql_ledger.delete_expired(FIXED_NOW)

        assert deleted == 1
        assert await sql_ledger.find("old") is None
        assert await sql_ledger.find("fresh") is not None

    @pytest.mark.integration
    async def test_boundary_is_exclusive(self, sql_ledger):
        """expires_at == now לא נמחק"""
        await _sight(sql_ledger, "edge", now=FIXED_NOW - timedelta(hours=24))
        assert await sql_ledger.delete_expired(FIXED_NOW) == 0

    @pytest.mark.integration
    async def test_empty_table(self, sql_ledger):
        assert await sql_ledger.delete_expired(FIXED_NOW) == 0


class TestReporting:
    """activity + stats"""

    @pytest.mark.integration
    async def test_list_records_newest_first_and_filtered(self, sql_ledger):
        await _sight(sql_ledger, "a", topic="orders/create", now=FIXED_NOW)
        await _sight(sql_ledger, "b", topic="products/update", now=FIXED_NOW + timedelta(minutes=1))
        await _sight(sql_ledger, "c", topic="orders/create", now=FIXED_NOW + timedelta(minutes=2))
        await _sight(sql_ledger, "x", source="other-shop", now=FIXED_NOW + timedelta(minutes=3))

        records = await sql_ledger.list_records("shop.example.com")
        assert [r.event_key for r in records] == ["c", "b", "a"]

        orders = await sql_ledger.list_records("shop.example.com", topic="orders/create", limit=1)
        assert [r.event_key for r in orders] == ["c"]

    @pytest.mark.integration
    async def test_stats(self, sql_ledger):
        await _sight(sql_ledger, "a", topic="orders/create")
        await _sight(sql_ledger, "a", topic="orders/create")
        await _sight(sql_ledger, "b", topic="products/update")
        await sql_ledger.upsert(
            "b", "shop.example.com", "products/update",
            now=FIXED_NOW, expires_at=EXPIRES, processed=False, error="timeout",
        )

        stats = await sql_ledger.stats("shop.example.com")

        assert stats.total == 2
        assert stats.duplicates == 1
        assert stats.failed == 1
        assert stats.by_topic == {"orders/create": 1, "products/update": 1}

    @pytest.mark.integration
    async def test_stats_since(self, sql_ledger):
        await _sight(sql_ledger, "old", now=FIXED_NOW - timedelta(days=2))
        await _sight(sql_ledger, "new", now=FIXED_NOW)

        stats = await sql_ledger.stats("shop.example.com", since=FIXED_NOW - timedelta(hours=1))
        assert stats.total == 1

    @pytest.mark.integration
    async def test_stats_unknown_source(self, sql_ledger):
        stats = await sql_ledger.stats("nobody")
        assert (stats.total, stats.duplicates, stats.failed, stats.by_topic) == (0, 0, 0, {})


class TestStorageFailures:
    """שגיאות SQLAlchemy נעטפות ב-LedgerError"""

    @pytest.mark.unit
    async def test_execute_failure_wrapped(self):
        session = AsyncMock()
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        ledger = SqlAlchemyEventLedger(session)

        with pytest.raises(LedgerError) as exc_info:
            await ledger.find("k1")

        assert exc_info.value.details["operation"] == "find"
        assert exc_info.value.details["backend"] == "database"
        session.rollback.assert_awaited_once()
