"""
Redis Event Ledger — מימוש ה-ledger מעל Redis.

מבנה מפתחות:
- ``webhook:ledger:event:{event_key}`` — hash עם שדות הרשומה, EXPIREAT לפי expires_at
- ``webhook:ledger:source:{source}`` — sorted set של event_key, score = last_seen_at

כל כתיבה היא טרנזקציה אחת (MULTI/EXEC) בלי הסתעפות:
- HSETNX על first_seen_at ושדות הזהות — רק התצפית הראשונה כותבת אותם
- HINCRBY על attempt_count — שדה חסר מתחיל מ-0, אז התצפית הראשונה מקבלת 1
- EXPIREAT NX — TTL נקבע פעם אחת, גם ל-hash שנשאר בלי TTL
- ZADD GT — last_seen_at זז רק קדימה, גם כשהשעונים של המופעים לא מסונכרנים

Redis מוחק hash-ים שפג תוקפם בעצמו; ה-sweep מוחק את מה שעוד לא נמחק
ומנקה מה-index מפתחות שכבר נעלמו. דורש Redis 7 (EXPIREAT NX).
"""
from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from redis.exceptions import RedisError

from app.core.exceptions import LedgerError
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.domain.services.ledger.base_ledger import (
    BaseEventLedger,
    EventRecordView,
    LedgerStats,
    Sighting,
    ensure_utc,
)

logger = get_logger(__name__)

_EVENT_PREFIX = "webhook:ledger:event:"
_SOURCE_PREFIX = "webhook:ledger:source:"


def _event_key(event_key: str) -> str:
    return f"{_EVENT_PREFIX}{event_key}"


def _source_key(source: str) -> str:
    return f"{_SOURCE_PREFIX}{source}"


def _parse_dt(raw: str | None) -> datetime | None:
    if not raw:
        return None
    return ensure_utc(datetime.fromisoformat(raw))


def _to_view(data: dict[str, str], last_seen_score: float | None) -> EventRecordView:
    headers_raw = data.get("received_headers")
    first_seen = _parse_dt(data.get("first_seen_at"))
    last_seen = (
        datetime.fromtimestamp(last_seen_score, tz=timezone.utc)
        if last_seen_score is not None
        else first_seen
    )
    return EventRecordView(
        event_key=data["event_key"],
        source=data["source"],
        topic=data["topic"],
        processed=data.get("processed") == "1",
        attempt_count=int(data.get("attempt_count") or 1),
        first_seen_at=first_seen,
        last_seen_at=last_seen,
        expires_at=_parse_dt(data.get("expires_at")) or first_seen,
        last_error=data.get("last_error") or None,
        raw_payload=data.get("raw_payload"),
        received_headers=json.loads(headers_raw) if headers_raw else None,
    )


class RedisEventLedger(BaseEventLedger):
    """Ledger על Redis — מתאים לפריסה בלי Postgres או כשכמות האירועים גבוהה."""

    backend_name = "redis"

    def __init__(
        self,
        client_factory: Callable[[], Awaitable] | None = None,
    ) -> None:
        # factory ולא client — כשל חיבור קורה בתוך הפעולה ונעטף ב-LedgerError
        self._factory = client_factory

    async def _client_factory(self):
        if self._factory is not None:
            return await self._factory()
        return await get_redis()

    def _fail(self, operation: str, exc: Exception) -> LedgerError:
        return LedgerError(operation, str(exc), details={"backend": self.backend_name})

    def _not_readable(self, operation: str, event_key: str) -> LedgerError:
        return LedgerError(
            operation,
            "record not readable after write",
            details={"backend": self.backend_name, "event_key": event_key},
        )

    async def _read(self, client, event_key: str) -> EventRecordView | None:
        data = await client.hgetall(_event_key(event_key))
        if not data or "event_key" not in data:
            return None
        score = await client.zscore(_source_key(data["source"]), event_key)
        return _to_view(data, score)

    @staticmethod
    def _queue_identity(pipe, key: str, fields: dict[str, str]) -> None:
        # HSETNX לכל שדה — לא דורס ערכים של תצפית קודמת
        for field, value in fields.items():
            pipe.hsetnx(key, field, value)

    async def find(self, event_key: str) -> EventRecordView | None:
        try:
            client = await self._client_factory()
            return await self._read(client, event_key)
        except (RedisError, OSError) as exc:
            raise self._fail("find", exc) from exc

    async def record_sighting(
        self,
        event_key: str,
        source: str,
        topic: str,
        *,
        now: datetime,
        expires_at: datetime,
    ) -> Sighting:
        key = _event_key(event_key)
        try:
            client = await self._client_factory()
            async with client.pipeline(transaction=True) as pipe:
                pipe.hsetnx(key, "first_seen_at", now.isoformat())
                self._queue_identity(pipe, key, {
                    "event_key": event_key,
                    "source": source,
                    "topic": topic,
                    "processed": "0",
                    "expires_at": expires_at.isoformat(),
                })
                pipe.hincrby(key, "attempt_count", 1)
                pipe.expireat(key, expires_at, nx=True)
                pipe.zadd(_source_key(source), {event_key: now.timestamp()}, gt=True)
                results = await pipe.execute()
            record = await self._read(client, event_key)
        except (RedisError, OSError) as exc:
            raise self._fail("record_sighting", exc) from exc

        if record is None:
            raise self._not_readable("record_sighting", event_key)
        return Sighting(record=record, created=bool(results[0]))

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
        outcome = {
            "processed": "1" if processed else "0",
            "expires_at": expires_at.isoformat(),
        }
        if raw_payload is not None:
            outcome["raw_payload"] = raw_payload
        if headers is not None:
            outcome["received_headers"] = json.dumps(headers, ensure_ascii=False)
        if error is not None:
            outcome["last_error"] = error

        key = _event_key(event_key)
        try:
            client = await self._client_factory()
            async with client.pipeline(transaction=True) as pipe:
                self._queue_identity(pipe, key, {
                    "first_seen_at": now.isoformat(),
                    "event_key": event_key,
                    "source": source,
                    "topic": topic,
                    "attempt_count": "1",
                })
                pipe.hset(key, mapping=outcome)
                if error is None:
                    pipe.hdel(key, "last_error")
                pipe.expireat(key, expires_at)
                pipe.zadd(_source_key(source), {event_key: now.timestamp()}, nx=True)
                await pipe.execute()
            record = await self._read(client, event_key)
        except (RedisError, OSError) as exc:
            raise self._fail("upsert", exc) from exc

        if record is None:
            raise self._not_readable("upsert", event_key)
        return record

    async def delete_expired(self, now: datetime) -> int:
        deleted = 0
        try:
            client = await self._client_factory()
            async for key in client.scan_iter(match=f"{_EVENT_PREFIX}*"):
                data = await client.hgetall(key)
                expires_at = _parse_dt(data.get("expires_at")) if data else None
                if expires_at is None or expires_at >= now:
                    continue
                await client.delete(key)
                if data.get("source"):
                    await client.zrem(_source_key(data["source"]), data.get("event_key", ""))
                deleted += 1

            # ניקוי ה-index ממפתחות ש-Redis כבר מחק בעצמו (EXPIREAT)
            async for index_key in client.scan_iter(match=f"{_SOURCE_PREFIX}*"):
                for member in await client.zrange(index_key, 0, -1):
                    if not await client.exists(_event_key(member)):
                        await client.zrem(index_key, member)
        except (RedisError, OSError) as exc:
            raise self._fail("delete_expired", exc) from exc
        return deleted

    async def _source_records(self, client, source: str) -> list[EventRecordView]:
        """כל רשומות המקור, החדשות ביותר קודם."""
        records: list[EventRecordView] = []
        for member, score in await client.zrevrange(_source_key(source), 0, -1, withscores=True):
            data = await client.hgetall(_event_key(member))
            if not data or "event_key" not in data:
                continue
            records.append(_to_view(data, score))
        return records

    async def list_records(
        self,
        source: str,
        topic: str | None = None,
        limit: int = 50,
    ) -> list[EventRecordView]:
        try:
            client = await self._client_factory()
            records = await self._source_records(client, source)
        except (RedisError, OSError) as exc:
            raise self._fail("list_records", exc) from exc
        if topic:
            records = [r for r in records if r.topic == topic]
        return records[:limit]

    async def stats(self, source: str, since: datetime | None = None) -> LedgerStats:
        try:
            client = await self._client_factory()
            records = await self._source_records(client, source)
        except (RedisError, OSError) as exc:
            raise self._fail("stats", exc) from exc

        stats = LedgerStats()
        for record in records:
            if since is not None and record.first_seen_at < since:
                continue
            stats.total += 1
            if record.attempt_count > 1:
                stats.duplicates += 1
            if not record.processed and record.last_error:
                stats.failed += 1
            stats.by_topic[record.topic] = stats.by_topic.get(record.topic, 0) + 1
        return stats
