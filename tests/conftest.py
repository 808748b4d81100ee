"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- ASGI test client with the DB dependency overridden
- In-memory Redis replacement (hashes, sorted sets, scan)
- Webhook secrets / admin key / ledger backend settings
"""
# הגדרות סביבה לפני ייבוא app — settings נטען בזמן ייבוא
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SHOPIFY_WEBHOOK_SECRET", "test-shopify-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("SITE_WEBHOOK_SECRET", "test-site-secret")

import asyncio
import fnmatch
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from redis.exceptions import ConnectionError as RedisConnectionError

from app.db.database import Base, get_db
from app.core.config import settings
from app.domain.services.idempotency_gate import EventIdempotencyGate
from app.domain.services.ledger.sql_ledger import SqlAlchemyEventLedger
from app.domain.services.webhook_dispatcher import dispatcher
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_SHOPIFY_SECRET = "test-shopify-secret"
TEST_STRIPE_SECRET = "whsec_test_secret"
TEST_SITE_SECRET = "test-site-secret"
TEST_ADMIN_API_KEY = "test-admin-api-key"

# נקודת זמן קבועה לבדיקות שתלויות בשעון
FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Ledger / Gate
# ============================================================================

class FakeClock:
    """שעון ידני — מתקדמים עם advance() במקום לישון."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sql_ledger(db_session: AsyncSession) -> SqlAlchemyEventLedger:
    return SqlAlchemyEventLedger(db_session)


@pytest.fixture
def gate(sql_ledger: SqlAlchemyEventLedger, clock: FakeClock) -> EventIdempotencyGate:
    """Gate מעל ledger של SQLite עם שעון ידני ו-retention של 24 שעות."""
    return EventIdempotencyGate(sql_ledger, retention=timedelta(hours=24), clock=clock)


@pytest.fixture(autouse=True)
def reset_dispatcher():
    """ה-dispatcher גלובלי — מנקים handlers בין בדיקות"""
    dispatcher.clear()
    yield
    dispatcher.clear()


# ============================================================================
# Redis
# ============================================================================

class FakePipeline:
    """MULTI/EXEC מדומה — פקודות נאספות ורצות ב-execute() ברצף אחד, בלי לשחרר את ה-loop."""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._stack: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._stack.clear()

    def __getattr__(self, name: str):
        if not hasattr(self._redis, f"_do_{name}"):
            raise AttributeError(name)

        def queue(*args, **kwargs) -> "FakePipeline":
            self._stack.append((name, args, kwargs))
            return self

        return queue

    async def execute(self) -> list:
        stack, self._stack = self._stack, []
        await self._redis._round_trip("exec")
        return [self._redis._apply(name, args, kwargs) for name, args, kwargs in stack]


class FakeRedis:
    """
    תחליף ל-Redis לבדיקות — hash-ים ו-sorted sets בזיכרון, עם מעקב EXPIREAT.

    yield_to_loop=True — כל פקודה משחררת את ה-event loop לפני שהיא רצה,
    כך ש-asyncio.gather באמת משלב קריאות מקבילות.
    fail_next_exec — מספר ה-EXEC הבאים שייכשלו עם ConnectionError לפני שמשהו נכתב.
    """

    def __init__(self, *, yield_to_loop: bool = False) -> None:
        self._hashes: dict[str, dict[str, str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self.expire_at: dict[str, datetime] = {}
        self.yield_to_loop = yield_to_loop
        self.fail_next_exec = 0

    async def _round_trip(self, name: str) -> None:
        if self.yield_to_loop:
            await asyncio.sleep(0)
        if name == "exec" and self.fail_next_exec:
            self.fail_next_exec -= 1
            raise RedisConnectionError("Connection reset by peer")

    def _apply(self, name: str, args: tuple, kwargs: dict):
        return getattr(self, f"_do_{name}")(*args, **kwargs)

    async def _command(self, name: str, *args, **kwargs):
        await self._round_trip(name)
        return self._apply(name, args, kwargs)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def ping(self) -> bool:
        return True

    # ── hashes ──

    def _do_hsetnx(self, key: str, field: str, value: str) -> int:
        bucket = self._hashes.setdefault(key, {})
        if field in bucket:
            return 0
        bucket[field] = str(value)
        return 1

    def _do_hset(self, key: str, mapping: dict[str, str]) -> int:
        bucket = self._hashes.setdefault(key, {})
        added = sum(1 for field in mapping if field not in bucket)
        bucket.update({field: str(value) for field, value in mapping.items()})
        return added

    def _do_hincrby(self, key: str, field: str, amount: int = 1) -> int:
        bucket = self._hashes.setdefault(key, {})
        new_val = int(bucket.get(field, "0")) + amount
        bucket[field] = str(new_val)
        return new_val

    def _do_hgetall(self, key: str) -> dict[str, str]:
        return dict(self._hashes.get(key, {}))

    def _do_hdel(self, key: str, *fields: str) -> int:
        bucket = self._hashes.get(key, {})
        return sum(1 for field in fields if bucket.pop(field, None) is not None)

    def _do_expireat(self, key: str, when: datetime, nx: bool = False) -> bool:
        if key not in self._hashes and key not in self._zsets:
            return False
        if nx and key in self.expire_at:
            return False
        self.expire_at[key] = when
        return True

    async def hsetnx(self, *args, **kwargs):
        return await self._command("hsetnx", *args, **kwargs)

    async def hset(self, *args, **kwargs):
        return await self._command("hset", *args, **kwargs)

    async def hincrby(self, *args, **kwargs):
        return await self._command("hincrby", *args, **kwargs)

    async def hgetall(self, *args, **kwargs):
        return await self._command("hgetall", *args, **kwargs)

    async def hdel(self, *args, **kwargs):
        return await self._command("hdel", *args, **kwargs)

    async def expireat(self, *args, **kwargs):
        return await self._command("expireat", *args, **kwargs)

    # ── sorted sets ──

    def _do_zadd(
        self, key: str, mapping: dict[str, float], nx: bool = False, gt: bool = False
    ) -> int:
        zset = self._zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if member not in zset:
                zset[member] = float(score)
                added += 1
            elif nx:
                continue
            elif not gt or score > zset[member]:
                zset[member] = float(score)
        return added

    def _do_zrem(self, key: str, *members: str) -> int:
        zset = self._zsets.get(key, {})
        removed = sum(1 for member in members if zset.pop(member, None) is not None)
        if key in self._zsets and not zset:
            del self._zsets[key]
        return removed

    def _do_zscore(self, key: str, member: str) -> float | None:
        return self._zsets.get(key, {}).get(member)

    def _ordered(self, key: str, reverse: bool) -> list[tuple[str, float]]:
        zset = self._zsets.get(key, {})
        return sorted(zset.items(), key=lambda item: (item[1], item[0]), reverse=reverse)

    @staticmethod
    def _slice(items: list, start: int, end: int) -> list:
        return items[start:] if end == -1 else items[start:end + 1]

    def _do_zrange(self, key: str, start: int, end: int, withscores: bool = False) -> list:
        items = self._slice(self._ordered(key, reverse=False), start, end)
        return items if withscores else [member for member, _ in items]

    def _do_zrevrange(self, key: str, start: int, end: int, withscores: bool = False) -> list:
        items = self._slice(self._ordered(key, reverse=True), start, end)
        return items if withscores else [member for member, _ in items]

    async def zadd(self, *args, **kwargs):
        return await self._command("zadd", *args, **kwargs)

    async def zrem(self, *args, **kwargs):
        return await self._command("zrem", *args, **kwargs)

    async def zscore(self, *args, **kwargs):
        return await self._command("zscore", *args, **kwargs)

    async def zrange(self, *args, **kwargs):
        return await self._command("zrange", *args, **kwargs)

    async def zrevrange(self, *args, **kwargs):
        return await self._command("zrevrange", *args, **kwargs)

    # ── keys ──

    def _do_exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self._hashes or key in self._zsets)

    def _do_delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._hashes.pop(key, None) is not None or self._zsets.pop(key, None) is not None:
                deleted += 1
            self.expire_at.pop(key, None)
        return deleted

    async def exists(self, *args, **kwargs):
        return await self._command("exists", *args, **kwargs)

    async def delete(self, *args, **kwargs):
        return await self._command("delete", *args, **kwargs)

    async def scan_iter(self, match: str = "*"):
        for key in [*self._hashes, *self._zsets]:
            if fnmatch.fnmatchcase(key, match):
                yield key

    def evict(self, key: str) -> None:
        """מדמה מחיקה אוטומטית של Redis אחרי EXPIREAT."""
        self._hashes.pop(key, None)
        self.expire_at.pop(key, None)

    async def aclose(self) -> None:
        self._hashes.clear()
        self._zsets.clear()
        self.expire_at.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.ledger.redis_ledger.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture(autouse=True)
def webhook_settings():
    """סודות webhook, מפתח אדמין ו-backend של ledger קבועים לכל הבדיקות"""
    with patch.object(settings, "SHOPIFY_WEBHOOK_SECRET", TEST_SHOPIFY_SECRET), \
         patch.object(settings, "STRIPE_WEBHOOK_SECRET", TEST_STRIPE_SECRET), \
         patch.object(settings, "SITE_WEBHOOK_SECRET", TEST_SITE_SECRET), \
         patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY), \
         patch.object(settings, "EVENT_LEDGER_BACKEND", "database"), \
         patch.object(settings, "WEBHOOK_STORE_RAW_PAYLOAD", True):
        yield


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_API_KEY}
