"""
Ledger Factory — בחירת מימוש ה-event ledger לפי EVENT_LEDGER_BACKEND.

- "database" — SqlAlchemyEventLedger על ה-session שהועבר (בקשה או task)
- "redis" — RedisEventLedger על ה-client המשותף
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.domain.services.ledger.base_ledger import BaseEventLedger


def create_event_ledger(backend: str, session: AsyncSession | None = None) -> BaseEventLedger:
    """יצירת ledger לפי סוג."""
    if backend == "database":
        if session is None:
            raise ValueError("database ledger requires an AsyncSession")
        from app.domain.services.ledger.sql_ledger import SqlAlchemyEventLedger

        return SqlAlchemyEventLedger(session)

    if backend == "redis":
        from app.domain.services.ledger.redis_ledger import RedisEventLedger

        return RedisEventLedger()

    raise ValueError(f"Unknown event ledger backend: {backend}")


def get_event_ledger(session: AsyncSession | None = None) -> BaseEventLedger:
    """ledger לפי ההגדרות הנוכחיות."""
    return create_event_ledger(settings.EVENT_LEDGER_BACKEND, session)
