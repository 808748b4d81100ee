"""
Dependencies שמרכיבים את ה-gate ואת ה-dispatcher לכל בקשה.

ה-ledger נבנה לפי EVENT_LEDGER_BACKEND; ב-backend של database הוא
משתמש ב-session של הבקשה. בטסטים אפשר להחליף דרך app.dependency_overrides.
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import get_db
from app.domain.services.idempotency_gate import EventIdempotencyGate
from app.domain.services.ledger import get_event_ledger
from app.domain.services.webhook_dispatcher import WebhookDispatcher, dispatcher


async def get_idempotency_gate(
    db: AsyncSession = Depends(get_db),
) -> EventIdempotencyGate:
    return EventIdempotencyGate(get_event_ledger(db))


def get_webhook_dispatcher() -> WebhookDispatcher:
    return dispatcher
