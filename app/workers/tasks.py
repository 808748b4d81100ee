"""
Celery Tasks — תחזוקת ה-event ledger.

כל task רץ ב-event loop חדש (run_async) עם session זמני משלו
(get_task_session), כי ה-engine ברמת המודול קשור ל-loop של השרת.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.domain.services.idempotency_gate import EventIdempotencyGate
from app.domain.services.ledger import get_event_ledger
from app.core.logging import get_logger, log_async_operation, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # ה-Redis singleton קשור ל-loop הזה — סוגרים לפני שה-loop נסגר
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@log_async_operation("cleanup_expired_webhook_events")
async def _cleanup_expired() -> dict[str, int]:
    async with get_task_session() as db:
        gate = EventIdempotencyGate(get_event_ledger(db))
        deleted = await gate.cleanup_expired()
        logger.info(
            "Webhook ledger sweep finished",
            extra_data={"deleted": deleted, "backend": gate.ledger.backend_name},
        )
        return {"deleted": deleted}


@celery_app.task(name="app.workers.tasks.cleanup_expired_webhook_events")
def cleanup_expired_webhook_events():
    """
    מחיקת רשומות ledger שפג תוקפן (expires_at < now).

    רצה מ-beat כל WEBHOOK_CLEANUP_INTERVAL_SECONDS. כשל אחסון נרשם ללוג
    ומחזיר deleted=0 — הריצה הבאה תנסה שוב.
    """
    return run_async(_cleanup_expired())
