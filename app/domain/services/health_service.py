"""
שירות בדיקת בריאות — בדיקות התלויות של ה-event ledger.

- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: DB תמיד, Redis רק כש-EVENT_LEDGER_BACKEND="redis"
"""
from typing import Any

from sqlalchemy import text

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"
_CHECK_SKIPPED = "skipped"

# הודעות שגיאה מסוננות — ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"


async def _check_db() -> str:
    """SELECT 1 מול מסד הנתונים."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    """PING ל-Redis — רק כשה-ledger יושב עליו."""
    if settings.EVENT_LEDGER_BACKEND != "redis":
        return _CHECK_SKIPPED
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות Redis נכשלה", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def check_readiness() -> dict[str, Any]:
    """
    מחזיר {"status": "healthy"|"degraded", "ledger_backend": ..., "db": ..., "redis": ...}.

    בדיקה שדולגה ("skipped") לא הופכת את המצב ל-degraded.
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
    }

    all_ok = all(v in (_CHECK_OK, _CHECK_SKIPPED) for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning(
            "בדיקת מוכנות — המערכת במצב degraded",
            extra_data=checks,
        )

    return {
        "status": overall_status,
        "ledger_backend": settings.EVENT_LEDGER_BACKEND,
        **checks,
    }
