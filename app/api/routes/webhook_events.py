"""
Webhook Events Admin — צפייה ב-event ledger ללא גישה ישירה ל-DB/Redis.

1. פעילות אחרונה של מקור (לדשבורד)
2. סטטיסטיקה: total / duplicates / failed / לפי topic
3. רשומה בודדת לפי event key (כולל payload גולמי, לבדיקת replay)
4. הרצת ניקוי רשומות שפג תוקפן עכשיו (במקום לחכות ל-beat)
"""
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.idempotency import get_idempotency_gate
from app.core.exceptions import EventRecordNotFoundError
from app.core.logging import get_logger
from app.domain.services.idempotency_gate import (
    DEFAULT_ACTIVITY_LIMIT,
    MAX_ACTIVITY_LIMIT,
    EventIdempotencyGate,
)

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


# ─── Pydantic models ────────────────────────────────────────────────────────

class EventRecordResponse(BaseModel):
    """רשומת ledger בודדת"""
    event_key: str
    source: str
    topic: str
    processed: bool
    attempt_count: int = Field(description="כמה פעמים האירוע נצפה (1 = ללא כפילות)")
    last_error: str | None
    first_seen_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    received_headers: dict[str, str] | None = None

    class Config:
        from_attributes = True


class EventRecordDetailResponse(EventRecordResponse):
    """רשומה בודדת כולל ה-payload הגולמי"""
    raw_payload: str | None = None


class ActivityResponse(BaseModel):
    """פעילות אחרונה של מקור"""
    source: str
    topic: str | None
    count: int
    events: list[EventRecordResponse]


class StatsResponse(BaseModel):
    """סטטיסטיקת ledger למקור"""
    source: str
    since: datetime | None
    total: int
    duplicates: int = Field(description="רשומות עם attempt_count > 1")
    failed: int = Field(description="רשומות שהעיבוד שלהן נכשל ולא הצליח אחר כך")
    by_topic: dict[str, int]
    degraded: bool = Field(description="True אם ה-ledger לא היה זמין והמספרים ריקים")


class CleanupResponse(BaseModel):
    """תוצאת ניקוי ידני"""
    deleted: int


# ─── 1. Activity ────────────────────────────────────────────────────────────

@router.get(
    "/activity",
    response_model=ActivityResponse,
    summary="Recent webhook events of a source",
)
async def webhook_activity(
    source: str = Query(..., min_length=1, description="דומיין החנות/אתר או מזהה חשבון"),
    topic: str | None = Query(None, description="סינון לפי topic"),
    limit: int = Query(DEFAULT_ACTIVITY_LIMIT, ge=1, le=MAX_ACTIVITY_LIMIT),
    gate: EventIdempotencyGate = Depends(get_idempotency_gate),
) -> ActivityResponse:
    records = await gate.get_activity(source, topic, limit)
    return ActivityResponse(
        source=source,
        topic=topic,
        count=len(records),
        events=[EventRecordResponse.model_validate(record) for record in records],
    )


# ─── 2. Stats ───────────────────────────────────────────────────────────────

@router.get(
    "/stats",
    response_model=StatsResponse,
    summary="Webhook ledger statistics of a source",
)
async def webhook_stats(
    source: str = Query(..., min_length=1),
    since: datetime | None = Query(None, description="רק אירועים שנצפו לראשונה מאז (ISO-8601)"),
    gate: EventIdempotencyGate = Depends(get_idempotency_gate),
) -> StatsResponse:
    stats = await gate.get_stats(source, since)
    return StatsResponse(source=source, since=since, **stats.to_dict())


# ─── 3. Cleanup ─────────────────────────────────────────────────────────────

@router.post(
    "/cleanup",
    response_model=CleanupResponse,
    summary="Delete expired webhook event records now",
)
async def cleanup_webhook_events(
    gate: EventIdempotencyGate = Depends(get_idempotency_gate),
) -> CleanupResponse:
    deleted = await gate.cleanup_expired()
    logger.info("Manual ledger cleanup", extra_data={"deleted": deleted})
    return CleanupResponse(deleted=deleted)


# ─── 4. Single record ───────────────────────────────────────────────────────

@router.get(
    "/{event_key:path}",
    response_model=EventRecordDetailResponse,
    summary="Single webhook event record",
)
async def get_webhook_event(
    event_key: str,
    gate: EventIdempotencyGate = Depends(get_idempotency_gate),
) -> EventRecordDetailResponse:
    record = await gate.get_record(event_key)
    if record is None:
        raise EventRecordNotFoundError(event_key)
    return EventRecordDetailResponse.model_validate(record)
