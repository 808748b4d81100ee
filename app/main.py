"""
SEOLOGY Webhook Gate - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {
        "name": "webhooks",
        "description": "קבלת webhooks מ-Shopify, Stripe ואתרים מחוברים — אימות חתימה וסינון כפילויות.",
    },
    {
        "name": "admin",
        "description": "צפייה ב-event ledger: פעילות, סטטיסטיקה, רשומה בודדת וניקוי ידני.",
    },
    {"name": "Health", "description": "Liveness ו-readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Webhook receivers ו-event idempotency ledger של SEOLOGY.AI. "
        "כל אירוע נרשם פעם אחת; כפילויות מאושרות עם 200 ולא מעובדות שוב."
    ),
    openapi_tags=_OPENAPI_TAGS,
    # התיעוד חשוף רק בפיתוח
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
    openapi_url="/openapi.json" if settings.DEBUG else None,
)

# Setup middleware (correlation ID, request logging, webhook rate limit)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "X-Admin-API-Key"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info(
        "Starting application",
        extra_data={
            "app_name": settings.APP_NAME,
            "ledger_backend": settings.EVENT_LEDGER_BACKEND,
        },
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    # המיגרציות רצות רק על PostgreSQL. ב-SQLite (בדיקות) create_all מספיק.
    if engine.dialect.name == "postgresql":
        from app.db.migrations import run_all_migrations

        async with engine.begin() as conn:
            await run_all_migrations(conn)
        logger.info("Auto-migrations completed")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from app.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description="התהליך חי ומגיב. לא בודק תלויות חיצוניות.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe — התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקת ה-DB, ו-Redis כשה-ledger מוגדר עליו. "
        "מחזיר 503 עם status=degraded אם תלות לא זמינה."
    ),
    responses={
        200: {
            "description": "כל התלויות תקינות",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "ledger_backend": "database",
                        "db": "ok",
                        "redis": "skipped",
                    }
                }
            },
        },
        503: {
            "description": "לפחות תלות אחת לא זמינה",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "ledger_backend": "redis",
                        "db": "ok",
                        "redis": "error: redis_unavailable",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness probe — בדיקת התלויות של ה-ledger."""
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
