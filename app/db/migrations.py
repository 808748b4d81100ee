"""
מיגרציות DB מרכזיות - מקור אמת יחיד לשינויי סכמה ב-PostgreSQL.

רץ ב-startup (main.py) אחרי create_all. כל המיגרציות idempotent
(בטוח להריץ מספר פעמים). ב-SQLite (בדיקות) create_all מספיק.
"""
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from app.core.logging import get_logger

logger = get_logger(__name__)


async def run_migration_001(conn: AsyncConnection) -> None:
    """מיגרציה 001 - טבלת ה-ledger של אירועי webhook + אינדקסים."""
    await conn.execute(text("""
        CREATE TABLE IF NOT EXISTS webhook_event_records (
            event_key VARCHAR(255) PRIMARY KEY,
            source VARCHAR(255) NOT NULL,
            topic VARCHAR(255) NOT NULL,
            raw_payload TEXT,
            received_headers JSON,
            processed BOOLEAN NOT NULL DEFAULT FALSE,
            attempt_count INTEGER NOT NULL DEFAULT 1,
            last_error TEXT,
            first_seen_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            last_seen_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            expires_at TIMESTAMP WITH TIME ZONE NOT NULL
        );
    """))

    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_webhook_event_records_source_topic
        ON webhook_event_records(source, topic);
    """))
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_webhook_event_records_expires_at
        ON webhook_event_records(expires_at);
    """))
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_webhook_event_records_source_last_seen
        ON webhook_event_records(source, last_seen_at);
    """))


async def run_migration_002(conn: AsyncConnection) -> None:
    """מיגרציה 002 - אכיפת attempt_count >= 1 ו-expires_at >= first_seen_at."""
    await conn.execute(text("""
        DO $$ BEGIN
            ALTER TABLE webhook_event_records
                ADD CONSTRAINT ck_webhook_event_records_attempts_positive
                CHECK (attempt_count >= 1);
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """))
    await conn.execute(text("""
        DO $$ BEGIN
            ALTER TABLE webhook_event_records
                ADD CONSTRAINT ck_webhook_event_records_expiry_after_first_seen
                CHECK (expires_at >= first_seen_at);
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """))


async def run_all_migrations(conn: AsyncConnection) -> None:
    """הרצת כל המיגרציות ברצף."""
    logger.info("Running migration 001...")
    await run_migration_001(conn)
    logger.info("Running migration 002...")
    await run_migration_002(conn)
