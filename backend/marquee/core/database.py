from sqlalchemy.orm import sessionmaker
from sqlalchemy import create_engine, text
import asyncio
import logging

from marquee.core.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url

# Fixed advisory lock id so concurrent web/worker startups serialize migrations
MIGRATION_LOCK_ID = 991244


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    # pool_size: base connections
    # max_overflow: additional connections allowed
    # pool_recycle: recycle connections after N seconds to prevent stale connections
    # pool_pre_ping: verify connections before using them
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
    }


engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Safe, idempotent migrations for columns added after the first release (PostgreSQL)
SAFE_MIGRATIONS = [
    "ALTER TABLE IF EXISTS media_requests ADD COLUMN IF NOT EXISTS notified_status varchar(32) NULL",
    "ALTER TABLE IF EXISTS media_requests ADD COLUMN IF NOT EXISTS last_sync_error text NULL",
    "ALTER TABLE IF EXISTS media_requests ADD COLUMN IF NOT EXISTS last_synced_at timestamp NULL",
    "ALTER TABLE IF EXISTS media_requests ADD COLUMN IF NOT EXISTS tvdb_id integer NULL",
    "ALTER TABLE IF EXISTS users ADD COLUMN IF NOT EXISTS trakt_expires_at timestamp NULL",
    "CREATE INDEX IF NOT EXISTS ix_media_requests_status_created ON media_requests (status, created_at)",
]


def _run_safe_migrations(bind=None):
    bind = bind or engine
    if bind.dialect.name != "postgresql":
        return
    with bind.connect() as conn:
        conn.execute(text("SELECT pg_advisory_lock(:id)"), {"id": MIGRATION_LOCK_ID})
        try:
            for stmt in SAFE_MIGRATIONS:
                try:
                    conn.execute(text(stmt))
                    conn.commit()
                except Exception as e:
                    conn.rollback()
                    logger.warning(f"Migration statement failed ({stmt[:60]}...): {e}")
        finally:
            conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": MIGRATION_LOCK_ID})
            conn.commit()


def create_schema(bind=None):
    from marquee.models import Base
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    _run_safe_migrations(bind)


async def init_db():
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(None, create_schema)
        logger.info("Database schema ready")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise
