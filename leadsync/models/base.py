"""Database base configuration"""
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from leadsync.config import settings

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime (what we store and compare)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _ensure_sync_queue_indexes(bind):
    """
    Best-effort schema hardening:
    the claim query filters on (status, created_at) and the stale sweep on
    (status, claimed_at). Older databases created before these columns were
    indexed get the indexes added here.
    """
    stmts = [
        "CREATE INDEX IF NOT EXISTS ix_sync_queue_status_created_at "
        "ON sync_queue(status, created_at)",
        "CREATE INDEX IF NOT EXISTS ix_sync_queue_status_claimed_at "
        "ON sync_queue(status, claimed_at)",
    ]
    with bind.begin() as conn:
        for sql in stmts:
            try:
                conn.exec_driver_sql(sql)
            except Exception:
                # Some dialects may not support IF NOT EXISTS; try without it.
                try:
                    conn.exec_driver_sql(sql.replace(" IF NOT EXISTS", ""))
                except Exception:
                    # Best-effort only; do not block app startup.
                    pass


def init_db(bind=None):
    """Initialize database"""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    import leadsync.models  # noqa: F401  (import for side-effects)
    # Change capture hooks must be registered before the first lead write.
    import leadsync.services  # noqa: F401

    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    _ensure_sync_queue_indexes(bind)
