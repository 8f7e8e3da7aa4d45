from datetime import datetime, timezone
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from ..core import config

DATABASE_URL = config.database_url()

def _connect_args(url: str) -> dict:
    timeout = config.db_timeout_seconds()
    if url.startswith('sqlite'):
        return {"check_same_thread": False, "timeout": timeout}
    if url.startswith('postgresql'):
        return {"connect_timeout": int(timeout)}
    return {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args(DATABASE_URL), pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

def utcnow() -> datetime:
    """Naive UTC timestamp; all columns store UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

# columns added after the first release of cv_submissions (email queue fields)
EMAIL_QUEUE_COLUMNS = {
    'email_status': "ALTER TABLE cv_submissions ADD COLUMN email_status VARCHAR(16) NOT NULL DEFAULT 'pending'",
    'email_scheduled_at': "ALTER TABLE cv_submissions ADD COLUMN email_scheduled_at TIMESTAMP NULL",
    'email_attempts': "ALTER TABLE cv_submissions ADD COLUMN email_attempts INTEGER NOT NULL DEFAULT 0",
    'email_last_attempt_at': "ALTER TABLE cv_submissions ADD COLUMN email_last_attempt_at TIMESTAMP NULL",
    'email_sent_at': "ALTER TABLE cv_submissions ADD COLUMN email_sent_at TIMESTAMP NULL",
    'email_opened_at': "ALTER TABLE cv_submissions ADD COLUMN email_opened_at TIMESTAMP NULL",
    'email_error': "ALTER TABLE cv_submissions ADD COLUMN email_error TEXT NULL",
    'converted_to_premium': "ALTER TABLE cv_submissions ADD COLUMN converted_to_premium BOOLEAN NOT NULL DEFAULT 0",
    'conversion_date': "ALTER TABLE cv_submissions ADD COLUMN conversion_date TIMESTAMP NULL",
}

def ensure_schema():  # simple additive migrations for sqlite
    from ..models import submission  # noqa: F401
    Base.metadata.create_all(bind=engine)
    if not DATABASE_URL.startswith('sqlite'):
        return
    log = logging.getLogger(__name__)
    with engine.begin() as conn:
        cols = {row[1] for row in conn.exec_driver_sql("PRAGMA table_info('cv_submissions')").fetchall()}
        for name, stmt in EMAIL_QUEUE_COLUMNS.items():
            if name in cols:
                continue
            conn.exec_driver_sql(stmt)
            log.info("schema_column_added", extra={"path": name})


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
