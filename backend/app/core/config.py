"""Environment-driven settings.

Values are read on access (not at import) so tests and the admin scripts can
override them with environment variables after the package is imported.
"""
import os

PDF_MIME = 'application/pdf'
DOCX_MIME = 'application/vnd.openxmlformats-officedocument.wordprocessingml.document'
DOC_MIME = 'application/msword'


def _int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def database_url() -> str:
    url = os.getenv('DATABASE_URL')
    if url:
        return url
    host = os.getenv('DB_HOST')
    if not host:
        return 'sqlite:///./cv_intake.db'
    # DB_* variables are the deployment contract shared with the migration tooling
    port = os.getenv('DB_PORT', '5432')
    name = os.getenv('DB_NAME', 'cv_intake')
    user = os.getenv('DB_USER', 'postgres')
    password = os.getenv('DB_PASSWORD', '')
    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def db_timeout_seconds() -> float:
    return _float('DB_TIMEOUT_SECONDS', 15.0)


# --- mail transport -------------------------------------------------------

def email_provider() -> str:
    return os.getenv('EMAIL_PROVIDER', 'smtp').lower()


def email_from_address() -> str:
    return os.getenv('EMAIL_FROM_ADDRESS', 'noreply@skilltude.com')


def email_from_name() -> str:
    return os.getenv('EMAIL_FROM_NAME', 'SkillTude Team')


def email_api_key() -> str | None:
    return os.getenv('EMAIL_API_KEY')


def smtp_settings() -> dict:
    return {
        'host': os.getenv('SMTP_HOST', 'localhost'),
        'port': _int('SMTP_PORT', 587),
        'secure': _flag('SMTP_SECURE'),
        'user': os.getenv('SMTP_USER', ''),
        'password': os.getenv('SMTP_PASS', ''),
        'timeout': _float('SMTP_TIMEOUT_SECONDS', 20.0),
    }


def smtp_send_deadline_seconds() -> float:
    return _float('SMTP_SEND_DEADLINE_SECONDS', 240.0)


# --- queue ----------------------------------------------------------------

def email_delay_hours() -> float:
    return _float('EMAIL_DELAY_HOURS', 24.0)


def email_max_attempts() -> int:
    return max(1, _int('EMAIL_MAX_ATTEMPTS', 3))


def backoff_settings() -> dict:
    return {
        'strategy': os.getenv('EMAIL_BACKOFF_STRATEGY', 'exponential').lower(),
        'base_minutes': _float('EMAIL_BACKOFF_BASE_MINUTES', 30.0),
        'max_minutes': _float('EMAIL_BACKOFF_MAX_MINUTES', 24 * 60.0),
    }


def queue_batch_size() -> int:
    return max(1, _int('EMAIL_QUEUE_BATCH_SIZE', 100))


def queue_concurrency() -> int:
    return max(1, _int('EMAIL_QUEUE_CONCURRENCY', 1))


def claim_lease_seconds() -> int:
    return max(1, _int('EMAIL_CLAIM_LEASE_SECONDS', 900))


def queue_deadline_seconds() -> float | None:
    raw = os.getenv('EMAIL_QUEUE_DEADLINE_SECONDS')
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def scheduler_enabled() -> bool:
    return _flag('EMAIL_QUEUE_SCHEDULER')


def scheduler_interval_seconds() -> int:
    return max(1, _int('EMAIL_QUEUE_INTERVAL_SECONDS', 15 * 60))


# --- uploads --------------------------------------------------------------

def upload_dir() -> str:
    return os.getenv('UPLOAD_DIR', './uploads/cvs')


def max_file_size() -> int:
    return _int('MAX_FILE_SIZE', 10 * 1024 * 1024)


def upload_rate_limit() -> dict:
    # max_requests <= 0 turns the limit off
    return {
        'max_requests': _int('UPLOAD_RATE_LIMIT_MAX', 5),
        'window_seconds': max(1.0, _float('UPLOAD_RATE_LIMIT_WINDOW_SECONDS', 3600.0)),
        'max_clients': max(1, _int('UPLOAD_RATE_LIMIT_MAX_CLIENTS', 10000)),
    }


def allowed_file_types() -> list[str]:
    raw = os.getenv('ALLOWED_FILE_TYPES') or ','.join([PDF_MIME, DOC_MIME, DOCX_MIME])
    return [t.strip() for t in raw.split(',') if t.strip()]
