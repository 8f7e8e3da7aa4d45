import logging, os, json, sys

EXTRA_KEYS = [
    "trace_id", "method", "path", "status", "duration_ms",
    "category", "submission_id", "email", "attempt", "max_attempts",
    "email_status", "next_attempt_at", "error", "sent", "failed", "due",
    "mime_type", "file_path", "kind", "provider", "ip",
    "lease_seconds", "send_budget_seconds",
]

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover (formatting)
        base = {
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        # Merge any extra attributes we care about
        for k in EXTRA_KEYS:
            if hasattr(record, k):
                base[k] = getattr(record, k)
        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)

def init_logging():
    level = os.getenv("LOG_LEVEL","INFO").upper()
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("uvicorn.access").propagate = False
    logging.getLogger("uvicorn.error").propagate = False
    # PyPDF2 reports recoverable parse problems at WARNING on every page
    logging.getLogger("PyPDF2").setLevel(logging.ERROR)
