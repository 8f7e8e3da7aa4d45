"""Per-client limit on CV uploads.

Hits are counted per client IP in a sliding window. The table is process-wide,
created by ``init_upload_limiter`` at startup and dropped again by
``reset_upload_limiter`` at shutdown; it never holds more than ``max_clients``
keys (the client with the oldest activity is evicted first).
"""
import logging
import math
import threading
import time
from collections import OrderedDict, deque
from typing import Callable, Optional

from fastapi import Request

from ..core import config
from ..core.errors import CVUploadException, ErrorCodes

log = logging.getLogger(__name__)


class UploadRateLimiter:
    def __init__(self, max_requests: int, window_seconds: float, max_clients: int = 10000,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_clients = max_clients
        self._clock = clock
        self._hits: "OrderedDict[str, deque]" = OrderedDict()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def hit(self, key: str) -> Optional[float]:
        """Count a request; returns seconds to wait when over the limit, else None."""
        if not self.enabled:
            return None
        now = self._clock()
        with self._lock:
            self._prune(now)
            hits = self._hits.pop(key, None) or deque()
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()
            self._hits[key] = hits
            if len(hits) >= self.max_requests:
                return max(0.0, hits[0] + self.window_seconds - now)
            hits.append(now)
            while len(self._hits) > self.max_clients:
                self._hits.popitem(last=False)
            return None

    def _prune(self, now: float):
        cutoff = now - self.window_seconds
        # least recently active first, so stop at the first live client
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if hits:
                break
            del self._hits[key]

    def client_count(self) -> int:
        with self._lock:
            return len(self._hits)

    def clear(self):
        with self._lock:
            self._hits.clear()


_limiter: Optional[UploadRateLimiter] = None
_limiter_lock = threading.Lock()


def init_upload_limiter() -> UploadRateLimiter:
    global _limiter
    s = config.upload_rate_limit()
    with _limiter_lock:
        _limiter = UploadRateLimiter(s['max_requests'], s['window_seconds'], s['max_clients'])
    return _limiter


def reset_upload_limiter():
    global _limiter
    with _limiter_lock:
        if _limiter is not None:
            _limiter.clear()
        _limiter = None


def get_upload_limiter() -> UploadRateLimiter:
    if _limiter is None:
        return init_upload_limiter()
    return _limiter


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def limit_uploads(request: Request):
    limiter = get_upload_limiter()
    ip = client_ip(request) or 'unknown'
    wait = limiter.hit(ip)
    if wait is None:
        return
    log.warning("upload_rate_limited", extra={"category": "security", "ip": ip, "path": request.url.path})
    raise CVUploadException(
        ErrorCodes.RATE_LIMIT_EXCEEDED,
        "Too many CV uploads from this IP address. Please try again later.",
        429,
        headers={"Retry-After": str(max(1, math.ceil(wait)))},
    )
