import threading
import time
from fastapi import Request, HTTPException
from qrlogin.core.config import settings


class RateLimiter:
    """Sliding one-minute window per client IP, applied to session creation."""

    def __init__(self, max_per_minute: int | None = None, clock=time.time):
        self.max_per_minute = max_per_minute
        self._clock = clock
        self._lock = threading.Lock()
        self._requests: dict[str, list[float]] = {}  # IP -> [timestamp1, timestamp2...]

    def check(self, request: Request):
        if not settings.RATE_LIMIT_ENABLED:
            return

        limit = self.max_per_minute or settings.MAX_REQUESTS_PER_MINUTE
        client_ip = request.client.host if request.client else "unknown"
        now = self._clock()

        with self._lock:
            recent = [t for t in self._requests.get(client_ip, []) if now - t < 60]
            if len(recent) >= limit:
                self._requests[client_ip] = recent
                raise HTTPException(status_code=429, detail="Too many QR codes requested. Please wait.")
            recent.append(now)
            self._requests[client_ip] = recent

    def reset(self):
        with self._lock:
            self._requests.clear()


limiter = RateLimiter()
