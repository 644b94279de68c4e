import time
from dataclasses import dataclass
from threading import Lock

import jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from app.core.logging import get_logger

logger = get_logger("api.rate_limit")

# Provider webhook deliveries bypass the limiter.
EXEMPT_PATH_PREFIXES = ("/api/v1/webhooks",)


@dataclass
class _Bucket:
    tokens: float
    last_refill: float

    def take(self, now: float, capacity: float, refill_rate: float) -> bool:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(capacity, self.tokens + elapsed * refill_rate)
        self.last_refill = now
        if self.tokens < 1:
            return False
        self.tokens -= 1
        return True


def _client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for", "")
    first_ip = forwarded_for.split(",")[0].strip()
    if first_ip:
        return first_ip
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def _token_subject(request: Request) -> str | None:
    # Unverified; selects a bucket only. Auth happens in the route dependency.
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    try:
        claims = jwt.decode(token.strip(), options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    subject = claims.get("sub")
    if isinstance(subject, str) and subject.strip():
        return subject.strip()
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """In-memory token bucket limiter for /api routes, keyed by user or client IP."""

    def __init__(self, app, max_requests_per_minute: int = 60, enabled: bool = True) -> None:
        super().__init__(app)
        self.enabled = enabled
        self.capacity = float(max(1, max_requests_per_minute))
        self.refill_rate = self.capacity / 60.0
        self._buckets: dict[str, _Bucket] = {}
        self._lock = Lock()

    def _client_key(self, request: Request) -> str:
        subject = _token_subject(request)
        if subject:
            return f"user:{subject}"
        return f"ip:{_client_ip(request)}"

    def _allow_request(self, client_key: str) -> bool:
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault(client_key, _Bucket(tokens=self.capacity, last_refill=now))
            return bucket.take(now, self.capacity, self.refill_rate)

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        path = request.url.path
        if not self.enabled or not path.startswith("/api") or path.startswith(EXEMPT_PATH_PREFIXES):
            return await call_next(request)

        client_key = self._client_key(request)
        if not self._allow_request(client_key):
            logger.warning(
                "request.rate_limited",
                extra={"component": "api", "path": path, "client": client_key.split(":", 1)[0]},
            )
            return JSONResponse(
                status_code=429,
                content={"detail": "Too Many Requests"},
                headers={"Retry-After": "60"},
            )

        return await call_next(request)
