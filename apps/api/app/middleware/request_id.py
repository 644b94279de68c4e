import re
import uuid
from time import perf_counter

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.logging import get_logger, reset_request_id, set_request_id

logger = get_logger("api.request")

_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")
_QUIET_PATHS = {"/healthz", "/api/v1/healthz"}


def resolve_request_id(header_value: str | None) -> str:
    """Reuse a caller-supplied X-Request-ID when it is well formed, otherwise mint one."""
    candidate = (header_value or "").strip()
    if _VALID_REQUEST_ID.match(candidate):
        return candidate
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to every response and log request start/end."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        request_id = resolve_request_id(request.headers.get("X-Request-ID"))
        request.state.request_id = request_id
        request_id_token = set_request_id(request_id)
        quiet = request.url.path in _QUIET_PATHS
        started = perf_counter()
        response: Response | None = None

        if not quiet:
            logger.info(
                "request.start",
                extra={"component": "api", "method": request.method, "path": request.url.path},
            )
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception(
                "request.error",
                extra={"component": "api", "method": request.method, "path": request.url.path},
            )
            raise
        finally:
            status_code = response.status_code if response is not None else 500
            if not quiet or status_code >= 500:
                logger.info(
                    "request.end",
                    extra={
                        "component": "api",
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": status_code,
                        "duration_ms": int((perf_counter() - started) * 1000),
                    },
                )
            if response is not None:
                response.headers["X-Request-ID"] = request_id
            reset_request_id(request_id_token)
