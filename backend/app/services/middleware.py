"""Request timing and tracing middleware for the pricing API."""
import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("roofing-api.middleware")

SKIP_LOG_PATHS = {"/health"}


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an X-Request-ID (the caller's, or a fresh uuid4),
    reports the duration in X-Process-Time and writes one structured log line
    per request.  Pricing requests carry their ``estimate_id`` / ``template_id``
    path parameter into the log record; 4xx lines are warnings and failures
    are logged with the traceback before being re-raised.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.perf_counter()

        try:
            response: Response = await call_next(request)
        except Exception:
            logger.exception(
                "request failed",
                extra=self._context(request, request_id, start_time, status_code=500),
            )
            raise

        context = self._context(request, request_id, start_time, response.status_code)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(context["duration_ms"])

        if request.url.path not in SKIP_LOG_PATHS:
            level = logging.WARNING if response.status_code >= 400 else logging.INFO
            logger.log(level, "request completed", extra=context)
        return response

    @staticmethod
    def _context(request: Request, request_id: str, start_time: float, status_code: int) -> dict:
        context = {
            "http_method": request.method,
            "http_path": request.url.path,
            "http_status": status_code,
            "request_id": request_id,
            "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
        }
        # Routing fills path_params on the shared scope once the endpoint is matched.
        path_params = request.scope.get("path_params") or {}
        for key in ("estimate_id", "template_id"):
            if key in path_params:
                context[key] = str(path_params[key])
        return context
