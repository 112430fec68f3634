"""
Roofing Estimate Pricing API v1.0
FastAPI backend with async PostgreSQL and JWT auth: template-driven takeoff,
overhead and margin/markup pricing per estimate.
"""
import os
import sys
import logging
import time
import collections
from contextlib import asynccontextmanager
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

# Load .env file automatically in dev (no-op if the file is missing); app modules read env at import
load_dotenv()

from app.db import init_db
from app.services.logging_config import setup_logging
from app.services.middleware import RequestTimingMiddleware
from app.services.perf_monitor import tracker as perf_tracker
from app.api.pricing_routes import router as pricing_router

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs, logger_levels=os.getenv("LOG_LEVELS"))
logger = logging.getLogger("roofing-api")

# Record process start time for uptime calculation
_PROCESS_START = time.monotonic()

# Startup validation
for var in ["DATABASE_URL", "JWT_SECRET_KEY"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var} — running in dev mode")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await init_db()
    except Exception as e:
        logger.warning(f"Table init warning (OK if using Alembic): {e}")
    yield


app = FastAPI(
    title="Roofing Estimate Pricing API",
    version="1.0.0",
    description="Template-driven material takeoff and margin/markup pricing for roofing estimates",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Rate Limiting Middleware
# ---------------------------------------------------------------------------
class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory sliding-window rate limiter, per client IP and minute.
    Recomputation endpoints (compute, line-items) get one bucket per client
    and endpoint kind of RATE_LIMIT_COMPUTE_PER_MIN; everything else shares
    RATE_LIMIT_PER_MIN.  Buckets are dropped once their window empties.
    """
    RECOMPUTE_SUFFIXES = ("/compute", "/line-items")

    def __init__(self, app, general_limit: int = 120, compute_limit: int = 30):
        super().__init__(app)
        self.general_limit = general_limit
        self.compute_limit = compute_limit
        # {bucket_key: deque of timestamps}
        self._windows: dict = {}
        self._last_prune = time.monotonic()

    def _bucket(self, ip: str, path: str):
        for suffix in self.RECOMPUTE_SUFFIXES:
            if path.endswith(suffix):
                return f"{ip}:{suffix}", self.compute_limit
        return f"{ip}:general", self.general_limit

    def _prune(self, now: float):
        """Drop buckets with no request in the last 60 seconds; runs at most once a minute."""
        if now - self._last_prune < 60:
            return
        self._last_prune = now
        stale = [k for k, window in self._windows.items() if not window or now - window[-1] > 60]
        for key in stale:
            del self._windows[key]

    async def dispatch(self, request: Request, call_next):
        ip = request.client.host if request.client else "unknown"
        bucket, limit = self._bucket(ip, request.url.path)
        now = time.monotonic()
        self._prune(now)
        window = self._windows.setdefault(bucket, collections.deque())
        # Remove entries older than 60 seconds
        while window and now - window[0] > 60:
            window.popleft()
        if len(window) >= limit:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please slow down."},
                headers={"Retry-After": "60"},
            )
        window.append(now)
        return await call_next(request)


# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


# ---------------------------------------------------------------------------
# CORS: restricted to allowed origins from env
# ---------------------------------------------------------------------------
_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With", "X-Request-ID"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    RateLimitMiddleware,
    general_limit=int(os.getenv("RATE_LIMIT_PER_MIN", "120")),
    compute_limit=int(os.getenv("RATE_LIMIT_COMPUTE_PER_MIN", "30")),
)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

app.include_router(pricing_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": "1.0.0",
        "database_configured": bool(os.getenv("DATABASE_URL")),
    }


@app.get("/metrics")
async def metrics():
    """
    Performance metrics endpoint.

    Returns per-operation call counts, average duration and error counts for
    the pricing service, plus process uptime and peak memory.
    """
    uptime_seconds = round(time.monotonic() - _PROCESS_START, 1)

    memory_mb: float = 0.0
    try:
        import resource  # Unix only
        usage = resource.getrusage(resource.RUSAGE_SELF)
        # ru_maxrss is in kilobytes on Linux, bytes on macOS
        if sys.platform == "darwin":
            memory_mb = round(usage.ru_maxrss / (1024 * 1024), 2)
        else:
            memory_mb = round(usage.ru_maxrss / 1024, 2)
    except ImportError:
        memory_mb = 0.0

    snapshot = perf_tracker.get_metrics()

    return {
        "uptime_seconds": uptime_seconds,
        "memory_usage_mb": memory_mb,
        **snapshot,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
