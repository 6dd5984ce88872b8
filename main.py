"""
FastAPI Application Entry Point
AI Cross-Sell Recommendations - Python Backend
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
import os
import asyncio
from dotenv import load_dotenv
import logging
import json
import sys
import time
import uuid as _uuid
from typing import Callable, Dict
from collections import defaultdict
from contextvars import ContextVar
from asyncio import Lock

from routers import recommendations, shops, sync
from routes.admin_routes import router as admin_router
from database import init_db, check_db_health
from services.errors import SyncPipelineError
from services.recommendation_cache import cache_sweeper

load_dotenv()


# ---- Logging setup (JSON on stdout) ----
# Set per request by RequestIDMiddleware so service logs carry the request id
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "severity": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_var.get()
        if rid:
            entry["requestId"] = rid
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(JsonFormatter())

root = logging.getLogger()
root.handlers = [handler]
root.setLevel(LOG_LEVEL)

logging.getLogger("uvicorn.access").setLevel(logging.INFO)
logging.getLogger("uvicorn.error").setLevel(logging.INFO)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)  # bump to INFO to see SQL
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="AI Cross-Sell Recommendations API",
    description="Catalog sync and quota-gated product recommendations",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

cors_origins_raw = os.getenv("CORS_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_origins_raw.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)


# ---- Request id + access log ----
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tags every request with an id (client supplied or generated) and logs its outcome."""

    async def dispatch(self, request: Request, call_next: Callable):
        rid = request.headers.get("X-Request-Id") or _uuid.uuid4().hex[:16]
        request.state.request_id = rid
        token = request_id_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"{request.method} {request.url.path} crashed")
            raise
        finally:
            request_id_var.reset(token)

        elapsed_ms = (time.perf_counter() - started) * 1000
        client = request.client.host if request.client else "-"
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"in {elapsed_ms:.0f}ms (client={client}, rid={rid})"
        )
        response.headers["X-Request-Id"] = rid
        return response

app.add_middleware(RequestIDMiddleware)


# ---- Per-IP rate limiting ----
class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding one-minute window per client IP. Sync pushes get their own,
    much smaller allowance than the query endpoints.
    """
    def __init__(self, app, requests_per_minute: int = 120, sync_requests_per_minute: int = 10):
        super().__init__(app)
        self.window_seconds = 60
        self.limits = {"default": requests_per_minute, "sync": sync_requests_per_minute}
        self._requests: Dict[str, list] = defaultdict(list)
        self._lock = Lock()
        self._exempt_paths = {"/healthz", "/api/health", "/", "/api/docs", "/api/redoc", "/api/openapi.json"}

    async def dispatch(self, request: Request, call_next: Callable):
        if request.url.path in self._exempt_paths or request.method == "OPTIONS":
            return await call_next(request)

        bucket = "sync" if request.url.path.endswith("/products/sync") else "default"
        limit = self.limits[bucket]
        client_ip = request.client.host if request.client else "unknown"
        key = f"{bucket}:{client_ip}"
        current_time = time.time()

        async with self._lock:
            self._requests[key] = [t for t in self._requests[key] if current_time - t < self.window_seconds]
            if len(self._requests[key]) >= limit:
                logger.warning(f"Rate limit exceeded for {key}")
                return JSONResponse(
                    status_code=429,
                    content={
                        "error": "Too many requests",
                        "code": "RATE_LIMIT_EXCEEDED",
                        "retry_after_seconds": self.window_seconds,
                    },
                    headers={"Retry-After": str(self.window_seconds)},
                )
            self._requests[key].append(current_time)

        return await call_next(request)


RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
RATE_LIMIT_RPM = int(os.getenv("RATE_LIMIT_RPM", "120"))
SYNC_RATE_LIMIT_RPM = int(os.getenv("SYNC_RATE_LIMIT_RPM", "10"))

if RATE_LIMIT_ENABLED:
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_minute=RATE_LIMIT_RPM,
        sync_requests_per_minute=SYNC_RATE_LIMIT_RPM,
    )
    logger.info(f"Rate limiting enabled: {RATE_LIMIT_RPM}/min, sync {SYNC_RATE_LIMIT_RPM}/min")


@app.get("/")
async def root_status():
    return {"ok": True, "service": "ai-crosssell-backend"}

@app.get("/healthz")
async def healthz():
    """Basic health check for load balancers."""
    return {"ok": True}


@app.get("/api/health")
async def api_health():
    """Health check including database status."""
    db_health = await check_db_health()
    overall_status = "healthy" if db_health["status"] == "healthy" else "degraded"
    return {
        "status": overall_status,
        "database": db_health,
        "sweeperRunning": cache_sweeper.running,
        "timestamp": time.time(),
    }


# --- Error handlers ---
@app.exception_handler(SyncPipelineError)
async def pipeline_exception_handler(request: Request, exc: SyncPipelineError):
    if exc.status_code >= 500:
        logger.error(f"Pipeline error {exc.code}: {exc.message}")
    headers = None
    if exc.retryable and exc.status_code == 429:
        headers = {"Retry-After": "60"}
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_errors(exc), "error": "Validation failed", "code": "VALIDATION_ERROR"},
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "INTERNAL_ERROR"})


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


# --- Routers ---
app.include_router(sync.router, prefix="/api", tags=["sync"])
app.include_router(recommendations.router, prefix="/api", tags=["recommendations"])
app.include_router(shops.router, prefix="/api", tags=["shops"])
app.include_router(admin_router, prefix="/api", tags=["admin"])


# --- Startup/shutdown ---
@app.on_event("startup")
async def startup():
    logger.info("Starting AI Cross-Sell Recommendations API...")
    if os.getenv("INIT_DB_ON_STARTUP", "false").lower() == "true":
        try:
            logger.info("Initializing database tables...")
            await asyncio.wait_for(init_db(), timeout=120)
            logger.info("Database initialized successfully")
        except asyncio.TimeoutError:
            logger.error("DB init timed out after 120s, continuing without init")
        except Exception as e:
            logger.error(f"DB init failed (continuing to serve): {e}", exc_info=True)
    else:
        logger.info("Skipping DB init on startup")
    cache_sweeper.start()

@app.on_event("shutdown")
async def shutdown():
    logger.info("Shutting down AI Cross-Sell Recommendations API...")
    await cache_sweeper.stop()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=os.getenv("NODE_ENV") != "production",
        # Syncs with LLM generation can run for half an hour
        timeout_keep_alive=int(os.getenv("KEEP_ALIVE_TIMEOUT_S", "2100")),
    )
