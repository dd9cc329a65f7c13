"""
FastAPI Application Entry Point

This module creates and configures the FastAPI application for the
VisionEra gateway.

The application provides:
- Dashboard routes authenticated with Firebase ID tokens
- Public v1 routes authenticated with tenant API keys
- Share-token result retrieval, payments webhook and contact form
- Super-admin routes
- Health check endpoints

Usage:
    # From project root:
    uvicorn api.app:app --host 0.0.0.0 --port 3000 --reload

    # Or run directly:
    python -m api.app
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import get_client_ip
from api.routes import (
    account_router,
    admin_router,
    api_keys_router,
    api_v1_router,
    contact_router,
    face_search_router,
    frs_proxy_router,
    payments_router,
    share_router,
)
from api.schemas import DbHealthResponse, HealthResponse
from core.abuse_detection import abuse_scanner_loop
from core.audit import SKIP_PATHS, audit_log
from core.config import get_abuse_scan_config, get_api_config, get_server_config
from core.errors import GatewayError
from core.frs_client import get_frs_client
from core.plans import seed_plans
from core.redis_client import get_redis
from core.store import get_store, to_db_time, utcnow


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Runs on startup:
    - Open the store and upsert the default plans
    - Purge stored results past their retention date
    - Start the background abuse scanner (if enabled)

    Runs on shutdown:
    - Stop the scanner, close the FRS client and the store
    """
    logger.info("=" * 60)
    logger.info("Starting VisionEra Gateway")
    logger.info("=" * 60)

    store = get_store()
    plans = seed_plans(store)
    logger.info(f"Plans ready: {', '.join(p['code'] for p in plans)}")

    purged = store.purge_expired_requests()
    if purged:
        logger.info(f"Purged {purged} expired face-search results")

    if get_redis() is None:
        logger.warning("Redis not available - rate limits and usage counters are disabled")

    scanner_task = None
    abuse_config = get_abuse_scan_config()
    if abuse_config.get("enabled", True):
        scanner_task = asyncio.create_task(
            abuse_scanner_loop(store, get_redis, abuse_config.get("interval_sec", 600))
        )

    logger.info("Gateway startup complete!")
    logger.info("=" * 60)

    yield

    logger.info("Shutting down gateway...")
    if scanner_task is not None:
        scanner_task.cancel()
        try:
            await scanner_task
        except asyncio.CancelledError:
            pass
    await get_frs_client().aclose()
    store.close()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="VisionEra Gateway",
    description="""
Multi-tenant gateway in front of the VisionEra face recognition service.

## Authentication
- **Dashboard routes** (`/api/...`): `Authorization: Bearer <Firebase ID token>`
- **Public API** (`/api/v1/...`): `Authorization: Bearer vra_live_...` or `x-api-key`
- **Shared results** (`/api/result`): `Authorization: Bearer <share token>`

## Errors
Every error body is `{"code": "...", "message": "..."}` plus optional fields.
    """,
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_api_config().get("cors_origins") or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Daily-Limit-Warning", "X-Daily-Usage", "X-Daily-Limit", "Retry-After"],
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    headers = dict(exc.headers or {})
    retry_after = exc.extra.get("retry_after_seconds")
    if retry_after is not None:
        headers.setdefault("Retry-After", str(retry_after))
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers or None)


@app.middleware("http")
async def audit_requests(request: Request, call_next):
    """
    Record every authenticated request as API_CALL.

    Runs after the response is produced, so the caller context set by the
    auth dependencies is available. 429 responses also get RATE_LIMIT_HIT.
    """
    start = time.perf_counter()
    response = await call_next(request)

    path = request.url.path
    ctx = getattr(request.state, "saas", None)
    if path in SKIP_PATHS or ctx is None:
        return response

    meta = {"duration_ms": round((time.perf_counter() - start) * 1000)}
    api_key = getattr(request.state, "api_key", None)
    if api_key is not None:
        meta.update(api_key_id=api_key["id"], key_prefix=api_key["key_prefix"], key_name=api_key["name"])

    common = dict(
        user_id=ctx.user["id"],
        tenant_id=ctx.tenant["id"],
        ip=get_client_ip(request),
        method=request.method,
        path=path,
        status=response.status_code,
        user_agent=request.headers.get("user-agent"),
    )
    store = get_store()
    audit_log(store, "API_CALL", meta=meta, **common)
    if response.status_code == 429:
        audit_log(store, "RATE_LIMIT_HIT", **common)

    return response


# Include routers
app.include_router(account_router)
app.include_router(frs_proxy_router)
app.include_router(face_search_router)
app.include_router(share_router)
app.include_router(api_keys_router)
app.include_router(api_v1_router)
app.include_router(payments_router)
app.include_router(contact_router)
app.include_router(admin_router)


# ============================================================
# Health Check Endpoints
# ============================================================

@app.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check():
    """
    Check the gateway and its Redis connection.

    Redis being down degrades the gateway (limits fail open) but does not
    make it unhealthy.
    """
    redis_ok = False
    client = get_redis()
    if client is not None:
        try:
            redis_ok = bool(client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")

    return HealthResponse(
        status="ok" if redis_ok else "degraded",
        environment=get_api_config().get("environment", "production"),
        redis=redis_ok,
        timestamp=to_db_time(utcnow()),
    )


@app.get("/db/health", response_model=DbHealthResponse, tags=["system"])
async def db_health():
    store = get_store()
    if not store.ping():
        return JSONResponse(
            status_code=503,
            content={"status": "error", "database": "unreachable"},
        )
    return DbHealthResponse(status="ok", database="connected", plans=len(store.list_plans()))


@app.get("/", tags=["system"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "VisionEra Gateway",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    server = get_server_config()
    logger.info(f"Starting server on {server['host']}:{server['port']}")
    uvicorn.run(
        "api.app:app",
        host=server["host"],
        port=server["port"],
        reload=False,
        log_level="info",
    )
