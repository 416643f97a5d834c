# groupfleet/main.py
"""
FastAPI application for the group fleet orchestrator.

The lifespan builds one gateway client, one event publisher, the sync and
provisioning services and a single monitoring scheduler, and stores them on
``app.state`` for the routes.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from groupfleet import __version__
from groupfleet.core.config import GATEWAY_API_TOKEN, JWT_SECRET_KEY, LOG_LEVEL, MONITORING_ENABLED
from groupfleet.core.errors import ErrorKind, FleetError
from groupfleet.core.logging_config import setup_logging
from groupfleet.db.session import get_db_session, init_db, test_db_connection
from groupfleet.api.v1.router import api_router
from groupfleet.services.gateway import HttpWhatsAppGateway
from groupfleet.services.monitoring_service import GroupMonitoringScheduler
from groupfleet.services.provisioning_service import GroupProvisioningService
from groupfleet.services.retry import RetryPolicy
from groupfleet.services.sync_service import GroupSyncService
from groupfleet.ws.manager import ws_manager

log = logging.getLogger("groupfleet")

# HTTP status returned for each error kind raised out of a route
STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFIGURATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.RATE_LIMITED: 503,
    ErrorKind.TIMEOUT: 503,
    ErrorKind.PERMANENT: 502,
    ErrorKind.FORBIDDEN: 502,
    ErrorKind.PERSISTENCE: 500,
    ErrorKind.INTERNAL: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(level=LOG_LEVEL)
    log.info("=" * 80)
    log.info(f"🚀 Group fleet orchestrator {__version__} starting")
    log.info("=" * 80)

    init_db()
    if test_db_connection():
        log.info("✅ Database initialized")

    gateway = HttpWhatsAppGateway()
    policy = RetryPolicy()
    provisioning = GroupProvisioningService(gateway, ws_manager, policy)
    scheduler = GroupMonitoringScheduler(provisioning, ws_manager, get_db_session)

    app.state.gateway = gateway
    app.state.publisher = ws_manager
    app.state.session_factory = get_db_session
    app.state.sync = GroupSyncService(gateway, ws_manager, policy)
    app.state.provisioning = provisioning
    app.state.scheduler = scheduler

    if MONITORING_ENABLED:
        scheduler.start()
    else:
        log.info("⏸️ Automatic monitoring disabled (MONITORING_ENABLED=false)")

    try:
        yield
    finally:
        await scheduler.stop()
        await gateway.close()
        log.info("👋 Group fleet orchestrator stopped")


app = FastAPI(
    title="GroupFleet - WhatsApp group orchestrator",
    description="Multi-tenant sync, rotation and monitoring of WhatsApp group series",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ────────────────────────────────────────────
# CORS Configuration
# ────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Tenant-Id", "Authorization", "Content-Type"],
    max_age=86400,
)


# ────────────────────────────────────────────
# Error handling
# ────────────────────────────────────────────
@app.exception_handler(FleetError)
async def fleet_error_handler(request: Request, exc: FleetError):
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        log.error(f"❌ {request.method} {request.url.path} failed ({exc.kind.value}): {exc.message}")
    else:
        log.warning(f"⚠️ {request.method} {request.url.path} rejected ({exc.kind.value}): {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


app.include_router(api_router, prefix="/api/v1")


# ────────────────────────────────────────────
# WebSocket Endpoint
# ────────────────────────────────────────────
@app.websocket("/ws/{tenant_id}")
async def websocket_endpoint(websocket: WebSocket, tenant_id: str):
    """WebSocket endpoint for fleet events of one tenant"""
    await ws_manager.connect(tenant_id, websocket)
    try:
        while True:
            # Receive messages to detect disconnects
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        log.info(f"🔌 WebSocket disconnected for tenant: {tenant_id}")
    finally:
        ws_manager.disconnect(tenant_id, websocket)


# ────────────────────────────────────────────
@app.get("/healthz", tags=["System"])
def health():
    """Health check endpoint"""
    db_ok = test_db_connection()
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "ok" if db_ok else "degraded",
        "database_ok": db_ok,
        "gateway_token_ok": bool(GATEWAY_API_TOKEN),
        "jwt_enabled": bool(JWT_SECRET_KEY),
        "monitoring_scheduled": bool(scheduler and scheduler.is_scheduled),
        "websocket_connections": ws_manager.connection_count(),
    }
