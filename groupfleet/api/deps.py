# groupfleet/api/deps.py
"""
API dependencies for tenant resolution, database access and the services
built once by the application lifespan.
"""
from typing import Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from groupfleet.core.jwt_auth import JWTAuth
from groupfleet.services.monitoring_service import GroupMonitoringScheduler
from groupfleet.services.provisioning_service import GroupProvisioningService
from groupfleet.services.sync_service import GroupSyncService
from groupfleet.ws.manager import EventPublisher

# Security scheme (optional so the development header keeps working)
security = HTTPBearer(auto_error=False)


# ────────────────────────────────────────────
# Tenant
# ────────────────────────────────────────────

async def get_tenant_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    """
    Resolve the tenant of the caller.

    Priority:
    1. JWT Bearer token
    2. X-Tenant-Id header (for development)
    """
    if credentials and credentials.credentials:
        payload = JWTAuth.decode_token(credentials.credentials)
        tenant_id = JWTAuth.get_tenant_id(payload)
        if tenant_id:
            return tenant_id

    tenant_id = request.headers.get("x-tenant-id")
    if tenant_id:
        return tenant_id

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required. Provide a JWT token or X-Tenant-Id header for development."
    )


# ────────────────────────────────────────────
# Services (built in the lifespan, stored on app.state)
# ────────────────────────────────────────────

def get_provisioning_service(request: Request) -> GroupProvisioningService:
    return request.app.state.provisioning


def get_sync_service(request: Request) -> GroupSyncService:
    return request.app.state.sync


def get_scheduler(request: Request) -> GroupMonitoringScheduler:
    return request.app.state.scheduler


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher


def get_session_factory(request: Request):
    return request.app.state.session_factory
