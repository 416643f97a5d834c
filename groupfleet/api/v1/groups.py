# groupfleet/api/v1/groups.py
import logging
from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session
from typing import List

from groupfleet.db.session import get_db
from groupfleet.api.deps import get_tenant_id, get_provisioning_service, get_session_factory, get_sync_service
from groupfleet.core.errors import ConcurrencyConflictError, FleetError
from groupfleet.schemas.group import GroupResponse
from groupfleet.schemas.results import ManagedSyncResult
from groupfleet.services.fleet_store import FleetStore
from groupfleet.services.provisioning_service import GroupProvisioningService
from groupfleet.services.sync_service import GroupSyncService

log = logging.getLogger("groupfleet.api.groups")

router = APIRouter()


async def run_sync(service: GroupSyncService, session_factory, tenant_id: str) -> None:
    """Background task body; the outcome reaches dashboards through sync-complete"""
    try:
        with session_factory() as db:
            result = await service.sync(db, tenant_id)
        log.info(f"✅ Background sync for tenant {tenant_id}: {result.total_groups} groups, {len(result.errors)} errors")
    except FleetError as e:
        log.error(f"❌ Background sync for tenant {tenant_id} failed ({e.kind.value}): {e.message}")


@router.post("/sync", status_code=202)
def start_sync(
    background_tasks: BackgroundTasks,
    tenant_id: str = Depends(get_tenant_id),
    service: GroupSyncService = Depends(get_sync_service),
    session_factory=Depends(get_session_factory),
):
    """Start a full group sync for the tenant"""
    if service.is_running(tenant_id):
        raise ConcurrencyConflictError(f"A sync is already running for tenant {tenant_id}", target=tenant_id)
    background_tasks.add_task(run_sync, service, session_factory, tenant_id)
    return {"status": "started", "tenant_id": tenant_id}


@router.get("/", response_model=List[GroupResponse])
def list_groups(
    managed_only: bool = False,
    active_only: bool = False,
    skip: int = 0,
    limit: int = Query(100, le=500),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    """List locally known groups"""
    return FleetStore(db).list_groups(
        tenant_id, managed_only=managed_only, active_only=active_only, skip=skip, limit=limit
    )


@router.post("/sync-managed", response_model=ManagedSyncResult)
async def sync_managed_groups(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: GroupProvisioningService = Depends(get_provisioning_service),
):
    """Refresh metadata of every managed group"""
    return await service.sync_managed_groups(db, tenant_id)


@router.get("/validate")
async def validate_group(
    jid: str,
    whatsapp_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: GroupProvisioningService = Depends(get_provisioning_service),
):
    """Whether the connection can manage (is admin of) the group"""
    valid = await service.validate_group_for_management(db, tenant_id, jid, whatsapp_id)
    return {"jid": jid, "whatsapp_id": whatsapp_id, "valid": valid}
