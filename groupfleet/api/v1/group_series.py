# groupfleet/api/v1/group_series.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from groupfleet.db.session import get_db
from groupfleet.api.deps import get_tenant_id, get_provisioning_service, get_publisher, get_scheduler
from groupfleet.core.errors import NotFoundError
from groupfleet.models.group_series import GroupSeries
from groupfleet.schemas.group import ActiveGroupResponse
from groupfleet.schemas.group_series import (
    AutoCreateToggle, GroupSeriesCreate, GroupSeriesResponse, GroupSeriesUpdate,
)
from groupfleet.schemas.results import ProvisioningOutcome, SeriesStats
from groupfleet.services.monitoring_service import GroupMonitoringScheduler
from groupfleet.services.provisioning_service import GroupProvisioningService
from groupfleet.ws.manager import GROUP_SERIES, EventPublisher

router = APIRouter()


async def _notify(publisher: EventPublisher, tenant_id: str, action: str, series: dict) -> None:
    await publisher.publish(tenant_id, GROUP_SERIES, {"action": action, "series": series})


def _as_response(series: GroupSeries) -> dict:
    return GroupSeriesResponse.model_validate(series).model_dump()


@router.post("/", response_model=GroupSeriesResponse, status_code=201)
async def create_group_series(
    data: GroupSeriesCreate,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: GroupProvisioningService = Depends(get_provisioning_service),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Create a series (and its first group unless create_first_group is false)"""
    series = await service.create_group_series(db, tenant_id, data)
    body = _as_response(series)
    await _notify(publisher, tenant_id, "create", body)
    return body


@router.get("/", response_model=List[GroupSeriesResponse])
def list_group_series(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: GroupProvisioningService = Depends(get_provisioning_service),
):
    return service.list_group_series(db, tenant_id)


@router.get("/{series_id}", response_model=GroupSeriesResponse)
def get_group_series(
    series_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: GroupProvisioningService = Depends(get_provisioning_service),
):
    return service.get_group_series(db, tenant_id, series_id)


@router.put("/{series_id}", response_model=GroupSeriesResponse)
async def update_group_series(
    series_id: int,
    data: GroupSeriesUpdate,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: GroupProvisioningService = Depends(get_provisioning_service),
    publisher: EventPublisher = Depends(get_publisher),
):
    series = service.update_group_series(db, tenant_id, series_id, data)
    body = _as_response(series)
    await _notify(publisher, tenant_id, "update", body)
    return body


@router.delete("/{series_id}")
async def delete_group_series(
    series_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: GroupProvisioningService = Depends(get_provisioning_service),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Delete a series; its groups are kept as unmanaged groups"""
    removed = service.remove_group_series(db, tenant_id, series_id)
    await _notify(publisher, tenant_id, "delete", removed)
    return {"ok": True, **removed}


@router.post("/{series_id}/toggle", response_model=GroupSeriesResponse)
async def toggle_auto_create(
    series_id: int,
    data: AutoCreateToggle,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: GroupProvisioningService = Depends(get_provisioning_service),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Enable or disable automatic rotation of a series"""
    series = service.update_group_series(
        db, tenant_id, series_id, GroupSeriesUpdate(auto_create_enabled=data.enabled)
    )
    body = _as_response(series)
    await _notify(publisher, tenant_id, "toggle", body)
    return body


# ────────────────────────────────────────────
# By series name
# ────────────────────────────────────────────

@router.get("/by-name/{name}/stats", response_model=SeriesStats)
def get_series_stats(
    name: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: GroupProvisioningService = Depends(get_provisioning_service),
):
    return service.get_series_stats(db, tenant_id, name)


@router.get("/by-name/{name}/active-group", response_model=ActiveGroupResponse)
def get_active_group(
    name: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: GroupProvisioningService = Depends(get_provisioning_service),
):
    """The group currently receiving new members"""
    service.get_group_series_by_name(db, tenant_id, name)
    group = service.get_active_group_for_series(db, tenant_id, name)
    if not group:
        raise NotFoundError(f"No active group for series '{name}'", target=name)
    return group.summary()


@router.get("/by-name/{name}/invite-link")
def get_invite_link(
    name: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: GroupProvisioningService = Depends(get_provisioning_service),
):
    """Invite link landing pages hand out for the series"""
    service.get_group_series_by_name(db, tenant_id, name)
    group = service.get_active_group_for_series(db, tenant_id, name)
    if not group or not group.invite_link:
        raise NotFoundError(f"No invite link available for series '{name}'", target=name)
    return {
        "series": name,
        "group_name": group.name,
        "group_number": group.group_number,
        "invite_link": group.invite_link,
    }


@router.post("/by-name/{name}/next-group")
async def force_next_group(
    name: str,
    tenant_id: str = Depends(get_tenant_id),
    scheduler: GroupMonitoringScheduler = Depends(get_scheduler),
):
    """Retire the current group and open the next one now"""
    group = await scheduler.force_create_next_group(tenant_id, name)
    return {"ok": True, "group": group}


@router.post("/by-name/{name}/check", response_model=ProvisioningOutcome)
async def check_series(
    name: str,
    tenant_id: str = Depends(get_tenant_id),
    scheduler: GroupMonitoringScheduler = Depends(get_scheduler),
):
    return await scheduler.check_specific_series(tenant_id, name)
