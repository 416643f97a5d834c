# groupfleet/api/v1/monitoring.py
from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from groupfleet.api.deps import get_tenant_id, get_scheduler
from groupfleet.schemas.results import CleanupResult, DiagnosticReport, MonitoringStats, SeriesStats
from groupfleet.services.monitoring_service import GroupMonitoringScheduler

router = APIRouter()


@router.post("/run", response_model=MonitoringStats)
async def run_monitoring(
    tenant_id: str = Depends(get_tenant_id),
    scheduler: GroupMonitoringScheduler = Depends(get_scheduler),
):
    """Run a monitoring pass now (returns the last statistics if one is already running)"""
    return await scheduler.run_manual_check()


@router.get("/status")
def monitoring_status(
    tenant_id: str = Depends(get_tenant_id),
    scheduler: GroupMonitoringScheduler = Depends(get_scheduler),
):
    return {
        "status": scheduler.get_status().model_dump(),
        "last_stats": scheduler.get_last_stats().model_dump(),
    }


@router.get("/diagnostic", response_model=DiagnosticReport)
def diagnostic(
    tenant_id: str = Depends(get_tenant_id),
    scheduler: GroupMonitoringScheduler = Depends(get_scheduler),
):
    return scheduler.run_diagnostic(tenant_id)


@router.get("/series-stats", response_model=List[SeriesStats])
def series_stats(
    tenant_id: str = Depends(get_tenant_id),
    scheduler: GroupMonitoringScheduler = Depends(get_scheduler),
):
    return scheduler.get_all_series_stats(tenant_id)


@router.post("/cleanup", response_model=CleanupResult)
async def cleanup(
    max_age_days: Optional[int] = Query(None, ge=1),
    max_participants: Optional[int] = Query(None, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    scheduler: GroupMonitoringScheduler = Depends(get_scheduler),
):
    """Delete long-retired managed groups that kept almost no members"""
    return await scheduler.cleanup_inactive_groups(max_age_days, max_participants, tenant_id)
