# groupfleet/schemas/results.py
"""
Result objects returned by the sync engine, the provisioning engine and the
monitoring scheduler. Per-item failures are accumulated here as
``OperationError`` entries instead of being raised.
"""
from datetime import datetime
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field

from groupfleet.core.errors import ErrorKind, error_kind_of


class OperationError(BaseModel):
    kind: ErrorKind
    message: str
    target: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException, target: Optional[str] = None) -> "OperationError":
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        return cls(kind=error_kind_of(exc), message=message, target=target or getattr(exc, "target", None))


class SyncResult(BaseModel):
    total_groups: int = 0
    new_groups: int = 0
    updated_groups: int = 0
    removed_groups: int = 0
    admin_groups: int = 0
    participant_groups: int = 0
    errors: List[OperationError] = Field(default_factory=list)
    connections_used: int = 0


class ManagedSyncResult(BaseModel):
    synced: int = 0
    errors: List[OperationError] = Field(default_factory=list)


class ProvisioningOutcome(BaseModel):
    """What a single evaluation of one series did"""
    series_name: str
    tenant_id: str
    checked_group_id: Optional[int] = None
    occupancy: Optional[float] = None
    should_create_next: bool = False
    deactivated_group_id: Optional[int] = None
    created_group_id: Optional[int] = None
    created_group_number: Optional[int] = None
    invite_link: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.created_group_id is not None


class MonitoringStats(BaseModel):
    total_series_checked: int = 0
    groups_created: int = 0
    groups_deactivated: int = 0
    errors: List[OperationError] = Field(default_factory=list)
    last_run: Optional[datetime] = None
    duration_ms: Optional[int] = None
    skipped: bool = False


class MonitoringStatus(BaseModel):
    is_scheduled: bool
    is_running: bool
    interval_seconds: float
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None


class SeriesStats(BaseModel):
    series_name: str
    tenant_id: str
    total_groups: int = 0
    active_groups: int = 0
    full_groups: int = 0
    total_participants: int = 0
    total_capacity: int = 0
    occupancy_percentage: float = 0.0
    active_group: Optional[Dict[str, Any]] = None
    groups: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[OperationError] = None


class DiagnosticReport(BaseModel):
    timestamp: datetime
    total_series: int = 0
    active_series: int = 0
    total_managed_groups: int = 0
    active_groups: int = 0
    full_groups: int = 0
    near_capacity_groups: int = 0
    total_participants: int = 0
    average_occupancy: float = 0.0
    full_but_active: List[int] = Field(default_factory=list)
    retired_prematurely: List[int] = Field(default_factory=list)
    series_details: List[SeriesStats] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)


class CleanupResult(BaseModel):
    removed: int = 0
    removed_group_ids: List[int] = Field(default_factory=list)
    errors: List[OperationError] = Field(default_factory=list)
