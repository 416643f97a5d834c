from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from groupfleet.core.config import (
    DEFAULT_MAX_PARTICIPANTS, DEFAULT_THRESHOLD_PERCENTAGE,
    MIN_MAX_PARTICIPANTS, MAX_MAX_PARTICIPANTS,
    MIN_THRESHOLD_PERCENTAGE, MAX_THRESHOLD_PERCENTAGE,
)


class GroupSeriesCreate(BaseModel):
    """Create a new managed group series"""
    name: str = Field(..., min_length=1, max_length=255, description="Series name (unique per tenant)")
    base_group_name: str = Field(..., min_length=1, max_length=255, description="Name of group #1; later groups get ' #N'")
    description: Optional[str] = None
    max_participants: int = Field(DEFAULT_MAX_PARTICIPANTS, ge=MIN_MAX_PARTICIPANTS, le=MAX_MAX_PARTICIPANTS)
    threshold_percentage: float = Field(
        DEFAULT_THRESHOLD_PERCENTAGE, ge=MIN_THRESHOLD_PERCENTAGE, le=MAX_THRESHOLD_PERCENTAGE
    )
    whatsapp_id: int = Field(..., description="Connection used to create the groups")
    landing_page_id: Optional[int] = None
    create_first_group: bool = True


class GroupSeriesUpdate(BaseModel):
    """Update an existing series"""
    base_group_name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    max_participants: Optional[int] = Field(None, ge=MIN_MAX_PARTICIPANTS, le=MAX_MAX_PARTICIPANTS)
    threshold_percentage: Optional[float] = Field(None, ge=MIN_THRESHOLD_PERCENTAGE, le=MAX_THRESHOLD_PERCENTAGE)
    auto_create_enabled: Optional[bool] = None


class AutoCreateToggle(BaseModel):
    enabled: bool


class GroupSeriesResponse(BaseModel):
    id: int
    tenant_id: str
    name: str
    base_group_name: str
    description: Optional[str] = None
    max_participants: int
    threshold_percentage: float
    auto_create_enabled: bool
    next_group_number: int
    current_active_group_id: Optional[int] = None
    whatsapp_id: int
    landing_page_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
