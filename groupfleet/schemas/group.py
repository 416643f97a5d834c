from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime


class GroupResponse(BaseModel):
    """Group response"""
    id: int
    tenant_id: str
    jid: str
    name: str
    description: Optional[str] = None
    participants: List[Dict[str, Any]] = []
    admin_participants: List[str] = []
    invite_link: Optional[str] = None
    whatsapp_id: Optional[int] = None
    user_role: Optional[str] = None
    is_managed: bool = False
    group_series: Optional[str] = None
    group_number: Optional[int] = None
    max_participants: int
    threshold_percentage: float
    is_active: bool = True
    last_sync: Optional[datetime] = None
    sync_status: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ActiveGroupResponse(BaseModel):
    id: int
    name: str
    jid: str
    participant_count: int
    max_participants: int
    occupancy_percentage: float
    invite_link: Optional[str] = None
    is_near_capacity: bool
    is_full: bool
