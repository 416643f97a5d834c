from groupfleet.models.base import Base, BaseModel
from groupfleet.models.connection import WhatsAppConnection, ConnectionStatus
from groupfleet.models.group_series import GroupSeries
from groupfleet.models.group import Group, SyncStatus

__all__ = [
    "Base",
    "BaseModel",
    "WhatsAppConnection",
    "ConnectionStatus",
    "GroupSeries",
    "Group",
    "SyncStatus",
]
