# groupfleet/models/group.py
"""WhatsApp Group model, including the fleet-management attributes"""
import enum
from sqlalchemy import Column, String, Text, Boolean, Integer, Float, DateTime, JSON, UniqueConstraint
from groupfleet.models.base import BaseModel
from groupfleet.services import capacity


class SyncStatus(str, enum.Enum):
    SYNCED = "synced"
    SYNCING = "syncing"
    ERROR = "error"


class Group(BaseModel):
    """Store WhatsApp group information"""
    __tablename__ = "groups"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'jid', name='uq_tenant_group_jid'),
    )

    jid = Column(String(100), index=True, nullable=False)  # Remote group id
    name = Column(String(255), nullable=False)  # Subject
    description = Column(Text, nullable=True)
    participants = Column(JSON, nullable=True, default=list)  # [{id, number, admin, is_admin}]
    admin_participants = Column(JSON, nullable=True, default=list)  # Remote ids of admins
    invite_link = Column(String(500), nullable=True)
    whatsapp_id = Column(Integer, index=True, nullable=True)  # Owning connection
    user_role = Column(String(20), nullable=True)  # Role of the owning connection in the group

    # Fleet attributes (only meaningful when is_managed)
    is_managed = Column(Boolean, nullable=False, default=False)
    group_series = Column(String(255), index=True, nullable=True)
    group_number = Column(Integer, nullable=True)
    base_group_name = Column(String(255), nullable=True)
    max_participants = Column(Integer, nullable=False, default=256)
    threshold_percentage = Column(Float, nullable=False, default=95.0)
    is_active = Column(Boolean, nullable=False, default=True)
    auto_create_next = Column(Boolean, nullable=False, default=False)
    deactivated_at = Column(DateTime, nullable=True)

    # Sync attributes
    last_sync = Column(DateTime, nullable=True)
    sync_status = Column(String(20), nullable=False, default=SyncStatus.SYNCED.value)

    # ────────────────────────────────────────────
    # Capacity helpers
    # ────────────────────────────────────────────

    def participant_count(self) -> int:
        return len(self.participants or [])

    def occupancy_percentage(self) -> float:
        return capacity.get_occupancy(self.participant_count(), self.max_participants)

    def capacity_report(self) -> capacity.CapacityReport:
        return capacity.evaluate(self.participant_count(), self.max_participants, self.threshold_percentage)

    def is_full(self) -> bool:
        return capacity.is_full(self.participant_count(), self.max_participants)

    def is_near_capacity(self) -> bool:
        return capacity.is_near_capacity(
            self.participant_count(), self.max_participants, self.threshold_percentage
        )

    def should_create_next_group(self) -> bool:
        return capacity.should_create_next(
            self.participant_count(), self.max_participants, self.threshold_percentage
        )

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "jid": self.jid,
            "group_number": self.group_number,
            "participant_count": self.participant_count(),
            "max_participants": self.max_participants,
            "occupancy_percentage": round(self.occupancy_percentage(), 2),
            "is_active": self.is_active,
            "is_full": self.is_full(),
            "is_near_capacity": self.is_near_capacity(),
            "invite_link": self.invite_link,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Group {self.name} #{self.group_number} active={self.is_active}>"
