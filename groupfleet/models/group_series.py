# groupfleet/models/group_series.py
"""Group series - an unbounded audience spread over a succession of groups"""
from sqlalchemy import Column, String, Text, Boolean, Integer, Float, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from groupfleet.models.base import BaseModel


class GroupSeries(BaseModel):
    __tablename__ = "group_series"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'name', name='uq_tenant_series_name'),
    )

    name = Column(String(255), index=True, nullable=False)
    base_group_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    max_participants = Column(Integer, nullable=False, default=256)
    threshold_percentage = Column(Float, nullable=False, default=95.0)
    auto_create_enabled = Column(Boolean, nullable=False, default=True)

    # Number assigned to the *next* created group; always above every groupNumber used so far
    next_group_number = Column(Integer, nullable=False, default=1)
    # Weak reference (lookup only) to the group currently receiving new members
    current_active_group_id = Column(Integer, nullable=True)

    whatsapp_id = Column(Integer, ForeignKey("whatsapp_connections.id"), index=True, nullable=False)
    landing_page_id = Column(Integer, nullable=True)

    connection = relationship("WhatsAppConnection", lazy="joined")

    def __repr__(self):
        return f"<GroupSeries {self.name} next=#{self.next_group_number}>"
