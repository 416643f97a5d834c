"""Import all models for Alembic"""
from groupfleet.models.base import Base

from groupfleet.models.connection import WhatsAppConnection
from groupfleet.models.group_series import GroupSeries
from groupfleet.models.group import Group

__all__ = ["Base", "WhatsAppConnection", "GroupSeries", "Group"]
