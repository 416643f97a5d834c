# groupfleet/services/fleet_store.py
"""
Fleet store - every query and write the orchestrator makes against the
``groups`` / ``group_series`` / ``whatsapp_connections`` tables.

Writes commit immediately; SQLAlchemy failures are rolled back and re-raised as
``PersistenceError``.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from groupfleet.core.errors import ConcurrencyConflictError, PersistenceError
from groupfleet.models.connection import ConnectionStatus, WhatsAppConnection
from groupfleet.models.group import Group, SyncStatus
from groupfleet.models.group_series import GroupSeries

log = logging.getLogger("groupfleet.fleet_store")


class FleetStore:
    def __init__(self, db: Session):
        self.db = db

    # ────────────────────────────────────────────
    # Transactions
    # ────────────────────────────────────────────

    def commit(self, what: str = "changes") -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"❌ Failed to persist {what}: {e}")
            raise PersistenceError(f"Failed to persist {what}: {e.__class__.__name__}")

    def add(self, obj, what: str = "record"):
        self.db.add(obj)
        self.commit(what)
        self.db.refresh(obj)
        return obj

    def delete(self, obj, what: str = "record") -> None:
        self.db.delete(obj)
        self.commit(what)

    # ────────────────────────────────────────────
    # Connections
    # ────────────────────────────────────────────

    def get_connection(self, tenant_id: str, connection_id: int) -> Optional[WhatsAppConnection]:
        return self.db.query(WhatsAppConnection).filter(
            WhatsAppConnection.tenant_id == tenant_id,
            WhatsAppConnection.id == connection_id
        ).first()

    def list_connected_connections(self, tenant_id: str) -> List[WhatsAppConnection]:
        return self.db.query(WhatsAppConnection).filter(
            WhatsAppConnection.tenant_id == tenant_id,
            WhatsAppConnection.status == ConnectionStatus.CONNECTED.value
        ).order_by(WhatsAppConnection.id).all()

    # ────────────────────────────────────────────
    # Series
    # ────────────────────────────────────────────

    def get_series(self, tenant_id: str, series_id: int) -> Optional[GroupSeries]:
        return self.db.query(GroupSeries).filter(
            GroupSeries.tenant_id == tenant_id,
            GroupSeries.id == series_id
        ).first()

    def get_series_by_name(self, tenant_id: str, name: str) -> Optional[GroupSeries]:
        return self.db.query(GroupSeries).filter(
            GroupSeries.tenant_id == tenant_id,
            GroupSeries.name == name
        ).first()

    def list_series(self, tenant_id: Optional[str] = None, auto_create_only: bool = False) -> List[GroupSeries]:
        query = self.db.query(GroupSeries)
        if tenant_id is not None:
            query = query.filter(GroupSeries.tenant_id == tenant_id)
        if auto_create_only:
            query = query.filter(GroupSeries.auto_create_enabled == True)
        return query.order_by(GroupSeries.created_at.desc(), GroupSeries.id.desc()).all()

    def list_monitorable_series(self) -> List[GroupSeries]:
        """Every series with auto-create enabled whose connection is connected"""
        return self.db.query(GroupSeries).join(
            WhatsAppConnection, GroupSeries.whatsapp_id == WhatsAppConnection.id
        ).filter(
            GroupSeries.auto_create_enabled == True,
            WhatsAppConnection.status == ConnectionStatus.CONNECTED.value
        ).order_by(GroupSeries.id).all()

    def advance_series(
        self,
        series: GroupSeries,
        expected_next_number: int,
        new_group: Group,
        retire_group: Optional[Group] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Point the series at ``new_group`` and bump ``next_group_number`` in one
        transaction, together with activating the new group and retiring the
        previous one.

        Raises:
            ConcurrencyConflictError: another writer advanced the series first
        """
        now = now or datetime.utcnow()
        try:
            updated = self.db.query(GroupSeries).filter(
                GroupSeries.id == series.id,
                GroupSeries.next_group_number == expected_next_number
            ).update(
                {
                    GroupSeries.current_active_group_id: new_group.id,
                    GroupSeries.next_group_number: expected_next_number + 1,
                    GroupSeries.updated_at: now,
                },
                synchronize_session=False
            )
            if updated != 1:
                self.db.rollback()
                raise ConcurrencyConflictError(
                    f"Series '{series.name}' was advanced concurrently (expected next #{expected_next_number})",
                    target=series.name
                )
            if retire_group is not None and retire_group.id != new_group.id and retire_group.is_active:
                retire_group.is_active = False
                retire_group.deactivated_at = now
            new_group.is_active = True
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to advance series '{series.name}': {e.__class__.__name__}")
        self.db.refresh(series)

    def propagate_capacity(self, series: GroupSeries) -> int:
        """Copy the series limits onto every managed group of the series"""
        count = self.db.query(Group).filter(
            Group.tenant_id == series.tenant_id,
            Group.group_series == series.name,
            Group.is_managed == True
        ).update(
            {
                Group.max_participants: series.max_participants,
                Group.threshold_percentage: series.threshold_percentage,
            },
            synchronize_session=False
        )
        self.commit("capacity propagation")
        return count

    def detach_series_groups(self, series: GroupSeries) -> int:
        count = self.db.query(Group).filter(
            Group.tenant_id == series.tenant_id,
            Group.group_series == series.name
        ).update(
            {
                Group.is_managed: False,
                Group.auto_create_next: False,
                Group.group_series: None,
            },
            synchronize_session=False
        )
        self.commit("series detach")
        return count

    # ────────────────────────────────────────────
    # Groups
    # ────────────────────────────────────────────

    def get_group(self, group_id: int) -> Optional[Group]:
        return self.db.query(Group).filter(Group.id == group_id).first()

    def get_group_by_jid(self, tenant_id: str, jid: str) -> Optional[Group]:
        return self.db.query(Group).filter(
            Group.tenant_id == tenant_id,
            Group.jid == jid
        ).first()

    def active_group_for_series(self, tenant_id: str, series_name: str) -> Optional[Group]:
        return self.db.query(Group).filter(
            Group.tenant_id == tenant_id,
            Group.group_series == series_name,
            Group.is_active == True,
            Group.is_managed == True
        ).order_by(Group.group_number.desc()).first()

    def groups_for_series(self, tenant_id: str, series_name: str) -> List[Group]:
        return self.db.query(Group).filter(
            Group.tenant_id == tenant_id,
            Group.group_series == series_name,
            Group.is_managed == True
        ).order_by(Group.group_number.asc()).all()

    def list_groups(
        self,
        tenant_id: str,
        managed_only: bool = False,
        active_only: bool = False,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Group]:
        query = self.db.query(Group).filter(Group.tenant_id == tenant_id)
        if managed_only:
            query = query.filter(Group.is_managed == True)
        if active_only:
            query = query.filter(Group.is_active == True)
        query = query.order_by(Group.id).offset(skip)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def managed_groups(self, tenant_id: Optional[str] = None, active_only: bool = False) -> List[Group]:
        query = self.db.query(Group).filter(Group.is_managed == True)
        if tenant_id is not None:
            query = query.filter(Group.tenant_id == tenant_id)
        if active_only:
            query = query.filter(Group.is_active == True)
        return query.order_by(Group.id).all()

    def stale_inactive_groups(
        self, older_than: datetime, max_participants: int, tenant_id: Optional[str] = None
    ) -> List[Group]:
        """Managed groups retired before ``older_than`` with at most ``max_participants`` members"""
        query = self.db.query(Group).filter(
            Group.is_managed == True,
            Group.is_active == False,
            or_(
                Group.deactivated_at < older_than,
                and_(Group.deactivated_at.is_(None), Group.updated_at < older_than)
            )
        )
        if tenant_id is not None:
            query = query.filter(Group.tenant_id == tenant_id)
        candidates = query.order_by(Group.id).all()
        return [g for g in candidates if g.participant_count() <= max_participants]

    def retire_group(self, group: Group, now: Optional[datetime] = None) -> None:
        group.is_active = False
        group.deactivated_at = now or datetime.utcnow()
        self.commit(f"retirement of group {group.id}")

    # ────────────────────────────────────────────
    # Sync bookkeeping
    # ────────────────────────────────────────────

    def mark_tenant_syncing(self, tenant_id: str, whatsapp_ids: List[int]) -> int:
        """Flag the groups owned by ``whatsapp_ids``; groups of other connections are left alone"""
        if not whatsapp_ids:
            return 0
        count = self.db.query(Group).filter(
            Group.tenant_id == tenant_id,
            Group.whatsapp_id.in_(whatsapp_ids)
        ).update({Group.sync_status: SyncStatus.SYNCING.value}, synchronize_session=False)
        self.commit("sync start")
        return count

    def mark_syncing_as(self, tenant_id: str, status: SyncStatus, whatsapp_id: Optional[int] = None) -> int:
        query = self.db.query(Group).filter(
            Group.tenant_id == tenant_id,
            Group.sync_status == SyncStatus.SYNCING.value
        )
        if whatsapp_id is not None:
            query = query.filter(Group.whatsapp_id == whatsapp_id)
        count = query.update({Group.sync_status: status.value}, synchronize_session=False)
        self.commit("sync status")
        return count

    def delete_unobserved_groups(
        self, tenant_id: str, keep_jids: Optional[Iterable[str]] = None
    ) -> List[Dict[str, Any]]:
        """
        Remove every group still marked ``syncing`` (not seen during the sync).
        A series pointing at a removed group loses its pointer.
        Groups in ``keep_jids`` are flagged ``error`` instead of removed.
        """
        keep = set(keep_jids or ())
        syncing = self.db.query(Group).filter(
            Group.tenant_id == tenant_id,
            Group.sync_status == SyncStatus.SYNCING.value
        ).all()
        stale = [g for g in syncing if g.jid not in keep]
        for group in syncing:
            if group.jid in keep:
                group.sync_status = SyncStatus.ERROR.value
        if not stale:
            if len(syncing) > len(stale):
                self.commit("sync status")
            return []
        stale_ids = [g.id for g in stale]
        removed = [{"id": g.id, "jid": g.jid, "name": g.name, "is_managed": g.is_managed} for g in stale]
        self.db.query(GroupSeries).filter(
            GroupSeries.tenant_id == tenant_id,
            GroupSeries.current_active_group_id.in_(stale_ids)
        ).update({GroupSeries.current_active_group_id: None}, synchronize_session=False)
        for group in stale:
            self.db.delete(group)
        self.commit("reconciliation")
        return removed
