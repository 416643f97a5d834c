# groupfleet/services/provisioning_service.py
"""
Group provisioning service - manages group series and rotates a series onto a
new group when its active group fills up.

Per series the active group is either kept (below threshold), kept while its
successor is created (near capacity), or retired first and then replaced
(full). A retirement is never rolled back: a full group must stop receiving
members even when creating its successor fails.
"""
import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from groupfleet.core import config
from groupfleet.core.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    FleetError,
    GatewayError,
    NotFoundError,
    PersistenceError,
)
from groupfleet.core.logging_config import get_activity_logger
from groupfleet.models.group import Group, SyncStatus
from groupfleet.models.group_series import GroupSeries
from groupfleet.schemas.gateway import ParticipantRole
from groupfleet.schemas.group_series import GroupSeriesCreate, GroupSeriesUpdate
from groupfleet.schemas.results import ManagedSyncResult, OperationError, ProvisioningOutcome, SeriesStats
from groupfleet.services.fleet_store import FleetStore
from groupfleet.services.gateway import WhatsAppGateway, invite_link_for
from groupfleet.services.retry import RetryPolicy, Sleep, call_with_retry, call_with_timeout
from groupfleet.services.sanitize import admin_payload, participants_payload
from groupfleet.services.sync_service import resolve_own_role
from groupfleet.ws.manager import GROUP_DEACTIVATED, GROUP_PROVISIONED, EventPublisher

log = logging.getLogger("groupfleet.provisioning")
activity = get_activity_logger()


def group_name_for(series: GroupSeries, group_number: int) -> str:
    """Group #1 carries the base name, later groups get a ' #N' suffix"""
    if not group_number or group_number == 1:
        return series.base_group_name
    return f"{series.base_group_name} #{group_number}"


class GroupProvisioningService:
    """Service for group series and managed group rotation"""

    def __init__(
        self,
        gateway: WhatsAppGateway,
        publisher: EventPublisher,
        policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        welcome_template: str = config.WELCOME_MESSAGE_TEMPLATE,
        company_name: str = config.COMPANY_NAME,
    ):
        """
        Args:
            gateway: WhatsApp gateway used for every remote call
            publisher: dashboard event publisher
            policy: retry/timeout policy for idempotent gateway reads
            sleep: coroutine used between retry attempts
            welcome_template: text sent to each new group ({group_name}, {company_name})
            company_name: name shown in the welcome message
        """
        self.gateway = gateway
        self.publisher = publisher
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.welcome_template = welcome_template
        self.company_name = company_name

    # ────────────────────────────────────────────
    # Series management
    # ────────────────────────────────────────────

    async def create_group_series(self, db: Session, tenant_id: str, data: GroupSeriesCreate) -> GroupSeries:
        """
        Create a series and, unless told otherwise, its first group.

        Raises:
            ConfigurationError: duplicate name, or connection missing / not connected
        """
        store = FleetStore(db)
        log.info(f"📦 Creating group series '{data.name}' for tenant {tenant_id}")

        if store.get_series_by_name(tenant_id, data.name):
            raise ConfigurationError(f"A group series named '{data.name}' already exists", target=data.name)

        connection = store.get_connection(tenant_id, data.whatsapp_id)
        if not connection or not connection.is_connected:
            raise ConfigurationError(
                f"WhatsApp connection {data.whatsapp_id} not found or not connected", target=data.name
            )

        series = store.add(GroupSeries(
            tenant_id=tenant_id,
            name=data.name,
            base_group_name=data.base_group_name,
            description=data.description,
            max_participants=data.max_participants,
            threshold_percentage=data.threshold_percentage,
            whatsapp_id=data.whatsapp_id,
            landing_page_id=data.landing_page_id,
            auto_create_enabled=True,
            next_group_number=1,
        ), what=f"series '{data.name}'")

        if data.create_first_group:
            first = await self.create_managed_group(store, series, series.next_group_number)
            store.advance_series(series, first.group_number, first)
            log.info(f"✅ First group created for series '{series.name}': {first.name}")

        activity.info(f"[series] tenant={tenant_id} created series '{series.name}' (max={series.max_participants}, threshold={series.threshold_percentage}%)")
        return series

    def list_group_series(self, db: Session, tenant_id: str) -> List[GroupSeries]:
        return FleetStore(db).list_series(tenant_id)

    def get_group_series(self, db: Session, tenant_id: str, series_id: int) -> GroupSeries:
        series = FleetStore(db).get_series(tenant_id, series_id)
        if not series:
            raise NotFoundError(f"Group series {series_id} not found", target=str(series_id))
        return series

    def get_group_series_by_name(self, db: Session, tenant_id: str, name: str) -> GroupSeries:
        series = FleetStore(db).get_series_by_name(tenant_id, name)
        if not series:
            raise NotFoundError(f"Group series '{name}' not found", target=name)
        return series

    def update_group_series(
        self, db: Session, tenant_id: str, series_id: int, data: GroupSeriesUpdate
    ) -> GroupSeries:
        """Apply changes; new limits are propagated to every managed group of the series"""
        store = FleetStore(db)
        series = self.get_group_series(db, tenant_id, series_id)
        changes = data.model_dump(exclude_unset=True)

        for field, value in changes.items():
            if value is not None:
                setattr(series, field, value)
        store.commit(f"series '{series.name}'")

        if changes.get("max_participants") is not None or changes.get("threshold_percentage") is not None:
            count = store.propagate_capacity(series)
            log.info(f"🔁 Propagated new limits of series '{series.name}' to {count} groups")

        db.refresh(series)
        log.info(f"✅ Series '{series.name}' updated")
        return series

    def remove_group_series(self, db: Session, tenant_id: str, series_id: int) -> dict:
        """Delete a series; its groups stay but become unmanaged"""
        store = FleetStore(db)
        series = self.get_group_series(db, tenant_id, series_id)
        removed = {"id": series.id, "name": series.name}
        removed["detached_groups"] = store.detach_series_groups(series)
        store.delete(series, what=f"series '{removed['name']}'")
        activity.info(f"[series] tenant={tenant_id} removed series '{removed['name']}', {removed['detached_groups']} groups detached")
        return removed

    def get_active_group_for_series(self, db: Session, tenant_id: str, series_name: str) -> Optional[Group]:
        return FleetStore(db).active_group_for_series(tenant_id, series_name)

    def get_series_stats(self, db: Session, tenant_id: str, series_name: str) -> SeriesStats:
        store = FleetStore(db)
        self.get_group_series_by_name(db, tenant_id, series_name)

        groups = store.groups_for_series(tenant_id, series_name)
        total_participants = sum(g.participant_count() for g in groups)
        total_capacity = sum(g.max_participants or 0 for g in groups)
        active = store.active_group_for_series(tenant_id, series_name)

        return SeriesStats(
            series_name=series_name,
            tenant_id=tenant_id,
            total_groups=len(groups),
            active_groups=sum(1 for g in groups if g.is_active),
            full_groups=sum(1 for g in groups if g.is_full()),
            total_participants=total_participants,
            total_capacity=total_capacity,
            occupancy_percentage=(total_participants / total_capacity * 100) if total_capacity > 0 else 0.0,
            active_group=active.summary() if active else None,
            groups=[g.summary() for g in groups],
        )

    # ────────────────────────────────────────────
    # Managed group creation
    # ────────────────────────────────────────────

    async def create_managed_group(
        self, store: FleetStore, series: GroupSeries, group_number: int, is_active: bool = False
    ) -> Group:
        """
        Create group ``group_number`` of ``series`` remotely and persist it.

        The group is stored inactive by default; ``FleetStore.advance_series``
        activates it together with the pointer move. Failures after the remote
        group exists leave it orphaned until the next sync adopts it.
        """
        connection_id = series.whatsapp_id
        name = group_name_for(series, group_number)
        log.info(f"🏗️ Creating group '{name}' (#{group_number}) for series '{series.name}'")

        own_id = await call_with_retry(
            self.gateway.get_own_id, connection_id,
            policy=self.policy, sleep=self.sleep, description=f"own id of connection {connection_id}",
        )
        # Group creation is not idempotent: timeout only, no retry
        jid = await call_with_timeout(
            self.gateway.create_group, connection_id, name, [own_id], timeout=self.policy.timeout
        )
        activity.info(f"[provision] tenant={series.tenant_id} series='{series.name}' remote group created {jid} ('{name}')")

        try:
            if series.description:
                await call_with_retry(
                    self.gateway.update_description, connection_id, jid, series.description,
                    policy=self.policy, sleep=self.sleep, description=f"description of {jid}",
                )
            code = await call_with_retry(
                self.gateway.issue_invite_code, connection_id, jid,
                policy=self.policy, sleep=self.sleep, description=f"invite code of {jid}",
            )
            metadata = await call_with_retry(
                self.gateway.fetch_metadata, connection_id, jid,
                policy=self.policy, sleep=self.sleep, description=f"metadata of {jid}",
            )
            role = resolve_own_role(own_id, None, metadata.participants) or ParticipantRole.ADMIN

            group = store.add(Group(
                tenant_id=series.tenant_id,
                jid=jid,
                name=name,
                description=series.description,
                participants=participants_payload(metadata.participants),
                admin_participants=admin_payload(metadata),
                invite_link=invite_link_for(code),
                whatsapp_id=connection_id,
                user_role=role.value,
                last_sync=datetime.utcnow(),
                sync_status=SyncStatus.SYNCED.value,
                is_managed=True,
                group_series=series.name,
                group_number=group_number,
                base_group_name=series.base_group_name,
                max_participants=series.max_participants,
                threshold_percentage=series.threshold_percentage,
                is_active=is_active,
                auto_create_next=True,
            ), what=f"managed group {jid}")
        except FleetError as e:
            log.error(
                f"❌ Group {jid} was created remotely but could not be registered ({e.kind.value}): {e.message}. "
                f"It stays orphaned until the next sync"
            )
            raise

        await self._send_welcome(connection_id, jid, name)
        log.info(f"✅ Managed group created: {name} (ID: {group.id})")
        return group

    async def _send_welcome(self, connection_id: int, jid: str, name: str) -> None:
        try:
            text = self.welcome_template.format(group_name=name, company_name=self.company_name)
        except (KeyError, IndexError, ValueError) as e:
            log.error(f"❌ WELCOME_MESSAGE_TEMPLATE is invalid ({e!r}), no welcome sent to {jid}")
            return
        try:
            await call_with_timeout(self.gateway.send_message, connection_id, jid, text, timeout=self.policy.timeout)
        except GatewayError as e:
            log.warning(f"⚠️ Welcome message to {jid} failed: {e.message}")

    # ────────────────────────────────────────────
    # Metadata refresh
    # ────────────────────────────────────────────

    async def _refresh_metadata(self, store: FleetStore, group: Group) -> None:
        metadata = await call_with_retry(
            self.gateway.fetch_metadata, group.whatsapp_id, group.jid,
            policy=self.policy, sleep=self.sleep, description=f"metadata of {group.jid}",
        )
        group.name = metadata.subject or group.name
        group.participants = participants_payload(metadata.participants)
        group.admin_participants = admin_payload(metadata)
        group.last_sync = datetime.utcnow()
        group.sync_status = SyncStatus.SYNCED.value
        store.commit(f"metadata of group {group.id}")
        log.debug(f"🔄 Metadata refreshed for {group.name}: {group.participant_count()} participants")

    async def refresh_group_metadata(self, store: FleetStore, group: Group) -> bool:
        """Best-effort refresh; failures are logged and the stored snapshot is kept"""
        if not group.whatsapp_id:
            return False
        try:
            await self._refresh_metadata(store, group)
            return True
        except (GatewayError, PersistenceError) as e:
            log.error(f"❌ Failed to refresh metadata of group {group.id}: {e.message}")
            return False

    async def sync_managed_groups(self, db: Session, tenant_id: str) -> ManagedSyncResult:
        """Refresh the metadata of every managed group of a tenant"""
        store = FleetStore(db)
        result = ManagedSyncResult()
        for group in store.managed_groups(tenant_id):
            if not group.whatsapp_id:
                continue
            try:
                await self._refresh_metadata(store, group)
                result.synced += 1
            except (GatewayError, PersistenceError) as e:
                result.errors.append(OperationError.from_exception(e, target=group.name))
        log.info(f"✅ Managed groups refreshed: {result.synced} synced, {len(result.errors)} errors")
        return result

    async def validate_group_for_management(
        self, db: Session, tenant_id: str, group_jid: str, whatsapp_id: int
    ) -> bool:
        """True only when the connection is admin of the remote group"""
        connection = FleetStore(db).get_connection(tenant_id, whatsapp_id)
        if not connection:
            return False
        try:
            own_id = await call_with_retry(
                self.gateway.get_own_id, whatsapp_id, policy=self.policy, sleep=self.sleep,
            )
            metadata = await call_with_retry(
                self.gateway.fetch_metadata, whatsapp_id, group_jid, policy=self.policy, sleep=self.sleep,
            )
        except GatewayError as e:
            log.error(f"❌ Could not validate group {group_jid}: {e.message}")
            return False

        role = resolve_own_role(own_id, connection.number, metadata.participants)
        if role not in (ParticipantRole.ADMIN, ParticipantRole.SUPERADMIN):
            log.warning(f"⚠️ Connection {whatsapp_id} is not admin of group {group_jid}")
            return False
        return True

    # ────────────────────────────────────────────
    # Rotation
    # ────────────────────────────────────────────

    def _current_group(self, store: FleetStore, series: GroupSeries) -> Optional[Group]:
        if series.current_active_group_id:
            group = store.get_group(series.current_active_group_id)
            if group and group.is_active and group.is_managed and group.group_series == series.name:
                return group
        return store.active_group_for_series(series.tenant_id, series.name)

    async def _rotate(self, store: FleetStore, series: GroupSeries, previous: Optional[Group]) -> Group:
        number = series.next_group_number
        new_group = await self.create_managed_group(store, series, number)
        try:
            store.advance_series(series, number, new_group, retire_group=previous)
        except ConcurrencyConflictError:
            # Another writer took this number; keep the remote group but out of the series
            new_group.is_managed = False
            new_group.group_series = None
            store.commit(f"detach of conflicting group {new_group.id}")
            raise
        return new_group

    async def publish_deactivated(self, group: Group) -> None:
        await self.publisher.publish(group.tenant_id, GROUP_DEACTIVATED, {
            "action": "group_deactivated",
            "group": {
                "id": group.id,
                "name": group.name,
                "participant_count": group.participant_count(),
                "max_participants": group.max_participants,
                "series": group.group_series,
            },
        })

    async def _publish_provisioned(
        self, series: GroupSeries, action: str, new_group: Group, old_group: Optional[Group], occupancy: Optional[float]
    ) -> None:
        await self.publisher.publish(series.tenant_id, GROUP_PROVISIONED, {
            "action": action,
            "series": series.name,
            "old_group": {
                "id": old_group.id,
                "name": old_group.name,
                "occupancy": occupancy,
            } if old_group else None,
            "new_group": {
                "id": new_group.id,
                "name": new_group.name,
                "group_number": new_group.group_number,
                "invite_link": new_group.invite_link,
            },
        })

    async def process_series(
        self, db: Session, series: GroupSeries, outcome: Optional[ProvisioningOutcome] = None
    ) -> ProvisioningOutcome:
        """
        Evaluate one series and rotate it when its active group is near capacity or full.

        ``outcome`` is filled in as the evaluation progresses, so a caller that
        passes its own instance still sees a retirement when creation fails.

        Raises:
            ConfigurationError: the series has no active group
            GatewayError / PersistenceError / ConcurrencyConflictError: creation of the next group failed
        """
        store = FleetStore(db)
        if outcome is None:
            outcome = ProvisioningOutcome(series_name=series.name, tenant_id=series.tenant_id)

        active = self._current_group(store, series)
        if active is None:
            raise ConfigurationError(f"No active group found for series '{series.name}'", target=series.name)
        outcome.checked_group_id = active.id

        await self.refresh_group_metadata(store, active)

        report = active.capacity_report()
        outcome.occupancy = report.occupancy
        outcome.should_create_next = report.should_create_next
        if not report.should_create_next:
            log.debug(f"Series '{series.name}': {active.name} at {report.occupancy:.1f}%, nothing to do")
            return outcome

        log.info(f"📈 Group {active.name} reached {report.occupancy:.1f}% ({report.participant_count}/{report.max_participants})")

        if report.is_full:
            store.retire_group(active)
            outcome.deactivated_group_id = active.id
            activity.info(f"[provision] tenant={series.tenant_id} series='{series.name}' retired full group {active.name} ({report.participant_count}/{report.max_participants})")
            await self.publish_deactivated(active)

        new_group = await self._rotate(store, series, previous=active)
        outcome.created_group_id = new_group.id
        outcome.created_group_number = new_group.group_number
        outcome.invite_link = new_group.invite_link

        activity.info(f"[provision] tenant={series.tenant_id} series='{series.name}' now active on {new_group.name} (#{new_group.group_number})")
        await self._publish_provisioned(series, "new_group_created", new_group, active, report.occupancy)
        return outcome

    async def force_create_next_group(self, db: Session, tenant_id: str, series_name: str) -> Group:
        """Retire the current group (if any) and create the next one regardless of occupancy"""
        store = FleetStore(db)
        series = self.get_group_series_by_name(db, tenant_id, series_name)
        if not series.connection or not series.connection.is_connected:
            raise ConfigurationError(f"Connection of series '{series_name}' is not connected", target=series_name)

        previous = store.get_group(series.current_active_group_id) if series.current_active_group_id else None
        occupancy = None
        if previous is not None and previous.is_active:
            occupancy = previous.occupancy_percentage()
            store.retire_group(previous)
            activity.info(f"[provision] tenant={tenant_id} series='{series_name}' manually retired {previous.name}")
            await self.publish_deactivated(previous)

        new_group = await self._rotate(store, series, previous=None)
        activity.info(f"[provision] tenant={tenant_id} series='{series_name}' manually created {new_group.name} (#{new_group.group_number})")
        await self._publish_provisioned(series, "manual_group_created", new_group, previous, occupancy)
        return new_group
