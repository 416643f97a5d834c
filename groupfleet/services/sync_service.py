# groupfleet/services/sync_service.py
"""
Group sync service - reconciles the local ``groups`` table with the groups each
connected WhatsApp connection actually belongs to.

Flow:
1. Mark the groups owned by connected connections ``syncing`` (groups of
   disconnected connections are not observed, so they are left untouched)
2. Per connected connection: list remote groups, then fetch metadata in
   batches (pause between batches, bounded retry per group)
3. Upsert each group by (tenant_id, jid); ask for an invite code only when the
   connection is admin
4. Delete whatever is still ``syncing`` (groups the connections have left)
5. On a top-level failure turn leftover ``syncing`` rows into ``error`` and re-raise
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from groupfleet.core import config
from groupfleet.core.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    GatewayError,
    GroupNotFoundError,
    PersistenceError,
)
from groupfleet.core.logging_config import get_activity_logger
from groupfleet.models.connection import WhatsAppConnection
from groupfleet.models.group import Group, SyncStatus
from groupfleet.schemas.gateway import GroupMetadata, Participant, ParticipantRole
from groupfleet.schemas.results import OperationError, SyncResult
from groupfleet.services.fleet_store import FleetStore
from groupfleet.services.gateway import WhatsAppGateway, invite_link_for
from groupfleet.services.retry import RetryPolicy, Sleep, call_with_retry
from groupfleet.services.sanitize import admin_payload, normalize_phone, participants_payload
from groupfleet.ws.manager import SYNC_COMPLETE, SYNC_PROGRESS, EventPublisher

log = logging.getLogger("groupfleet.sync")
activity = get_activity_logger()


def resolve_own_role(
    own_id: Optional[str],
    connection_number: Optional[str],
    participants: Iterable[Participant],
) -> Optional[ParticipantRole]:
    """
    Role of the connection inside a group.

    Matches the exact remote id first, then falls back to comparing phone
    digits because the gateway formats ids inconsistently
    ("5511...:12@s.whatsapp.net" vs "5511...@s.whatsapp.net").
    """
    participants = list(participants)
    if own_id:
        for p in participants:
            if p.id == own_id:
                return p.role

    wanted = {n for n in (normalize_phone(own_id), normalize_phone(connection_number)) if n}
    if not wanted:
        return None
    for p in participants:
        if normalize_phone(p.id) in wanted:
            return p.role
    return None


def chunked(items: List[str], size: int) -> List[List[str]]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


@dataclass
class _SyncRun:
    """Bookkeeping shared by the connections of one sync"""
    listed: Set[str] = field(default_factory=set)
    synced: Dict[str, bool] = field(default_factory=dict)  # jid -> stored through an admin connection
    kept: Set[str] = field(default_factory=set)  # failed transiently, never reconciled away


class GroupSyncService:
    """Service that keeps local groups in line with the gateway"""

    def __init__(
        self,
        gateway: WhatsAppGateway,
        publisher: EventPublisher,
        policy: Optional[RetryPolicy] = None,
        batch_size: int = config.SYNC_BATCH_SIZE,
        batch_delay: float = config.SYNC_BATCH_DELAY,
        sleep: Sleep = asyncio.sleep,
    ):
        self.gateway = gateway
        self.publisher = publisher
        self.policy = policy or RetryPolicy()
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.sleep = sleep
        self._running: Set[str] = set()

    def is_running(self, tenant_id: str) -> bool:
        return tenant_id in self._running

    async def sync(self, db, tenant_id: str) -> SyncResult:
        """
        Run a full sync for one tenant.

        Raises:
            ConcurrencyConflictError: a sync for the tenant is already running
            ConfigurationError: the tenant has no connected connection
            PersistenceError: the database rejected a bookkeeping write
        """
        if tenant_id in self._running:
            raise ConcurrencyConflictError(f"A sync is already running for tenant {tenant_id}", target=tenant_id)
        self._running.add(tenant_id)
        try:
            return await self._sync(FleetStore(db), tenant_id)
        finally:
            self._running.discard(tenant_id)

    async def _sync(self, store: FleetStore, tenant_id: str) -> SyncResult:
        started = datetime.utcnow()
        result = SyncResult()
        run = _SyncRun()
        log.info(f"🔄 Starting group sync for tenant {tenant_id}")
        await self.publisher.publish(tenant_id, SYNC_PROGRESS, {"action": "start", "status": "Starting sync"})

        try:
            connections = store.list_connected_connections(tenant_id)
            if not connections:
                raise ConfigurationError("No connected WhatsApp connection for this tenant", target=tenant_id)

            # Only groups of the connections walked below can be found missing
            store.mark_tenant_syncing(tenant_id, [c.id for c in connections])

            for connection in connections:
                await self._sync_connection(store, tenant_id, connection, result, run)

            removed = store.delete_unobserved_groups(tenant_id, keep_jids=run.kept)
            result.removed_groups = len(removed)
            for group in removed:
                activity.info(f"[sync] tenant={tenant_id} removed group {group['name']} ({group['jid']}) not seen remotely")
        except Exception as e:
            log.error(f"❌ Group sync failed for tenant {tenant_id}: {e}")
            try:
                store.mark_syncing_as(tenant_id, SyncStatus.ERROR)
            except PersistenceError as revert_error:
                log.error(f"❌ Could not revert syncing groups to error: {revert_error}")
            await self.publisher.publish(tenant_id, SYNC_PROGRESS, {
                "action": "error",
                "status": "Sync failed",
                "error": OperationError.from_exception(e).model_dump(),
            })
            raise

        duration = (datetime.utcnow() - started).total_seconds()
        log.info(
            f"✅ Sync finished for tenant {tenant_id} in {duration:.1f}s: "
            f"{result.total_groups} groups, {result.new_groups} new, {result.updated_groups} updated, "
            f"{result.removed_groups} removed, {len(result.errors)} errors"
        )
        activity.info(
            f"[sync] tenant={tenant_id} total={result.total_groups} new={result.new_groups} "
            f"updated={result.updated_groups} removed={result.removed_groups} errors={len(result.errors)}"
        )
        await self.publisher.publish(tenant_id, SYNC_COMPLETE, {
            "action": "complete",
            "status": "Sync completed",
            "result": result.model_dump(),
        })
        return result

    # ────────────────────────────────────────────
    # Per connection
    # ────────────────────────────────────────────

    async def _sync_connection(
        self,
        store: FleetStore,
        tenant_id: str,
        connection: WhatsAppConnection,
        result: SyncResult,
        run: _SyncRun,
    ) -> None:
        target = f"connection:{connection.id}"
        try:
            own_id = await call_with_retry(
                self.gateway.get_own_id, connection.id,
                policy=self.policy, sleep=self.sleep, description=f"own id of {target}",
            )
            remote_ids = await call_with_retry(
                self.gateway.list_participating_groups, connection.id,
                policy=self.policy, sleep=self.sleep, description=f"group listing of {target}",
            )
        except GatewayError as e:
            log.error(f"❌ Could not list groups for connection {connection.name}: {e.message}")
            result.errors.append(OperationError.from_exception(e, target=target))
            # Keep this connection's groups; nothing was observed for them
            try:
                store.mark_syncing_as(tenant_id, SyncStatus.ERROR, whatsapp_id=connection.id)
            except PersistenceError as flag_error:
                result.errors.append(OperationError.from_exception(flag_error, target=target))
                run.kept.update(g.jid for g in store.list_groups(tenant_id) if g.whatsapp_id == connection.id)
            return

        result.connections_used += 1
        result.total_groups += sum(1 for jid in remote_ids if jid not in run.listed)
        run.listed.update(remote_ids)
        # Groups already stored through an admin connection are not fetched again
        pending = [jid for jid in remote_ids if not run.synced.get(jid)]
        log.info(
            f"📋 Connection {connection.name} participates in {len(remote_ids)} groups "
            f"({len(remote_ids) - len(pending)} already synced)"
        )

        processed = 0
        for index, batch in enumerate(chunked(pending, self.batch_size)):
            if index > 0:
                await self.sleep(self.batch_delay)

            outcomes = await asyncio.gather(
                *(self._fetch_metadata(connection.id, jid) for jid in batch),
                return_exceptions=True,
            )
            for jid, outcome in zip(batch, outcomes):
                if isinstance(outcome, GatewayError):
                    self._record_group_failure(store, tenant_id, jid, outcome, result, run)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    await self._upsert_group(store, tenant_id, connection, own_id, outcome, result, run)

            processed += len(batch)
            await self.publisher.publish(tenant_id, SYNC_PROGRESS, {
                "action": "progress",
                "status": f"Synchronizing groups of {connection.name}",
                "connection_id": connection.id,
                "progress": {"current": processed, "total": len(pending)},
            })

    async def _fetch_metadata(self, connection_id: int, jid: str) -> GroupMetadata:
        return await call_with_retry(
            self.gateway.fetch_metadata, connection_id, jid,
            policy=self.policy, sleep=self.sleep, description=f"metadata of {jid}",
        )

    def _record_group_failure(
        self, store: FleetStore, tenant_id: str, jid: str, error: GatewayError, result: SyncResult, run: _SyncRun
    ) -> None:
        if jid in run.synced:
            log.debug(f"Group {jid} already synced through another connection, ignoring: {error.message}")
            return
        log.warning(f"⚠️ Skipping group {jid}: {error.message}")
        result.errors.append(OperationError.from_exception(error, target=jid))
        if isinstance(error, GroupNotFoundError):
            # Gone remotely: leave it "syncing" so reconciliation removes it
            return
        self._flag_error(store, tenant_id, jid, result, run)

    def _flag_error(self, store: FleetStore, tenant_id: str, jid: str, result: SyncResult, run: _SyncRun) -> None:
        """Mark a stored group ``error`` so reconciliation keeps it"""
        run.kept.add(jid)
        existing = store.get_group_by_jid(tenant_id, jid)
        if existing is None:
            return
        existing.sync_status = SyncStatus.ERROR.value
        try:
            store.commit(f"sync error flag for {jid}")
        except PersistenceError as e:
            result.errors.append(OperationError.from_exception(e, target=jid))

    # ────────────────────────────────────────────
    # Per group
    # ────────────────────────────────────────────

    async def _upsert_group(
        self,
        store: FleetStore,
        tenant_id: str,
        connection: WhatsAppConnection,
        own_id: Optional[str],
        metadata: GroupMetadata,
        result: SyncResult,
        run: _SyncRun,
    ) -> None:
        role = resolve_own_role(own_id, connection.number, metadata.participants)
        is_admin = role in (ParticipantRole.ADMIN, ParticipantRole.SUPERADMIN)

        # Stored as member through an earlier connection: only an admin connection takes it over
        seen_as_member = run.synced.get(metadata.id) is False
        if seen_as_member and not is_admin:
            return

        invite_link = await self._invite_link(connection.id, metadata.id) if is_admin else None

        now = datetime.utcnow()
        fields = {
            "name": metadata.subject or metadata.id,
            "description": metadata.description,
            "participants": participants_payload(metadata.participants),
            "admin_participants": admin_payload(metadata),
            "whatsapp_id": connection.id,
            "user_role": role.value if role else ParticipantRole.MEMBER.value,
            "last_sync": now,
            "sync_status": SyncStatus.SYNCED.value,
        }

        group = store.get_group_by_jid(tenant_id, metadata.id)
        is_new = group is None
        try:
            if is_new:
                group = Group(tenant_id=tenant_id, jid=metadata.id, invite_link=invite_link, **fields)
                store.db.add(group)
            else:
                for key, value in fields.items():
                    setattr(group, key, value)
                if invite_link:
                    group.invite_link = invite_link
            store.commit(f"group {metadata.id}")
        except PersistenceError as e:
            result.errors.append(OperationError.from_exception(e, target=metadata.id))
            if not is_new:
                self._flag_error(store, tenant_id, metadata.id, result, run)
            return

        run.synced[metadata.id] = is_admin
        if seen_as_member:
            result.participant_groups -= 1
            result.admin_groups += 1
            return

        if is_new:
            result.new_groups += 1
        else:
            result.updated_groups += 1
        if is_admin:
            result.admin_groups += 1
        else:
            result.participant_groups += 1

    async def _invite_link(self, connection_id: int, jid: str) -> Optional[str]:
        try:
            code = await call_with_retry(
                self.gateway.issue_invite_code, connection_id, jid,
                policy=self.policy, sleep=self.sleep, description=f"invite code of {jid}",
            )
        except GatewayError as e:
            log.warning(f"⚠️ Could not fetch invite code for {jid}: {e.message}")
            return None
        return invite_link_for(code)
