import asyncio
from unittest import mock

import pytest

from groupfleet.core.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    ErrorKind,
    GroupNotFoundError,
    PersistenceError,
    TransientGatewayError,
)
from groupfleet.models.connection import ConnectionStatus
from groupfleet.models.group import Group, SyncStatus
from groupfleet.models.group_series import GroupSeries
from groupfleet.schemas.gateway import Participant, ParticipantRole
from groupfleet.services.fleet_store import FleetStore
from groupfleet.services.sync_service import GroupSyncService, chunked, resolve_own_role
from groupfleet.ws.manager import SYNC_COMPLETE, SYNC_PROGRESS

from conftest import OWN_ID, OWN_NUMBER, SECOND_ID, SECOND_NUMBER

BATCH_DELAY = 1.5


@pytest.fixture
def service(gateway, publisher, policy, sleep):
    return GroupSyncService(gateway, publisher, policy, batch_size=5, batch_delay=BATCH_DELAY, sleep=sleep)


@pytest.fixture
def connection(make_connection):
    return make_connection()


def local_groups(db, tenant_id="t1"):
    db.expire_all()
    return {g.jid: g for g in db.query(Group).filter(Group.tenant_id == tenant_id).all()}


# ────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────

def test_chunked():
    assert chunked(list("abcdefg"), 3) == [["a", "b", "c"], ["d", "e", "f"], ["g"]]
    assert chunked([], 5) == []
    assert chunked(["a"], 0) == [["a"]]


def test_resolve_own_role_prefers_exact_id_then_phone_digits():
    participants = [
        Participant(id=f"{OWN_NUMBER}:7@s.whatsapp.net", role=ParticipantRole.SUPERADMIN),
        Participant(id="5511000000001@s.whatsapp.net"),
    ]
    assert resolve_own_role(f"{OWN_NUMBER}:7@s.whatsapp.net", None, participants) == ParticipantRole.SUPERADMIN
    assert resolve_own_role(OWN_ID, None, participants) == ParticipantRole.SUPERADMIN
    assert resolve_own_role(None, "+55 11 99999-0000", participants) == ParticipantRole.SUPERADMIN
    assert resolve_own_role("5511222220000@s.whatsapp.net", None, participants) is None
    assert resolve_own_role(None, None, participants) is None


# ────────────────────────────────────────────
# Sync
# ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_twelve_groups_are_fetched_in_three_batches(db, service, gateway, publisher, sleep, connection):
    for i in range(12):
        gateway.add_group(f"g{i:02d}@g.us", connection_id=connection.id)

    result = await service.sync(db, "t1")

    assert result.total_groups == 12
    assert result.new_groups == 12
    assert result.errors == []
    assert sleep.delays.count(BATCH_DELAY) == 2
    progress = [e for e in publisher.named(SYNC_PROGRESS) if e[2]["action"] == "progress"]
    assert [e[2]["progress"]["current"] for e in progress] == [5, 10, 12]
    assert len(local_groups(db)) == 12


@pytest.mark.asyncio
async def test_metadata_recovers_after_two_transient_failures(db, service, gateway, sleep, connection):
    jid = gateway.add_group("flaky@g.us", connection_id=connection.id)
    gateway.fail("fetch_metadata", TransientGatewayError("502"), TransientGatewayError("503"), key=jid)

    result = await service.sync(db, "t1")

    assert result.errors == []
    assert gateway.calls_to("fetch_metadata", jid) == 3
    assert sleep.delays == [1.0, 2.0]
    assert local_groups(db)[jid].sync_status == SyncStatus.SYNCED.value


@pytest.mark.asyncio
async def test_sync_is_idempotent(db, service, gateway, connection):
    for i in range(3):
        gateway.add_group(f"g{i}@g.us", connection_id=connection.id, participants=4)

    first = await service.sync(db, "t1")
    snapshot = {jid: (g.name, g.participants, g.invite_link) for jid, g in local_groups(db).items()}
    second = await service.sync(db, "t1")

    assert first.new_groups == 3
    assert second.new_groups == 0
    assert second.updated_groups == 3
    assert second.removed_groups == 0
    assert {jid: (g.name, g.participants, g.invite_link) for jid, g in local_groups(db).items()} == snapshot


@pytest.mark.asyncio
async def test_upsert_stores_role_invite_link_and_participants(db, service, gateway, connection):
    gateway.add_group("admin@g.us", connection_id=connection.id, subject="Admins", participants=3)
    gateway.add_group("member@g.us", connection_id=connection.id, participants=2, own_role="member")

    result = await service.sync(db, "t1")

    groups = local_groups(db)
    admin, member = groups["admin@g.us"], groups["member@g.us"]
    assert result.admin_groups == 1
    assert result.participant_groups == 1
    assert admin.name == "Admins"
    assert admin.user_role == "admin"
    assert admin.invite_link == "https://chat.whatsapp.com/CODEadmin"
    assert admin.admin_participants == [OWN_ID]
    assert admin.participants[0] == {"id": OWN_ID, "number": OWN_NUMBER, "admin": "admin", "is_admin": True}
    assert member.user_role == "member"
    assert member.invite_link is None
    assert gateway.calls_to("issue_invite_code", "member@g.us") == 0


@pytest.mark.asyncio
async def test_reconciliation_removes_groups_no_longer_seen(db, service, gateway, connection, make_group):
    gateway.add_group("still@g.us", connection_id=connection.id)
    left = make_group(jid="left@g.us", series="vip", number=1, whatsapp_id=connection.id)
    series = GroupSeries(tenant_id="t1", name="vip", base_group_name="VIP", whatsapp_id=connection.id,
                         current_active_group_id=left.id, next_group_number=2)
    db.add(series)
    db.commit()

    result = await service.sync(db, "t1")

    assert result.removed_groups == 1
    assert set(local_groups(db)) == {"still@g.us"}
    db.refresh(series)
    assert series.current_active_group_id is None


@pytest.mark.asyncio
async def test_transient_failure_keeps_existing_row_not_found_removes_it(db, service, gateway, connection, make_group):
    gateway.add_group("flaky@g.us", connection_id=connection.id)
    gateway.add_group("gone@g.us", connection_id=connection.id)
    make_group(jid="flaky@g.us", whatsapp_id=connection.id)
    make_group(jid="gone@g.us", whatsapp_id=connection.id)
    gateway.fail("fetch_metadata", *(TransientGatewayError("down") for _ in range(3)), key="flaky@g.us")
    gateway.fail("fetch_metadata", GroupNotFoundError("gone"), key="gone@g.us")

    result = await service.sync(db, "t1")

    groups = local_groups(db)
    assert groups["flaky@g.us"].sync_status == SyncStatus.ERROR.value
    assert "gone@g.us" not in groups
    assert {(e.kind, e.target) for e in result.errors} == {
        (ErrorKind.TRANSIENT, "flaky@g.us"),
        (ErrorKind.NOT_FOUND, "gone@g.us"),
    }
    assert gateway.calls_to("fetch_metadata", "gone@g.us") == 1


@pytest.mark.asyncio
async def test_listing_failure_keeps_that_connections_groups(db, service, gateway, make_connection, make_group):
    broken = make_connection(name="broken")
    healthy = make_connection(name="healthy")
    make_group(jid="kept@g.us", whatsapp_id=broken.id)
    gateway.add_group("fresh@g.us", connection_id=healthy.id)
    gateway.fail(
        "list_participating_groups", *(TransientGatewayError("down") for _ in range(3)), key=str(broken.id)
    )

    result = await service.sync(db, "t1")

    groups = local_groups(db)
    assert groups["kept@g.us"].sync_status == SyncStatus.ERROR.value
    assert groups["fresh@g.us"].sync_status == SyncStatus.SYNCED.value
    assert result.connections_used == 1
    assert [e.target for e in result.errors] == [f"connection:{broken.id}"]


@pytest.mark.asyncio
async def test_disconnected_connections_are_ignored(db, service, gateway, make_connection, publisher):
    make_connection(status=ConnectionStatus.DISCONNECTED)

    with pytest.raises(ConfigurationError):
        await service.sync(db, "t1")

    assert publisher.named(SYNC_COMPLETE) == []
    assert publisher.named(SYNC_PROGRESS)[-1][2]["action"] == "error"


@pytest.mark.asyncio
async def test_failed_sync_turns_syncing_rows_into_errors(db, service, gateway, connection, make_group):
    gateway.add_group("orphan@g.us", connection_id=connection.id)
    make_group(jid="orphan@g.us", whatsapp_id=connection.id)
    gateway.fail("fetch_metadata", RuntimeError("boom"), key="orphan@g.us")

    with pytest.raises(RuntimeError):
        await service.sync(db, "t1")

    assert local_groups(db)["orphan@g.us"].sync_status == SyncStatus.ERROR.value
    assert not service.is_running("t1")


@pytest.mark.asyncio
async def test_groups_of_disconnected_connections_survive_reconciliation(
    db, service, gateway, make_connection, make_group
):
    online = make_connection(name="a")
    offline = make_connection(name="b", status=ConnectionStatus.DISCONNECTED)
    gateway.add_group("fresh@g.us", connection_id=online.id)
    active = make_group(jid="vip1@g.us", series="vip", number=1, whatsapp_id=offline.id)
    series = GroupSeries(tenant_id="t1", name="vip", base_group_name="VIP", whatsapp_id=offline.id,
                         current_active_group_id=active.id, next_group_number=2)
    db.add(series)
    db.commit()

    result = await service.sync(db, "t1")

    groups = local_groups(db)
    assert result.removed_groups == 0
    assert groups["vip1@g.us"].sync_status == SyncStatus.SYNCED.value
    assert groups["fresh@g.us"].sync_status == SyncStatus.SYNCED.value
    db.refresh(series)
    assert series.current_active_group_id == active.id
    assert gateway.calls_to("list_participating_groups", str(offline.id)) == 0


@pytest.mark.asyncio
async def test_group_shared_by_two_connections_is_counted_once_and_kept_on_admin(
    db, service, gateway, make_connection
):
    first = make_connection(name="a")
    second = make_connection(name="b", number=SECOND_NUMBER)
    gateway.own_ids[second.id] = SECOND_ID
    # member on the first connection, admin on the second
    gateway.add_group("promoted@g.us", connection_id=first.id, participants=3, own_role="member")
    gateway.groups["promoted@g.us"]["participants"].append({"id": SECOND_ID, "admin": "admin"})
    gateway.memberships.setdefault(second.id, []).append("promoted@g.us")
    # admin on the first connection, member on the second
    gateway.add_group("owned@g.us", connection_id=first.id, participants=3)
    gateway.groups["owned@g.us"]["participants"].append({"id": SECOND_ID, "admin": None})
    gateway.memberships[second.id].append("owned@g.us")

    result = await service.sync(db, "t1")

    groups = local_groups(db)
    assert result.total_groups == 2
    assert result.new_groups == 2
    assert result.updated_groups == 0
    assert result.admin_groups == 2
    assert result.participant_groups == 0
    assert (groups["promoted@g.us"].whatsapp_id, groups["promoted@g.us"].user_role) == (second.id, "admin")
    assert groups["promoted@g.us"].invite_link == "https://chat.whatsapp.com/CODEpromoted"
    assert (groups["owned@g.us"].whatsapp_id, groups["owned@g.us"].user_role) == (first.id, "admin")
    assert gateway.calls_to("fetch_metadata", "owned@g.us") == 1


@pytest.mark.asyncio
async def test_unpersisted_error_flag_is_reported_and_group_kept(db, service, gateway, connection, make_group):
    gateway.add_group("flaky@g.us", connection_id=connection.id)
    gateway.add_group("fine@g.us", connection_id=connection.id)
    make_group(jid="flaky@g.us", whatsapp_id=connection.id)
    gateway.fail("fetch_metadata", *(TransientGatewayError("down") for _ in range(3)), key="flaky@g.us")
    original_commit = FleetStore.commit

    def commit(store, what="changes"):
        if what.startswith("sync error flag"):
            store.db.rollback()
            raise PersistenceError(f"Failed to persist {what}: OperationalError")
        return original_commit(store, what)

    with mock.patch.object(FleetStore, "commit", commit):
        result = await service.sync(db, "t1")

    groups = local_groups(db)
    assert {(e.kind, e.target) for e in result.errors} == {
        (ErrorKind.TRANSIENT, "flaky@g.us"),
        (ErrorKind.PERSISTENCE, "flaky@g.us"),
    }
    assert result.removed_groups == 0
    assert groups["flaky@g.us"].sync_status == SyncStatus.ERROR.value
    assert groups["fine@g.us"].sync_status == SyncStatus.SYNCED.value


@pytest.mark.asyncio
async def test_sync_complete_event_carries_result(db, service, gateway, publisher, connection):
    gateway.add_group("g@g.us", connection_id=connection.id)

    await service.sync(db, "t1")

    [(tenant_id, _, payload)] = publisher.named(SYNC_COMPLETE)
    assert tenant_id == "t1"
    assert payload["result"]["total_groups"] == 1


@pytest.mark.asyncio
async def test_second_sync_for_same_tenant_is_rejected(db, session_factory, service, gateway, connection):
    gateway.add_group("g@g.us", connection_id=connection.id)
    gateway.gate = asyncio.Event()

    first = asyncio.create_task(service.sync(db, "t1"))
    for _ in range(50):
        if gateway.calls_to("fetch_metadata"):
            break
        await asyncio.sleep(0)
    assert service.is_running("t1")

    other = session_factory()
    try:
        with pytest.raises(ConcurrencyConflictError):
            await service.sync(other, "t1")
    finally:
        other.close()

    gateway.gate.set()
    result = await first
    assert result.new_groups == 1
    assert not service.is_running("t1")


@pytest.mark.asyncio
async def test_tenants_are_isolated(db, service, gateway, make_connection, make_group):
    connection = make_connection(tenant_id="t1")
    make_group(tenant_id="t2", jid="other@g.us")
    gateway.add_group("mine@g.us", connection_id=connection.id)

    await service.sync(db, "t1")

    assert set(local_groups(db, "t2")) == {"other@g.us"}
    assert local_groups(db, "t2")["other@g.us"].sync_status == SyncStatus.SYNCED.value
    assert FleetStore(db).get_group_by_jid("t1", "mine@g.us") is not None
