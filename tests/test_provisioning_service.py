import pytest

from groupfleet.core.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    NotFoundError,
    PermanentGatewayError,
    TransientGatewayError,
)
from groupfleet.models.connection import ConnectionStatus
from groupfleet.models.group import Group
from groupfleet.models.group_series import GroupSeries
from groupfleet.schemas.group_series import GroupSeriesCreate, GroupSeriesUpdate
from groupfleet.schemas.results import ProvisioningOutcome
from groupfleet.services.provisioning_service import GroupProvisioningService, group_name_for
from groupfleet.ws.manager import GROUP_DEACTIVATED, GROUP_PROVISIONED


@pytest.fixture
def service(gateway, publisher, policy, sleep):
    return GroupProvisioningService(
        gateway, publisher, policy, sleep=sleep,
        welcome_template="Welcome to {group_name} by {company_name}", company_name="Acme",
    )


@pytest.fixture
def connection(make_connection):
    return make_connection()


def series_data(connection, **overrides):
    fields = dict(
        name="vip", base_group_name="VIP", description="Members area",
        max_participants=10, threshold_percentage=90, whatsapp_id=connection.id,
    )
    fields.update(overrides)
    return GroupSeriesCreate(**fields)


def active_groups(db, series_name="vip"):
    db.expire_all()
    return db.query(Group).filter(Group.group_series == series_name, Group.is_active == True).all()


def group_number_of(db, number, series_name="vip"):
    db.expire_all()
    return db.query(Group).filter(Group.group_series == series_name, Group.group_number == number).one()


def record_active_state_at_creation(gateway, session_factory, group_id):
    """Capture whether ``group_id`` is still active when the gateway creates a group"""
    seen = []

    def check():
        session = session_factory()
        try:
            seen.append(session.get(Group, group_id).is_active)
        finally:
            session.close()

    gateway.before_create = check
    return seen


# ────────────────────────────────────────────
# Series management
# ────────────────────────────────────────────

def test_group_name_for():
    series = GroupSeries(base_group_name="Launch")
    assert group_name_for(series, 1) == "Launch"
    assert group_name_for(series, 4) == "Launch #4"


@pytest.mark.asyncio
async def test_create_series_creates_first_group(db, service, gateway, connection):
    series = await service.create_group_series(db, "t1", series_data(connection))

    assert series.next_group_number == 2
    first = group_number_of(db, 1)
    assert series.current_active_group_id == first.id
    assert first.name == "VIP"
    assert first.is_active and first.is_managed
    assert first.user_role == "superadmin"
    assert first.invite_link == f"https://chat.whatsapp.com/CODE{first.jid.split('@')[0]}"
    assert first.max_participants == 10
    assert gateway.groups[first.jid]["desc"] == "Members area"
    assert gateway.messages == [(first.jid, "Welcome to VIP by Acme")]


@pytest.mark.asyncio
async def test_create_series_without_first_group(db, service, gateway, connection):
    series = await service.create_group_series(db, "t1", series_data(connection, create_first_group=False))

    assert series.next_group_number == 1
    assert series.current_active_group_id is None
    assert gateway.calls_to("create_group") == 0
    with pytest.raises(ConfigurationError):
        await service.process_series(db, series)


@pytest.mark.asyncio
async def test_create_series_rejects_duplicates_and_bad_connections(db, service, connection, make_connection):
    await service.create_group_series(db, "t1", series_data(connection))
    offline = make_connection(name="offline", status=ConnectionStatus.DISCONNECTED)

    with pytest.raises(ConfigurationError):
        await service.create_group_series(db, "t1", series_data(connection))
    with pytest.raises(ConfigurationError):
        await service.create_group_series(db, "t1", series_data(offline, name="other"))
    with pytest.raises(ConfigurationError):
        await service.create_group_series(db, "t1", series_data(connection, name="x", whatsapp_id=999))


@pytest.mark.asyncio
async def test_welcome_message_failure_does_not_fail_creation(db, service, gateway, connection):
    gateway.fail("send_message", PermanentGatewayError("blocked"))

    series = await service.create_group_series(db, "t1", series_data(connection))

    assert series.current_active_group_id is not None
    assert gateway.messages == []


@pytest.mark.asyncio
async def test_broken_welcome_template_does_not_fail_creation(db, gateway, publisher, policy, sleep, connection):
    service = GroupProvisioningService(gateway, publisher, policy, sleep=sleep, welcome_template="Hi {group}")

    series = await service.create_group_series(db, "t1", series_data(connection))

    assert series.current_active_group_id is not None
    assert series.next_group_number == 2
    assert gateway.calls_to("send_message") == 0


@pytest.mark.asyncio
async def test_update_propagates_limits_to_groups(db, service, connection):
    series = await service.create_group_series(db, "t1", series_data(connection))

    updated = service.update_group_series(db, "t1", series.id, GroupSeriesUpdate(max_participants=20))

    assert updated.max_participants == 20
    first = group_number_of(db, 1)
    assert first.max_participants == 20
    assert first.threshold_percentage == 90


@pytest.mark.asyncio
async def test_remove_series_detaches_groups(db, service, connection):
    series = await service.create_group_series(db, "t1", series_data(connection))
    series_id = series.id

    removed = service.remove_group_series(db, "t1", series_id)

    assert removed == {"id": series_id, "name": "vip", "detached_groups": 1}
    db.expire_all()
    group = db.query(Group).one()
    assert not group.is_managed
    assert group.group_series is None
    with pytest.raises(NotFoundError):
        service.get_group_series(db, "t1", series_id)


@pytest.mark.asyncio
async def test_series_stats(db, service, gateway, connection):
    await service.create_group_series(db, "t1", series_data(connection))
    first = group_number_of(db, 1)
    gateway.set_participants(first.jid, 5)
    await service.sync_managed_groups(db, "t1")

    stats = service.get_series_stats(db, "t1", "vip")

    assert stats.total_groups == 1
    assert stats.active_groups == 1
    assert stats.total_participants == 5
    assert stats.total_capacity == 10
    assert stats.occupancy_percentage == pytest.approx(50.0)
    assert stats.active_group["id"] == first.id
    with pytest.raises(NotFoundError):
        service.get_series_stats(db, "t1", "missing")


# ────────────────────────────────────────────
# Rotation
# ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_below_threshold_keeps_current_group(db, service, gateway, connection):
    series = await service.create_group_series(db, "t1", series_data(connection))
    first = group_number_of(db, 1)
    gateway.set_participants(first.jid, 8)

    outcome = await service.process_series(db, series)

    assert outcome.occupancy == pytest.approx(80.0)
    assert not outcome.should_create_next
    assert not outcome.created
    assert gateway.calls_to("create_group") == 1


@pytest.mark.asyncio
async def test_near_capacity_keeps_old_group_active_until_successor_exists(
    db, session_factory, service, gateway, publisher, connection
):
    series = await service.create_group_series(db, "t1", series_data(connection))
    first = group_number_of(db, 1)
    gateway.set_participants(first.jid, 9)
    seen = record_active_state_at_creation(gateway, session_factory, first.id)

    outcome = await service.process_series(db, series)

    assert seen == [True]
    assert outcome.deactivated_group_id is None
    assert outcome.created_group_number == 2
    second = group_number_of(db, 2)
    assert second.name == "VIP #2"
    assert [g.id for g in active_groups(db)] == [second.id]
    assert group_number_of(db, 1).deactivated_at is not None
    db.refresh(series)
    assert series.current_active_group_id == second.id
    assert series.next_group_number == 3

    [(_, _, payload)] = publisher.named(GROUP_PROVISIONED)
    assert payload["action"] == "new_group_created"
    assert payload["old_group"]["id"] == first.id
    assert payload["new_group"]["invite_link"] == second.invite_link
    assert publisher.named(GROUP_DEACTIVATED) == []


@pytest.mark.asyncio
async def test_full_group_is_retired_before_successor_is_created(
    db, session_factory, service, gateway, publisher, connection
):
    series = await service.create_group_series(db, "t1", series_data(connection))
    first = group_number_of(db, 1)
    gateway.set_participants(first.jid, 10)
    seen = record_active_state_at_creation(gateway, session_factory, first.id)

    outcome = await service.process_series(db, series)

    assert seen == [False]
    assert outcome.deactivated_group_id == first.id
    assert outcome.created_group_number == 2
    assert [g.group_number for g in active_groups(db)] == [2]
    [(_, _, payload)] = publisher.named(GROUP_DEACTIVATED)
    assert payload["group"]["id"] == first.id
    assert payload["group"]["participant_count"] == 10


@pytest.mark.asyncio
async def test_full_group_stays_retired_when_creation_fails(db, service, gateway, publisher, connection):
    series = await service.create_group_series(db, "t1", series_data(connection))
    first = group_number_of(db, 1)
    gateway.set_participants(first.jid, 10)
    gateway.fail("create_group", PermanentGatewayError("not allowed"))
    outcome = ProvisioningOutcome(series_name="vip", tenant_id="t1")

    with pytest.raises(PermanentGatewayError):
        await service.process_series(db, series, outcome=outcome)

    assert outcome.deactivated_group_id == first.id
    assert not outcome.created
    assert active_groups(db) == []
    db.refresh(series)
    assert series.next_group_number == 2
    assert len(publisher.named(GROUP_DEACTIVATED)) == 1
    assert publisher.named(GROUP_PROVISIONED) == []


@pytest.mark.asyncio
async def test_near_capacity_creation_failure_leaves_series_untouched(db, service, gateway, connection):
    series = await service.create_group_series(db, "t1", series_data(connection))
    first = group_number_of(db, 1)
    gateway.set_participants(first.jid, 9)
    gateway.fail("create_group", TransientGatewayError("busy"))

    with pytest.raises(TransientGatewayError):
        await service.process_series(db, series)

    # Group creation is never retried
    assert gateway.calls_to("create_group") == 2
    assert [g.id for g in active_groups(db)] == [first.id]
    db.refresh(series)
    assert series.current_active_group_id == first.id
    assert series.next_group_number == 2


@pytest.mark.asyncio
async def test_repeated_rotations_use_fresh_numbers(db, service, gateway, connection):
    series = await service.create_group_series(db, "t1", series_data(connection))

    for _ in range(5):
        active = service.get_active_group_for_series(db, "t1", "vip")
        gateway.set_participants(active.jid, 10)
        await service.process_series(db, series)

    db.expire_all()
    numbers = sorted(g.group_number for g in db.query(Group).filter(Group.group_series == "vip"))
    assert numbers == [1, 2, 3, 4, 5, 6]
    assert series.next_group_number == 7
    assert [g.group_number for g in active_groups(db)] == [6]


@pytest.mark.asyncio
async def test_lost_compare_and_swap_detaches_new_group(db, session_factory, service, gateway, connection):
    series = await service.create_group_series(db, "t1", series_data(connection))
    series_id = series.id
    first = group_number_of(db, 1)
    gateway.set_participants(first.jid, 9)

    def another_writer_advances():
        session = session_factory()
        try:
            session.query(GroupSeries).filter(GroupSeries.id == series_id).update(
                {GroupSeries.next_group_number: 3}, synchronize_session=False
            )
            session.commit()
        finally:
            session.close()

    gateway.before_create = another_writer_advances

    with pytest.raises(ConcurrencyConflictError):
        await service.process_series(db, series)

    assert [g.id for g in active_groups(db)] == [first.id]
    orphan = db.query(Group).filter(Group.id != first.id).one()
    assert not orphan.is_managed
    assert orphan.group_series is None


@pytest.mark.asyncio
async def test_force_create_retires_current_group(db, service, gateway, publisher, connection):
    await service.create_group_series(db, "t1", series_data(connection))
    first = group_number_of(db, 1)

    new_group = await service.force_create_next_group(db, "t1", "vip")

    assert new_group.group_number == 2
    assert [g.id for g in active_groups(db)] == [new_group.id]
    [(_, _, payload)] = publisher.named(GROUP_PROVISIONED)
    assert payload["action"] == "manual_group_created"
    assert payload["old_group"]["id"] == first.id
    assert len(publisher.named(GROUP_DEACTIVATED)) == 1


@pytest.mark.asyncio
async def test_force_create_requires_connected_connection(db, service, connection):
    await service.create_group_series(db, "t1", series_data(connection))
    connection.status = ConnectionStatus.DISCONNECTED.value
    db.commit()

    with pytest.raises(ConfigurationError):
        await service.force_create_next_group(db, "t1", "vip")
    with pytest.raises(NotFoundError):
        await service.force_create_next_group(db, "t1", "missing")


@pytest.mark.asyncio
async def test_metadata_refresh_failure_uses_stored_snapshot(db, service, gateway, connection):
    series = await service.create_group_series(db, "t1", series_data(connection))
    first = group_number_of(db, 1)
    gateway.set_participants(first.jid, 10)
    gateway.fail("fetch_metadata", PermanentGatewayError("forbidden"), key=first.jid)

    outcome = await service.process_series(db, series)

    assert outcome.occupancy == pytest.approx(10.0)
    assert not outcome.created


# ────────────────────────────────────────────
# Managed groups
# ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sync_managed_groups_refreshes_metadata(db, service, gateway, connection):
    await service.create_group_series(db, "t1", series_data(connection))
    first = group_number_of(db, 1)
    gateway.set_participants(first.jid, 7)

    result = await service.sync_managed_groups(db, "t1")

    assert result.synced == 1
    assert result.errors == []
    assert group_number_of(db, 1).participant_count() == 7


@pytest.mark.asyncio
async def test_validate_group_for_management(db, service, gateway, connection):
    gateway.add_group("admin@g.us", connection_id=connection.id, participants=3)
    gateway.add_group("member@g.us", connection_id=connection.id, participants=3, own_role="member")

    assert await service.validate_group_for_management(db, "t1", "admin@g.us", connection.id)
    assert not await service.validate_group_for_management(db, "t1", "member@g.us", connection.id)
    assert not await service.validate_group_for_management(db, "t1", "unknown@g.us", connection.id)
    assert not await service.validate_group_for_management(db, "t1", "admin@g.us", 999)
