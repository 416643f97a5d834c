"""
Shared fixtures: in-memory SQLite database, a scripted gateway, a recording
event publisher and a sleep that only records the requested delays.
"""
import asyncio
import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

# Configuration is read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET_KEY"] = "groupfleet-test-secret-key-0123456789"
os.environ["MONITORING_ENABLED"] = "false"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from groupfleet.core.errors import GroupNotFoundError
from groupfleet.db.base import Base
from groupfleet.db.session import session_scope
from groupfleet.models.connection import ConnectionStatus, WhatsAppConnection
from groupfleet.models.group import Group, SyncStatus
from groupfleet.schemas.gateway import GroupMetadata
from groupfleet.services.gateway import WhatsAppGateway
from groupfleet.services.retry import RetryPolicy
from groupfleet.services.sanitize import parse_group_metadata
from groupfleet.ws.manager import EventPublisher

OWN_NUMBER = "5511999990000"
OWN_ID = f"{OWN_NUMBER}@s.whatsapp.net"
SECOND_NUMBER = "5511888880000"
SECOND_ID = f"{SECOND_NUMBER}@s.whatsapp.net"


def member_id(i: int) -> str:
    return f"55110000{i:04d}@s.whatsapp.net"


# ────────────────────────────────────────────
# Fakes
# ────────────────────────────────────────────

class FakeGateway(WhatsAppGateway):
    """
    In-memory gateway. Failures are scripted per method (optionally per key,
    the key being the group jid or the connection id as a string) and consumed
    one per call.
    """

    def __init__(self, own_id: str = OWN_ID):
        self.own_id = own_id
        self.own_ids: Dict[int, str] = {}
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.memberships: Dict[int, List[str]] = {}
        self.failures: Dict[Tuple[str, Optional[str]], List[Exception]] = {}
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.messages: List[Tuple[str, str]] = []
        self.before_create: Optional[Callable[[], None]] = None
        self.gate: Optional[asyncio.Event] = None
        self._created = 0

    # scripting helpers

    def fail(self, method: str, *errors: Exception, key: Optional[str] = None) -> None:
        self.failures.setdefault((method, key), []).extend(errors)

    def add_group(self, jid: str, connection_id: int = 1, subject: Optional[str] = None,
                  participants: int = 1, own_role: Optional[str] = "admin") -> str:
        members = []
        if own_role is not None:
            members.append({"id": self.own_id, "admin": own_role if own_role != "member" else None})
        members.extend({"id": member_id(i), "admin": None} for i in range(participants - len(members)))
        self.groups[jid] = {"id": jid, "subject": subject or jid.split("@")[0], "participants": members}
        self.memberships.setdefault(connection_id, []).append(jid)
        return jid

    def set_participants(self, jid: str, count: int) -> None:
        owner = [p for p in self.groups[jid]["participants"] if p["id"] == self.own_id][:1]
        self.groups[jid]["participants"] = owner + [
            {"id": member_id(i), "admin": None} for i in range(count - len(owner))
        ]

    def calls_to(self, method: str, key: Optional[str] = None) -> int:
        return sum(1 for m, k in self.calls if m == method and (key is None or k == key))

    def _record(self, method: str, key: Optional[str] = None) -> None:
        self.calls.append((method, key))
        for lookup in ((method, key), (method, None)):
            queue = self.failures.get(lookup)
            if queue:
                raise queue.pop(0)

    # gateway interface

    async def get_own_id(self, connection_id: int) -> str:
        self._record("get_own_id", str(connection_id))
        return self.own_ids.get(connection_id, self.own_id)

    async def create_group(self, connection_id: int, name: str, initial_members: List[str]) -> str:
        self._record("create_group")
        if self.before_create is not None:
            self.before_create()
        self._created += 1
        jid = f"12036300000000{self._created:04d}@g.us"
        self.groups[jid] = {
            "id": jid,
            "subject": name,
            "participants": [{"id": m, "admin": "superadmin"} for m in initial_members],
        }
        self.memberships.setdefault(connection_id, []).append(jid)
        return jid

    async def fetch_metadata(self, connection_id: int, group_jid: str) -> GroupMetadata:
        self._record("fetch_metadata", group_jid)
        if self.gate is not None:
            await self.gate.wait()
        if group_jid not in self.groups:
            raise GroupNotFoundError(f"Group {group_jid} not found", target=group_jid)
        return parse_group_metadata(self.groups[group_jid], fallback_id=group_jid)

    async def update_description(self, connection_id: int, group_jid: str, description: str) -> None:
        self._record("update_description", group_jid)
        self.groups[group_jid]["desc"] = description

    async def update_membership(self, connection_id, group_jid, member_ids, action) -> None:
        self._record("update_membership", group_jid)

    async def issue_invite_code(self, connection_id: int, group_jid: str) -> str:
        self._record("issue_invite_code", group_jid)
        return f"CODE{group_jid.split('@')[0]}"

    async def revoke_invite_code(self, connection_id: int, group_jid: str) -> str:
        self._record("revoke_invite_code", group_jid)
        return f"NEW{group_jid.split('@')[0]}"

    async def send_message(self, connection_id: int, group_jid: str, content: str) -> None:
        self._record("send_message", group_jid)
        self.messages.append((group_jid, content))

    async def list_participating_groups(self, connection_id: int) -> List[str]:
        self._record("list_participating_groups", str(connection_id))
        return list(self.memberships.get(connection_id, []))


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    async def _deliver(self, tenant_id: str, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((tenant_id, event, payload))

    def named(self, event: str) -> List[Tuple[str, str, Dict[str, Any]]]:
        return [e for e in self.events if e[1] == event]


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ────────────────────────────────────────────
# Fixtures
# ────────────────────────────────────────────

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def scoped_session(session_factory):
    return session_scope(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def policy():
    return RetryPolicy(max_retries=3, retry_delay=1.0, rate_limit_backoff=5.0, timeout=None)


@pytest.fixture
def make_connection(db):
    def _make(tenant_id: str = "t1", status: ConnectionStatus = ConnectionStatus.CONNECTED,
              number: str = OWN_NUMBER, name: str = "main") -> WhatsAppConnection:
        connection = WhatsAppConnection(tenant_id=tenant_id, name=name, number=number, status=status.value)
        db.add(connection)
        db.commit()
        db.refresh(connection)
        return connection
    return _make


@pytest.fixture
def make_group(db):
    def _make(tenant_id: str = "t1", jid: str = "g1@g.us", participants: int = 1,
              series: Optional[str] = None, number: Optional[int] = None, is_active: bool = True,
              max_participants: int = 10, threshold: float = 90.0, whatsapp_id: int = 1,
              deactivated_at: Optional[datetime] = None) -> Group:
        group = Group(
            tenant_id=tenant_id,
            jid=jid,
            name=jid.split("@")[0],
            participants=[{"id": member_id(i)} for i in range(participants)],
            admin_participants=[],
            whatsapp_id=whatsapp_id,
            is_managed=series is not None,
            group_series=series,
            group_number=number,
            max_participants=max_participants,
            threshold_percentage=threshold,
            is_active=is_active,
            deactivated_at=deactivated_at,
            sync_status=SyncStatus.SYNCED.value,
        )
        db.add(group)
        db.commit()
        db.refresh(group)
        return group
    return _make
