# groupfleet/schemas/gateway.py
"""
Typed gateway responses.

The gateway hands back loosely-shaped JSON; these models are what the rest of
the code sees once ``groupfleet.services.sanitize`` has cleaned the payload.
"""
import enum
from typing import List, Optional
from pydantic import BaseModel, Field


class ParticipantRole(str, enum.Enum):
    MEMBER = "member"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class MembershipAction(str, enum.Enum):
    ADD = "add"
    REMOVE = "remove"
    PROMOTE = "promote"
    DEMOTE = "demote"


class Participant(BaseModel):
    id: str = Field(..., min_length=1, description="Remote participant id (jid)")
    role: ParticipantRole = ParticipantRole.MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role in (ParticipantRole.ADMIN, ParticipantRole.SUPERADMIN)

    @property
    def number(self) -> str:
        return self.id.split("@")[0].split(":")[0]


class GroupMetadata(BaseModel):
    id: str = Field(..., min_length=1, description="Remote group id")
    subject: str = ""
    description: Optional[str] = None
    participants: List[Participant] = Field(default_factory=list)

    def admin_ids(self) -> List[str]:
        return [p.id for p in self.participants if p.is_admin]
