# groupfleet/services/sanitize.py
"""
Ingestion boundary for gateway payloads.

Gateway responses are frequently partial (missing ids, ``admin: null``, nested
objects, numbers where strings belong). Everything is cleaned here before it
becomes a typed ``GroupMetadata`` or a JSON blob in the database, so a corrupt
upstream response can never make a write fail halfway.
"""
import json
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional

from groupfleet.schemas.gateway import GroupMetadata, Participant, ParticipantRole

log = logging.getLogger("groupfleet.sanitize")

_PRIMITIVES = (str, int, float, bool, type(None))
_NON_DIGITS = re.compile(r"\D")


def normalize_phone(value: Optional[str]) -> str:
    """
    Reduce a jid or phone number to its digits.

    "5511999990000:12@s.whatsapp.net" -> "5511999990000"
    "+55 (11) 99999-0000"             -> "5511999990000"
    """
    if not value:
        return ""
    local = str(value).split("@")[0].split(":")[0]
    return _NON_DIGITS.sub("", local)


def _is_primitive(value: Any) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    return isinstance(value, _PRIMITIVES)


def sanitize_json(value: Any) -> Any:
    """
    Keep only JSON primitives, lists and string-keyed dicts.
    Anything else (objects, NaN, bytes) is dropped.
    """
    if isinstance(value, dict):
        return {
            str(k): sanitize_json(v)
            for k, v in value.items()
            if isinstance(k, str) and (_is_primitive(v) or isinstance(v, (dict, list)))
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_json(v) for v in value if _is_primitive(v) or isinstance(v, (dict, list))]
    if _is_primitive(value):
        return value
    return None


def ensure_json_serializable(value: Any, fallback: Any) -> Any:
    """Return ``value`` if it survives a strict JSON round trip, otherwise ``fallback``."""
    try:
        json.dumps(value, allow_nan=False)
        return value
    except (TypeError, ValueError) as e:
        log.warning(f"⚠️ Dropping payload that is not valid JSON: {e}")
        return fallback


def _role_of(raw: Dict[str, Any]) -> ParticipantRole:
    role = raw.get("admin", raw.get("role"))
    if role is True:
        return ParticipantRole.ADMIN
    if isinstance(role, str):
        role = role.strip().lower()
        if role == ParticipantRole.SUPERADMIN.value:
            return ParticipantRole.SUPERADMIN
        if role == ParticipantRole.ADMIN.value:
            return ParticipantRole.ADMIN
    return ParticipantRole.MEMBER


def sanitize_participant(raw: Any) -> Optional[Participant]:
    if not isinstance(raw, dict):
        return None
    remote_id = raw.get("id")
    if not isinstance(remote_id, str) or not remote_id.strip():
        return None
    return Participant(id=remote_id.strip(), role=_role_of(raw))


def sanitize_participants(raw: Any) -> List[Participant]:
    """Drop malformed entries and duplicate ids, keeping the first occurrence."""
    if not isinstance(raw, (list, tuple)):
        return []
    seen = set()
    participants = []
    dropped = 0
    for item in raw:
        participant = sanitize_participant(item)
        if participant is None or participant.id in seen:
            dropped += 1
            continue
        seen.add(participant.id)
        participants.append(participant)
    if dropped:
        log.debug(f"🧹 Dropped {dropped} malformed/duplicate participant entries")
    return participants


def parse_group_metadata(raw: Any, fallback_id: Optional[str] = None) -> GroupMetadata:
    """
    Build a ``GroupMetadata`` from a raw gateway payload.

    Raises:
        ValueError: if the payload is not an object or carries no usable group id
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Group metadata payload is not an object: {type(raw).__name__}")

    group_id = raw.get("id") if isinstance(raw.get("id"), str) and raw.get("id") else fallback_id
    if not group_id:
        raise ValueError("Group metadata payload has no id")

    subject = raw.get("subject")
    description = raw.get("desc", raw.get("description"))
    return GroupMetadata(
        id=group_id,
        subject=subject if isinstance(subject, str) else "",
        description=description if isinstance(description, str) else None,
        participants=sanitize_participants(raw.get("participants")),
    )


def participants_payload(participants: Iterable[Participant]) -> List[Dict[str, Any]]:
    """Storage shape of the participant list (enriched with number and is_admin)."""
    payload = [
        {
            "id": p.id,
            "number": p.number,
            "admin": p.role.value if p.is_admin else None,
            "is_admin": p.is_admin,
        }
        for p in participants
    ]
    return ensure_json_serializable(sanitize_json(payload), [])


def admin_payload(metadata: GroupMetadata) -> List[str]:
    return ensure_json_serializable(sanitize_json(metadata.admin_ids()), [])
