# groupfleet/services/gateway.py
"""
Messaging gateway - the capability interface the orchestrator needs from a
WhatsApp client, plus an httpx implementation for a REST gateway that keeps
one logged-in session per connection id.

All methods are awaitable and raise the ``GatewayError`` family:
  429                -> RateLimitError
  404                -> GroupNotFoundError
  401/403            -> ForbiddenError
  other 4xx          -> PermanentGatewayError
  5xx / network      -> TransientGatewayError
  timeouts           -> GatewayTimeoutError
"""
import abc
import logging
from typing import Any, List, Optional

import httpx

from groupfleet.core import config
from groupfleet.core.errors import (
    ForbiddenError,
    GatewayTimeoutError,
    GroupNotFoundError,
    PermanentGatewayError,
    RateLimitError,
    TransientGatewayError,
)
from groupfleet.schemas.gateway import GroupMetadata, MembershipAction
from groupfleet.services.sanitize import parse_group_metadata

log = logging.getLogger("groupfleet.gateway")


class WhatsAppGateway(abc.ABC):
    """Operations the fleet needs from the WhatsApp side, per connection"""

    @abc.abstractmethod
    async def get_own_id(self, connection_id: int) -> str:
        """Remote id (jid) of the account logged in on ``connection_id``"""

    @abc.abstractmethod
    async def create_group(self, connection_id: int, name: str, initial_members: List[str]) -> str:
        """Create a group and return its remote id"""

    @abc.abstractmethod
    async def fetch_metadata(self, connection_id: int, group_jid: str) -> GroupMetadata:
        ...

    @abc.abstractmethod
    async def update_description(self, connection_id: int, group_jid: str, description: str) -> None:
        ...

    @abc.abstractmethod
    async def update_membership(
        self, connection_id: int, group_jid: str, member_ids: List[str], action: MembershipAction
    ) -> None:
        ...

    @abc.abstractmethod
    async def issue_invite_code(self, connection_id: int, group_jid: str) -> str:
        ...

    @abc.abstractmethod
    async def revoke_invite_code(self, connection_id: int, group_jid: str) -> str:
        """Invalidate the current invite code and return the new one"""

    @abc.abstractmethod
    async def send_message(self, connection_id: int, group_jid: str, content: str) -> None:
        ...

    @abc.abstractmethod
    async def list_participating_groups(self, connection_id: int) -> List[str]:
        """Remote ids of every group the connection currently belongs to"""

    async def close(self) -> None:
        return None


class HttpWhatsAppGateway(WhatsAppGateway):
    """
    REST gateway client.

    Endpoints (relative to ``base_url``):
        GET    /sessions/{cid}/me
        GET    /sessions/{cid}/groups
        POST   /sessions/{cid}/groups                         {subject, participants}
        GET    /sessions/{cid}/groups/{jid}
        PUT    /sessions/{cid}/groups/{jid}/description       {description}
        POST   /sessions/{cid}/groups/{jid}/participants      {participants, action}
        GET    /sessions/{cid}/groups/{jid}/invite-code
        POST   /sessions/{cid}/groups/{jid}/invite-code/revoke
        POST   /sessions/{cid}/groups/{jid}/messages          {text}
    """

    def __init__(
        self,
        base_url: str = config.GATEWAY_BASE_URL,
        api_token: Optional[str] = config.GATEWAY_API_TOKEN,
        timeout: float = config.GATEWAY_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        # reuse AsyncClient to benefit from connection pooling
        self._client = client or httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    # ────────────────────────────────────────────
    # Transport
    # ────────────────────────────────────────────

    async def _request(self, method: str, path: str, target: Optional[str] = None, **kwargs) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(f"{method} {path} timed out: {e}", target=target)
        except httpx.HTTPError as e:
            raise TransientGatewayError(f"{method} {path} failed: {e}", target=target)

        rc = resp.status_code
        if rc >= 400:
            detail = self._error_detail(resp)
            log.debug(f"📥 Gateway {method} {path} -> {rc}: {detail}")
            if rc == 429:
                raise RateLimitError(f"Rate limit exceeded: {detail}", target=target)
            if rc == 404:
                raise GroupNotFoundError(f"Not found: {detail}", target=target)
            if rc in (401, 403):
                raise ForbiddenError(f"Forbidden: {detail}", target=target)
            if rc == 408:
                raise GatewayTimeoutError(f"Gateway timeout: {detail}", target=target)
            if rc < 500:
                raise PermanentGatewayError(f"Gateway rejected request ({rc}): {detail}", target=target)
            raise TransientGatewayError(f"Gateway error ({rc}): {detail}", target=target)

        if rc == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            raise TransientGatewayError(f"{method} {path} returned a non-JSON body", target=target)

    @staticmethod
    def _error_detail(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text[:200]
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or body)[:200]
        return str(body)[:200]

    @staticmethod
    def _field(body: Any, key: str, path: str) -> str:
        value = body.get(key) if isinstance(body, dict) else None
        if not isinstance(value, str) or not value:
            raise TransientGatewayError(f"{path} response has no '{key}'")
        return value

    # ────────────────────────────────────────────
    # Capability interface
    # ────────────────────────────────────────────

    async def get_own_id(self, connection_id: int) -> str:
        path = f"/sessions/{connection_id}/me"
        return self._field(await self._request("GET", path), "id", path)

    async def create_group(self, connection_id: int, name: str, initial_members: List[str]) -> str:
        path = f"/sessions/{connection_id}/groups"
        body = await self._request("POST", path, json={"subject": name, "participants": initial_members})
        group_jid = self._field(body, "id", path)
        log.info(f"✅ Group '{name}' created on connection {connection_id}: {group_jid}")
        return group_jid

    async def fetch_metadata(self, connection_id: int, group_jid: str) -> GroupMetadata:
        body = await self._request("GET", f"/sessions/{connection_id}/groups/{group_jid}", target=group_jid)
        try:
            return parse_group_metadata(body, fallback_id=group_jid)
        except ValueError as e:
            raise TransientGatewayError(f"Malformed metadata for {group_jid}: {e}", target=group_jid)

    async def update_description(self, connection_id: int, group_jid: str, description: str) -> None:
        await self._request(
            "PUT", f"/sessions/{connection_id}/groups/{group_jid}/description",
            target=group_jid, json={"description": description},
        )

    async def update_membership(
        self, connection_id: int, group_jid: str, member_ids: List[str], action: MembershipAction
    ) -> None:
        await self._request(
            "POST", f"/sessions/{connection_id}/groups/{group_jid}/participants",
            target=group_jid, json={"participants": member_ids, "action": MembershipAction(action).value},
        )

    async def issue_invite_code(self, connection_id: int, group_jid: str) -> str:
        path = f"/sessions/{connection_id}/groups/{group_jid}/invite-code"
        return self._field(await self._request("GET", path, target=group_jid), "code", path)

    async def revoke_invite_code(self, connection_id: int, group_jid: str) -> str:
        path = f"/sessions/{connection_id}/groups/{group_jid}/invite-code/revoke"
        return self._field(await self._request("POST", path, target=group_jid), "code", path)

    async def send_message(self, connection_id: int, group_jid: str, content: str) -> None:
        await self._request(
            "POST", f"/sessions/{connection_id}/groups/{group_jid}/messages",
            target=group_jid, json={"text": content},
        )

    async def list_participating_groups(self, connection_id: int) -> List[str]:
        body = await self._request("GET", f"/sessions/{connection_id}/groups")
        items: List[Any] = body.get("groups", []) if isinstance(body, dict) else body
        if not isinstance(items, list):
            raise TransientGatewayError(f"Group listing for connection {connection_id} is not a list")
        group_ids: List[str] = []
        for item in items:
            if isinstance(item, str) and item:
                group_ids.append(item)
            elif isinstance(item, dict) and isinstance(item.get("id"), str) and item["id"]:
                group_ids.append(item["id"])
        return list(dict.fromkeys(group_ids))


def invite_link_for(code: str) -> str:
    return f"{config.INVITE_LINK_PREFIX}{code}"

