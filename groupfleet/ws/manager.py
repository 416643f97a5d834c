# groupfleet/ws/manager.py
"""
Event publication for dashboards.

``EventPublisher`` is the fire-and-forget interface used by the services;
``WebSocketConnectionManager`` implements it by broadcasting to every websocket
registered under the tenant.

Usage:
- In FastAPI route: await ws_manager.connect(...) / ws_manager.disconnect(...)
- From services: await publisher.publish(tenant_id, "group-provisioned", payload)
"""
from __future__ import annotations

import abc
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

log = logging.getLogger("groupfleet.ws")

# Event names
GROUP_PROVISIONED = "group-provisioned"
GROUP_DEACTIVATED = "group-deactivated"
SYNC_PROGRESS = "sync-progress"
SYNC_COMPLETE = "sync-complete"
MONITORING_SUMMARY = "monitoring-summary"
GROUP_SERIES = "group-series"


class EventPublisher(abc.ABC):
    """Best-effort publisher: no return value, never raises into business logic"""

    async def publish(self, tenant_id: str, event: str, payload: Dict[str, Any]) -> None:
        try:
            await self._deliver(tenant_id, event, jsonable_encoder(payload))
        except Exception as e:
            log.warning(f"⚠️ Failed to publish '{event}' for tenant {tenant_id}: {e}")

    @abc.abstractmethod
    async def _deliver(self, tenant_id: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class WebSocketConnectionManager(EventPublisher):
    def __init__(self) -> None:
        # Map tenant_id -> set of WebSocket connections
        self.active: Dict[str, Set[WebSocket]] = {}

    async def connect(self, tenant_id: str, websocket: WebSocket) -> None:
        """Accept and register a websocket under a tenant."""
        await websocket.accept()
        self.active.setdefault(tenant_id, set()).add(websocket)
        log.info("WS connected: tenant=%s total=%d", tenant_id, self.connection_count(tenant_id))

    def disconnect(self, tenant_id: str, websocket: WebSocket) -> None:
        """Unregister a websocket from a tenant."""
        conns = self.active.get(tenant_id)
        if conns is not None:
            conns.discard(websocket)
            if not conns:
                # cleanup empty tenant bucket
                self.active.pop(tenant_id, None)
        log.info("WS disconnected: tenant=%s total=%d", tenant_id, self.connection_count(tenant_id))

    async def _deliver(self, tenant_id: str, event: str, payload: Dict[str, Any]) -> None:
        """Send the event to all connected clients of a tenant."""
        connections = list(self.active.get(tenant_id, set()))
        if not connections:
            log.debug(f"🔕 No WebSocket connections for tenant {tenant_id}, dropping '{event}'")
            return

        message = {"event": event, "data": payload, "timestamp": datetime.utcnow().isoformat()}
        stale: Set[WebSocket] = set()
        sent_count = 0
        for ws in connections:
            try:
                await ws.send_json(message)
                sent_count += 1
            except Exception as e:
                # mark stale; we will remove after loop
                log.warning(f"⚠️ WS send failed, marking stale: {e}")
                stale.add(ws)

        log.debug(f"🔔 '{event}' sent to {sent_count}/{len(connections)} clients for tenant {tenant_id}")

        if stale:
            alive = self.active.get(tenant_id, set())
            for ws in stale:
                alive.discard(ws)
            if not alive:
                self.active.pop(tenant_id, None)
            log.info(f"🧹 Removed {len(stale)} stale connections")

    def connection_count(self, tenant_id: Optional[str] = None) -> int:
        if tenant_id is None:
            return sum(len(s) for s in self.active.values())
        return len(self.active.get(tenant_id, set()))


# Singleton instance to import from routes and the application lifespan
ws_manager = WebSocketConnectionManager()
