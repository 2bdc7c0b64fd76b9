"""Consumer side of the push channel.

A connected client keeps cached views of its repair lists. Events from the
server only tell it which views went stale; the next read reloads them.
"""
from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from simple_websocket import Client, ConnectionClosed

from ewaste_repairs.domain import EventType, Role

logger = logging.getLogger(__name__)

USER_REQUESTS_VIEW = "/api/repair-requests/user"
TECHNICIAN_REQUESTS_VIEW = "/api/repair-requests/technician"
AVAILABLE_REQUESTS_VIEW = "/api/repair-requests/available"

MAX_ALERTS = 50


@dataclass(frozen=True)
class Alert:
    title: str
    description: str


class ViewCache:
    def __init__(self) -> None:
        self._loaders: dict[str, Callable[[], Any]] = {}
        self._values: dict[str, Any] = {}

    def register(self, key: str, loader: Callable[[], Any]) -> None:
        self._loaders[key] = loader
        self._values.pop(key, None)

    def get(self, key: str) -> Any:
        if key not in self._values:
            loader = self._loaders.get(key)
            if loader is None:
                raise KeyError(key)
            self._values[key] = loader()
        return self._values[key]

    def invalidate(self, key: str) -> None:
        self._values.pop(key, None)

    def is_stale(self, key: str) -> bool:
        return key not in self._values


class RepairSyncClient:
    def __init__(self, role: Role | str, cache: ViewCache | None = None) -> None:
        self.role = Role(role)
        self.cache = cache if cache is not None else ViewCache()
        self._alerts: deque[Alert] = deque(maxlen=MAX_ALERTS)

    def handle_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
            event_type = message["type"]
            data = message.get("data") or {}
        except (ValueError, TypeError, KeyError):
            logger.warning("Ignoring malformed push message: %r", raw)
            return
        if not isinstance(data, dict):
            data = {}

        if event_type == EventType.REPAIR_STATUS_UPDATE.value:
            self.cache.invalidate(USER_REQUESTS_VIEW)
            self.cache.invalidate(TECHNICIAN_REQUESTS_VIEW)
            self._alerts.append(
                Alert(
                    title="Repair Status Updated",
                    description=f"Status changed to: {data.get('status')}",
                )
            )
        elif event_type == EventType.NEW_REPAIR_REQUEST.value:
            if self.role != Role.TECHNICIAN:
                return
            self.cache.invalidate(AVAILABLE_REQUESTS_VIEW)
            self._alerts.append(
                Alert(
                    title="New Repair Request",
                    description=f"New repair request for {data.get('deviceType')}",
                )
            )
        elif event_type == "PONG":
            return
        else:
            logger.warning("Unknown push message type: %s", event_type)

    def drain_alerts(self) -> list[Alert]:
        alerts = list(self._alerts)
        self._alerts.clear()
        return alerts


def listen(url: str, client: RepairSyncClient, headers: dict[str, str] | None = None) -> None:
    """Feed every message from the push endpoint at ``url`` into ``client``."""
    ws = Client.connect(url, headers=headers)
    try:
        while True:
            message = ws.receive()
            if message is None:
                continue
            client.handle_message(message)
    except ConnectionClosed:
        logger.info("Push connection to %s closed", url)
    finally:
        if ws.connected:
            ws.close()
