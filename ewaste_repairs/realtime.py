"""Per-user push channel for repair lifecycle events.

Delivery is best effort: an event for a user with no live connection is
dropped, a failing send is logged and forgotten, and nothing is queued or
replayed. Each user has at most one tracked connection; reconnecting replaces
the previous binding without closing the old socket.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from ewaste_repairs.domain import EventType, Role

logger = logging.getLogger(__name__)


class Connection(Protocol):
    def send(self, data: str) -> None: ...


@dataclass(frozen=True)
class Binding:
    connection: Connection
    role: Role | None


def encode_event(event_type: EventType | str, payload: Any) -> str:
    type_value = event_type.value if isinstance(event_type, EventType) else event_type
    return json.dumps({"type": type_value, "data": payload})


class ConnectionRegistry:
    def __init__(self) -> None:
        self._bindings: dict[int, Binding] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._bindings)

    def register(
        self, user_id: int, connection: Connection, role: Role | None = None
    ) -> Connection | None:
        """Bind ``connection`` to ``user_id`` and return the handle it replaced."""
        with self._lock:
            previous = self._bindings.get(user_id)
            self._bindings[user_id] = Binding(connection=connection, role=role)
        if previous is not None and previous.connection is not connection:
            logger.debug("User %s reconnected, replacing previous connection", user_id)
            return previous.connection
        return None

    def unregister(self, user_id: int, connection: Connection) -> bool:
        with self._lock:
            current = self._bindings.get(user_id)
            if current is None or current.connection is not connection:
                return False
            del self._bindings[user_id]
        logger.debug("User %s disconnected", user_id)
        return True

    def connection_for(self, user_id: int) -> Connection | None:
        with self._lock:
            binding = self._bindings.get(user_id)
        return binding.connection if binding else None

    def connected_users(self) -> list[int]:
        with self._lock:
            return sorted(self._bindings)

    def publish(self, user_id: int, event_type: EventType | str, payload: Any) -> bool:
        connection = self.connection_for(user_id)
        if connection is None:
            logger.debug("No connection for user %s, dropping %s", user_id, event_type)
            return False
        return self._send(user_id, connection, encode_event(event_type, payload))

    def broadcast(self, event_type: EventType | str, payload: Any) -> int:
        with self._lock:
            targets = [(uid, b.connection) for uid, b in self._bindings.items()]
        return self._send_many(targets, encode_event(event_type, payload))

    def publish_to_role(
        self, role: Role, event_type: EventType | str, payload: Any
    ) -> int:
        with self._lock:
            targets = [
                (uid, b.connection) for uid, b in self._bindings.items() if b.role == role
            ]
        return self._send_many(targets, encode_event(event_type, payload))

    def _send_many(self, targets: list[tuple[int, Connection]], message: str) -> int:
        delivered = 0
        for user_id, connection in targets:
            if self._send(user_id, connection, message):
                delivered += 1
        return delivered

    def _send(self, user_id: int, connection: Connection, message: str) -> bool:
        try:
            connection.send(message)
        except Exception:
            logger.warning("Push to user %s failed", user_id, exc_info=True)
            return False
        return True
