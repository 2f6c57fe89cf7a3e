"""Presence tracking for the messaging hub.

The registry maps users to their open connections and derives the
online/offline flag from that set. It is shared by every connection handler,
so each mutation runs to completion under the registry lock, including the
check for whether the user's connection count crossed zero. Callers receive
a ``PresenceChange`` only for those zero crossings and broadcast it after the
call returns, so any broadcast describes state that is already queryable.

Durable storage of presence is not handled here; the lifecycle manager
writes through to the user directory.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable

from .constants import PRESENCE_OFFLINE, PRESENCE_ONLINE
from .errors import DuplicateRegistration, PresenceNotFound, UnknownRegistration


@dataclass(frozen=True)
class PresenceChange:
    user_id: str
    status: str
    last_seen: float | None = None

    @property
    def online(self) -> bool:
        return self.status == PRESENCE_ONLINE


@dataclass
class PresenceRecord:
    user_id: str
    online: bool = False
    last_seen: float | None = None
    connections: set[str] = field(default_factory=set)

    @property
    def active_connections(self) -> int:
        return len(self.connections)


class PresenceRegistry:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.log = logging.getLogger("rmsgd.presence")
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, PresenceRecord] = {}

    def register_connection(self, user_id: str, connection_id: str) -> PresenceChange | None:
        """Count a new open connection for ``user_id``.

        Returns an online change when this is the user's first connection.
        Registering a connection that is already registered is a bookkeeping
        bug and raises ``DuplicateRegistration``.
        """
        with self._lock:
            rec = self._records.get(user_id)
            if rec is None:
                rec = PresenceRecord(user_id=user_id)
                self._records[user_id] = rec

            if connection_id in rec.connections:
                raise DuplicateRegistration(
                    f"connection {connection_id} already registered for {user_id}"
                )

            rec.connections.add(connection_id)
            if len(rec.connections) != 1:
                return None

            rec.online = True

        self.log.debug("Presence online user=%s conn=%s", user_id, connection_id)
        return PresenceChange(user_id=user_id, status=PRESENCE_ONLINE)

    def deregister_connection(self, user_id: str, connection_id: str) -> PresenceChange | None:
        """Drop an open connection; returns an offline change on the last one."""
        with self._lock:
            rec = self._records.get(user_id)
            if rec is None or connection_id not in rec.connections:
                raise UnknownRegistration(
                    f"connection {connection_id} is not registered for {user_id}"
                )

            rec.connections.discard(connection_id)
            if rec.connections:
                return None

            rec.online = False
            rec.last_seen = float(self._clock())
            last_seen = rec.last_seen

        self.log.debug("Presence offline user=%s conn=%s", user_id, connection_id)
        return PresenceChange(user_id=user_id, status=PRESENCE_OFFLINE, last_seen=last_seen)

    def get_status(self, user_id: str) -> PresenceRecord:
        """Return a snapshot of the user's presence record."""
        with self._lock:
            rec = self._records.get(user_id)
            if rec is None:
                raise PresenceNotFound(user_id)
            return replace(rec, connections=set(rec.connections))

    def seed(self, user_id: str, last_seen: float | None) -> None:
        """Load a durable last-seen value for a user that is not connected.

        A user that was never seen stays unknown to the registry.
        """
        if last_seen is None:
            return
        with self._lock:
            rec = self._records.get(user_id)
            if rec is None:
                self._records[user_id] = PresenceRecord(user_id=user_id, last_seen=last_seen)
            elif not rec.online and rec.last_seen is None:
                rec.last_seen = last_seen

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "users_known": len(self._records),
                "users_online": sum(1 for r in self._records.values() if r.online),
                "connections": sum(len(r.connections) for r in self._records.values()),
            }
