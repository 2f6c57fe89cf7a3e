"""Room routing for the messaging hub.

Rooms are named multicast groups of connection ids. Two namespaces exist:

- ``user:<user_id>``: the personal room every authenticated connection of
  that user joins, used for direct delivery.
- ``chat:<room_id>``: ad-hoc rooms joined on request.

A room exists while it has members. Leaving the last member evicts it and a
later join recreates it; multicasting to a missing room reaches nobody.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterator

from .constants import CHAT_ROOM_PREFIX, PERSONAL_ROOM_PREFIX


def personal_room(user_id: str) -> str:
    return f"{PERSONAL_ROOM_PREFIX}{user_id}"


def chat_room(room_id: str) -> str:
    if room_id.startswith(CHAT_ROOM_PREFIX):
        return room_id
    return f"{CHAT_ROOM_PREFIX}{room_id}"


def canonical_room(room_id: str) -> str:
    r = room_id.strip()
    if not r:
        raise ValueError("room name must not be empty")
    if r.startswith(PERSONAL_ROOM_PREFIX) or r.startswith(CHAT_ROOM_PREFIX):
        return r
    return chat_room(r)


class RoomMembers:
    """Restartable view of a room's members.

    Every iteration takes a fresh snapshot, so a view can be kept and walked
    again after membership changes.
    """

    def __init__(self, router: RoomRouter, room_id: str) -> None:
        self._router = router
        self.room_id = room_id

    def __iter__(self) -> Iterator[str]:
        return iter(self._router._snapshot(self.room_id))

    def __len__(self) -> int:
        return len(self._router._snapshot(self.room_id))

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._router._snapshot(self.room_id)


class RoomRouter:
    """Maps rooms to member connection ids."""

    def __init__(self) -> None:
        self.log = logging.getLogger("rmsgd.rooms")
        self._lock = threading.Lock()
        self.rooms: dict[str, set[str]] = {}
        self._by_connection: dict[str, set[str]] = {}

    def join(self, connection_id: str, room_id: str) -> str:
        """Add a connection to a room, creating it if needed. Idempotent."""
        room = canonical_room(room_id)
        with self._lock:
            self.rooms.setdefault(room, set()).add(connection_id)
            self._by_connection.setdefault(connection_id, set()).add(room)
        return room

    def leave(self, connection_id: str, room_id: str) -> str:
        """Remove a connection from a room. No-op when it is not a member."""
        room = canonical_room(room_id)
        with self._lock:
            self._remove_locked(connection_id, room)
        return room

    def members_of(self, room_id: str) -> RoomMembers:
        try:
            room = canonical_room(room_id)
        except ValueError:
            # A blank name can never have members.
            room = room_id
        return RoomMembers(self, room)

    def remove_connection_from_all_rooms(self, connection_id: str) -> list[str]:
        """Drop a closing connection from every room. Returns the rooms left."""
        with self._lock:
            rooms = sorted(self._by_connection.get(connection_id, ()))
            for room in rooms:
                self._remove_locked(connection_id, room)
            self._by_connection.pop(connection_id, None)

        if rooms:
            self.log.debug("Removed conn=%s from rooms=%s", connection_id, len(rooms))
        return rooms

    def get_stats(self) -> dict[str, object]:
        with self._lock:
            top_rooms = sorted(
                ((room, len(members)) for room, members in self.rooms.items()),
                key=lambda x: (-x[1], x[0]),
            )[:5]
            return {
                "rooms_total": len(self.rooms),
                "memberships": sum(len(v) for v in self.rooms.values()),
                "top_rooms": top_rooms,
            }

    def _snapshot(self, room_id: str) -> tuple[str, ...]:
        with self._lock:
            return tuple(self.rooms.get(room_id, ()))

    def _remove_locked(self, connection_id: str, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                self.rooms.pop(room, None)

        joined = self._by_connection.get(connection_id)
        if joined is not None:
            joined.discard(room)
            if not joined:
                self._by_connection.pop(connection_id, None)
