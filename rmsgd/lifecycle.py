from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from .constants import (
    PRESENCE_OFFLINE,
    PRESENCE_ONLINE,
    T_JOINED_ROOM,
    T_LEFT_ROOM,
    T_USER_OFFLINE,
    T_USER_STATUS,
)
from .errors import (
    AuthDenied,
    AuthInvalid,
    InvalidTransition,
    PresenceNotFound,
    ValidationFailure,
)
from .rooms import chat_room, personal_room
from .util import fmt_id, normalize_room_name

if TYPE_CHECKING:
    from .config import HubRuntimeConfig
    from .directory import UserDirectory
    from .identity import IdentityProvider
    from .messages import MessageHelper, Outgoing
    from .presence import PresenceRegistry
    from .rooms import RoomRouter


class ConnectionState(enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CLOSED = "closed"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.CONNECTING: frozenset({ConnectionState.AUTHENTICATED, ConnectionState.CLOSED}),
    ConnectionState.AUTHENTICATED: frozenset({ConnectionState.ACTIVE, ConnectionState.CLOSED}),
    ConnectionState.ACTIVE: frozenset({ConnectionState.CLOSED}),
    ConnectionState.CLOSED: frozenset(),
}


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


@dataclass(eq=False)
class Connection:
    """One live transport session (an RNS link)."""

    connection_id: str
    link: Any = None
    user_id: str | None = None
    rooms: set[str] = field(default_factory=set)
    created_at: float = field(default_factory=time.time)
    state: ConnectionState = ConnectionState.CONNECTING
    close_reason: str | None = None
    registered: bool = False
    awaiting_pong: float | None = None
    # Serializes every event of this connection, including its teardown.
    dispatch_lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    rate: _RateState | None = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state is ConnectionState.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    def bind_user(self, user_id: str) -> None:
        if self.user_id is not None:
            raise InvalidTransition(
                f"connection {self.connection_id} is already bound to {self.user_id}"
            )
        self.user_id = user_id


class ConnectionLifecycleManager:
    """
    Owns every connection and drives it through
    CONNECTING -> AUTHENTICATED -> ACTIVE -> CLOSED.

    Keeps presence and room membership consistent with the set of open
    connections and queues the presence broadcasts that result from zero
    crossings. Presence is also written through to the user directory; those
    writes are best-effort.
    """

    def __init__(
        self,
        *,
        config: HubRuntimeConfig,
        presence: PresenceRegistry,
        rooms: RoomRouter,
        identity: IdentityProvider,
        directory: UserDirectory,
        messages: MessageHelper,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.presence = presence
        self.rooms = rooms
        self.identity = identity
        self.directory = directory
        self.messages = messages
        self._clock = clock
        self.log = logging.getLogger("rmsgd.lifecycle")
        self._lock = threading.Lock()
        self.connections: dict[str, Connection] = {}
        # Per-user locks ordering presence broadcasts and directory writes.
        self._user_locks: dict[str, threading.Lock] = {}
        self._published: dict[str, bool] = {}

    def open(self, connection_id: str, link: Any = None) -> Connection:
        conn = Connection(connection_id=connection_id, link=link, created_at=self._clock())
        conn.rate = _RateState(
            tokens=float(self.config.rate_limit_events_per_minute),
            last_refill=time.monotonic(),
        )
        with self._lock:
            if connection_id in self.connections:
                raise InvalidTransition(f"connection {connection_id} already open")
            self.connections[connection_id] = conn

        self.log.info("Connection opened conn=%s", fmt_id(connection_id))
        return conn

    def get(self, connection_id: str) -> Connection | None:
        with self._lock:
            return self.connections.get(connection_id)

    def active_connections(self, *, exclude: str | None = None) -> list[Connection]:
        with self._lock:
            return [
                c
                for cid, c in self.connections.items()
                if cid != exclude and c.state is ConnectionState.ACTIVE
            ]

    def authenticate(self, conn: Connection, credential: Any, outgoing: Outgoing) -> bool:
        """
        Verify the handshake credential and activate the connection.

        A refused connection goes straight to CLOSED and gets one error frame;
        the caller tears the link down once the frame is flushed.
        """
        if conn.state is not ConnectionState.CONNECTING:
            raise ValidationFailure("already authenticated")

        try:
            user_id = self.identity.verify(credential)
            if not self.directory.exists(user_id):
                raise AuthInvalid("user not found")
            if not self.directory.is_active(user_id):
                raise AuthDenied("account deactivated")
        except AuthDenied as e:
            self.log.info(
                "Authentication denied conn=%s reason=%s",
                fmt_id(conn.connection_id),
                e.reason,
            )
            self._refuse(conn, e.reason, outgoing)
            return False

        self._activate(conn, user_id, outgoing)
        return True

    def _refuse(self, conn: Connection, reason: str, outgoing: Outgoing) -> None:
        self.messages.queue_error(outgoing, conn, f"authentication denied: {reason}")
        with self._lock:
            if self.connections.get(conn.connection_id) is conn:
                self.connections.pop(conn.connection_id, None)
        self._transition(conn, ConnectionState.CLOSED)
        conn.close_reason = reason

    def _activate(self, conn: Connection, user_id: str, outgoing: Outgoing) -> None:
        conn.bind_user(user_id)
        self._transition(conn, ConnectionState.AUTHENTICATED)

        change = self.presence.register_connection(user_id, conn.connection_id)
        conn.registered = True

        room = self.rooms.join(conn.connection_id, personal_room(user_id))
        conn.rooms.add(room)
        self._transition(conn, ConnectionState.ACTIVE)

        self.messages.queue_welcome(outgoing, conn, user_id=user_id)

        self.log.info(
            "Connection active user=%s conn=%s first=%s",
            user_id,
            fmt_id(conn.connection_id),
            change is not None,
        )

        if change is not None:
            self._publish_presence(user_id, outgoing, exclude=conn.connection_id)

    def join_room(self, conn: Connection, raw_room: Any, outgoing: Outgoing) -> str:
        name = normalize_room_name(raw_room, max_len=self.config.max_room_name_len)
        if name is None:
            raise ValidationFailure("join-room requires a room id")

        room = chat_room(name)
        chat_rooms = [r for r in conn.rooms if r != personal_room(conn.user_id or "")]
        if room not in conn.rooms and len(chat_rooms) >= int(self.config.max_rooms_per_connection):
            raise ValidationFailure("too many rooms")

        self.rooms.join(conn.connection_id, room)
        conn.rooms.add(room)
        self.messages.queue_event(outgoing, conn, T_JOINED_ROOM, name, room=room)

        self.log.info(
            "Joined room user=%s room=%s conn=%s",
            conn.user_id,
            room,
            fmt_id(conn.connection_id),
        )
        return room

    def leave_room(self, conn: Connection, raw_room: Any, outgoing: Outgoing) -> str:
        name = normalize_room_name(raw_room, max_len=self.config.max_room_name_len)
        if name is None:
            raise ValidationFailure("leave-room requires a room id")

        room = chat_room(name)
        self.rooms.leave(conn.connection_id, room)
        conn.rooms.discard(room)
        self.messages.queue_event(outgoing, conn, T_LEFT_ROOM, name, room=room)

        self.log.info(
            "Left room user=%s room=%s conn=%s",
            conn.user_id,
            room,
            fmt_id(conn.connection_id),
        )
        return room

    def close(
        self, connection_id: str, outgoing: Outgoing, *, reason: str | None = None
    ) -> Connection | None:
        """
        Tear down a connection's state. Runs at most once per connection.

        Waits for an event already being dispatched on the connection to
        finish; events arriving afterwards see CLOSED and are dropped.
        """
        conn = self.get(connection_id)
        if conn is None:
            return None

        with conn.dispatch_lock:
            with self._lock:
                if self.connections.get(connection_id) is not conn:
                    return None
                self.connections.pop(connection_id, None)

            self._transition(conn, ConnectionState.CLOSED)
            conn.close_reason = reason

            rooms_left = self.rooms.remove_connection_from_all_rooms(connection_id)
            conn.rooms.clear()

            change = None
            if conn.registered and conn.user_id is not None:
                change = self.presence.deregister_connection(conn.user_id, connection_id)
                conn.registered = False

        self.log.info(
            "Connection closed user=%s rooms=%s conn=%s reason=%s",
            conn.user_id,
            len(rooms_left),
            fmt_id(connection_id),
            reason or "-",
        )

        if change is not None:
            self._publish_presence(change.user_id, outgoing, exclude=connection_id)

        return conn

    def refill_and_take(self, conn: Connection, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        state = conn.rate
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(max(1, int(self.config.rate_limit_events_per_minute)))
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def clear_all(self, outgoing: Outgoing) -> list[Connection]:
        """Close every connection (hub shutdown). Returns what was closed."""
        with self._lock:
            ids = list(self.connections.keys())
        closed: list[Connection] = []
        for cid in ids:
            conn = self.close(cid, outgoing, reason="shutdown")
            if conn is not None:
                closed.append(conn)
        return closed

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            states = [c.state for c in self.connections.values()]
        return {
            "total": len(states),
            "connecting": sum(1 for s in states if s is ConnectionState.CONNECTING),
            "active": sum(1 for s in states if s is ConnectionState.ACTIVE),
        }

    def _transition(self, conn: Connection, new_state: ConnectionState) -> None:
        if new_state not in _TRANSITIONS[conn.state]:
            raise InvalidTransition(
                f"connection {conn.connection_id}: {conn.state.value} -> {new_state.value}"
            )
        conn.state = new_state

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.Lock()
            return lock

    def _publish_presence(self, user_id: str, outgoing: Outgoing, *, exclude: str) -> None:
        """
        Broadcast and persist the user's current presence.

        Publishes what the registry holds now rather than the change that
        triggered the call, so a close racing a reconnect cannot leave an
        offline status behind. Nothing is sent when the registry already
        matches the last published state.
        """
        with self._user_lock(user_id):
            try:
                rec = self.presence.get_status(user_id)
            except PresenceNotFound:
                return
            if rec.online == self._published.get(user_id, False):
                return

            others = self.active_connections(exclude=exclude)
            if rec.online:
                ts = self._clock()
                self.messages.multicast(
                    outgoing,
                    others,
                    T_USER_STATUS,
                    {"userId": user_id, "status": PRESENCE_ONLINE},
                )
            else:
                ts = rec.last_seen if rec.last_seen is not None else self._clock()
                self.messages.multicast(
                    outgoing,
                    others,
                    T_USER_OFFLINE,
                    {
                        "userId": user_id,
                        "status": PRESENCE_OFFLINE,
                        "lastSeen": int(ts * 1000),
                    },
                )
            self._published[user_id] = rec.online

            try:
                self.directory.record_presence(user_id, online=rec.online, last_seen=ts)
            except Exception:
                self.log.warning(
                    "Presence write failed user=%s online=%s", user_id, rec.online, exc_info=True
                )
