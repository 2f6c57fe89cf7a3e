from __future__ import annotations

import itertools

import pytest

from rmsgd.codec import decode, encode
from rmsgd.config import HubRuntimeConfig
from rmsgd.constants import K_T, T_HELLO
from rmsgd.delivery import DeliveryEngine
from rmsgd.directory import UserSummary
from rmsgd.envelope import make_envelope
from rmsgd.errors import AuthExpired, AuthInvalid, PersistenceFailure
from rmsgd.lifecycle import ConnectionLifecycleManager
from rmsgd.messages import MessageHelper
from rmsgd.presence import PresenceRegistry
from rmsgd.rooms import RoomRouter
from rmsgd.router import MessageRouter
from rmsgd.store import MemoryMessageStore


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIdentity:
    """Accepts ``tok:<user_id>``; ``expired`` is an expired token."""

    def verify(self, credential):
        if credential == "expired":
            raise AuthExpired()
        if isinstance(credential, str) and credential.startswith("tok:"):
            return credential[4:]
        raise AuthInvalid()


class FakeDirectory:
    def __init__(self, users=("alice", "bob", "carol")) -> None:
        self.users = {
            u: {"username": u.title(), "active": True, "online": False, "last_seen": None}
            for u in users
        }
        self.presence_writes: list[tuple[str, bool, float]] = []
        self.touched: list[str] = []
        self.fail_writes = False

    def exists(self, user_id):
        return user_id in self.users

    def is_active(self, user_id):
        return bool(self.users.get(user_id, {}).get("active"))

    def summary(self, user_id):
        u = self.users.get(user_id)
        if u is None:
            return None
        return UserSummary(id=user_id, username=u["username"])

    def last_seen(self, user_id):
        return self.users.get(user_id, {}).get("last_seen")

    def record_presence(self, user_id, *, online, last_seen):
        if self.fail_writes:
            raise PersistenceFailure("directory offline")
        self.presence_writes.append((user_id, online, last_seen))
        self.users[user_id]["online"] = online
        self.users[user_id]["last_seen"] = last_seen

    def touch(self, user_id, ts):
        self.touched.append(user_id)

    def user_ids(self):
        return sorted(self.users)

    def mark_all_offline(self):
        stale = [u for u, v in self.users.items() if v["online"]]
        for u in stale:
            self.users[u]["online"] = False
        return len(stale)


class Hub:
    """The hub's components wired together without Reticulum."""

    def __init__(self, *, config=None, store=None, directory=None) -> None:
        self.config = config or HubRuntimeConfig(rate_limit_events_per_minute=1000)
        self.clock = FakeClock()
        self.directory = directory or FakeDirectory()
        self.store = store or MemoryMessageStore()
        self.messages = MessageHelper(src=b"hub-identity", hub_name="test")
        self.presence = PresenceRegistry(clock=self.clock)
        self.rooms = RoomRouter()
        self.lifecycle = ConnectionLifecycleManager(
            config=self.config,
            presence=self.presence,
            rooms=self.rooms,
            identity=FakeIdentity(),
            directory=self.directory,
            messages=self.messages,
            clock=self.clock,
        )
        self.delivery = DeliveryEngine(
            config=self.config,
            rooms=self.rooms,
            store=self.store,
            directory=self.directory,
            messages=self.messages,
            lookup=self.lifecycle.get,
            clock=self.clock,
        )
        self.router = MessageRouter(self.lifecycle, self.delivery, self.messages)
        self._ids = itertools.count(1)

    def open(self):
        return self.lifecycle.open(f"conn-{next(self._ids)}")

    def send(self, conn, msg_type, body=None, *, room=None):
        """Route one client frame; returns the decoded frames it produced."""
        outgoing = []
        data = encode(make_envelope(msg_type, room=room, body=body))
        with conn.dispatch_lock:
            self.router.route_packet(conn, data, outgoing)
        return [(c, decode(p)) for c, p in outgoing]

    def connect(self, user_id):
        conn = self.open()
        self.send(conn, T_HELLO, {"token": f"tok:{user_id}"})
        assert conn.is_active
        return conn

    def close(self, conn):
        outgoing = []
        self.lifecycle.close(conn.connection_id, outgoing)
        return [(c, decode(p)) for c, p in outgoing]


def frames_for(frames, conn, msg_type=None):
    return [
        env for c, env in frames if c is conn and (msg_type is None or env[K_T] == msg_type)
    ]


def types_of(frames):
    return [env[K_T] for _, env in frames]


@pytest.fixture
def hub() -> Hub:
    return Hub()
