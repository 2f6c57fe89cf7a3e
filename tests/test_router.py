from conftest import Hub, frames_for, types_of

from rmsgd.codec import decode, encode
from rmsgd.config import HubRuntimeConfig
from rmsgd.constants import (
    K_BODY,
    K_SRC,
    K_T,
    K_V,
    T_ERROR,
    T_PING,
    T_PONG,
    T_SEND_MESSAGE,
    T_USER_OFFLINE,
)
from rmsgd.envelope import make_envelope


def _route_raw(hub, conn, data):
    outgoing = []
    with conn.dispatch_lock:
        hub.router.route_packet(conn, data, outgoing)
    return [(c, decode(p)) for c, p in outgoing]


def test_undecodable_frame_gets_error(hub) -> None:
    a1 = hub.connect("alice")
    frames = _route_raw(hub, a1, b"\xff\x00garbage")
    assert types_of(frames) == [T_ERROR]
    assert frames[0][1][K_BODY]["error"].startswith("bad message:")
    assert a1.is_active


def test_invalid_envelope_gets_error(hub) -> None:
    a1 = hub.connect("alice")
    env = make_envelope(T_PING)
    env[K_V] = 99
    frames = _route_raw(hub, a1, encode(env))
    assert types_of(frames) == [T_ERROR]
    assert "unsupported version" in frames[0][1][K_BODY]["error"]


def test_ping_is_answered_with_pong(hub) -> None:
    a1 = hub.connect("alice")
    frames = hub.send(a1, T_PING, 1234)
    assert types_of(frames) == [T_PONG]
    assert frames[0][1][K_BODY] == 1234
    assert frames[0][1][K_SRC] == b"hub-identity"


def test_pong_clears_awaiting_flag(hub) -> None:
    a1 = hub.connect("alice")
    a1.awaiting_pong = 10.0
    assert hub.send(a1, T_PONG) == []
    assert a1.awaiting_pong is None


def test_unknown_type_gets_error(hub) -> None:
    a1 = hub.connect("alice")
    frames = hub.send(a1, 999)
    assert types_of(frames) == [T_ERROR]
    assert "unsupported message type" in frames[0][1][K_BODY]["error"]


def test_rate_limit_closes_connection() -> None:
    hub = Hub(config=HubRuntimeConfig(rate_limit_events_per_minute=3))
    b1 = hub.connect("bob")
    a1 = hub.connect("alice")

    # HELLO used one token.
    assert types_of(hub.send(a1, T_PING)) == [T_PONG]
    assert types_of(hub.send(a1, T_PING)) == [T_PONG]

    frames = hub.send(a1, T_SEND_MESSAGE, {"recipient": "bob", "content": "spam"})

    assert frames_for(frames, a1, T_ERROR)[0][K_BODY] == {"error": "rate limit exceeded"}
    assert len(frames_for(frames, b1, T_USER_OFFLINE)) == 1
    assert a1.is_closed
    assert a1.close_reason == "rate limit exceeded"
    assert hub.store.unread_count("bob") == 0
    assert hub.send(a1, T_PING) == []


def test_default_rate_limit_is_thirty_per_minute() -> None:
    hub = Hub(config=HubRuntimeConfig())
    a1 = hub.connect("alice")
    replies = [types_of(hub.send(a1, T_PING)) for _ in range(30)]
    assert replies[:29] == [[T_PONG]] * 29
    assert replies[29] == [T_ERROR]
    assert a1.is_closed


def test_hub_frames_use_wire_types(hub) -> None:
    a1 = hub.connect("alice")
    frames = hub.send(a1, T_PING)
    assert all(isinstance(env[K_T], int) for _, env in frames)
