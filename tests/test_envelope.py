import pytest

from rmsgd.constants import (
    K_BODY,
    K_ID,
    K_ROOM,
    K_SRC,
    K_T,
    K_TS,
    K_V,
    RMSG_VERSION,
    T_HELLO,
    T_JOIN_ROOM,
)
from rmsgd.envelope import make_envelope, validate_envelope


def test_validate_accepts_make_envelope() -> None:
    env = make_envelope(T_HELLO, body={"token": "abc"})
    validate_envelope(env)


def test_hub_frames_carry_src() -> None:
    env = make_envelope(T_HELLO, src=b"hub", body=None)
    assert env[K_SRC] == b"hub"
    validate_envelope(env)


def test_validate_rejects_missing_required_key() -> None:
    env = make_envelope(T_HELLO, body=None)
    env.pop(K_TS)
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_validate_rejects_wrong_version() -> None:
    env = make_envelope(T_HELLO, body=None)
    env[K_V] = RMSG_VERSION + 1
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_validate_rejects_non_integer_keys() -> None:
    env = make_envelope(T_HELLO, body=None)
    env["1"] = env.pop(K_T)
    with pytest.raises(TypeError):
        validate_envelope(env)


def test_validate_allows_unknown_extension_keys() -> None:
    env = make_envelope(T_HELLO, body=None)
    env[64] = {"future": True}
    validate_envelope(env)


def test_validate_allows_omitted_body() -> None:
    env = make_envelope(T_HELLO, body=None)
    assert K_BODY not in env
    validate_envelope(env)


def test_validate_rejects_empty_room() -> None:
    env = make_envelope(T_JOIN_ROOM, room="general")
    env[K_ROOM] = ""
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_validate_rejects_wrong_field_types() -> None:
    env = make_envelope(T_HELLO, body=None)
    env[K_ID] = "not-bytes"
    with pytest.raises(TypeError):
        validate_envelope(env)

    env = make_envelope(T_HELLO, body=None)
    env[K_SRC] = "not-bytes"
    with pytest.raises(TypeError):
        validate_envelope(env)

    env = make_envelope(T_HELLO, body=None)
    env[K_TS] = "not-int"
    with pytest.raises(TypeError):
        validate_envelope(env)

    env = make_envelope(T_JOIN_ROOM, body=None)
    env[K_ROOM] = 123
    with pytest.raises(TypeError):
        validate_envelope(env)
