import pytest

from rmsgd.codec import decode, encode
from rmsgd.constants import K_BODY, K_SRC, T_SEND_MESSAGE
from rmsgd.envelope import make_envelope, validate_envelope
from rmsgd.errors import ValidationFailure


def test_codec_round_trip() -> None:
    body = {"recipient": "bob", "content": "hi", "messageType": "text"}
    env = make_envelope(T_SEND_MESSAGE, body=body)
    data = encode(env)
    decoded = decode(data)
    assert decoded == env
    assert K_SRC not in decoded
    assert decoded[K_BODY] == body
    validate_envelope(decoded)


def test_decode_rejects_garbage_as_validation_failure() -> None:
    with pytest.raises(ValidationFailure) as exc:
        decode(b"\xff\xff\x00")
    assert "undecodable" in exc.value.reason


def test_decode_rejects_truncated_frame() -> None:
    data = encode(make_envelope(T_SEND_MESSAGE, body={"content": "x" * 50}))
    with pytest.raises(ValidationFailure):
        decode(data[:10])
