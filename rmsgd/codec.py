from __future__ import annotations

import cbor2

from .errors import ValidationFailure


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    try:
        return cbor2.loads(b)
    except (cbor2.CBORDecodeError, EOFError) as e:
        raise ValidationFailure(f"undecodable frame: {e}") from e
