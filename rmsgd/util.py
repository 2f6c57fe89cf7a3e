from __future__ import annotations

import os


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def _has_control_chars(s: str) -> bool:
    return any(ch in s for ch in ("\n", "\r", "\x00"))


def normalize_user_id(value) -> str | None:
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s or _has_control_chars(s):
        return None
    return s


def normalize_room_name(value, *, max_len: int) -> str | None:
    """Return a trimmed room name, or None when it is unusable.

    Room names are case-sensitive identifiers (conversation ids, thread ids),
    so unlike nicknames they are not folded.
    """
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_len > 0 and len(s) > int(max_len):
        return None

    # Avoid embedded newlines or NUL, which frequently cause log formatting
    # issues.
    if _has_control_chars(s):
        return None

    return s


def fmt_id(value, *, prefix: int = 12) -> str:
    if isinstance(value, (bytes, bytearray)):
        s = bytes(value).hex()
    elif isinstance(value, str) and value:
        s = value
    else:
        return "-"
    return s if prefix <= 0 else s[: min(prefix, len(s))]
