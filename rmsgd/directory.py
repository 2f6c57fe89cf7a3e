"""User directory backed by a TOML file.

The hub does not manage accounts; it only needs to know whether a user
exists and may connect, what to display for them, and where to record
online/last-seen state. The file is maintained by rmsgd (presence fields) and
by operators (everything else):

    [users."64f0c0ffee"]
    username = "alice"
    avatar = "https://example.org/alice.png"
    active = true
    online = false
    last_seen = 1730000000.0
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Protocol

import tomlkit

from .errors import PersistenceFailure
from .util import normalize_user_id


@dataclass(frozen=True)
class UserSummary:
    id: str
    username: str
    avatar: str | None = None

    def to_body(self) -> dict[str, Any]:
        return {"id": self.id, "username": self.username, "avatar": self.avatar}


class UserDirectory(Protocol):
    def exists(self, user_id: str) -> bool: ...

    def is_active(self, user_id: str) -> bool: ...

    def summary(self, user_id: str) -> UserSummary | None: ...

    def last_seen(self, user_id: str) -> float | None: ...

    def record_presence(self, user_id: str, *, online: bool, last_seen: float) -> None: ...

    def touch(self, user_id: str, ts: float) -> None: ...

    def user_ids(self) -> list[str]: ...

    def mark_all_offline(self) -> int: ...


def load_user_directory(path: str) -> tuple[dict[str, dict[str, Any]], str | None]:
    if not path:
        return {}, "user_directory_path is empty"
    if not os.path.exists(path):
        return {}, f"user directory file not found: {path}"

    try:
        with open(path, encoding="utf-8") as f:
            doc = tomlkit.parse(f.read())
    except Exception as e:
        return {}, f"failed to parse user directory: {e}"

    users = doc.get("users")
    if users is None:
        return {}, None
    if not isinstance(users, dict):
        return {}, "user directory: [users] must be a table"

    out: dict[str, dict[str, Any]] = {}
    for raw_id, raw in users.items():
        uid = normalize_user_id(raw_id)
        if uid is None or not isinstance(raw, dict):
            continue

        username = raw.get("username")
        if not isinstance(username, str) or not username.strip():
            username = uid

        avatar = raw.get("avatar")
        if not isinstance(avatar, str) or not avatar.strip():
            avatar = None

        last_seen = raw.get("last_seen")
        try:
            last_seen = float(last_seen) if last_seen is not None else None
        except (TypeError, ValueError):
            last_seen = None

        out[uid] = {
            "username": str(username),
            "avatar": str(avatar) if avatar else None,
            "active": bool(raw.get("active", True)),
            "online": bool(raw.get("online", False)),
            "last_seen": last_seen,
        }

    return out, None


class TomlUserDirectory:
    def __init__(self, path: str) -> None:
        self.path = path
        self.log = logging.getLogger("rmsgd.directory")
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._users: dict[str, dict[str, Any]] = {}

        users, err = load_user_directory(path)
        if err is not None:
            raise RuntimeError(err)
        self._users = users
        self.log.info("Loaded user directory users=%s path=%s", len(users), path)

    def exists(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._users

    def is_active(self, user_id: str) -> bool:
        with self._lock:
            u = self._users.get(user_id)
            return bool(u and u.get("active", True))

    def summary(self, user_id: str) -> UserSummary | None:
        with self._lock:
            u = self._users.get(user_id)
            if u is None:
                return None
            return UserSummary(id=user_id, username=u["username"], avatar=u.get("avatar"))

    def last_seen(self, user_id: str) -> float | None:
        with self._lock:
            u = self._users.get(user_id)
            return u.get("last_seen") if u else None

    def user_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._users)

    def touch(self, user_id: str, ts: float) -> None:
        """Update last-seen in memory; written out with the next presence write."""
        with self._lock:
            u = self._users.get(user_id)
            if u is not None:
                u["last_seen"] = float(ts)

    def record_presence(self, user_id: str, *, online: bool, last_seen: float) -> None:
        with self._lock:
            u = self._users.get(user_id)
            if u is None:
                return
            u["online"] = bool(online)
            u["last_seen"] = float(last_seen)
        self._persist({user_id})

    def mark_all_offline(self) -> int:
        """Clear online flags left behind by an unclean shutdown."""
        with self._lock:
            stale = {uid for uid, u in self._users.items() if u.get("online")}
            for uid in stale:
                self._users[uid]["online"] = False
        if stale:
            self._persist(stale)
            self.log.info("Reset stale online flags users=%s", len(stale))
        return len(stale)

    def _persist(self, user_ids: set[str]) -> None:
        try:
            with self._write_lock:
                file_stat = None
                try:
                    file_stat = os.stat(self.path)
                except OSError:
                    file_stat = None

                with open(self.path, encoding="utf-8") as f:
                    doc = tomlkit.parse(f.read())

                users = doc.get("users")
                if users is None:
                    users = tomlkit.table()
                    doc["users"] = users

                with self._lock:
                    snapshot = {
                        uid: dict(self._users[uid]) for uid in user_ids if uid in self._users
                    }

                for uid, u in snapshot.items():
                    tbl = users.get(uid)
                    if tbl is None:
                        # The user was removed from the file since it was loaded.
                        continue
                    tbl["online"] = bool(u.get("online"))
                    if u.get("last_seen") is not None:
                        tbl["last_seen"] = float(u["last_seen"])

                with open(self.path, "w", encoding="utf-8") as f:
                    f.write(tomlkit.dumps(doc))

                if file_stat is not None:
                    try:
                        os.chmod(self.path, file_stat.st_mode)
                    except OSError:
                        pass
        except Exception as e:
            raise PersistenceFailure(f"user directory write failed: {e}") from e
