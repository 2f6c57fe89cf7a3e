"""Outbound frame construction and queueing for the messaging hub."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable

from . import __version__
from .codec import encode
from .constants import EVENT_NAMES, T_ERROR, T_MESSAGE_ERROR, T_WELCOME
from .envelope import make_envelope

if TYPE_CHECKING:
    from .directory import UserSummary
    from .lifecycle import Connection
    from .store import StoredMessage

Outgoing = list[tuple["Connection", bytes]]


def summary_body(user_id: str, summary: UserSummary | None) -> dict[str, Any]:
    if summary is None:
        return {"id": user_id, "username": None, "avatar": None}
    return summary.to_body()


def message_body(
    msg: StoredMessage,
    *,
    sender: dict[str, Any],
    recipient: dict[str, Any],
) -> dict[str, Any]:
    """Client-facing representation of a persisted message."""
    return {
        "id": msg.id,
        "content": msg.content,
        "messageType": msg.message_type,
        "timestamp": msg.timestamp,
        "sender": sender,
        "recipient": recipient,
        "status": msg.status,
        "readAt": msg.read_at,
    }


class MessageHelper:
    """
    Builds hub-originated envelopes and queues them for delivery.

    Frames are appended to an ``outgoing`` list of (connection, payload)
    pairs; the service sends them after state locks are released.
    """

    def __init__(self, *, src: bytes | None = None, hub_name: str = "rmsg") -> None:
        self.log = logging.getLogger("rmsgd.messages")
        self.src = src
        self.hub_name = hub_name

    def queue_payload(self, outgoing: Outgoing, conn: Connection, payload: bytes) -> None:
        outgoing.append((conn, payload))

    def queue_env(self, outgoing: Outgoing, conn: Connection, env: dict) -> None:
        self.queue_payload(outgoing, conn, encode(env))

    def queue_event(
        self,
        outgoing: Outgoing,
        conn: Connection,
        msg_type: int,
        body: Any = None,
        *,
        room: str | None = None,
    ) -> None:
        env = make_envelope(msg_type, src=self.src, room=room, body=body)
        self.queue_env(outgoing, conn, env)

    def multicast(
        self,
        outgoing: Outgoing,
        conns: Iterable[Connection],
        msg_type: int,
        body: Any = None,
        *,
        room: str | None = None,
    ) -> int:
        """Queue one encoded frame for every connection. Returns the fan-out."""
        payload = encode(make_envelope(msg_type, src=self.src, room=room, body=body))
        count = 0
        for conn in conns:
            self.queue_payload(outgoing, conn, payload)
            count += 1
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Multicast event=%s room=%r recipients=%s",
                EVENT_NAMES.get(msg_type, msg_type),
                room,
                count,
            )
        return count

    def queue_welcome(
        self, outgoing: Outgoing, conn: Connection, *, user_id: str
    ) -> None:
        body = {"hub": self.hub_name, "ver": str(__version__), "userId": user_id}
        self.queue_event(outgoing, conn, T_WELCOME, body)

    def queue_error(
        self, outgoing: Outgoing, conn: Connection, reason: str, *, room: str | None = None
    ) -> None:
        self.queue_event(outgoing, conn, T_ERROR, {"error": reason}, room=room)

    def queue_message_error(self, outgoing: Outgoing, conn: Connection, reason: str) -> None:
        self.queue_event(outgoing, conn, T_MESSAGE_ERROR, {"error": reason})
