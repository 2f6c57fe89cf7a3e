from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .codec import decode
from .constants import (
    EVENT_NAMES,
    K_BODY,
    K_ROOM,
    K_T,
    T_HELLO,
    T_JOIN_ROOM,
    T_LEAVE_ROOM,
    T_MARK_READ,
    T_PING,
    T_PONG,
    T_SEND_MESSAGE,
    T_TYPING,
)
from .envelope import validate_envelope
from .errors import RateLimitExceeded, ValidationFailure
from .lifecycle import ConnectionState
from .util import fmt_id

if TYPE_CHECKING:
    from .delivery import DeliveryEngine
    from .lifecycle import Connection, ConnectionLifecycleManager
    from .messages import MessageHelper, Outgoing


class MessageRouter:
    """
    Decodes inbound frames and dispatches them by type.

    Before the handshake only HELLO is accepted. Once a connection is active
    frames go to the lifecycle manager (rooms, ping) or the delivery engine
    (messages, typing, read receipts). Errors are reported to the
    originating connection only.

    Callers hold ``conn.dispatch_lock`` so that frames of one connection are
    handled strictly one at a time.
    """

    def __init__(
        self,
        lifecycle: ConnectionLifecycleManager,
        delivery: DeliveryEngine,
        messages: MessageHelper,
    ) -> None:
        self.lifecycle = lifecycle
        self.delivery = delivery
        self.messages = messages
        self.log = logging.getLogger("rmsgd.router")

    def route_packet(self, conn: Connection, data: bytes, outgoing: Outgoing) -> None:
        """Main entry point for routing an incoming packet."""
        if conn.is_closed:
            # Traffic that raced the link closing.
            return

        if not self.lifecycle.refill_and_take(conn, 1.0):
            self._rate_limited(conn, outgoing)
            return

        try:
            env = decode(data)
            validate_envelope(env)
        except Exception as e:
            self.log.debug(
                "Bad packet conn=%s bytes=%s err=%s",
                fmt_id(conn.connection_id),
                len(data),
                e,
            )
            self.messages.queue_error(outgoing, conn, f"bad message: {e}")
            return

        t = env.get(K_T)
        room = env.get(K_ROOM)
        body = env.get(K_BODY)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX user=%s conn=%s event=%s room=%r bytes=%s body_type=%s",
                conn.user_id,
                fmt_id(conn.connection_id),
                EVENT_NAMES.get(t, t),
                room,
                len(data),
                type(body).__name__,
            )

        try:
            if t == T_PONG:
                conn.awaiting_pong = None
            elif conn.state is ConnectionState.CONNECTING:
                self._handle_pre_welcome(conn, t, body, outgoing)
            elif t == T_HELLO:
                self.messages.queue_error(outgoing, conn, "already authenticated")
            elif t == T_JOIN_ROOM:
                self.lifecycle.join_room(conn, self._room_arg(room, body), outgoing)
            elif t == T_LEAVE_ROOM:
                self.lifecycle.leave_room(conn, self._room_arg(room, body), outgoing)
            elif t == T_SEND_MESSAGE:
                self.delivery.send_message(conn, body, outgoing)
            elif t == T_TYPING:
                self.delivery.send_typing(conn, body, outgoing)
            elif t == T_MARK_READ:
                self.delivery.mark_read(conn, body, outgoing)
            elif t == T_PING:
                self.messages.queue_event(outgoing, conn, T_PONG, body)
            else:
                self.messages.queue_error(outgoing, conn, f"unsupported message type: {t}")
        except ValidationFailure as e:
            self.messages.queue_error(
                outgoing, conn, e.reason, room=room if isinstance(room, str) else None
            )

    def _handle_pre_welcome(
        self, conn: Connection, t: Any, body: Any, outgoing: Outgoing
    ) -> None:
        """Handle frames before WELCOME (only HELLO is allowed)."""
        if t != T_HELLO:
            self.messages.queue_error(outgoing, conn, "send HELLO first")
            return

        credential = body.get("token") if isinstance(body, dict) else body
        self.lifecycle.authenticate(conn, credential, outgoing)

    def _rate_limited(self, conn: Connection, outgoing: Outgoing) -> None:
        err = RateLimitExceeded()
        self.log.info(
            "Rate limited user=%s conn=%s",
            conn.user_id,
            fmt_id(conn.connection_id),
        )
        self.messages.queue_error(outgoing, conn, err.reason)
        self.lifecycle.close(conn.connection_id, outgoing, reason=err.reason)

    @staticmethod
    def _room_arg(room: Any, body: Any) -> Any:
        # Room id travels in the envelope room field; a bare string body is
        # accepted too.
        if isinstance(room, str) and room.strip():
            return room
        return body
