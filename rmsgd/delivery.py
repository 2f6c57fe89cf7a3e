"""Message delivery for the messaging hub.

``send_message`` persists first and multicasts second. Multicast is
fire-and-forget: whoever is in the target room when the frame is queued gets
it, nobody else ever will. The sender gets a ``message-sent`` echo if and
only if the store accepted the message, and a ``message-error`` otherwise.

Typing indicators skip the store entirely and are dropped when the
recipient has no open connection.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from .constants import (
    CHAT_ROOM_PREFIX,
    DEFAULT_MESSAGE_TYPE,
    MESSAGE_TYPES,
    PERSONAL_ROOM_PREFIX,
    SEND_FAILED_REASON,
    T_MESSAGE_READ,
    T_MESSAGE_SENT,
    T_RECEIVE_MESSAGE,
    T_USER_TYPING,
)
from .errors import PersistenceFailure, RecipientNotFound, RelayError, ValidationFailure
from .messages import message_body, summary_body
from .rooms import chat_room, personal_room
from .util import fmt_id, normalize_room_name, normalize_user_id

if TYPE_CHECKING:
    from .config import HubRuntimeConfig
    from .directory import UserDirectory
    from .lifecycle import Connection
    from .messages import MessageHelper, Outgoing
    from .rooms import RoomRouter
    from .store import MessageStore, StoredMessage


class _Target:
    __slots__ = ("room", "recipient", "display")

    def __init__(self, room: str, recipient: str, display: dict[str, Any]) -> None:
        self.room = room
        self.recipient = recipient
        self.display = display


class DeliveryEngine:
    def __init__(
        self,
        *,
        config: HubRuntimeConfig,
        rooms: RoomRouter,
        store: MessageStore,
        directory: UserDirectory,
        messages: MessageHelper,
        lookup: Callable[[str], Connection | None],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.rooms = rooms
        self.store = store
        self.directory = directory
        self.messages = messages
        self._lookup = lookup
        self._clock = clock
        self.log = logging.getLogger("rmsgd.delivery")

    def send_message(
        self, conn: Connection, payload: Any, outgoing: Outgoing
    ) -> StoredMessage | None:
        """Persist and deliver one message. Returns the stored message on success."""
        try:
            return self._send_message(conn, payload, outgoing)
        except PersistenceFailure as e:
            self.log.warning(
                "Message not persisted user=%s conn=%s err=%s",
                conn.user_id,
                fmt_id(conn.connection_id),
                e,
            )
            self.messages.queue_message_error(outgoing, conn, SEND_FAILED_REASON)
        except RelayError as e:
            self.log.info(
                "Message rejected user=%s conn=%s reason=%s",
                conn.user_id,
                fmt_id(conn.connection_id),
                e.reason,
            )
            self.messages.queue_message_error(outgoing, conn, e.reason)
        return None

    def _send_message(
        self, conn: Connection, payload: Any, outgoing: Outgoing
    ) -> StoredMessage:
        if not isinstance(payload, dict):
            raise ValidationFailure("send-message body must be a map")

        content = payload.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ValidationFailure("message content is required")
        if len(content) > int(self.config.max_content_chars):
            raise ValidationFailure("message content too long")

        message_type = payload.get("messageType") or DEFAULT_MESSAGE_TYPE
        if message_type not in MESSAGE_TYPES:
            raise ValidationFailure(f"unsupported message type: {message_type!r}")

        client_ts = payload.get("timestamp")
        if not isinstance(client_ts, int) or isinstance(client_ts, bool) or client_ts < 0:
            client_ts = None

        target = self._resolve(conn, payload.get("recipient"), check_exists=True)
        sender_id = conn.user_id or ""

        try:
            msg = self.store.create(
                sender=sender_id,
                recipient=target.recipient,
                content=content,
                message_type=message_type,
                client_ts=client_ts,
            )
        except PersistenceFailure:
            raise
        except Exception as e:
            raise PersistenceFailure(str(e)) from e

        body = message_body(
            msg,
            sender=self._display(sender_id),
            recipient=target.display,
        )

        recipients = self._connections_in(target.room, exclude=conn.connection_id)
        fanout = self.messages.multicast(
            outgoing, recipients, T_RECEIVE_MESSAGE, body, room=target.room
        )
        self.messages.queue_event(outgoing, conn, T_MESSAGE_SENT, body)

        self.log.info(
            "Message delivered id=%s from=%s to=%s type=%s recipients=%s",
            msg.id,
            sender_id,
            target.recipient,
            message_type,
            fanout,
        )

        if self.config.touch_last_seen_on_send:
            try:
                self.directory.touch(sender_id, self._clock())
            except Exception:
                self.log.debug("last_seen touch failed user=%s", sender_id, exc_info=True)

        return msg

    def send_typing(self, conn: Connection, payload: Any, outgoing: Outgoing) -> int:
        """Relay a typing indicator. Returns how many connections it reached."""
        try:
            if not isinstance(payload, dict):
                raise ValidationFailure("typing body must be a map")
            is_typing = payload.get("isTyping")
            if not isinstance(is_typing, bool):
                raise ValidationFailure("typing requires isTyping")
            target = self._resolve(conn, payload.get("recipient"), check_exists=False)
        except RelayError as e:
            self.messages.queue_error(outgoing, conn, e.reason)
            return 0

        recipients = self._connections_in(target.room, exclude=conn.connection_id)
        room = target.room if target.room.startswith(CHAT_ROOM_PREFIX) else None
        return self.messages.multicast(
            outgoing,
            recipients,
            T_USER_TYPING,
            {"userId": conn.user_id, "isTyping": is_typing},
            room=room,
        )

    def mark_read(
        self, conn: Connection, payload: Any, outgoing: Outgoing
    ) -> StoredMessage | None:
        """Mark a received message read and notify its sender."""
        try:
            if not isinstance(payload, dict):
                raise ValidationFailure("mark-read body must be a map")
            message_id = payload.get("messageId")
            if not isinstance(message_id, str) or not message_id:
                raise ValidationFailure("mark-read requires messageId")

            try:
                msg = self.store.get(message_id)
                if msg is None:
                    raise ValidationFailure("message not found")
                if msg.recipient != conn.user_id:
                    raise ValidationFailure("not authorized to mark this message as read")
                updated = self.store.mark_read(message_id)
            except RelayError:
                raise
            except Exception as e:
                raise PersistenceFailure(str(e)) from e
            if updated is None:
                raise ValidationFailure("message not found")
        except RelayError as e:
            self.messages.queue_error(outgoing, conn, e.reason)
            return None

        body = {"id": updated.id, "readAt": updated.read_at, "readerId": conn.user_id}
        recipients = self._connections_in(
            personal_room(updated.sender), exclude=conn.connection_id
        )
        self.messages.multicast(outgoing, recipients, T_MESSAGE_READ, body)
        self.messages.queue_event(outgoing, conn, T_MESSAGE_READ, body)
        return updated

    def _resolve(self, conn: Connection, raw: Any, *, check_exists: bool) -> _Target:
        rid = normalize_user_id(raw)
        if rid is None:
            raise ValidationFailure("recipient is required")

        if rid.startswith(CHAT_ROOM_PREFIX):
            name = normalize_room_name(
                rid[len(CHAT_ROOM_PREFIX) :], max_len=self.config.max_room_name_len
            )
            if name is None:
                raise ValidationFailure("invalid room id")
            room = chat_room(name)
            # Group delivery is only open to members of the room.
            if room not in conn.rooms:
                raise RecipientNotFound("not a member of that room")
            return _Target(room, room, {"id": room})

        if rid.startswith(PERSONAL_ROOM_PREFIX):
            rid = rid[len(PERSONAL_ROOM_PREFIX) :]
            if not rid:
                raise ValidationFailure("recipient is required")

        if check_exists and not self.directory.exists(rid):
            raise RecipientNotFound()

        return _Target(personal_room(rid), rid, self._display(rid) if check_exists else {"id": rid})

    def _display(self, user_id: str) -> dict[str, Any]:
        try:
            summary = self.directory.summary(user_id)
        except Exception:
            self.log.debug("Directory summary failed user=%s", user_id, exc_info=True)
            summary = None
        return summary_body(user_id, summary)

    def _connections_in(self, room: str, *, exclude: str | None = None) -> list[Connection]:
        out: list[Connection] = []
        for cid in self.rooms.members_of(room):
            if cid == exclude:
                continue
            c = self._lookup(cid)
            if c is not None and c.is_active:
                out.append(c)
        return out
