from __future__ import annotations

import logging
import os
import signal
import threading
import time
from typing import Any

import RNS

from .codec import encode
from .config import HubRuntimeConfig
from .constants import T_PING
from .delivery import DeliveryEngine
from .directory import TomlUserDirectory, UserDirectory
from .envelope import make_envelope
from .identity import IdentityProvider, JwtIdentityProvider
from .lifecycle import Connection, ConnectionLifecycleManager
from .messages import MessageHelper, Outgoing
from .presence import PresenceRegistry
from .rooms import RoomRouter
from .router import MessageRouter
from .store import MemoryMessageStore, MessageStore, SqliteMessageStore
from .util import expand_path, fmt_id


class HubService:
    """
    Reticulum front end of the messaging hub.

    Every RNS link is one connection. Link callbacks run on RNS threads;
    each connection's frames are dispatched under its own ``dispatch_lock``
    and the resulting frames are sent after the handlers return, so no
    registry lock is ever held across network I/O.
    """

    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        identity_provider: IdentityProvider | None = None,
        directory: UserDirectory | None = None,
        store: MessageStore | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("rmsgd.hub")

        self._shutdown = threading.Event()
        self._ping_thread: threading.Thread | None = None
        self._announce_thread: threading.Thread | None = None
        self._started_monotonic: float | None = None

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self.directory = directory if directory is not None else self._open_directory()
        self.store = store if store is not None else self._open_store()
        self.identity_provider = (
            identity_provider if identity_provider is not None else self._make_identity_provider()
        )

        self.messages = MessageHelper(hub_name=config.hub_name)
        self.presence = PresenceRegistry()
        self.rooms = RoomRouter()
        self.lifecycle = ConnectionLifecycleManager(
            config=config,
            presence=self.presence,
            rooms=self.rooms,
            identity=self.identity_provider,
            directory=self.directory,
            messages=self.messages,
        )
        self.delivery = DeliveryEngine(
            config=config,
            rooms=self.rooms,
            store=self.store,
            directory=self.directory,
            messages=self.messages,
            lookup=self.lifecycle.get,
        )
        self.router = MessageRouter(self.lifecycle, self.delivery, self.messages)

        self.stats: dict[str, int] = {
            "pkts_in": 0,
            "bytes_in": 0,
            "bytes_out": 0,
            "send_failures": 0,
            "pings_out": 0,
            "ping_timeouts": 0,
            "announces": 0,
        }
        self._stats_lock = threading.Lock()

    def _open_directory(self) -> UserDirectory:
        if not self.config.user_directory_path:
            raise RuntimeError("user_directory_path is not set")
        return TomlUserDirectory(expand_path(self.config.user_directory_path))

    def _open_store(self) -> MessageStore:
        if not self.config.message_db_path:
            self.log.warning("message_db_path is not set; messages are kept in memory only")
            return MemoryMessageStore()
        return SqliteMessageStore(expand_path(self.config.message_db_path))

    def _make_identity_provider(self) -> IdentityProvider:
        if not self.config.jwt_secret:
            raise RuntimeError("auth secret is not set; add [auth] secret to the config")
        return JwtIdentityProvider(
            self.config.jwt_secret,
            algorithm=self.config.jwt_algorithm,
            audience=self.config.jwt_audience,
        )

    def _inc(self, key: str, delta: int = 1) -> None:
        with self._stats_lock:
            self.stats[key] = int(self.stats.get(key, 0)) + int(delta)

    def _link_id(self, link: Any) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return f"link-{id(link):x}"

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self._started_monotonic = time.monotonic()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)
        self.messages.src = self.identity.hash

        self._restore_presence()

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop,
                name="rmsgd-announce",
                daemon=True,
            )
            self._announce_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy max_rooms=%s max_room_name_len=%s max_content_chars=%s "
            "rate_limit_events_per_minute=%s",
            self.config.max_rooms_per_connection,
            self.config.max_room_name_len,
            self.config.max_content_chars,
            self.config.rate_limit_events_per_minute,
        )

        if self.config.ping_interval_s and self.config.ping_interval_s > 0:
            self._ping_thread = threading.Thread(
                target=self._ping_loop, name="rmsgd-ping", daemon=True
            )
            self._ping_thread.start()

    def _restore_presence(self) -> None:
        # Nobody is connected yet, so any online flag on disk is stale.
        try:
            self.directory.mark_all_offline()
        except Exception:
            self.log.warning("Could not reset stale presence flags", exc_info=True)

        for uid in self.directory.user_ids():
            self.presence.seed(uid, self.directory.last_seen(uid))

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "rmsg", "v": 1, "hub": self.config.hub_name})
            )
            self._inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.is_set():
            period = float(self.config.announce_period_s)
            if period <= 0:
                time.sleep(1.0)
                continue

            time.sleep(period)
            if self._shutdown.is_set():
                break
            self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        outgoing: Outgoing = []
        closed = self.lifecycle.clear_all(outgoing)

        for conn in closed:
            self._teardown(conn)

        try:
            self.store.close()
        except Exception:
            self.log.warning("Message store close failed", exc_info=True)

        self.log.info("Hub stopped connections_closed=%s", len(closed))

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _on_link(self, link: RNS.Link) -> None:
        cid = self._link_id(link)
        conn = self.lifecycle.open(cid, link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(conn, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(conn))

        self.log.info("Link established conn=%s", fmt_id(cid))

    def _on_packet(self, conn: Connection, data: bytes) -> None:
        self._inc("pkts_in")
        self._inc("bytes_in", len(data))

        outgoing: Outgoing = []
        with conn.dispatch_lock:
            self.router.route_packet(conn, data, outgoing)

        self._flush(outgoing)

        if conn.is_closed:
            # Refused during the handshake or dropped for flooding.
            self._teardown(conn)

    def _on_close(self, conn: Connection) -> None:
        outgoing: Outgoing = []
        closed = self.lifecycle.close(conn.connection_id, outgoing, reason="link closed")
        self._flush(outgoing)

        if closed is not None:
            self.log.info(
                "Link closed user=%s conn=%s",
                closed.user_id,
                fmt_id(closed.connection_id),
            )

    def _flush(self, outgoing: Outgoing) -> None:
        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug("Sending %d frame(s)", len(outgoing))

        for conn, payload in outgoing:
            self._inc("bytes_out", len(payload))
            try:
                self._send_payload(conn, payload)
            except OSError as e:
                # Common failure mode on low-MTU links: packet too large.
                self._inc("send_failures")
                self.log.warning(
                    "Send failed conn=%s bytes=%s err=%s",
                    fmt_id(conn.connection_id),
                    len(payload),
                    e,
                )
            except Exception:
                self._inc("send_failures")
                self.log.debug(
                    "Send failed conn=%s bytes=%s",
                    fmt_id(conn.connection_id),
                    len(payload),
                    exc_info=True,
                )

    def _send_payload(self, conn: Connection, payload: bytes) -> None:
        if conn.link is None:
            return
        RNS.Packet(conn.link, payload).send()

    def _teardown(self, conn: Connection) -> None:
        if conn.link is None:
            return
        try:
            conn.link.teardown()
        except Exception:
            self.log.debug(
                "Link teardown failed conn=%s", fmt_id(conn.connection_id), exc_info=True
            )

    def _ping_loop(self) -> None:
        while not self._shutdown.is_set():
            interval = float(self.config.ping_interval_s)
            if interval <= 0:
                time.sleep(1.0)
                continue

            time.sleep(interval)
            if self._shutdown.is_set():
                break
            self._ping_once()

    def _ping_once(self, now: float | None = None) -> None:
        """Ping idle connections and drop those that missed the last PONG."""
        timeout = float(self.config.ping_timeout_s)
        if now is None:
            now = time.monotonic()

        to_teardown: list[Connection] = []
        to_ping: list[Connection] = []

        for conn in self.lifecycle.active_connections():
            awaiting = conn.awaiting_pong
            if timeout > 0 and awaiting is not None and (now - float(awaiting)) > timeout:
                to_teardown.append(conn)
                continue
            if awaiting is None:
                conn.awaiting_pong = now
                to_ping.append(conn)

        for conn in to_teardown:
            self._inc("ping_timeouts")
            self.log.info(
                "Ping timeout user=%s conn=%s", conn.user_id, fmt_id(conn.connection_id)
            )
            # Closing here does not wait for RNS to report the link closed,
            # so presence goes offline on schedule.
            self._on_close(conn)
            self._teardown(conn)

        outgoing: Outgoing = []
        for conn in to_ping:
            self._inc("pings_out")
            self.messages.queue_env(
                outgoing, conn, make_envelope(T_PING, src=self.messages.src, body=int(now))
            )
        self._flush(outgoing)

    def get_stats(self) -> dict[str, Any]:
        with self._stats_lock:
            counters = dict(self.stats)
        uptime = None
        if self._started_monotonic is not None:
            uptime = time.monotonic() - self._started_monotonic
        return {
            "uptime_s": uptime,
            "counters": counters,
            "connections": self.lifecycle.get_stats(),
            "presence": self.presence.get_stats(),
            "rooms": self.rooms.get_stats(),
        }
