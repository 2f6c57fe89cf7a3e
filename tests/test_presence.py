import random
import threading

import pytest

from rmsgd.constants import PRESENCE_OFFLINE, PRESENCE_ONLINE
from rmsgd.errors import DuplicateRegistration, PresenceNotFound, UnknownRegistration
from rmsgd.presence import PresenceRegistry


def test_first_connection_reports_online() -> None:
    reg = PresenceRegistry(clock=lambda: 100.0)
    change = reg.register_connection("alice", "c1")
    assert change is not None
    assert change.status == PRESENCE_ONLINE
    assert change.online

    assert reg.register_connection("alice", "c2") is None
    rec = reg.get_status("alice")
    assert rec.online
    assert rec.active_connections == 2


def test_last_connection_reports_offline_with_last_seen() -> None:
    reg = PresenceRegistry(clock=lambda: 123.5)
    reg.register_connection("alice", "c1")
    reg.register_connection("alice", "c2")

    assert reg.deregister_connection("alice", "c1") is None
    assert reg.get_status("alice").online

    change = reg.deregister_connection("alice", "c2")
    assert change is not None
    assert change.status == PRESENCE_OFFLINE
    assert change.last_seen == 123.5

    rec = reg.get_status("alice")
    assert not rec.online
    assert rec.last_seen == 123.5
    assert rec.active_connections == 0


def test_duplicate_registration_raises() -> None:
    reg = PresenceRegistry()
    reg.register_connection("alice", "c1")
    with pytest.raises(DuplicateRegistration):
        reg.register_connection("alice", "c1")
    assert reg.get_status("alice").active_connections == 1


def test_unknown_deregistration_raises() -> None:
    reg = PresenceRegistry()
    with pytest.raises(UnknownRegistration):
        reg.deregister_connection("alice", "c1")

    reg.register_connection("alice", "c1")
    with pytest.raises(UnknownRegistration):
        reg.deregister_connection("alice", "c9")


def test_status_of_never_connected_user_is_not_found() -> None:
    reg = PresenceRegistry()
    with pytest.raises(PresenceNotFound):
        reg.get_status("ghost")


def test_get_status_returns_snapshot() -> None:
    reg = PresenceRegistry()
    reg.register_connection("alice", "c1")
    snap = reg.get_status("alice")
    snap.connections.add("bogus")
    assert reg.get_status("alice").connections == {"c1"}


def test_seed_keeps_durable_last_seen_for_offline_user() -> None:
    reg = PresenceRegistry()
    reg.seed("bob", 42.0)
    rec = reg.get_status("bob")
    assert not rec.online
    assert rec.last_seen == 42.0
    assert reg.get_stats()["users_online"] == 0


def test_seed_without_last_seen_leaves_user_unknown() -> None:
    reg = PresenceRegistry()
    reg.seed("carol", None)
    with pytest.raises(PresenceNotFound):
        reg.get_status("carol")


def test_online_flag_tracks_net_registrations_in_random_sequences() -> None:
    rnd = random.Random(7)
    reg = PresenceRegistry()
    open_ids: list[str] = []
    for step in range(500):
        if open_ids and rnd.random() < 0.5:
            cid = open_ids.pop(rnd.randrange(len(open_ids)))
            change = reg.deregister_connection("alice", cid)
            assert (change is not None) == (not open_ids)
        else:
            cid = f"c{step}"
            change = reg.register_connection("alice", cid)
            assert (change is not None) == (not open_ids)
            open_ids.append(cid)
        assert reg.get_status("alice").online == bool(open_ids)


def test_concurrent_connections_cross_zero_once_each_way() -> None:
    reg = PresenceRegistry()
    changes: list[str] = []
    changes_lock = threading.Lock()
    start = threading.Barrier(8)

    def worker(n: int) -> None:
        start.wait()
        for i in range(200):
            cid = f"w{n}-{i}"
            c = reg.register_connection("alice", cid)
            if c is not None:
                with changes_lock:
                    changes.append(c.status)
            c = reg.deregister_connection("alice", cid)
            if c is not None:
                with changes_lock:
                    changes.append(c.status)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    rec = reg.get_status("alice")
    assert not rec.online
    assert rec.active_connections == 0
    # Every online change is matched by exactly one offline change.
    assert changes.count(PRESENCE_ONLINE) >= 1
    assert changes.count(PRESENCE_ONLINE) == changes.count(PRESENCE_OFFLINE)


def test_stats() -> None:
    reg = PresenceRegistry()
    reg.register_connection("alice", "c1")
    reg.register_connection("alice", "c2")
    reg.register_connection("bob", "c3")
    reg.seed("carol", 50.0)
    reg.seed("dave", None)
    assert reg.get_stats() == {"users_known": 3, "users_online": 2, "connections": 3}
