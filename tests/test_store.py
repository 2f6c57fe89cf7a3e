import pytest

from rmsgd.constants import STATUS_READ, STATUS_SENT
from rmsgd.errors import PersistenceFailure
from rmsgd.store import MemoryMessageStore, SqliteMessageStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        s = MemoryMessageStore()
    else:
        s = SqliteMessageStore(str(tmp_path / "db" / "messages.sqlite3"))
    yield s
    s.close()


def _send(store, sender, recipient, content="hi"):
    return store.create(
        sender=sender, recipient=recipient, content=content, message_type="text"
    )


def test_create_assigns_id_timestamp_and_status(store) -> None:
    msg = store.create(
        sender="alice", recipient="bob", content="hi", message_type="image", client_ts=7
    )
    assert msg.id
    assert msg.timestamp > 0
    assert msg.status == STATUS_SENT
    assert msg.read_at is None
    assert store.get(msg.id) == msg


def test_ids_are_unique(store) -> None:
    ids = {_send(store, "alice", "bob").id for _ in range(50)}
    assert len(ids) == 50


def test_get_unknown(store) -> None:
    assert store.get("nope") is None


def test_mark_read(store) -> None:
    msg = _send(store, "alice", "bob")
    updated = store.mark_read(msg.id, read_at=1234)
    assert updated.status == STATUS_READ
    assert updated.read_at == 1234
    # Already read: the first read time sticks.
    again = store.mark_read(msg.id, read_at=9999)
    assert again.read_at == 1234
    assert store.mark_read("nope") is None


def test_unread_and_mark_conversation_read(store) -> None:
    _send(store, "alice", "bob")
    _send(store, "alice", "bob")
    _send(store, "carol", "bob")
    _send(store, "bob", "alice")
    assert store.unread_count("bob") == 3

    assert store.mark_conversation_read("bob", "alice") == 2
    assert store.unread_count("bob") == 1
    assert store.mark_conversation_read("bob", "alice") == 0


def test_conversation_paging(store) -> None:
    for i in range(5):
        _send(store, "alice" if i % 2 == 0 else "bob", "bob" if i % 2 == 0 else "alice", f"m{i}")
    _send(store, "carol", "bob", "other")

    page1 = store.conversation("alice", "bob", page=1, limit=2)
    page2 = store.conversation("bob", "alice", page=2, limit=2)
    page3 = store.conversation("alice", "bob", page=3, limit=2)

    assert [m.content for m in page1] == ["m3", "m4"]
    assert [m.content for m in page2] == ["m1", "m2"]
    assert [m.content for m in page3] == ["m0"]


def test_sqlite_errors_become_persistence_failures(tmp_path) -> None:
    s = SqliteMessageStore(str(tmp_path / "m.sqlite3"))
    s.close()
    with pytest.raises(PersistenceFailure):
        _send(s, "alice", "bob")


def test_sqlite_survives_reopen(tmp_path) -> None:
    path = str(tmp_path / "m.sqlite3")
    s = SqliteMessageStore(path)
    msg = _send(s, "alice", "bob")
    s.close()

    s2 = SqliteMessageStore(path)
    assert s2.get(msg.id) == msg
    s2.close()
