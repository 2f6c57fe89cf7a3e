import tomllib

import pytest

from rmsgd.directory import TomlUserDirectory, load_user_directory
from rmsgd.errors import PersistenceFailure

USERS = """# operators keep this file
[users."alice"]
username = "Alice"
avatar = "https://example.org/a.png"

[users."bob"]
username = "Bob"
active = false
online = true
last_seen = 100.0

[users."carol"]
"""


@pytest.fixture
def users_file(tmp_path):
    p = tmp_path / "users.toml"
    p.write_text(USERS, encoding="utf-8")
    return p


def test_load_user_directory(users_file) -> None:
    users, err = load_user_directory(str(users_file))
    assert err is None
    assert set(users) == {"alice", "bob", "carol"}
    assert users["alice"]["avatar"] == "https://example.org/a.png"
    assert users["bob"]["active"] is False
    assert users["bob"]["last_seen"] == 100.0
    assert users["carol"]["username"] == "carol"


def test_missing_file_is_an_error(tmp_path) -> None:
    users, err = load_user_directory(str(tmp_path / "nope.toml"))
    assert users == {}
    assert "not found" in err
    with pytest.raises(RuntimeError):
        TomlUserDirectory(str(tmp_path / "nope.toml"))


def test_lookups(users_file) -> None:
    d = TomlUserDirectory(str(users_file))
    assert d.exists("alice")
    assert not d.exists("mallory")
    assert d.is_active("alice")
    assert not d.is_active("bob")
    assert not d.is_active("mallory")
    assert d.summary("alice").to_body() == {
        "id": "alice",
        "username": "Alice",
        "avatar": "https://example.org/a.png",
    }
    assert d.summary("mallory") is None
    assert d.last_seen("bob") == 100.0
    assert d.user_ids() == ["alice", "bob", "carol"]


def test_record_presence_persists_and_keeps_comments(users_file) -> None:
    d = TomlUserDirectory(str(users_file))
    d.record_presence("alice", online=True, last_seen=200.0)

    text = users_file.read_text(encoding="utf-8")
    assert "# operators keep this file" in text
    doc = tomllib.loads(text)
    assert doc["users"]["alice"]["online"] is True
    assert doc["users"]["alice"]["last_seen"] == 200.0
    assert doc["users"]["alice"]["username"] == "Alice"


def test_touch_is_memory_only_until_next_write(users_file) -> None:
    d = TomlUserDirectory(str(users_file))
    d.touch("alice", 300.0)
    assert d.last_seen("alice") == 300.0
    doc = tomllib.loads(users_file.read_text(encoding="utf-8"))
    assert "last_seen" not in doc["users"]["alice"]


def test_mark_all_offline_clears_stale_flags(users_file) -> None:
    d = TomlUserDirectory(str(users_file))
    assert d.mark_all_offline() == 1
    doc = tomllib.loads(users_file.read_text(encoding="utf-8"))
    assert doc["users"]["bob"]["online"] is False
    assert d.mark_all_offline() == 0


def test_write_failure_raises_persistence_failure(users_file) -> None:
    d = TomlUserDirectory(str(users_file))
    users_file.unlink()
    with pytest.raises(PersistenceFailure):
        d.record_presence("alice", online=False, last_seen=1.0)

