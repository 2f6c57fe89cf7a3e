from __future__ import annotations

from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    user_directory_path: str | None = None
    message_db_path: str | None = None
    dest_name: str = "rmsg.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "rmsg"
    jwt_secret: str | None = None
    jwt_algorithm: str = "HS256"
    jwt_audience: str | None = None
    max_rooms_per_connection: int = 32
    max_room_name_len: int = 64
    max_content_chars: int = 1000
    rate_limit_events_per_minute: int = 30
    touch_last_seen_on_send: bool = True
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


# Nested TOML tables whose keys map onto flat config fields.
_TABLE_KEYS: dict[str, dict[str, str]] = {
    "auth": {
        "secret": "jwt_secret",
        "algorithm": "jwt_algorithm",
        "audience": "jwt_audience",
    },
    "storage": {
        "user_directory": "user_directory_path",
        "message_db": "message_db_path",
    },
    "logging": {
        "level": "log_level",
        "rns_level": "log_rns_level",
        "console": "log_console",
        "file": "log_file",
        "format": "log_format",
        "datefmt": "log_datefmt",
    },
}

# Fields where an empty string in the file means "unset".
_OPTIONAL_STR_FIELDS = (
    "configdir",
    "jwt_secret",
    "jwt_audience",
    "log_file",
    "log_datefmt",
)


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    for table_name, mapping in _TABLE_KEYS.items():
        table = data.get(table_name)
        if not isinstance(table, dict):
            continue
        mapped = {field: table.get(key) for key, field in mapping.items() if key in table}
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where to load from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        try:
            updates["announce_on_start"] = bool(data["announce"])
        except Exception:
            pass

    for key in _OPTIONAL_STR_FIELDS:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(base, **updates) if updates else base


def load_config(path: str, base: HubRuntimeConfig | None = None) -> HubRuntimeConfig:
    cfg = base or HubRuntimeConfig()
    cfg = apply_config_data(cfg, load_toml(path))
    return replace(cfg, config_path=path)
