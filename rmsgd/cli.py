from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import HubRuntimeConfig, load_config
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_identity_path,
    default_message_db_path,
    default_user_directory_path,
    ensure_private_dir,
)
from .service import HubService

# Read when the config file leaves [auth] secret empty.
SECRET_ENV_VAR = "RMSGD_JWT_SECRET"


def _write_default_config(
    config_path: str, identity_path: str, user_directory_path: str, message_db_path: str
) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    storage_dir = os.path.dirname(identity_path)
    if storage_dir:
        ensure_private_dir(Path(storage_dir))

    content = f"""# rmsgd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start rmsgd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where rmsgd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Destination name to host the hub on.
dest_name = "rmsg.hub"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

# Hub name sent in WELCOME.
hub_name = "rmsg"

# Limits.
# Rooms joined per connection (the personal room does not count).
max_rooms_per_connection = 32
max_room_name_len = 64
# Maximum message content length in characters.
max_content_chars = 1000
# Inbound frames per connection per minute. Exceeding it closes the link.
rate_limit_events_per_minute = 30

# Record the sender's last-seen time on every message sent.
touch_last_seen_on_send = true

# Hub-initiated liveness checks (0 disables).
# A connection that misses a PONG is closed and its user may go offline.
ping_interval_s = 0.0
ping_timeout_s = 0.0

[auth]

# Shared secret used to verify client tokens (HS256 JWT).
# Must match the secret of the service that issues tokens.
# Leave empty to read it from the {SECRET_ENV_VAR} environment variable.
secret = ""
algorithm = "HS256"
# Optional expected "aud" claim.
audience = ""

[storage]

# Known users and their presence state. Maintained by operators and rmsgd.
user_directory = {user_directory_path!r}

# SQLite database holding messages. Leave empty to keep messages in memory.
message_db = {message_db_path!r}

[logging]

# Log level for rmsgd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


_USER_DIRECTORY_TEMPLATE = """# rmsgd user directory (TOML)
#
# Users allowed to connect to the hub. Tokens are verified with the shared
# secret; the user id in the token must appear here.
#
# Schema
# ------
#
# Each user is a table under [users]. User ids are TOML keys:
#
#   [users."64f0c0ffee"]
#
# Supported keys per user:
#
# - username:  string, display name (defaults to the id)
# - avatar:    string, avatar URL (optional)
# - active:    bool, false refuses new connections (defaults true)
# - online:    bool, maintained by rmsgd
# - last_seen: float unix timestamp seconds, maintained by rmsgd
#
# Example
# -------
#
# [users."64f0c0ffee"]
# username = "alice"
# avatar = "https://example.org/alice.png"
# active = true

[users]
"""


def _ensure_first_run_files(
    config_path: str,
    identity_path: str,
    user_directory_path: str,
    message_db_path: str,
) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, user_directory_path, message_db_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except Exception:
            pass
        created_any = True

    if user_directory_path and not os.path.exists(user_directory_path):
        storage_dir = os.path.dirname(user_directory_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        with open(user_directory_path, "w", encoding="utf-8") as f:
            f.write(_USER_DIRECTORY_TEMPLATE)
        try:
            os.chmod(user_directory_path, 0o600)
        except Exception:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rmsgd", description="Run an rmsg messaging hub daemon")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")

    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--users",
        default=str(default_user_directory_path()),
        help="Path to the user directory TOML (created on first run)",
    )
    p.add_argument(
        "--message-db",
        default=None,
        help="Path to the SQLite message database",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: rmsg.hub)"
    )

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )

    p.add_argument("--hub-name", default=None, help="Hub name in WELCOME")

    p.add_argument("--max-rooms", type=int, default=None, help="Max rooms per connection")
    p.add_argument(
        "--max-room-name-len", type=int, default=None, help="Max room name length"
    )
    p.add_argument(
        "--max-content-chars",
        type=int,
        default=None,
        help="Maximum message content length in characters",
    )
    p.add_argument(
        "--rate-limit-events-per-minute",
        type=int,
        default=None,
        help="Per-connection inbound frame rate limit",
    )

    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Hub-initiated PING interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close link if PONG not received within this many seconds (0 disables)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> HubRuntimeConfig:
    """Defaults, then the config file, then command line overrides."""
    cfg = HubRuntimeConfig(
        configdir=args.configdir,
        identity_path=str(args.identity),
        user_directory_path=str(args.users),
        message_db_path=str(default_message_db_path()),
    )

    config_path = str(args.config)
    if config_path and os.path.exists(config_path):
        cfg = load_config(config_path, cfg)
    else:
        cfg = replace(cfg, config_path=config_path)

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.message_db is not None:
        cfg = replace(cfg, message_db_path=args.message_db or None)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))

    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)

    if args.max_rooms is not None:
        cfg = replace(cfg, max_rooms_per_connection=int(args.max_rooms))
    if args.max_room_name_len is not None:
        cfg = replace(cfg, max_room_name_len=int(args.max_room_name_len))
    if args.max_content_chars is not None:
        cfg = replace(cfg, max_content_chars=int(args.max_content_chars))
    if args.rate_limit_events_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_events_per_minute=int(args.rate_limit_events_per_minute)
        )

    if args.ping_interval is not None:
        cfg = replace(cfg, ping_interval_s=float(args.ping_interval))
    if args.ping_timeout is not None:
        cfg = replace(cfg, ping_timeout_s=float(args.ping_timeout))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    if not cfg.jwt_secret:
        secret = os.environ.get(SECRET_ENV_VAR)
        if secret:
            cfg = replace(cfg, jwt_secret=secret)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    user_directory_path = str(args.users)
    message_db_path = str(args.message_db or default_message_db_path())

    if _ensure_first_run_files(config_path, identity_path, user_directory_path, message_db_path):
        print(
            "Created default rmsgd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            f"- Users:    {user_directory_path}\n"
            "\nSet [auth] secret, add users, then re-run rmsgd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
