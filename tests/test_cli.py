from rmsgd.cli import SECRET_ENV_VAR, _build_arg_parser, build_config


def _args(tmp_path, *extra):
    return _build_arg_parser().parse_args(
        [
            "--config",
            str(tmp_path / "rmsgd.toml"),
            "--identity",
            str(tmp_path / "hub_identity"),
            "--users",
            str(tmp_path / "users.toml"),
            *extra,
        ]
    )


def test_command_line_overrides_config_file(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv(SECRET_ENV_VAR, raising=False)
    (tmp_path / "rmsgd.toml").write_text(
        "[hub]\nhub_name = 'from-file'\nmax_content_chars = 10\n", encoding="utf-8"
    )

    cfg = build_config(_args(tmp_path, "--max-content-chars", "20", "--no-announce"))

    assert cfg.hub_name == "from-file"
    assert cfg.max_content_chars == 20
    assert cfg.announce_on_start is False
    assert cfg.identity_path == str(tmp_path / "hub_identity")
    assert cfg.user_directory_path == str(tmp_path / "users.toml")
    assert cfg.jwt_secret is None


def test_secret_from_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv(SECRET_ENV_VAR, "env-secret")
    cfg = build_config(_args(tmp_path))
    assert cfg.jwt_secret == "env-secret"


def test_empty_message_db_means_memory(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv(SECRET_ENV_VAR, raising=False)
    cfg = build_config(_args(tmp_path, "--message-db", ""))
    assert cfg.message_db_path is None
