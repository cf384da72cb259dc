from config import load_config, save_config


def test_missing_file_gives_defaults(tmp_path, monkeypatch):
    for name in ("WA_GATEWAY_HOST", "WA_GATEWAY_PORT", "WA_GATEWAY_LOG_PATH"):
        monkeypatch.delenv(name, raising=False)
    config = load_config(str(tmp_path / "config.yaml"))
    assert config.gateway.port == 4006
    assert config.supervisor.qr_timeout_sec == 30.0
    assert config.supervisor.heartbeat_max_failures == 5
    assert config.bot.reply_cooldown_sec == 2.0
    assert config.storage.seed_menu is True
    assert config.transport.factory is None


def test_yaml_values_are_cast_and_unknown_keys_ignored(tmp_path, monkeypatch):
    monkeypatch.delenv("WA_GATEWAY_PORT", raising=False)
    (tmp_path / "config.yaml").write_text(
        "\n".join(
            [
                "gateway:",
                "  port: '4010'",
                "supervisor:",
                "  backoff_cap_sec: 90",
                "  heartbeat_max_failures: '7'",
                "  nonsense: 1",
                "storage:",
                "  seed_menu: false",
                "transport:",
                "  factory: my_client.transport:connect",
                "  options: {browser: chrome}",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    config = load_config(str(tmp_path / "config.yaml"))
    assert config.gateway.port == 4010
    assert config.supervisor.backoff_cap_sec == 90.0
    assert isinstance(config.supervisor.backoff_cap_sec, float)
    assert config.supervisor.heartbeat_max_failures == 7
    assert config.storage.seed_menu is False
    assert config.transport.factory == "my_client.transport:connect"
    assert config.transport.options == {"browser": "chrome"}


def test_env_overrides_gateway_section(tmp_path, monkeypatch):
    monkeypatch.setenv("WA_GATEWAY_HOST", "0.0.0.0")
    monkeypatch.setenv("WA_GATEWAY_PORT", "not-a-number")
    monkeypatch.setenv("WA_GATEWAY_LOG_PATH", "/var/log/wa.log")
    config = load_config(str(tmp_path / "config.yaml"))
    assert config.gateway.host == "0.0.0.0"
    assert config.gateway.port == 4006
    assert config.gateway.log_path == "/var/log/wa.log"


def test_save_config_round_trip(tmp_path, monkeypatch):
    monkeypatch.delenv("WA_GATEWAY_PORT", raising=False)
    path = str(tmp_path / "config.yaml")
    config = load_config(path)
    config.bot.send_retries = 5
    config.storage.menu_path = "menus.json"
    save_config(config)
    again = load_config(path)
    assert again.bot.send_retries == 5
    assert again.storage.menu_path == "menus.json"


def test_section_field_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("WA_GATEWAY_SUPERVISOR__HEARTBEAT_INTERVAL_SEC", "30")
    monkeypatch.setenv("WA_GATEWAY_STORAGE__SEED_MENU", "false")
    monkeypatch.setenv("WA_GATEWAY_TRANSPORT__OPTIONS", "{browser: safari}")
    monkeypatch.setenv("WA_GATEWAY_NOPE__FIELD", "ignored")
    (tmp_path / "config.yaml").write_text("storage:\n  seed_menu: true\n", encoding="utf-8")
    config = load_config(str(tmp_path / "config.yaml"))
    assert config.supervisor.heartbeat_interval_sec == 30.0
    assert config.storage.seed_menu is False
    assert config.transport.options == {"browser": "safari"}
