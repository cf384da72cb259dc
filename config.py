import dataclasses
import logging
import os
from typing import Any, Dict, Optional

import yaml

from dotenv_loader import load_dotenv_near, prefixed_env

ENV_PREFIX = "WA_GATEWAY_"


@dataclasses.dataclass
class GatewayConfig:
    host: str = "localhost"
    port: int = 4006
    log_path: str = "gateway.log"


@dataclasses.dataclass
class SupervisorConfig:
    qr_timeout_sec: float = 30.0
    qr_retry_delay_sec: float = 5.0
    backoff_base_sec: float = 5.0
    backoff_cap_sec: float = 60.0
    backoff_factor: float = 1.5
    backoff_jitter_sec: float = 3.0
    heartbeat_interval_sec: float = 20.0
    heartbeat_max_failures: int = 5
    monitor_interval_sec: float = 60.0
    heartbeat_stale_sec: float = 180.0
    heartbeat_warn_sec: float = 120.0
    recovery_interval_sec: float = 45.0
    decryption_max_attempts: int = 3
    decryption_stale_sec: float = 3600.0
    decryption_purge_interval_sec: float = 1800.0
    prekey_retries: int = 3
    prekey_retry_delay_sec: float = 1.0


@dataclasses.dataclass
class BotConfig:
    reply_cooldown_sec: float = 2.0
    fetch_timeout_sec: float = 10.0
    user_agent: str = "BotWA/1.0"
    send_retries: int = 3
    default_bot_type: str = "menu_bot"


@dataclasses.dataclass
class StorageConfig:
    menu_path: str = "database.json"
    state_path: str = "state.json"
    auth_dir: str = "."
    seed_menu: bool = True
    connect_retries: int = 3
    connect_retry_delay_sec: float = 2.0
    reconnect_interval_sec: float = 30.0


@dataclasses.dataclass
class TransportConfig:
    # "package.module:callable" returning a TransportFactory-compatible coroutine function.
    factory: Optional[str] = None
    options: Dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class AppConfig:
    gateway: GatewayConfig
    supervisor: SupervisorConfig
    bot: BotConfig
    storage: StorageConfig
    transport: TransportConfig
    path: str = ""


_SECTIONS = {
    "gateway": GatewayConfig,
    "supervisor": SupervisorConfig,
    "bot": BotConfig,
    "storage": StorageConfig,
    "transport": TransportConfig,
}

_TRUE = ("1", "true", "yes", "on")


def _cast(val: Any, default: Any) -> Any:
    if isinstance(default, (dict, list)) and isinstance(val, str):
        return yaml.safe_load(val)
    if val is None or default is None or isinstance(default, (dict, list)):
        return val
    if isinstance(default, bool):
        if isinstance(val, str):
            return val.strip().lower() in _TRUE
        return bool(val)
    return type(default)(val)


def _section(raw: Dict[str, Any], cls, name: str):
    """Builds a dataclass from raw[name], ignoring unknown keys and casting to the field default's type."""
    values = raw.get(name) or {}
    if not isinstance(values, dict):
        values = {}
    defaults = cls()
    kwargs: Dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if f.name not in values:
            continue
        try:
            kwargs[f.name] = _cast(values[f.name], getattr(defaults, f.name))
        except (TypeError, ValueError):
            logging.warning("Invalid value for %s.%s: %r, using default", name, f.name, values[f.name])
    return cls(**kwargs)


def _apply_env_overrides(raw: Dict[str, Any]) -> None:
    """
    WA_GATEWAY_<SECTION>__<FIELD> overrides any field, e.g.
    WA_GATEWAY_SUPERVISOR__HEARTBEAT_INTERVAL_SEC=30. WA_GATEWAY_HOST,
    WA_GATEWAY_PORT and WA_GATEWAY_LOG_PATH are shortcuts for the gateway section.
    """
    for section, values in prefixed_env(ENV_PREFIX).items():
        target = section or "gateway"
        if target not in _SECTIONS:
            continue
        current = raw.get(target)
        if not isinstance(current, dict):
            current = {}
            raw[target] = current
        current.update(values)


def load_config(path: str) -> AppConfig:
    # Load .env near the config file; already provided env vars (systemd/docker) win.
    try:
        load_dotenv_near(path, filename=".env", override=False)
    except Exception:
        pass

    raw: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    _apply_env_overrides(raw)

    return AppConfig(
        **{name: _section(raw, cls, name) for name, cls in _SECTIONS.items()},
        path=path,
    )


def save_config(config: AppConfig) -> None:
    data: Dict[str, Any] = {
        "gateway": dataclasses.asdict(config.gateway),
        "supervisor": dataclasses.asdict(config.supervisor),
        "bot": dataclasses.asdict(config.bot),
        "storage": dataclasses.asdict(config.storage),
        "transport": dataclasses.asdict(config.transport),
    }
    with open(config.path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, allow_unicode=True, sort_keys=False)
