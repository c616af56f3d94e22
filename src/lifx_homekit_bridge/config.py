"""Configuration loading for the LIFX HomeKit bridge."""

from __future__ import annotations

import argparse
import dataclasses
import json
import os
import re
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older interpreters
    import tomli as tomllib  # type: ignore


CONFIG_ENV_PREFIX = "LIFX_BRIDGE_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_PINCODE = re.compile(r"^\d{3}-\d{2}-\d{3}$")


def _data_dir() -> Path:
    base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "lifx-homekit-bridge"


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    api_enabled: bool = True
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_key: Optional[str] = None
    api_bearer_token: Optional[str] = None
    api_docs: bool = True
    db_path: Path = _data_dir() / "accessories.sqlite3"
    discovery_interval: float = 30.0
    discovery_step: float = 5.0
    broadcast_address: str = "255.255.255.255"
    listen_address: str = "0.0.0.0"
    light_offline_tolerance: int = 3
    message_handler_timeout: float = 5.0
    resend_packet_delay: float = 0.15
    resend_max_times: int = 3
    ignored_devices: Sequence[str] = ()
    state_cache_ttl: float = 5.0
    default_fade_ms: int = 0
    poll_enabled: bool = True
    poll_interval: float = 30.0
    poll_batch_size: int = 50
    homekit_enabled: bool = True
    homekit_port: int = 51826
    homekit_pincode: str = "031-45-154"
    homekit_persist_file: Path = _data_dir() / "homekit.state"
    bridge_name: str = "LIFX LAN"
    subsystem_failure_threshold: int = 5
    subsystem_failure_cooldown: float = 15.0
    backoff_base: float = 0.5
    backoff_factor: float = 2.0
    backoff_max: float = 30.0
    log_format: str = "plain"
    log_level: str = "INFO"
    discovery_log_level: Optional[str] = None
    registry_log_level: Optional[str] = None
    homekit_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    migrate_only: bool = False
    dry_run: bool = False
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    @property
    def device_unregister_timeout(self) -> float:
        """Silence, in seconds, after which a failing device may be reported offline."""

        return self.light_offline_tolerance * self.poll_interval

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        base: Dict[str, Any] = {}
        for config_field in dataclasses.fields(self):
            value = getattr(self, config_field.name)
            if isinstance(value, Path):
                value = str(value)
            elif isinstance(value, tuple):
                value = list(value)
            base[config_field.name] = value
        base["api_key"] = "***REDACTED***" if self.api_key else None
        base["api_bearer_token"] = "***REDACTED***" if self.api_bearer_token else None
        base["homekit_pincode"] = "***REDACTED***"
        return base

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
            or None
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("api_port", config.api_port, 1, 65535)
    _validate_range("homekit_port", config.homekit_port, 1, 65535)
    _validate_range("discovery_interval", config.discovery_interval, 1.0, 3600.0)
    _validate_range("discovery_step", config.discovery_step, 0.5, config.discovery_interval)
    _validate_range("light_offline_tolerance", config.light_offline_tolerance, 1, 1000)
    _validate_range("message_handler_timeout", config.message_handler_timeout, 0.1, 300.0)
    _validate_range("resend_packet_delay", config.resend_packet_delay, 0.01, 10.0)
    _validate_range("resend_max_times", config.resend_max_times, 1, 20)
    _validate_range("state_cache_ttl", config.state_cache_ttl, 0.0, 3600.0)
    _validate_range("default_fade_ms", config.default_fade_ms, 0, 86_400_000)
    _validate_range("poll_interval", config.poll_interval, 0.1, 86400.0)
    _validate_range("poll_batch_size", config.poll_batch_size, 1, 100000)
    _validate_range("subsystem_failure_threshold", config.subsystem_failure_threshold, 1, 1000)
    _validate_range("subsystem_failure_cooldown", config.subsystem_failure_cooldown, 0.0, 3600.0)
    _validate_range("backoff_base", config.backoff_base, 0.0, 60.0)
    _validate_range("backoff_factor", config.backoff_factor, 1.0, 10.0)
    _validate_range("backoff_max", config.backoff_max, 0.1, 3600.0)
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    if not _PINCODE.match(config.homekit_pincode):
        raise ValueError("homekit_pincode must look like 123-45-678.")
    for field_name in (
        "log_level",
        "discovery_log_level",
        "registry_log_level",
        "homekit_log_level",
        "api_log_level",
    ):
        _validate_log_level_value(getattr(config, field_name), field_name)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the bridge."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    if value.upper() not in LOG_LEVELS:
        raise ValueError(f"{name} must be one of {sorted(LOG_LEVELS)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="lifx-homekit-bridge",
        description="Expose LIFX LAN bulbs as HomeKit accessories.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--db-path", type=Path, help="Path to the accessory cache database.")
    parser.add_argument("--dry-run", action="store_true", help="Run without opening LAN sockets.")
    parser.add_argument(
        "--migrate-only",
        action="store_true",
        help="Run cache database migrations and exit without starting services.",
    )
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )

    discovery = parser.add_argument_group("discovery")
    discovery.add_argument("--discovery-interval", type=float, help="Seconds between broadcast discovery probes.")
    discovery.add_argument("--broadcast-address", type=str, help="Broadcast address for discovery probes.")
    discovery.add_argument("--listen-address", type=str, help="Local address the discovery socket binds to.")
    discovery.add_argument(
        "--light-offline-tolerance",
        type=int,
        help="Missed poll rounds before the discovery library may report a light offline.",
    )
    discovery.add_argument(
        "--message-handler-timeout",
        type=float,
        help="Seconds to wait for a device answer before a call fails.",
    )
    discovery.add_argument("--resend-packet-delay", type=float, help="Seconds between packet resends.")
    discovery.add_argument("--resend-max-times", type=int, help="Packet send attempts per request.")
    discovery.add_argument(
        "--ignore-device",
        action="append",
        dest="ignored_devices",
        help="Device id (serial) to ignore; may be repeated.",
    )

    state = parser.add_argument_group("state")
    state.add_argument("--state-cache-ttl", type=float, help="Seconds a fresh state read is reused.")
    state.add_argument("--default-fade-ms", type=int, help="Transition time for power and colour changes.")
    state.add_argument("--no-poll", dest="poll_enabled", action="store_false", default=None, help="Disable state polling.")
    state.add_argument("--poll-interval", type=float, help="Seconds between state refresh rounds.")

    homekit = parser.add_argument_group("homekit")
    homekit.add_argument("--no-homekit", dest="homekit_enabled", action="store_false", default=None, help="Do not start the HomeKit bridge.")
    homekit.add_argument("--homekit-port", type=int, help="TCP port for the HomeKit accessory server.")
    homekit.add_argument("--homekit-pincode", type=str, help="Setup code shown when pairing (123-45-678).")
    homekit.add_argument("--homekit-persist-file", type=Path, help="Where HomeKit pairing state is stored.")
    homekit.add_argument("--bridge-name", type=str, help="Name of the bridge accessory.")

    api = parser.add_argument_group("api")
    api.add_argument("--no-api", dest="api_enabled", action="store_false", default=None, help="Do not start the admin API.")
    api.add_argument("--api-host", type=str, help="Bind address for the admin API.")
    api.add_argument("--api-port", type=int, help="TCP port for the admin API.")
    api.add_argument("--api-key", type=str, help="API key required via X-API-Key or Authorization: ApiKey <key>.")
    api.add_argument("--api-bearer-token", type=str, help="Bearer token required via Authorization: Bearer <token>.")
    api.add_argument("--no-api-docs", dest="api_docs", action="store_false", default=None, help="Disable interactive API docs.")

    logs = parser.add_argument_group("logging")
    logs.add_argument("--log-format", choices=["plain", "json"], help="Structured logging format.")
    for flag, target in (
        ("--log-level", "overall"),
        ("--discovery-log-level", "discovery and transport"),
        ("--registry-log-level", "the device registry and poller"),
        ("--homekit-log-level", "the HomeKit bridge"),
        ("--api-log-level", "the admin API"),
    ):
        logs.add_argument(flag, choices=list(LOG_LEVELS), help=f"Log verbosity for {target}.")
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for name in Config.__dataclass_fields__:
        env_key = f"{prefix}{name}".upper()
        if env_key in os.environ:
            mapping[name] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {k: v for k, v in vars(args).items() if k != "config" and v is not None}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in _COERCERS:
            raise ValueError(f"Unknown configuration key: {key}")
        data[key] = _COERCERS[key](value)
    return replace(config, **data)


def _coerce_path(value: Any) -> Path:
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_optional_level(value: Any) -> Optional[str]:
    return str(value).upper() if value is not None else None


def _coerce_id_list(value: Any) -> Sequence[str]:
    """Accept a JSON list, a comma separated string, or any iterable of ids."""

    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            return _coerce_id_list(json.loads(text))
        return tuple(part.strip().lower() for part in text.split(",") if part.strip())
    if isinstance(value, Iterable):
        ids = []
        for item in value:
            ids.extend(_coerce_id_list(str(item)))
        return tuple(ids)
    raise ValueError("ignored_devices must be a list of device ids")


_TYPE_COERCERS: Dict[str, Callable[[Any], Any]] = {
    "int": int,
    "float": float,
    "bool": _coerce_bool,
    "str": str,
    "Path": _coerce_path,
    "Optional[str]": str,
    "Sequence[str]": _coerce_id_list,
}

_COERCERS: Dict[str, Callable[[Any], Any]] = {
    config_field.name: _TYPE_COERCERS[str(config_field.type)]
    for config_field in dataclasses.fields(Config)
}
_COERCERS["log_level"] = lambda value: str(value).upper()
_COERCERS["log_format"] = lambda value: str(value).lower()
for _level_field in ("discovery_log_level", "registry_log_level", "homekit_log_level", "api_log_level"):
    _COERCERS[_level_field] = _coerce_optional_level


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - defensive logging path
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
