"""Configuration loader for actuator-relay."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urlparse

from . import constants


class ConfigurationError(RuntimeError):
    """Raised when the configuration is incomplete or invalid."""


# Environment variable -> (section, option). Applied over the config file.
ENVIRONMENT_OVERRIDES: dict[str, tuple[str, str]] = {
    "SUPABASE_URL": ("ledger", "url"),
    "SUPABASE_ANON_KEY": ("ledger", "anon_key"),
    "PI_EMAIL": ("ledger", "email"),
    "PI_PASSWORD": ("ledger", "password"),
    "DEVICE_ID": ("device", "device_id"),
    "SITE_ID": ("device", "site_id"),
    "MQTT_URL": ("mqtt", "url"),
    "MQTT_USER": ("mqtt", "username"),
    "MQTT_PASS": ("mqtt", "password"),
    "LOG_LEVEL": ("logging", "level"),
}

REQUIRED_CREDENTIALS = (
    ("SUPABASE_URL", "ledger", "url"),
    ("SUPABASE_ANON_KEY", "ledger", "anon_key"),
    ("PI_EMAIL", "ledger", "email"),
    ("PI_PASSWORD", "ledger", "password"),
)


@dataclass(slots=True)
class LedgerConfig:
    url: Optional[str] = None
    anon_key: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    schema: str = constants.DEFAULT_LEDGER_SCHEMA
    table: str = constants.DEFAULT_LEDGER_TABLE


@dataclass(slots=True)
class DeviceConfig:
    device_id: str = constants.DEFAULT_DEVICE_ID
    site_id: str = constants.DEFAULT_SITE_ID


@dataclass(slots=True)
class MQTTConfig:
    url: str = constants.DEFAULT_MQTT_URL
    host: str = "127.0.0.1"
    port: int = constants.DEFAULT_MQTT_PORT
    tls: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    keepalive: int = 60
    qos: int = 1
    publish_timeout_seconds: float = 10.0


@dataclass(slots=True)
class IntakeConfig:
    poll_interval_seconds: float = constants.DEFAULT_POLL_INTERVAL_SECONDS
    poll_throttle_seconds: float = constants.DEFAULT_POLL_THROTTLE_SECONDS
    dedupe_capacity: int = constants.DEFAULT_DEDUPE_CAPACITY
    dedupe_evict_count: int = constants.DEFAULT_DEDUPE_EVICT_COUNT


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    realtime_heartbeat_seconds: float = 30.0
    mqtt_ready_wait_seconds: float = 3.0
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False
    debug_mqtt_echo: bool = False


@dataclass(slots=True)
class RelayConfig:
    ledger: LedgerConfig
    device: DeviceConfig
    mqtt: MQTTConfig
    intake: IntakeConfig
    resilience: ResilienceConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path

    def require_credentials(self) -> None:
        """Raise ConfigurationError naming the first missing credential."""

        for env_name, section, option in REQUIRED_CREDENTIALS:
            value = getattr(getattr(self, section), option)
            if not value:
                raise ConfigurationError(
                    f"Missing required setting {env_name} ([{section}] {option})"
                )


def parse_mqtt_url(url: str) -> tuple[str, int, bool]:
    """Split an ``mqtt://`` / ``mqtts://`` URL into host, port and TLS flag."""

    value = url.strip()
    if "://" not in value:
        value = f"mqtt://{value}"

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()
    if scheme in ("mqtt", "tcp"):
        tls = False
        default_port = constants.DEFAULT_MQTT_PORT
    elif scheme in ("mqtts", "ssl", "tls"):
        tls = True
        default_port = constants.DEFAULT_MQTTS_PORT
    else:
        raise ConfigurationError(f"Unsupported MQTT URL scheme: {parsed.scheme!r}")

    if not parsed.hostname:
        raise ConfigurationError(f"MQTT URL has no host: {url!r}")

    try:
        port = parsed.port or default_port
    except ValueError as exc:
        raise ConfigurationError(f"Invalid MQTT port in {url!r}") from exc

    return parsed.hostname, port, tls


def _apply_environment(parser: ConfigParser, environ: Mapping[str, str]) -> None:
    for env_name, (section, option) in ENVIRONMENT_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            parser.set(section, option, value)

    poll_ms = environ.get("POLL_MS")
    if poll_ms:
        try:
            seconds = int(poll_ms) / 1000.0
        except ValueError as exc:
            raise ConfigurationError(f"POLL_MS must be an integer, got {poll_ms!r}") from exc
        parser.set("intake", "poll_interval_seconds", str(seconds))

    if "DEBUG_MQTT_ECHO" in environ:
        parser.set(
            "logging",
            "debug_mqtt_echo",
            "true" if environ["DEBUG_MQTT_ECHO"] == "1" else "false",
        )


def load_config(
    path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None
) -> RelayConfig:
    """Load configuration from disk and the environment, applying defaults."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "ledger": {
                "schema": constants.DEFAULT_LEDGER_SCHEMA,
                "table": constants.DEFAULT_LEDGER_TABLE,
            },
            "device": {
                "device_id": constants.DEFAULT_DEVICE_ID,
                "site_id": constants.DEFAULT_SITE_ID,
            },
            "mqtt": {
                "url": constants.DEFAULT_MQTT_URL,
                "keepalive": "60",
                "qos": "1",
                "publish_timeout_seconds": "10.0",
            },
            "intake": {
                "poll_interval_seconds": str(constants.DEFAULT_POLL_INTERVAL_SECONDS),
                "poll_throttle_seconds": str(constants.DEFAULT_POLL_THROTTLE_SECONDS),
                "dedupe_capacity": str(constants.DEFAULT_DEDUPE_CAPACITY),
                "dedupe_evict_count": str(constants.DEFAULT_DEDUPE_EVICT_COUNT),
            },
            "resilience": {
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
                "realtime_heartbeat_seconds": "30.0",
                "mqtt_ready_wait_seconds": "3.0",
                "health_enabled": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
                "debug_mqtt_echo": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    _apply_environment(parser, os.environ if environ is None else environ)

    try:
        return _build_config(parser, config_path)
    except ValueError as exc:
        # Malformed numbers and booleans from configparser getters.
        raise ConfigurationError(str(exc)) from exc


def _build_config(parser: ConfigParser, config_path: Path) -> RelayConfig:
    ledger = LedgerConfig(
        url=parser.get("ledger", "url", fallback=None),
        anon_key=parser.get("ledger", "anon_key", fallback=None),
        email=parser.get("ledger", "email", fallback=None),
        password=parser.get("ledger", "password", fallback=None),
        schema=parser.get("ledger", "schema"),
        table=parser.get("ledger", "table"),
    )

    device = DeviceConfig(
        device_id=parser.get("device", "device_id"),
        site_id=parser.get("device", "site_id"),
    )

    mqtt_url = parser.get("mqtt", "url")
    host, port, tls = parse_mqtt_url(mqtt_url)
    qos = parser.getint("mqtt", "qos", fallback=1)
    if qos not in (0, 1, 2):
        raise ConfigurationError(f"MQTT qos must be 0, 1 or 2, got {qos}")

    mqtt = MQTTConfig(
        url=mqtt_url,
        host=host,
        port=port,
        tls=tls,
        username=parser.get("mqtt", "username", fallback=None),
        password=parser.get("mqtt", "password", fallback=None),
        keepalive=max(5, parser.getint("mqtt", "keepalive", fallback=60)),
        qos=qos,
        publish_timeout_seconds=max(
            0.1, parser.getfloat("mqtt", "publish_timeout_seconds", fallback=10.0)
        ),
    )

    intake_defaults = IntakeConfig()
    intake = IntakeConfig(
        poll_interval_seconds=max(
            1.0,
            parser.getfloat(
                "intake",
                "poll_interval_seconds",
                fallback=intake_defaults.poll_interval_seconds,
            ),
        ),
        poll_throttle_seconds=max(
            0.0,
            parser.getfloat(
                "intake",
                "poll_throttle_seconds",
                fallback=intake_defaults.poll_throttle_seconds,
            ),
        ),
        dedupe_capacity=max(
            1,
            parser.getint(
                "intake", "dedupe_capacity", fallback=intake_defaults.dedupe_capacity
            ),
        ),
        dedupe_evict_count=max(
            1,
            parser.getint(
                "intake",
                "dedupe_evict_count",
                fallback=intake_defaults.dedupe_evict_count,
            ),
        ),
    )

    resilience = ResilienceConfig(
        reconnect_initial_seconds=parser.getfloat(
            "resilience", "reconnect_initial_seconds", fallback=1.0
        ),
        reconnect_max_seconds=parser.getfloat(
            "resilience", "reconnect_max_seconds", fallback=30.0
        ),
        realtime_heartbeat_seconds=max(
            1.0,
            parser.getfloat("resilience", "realtime_heartbeat_seconds", fallback=30.0),
        ),
        mqtt_ready_wait_seconds=max(
            0.0,
            parser.getfloat("resilience", "mqtt_ready_wait_seconds", fallback=3.0),
        ),
        health_enabled=parser.getboolean(
            "resilience", "health_enabled", fallback=False
        ),
        health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
        health_port=parser.getint("resilience", "health_port", fallback=0),
    )

    log_path_value = parser.get("logging", "path", fallback="")
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
        debug_mqtt_echo=parser.getboolean(
            "logging", "debug_mqtt_echo", fallback=False
        ),
    )

    return RelayConfig(
        ledger=ledger,
        device=device,
        mqtt=mqtt,
        intake=intake,
        resilience=resilience,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )
