from pathlib import Path

import pytest

from actuator_relay import constants
from actuator_relay.config import ConfigurationError, load_config, parse_mqtt_url


CREDENTIALS = {
    "SUPABASE_URL": "https://ledger.example.test",
    "SUPABASE_ANON_KEY": "anon-key",
    "PI_EMAIL": "relay@example.test",
    "PI_PASSWORD": "pw%with%percent",
}


def test_load_config_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "actuator-relay.cfg", environ={})

    assert config.device.device_id == constants.DEFAULT_DEVICE_ID
    assert config.device.site_id == constants.DEFAULT_SITE_ID
    assert config.mqtt.host == "127.0.0.1"
    assert config.mqtt.port == 1883
    assert config.mqtt.tls is False
    assert config.mqtt.qos == 1
    assert config.intake.poll_interval_seconds == 30.0
    assert config.intake.poll_throttle_seconds == 0.12
    assert config.intake.dedupe_capacity == 2000
    assert config.intake.dedupe_evict_count == 500
    assert config.resilience.mqtt_ready_wait_seconds == 3.0
    assert config.resilience.health_port == 0
    assert config.logging.debug_mqtt_echo is False
    assert config.logging.path is None
    assert config.ledger.url is None


def test_environment_overrides_file(tmp_path: Path) -> None:
    config_path = tmp_path / "actuator-relay.cfg"
    config_path.write_text(
        """
[device]
device_id = from-file
site_id = site-file

[mqtt]
url = mqtt://file-broker:1884
        """.strip()
        + "\n",
        encoding="utf-8",
    )

    environ = dict(CREDENTIALS, DEVICE_ID="svc-env-01", MQTT_URL="mqtts://bus.local")
    config = load_config(config_path, environ=environ)

    assert config.device.device_id == "svc-env-01"
    assert config.device.site_id == "site-file"
    assert config.mqtt.host == "bus.local"
    assert config.mqtt.port == 8883
    assert config.mqtt.tls is True
    assert config.ledger.password == "pw%with%percent"
    config.require_credentials()


def test_poll_ms_is_converted_to_seconds(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.cfg", environ={"POLL_MS": "5000"})

    assert config.intake.poll_interval_seconds == 5.0


def test_poll_ms_must_be_numeric(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "missing.cfg", environ={"POLL_MS": "soon"})


@pytest.mark.parametrize("value,expected", [("1", True), ("0", False), ("true", False)])
def test_debug_echo_flag_requires_literal_one(tmp_path: Path, value, expected) -> None:
    config = load_config(tmp_path / "missing.cfg", environ={"DEBUG_MQTT_ECHO": value})

    assert config.logging.debug_mqtt_echo is expected


def test_missing_credential_is_reported(tmp_path: Path) -> None:
    environ = dict(CREDENTIALS)
    del environ["PI_PASSWORD"]
    config = load_config(tmp_path / "missing.cfg", environ=environ)

    with pytest.raises(ConfigurationError, match="PI_PASSWORD"):
        config.require_credentials()


def test_intake_values_are_clamped(tmp_path: Path) -> None:
    config_path = tmp_path / "actuator-relay.cfg"
    config_path.write_text(
        "[intake]\npoll_interval_seconds = 0\npoll_throttle_seconds = -1\n",
        encoding="utf-8",
    )

    config = load_config(config_path, environ={})

    assert config.intake.poll_interval_seconds == 1.0
    assert config.intake.poll_throttle_seconds == 0.0


def test_invalid_qos_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "actuator-relay.cfg"
    config_path.write_text("[mqtt]\nqos = 3\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(config_path, environ={})


@pytest.mark.parametrize(
    "section,option,value",
    [
        ("mqtt", "keepalive", "sixty"),
        ("intake", "poll_interval_seconds", "soon"),
        ("resilience", "health_enabled", "maybe"),
    ],
)
def test_malformed_values_raise_configuration_error(
    tmp_path: Path, section, option, value
) -> None:
    config_path = tmp_path / "actuator-relay.cfg"
    config_path.write_text(f"[{section}]\n{option} = {value}\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(config_path, environ={})


@pytest.mark.parametrize(
    "url,expected",
    [
        ("mqtt://127.0.0.1:1883", ("127.0.0.1", 1883, False)),
        ("mqtt://broker", ("broker", 1883, False)),
        ("mqtts://broker", ("broker", 8883, True)),
        ("tcp://broker:2000", ("broker", 2000, False)),
        ("broker.lan", ("broker.lan", 1883, False)),
    ],
)
def test_parse_mqtt_url(url, expected) -> None:
    assert parse_mqtt_url(url) == expected


def test_parse_mqtt_url_rejects_unknown_scheme() -> None:
    with pytest.raises(ConfigurationError):
        parse_mqtt_url("ws://broker:9001")
