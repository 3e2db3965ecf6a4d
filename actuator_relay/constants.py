"""Constants used across the actuator-relay package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "actuator-relay"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".actuator-relay" / DEFAULT_CONFIG_FILENAME

DEFAULT_DEVICE_ID = "svc-mukougaoka-01"
DEFAULT_SITE_ID = "b11e8011-77e4-4e39-a320-d9685cdb27e0"

DEFAULT_MQTT_URL = "mqtt://127.0.0.1:1883"
DEFAULT_MQTT_PORT = 1883
DEFAULT_MQTTS_PORT = 8883

DEFAULT_LEDGER_SCHEMA = "public"
DEFAULT_LEDGER_TABLE = "commands"

DEFAULT_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_POLL_THROTTLE_SECONDS = 0.12

DEFAULT_DEDUPE_CAPACITY = 2000
DEFAULT_DEDUPE_EVICT_COUNT = 500
