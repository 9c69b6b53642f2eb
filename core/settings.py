# core/settings.py
import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

# Paths
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
CONFIG_FILE = os.path.join(BASE_DIR, "gpio-config.json")
STATE_FILE = os.path.join(BASE_DIR, "gpio-state.json")
LOG_DIR = os.path.join(BASE_DIR, "logs")
LOG_FILE = os.path.join(LOG_DIR, "greenspring.log")
TEMPLATES_DIR = os.path.join(BASE_DIR, "templates")

DEFAULT_PORT = 3000
DEFAULT_MQTT_PREFIX = "home/gpio"
DEFAULT_MQTT_PORT = 1883

TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    port: int = DEFAULT_PORT
    use_mock: bool = False
    mqtt_url: str = ""
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_prefix: str = DEFAULT_MQTT_PREFIX
    config_file: str = CONFIG_FILE
    state_file: str = STATE_FILE
    log_file: str = LOG_FILE

    @property
    def mqtt_enabled(self) -> bool:
        return bool(self.mqtt_url)

    def mqtt_host_port(self):
        """Split MQTT_URL ("mqtt://host:1883", "tcp://host" or a bare host) into (host, port)."""
        url = self.mqtt_url if "://" in self.mqtt_url else f"mqtt://{self.mqtt_url}"
        parsed = urlparse(url)
        return parsed.hostname or "localhost", parsed.port or DEFAULT_MQTT_PORT


def _parse_port(raw: str) -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError):
        logging.warning(f"[CONFIG] Invalid PORT {raw!r}, using {DEFAULT_PORT}.")
        return DEFAULT_PORT
    if not 0 < port < 65536:
        logging.warning(f"[CONFIG] PORT {port} out of range, using {DEFAULT_PORT}.")
        return DEFAULT_PORT
    return port


def settings_from_env() -> Settings:
    def _get(name: str, default: str) -> str:
        val = os.environ.get(name)
        return default if val is None or val == "" else val

    return Settings(
        port=_parse_port(_get("PORT", str(DEFAULT_PORT))),
        use_mock=_get("GS_MOCK", "0").strip().lower() in TRUTHY,
        mqtt_url=_get("MQTT_URL", "").strip(),
        mqtt_username=_get("MQTT_USERNAME", ""),
        mqtt_password=_get("MQTT_PASSWORD", ""),
        mqtt_prefix=_get("MQTT_PREFIX", DEFAULT_MQTT_PREFIX).rstrip("/") or DEFAULT_MQTT_PREFIX,
        config_file=_get("GS_CONFIG_FILE", CONFIG_FILE),
        state_file=_get("GS_STATE_FILE", STATE_FILE),
        log_file=_get("GS_LOG_FILE", LOG_FILE),
    )
