# core/utils.py
from typing import Any, Optional

DIRECTION_IN = "in"
DIRECTION_OUT = "out"


def coerce_value(value: Any) -> int:
    """Normalise anything the UI, MQTT or a state file may hand us to 0 or 1."""
    if value is None:
        return 0
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    if isinstance(value, str):
        s = value.strip().lower()
        try:
            f = float(s)
            return 1 if f == f and f != 0 else 0  # NaN -> 0
        except ValueError:
            return 1 if s in {"on", "true", "high", "yes"} else 0
    try:
        return 1 if value else 0
    except Exception:
        return 0


def normalize_direction(direction: Any) -> str:
    return DIRECTION_IN if str(direction or DIRECTION_OUT).strip().lower() == DIRECTION_IN else DIRECTION_OUT


def parse_pin_number(raw: Any) -> Optional[int]:
    """Return a non-negative int pin number, or None if `raw` isn't one."""
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, int):
        number = raw
    elif isinstance(raw, float):
        if not raw.is_integer():
            return None
        number = int(raw)
    elif isinstance(raw, str):
        try:
            number = int(raw.strip())
        except ValueError:
            return None
    else:
        return None
    return number if number >= 0 else None


def default_label(number: int) -> str:
    return f"GPIO {number}"


def payload_to_value(payload: Any) -> int:
    """MQTT command payload: ON / 1 (any case) -> 1, anything else -> 0."""
    if isinstance(payload, (bytes, bytearray)):
        payload = bytes(payload).decode("utf-8", errors="ignore")
    s = str(payload or "").strip().upper()
    return 1 if s in ("ON", "1") else 0


def value_to_payload(value: int) -> str:
    return "ON" if value else "OFF"
