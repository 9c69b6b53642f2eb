# core/events.py
from dataclasses import dataclass
from enum import Enum
from typing import Any


class Origin(str, Enum):
    UI = "ui"
    MQTT = "mqtt"
    HTTP = "http"
    INPUT = "input"


@dataclass(frozen=True)
class SetOutput:
    """Request to drive an output pin. value=None means toggle."""
    number: int
    value: Any
    origin: Origin


@dataclass(frozen=True)
class InputChanged:
    number: int
    value: int
