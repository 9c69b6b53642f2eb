# core/gpio.py
import logging
import threading
from typing import Callable, List

from .utils import DIRECTION_IN, coerce_value

try:
    import RPi.GPIO as RPiGPIO
    REAL_GPIO = True
except (ImportError, RuntimeError):
    RPiGPIO = None
    REAL_GPIO = False

ChangeCallback = Callable[[int], None]


class PinDriver:
    """One numbered GPIO line, either direction."""

    def __init__(self, number: int, direction: str):
        self.number = number
        self.direction = direction

    def write(self, value: int): raise NotImplementedError
    def read(self) -> int: raise NotImplementedError
    def on_change(self, callback: ChangeCallback): raise NotImplementedError
    def release(self): raise NotImplementedError

    def __repr__(self):
        return f"{self.__class__.__name__}({self.number}, {self.direction!r})"


class RPiPin(PinDriver):
    """Hardware line through RPi.GPIO (BCM numbering).

    on_change() adds a listener; the first one arms edge detection on both
    edges, later ones are chained with add_event_callback. Listeners run on
    RPi.GPIO's callback thread.
    """

    def __init__(self, number: int, direction: str):
        if not RPiGPIO:
            raise ImportError("RPi.GPIO not available")
        super().__init__(number, direction)
        self.gpio = RPiGPIO
        self._watching = False
        self._released = False
        if self.gpio.getmode() is None:
            self.gpio.setmode(self.gpio.BCM)
        self.gpio.setwarnings(False)
        mode = self.gpio.IN if direction == DIRECTION_IN else self.gpio.OUT
        self.gpio.setup(number, mode)

    def write(self, value):
        self.gpio.output(self.number, self.gpio.HIGH if coerce_value(value) else self.gpio.LOW)

    def read(self):
        return 1 if self.gpio.input(self.number) else 0

    def on_change(self, callback):
        def _edge(channel):
            callback(1 if self.gpio.input(channel) else 0)

        if not self._watching:
            self.gpio.add_event_detect(self.number, self.gpio.BOTH, callback=_edge)
            self._watching = True
        else:
            self.gpio.add_event_callback(self.number, _edge)

    def release(self):
        if self._released:
            return
        self._released = True
        if self._watching:
            try: self.gpio.remove_event_detect(self.number)
            except Exception as e: logging.warning(f"[GPIO] remove_event_detect pin {self.number}: {e}")
            self._watching = False
        self.gpio.cleanup(self.number)


class MockPin(PinDriver):
    """In-memory line. Every write (or simulated level change) synchronously
    calls all registered listeners, in registration order."""

    def __init__(self, number: int, direction: str):
        super().__init__(number, direction)
        self.value = 0
        self.listeners: List[ChangeCallback] = []
        self._lock = threading.Lock()

    def write(self, value):
        with self._lock:
            self.value = coerce_value(value)
            listeners = list(self.listeners)
        for cb in listeners:
            cb(self.value)

    def read(self):
        return self.value

    def on_change(self, callback):
        with self._lock:
            self.listeners.append(callback)

    def set_level(self, value):
        """Simulate the outside world driving an input line."""
        self.write(value)

    def release(self):
        with self._lock:
            self.listeners = []


def get_driver_factory(use_mock: bool = False) -> Callable[[int, str], PinDriver]:
    """Pick the driver variant once, at startup."""
    if use_mock:
        logging.warning("[GPIO] Using MOCK pins (GS_MOCK=1)")
        return MockPin
    if not REAL_GPIO:
        logging.warning("[GPIO] RPi.GPIO not available, falling back to MOCK pins")
        return MockPin
    logging.info("[GPIO] Using RPi.GPIO hardware pins")
    return RPiPin


def is_mock_factory(factory) -> bool:
    return factory is MockPin

