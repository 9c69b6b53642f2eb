# core/registry.py
import logging
from typing import Callable, Dict, List, Optional

from .gpio import PinDriver
from .utils import DIRECTION_IN, DIRECTION_OUT, coerce_value


class PinEntry:
    """A configured pin paired with its live driver."""

    def __init__(self, number: int, direction: str, label: str, driver: PinDriver):
        self.number = number
        self.direction = direction
        self.label = label
        self.driver = driver

    @property
    def is_output(self) -> bool:
        return self.direction == DIRECTION_OUT

    def release(self):
        try:
            self.driver.release()
        except Exception as e:
            logging.warning(f"[GPIO] Error releasing pin {self.number}: {e}")


class PinRegistry:
    """
    Live map of pin number -> PinEntry.

    rebuild() is the only place drivers are created or released.
    """

    def __init__(self, driver_factory: Callable[[int, str], PinDriver]):
        self.driver_factory = driver_factory
        self._entries: Dict[int, PinEntry] = {}

    def get(self, number: int) -> Optional[PinEntry]:
        return self._entries.get(number)

    def entries(self) -> List[PinEntry]:
        return list(self._entries.values())

    def output_numbers(self) -> List[int]:
        return [e.number for e in self._entries.values() if e.is_output]

    def __len__(self):
        return len(self._entries)

    def __contains__(self, number):
        return number in self._entries

    def release_all(self):
        for entry in self._entries.values():
            entry.release()
        self._entries.clear()

    def rebuild(self, config: dict, last_state: Dict[int, int],
                on_initial: Optional[Callable[[int, int], None]] = None,
                on_input: Optional[Callable[[int, int], None]] = None) -> Dict[int, PinEntry]:
        """
        Release every current driver and create one per PinSpec in `config`.

        Args:
            config: normalised config document ({"pins": [...]})
            last_state: persisted output values, used as initial levels
            on_initial: called with (number, value) after each output's initial write
            on_input: called with (number, value) on every input transition

        Returns:
            the new number -> PinEntry map
        """
        self.release_all()

        for spec in config.get("pins", []):
            number = spec["number"]
            direction = spec["direction"]
            label = spec["label"]

            # Duplicate number: last one wins; free the line before re-claiming it
            previous = self._entries.pop(number, None)
            if previous is not None:
                logging.warning(f"[CONFIG] Duplicate pin {number}, later entry wins.")
                previous.release()

            try:
                driver = self.driver_factory(number, direction)
            except Exception as e:
                logging.error(f"[GPIO] Could not set up pin {number} ({direction}): {e}")
                continue

            entry = PinEntry(number, direction, label, driver)
            self._entries[number] = entry

            if entry.is_output:
                initial = coerce_value(last_state.get(number, 0))
                try: driver.write(initial)
                except Exception as e: logging.error(f"[GPIO] Initial write pin {number}={initial} failed: {e}")
                if on_initial:
                    on_initial(number, initial)
            elif direction == DIRECTION_IN and on_input:
                try:
                    driver.on_change(lambda value, n=number: on_input(n, coerce_value(value)))
                except Exception as e:
                    logging.error(f"[GPIO] Could not watch input pin {number}: {e}")

        logging.info(f"[GPIO] Registry rebuilt: {len(self._entries)} pins "
                     f"({len(self.output_numbers())} out, {len(self._entries) - len(self.output_numbers())} in)")
        return dict(self._entries)
