# core/store.py
import json
import logging
import os
import tempfile
import threading
from typing import Any, Dict, Tuple

from .utils import coerce_value, default_label, normalize_direction, parse_pin_number


class ConfigError(ValueError):
    """A submitted configuration document was rejected."""


def empty_config() -> Dict[str, Any]:
    return {"pins": []}


def normalize_pin(raw: Any) -> Dict[str, Any]:
    """Normalise one PinSpec entry, raising ConfigError if it can't be."""
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid pin entry (expected object): {raw!r}")
    number = parse_pin_number(raw.get("number"))
    if number is None:
        raise ConfigError(f"Invalid pin number: {raw.get('number')!r}")
    label = raw.get("label")
    label = str(label).strip() if label is not None else ""
    return {
        "number": number,
        "label": label or default_label(number),
        "direction": normalize_direction(raw.get("direction")),
    }


def validate_config(doc: Any) -> Dict[str, Any]:
    """Strict check for a submitted document. Nothing is mutated; returns a normalised copy."""
    if not isinstance(doc, dict) or not isinstance(doc.get("pins"), list):
        raise ConfigError("Invalid config: expected { pins: [...] }")
    new_config = dict(doc)
    new_config["pins"] = [normalize_pin(p) for p in doc["pins"]]
    return new_config


class PinStore:
    """The two JSON documents: pin configuration and last-known output state."""

    def __init__(self, config_file: str, state_file: str):
        self.config_file = config_file
        self.state_file = state_file
        self.file_lock = threading.Lock()

    # ---- Load ----

    def _read_json(self, path: str) -> Tuple[bool, Any]:
        if not os.path.exists(path):
            logging.info(f"[STORE] {path} not found, starting empty.")
            return False, None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return True, json.load(f)
        except (OSError, ValueError) as e:
            logging.error(f"[STORE] Could not read {path}: {e}")
            return False, None

    def load_config(self) -> Dict[str, Any]:
        ok, doc = self._read_json(self.config_file)
        if not ok:
            return empty_config()
        if not isinstance(doc, dict) or not isinstance(doc.get("pins"), list):
            logging.error(f"[STORE] {self.config_file} has no 'pins' list, using empty topology.")
            return empty_config()

        config = dict(doc)
        pins = []
        for raw in doc["pins"]:
            try:
                pins.append(normalize_pin(raw))
            except ConfigError as e:
                logging.warning(f"[STORE] Skipping pin entry in {self.config_file}: {e}")
        config["pins"] = pins
        logging.info(f"[STORE] Loaded {len(pins)} pins from {self.config_file}")
        return config

    def load_state(self) -> Dict[int, int]:
        ok, doc = self._read_json(self.state_file)
        if not ok:
            return {}
        if not isinstance(doc, dict):
            logging.error(f"[STORE] {self.state_file} is not an object, ignoring it.")
            return {}

        state = {}
        for key, value in doc.items():
            number = parse_pin_number(key)
            if number is None:
                logging.warning(f"[STORE] Ignoring state key {key!r}")
                continue
            state[number] = coerce_value(value)
        return state

    # ---- Save ----

    def _write_json(self, path: str, data: Any):
        """Write to a temp file next to `path`, then rename over it."""
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        with self.file_lock:
            fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory)
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except BaseException:
                try: os.remove(tmp_path)
                except OSError: pass
                raise

    def save_config(self, config: Dict[str, Any]):
        self._write_json(self.config_file, config)
        logging.info(f"[STORE] Saved config ({len(config.get('pins', []))} pins) to {self.config_file}")

    def save_state(self, state: Dict[int, int]):
        self._write_json(self.state_file, {str(k): v for k, v in state.items()})
