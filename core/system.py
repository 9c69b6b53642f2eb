# core/system.py
import copy
import logging
import queue
import threading
from typing import Any, Dict, Optional

from .events import InputChanged, Origin, SetOutput
from .fanout import Broadcaster, snapshot_message
from .gpio import MockPin, get_driver_factory, is_mock_factory
from .mqtt_bridge import MqttBridge
from .registry import PinRegistry
from .settings import Settings, settings_from_env
from .store import ConfigError, PinStore, empty_config, validate_config
from .utils import DIRECTION_IN, coerce_value, parse_pin_number

from threads import event_loop


class GreenSpringSystem:
    """
    Owns all runtime state: config, output state, pin registry, WebSocket
    clients and the MQTT bridge.

    Async sources (WebSocket, MQTT, input edges) submit events which the
    event-loop thread handles one at a time. Every operation that touches the
    registry or the state document holds `core_lock`, so synchronous callers
    (config POST, new connections, tests) are serialized with that thread.
    """

    def __init__(self, settings: Optional[Settings] = None, mqtt_client=None, driver_factory=None):
        self.settings = settings or settings_from_env()
        self.main_loop_running = False
        self.core_lock = threading.RLock()
        self.events: "queue.Queue" = queue.Queue()
        self.loop_thread: Optional[threading.Thread] = None

        self.store = PinStore(self.settings.config_file, self.settings.state_file)
        self.driver_factory = driver_factory or get_driver_factory(self.settings.use_mock)
        self.registry = PinRegistry(self.driver_factory)
        self.fanout = Broadcaster()

        self.mqtt: Optional[MqttBridge] = None
        if self.settings.mqtt_enabled:
            host, port = self.settings.mqtt_host_port()
            self.mqtt = MqttBridge(
                host, port, self.settings.mqtt_prefix, self.on_mqtt_command,
                username=self.settings.mqtt_username, password=self.settings.mqtt_password,
                client=mqtt_client,
            )

        self.config: Dict[str, Any] = empty_config()
        self.state: Dict[int, int] = {}

    @property
    def is_mock(self) -> bool:
        return is_mock_factory(self.driver_factory)

    # ===========================================
    # LIFECYCLE
    # ===========================================

    def init(self):
        """Load both documents, connect MQTT and build the registry."""
        with self.core_lock:
            self.config = self.store.load_config()
            self.state = self.store.load_state()
        if self.mqtt:
            self.mqtt.start()
        self.rebuild()

    def run(self):
        """Called once at startup: init, then start the event loop thread."""
        self.init()
        self.main_loop_running = True
        self.loop_thread = threading.Thread(
            target=event_loop.start_event_loop_thread, args=(self,), name="EventLoop", daemon=True)
        self.loop_thread.start()
        logging.info("[SYSTEM] Event loop started.")

    def stop(self):
        logging.info("🛑 [SHUTDOWN] Stopping GreenSpring...")
        self.main_loop_running = False
        self.events.put(None)
        if self.loop_thread and self.loop_thread is not threading.current_thread():
            self.loop_thread.join(timeout=2.0)
        with self.core_lock:
            self.registry.release_all()
        if self.mqtt:
            self.mqtt.stop()
        logging.info("[SHUTDOWN] Pins released.")

    # ===========================================
    # EVENTS
    # ===========================================

    def submit(self, event):
        self.events.put(event)

    def process_pending(self):
        """Handle every queued event on the calling thread."""
        handled = 0
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                return handled
            if event is not None:
                self.handle_event(event)
                handled += 1

    def handle_event(self, event):
        with self.core_lock:
            if isinstance(event, SetOutput):
                value = event.value
                if value is None:
                    value = 1 - self.current_value(event.number)
                self.apply_output(event.number, value, event.origin)
            elif isinstance(event, InputChanged):
                self.report_input(event.number, event.value)
            else:
                logging.warning(f"[CORE] Unknown event: {event!r}")

    def on_input_change(self, number: int, value: int):
        # Driver callback thread
        self.submit(InputChanged(number, value))

    def on_mqtt_command(self, number: int, value: int):
        # paho network thread
        self.submit(SetOutput(number, value, Origin.MQTT))

    # ===========================================
    # RECONCILIATION
    # ===========================================

    def apply_output(self, number, value, origin: Origin = Origin.UI) -> bool:
        """Drive an output pin and propagate the change. Unknown and input pins are ignored."""
        with self.core_lock:
            entry = self.registry.get(parse_pin_number(number))
            if entry is None or not entry.is_output:
                logging.debug(f"[CORE] Ignoring set for pin {number} (not a configured output)")
                return False

            v = coerce_value(value)
            try: entry.driver.write(v)
            except Exception as e: logging.error(f"[GPIO] Write pin {entry.number}={v} failed: {e}")

            self.state[entry.number] = v
            try:
                self.store.save_state(self.state)
            except Exception as e:
                logging.error(f"[STORE] Could not save state (pin {entry.number}={v}): {e}")

            self.fanout.broadcast_delta(entry.number, v)
            if self.mqtt:
                self.mqtt.publish_state(entry.number, v, origin)
            logging.info(f"[CORE] Pin {entry.number} -> {v} ({getattr(origin, 'value', origin)})")
            return True

    def report_input(self, number: int, value) -> bool:
        """An input line changed level: broadcast and publish, nothing else."""
        with self.core_lock:
            entry = self.registry.get(number)
            if entry is None or entry.direction != DIRECTION_IN:
                logging.debug(f"[CORE] Dropping input event for pin {number} (not a registered input)")
                return False
            v = coerce_value(value)
            self.fanout.broadcast_delta(number, v)
            if self.mqtt:
                self.mqtt.publish_state(number, v, Origin.INPUT)
            return True

    def rebuild(self):
        with self.core_lock:
            publish = (lambda n, v: self.mqtt.publish_state(n, v, Origin.HTTP)) if self.mqtt else None
            self.registry.rebuild(self.config, self.state, on_initial=publish, on_input=self.on_input_change)
            if self.mqtt:
                self.mqtt.sync_subscriptions(self.registry.output_numbers())
            snapshot = self.get_full_state()
            self.fanout.broadcast_snapshot(snapshot["config"], snapshot["state"], snapshot["inputs"])

    # ===========================================
    # SNAPSHOTS
    # ===========================================

    def current_value(self, number: int) -> int:
        entry = self.registry.get(number)
        if entry is not None:
            try:
                return coerce_value(entry.driver.read())
            except Exception as e:
                logging.warning(f"[GPIO] Read pin {number} failed: {e}")
        return coerce_value(self.state.get(number, 0))

    def get_current_state(self):
        """(outputs, inputs): number -> value for every registered pin."""
        with self.core_lock:
            outputs, inputs = {}, {}
            for entry in self.registry.entries():
                target = outputs if entry.is_output else inputs
                target[entry.number] = self.current_value(entry.number)
            return outputs, inputs

    def get_full_state(self):
        with self.core_lock:
            outputs, inputs = self.get_current_state()
            return {"config": copy.deepcopy(self.config), "state": outputs, "inputs": inputs}

    def get_config_for_json(self):
        with self.core_lock:
            return copy.deepcopy(self.config)

    # ===========================================
    # WEB SURFACE
    # ===========================================

    def add_ws_client(self, ws):
        """Register a session and send it the current snapshot, atomically
        with respect to deltas."""
        with self.core_lock:
            self.fanout.add_client(ws)
            snapshot = self.get_full_state()
            return self.fanout.send(ws, snapshot_message(snapshot["config"], snapshot["state"], snapshot["inputs"]))

    def remove_ws_client(self, ws):
        self.fanout.remove_client(ws)

    def handle_ws_message(self, data, client_label="guest"):
        if not isinstance(data, dict):
            logging.warning(f"[WS] {client_label}: ignoring non-object message")
            return
        action = data.get('action') or data.get('type')
        if action not in ('setPin', 'toggle'):
            logging.warning(f"[WS] {client_label}: unknown action {action!r}")
            return

        number = parse_pin_number(data.get('number'))
        if number is None:
            logging.warning(f"[WS] {client_label}: invalid pin number {data.get('number')!r}")
            return
        value = None if action == 'toggle' or data.get('value') is None else coerce_value(data.get('value'))
        self.submit(SetOutput(number, value, Origin.UI))

    def update_config(self, new_config_data):
        """POST /api/config. Returns (body, status)."""
        try:
            new_config = validate_config(new_config_data)
        except ConfigError as e:
            logging.warning(f"[CONFIG] Rejected config: {e}")
            return ({"error": str(e)}, 400)

        with self.core_lock:
            self.config = new_config
            save_error = None
            try:
                self.store.save_config(new_config)
            except Exception as e:
                logging.error(f"[CONFIG] Failed to write {self.store.config_file}: {e}")
                save_error = e
            self.rebuild()

        if save_error is not None:
            return ({"error": f"Failed to write {self.store.config_file}", "details": str(save_error)}, 500)
        logging.info(f"[CONFIG] Applied config with {len(new_config['pins'])} pins.")
        return ({"ok": True, "config": new_config}, 200)

    def mock_input(self, payload):
        """POST /api/mock_gpio: drive a simulated input line."""
        if not self.is_mock:
            return ({"error": "Only available with mock pins (GS_MOCK=1)."}, 400)
        payload = payload or {}
        number = parse_pin_number(payload.get('number', payload.get('pin')))
        if number is None:
            return ({"error": "Invalid pin number."}, 400)

        with self.core_lock:
            entry = self.registry.get(number)
            if entry is None or entry.direction != DIRECTION_IN or not isinstance(entry.driver, MockPin):
                return ({"error": f"Pin {number} is not a configured input."}, 400)
            requested = payload.get('value', payload.get('state'))
            value = 1 - entry.driver.read() if requested is None else coerce_value(requested)
            entry.driver.set_level(value)

        logging.info(f"[MOCK] Input pin {number} -> {value}")
        return ({"ok": True, "number": number, "value": value}, 200)
