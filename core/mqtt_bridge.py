# core/mqtt_bridge.py
import logging
import re
import threading
from typing import Callable, Dict, Iterable, Optional

import paho.mqtt.client as mqtt

from .events import Origin
from .utils import payload_to_value, value_to_payload

CommandHandler = Callable[[int, int], None]


class MqttBridge:
    """
    Retained `<prefix>/<n>/state` publishes for pin changes, and
    `<prefix>/<n>/set` subscriptions that drive output pins.

    Never blocks the caller on the broker: connection is async and paho's
    network loop reconnects on its own. Errors are logged, not raised.
    The latest value of every published pin is republished on each connect.
    """

    def __init__(self, host: str, port: int, prefix: str, on_command: CommandHandler,
                 username: str = "", password: str = "", keepalive: int = 60,
                 client: Optional[mqtt.Client] = None):
        self.host = host
        self.port = port
        self.prefix = prefix.rstrip("/")
        self.keepalive = keepalive
        self.on_command = on_command
        self.client = client or mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        if username:
            self.client.username_pw_set(username, password or None)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

        self.lock = threading.Lock()
        self.publish_lock = threading.RLock()
        self.subscribed: Dict[int, str] = {}  # pin -> set topic
        self.last_published: Dict[int, int] = {}
        self.retained: Dict[int, int] = {}  # pin -> latest value, republished on connect
        self._set_topic_re = re.compile(rf"^{re.escape(self.prefix)}/(\d+)/set$")

    # ---- Topics ----

    def state_topic(self, number: int) -> str:
        return f"{self.prefix}/{number}/state"

    def set_topic(self, number: int) -> str:
        return f"{self.prefix}/{number}/set"

    def parse_set_topic(self, topic: str) -> Optional[int]:
        match = self._set_topic_re.match(topic)
        return int(match.group(1)) if match else None

    # ---- Lifecycle ----

    def start(self):
        logging.info(f"[MQTT] Connecting to {self.host}:{self.port} (prefix '{self.prefix}')...")
        try:
            self.client.connect_async(self.host, self.port, keepalive=self.keepalive)
            self.client.loop_start()
        except Exception as e:
            logging.error(f"[MQTT] Failed to start client: {e}")

    def stop(self):
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception as e:
            logging.warning(f"[MQTT] Error while disconnecting: {e}")

    # ---- Outbound ----

    def publish_state(self, number: int, value: int, origin: Origin = Origin.HTTP) -> bool:
        """Publish a retained ON/OFF. Changes that came from MQTT are only
        published when they differ from what we last published for the pin."""
        value = 1 if value else 0
        with self.publish_lock:
            self.retained[number] = value
            if origin == Origin.MQTT and self.last_published.get(number) == value:
                logging.debug(f"[MQTT] Pin {number} already published as {value}, skipping echo.")
                return False
            return self._publish(number, value)

    def _publish(self, number: int, value: int) -> bool:
        try:
            info = self.client.publish(self.state_topic(number), value_to_payload(value), qos=0, retain=True)
        except Exception as e:
            logging.error(f"[MQTT] Publish error for pin {number}: {e}")
            return False
        if info.rc == mqtt.MQTT_ERR_NO_CONN:
            logging.debug(f"[MQTT] Pin {number} -> {value_to_payload(value)} held until connected.")
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logging.warning(f"[MQTT] Publish pin {number} -> {value_to_payload(value)} failed (rc={info.rc})")
            return False
        self.last_published[number] = value
        return True

    def sync_subscriptions(self, numbers: Iterable[int]):
        """Subscribe to the set topic of every pin in `numbers`, drop the rest."""
        wanted = {n: self.set_topic(n) for n in numbers}
        with self.lock:
            stale = {n: t for n, t in self.subscribed.items() if n not in wanted}
            self.subscribed = wanted
        for number, topic in stale.items():
            try: self.client.unsubscribe(topic)
            except Exception as e: logging.error(f"[MQTT] Unsubscribe error {topic}: {e}")
        for topic in wanted.values():
            self._subscribe(topic)

    def _subscribe(self, topic: str):
        try:
            result, _ = self.client.subscribe(topic)
            if result != mqtt.MQTT_ERR_SUCCESS:
                logging.warning(f"[MQTT] Subscribe {topic} deferred (rc={result}), will retry on connect.")
        except Exception as e:
            logging.error(f"[MQTT] Subscribe error {topic}: {e}")

    # ---- Callbacks (paho network thread) ----

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if getattr(reason_code, "is_failure", False):
            logging.error(f"[MQTT] Connection refused: {reason_code}")
            return
        logging.info("[MQTT] Connected ✅")
        with self.lock:
            topics = list(self.subscribed.values())
        for topic in topics:
            self._subscribe(topic)
        with self.publish_lock:
            for number, value in list(self.retained.items()):
                self._publish(number, value)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        logging.warning(f"[MQTT] Disconnected ({reason_code}), paho will reconnect.")

    def _on_message(self, client, userdata, msg):
        number = self.parse_set_topic(msg.topic)
        if number is None:
            logging.debug(f"[MQTT] Ignoring message on {msg.topic}")
            return
        value = payload_to_value(msg.payload)
        logging.info(f"[MQTT] Command {msg.topic} -> {value}")
        try:
            self.on_command(number, value)
        except Exception as e:
            logging.error(f"[MQTT] Error handling command for pin {number}: {e}", exc_info=True)
