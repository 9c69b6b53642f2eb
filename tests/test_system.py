import json
import os
import shutil
import tempfile
import time
import unittest
from unittest import mock

import paho.mqtt.client as mqtt

from core.events import Origin, SetOutput
from core.gpio import MockPin
from core.settings import Settings
from core.system import GreenSpringSystem


class FakeWS:
    def __init__(self):
        self.messages = []

    def send(self, msg):
        self.messages.append(json.loads(msg))

    def deltas(self):
        return [m for m in self.messages if m["type"] == "pin"]

    def snapshots(self):
        return [m for m in self.messages if m["type"] == "init"]


def make_mqtt_client():
    client = mock.MagicMock()
    client.publish.return_value.rc = mqtt.MQTT_ERR_SUCCESS
    client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
    return client


LED_CONFIG = {"pins": [{"number": 17, "label": "LED", "direction": "out"}]}


class SystemTestCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.config_file = os.path.join(self.tmpdir, "gpio-config.json")
        self.state_file = os.path.join(self.tmpdir, "gpio-state.json")
        self.client = make_mqtt_client()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def write_json(self, path, data):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f)

    def read_json(self, path):
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def make_system(self, config=None, state=None, mqtt_url="mqtt://broker", driver_factory=None):
        if config is not None:
            self.write_json(self.config_file, config)
        if state is not None:
            self.write_json(self.state_file, state)
        settings = Settings(use_mock=True, mqtt_url=mqtt_url,
                            config_file=self.config_file, state_file=self.state_file)
        system = GreenSpringSystem(settings, mqtt_client=self.client, driver_factory=driver_factory)
        system.init()
        return system

    def published(self):
        return [(c.args[0], c.args[1], c.kwargs.get("retain")) for c in self.client.publish.call_args_list]

    def driver(self, system, number):
        return system.registry.get(number).driver


class TestRebuild(SystemTestCase):
    def test_empty_state_starts_off_and_publishes_off(self):
        system = self.make_system(LED_CONFIG)
        self.assertEqual(self.driver(system, 17).read(), 0)
        self.assertIn(("home/gpio/17/state", "OFF", True), self.published())

    def test_prior_state_is_restored_and_published(self):
        system = self.make_system(LED_CONFIG, state={"17": 1})
        self.assertEqual(self.driver(system, 17).read(), 1)
        self.assertIn(("home/gpio/17/state", "ON", True), self.published())

    def test_snapshot_contains_exactly_output_pins(self):
        config = {"pins": [
            {"number": 17, "label": "LED", "direction": "out"},
            {"number": 18, "label": "Pump", "direction": "out"},
            {"number": 4, "label": "Button", "direction": "in"},
        ]}
        system = self.make_system(config, state={"17": 1, "99": 1})
        snapshot = system.get_full_state()
        self.assertEqual(snapshot["state"], {17: 1, 18: 0})
        self.assertEqual(snapshot["inputs"], {4: 0})
        self.assertEqual(snapshot["config"]["pins"][0]["label"], "LED")

    def test_rebuild_does_not_write_state_document(self):
        self.make_system(LED_CONFIG)
        self.assertFalse(os.path.exists(self.state_file))

    def test_subscribes_to_output_set_topics_only(self):
        config = {"pins": [
            {"number": 17, "label": "LED", "direction": "out"},
            {"number": 4, "label": "Button", "direction": "in"},
        ]}
        self.make_system(config)
        topics = [c.args[0] for c in self.client.subscribe.call_args_list]
        self.assertEqual(topics, ["home/gpio/17/set"])

    def test_missing_config_means_no_pins(self):
        system = self.make_system()
        self.assertEqual(len(system.registry), 0)
        self.assertEqual(system.get_full_state()["state"], {})

    def test_rebuild_broadcasts_snapshot(self):
        system = self.make_system(LED_CONFIG)
        ws = FakeWS()
        system.add_ws_client(ws)
        system.rebuild()
        self.assertEqual(len(ws.snapshots()), 2)  # on connect + after rebuild


class TestApplyOutput(SystemTestCase):
    def test_output_pin_is_written_persisted_broadcast_and_published(self):
        system = self.make_system(LED_CONFIG)
        ws = FakeWS()
        system.add_ws_client(ws)
        self.client.publish.reset_mock()

        self.assertTrue(system.apply_output(17, 1, Origin.UI))

        self.assertEqual(self.driver(system, 17).read(), 1)
        self.assertEqual(self.read_json(self.state_file), {"17": 1})
        self.assertEqual(ws.deltas(), [{"type": "pin", "number": 17, "value": 1}])
        self.client.publish.assert_called_once_with("home/gpio/17/state", "ON", qos=0, retain=True)

    def test_value_is_coerced(self):
        system = self.make_system(LED_CONFIG)
        system.apply_output(17, "5", Origin.UI)
        self.assertEqual(self.driver(system, 17).read(), 1)
        system.apply_output(17, 0.0, Origin.UI)
        self.assertEqual(self.driver(system, 17).read(), 0)
        system.apply_output("17", True, Origin.UI)
        self.assertEqual(system.state[17], 1)

    def test_unknown_pin_is_ignored(self):
        system = self.make_system(LED_CONFIG)
        ws = FakeWS()
        system.add_ws_client(ws)
        self.client.publish.reset_mock()

        self.assertFalse(system.apply_output(5, 1, Origin.UI))

        self.assertFalse(os.path.exists(self.state_file))
        self.assertEqual(ws.deltas(), [])
        self.client.publish.assert_not_called()

    def test_input_pin_is_ignored(self):
        system = self.make_system({"pins": [{"number": 4, "label": "Button", "direction": "in"}]})
        ws = FakeWS()
        system.add_ws_client(ws)
        self.client.publish.reset_mock()

        self.assertFalse(system.apply_output(4, 1, Origin.UI))

        self.assertEqual(self.driver(system, 4).read(), 0)
        self.assertFalse(os.path.exists(self.state_file))
        self.assertEqual(ws.deltas(), [])
        self.client.publish.assert_not_called()

    def test_same_value_twice(self):
        system = self.make_system(LED_CONFIG)
        ws = FakeWS()
        system.add_ws_client(ws)

        system.apply_output(17, 1, Origin.UI)
        system.apply_output(17, 1, Origin.UI)

        self.assertEqual(self.driver(system, 17).read(), 1)
        self.assertEqual(self.read_json(self.state_file), {"17": 1})
        self.assertEqual(len(ws.deltas()), 2)

    def test_state_for_unconfigured_pins_is_kept_on_disk(self):
        system = self.make_system(LED_CONFIG, state={"99": 1})
        system.apply_output(17, 1, Origin.UI)
        self.assertEqual(self.read_json(self.state_file), {"99": 1, "17": 1})

    def test_write_failure_still_updates_state(self):
        class BrokenPin(MockPin):
            def write(self, value):
                raise OSError("line busy")

        system = self.make_system(LED_CONFIG, driver_factory=BrokenPin)
        ws = FakeWS()
        system.add_ws_client(ws)

        self.assertTrue(system.apply_output(17, 1, Origin.UI))
        self.assertEqual(self.read_json(self.state_file), {"17": 1})
        self.assertEqual(ws.deltas(), [{"type": "pin", "number": 17, "value": 1}])

    def test_state_save_failure_is_not_fatal(self):
        system = self.make_system(LED_CONFIG)
        ws = FakeWS()
        system.add_ws_client(ws)
        with mock.patch.object(system.store, "save_state", side_effect=OSError("disk full")):
            self.assertTrue(system.apply_output(17, 1, Origin.UI))
        self.assertEqual(system.state[17], 1)
        self.assertEqual(len(ws.deltas()), 1)

    def test_without_mqtt(self):
        system = self.make_system(LED_CONFIG, mqtt_url="")
        self.assertIsNone(system.mqtt)
        self.assertTrue(system.apply_output(17, 1, Origin.UI))
        self.client.publish.assert_not_called()

    def test_unknown_origin_is_logged_as_given(self):
        system = self.make_system(LED_CONFIG)
        self.assertTrue(system.apply_output(17, 1, "scheduler"))
        self.assertEqual(self.driver(system, 17).read(), 1)
        self.assertEqual(self.read_json(self.state_file), {"17": 1})


class TestEventSources(SystemTestCase):
    def test_ui_set_pin(self):
        system = self.make_system(LED_CONFIG)
        ws_a, ws_b = FakeWS(), FakeWS()
        system.add_ws_client(ws_a)
        system.add_ws_client(ws_b)
        self.client.publish.reset_mock()

        system.handle_ws_message({"action": "setPin", "number": 17, "value": 1})
        self.assertEqual(system.process_pending(), 1)

        self.assertEqual(self.read_json(self.state_file), {"17": 1})
        for ws in (ws_a, ws_b):
            self.assertEqual(ws.deltas(), [{"type": "pin", "number": 17, "value": 1}])
        self.client.publish.assert_called_once_with("home/gpio/17/state", "ON", qos=0, retain=True)

    def test_ui_toggle_flips_current_value(self):
        system = self.make_system(LED_CONFIG, state={"17": 1})
        system.handle_ws_message({"action": "toggle", "number": 17})
        system.process_pending()
        self.assertEqual(self.driver(system, 17).read(), 0)
        system.handle_ws_message({"action": "setPin", "number": "17"})
        system.process_pending()
        self.assertEqual(self.driver(system, 17).read(), 1)

    def test_ui_bad_messages_are_ignored(self):
        system = self.make_system(LED_CONFIG)
        system.handle_ws_message({"action": "explode", "number": 17})
        system.handle_ws_message({"action": "setPin", "number": "abc", "value": 1})
        system.handle_ws_message(["not", "a", "dict"])
        self.assertEqual(system.process_pending(), 0)

    def test_mqtt_set_command(self):
        system = self.make_system(LED_CONFIG)
        ws = FakeWS()
        system.add_ws_client(ws)
        self.client.publish.reset_mock()

        msg = mock.Mock(topic="home/gpio/17/set", payload=b"ON")
        system.mqtt._on_message(self.client, None, msg)
        system.process_pending()

        self.assertEqual(self.driver(system, 17).read(), 1)
        self.assertEqual(self.read_json(self.state_file), {"17": 1})
        self.assertEqual(ws.deltas(), [{"type": "pin", "number": 17, "value": 1}])
        self.client.publish.assert_called_once_with("home/gpio/17/state", "ON", qos=0, retain=True)

    def test_mqtt_repeat_is_not_published_again(self):
        system = self.make_system(LED_CONFIG)
        ws = FakeWS()
        system.add_ws_client(ws)
        msg = mock.Mock(topic="home/gpio/17/set", payload=b"on")
        system.mqtt._on_message(self.client, None, msg)
        system.process_pending()
        self.client.publish.reset_mock()

        system.mqtt._on_message(self.client, None, msg)
        system.process_pending()

        self.client.publish.assert_not_called()
        self.assertEqual(len(ws.deltas()), 2)

    def test_ui_repeat_is_published_again(self):
        system = self.make_system(LED_CONFIG)
        system.apply_output(17, 1, Origin.UI)
        self.client.publish.reset_mock()
        system.apply_output(17, 1, Origin.UI)
        self.client.publish.assert_called_once()

    def test_mqtt_command_for_input_pin_is_ignored(self):
        system = self.make_system({"pins": [{"number": 4, "label": "Button", "direction": "in"}]})
        system.submit(SetOutput(4, 1, Origin.MQTT))
        system.process_pending()
        self.assertEqual(self.driver(system, 4).read(), 0)
        self.assertFalse(os.path.exists(self.state_file))

    def test_input_edge_is_broadcast_and_published(self):
        system = self.make_system({"pins": [{"number": 4, "label": "Button", "direction": "in"}]})
        ws = FakeWS()
        system.add_ws_client(ws)
        self.client.publish.reset_mock()

        body, status = system.mock_input({"number": 4, "value": 1})
        self.assertEqual(status, 200)
        system.process_pending()

        self.assertEqual(ws.deltas(), [{"type": "pin", "number": 4, "value": 1}])
        self.client.publish.assert_called_once_with("home/gpio/4/state", "ON", qos=0, retain=True)
        self.assertFalse(os.path.exists(self.state_file))

    def test_report_input_ignores_outputs_and_unknown_pins(self):
        system = self.make_system(LED_CONFIG)
        self.assertFalse(system.report_input(17, 1))
        self.assertFalse(system.report_input(3, 1))

    def test_stale_input_event_after_rebuild_is_dropped(self):
        system = self.make_system({"pins": [{"number": 4, "label": "Button", "direction": "in"}]})
        old_driver = self.driver(system, 4)
        old_driver.set_level(1)  # queued, not yet handled
        system.update_config({"pins": [{"number": 4, "direction": "out"}]})
        ws = FakeWS()
        system.add_ws_client(ws)
        system.process_pending()
        self.assertEqual(ws.deltas(), [])

    def test_mock_input_rejects_outputs(self):
        system = self.make_system(LED_CONFIG)
        body, status = system.mock_input({"number": 17})
        self.assertEqual(status, 400)
        body, status = system.mock_input({"number": "x"})
        self.assertEqual(status, 400)


class TestUpdateConfig(SystemTestCase):
    def test_pins_not_a_list_is_rejected(self):
        system = self.make_system()
        body, status = system.update_config({"pins": {"number": 17}})
        self.assertEqual(status, 400)
        self.assertIn("error", body)
        self.assertEqual(system.config, {"pins": []})
        self.assertEqual(len(system.registry), 0)
        self.assertFalse(os.path.exists(self.config_file))

    def test_rejection_keeps_previous_registry(self):
        system = self.make_system(LED_CONFIG)
        driver = self.driver(system, 17)
        body, status = system.update_config({"pins": [{"number": -1}]})
        self.assertEqual(status, 400)
        self.assertIs(self.driver(system, 17), driver)
        self.assertEqual(self.read_json(self.config_file), LED_CONFIG)

    def test_valid_config_is_normalised_saved_and_applied(self):
        system = self.make_system(LED_CONFIG, state={"22": 1})
        ws = FakeWS()
        system.add_ws_client(ws)

        body, status = system.update_config({"pins": [
            {"number": "22", "direction": "OUT"},
            {"number": 5, "label": "Door", "direction": "In"},
        ]})

        self.assertEqual(status, 200)
        expected = {"pins": [
            {"number": 22, "label": "GPIO 22", "direction": "out"},
            {"number": 5, "label": "Door", "direction": "in"},
        ]}
        self.assertEqual(body["config"], expected)
        self.assertEqual(self.read_json(self.config_file), expected)
        self.assertNotIn(17, system.registry)
        self.assertEqual(self.driver(system, 22).read(), 1)
        self.assertEqual(ws.snapshots()[-1]["state"], {"22": 1})
        self.assertEqual(ws.snapshots()[-1]["inputs"], {"5": 0})

    def test_save_failure_reports_500_but_applies(self):
        system = self.make_system(LED_CONFIG)
        with mock.patch.object(system.store, "save_config", side_effect=OSError("read-only")):
            body, status = system.update_config({"pins": [{"number": 27, "direction": "out"}]})
        self.assertEqual(status, 500)
        self.assertIn("read-only", body["details"])
        self.assertIn(27, system.registry)
        self.assertEqual(system.config["pins"][0]["number"], 27)


class TestLifecycle(SystemTestCase):
    def test_new_client_gets_snapshot(self):
        system = self.make_system(LED_CONFIG, state={"17": 1})
        ws = FakeWS()
        self.assertTrue(system.add_ws_client(ws))
        self.assertEqual(ws.messages, [{
            "type": "init",
            "config": LED_CONFIG,
            "state": {"17": 1},
            "inputs": {},
        }])

    def test_failing_client_is_dropped(self):
        system = self.make_system(LED_CONFIG)
        good, bad = FakeWS(), FakeWS()
        system.add_ws_client(good)
        system.add_ws_client(bad)
        bad.send = mock.Mock(side_effect=ConnectionError("gone"))
        system.apply_output(17, 1, Origin.UI)
        self.assertEqual(system.fanout.client_count(), 1)
        self.assertEqual(len(good.deltas()), 1)

    def test_run_and_stop(self):
        system = GreenSpringSystem(
            Settings(use_mock=True, mqtt_url="mqtt://broker:1884",
                     config_file=self.config_file, state_file=self.state_file),
            mqtt_client=self.client)
        self.write_json(self.config_file, LED_CONFIG)
        system.run()
        try:
            self.client.connect_async.assert_called_once_with("broker", 1884, keepalive=60)
            self.client.loop_start.assert_called_once()
            self.assertTrue(system.loop_thread.is_alive())
        finally:
            system.stop()
        self.assertFalse(system.loop_thread.is_alive())
        self.assertEqual(len(system.registry), 0)
        self.client.loop_stop.assert_called_once()

    def test_event_loop_thread_handles_events_in_order(self):
        system = GreenSpringSystem(
            Settings(use_mock=True, mqtt_url="mqtt://broker",
                     config_file=self.config_file, state_file=self.state_file),
            mqtt_client=self.client)
        self.write_json(self.config_file, LED_CONFIG)
        handle_event = system.handle_event

        def flaky_handle_event(event):
            if event.number == 99:
                raise RuntimeError("boom")
            handle_event(event)

        system.handle_event = flaky_handle_event
        system.run()
        ws = FakeWS()
        try:
            system.add_ws_client(ws)
            system.submit(SetOutput(17, 1, Origin.UI))
            system.submit(SetOutput(99, 1, Origin.UI))
            system.submit(SetOutput(17, 0, Origin.MQTT))
            system.submit(SetOutput(17, None, Origin.UI))
            deadline = time.time() + 5.0
            while len(ws.deltas()) < 3 and time.time() < deadline:
                time.sleep(0.01)
            self.assertTrue(system.loop_thread.is_alive())
        finally:
            system.stop()

        self.assertEqual([(m["number"], m["value"]) for m in ws.deltas()], [(17, 1), (17, 0), (17, 1)])
        self.assertEqual(self.read_json(self.state_file), {"17": 1})
        self.assertTrue(system.events.empty())


if __name__ == "__main__":
    unittest.main()
