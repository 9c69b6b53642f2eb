# app.py
import json
import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask, render_template, jsonify, request
from flask_sock import Sock

from core.settings import TEMPLATES_DIR, settings_from_env
from core.system import GreenSpringSystem


# ==================================================
# LOGGING
# ==================================================
def setup_logging(log_file):
    os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
    handler = RotatingFileHandler(log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
    logging.basicConfig(
        handlers=[handler, logging.StreamHandler()],
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] (%(threadName)s) %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    logging.info("[SYSTEM] Log system initialized ✅")


# ==================================================
# FLASK APP
# ==================================================
def create_app(system: GreenSpringSystem) -> Flask:
    app = Flask(__name__, template_folder=TEMPLATES_DIR)
    sock = Sock(app)

    @app.route('/')
    def index():
        return render_template('index.html', prefix=system.settings.mqtt_prefix, is_mock=system.is_mock)

    @app.route('/api/config', methods=['GET'])
    def get_config():
        return jsonify(system.get_config_for_json())

    @app.route('/api/config', methods=['POST'])
    def post_config():
        response_data, status_code = system.update_config(request.get_json(silent=True))
        return jsonify(response_data), status_code

    @app.route('/api/state')
    def get_state():
        outputs, inputs = system.get_current_state()
        return jsonify({"state": outputs, "inputs": inputs})

    @app.route('/api/mock_gpio', methods=['POST'])
    def api_mock_gpio():
        payload = request.get_json(silent=True) or {}
        response_data, status_code = system.mock_input(payload)
        return jsonify(response_data), status_code

    @sock.route('/ws')
    def ws_route(ws):
        client_label = f"{request.remote_addr}-{id(ws):x}"
        if not system.add_ws_client(ws):
            return

        try:
            while True:
                message = ws.receive()
                if message:
                    try:
                        system.handle_ws_message(json.loads(message), client_label)
                    except json.JSONDecodeError:
                        logging.warning(f"[WS] {client_label}: message is not JSON")
                    except Exception as ws_loop_e:
                        logging.error(f"[WS] Error handling message: {ws_loop_e}")
        except Exception as ws_conn_e:
            logging.info(f"[WS] Connection closed: {ws_conn_e}")
        finally:
            system.remove_ws_client(ws)

    return app


# ==================================================
# ENTRY POINT
# ==================================================
def main():
    settings = settings_from_env()
    setup_logging(settings.log_file)
    logging.info(f"[PATH] CONFIG_FILE: {settings.config_file}")
    logging.info(f"[PATH] STATE_FILE: {settings.state_file}")

    system = GreenSpringSystem(settings)
    app = create_app(system)
    try:
        system.run()
        logging.info("=========================================")
        logging.info(f"    GreenSpring on http://0.0.0.0:{settings.port}")
        logging.info(f"    GPIO Mode: {'MOCK' if system.is_mock else 'REAL'}")
        logging.info(f"    MQTT: {settings.mqtt_url or 'disabled'}")
        logging.info("=========================================")
        app.run(host='0.0.0.0', port=settings.port, debug=False, use_reloader=False, threaded=True)
    except KeyboardInterrupt:
        logging.info("[MAIN] Stopping (Ctrl+C)...")
    except Exception as main_e:
        logging.critical(f"[CRITICAL] Startup failed: {main_e}", exc_info=True)
    finally:
        system.stop()


if __name__ == "__main__":
    main()
