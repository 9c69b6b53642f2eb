# core/fanout.py
import json
import logging
import threading


def snapshot_message(config, state, inputs=None):
    return {"type": "init", "config": config, "state": state, "inputs": inputs or {}}


def delta_message(number, value):
    return {"type": "pin", "number": number, "value": value}


class Broadcaster:
    """Connected WebSocket sessions and the messages pushed to them."""

    def __init__(self):
        self.ws_clients = set()
        self.ws_lock = threading.Lock()
        self.broadcast_lock = threading.Lock()

    def add_client(self, ws):
        with self.ws_lock:
            self.ws_clients.add(ws)
            total = len(self.ws_clients)
        logging.info(f"[WS] Client connected. Total: {total}")

    def remove_client(self, ws):
        with self.ws_lock:
            if ws not in self.ws_clients:
                return
            self.ws_clients.discard(ws)
            total = len(self.ws_clients)
        logging.info(f"[WS] Client disconnected. Remaining: {total}")

    def client_count(self):
        with self.ws_lock:
            return len(self.ws_clients)

    def send(self, ws, message):
        """Send to one client; a client that fails is dropped."""
        try:
            ws.send(json.dumps(message))
            return True
        except Exception as e:
            logging.warning(f"[WS] Send failed, dropping client: {e}")
            self.remove_client(ws)
            return False

    def broadcast(self, message):
        msg = json.dumps(message)
        with self.ws_lock:
            clients_to_send = list(self.ws_clients)
        if not clients_to_send:
            return 0

        sent = 0
        with self.broadcast_lock:
            for client in clients_to_send:
                try:
                    client.send(msg)
                    sent += 1
                except Exception:
                    self.remove_client(client)
        return sent

    def broadcast_snapshot(self, config, state, inputs=None):
        return self.broadcast(snapshot_message(config, state, inputs))

    def broadcast_delta(self, number, value):
        return self.broadcast(delta_message(number, value))
