# threads/event_loop.py
import queue
import logging


def start_event_loop_thread(system):
    """Handle queued events (UI, MQTT, input edges) one at a time, in arrival order."""
    logging.info("[EVENTS] Event loop running.")
    while system.main_loop_running:
        try:
            event = system.events.get(timeout=0.5)
        except queue.Empty:
            continue
        if event is None:  # stop sentinel
            break
        try:
            system.handle_event(event)
        except Exception as e:
            logging.error(f"[EVENTS] Error handling {event!r}: {e}", exc_info=True)
    logging.info("[EVENTS] Event loop stopped.")
