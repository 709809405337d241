"""
Outbound domain events.

Services call `event_bus.emit(name, payload)` after their transaction has
committed. Handlers run on the background scheduler's thread pool when it is
running and inline otherwise; either way a failing handler is logged and never
reaches the caller.
"""

import logging
from collections import defaultdict

logger = logging.getLogger(__name__)

APPOINTMENT_CREATED = "appointment.created"
APPOINTMENT_CANCELLED = "appointment.cancelled"
APPOINTMENT_RESCHEDULED = "appointment.rescheduled"
APPOINTMENT_STATUS_CHANGED = "appointment.status_changed"
APPOINTMENT_CHECKED_OUT = "appointment.checked_out"
INVOICE_SETTLED = "invoice.settled"


class EventBus:
    def __init__(self):
        self._handlers = defaultdict(list)
        self._app = None
        self._scheduler = None

    def init_app(self, app, scheduler=None):
        self._app = app
        self._scheduler = scheduler
        app.extensions["event_bus"] = self

    def subscribe(self, event_name, handler):
        if handler not in self._handlers[event_name]:
            self._handlers[event_name].append(handler)

    def clear(self):
        self._handlers.clear()

    def emit(self, event_name, payload):
        for handler in list(self._handlers.get(event_name, ())):
            try:
                if self._scheduler is not None and self._scheduler.running:
                    self._scheduler.add_job(
                        self._run_handler, args=[handler, event_name, payload]
                    )
                else:
                    self._run_handler(handler, event_name, payload)
            except Exception:
                logger.exception("Could not dispatch %s to %s", event_name, handler)

    def _run_handler(self, handler, event_name, payload):
        try:
            if self._app is None:
                handler(payload)
                return
            with self._app.app_context():
                handler(payload)
        except Exception:
            logger.exception("Handler %s failed for %s", handler.__name__, event_name)


event_bus = EventBus()
