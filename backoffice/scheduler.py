import atexit
import logging

from apscheduler.schedulers.background import BackgroundScheduler

from backoffice.extensions import db
from backoffice.services.reminders import dispatch_due_reminders
from backoffice.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def init_scheduler(app):
    """Start the background scheduler with the reminder sweep registered."""
    minutes = int(app.config.get("REMINDER_POLL_MINUTES", 5))

    def send_due_reminders():
        """Send every appointment reminder that has come due."""
        current_time_str = utcnow().strftime("%Y-%m-%d %H:%M:%S")
        with app.app_context():
            try:
                sent = dispatch_due_reminders()
                if sent:
                    logger.info("[SCHEDULER] %s - Sent %d reminder(s)", current_time_str, sent)
                else:
                    logger.debug("[SCHEDULER] %s - No reminders due", current_time_str)
            except Exception:
                logger.exception("[SCHEDULER] %s - Error sending reminders", current_time_str)
                db.session.rollback()

    scheduler.add_job(
        send_due_reminders,
        "interval",
        minutes=minutes,
        id="send_due_reminders",
        replace_existing=True,
    )

    if not scheduler.running:
        scheduler.start()
        logger.info("[SCHEDULER] Scheduler started")
    else:
        logger.info("[SCHEDULER] Scheduler already running (skipping duplicate start)")

    atexit.register(lambda: scheduler.shutdown(wait=False) if scheduler.running else None)
    return scheduler
