# In-app notification feed for the back office
import logging

from backoffice.extensions import db
from backoffice.models import Notification

logger = logging.getLogger(__name__)


def notify(tenant_id, notification_type, title, message, data=None, category="info"):
    """Write one notification row; failures are logged and never raised."""
    try:
        notification = Notification(
            tenant_id=tenant_id,
            type=notification_type,
            category=category,
            title=title,
            message=message,
            data=data or {},
        )
        db.session.add(notification)
        db.session.commit()
        return notification
    except Exception as e:
        db.session.rollback()
        logger.error("Failed to create notification for tenant %s: %s", tenant_id, e)
        return None


def notify_appointment(tenant_id, title, message, data=None):
    return notify(tenant_id, "appointment", title, message, data)


def notify_appointment_cancelled(tenant_id, title, message, data=None):
    return notify(tenant_id, "appointment", title, message, data, category="warning")


def notify_pos(tenant_id, title, message, data=None):
    return notify(tenant_id, "pos", title, message, data, category="success")
