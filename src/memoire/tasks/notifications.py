from celery import shared_task

from src.extensions import db
from src.utils.logging_config import get_logger
from ..workflow.notifications import store_notification

logger = get_logger(__name__)


@shared_task(bind=True, name='memoire.tasks.deliver_notification')
def deliver_notification(self, payload):
    """Write one inbox row from a serialized NotificationMessage."""
    try:
        notification = store_notification(payload)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.error(
            "Notification task failed",
            extra={"task_id": self.request.id, "recipient_id": payload.get('recipient_id'),
                   "title": payload.get('title')},
            exc_info=True,
        )
        raise
    logger.info("Notification delivered by worker",
                extra={"task_id": self.request.id, "notification_id": notification.id})
    return notification.id
