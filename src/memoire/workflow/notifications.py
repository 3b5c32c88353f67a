"""
Notification dispatcher.

Workflow operations never talk to a transport directly. While a transition
runs they stage messages in an :class:`Outbox`. Once the transaction has
committed, the outbox hands the messages to the application's
:class:`NotificationDispatcher`.

Delivery is best-effort. A transport failure is logged and swallowed, so a
committed transition is never reported as failed because of its
notifications. Duplicates are tolerated.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import List, Optional

from flask import current_app
from sqlalchemy import select

from src.extensions import db
from src.utils.datetime_utils import now_utc
from src.utils.logging_config import get_logger
from ..models import Notification, NotificationSeverity
from .errors import NotFound, Unauthorized, ValidationError

logger = get_logger(__name__)

EXTENSION_KEY = 'notification_dispatcher'


@dataclass(frozen=True)
class NotificationMessage:
    recipient_id: int
    title: str
    message: str
    severity: str = NotificationSeverity.INFO.value
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None

    def to_payload(self) -> dict:
        return asdict(self)


def make_message(recipient_id, title, message, severity=NotificationSeverity.INFO, related_entity=None):
    """``related_entity`` is an ``(entity kind, entity id)`` pair or None."""
    entity_type, entity_id = related_entity if related_entity else (None, None)
    return NotificationMessage(
        recipient_id=recipient_id,
        title=title,
        message=message,
        severity=getattr(severity, 'value', severity),
        related_entity_type=getattr(entity_type, 'value', entity_type),
        related_entity_id=None if entity_id is None else str(entity_id),
    )


class DatabaseTransport:
    """Writes the message straight into the recipient's inbox table."""
    name = 'database'

    def deliver(self, message: NotificationMessage) -> None:
        try:
            store_notification(message.to_payload())
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


class CeleryTransport:
    """Queues delivery on a Celery worker, off the request path."""
    name = 'celery'

    def deliver(self, message: NotificationMessage) -> None:
        from ..tasks.notifications import deliver_notification
        deliver_notification.delay(message.to_payload())


class NullTransport:
    name = 'null'

    def deliver(self, message: NotificationMessage) -> None:
        logger.info("Notification not delivered (null transport)", extra={"recipient_id": message.recipient_id,
                                                                           "title": message.title})


TRANSPORTS = {
    DatabaseTransport.name: DatabaseTransport,
    CeleryTransport.name: CeleryTransport,
    NullTransport.name: NullTransport,
}


def build_transport(name: str):
    try:
        return TRANSPORTS[name]()
    except KeyError:
        raise RuntimeError(f"Unknown NOTIFICATION_TRANSPORT '{name}' (expected one of {sorted(TRANSPORTS)})")


def store_notification(payload: dict) -> Notification:
    """Stage an inbox row from a serialized message (shared with the Celery task)."""
    notification = Notification(
        user_id=payload['recipient_id'],
        title=payload['title'],
        message=payload['message'],
        severity=NotificationSeverity(payload.get('severity') or NotificationSeverity.INFO.value),
        related_entity_type=payload.get('related_entity_type'),
        related_entity_id=payload.get('related_entity_id'),
    )
    db.session.add(notification)
    return notification


class NotificationDispatcher:
    def __init__(self, transport):
        self.transport = transport

    def notify(self, recipient_id, title, message, severity=NotificationSeverity.INFO, related_entity=None) -> bool:
        """Deliver one message; returns False (and logs) instead of raising on failure."""
        return self.send(make_message(recipient_id, title, message, severity, related_entity))

    def send(self, msg: NotificationMessage) -> bool:
        try:
            self.transport.deliver(msg)
        except Exception:
            logger.error(
                "Notification delivery failed",
                extra={"recipient_id": msg.recipient_id, "title": msg.title,
                       "related_entity_type": msg.related_entity_type,
                       "related_entity_id": msg.related_entity_id,
                       "transport": getattr(self.transport, 'name', type(self.transport).__name__)},
                exc_info=True,
            )
            return False
        return True

    def dispatch(self, messages) -> int:
        return sum(1 for msg in messages if self.send(msg))


def get_dispatcher() -> NotificationDispatcher:
    return current_app.extensions[EXTENSION_KEY]


class Outbox:
    """Messages staged during a transition, released only after commit."""

    def __init__(self):
        self.messages: List[NotificationMessage] = []

    def add(self, recipient_id, title, message, severity=NotificationSeverity.INFO, related_entity=None):
        if recipient_id is None:
            return
        self.messages.append(make_message(recipient_id, title, message, severity, related_entity))

    def release(self) -> int:
        if not self.messages:
            return 0
        messages, self.messages = self.messages, []
        return get_dispatcher().dispatch(messages)


# ------------------------------------------------------------------------------
# Inbox
# ------------------------------------------------------------------------------

def list_notifications(actor, unread_only=False):
    stmt = select(Notification).where(Notification.user_id == actor.id)
    if unread_only:
        stmt = stmt.where(Notification.read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc())
    return db.session.execute(stmt).scalars().all()


def mark_notification_read(actor, notification_id):
    if not notification_id:
        raise ValidationError("notification_id is required")
    notification = db.session.get(Notification, notification_id)
    if notification is None:
        raise NotFound(f"Notification {notification_id} not found")
    if notification.user_id != actor.id:
        raise Unauthorized("notifications can only be acknowledged by their recipient")
    if not notification.read:
        notification.read = True
        notification.read_at = now_utc()
        db.session.commit()
    return notification
