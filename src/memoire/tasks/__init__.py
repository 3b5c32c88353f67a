from .notifications import deliver_notification
