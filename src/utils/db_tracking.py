from datetime import datetime, date
import enum

from ..extensions import db


def sanitize(obj):
    """Convert values into JSON-serializable forms for the ``details`` column."""
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {k: sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [sanitize(item) for item in obj]
    # SQLAlchemy model instance → use its id if available, else string
    if hasattr(obj, 'id'):
        return getattr(obj, 'id')
    return str(obj)


def track_transition(actor, action, entity_type, entity_id, **details):
    """Stage an ActivityLog row in the current transaction.

    The row commits or rolls back together with the transition it describes,
    so the audit trail never records a change that did not happen.
    """
    from ..memoire.models import ActivityLog

    entry = ActivityLog(
        user_id=getattr(actor, 'id', None),
        action=action,
        entity_type=getattr(entity_type, 'value', entity_type),
        entity_id=None if entity_id is None else str(entity_id),
        details=sanitize(details) or None,
    )
    db.session.add(entry)
    return entry
