"""Transactional helpers shared by every state machine.

All status changes go through :func:`compare_and_set`: a single UPDATE whose
WHERE clause pins the expected pre-state. Zero affected rows means another
request moved the entity first, and the caller gets ``ConflictingUpdate``
instead of silently overwriting that transition.
"""
from contextlib import contextmanager
import time

from sqlalchemy import update, select
from sqlalchemy.exc import IntegrityError, OperationalError

from src.extensions import db
from src.config import env
from src.config.constants import PLAGIARISM_THRESHOLD_KEY
from src.utils.datetime_utils import now_utc
from src.utils.logging_config import get_logger
from ..models import DocumentVersionCounter, SystemSetting
from .errors import ConflictingUpdate, NotFound

logger = get_logger(__name__)


@contextmanager
def transaction():
    """Commit the session on success; roll it back and re-raise on any error."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def get_or_404(model, entity_id, label=None):
    entity = db.session.get(model, entity_id) if entity_id is not None else None
    if entity is None:
        raise NotFound(f"{label or model.__name__} {entity_id} not found")
    return entity


def compare_and_set(model, entity_id, expected, values, *conditions, status_attr='status'):
    """Apply ``values`` only if the row still has one of the ``expected`` statuses.

    ``conditions`` are extra WHERE clauses re-evaluated in the same statement
    (e.g. a validation flag that must still hold). ``status_attr`` names the
    status column when it is not called ``status``.
    """
    expected = tuple(expected) if isinstance(expected, (list, tuple, set, frozenset)) else (expected,)
    stmt = (
        update(model)
        .where(model.id == entity_id, getattr(model, status_attr).in_(expected), *conditions)
        .values(updated_at=now_utc(), **values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        logger.warning(
            "Conditional update lost a race",
            extra={"entity_type": model.__tablename__, "entity_id": entity_id,
                   "expected": [getattr(e, 'value', e) for e in expected]},
        )
        raise ConflictingUpdate(entity_id=entity_id)
    return result.rowcount


def refreshed(entity):
    """Reload an instance whose row was changed by a Core UPDATE."""
    db.session.refresh(entity)
    return entity


def _bump_counter(theme_id, document_type):
    """Increment the per-(theme, type) counter; the UPDATE is the transaction's first write."""
    result = db.session.execute(
        update(DocumentVersionCounter)
        .where(
            DocumentVersionCounter.theme_id == theme_id,
            DocumentVersionCounter.document_type == document_type,
        )
        .values(last_version=DocumentVersionCounter.last_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # First version for this pair; a concurrent twin insert fails on the primary key
        db.session.add(DocumentVersionCounter(theme_id=theme_id, document_type=document_type, last_version=1))
        db.session.flush()
        return 1
    return db.session.execute(
        select(DocumentVersionCounter.last_version).where(
            DocumentVersionCounter.theme_id == theme_id,
            DocumentVersionCounter.document_type == document_type,
        )
    ).scalar_one()


def with_allocated_version(theme_id, document_type, build):
    """Run ``build(version)`` inside a transaction that owns a fresh version number.

    Retries from scratch when the allocation collides with a concurrent
    submission (primary key / unique violation, or a busy SQLite file).
    """
    attempts = max(1, env.VERSION_ALLOCATION_RETRIES)
    for attempt in range(1, attempts + 1):
        try:
            with transaction():
                version = _bump_counter(theme_id, document_type)
                return build(version)
        except (IntegrityError, OperationalError) as exc:
            if attempt == attempts:
                logger.error(
                    "Version allocation failed",
                    extra={"theme_id": theme_id, "document_type": getattr(document_type, 'value', document_type),
                           "attempts": attempts},
                    exc_info=True,
                )
                raise ConflictingUpdate(theme_id=theme_id) from exc
            logger.info(
                "Version allocation collided, retrying",
                extra={"theme_id": theme_id, "attempt": attempt},
            )
            time.sleep(0.01 * attempt)


def get_setting(key, default=None):
    setting = db.session.get(SystemSetting, key)
    return setting.value if setting else default


def current_plagiarism_threshold():
    value = get_setting(PLAGIARISM_THRESHOLD_KEY)
    return float(value) if value is not None else env.DEFAULT_PLAGIARISM_THRESHOLD


def put_setting(key, value, updated_by=None, description=None):
    setting = db.session.get(SystemSetting, key)
    if setting is None:
        setting = SystemSetting(key=key, value=str(value), description=description, updated_by=updated_by)
        db.session.add(setting)
    else:
        setting.value = str(value)
        setting.updated_by = updated_by
    return setting
