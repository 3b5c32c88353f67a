"""Helpers shared by the entity state machines."""
from sqlalchemy import select

from src.extensions import db
from ..models import AppRole, User
from .assignments import active_supervisor_of
from .errors import InvalidTransition, ValidationError
from .gate import Subject


def subject_for(kind, student_id, **extra):
    """Build the gate snapshot for an entity owned by ``student_id``."""
    student = db.session.get(User, student_id) if student_id is not None else None
    return Subject(
        kind=kind,
        student_id=student_id,
        student_department_id=student.department_id if student else None,
        active_supervisor_id=active_supervisor_of(student_id),
        **extra,
    )


def require_text(value, field):
    """Return the stripped text or raise ValidationError when it is blank."""
    text = (value or '').strip()
    if not text:
        raise ValidationError(f"{field} is required", field=field)
    return text


def coerce_enum(enum_cls, value, field):
    try:
        return enum_cls(getattr(value, 'value', value))
    except ValueError:
        allowed = ', '.join(m.value for m in enum_cls)
        raise ValidationError(f"{field} must be one of: {allowed}", field=field)


def require_status(entity, allowed, transition):
    """Raise InvalidTransition unless ``entity.status`` is one of ``allowed``."""
    if entity.status not in allowed:
        raise InvalidTransition(
            f"cannot {transition} a {type(entity).__name__.lower()} in status '{entity.status.value}'",
            current_status=entity.status.value,
        )


def department_head_ids(department_id):
    if department_id is None:
        return []
    return db.session.execute(
        select(User.id).where(User.role == AppRole.DEPARTMENT_HEAD.value, User.department_id == department_id)
    ).scalars().all()
