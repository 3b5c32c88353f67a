"""Assignment resolver: who is the active supervisor of a student."""
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from src.extensions import db
from src.utils.datetime_utils import now_utc
from src.utils.db_tracking import track_transition
from src.utils.logging_config import get_logger
from ..models import AppRole, SupervisorAssignment, Theme, ThemeStatus, User
from .errors import ConflictingUpdate, NotFound, ValidationError
from .gate import EntityKind, Subject, Transition, ensure_allowed
from .notifications import Outbox
from .store import transaction

logger = get_logger(__name__)

# Themes that still follow the student's current supervisor
OPEN_THEME_STATUSES = (ThemeStatus.PENDING, ThemeStatus.REVISION_REQUESTED, ThemeStatus.APPROVED)


def get_active_assignment(student_id):
    return db.session.execute(
        select(SupervisorAssignment).where(
            SupervisorAssignment.student_id == student_id,
            SupervisorAssignment.is_active.is_(True),
        )
    ).scalar_one_or_none()


def active_supervisor_of(student_id):
    if student_id is None:
        return None
    return db.session.execute(
        select(SupervisorAssignment.supervisor_id).where(
            SupervisorAssignment.student_id == student_id,
            SupervisorAssignment.is_active.is_(True),
        )
    ).scalar_one_or_none()


def user_with_role(user_id, role, label):
    user = db.session.get(User, user_id) if user_id is not None else None
    if user is None:
        raise NotFound(f"{label} {user_id} not found")
    if user.role != role.value:
        raise ValidationError(f"user {user_id} is not a {role.value}")
    return user


def assign_supervisor(actor, student_id, supervisor_id, notes=None):
    """Make ``supervisor_id`` the single active supervisor of ``student_id``.

    The previous active row is deactivated and the new one inserted in the
    same transaction, so a concurrent reader sees either the old binding or
    the new one, never zero or two.
    """
    student = user_with_role(student_id, AppRole.STUDENT, "Student")
    supervisor = user_with_role(supervisor_id, AppRole.SUPERVISOR, "Supervisor")
    ensure_allowed(
        actor,
        Subject(kind=EntityKind.SUPERVISOR_ASSIGNMENT, student_id=student.id,
                student_department_id=student.department_id),
        Transition.ASSIGN,
    )

    previous_id = active_supervisor_of(student.id)
    outbox = Outbox()
    try:
        with transaction():
            db.session.execute(
                update(SupervisorAssignment)
                .where(SupervisorAssignment.student_id == student.id, SupervisorAssignment.is_active.is_(True))
                .values(is_active=False, updated_at=now_utc())
                .execution_options(synchronize_session=False)
            )
            assignment = SupervisorAssignment(
                student_id=student.id,
                supervisor_id=supervisor.id,
                assigned_by=actor.id,
                notes=notes,
                is_active=True,
            )
            db.session.add(assignment)
            db.session.flush()
            db.session.execute(
                update(Theme)
                .where(Theme.student_id == student.id, Theme.status.in_(OPEN_THEME_STATUSES))
                .values(supervisor_id=supervisor.id)
                .execution_options(synchronize_session=False)
            )
            track_transition(actor, 'assign_supervisor', EntityKind.SUPERVISOR_ASSIGNMENT, assignment.id,
                             student_id=student.id, previous_supervisor_id=previous_id,
                             supervisor_id=supervisor.id)
            outbox.add(student.id, "Supervisor assigned",
                       f"{supervisor.full_name} is now supervising your thesis.",
                       related_entity=(EntityKind.SUPERVISOR_ASSIGNMENT, assignment.id))
            outbox.add(supervisor.id, "New student assigned",
                       f"{student.full_name} has been assigned to you for supervision.",
                       related_entity=(EntityKind.SUPERVISOR_ASSIGNMENT, assignment.id))
    except (IntegrityError, OperationalError) as exc:
        # Another swap for the same student committed first, or held the SQLite lock past the timeout
        logger.warning(
            "Supervisor assignment collided",
            extra={"student_id": student.id, "supervisor_id": supervisor.id, "assigned_by": actor.id},
        )
        raise ConflictingUpdate(student_id=student.id) from exc

    logger.info(
        "Supervisor assigned",
        extra={"student_id": student.id, "supervisor_id": supervisor.id,
               "previous_supervisor_id": previous_id, "assigned_by": actor.id},
    )
    outbox.release()
    return assignment
