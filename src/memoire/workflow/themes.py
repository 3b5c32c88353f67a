"""
Theme state machine.

    pending ──review──► approved ──jury──► locked
       │  ├──review──► rejected
       │  └──review──► revision_requested ──resubmit──► pending
       ▲
    submit

``rejected`` and ``locked`` are terminal. A rejected theme is superseded by a
new submission carrying ``version + 1``.
"""
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from src.extensions import db
from src.utils.datetime_utils import now_utc
from src.utils.db_tracking import track_transition
from src.utils.logging_config import get_logger, transition_context
from ..models import AppRole, NotificationSeverity, Theme, ThemeStatus
from .assignments import user_with_role
from .base import coerce_enum, require_status, require_text, subject_for
from .errors import InvalidTransition
from .gate import EntityKind, Transition, ensure_allowed
from .notifications import Outbox
from .store import compare_and_set, get_or_404, refreshed, transaction

logger = get_logger(__name__)

REVIEW_OUTCOMES = {
    ThemeStatus.APPROVED: ("Theme approved", "Your theme \"{title}\" has been approved.", NotificationSeverity.SUCCESS),
    ThemeStatus.REJECTED: ("Theme rejected", "Your theme \"{title}\" has been rejected: {notes}", NotificationSeverity.WARNING),
    ThemeStatus.REVISION_REQUESTED: (
        "Theme needs revision",
        "Your theme \"{title}\" needs revision: {notes}",
        NotificationSeverity.WARNING,
    ),
}


def _log(theme_id, actor, from_status, to_status):
    logger.info("Theme transition", extra=transition_context("theme_id", theme_id, actor, from_status, to_status))


def get_theme(actor, theme_id):
    theme = get_or_404(Theme, theme_id, "Theme")
    ensure_allowed(actor, subject_for(EntityKind.THEME, theme.student_id), Transition.VIEW)
    return theme


def themes_of_student(student_id):
    return db.session.execute(
        select(Theme).where(Theme.student_id == student_id).order_by(Theme.version.desc())
    ).scalars().all()


def submit_theme(actor, title, description, objectives=None, methodology=None, student_id=None):
    """Create a ``pending`` theme for the student (the actor, unless an admin submits on their behalf)."""
    student = user_with_role(student_id if student_id is not None else actor.id, AppRole.STUDENT, "Student")
    student_id = student.id
    subject = subject_for(EntityKind.THEME, student_id)
    ensure_allowed(actor, subject, Transition.SUBMIT)
    title = require_text(title, 'title')
    description = require_text(description, 'description')

    history = themes_of_student(student_id)
    if any(t.status is not ThemeStatus.REJECTED for t in history):
        raise InvalidTransition("the student already has a theme in progress")
    previous = history[0] if history else None

    outbox = Outbox()
    try:
        with transaction():
            theme = Theme(
                student_id=student_id,
                supervisor_id=subject.active_supervisor_id,
                title=title,
                description=description,
                objectives=objectives,
                methodology=methodology,
                status=ThemeStatus.PENDING,
                submitted_at=now_utc(),
                version=previous.version + 1 if previous else 1,
                previous_version_id=previous.id if previous else None,
            )
            db.session.add(theme)
            db.session.flush()
            track_transition(actor, 'submit_theme', EntityKind.THEME, theme.id, to=ThemeStatus.PENDING)
            related = (EntityKind.THEME, theme.id)
            outbox.add(student_id, "Theme submitted",
                       f"Your theme \"{title}\" was submitted and is pending review.", related_entity=related)
            outbox.add(subject.active_supervisor_id, "New theme to review",
                       f"A theme \"{title}\" is waiting for your review.", related_entity=related)
    except IntegrityError as exc:
        # Lost against a concurrent submission for the same student
        raise InvalidTransition("the student already has a theme in progress") from exc

    _log(theme.id, actor, None, ThemeStatus.PENDING)
    outbox.release()
    return theme


def review_theme(actor, theme_id, decision, notes=None):
    theme = get_or_404(Theme, theme_id, "Theme")
    subject = subject_for(EntityKind.THEME, theme.student_id)
    ensure_allowed(actor, subject, Transition.REVIEW)

    target = coerce_enum(ThemeStatus, decision, 'decision')
    if target not in REVIEW_OUTCOMES:
        raise InvalidTransition(f"a review cannot move a theme to '{target.value}'")
    require_status(theme, {ThemeStatus.PENDING}, 'review')

    values = {
        'status': target,
        'reviewed_at': now_utc(),
        'reviewed_by': actor.id,
        'rejection_reason': None,
        'revision_notes': None,
        'supervisor_id': subject.active_supervisor_id or theme.supervisor_id,
    }
    if target is ThemeStatus.REJECTED:
        notes = values['rejection_reason'] = require_text(notes, 'rejection_reason')
    elif target is ThemeStatus.REVISION_REQUESTED:
        notes = values['revision_notes'] = require_text(notes, 'revision_notes')

    title, message, severity = REVIEW_OUTCOMES[target]
    outbox = Outbox()
    with transaction():
        compare_and_set(Theme, theme.id, ThemeStatus.PENDING, values)
        track_transition(actor, 'review_theme', EntityKind.THEME, theme.id,
                         **{'from': ThemeStatus.PENDING, 'to': target, 'notes': notes})
        outbox.add(theme.student_id, title, message.format(title=theme.title, notes=notes),
                   severity=severity, related_entity=(EntityKind.THEME, theme.id))

    _log(theme.id, actor, ThemeStatus.PENDING, target)
    outbox.release()
    return refreshed(theme)


def resubmit_theme(actor, theme_id, title=None, description=None, objectives=None, methodology=None):
    """Send a theme back to review after revision; clears the old revision notes."""
    theme = get_or_404(Theme, theme_id, "Theme")
    subject = subject_for(EntityKind.THEME, theme.student_id)
    ensure_allowed(actor, subject, Transition.RESUBMIT)
    require_status(theme, {ThemeStatus.REVISION_REQUESTED}, 'resubmit')

    values = {
        'status': ThemeStatus.PENDING,
        'revision_notes': None,
        'submitted_at': now_utc(),
    }
    if title is not None:
        values['title'] = require_text(title, 'title')
    if description is not None:
        values['description'] = require_text(description, 'description')
    if objectives is not None:
        values['objectives'] = objectives
    if methodology is not None:
        values['methodology'] = methodology

    outbox = Outbox()
    with transaction():
        compare_and_set(Theme, theme.id, ThemeStatus.REVISION_REQUESTED, values)
        track_transition(actor, 'resubmit_theme', EntityKind.THEME, theme.id,
                         **{'from': ThemeStatus.REVISION_REQUESTED, 'to': ThemeStatus.PENDING})
        related = (EntityKind.THEME, theme.id)
        new_title = values.get('title', theme.title)
        outbox.add(theme.student_id, "Theme resubmitted",
                   f"Your revised theme \"{new_title}\" is pending review again.", related_entity=related)
        outbox.add(subject.active_supervisor_id, "Revised theme to review",
                   f"The theme \"{new_title}\" was revised and awaits your review.", related_entity=related)

    _log(theme.id, actor, ThemeStatus.REVISION_REQUESTED, ThemeStatus.PENDING)
    outbox.release()
    return refreshed(theme)


def lock_theme(actor, theme, outbox):
    """approved -> locked; only called by the jury finalization, inside its transaction."""
    require_status(theme, {ThemeStatus.APPROVED, ThemeStatus.LOCKED}, 'lock')
    if theme.status is ThemeStatus.LOCKED:
        return
    compare_and_set(Theme, theme.id, ThemeStatus.APPROVED, {'status': ThemeStatus.LOCKED})
    track_transition(actor, 'lock_theme', EntityKind.THEME, theme.id,
                     **{'from': ThemeStatus.APPROVED, 'to': ThemeStatus.LOCKED})
    outbox.add(theme.student_id, "Theme locked",
               f"Your theme \"{theme.title}\" is now final following the jury decision.",
               related_entity=(EntityKind.THEME, theme.id))
    _log(theme.id, actor, ThemeStatus.APPROVED, ThemeStatus.LOCKED)
