"""
Jury deliberation.

A theme has at most one JuryDecision. It may be edited while its verdict is
``pending``; recording a final verdict freezes it and locks the theme in the
same transaction.
"""
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from src.extensions import db
from src.config.constants import MAX_GRADE, MIN_GRADE
from src.utils.datetime_utils import now_utc
from src.utils.db_tracking import track_transition
from src.utils.logging_config import get_logger
from ..models import JuryDecision, JuryVerdict, NotificationSeverity, Theme, ThemeStatus
from .base import coerce_enum, subject_for
from .documents import final_document_ready
from .errors import ConflictingUpdate, InvalidTransition, PreconditionNotMet, Unauthorized, ValidationError
from .gate import EntityKind, Transition, ensure_allowed
from .notifications import Outbox
from .store import compare_and_set, get_or_404, refreshed, transaction
from .themes import lock_theme

logger = get_logger(__name__)

DECISION_FIELDS = (
    'grade', 'mention', 'defense_date', 'corrections_deadline',
    'corrections_description', 'deliberation_notes',
)

_VERDICT_MESSAGES = {
    JuryVerdict.APPROVED: ("Thesis approved by the jury", NotificationSeverity.SUCCESS),
    JuryVerdict.CORRECTIONS_REQUIRED: ("Corrections required by the jury", NotificationSeverity.WARNING),
    JuryVerdict.REJECTED: ("Thesis rejected by the jury", NotificationSeverity.ERROR),
}


def _subject(theme):
    return subject_for(
        EntityKind.JURY_DECISION, theme.student_id,
        theme_status=theme.status.value,
        final_document_ready=final_document_ready(theme.id),
    )


def decision_for_theme(theme_id):
    return db.session.execute(
        select(JuryDecision).where(JuryDecision.theme_id == theme_id)
    ).scalar_one_or_none()


def get_jury_decision(actor, decision_id):
    decision = get_or_404(JuryDecision, decision_id, "Jury decision")
    theme = get_or_404(Theme, decision.theme_id, "Theme")
    ensure_allowed(actor, subject_for(EntityKind.JURY_DECISION, theme.student_id), Transition.VIEW)
    return decision


def _check_grade(grade):
    if grade is None:
        return None
    try:
        grade = float(grade)
    except (TypeError, ValueError):
        raise ValidationError("grade must be a number", field='grade')
    if not MIN_GRADE <= grade <= MAX_GRADE:
        raise ValidationError(f"grade must be between {MIN_GRADE:g} and {MAX_GRADE:g}", field='grade')
    return grade


def record_jury_decision(actor, theme_id, decision, **fields):
    """Create or update the theme's decision while it is still ``pending``.

    Any other verdict is final: ``decided_at``/``decided_by`` are stamped and
    the theme moves ``approved -> locked``.
    """
    theme = get_or_404(Theme, theme_id, "Theme")
    subject = _subject(theme)
    ensure_allowed(actor, subject, Transition.RECORD_DECISION)
    if theme.status not in (ThemeStatus.APPROVED, ThemeStatus.LOCKED):
        raise PreconditionNotMet("the jury can only decide on an approved theme", theme_status=theme.status.value)

    verdict = coerce_enum(JuryVerdict, decision, 'decision')
    values = {k: v for k, v in fields.items() if k in DECISION_FIELDS}
    if 'grade' in values:
        values['grade'] = _check_grade(values['grade'])
    values['decision'] = verdict
    values['corrections_required'] = verdict is JuryVerdict.CORRECTIONS_REQUIRED
    is_final = verdict is not JuryVerdict.PENDING
    if is_final:
        values['decided_at'] = now_utc()
        values['decided_by'] = actor.id

    existing = decision_for_theme(theme.id)
    if existing is not None and existing.decision is not JuryVerdict.PENDING:
        raise InvalidTransition("the jury decision is final", current_status=existing.decision.value)

    outbox = Outbox()
    try:
        with transaction():
            if existing is None:
                record = JuryDecision(theme_id=theme.id, student_id=theme.student_id, **values)
                db.session.add(record)
                db.session.flush()
            else:
                record = existing
                compare_and_set(JuryDecision, record.id, JuryVerdict.PENDING, values, status_attr='decision')
            track_transition(actor, 'record_jury_decision', EntityKind.JURY_DECISION, record.id,
                             theme_id=theme.id, decision=verdict, grade=values.get('grade'))
            if is_final:
                lock_theme(actor, theme, outbox)
                title, severity = _VERDICT_MESSAGES[verdict]
                message = f"The jury recorded its decision on \"{theme.title}\": {verdict.value.replace('_', ' ')}."
                related = (EntityKind.JURY_DECISION, record.id)
                outbox.add(theme.student_id, title, message, severity=severity, related_entity=related)
                outbox.add(subject.active_supervisor_id, title, message, severity=severity, related_entity=related)
    except IntegrityError as exc:
        # Another jury member created the decision first
        raise ConflictingUpdate(theme_id=theme.id) from exc

    logger.info(
        "Jury decision recorded",
        extra={"decision_id": record.id, "theme_id": theme.id, "actor_id": actor.id,
               "decision": verdict.value, "final": is_final},
    )
    outbox.release()
    return refreshed(record)


def validate_corrections(actor, decision_id, validator_id=None):
    """Mark the requested corrections as done; a no-op when already validated."""
    record = get_or_404(JuryDecision, decision_id, "Jury decision")
    theme = get_or_404(Theme, record.theme_id, "Theme")
    ensure_allowed(actor, _subject(theme), Transition.VALIDATE_CORRECTIONS)

    validator_id = actor.id if validator_id is None else validator_id
    if validator_id != actor.id and not actor.is_admin:
        raise Unauthorized("corrections can only be validated in your own name")
    if record.decision is not JuryVerdict.CORRECTIONS_REQUIRED:
        raise PreconditionNotMet("this decision does not require corrections", decision=record.decision.value)
    if record.corrections_completed:
        return record

    outbox = Outbox()
    try:
        with transaction():
            compare_and_set(
                JuryDecision, record.id, JuryVerdict.CORRECTIONS_REQUIRED,
                {
                    'corrections_completed': True,
                    'corrections_validated_at': now_utc(),
                    'corrections_validated_by': validator_id,
                },
                JuryDecision.corrections_completed.is_(False),
                status_attr='decision',
            )
            track_transition(actor, 'validate_corrections', EntityKind.JURY_DECISION, record.id,
                             validator_id=validator_id)
            outbox.add(record.student_id, "Corrections validated",
                       "Your thesis corrections have been validated.",
                       severity=NotificationSeverity.SUCCESS,
                       related_entity=(EntityKind.JURY_DECISION, record.id))
    except ConflictingUpdate:
        if refreshed(record).corrections_completed:
            return record
        raise

    logger.info("Jury corrections validated",
                extra={"decision_id": record.id, "actor_id": actor.id, "validator_id": validator_id})
    outbox.release()
    return refreshed(record)
