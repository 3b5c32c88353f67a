"""
Plagiarism checks.

    pending ──start──► in_progress ──finalize──► passed | failed
       └──── record result ───┘

The scoring itself is done by an external oracle. The engine stores the
result once, derives ``passed = score < threshold_used`` and never touches a
terminal check again. ``threshold_used`` is copied from the settings table
when the check is requested, so later threshold changes only affect new
checks.
"""
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from src.extensions import db
from src.config.constants import MAX_PLAGIARISM_SCORE, MIN_PLAGIARISM_SCORE, PLAGIARISM_THRESHOLD_KEY
from src.utils.datetime_utils import now_utc
from src.utils.db_tracking import track_transition
from src.utils.logging_config import get_logger, transition_context
from ..models import Document, NotificationSeverity, PlagiarismCheck, PlagiarismStatus
from .base import subject_for
from .documents import is_eligible_for_plagiarism_check
from .errors import ConflictingUpdate, InvalidTransition, PreconditionNotMet, ValidationError
from .gate import EntityKind, Subject, Transition, ensure_allowed
from .notifications import Outbox
from .store import compare_and_set, current_plagiarism_threshold, get_or_404, put_setting, refreshed, transaction

logger = get_logger(__name__)

OPEN_STATUSES = (PlagiarismStatus.PENDING, PlagiarismStatus.IN_PROGRESS)


def _log(check_id, actor, from_status, to_status, **extra):
    logger.info("Plagiarism check transition",
                extra=transition_context("check_id", check_id, actor, from_status, to_status, **extra))


def _subject(student_id):
    return subject_for(EntityKind.PLAGIARISM_CHECK, student_id)


def _percentage(value, field):
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if not MIN_PLAGIARISM_SCORE <= value <= MAX_PLAGIARISM_SCORE:
        raise ValidationError(
            f"{field} must be between {MIN_PLAGIARISM_SCORE:g} and {MAX_PLAGIARISM_SCORE:g}", field=field
        )
    return value


def get_plagiarism_check(actor, check_id):
    check = get_or_404(PlagiarismCheck, check_id, "Plagiarism check")
    ensure_allowed(actor, _subject(check.student_id), Transition.VIEW)
    return check


def open_check_for(document_id):
    return db.session.execute(
        select(PlagiarismCheck).where(
            PlagiarismCheck.document_id == document_id,
            PlagiarismCheck.status.in_(OPEN_STATUSES),
        )
    ).scalar_one_or_none()


def request_plagiarism_check(actor, document_id, notes=None):
    """Open a ``pending`` check on an approved or under-review document."""
    document = get_or_404(Document, document_id, "Document")
    ensure_allowed(actor, _subject(document.student_id), Transition.REQUEST_CHECK)
    if not is_eligible_for_plagiarism_check(document):
        raise PreconditionNotMet(
            "only approved or under-review documents can be checked",
            document_status=document.status.value,
        )
    if open_check_for(document.id) is not None:
        raise InvalidTransition("a plagiarism check is already open for this document")

    threshold = current_plagiarism_threshold()
    outbox = Outbox()
    try:
        with transaction():
            check = PlagiarismCheck(
                document_id=document.id,
                theme_id=document.theme_id,
                student_id=document.student_id,
                status=PlagiarismStatus.PENDING,
                threshold_used=threshold,
                notes=notes,
                requested_by=actor.id,
            )
            db.session.add(check)
            db.session.flush()
            track_transition(actor, 'request_plagiarism_check', EntityKind.PLAGIARISM_CHECK, check.id,
                             document_id=document.id, threshold_used=threshold, to=PlagiarismStatus.PENDING)
            outbox.add(document.student_id, "Plagiarism check requested",
                       f"Version {document.version} of your {document.document_type.value} "
                       f"is queued for a plagiarism check.",
                       related_entity=(EntityKind.PLAGIARISM_CHECK, check.id))
    except IntegrityError as exc:
        raise InvalidTransition("a plagiarism check is already open for this document") from exc

    _log(check.id, actor, None, PlagiarismStatus.PENDING, threshold_used=threshold)
    outbox.release()
    return check


def start_plagiarism_check(actor, check_id):
    """``pending -> in_progress``: the oracle accepted the job."""
    check = get_or_404(PlagiarismCheck, check_id, "Plagiarism check")
    ensure_allowed(actor, _subject(check.student_id), Transition.START_CHECK)
    if check.status is not PlagiarismStatus.PENDING:
        raise InvalidTransition(f"cannot start a check in status '{check.status.value}'",
                                current_status=check.status.value)
    with transaction():
        compare_and_set(PlagiarismCheck, check.id, PlagiarismStatus.PENDING,
                        {'status': PlagiarismStatus.IN_PROGRESS})
        track_transition(actor, 'start_plagiarism_check', EntityKind.PLAGIARISM_CHECK, check.id,
                         **{'from': PlagiarismStatus.PENDING, 'to': PlagiarismStatus.IN_PROGRESS})
    _log(check.id, actor, PlagiarismStatus.PENDING, PlagiarismStatus.IN_PROGRESS)
    return refreshed(check)


def record_plagiarism_result(actor, check_id, score, sources_found=0, details=None):
    """Store the oracle's score once and derive ``passed`` from the frozen threshold."""
    check = get_or_404(PlagiarismCheck, check_id, "Plagiarism check")
    ensure_allowed(actor, _subject(check.student_id), Transition.RECORD_RESULT)
    if check.status not in OPEN_STATUSES:
        raise InvalidTransition(f"check already finished with status '{check.status.value}'",
                                current_status=check.status.value)
    if check.plagiarism_score is not None:
        raise InvalidTransition("a result was already recorded for this check")

    score = _percentage(score, 'score')
    if sources_found is None:
        sources_found = 0
    if sources_found < 0:
        raise ValidationError("sources_found cannot be negative", field='sources_found')

    current = check.status
    passed = PlagiarismCheck.verdict(score, check.threshold_used)
    try:
        with transaction():
            compare_and_set(
                PlagiarismCheck, check.id, OPEN_STATUSES,
                {
                    'status': PlagiarismStatus.IN_PROGRESS,
                    'plagiarism_score': score,
                    'sources_found': sources_found,
                    'details': details,
                    'passed': passed,
                    'checked_at': now_utc(),
                },
                PlagiarismCheck.plagiarism_score.is_(None),
            )
            track_transition(actor, 'record_plagiarism_result', EntityKind.PLAGIARISM_CHECK, check.id,
                             score=score, threshold_used=check.threshold_used, passed=passed)
    except ConflictingUpdate:
        if refreshed(check).plagiarism_score is not None:
            raise InvalidTransition("a result was already recorded for this check")
        raise

    _log(check.id, actor, current, PlagiarismStatus.IN_PROGRESS, score=score, passed=passed)
    return refreshed(check)


def finalize_plagiarism_check(actor, check_id):
    """``in_progress -> passed | failed`` from the recorded verdict."""
    check = get_or_404(PlagiarismCheck, check_id, "Plagiarism check")
    subject = _subject(check.student_id)
    ensure_allowed(actor, subject, Transition.FINALIZE_CHECK)
    if check.status is not PlagiarismStatus.IN_PROGRESS:
        raise InvalidTransition(f"cannot finalize a check in status '{check.status.value}'",
                                current_status=check.status.value)
    if check.plagiarism_score is None:
        raise PreconditionNotMet("no result has been recorded for this check")

    target = PlagiarismStatus.PASSED if check.passed else PlagiarismStatus.FAILED
    if target is PlagiarismStatus.PASSED:
        title, severity = "Plagiarism check passed", NotificationSeverity.SUCCESS
        message = (f"Your document scored {check.plagiarism_score:g}% "
                   f"(threshold {check.threshold_used:g}%) and passed the check.")
    else:
        title, severity = "Plagiarism check failed", NotificationSeverity.ERROR
        message = (f"Your document scored {check.plagiarism_score:g}% "
                   f"(threshold {check.threshold_used:g}%). Please submit a revised version.")

    outbox = Outbox()
    with transaction():
        compare_and_set(PlagiarismCheck, check.id, PlagiarismStatus.IN_PROGRESS, {'status': target},
                        PlagiarismCheck.plagiarism_score.isnot(None))
        track_transition(actor, 'finalize_plagiarism_check', EntityKind.PLAGIARISM_CHECK, check.id,
                         **{'from': PlagiarismStatus.IN_PROGRESS, 'to': target})
        related = (EntityKind.PLAGIARISM_CHECK, check.id)
        outbox.add(check.student_id, title, message, severity=severity, related_entity=related)
        outbox.add(subject.active_supervisor_id, title,
                   f"Plagiarism check finished with {check.plagiarism_score:g}% "
                   f"(threshold {check.threshold_used:g}%).",
                   severity=severity, related_entity=related)

    _log(check.id, actor, PlagiarismStatus.IN_PROGRESS, target)
    outbox.release()
    return refreshed(check)


def update_plagiarism_threshold(actor, value):
    """Change the threshold copied into checks requested from now on."""
    ensure_allowed(actor, Subject(kind=EntityKind.SETTING), Transition.CONFIGURE)
    value = _percentage(value, 'threshold')
    with transaction():
        setting = put_setting(PLAGIARISM_THRESHOLD_KEY, value, updated_by=actor.id,
                              description="Maximum tolerated similarity percentage")
        track_transition(actor, 'update_plagiarism_threshold', EntityKind.SETTING, PLAGIARISM_THRESHOLD_KEY,
                         value=value)
    logger.info("Plagiarism threshold updated", extra={"actor_id": actor.id, "threshold": value})
    return setting
