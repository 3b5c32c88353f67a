"""
Fiche de suivi: two-stage sign-off of a student/supervisor meeting.

    draft ──submit──► submitted ──supervisor──► (supervisor_validated)
                          ▲                          │
                          │                    department head
                          │                     ├─ approve ──► validated
                       resubmit ◄── rejected ◄──┘  reject

A validated report is immutable; only notes can still be appended.
"""
from sqlalchemy import select

from src.extensions import db
from src.utils.datetime_utils import now_utc
from src.utils.db_tracking import track_transition
from src.utils.logging_config import get_logger, transition_context
from ..models import MeetingReport, MeetingReportNote, MeetingReportStatus, NotificationSeverity, Theme, ThemeStatus
from .base import department_head_ids, require_status, require_text, subject_for
from .errors import ConflictingUpdate, InvalidTransition, PreconditionNotMet, ValidationError
from .gate import EntityKind, Transition, ensure_allowed
from .notifications import Outbox
from .store import compare_and_set, get_or_404, refreshed, transaction

logger = get_logger(__name__)

SUBMITTABLE = {MeetingReportStatus.DRAFT, MeetingReportStatus.REJECTED}

# Department-head decisions, with the spellings the API accepts
DEPARTMENT_DECISIONS = {
    'validated': MeetingReportStatus.VALIDATED,
    'approved': MeetingReportStatus.VALIDATED,
    'approve': MeetingReportStatus.VALIDATED,
    'rejected': MeetingReportStatus.REJECTED,
    'reject': MeetingReportStatus.REJECTED,
}

EDITABLE_FIELDS = ('meeting_date', 'summary', 'next_steps', 'overall_progress')


def _log(report_id, actor, from_status, to_status, **extra):
    logger.info("Meeting report transition",
                extra=transition_context("report_id", report_id, actor, from_status, to_status, **extra))


def _subject(report):
    return subject_for(EntityKind.MEETING_REPORT, report.student_id,
                       supervisor_validated=bool(report.supervisor_validated))


def _clean_fields(fields):
    values = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS and v is not None}
    progress = values.get('overall_progress')
    if progress is not None and not 0 <= progress <= 100:
        raise ValidationError("overall_progress must be between 0 and 100", field='overall_progress')
    return values


def get_meeting_report(actor, report_id):
    report = get_or_404(MeetingReport, report_id, "Meeting report")
    ensure_allowed(actor, _subject(report), Transition.VIEW)
    return report


def list_meeting_reports(actor, theme_id):
    theme = get_or_404(Theme, theme_id, "Theme")
    ensure_allowed(actor, subject_for(EntityKind.MEETING_REPORT, theme.student_id), Transition.VIEW)
    return db.session.execute(
        select(MeetingReport).where(MeetingReport.theme_id == theme.id).order_by(MeetingReport.created_at)
    ).scalars().all()


def _new_report(actor, theme_id, transition, fields):
    theme = get_or_404(Theme, theme_id, "Theme")
    subject = subject_for(EntityKind.MEETING_REPORT, theme.student_id)
    ensure_allowed(actor, subject, transition)
    if theme.status is ThemeStatus.REJECTED:
        raise PreconditionNotMet("meetings cannot be reported on a rejected theme", theme_status=theme.status.value)
    report = MeetingReport(
        theme_id=theme.id,
        student_id=theme.student_id,
        supervisor_id=subject.active_supervisor_id,
        created_by=actor.id,
        status=MeetingReportStatus.DRAFT,
        **_clean_fields(fields),
    )
    return report, subject


def draft_meeting_report(actor, theme_id, **fields):
    """Create a report in ``draft``; either the student or the supervisor may start it."""
    report, _ = _new_report(actor, theme_id, Transition.DRAFT, fields)
    with transaction():
        db.session.add(report)
        db.session.flush()
        track_transition(actor, 'draft_meeting_report', EntityKind.MEETING_REPORT, report.id,
                         to=MeetingReportStatus.DRAFT)
    _log(report.id, actor, None, MeetingReportStatus.DRAFT)
    return report


def _stage_submission(outbox, actor, report, subject):
    related = (EntityKind.MEETING_REPORT, report.id)
    # The party that did not submit is told about it
    if actor.id != report.student_id:
        outbox.add(report.student_id, "Meeting report submitted",
                   "A meeting report about your thesis was submitted for validation.", related_entity=related)
    if actor.id != subject.active_supervisor_id:
        outbox.add(subject.active_supervisor_id, "Meeting report to validate",
                   "A meeting report is waiting for your validation.", related_entity=related)
    for head_id in department_head_ids(subject.student_department_id):
        outbox.add(head_id, "Meeting report submitted",
                   "A meeting report was submitted and will need your validation.", related_entity=related)


def submit_meeting_report(actor, report_id=None, theme_id=None, **fields):
    """``draft|rejected -> submitted``.

    Without ``report_id`` a new report is created for ``theme_id`` and
    submitted in the same call. Resubmitting clears both validation flags.
    """
    outbox = Outbox()
    if report_id is None:
        if theme_id is None:
            raise ValidationError("theme_id is required", field='theme_id')
        report, subject = _new_report(actor, theme_id, Transition.SUBMIT, fields)
        report.status = MeetingReportStatus.SUBMITTED
        report.submitted_at = now_utc()
        with transaction():
            db.session.add(report)
            db.session.flush()
            track_transition(actor, 'submit_meeting_report', EntityKind.MEETING_REPORT, report.id,
                             to=MeetingReportStatus.SUBMITTED)
            _stage_submission(outbox, actor, report, subject)
        _log(report.id, actor, None, MeetingReportStatus.SUBMITTED)
        outbox.release()
        return report

    report = get_or_404(MeetingReport, report_id, "Meeting report")
    subject = _subject(report)
    ensure_allowed(actor, subject, Transition.SUBMIT)
    require_status(report, SUBMITTABLE, 'submit')
    current = report.status

    values = {
        'status': MeetingReportStatus.SUBMITTED,
        'submitted_at': now_utc(),
        'supervisor_validated': False,
        'supervisor_validated_at': None,
        'department_head_validated': False,
        'department_head_validated_at': None,
        'supervisor_id': subject.active_supervisor_id or report.supervisor_id,
        **_clean_fields(fields),
    }
    with transaction():
        compare_and_set(MeetingReport, report.id, current, values)
        track_transition(actor, 'submit_meeting_report', EntityKind.MEETING_REPORT, report.id,
                         **{'from': current, 'to': MeetingReportStatus.SUBMITTED})
        _stage_submission(outbox, actor, report, subject)

    _log(report.id, actor, current, MeetingReportStatus.SUBMITTED)
    outbox.release()
    return refreshed(report)


def validate_meeting_report_by_supervisor(actor, report_id):
    """Set ``supervisor_validated``; a no-op when it is already set."""
    report = get_or_404(MeetingReport, report_id, "Meeting report")
    subject = _subject(report)
    ensure_allowed(actor, subject, Transition.SUPERVISOR_VALIDATE)
    if report.supervisor_validated:
        return report
    require_status(report, {MeetingReportStatus.SUBMITTED}, 'validate')

    outbox = Outbox()
    try:
        with transaction():
            compare_and_set(
                MeetingReport, report.id, MeetingReportStatus.SUBMITTED,
                {'supervisor_validated': True, 'supervisor_validated_at': now_utc()},
                MeetingReport.supervisor_validated.is_(False),
            )
            track_transition(actor, 'validate_meeting_report_by_supervisor', EntityKind.MEETING_REPORT,
                             report.id, supervisor_validated=True)
            related = (EntityKind.MEETING_REPORT, report.id)
            outbox.add(report.student_id, "Meeting report endorsed",
                       "Your supervisor validated the meeting report.",
                       severity=NotificationSeverity.SUCCESS, related_entity=related)
            for head_id in department_head_ids(subject.student_department_id):
                outbox.add(head_id, "Meeting report to validate",
                           "A supervisor-validated meeting report awaits your validation.", related_entity=related)
    except ConflictingUpdate:
        report = refreshed(report)
        if report.supervisor_validated:
            return report
        raise

    _log(report.id, actor, MeetingReportStatus.SUBMITTED, MeetingReportStatus.SUBMITTED,
         supervisor_validated=True)
    outbox.release()
    return refreshed(report)


def validate_meeting_report_by_department_head(actor, report_id, decision, comments=None):
    """Approve (``validated``) or reject a supervisor-endorsed report.

    Approval is one conditional UPDATE that re-checks ``supervisor_validated``
    so a concurrent reset can never be validated over. Approving an already
    validated report is a no-op.
    """
    report = get_or_404(MeetingReport, report_id, "Meeting report")
    ensure_allowed(actor, _subject(report), Transition.DEPARTMENT_VALIDATE)

    target = DEPARTMENT_DECISIONS.get(str(getattr(decision, 'value', decision) or '').lower())
    if target is None:
        raise ValidationError("decision must be 'validated' or 'rejected'", field='decision')

    if target is MeetingReportStatus.VALIDATED:
        return _department_approve(actor, report, comments)
    return _department_reject(actor, report, comments)


def _department_approve(actor, report, comments):
    if report.status is MeetingReportStatus.VALIDATED:
        return report
    if not report.supervisor_validated:
        raise PreconditionNotMet("the supervisor has not validated this report yet")
    require_status(report, {MeetingReportStatus.SUBMITTED}, 'validate')

    now = now_utc()
    values = {
        'status': MeetingReportStatus.VALIDATED,
        'department_head_validated': True,
        'department_head_validated_at': now,
        'validated_at': now,
        'validated_by': actor.id,
        'rejection_reason': None,
    }
    if comments:
        values['department_head_comments'] = comments

    outbox = Outbox()
    try:
        with transaction():
            compare_and_set(
                MeetingReport, report.id, MeetingReportStatus.SUBMITTED, values,
                MeetingReport.supervisor_validated.is_(True),
                MeetingReport.department_head_validated.is_(False),
            )
            track_transition(actor, 'validate_meeting_report_by_department_head', EntityKind.MEETING_REPORT,
                             report.id, **{'from': MeetingReportStatus.SUBMITTED, 'to': MeetingReportStatus.VALIDATED})
            related = (EntityKind.MEETING_REPORT, report.id)
            outbox.add(report.student_id, "Meeting report validated",
                       "Your meeting report was validated by the department head.",
                       severity=NotificationSeverity.SUCCESS, related_entity=related)
            outbox.add(report.supervisor_id, "Meeting report validated",
                       "The meeting report you endorsed was validated by the department head.",
                       severity=NotificationSeverity.SUCCESS, related_entity=related)
    except ConflictingUpdate:
        report = refreshed(report)
        if report.status is MeetingReportStatus.VALIDATED:
            return report
        if not report.supervisor_validated:
            raise PreconditionNotMet("the supervisor has not validated this report yet")
        raise

    _log(report.id, actor, MeetingReportStatus.SUBMITTED, MeetingReportStatus.VALIDATED)
    outbox.release()
    return refreshed(report)


def _department_reject(actor, report, comments):
    if report.status is MeetingReportStatus.VALIDATED:
        raise InvalidTransition("a validated meeting report cannot be rejected",
                                current_status=report.status.value)
    require_status(report, {MeetingReportStatus.SUBMITTED}, 'reject')
    if not report.supervisor_validated:
        raise PreconditionNotMet("the supervisor has not validated this report yet")
    reason = require_text(comments, 'rejection_reason')

    outbox = Outbox()
    with transaction():
        compare_and_set(
            MeetingReport, report.id, MeetingReportStatus.SUBMITTED,
            {
                'status': MeetingReportStatus.REJECTED,
                'rejection_reason': reason,
                'department_head_comments': reason,
                'supervisor_validated': False,
                'supervisor_validated_at': None,
                'department_head_validated': False,
                'department_head_validated_at': None,
            },
            MeetingReport.department_head_validated.is_(False),
        )
        track_transition(actor, 'validate_meeting_report_by_department_head', EntityKind.MEETING_REPORT,
                         report.id, **{'from': MeetingReportStatus.SUBMITTED, 'to': MeetingReportStatus.REJECTED,
                                       'reason': reason})
        related = (EntityKind.MEETING_REPORT, report.id)
        message = f"The department head rejected the meeting report: {reason}"
        outbox.add(report.student_id, "Meeting report rejected", message,
                   severity=NotificationSeverity.WARNING, related_entity=related)
        outbox.add(report.supervisor_id, "Meeting report rejected", message,
                   severity=NotificationSeverity.WARNING, related_entity=related)

    _log(report.id, actor, MeetingReportStatus.SUBMITTED, MeetingReportStatus.REJECTED)
    outbox.release()
    return refreshed(report)


def append_meeting_report_note(actor, report_id, body):
    report = get_or_404(MeetingReport, report_id, "Meeting report")
    ensure_allowed(actor, _subject(report), Transition.APPEND_NOTE)
    body = require_text(body, 'body')
    with transaction():
        note = MeetingReportNote(report_id=report.id, author_id=actor.id, body=body)
        db.session.add(note)
        db.session.flush()
        track_transition(actor, 'append_meeting_report_note', EntityKind.MEETING_REPORT, report.id,
                         note_id=note.id)
    logger.info("Meeting report note appended", extra={"report_id": report.id, "actor_id": actor.id})
    return note
