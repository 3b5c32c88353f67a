from datetime import date

import pytest
from sqlalchemy import update

from src.extensions import db
from src.memoire.models import MeetingReport, MeetingReportStatus
from src.memoire.workflow import meeting_reports, themes
from src.memoire.workflow.errors import (
    InvalidTransition,
    PreconditionNotMet,
    Unauthorized,
    ValidationError,
)


@pytest.fixture
def theme(people):
    theme = themes.submit_theme(people.student.actor, "Edge AI Scheduling", "Scheduling on edge devices")
    return themes.review_theme(people.supervisor.actor, theme.id, 'approved')


def submitted_report(people, theme):
    return meeting_reports.submit_meeting_report(
        people.student.actor, theme_id=theme.id,
        meeting_date=date(2026, 3, 2), summary="Reviewed chapter 1", overall_progress=30,
    )


def snapshot(report_id):
    db.session.expire_all()
    report = db.session.get(MeetingReport, report_id)
    return report.to_dict()


def test_draft_then_submit(people, theme, sent):
    report = meeting_reports.draft_meeting_report(people.supervisor.actor, theme.id, summary="First meeting")
    assert report.status is MeetingReportStatus.DRAFT
    assert report.created_by == people.supervisor.id
    assert report.supervisor_id == people.supervisor.id

    report = meeting_reports.submit_meeting_report(people.student.actor, report_id=report.id, next_steps="Write ch. 2")
    assert report.status is MeetingReportStatus.SUBMITTED
    assert report.submitted_at is not None
    assert report.next_steps == "Write ch. 2"
    assert "Meeting report to validate" in sent.titles_for(people.supervisor.id)
    assert "Meeting report submitted" in sent.titles_for(people.head.id)
    assert sent.titles_for(people.foreign_head.id) == []


def test_create_and_submit_in_one_call(people, theme):
    report = submitted_report(people, theme)
    assert report.status is MeetingReportStatus.SUBMITTED
    assert report.overall_progress == 30


def test_progress_must_be_a_percentage(people, theme):
    with pytest.raises(ValidationError):
        meeting_reports.draft_meeting_report(people.student.actor, theme.id, overall_progress=140)


def test_department_head_before_supervisor_is_refused_without_mutation(people, theme):
    report = submitted_report(people, theme)
    before = snapshot(report.id)
    with pytest.raises(PreconditionNotMet):
        meeting_reports.validate_meeting_report_by_department_head(people.head.actor, report.id, 'validated')
    assert snapshot(report.id) == before


def test_admin_cannot_skip_supervisor_validation(people, theme):
    report = submitted_report(people, theme)
    with pytest.raises(PreconditionNotMet):
        meeting_reports.validate_meeting_report_by_department_head(people.admin.actor, report.id, 'validated')


def test_full_validation_chain(people, theme, sent):
    report = submitted_report(people, theme)

    report = meeting_reports.validate_meeting_report_by_supervisor(people.supervisor.actor, report.id)
    assert report.supervisor_validated
    assert report.status is MeetingReportStatus.SUBMITTED
    assert not report.department_head_validated

    report = meeting_reports.validate_meeting_report_by_department_head(
        people.head.actor, report.id, 'validated', "Good progress"
    )
    assert report.status is MeetingReportStatus.VALIDATED
    assert report.supervisor_validated and report.department_head_validated
    assert report.validated_by == people.head.id
    assert report.department_head_comments == "Good progress"
    assert "Meeting report validated" in sent.titles_for(people.student.id)


def test_validations_are_idempotent(people, theme, sent):
    report = submitted_report(people, theme)
    meeting_reports.validate_meeting_report_by_supervisor(people.supervisor.actor, report.id)
    count = len(sent.messages)
    meeting_reports.validate_meeting_report_by_supervisor(people.supervisor.actor, report.id)
    assert len(sent.messages) == count

    meeting_reports.validate_meeting_report_by_department_head(people.head.actor, report.id, 'validated')
    before = snapshot(report.id)
    again = meeting_reports.validate_meeting_report_by_department_head(people.head.actor, report.id, 'approve')
    assert again.status is MeetingReportStatus.VALIDATED
    assert snapshot(report.id) == before


def test_supervisor_validation_needs_submitted_report(people, theme):
    draft = meeting_reports.draft_meeting_report(people.student.actor, theme.id)
    with pytest.raises(InvalidTransition):
        meeting_reports.validate_meeting_report_by_supervisor(people.supervisor.actor, draft.id)


def test_rejection_resets_flags_and_allows_resubmission(people, theme):
    report = submitted_report(people, theme)
    meeting_reports.validate_meeting_report_by_supervisor(people.supervisor.actor, report.id)

    with pytest.raises(ValidationError):
        meeting_reports.validate_meeting_report_by_department_head(people.head.actor, report.id, 'rejected')

    report = meeting_reports.validate_meeting_report_by_department_head(
        people.head.actor, report.id, 'rejected', "Dates are missing"
    )
    assert report.status is MeetingReportStatus.REJECTED
    assert report.rejection_reason == "Dates are missing"
    assert not report.supervisor_validated
    assert not report.department_head_validated

    report = meeting_reports.submit_meeting_report(people.student.actor, report_id=report.id)
    assert report.status is MeetingReportStatus.SUBMITTED
    with pytest.raises(PreconditionNotMet):
        meeting_reports.validate_meeting_report_by_department_head(people.head.actor, report.id, 'validated')


def test_validated_report_is_immutable_except_notes(people, theme):
    report = submitted_report(people, theme)
    meeting_reports.validate_meeting_report_by_supervisor(people.supervisor.actor, report.id)
    meeting_reports.validate_meeting_report_by_department_head(people.head.actor, report.id, 'validated')

    with pytest.raises(InvalidTransition):
        meeting_reports.submit_meeting_report(people.student.actor, report_id=report.id, summary="rewrite")
    with pytest.raises(InvalidTransition):
        meeting_reports.validate_meeting_report_by_department_head(people.head.actor, report.id, 'rejected', "no")

    note = meeting_reports.append_meeting_report_note(people.head.actor, report.id, "Archived for the committee")
    assert note.author_id == people.head.id
    assert [n.body for n in meeting_reports.get_meeting_report(people.student.actor, report.id).notes] == [
        "Archived for the committee"
    ]


def test_roles_are_enforced(people, theme):
    report = submitted_report(people, theme)
    with pytest.raises(Unauthorized):
        meeting_reports.validate_meeting_report_by_supervisor(people.student.actor, report.id)
    with pytest.raises(Unauthorized):
        meeting_reports.validate_meeting_report_by_supervisor(people.other_supervisor.actor, report.id)
    meeting_reports.validate_meeting_report_by_supervisor(people.supervisor.actor, report.id)
    with pytest.raises(Unauthorized):
        meeting_reports.validate_meeting_report_by_department_head(people.foreign_head.actor, report.id, 'validated')
    with pytest.raises(Unauthorized):
        meeting_reports.validate_meeting_report_by_department_head(people.supervisor.actor, report.id, 'validated')


def test_unknown_department_decision(people, theme):
    report = submitted_report(people, theme)
    meeting_reports.validate_meeting_report_by_supervisor(people.supervisor.actor, report.id)
    with pytest.raises(ValidationError):
        meeting_reports.validate_meeting_report_by_department_head(people.head.actor, report.id, 'maybe')


def test_department_validation_rechecks_the_flag_in_the_write(people, theme, monkeypatch):
    report = submitted_report(people, theme)
    meeting_reports.validate_meeting_report_by_supervisor(people.supervisor.actor, report.id)
    original = meeting_reports.require_status

    def reset_behind_the_caller(entity, allowed, action):
        original(entity, allowed, action)
        # The supervisor endorsement is withdrawn after the caller read it
        db.session.execute(
            update(MeetingReport).where(MeetingReport.id == entity.id).values(supervisor_validated=False)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

    monkeypatch.setattr(meeting_reports, 'require_status', reset_behind_the_caller)
    with pytest.raises(PreconditionNotMet):
        meeting_reports.validate_meeting_report_by_department_head(people.head.actor, report.id, 'validated')
    stored = snapshot(report.id)
    assert stored['status'] == 'submitted'
    assert not stored['department_head_validated']
