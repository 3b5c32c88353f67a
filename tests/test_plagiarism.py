import pytest

from src.extensions import db
from src.memoire.models import PlagiarismCheck, PlagiarismStatus
from src.memoire.workflow import documents, plagiarism, themes
from src.memoire.workflow.errors import (
    InvalidTransition,
    PreconditionNotMet,
    Unauthorized,
    ValidationError,
)


@pytest.fixture
def document(people):
    theme = themes.submit_theme(people.student.actor, "Edge AI Scheduling", "Scheduling on edge devices")
    themes.review_theme(people.supervisor.actor, theme.id, 'approved')
    document = documents.submit_document(people.student.actor, theme.id, 'chapter_2', 'blob://ch2')
    return documents.review_document(people.supervisor.actor, document.id, 'under_review')


def run_check(people, document, score):
    check = plagiarism.request_plagiarism_check(people.supervisor.actor, document.id)
    plagiarism.start_plagiarism_check(people.supervisor.actor, check.id)
    plagiarism.record_plagiarism_result(people.supervisor.actor, check.id, score, sources_found=3)
    return plagiarism.finalize_plagiarism_check(people.supervisor.actor, check.id)


def test_request_freezes_the_current_threshold(people, document):
    check = plagiarism.request_plagiarism_check(people.supervisor.actor, document.id, "before defense")
    assert check.status is PlagiarismStatus.PENDING
    assert check.threshold_used == 20.0
    assert check.requested_by == people.supervisor.id
    assert check.notes == "before defense"
    assert check.plagiarism_score is None and check.passed is None


@pytest.mark.parametrize('score,threshold,passed', [
    (0, 20, True),
    (19.99, 20, True),
    (20, 20, False),
    (20.01, 20, False),
    (100, 20, False),
    (0, 0, False),
    (99.9, 100, True),
    (12.5, 15, True),
])
def test_passed_iff_score_below_threshold(people, document, score, threshold, passed):
    plagiarism.update_plagiarism_threshold(people.admin.actor, threshold)
    check = run_check(people, document, score)
    assert check.passed is passed
    assert check.status is (PlagiarismStatus.PASSED if passed else PlagiarismStatus.FAILED)
    assert check.threshold_used == threshold


def test_threshold_change_does_not_affect_open_checks(people, document):
    check = plagiarism.request_plagiarism_check(people.supervisor.actor, document.id)
    plagiarism.update_plagiarism_threshold(people.admin.actor, 10)

    check = plagiarism.record_plagiarism_result(people.supervisor.actor, check.id, 15)
    assert check.threshold_used == 20.0
    assert check.passed is True

    done = plagiarism.finalize_plagiarism_check(people.supervisor.actor, check.id)
    plagiarism.update_plagiarism_threshold(people.admin.actor, 50)
    db.session.expire_all()
    stored = db.session.get(PlagiarismCheck, done.id)
    assert stored.status is PlagiarismStatus.PASSED
    assert stored.threshold_used == 20.0


def test_result_is_recorded_once(people, document):
    check = plagiarism.request_plagiarism_check(people.supervisor.actor, document.id)
    check = plagiarism.record_plagiarism_result(people.supervisor.actor, check.id, 5)
    assert check.status is PlagiarismStatus.IN_PROGRESS
    assert check.checked_at is not None
    with pytest.raises(InvalidTransition):
        plagiarism.record_plagiarism_result(people.supervisor.actor, check.id, 50)
    assert db.session.get(PlagiarismCheck, check.id).plagiarism_score == 5


def test_terminal_checks_are_frozen(people, document):
    check = run_check(people, document, 3)
    with pytest.raises(InvalidTransition):
        plagiarism.record_plagiarism_result(people.supervisor.actor, check.id, 90)
    with pytest.raises(InvalidTransition):
        plagiarism.finalize_plagiarism_check(people.supervisor.actor, check.id)
    with pytest.raises(InvalidTransition):
        plagiarism.start_plagiarism_check(people.supervisor.actor, check.id)


def test_finalize_needs_a_result(people, document):
    check = plagiarism.request_plagiarism_check(people.supervisor.actor, document.id)
    with pytest.raises(InvalidTransition):
        plagiarism.finalize_plagiarism_check(people.supervisor.actor, check.id)
    plagiarism.start_plagiarism_check(people.supervisor.actor, check.id)
    with pytest.raises(PreconditionNotMet):
        plagiarism.finalize_plagiarism_check(people.supervisor.actor, check.id)


@pytest.mark.parametrize('score', [-1, 100.5, 'abc', None])
def test_score_must_be_a_percentage(people, document, score):
    check = plagiarism.request_plagiarism_check(people.supervisor.actor, document.id)
    with pytest.raises(ValidationError):
        plagiarism.record_plagiarism_result(people.supervisor.actor, check.id, score)


def test_one_open_check_per_document(people, document):
    plagiarism.request_plagiarism_check(people.supervisor.actor, document.id)
    with pytest.raises(InvalidTransition):
        plagiarism.request_plagiarism_check(people.supervisor.actor, document.id)


def test_failed_check_then_new_version_gets_a_fresh_check(people, document, sent):
    failed = run_check(people, document, 45)
    assert failed.status is PlagiarismStatus.FAILED
    assert "Plagiarism check failed" in sent.titles_for(people.student.id)
    assert "Plagiarism check failed" in sent.titles_for(people.supervisor.id)

    v2 = documents.submit_document(people.student.actor, document.theme_id, 'chapter_2', 'blob://ch2-v2')
    with pytest.raises(PreconditionNotMet):
        plagiarism.request_plagiarism_check(people.supervisor.actor, v2.id)
    documents.review_document(people.supervisor.actor, v2.id, 'under_review')
    passed = run_check(people, v2, 8)
    assert passed.status is PlagiarismStatus.PASSED
    assert passed.document_id == v2.id
    assert db.session.get(PlagiarismCheck, failed.id).status is PlagiarismStatus.FAILED


def test_rejected_document_is_not_eligible(people, document):
    documents.review_document(people.supervisor.actor, document.id, 'rejected', "incomplete")
    with pytest.raises(PreconditionNotMet):
        plagiarism.request_plagiarism_check(people.supervisor.actor, document.id)


def test_supervisor_gate(people, document):
    with pytest.raises(Unauthorized):
        plagiarism.request_plagiarism_check(people.other_supervisor.actor, document.id)
    with pytest.raises(Unauthorized):
        plagiarism.request_plagiarism_check(people.student.actor, document.id)
    check = plagiarism.request_plagiarism_check(people.admin.actor, document.id)
    assert plagiarism.get_plagiarism_check(people.student.actor, check.id).id == check.id
    with pytest.raises(Unauthorized):
        plagiarism.get_plagiarism_check(people.other_student.actor, check.id)


def test_threshold_update_is_admin_only(people):
    with pytest.raises(Unauthorized):
        plagiarism.update_plagiarism_threshold(people.head.actor, 30)
    with pytest.raises(ValidationError):
        plagiarism.update_plagiarism_threshold(people.admin.actor, 120)
    setting = plagiarism.update_plagiarism_threshold(people.admin.actor, 30)
    assert setting.value == '30.0'
    assert setting.updated_by == people.admin.id
