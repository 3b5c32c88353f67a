import hashlib

import pytest
from sqlalchemy import select

from src.extensions import db
from src.memoire.models import ActivityLog, Archive, ArchiveAccessLevel, ArchiveStatus
from src.memoire.workflow import archives, documents, jury, themes
from src.memoire.workflow.errors import (
    InvalidTransition,
    NotFound,
    PreconditionNotMet,
    Unauthorized,
    ValidationError,
)


def thesis_ready_for_jury(people):
    theme = themes.submit_theme(people.student.actor, "Edge AI Scheduling", "Scheduling on edge devices")
    themes.review_theme(people.supervisor.actor, theme.id, 'approved')
    final = documents.submit_document(people.student.actor, theme.id, 'final_version', 'blob://final.pdf',
                                      size=2048, mime_type='application/pdf')
    documents.review_document(people.supervisor.actor, final.id, 'approved')
    return theme, final


@pytest.fixture
def closed_theme(people):
    theme, _ = thesis_ready_for_jury(people)
    jury.record_jury_decision(people.jury.actor, theme.id, 'approved', grade=16)
    return theme


def test_student_submits_then_jury_archives(people, closed_theme, sent):
    archive = archives.submit_archive(people.student.actor, closed_theme.id)
    assert archive.status is ArchiveStatus.PENDING
    assert archive.access_level is ArchiveAccessLevel.RESTRICTED
    assert archive.final_document_path == 'blob://final.pdf'
    assert archive.file_size == 2048
    assert archive.checksum == hashlib.sha256(b'blob://final.pdf').hexdigest()
    assert archive.dublin_core['title'] == "Edge AI Scheduling"
    assert archive.dublin_core['identifier'] == closed_theme.id
    assert archive.dublin_core['publisher'] == 'ENSPD'
    assert "Thesis submitted for archiving" in sent.titles_for(people.student.id)

    archived = archives.archive_thesis(people.jury.actor, closed_theme.id)
    assert archived.status is ArchiveStatus.ARCHIVED
    assert archived.archived_by == people.jury.id
    assert archived.archived_at is not None
    assert archived.pdf_a_path == 'blob://final_pdfa.pdf'
    assert archived.published is False
    assert "Thesis archived" in sent.titles_for(people.student.id)


def test_public_archive_is_published_at_once(people, closed_theme):
    archive = archives.archive_thesis(people.jury.actor, closed_theme.id, 'public')
    assert archive.status is ArchiveStatus.PUBLISHED
    assert archive.published is True
    assert archive.published_at is not None
    assert archives.archive_for_theme(closed_theme.id).id == archive.id


def test_publish_after_archiving(people, closed_theme, sent):
    archive = archives.archive_thesis(people.jury.actor, closed_theme.id, 'restricted')
    with pytest.raises(ValidationError):
        archives.publish_archive(people.jury.actor, archive.id, 'private')

    published = archives.publish_archive(people.jury.actor, archive.id, 'public')
    assert published.status is ArchiveStatus.PUBLISHED
    assert published.access_level is ArchiveAccessLevel.PUBLIC
    assert "Thesis published" in sent.titles_for(people.student.id)

    with pytest.raises(InvalidTransition):
        archives.publish_archive(people.admin.actor, archive.id)


def test_archive_waits_for_the_jury(people):
    theme, _ = thesis_ready_for_jury(people)
    with pytest.raises(PreconditionNotMet):
        archives.submit_archive(people.student.actor, theme.id)
    with pytest.raises(PreconditionNotMet):
        archives.archive_thesis(people.jury.actor, theme.id)
    assert archives.archive_for_theme(theme.id) is None


def test_requested_corrections_must_be_validated_first(people):
    theme, _ = thesis_ready_for_jury(people)
    record = jury.record_jury_decision(people.jury.actor, theme.id, 'corrections_required',
                                       corrections_description="Typos")
    with pytest.raises(PreconditionNotMet):
        archives.submit_archive(people.student.actor, theme.id)

    jury.validate_corrections(people.jury.actor, record.id)
    assert archives.submit_archive(people.student.actor, theme.id).status is ArchiveStatus.PENDING


def test_rejected_thesis_is_not_archived(people):
    theme, _ = thesis_ready_for_jury(people)
    jury.record_jury_decision(people.jury.actor, theme.id, 'rejected')
    with pytest.raises(PreconditionNotMet):
        archives.archive_thesis(people.jury.actor, theme.id)


def test_only_one_archive_per_theme(people, closed_theme):
    archives.submit_archive(people.student.actor, closed_theme.id)
    with pytest.raises(InvalidTransition):
        archives.submit_archive(people.student.actor, closed_theme.id)
    archives.archive_thesis(people.jury.actor, closed_theme.id)
    with pytest.raises(InvalidTransition):
        archives.archive_thesis(people.jury.actor, closed_theme.id)
    assert len(db.session.execute(select(Archive)).scalars().all()) == 1


def test_roles_allowed_to_archive(people, closed_theme):
    with pytest.raises(Unauthorized):
        archives.submit_archive(people.other_student.actor, closed_theme.id)
    with pytest.raises(Unauthorized):
        archives.archive_thesis(people.student.actor, closed_theme.id)
    with pytest.raises(Unauthorized):
        archives.archive_thesis(people.supervisor.actor, closed_theme.id)
    archive = archives.archive_thesis(people.admin.actor, closed_theme.id)
    with pytest.raises(Unauthorized):
        archives.publish_archive(people.head.actor, archive.id)


def test_viewing_archives(people, closed_theme):
    with pytest.raises(NotFound):
        archives.get_theme_archive(people.student.actor, closed_theme.id)
    archive = archives.submit_archive(people.student.actor, closed_theme.id, 'public')
    assert archives.get_theme_archive(people.supervisor.actor, closed_theme.id).id == archive.id
    assert archives.get_archive(people.jury.actor, archive.id).access_level is ArchiveAccessLevel.PUBLIC
    with pytest.raises(Unauthorized):
        archives.get_archive(people.other_student.actor, archive.id)


def test_archiving_is_audited(people, closed_theme):
    archive = archives.submit_archive(people.student.actor, closed_theme.id)
    archives.archive_thesis(people.jury.actor, closed_theme.id)
    actions = db.session.execute(
        select(ActivityLog.action).where(ActivityLog.entity_id == archive.id).order_by(ActivityLog.id)
    ).scalars().all()
    assert actions == ['submit_archive', 'archive_thesis']
