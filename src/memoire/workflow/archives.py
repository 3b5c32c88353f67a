"""
Thesis archiving, once the jury has closed the theme.

    (none) ──submit──► pending ──archive──► archived ──publish──► published
       └──────────────archive (jury, directly)──┘   (public access publishes at once)

The archive points at the latest approved final version of the thesis. A
theme has at most one archive.
"""
import hashlib

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from src.extensions import db
from src.config.constants import ARCHIVE_PUBLISHER, ARCHIVE_LANGUAGE
from src.utils.datetime_utils import now_utc, isoformat_utc
from src.utils.db_tracking import track_transition
from src.utils.logging_config import get_logger, transition_context
from ..models import (
    Archive,
    ArchiveAccessLevel,
    ArchiveStatus,
    Document,
    DocumentStatus,
    DocumentType,
    JuryVerdict,
    NotificationSeverity,
    Theme,
    ThemeStatus,
    User,
)
from .base import coerce_enum, require_status, subject_for
from .errors import InvalidTransition, NotFound, PreconditionNotMet, ValidationError
from .gate import EntityKind, Transition, ensure_allowed
from .jury import decision_for_theme
from .notifications import Outbox
from .store import compare_and_set, get_or_404, refreshed, transaction

logger = get_logger(__name__)


def _log(archive_id, actor, from_status, to_status, **extra):
    logger.info("Archive transition",
                extra=transition_context("archive_id", archive_id, actor, from_status, to_status, **extra))


def _subject(theme):
    return subject_for(EntityKind.ARCHIVE, theme.student_id, theme_status=theme.status.value)


def pdfa_path(file_reference):
    """Location of the PDF/A rendition stored next to the submitted file."""
    base = file_reference[:-4] if file_reference.lower().endswith('.pdf') else file_reference
    return f"{base}_pdfa.pdf"


def checksum_of(file_reference):
    return hashlib.sha256(file_reference.encode('utf-8')).hexdigest()


def archive_for_theme(theme_id):
    return db.session.execute(
        select(Archive).where(Archive.theme_id == theme_id)
    ).scalar_one_or_none()


def get_archive(actor, archive_id):
    archive = get_or_404(Archive, archive_id, "Archive")
    ensure_allowed(actor, subject_for(EntityKind.ARCHIVE, archive.student_id), Transition.VIEW)
    return archive


def get_theme_archive(actor, theme_id):
    theme = get_or_404(Theme, theme_id, "Theme")
    ensure_allowed(actor, subject_for(EntityKind.ARCHIVE, theme.student_id), Transition.VIEW)
    archive = archive_for_theme(theme.id)
    if archive is None:
        raise NotFound(f"Theme {theme.id} has no archive", theme_id=theme.id)
    return archive


def latest_approved_final_version(theme_id):
    return db.session.execute(
        select(Document).where(
            Document.theme_id == theme_id,
            Document.document_type == DocumentType.FINAL_VERSION,
            Document.status == DocumentStatus.APPROVED,
        ).order_by(Document.version.desc()).limit(1)
    ).scalar_one_or_none()


def _archivable_document(theme):
    """Return the final version to archive, or raise PreconditionNotMet."""
    if theme.status is not ThemeStatus.LOCKED:
        raise PreconditionNotMet("only the thesis of a locked theme can be archived",
                                 theme_status=theme.status.value)
    decision = decision_for_theme(theme.id)
    verdict = decision.decision if decision else None
    accepted = verdict is JuryVerdict.APPROVED or (
        verdict is JuryVerdict.CORRECTIONS_REQUIRED and decision.corrections_completed
    )
    if not accepted:
        raise PreconditionNotMet("the jury has not accepted this thesis",
                                 decision=verdict.value if verdict else None)
    document = latest_approved_final_version(theme.id)
    if document is None:
        raise PreconditionNotMet("no approved final version to archive", theme_id=theme.id)
    return document


def dublin_core(theme, student, document):
    return {
        'title': theme.title,
        'creator': student.full_name if student else None,
        'subject': theme.objectives or '',
        'description': theme.description,
        'publisher': ARCHIVE_PUBLISHER,
        'date': isoformat_utc(document.submitted_at),
        'type': 'Text',
        'format': document.mime_type or 'application/pdf',
        'identifier': theme.id,
        'language': ARCHIVE_LANGUAGE,
    }


def _new_archive(theme, document, access_level):
    return Archive(
        theme_id=theme.id,
        student_id=theme.student_id,
        document_id=document.id,
        final_document_path=document.file_reference,
        file_size=document.size,
        checksum=checksum_of(document.file_reference),
        status=ArchiveStatus.PENDING,
        access_level=access_level,
        published=False,
        dublin_core=dublin_core(theme, db.session.get(User, theme.student_id), document),
    )


def _archived_values(actor, access_level):
    now = now_utc()
    public = access_level is ArchiveAccessLevel.PUBLIC
    return {
        'status': ArchiveStatus.PUBLISHED if public else ArchiveStatus.ARCHIVED,
        'access_level': access_level,
        'archived_at': now,
        'archived_by': actor.id,
        'published': public,
        'published_at': now if public else None,
    }


def submit_archive(actor, theme_id, access_level=ArchiveAccessLevel.RESTRICTED):
    """Hand in the approved final version of a closed thesis for archiving."""
    theme = get_or_404(Theme, theme_id, "Theme")
    ensure_allowed(actor, _subject(theme), Transition.SUBMIT)
    access_level = coerce_enum(ArchiveAccessLevel, access_level or ArchiveAccessLevel.RESTRICTED, 'access_level')
    document = _archivable_document(theme)
    if archive_for_theme(theme.id) is not None:
        raise InvalidTransition("this thesis has already been submitted for archiving")

    outbox = Outbox()
    try:
        with transaction():
            archive = _new_archive(theme, document, access_level)
            db.session.add(archive)
            db.session.flush()
            track_transition(actor, 'submit_archive', EntityKind.ARCHIVE, archive.id,
                             theme_id=theme.id, document_id=document.id, to=ArchiveStatus.PENDING)
            outbox.add(theme.student_id, "Thesis submitted for archiving",
                       f"Your thesis \"{theme.title}\" awaits archiving by the jury.",
                       related_entity=(EntityKind.ARCHIVE, archive.id))
    except IntegrityError as exc:
        raise InvalidTransition("this thesis has already been submitted for archiving") from exc

    _log(archive.id, actor, None, ArchiveStatus.PENDING, theme_id=theme.id)
    outbox.release()
    return archive


def archive_thesis(actor, theme_id, access_level=None):
    """Archive the thesis of a locked theme, creating the record when the student has not submitted it.

    A ``public`` access level publishes the archive in the same step.
    """
    theme = get_or_404(Theme, theme_id, "Theme")
    ensure_allowed(actor, _subject(theme), Transition.ARCHIVE)
    document = _archivable_document(theme)
    existing = archive_for_theme(theme.id)
    if existing is not None:
        require_status(existing, {ArchiveStatus.PENDING}, 'archive')
    if access_level is None:
        access_level = existing.access_level if existing else ArchiveAccessLevel.RESTRICTED
    access_level = coerce_enum(ArchiveAccessLevel, access_level, 'access_level')
    values = _archived_values(actor, access_level)

    outbox = Outbox()
    try:
        with transaction():
            if existing is None:
                archive = _new_archive(theme, document, access_level)
                db.session.add(archive)
                db.session.flush()
            else:
                archive = existing
            values['pdf_a_path'] = pdfa_path(archive.final_document_path)
            compare_and_set(Archive, archive.id, ArchiveStatus.PENDING, values)
            track_transition(actor, 'archive_thesis', EntityKind.ARCHIVE, archive.id,
                             **{'from': ArchiveStatus.PENDING, 'to': values['status'],
                                'access_level': access_level})
            outbox.add(theme.student_id, "Thesis archived",
                       f"Your thesis \"{theme.title}\" has been archived. Access level: {access_level.value}.",
                       severity=NotificationSeverity.SUCCESS, related_entity=(EntityKind.ARCHIVE, archive.id))
    except IntegrityError as exc:
        # The student submitted the archive in the meantime
        raise InvalidTransition("this thesis has already been submitted for archiving") from exc

    _log(archive.id, actor, ArchiveStatus.PENDING, values['status'], access_level=access_level)
    outbox.release()
    return refreshed(archive)


def publish_archive(actor, archive_id, access_level=None):
    """archived -> published; a private archive cannot be published."""
    archive = get_or_404(Archive, archive_id, "Archive")
    theme = get_or_404(Theme, archive.theme_id, "Theme")
    ensure_allowed(actor, _subject(theme), Transition.PUBLISH)
    require_status(archive, {ArchiveStatus.ARCHIVED}, 'publish')
    access_level = coerce_enum(ArchiveAccessLevel, access_level or archive.access_level, 'access_level')
    if access_level is ArchiveAccessLevel.PRIVATE:
        raise ValidationError("a private archive cannot be published", field='access_level')

    outbox = Outbox()
    with transaction():
        compare_and_set(Archive, archive.id, ArchiveStatus.ARCHIVED, {
            'status': ArchiveStatus.PUBLISHED,
            'access_level': access_level,
            'published': True,
            'published_at': now_utc(),
        })
        track_transition(actor, 'publish_archive', EntityKind.ARCHIVE, archive.id,
                         **{'from': ArchiveStatus.ARCHIVED, 'to': ArchiveStatus.PUBLISHED,
                            'access_level': access_level})
        outbox.add(archive.student_id, "Thesis published",
                   f"Your thesis \"{theme.title}\" is now published ({access_level.value} access).",
                   severity=NotificationSeverity.SUCCESS, related_entity=(EntityKind.ARCHIVE, archive.id))

    _log(archive.id, actor, ArchiveStatus.ARCHIVED, ArchiveStatus.PUBLISHED, access_level=access_level)
    outbox.release()
    return refreshed(archive)
