"""
Document versions (plan, chapters, final version).

Each submission is a new row with ``version = previous + 1`` for its
``(theme, document_type)`` pair. Reviews move a single version:

    submitted ──► under_review ──► approved | rejected | revision_requested
        └────────────────────────► approved | rejected | revision_requested
"""
from sqlalchemy import select

from src.extensions import db
from src.utils.datetime_utils import now_utc
from src.utils.db_tracking import track_transition
from src.utils.logging_config import get_logger, transition_context
from ..models import Document, DocumentStatus, DocumentType, NotificationSeverity, Theme, ThemeStatus
from .base import coerce_enum, require_status, require_text, subject_for
from .errors import InvalidTransition, PreconditionNotMet, ValidationError
from .gate import EntityKind, Transition, ensure_allowed
from .notifications import Outbox
from .store import compare_and_set, get_or_404, refreshed, transaction, with_allocated_version

logger = get_logger(__name__)

# Allowed review outcomes per current status
REVIEW_GRAPH = {
    DocumentStatus.SUBMITTED: {
        DocumentStatus.UNDER_REVIEW, DocumentStatus.APPROVED,
        DocumentStatus.REJECTED, DocumentStatus.REVISION_REQUESTED,
    },
    DocumentStatus.UNDER_REVIEW: {
        DocumentStatus.APPROVED, DocumentStatus.REJECTED, DocumentStatus.REVISION_REQUESTED,
    },
}

FEEDBACK_REQUIRED = {DocumentStatus.REJECTED, DocumentStatus.REVISION_REQUESTED}
PLAGIARISM_ELIGIBLE = {DocumentStatus.APPROVED, DocumentStatus.UNDER_REVIEW}

_REVIEW_TITLES = {
    DocumentStatus.UNDER_REVIEW: ("Document under review", NotificationSeverity.INFO),
    DocumentStatus.APPROVED: ("Document approved", NotificationSeverity.SUCCESS),
    DocumentStatus.REJECTED: ("Document rejected", NotificationSeverity.WARNING),
    DocumentStatus.REVISION_REQUESTED: ("Document needs revision", NotificationSeverity.WARNING),
}


def is_eligible_for_plagiarism_check(document):
    return document.status in PLAGIARISM_ELIGIBLE


def final_document_ready(theme_id):
    """True when a final version of the thesis is under review or approved."""
    found = db.session.execute(
        select(Document.id).where(
            Document.theme_id == theme_id,
            Document.document_type == DocumentType.FINAL_VERSION,
            Document.status.in_(PLAGIARISM_ELIGIBLE),
        ).limit(1)
    ).scalar_one_or_none()
    return found is not None


def get_document(actor, document_id):
    document = get_or_404(Document, document_id, "Document")
    ensure_allowed(actor, subject_for(EntityKind.DOCUMENT, document.student_id), Transition.VIEW)
    return document


def list_documents(actor, theme_id, document_type=None):
    theme = get_or_404(Theme, theme_id, "Theme")
    ensure_allowed(actor, subject_for(EntityKind.DOCUMENT, theme.student_id), Transition.VIEW)
    stmt = select(Document).where(Document.theme_id == theme.id)
    if document_type is not None:
        stmt = stmt.where(Document.document_type == coerce_enum(DocumentType, document_type, 'document_type'))
    stmt = stmt.order_by(Document.document_type, Document.version)
    return db.session.execute(stmt).scalars().all()


def submit_document(actor, theme_id, document_type, file_reference, size=None, mime_type=None, title=None):
    """Store a new version of ``document_type`` for the theme.

    Earlier versions keep their status. Concurrent submissions of the same
    type each get their own consecutive version number.
    """
    theme = get_or_404(Theme, theme_id, "Theme")
    subject = subject_for(EntityKind.DOCUMENT, theme.student_id)
    ensure_allowed(actor, subject, Transition.SUBMIT)

    document_type = coerce_enum(DocumentType, document_type, 'document_type')
    file_reference = require_text(file_reference, 'file_reference')
    if size is not None and size < 0:
        raise ValidationError("size cannot be negative", field='size')
    if theme.status is not ThemeStatus.APPROVED:
        raise PreconditionNotMet(
            "documents can only be submitted for an approved theme",
            theme_status=theme.status.value,
        )

    theme_id, student_id = theme.id, theme.student_id

    def build(version):
        document = Document(
            theme_id=theme_id,
            student_id=student_id,
            document_type=document_type,
            title=title,
            version=version,
            file_reference=file_reference,
            size=size,
            mime_type=mime_type,
            status=DocumentStatus.SUBMITTED,
            submitted_at=now_utc(),
        )
        db.session.add(document)
        db.session.flush()
        track_transition(actor, 'submit_document', EntityKind.DOCUMENT, document.id,
                         document_type=document_type, version=version, to=DocumentStatus.SUBMITTED)
        outbox = Outbox()
        related = (EntityKind.DOCUMENT, document.id)
        outbox.add(student_id, "Document submitted",
                   f"Version {version} of your {document_type.value} was submitted.", related_entity=related)
        outbox.add(subject.active_supervisor_id, "New document to review",
                   f"Version {version} of a {document_type.value} is waiting for your review.",
                   related_entity=related)
        return document, outbox

    document, outbox = with_allocated_version(theme_id, document_type, build)
    logger.info(
        "Document submitted",
        extra={"document_id": document.id, "theme_id": theme_id, "actor_id": actor.id,
               "document_type": document_type.value, "version": document.version},
    )
    outbox.release()
    return document


def review_document(actor, document_id, decision, feedback=None):
    document = get_or_404(Document, document_id, "Document")
    ensure_allowed(actor, subject_for(EntityKind.DOCUMENT, document.student_id), Transition.REVIEW)

    target = coerce_enum(DocumentStatus, decision, 'decision')
    current = document.status
    require_status(document, set(REVIEW_GRAPH), 'review')
    if target not in REVIEW_GRAPH[current]:
        raise InvalidTransition(
            f"a document in status '{current.value}' cannot move to '{target.value}'",
            current_status=current.value,
        )
    if target in FEEDBACK_REQUIRED:
        feedback = require_text(feedback, 'feedback')

    values = {'status': target, 'reviewed_by': actor.id, 'reviewed_at': now_utc()}
    if feedback is not None:
        values['feedback'] = feedback

    title, severity = _REVIEW_TITLES[target]
    message = f"Version {document.version} of your {document.document_type.value} is now {target.value}."
    if feedback:
        message = f"{message} Feedback: {feedback}"

    outbox = Outbox()
    with transaction():
        compare_and_set(Document, document.id, current, values)
        track_transition(actor, 'review_document', EntityKind.DOCUMENT, document.id,
                         **{'from': current, 'to': target, 'feedback': feedback})
        outbox.add(document.student_id, title, message, severity=severity,
                   related_entity=(EntityKind.DOCUMENT, document.id))

    logger.info("Document transition",
                extra=transition_context("document_id", document.id, actor, current, target))
    outbox.release()
    return refreshed(document)
