import enum
import uuid

from flask_login import UserMixin
from sqlalchemy import UniqueConstraint, text
from sqlalchemy.orm import validates

from src.extensions import db
from src.utils.datetime_utils import now_utc, isoformat_utc
from .workflow.gate import Actor


def _uuid():
    return str(uuid.uuid4())


def _enum(enum_cls, name):
    """Closed status type stored as its string value (portable, no native ENUM)."""
    return db.Enum(
        enum_cls,
        name=name,
        native_enum=False,
        validate_strings=True,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# ------------------------------------------------------------------------------
# Statuts (types fermés)
# ------------------------------------------------------------------------------

class AppRole(str, enum.Enum):
    STUDENT = 'student'
    SUPERVISOR = 'supervisor'
    DEPARTMENT_HEAD = 'department_head'
    JURY = 'jury'
    ADMIN = 'admin'
    SUPER_ADMIN = 'super_admin'


class ThemeStatus(str, enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    REVISION_REQUESTED = 'revision_requested'
    LOCKED = 'locked'


class DocumentType(str, enum.Enum):
    PLAN = 'plan'
    CHAPTER_1 = 'chapter_1'
    CHAPTER_2 = 'chapter_2'
    CHAPTER_3 = 'chapter_3'
    CHAPTER_4 = 'chapter_4'
    FINAL_VERSION = 'final_version'


class DocumentStatus(str, enum.Enum):
    SUBMITTED = 'submitted'
    UNDER_REVIEW = 'under_review'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    REVISION_REQUESTED = 'revision_requested'


class MeetingReportStatus(str, enum.Enum):
    DRAFT = 'draft'
    SUBMITTED = 'submitted'
    VALIDATED = 'validated'
    REJECTED = 'rejected'


class PlagiarismStatus(str, enum.Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    PASSED = 'passed'
    FAILED = 'failed'


class JuryVerdict(str, enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    CORRECTIONS_REQUIRED = 'corrections_required'
    REJECTED = 'rejected'


class NotificationSeverity(str, enum.Enum):
    INFO = 'info'
    SUCCESS = 'success'
    WARNING = 'warning'
    ERROR = 'error'


class ArchiveStatus(str, enum.Enum):
    PENDING = 'pending'
    ARCHIVED = 'archived'
    PUBLISHED = 'published'


class ArchiveAccessLevel(str, enum.Enum):
    PUBLIC = 'public'
    RESTRICTED = 'restricted'
    PRIVATE = 'private'


class TimestampMixin:
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)


# ------------------------------------------------------------------------------
# Identité et départements
# ------------------------------------------------------------------------------

class Department(db.Model):
    __tablename__ = "Department"
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), nullable=False, unique=True)
    name = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=True)

    users = db.relationship('User', back_populates='department')

    def __repr__(self):
        return f"<Department {self.code}>"


class User(UserMixin, db.Model):
    __tablename__ = "User"
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.Text, nullable=False)
    password = db.Column(db.Text, nullable=False)
    first_name = db.Column(db.Text, nullable=True)
    last_name = db.Column(db.Text, nullable=True)
    email = db.Column(db.String(120), nullable=True)
    role = db.Column(db.Text, nullable=False, server_default=AppRole.STUDENT.value)
    department_id = db.Column(db.Integer, db.ForeignKey("Department.id"), nullable=True)
    # Matricule
    student_number = db.Column(db.String(40), nullable=True)

    department = db.relationship('Department', back_populates='users')

    __table_args__ = (
        UniqueConstraint('email', name='uq_user_email'),
    )

    @property
    def actor(self) -> Actor:
        return Actor(id=self.id, roles=frozenset({self.role}), department_id=self.department_id)

    @property
    def full_name(self):
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or self.username

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'full_name': self.full_name,
            'email': self.email,
            'role': self.role,
            'department_id': self.department_id,
        }

    def __repr__(self):
        return f"<User {self.username} role={self.role}>"


# ------------------------------------------------------------------------------
# Thème / sujet de mémoire
# ------------------------------------------------------------------------------

class Theme(TimestampMixin, db.Model):
    __tablename__ = "theme"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    student_id = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=False, index=True)
    supervisor_id = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=True, index=True)
    title = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=False)
    objectives = db.Column(db.Text, nullable=True)
    methodology = db.Column(db.Text, nullable=True)
    status = db.Column(_enum(ThemeStatus, 'theme_status'), nullable=False, default=ThemeStatus.PENDING)
    rejection_reason = db.Column(db.Text, nullable=True)
    revision_notes = db.Column(db.Text, nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=now_utc)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    previous_version_id = db.Column(db.String(36), db.ForeignKey("theme.id"), nullable=True)

    student = db.relationship('User', foreign_keys=[student_id])
    supervisor = db.relationship('User', foreign_keys=[supervisor_id])
    documents = db.relationship('Document', back_populates='theme', order_by='Document.version')

    __table_args__ = (
        # A student holds at most one theme that is not rejected
        db.Index(
            'uq_open_theme_per_student',
            'student_id',
            unique=True,
            sqlite_where=text("status != 'rejected'"),
            postgresql_where=text("status != 'rejected'"),
        ),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'supervisor_id': self.supervisor_id,
            'title': self.title,
            'description': self.description,
            'objectives': self.objectives,
            'methodology': self.methodology,
            'status': self.status.value,
            'rejection_reason': self.rejection_reason,
            'revision_notes': self.revision_notes,
            'submitted_at': isoformat_utc(self.submitted_at),
            'reviewed_at': isoformat_utc(self.reviewed_at),
            'reviewed_by': self.reviewed_by,
            'version': self.version,
            'previous_version_id': self.previous_version_id,
            'created_at': isoformat_utc(self.created_at),
            'updated_at': isoformat_utc(self.updated_at),
        }

    def __repr__(self):
        return f"<Theme {self.id} status={self.status}>"


# ------------------------------------------------------------------------------
# Documents (plan, chapitres, version finale)
# ------------------------------------------------------------------------------

class DocumentVersionCounter(db.Model):
    """Last version handed out per (theme, document type); bumped by a single UPDATE."""
    __tablename__ = "document_version_counter"
    theme_id = db.Column(db.String(36), db.ForeignKey("theme.id", ondelete="CASCADE"), primary_key=True)
    document_type = db.Column(_enum(DocumentType, 'document_type'), primary_key=True)
    last_version = db.Column(db.Integer, nullable=False, default=0)


class Document(TimestampMixin, db.Model):
    __tablename__ = "document"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    theme_id = db.Column(db.String(36), db.ForeignKey("theme.id"), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=False, index=True)
    document_type = db.Column(_enum(DocumentType, 'document_type'), nullable=False)
    title = db.Column(db.Text, nullable=True)
    version = db.Column(db.Integer, nullable=False)
    file_reference = db.Column(db.Text, nullable=False)
    size = db.Column(db.BigInteger, nullable=True)
    mime_type = db.Column(db.String(120), nullable=True)
    status = db.Column(_enum(DocumentStatus, 'document_status'), nullable=False, default=DocumentStatus.SUBMITTED)
    feedback = db.Column(db.Text, nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=now_utc)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=True)

    theme = db.relationship('Theme', back_populates='documents')

    __table_args__ = (
        UniqueConstraint('theme_id', 'document_type', 'version', name='uq_document_version'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'theme_id': self.theme_id,
            'student_id': self.student_id,
            'document_type': self.document_type.value,
            'title': self.title,
            'version': self.version,
            'file_reference': self.file_reference,
            'size': self.size,
            'mime_type': self.mime_type,
            'status': self.status.value,
            'feedback': self.feedback,
            'submitted_at': isoformat_utc(self.submitted_at),
            'reviewed_at': isoformat_utc(self.reviewed_at),
            'reviewed_by': self.reviewed_by,
            'created_at': isoformat_utc(self.created_at),
            'updated_at': isoformat_utc(self.updated_at),
        }

    def __repr__(self):
        return f"<Document {self.document_type} v{self.version} status={self.status}>"


# ------------------------------------------------------------------------------
# Fiche de suivi (compte rendu de rencontre)
# ------------------------------------------------------------------------------

class MeetingReport(TimestampMixin, db.Model):
    __tablename__ = "meeting_report"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    theme_id = db.Column(db.String(36), db.ForeignKey("theme.id"), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=False, index=True)
    supervisor_id = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=False)
    meeting_date = db.Column(db.Date, nullable=True)
    summary = db.Column(db.Text, nullable=True)
    next_steps = db.Column(db.Text, nullable=True)
    overall_progress = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(_enum(MeetingReportStatus, 'meeting_report_status'), nullable=False,
                       default=MeetingReportStatus.DRAFT)
    supervisor_validated = db.Column(db.Boolean, nullable=False, default=False)
    supervisor_validated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    department_head_validated = db.Column(db.Boolean, nullable=False, default=False)
    department_head_validated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    department_head_comments = db.Column(db.Text, nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    validated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    validated_by = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    notes = db.relationship('MeetingReportNote', back_populates='report',
                            order_by='MeetingReportNote.created_at')

    def to_dict(self):
        return {
            'id': self.id,
            'theme_id': self.theme_id,
            'student_id': self.student_id,
            'supervisor_id': self.supervisor_id,
            'meeting_date': self.meeting_date.isoformat() if self.meeting_date else None,
            'summary': self.summary,
            'next_steps': self.next_steps,
            'overall_progress': self.overall_progress,
            'status': self.status.value,
            'supervisor_validated': self.supervisor_validated,
            'supervisor_validated_at': isoformat_utc(self.supervisor_validated_at),
            'department_head_validated': self.department_head_validated,
            'department_head_validated_at': isoformat_utc(self.department_head_validated_at),
            'department_head_comments': self.department_head_comments,
            'submitted_at': isoformat_utc(self.submitted_at),
            'validated_at': isoformat_utc(self.validated_at),
            'validated_by': self.validated_by,
            'rejection_reason': self.rejection_reason,
            'notes': [n.to_dict() for n in self.notes],
        }


class MeetingReportNote(db.Model):
    """Append-only remark; the only write still allowed once a report is validated."""
    __tablename__ = "meeting_report_note"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    report_id = db.Column(db.String(36), db.ForeignKey("meeting_report.id"), nullable=False, index=True)
    author_id = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=False)
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=now_utc)

    report = db.relationship('MeetingReport', back_populates='notes')

    def to_dict(self):
        return {
            'id': self.id,
            'author_id': self.author_id,
            'body': self.body,
            'created_at': isoformat_utc(self.created_at),
        }


# ------------------------------------------------------------------------------
# Contrôle anti-plagiat
# ------------------------------------------------------------------------------

class PlagiarismCheck(TimestampMixin, db.Model):
    __tablename__ = "plagiarism_check"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    document_id = db.Column(db.String(36), db.ForeignKey("document.id"), nullable=False, index=True)
    theme_id = db.Column(db.String(36), db.ForeignKey("theme.id"), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=False)
    status = db.Column(_enum(PlagiarismStatus, 'plagiarism_status'), nullable=False,
                       default=PlagiarismStatus.PENDING)
    threshold_used = db.Column(db.Float, nullable=False)
    plagiarism_score = db.Column(db.Float, nullable=True)
    sources_found = db.Column(db.Integer, nullable=False, default=0)
    details = db.Column(db.JSON, nullable=True)
    passed = db.Column(db.Boolean, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    requested_by = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=True)
    checked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    document = db.relationship('Document')

    __table_args__ = (
        db.Index(
            'uq_open_plagiarism_check',
            'document_id',
            unique=True,
            sqlite_where=text("status IN ('pending', 'in_progress')"),
            postgresql_where=text("status IN ('pending', 'in_progress')"),
        ),
    )

    @validates('threshold_used')
    def _freeze_threshold(self, key, value):
        if self.threshold_used is not None and value != self.threshold_used:
            raise ValueError("threshold_used cannot change once the check is requested")
        return value

    @staticmethod
    def verdict(score, threshold):
        """A score at or above the threshold fails the check."""
        return score < threshold

    def to_dict(self):
        return {
            'id': self.id,
            'document_id': self.document_id,
            'theme_id': self.theme_id,
            'student_id': self.student_id,
            'status': self.status.value,
            'threshold_used': self.threshold_used,
            'plagiarism_score': self.plagiarism_score,
            'sources_found': self.sources_found,
            'details': self.details,
            'passed': self.passed,
            'notes': self.notes,
            'requested_by': self.requested_by,
            'checked_at': isoformat_utc(self.checked_at),
            'created_at': isoformat_utc(self.created_at),
        }


# ------------------------------------------------------------------------------
# Délibération du jury
# ------------------------------------------------------------------------------

class JuryDecision(TimestampMixin, db.Model):
    __tablename__ = "jury_decision"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    theme_id = db.Column(db.String(36), db.ForeignKey("theme.id"), nullable=False, unique=True)
    student_id = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=False)
    defense_date = db.Column(db.Date, nullable=True)
    decision = db.Column(_enum(JuryVerdict, 'jury_verdict'), nullable=False, default=JuryVerdict.PENDING)
    grade = db.Column(db.Float, nullable=True)
    mention = db.Column(db.String(60), nullable=True)
    corrections_required = db.Column(db.Boolean, nullable=False, default=False)
    corrections_deadline = db.Column(db.Date, nullable=True)
    corrections_description = db.Column(db.Text, nullable=True)
    corrections_completed = db.Column(db.Boolean, nullable=False, default=False)
    corrections_validated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    corrections_validated_by = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=True)
    deliberation_notes = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decided_by = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=True)

    theme = db.relationship('Theme')

    def to_dict(self):
        return {
            'id': self.id,
            'theme_id': self.theme_id,
            'student_id': self.student_id,
            'defense_date': self.defense_date.isoformat() if self.defense_date else None,
            'decision': self.decision.value,
            'grade': self.grade,
            'mention': self.mention,
            'corrections_required': self.corrections_required,
            'corrections_deadline': self.corrections_deadline.isoformat() if self.corrections_deadline else None,
            'corrections_description': self.corrections_description,
            'corrections_completed': self.corrections_completed,
            'corrections_validated_at': isoformat_utc(self.corrections_validated_at),
            'corrections_validated_by': self.corrections_validated_by,
            'deliberation_notes': self.deliberation_notes,
            'decided_at': isoformat_utc(self.decided_at),
            'decided_by': self.decided_by,
        }


# ------------------------------------------------------------------------------
# Archivage du mémoire
# ------------------------------------------------------------------------------

class Archive(TimestampMixin, db.Model):
    __tablename__ = "archive"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    theme_id = db.Column(db.String(36), db.ForeignKey("theme.id"), nullable=False, unique=True)
    student_id = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=False, index=True)
    document_id = db.Column(db.String(36), db.ForeignKey("document.id"), nullable=False)
    final_document_path = db.Column(db.Text, nullable=False)
    pdf_a_path = db.Column(db.Text, nullable=True)
    file_size = db.Column(db.BigInteger, nullable=True)
    checksum = db.Column(db.String(64), nullable=False)
    status = db.Column(_enum(ArchiveStatus, 'archive_status'), nullable=False, default=ArchiveStatus.PENDING)
    access_level = db.Column(_enum(ArchiveAccessLevel, 'archive_access_level'), nullable=False,
                             default=ArchiveAccessLevel.RESTRICTED)
    published = db.Column(db.Boolean, nullable=False, default=False)
    published_at = db.Column(db.DateTime(timezone=True), nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)
    archived_by = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=True)
    # Dublin Core record; ``metadata`` is reserved on declarative classes
    dublin_core = db.Column('metadata', db.JSON, nullable=True)

    theme = db.relationship('Theme')

    def to_dict(self):
        return {
            'id': self.id,
            'theme_id': self.theme_id,
            'student_id': self.student_id,
            'document_id': self.document_id,
            'final_document_path': self.final_document_path,
            'pdf_a_path': self.pdf_a_path,
            'file_size': self.file_size,
            'checksum': self.checksum,
            'status': self.status.value,
            'access_level': self.access_level.value,
            'published': self.published,
            'published_at': isoformat_utc(self.published_at),
            'archived_at': isoformat_utc(self.archived_at),
            'archived_by': self.archived_by,
            'metadata': self.dublin_core,
            'created_at': isoformat_utc(self.created_at),
            'updated_at': isoformat_utc(self.updated_at),
        }

    def __repr__(self):
        return f"<Archive theme={self.theme_id} status={self.status}>"


# ------------------------------------------------------------------------------
# Attribution des encadreurs
# ------------------------------------------------------------------------------

class SupervisorAssignment(TimestampMixin, db.Model):
    __tablename__ = "supervisor_assignment"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    student_id = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=False)
    supervisor_id = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    assigned_by = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=False)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=now_utc)
    notes = db.Column(db.Text, nullable=True)

    supervisor = db.relationship('User', foreign_keys=[supervisor_id])

    __table_args__ = (
        # One active row per student, enforced by the database itself
        db.Index(
            'uq_active_supervisor_assignment',
            'student_id',
            unique=True,
            sqlite_where=text('is_active = 1'),
            postgresql_where=text('is_active'),
        ),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'supervisor_id': self.supervisor_id,
            'is_active': self.is_active,
            'assigned_by': self.assigned_by,
            'assigned_at': isoformat_utc(self.assigned_at),
            'notes': self.notes,
            'created_at': isoformat_utc(self.created_at),
            'updated_at': isoformat_utc(self.updated_at),
        }


# ------------------------------------------------------------------------------
# Notifications, paramètres et journal d'activité
# ------------------------------------------------------------------------------

class Notification(db.Model):
    __tablename__ = "notification"
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=False, index=True)
    title = db.Column(db.Text, nullable=False)
    message = db.Column(db.Text, nullable=False)
    severity = db.Column(_enum(NotificationSeverity, 'notification_severity'), nullable=False,
                         default=NotificationSeverity.INFO)
    related_entity_type = db.Column(db.String(40), nullable=True)
    related_entity_id = db.Column(db.String(36), nullable=True)
    read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=now_utc)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'message': self.message,
            'severity': self.severity.value,
            'related_entity_type': self.related_entity_type,
            'related_entity_id': self.related_entity_id,
            'read': self.read,
            'read_at': isoformat_utc(self.read_at),
            'created_at': isoformat_utc(self.created_at),
        }


class SystemSetting(db.Model):
    __tablename__ = "system_setting"
    key = db.Column(db.String(80), primary_key=True)
    value = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc)
    updated_by = db.Column(db.Integer, db.ForeignKey("User.id"), nullable=True)


class ActivityLog(db.Model):
    __tablename__ = "activity_log"
    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=now_utc)
    user_id = db.Column(db.Integer, db.ForeignKey('User.id', name='fk_activity_log_user_id'), nullable=True)
    action = db.Column(db.String(60), nullable=False)
    entity_type = db.Column(db.String(40), nullable=False)
    entity_id = db.Column(db.String(36), nullable=True)
    details = db.Column(db.JSON)
