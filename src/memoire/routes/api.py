"""JSON API over the workflow engine.

Every view resolves the logged-in user to an engine ``Actor`` and delegates
to one workflow operation. Typed workflow failures become ``{"error",
"message"}`` bodies with the matching HTTP status.
"""
from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from pydantic import ValidationError as PayloadError

from src.config.constants import ADMIN_ROLES
from src.utils.decorator import roles_required
from src.utils.logging_config import get_logger
from ..models import AppRole
from ..workflow import archives, assignments, documents, jury, meeting_reports, notifications, plagiarism, themes
from ..workflow.base import subject_for
from ..workflow.errors import NotFound, WorkflowError
from ..workflow.gate import EntityKind, Transition, ensure_allowed
from . import schemas

logger = get_logger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')


@api_bp.errorhandler(WorkflowError)
def handle_workflow_error(exc):
    logger.warning(
        "Workflow request refused",
        extra={"error": exc.code, "reason": exc.message, "path": request.path,
               "user_id": getattr(current_user, 'id', None)},
    )
    return jsonify(exc.to_dict()), exc.http_status


@api_bp.errorhandler(PayloadError)
def handle_payload_error(exc):
    details = [
        {'field': '.'.join(str(p) for p in err['loc']), 'message': err['msg']}
        for err in exc.errors()
    ]
    return jsonify(error='validation_error', message="Invalid request payload", details=details), 400


def _actor():
    return current_user.actor


def _payload(schema):
    return schema.model_validate(request.get_json(silent=True) or {})


def _fields(model):
    return model.model_dump(exclude_unset=True)


# ---- Thèmes ----

@api_bp.route('/themes', methods=['POST'])
@login_required
def submit_theme():
    data = _payload(schemas.ThemeSubmission)
    theme = themes.submit_theme(_actor(), **_fields(data))
    return jsonify(theme.to_dict()), 201


@api_bp.route('/themes/<theme_id>', methods=['GET'])
@login_required
def get_theme(theme_id):
    return jsonify(themes.get_theme(_actor(), theme_id).to_dict())


@api_bp.route('/themes/<theme_id>/review', methods=['POST'])
@login_required
def review_theme(theme_id):
    data = _payload(schemas.ThemeReview)
    theme = themes.review_theme(_actor(), theme_id, data.decision, data.notes)
    return jsonify(theme.to_dict())


@api_bp.route('/themes/<theme_id>/resubmit', methods=['POST'])
@login_required
def resubmit_theme(theme_id):
    data = _payload(schemas.ThemeResubmission)
    theme = themes.resubmit_theme(_actor(), theme_id, **_fields(data))
    return jsonify(theme.to_dict())


# ---- Documents ----

@api_bp.route('/themes/<theme_id>/documents', methods=['POST'])
@login_required
def submit_document(theme_id):
    data = _payload(schemas.DocumentSubmission)
    document = documents.submit_document(_actor(), theme_id, **_fields(data))
    return jsonify(document.to_dict()), 201


@api_bp.route('/themes/<theme_id>/documents', methods=['GET'])
@login_required
def list_documents(theme_id):
    items = documents.list_documents(_actor(), theme_id, request.args.get('document_type'))
    return jsonify([d.to_dict() for d in items])


@api_bp.route('/documents/<document_id>', methods=['GET'])
@login_required
def get_document(document_id):
    return jsonify(documents.get_document(_actor(), document_id).to_dict())


@api_bp.route('/documents/<document_id>/review', methods=['POST'])
@login_required
def review_document(document_id):
    data = _payload(schemas.DocumentReview)
    document = documents.review_document(_actor(), document_id, data.decision, data.feedback)
    return jsonify(document.to_dict())


# ---- Fiches de suivi ----

@api_bp.route('/meeting-reports/drafts', methods=['POST'])
@login_required
def draft_meeting_report():
    data = _payload(schemas.MeetingReportCreation)
    fields = _fields(data)
    theme_id = fields.pop('theme_id')
    report = meeting_reports.draft_meeting_report(_actor(), theme_id, **fields)
    return jsonify(report.to_dict()), 201


@api_bp.route('/meeting-reports', methods=['POST'])
@login_required
def create_and_submit_meeting_report():
    data = _payload(schemas.MeetingReportCreation)
    fields = _fields(data)
    theme_id = fields.pop('theme_id')
    report = meeting_reports.submit_meeting_report(_actor(), theme_id=theme_id, **fields)
    return jsonify(report.to_dict()), 201


@api_bp.route('/themes/<theme_id>/meeting-reports', methods=['GET'])
@login_required
def list_meeting_reports(theme_id):
    items = meeting_reports.list_meeting_reports(_actor(), theme_id)
    return jsonify([r.to_dict() for r in items])


@api_bp.route('/meeting-reports/<report_id>', methods=['GET'])
@login_required
def get_meeting_report(report_id):
    return jsonify(meeting_reports.get_meeting_report(_actor(), report_id).to_dict())


@api_bp.route('/meeting-reports/<report_id>/submit', methods=['POST'])
@login_required
def submit_meeting_report(report_id):
    data = _payload(schemas.MeetingReportFields)
    report = meeting_reports.submit_meeting_report(_actor(), report_id=report_id, **_fields(data))
    return jsonify(report.to_dict())


@api_bp.route('/meeting-reports/<report_id>/supervisor-validation', methods=['POST'])
@login_required
def validate_meeting_report_by_supervisor(report_id):
    report = meeting_reports.validate_meeting_report_by_supervisor(_actor(), report_id)
    return jsonify(report.to_dict())


@api_bp.route('/meeting-reports/<report_id>/department-validation', methods=['POST'])
@login_required
def validate_meeting_report_by_department_head(report_id):
    data = _payload(schemas.DepartmentValidation)
    report = meeting_reports.validate_meeting_report_by_department_head(
        _actor(), report_id, data.decision, data.comments
    )
    return jsonify(report.to_dict())


@api_bp.route('/meeting-reports/<report_id>/notes', methods=['POST'])
@login_required
def append_meeting_report_note(report_id):
    data = _payload(schemas.NoteCreation)
    note = meeting_reports.append_meeting_report_note(_actor(), report_id, data.body)
    return jsonify(note.to_dict()), 201


# ---- Anti-plagiat ----

@api_bp.route('/documents/<document_id>/plagiarism-checks', methods=['POST'])
@login_required
def request_plagiarism_check(document_id):
    data = _payload(schemas.PlagiarismRequest)
    check = plagiarism.request_plagiarism_check(_actor(), document_id, data.notes)
    return jsonify(check.to_dict()), 201


@api_bp.route('/plagiarism-checks/<check_id>', methods=['GET'])
@login_required
def get_plagiarism_check(check_id):
    return jsonify(plagiarism.get_plagiarism_check(_actor(), check_id).to_dict())


@api_bp.route('/plagiarism-checks/<check_id>/start', methods=['POST'])
@login_required
def start_plagiarism_check(check_id):
    return jsonify(plagiarism.start_plagiarism_check(_actor(), check_id).to_dict())


@api_bp.route('/plagiarism-checks/<check_id>/result', methods=['POST'])
@login_required
def record_plagiarism_result(check_id):
    data = _payload(schemas.PlagiarismResult)
    check = plagiarism.record_plagiarism_result(
        _actor(), check_id, data.score, data.sources_found, data.details
    )
    return jsonify(check.to_dict())


@api_bp.route('/plagiarism-checks/<check_id>/finalize', methods=['POST'])
@login_required
def finalize_plagiarism_check(check_id):
    return jsonify(plagiarism.finalize_plagiarism_check(_actor(), check_id).to_dict())


@api_bp.route('/settings/plagiarism-threshold', methods=['PUT'])
@roles_required(*ADMIN_ROLES)
def update_plagiarism_threshold():
    data = _payload(schemas.ThresholdUpdate)
    setting = plagiarism.update_plagiarism_threshold(_actor(), data.threshold)
    return jsonify(key=setting.key, value=float(setting.value))


# ---- Encadrement ----

@api_bp.route('/students/<int:student_id>/supervisor', methods=['POST'])
@roles_required(AppRole.DEPARTMENT_HEAD.value, *ADMIN_ROLES)
def assign_supervisor(student_id):
    data = _payload(schemas.SupervisorAssignmentRequest)
    assignment = assignments.assign_supervisor(_actor(), student_id, data.supervisor_id, data.notes)
    return jsonify(assignment.to_dict()), 201


@api_bp.route('/students/<int:student_id>/supervisor', methods=['GET'])
@login_required
def get_active_supervisor(student_id):
    ensure_allowed(_actor(), subject_for(EntityKind.SUPERVISOR_ASSIGNMENT, student_id), Transition.VIEW)
    assignment = assignments.get_active_assignment(student_id)
    if assignment is None:
        raise NotFound(f"Student {student_id} has no active supervisor", student_id=student_id)
    return jsonify(assignment.to_dict())


# ---- Jury ----

@api_bp.route('/themes/<theme_id>/jury-decision', methods=['POST'])
@login_required
def record_jury_decision(theme_id):
    data = _payload(schemas.JuryDecisionPayload)
    fields = _fields(data)
    decision = fields.pop('decision')
    record = jury.record_jury_decision(_actor(), theme_id, decision, **fields)
    return jsonify(record.to_dict())


@api_bp.route('/jury-decisions/<decision_id>', methods=['GET'])
@login_required
def get_jury_decision(decision_id):
    return jsonify(jury.get_jury_decision(_actor(), decision_id).to_dict())


@api_bp.route('/jury-decisions/<decision_id>/corrections-validation', methods=['POST'])
@login_required
def validate_corrections(decision_id):
    data = _payload(schemas.CorrectionsValidation)
    record = jury.validate_corrections(_actor(), decision_id, data.validator_id)
    return jsonify(record.to_dict())


# ---- Archivage ----

@api_bp.route('/themes/<theme_id>/archive', methods=['POST'])
@login_required
def submit_archive(theme_id):
    data = _payload(schemas.ArchiveRequest)
    archive = archives.submit_archive(_actor(), theme_id, data.access_level)
    return jsonify(archive.to_dict()), 201


@api_bp.route('/themes/<theme_id>/archive', methods=['GET'])
@login_required
def get_theme_archive(theme_id):
    return jsonify(archives.get_theme_archive(_actor(), theme_id).to_dict())


@api_bp.route('/themes/<theme_id>/archive/validation', methods=['POST'])
@login_required
def archive_thesis(theme_id):
    data = _payload(schemas.ArchiveRequest)
    return jsonify(archives.archive_thesis(_actor(), theme_id, data.access_level).to_dict())


@api_bp.route('/archives/<archive_id>', methods=['GET'])
@login_required
def get_archive(archive_id):
    return jsonify(archives.get_archive(_actor(), archive_id).to_dict())


@api_bp.route('/archives/<archive_id>/publish', methods=['POST'])
@login_required
def publish_archive(archive_id):
    data = _payload(schemas.ArchiveRequest)
    return jsonify(archives.publish_archive(_actor(), archive_id, data.access_level).to_dict())


# ---- Notifications ----

@api_bp.route('/notifications', methods=['GET'])
@login_required
def list_notifications():
    unread_only = request.args.get('unread', '').lower() in ('1', 'true', 'yes')
    items = notifications.list_notifications(_actor(), unread_only)
    return jsonify([n.to_dict() for n in items])


@api_bp.route('/notifications/<notification_id>/read', methods=['POST'])
@login_required
def mark_notification_read(notification_id):
    return jsonify(notifications.mark_notification_read(_actor(), notification_id).to_dict())
