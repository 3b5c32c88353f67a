"""Request payloads accepted by the JSON API."""
from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Payload(BaseModel):
    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True)


class ThemeSubmission(Payload):
    title: str
    description: str
    objectives: Optional[str] = None
    methodology: Optional[str] = None
    # Admins may submit on behalf of a student
    student_id: Optional[int] = None


class ThemeReview(Payload):
    decision: str
    notes: Optional[str] = None


class ThemeResubmission(Payload):
    title: Optional[str] = None
    description: Optional[str] = None
    objectives: Optional[str] = None
    methodology: Optional[str] = None


class DocumentSubmission(Payload):
    document_type: str
    file_reference: str
    size: Optional[int] = Field(default=None, ge=0)
    mime_type: Optional[str] = None
    title: Optional[str] = None


class DocumentReview(Payload):
    decision: str
    feedback: Optional[str] = None


class MeetingReportFields(Payload):
    meeting_date: Optional[date] = None
    summary: Optional[str] = None
    next_steps: Optional[str] = None
    overall_progress: Optional[int] = Field(default=None, ge=0, le=100)


class MeetingReportCreation(MeetingReportFields):
    theme_id: str


class DepartmentValidation(Payload):
    decision: str
    comments: Optional[str] = None


class NoteCreation(Payload):
    body: str


class PlagiarismRequest(Payload):
    notes: Optional[str] = None


class PlagiarismResult(Payload):
    score: float
    sources_found: int = Field(default=0, ge=0)
    details: Optional[Any] = None


class SupervisorAssignmentRequest(Payload):
    supervisor_id: int
    notes: Optional[str] = None


class JuryDecisionPayload(Payload):
    decision: str
    grade: Optional[float] = None
    mention: Optional[str] = None
    defense_date: Optional[date] = None
    corrections_deadline: Optional[date] = None
    corrections_description: Optional[str] = None
    deliberation_notes: Optional[str] = None


class CorrectionsValidation(Payload):
    validator_id: Optional[int] = None


class ThresholdUpdate(Payload):
    threshold: float


class ArchiveRequest(Payload):
    access_level: Optional[str] = None
