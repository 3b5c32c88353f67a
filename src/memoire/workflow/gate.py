"""
Role gate: the single authorization predicate of the workflow engine.

``authorize(actor, subject, transition)`` is a pure function. It performs no
database access and has no side effects. Everything it needs is carried by
the ``Actor`` (who is acting) and the ``Subject`` (a snapshot of the
entity's ownership data, with the active supervisor already resolved).

Rules, by priority:
  a. admin / super_admin may perform any transition.
  b. a student may submit or resubmit their own theme, document or meeting
     report, hand in their own thesis for archiving, and view their own
     records. Students never approve or validate.
  c. a supervisor may review a theme, document or meeting report (and run
     plagiarism checks on its documents) only while they are the active
     supervisor of the student.
  d. a department head may validate a meeting report of a student from
     their department, and only once the supervisor has validated it. They
     may also assign supervisors within their department.
  e. a jury member may write jury decision fields only for locked themes or
     themes whose final version is under review or approved. They archive
     and publish the thesis of a locked theme.
Anything not matched above is denied.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from src.config.constants import ADMIN_ROLES
from src.utils.logging_config import get_logger
from .errors import PreconditionNotMet, Unauthorized

logger = get_logger(__name__)

STUDENT = 'student'
SUPERVISOR = 'supervisor'
DEPARTMENT_HEAD = 'department_head'
JURY = 'jury'


class EntityKind(str, enum.Enum):
    THEME = 'theme'
    DOCUMENT = 'document'
    MEETING_REPORT = 'meeting_report'
    PLAGIARISM_CHECK = 'plagiarism_check'
    JURY_DECISION = 'jury_decision'
    SUPERVISOR_ASSIGNMENT = 'supervisor_assignment'
    ARCHIVE = 'archive'
    SETTING = 'setting'


class Transition(str, enum.Enum):
    VIEW = 'view'
    SUBMIT = 'submit'
    RESUBMIT = 'resubmit'
    DRAFT = 'draft'
    APPEND_NOTE = 'append_note'
    REVIEW = 'review'
    SUPERVISOR_VALIDATE = 'supervisor_validate'
    DEPARTMENT_VALIDATE = 'department_validate'
    REQUEST_CHECK = 'request_check'
    START_CHECK = 'start_check'
    RECORD_RESULT = 'record_result'
    FINALIZE_CHECK = 'finalize_check'
    LOCK = 'lock'
    RECORD_DECISION = 'record_decision'
    VALIDATE_CORRECTIONS = 'validate_corrections'
    ARCHIVE = 'archive'
    PUBLISH = 'publish'
    ASSIGN = 'assign'
    CONFIGURE = 'configure'


def _role_name(role) -> str:
    return getattr(role, 'value', role)


@dataclass(frozen=True)
class Actor:
    """
    Minimal identity shape for gate decisions.

    Fields
    ------
    id : int
        The acting user's id.
    roles : frozenset[str]
        Application roles held by the user.
    department_id : Optional[int]
        Department the user belongs to (used by department-head rules).
    """
    id: int
    roles: FrozenSet[str] = field(default_factory=frozenset)
    department_id: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, 'roles', frozenset(_role_name(r) for r in self.roles))

    def has_role(self, *roles) -> bool:
        return any(_role_name(r) in self.roles for r in roles)

    @property
    def is_admin(self) -> bool:
        return self.has_role(*ADMIN_ROLES)


@dataclass(frozen=True)
class Subject:
    """Snapshot of the ownership data of the entity being acted upon."""
    kind: EntityKind
    student_id: Optional[int] = None
    student_department_id: Optional[int] = None
    active_supervisor_id: Optional[int] = None
    supervisor_validated: bool = False
    theme_status: Optional[str] = None
    final_document_ready: bool = False


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ''
    # True when the actor has authority but the entity is not ready yet
    precondition: bool = False

    def __bool__(self):
        return self.allowed


ALLOWED = Decision(True)

_STUDENT_OWNED = {EntityKind.THEME, EntityKind.DOCUMENT, EntityKind.MEETING_REPORT, EntityKind.ARCHIVE}
_STUDENT_WRITES = {Transition.SUBMIT, Transition.RESUBMIT, Transition.DRAFT, Transition.APPEND_NOTE}

_SUPERVISED = {EntityKind.THEME, EntityKind.DOCUMENT, EntityKind.MEETING_REPORT, EntityKind.PLAGIARISM_CHECK}
_SUPERVISOR_WRITES = {
    EntityKind.THEME: {Transition.REVIEW},
    EntityKind.DOCUMENT: {Transition.REVIEW},
    EntityKind.MEETING_REPORT: {
        Transition.DRAFT, Transition.SUBMIT, Transition.SUPERVISOR_VALIDATE, Transition.APPEND_NOTE,
    },
    EntityKind.PLAGIARISM_CHECK: {
        Transition.REQUEST_CHECK, Transition.START_CHECK, Transition.RECORD_RESULT, Transition.FINALIZE_CHECK,
    },
}

_JURY_WRITES = {Transition.RECORD_DECISION, Transition.VALIDATE_CORRECTIONS}
_ARCHIVIST_WRITES = {Transition.ARCHIVE, Transition.PUBLISH}


def deny(reason: str, precondition: bool = False) -> Decision:
    return Decision(False, reason, precondition)


def _same_department(actor: Actor, subject: Subject) -> bool:
    return actor.department_id is not None and actor.department_id == subject.student_department_id


def _student_rule(actor: Actor, subject: Subject, transition: Transition) -> Optional[Decision]:
    owns = subject.student_id is not None and subject.student_id == actor.id
    if transition is Transition.VIEW:
        return ALLOWED if owns else deny("students may only view their own records")
    if subject.kind in _STUDENT_OWNED and transition in _STUDENT_WRITES:
        return ALLOWED if owns else deny("students may only submit their own work")
    return None


def _supervisor_rule(actor: Actor, subject: Subject, transition: Transition) -> Optional[Decision]:
    is_assigned = subject.active_supervisor_id is not None and subject.active_supervisor_id == actor.id
    if transition is Transition.VIEW:
        return ALLOWED if is_assigned else deny("not the active supervisor of this student")
    if subject.kind in _SUPERVISED and transition in _SUPERVISOR_WRITES[subject.kind]:
        return ALLOWED if is_assigned else deny("not the active supervisor of this student")
    return None


def _department_head_rule(actor: Actor, subject: Subject, transition: Transition) -> Optional[Decision]:
    handled = (
        transition is Transition.VIEW
        or (subject.kind is EntityKind.MEETING_REPORT
            and transition in (Transition.DEPARTMENT_VALIDATE, Transition.APPEND_NOTE))
        or (subject.kind is EntityKind.SUPERVISOR_ASSIGNMENT and transition is Transition.ASSIGN)
    )
    if not handled:
        return None
    if not _same_department(actor, subject):
        return deny("student belongs to another department")
    if transition is Transition.DEPARTMENT_VALIDATE and not subject.supervisor_validated:
        return deny("the supervisor has not validated this report yet", precondition=True)
    return ALLOWED


def _jury_rule(actor: Actor, subject: Subject, transition: Transition) -> Optional[Decision]:
    if transition is Transition.VIEW:
        return ALLOWED
    if subject.kind is EntityKind.ARCHIVE and transition in _ARCHIVIST_WRITES:
        if subject.theme_status == 'locked':
            return ALLOWED
        return deny("only the thesis of a locked theme can be archived", precondition=True)
    if subject.kind is not EntityKind.JURY_DECISION or transition not in _JURY_WRITES:
        return None
    if subject.theme_status == 'locked':
        return ALLOWED
    if subject.theme_status == 'approved' and subject.final_document_ready:
        return ALLOWED
    return deny("the thesis has not reached its final stage", precondition=True)


_RULES = (
    (STUDENT, _student_rule),
    (SUPERVISOR, _supervisor_rule),
    (DEPARTMENT_HEAD, _department_head_rule),
    (JURY, _jury_rule),
)


def authorize(actor: Actor, subject: Subject, transition: Transition) -> Decision:
    """Return ``ALLOWED`` or a ``Decision`` explaining the denial."""
    if actor.is_admin:
        return ALLOWED

    denials = []
    for role, rule in _RULES:
        if not actor.has_role(role):
            continue
        decision = rule(actor, subject, transition)
        if decision is None:
            continue
        if decision.allowed:
            return decision
        denials.append(decision)

    # A precondition denial means some held role has authority over the entity
    for decision in denials:
        if decision.precondition:
            return decision
    if denials:
        return denials[0]
    return deny(
        f"no rule allows roles {sorted(actor.roles) or ['none']} to "
        f"{transition.value} a {subject.kind.value}"
    )


def ensure_allowed(actor: Actor, subject: Subject, transition: Transition) -> None:
    """Raise the typed failure matching a denial; return quietly when allowed."""
    decision = authorize(actor, subject, transition)
    if decision:
        return
    logger.warning(
        "Transition denied",
        extra={"actor_id": actor.id, "entity_kind": subject.kind.value, "student_id": subject.student_id,
               "transition": transition.value, "reason": decision.reason},
    )
    if decision.precondition:
        raise PreconditionNotMet(decision.reason, transition=transition.value)
    raise Unauthorized(decision.reason, transition=transition.value)
