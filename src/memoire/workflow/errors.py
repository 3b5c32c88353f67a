"""Typed failures returned by every workflow operation."""

from src.config.constants import CONFLICT_MESSAGE


class WorkflowError(Exception):
    code = 'workflow_error'
    http_status = 400

    def __init__(self, message=None, **context):
        self.message = message or self.default_message()
        self.context = context
        super().__init__(self.message)

    def default_message(self):
        return self.code.replace('_', ' ')

    def to_dict(self):
        payload = {'error': self.code, 'message': self.message}
        if self.context:
            payload['context'] = self.context
        return payload


class Unauthorized(WorkflowError):
    """The role gate denied the actor."""
    code = 'unauthorized'
    http_status = 403


class InvalidTransition(WorkflowError):
    """The entity's current status does not allow the requested transition."""
    code = 'invalid_transition'
    http_status = 409


class PreconditionNotMet(WorkflowError):
    code = 'precondition_not_met'
    http_status = 422


class ConflictingUpdate(WorkflowError):
    """A conditional write lost the race against a concurrent transition."""
    code = 'conflicting_update'
    http_status = 409

    def default_message(self):
        return CONFLICT_MESSAGE


class NotFound(WorkflowError):
    code = 'not_found'
    http_status = 404


class ValidationError(WorkflowError):
    code = 'validation_error'
    http_status = 400
