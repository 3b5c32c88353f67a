# decorators.py
from functools import wraps
from flask import jsonify, request
from flask_login import current_user, login_required

from .logging_config import get_logger

logger = get_logger(__name__)


def roles_required(*required_roles):
    """
    Decorator to restrict an API view to users with any of the specified roles.
    Answers with a JSON 403 instead of redirecting, since every caller is an API client.
    """
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            user_role = getattr(current_user, 'role', None)
            if user_role not in required_roles:
                logger.warning(
                    "Role check failed",
                    extra={"user_id": current_user.id, "role": user_role, "path": request.path},
                )
                return jsonify(
                    error='unauthorized',
                    message="You do not have permission to perform this action.",
                ), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator
