# backend/auth/decorators.py
from functools import wraps

from flask import jsonify
from flask_login import current_user


def roles_required(*roles):
    """401 without a session, 403 when current_user.role is not in ``roles``."""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                return jsonify({"ok": False, "error": "Authentication required"}), 401
            if not current_user.has_role(*roles):
                return jsonify({
                    "ok": False,
                    "error": "Permission denied",
                    "requiredRoles": list(roles),
                }), 403
            return f(*args, **kwargs)
        return wrapped
    return decorator
