# backend/auth/__init__.py
from .login_routes import auth_bp
from .decorators import roles_required

__all__ = ["auth_bp", "roles_required"]
