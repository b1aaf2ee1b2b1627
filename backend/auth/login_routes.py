# backend/auth/login_routes.py
from flask import Blueprint, request, jsonify, current_app
from flask_login import login_user, logout_user, login_required, current_user

from backend.models.user import User

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login():
    """
    JSON login for back-office users. Sets the Flask-Login session cookie.
    Body: {"username": "...", "password": "..."}
    """
    data = request.get_json(silent=True) or {}
    username = str(data.get("username") or "").strip()
    password = str(data.get("password") or "")

    if not username or not password:
        return jsonify({"ok": False, "error": "username and password are required"}), 400

    user = User.query.filter_by(username=username).first()
    if not user or not user.check_password(password) or not user.is_active:
        current_app.logger.warning("Failed login for '%s' from %s", username, request.remote_addr)
        return jsonify({"ok": False, "error": "Invalid credentials"}), 401

    login_user(user)
    current_app.logger.info("User %s logged in", user.username)
    return jsonify({"ok": True, "user": {"id": user.id, "username": user.username, "role": user.role}}), 200


@auth_bp.post("/logout")
@login_required
def logout():
    username = current_user.username
    logout_user()
    current_app.logger.info("User %s logged out", username)
    return jsonify({"ok": True}), 200
