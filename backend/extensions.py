# backend/extensions.py
from __future__ import annotations

import socket
from flask import jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from flask_bcrypt import Bcrypt
from flask_migrate import Migrate
from flask_cors import CORS
from flask_mail import Mail

from backend.api.utils.mpesa import MpesaClient, MpesaConfig

# Keep extension instances in one place to avoid circular imports
db = SQLAlchemy()
login_manager = LoginManager()
bcrypt = Bcrypt()
migrate = Migrate()
cors = CORS()
mail = Mail()


@login_manager.user_loader
def load_user(user_id):
    # Lazy import to avoid circular dependency when loading the model
    from backend.models.user import User
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


@login_manager.unauthorized_handler
def _unauthorized():
    return jsonify({"ok": False, "error": "Authentication required"}), 401


def _coerce_bool(v, default=False) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    return s in ("1", "true", "t", "yes", "y", "on")


def _smtp_host(value) -> str | None:
    """'smtps://mail.example.com:465/' -> 'mail.example.com'"""
    host = str(value or "").strip()
    host = host.split("://", 1)[-1]
    host = host.split("/", 1)[0].split(":", 1)[0]
    return host or None


def _recipient_list(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [addr.strip() for addr in value if addr and addr.strip()]


def mail_settings(cfg) -> tuple[dict, list[str]]:
    """
    Work out the SMTP settings Flask-Mail should see, without touching ``cfg``.
    Returns the corrected values and a note per correction.
    """
    fixed, notes = {}, []

    host = _smtp_host(cfg.get("MAIL_SERVER"))
    if host is None:
        host = "localhost"
        notes.append("no MAIL_SERVER, notifications go to localhost")
    if host != cfg.get("MAIL_SERVER"):
        fixed["MAIL_SERVER"] = host

    # Flask-Mail reads these flags as-is, so "false" from a .env would count as on
    use_ssl = _coerce_bool(cfg.get("MAIL_USE_SSL"))
    use_tls = _coerce_bool(cfg.get("MAIL_USE_TLS"))
    if use_ssl and use_tls:
        use_tls = False
        notes.append("both SSL and STARTTLS requested, keeping SSL")
    fixed["MAIL_USE_SSL"], fixed["MAIL_USE_TLS"] = use_ssl, use_tls

    try:
        port = int(cfg.get("MAIL_PORT"))
    except (TypeError, ValueError):
        port = 465 if use_ssl else 587 if use_tls else 25
        notes.append(f"MAIL_PORT {cfg.get('MAIL_PORT')!r} unusable, using {port}")
    fixed["MAIL_PORT"] = port

    if not cfg.get("MAIL_DEFAULT_SENDER") and cfg.get("MAIL_USERNAME"):
        fixed["MAIL_DEFAULT_SENDER"] = cfg["MAIL_USERNAME"]
        notes.append("MAIL_DEFAULT_SENDER taken from MAIL_USERNAME")

    recipients = _recipient_list(cfg.get("ORDER_NOTIFICATION_EMAILS"))
    fixed["ORDER_NOTIFICATION_EMAILS"] = recipients
    if not recipients:
        notes.append("ORDER_NOTIFICATION_EMAILS empty, operations mails will be skipped")

    return fixed, notes


def _check_smtp_dns(app, host: str, port: int) -> None:
    try:
        if not socket.getaddrinfo(host, port, proto=socket.IPPROTO_TCP):
            app.logger.warning("SMTP host %s resolved to nothing", host)
    except OSError as e:
        app.logger.error("SMTP host %s does not resolve: %s", host, e)


def init_mail(app):
    """
    Bind Flask-Mail once the SMTP settings are coherent. Order e-mails are
    sent from request handlers, so a bad host shows up in the log at boot
    rather than as failed outbox rows later.
    """
    fixed, notes = mail_settings(app.config)
    app.config.update(fixed)
    for note in notes:
        app.logger.warning("Mail config: %s", note)

    if not _coerce_bool(app.config.get("MAIL_SUPPRESS_SEND")):
        _check_smtp_dns(app, app.config["MAIL_SERVER"], app.config["MAIL_PORT"])

    app.logger.info(
        "Mail -> %s:%s ssl=%s tls=%s from=%s, operations=%s",
        app.config["MAIL_SERVER"],
        app.config["MAIL_PORT"],
        app.config["MAIL_USE_SSL"],
        app.config["MAIL_USE_TLS"],
        app.config.get("MAIL_DEFAULT_SENDER"),
        ", ".join(app.config["ORDER_NOTIFICATION_EMAILS"]) or "-",
    )
    mail.init_app(app)


def init_mpesa(app, opener=None, clock=None) -> MpesaClient:
    """
    Build the gateway client from app config once; request code fetches it
    through ``get_mpesa()`` and never reads MPESA_* settings itself.
    """
    config = MpesaConfig.from_mapping(app.config)
    missing = [
        name for name, value in (
            ("MPESA_CONSUMER_KEY", config.consumer_key),
            ("MPESA_CONSUMER_SECRET", config.consumer_secret),
            ("MPESA_BUSINESS_SHORT_CODE", config.short_code),
            ("MPESA_PASSKEY", config.passkey),
            ("MPESA_CALLBACK_URL", config.callback_url),
        ) if not value
    ]
    if missing:
        app.logger.warning("M-Pesa config incomplete, missing: %s", ", ".join(missing))

    client = MpesaClient(config, opener=opener, clock=clock)
    app.extensions["mpesa"] = client
    app.logger.info("M-Pesa client -> base_url=%s short_code=%s", config.base_url, config.short_code)
    return client


def get_mpesa() -> MpesaClient:
    from flask import current_app
    return current_app.extensions["mpesa"]
