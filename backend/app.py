# backend/app.py
import logging
import os
import sys

# Ensure project root is on PYTHONPATH when running directly
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Show INFO logs even outside the werkzeug access log
logging.basicConfig(level=logging.INFO)

from flask import Flask
from backend.config import Config

# Extensions
from backend.extensions import db, login_manager, bcrypt, migrate, cors, init_mail, init_mpesa

# Blueprints
from backend.auth.login_routes import auth_bp
from backend.api.routes.order_routes import order_bp
from backend.commands import register_commands
from backend import models as _models  # noqa: F401


def create_app(test_config: dict | None = None, mpesa_opener=None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory=os.path.join(os.path.dirname(__file__), "migrations"))
    login_manager.init_app(app)
    bcrypt.init_app(app)
    init_mail(app)
    init_mpesa(app, opener=mpesa_opener)

    cors.init_app(
        app,
        resources={
            r"/api/*": {
                "origins": app.config.get("CORS_ORIGINS") or [],
                "supports_credentials": True,
            }
        },
    )

    # Register blueprints
    app.register_blueprint(auth_bp)
    app.register_blueprint(order_bp)

    register_commands(app)

    @app.get("/health")
    def health():
        return {"ok": True}, 200

    # Diagnostics: list all routes
    @app.get("/__routes")
    def __routes():
        lines = []
        for r in sorted(app.url_map.iter_rules(), key=lambda x: x.rule):
            methods = ",".join(
                sorted(m for m in r.methods if m in {"GET", "POST", "PUT", "DELETE", "PATCH"})
            )
            lines.append(f"{r.rule:40s} -> {r.endpoint} [{methods}]")
        return "<pre>" + "\n".join(lines) + "</pre>"

    return app


# For gunicorn
app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
