import os

from flask import Flask, g, has_request_context, session
from supabase import create_client

from config.report import DEFAULT_TIMEZONE
from megg.cancellation import CancellationToken
from megg.timestamps import coerce_policy

from .auth.routes import auth_bp
from .main.routes import main_bp
from .profile.routes import profile_bp


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def create_app():
    app = Flask(
        __name__,
        template_folder="../templates",
        static_folder="../static",
    )
    app.secret_key = os.environ["SECRET_KEY"]

    supabase = create_client(
        os.environ["SUPABASE_URL"],
        os.environ["SUPABASE_SERVICE_KEY"],
    )
    app.config["SUPABASE"] = supabase
    app.config["SUPABASE_URL"] = os.environ["SUPABASE_URL"]
    app.config["STORAGE_BUCKET"] = os.environ.get("SUPABASE_STORAGE_BUCKET", "megg")

    app.config["LOCAL_TIMEZONE"] = os.environ.get("LOCAL_TIMEZONE", DEFAULT_TIMEZONE)
    app.config["INVALID_TIMESTAMP_POLICY"] = coerce_policy(
        os.environ.get("INVALID_TIMESTAMP_POLICY")
    )
    timeout = os.environ.get("REPORT_TIMEOUT_SECONDS")
    app.config["REPORT_TIMEOUT_SECONDS"] = float(timeout) if timeout else None

    app.config["EMAIL_USER"] = os.environ.get("EMAIL_USER")
    app.config["EMAIL_PASSWORD"] = os.environ.get("EMAIL_PASSWORD")
    app.config["SMTP_HOST"] = os.environ.get("SMTP_HOST", "smtp.gmail.com")
    app.config["SMTP_PORT"] = int(os.environ.get("SMTP_PORT", "587"))
    app.config["APP_URL"] = os.environ.get("APP_URL") or os.environ.get(
        "NEXT_PUBLIC_APP_URL"
    )
    app.config["ENABLE_SEED"] = _env_flag("ENABLE_SEED")
    if os.environ.get("WKHTMLTOPDF_CMD"):
        app.config["WKHTMLTOPDF_CMD"] = os.environ["WKHTMLTOPDF_CMD"]

    app.register_blueprint(auth_bp)
    app.register_blueprint(main_bp)
    app.register_blueprint(profile_bp)

    @app.before_request
    def open_cancellation_token():
        g.cancel_token = CancellationToken(app.config.get("REPORT_TIMEOUT_SECONDS"))

    @app.teardown_request
    def close_cancellation_token(exc):
        token = g.pop("cancel_token", None)
        if token is not None:
            token.cancel("closed")

    @app.context_processor
    def inject_user_context():
        if not has_request_context():
            return {}
        return {
            "username": session.get("username"),
            "account_id": session.get("account_id"),
            "user_id": session.get("user_id"),
        }

    return app