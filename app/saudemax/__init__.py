import logging
from datetime import timedelta

from flask import Flask, g, render_template, request, session
from dotenv import load_dotenv

import app.saudemax.models  # noqa: F401  (registers every mapped table)
from app.saudemax.config import load_config
from app.saudemax.db import init_db, teardown_db_session
from app.saudemax.routes import bp as routes_bp
from app.saudemax.auth import bp as auth_bp, load_current_user
from app.saudemax.admin import bp as admin_bp
from app.saudemax.modules.affiliates.admin import bp as affiliates_bp
from app.saudemax.modules.affiliates.api import bp as affiliate_api_bp
from app.saudemax.modules.commission_rules.admin import bp as commission_rules_bp
from app.saudemax.modules.members.admin import bp as members_bp

_SKIP_PREFIXES = ("/static/", "/health", "/healthz")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.saudemax.security import ensure_csrf_token, validate_csrf
    from app.saudemax import status as status_helpers

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.saudemax.rbac import user_has_permission, user_has_role

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        def has_role(key: str) -> bool:
            return user_has_role(getattr(g, "current_user", None), key)

        return {
            "has_perm": has_perm,
            "has_role": has_role,
            "current_user": getattr(g, "current_user", None),
            "impersonator": getattr(g, "impersonator", None),
        }

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("money")
    def _money_filter(value) -> str:
        try:
            return f"${float(value or 0):,.2f}"
        except (TypeError, ValueError):
            return "$0.00"

    app.add_template_filter(status_helpers.status_class, "status_class")
    app.add_template_filter(status_helpers.status_icon, "status_icon")
    app.add_template_filter(status_helpers.status_text, "status_text")

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_SKIP_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout and the bearer-authenticated automation API carry no form token
            if (request.endpoint or "").startswith("auth."):
                return None
            if request.path.startswith("/api/automation"):
                return None
            if not validate_csrf(request):
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("AUTOMATION_API_KEY"):
            app.logger.warning("AUTOMATION_API_KEY is not set; /api/automation will reject every call.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            try:
                from app.saudemax.storage import S3Storage, storage_from_config

                storage = storage_from_config(app.config)
                if isinstance(storage, S3Storage):
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except Exception as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(affiliates_bp)
    app.register_blueprint(affiliate_api_bp)
    app.register_blueprint(commission_rules_bp, url_prefix="/admin")
    app.register_blueprint(members_bp)

    def _load_user_wrapper():
        if request.path.startswith(_SKIP_PREFIXES):
            g.current_user = None
            g.impersonator = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        if request.path.startswith("/api/"):
            return {"error": "Not found"}, 404
        return render_template("errors/404.html"), 404

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        if request.path.startswith("/api/"):
            return {"error": "Internal server error"}, 500
        return render_template("errors/500.html"), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        from flask import flash, redirect, url_for

        flash("File too large. Maximum size is 10MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("routes.index")), 302

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
