import logging
import os
from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv

from app.backoffice.config import load_config
from app.backoffice.db import init_db, init_mis_engine, teardown_db_session
from app.backoffice.errors import BackofficeError
from app.backoffice.routes import bp as routes_bp
from app.backoffice.auth import bp as auth_bp, load_current_actor
from app.backoffice.modules.scheduled_lists.admin import bp as scheduled_lists_bp


def _init_list_refresh(app: Flask) -> None:
    from app.backoffice.modules.scheduled_lists.mis_source import MisSource
    from app.backoffice.modules.scheduled_lists.scheduler import ListRefreshScheduler

    mis_engine = init_mis_engine(app)
    if mis_engine is None:
        app.logger.warning("MIS_DATABASE_URL not set; MIS fetch and list refresh are disabled.")
        return
    source = MisSource(mis_engine, timeout_seconds=float(app.config["MIS_FETCH_TIMEOUT_SECONDS"]))
    scheduler = ListRefreshScheduler(
        app.extensions["sqlalchemy_sessionmaker"],
        source,
        interval_seconds=app.config["LIST_REFRESH_INTERVAL_SECONDS"],
    )
    app.extensions["mis_source"] = source
    app.extensions["list_refresh_scheduler"] = scheduler
    if app.config.get("LIST_REFRESH_ENABLED"):
        scheduler.start()


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    logging.basicConfig(
        level=getattr(logging, app.config.get("LOG_LEVEL") or "INFO", logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # CSRF protection (minimal)
    from app.backoffice.security import ensure_csrf_token, is_csrf_exempt, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if is_csrf_exempt(request):
                return None
            if not validate_csrf(request):
                return jsonify({"error": "CSRF token missing or invalid."}), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                for key in ("sqlalchemy_engine", "mis_engine"):
                    engine = app.extensions.get(key)
                    if engine:
                        engine.dispose()
                app.logger.info("Disposed DB engines after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()
    _init_list_refresh(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(scheduled_lists_bp, url_prefix="/admin")

    def _load_actor_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            g.current_customer = None
            return None
        return load_current_actor()

    app.before_request(_load_actor_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(BackofficeError)
    def _err_backoffice(e: BackofficeError):  # type: ignore[no-redef]
        if e.status_code >= 500:
            app.logger.warning("%s (request_id=%s): %s", type(e).__name__, getattr(g, "request_id", None), e.message)
        return jsonify({"error": e.message or type(e).__name__}), e.status_code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(401)
    def _err_401(e):  # type: ignore[no-redef]
        return jsonify({"error": "Login required"}), 401

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"error": "Forbidden", "missing_permission": missing}), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "Not found"}), 404

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
