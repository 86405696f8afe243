import atexit
import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, request
from werkzeug.exceptions import HTTPException

from app.pms.config import load_config
from app.pms.db import init_db, teardown_db_session
from app.pms.models import Base  # noqa: F401  (registers all tables before the blueprints load)
from app.pms.errors import LifecycleError
from app.pms.events import EventBus
from app.pms.routes import bp as routes_bp
from app.pms.auth import bp as auth_bp, load_current_actor
from app.pms.admin import bp as admin_bp
from app.pms.modules.actors.admin import bp as actors_bp
from app.pms.modules.actors.service import ActorAdministration
from app.pms.modules.notifications.admin import bp as notifications_bp
from app.pms.modules.notifications.service import NotificationDispatcher
from app.pms.modules.records.admin import bp as records_bp
from app.pms.modules.records.service import RecordLifecycle


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())

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
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())
                dispatcher = app.extensions.get("pms.notifications")
                if dispatcher:
                    dispatcher.reset_after_fork()

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Services. Notification dispatch is one independent bus subscriber among any others;
    # it queues delivery on its own worker pool.
    sessions = app.extensions["sqlalchemy_sessionmaker"]
    bus = EventBus()
    dispatcher = NotificationDispatcher.from_config(sessions, app.config)
    bus.subscribe(dispatcher.handle)
    atexit.register(dispatcher.shutdown)
    app.extensions["pms.bus"] = bus
    app.extensions["pms.notifications"] = dispatcher
    app.extensions["pms.lifecycle"] = RecordLifecycle.from_config(sessions, bus, app.config)
    app.extensions["pms.actors"] = ActorAdministration.from_config(sessions, bus, app.config)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(records_bp)
    app.register_blueprint(notifications_bp, url_prefix="/notifications")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(actors_bp, url_prefix="/admin")

    app.before_request(load_current_actor)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(LifecycleError)
    def _err_lifecycle(e: LifecycleError):  # type: ignore[no-redef]
        if e.http_status == 403:
            app.logger.warning(
                "Forbidden: code=%s actor_id=%s path=%s missing_action=%s request_id=%s",
                e.code,
                getattr(getattr(g, "actor", None), "id", None),
                request.path,
                getattr(g, "missing_action", None),
                getattr(g, "request_id", None),
            )
        elif e.http_status >= 500:
            app.logger.error("Store unavailable (request_id=%s): %s", getattr(g, "request_id", None), e.__cause__)
        return {"error": e.to_dict()}, e.http_status

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return {
            "error": {
                "code": (e.name or "error").lower().replace(" ", "_"),
                "message": e.description,
                "retry": "do_not_retry",
            }
        }, e.code or 500

    @app.errorhandler(Exception)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return {"error": {"code": "internal", "message": "Internal server error.", "retry": "retry_later"}}, 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
