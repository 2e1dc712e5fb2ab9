import logging
from datetime import timedelta

from flask import Flask, g, jsonify, request
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect
from werkzeug.exceptions import HTTPException

from app.featuremap.config import load_config
from app.featuremap.db import init_db, teardown_db_session
from app.featuremap.errors import IntegrityError, StructureError
from app.featuremap.routes import bp as routes_bp
from app.featuremap.auth import load_current_user
from app.featuremap.modules.structure.admin import bp as structure_api_bp


# Columns the code reads; an older schema missing any of them needs `alembic upgrade head`.
_EXPECTED_COLUMNS = {
    "modules": ("parent_module_id", "sort_order", "published_version_id", "deleted_at", "deleted_by_user_id"),
    "features": ("sort_order", "published_version_id", "deleted_at", "deleted_by_user_id"),
    "module_versions": ("children_pins", "feature_pins", "content_hash", "is_rollback"),
    "feature_versions": ("content_hash", "is_rollback"),
}


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.json.sort_keys = False

    logging.basicConfig(level=app.config["LOG_LEVEL"])
    app.logger.setLevel(app.config["LOG_LEVEL"])

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

    app.register_blueprint(routes_bp)
    app.register_blueprint(structure_api_bp, url_prefix="/api")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    # Schema drift: only tables that already exist are checked (a fresh DB is created later).
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            insp = sa_inspect(app.extensions["sqlalchemy_engine"])
            for table, columns in _EXPECTED_COLUMNS.items():
                if not insp.has_table(table):
                    continue
                present = {c["name"] for c in insp.get_columns(table)}
                missing.extend(f"{table}.{col}" for col in columns if col not in present)
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)
        if missing:
            app.config["_schema_health_missing"] = missing
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.before_request
    def _schema_health_guardrail():
        missing = app.config.get("_schema_health_missing")
        if missing and request.path.startswith("/api"):
            return jsonify({"error": "schema_out_of_date", "message": "Database schema is out of date.", "details": {"missing": missing}}), 500
        return None

    @app.errorhandler(StructureError)
    def _structure_error(e: StructureError):
        rid = getattr(g, "request_id", None)
        if isinstance(e, IntegrityError):
            app.logger.error("Integrity error (request_id=%s): %s %s", rid, e.message, e.details)
        else:
            app.logger.info("%s (request_id=%s): %s", e.kind, rid, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        if e.code == 403:
            missing = getattr(g, "missing_permission", None)
            if missing:
                app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        kind = (e.name or "error").lower().replace(" ", "_")
        return jsonify({"error": kind, "message": e.description}), e.code

    @app.errorhandler(500)
    def _err_500(e):
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal_error", "message": "Internal server error"}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
