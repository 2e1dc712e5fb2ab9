from __future__ import annotations

from flask import Blueprint, abort, current_app, g, jsonify, request

from app.featuremap.db import db_session
from app.featuremap.models import User
from app.featuremap.modules.structure import service, tree, versioning
from app.featuremap.modules.structure.models import Feature, Module
from app.featuremap.rbac import READ, WRITE, require_project_access

bp = Blueprint("structure_api", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u or not u.is_active:
        abort(401)
    return u


def _body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in ("1", "true", "yes")


def _int_arg(name: str) -> int | None:
    raw = (request.args.get(name) or "").strip()
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


def _parent_arg():
    if "parent" not in request.args:
        return service.ANY_PARENT
    raw = (request.args.get("parent") or "").strip()
    return None if raw in ("", "root", "null") else raw


def _module_for(s, module_id: str, level: str, *, include_deleted: bool = False) -> Module:
    _current_user()
    module = service.get_module(s, module_id, include_deleted=include_deleted)
    require_project_access(s, module.project_id, level)
    return module


def _feature_for(s, feature_id: str, level: str, *, include_deleted: bool = False) -> Feature:
    _current_user()
    feature = service.get_feature(s, feature_id, include_deleted=include_deleted)
    require_project_access(s, service.project_id_for_feature(s, feature), level)
    return feature


def _snapshot_response(result: versioning.SnapshotResult):
    return jsonify({"version": service.version_to_dict(result.version), "created": result.created}), (
        201 if result.created else 200
    )


# ---------- Projects ----------
@bp.post("/projects/<project_id>/modules")
def module_create(project_id: str):
    s = db_session()
    u = _current_user()
    require_project_access(s, project_id, WRITE)
    module = service.create_module(s, project_id, _body(), u)
    s.commit()
    return jsonify(service.module_to_dict(module)), 201


@bp.get("/projects/<project_id>/modules")
def module_list(project_id: str):
    s = db_session()
    _current_user()
    require_project_access(s, project_id, READ)

    result = service.list_modules(
        s,
        project_id,
        parent=_parent_arg(),
        q=request.args.get("q"),
        page=_int_arg("page"),
        limit=_int_arg("limit"),
        default_limit=current_app.config["PAGE_SIZE_DEFAULT"],
        max_limit=current_app.config["PAGE_SIZE_MAX"],
    )
    return jsonify(result)


@bp.get("/projects/<project_id>/modules/deleted")
def module_list_deleted(project_id: str):
    s = db_session()
    _current_user()
    require_project_access(s, project_id, READ)
    result = service.list_modules(
        s,
        project_id,
        deleted=True,
        parent=_parent_arg(),
        q=request.args.get("q"),
        page=_int_arg("page"),
        limit=_int_arg("limit"),
        default_limit=current_app.config["PAGE_SIZE_DEFAULT"],
        max_limit=current_app.config["PAGE_SIZE_MAX"],
    )
    return jsonify(result)


@bp.get("/projects/<project_id>/structure")
def project_structure(project_id: str):
    s = db_session()
    _current_user()
    require_project_access(s, project_id, READ)
    return jsonify(tree.build_project_tree(s, project_id))


# ---------- Modules ----------
@bp.get("/modules/<module_id>")
def module_detail(module_id: str):
    s = db_session()
    module = _module_for(s, module_id, READ)
    return jsonify(service.module_detail(s, module))


@bp.patch("/modules/<module_id>")
def module_update(module_id: str):
    s = db_session()
    module = _module_for(s, module_id, WRITE)
    service.update_module(s, module, _body(), g.current_user)
    s.commit()
    return jsonify(service.module_to_dict(module))


@bp.patch("/modules/<module_id>/order")
def module_order(module_id: str):
    s = db_session()
    module = _module_for(s, module_id, WRITE)
    service.move_module_order(s, module, _body().get("direction") or "", g.current_user)
    s.commit()
    return jsonify(service.module_to_dict(module))


@bp.delete("/modules/<module_id>")
def module_delete(module_id: str):
    s = db_session()
    module = _module_for(s, module_id, WRITE)
    result = service.delete_module(s, module, g.current_user, cascade=_flag("cascade"), force=_flag("force"))
    s.commit()
    return jsonify(result)


@bp.patch("/modules/<module_id>/restore")
def module_restore(module_id: str):
    s = db_session()
    module = _module_for(s, module_id, WRITE, include_deleted=True)
    result = service.restore_module(s, module, g.current_user)
    s.commit()
    return jsonify(result)


@bp.get("/modules/<module_id>/structure")
def module_structure(module_id: str):
    s = db_session()
    module = _module_for(s, module_id, READ)
    if (request.args.get("view") or "").strip().lower() == "published":
        return jsonify(versioning.resolve_published_tree(s, module))
    return jsonify(tree.build_module_tree(s, module))


@bp.post("/modules/<module_id>/snapshot")
def module_snapshot(module_id: str):
    s = db_session()
    module = _module_for(s, module_id, WRITE)
    result = service.snapshot_module(s, module, g.current_user, _body().get("changelog"))
    s.commit()
    return _snapshot_response(result)


@bp.post("/modules/<module_id>/rollback/<version_number>")
def module_rollback(module_id: str, version_number: str):
    s = db_session()
    module = _module_for(s, module_id, WRITE)
    result = service.rollback_module(s, module, version_number, g.current_user, _body().get("changelog"))
    s.commit()
    return _snapshot_response(result)


@bp.post("/modules/<module_id>/publish/<version_number>")
def module_publish(module_id: str, version_number: str):
    s = db_session()
    module = _module_for(s, module_id, WRITE)
    ver = service.publish_module(s, module, version_number, g.current_user)
    s.commit()
    return jsonify({"module_id": module.id, "published_version": service.version_summary(ver)})


@bp.get("/modules/<module_id>/versions")
def module_versions(module_id: str):
    s = db_session()
    module = _module_for(s, module_id, READ)
    versions = versioning.list_module_versions(s, module.id)
    return jsonify({"items": [service.version_to_dict(v) for v in versions]})


# ---------- Features ----------
@bp.post("/modules/<module_id>/features")
def feature_create(module_id: str):
    s = db_session()
    module = _module_for(s, module_id, WRITE)
    feature = service.create_feature(s, module, _body(), g.current_user)
    s.commit()
    return jsonify(service.feature_to_dict(feature)), 201


@bp.get("/modules/<module_id>/features")
def feature_list(module_id: str):
    s = db_session()
    module = _module_for(s, module_id, READ)
    result = service.list_features(
        s,
        module,
        q=request.args.get("q"),
        page=_int_arg("page"),
        limit=_int_arg("limit"),
        default_limit=current_app.config["PAGE_SIZE_DEFAULT"],
        max_limit=current_app.config["PAGE_SIZE_MAX"],
    )
    return jsonify(result)


@bp.get("/features/<feature_id>")
def feature_detail(feature_id: str):
    s = db_session()
    feature = _feature_for(s, feature_id, READ)
    return jsonify(service.feature_detail(s, feature))


@bp.patch("/features/<feature_id>")
def feature_update(feature_id: str):
    s = db_session()
    feature = _feature_for(s, feature_id, WRITE)
    service.update_feature(s, feature, _body(), g.current_user)
    s.commit()
    return jsonify(service.feature_to_dict(feature))


@bp.patch("/features/<feature_id>/order")
def feature_order(feature_id: str):
    s = db_session()
    feature = _feature_for(s, feature_id, WRITE)
    service.move_feature_order(s, feature, _body().get("direction") or "", g.current_user)
    s.commit()
    return jsonify(service.feature_to_dict(feature))


@bp.delete("/features/<feature_id>")
def feature_delete(feature_id: str):
    s = db_session()
    feature = _feature_for(s, feature_id, WRITE)
    result = service.delete_feature(s, feature, g.current_user, force=_flag("force"))
    s.commit()
    return jsonify(result)


@bp.patch("/features/<feature_id>/restore")
def feature_restore(feature_id: str):
    s = db_session()
    feature = _feature_for(s, feature_id, WRITE, include_deleted=True)
    result = service.restore_feature(s, feature, g.current_user)
    s.commit()
    return jsonify(result)


@bp.post("/features/<feature_id>/snapshot")
def feature_snapshot(feature_id: str):
    s = db_session()
    feature = _feature_for(s, feature_id, WRITE)
    result = service.snapshot_feature(s, feature, g.current_user, _body().get("changelog"))
    s.commit()
    return _snapshot_response(result)


@bp.post("/features/<feature_id>/rollback/<version_number>")
def feature_rollback(feature_id: str, version_number: str):
    s = db_session()
    feature = _feature_for(s, feature_id, WRITE)
    result = service.rollback_feature(s, feature, version_number, g.current_user, _body().get("changelog"))
    s.commit()
    return _snapshot_response(result)


@bp.post("/features/<feature_id>/publish/<version_number>")
def feature_publish(feature_id: str, version_number: str):
    s = db_session()
    feature = _feature_for(s, feature_id, WRITE)
    ver = service.publish_feature(s, feature, version_number, g.current_user)
    s.commit()
    return jsonify({"feature_id": feature.id, "published_version": service.version_summary(ver)})


@bp.get("/features/<feature_id>/versions")
def feature_versions(feature_id: str):
    s = db_session()
    feature = _feature_for(s, feature_id, READ)
    versions = versioning.list_feature_versions(s, feature.id)
    return jsonify({"items": [service.version_to_dict(v) for v in versions]})
