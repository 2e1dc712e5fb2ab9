from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select

from app.featuremap.audit import record_event
from app.featuremap.errors import BadRequest, NotFound
from app.featuremap.modules.structure import lifecycle, ordering, versioning
from app.featuremap.modules.structure.models import (
    FEATURE_PRIORITIES,
    FEATURE_STATUSES,
    Feature,
    FeatureVersion,
    Module,
    ModuleVersion,
)
from app.featuremap.modules.structure.ordering import FEATURE, MODULE, Scope

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.featuremap.models import User


MAX_NAME_LENGTH = 120
MAX_TEXT_LENGTH = 2000

ANY_PARENT = object()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _clean_text(value: str | None) -> str | None:
    return (value or "").strip() or None


def _raise_if_errors(errors: list[str]) -> None:
    if errors:
        raise BadRequest("; ".join(errors), errors=errors)


def clamp_page_limit(page: int | None, limit: int | None, *, default: int = 20, maximum: int = 100) -> tuple[int, int, int]:
    """Returns (page, limit, offset) with page >= 1 and 1 <= limit <= maximum."""
    safe_limit = min(max(limit or default, 1), maximum)
    safe_page = max(page or 1, 1)
    return safe_page, safe_limit, (safe_page - 1) * safe_limit


def parse_version_number(raw: Any) -> int:
    try:
        n = int(raw)
    except (TypeError, ValueError):
        raise BadRequest("version_number must be a positive integer")
    if n < 1 or isinstance(raw, bool):
        raise BadRequest("version_number must be a positive integer")
    return n


# ---------- validation ----------
def _validate_common(payload: dict, *, partial: bool) -> list[str]:
    errors = []
    if not partial or "name" in payload:
        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            errors.append("Name is required.")
        elif len(name.strip()) > MAX_NAME_LENGTH:
            errors.append(f"Name must be at most {MAX_NAME_LENGTH} characters.")
    description = payload.get("description")
    if description is not None:
        if not isinstance(description, str):
            errors.append("Description must be a string.")
        elif len(description) > MAX_TEXT_LENGTH:
            errors.append(f"Description must be at most {MAX_TEXT_LENGTH} characters.")
    return errors


def validate_module_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = _validate_common(payload, partial=partial)
    if "is_root" in payload and not isinstance(payload["is_root"], bool):
        errors.append("is_root must be a boolean.")
    parent = payload.get("parent_module_id")
    if parent is not None and not isinstance(parent, str):
        errors.append("parent_module_id must be a string or null.")
    return errors


def validate_feature_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = _validate_common(payload, partial=partial)
    priority = payload.get("priority")
    if priority is not None and priority not in FEATURE_PRIORITIES:
        errors.append(f"Invalid priority. Must be one of: {', '.join(FEATURE_PRIORITIES)}")
    if "status" in payload and payload["status"] is not None and payload["status"] not in FEATURE_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(FEATURE_STATUSES)}")
    if "module_id" in payload and (not isinstance(payload["module_id"], str) or not payload["module_id"].strip()):
        errors.append("module_id must be a non-empty string.")
    return errors


def validate_changelog(changelog: Any) -> str | None:
    if changelog is None:
        return None
    if not isinstance(changelog, str):
        raise BadRequest("changelog must be a string")
    if len(changelog) > MAX_TEXT_LENGTH:
        raise BadRequest(f"changelog must be at most {MAX_TEXT_LENGTH} characters")
    return changelog.strip() or None


# ---------- serialization ----------
def module_to_dict(m: Module) -> dict[str, Any]:
    return {
        "id": m.id,
        "project_id": m.project_id,
        "parent_module_id": m.parent_module_id,
        "name": m.name,
        "description": m.description,
        "is_root": m.is_root,
        "sort_order": m.sort_order,
        "published_version_id": m.published_version_id,
        "created_at": _iso(m.created_at),
        "updated_at": _iso(m.updated_at),
        "last_modified_by_user_id": m.last_modified_by_user_id,
        "deleted_at": _iso(m.deleted_at),
        "deleted_by_user_id": m.deleted_by_user_id,
    }


def feature_to_dict(f: Feature) -> dict[str, Any]:
    return {
        "id": f.id,
        "module_id": f.module_id,
        "name": f.name,
        "description": f.description,
        "priority": f.priority,
        "status": f.status,
        "sort_order": f.sort_order,
        "published_version_id": f.published_version_id,
        "created_at": _iso(f.created_at),
        "updated_at": _iso(f.updated_at),
        "last_modified_by_user_id": f.last_modified_by_user_id,
        "deleted_at": _iso(f.deleted_at),
        "deleted_by_user_id": f.deleted_by_user_id,
    }


def version_summary(v: ModuleVersion | FeatureVersion) -> dict[str, Any]:
    return {
        "id": v.id,
        "version_number": v.version_number,
        "changelog": v.changelog,
        "is_rollback": v.is_rollback,
        "created_at": _iso(v.created_at),
        "created_by_user_id": v.created_by_user_id,
    }


def version_to_dict(v: ModuleVersion | FeatureVersion) -> dict[str, Any]:
    out = version_summary(v)
    out.update({"name": v.name, "description": v.description, "content_hash": v.content_hash})
    if isinstance(v, ModuleVersion):
        out.update(
            {
                "module_id": v.module_id,
                "parent_module_id": v.parent_module_id,
                "is_root": v.is_root,
                "children_pins": v.children_pins or [],
                "feature_pins": v.feature_pins or [],
            }
        )
    else:
        out.update({"feature_id": v.feature_id, "priority": v.priority, "status": v.status})
    return out


# ---------- lookups ----------
def get_module(s: "Session", module_id: str, *, include_deleted: bool = False) -> Module:
    m = s.get(Module, module_id)
    if m is None or (m.deleted_at is not None and not include_deleted):
        raise NotFound("Module not found", module_id=module_id)
    return m


def get_feature(s: "Session", feature_id: str, *, include_deleted: bool = False) -> Feature:
    f = s.get(Feature, feature_id)
    if f is None or (f.deleted_at is not None and not include_deleted):
        raise NotFound("Feature not found", feature_id=feature_id)
    return f


def project_id_for_feature(s: "Session", feature: Feature) -> str:
    project_id = s.scalar(select(Module.project_id).where(Module.id == feature.module_id))
    if project_id is None:
        raise NotFound("Module not found", module_id=feature.module_id)
    return project_id


# ---------- modules ----------
def create_module(s: "Session", project_id: str, payload: dict, user: "User") -> Module:
    """Create a module at the end of its parent's sibling list."""
    _raise_if_errors(validate_module_payload(payload))

    parent_id = payload.get("parent_module_id")
    if parent_id:
        parent = s.get(Module, parent_id)
        if parent is None or parent.deleted_at is not None:
            raise NotFound("Parent module not found", parent_module_id=parent_id)
        if parent.project_id != project_id:
            raise BadRequest("Parent must belong to the same project", parent_module_id=parent_id)

    name = payload["name"].strip()
    scope = Scope(project_id, parent_id or None)
    ordering.ensure_name_available(s, scope, MODULE, name)

    now = datetime.utcnow()
    module = Module(
        project_id=project_id,
        parent_module_id=parent_id or None,
        name=name,
        description=_clean_text(payload.get("description")),
        is_root=bool(payload.get("is_root", False)),
        sort_order=ordering.next_order(s, scope),
        created_at=now,
        updated_at=now,
        last_modified_by_user_id=user.id,
    )
    s.add(module)
    s.flush()

    record_event(
        s,
        actor=user,
        action="module.create",
        entity_type="Module",
        entity_id=module.id,
        metadata={"project_id": project_id, "parent_module_id": module.parent_module_id, "name": name},
    )
    return module


def update_module(s: "Session", module: Module, payload: dict, user: "User") -> Module:
    """Update content fields; a parent_module_id key (even null) means reparent."""
    _raise_if_errors(validate_module_payload(payload, partial=True))
    changes = {}

    if "parent_module_id" in payload:
        new_parent = payload["parent_module_id"] or None
        if new_parent != module.parent_module_id:
            old_parent = module.parent_module_id
            lifecycle.reparent_module(s, module, new_parent, user)
            changes["parent_module_id"] = {"old": old_parent, "new": new_parent}
            record_event(
                s,
                actor=user,
                action="module.move",
                entity_type="Module",
                entity_id=module.id,
                metadata={"from": old_parent, "to": new_parent, "sort_order": module.sort_order},
            )

    if "name" in payload:
        new_name = payload["name"].strip()
        if new_name != module.name:
            ordering.ensure_name_available(s, Scope.of_module(module), MODULE, new_name, exclude_id=module.id)
            changes["name"] = {"old": module.name, "new": new_name}
            module.name = new_name

    if "description" in payload:
        new_description = _clean_text(payload.get("description"))
        if new_description != module.description:
            changes["description"] = {"old": module.description, "new": new_description}
            module.description = new_description

    if "is_root" in payload and payload["is_root"] != module.is_root:
        changes["is_root"] = {"old": module.is_root, "new": payload["is_root"]}
        module.is_root = payload["is_root"]

    module.updated_at = datetime.utcnow()
    module.last_modified_by_user_id = user.id
    s.flush()

    record_event(
        s,
        actor=user,
        action="module.update",
        entity_type="Module",
        entity_id=module.id,
        metadata={"changes": changes},
    )
    return module


def list_modules(
    s: "Session",
    project_id: str,
    *,
    parent: Any = ANY_PARENT,
    q: str | None = None,
    page: int | None = None,
    limit: int | None = None,
    deleted: bool = False,
    default_limit: int = 20,
    max_limit: int = 100,
) -> dict[str, Any]:
    page, limit, offset = clamp_page_limit(page, limit, default=default_limit, maximum=max_limit)

    filters = [Module.project_id == project_id]
    filters.append(Module.deleted_at.isnot(None) if deleted else Module.deleted_at.is_(None))
    if parent is not ANY_PARENT:
        filters.append(Module.parent_module_id.is_(None) if parent is None else Module.parent_module_id == parent)
    search = (q or "").strip()
    if search:
        like = f"%{search}%"
        filters.append(or_(Module.name.ilike(like), Module.description.ilike(like)))

    order_by = (
        [Module.deleted_at.desc(), Module.id.asc()]
        if deleted
        else [Module.sort_order.asc(), Module.created_at.asc(), Module.id.asc()]
    )
    total = s.scalar(select(func.count(Module.id)).where(*filters)) or 0
    items = s.scalars(select(Module).where(*filters).order_by(*order_by).offset(offset).limit(limit)).all()
    return {"items": [module_to_dict(m) for m in items], "total": total, "page": page, "limit": limit}


def module_detail(s: "Session", module: Module) -> dict[str, Any]:
    out = module_to_dict(module)
    versions = versioning.list_module_versions(s, module.id)
    out["versions"] = [version_summary(v) for v in versions]
    published = next((v for v in versions if v.id == module.published_version_id), None)
    out["published_version"] = (
        {"id": published.id, "version_number": published.version_number} if published else None
    )
    return out


def move_module_order(s: "Session", module: Module, direction: str, user: "User") -> Module:
    direction = (direction or "").strip().upper()
    neighbor = ordering.move_order(s, module, Scope.of_module(module), direction)
    module.last_modified_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="module.reorder",
        entity_type="Module",
        entity_id=module.id,
        metadata={"direction": direction, "swapped_with": neighbor.id, "sort_order": module.sort_order},
    )
    return module


def snapshot_module(s: "Session", module: Module, user: "User", changelog: Any = None) -> versioning.SnapshotResult:
    result = versioning.snapshot_module(s, module, user, validate_changelog(changelog))
    if result.created:
        record_event(
            s,
            actor=user,
            action="module.snapshot",
            entity_type="Module",
            entity_id=module.id,
            metadata={"version_number": result.version.version_number},
        )
    return result


def rollback_module(
    s: "Session", module: Module, version_number: Any, user: "User", changelog: Any = None
) -> versioning.SnapshotResult:
    n = parse_version_number(version_number)
    result = versioning.rollback_module(s, module, n, user, validate_changelog(changelog))
    record_event(
        s,
        actor=user,
        action="module.rollback",
        entity_type="Module",
        entity_id=module.id,
        metadata={"target_version": n, "version_number": result.version.version_number, "created": result.created},
    )
    return result


def publish_module(s: "Session", module: Module, version_number: Any, user: "User") -> ModuleVersion:
    n = parse_version_number(version_number)
    ver = versioning.publish_module(s, module, n, user)
    record_event(
        s,
        actor=user,
        action="module.publish",
        entity_type="Module",
        entity_id=module.id,
        metadata={"version_number": n},
    )
    return ver


def delete_module(s: "Session", module: Module, user: "User", *, cascade: bool = False, force: bool = False) -> dict:
    result = lifecycle.delete_module(s, module, user, cascade=cascade, force=force)
    record_event(
        s,
        actor=user,
        action="module.delete",
        entity_type="Module",
        entity_id=module.id,
        metadata={"cascade": cascade, "force": force, **result},
    )
    return result


def restore_module(s: "Session", module: Module, user: "User") -> dict:
    result = lifecycle.restore_module(s, module, user)
    record_event(
        s,
        actor=user,
        action="module.restore",
        entity_type="Module",
        entity_id=module.id,
        metadata=result,
    )
    return result


# ---------- features ----------
def create_feature(s: "Session", module: Module, payload: dict, user: "User") -> Feature:
    """Create a feature at the end of the module's sibling list (shared with child modules)."""
    _raise_if_errors(validate_feature_payload(payload))

    name = payload["name"].strip()
    scope = Scope(module.project_id, module.id)
    ordering.ensure_name_available(s, scope, FEATURE, name)

    now = datetime.utcnow()
    feature = Feature(
        module_id=module.id,
        name=name,
        description=_clean_text(payload.get("description")),
        priority=payload.get("priority") or "MEDIUM",
        status=payload.get("status") or "PENDING",
        sort_order=ordering.next_order(s, scope),
        created_at=now,
        updated_at=now,
        last_modified_by_user_id=user.id,
    )
    s.add(feature)
    s.flush()

    record_event(
        s,
        actor=user,
        action="feature.create",
        entity_type="Feature",
        entity_id=feature.id,
        metadata={"module_id": module.id, "name": name},
    )
    return feature


def update_feature(s: "Session", feature: Feature, payload: dict, user: "User") -> Feature:
    _raise_if_errors(validate_feature_payload(payload, partial=True))
    changes = {}

    if payload.get("module_id") and payload["module_id"] != feature.module_id:
        old_module = feature.module_id
        lifecycle.move_feature(s, feature, payload["module_id"], user)
        changes["module_id"] = {"old": old_module, "new": feature.module_id}
        record_event(
            s,
            actor=user,
            action="feature.move",
            entity_type="Feature",
            entity_id=feature.id,
            metadata={"from": old_module, "to": feature.module_id, "sort_order": feature.sort_order},
        )

    if "name" in payload:
        new_name = payload["name"].strip()
        if new_name != feature.name:
            scope = Scope.of_feature(feature, project_id_for_feature(s, feature))
            ordering.ensure_name_available(s, scope, FEATURE, new_name, exclude_id=feature.id)
            changes["name"] = {"old": feature.name, "new": new_name}
            feature.name = new_name

    if "description" in payload:
        new_description = _clean_text(payload.get("description"))
        if new_description != feature.description:
            changes["description"] = {"old": feature.description, "new": new_description}
            feature.description = new_description

    if "priority" in payload and payload["priority"] != feature.priority:
        changes["priority"] = {"old": feature.priority, "new": payload["priority"]}
        feature.priority = payload["priority"]

    new_status = payload.get("status")
    if new_status and new_status != feature.status:
        changes["status"] = {"old": feature.status, "new": new_status}
        feature.status = new_status

    feature.updated_at = datetime.utcnow()
    feature.last_modified_by_user_id = user.id
    s.flush()

    record_event(
        s,
        actor=user,
        action="feature.update",
        entity_type="Feature",
        entity_id=feature.id,
        metadata={"changes": changes},
    )
    return feature


def list_features(
    s: "Session",
    module: Module,
    *,
    q: str | None = None,
    page: int | None = None,
    limit: int | None = None,
    default_limit: int = 20,
    max_limit: int = 100,
) -> dict[str, Any]:
    page, limit, offset = clamp_page_limit(page, limit, default=default_limit, maximum=max_limit)
    filters = [Feature.module_id == module.id, Feature.deleted_at.is_(None)]
    search = (q or "").strip()
    if search:
        like = f"%{search}%"
        filters.append(or_(Feature.name.ilike(like), Feature.description.ilike(like)))

    total = s.scalar(select(func.count(Feature.id)).where(*filters)) or 0
    items = s.scalars(
        select(Feature)
        .where(*filters)
        .order_by(Feature.sort_order.asc(), Feature.created_at.asc(), Feature.name.asc())
        .offset(offset)
        .limit(limit)
    ).all()
    return {"items": [feature_to_dict(f) for f in items], "total": total, "page": page, "limit": limit}


def feature_detail(s: "Session", feature: Feature) -> dict[str, Any]:
    out = feature_to_dict(feature)
    versions = versioning.list_feature_versions(s, feature.id)
    out["versions"] = [version_summary(v) for v in versions]
    published = next((v for v in versions if v.id == feature.published_version_id), None)
    out["published_version"] = (
        {"id": published.id, "version_number": published.version_number} if published else None
    )
    return out


def move_feature_order(s: "Session", feature: Feature, direction: str, user: "User") -> Feature:
    direction = (direction or "").strip().upper()
    scope = Scope.of_feature(feature, project_id_for_feature(s, feature))
    neighbor = ordering.move_order(s, feature, scope, direction)
    feature.last_modified_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="feature.reorder",
        entity_type="Feature",
        entity_id=feature.id,
        metadata={"direction": direction, "swapped_with": neighbor.id, "sort_order": feature.sort_order},
    )
    return feature


def snapshot_feature(s: "Session", feature: Feature, user: "User", changelog: Any = None) -> versioning.SnapshotResult:
    result = versioning.snapshot_feature(s, feature, user, validate_changelog(changelog))
    if result.created:
        record_event(
            s,
            actor=user,
            action="feature.snapshot",
            entity_type="Feature",
            entity_id=feature.id,
            metadata={"version_number": result.version.version_number},
        )
    return result


def rollback_feature(
    s: "Session", feature: Feature, version_number: Any, user: "User", changelog: Any = None
) -> versioning.SnapshotResult:
    n = parse_version_number(version_number)
    result = versioning.rollback_feature(s, feature, n, user, validate_changelog(changelog))
    record_event(
        s,
        actor=user,
        action="feature.rollback",
        entity_type="Feature",
        entity_id=feature.id,
        metadata={"target_version": n, "version_number": result.version.version_number, "created": result.created},
    )
    return result


def publish_feature(s: "Session", feature: Feature, version_number: Any, user: "User") -> FeatureVersion:
    n = parse_version_number(version_number)
    ver = versioning.publish_feature(s, feature, n, user)
    record_event(
        s,
        actor=user,
        action="feature.publish",
        entity_type="Feature",
        entity_id=feature.id,
        metadata={"version_number": n},
    )
    return ver


def delete_feature(s: "Session", feature: Feature, user: "User", *, force: bool = False) -> dict:
    result = lifecycle.delete_feature(s, feature, project_id_for_feature(s, feature), user, force=force)
    record_event(
        s,
        actor=user,
        action="feature.delete",
        entity_type="Feature",
        entity_id=feature.id,
        metadata={"force": force},
    )
    return result


def restore_feature(s: "Session", feature: Feature, user: "User") -> dict:
    result = lifecycle.restore_feature(s, feature, project_id_for_feature(s, feature), user)
    record_event(
        s,
        actor=user,
        action="feature.restore",
        entity_type="Feature",
        entity_id=feature.id,
    )
    return result
