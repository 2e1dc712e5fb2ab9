"""
Soft delete / restore over subtrees, and reparenting.

Deleting a module marks its whole active subtree with one shared timestamp.
Restoring brings back exactly the members carrying a timestamp >= the root's,
so descendants deleted earlier on their own stay deleted.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.featuremap.errors import BadRequest, Conflict, NotFound
from app.featuremap.models import User
from app.featuremap.modules.structure.models import Feature, Module
from app.featuremap.modules.structure.ordering import (
    FEATURE,
    MODULE,
    Scope,
    compact_after_removal,
    ensure_name_available,
    next_order,
)

logger = logging.getLogger(__name__)


def active_subtree(s: Session, root: Module) -> tuple[list[Module], list[Feature]]:
    """Breadth-first: root plus every active descendant module, and their active features."""
    modules = [root]
    frontier = [root.id]
    while frontier:
        children = s.scalars(
            select(Module)
            .where(Module.parent_module_id.in_(frontier), Module.deleted_at.is_(None))
            .order_by(Module.sort_order.asc(), Module.id.asc())
        ).all()
        modules.extend(children)
        frontier = [c.id for c in children]
    features = list(
        s.scalars(
            select(Feature)
            .where(Feature.module_id.in_([m.id for m in modules]), Feature.deleted_at.is_(None))
            .order_by(Feature.module_id.asc(), Feature.sort_order.asc())
        )
    )
    return modules, features


def _has_active_children(s: Session, module: Module) -> bool:
    n_modules = s.scalar(
        select(func.count(Module.id)).where(Module.parent_module_id == module.id, Module.deleted_at.is_(None))
    )
    n_features = s.scalar(
        select(func.count(Feature.id)).where(Feature.module_id == module.id, Feature.deleted_at.is_(None))
    )
    return bool(n_modules or n_features)


def delete_module(
    s: Session,
    module: Module,
    user: User | None,
    *,
    cascade: bool = False,
    force: bool = False,
) -> dict:
    if module.deleted_at is not None:
        raise NotFound("Module not found", module_id=module.id)
    if not cascade and _has_active_children(s, module):
        raise Conflict("Module has children/features. Use cascade=true to delete the subtree.", module_id=module.id)

    modules, features = active_subtree(s, module)

    if not force:
        published_modules = [m.id for m in modules if m.published_version_id]
        published_features = [f.id for f in features if f.published_version_id]
        if published_modules or published_features:
            raise Conflict(
                "There are published modules/features in the subtree. Use force=true.",
                published_module_ids=published_modules,
                published_feature_ids=published_features,
            )

    now = datetime.utcnow()
    actor_id = user.id if user else None
    for node in (*modules, *features):
        node.deleted_at = now
        node.deleted_by_user_id = actor_id
    s.flush()
    compact_after_removal(s, Scope.of_module(module), module.sort_order)

    logger.info(
        "delete: Module=%s cascade=%s force=%s modules=%d features=%d",
        module.id, cascade, force, len(modules), len(features),
    )
    return {
        "deleted_module_ids": [m.id for m in modules],
        "deleted_feature_ids": [f.id for f in features],
    }


def delete_feature(s: Session, feature: Feature, project_id: str, user: User | None, *, force: bool = False) -> dict:
    if feature.deleted_at is not None:
        raise NotFound("Feature not found", feature_id=feature.id)
    if feature.published_version_id and not force:
        raise Conflict("Feature is published. Use force=true to delete.", feature_id=feature.id)

    feature.deleted_at = datetime.utcnow()
    feature.deleted_by_user_id = user.id if user else None
    s.flush()
    compact_after_removal(s, Scope.of_feature(feature, project_id), feature.sort_order)
    logger.info("delete: Feature=%s force=%s", feature.id, force)
    return {"deleted_feature_ids": [feature.id]}


def _require_active_parent(s: Session, parent_id: str | None) -> None:
    if parent_id is None:
        return
    parent = s.get(Module, parent_id)
    if parent is None:
        raise NotFound("Parent module not found", module_id=parent_id)
    if parent.deleted_at is not None:
        raise Conflict("Parent module is deleted; restore it first.", parent_module_id=parent_id)


def restore_module(s: Session, module: Module, user: User | None) -> dict:
    if module.deleted_at is None:
        raise Conflict("Module is not deleted", module_id=module.id)
    _require_active_parent(s, module.parent_module_id)

    scope = Scope.of_module(module)
    ensure_name_available(s, scope, MODULE, module.name, exclude_id=module.id)

    cutoff = module.deleted_at
    modules = [module]
    frontier = [module.id]
    while frontier:
        children = s.scalars(
            select(Module).where(
                Module.parent_module_id.in_(frontier),
                Module.deleted_at.isnot(None),
                Module.deleted_at >= cutoff,
            )
        ).all()
        modules.extend(children)
        frontier = [c.id for c in children]
    features = list(
        s.scalars(
            select(Feature).where(
                Feature.module_id.in_([m.id for m in modules]),
                Feature.deleted_at.isnot(None),
                Feature.deleted_at >= cutoff,
            )
        )
    )

    # Only the root re-enters a populated scope; descendants come back into
    # scopes that were emptied together with them and keep their positions.
    module.sort_order = next_order(s, scope)
    for node in (*modules, *features):
        node.deleted_at = None
        node.deleted_by_user_id = None
    module.last_modified_by_user_id = user.id if user else None
    s.flush()

    logger.info("restore: Module=%s modules=%d features=%d", module.id, len(modules), len(features))
    return {
        "restored_module_ids": [m.id for m in modules],
        "restored_feature_ids": [f.id for f in features],
    }


def restore_feature(s: Session, feature: Feature, project_id: str, user: User | None) -> dict:
    if feature.deleted_at is None:
        raise Conflict("Feature is not deleted", feature_id=feature.id)
    _require_active_parent(s, feature.module_id)

    scope = Scope.of_feature(feature, project_id)
    ensure_name_available(s, scope, FEATURE, feature.name, exclude_id=feature.id)
    feature.sort_order = next_order(s, scope)
    feature.deleted_at = None
    feature.deleted_by_user_id = None
    feature.last_modified_by_user_id = user.id if user else None
    s.flush()
    logger.info("restore: Feature=%s", feature.id)
    return {"restored_feature_ids": [feature.id]}


def is_descendant_or_self(s: Session, ancestor_id: str, candidate: Module) -> bool:
    """Walk parent links up from `candidate`; deleted ancestors count too."""
    seen: set[str] = set()
    cursor: Module | None = candidate
    while cursor is not None and cursor.id not in seen:
        if cursor.id == ancestor_id:
            return True
        seen.add(cursor.id)
        cursor = s.get(Module, cursor.parent_module_id) if cursor.parent_module_id else None
    return False


def reparent_module(s: Session, module: Module, new_parent_id: str | None, user: User | None) -> Module:
    """
    Move `module` under `new_parent_id` (None = project top level), appending it
    to the new scope and closing the gap in the old one.
    """
    if new_parent_id == module.parent_module_id:
        return module
    if new_parent_id == module.id:
        raise BadRequest("A module cannot be its own parent", module_id=module.id)

    if new_parent_id is not None:
        parent = s.get(Module, new_parent_id)
        if parent is None or parent.deleted_at is not None:
            raise NotFound("Target parent not found", parent_module_id=new_parent_id)
        if parent.project_id != module.project_id:
            raise BadRequest("Parent must belong to the same project", parent_module_id=new_parent_id)
        if is_descendant_or_self(s, module.id, parent):
            raise Conflict("Cannot move a module under its own descendant", parent_module_id=new_parent_id)

    old_scope = Scope.of_module(module)
    old_order = module.sort_order
    new_scope = Scope(module.project_id, new_parent_id)
    ensure_name_available(s, new_scope, MODULE, module.name, exclude_id=module.id)

    module.sort_order = next_order(s, new_scope)
    module.parent_module_id = new_parent_id
    module.last_modified_by_user_id = user.id if user else None
    module.updated_at = datetime.utcnow()
    s.flush()
    compact_after_removal(s, old_scope, old_order)

    logger.info(
        "reparent: Module=%s %s -> %s order=%s",
        module.id, old_scope.parent_module_id, new_parent_id, module.sort_order,
    )
    return module


def move_feature(s: Session, feature: Feature, new_module_id: str, user: User | None) -> Feature:
    if new_module_id == feature.module_id:
        return feature

    current = s.get(Module, feature.module_id)
    target = s.get(Module, new_module_id)
    if target is None or target.deleted_at is not None:
        raise NotFound("Target module not found", module_id=new_module_id)
    if current is None or target.project_id != current.project_id:
        raise BadRequest("Target module must belong to the same project", module_id=new_module_id)

    old_scope = Scope.of_feature(feature, current.project_id)
    old_order = feature.sort_order
    new_scope = Scope(target.project_id, target.id)
    ensure_name_available(s, new_scope, FEATURE, feature.name, exclude_id=feature.id)

    feature.sort_order = next_order(s, new_scope)
    feature.module_id = target.id
    feature.last_modified_by_user_id = user.id if user else None
    feature.updated_at = datetime.utcnow()
    s.flush()
    compact_after_removal(s, old_scope, old_order)

    logger.info("reparent: Feature=%s %s -> %s order=%s", feature.id, old_scope.parent_module_id, target.id, feature.sort_order)
    return feature
