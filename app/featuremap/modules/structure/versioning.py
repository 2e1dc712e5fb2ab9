"""
Append-only, content-addressed version history for modules and features.

A snapshot is deduplicated by (node, content_hash): snapshotting unchanged
content returns the stored row instead of allocating a new number. The
(node, version_number) unique constraint is the race net; a writer that loses
the insert race falls back to re-reading by hash.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, NamedTuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session

from app.featuremap.errors import IntegrityError, NotFound
from app.featuremap.models import User
from app.featuremap.modules.structure.hashing import content_hash
from app.featuremap.modules.structure.lifecycle import reparent_module
from app.featuremap.modules.structure.models import Feature, FeatureVersion, Module, ModuleVersion
from app.featuremap.modules.structure.ordering import FEATURE, MODULE, Scope, ensure_name_available

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _VersionKind:
    label: str
    version_model: type
    node_fk: str


_MODULE = _VersionKind("Module", ModuleVersion, "module_id")
_FEATURE = _VersionKind("Feature", FeatureVersion, "feature_id")


class SnapshotResult(NamedTuple):
    version: Any
    created: bool


# ---------- payloads ----------
def resolve_pins(s: Session, module: Module) -> tuple[list[dict], list[dict]]:
    """
    Version numbers currently published by each active child module/feature,
    in sibling order. Unpublished children are not pinned.
    """
    children = s.scalars(
        select(Module)
        .where(
            Module.parent_module_id == module.id,
            Module.deleted_at.is_(None),
            Module.published_version_id.isnot(None),
        )
        .order_by(Module.sort_order.asc(), Module.created_at.asc())
    ).all()
    features = s.scalars(
        select(Feature)
        .where(
            Feature.module_id == module.id,
            Feature.deleted_at.is_(None),
            Feature.published_version_id.isnot(None),
        )
        .order_by(Feature.sort_order.asc(), Feature.created_at.asc())
    ).all()

    child_numbers: dict[str, int] = {}
    if children:
        rows = s.execute(
            select(ModuleVersion.id, ModuleVersion.module_id, ModuleVersion.version_number).where(
                ModuleVersion.id.in_([c.published_version_id for c in children])
            )
        ).all()
        child_numbers = {vid: num for vid, mid, num in rows if mid in {c.id for c in children}}
    feature_numbers: dict[str, int] = {}
    if features:
        rows = s.execute(
            select(FeatureVersion.id, FeatureVersion.feature_id, FeatureVersion.version_number).where(
                FeatureVersion.id.in_([f.published_version_id for f in features])
            )
        ).all()
        feature_numbers = {vid: num for vid, fid, num in rows if fid in {f.id for f in features}}

    children_pins = [
        {"child_id": c.id, "version_number": child_numbers[c.published_version_id]}
        for c in children
        if c.published_version_id in child_numbers
    ]
    feature_pins = [
        {"child_id": f.id, "version_number": feature_numbers[f.published_version_id]}
        for f in features
        if f.published_version_id in feature_numbers
    ]
    return children_pins, feature_pins


def module_payload(module: Module, children_pins: list[dict], feature_pins: list[dict]) -> dict[str, Any]:
    return {
        "name": module.name,
        "description": module.description,
        "parent_module_id": module.parent_module_id,
        "is_root": bool(module.is_root),
        "children_pins": children_pins,
        "feature_pins": feature_pins,
    }


def feature_payload(feature: Feature) -> dict[str, Any]:
    return {
        "name": feature.name,
        "description": feature.description,
        "priority": feature.priority,
        "status": feature.status,
    }


# ---------- store ----------
def _find_by_hash(s: Session, kind: _VersionKind, node_id: str, digest: str):
    model = kind.version_model
    return s.scalars(
        select(model).where(getattr(model, kind.node_fk) == node_id, model.content_hash == digest)
    ).first()


def _next_version_number(s: Session, kind: _VersionKind, node_id: str) -> int:
    model = kind.version_model
    last = s.scalar(select(func.max(model.version_number)).where(getattr(model, kind.node_fk) == node_id))
    return (last or 0) + 1


def _store_version(
    s: Session,
    kind: _VersionKind,
    node_id: str,
    payload: dict[str, Any],
    user: User | None,
    changelog: str | None,
    is_rollback: bool,
) -> SnapshotResult:
    digest = content_hash(payload)
    existing = _find_by_hash(s, kind, node_id, digest)
    if existing is not None:
        logger.debug("snapshot dedup: %s=%s v%s", kind.label, node_id, existing.version_number)
        return SnapshotResult(existing, False)

    attempt = 0
    while True:
        attempt += 1
        number = _next_version_number(s, kind, node_id)
        row = kind.version_model(
            **{kind.node_fk: node_id},
            version_number=number,
            content_hash=digest,
            changelog=changelog,
            is_rollback=is_rollback,
            created_by_user_id=user.id if user else None,
            **payload,
        )
        try:
            with s.begin_nested():  # SAVEPOINT: a lost race only undoes this insert
                s.add(row)
                s.flush()
            return SnapshotResult(row, True)
        except DBIntegrityError as e:
            logger.warning(
                "snapshot race: %s=%s v%s attempt=%s err=%s",
                kind.label, node_id, number, attempt, str(e.orig)[:120],
            )
            existing = _find_by_hash(s, kind, node_id, digest)
            if existing is not None:
                return SnapshotResult(existing, False)
            if attempt >= 2:
                raise


def snapshot_module(
    s: Session,
    module: Module,
    user: User | None,
    changelog: str | None = None,
    is_rollback: bool = False,
) -> SnapshotResult:
    s.flush()
    children_pins, feature_pins = resolve_pins(s, module)
    payload = module_payload(module, children_pins, feature_pins)
    return _store_version(s, _MODULE, module.id, payload, user, changelog, is_rollback)


def snapshot_feature(
    s: Session,
    feature: Feature,
    user: User | None,
    changelog: str | None = None,
    is_rollback: bool = False,
) -> SnapshotResult:
    s.flush()
    return _store_version(s, _FEATURE, feature.id, feature_payload(feature), user, changelog, is_rollback)


# ---------- lookups ----------
def get_module_version(s: Session, module_id: str, version_number: int) -> ModuleVersion:
    ver = s.scalars(
        select(ModuleVersion).where(
            ModuleVersion.module_id == module_id,
            ModuleVersion.version_number == version_number,
        )
    ).first()
    if ver is None:
        raise NotFound("Module version not found", module_id=module_id, version_number=version_number)
    return ver


def get_feature_version(s: Session, feature_id: str, version_number: int) -> FeatureVersion:
    ver = s.scalars(
        select(FeatureVersion).where(
            FeatureVersion.feature_id == feature_id,
            FeatureVersion.version_number == version_number,
        )
    ).first()
    if ver is None:
        raise NotFound("Feature version not found", feature_id=feature_id, version_number=version_number)
    return ver


def list_module_versions(s: Session, module_id: str) -> list[ModuleVersion]:
    return list(
        s.scalars(
            select(ModuleVersion)
            .where(ModuleVersion.module_id == module_id)
            .order_by(ModuleVersion.version_number.desc())
        )
    )


def list_feature_versions(s: Session, feature_id: str) -> list[FeatureVersion]:
    return list(
        s.scalars(
            select(FeatureVersion)
            .where(FeatureVersion.feature_id == feature_id)
            .order_by(FeatureVersion.version_number.desc())
        )
    )


# ---------- publish ----------
def publish_module(s: Session, module: Module, version_number: int, user: User | None) -> ModuleVersion:
    ver = get_module_version(s, module.id, version_number)
    module.published_version = ver
    module.last_modified_by_user_id = user.id if user else None
    s.flush()
    logger.info("publish: Module=%s v%s", module.id, version_number)
    return ver


def publish_feature(s: Session, feature: Feature, version_number: int, user: User | None) -> FeatureVersion:
    ver = get_feature_version(s, feature.id, version_number)
    feature.published_version = ver
    feature.last_modified_by_user_id = user.id if user else None
    s.flush()
    logger.info("publish: Feature=%s v%s", feature.id, version_number)
    return ver


# ---------- rollback ----------
def apply_feature_version(feature: Feature, ver: FeatureVersion) -> None:
    feature.name = ver.name or feature.name
    feature.description = ver.description
    feature.priority = ver.priority
    feature.status = ver.status or "PENDING"


def rollback_feature(
    s: Session,
    feature: Feature,
    version_number: int,
    user: User | None,
    changelog: str | None = None,
) -> SnapshotResult:
    ver = get_feature_version(s, feature.id, version_number)
    if ver.name and ver.name != feature.name:
        module = s.get(Module, feature.module_id)
        ensure_name_available(s, Scope.of_feature(feature, module.project_id), FEATURE, ver.name, exclude_id=feature.id)
    apply_feature_version(feature, ver)
    feature.last_modified_by_user_id = user.id if user else None
    return snapshot_feature(s, feature, user, changelog or f"Rollback to v{version_number}", is_rollback=True)


def rollback_module(
    s: Session,
    module: Module,
    version_number: int,
    user: User | None,
    changelog: str | None = None,
) -> SnapshotResult:
    ver = get_module_version(s, module.id, version_number)
    if ver.parent_module_id != module.parent_module_id:
        # Stored parent differs: this is a move and goes through the reparent checks.
        reparent_module(s, module, ver.parent_module_id, user)
    if ver.name and ver.name != module.name:
        ensure_name_available(s, Scope.of_module(module), MODULE, ver.name, exclude_id=module.id)
    module.name = ver.name or module.name
    module.description = ver.description
    module.is_root = bool(ver.is_root)
    module.last_modified_by_user_id = user.id if user else None
    return snapshot_module(s, module, user, changelog or f"Rollback to v{version_number}", is_rollback=True)


# ---------- published tree ----------
def resolve_published_tree(s: Session, root: Module) -> dict[str, Any]:
    """
    Reconstruct the historical tree reachable from `root`'s published version.

    Pins are fetched breadth-first, one batch per level, into an arena keyed by
    (node_id, version_number). A pin without a matching version row is fatal.
    """
    if root.published_version_id is None:
        raise NotFound("Module has no published version", module_id=root.id)
    root_ver = s.get(ModuleVersion, root.published_version_id)
    if root_ver is None or root_ver.module_id != root.id:
        logger.error("published version %s of module %s is missing", root.published_version_id, root.id)
        raise IntegrityError("Published version row is missing", module_id=root.id)

    module_arena: dict[tuple[str, int], ModuleVersion] = {(root_ver.module_id, root_ver.version_number): root_ver}
    feature_arena: dict[tuple[str, int], FeatureVersion] = {}

    frontier = [root_ver]
    while frontier:
        child_keys = {
            (p["child_id"], int(p["version_number"]))
            for ver in frontier
            for p in (ver.children_pins or [])
        } - set(module_arena)
        feature_keys = {
            (p["child_id"], int(p["version_number"]))
            for ver in frontier
            for p in (ver.feature_pins or [])
        } - set(feature_arena)

        if feature_keys:
            rows = s.scalars(
                select(FeatureVersion).where(
                    FeatureVersion.feature_id.in_({k[0] for k in feature_keys}),
                    FeatureVersion.version_number.in_({k[1] for k in feature_keys}),
                )
            ).all()
            found = {(r.feature_id, r.version_number): r for r in rows}
            for key in sorted(feature_keys):
                if key not in found:
                    logger.error("feature pin %s v%s has no version row", key[0], key[1])
                    raise IntegrityError("Pinned feature version not found", feature_id=key[0], version_number=key[1])
                feature_arena[key] = found[key]

        next_frontier: list[ModuleVersion] = []
        if child_keys:
            rows = s.scalars(
                select(ModuleVersion).where(
                    ModuleVersion.module_id.in_({k[0] for k in child_keys}),
                    ModuleVersion.version_number.in_({k[1] for k in child_keys}),
                )
            ).all()
            found_m = {(r.module_id, r.version_number): r for r in rows}
            for key in sorted(child_keys):
                if key not in found_m:
                    logger.error("module pin %s v%s has no version row", key[0], key[1])
                    raise IntegrityError("Pinned module version not found", module_id=key[0], version_number=key[1])
                module_arena[key] = found_m[key]
                next_frontier.append(found_m[key])
        frontier = next_frontier

    def build(key: tuple[str, int], trail: frozenset, order: int) -> dict[str, Any]:
        if key in trail:
            raise IntegrityError("Published pins form a cycle", module_id=key[0], version_number=key[1])
        ver = module_arena[key]
        trail = trail | {key}
        children = [
            build((p["child_id"], int(p["version_number"])), trail, idx + 1)
            for idx, p in enumerate(ver.children_pins or [])
        ]
        features = []
        for idx, p in enumerate(ver.feature_pins or []):
            fv = feature_arena[(p["child_id"], int(p["version_number"]))]
            features.append(
                {
                    "type": "feature",
                    "id": fv.feature_id,
                    "version_number": fv.version_number,
                    "name": fv.name,
                    "description": fv.description,
                    "priority": fv.priority,
                    "status": fv.status,
                    "order": idx + 1,
                }
            )
        return {
            "type": "module",
            "id": ver.module_id,
            "version_number": ver.version_number,
            "name": ver.name,
            "description": ver.description,
            "is_root": ver.is_root,
            "order": order,
            "children": children,
            "features": features,
        }

    return build((root_ver.module_id, root_ver.version_number), frozenset(), 1)
