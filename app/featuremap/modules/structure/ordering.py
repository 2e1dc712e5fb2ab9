"""
Sibling ordering shared by modules and features under one parent.

A scope is (project_id, parent_module_id). The project's top level holds only
modules; a module scope holds its child modules and its features, which share
one dense zero-based sort_order sequence. Only active (not soft-deleted) rows
take part.
"""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import NamedTuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.featuremap.errors import BadRequest, Conflict, InvalidMove, NotFound
from app.featuremap.modules.structure.models import Feature, Module

logger = logging.getLogger(__name__)

MODULE = "module"
FEATURE = "feature"
KIND_RANK = {MODULE: 0, FEATURE: 1}

UP = "UP"
DOWN = "DOWN"
DIRECTIONS = (UP, DOWN)


@dataclass(frozen=True)
class Scope:
    project_id: str
    parent_module_id: str | None

    @classmethod
    def of_module(cls, m: Module) -> "Scope":
        return cls(m.project_id, m.parent_module_id)

    @classmethod
    def of_feature(cls, f: Feature, project_id: str) -> "Scope":
        return cls(project_id, f.module_id)


class SiblingRef(NamedTuple):
    kind: str
    id: str
    sort_order: int | None
    created_at: datetime | None
    name: str


def sibling_sort_key(ref: SiblingRef) -> tuple:
    """sort_order (missing last) -> created_at -> name -> modules before features -> id."""
    order = ref.sort_order if ref.sort_order is not None else sys.maxsize
    created = ref.created_at or datetime.max
    return (order, created, ref.name, KIND_RANK[ref.kind], ref.id)


def module_ref(m: Module) -> SiblingRef:
    return SiblingRef(MODULE, m.id, m.sort_order, m.created_at, m.name)


def feature_ref(f: Feature) -> SiblingRef:
    return SiblingRef(FEATURE, f.id, f.sort_order, f.created_at, f.name)


def _module_filter(scope: Scope):
    parent = (
        Module.parent_module_id.is_(None)
        if scope.parent_module_id is None
        else Module.parent_module_id == scope.parent_module_id
    )
    return (Module.project_id == scope.project_id, parent, Module.deleted_at.is_(None))


def _feature_filter(scope: Scope):
    return (Feature.module_id == scope.parent_module_id, Feature.deleted_at.is_(None))


def active_siblings(s: Session, scope: Scope) -> list[SiblingRef]:
    refs = [module_ref(m) for m in s.scalars(select(Module).where(*_module_filter(scope)))]
    if scope.parent_module_id is not None:
        refs.extend(feature_ref(f) for f in s.scalars(select(Feature).where(*_feature_filter(scope))))
    return sorted(refs, key=sibling_sort_key)


def next_order(s: Session, scope: Scope) -> int:
    """One past the highest active sort_order in the scope; 0 for an empty scope."""
    highest = s.scalar(select(func.max(Module.sort_order)).where(*_module_filter(scope)))
    if scope.parent_module_id is not None:
        feat_max = s.scalar(select(func.max(Feature.sort_order)).where(*_feature_filter(scope)))
        if feat_max is not None and (highest is None or feat_max > highest):
            highest = feat_max
    return 0 if highest is None else highest + 1


def compact_after_removal(s: Session, scope: Scope, removed_order: int) -> None:
    """Close the gap left by a node that left the scope (delete or reparent)."""
    s.execute(
        update(Module)
        .where(*_module_filter(scope), Module.sort_order > removed_order)
        .values(sort_order=Module.sort_order - 1)
        .execution_options(synchronize_session="fetch")
    )
    if scope.parent_module_id is not None:
        s.execute(
            update(Feature)
            .where(*_feature_filter(scope), Feature.sort_order > removed_order)
            .values(sort_order=Feature.sort_order - 1)
            .execution_options(synchronize_session="fetch")
        )


def find_neighbor(s: Session, scope: Scope, current_order: int, direction: str) -> SiblingRef | None:
    """Closest active sibling strictly above (UP) or below (DOWN) current_order."""
    if direction not in DIRECTIONS:
        raise BadRequest(f"direction must be one of {', '.join(DIRECTIONS)}")

    def _closest(model, filters) -> object | None:
        q = select(model).where(*filters)
        if direction == UP:
            q = q.where(model.sort_order < current_order).order_by(model.sort_order.desc())
        else:
            q = q.where(model.sort_order > current_order).order_by(model.sort_order.asc())
        return s.scalars(q.limit(1)).first()

    candidates: list[SiblingRef] = []
    m = _closest(Module, _module_filter(scope))
    if m is not None:
        candidates.append(module_ref(m))
    if scope.parent_module_id is not None:
        f = _closest(Feature, _feature_filter(scope))
        if f is not None:
            candidates.append(feature_ref(f))
    if not candidates:
        return None
    if direction == UP:
        return max(candidates, key=lambda r: r.sort_order)
    return min(candidates, key=lambda r: r.sort_order)


def ensure_name_available(s: Session, scope: Scope, kind: str, name: str, exclude_id: str | None = None) -> None:
    """Names are unique per kind among active siblings (a module and a feature may share one)."""
    if kind == MODULE:
        q = select(Module.id).where(*_module_filter(scope), Module.name == name)
        if exclude_id:
            q = q.where(Module.id != exclude_id)
    else:
        q = select(Feature.id).where(*_feature_filter(scope), Feature.name == name)
        if exclude_id:
            q = q.where(Feature.id != exclude_id)
    if s.scalar(q.limit(1)) is not None:
        raise Conflict(f"A {kind} named {name!r} already exists here.", name=name)


def load_node(s: Session, ref: SiblingRef) -> Module | Feature:
    model = Module if ref.kind == MODULE else Feature
    node = s.get(model, ref.id)
    if node is None:
        raise NotFound(f"{ref.kind.capitalize()} not found", id=ref.id)
    return node


def swap(a: Module | Feature, b: Module | Feature) -> None:
    """Exchange sort_order of two siblings; the caller's transaction makes it atomic."""
    a.sort_order, b.sort_order = b.sort_order, a.sort_order


def move_order(s: Session, node: Module | Feature, scope: Scope, direction: str) -> Module | Feature:
    """
    Swap `node` with its closest sibling in `direction`. Raises InvalidMove
    (nothing changed) when the node is already first/last.
    """
    neighbor_ref = find_neighbor(s, scope, node.sort_order, direction)
    if neighbor_ref is None:
        edge = "first" if direction == UP else "last"
        raise InvalidMove(f"Already {edge} among its siblings; nothing to swap with.", direction=direction)
    neighbor = load_node(s, neighbor_ref)
    logger.debug(
        "swap order: %s=%s(%s) <-> %s=%s(%s)",
        type(node).__name__, node.id, node.sort_order,
        neighbor_ref.kind, neighbor.id, neighbor.sort_order,
    )
    swap(node, neighbor)
    s.flush()
    return neighbor
