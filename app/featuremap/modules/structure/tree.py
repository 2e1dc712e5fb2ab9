"""
Materialize the live module/feature tree of a project.

Both flat lists are read in the caller's transaction, indexed by parent, and
merged per module with the same sibling key the ordering code uses, so the
output is identical for identical rows.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.featuremap.errors import NotFound
from app.featuremap.modules.structure.models import Feature, Module
from app.featuremap.modules.structure.ordering import MODULE, feature_ref, module_ref, sibling_sort_key


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


class _TreeIndex:
    def __init__(self, modules: list[Module], features: list[Feature]) -> None:
        self.modules = {m.id: m for m in modules}
        self.features = {f.id: f for f in features}
        self.children: dict[str | None, list[Module]] = defaultdict(list)
        self.features_by_module: dict[str, list[Feature]] = defaultdict(list)
        for m in modules:
            self.children[m.parent_module_id].append(m)
        for f in features:
            self.features_by_module[f.module_id].append(f)

    def merged_items(self, module_id: str) -> list:
        refs = [module_ref(m) for m in self.children.get(module_id, [])]
        refs.extend(feature_ref(f) for f in self.features_by_module.get(module_id, []))
        return sorted(refs, key=sibling_sort_key)


def load_active_rows(s: Session, project_id: str) -> tuple[list[Module], list[Feature]]:
    modules = list(
        s.scalars(select(Module).where(Module.project_id == project_id, Module.deleted_at.is_(None)))
    )
    features = list(
        s.scalars(
            select(Feature)
            .join(Module, Feature.module_id == Module.id)
            .where(
                Module.project_id == project_id,
                Module.deleted_at.is_(None),
                Feature.deleted_at.is_(None),
            )
        )
    )
    return modules, features


def _feature_node(f: Feature, order: int) -> dict[str, Any]:
    return {
        "type": "feature",
        "id": f.id,
        "module_id": f.module_id,
        "name": f.name,
        "status": f.status,
        "priority": f.priority,
        "sort_order": f.sort_order,
        "order": order,
        "created_at": _iso(f.created_at),
        "published_version_id": f.published_version_id,
    }


def _module_node(m: Module, index: _TreeIndex, order: int) -> dict[str, Any]:
    items = []
    for idx, ref in enumerate(index.merged_items(m.id)):
        if ref.kind == MODULE:
            items.append(_module_node(index.modules[ref.id], index, idx + 1))
        else:
            items.append(_feature_node(index.features[ref.id], idx + 1))
    return {
        "type": "module",
        "id": m.id,
        "name": m.name,
        "parent_module_id": m.parent_module_id,
        "is_root": m.is_root,
        "sort_order": m.sort_order,
        "order": order,
        "created_at": _iso(m.created_at),
        "published_version_id": m.published_version_id,
        "items": items,
    }


def build_project_tree(s: Session, project_id: str) -> dict[str, Any]:
    modules, features = load_active_rows(s, project_id)
    index = _TreeIndex(modules, features)
    top = sorted((module_ref(m) for m in index.children.get(None, [])), key=sibling_sort_key)
    return {
        "project_id": project_id,
        "modules": [_module_node(index.modules[ref.id], index, idx + 1) for idx, ref in enumerate(top)],
    }


def build_module_tree(s: Session, module: Module) -> dict[str, Any]:
    modules, features = load_active_rows(s, module.project_id)
    index = _TreeIndex(modules, features)
    if module.id not in index.modules:
        raise NotFound("Module not found", module_id=module.id)
    return {
        "project_id": module.project_id,
        "module_id": module.id,
        "node": _module_node(index.modules[module.id], index, 1),
    }
