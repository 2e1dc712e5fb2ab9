from datetime import timedelta

import pytest

from app.featuremap import create_app
from app.featuremap.db import session_scope
from app.featuremap.errors import BadRequest, Conflict, NotFound
from app.featuremap.models import Base, Project, User
from app.featuremap.modules.structure import service
from app.featuremap.modules.structure.models import Feature, Module


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        u = User(id="u-owner", email="owner@example.com", is_active=True)
        s.add(u)
        s.flush()
        s.add(Project(id="p-1", name="Demo", owner_user_id=u.id))
        s.add(Project(id="p-2", name="Other", owner_user_id=u.id))
    return app


def _user(s):
    return s.get(User, "u-owner")


def _tree(s, u):
    root = service.create_module(s, "p-1", {"name": "Root"}, u)
    child = service.create_module(s, "p-1", {"name": "Child", "parent_module_id": root.id}, u)
    grandchild = service.create_module(s, "p-1", {"name": "Grandchild", "parent_module_id": child.id}, u)
    feature = service.create_feature(s, child, {"name": "Feature"}, u)
    return root, child, grandchild, feature


def test_delete_requires_cascade_for_non_empty_module(app):
    with session_scope(app) as s:
        u = _user(s)
        root, child, _, _ = _tree(s, u)
        with pytest.raises(Conflict):
            service.delete_module(s, root, u)
        assert root.deleted_at is None


def test_cascade_delete_respects_publish_guard(app):
    with session_scope(app) as s:
        u = _user(s)
        root, child, grandchild, feature = _tree(s, u)
        service.snapshot_feature(s, feature, u)
        service.publish_feature(s, feature, 1, u)

        with pytest.raises(Conflict) as exc:
            service.delete_module(s, root, u, cascade=True)
        assert exc.value.details["published_feature_ids"] == [feature.id]
        assert root.deleted_at is None

        result = service.delete_module(s, root, u, cascade=True, force=True)
        assert set(result["deleted_module_ids"]) == {root.id, child.id, grandchild.id}
        assert result["deleted_feature_ids"] == [feature.id]
        # One shared timestamp for the whole subtree.
        assert len({root.deleted_at, child.deleted_at, grandchild.deleted_at, feature.deleted_at}) == 1
        assert feature.deleted_by_user_id == u.id


def test_deleting_twice_is_not_found(app):
    with session_scope(app) as s:
        u = _user(s)
        m = service.create_module(s, "p-1", {"name": "Lonely"}, u)
        service.delete_module(s, m, u)
        with pytest.raises(NotFound):
            service.delete_module(s, m, u)
        with pytest.raises(NotFound):
            service.get_module(s, m.id)
        assert service.get_module(s, m.id, include_deleted=True).id == m.id


def test_restore_brings_back_only_the_same_deletion(app):
    with session_scope(app) as s:
        u = _user(s)
        root, child, grandchild, feature = _tree(s, u)

        # The feature was deleted on its own, earlier.
        service.delete_feature(s, feature, u)
        feature.deleted_at = feature.deleted_at - timedelta(minutes=5)
        s.flush()

        service.delete_module(s, root, u, cascade=True)
        result = service.restore_module(s, root, u)

        assert set(result["restored_module_ids"]) == {root.id, child.id, grandchild.id}
        assert result["restored_feature_ids"] == []
        assert child.deleted_at is None
        assert feature.deleted_at is not None


def test_restore_puts_the_root_at_the_end(app):
    with session_scope(app) as s:
        u = _user(s)
        a = service.create_module(s, "p-1", {"name": "A"}, u)
        b = service.create_module(s, "p-1", {"name": "B"}, u)
        service.delete_module(s, a, u)
        assert b.sort_order == 0

        service.restore_module(s, a, u)
        assert (a.sort_order, b.sort_order) == (1, 0)


def test_restore_guards(app):
    with session_scope(app) as s:
        u = _user(s)
        root, child, grandchild, feature = _tree(s, u)
        with pytest.raises(Conflict):
            service.restore_module(s, root, u)

        service.delete_module(s, root, u, cascade=True)
        # Parent still deleted.
        with pytest.raises(Conflict):
            service.restore_module(s, child, u)
        with pytest.raises(Conflict):
            service.restore_feature(s, feature, u)


def test_restore_blocked_by_name_collision(app):
    with session_scope(app) as s:
        u = _user(s)
        old = service.create_module(s, "p-1", {"name": "Auth"}, u)
        service.delete_module(s, old, u)
        service.create_module(s, "p-1", {"name": "Auth"}, u)
        with pytest.raises(Conflict):
            service.restore_module(s, old, u)


def test_reparent_moves_and_compacts(app):
    with session_scope(app) as s:
        u = _user(s)
        a = service.create_module(s, "p-1", {"name": "A"}, u)
        b = service.create_module(s, "p-1", {"name": "B"}, u)
        c = service.create_module(s, "p-1", {"name": "C"}, u)
        f = service.create_feature(s, c, {"name": "F"}, u)

        service.update_module(s, a, {"parent_module_id": c.id}, u)
        assert a.parent_module_id == c.id
        assert a.sort_order == 1  # after F
        assert (b.sort_order, c.sort_order) == (0, 1)

        service.update_module(s, a, {"parent_module_id": None}, u)
        assert a.parent_module_id is None
        assert a.sort_order == 2
        assert f.sort_order == 0


def test_reparent_keeps_the_tree_acyclic(app):
    with session_scope(app) as s:
        u = _user(s)
        root, child, grandchild, _ = _tree(s, u)
        with pytest.raises(Conflict):
            service.update_module(s, root, {"parent_module_id": grandchild.id}, u)
        with pytest.raises(BadRequest):
            service.update_module(s, root, {"parent_module_id": root.id}, u)
        assert root.parent_module_id is None


def test_reparent_stays_inside_the_project(app):
    with session_scope(app) as s:
        u = _user(s)
        here = service.create_module(s, "p-1", {"name": "Here"}, u)
        there = service.create_module(s, "p-2", {"name": "There"}, u)
        f = service.create_feature(s, here, {"name": "F"}, u)

        with pytest.raises(BadRequest):
            service.update_module(s, here, {"parent_module_id": there.id}, u)
        with pytest.raises(BadRequest):
            service.update_feature(s, f, {"module_id": there.id}, u)
        with pytest.raises(NotFound):
            service.update_module(s, here, {"parent_module_id": "no-such-module"}, u)


def test_move_feature_between_modules(app):
    with session_scope(app) as s:
        u = _user(s)
        a = service.create_module(s, "p-1", {"name": "A"}, u)
        b = service.create_module(s, "p-1", {"name": "B"}, u)
        f1 = service.create_feature(s, a, {"name": "F1"}, u)
        f2 = service.create_feature(s, a, {"name": "F2"}, u)
        service.create_feature(s, b, {"name": "G"}, u)

        service.update_feature(s, f1, {"module_id": b.id}, u)
        assert f1.module_id == b.id
        assert f1.sort_order == 1
        assert f2.sort_order == 0

        s.flush()
        assert s.query(Feature).filter(Feature.module_id == b.id, Feature.deleted_at.is_(None)).count() == 2
        assert s.get(Module, a.id).deleted_at is None


def test_move_feature_rejects_empty_module_id(app):
    with session_scope(app) as s:
        u = _user(s)
        a = service.create_module(s, "p-1", {"name": "A"}, u)
        f = service.create_feature(s, a, {"name": "F1"}, u)

        with pytest.raises(BadRequest) as exc:
            service.update_feature(s, f, {"module_id": "  "}, u)
        assert "module_id must be a non-empty string." in exc.value.details["errors"]
        assert f.module_id == a.id
