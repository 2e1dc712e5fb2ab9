from datetime import datetime

import pytest

from app.featuremap import create_app
from app.featuremap.db import session_scope
from app.featuremap.models import Base, Project, User
from app.featuremap.modules.structure.models import Feature, Module, ModuleVersion
from scripts.purge_soft_deleted import purge, subtract_months

NOW = datetime(2026, 6, 1, 12, 0, 0)
EXPIRED = datetime(2025, 1, 1, 9, 0, 0)
RECENT = datetime(2026, 5, 20, 9, 0, 0)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'test.db'}"
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        u = User(id="u-owner", email="owner@example.com", is_active=True)
        s.add(u)
        s.flush()
        s.add(Project(id="p-1", name="Demo", owner_user_id=u.id))
        s.flush()

        s.add(Module(id="m-live", project_id="p-1", name="Live", sort_order=0))
        s.add(Module(id="m-host", project_id="p-1", name="Host", sort_order=1))
        s.add(Module(id="m-gone", project_id="p-1", name="Gone", sort_order=2, deleted_at=EXPIRED))
        s.add(Module(id="m-kept", project_id="p-1", name="Kept", sort_order=3, deleted_at=EXPIRED))
        s.flush()

        s.add(Feature(id="f-unpinned", module_id="m-host", name="Unpinned", sort_order=0, deleted_at=EXPIRED))
        s.add(Feature(id="f-pinned", module_id="m-host", name="Pinned", sort_order=1, deleted_at=EXPIRED))
        s.add(Feature(id="f-recent", module_id="m-host", name="Recent", sort_order=2, deleted_at=RECENT))
        s.add(Feature(id="f-owned", module_id="m-kept", name="Owned", sort_order=0, deleted_at=EXPIRED))
        s.flush()

        s.add(
            ModuleVersion(
                module_id="m-live",
                version_number=1,
                name="Live",
                children_pins=[],
                feature_pins=[
                    {"child_id": "f-pinned", "version_number": 1},
                    {"child_id": "f-owned", "version_number": 1},
                ],
                content_hash="a" * 64,
            )
        )
    app.config["TEST_DB_URL"] = db_url
    return app


def _ids(app, model):
    with session_scope(app) as s:
        return {row.id for row in s.query(model).all()}


def test_subtract_months_clamps_to_month_end():
    assert subtract_months(datetime(2026, 8, 31), 6) == datetime(2026, 2, 28)
    assert subtract_months(datetime(2026, 3, 15), 6) == datetime(2025, 9, 15)


def test_purge_removes_expired_unpinned_rows(app):
    result = purge(app.config["TEST_DB_URL"], months=6, now=NOW)

    assert result["deleted_features"] == 1
    assert result["deleted_modules"] == 1
    assert result["dry_run"] is False

    features = _ids(app, Feature)
    assert "f-unpinned" not in features
    assert "f-recent" in features
    assert "m-gone" not in _ids(app, Module)


def test_purge_keeps_features_pinned_by_a_live_version(app):
    purge(app.config["TEST_DB_URL"], months=6, now=NOW)

    assert "f-pinned" in _ids(app, Feature)


def test_pinned_feature_keeps_its_expired_module(app):
    result = purge(app.config["TEST_DB_URL"], months=6, now=NOW)

    assert result["kept_pinned_modules"] == 1
    assert "m-kept" in _ids(app, Module)
    assert "f-owned" in _ids(app, Feature)


def test_dry_run_deletes_nothing(app):
    before_modules = _ids(app, Module)
    before_features = _ids(app, Feature)

    result = purge(app.config["TEST_DB_URL"], months=6, dry_run=True, now=NOW)

    assert result["dry_run"] is True
    assert result["deleted_features"] == 1
    assert _ids(app, Module) == before_modules
    assert _ids(app, Feature) == before_features
