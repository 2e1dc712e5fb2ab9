"""HTTP surface: auth gate, error mapping and the publish flow."""
import pytest

from app.featuremap import create_app
from app.featuremap.db import session_scope
from app.featuremap.models import AuditEvent, Base, Project, ProjectMember, User


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("PAGE_SIZE_MAX", "2")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        owner = User(id="u-owner", email="owner@example.com", is_active=True)
        viewer = User(id="u-viewer", email="viewer@example.com", is_active=True)
        stranger = User(id="u-stranger", email="stranger@example.com", is_active=True)
        s.add_all([owner, viewer, stranger])
        s.flush()
        s.add(Project(id="p-1", name="Demo", owner_user_id=owner.id))
        s.flush()
        s.add(ProjectMember(project_id="p-1", user_id=viewer.id, role="VIEWER"))
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, user_id="u-owner"):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id


def _create_module(client, name, **extra):
    r = client.post("/api/projects/p-1/modules", json={"name": name, **extra})
    assert r.status_code == 201, r.json
    return r.json


def test_requires_login(client):
    r = client.post("/api/projects/p-1/modules", json={"name": "Auth"})
    assert r.status_code == 401


def test_role_gate(client):
    _login(client)
    module = _create_module(client, "Auth")

    _login(client, "u-viewer")
    assert client.get(f"/api/modules/{module['id']}").status_code == 200
    r = client.patch(f"/api/modules/{module['id']}", json={"name": "Nope"})
    assert r.status_code == 403

    _login(client, "u-stranger")
    assert client.get("/api/projects/p-1/structure").status_code == 403
    assert client.get(f"/api/modules/{module['id']}").status_code == 403


def test_unknown_ids_are_not_found(client):
    _login(client)
    r = client.get("/api/projects/nope/modules")
    assert r.status_code == 404

    r = client.get("/api/modules/nope")
    assert r.status_code == 404
    assert r.json["error"] == "not_found"


def test_validation_errors(client):
    _login(client)
    r = client.post("/api/projects/p-1/modules", json={"name": "  "})
    assert r.status_code == 400
    assert r.json["error"] == "bad_request"

    module = _create_module(client, "Auth")
    r = client.post(f"/api/modules/{module['id']}/features", json={"name": "Login", "priority": "URGENT"})
    assert r.status_code == 400

    r = client.post("/api/projects/p-1/modules", json={"name": "Auth"})
    assert r.status_code == 409
    assert r.json["error"] == "conflict"


def test_order_endpoint(client):
    _login(client)
    a = _create_module(client, "A")
    b = _create_module(client, "B")

    r = client.patch(f"/api/modules/{b['id']}/order", json={"direction": "UP"})
    assert r.status_code == 200
    assert r.json["sort_order"] == 0

    r = client.patch(f"/api/modules/{b['id']}/order", json={"direction": "UP"})
    assert r.status_code == 400
    assert r.json["error"] == "invalid_move"

    r = client.patch(f"/api/modules/{a['id']}/order", json={"direction": "SIDEWAYS"})
    assert r.status_code == 400
    assert r.json["error"] == "bad_request"


def test_snapshot_publish_and_published_structure(client, app):
    _login(client)
    module = _create_module(client, "Auth")
    r = client.post(f"/api/modules/{module['id']}/features", json={"name": "Login", "priority": "HIGH"})
    assert r.status_code == 201
    feature = r.json

    r = client.post(f"/api/features/{feature['id']}/snapshot", json={"changelog": "first"})
    assert r.status_code == 201
    assert r.json["created"] is True
    assert r.json["version"]["version_number"] == 1

    r = client.post(f"/api/features/{feature['id']}/snapshot", json={})
    assert r.status_code == 200
    assert r.json["created"] is False

    assert client.post(f"/api/features/{feature['id']}/publish/1").status_code == 200
    assert client.post(f"/api/modules/{module['id']}/snapshot").status_code == 201
    r = client.post(f"/api/modules/{module['id']}/publish/1")
    assert r.status_code == 200
    assert r.json["published_version"]["version_number"] == 1

    r = client.get(f"/api/modules/{module['id']}/structure?view=published")
    assert r.status_code == 200
    assert r.json["version_number"] == 1
    assert [f["name"] for f in r.json["features"]] == ["Login"]

    r = client.get(f"/api/modules/{module['id']}")
    assert r.json["published_version"]["version_number"] == 1
    assert [v["version_number"] for v in r.json["versions"]] == [1]

    r = client.get(f"/api/features/{feature['id']}/versions")
    assert [v["changelog"] for v in r.json["items"]] == ["first"]

    with session_scope(app) as s:
        actions = {e.action for e in s.query(AuditEvent).all()}
    assert {"module.create", "feature.create", "feature.snapshot", "feature.publish", "module.publish"} <= actions


def test_unpublished_structure_is_not_found(client):
    _login(client)
    module = _create_module(client, "Auth")
    r = client.get(f"/api/modules/{module['id']}/structure?view=published")
    assert r.status_code == 404

    r = client.get(f"/api/modules/{module['id']}/structure")
    assert r.status_code == 200
    assert r.json["node"]["name"] == "Auth"


def test_bad_version_number(client):
    _login(client)
    module = _create_module(client, "Auth")
    assert client.post(f"/api/modules/{module['id']}/publish/abc").status_code == 400
    assert client.post(f"/api/modules/{module['id']}/rollback/7").status_code == 404


def test_delete_and_restore(client):
    _login(client)
    parent = _create_module(client, "Parent")
    child = _create_module(client, "Child", parent_module_id=parent["id"])

    r = client.delete(f"/api/modules/{parent['id']}")
    assert r.status_code == 409

    r = client.delete(f"/api/modules/{parent['id']}?cascade=true")
    assert r.status_code == 200
    assert set(r.json["deleted_module_ids"]) == {parent["id"], child["id"]}

    assert client.get(f"/api/modules/{parent['id']}").status_code == 404
    r = client.get("/api/projects/p-1/modules/deleted")
    assert {m["id"] for m in r.json["items"]} == {parent["id"], child["id"]}

    r = client.patch(f"/api/modules/{parent['id']}/restore")
    assert r.status_code == 200
    assert client.get(f"/api/modules/{child['id']}").status_code == 200


def test_list_modules_pagination_and_filters(client):
    _login(client)
    a = _create_module(client, "Alpha")
    _create_module(client, "Beta")
    _create_module(client, "Gamma", parent_module_id=a["id"])

    r = client.get("/api/projects/p-1/modules?limit=50")
    assert r.json["limit"] == 2
    assert r.json["total"] == 3
    assert len(r.json["items"]) == 2

    r = client.get("/api/projects/p-1/modules?parent=root")
    assert {m["name"] for m in r.json["items"]} == {"Alpha", "Beta"}

    r = client.get("/api/projects/p-1/modules?q=amm")
    assert [m["name"] for m in r.json["items"]] == ["Gamma"]


def test_feature_move_and_reorder(client):
    _login(client)
    a = _create_module(client, "A")
    b = _create_module(client, "B")
    f1 = client.post(f"/api/modules/{a['id']}/features", json={"name": "F1"}).json
    f2 = client.post(f"/api/modules/{a['id']}/features", json={"name": "F2"}).json

    r = client.patch(f"/api/features/{f2['id']}/order", json={"direction": "UP"})
    assert r.json["sort_order"] == 0

    r = client.patch(f"/api/features/{f1['id']}", json={"module_id": b["id"]})
    assert r.status_code == 200
    assert r.json["module_id"] == b["id"]

    r = client.get(f"/api/modules/{a['id']}/features")
    assert [f["name"] for f in r.json["items"]] == ["F2"]

    r = client.delete(f"/api/features/{f1['id']}")
    assert r.status_code == 200
    assert client.patch(f"/api/features/{f1['id']}/restore").status_code == 200
