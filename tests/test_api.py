import io
import zipfile

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from catalog.main import create_app
from catalog.routes import decode_name

BUCKET = "workflows"
RESOURCES = f"/buckets/{BUCKET}/resources"


def upload(client, name, content=b"<job/>", kind="workflow", content_type="application/xml", bucket=BUCKET):
    data = {"kind": kind, "commitMessage": "first", "objectContentType": content_type}
    if name is not None:
        data["name"] = name
    return client.post(
        f"/buckets/{bucket}/resources",
        data=data,
        files={"file": ("upload.bin", content, "application/octet-stream")},
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_and_get(client):
    response = upload(client, "wf")
    assert response.status_code == 201
    [created] = response.json()["objects"]
    assert created["name"] == "wf"
    assert created["links"]["self"].endswith(f"{RESOURCES}/wf")

    response = client.get(f"{RESOURCES}/wf")
    assert response.status_code == 200
    body = response.json()
    assert body["kind"] == "workflow"
    assert body["content_type"] == "application/xml"
    assert body["links"]["raw"].endswith(f"{RESOURCES}/wf/raw")


def test_raw_content_is_verbatim(client):
    upload(client, "notes", content=b"plain text", content_type="text/plain")

    response = client.get(f"{RESOURCES}/notes/raw")

    assert response.status_code == 200
    assert response.content == b"plain text"
    assert response.headers["content-type"] == "text/plain"
    assert response.headers["content-length"] == "10"


def test_create_duplicate(client):
    upload(client, "wf")
    response = upload(client, "wf")
    assert response.status_code == 409
    assert response.json()["code"] == "ObjectAlreadyExists"


def test_create_in_unknown_bucket(client):
    response = upload(client, "wf", bucket="nope")
    assert response.status_code == 404
    assert response.json()["code"] == "NoSuchBucket"


def test_create_from_archive(client, make_archive):
    archive = make_archive([("a.xml", b"<a/>"), ("b.xml", b"<b/>")])
    response = upload(client, None, content=archive)
    assert response.status_code == 201
    assert [o["name"] for o in response.json()["objects"]] == ["a", "b"]


def test_create_from_invalid_archive(client):
    response = upload(client, None, content=b"not a zip")
    assert response.status_code == 422
    assert response.json()["code"] == "InvalidArchive"


def test_get_missing(client):
    assert client.get(f"{RESOURCES}/missing").status_code == 404
    assert client.get(f"{RESOURCES}/missing/raw").status_code == 404


def test_list_and_kind_filter(client):
    upload(client, "b", kind="workflow")
    upload(client, "a", kind="script")

    response = client.get(RESOURCES)
    assert response.status_code == 200
    assert [m["name"] for m in response.json()] == ["a", "b"]

    response = client.get(RESOURCES, params={"kind": "workflow"})
    assert [m["name"] for m in response.json()] == ["b"]


def test_list_unknown_bucket(client):
    assert client.get("/buckets/nope/resources").status_code == 404


def test_archive_export(client):
    upload(client, "a", content=b"<a/>")
    upload(client, "b", content=b"<b/>")

    response = client.get(RESOURCES, params=[("name", "a"), ("name", "b")])
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/zip"
    assert response.headers["content-disposition"] == 'attachment; filename="archive.zip"'
    assert response.headers["content-encoding"] == "binary"
    with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
        assert sorted(zf.namelist()) == ["a", "b"]


def test_archive_export_partial(client):
    upload(client, "a", content=b"<a/>")

    response = client.get(RESOURCES, params=[("name", "a"), ("name", "c")])
    assert response.status_code == 206
    with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
        assert zf.namelist() == ["a"]


def test_archive_export_nothing_found(client):
    response = client.get(RESOURCES, params=[("name", "c")])
    assert response.status_code == 404


def test_delete(client):
    upload(client, "wf")
    assert client.delete(f"{RESOURCES}/wf").status_code == 200
    assert client.get(f"{RESOURCES}/wf").status_code == 404
    assert client.delete(f"{RESOURCES}/wf").status_code == 404
    assert upload(client, "wf").status_code == 201


def test_restore(client):
    first = upload(client, "wf", content=b"one").json()["objects"][0]
    response = client.post(
        f"{RESOURCES}/wf/revisions",
        data={"commitMessage": "second"},
        files={"file": ("wf.xml", b"two", "application/xml")},
    )
    assert response.status_code == 201
    assert client.get(f"{RESOURCES}/wf/raw").content == b"two"

    response = client.put(f"{RESOURCES}/wf", params={"commitTimeRaw": first["commit_time"]})
    assert response.status_code == 200
    assert response.json()["commit_time"] > first["commit_time"]
    assert client.get(f"{RESOURCES}/wf/raw").content == b"one"

    revisions = client.get(f"{RESOURCES}/wf/revisions").json()
    assert len(revisions) == 3
    old = client.get(f"{RESOURCES}/wf/revisions/{first['commit_time']}")
    assert old.status_code == 200
    assert old.json()["commit_message"] == "first"
    assert client.get(f"{RESOURCES}/wf/revisions/{first['commit_time']}/raw").content == b"one"


def test_restore_unknown_revision(client):
    upload(client, "wf")
    response = client.put(f"{RESOURCES}/wf", params={"commitTimeRaw": 1})
    assert response.status_code == 404
    assert response.json()["code"] == "NoSuchRevision"


def test_restore_unknown_object(client):
    response = client.put(f"{RESOURCES}/missing", params={"commitTimeRaw": 1})
    assert response.status_code == 404
    assert response.json()["code"] == "NoSuchObject"


def test_decode_name():
    assert decode_name("folder%2Fwf") == "folder/wf"
    assert decode_name("my+wf") == "my wf"
    assert decode_name("plain") == "plain"


def test_plus_in_path_decodes_to_space(client):
    upload(client, "my wf")
    response = client.get(f"{RESOURCES}/my+wf")
    assert response.status_code == 200
    assert response.json()["name"] == "my wf"


def test_archive_export_unknown_bucket(client):
    response = client.get("/buckets/nope/resources", params=[("name", "a")])
    assert response.status_code == 404
    assert response.json()["code"] == "NoSuchBucket"


def test_archive_export_stops_when_client_disconnects(client, monkeypatch):
    upload(client, "a")

    async def disconnected(self):
        return True

    monkeypatch.setattr(Request, "is_disconnected", disconnected)
    response = client.get(RESOURCES, params=[("name", "a")])
    assert response.status_code == 499
    assert response.json()["code"] == "ArchiveBuildCancelled"


def test_unsafe_bucket_name_rejected(client):
    response = client.post("/buckets", params={"name": ".."})
    assert response.status_code == 422
    assert response.json()["code"] == "InvalidContent"


def test_buckets(client):
    assert client.post("/buckets", params={"name": BUCKET}).status_code == 409
    assert client.post("/buckets", params={"name": "scripts", "owner": "bob"}).status_code == 201
    assert [b["name"] for b in client.get("/buckets").json()] == ["scripts", BUCKET]


@pytest.fixture
def secured_client(settings):
    app = create_app(settings.model_copy(update={"session_id_required": True}))
    with TestClient(app) as test_client:
        test_client.post("/buckets", params={"name": BUCKET, "owner": "alice"})
        yield test_client


def test_session_required(secured_client):
    response = secured_client.get(RESOURCES)
    assert response.status_code == 401
    assert response.json()["code"] == "NotAuthenticated"

    assert secured_client.get(RESOURCES, headers={"sessionID": "bogus"}).status_code == 401


def test_login_grants_access(secured_client):
    response = secured_client.post("/api/login", json={"username": "admin", "password": "password"})
    assert response.status_code == 200
    token = response.json()["token"]

    assert secured_client.get(RESOURCES, headers={"sessionID": token}).status_code == 200


def test_login_with_bad_password(secured_client):
    response = secured_client.post("/api/login", json={"username": "admin", "password": "wrong"})
    assert response.status_code == 401


def test_access_denied_on_foreign_bucket(secured_client):
    access = secured_client.app.state.access
    bob = access.create_token("bob")
    alice = access.create_token("alice")

    response = secured_client.get(RESOURCES, headers={"sessionID": bob})
    assert response.status_code == 403
    assert response.json()["code"] == "AccessDenied"
    assert secured_client.get(RESOURCES, headers={"sessionID": alice}).status_code == 200
