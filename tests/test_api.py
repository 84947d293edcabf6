"""HTTP-level tests for the files API."""
import io
import json

from fastapi import Depends
from fastapi.testclient import TestClient
from PIL import Image

from filevault.api.deps import get_file_service
from filevault.core.exceptions import StorageError
from filevault.db.session import get_db
from filevault.main import create_app
from filevault.services.file_service import FileService
from filevault.storage.blob_store import LocalBlobStore

from conftest import EICAR_MARKER, PDF_BYTES, auth_headers

FILES = "/api/v1/files"


def _upload(client, user, filename="report.pdf", data=PDF_BYTES, mime_type="application/pdf"):
    return client.post(
        f"{FILES}/upload",
        files={"file": (filename, data, mime_type)},
        headers=auth_headers(user),
    )


def _png_bytes(size=(640, 480)):
    buffer = io.BytesIO()
    Image.new("RGB", size, color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


def test_requires_bearer_token(client):
    assert client.get(f"{FILES}/").status_code == 401
    assert client.get(f"{FILES}/", headers={"Authorization": "Bearer nonsense"}).status_code == 401


def test_share_and_revoke_flow(client):
    response = _upload(client, "A")
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    file_id = body["data"]["id"]
    assert body["data"]["key"].startswith("A/")
    assert body["data"]["status"] == "ACTIVE"

    response = client.post(
        f"{FILES}/{file_id}/share",
        json={"user_id": "B", "permission": "VIEW"},
        headers=auth_headers("A"),
    )
    assert response.status_code == 201
    share_id = response.json()["data"]["id"]

    info = client.get(f"{FILES}/{file_id}", headers=auth_headers("A")).json()["data"]
    assert [s["user_id"] for s in info["shared_with"]] == ["B"]

    # B can read but not retag
    assert client.get(f"{FILES}/{file_id}", headers=auth_headers("B")).status_code == 200
    response = client.patch(f"{FILES}/{file_id}/tags", json={"tags": {"x": "y"}}, headers=auth_headers("B"))
    assert response.status_code == 403
    assert response.json()["success"] is False

    found = client.get(f"{FILES}/search", params={"shared_with_me": "true"}, headers=auth_headers("B")).json()
    assert [f["id"] for f in found["data"]] == [file_id]

    assert client.delete(f"{FILES}/shares/{share_id}", headers=auth_headers("A")).status_code == 200

    found = client.get(f"{FILES}/search", params={"shared_with_me": "true"}, headers=auth_headers("B")).json()
    assert found["data"] == []
    assert client.get(f"{FILES}/{file_id}", headers=auth_headers("B")).status_code == 403


def test_partial_share_update(client):
    file_id = _upload(client, "A").json()["data"]["id"]
    share = client.post(
        f"{FILES}/{file_id}/share",
        json={"user_id": "B", "permission": "EDIT", "expires_at": "2999-01-01T00:00:00Z"},
        headers=auth_headers("A"),
    ).json()["data"]

    response = client.patch(
        f"{FILES}/shares/{share['id']}", json={"permission": "VIEW"}, headers=auth_headers("A")
    )
    assert response.status_code == 200
    updated = response.json()["data"]
    assert updated["permission"] == "VIEW"
    assert updated["expires_at"].startswith("2999-01-01")

    response = client.patch(f"{FILES}/shares/{share['id']}", json={"permission": "EDIT"}, headers=auth_headers("B"))
    assert response.status_code == 403


def test_disallowed_mime_type_is_bad_request(client):
    response = _upload(client, "A", filename="run.sh", data=b"#!/bin/sh\n", mime_type="text/x-shellscript")
    assert response.status_code == 400
    assert "not allowed" in response.json()["message"]


def test_infected_upload_returns_quarantine_record(client):
    response = _upload(client, "A", filename="bad.pdf", data=b"%PDF" + EICAR_MARKER)

    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["data"]["file_id"]
    assert body["data"]["scan_result"]["verdict"] == "INFECTED"

    quarantined = client.get(
        f"{FILES}/search", params={"status": "QUARANTINED"}, headers=auth_headers("A")
    ).json()["data"]
    assert [f["id"] for f in quarantined] == [body["data"]["file_id"]]


def test_url_tags_and_category(client):
    data = _upload(client, "A").json()["data"]

    response = client.get(f"{FILES}/url", params={"key": data["key"]}, headers=auth_headers("A"))
    assert response.status_code == 200
    assert response.json()["data"]["expires_in"] == 600

    response = client.patch(
        f"{FILES}/{data['id']}/tags", json={"tags": {"project": "alpha"}}, headers=auth_headers("A")
    )
    assert response.json()["data"]["tags"] == {"project": "alpha"}

    response = client.patch(
        f"{FILES}/{data['id']}/category", json={"category": "finance"}, headers=auth_headers("A")
    )
    assert response.json()["data"]["category"] == "finance"

    found = client.get(
        f"{FILES}/search", params={"tags": json.dumps({"project": "alpha"})}, headers=auth_headers("A")
    ).json()["data"]
    assert [f["id"] for f in found] == [data["id"]]


def test_search_rejects_malformed_tags(client):
    response = client.get(f"{FILES}/search", params={"tags": "{not json"}, headers=auth_headers("A"))
    assert response.status_code == 400


def test_versions_over_http(client):
    file_id = _upload(client, "A").json()["data"]["id"]

    response = client.post(
        f"{FILES}/{file_id}/versions",
        files={"file": ("report.pdf", PDF_BYTES + b"v2", "application/pdf")},
        data={"change_description": "second draft"},
        headers=auth_headers("A"),
    )
    assert response.status_code == 201
    assert response.json()["data"]["current_version"] == 2

    versions = client.get(f"{FILES}/{file_id}/versions", headers=auth_headers("A")).json()["data"]
    assert [v["version_number"] for v in versions] == [1, 2]
    assert versions[1]["change_description"] == "second draft"

    response = client.get(f"{FILES}/{file_id}/versions/2/url", headers=auth_headers("A"))
    assert response.status_code == 200
    assert response.json()["data"]["url"].startswith("memory://")

    assert client.get(f"{FILES}/{file_id}/versions/9/url", headers=auth_headers("A")).status_code == 404


def test_batch_endpoints_and_stats(client):
    first = _upload(client, "A", filename="1.pdf").json()["data"]["id"]
    second = _upload(client, "A", filename="2.pdf").json()["data"]["id"]
    foreign = _upload(client, "B", filename="3.pdf").json()["data"]["id"]

    response = client.post(
        f"{FILES}/batch-tag",
        json={"file_ids": [first, foreign], "tags": {"batch": "yes"}},
        headers=auth_headers("A"),
    )
    assert response.json()["data"] == {"updated": [first], "failed": [foreign]}

    response = client.post(
        f"{FILES}/batch-delete", json={"file_ids": [second, foreign]}, headers=auth_headers("A")
    )
    assert response.json()["data"] == {"deleted": [second], "failed": [foreign]}

    assert client.post(f"{FILES}/batch-delete", json={"file_ids": []}, headers=auth_headers("A")).status_code == 422

    stats = client.get(f"{FILES}/stats/me", headers=auth_headers("A")).json()["data"]
    assert stats["total_files"] == 1
    assert stats["files_by_status"] == {"ACTIVE": 1}


def test_delete_then_url_is_gone(client):
    data = _upload(client, "A").json()["data"]

    assert client.delete(f"{FILES}/{data['id']}", headers=auth_headers("B")).status_code == 403
    assert client.delete(f"{FILES}/{data['id']}", headers=auth_headers("A")).status_code == 200
    assert client.delete(f"{FILES}/{data['id']}", headers=auth_headers("A")).status_code == 200

    response = client.get(f"{FILES}/url", params={"key": data["key"]}, headers=auth_headers("A"))
    assert response.status_code == 410


def test_delete_by_key(client):
    key = _upload(client, "A").json()["data"]["key"]

    assert client.delete(f"{FILES}/", params={"key": key}, headers=auth_headers("B")).status_code == 403
    assert client.delete(f"{FILES}/", params={"key": key}, headers=auth_headers("A")).status_code == 200
    assert client.delete(f"{FILES}/", params={"key": "A/unknown"}, headers=auth_headers("A")).status_code == 404


def test_image_preview(client):
    image_id = _upload(client, "A", filename="photo.png", data=_png_bytes(), mime_type="image/png").json()["data"]["id"]

    response = client.get(f"{FILES}/{image_id}/preview", headers=auth_headers("A"))
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    thumbnail = Image.open(io.BytesIO(response.content))
    assert max(thumbnail.size) <= 200

    pdf_id = _upload(client, "A").json()["data"]["id"]
    assert client.get(f"{FILES}/{pdf_id}/preview", headers=auth_headers("A")).status_code == 415


def test_local_blob_download(tmp_path, session_factory, scanner, config):
    blob_store = LocalBlobStore(str(tmp_path / "blobs"), "http://testserver", "/api/v1")
    app = create_app(blob_store=blob_store, scanner=scanner)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_get_file_service(db=Depends(get_db)):
        return FileService(db, blob_store, scanner, config)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_file_service] = override_get_file_service
    client = TestClient(app)

    key = _upload(client, "A").json()["data"]["key"]
    url = client.get(f"{FILES}/url", params={"key": key}, headers=auth_headers("A")).json()["data"]["url"]

    response = client.get(url)
    assert response.status_code == 200
    assert response.content == PDF_BYTES

    assert client.get(f"{FILES}/blob", params={"token": "forged"}).status_code == 403


def test_category_can_be_cleared_over_http(client):
    file_id = _upload(client, "A").json()["data"]["id"]
    client.patch(f"{FILES}/{file_id}/category", json={"category": "finance"}, headers=auth_headers("A"))

    response = client.patch(f"{FILES}/{file_id}/category", json={"category": None}, headers=auth_headers("A"))

    assert response.status_code == 200
    assert response.json()["data"]["category"] is None


def test_storage_failure_hides_backend_detail(client, blob_store):
    def failing_put(*args, **kwargs):
        raise StorageError("secret bucket detail")

    blob_store.put = failing_put
    response = _upload(client, "A")

    assert response.status_code == 502
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Storage backend unavailable"
    assert "secret bucket detail" not in response.text


def test_unexpected_error_is_generic_500(app, monkeypatch):
    def broken(self, owner_id):
        raise RuntimeError("stack detail")

    monkeypatch.setattr(FileService, "list_files", broken)
    client = TestClient(app, raise_server_exceptions=False)

    response = client.get(f"{FILES}/", headers=auth_headers("A"))

    assert response.status_code == 500
    assert response.json()["message"] == "Internal server error"
    assert "stack detail" not in response.text
