"""HTTP surface for archive requests, downloads and job processing."""

import io
import zipfile

import pytest
from fastapi.testclient import TestClient

from satchel.api import app
from satchel.cache import TTLCache
from satchel.database import get_db
from satchel.dependencies import (
    get_archive_store,
    get_asset_source,
    get_notifier,
    get_session_factory,
    get_url_cache,
)
from satchel.download_tokens import generate_download_token
from satchel.settings import settings

CRON_SECRET = "cron-test-secret"
OWNER = {"X-User-ID": "owner-1"}
STRANGER = {"X-User-ID": "someone-else"}


@pytest.fixture
def client(session_factory, archive_store, asset_source, notifier, monkeypatch):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    url_cache = TTLCache(60)
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_archive_store] = lambda: archive_store
    app.dependency_overrides[get_asset_source] = lambda: asset_source
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_url_cache] = lambda: url_cache
    monkeypatch.setattr(settings, "cron_secret", CRON_SECRET)

    yield TestClient(app)

    app.dependency_overrides.clear()


def _process(client, limit=5):
    return client.post(
        f"/api/v1/archive-jobs/process?limit={limit}",
        headers={"Authorization": f"Bearer {CRON_SECRET}"},
    )


def test_small_gallery_request_returns_download_url(client, make_gallery):
    gallery = make_gallery(3)

    response = client.post(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ready"
    assert body["stale"] is False
    assert body["download_url"].startswith("https://storage.test/")
    assert body["archive"]["image_count"] == 3
    assert body["filename"].endswith(".zip")


def test_large_gallery_is_accepted_then_built_by_scheduler(client, make_gallery):
    gallery = make_gallery(25)

    queued = client.post(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER)
    assert queued.status_code == 202
    job_id = queued.json()["job_id"]
    assert job_id

    again = client.post(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER)
    assert again.json()["job_id"] == job_id

    status = client.get(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER)
    assert status.json()["state"] == "pending"
    assert status.json()["asset_count"] == 25

    processed = _process(client)
    assert processed.status_code == 200
    assert processed.json()["succeeded"] == 1

    status = client.get(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER)
    assert status.json()["state"] == "ready"

    job = client.get(f"/api/v1/archive-jobs/{job_id}", headers=OWNER)
    assert job.status_code == 200
    assert job.json()["status"] == "completed"
    assert job.json()["attempts"] == 1


def test_process_requires_cron_secret(client):
    assert client.post("/api/v1/archive-jobs/process").status_code == 401
    wrong = client.post("/api/v1/archive-jobs/process", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    assert client.post(f"/api/v1/archive-jobs/process?secret={CRON_SECRET}").status_code == 200


def test_request_errors_map_to_http_statuses(client, make_gallery):
    private = make_gallery(2)
    empty = make_gallery(0)

    assert client.post("/api/v1/galleries/not-a-uuid/archive", headers=OWNER).status_code == 400
    missing = "3f0c2d4e-5a6b-4c7d-8e9f-0a1b2c3d4e5f"
    assert client.post(f"/api/v1/galleries/{missing}/archive", headers=OWNER).status_code == 404
    assert client.post(f"/api/v1/galleries/{private.id}/archive").status_code == 403
    assert client.post(f"/api/v1/galleries/{private.id}/archive?force=true", headers=STRANGER).status_code == 403
    assert client.post(f"/api/v1/galleries/{empty.id}/archive", headers=OWNER).status_code == 400


def test_download_redirects_to_signed_url(client, make_gallery):
    gallery = make_gallery(3)
    archive = client.post(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER).json()["archive"]

    response = client.get(f"/api/v1/archives/{archive['id']}/download", headers=OWNER, follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"].startswith("https://storage.test/")


def test_head_reports_ready_archive_size(client, make_gallery):
    gallery = make_gallery(3)
    archive = client.post(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER).json()["archive"]

    response = client.head(f"/api/v1/archives/{archive['id']}/download", headers=OWNER)

    assert response.status_code == 200
    assert response.headers["x-archive-status"] == "completed"
    assert int(response.headers["content-length"]) == archive["file_size_bytes"]


def test_email_token_grants_download_without_identity(client, make_gallery):
    gallery = make_gallery(3)
    archive = client.post(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER).json()["archive"]
    url = f"/api/v1/archives/{archive['id']}/download"

    assert client.get(url, follow_redirects=False).status_code == 403

    token = generate_download_token(archive["id"], secret=settings.download_token_secret, ttl_seconds=60)
    response = client.get(f"{url}?token={token}", follow_redirects=False)
    assert response.status_code == 302


def test_download_of_unfinished_archive_is_accepted(client, make_gallery):
    gallery = make_gallery(25)
    job_id = client.post(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER).json()["job_id"]
    archive_id = client.get(f"/api/v1/archive-jobs/{job_id}", headers=OWNER).json()["archive_id"]

    response = client.get(f"/api/v1/archives/{archive_id}/download", headers=OWNER, follow_redirects=False)
    head = client.head(f"/api/v1/archives/{archive_id}/download", headers=OWNER)

    assert response.status_code == 202
    assert response.headers["x-archive-status"] == "pending"
    assert head.status_code == 202


def test_cancel_job(client, make_gallery):
    gallery = make_gallery(25, is_public=True)
    job_id = client.post(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER).json()["job_id"]
    archive_id = client.get(f"/api/v1/archive-jobs/{job_id}", headers=OWNER).json()["archive_id"]

    assert client.post(f"/api/v1/archive-jobs/{job_id}/cancel", headers=STRANGER).status_code == 403
    assert client.post(f"/api/v1/archive-jobs/{job_id}/cancel", headers=OWNER).status_code == 200
    assert client.post(f"/api/v1/archive-jobs/{job_id}/cancel", headers=OWNER).status_code == 409

    gone = client.get(f"/api/v1/archives/{archive_id}/download", headers=OWNER, follow_redirects=False)
    assert gone.status_code == 410
    assert gone.headers["x-archive-status"] == "failed"


def test_turbo_download_streams_zip(client, make_gallery, asset_source):
    gallery = make_gallery(3, title="Turbo Test")
    empty = make_gallery(0)
    broken = make_gallery(2, title="Broken")
    asset_source.failing.add(f"galleries/{broken.id}/originals/0000.jpg")

    response = client.get(f"/api/v1/galleries/{gallery.id}/download-turbo", headers=OWNER)

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/zip"
    assert 'filename="turbo-test-gallery-' in response.headers["content-disposition"]
    with zipfile.ZipFile(io.BytesIO(response.content)) as bundle:
        assert bundle.namelist() == ["turbo-test-0001.jpg", "turbo-test-0002.jpg", "turbo-test-0003.jpg"]

    assert client.get(f"/api/v1/galleries/{empty.id}/download-turbo", headers=OWNER).status_code == 400
    assert client.get(f"/api/v1/galleries/{gallery.id}/download-turbo").status_code == 403
    assert client.get(f"/api/v1/galleries/{broken.id}/download-turbo", headers=OWNER).status_code == 502


def test_health_check_reports_database_state(client, monkeypatch, session_factory):
    monkeypatch.setattr("satchel.api.SessionLocal", session_factory)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_job_status_exposes_build_progress(client, make_gallery):
    gallery = make_gallery(25)
    job_id = client.post(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER).json()["job_id"]

    queued = client.get(f"/api/v1/archive-jobs/{job_id}", headers=OWNER).json()["progress"]
    assert queued["phase"] is None
    assert queued["current"] == 0

    _process(client)

    progress = client.get(f"/api/v1/archive-jobs/{job_id}", headers=OWNER).json()["progress"]
    assert progress["phase"] == "completed"
    assert progress["current"] == 25
    assert progress["total"] == 25
    assert progress["updated_at"] is not None


def test_owner_can_resend_archive_email(client, make_gallery, notifier):
    gallery = make_gallery(3, is_public=True)
    archive_id = client.post(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER).json()["archive"]["id"]
    url = f"/api/v1/galleries/{gallery.id}/archives/{archive_id}/resend"

    response = client.post(url, params={"email": "Client@Example.com"}, headers=OWNER)

    assert response.status_code == 200
    body = response.json()
    assert body["recipient_email"] == "client@example.com"
    assert body["status"] == "sent"
    assert notifier.sent[-1][0].email == "client@example.com"

    assert client.post(url, params={"email": "client@example.com"}, headers=STRANGER).status_code == 403
    assert client.post(url, params={"email": "not-an-address"}, headers=OWNER).status_code == 400
    other = make_gallery(2)
    wrong_gallery = f"/api/v1/galleries/{other.id}/archives/{archive_id}/resend"
    assert client.post(wrong_gallery, params={"email": "client@example.com"}, headers=OWNER).status_code == 404


def test_failed_resend_is_a_bad_gateway(client, make_gallery, notifier):
    gallery = make_gallery(3)
    archive_id = client.post(f"/api/v1/galleries/{gallery.id}/archive", headers=OWNER).json()["archive"]["id"]
    notifier.failing.add("owner@example.com")

    response = client.post(
        f"/api/v1/galleries/{gallery.id}/archives/{archive_id}/resend",
        params={"email": "owner@example.com"},
        headers=OWNER,
    )

    assert response.status_code == 502
    assert "mailbox rejected" in response.json()["detail"]


def test_app_title_comes_from_settings():
    assert app.title == settings.app_name
