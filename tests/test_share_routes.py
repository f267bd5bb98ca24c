"""HTTP tests for the share and admin endpoints."""

from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from main import create_app
from share_routes import INVALID_SHARE_DETAIL

ADMIN = {"X-Admin-Token": "admin-secret"}


@pytest.fixture
def client(core):
    with TestClient(create_app(core)) as c:
        yield c


class TestShareEndpoints:

    def test_create_and_download(self, client, store):
        file = store(b"over the wire", name="wire.txt")

        res = client.post(f"/share/{file.external_id}", json={"max_downloads": 1})
        assert res.status_code == 200
        body = res.json()
        assert body["token_mode"] == "legacy"
        assert body["remaining_downloads"] == 1

        download = client.get(body["download_url"])
        assert download.status_code == 200
        assert download.content == b"over the wire"
        assert download.headers["content-type"].startswith("text/plain")
        assert download.headers["x-remaining-downloads"] == "0"

        again = client.get(body["download_url"])
        assert again.status_code == 404
        assert again.json()["detail"] == INVALID_SHARE_DETAIL

    def test_failures_look_identical(self, client, core, store):
        """Unknown, exhausted and expired links all return the same response."""
        spent = core.mint_share_token(store().external_id, max_downloads=1).token
        client.get(f"/share/{spent}/download")
        expired = core.mint_share_token(
            store().external_id, expiration_date=date(2020, 1, 2), today=date(2020, 1, 1)
        ).token

        responses = [
            client.get("/share/nothingHere1/download"),
            client.get(f"/share/{spent}/download"),
            client.get(f"/share/{expired}/download"),
        ]
        assert {r.status_code for r in responses} == {404}
        assert {r.json()["detail"] for r in responses} == {INVALID_SHARE_DETAIL}

    def test_password_file_shared_by_owner(self, client, store):
        sealed = store(b"secret", password="pw")

        denied = client.post(f"/share/{sealed.external_id}", json={}, headers={"X-File-Password": "wrong"})
        assert denied.status_code == 403

        res = client.post(f"/share/{sealed.external_id}", json={}, headers={"X-File-Password": "pw"})
        assert res.status_code == 200

        download = client.get(res.json()["download_url"])
        assert download.content == b"secret"

        meta = client.get(f"/share/{res.json()['token']}/meta")
        assert meta.json()["password_protected"] is True

    def test_create_for_unknown_file(self, client):
        assert client.post("/share/nope", json={}).status_code == 404

    def test_invalid_v2_request(self, client, store):
        file = store(b"cipher", client_encrypted=True)
        res = client.post(f"/share/{file.external_id}", json={"mode": "encrypted-v2-share", "token": "short"})
        assert res.status_code == 400

    def test_v2_meta_then_download(self, client, store):
        file = store(b"cipher", name="c.bin", client_encrypted=True, original_size=2)
        token = "PUBLIC01theSecretHalf"
        res = client.post(
            f"/share/{file.external_id}",
            json={
                "mode": "encrypted-v2-share",
                "token": token,
                "wrapped_key": "a2V5",
                "wrap_nonce": "bm9uY2U=",
                "max_downloads": 1,
            },
        )
        assert res.status_code == 200
        assert res.json()["public_id"] == "PUBLIC01"

        meta = client.get(f"/share/{token}/meta")
        assert meta.status_code == 200
        assert meta.json()["wrapped_key"] == "a2V5"
        assert meta.json()["remaining_downloads"] == 1

        download = client.get(f"/share/{token}/download")
        assert download.content == b"cipher"
        assert download.headers["content-type"] == "application/octet-stream"

    def test_meta_wrong_secret(self, client, store):
        file = store(b"cipher", client_encrypted=True)
        client.post(
            f"/share/{file.external_id}",
            json={"mode": "encrypted-v2-share", "token": "PUBLIC02secret", "wrapped_key": "k", "wrap_nonce": "n"},
        )
        res = client.get("/share/PUBLIC02/meta", params={"secret": "guess"})
        assert res.status_code == 404


class TestAdminEndpoints:

    def test_requires_token(self, client):
        assert client.post("/admin/sweep").status_code == 401
        assert client.post("/admin/sweep", headers={"X-Admin-Token": "wrong"}).status_code == 401

    def test_disabled_without_configured_token(self, client, core):
        core.apply_settings(core.settings.model_copy(update={"admin_token": ""}))
        assert client.post("/admin/sweep", headers=ADMIN).status_code == 403

    def test_manual_sweep(self, client, core, store):
        file = store()
        file.uploaded_at = date.today() - timedelta(days=31)
        core.repo.save_file(file)

        res = client.post("/admin/sweep", headers=ADMIN)
        assert res.status_code == 200
        assert res.json() == {"expired_files_removed": 1}

    def test_schedule_update(self, client):
        res = client.put(
            "/admin/schedule",
            headers=ADMIN,
            json={"file_deletion_cron": "0 45 5 * * *", "max_file_lifetime_days": 7},
        )
        assert res.status_code == 200
        assert res.json()["file_deletion_cron"] == "0 45 5 * * *"
        assert res.json()["max_file_lifetime_days"] == 7
        assert res.json()["next_run"] is not None

    def test_bad_cron_rejected_and_previous_kept(self, client):
        res = client.put("/admin/schedule", headers=ADMIN, json={"file_deletion_cron": "whenever"})
        assert res.status_code == 400

        current = client.get("/admin/schedule", headers=ADMIN).json()
        assert current["file_deletion_cron"] == "0 0 2 * * *"

    def test_listings_and_analytics(self, client, store):
        store()
        hidden = store(name="hidden.txt")
        client.app.state.core.files.toggle_hidden(hidden.external_id)

        assert len(client.get("/files").json()) == 1
        assert len(client.get("/admin/files", headers=ADMIN).json()) == 2
        assert client.get("/admin/analytics", headers=ADMIN).json()["file_count"] == 2

    def test_health(self, client):
        res = client.get("/health")
        assert res.status_code == 200
        assert res.json()["scheduler_running"] is True
