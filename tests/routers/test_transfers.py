from datetime import timedelta

from app.models.transfer import Transfer


def _upload(client, content=b"hello world", name="hello.txt", **form):
    files = {"file": (name, content, "text/plain")}
    data = {
        "sender_email": "alice@example.com",
        "sender_name": "Alice",
        "expiration_hours": "24",
        "max_downloads": "3",
    }
    data.update(form)
    return client.post("/api/transfers", files=files, data=data)


def _download(client, transfer_id, token, password=None):
    body = {"transfer_id": transfer_id, "access_token": token}
    if password is not None:
        body["password"] = password
    return client.post("/api/transfers/download", json=body)


def test_upload_file_success(client):
    resp = _upload(client)

    assert resp.status_code == 200
    body = resp.json()
    assert len(body["transfer_id"]) == 32
    assert isinstance(body["access_token"], str) and len(body["access_token"]) >= 43
    assert body["share_url"] == (
        f"http://testserver/transfer?transferId={body['transfer_id']}&token={body['access_token']}"
    )
    assert body["expires_at"]


def test_download_success_roundtrip(client):
    original_bytes = b"hello world"
    up = _upload(client, original_bytes).json()

    down = _download(client, up["transfer_id"], up["access_token"])

    assert down.status_code == 200
    assert down.headers["content-type"].startswith("text/plain")
    assert down.headers["content-disposition"].startswith('attachment; filename="hello.txt"')
    assert down.content == original_bytes


def test_upload_rejects_long_expiration(client):
    resp = _upload(client, expiration_hours="200")
    assert resp.status_code == 400


def test_upload_rejects_empty_file(client):
    resp = _upload(client, b"")
    assert resp.status_code == 400


def test_upload_requires_file_and_sender(client):
    resp = client.post("/api/transfers", data={"sender_email": "alice@example.com"})
    assert resp.status_code == 400
    resp = _upload(client, sender_email="")
    assert resp.status_code == 400


def test_download_not_found_and_bad_token_are_identical(client):
    up = _upload(client).json()

    missing = _download(client, "deadbeef" * 4, up["access_token"])
    bad_token = _download(client, up["transfer_id"], "not-the-token")

    assert missing.status_code == bad_token.status_code == 404
    assert missing.json() == bad_token.json()


def test_info_and_stats_hide_existence_without_token(client):
    up = _upload(client).json()
    for path in (f"/api/transfers/{up['transfer_id']}", f"/api/transfers/{up['transfer_id']}/stats"):
        wrong = client.get(path, params={"token": "nope"})
        missing = client.get(path.replace(up["transfer_id"], "0" * 32), params={"token": up["access_token"]})
        assert wrong.status_code == missing.status_code == 404
        assert wrong.json() == missing.json()


def test_download_expired(client, db_session, transfer_record, clock):
    db_session.add(transfer_record("expired-token", expires_at=clock() - timedelta(days=1)))
    db_session.commit()
    rec = db_session.query(Transfer).first()

    resp = _download(client, rec.id, "expired-token")
    assert resp.status_code == 410


def test_download_limit_reached(client, db_session, transfer_record):
    db_session.add(transfer_record("limited-token", max_downloads=1, current_downloads=1))
    db_session.commit()
    rec = db_session.query(Transfer).first()

    resp = _download(client, rec.id, "limited-token")
    assert resp.status_code == 410


def test_password_protected_download(client):
    up = _upload(client, b"0123456789", password="secret", max_downloads="1").json()

    assert _download(client, up["transfer_id"], up["access_token"]).status_code == 401
    assert _download(client, up["transfer_id"], up["access_token"], "wrong").status_code == 401
    ok = _download(client, up["transfer_id"], up["access_token"], "secret")
    assert ok.status_code == 200
    assert ok.content == b"0123456789"
    again = _download(client, up["transfer_id"], up["access_token"], "secret")
    assert again.status_code == 410


def test_validate_does_not_count(client):
    up = _upload(client, password="secret").json()

    good = client.post(
        "/api/transfers/validate",
        json={"transfer_id": up["transfer_id"], "access_token": up["access_token"], "password": "secret"},
    )
    bad = client.post(
        "/api/transfers/validate",
        json={"transfer_id": up["transfer_id"], "access_token": up["access_token"], "password": "x"},
    )

    assert good.json()["valid"] is True
    assert bad.json()["valid"] is False
    info = client.get(f"/api/transfers/{up['transfer_id']}", params={"token": up["access_token"]})
    assert info.json()["current_downloads"] == 0


def test_info_and_statistics(client):
    up = _upload(client, message="for you").json()
    _download(client, up["transfer_id"], "wrong")
    _download(client, up["transfer_id"], up["access_token"])

    info = client.get(f"/api/transfers/{up['transfer_id']}", params={"token": up["access_token"]})
    assert info.status_code == 200
    body = info.json()
    assert body["file_name"] == "hello.txt"
    assert body["message"] == "for you"
    assert body["current_downloads"] == 1
    assert body["requires_password"] is False
    assert "encryption_key" not in body and "password_hash" not in body

    stats = client.get(f"/api/transfers/{up['transfer_id']}/stats", params={"token": up["access_token"]})
    assert stats.status_code == 200
    assert stats.json()["total_downloads"] == 2
    assert stats.json()["successful_downloads"] == 1
    assert stats.json()["failed_downloads"] == 1
    assert stats.json()["remaining_downloads"] == 2


def test_download_records_client_details(client, registry):
    up = _upload(client).json()
    client.post(
        "/api/transfers/download",
        json={"transfer_id": up["transfer_id"], "access_token": up["access_token"]},
        headers={"User-Agent": "curl/8.0"},
    )
    entry = registry.get(up["transfer_id"]).download_log[0]
    assert entry.success is True
    assert entry.user_agent == "curl/8.0"
    assert entry.source_address == "testclient"


def test_delete(client):
    up = _upload(client).json()

    assert client.delete(f"/api/transfers/{up['transfer_id']}", params={"token": "nope"}).status_code == 404
    assert client.delete(f"/api/transfers/{up['transfer_id']}", params={"token": up["access_token"]}).status_code == 200
    assert _download(client, up["transfer_id"], up["access_token"]).status_code == 404


def test_cleanup_endpoint(client, clock):
    _upload(client, expiration_hours="1")
    keep = _upload(client, expiration_hours="48").json()
    clock.advance(timedelta(hours=2))

    resp = client.post("/api/transfers/cleanup")
    assert resp.status_code == 200
    assert resp.json() == {"deleted": 1}
    assert client.post("/api/transfers/cleanup").json() == {"deleted": 0}
    info = client.get(f"/api/transfers/{keep['transfer_id']}", params={"token": keep["access_token"]})
    assert info.status_code == 200


def test_cleanup_endpoint_requires_admin_token_when_configured(client, monkeypatch):
    monkeypatch.setattr("app.routers.transfers.CLEANUP_ADMIN_TOKEN", "s3cret")

    assert client.post("/api/transfers/cleanup").status_code == 403
    assert client.post("/api/transfers/cleanup", headers={"X-Admin-Token": "wrong"}).status_code == 403
    assert client.post("/api/transfers/cleanup", headers={"X-Admin-Token": "s3cret"}).status_code == 200


def test_corrupted_payload_is_a_server_error(client, registry, blob_store):
    up = _upload(client).json()
    locator = registry.get(up["transfer_id"]).payload_locator
    with blob_store.open_write(locator) as fh:
        fh.write(b"garbage that is long enough to look like a payload")

    resp = _download(client, up["transfer_id"], up["access_token"])
    assert resp.status_code == 500
    assert resp.json() == {"detail": "Stored file is corrupted"}
