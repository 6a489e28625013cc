"""HTTP API tests using the Flask test client"""

import io
import time

import redis

from conftest import upload_form, wait_until


def post_upload(client, name, **kwargs):
    return client.post("/upload", data=upload_form(name, **kwargs),
                       content_type="multipart/form-data")


def test_healthcheck(client):
    res = client.get("/healthcheck")
    assert res.status_code == 200
    assert res.get_json() == {"redis": "ok"}


def test_healthcheck_reports_redis_down(client, lifecycle, monkeypatch):
    def broken():
        raise redis.ConnectionError("down")

    monkeypatch.setattr(lifecycle.meta.client, "ping", broken)
    res = client.get("/healthcheck")
    assert res.status_code == 503
    assert res.get_json() == {"redis": "unavailable"}


def test_upload_then_info(client):
    res = post_upload(client, "quota-file", content=b"file_content", quota="1", life="3600")
    assert res.status_code == 200
    data = res.get_json()
    assert data["name"] == "quota-file"
    assert data["original_filename"] == "file_name.txt"
    assert data["remaining_downloads"] == 1
    assert data["lifespan"] == 3600
    assert data["size"] == len(b"file_content")

    res = client.get("/info/quota-file")
    assert res.status_code == 200
    assert res.get_json() == data


def test_upload_defaults(client):
    res = post_upload(client, "defaults", quota=None, life=None)
    assert res.status_code == 200
    data = res.get_json()
    assert data["lifespan"] == -1
    assert data["remaining_downloads"] == 1


def test_download_scenario(client, lifecycle):
    assert post_upload(client, "a", content=b"hi", quota="1", life="3600").status_code == 200

    res = client.get("/download/a")
    assert res.status_code == 200
    assert res.data == b"hi"
    assert "attachment" in res.headers["Content-Disposition"]
    assert "file_name.txt" in res.headers["Content-Disposition"]
    res.close()

    assert client.get("/download/a").status_code == 404
    res = client.get("/info/a")
    assert res.status_code == 404
    assert res.get_json() == {"error": "Expirado ou cota esgotada."}
    assert wait_until(lambda: not lifecycle.blobs.exists("a"))


def test_not_found_and_exhausted_look_the_same(client):
    post_upload(client, "once", quota="1")
    client.get("/download/once").close()

    never = client.get("/download/never-existed")
    gone = client.get("/download/once")
    assert never.status_code == gone.status_code == 404
    assert never.get_json() == gone.get_json()


def test_invalid_name(client):
    res = post_upload(client, "invalid_name_because_it_contains_@", quota="42")
    assert res.status_code == 400
    assert "error" in res.get_json()


def test_duplicate_upload(client):
    assert post_upload(client, "dup").status_code == 200
    res = post_upload(client, "dup")
    assert res.status_code == 409


def test_bad_numbers(client):
    assert post_upload(client, "n1", life="0").status_code == 400
    assert post_upload(client, "n2", quota="0").status_code == 400
    assert post_upload(client, "n3", quota="many").status_code == 400


def test_missing_fields(client):
    res = client.post("/upload", data={"name": "no-file"}, content_type="multipart/form-data")
    assert res.status_code == 400
    res = client.post("/upload", data={"file": (io.BytesIO(b"x"), "x.txt")},
                      content_type="multipart/form-data")
    assert res.status_code == 400


def test_too_large(client, cfg, lifecycle):
    res = post_upload(client, "big", content=b"x" * (cfg.max_upload_size + 1))
    assert res.status_code == 413
    assert not lifecycle.blobs.exists("big")


def test_storage_error_is_500(client, lifecycle, monkeypatch):
    post_upload(client, "broken", quota="3")
    lifecycle.blobs.delete("broken")
    monkeypatch.setattr(lifecycle, "clock", lambda: time.time() + 10)
    res = client.get("/download/broken")
    assert res.status_code == 500
    assert "error" in res.get_json()


def test_unknown_route_is_json_404(client):
    res = client.get("/nothing/here")
    assert res.status_code == 404
    assert res.get_json() == {"error": "Não encontrado."}


def test_security_headers(client):
    res = client.get("/healthcheck")
    assert res.headers["X-Content-Type-Options"] == "nosniff"
    assert res.headers["X-Frame-Options"] == "DENY"
    assert res.headers["Referrer-Policy"] == "no-referrer"
