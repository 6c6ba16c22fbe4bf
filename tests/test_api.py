"""
End-to-end tests for the HTTP endpoints.
"""

import io
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from src.security.presign import PRESIGN_TTL_SECONDS, decode_token, encode_token


def _png(width: int, height: int) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


def _upload(client, headers, filename, data):
    return client.post(
        "/upload", params={"client": "acme", "filename": filename}, content=data, headers=headers
    )


class TestUpload:
    def test_upload_creates_file(self, client, acme_headers, settings):
        response = _upload(client, acme_headers, "notes.txt", b"hello")
        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "uploaded"
        assert body["path"].endswith("acme/notes.txt")
        assert (settings.storage_root / "acme" / "notes.txt").read_bytes() == b"hello"

    def test_upload_strips_path_components(self, client, acme_headers, settings):
        response = _upload(client, acme_headers, "../../etc/passwd", b"x")
        assert response.status_code == 201
        assert (settings.storage_root / "acme" / "passwd").exists()

    def test_upload_without_filename_is_400(self, client, acme_headers):
        response = _upload(client, acme_headers, "", b"x")
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "validation_error"
        assert body["detail"] == "client and filename required"
        assert response.headers["Access-Control-Allow-Origin"] == "https://acme.example"

    def test_upload_requires_key(self, client, settings):
        response = client.post(
            "/upload", params={"client": "acme", "filename": "a.txt"}, content=b"x"
        )
        assert response.status_code == 401
        assert not (settings.storage_root / "acme" / "a.txt").exists()

    def test_storage_failure_is_500(self, client, acme_headers, settings):
        settings.storage_root.mkdir(parents=True, exist_ok=True)
        (settings.storage_root / "acme").write_bytes(b"a file where the dir should be")
        response = _upload(client, acme_headers, "a.txt", b"x")
        assert response.status_code == 500
        assert response.json()["code"] == "storage_error"


class TestListAndDelete:
    def test_list_returns_uploaded_names(self, client, acme_headers):
        _upload(client, acme_headers, "b.txt", b"1")
        _upload(client, acme_headers, "a.txt", b"2")
        response = client.get("/list", params={"client": "acme"}, headers=acme_headers)
        assert response.status_code == 200
        assert response.json() == ["a.txt", "b.txt"]

    def test_list_empty_namespace(self, client, acme_headers):
        response = client.get("/list", params={"client": "acme"}, headers=acme_headers)
        assert response.status_code == 200
        assert response.json() == []

    def test_list_is_scoped_to_client(self, client, acme_headers):
        _upload(client, acme_headers, "secret.txt", b"1")
        response = client.get(
            "/list", params={"client": "globex"}, headers={"x-api-key": "key-globex"}
        )
        assert response.json() == []

    def test_delete(self, client, acme_headers):
        _upload(client, acme_headers, "old.txt", b"1")
        response = client.delete(
            "/delete", params={"client": "acme", "filename": "old.txt"}, headers=acme_headers
        )
        assert response.status_code == 200
        assert response.json() == {"message": "deleted"}
        listing = client.get("/list", params={"client": "acme"}, headers=acme_headers)
        assert listing.json() == []

    def test_delete_missing_file_is_storage_error(self, client, acme_headers):
        response = client.delete(
            "/delete", params={"client": "acme", "filename": "nope.txt"}, headers=acme_headers
        )
        assert response.status_code == 500
        assert response.json()["code"] == "storage_error"


class TestDownload:
    def test_download_original_bytes(self, client, acme_headers):
        payload = _png(20, 10)
        _upload(client, acme_headers, "pic.png", payload)
        response = client.get("/download", params={"client": "acme", "filename": "pic.png"})
        assert response.status_code == 200
        assert response.content == payload
        assert response.headers["content-type"] == "image/png"

    def test_download_needs_no_key(self, client, acme_headers):
        _upload(client, acme_headers, "doc.txt", b"plain text")
        response = client.get(
            "/download",
            params={"client": "acme", "filename": "doc.txt"},
            headers={"Origin": "https://acme.example"},
        )
        assert response.status_code == 200
        assert response.content == b"plain text"
        assert response.headers["content-type"].startswith("text/plain")
        assert response.headers["Access-Control-Allow-Origin"] == "https://acme.example"

    def test_download_with_resize(self, client, acme_headers):
        _upload(client, acme_headers, "pic.png", _png(200, 100))
        response = client.get(
            "/download", params={"client": "acme", "filename": "pic.png", "width": 300}
        )
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert Image.open(io.BytesIO(response.content)).size == (300, 150)

    def test_download_missing_file_is_storage_error(self, client):
        response = client.get("/download", params={"client": "acme", "filename": "ghost.png"})
        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "storage_error"
        assert "correlation_id" in body

    def test_download_from_wrong_origin_is_rejected(self, client, acme_headers):
        _upload(client, acme_headers, "pic.png", _png(5, 5))
        response = client.get(
            "/download",
            params={"client": "acme", "filename": "pic.png"},
            headers={"Origin": "https://evil.example"},
        )
        assert response.status_code == 401

    def test_negative_width_is_400(self, client):
        response = client.get(
            "/download", params={"client": "acme", "filename": "pic.png", "width": -5}
        )
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_oversized_resize_is_400(self, client, acme_headers):
        _upload(client, acme_headers, "pic.png", _png(4, 4))
        response = client.get(
            "/download",
            params={"client": "acme", "filename": "pic.png", "width": 100000, "height": 100000},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "size_too_large"

    def test_resize_of_non_image_is_500(self, client, acme_headers):
        _upload(client, acme_headers, "doc.txt", b"not an image")
        response = client.get(
            "/download", params={"client": "acme", "filename": "doc.txt", "height": 10}
        )
        assert response.status_code == 500
        assert response.json()["code"] == "image_unreadable"


class TestPresignedUpload:
    def _issue(self, client, acme_headers, filename="direct.bin"):
        response = client.get(
            "/presignurl", params={"client": "acme", "filename": filename}, headers=acme_headers
        )
        assert response.status_code == 200
        return response.json()["url"]

    def test_issue_and_consume(self, client, acme_headers, settings):
        url = self._issue(client, acme_headers)
        assert url.startswith("/presignedupload?")

        response = client.put(url, content=b"direct upload")
        assert response.status_code == 201
        assert response.json()["path"] == str(
            (settings.storage_root / "acme" / "direct.bin").resolve()
        )
        assert (settings.storage_root / "acme" / "direct.bin").read_bytes() == b"direct upload"

    def test_consume_with_post(self, client, acme_headers, settings):
        url = self._issue(client, acme_headers)
        assert client.post(url, content=b"via post").status_code == 201

    def test_issue_requires_key(self, client):
        response = client.get("/presignurl", params={"client": "acme", "filename": "x"})
        assert response.status_code == 401

    def test_issue_requires_filename(self, client, acme_headers):
        response = client.get("/presignurl", params={"client": "acme"}, headers=acme_headers)
        assert response.status_code == 400

    def test_expired_url_is_401_and_audited(self, client, acme_headers, clock, app, settings):
        url = self._issue(client, acme_headers)
        clock.advance(PRESIGN_TTL_SECONDS)
        response = client.put(url, content=b"late")
        assert response.status_code == 401
        assert response.json()["code"] == "token_expired"
        assert not (settings.storage_root / "acme" / "direct.bin").exists()
        events = app.state.security_service.get_audit_logs()
        assert events[-1]["event_type"] == "presign_rejected"
        assert events[-1]["reason"] == "token_expired"

    def test_tampered_signature_is_401_and_audited(self, client, acme_headers, app):
        url = self._issue(client, acme_headers)
        path, expires, signature = decode_token(parse_qs(urlparse(url).query)["q"][0])
        forged_sig = ("0" if signature[0] != "0" else "1") + signature[1:]
        response = client.put(
            "/presignedupload",
            params={"client": "acme", "q": encode_token(path, int(expires), forged_sig)},
            content=b"x",
        )
        assert response.status_code == 401
        assert response.json()["code"] == "invalid_signature"
        events = app.state.security_service.get_audit_logs()
        assert events[-1]["reason"] == "invalid_signature"

    def test_garbage_token_is_400(self, client):
        response = client.put(
            "/presignedupload", params={"client": "acme", "q": "%%%garbage"}, content=b"x"
        )
        assert response.status_code == 400
        assert response.json()["code"] == "malformed_token"

    def test_missing_token_is_400(self, client):
        response = client.put("/presignedupload", params={"client": "acme"}, content=b"x")
        assert response.status_code == 400

    def test_token_presented_for_other_client_is_401(self, client, acme_headers, settings):
        url = self._issue(client, acme_headers)
        token = parse_qs(urlparse(url).query)["q"][0]
        response = client.put(
            "/presignedupload", params={"client": "globex", "q": token}, content=b"x"
        )
        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"
        assert not (settings.storage_root / "acme" / "direct.bin").exists()

    def test_consume_preflight(self, client):
        response = client.options(
            "/presignedupload",
            params={"client": "acme", "q": "whatever"},
            headers={"Origin": "https://acme.example"},
        )
        assert response.status_code == 204
        assert "PUT" in response.headers["Access-Control-Allow-Methods"]


class TestHealthAndHeaders:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "X-Correlation-ID" in response.headers

    def test_unknown_route_is_problem_details(self, client):
        response = client.get("/definitely-missing")
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_unexpected_failure_keeps_cors_and_security_headers(
        self, client, app, acme_headers, monkeypatch
    ):
        def boom(client_id):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(app.state.blob_store, "list", boom)
        response = client.get("/list", params={"client": "acme"}, headers=acme_headers)
        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "internal_error"
        assert "disk on fire" not in body["detail"]
        assert response.headers["Access-Control-Allow-Origin"] == "https://acme.example"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Correlation-ID"] == body["correlation_id"]


class TestAuditTrail:
    def test_returns_only_callers_events(self, client, acme_headers):
        _upload(client, acme_headers, "a.txt", b"x")
        client.post(
            "/upload",
            params={"client": "globex", "filename": "b.txt"},
            content=b"y",
            headers={"x-api-key": "key-globex"},
        )
        response = client.get("/audit", params={"client": "acme"}, headers=acme_headers)
        assert response.status_code == 200
        events = response.json()["audit_logs"]
        assert [event["event_type"] for event in events] == ["upload"]
        assert all(event["client_id"] == "acme" for event in events)

    def test_limit_keeps_most_recent(self, client, acme_headers):
        for name in ("one.txt", "two.txt", "three.txt"):
            _upload(client, acme_headers, name, b"x")
        response = client.get(
            "/audit", params={"client": "acme", "limit": 2}, headers=acme_headers
        )
        assert [event["filename"] for event in response.json()["audit_logs"]] == [
            "two.txt",
            "three.txt",
        ]

    def test_requires_key(self, client):
        response = client.get("/audit", params={"client": "acme"})
        assert response.status_code == 401


class TestMountedUnderPrefix:
    """The app served behind a proxy that strips ``/api``."""

    @pytest.fixture()
    def prefixed(self, app):
        with TestClient(app, root_path="/api") as test_client:
            app.state.registry.add(
                client_id="acme", api_key="key-acme", allowed_origin="https://acme.example"
            )
            yield test_client

    def test_upload_without_key_is_rejected(self, prefixed, settings):
        response = prefixed.post(
            "/api/upload", params={"client": "acme", "filename": "pwn.txt"}, content=b"pwned"
        )
        assert response.status_code == 401
        assert not (settings.storage_root / "acme" / "pwn.txt").exists()

    def test_upload_with_key_succeeds(self, prefixed, settings):
        response = prefixed.post(
            "/api/upload",
            params={"client": "acme", "filename": "ok.txt"},
            content=b"fine",
            headers={"x-api-key": "key-acme"},
        )
        assert response.status_code == 201
        assert response.headers["Access-Control-Allow-Origin"] == "https://acme.example"
        assert (settings.storage_root / "acme" / "ok.txt").read_bytes() == b"fine"

    def test_preflight_is_answered_by_gate(self, prefixed):
        response = prefixed.options(
            "/api/list", params={"client": "acme"}, headers={"Origin": "https://acme.example"}
        )
        assert response.status_code == 204
