"""
dashboard/tests/test_routes.py

Request routing: static files for every path except /dashboard, and
/dashboard without a websocket upgrade is rejected instead of streaming.

Run: pytest dashboard/tests/test_routes.py -v
"""

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from dashboard.config import Settings
from dashboard.main import create_app


@pytest.fixture
def public_dir(tmp_path):
    root = tmp_path / "public"
    (root / "js").mkdir(parents=True)
    (root / "docs").mkdir()
    (root / "index.html").write_text("<h1>dashboard</h1>")
    (root / "js" / "app.js").write_text("console.log('points');")
    (root / "docs" / "index.html").write_text("<p>docs</p>")
    (tmp_path / "secret.txt").write_text("outside the root")
    return root


@pytest.fixture
def app(public_dir):
    return create_app(Settings(static_dir=str(public_dir)))


@pytest.fixture
def client(app):
    return TestClient(app)


class TestStaticFiles:
    def test_root_serves_index(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "<h1>dashboard</h1>" in r.text
        assert r.headers["content-type"].startswith("text/html")

    def test_nested_file_with_inferred_type(self, client):
        r = client.get("/js/app.js")
        assert r.status_code == 200
        assert "javascript" in r.headers["content-type"]
        assert r.text == "console.log('points');"

    def test_directory_serves_its_index(self, client):
        r = client.get("/docs/")
        assert r.status_code == 200
        assert "docs" in r.text

    def test_missing_file_is_404(self, client):
        r = client.get("/nope.html")
        assert r.status_code == 404

    def test_missing_nested_file_is_404(self, client):
        assert client.get("/js/missing/deeper.js").status_code == 404

    def test_traversal_outside_root_is_not_served(self, client):
        r = client.get("/js/%2e%2e/%2e%2e/secret.txt")
        assert r.status_code == 404
        assert "outside the root" not in r.text

    def test_head_request(self, client):
        r = client.head("/js/app.js")
        assert r.status_code == 200
        assert r.content == b""

    def test_conditional_request_not_modified(self, client):
        etag = client.get("/js/app.js").headers["etag"]
        r = client.get("/js/app.js", headers={"If-None-Match": etag})
        assert r.status_code == 304

    def test_range_request(self, client):
        r = client.get("/js/app.js", headers={"Range": "bytes=0-6"})
        assert r.status_code == 206
        assert r.text == "console"

    def test_query_string_ignored(self, client):
        assert client.get("/js/app.js?v=3").status_code == 200


class TestDashboardWithoutUpgrade:
    @pytest.mark.parametrize("method", ["GET", "POST", "PUT", "DELETE", "TRACE", "PURGE"])
    def test_plain_request_is_rejected(self, client, method):
        r = client.request(method, "/dashboard")
        assert r.status_code == 400

    def test_no_stream_registered(self, app, client):
        client.get("/dashboard")
        assert app.state.streams.active == 0

    def test_rejection_is_logged(self, client, caplog):
        with caplog.at_level("WARNING", logger="dashboard.main"):
            client.get("/dashboard")
        assert any("upgrade failed" in rec.getMessage() for rec in caplog.records)

    def test_only_exact_path_is_reserved(self, client, public_dir):
        (public_dir / "dashboard.html").write_text("static page")
        assert client.get("/dashboard.html").text == "static page"
        assert client.get("/dashboard/").status_code == 404


class TestAppFactory:
    def test_settings_attached(self, app, public_dir):
        assert app.state.settings.static_dir == str(public_dir)

    def test_missing_static_root_warns(self, tmp_path, caplog):
        with caplog.at_level("WARNING", logger="dashboard.main"):
            create_app(Settings(static_dir=str(tmp_path / "absent")))
        assert any("does not exist" in rec.getMessage() for rec in caplog.records)

    def test_api_docs_disabled(self, client):
        assert client.get("/redoc").status_code == 404
        assert client.get("/openapi.json").status_code == 404


class TestWebsocketElsewhere:
    @pytest.mark.parametrize("path", ["/", "/js/app.js", "/dashboard/extra"])
    def test_closed_with_policy_violation(self, client, path):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(path):
                pass
        assert exc.value.code == 1008

    def test_refusal_is_logged_and_no_stream_registered(self, app, client, caplog):
        with caplog.at_level("WARNING", logger="dashboard.main"):
            with pytest.raises(WebSocketDisconnect):
                with client.websocket_connect("/other"):
                    pass
        assert app.state.streams.active == 0
        assert any("refused" in rec.getMessage() for rec in caplog.records)
