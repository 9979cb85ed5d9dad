from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from dashboard.auth import TokenService
from dashboard.context import RequestContext
from dashboard.main import create_app
from dashboard.migration import POOL_URL_MIGRATION
from dashboard.routes import public_asset

from tests.conftest import ADMIN_HASH, JWT_SECRET, base_config, read_config, write_config, write_json_file


def _upstream(calls: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append((request.method, str(request.url), request.content))
        host = request.url.host
        if host == "axe2.local":
            raise httpx.ConnectError("Connection refused", request=request)
        if request.url.path == "/api/system/info":
            return httpx.Response(200, json={"hostname": host, "hashRate": 500.0})
        if request.url.path == "/api/system/statistics/dashboard":
            return httpx.Response(200, json={"statistics": [[1, 2]]})
        if request.url.path == "/api/pools":
            return httpx.Response(200, json={"pools": [{"id": "btc"}]})
        if request.url.path in ("/api/system/restart", "/api/system"):
            return httpx.Response(200, content=b"")
        return httpx.Response(404)
    return handler


def _client(project, calls=None) -> TestClient:
    return TestClient(create_app(str(project), transport=httpx.MockTransport(_upstream(calls))))


# -- Login / logout -------------------------------------------------------------

def test_login_sets_session_cookie(project) -> None:
    with _client(project) as client:
        response = client.post("/api/login", json={"username": "admin", "hashedPassword": ADMIN_HASH})

    assert response.status_code == 200
    cookie = response.headers["set-cookie"]
    assert cookie.startswith("sessionToken=")
    assert "HttpOnly" in cookie
    assert "SameSite=Strict" in cookie
    assert "Max-Age=3600" in cookie


def test_login_rejects_wrong_password(project) -> None:
    with _client(project) as client:
        response = client.post("/api/login", json={"username": "admin", "hashedPassword": "0" * 64})
    assert response.status_code == 401
    assert "set-cookie" not in response.headers


def test_login_rejects_malformed_body(project) -> None:
    with _client(project) as client:
        response = client.post("/api/login", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400


def test_login_without_access_file_is_server_error(project) -> None:
    os.remove(project / "config" / "access.json")
    with _client(project) as client:
        response = client.post("/api/login", json={"username": "admin", "hashedPassword": ADMIN_HASH})
    assert response.status_code == 500


def test_logout_expires_cookie(project) -> None:
    with _client(project) as client:
        response = client.post("/api/logout")
    assert response.status_code == 200
    assert "Max-Age=0" in response.headers["set-cookie"]


# -- Auth gate ------------------------------------------------------------------

def test_dashboard_without_cookie_redirects_to_login(project) -> None:
    with _client(project) as client:
        response = client.get("/", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "/login"


def test_expired_session_redirects_and_clears_cookie(project) -> None:
    issued = datetime.now(timezone.utc) - timedelta(hours=3)
    token = TokenService(JWT_SECRET, 3600, clock=lambda: issued).create({"username": "admin"})

    with _client(project) as client:
        response = client.get(
            "/api/systems/info", headers={"Cookie": f"sessionToken={token}"}, follow_redirects=False,
        )

    assert response.status_code == 302
    assert response.headers["location"] == "/login"
    assert "Max-Age=0" in response.headers["set-cookie"]


def test_dashboard_shows_username(project, session_headers) -> None:
    with _client(project) as client:
        response = client.get("/index.html", headers=session_headers)
    assert response.status_code == 200
    assert "admin" in response.text
    assert "Test Fleet" in response.text


def test_login_page_is_public(project) -> None:
    with _client(project) as client:
        response = client.get("/login")
    assert response.status_code == 200
    assert "login-form" in response.text


def test_authentication_disabled_serves_without_cookie(project) -> None:
    write_config(project, base_config(disable_authentication=True))
    with _client(project) as client:
        response = client.get("/api/systems/info")
    assert response.status_code == 200


def test_unknown_paths(project, session_headers) -> None:
    with _client(project) as client:
        assert client.get("/api/nothing", headers=session_headers).status_code == 404
        assert client.get("/api/nothing", follow_redirects=False).status_code == 302
        assert client.get("/nothing").status_code == 404


# -- Aggregation and proxying ----------------------------------------------------

def test_systems_info_with_one_unreachable_device(project, session_headers) -> None:
    with _client(project) as client:
        response = client.get("/api/systems/info", headers=session_headers)

    assert response.status_code == 200
    data = response.json()
    assert [m["id"] for m in data["minerData"]] == ["Axe 1", "Axe 2"]
    assert data["minerData"][0]["hashRate"] == 500.0
    assert data["minerData"][1]["status"] == "Error"
    assert data["minerData"][1]["hostname"] == "Axe 2"
    assert data["displayFields"] == base_config()["display_fields"]
    assert data["miningCoreData"] is None
    assert data["cryptoNodeData"] == []


def test_systems_info_includes_pools_when_enabled(project, session_headers) -> None:
    write_config(project, base_config(mining_core_enabled=True))
    with _client(project) as client:
        data = client.get("/api/systems/info", headers=session_headers).json()
    assert data["miningCoreData"] == [{"id": "Pool", "pools": [{"id": "btc"}]}]


def test_instance_info_proxy(project, session_headers) -> None:
    with _client(project) as client:
        ok = client.get("/api/instance/info", params={"instanceId": "Axe 1"}, headers=session_headers)
        down = client.get("/api/instance/info", params={"instanceId": "Axe 2"}, headers=session_headers)
        missing = client.get("/api/instance/info", headers=session_headers)
        unknown = client.get("/api/instance/info", params={"instanceId": "Axe 9"}, headers=session_headers)

    assert ok.json() == {"hostname": "axe1.local", "hashRate": 500.0}
    assert down.status_code == 502
    assert missing.status_code == 400
    assert missing.json()["message"] == 'Missing "instanceId" query parameter.'
    assert unknown.status_code == 404


def test_instance_statistics(project, session_headers) -> None:
    with _client(project) as client:
        response = client.get("/api/instance/statistics", params={"instanceId": "Axe 1"}, headers=session_headers)
    body = response.json()
    assert body["success"] is True
    assert body["instanceUrl"] == "http://axe1.local"
    assert body["data"] == {"statistics": [[1, 2]]}


def test_instance_services_forward_to_device(project, session_headers) -> None:
    calls = []
    with _client(project, calls) as client:
        restart = client.post(
            "/api/instance/service/restart", params={"instanceId": "Axe 1"}, headers=session_headers,
        )
        settings = client.patch(
            "/api/instance/service/settings", params={"instanceId": "Axe 1"},
            json={"frequency": 525}, headers=session_headers,
        )
        empty = client.patch(
            "/api/instance/service/settings", params={"instanceId": "Axe 1"}, headers=session_headers,
        )
        unknown = client.post("/api/instance/service/reflash", headers=session_headers)

    assert restart.json()["status"] == "success"
    assert settings.json()["status"] == "success"
    assert ("POST", "http://axe1.local/api/system/restart", b"") in calls
    patches = [(url, json.loads(body)) for method, url, body in calls if method == "PATCH"]
    assert patches == [("http://axe1.local/api/system", {"frequency": 525})]
    assert empty.status_code == 400
    assert unknown.status_code == 404


def test_instance_services_blocked_when_settings_disabled(project, session_headers) -> None:
    write_config(project, base_config(disable_settings=True))
    calls = []
    with _client(project, calls) as client:
        response = client.post(
            "/api/instance/service/restart", params={"instanceId": "Axe 1"}, headers=session_headers,
        )
    assert response.status_code == 403
    assert calls == []


# -- Configuration ------------------------------------------------------------------

def test_configuration_read_and_update(project, session_headers) -> None:
    new_fields = [{"Power": [{"power": "Watts"}]}]
    with _client(project) as client:
        current = client.get("/api/configuration", headers=session_headers)
        updated = client.patch("/api/configuration", json={"display_fields": new_fields}, headers=session_headers)
        info = client.get("/api/systems/info", headers=session_headers)
        empty = client.patch("/api/configuration", headers=session_headers)
        wrong_method = client.post("/api/configuration", headers=session_headers)

    assert current.json()["data"]["title"] == "Test Fleet"
    assert updated.json()["status"] == "success"
    assert read_config(project)["display_fields"] == new_fields
    assert info.json()["displayFields"] == new_fields
    assert empty.status_code == 400
    assert wrong_method.status_code == 405


def test_configuration_blocked_when_disabled(project, session_headers) -> None:
    write_config(project, base_config(disable_configurations=True))
    with _client(project) as client:
        response = client.patch("/api/configuration", json={"title": "x"}, headers=session_headers)
    assert response.status_code == 403
    assert read_config(project)["title"] == "Test Fleet"


def test_enable_configurations_shortcut(project, session_headers) -> None:
    write_config(project, base_config(disable_configurations=True))
    with _client(project) as client:
        response = client.get("/?ec", headers=session_headers, follow_redirects=False)
        config = client.get("/api/configuration", headers=session_headers)

    assert response.status_code == 302
    assert response.headers["location"] == "/"
    assert read_config(project)["disable_configurations"] is False
    assert config.status_code == 200


# -- Migration notice -----------------------------------------------------------------

def test_migration_status_and_clear(project, session_headers) -> None:
    write_config(project, base_config(mining_core_url="http://pool.local:4000"))
    with _client(project) as client:
        status = client.get("/api/migration/status", headers=session_headers)
        cleared = client.post("/api/migration/clear", headers=session_headers)
        after = client.get("/api/migration/status", headers=session_headers)

    assert status.json()["data"]["migrations"] == [POOL_URL_MIGRATION]
    assert cleared.json()["success"] is True
    assert after.json()["data"] is None
    assert read_config(project)["mining_core_url"] == [{"Mining Core": "http://pool.local:4000"}]


# -- Static and demo data ------------------------------------------------------------------

def test_public_assets(project) -> None:
    with _client(project) as client:
        css = client.get("/public/css/dashboard.css")
        missing = client.get("/public/css/nothing.css")
    assert css.status_code == 200
    assert missing.status_code == 404


def test_public_asset_refuses_path_traversal(tmp_path) -> None:
    public_dir = tmp_path / "public"
    public_dir.mkdir()
    (tmp_path / "secret.json").write_text("{}", encoding="utf-8")
    request = Request({
        "type": "http", "method": "GET", "path": "/public/../secret.json",
        "query_string": b"", "headers": [],
    })
    ctx = RequestContext(request=request, services=SimpleNamespace(public_dir=str(public_dir)))

    response = asyncio.run(public_asset(ctx))
    assert response.status_code == 403


def test_demo_mode_reads_canned_data(project, session_headers) -> None:
    write_config(project, base_config(demo_mode=True))
    write_json_file(project / "data" / "demo-apis" / "bitaxe-info.json", {"hostname": "demo", "hashRate": 1.0})

    def loopback(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"hostname": "demo", "path": request.url.path})

    app = create_app(str(project), transport=httpx.MockTransport(loopback))
    with TestClient(app) as client:
        info = client.get("/api/systems/info", headers=session_headers).json()
        canned = client.get("/demo/api/system/info")
        unknown = client.get("/demo/api/firmware")

    assert [m["id"] for m in info["minerData"]] == ["Demo Axe 1", "Demo Axe 2", "Demo Axe 3"]
    assert info["minerData"][0]["path"] == "/demo/api/system/info"
    assert canned.json() == {"hostname": "demo", "hashRate": 1.0}
    assert unknown.status_code == 404


# -- Startup ---------------------------------------------------------------------------------

def test_missing_key_file_exits_with_status_1(project) -> None:
    os.remove(project / "config" / "jsonWebTokenKey.json")
    with pytest.raises(SystemExit) as exc:
        create_app(str(project))
    assert exc.value.code == 1


def test_outdated_configuration_is_flagged(project, session_headers) -> None:
    config = base_config()
    del config["disable_settings"]
    write_config(project, config)
    with _client(project) as client:
        data = client.get("/api/systems/info", headers=session_headers).json()
    assert data["configuration_outdated"] is True
    assert data["disable_settings"] is True


def test_device_commands_accept_plain_text_replies(project, session_headers) -> None:
    def device(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/system/restart":
            return httpx.Response(200, text="System will restart shortly.")
        return httpx.Response(200, text="OK")

    app = create_app(str(project), transport=httpx.MockTransport(device))
    with TestClient(app) as client:
        restart = client.post(
            "/api/instance/service/restart", params={"instanceId": "Axe 1"}, headers=session_headers,
        )
        settings = client.patch(
            "/api/instance/service/settings", params={"instanceId": "Axe 1"},
            json={"fanspeed": 80}, headers=session_headers,
        )

    assert restart.status_code == 200
    assert restart.json()["status"] == "success"
    assert settings.status_code == 200
    assert settings.json()["status"] == "success"


def test_device_command_rejected_by_device_is_502(project, session_headers) -> None:
    app = create_app(str(project), transport=httpx.MockTransport(lambda r: httpx.Response(401, text="nope")))
    with TestClient(app) as client:
        response = client.post(
            "/api/instance/service/restart", params={"instanceId": "Axe 1"}, headers=session_headers,
        )
    assert response.status_code == 502
    assert "401" in response.json()["error"]


def test_misconfigured_node_does_not_fail_systems_info(project, session_headers) -> None:
    write_config(project, base_config(
        cryptNodesEnabled=True,
        cryptoNodes=[{"Nodes": [{"NodeId": "btc1", "NodeName": "Bitcoin"}]}, {"NodeDisplayFields": []}],
    ))
    write_json_file(project / "config" / "rpcConfig.json", {
        "btc1": {"rpcHost": "node.local", "rpcPort": "abc", "rpcAuth": "u:p"},
    })

    with _client(project) as client:
        response = client.get("/api/systems/info", headers=session_headers)

    assert response.status_code == 200
    (node,) = response.json()["cryptoNodeData"]
    assert node["id"] == "Bitcoin"
    assert node["nodeId"] == "btc1"
    assert node["status"] == "Error"
    assert node["message"]
