"""Tests for /register and the authorization server metadata document."""
import sys
from pathlib import Path

import httpx
import pytest
from starlette.applications import Starlette
from starlette.routing import Route
from starlette.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from conftest import make_config
from relay_oauth import OrgOAuthRelay

ORIGIN = "https://relay.example.com"


def _app(relay):
    return Starlette(routes=[
        Route("/register", relay.handle_register, methods=["POST", "OPTIONS"]),
        Route("/.well-known/oauth-authorization-server", relay.handle_metadata, methods=["GET"]),
    ])


@pytest.fixture
def client(relay):
    with TestClient(_app(relay), base_url=ORIGIN) as c:
        yield c


class TestRegister:
    def test_defaults_forwarded_upstream(self, client, upstream):
        resp = client.post("/register", json={"redirect_uris": ["https://client.example.com/cb"]})
        assert resp.status_code == 201
        assert resp.json() == {"client_id": "registered-client"}
        assert resp.headers["access-control-allow-origin"] == "*"

        sent = upstream.last_json()
        assert upstream.requests[-1].url.path == "/oauth/register"
        assert sent["redirect_uris"] == ["https://client.example.com/cb"]
        assert sent["client_name"] == "MCP Client"
        assert sent["scope"] == "openid"
        assert sent["token_endpoint_auth_method"] == "none"
        assert sent["grant_types"] == ["authorization_code", "refresh_token"]
        assert sent["response_types"] == ["code"]

    def test_client_values_kept(self, client, upstream):
        client.post("/register", json={
            "redirect_uris": ["cursor://anysphere.cursor-mcp/oauth/callback"],
            "client_name": "Cursor",
            "logo_uri": "https://cursor.example.com/logo.png",
        })
        sent = upstream.last_json()
        assert sent["client_name"] == "Cursor"
        assert sent["logo_uri"] == "https://cursor.example.com/logo.png"

    @pytest.mark.parametrize("uri", [
        "http://localhost:3000/cb",
        "http://127.0.0.1/cb",
        "https://client.example.com/cb",
        "myapp://callback",
    ])
    def test_accepted_redirect_uris(self, client, uri):
        resp = client.post("/register", json={"redirect_uris": [uri]})
        assert resp.status_code == 201

    @pytest.mark.parametrize("body", [
        {},
        {"redirect_uris": []},
        {"redirect_uris": "https://client.example.com/cb"},
        {"redirect_uris": ["http://evil.example.com/cb"]},
        {"redirect_uris": ["not a uri"]},
        {"redirect_uris": ["http://[::1/cb"]},
        {"redirect_uris": ["https://client.example.com/cb", "http://[::1/cb"]},
    ])
    def test_rejected_redirect_uris(self, client, upstream, body):
        resp = client.post("/register", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_redirect_uri"
        assert upstream.requests == []

    def test_non_json_body(self, client):
        resp = client.post(
            "/register", content=b"{not json", headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_wrong_content_type(self, client):
        resp = client.post("/register", data={"redirect_uris": "https://x"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_upstream_rejection(self, client, upstream):
        upstream.register_status = 400
        upstream.register_body = {"error": "invalid_client_metadata"}
        resp = client.post("/register", json={"redirect_uris": ["https://client.example.com/cb"]})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_upstream_unreachable(self, client, upstream):
        upstream.raise_error = httpx.ConnectError("refused")
        resp = client.post("/register", json={"redirect_uris": ["https://client.example.com/cb"]})
        assert resp.status_code == 500
        assert resp.json()["error"] == "server_error"

    def test_missing_upstream_config(self, store):
        relay = OrgOAuthRelay(make_config(upstream_domain=None), store)
        with TestClient(_app(relay), base_url=ORIGIN) as c:
            resp = c.post("/register", json={"redirect_uris": ["https://client.example.com/cb"]})
        assert resp.status_code == 500

    def test_preflight(self, client):
        resp = client.options("/register")
        assert resp.status_code == 204


class TestMetadata:
    def test_document(self, client):
        resp = client.get("/.well-known/oauth-authorization-server")
        assert resp.status_code == 200
        doc = resp.json()
        assert doc["issuer"] == ORIGIN
        assert doc["authorization_endpoint"] == f"{ORIGIN}/authorize"
        assert doc["token_endpoint"] == f"{ORIGIN}/token"
        assert doc["registration_endpoint"] == f"{ORIGIN}/register"
        assert doc["code_challenge_methods_supported"] == ["S256"]
        assert doc["grant_types_supported"] == ["authorization_code", "refresh_token"]
        assert doc["response_types_supported"] == ["code"]
