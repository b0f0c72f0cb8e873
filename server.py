#!/usr/bin/env python3
"""
Tenant Relay: organization-aware OAuth relay and MCP resource server.

Fronts an upstream OAuth 2.1 identity provider whose tokens carry no tenant
claim. Clients pick an organization at /authorize; the choice is carried
through /token, refresh and bearer verification using Redis mappings keyed by
HMAC digests of the tokens.

Routes:
  /.well-known/oauth-authorization-server  - RFC 8414 metadata (this relay)
  /.well-known/oauth-protected-resource    - RFC 9728 metadata (MCP SDK)
  /authorize                               - org selection + upstream redirect
  /token                                   - code / refresh exchange
  /register                                - dynamic registration proxy
  /mcp                                     - streamable-HTTP MCP, bearer-protected
"""

import argparse
import asyncio
import json
import logging
from pathlib import Path

import httpx
from pydantic import AnyHttpUrl
from mcp.server.auth.middleware.auth_context import get_access_token
from mcp.server.auth.settings import AuthSettings
from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send

from relay_config import RelayConfig
from relay_oauth import OrgOAuthRelay
from relay_store import KeyValueStore
from relay_tokens import SCOPES, OrgAccessToken, OrgTokenVerifier, TokenMinter

logger = logging.getLogger("relay")

INSTRUCTIONS = (
    "Tenant Relay: every call is scoped to the organization selected during "
    "authorization.\n"
    "  whoami: report the organization and subject bound to the current token.\n"
)


# ---------------------------------------------------------------------------
# MCP server
# ---------------------------------------------------------------------------

def create_server(
    config: RelayConfig,
    store: KeyValueStore,
    minter: TokenMinter | None = None,
    upstream_transport: httpx.AsyncBaseTransport | None = None,
) -> FastMCP:
    relay = OrgOAuthRelay(config, store, minter=minter, upstream_transport=upstream_transport)
    verifier = OrgTokenVerifier(
        store,
        relay.hasher,
        session_signing_key=config.session_signing_key if config.token_minter == "session" else None,
        issuer_url=config.issuer_url,
    )

    mcp = FastMCP(
        "tenant-relay",
        token_verifier=verifier,
        auth=AuthSettings(
            issuer_url=AnyHttpUrl(config.issuer_url),
            resource_server_url=AnyHttpUrl(f"{config.issuer_url}/mcp"),
            required_scopes=list(SCOPES),
        ),
        # Runs behind a reverse proxy; Host is the public domain.
        transport_security=TransportSecuritySettings(
            enable_dns_rebinding_protection=False,
        ),
        instructions=INSTRUCTIONS,
    )

    @mcp.custom_route("/.well-known/oauth-authorization-server", methods=["GET"])
    async def _metadata_route(request: Request) -> Response:
        return await relay.handle_metadata(request)

    @mcp.custom_route("/authorize", methods=["GET", "OPTIONS"])
    async def _authorize_route(request: Request) -> Response:
        return await relay.handle_authorize(request)

    @mcp.custom_route("/token", methods=["POST", "OPTIONS"])
    async def _token_route(request: Request) -> Response:
        return await relay.handle_token(request)

    @mcp.custom_route("/register", methods=["POST", "OPTIONS"])
    async def _register_route(request: Request) -> Response:
        return await relay.handle_register(request)

    @mcp.tool()
    async def whoami() -> str:
        """Report the organization context bound to the caller's access token."""
        access = get_access_token()
        if not isinstance(access, OrgAccessToken):
            return json.dumps({"error": "no organization context on this request"})
        return json.dumps({
            "org_id": access.org_id,
            "subject": access.subject,
            "client_id": access.client_id,
            "expires_at": access.expires_at,
        })

    return mcp


class _RequestLogger:
    """ASGI middleware: one log line per HTTP request, never the token itself."""

    def __init__(self, inner: ASGIApp):
        self.inner = inner

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.inner(scope, receive, send)
            return
        hdrs = dict(scope.get("headers", []))
        auth = hdrs.get(b"authorization", b"").decode(errors="replace")
        ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
        logger.info("recv: %s %s auth=%s ua=%s", scope.get("method", "?"),
                    scope.get("path", "?"),
                    "bearer" if auth.lower().startswith("bearer ") else "none",
                    ua[:60])
        await self.inner(scope, receive, send)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger, JSON lines to ~/.tenant-relay/audit.log
    audit_log_path = Path.home() / ".tenant-relay" / "audit.log"
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(audit_log_path)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("relay-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


def main() -> None:
    _configure_logging()

    parser = argparse.ArgumentParser(description="Tenant Relay server")
    parser.add_argument("--port", type=int, default=8333)
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    import uvicorn

    config = RelayConfig.from_env()
    if not config.upstream_domain:
        logger.warning("relay: UPSTREAM_DOMAIN is not set; /authorize and /token will fail")
    logger.info("relay: %d shared client(s) configured", len(config.shared_client_ids))

    store = KeyValueStore(config.redis_url)
    app = _RequestLogger(create_server(config, store).streamable_http_app())

    server = uvicorn.Server(uvicorn.Config(
        app, host=args.host, port=args.port, log_level="info",
        proxy_headers=True, forwarded_allow_ips="*",
    ))

    async def _serve_with_store_lifecycle() -> None:
        logger.info(f"relay: starting HTTP server on {args.host}:{args.port}")
        try:
            await server.serve()
        finally:
            try:
                logger.info("relay: shutting down, closing store connection...")
                await store.close()
            except Exception:
                logger.exception("relay: error during teardown")

    asyncio.run(_serve_with_store_lifecycle())


if __name__ == "__main__":
    main()
