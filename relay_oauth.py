"""
relay_oauth.py: organization-aware OAuth relay in front of an upstream IdP.

The upstream provider knows nothing about tenants. This module lets a client
pick an organization once at /authorize and keeps that choice attached
through code exchange, refresh and bearer verification.

  /authorize  no org_id        → org selector (all params preserved)
              ephemeral client → client:<id> → org, then upstream redirect
              shared client    → org folded into `state`, no store write
  /token      authorization_code: org from client:<id> (ephemeral) or the
                                  explicit org_id / decoded state (shared)
              refresh_token:      org from refresh:<hmac>, resolved before
                                  the upstream call, TTL slid on read
              then: mint bearer, write issued:<hmac>, rotate refresh mapping

Every failure leaves here as an OAuth JSON error (see OAuthError).
"""

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from relay_config import RelayConfig
from relay_state import ClientClassifier, ClientKind, EncodedState, SecretHasher, StateCodec, client_key
from relay_store import KeyValueStore, StoreError
from relay_tokens import (
    IdTokenMinter,
    SCOPES,
    SessionTokenMinter,
    TokenMinter,
    TokenMintError,
    UpstreamIdentity,
)
from relay_upstream import UpstreamClient, UpstreamError

logger = logging.getLogger("relay-oauth")
audit_logger = logging.getLogger("relay-audit")

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
SUPPORTED_GRANTS = ("authorization_code", "refresh_token")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


class OAuthError(Exception):
    """An OAuth-style error: invalid_request, invalid_grant, server_error, ..."""

    def __init__(self, error: str, description: str, status_code: int = 400):
        super().__init__(f"{error}: {description}")
        self.error = error
        self.description = description
        self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.description}


def _server_error(description: str) -> OAuthError:
    return OAuthError("server_error", description, 500)


def _first(pairs: list[tuple[str, str]], name: str) -> str:
    for key, value in pairs:
        if key == name:
            return value
    return ""


# ---------------------------------------------------------------------------
# /authorize
# ---------------------------------------------------------------------------

class AuthorizeStep(Enum):
    START = "start"
    AWAITING_ORG_SELECTION = "awaiting_org_selection"
    ORG_SELECTED = "org_selected"
    UPSTREAM_REDIRECT = "upstream_redirect"


@dataclass(frozen=True)
class AuthorizeResult:
    step: AuthorizeStep
    location: str


class AuthorizeFlow:
    def __init__(
        self,
        config: RelayConfig,
        store: KeyValueStore,
        classifier: ClientClassifier,
        upstream: UpstreamClient | None,
    ):
        self.config = config
        self.store = store
        self.classifier = classifier
        self.upstream = upstream

    async def authorize(self, params: list[tuple[str, str]], origin: str) -> AuthorizeResult:
        client_id = _first(params, "client_id")
        redirect_uri = _first(params, "redirect_uri")
        response_type = _first(params, "response_type")
        if not client_id or not redirect_uri or not response_type:
            raise OAuthError(
                "invalid_request",
                "Missing required parameters: client_id, redirect_uri and response_type",
            )

        org_id = _first(params, "org_id")
        if not org_id:
            location = self._selector_url(params, origin)
            _audit("authorize_org_selection", client_id=client_id)
            return AuthorizeResult(AuthorizeStep.AWAITING_ORG_SELECTION, location)

        # ORG_SELECTED
        if response_type != "code":
            raise OAuthError(
                "unsupported_response_type",
                "Only authorization_code flow is supported",
            )
        if not _first(params, "code_challenge") or _first(params, "code_challenge_method") != "S256":
            raise OAuthError("invalid_request", "PKCE with S256 is required")
        if self.upstream is None:
            logger.error("authorize: upstream domain is not configured")
            raise _server_error("Server configuration error")

        state = _first(params, "state")
        kind = self.classifier.classify(client_id)
        if kind is ClientKind.EPHEMERAL:
            try:
                await self.store.set_with_ttl(
                    client_key(client_id), org_id, self.config.client_org_ttl,
                )
            except StoreError:
                raise _server_error("Failed to store organization context")
            new_state = state
        else:
            csrf = StateCodec.csrf_of(StateCodec.decode(state))
            new_state = StateCodec.encode(csrf, org_id)

        location = self.upstream.authorize_url(self._upstream_params(params, new_state))
        _audit("authorize_redirect", client_id=client_id, client_kind=kind.value, org_id=org_id)
        return AuthorizeResult(AuthorizeStep.UPSTREAM_REDIRECT, location)

    def _selector_url(self, params: list[tuple[str, str]], origin: str) -> str:
        base = urljoin(origin.rstrip("/") + "/", self.config.org_selector_url)
        sep = "&" if "?" in base else "?"
        return f"{base}{sep}{urlencode(params)}" if params else base

    @staticmethod
    def _upstream_params(params: list[tuple[str, str]], state: str) -> list[tuple[str, str]]:
        out: list[tuple[str, str]] = []
        state_written = False
        for key, value in params:
            if key == "org_id":
                continue
            if key == "state":
                if not state_written and state:
                    out.append(("state", state))
                state_written = True
                continue
            out.append((key, value))
        if not state_written and state:
            out.append(("state", state))
        if not any(key == "scope" and value for key, value in out):
            out = [(k, v) for k, v in out if k != "scope"]
            out.append(("scope", " ".join(SCOPES)))
        return out


# ---------------------------------------------------------------------------
# /token
# ---------------------------------------------------------------------------

class TokenExchange:
    def __init__(
        self,
        config: RelayConfig,
        store: KeyValueStore,
        classifier: ClientClassifier,
        hasher: SecretHasher,
        upstream: UpstreamClient | None,
        minter: TokenMinter,
    ):
        self.config = config
        self.store = store
        self.classifier = classifier
        self.hasher = hasher
        self.upstream = upstream
        self.minter = minter

    async def exchange(self, form: list[tuple[str, str]]) -> dict[str, Any]:
        client_id = _first(form, "client_id")
        if not client_id:
            raise OAuthError("invalid_request", "Missing client_id")
        grant_type = _first(form, "grant_type")
        if not grant_type:
            raise OAuthError("invalid_request", "Missing grant_type")
        if grant_type not in SUPPORTED_GRANTS:
            raise OAuthError(
                "unsupported_grant_type",
                f"Grant type '{grant_type}' is not supported",
            )
        if self.upstream is None:
            logger.error("token: upstream domain is not configured")
            raise _server_error("Server configuration error")

        kind = self.classifier.classify(client_id)
        presented_refresh = ""
        org_id: str | None = None

        if grant_type == "refresh_token":
            presented_refresh = _first(form, "refresh_token")
            if not presented_refresh:
                raise OAuthError("invalid_request", "Missing refresh_token")
            org_id = await self._org_for_refresh(presented_refresh, client_id)
        elif not _first(form, "code"):
            raise OAuthError("invalid_request", "Missing code")

        tokens = await self._call_upstream(form, grant_type, client_id)

        if grant_type == "authorization_code":
            org_id = await self._org_for_code(form, client_id, kind)

        if not org_id:
            logger.warning("token: no org_id resolved for client %s", client_id)
            raise OAuthError(
                "invalid_grant",
                "Unable to resolve organization context. Please re-authorize.",
            )

        identity = self._identity(tokens)
        try:
            final_token, expires_in = await self.minter.mint(identity)
        except TokenMintError as e:
            logger.error("token: minting failed: %s", e)
            raise _server_error("Failed to issue access token")

        try:
            await self.store.set_with_ttl(self.hasher.issued_key(final_token), org_id, expires_in)
            await self._rotate_refresh(tokens.get("refresh_token"), presented_refresh, org_id)
            if grant_type == "authorization_code" and kind is ClientKind.EPHEMERAL:
                await self.store.delete(client_key(client_id))
        except StoreError:
            raise _server_error("Failed to store authentication context")

        _audit(
            "token_issued", client_id=client_id, grant_type=grant_type,
            org_id=org_id, expires_in=expires_in,
        )
        return {**tokens, "access_token": final_token, "expires_in": expires_in}

    async def _org_for_refresh(self, refresh_token: str, client_id: str) -> str:
        try:
            org_id = await self.store.get_and_refresh_ttl(
                self.hasher.refresh_key(refresh_token), self.config.refresh_org_ttl,
            )
        except StoreError:
            raise _server_error("Failed to retrieve organization context")
        if not org_id:
            _audit("token_rejected", client_id=client_id, reason="refresh_org_missing")
            raise OAuthError(
                "invalid_grant",
                "Organization context expired. Please re-authorize to select your organization.",
            )
        return org_id

    async def _org_for_code(
        self, form: list[tuple[str, str]], client_id: str, kind: ClientKind,
    ) -> str:
        if kind is ClientKind.SHARED:
            org_id = _first(form, "org_id")
            if not org_id:
                decoded = StateCodec.decode(_first(form, "state"))
                if isinstance(decoded, EncodedState) and decoded.org_id:
                    org_id = decoded.org_id
            if not org_id:
                _audit("token_rejected", client_id=client_id, reason="shared_org_missing")
                raise OAuthError(
                    "invalid_grant",
                    "Missing organization context in OAuth state. Please re-authorize.",
                )
            return org_id

        try:
            org_id = await self.store.get(client_key(client_id))
        except StoreError:
            raise _server_error("Failed to retrieve organization context")
        if not org_id:
            _audit("token_rejected", client_id=client_id, reason="client_org_missing")
            raise OAuthError(
                "invalid_grant",
                "Organization context expired. Please re-authorize to select your organization.",
            )
        return org_id

    async def _call_upstream(
        self, form: list[tuple[str, str]], grant_type: str, client_id: str,
    ) -> dict[str, Any]:
        try:
            return await self.upstream.exchange_token(form)
        except UpstreamError as e:
            if e.rejected:
                _audit("token_rejected", client_id=client_id, reason="upstream_rejected",
                       status=e.status_code)
                description = (
                    "Failed to exchange authorization code"
                    if grant_type == "authorization_code"
                    else "Failed to refresh token"
                )
                raise OAuthError("invalid_grant", description)
            raise _server_error("Upstream token endpoint unavailable")

    @staticmethod
    def _identity(tokens: dict[str, Any]) -> UpstreamIdentity:
        token = tokens.get("id_token")
        if not token or not isinstance(token, str):
            raise OAuthError("invalid_grant", "Failed to retrieve id_token from upstream")
        expires_in = tokens.get("expires_in")
        if not isinstance(expires_in, int) or isinstance(expires_in, bool):
            expires_in = None
        return UpstreamIdentity(token=token, expires_in=expires_in)

    async def _rotate_refresh(self, new_refresh: Any, presented: str, org_id: str) -> None:
        if not new_refresh or not isinstance(new_refresh, str):
            return
        await self.store.set_with_ttl(
            self.hasher.refresh_key(new_refresh), org_id, self.config.refresh_org_ttl,
        )
        # Old mapping goes only after the new one exists.
        if presented and presented != new_refresh:
            await self.store.delete(self.hasher.refresh_key(presented))
            _audit("refresh_rotated", org_id=org_id)


def build_minter(config: RelayConfig) -> TokenMinter:
    if config.token_minter == "session":
        return SessionTokenMinter(
            signing_key=config.session_signing_key or "",
            issuer_url=config.issuer_url,
            ttl=config.session_token_ttl,
        )
    return IdTokenMinter()


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------

def _json(data: dict[str, Any], status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        data,
        status_code=status_code,
        headers={**CORS_HEADERS, "Cache-Control": "no-store"},
    )


def _error_response(err: OAuthError) -> JSONResponse:
    return _json(err.to_dict(), err.status_code)


def _preflight() -> Response:
    return Response(status_code=204, headers=CORS_HEADERS)


def _origin(request: Request) -> str:
    return f"{request.url.scheme}://{request.url.netloc}"


def _valid_redirect_uri(uri: Any) -> bool:
    if not isinstance(uri, str):
        return False
    try:
        parsed = urlparse(uri)
        hostname = parsed.hostname
    except ValueError:
        # Malformed authority, e.g. an unclosed IPv6 bracket.
        return False
    if not parsed.scheme:
        return False
    if parsed.scheme == "https":
        return bool(parsed.netloc)
    if parsed.scheme == "http":
        return hostname in ("localhost", "127.0.0.1")
    # Custom schemes for native apps (cursor://, myapp://).
    return True


class OrgOAuthRelay:
    """Wires the flows to Starlette request handlers."""

    def __init__(
        self,
        config: RelayConfig,
        store: KeyValueStore,
        minter: TokenMinter | None = None,
        upstream_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.store = store
        self.hasher = SecretHasher(config.hash_secret)
        self.classifier = ClientClassifier(config.shared_client_ids)
        self.upstream = (
            UpstreamClient(
                config.upstream_domain,
                timeout=config.upstream_timeout,
                transport=upstream_transport,
            )
            if config.upstream_domain else None
        )
        self.authorize_flow = AuthorizeFlow(config, store, self.classifier, self.upstream)
        self.token_exchange = TokenExchange(
            config, store, self.classifier, self.hasher, self.upstream,
            minter or build_minter(config),
        )

    async def handle_authorize(self, request: Request) -> Response:
        if request.method == "OPTIONS":
            return _preflight()
        params = list(request.query_params.multi_items())
        try:
            result = await self.authorize_flow.authorize(params, _origin(request))
        except OAuthError as e:
            logger.info("authorize rejected: %s", e)
            return _error_response(e)
        return RedirectResponse(result.location, status_code=302, headers=CORS_HEADERS)

    async def handle_token(self, request: Request) -> Response:
        if request.method == "OPTIONS":
            return _preflight()
        content_type = request.headers.get("content-type", "")
        if FORM_CONTENT_TYPE not in content_type.lower():
            return _error_response(OAuthError(
                "invalid_request",
                f"Content-Type must be {FORM_CONTENT_TYPE}",
            ))
        body = await request.body()
        form = parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True)
        try:
            payload = await self.token_exchange.exchange(form)
        except OAuthError as e:
            logger.info("token rejected: %s", e)
            return _error_response(e)
        return _json(payload)

    async def handle_register(self, request: Request) -> Response:
        """RFC 7591 registration, proxied to the upstream provider."""
        if request.method == "OPTIONS":
            return _preflight()
        if "application/json" not in request.headers.get("content-type", "").lower():
            return _error_response(OAuthError(
                "invalid_request", "Content-Type must be application/json",
            ))
        try:
            data = json.loads(await request.body())
        except ValueError:
            return _error_response(OAuthError("invalid_request", "Invalid JSON body"))
        if not isinstance(data, dict):
            return _error_response(OAuthError("invalid_request", "Invalid JSON body"))

        redirect_uris = data.get("redirect_uris")
        if not isinstance(redirect_uris, list) or not redirect_uris:
            return _error_response(OAuthError(
                "invalid_redirect_uri",
                "redirect_uris is required and must be a non-empty array",
            ))
        for uri in redirect_uris:
            if not _valid_redirect_uri(uri):
                return _error_response(OAuthError(
                    "invalid_redirect_uri",
                    "HTTP redirect URIs are only allowed for localhost",
                ))

        if self.upstream is None:
            return _error_response(_server_error("Server configuration error"))

        metadata = {
            **data,
            "client_name": data.get("client_name") or "MCP Client",
            "scope": data.get("scope") or " ".join(SCOPES),
            "token_endpoint_auth_method": data.get("token_endpoint_auth_method") or "none",
            "grant_types": data.get("grant_types") or list(SUPPORTED_GRANTS),
            "response_types": data.get("response_types") or ["code"],
        }
        try:
            registered = await self.upstream.register_client(metadata)
        except UpstreamError as e:
            if e.rejected:
                return _error_response(OAuthError(
                    "invalid_request", "Failed to register client with OAuth provider",
                ))
            return _error_response(_server_error("Upstream registration endpoint unavailable"))

        _audit("client_registered", client_id=registered.get("client_id"),
               client_name=metadata["client_name"])
        return _json(registered, 201)

    async def handle_metadata(self, request: Request) -> Response:
        """RFC 8414 OAuth Authorization Server Metadata."""
        issuer = self.config.issuer_url
        return _json({
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "registration_endpoint": f"{issuer}/register",
            "response_types_supported": ["code"],
            "grant_types_supported": list(SUPPORTED_GRANTS),
            "token_endpoint_auth_methods_supported": ["none", "client_secret_post"],
            "code_challenge_methods_supported": ["S256"],
            "scopes_supported": list(SCOPES),
        })
