"""
relay_tokens.py: minting the bearer token handed to clients, and verifying it.

Minters turn the upstream identity token into the token the client receives:

  IdTokenMinter       the upstream id_token as-is (default)
  SessionTokenMinter  a relay-signed HS256 session JWT with its own lifetime,
                      for deployments that want sessions longer than the
                      upstream id_token

OrgTokenVerifier is the resource-server side: it resolves the org context of
a presented bearer token through the issued:<hmac> mapping written at /token.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Protocol

import jwt
from mcp.server.auth.provider import AccessToken

from relay_state import SecretHasher
from relay_store import KeyValueStore, StoreError

logger = logging.getLogger("relay-tokens")

JWT_ALGORITHM = "HS256"
SCOPES = ["openid"]


class TokenMintError(Exception):
    """The final bearer token could not be produced."""


@dataclass(frozen=True)
class UpstreamIdentity:
    token: str
    expires_in: int | None = None


class TokenMinter(Protocol):
    async def mint(self, identity: UpstreamIdentity) -> tuple[str, int]:
        ...


def is_jwt_format(token: str) -> bool:
    parts = token.split(".")
    return len(parts) == 3 and all(parts)


def _unverified_claims(token: str) -> dict[str, Any]:
    if not is_jwt_format(token):
        raise TokenMintError("identity token is not a JWT")
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError as e:
        raise TokenMintError(f"identity token could not be decoded: {e}") from e


class IdTokenMinter:
    """Hands the upstream identity token straight to the client."""

    async def mint(self, identity: UpstreamIdentity) -> tuple[str, int]:
        if identity.expires_in is not None and identity.expires_in > 0:
            return identity.token, int(identity.expires_in)
        exp = _unverified_claims(identity.token).get("exp")
        if not isinstance(exp, (int, float)):
            raise TokenMintError("identity token has no usable exp claim")
        remaining = int(exp - time.time())
        if remaining <= 0:
            raise TokenMintError("identity token already expired")
        return identity.token, remaining


class SessionTokenMinter:
    """Signs a fresh session JWT for the upstream subject."""

    def __init__(self, signing_key: str, issuer_url: str, ttl: int):
        if not signing_key:
            raise ValueError("session signing key must not be empty")
        self.signing_key = signing_key
        self.issuer_url = issuer_url.rstrip("/")
        self.ttl = ttl

    async def mint(self, identity: UpstreamIdentity) -> tuple[str, int]:
        sub = _unverified_claims(identity.token).get("sub")
        if not sub:
            raise TokenMintError("identity token has no sub claim")
        now = int(time.time())
        payload = {
            "sub": sub,
            "iss": self.issuer_url,
            "iat": now,
            "exp": now + self.ttl,
            "scope": " ".join(SCOPES),
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, self.signing_key, algorithm=JWT_ALGORITHM), self.ttl


# ---------------------------------------------------------------------------
# Bearer verification
# ---------------------------------------------------------------------------

class OrgAccessToken(AccessToken):
    org_id: str
    subject: str | None = None


class OrgTokenVerifier:
    """MCP TokenVerifier backed by the issued:<hmac(token)> mapping."""

    def __init__(
        self,
        store: KeyValueStore,
        hasher: SecretHasher,
        session_signing_key: str | None = None,
        issuer_url: str | None = None,
    ):
        self.store = store
        self.hasher = hasher
        self.session_signing_key = session_signing_key
        self.issuer_url = issuer_url.rstrip("/") if issuer_url else None

    async def resolve_org(self, token: str) -> str | None:
        return await self.store.get(self.hasher.issued_key(token))

    async def verify_token(self, token: str) -> AccessToken | None:
        if not token:
            return None
        try:
            org_id = await self.resolve_org(token)
        except StoreError:
            logger.exception("verify_token: org lookup failed")
            return None
        if not org_id:
            logger.info("verify_token: no org context for presented token")
            return None

        claims: dict[str, Any] = {}
        if self.session_signing_key:
            try:
                claims = jwt.decode(
                    token,
                    self.session_signing_key,
                    algorithms=[JWT_ALGORITHM],
                    issuer=self.issuer_url,
                    options={"require": ["sub", "exp", "iss", "jti"]},
                )
            except jwt.InvalidTokenError as e:
                logger.info("verify_token: session token rejected: %s", e)
                return None
        elif is_jwt_format(token):
            try:
                claims = jwt.decode(token, options={"verify_signature": False})
            except jwt.InvalidTokenError:
                claims = {}

        exp = claims.get("exp")
        return OrgAccessToken(
            token=token,
            client_id=str(claims.get("azp") or "tenant-relay"),
            scopes=list(SCOPES),
            expires_at=int(exp) if isinstance(exp, (int, float)) else None,
            org_id=org_id,
            subject=claims.get("sub"),
        )
