"""
relay_state.py: pure helpers for carrying organization context.

  - SecretHasher: HMAC-SHA256 of tokens, so raw refresh/issued tokens never
    become store keys.
  - ClientClassifier: shared (multi-user) vs ephemeral (per-session) clients.
  - StateCodec: {csrf, org_id} in the OAuth `state` parameter, tolerant of
    state values this relay never produced.
"""

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from enum import Enum

CLIENT_PREFIX = "client:"
REFRESH_PREFIX = "refresh:"
ISSUED_PREFIX = "issued:"


# ---------------------------------------------------------------------------
# Hashing and store keys
# ---------------------------------------------------------------------------

class SecretHasher:
    """Keyed, deterministic digest for sensitive tokens."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("hash secret must not be empty")
        self._key = secret.encode()

    def digest(self, token: str) -> str:
        return hmac.new(self._key, token.encode(), hashlib.sha256).hexdigest()

    def refresh_key(self, refresh_token: str) -> str:
        return REFRESH_PREFIX + self.digest(refresh_token)

    def issued_key(self, token: str) -> str:
        return ISSUED_PREFIX + self.digest(token)


def client_key(client_id: str) -> str:
    # Only ever called for ephemeral clients.
    return CLIENT_PREFIX + client_id


# ---------------------------------------------------------------------------
# Client classification
# ---------------------------------------------------------------------------

class ClientKind(Enum):
    SHARED = "shared"
    EPHEMERAL = "ephemeral"


class ClientClassifier:
    """Maps a client id to SHARED or EPHEMERAL.

    Unknown ids are EPHEMERAL: that path always persists org context, so a
    misclassified client still works.
    """

    def __init__(self, shared_client_ids: frozenset[str]):
        self._shared = frozenset(shared_client_ids)

    def classify(self, client_id: str) -> ClientKind:
        if client_id in self._shared:
            return ClientKind.SHARED
        return ClientKind.EPHEMERAL

    def is_shared(self, client_id: str) -> bool:
        return self.classify(client_id) is ClientKind.SHARED


# ---------------------------------------------------------------------------
# OAuth state codec
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Csrf:
    """A state value we did not encode; the whole string is the CSRF token."""
    raw: str


@dataclass(frozen=True)
class EncodedState:
    csrf: str
    org_id: str | None = None


class StateCodec:
    """Encodes {csrf, org_id} as URL-safe base64 JSON."""

    @staticmethod
    def encode(csrf: str, org_id: str) -> str:
        payload = json.dumps({"csrf": csrf, "org_id": org_id}, separators=(",", ":"))
        return base64.urlsafe_b64encode(payload.encode()).rstrip(b"=").decode("ascii")

    @staticmethod
    def decode(raw: str | None) -> Csrf | EncodedState:
        if not raw:
            return Csrf("")
        try:
            padded = raw + "=" * (-len(raw) % 4)
            altchars = b"-_" if ("-" in raw or "_" in raw) else None
            data = base64.b64decode(padded, altchars=altchars, validate=True)
            payload = json.loads(data.decode("utf-8"))
        except (binascii.Error, ValueError):
            # ValueError covers UnicodeDecodeError and JSONDecodeError.
            return Csrf(raw)

        if not isinstance(payload, dict) or not isinstance(payload.get("csrf"), str):
            return Csrf(raw)
        org_id = payload.get("org_id")
        return EncodedState(
            csrf=str(payload["csrf"]),
            org_id=str(org_id) if org_id else None,
        )

    @staticmethod
    def csrf_of(decoded: Csrf | EncodedState) -> str:
        if isinstance(decoded, EncodedState):
            return decoded.csrf
        return decoded.raw
