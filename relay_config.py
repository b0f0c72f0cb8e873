"""
relay_config.py: startup configuration for the tenant relay.

Everything the relay needs from its environment is read once, validated, and
frozen into a RelayConfig that the entry point hands to each component.
Shared (multi-user) client ids can come from SHARED_CLIENT_IDS, from a YAML
file named by SHARED_CLIENTS_FILE, or both:

    shared_clients:
      - cli-prod-client-id
      - cli-staging-client-id
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import yaml

DEFAULT_ISSUER_URL = "http://localhost:8333"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_ORG_SELECTOR_URL = "/select-org"

CLIENT_ORG_TTL = 3600  # 1 hour, covers the code-exchange window only
REFRESH_TOKEN_ORG_TTL = 30 * 86400  # 30 days
SESSION_TOKEN_TTL = 86400  # 24 hours
UPSTREAM_TIMEOUT = 15  # seconds

TOKEN_MINTERS = ("id_token", "session")


@dataclass(frozen=True)
class RelayConfig:
    hash_secret: str
    issuer_url: str = DEFAULT_ISSUER_URL
    upstream_domain: str | None = None
    shared_client_ids: frozenset[str] = field(default_factory=frozenset)
    redis_url: str = DEFAULT_REDIS_URL
    client_org_ttl: int = CLIENT_ORG_TTL
    refresh_org_ttl: int = REFRESH_TOKEN_ORG_TTL
    upstream_timeout: float = UPSTREAM_TIMEOUT
    org_selector_url: str = DEFAULT_ORG_SELECTOR_URL
    token_minter: str = "id_token"
    session_signing_key: str | None = None
    session_token_ttl: int = SESSION_TOKEN_TTL

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RelayConfig":
        """Build the config from process environment (or a supplied mapping)."""
        env = os.environ if environ is None else environ

        hash_secret = env.get("ORG_HASH_SECRET", "")
        if not hash_secret:
            raise SystemExit("ORG_HASH_SECRET is not set")

        shared = set(_split_ids(env.get("SHARED_CLIENT_IDS", "")))
        shared_file = env.get("SHARED_CLIENTS_FILE")
        if shared_file:
            shared.update(_load_shared_clients(Path(shared_file)))

        token_minter = env.get("TOKEN_MINTER", "id_token").strip().lower()
        if token_minter not in TOKEN_MINTERS:
            raise SystemExit(
                f"Invalid TOKEN_MINTER '{token_minter}'. "
                f"Valid options: {', '.join(TOKEN_MINTERS)}"
            )
        session_key = env.get("SESSION_SIGNING_KEY") or None
        if token_minter == "session" and not session_key:
            raise SystemExit("TOKEN_MINTER=session requires SESSION_SIGNING_KEY")

        return cls(
            hash_secret=hash_secret,
            issuer_url=env.get("RELAY_ISSUER_URL", DEFAULT_ISSUER_URL).rstrip("/"),
            upstream_domain=_clean_domain(env.get("UPSTREAM_DOMAIN")),
            shared_client_ids=frozenset(shared),
            redis_url=env.get("REDIS_URL", DEFAULT_REDIS_URL),
            client_org_ttl=_positive_int(env, "CLIENT_ORG_TTL_SECONDS", CLIENT_ORG_TTL),
            refresh_org_ttl=_positive_int(
                env, "REFRESH_TOKEN_ORG_TTL_SECONDS", REFRESH_TOKEN_ORG_TTL,
            ),
            upstream_timeout=_positive_int(env, "UPSTREAM_TIMEOUT_SECONDS", UPSTREAM_TIMEOUT),
            org_selector_url=env.get("ORG_SELECTOR_URL", DEFAULT_ORG_SELECTOR_URL),
            token_minter=token_minter,
            session_signing_key=session_key,
            session_token_ttl=_positive_int(
                env, "SESSION_TOKEN_TTL_SECONDS", SESSION_TOKEN_TTL,
            ),
        )


def _split_ids(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _clean_domain(raw: str | None) -> str | None:
    """Accept 'idp.example.com' or 'https://idp.example.com/'."""
    if not raw or not raw.strip():
        return None
    domain = raw.strip()
    for prefix in ("https://", "http://"):
        if domain.startswith(prefix):
            domain = domain[len(prefix):]
    return domain.rstrip("/") or None


def _positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise SystemExit(f"{name} must be an integer, got '{raw}'")
    if value <= 0:
        raise SystemExit(f"{name} must be positive, got {value}")
    return value


def _load_shared_clients(config_path: Path) -> list[str]:
    """Load shared client ids from a YAML file."""
    if not config_path.exists():
        raise SystemExit(f"Shared clients file not found: {config_path}")

    with open(config_path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise SystemExit(f"Invalid YAML in {config_path}: {e}")

    if not isinstance(raw, dict) or "shared_clients" not in raw:
        raise SystemExit(
            f"Invalid shared clients file: expected top-level 'shared_clients' key in {config_path}"
        )
    entries = raw["shared_clients"] or []
    if not isinstance(entries, list) or not all(isinstance(e, str) for e in entries):
        raise SystemExit(f"'shared_clients' in {config_path} must be a list of strings")
    return [e.strip() for e in entries if e.strip()]
