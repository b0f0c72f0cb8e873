"""Shared fixtures: an in-memory Redis double, a fake upstream IdP, a relay."""
import json
import sys
import time
from pathlib import Path
from urllib.parse import parse_qsl

import httpx
import jwt
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from relay_config import RelayConfig
from relay_oauth import OrgOAuthRelay
from relay_store import KeyValueStore

SHARED_CLIENT = "cli-shared"
UPSTREAM_DOMAIN = "idp.example.com"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the store, with a fake clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data: dict[str, tuple[str, float]] = {}
        self.failures: list[BaseException] = []
        self.pings = 0
        self.calls: list[str] = []
        self.closed = False

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    def _live(self, key: str) -> tuple[str, float] | None:
        entry = self.data.get(key)
        if entry is None:
            return None
        if entry[1] <= self.clock.now:
            del self.data[key]
            return None
        return entry

    def ttl(self, key: str) -> float | None:
        entry = self._live(key)
        return None if entry is None else entry[1] - self.clock.now

    def keys_with_prefix(self, prefix: str) -> list[str]:
        return [k for k in list(self.data) if k.startswith(prefix) and self._live(k)]

    async def ping(self) -> bool:
        self.calls.append("ping")
        self._maybe_fail()
        self.pings += 1
        return True

    async def setex(self, name: str, time: int, value: str) -> bool:
        self.calls.append("setex")
        self._maybe_fail()
        self.data[name] = (value, self.clock.now + time)
        return True

    async def get(self, name: str) -> str | None:
        self.calls.append("get")
        self._maybe_fail()
        entry = self._live(name)
        return None if entry is None else entry[0]

    async def getex(self, name: str, ex: int | None = None) -> str | None:
        self.calls.append("getex")
        self._maybe_fail()
        entry = self._live(name)
        if entry is None:
            return None
        if ex is not None:
            self.data[name] = (entry[0], self.clock.now + ex)
        return entry[0]

    async def delete(self, *names: str) -> int:
        self.calls.append("delete")
        self._maybe_fail()
        removed = 0
        for name in names:
            if self.data.pop(name, None) is not None:
                removed += 1
        return removed

    async def aclose(self) -> None:
        self.closed = True


class FakeUpstream:
    """Upstream IdP token/registration endpoints behind httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_status = 200
        self.token_body: dict | None = None
        self.register_status = 201
        self.register_body: dict = {"client_id": "registered-client"}
        self.raise_error: Exception | None = None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_error is not None:
            raise self.raise_error
        if request.url.path == "/oauth/token":
            return httpx.Response(self.token_status, json=self.token_body or {})
        if request.url.path == "/oauth/register":
            return httpx.Response(self.register_status, json=self.register_body)
        return httpx.Response(404, json={"error": "not_found"})

    def last_form(self) -> list[tuple[str, str]]:
        return parse_qsl(self.requests[-1].content.decode(), keep_blank_values=True)

    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


def make_id_token(sub: str = "user_123", ttl: int = 3600, **claims) -> str:
    now = int(time.time())
    payload = {"sub": sub, "iat": now, "exp": now + ttl, "iss": f"https://{UPSTREAM_DOMAIN}", **claims}
    return jwt.encode(payload, "upstream-signing-key-for-tests-0123456789", algorithm="HS256")


def make_config(**overrides) -> RelayConfig:
    values = dict(
        hash_secret="test-hash-secret",
        issuer_url="https://relay.example.com",
        upstream_domain=UPSTREAM_DOMAIN,
        shared_client_ids=frozenset({SHARED_CLIENT}),
        redis_url="redis://test:6379/0",
    )
    values.update(overrides)
    return RelayConfig(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def store(fake_redis):
    return KeyValueStore("redis://test:6379/0", client_factory=lambda url: fake_redis)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def relay(config, store, upstream):
    return OrgOAuthRelay(config, store, upstream_transport=upstream.transport)
