"""
relay_upstream.py: calls to the upstream OAuth identity provider.

The relay never retries upstream calls: authorization codes and refresh
tokens may already be consumed or rotated on the upstream side.
"""

import logging
from typing import Any
from urllib.parse import urlencode

import httpx

logger = logging.getLogger("relay-upstream")

AUTHORIZE_PATH = "/oauth/authorize"
TOKEN_PATH = "/oauth/token"
REGISTER_PATH = "/oauth/register"


class UpstreamError(Exception):
    """Upstream answered with a non-2xx status or could not be reached.

    status_code is None when no HTTP response was received.
    """

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def rejected(self) -> bool:
        """True when upstream answered and refused the request."""
        return self.status_code is not None


class UpstreamClient:
    def __init__(
        self,
        domain: str,
        timeout: float = 15,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = f"https://{domain}"
        self.timeout = timeout
        self._transport = transport

    def authorize_url(self, params: list[tuple[str, str]]) -> str:
        return f"{self.base_url}{AUTHORIZE_PATH}?{urlencode(params)}"

    async def exchange_token(self, form: list[tuple[str, str]]) -> dict[str, Any]:
        """POST the client's form parameters, untouched, to the token endpoint."""
        return await self._post(
            TOKEN_PATH,
            content=urlencode(form).encode(),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    async def register_client(self, metadata: dict[str, Any]) -> dict[str, Any]:
        return await self._post(REGISTER_PATH, json=metadata)

    async def _post(
        self, path: str, headers: dict[str, str] | None = None, **kwargs: Any,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport,
            ) as client:
                resp = await client.post(
                    url, headers={"Accept": "application/json", **(headers or {})}, **kwargs,
                )
        except httpx.RequestError as e:
            logger.error("upstream %s unreachable: %s", path, e)
            raise UpstreamError(f"upstream request failed: {e}") from e

        if not resp.is_success:
            # Body may echo request fields; keep it out of INFO logs.
            logger.warning("upstream %s rejected: status=%d", path, resp.status_code)
            logger.debug("upstream %s body: %s", path, resp.text[:500])
            raise UpstreamError(
                f"upstream returned {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError(f"upstream returned non-JSON body: {e}") from e
        if not isinstance(data, dict):
            raise UpstreamError("upstream returned a non-object JSON body")
        return data
