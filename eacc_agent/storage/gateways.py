"""Retrieve content through an ordered list of public gateways."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx

from ..errors import AllGatewaysFailed, ConfigurationError, GatewayAttempt

_LOGGER = logging.getLogger(__name__)

DEFAULT_GATEWAY_TIMEOUT = 10.0
PUBLIC_GATEWAYS = [
    "https://gateway.pinata.cloud/ipfs/",
    "https://cloudflare-ipfs.com/ipfs/",
    "https://dweb.link/ipfs/",
    "https://ipfs.io/ipfs/",
]


def build_gateway_url(template: str, locator: str) -> str:
    """Expand ``{cid}`` templates, otherwise append the locator to the base."""

    sanitized = quote(locator.strip(), safe="")
    if "{cid}" in template:
        return template.replace("{cid}", sanitized)
    return f"{template}{sanitized}"


def merge_gateways(primary: Optional[str], extra: Sequence[str] = ()) -> List[str]:
    """Primary gateway first, then the others, without duplicates."""

    ordered: List[str] = []
    for candidate in ([primary] if primary else []) + list(extra):
        candidate = (candidate or "").strip()
        if candidate and candidate not in ordered:
            ordered.append(candidate)
    return ordered


class GatewayFetcher:
    """Sequential gateway fallback with a timeout per attempt.

    The first gateway that answers with a 2xx status wins and no later gateway
    is contacted. Only when every gateway fails is :class:`AllGatewaysFailed`
    raised, carrying the recorded attempts and the last underlying error.
    """

    def __init__(
        self,
        gateways: Sequence[str] = (),
        *,
        timeout: float = DEFAULT_GATEWAY_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._gateways = list(gateways)
        self._timeout = timeout
        self._transport = transport
        self._headers = headers or {}

    @property
    def gateways(self) -> List[str]:
        return list(self._gateways)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            headers=self._headers,
            follow_redirects=True,
        )

    async def fetch(
        self,
        locator: str,
        gateways: Optional[Sequence[str]] = None,
        per_gateway_timeout: Optional[float] = None,
    ) -> bytes:
        ordered = list(gateways) if gateways is not None else self._gateways
        if not ordered:
            raise ConfigurationError("No content gateways configured")
        timeout = per_gateway_timeout if per_gateway_timeout is not None else self._timeout

        attempts: List[GatewayAttempt] = []
        last_error: Optional[BaseException] = None
        async with self._client() as client:
            for gateway in ordered:
                url = build_gateway_url(gateway, locator)
                _LOGGER.debug("Fetching %s from %s", locator, url)
                try:
                    response = await asyncio.wait_for(client.get(url, timeout=timeout), timeout)
                except asyncio.TimeoutError as exc:
                    last_error = exc
                    attempts.append(GatewayAttempt(gateway=gateway, url=url, error=f"timed out after {timeout}s"))
                    _LOGGER.info("Gateway %s timed out for %s", gateway, locator)
                    continue
                except httpx.HTTPError as exc:
                    last_error = exc
                    attempts.append(GatewayAttempt(gateway=gateway, url=url, error=str(exc) or type(exc).__name__))
                    _LOGGER.info("Gateway %s failed for %s: %s", gateway, locator, exc)
                    continue
                if response.status_code >= 400:
                    last_error = httpx.HTTPStatusError(
                        f"HTTP {response.status_code}", request=response.request, response=response
                    )
                    attempts.append(
                        GatewayAttempt(
                            gateway=gateway,
                            url=url,
                            error=f"HTTP {response.status_code}",
                            status=response.status_code,
                        )
                    )
                    _LOGGER.info("Gateway %s answered HTTP %s for %s", gateway, response.status_code, locator)
                    continue
                _LOGGER.debug("Retrieved %s (%d bytes) from %s", locator, len(response.content), gateway)
                return response.content

        _LOGGER.warning("All %d gateways failed for %s", len(attempts), locator)
        raise AllGatewaysFailed(locator, attempts, last_error)


__all__ = [
    "DEFAULT_GATEWAY_TIMEOUT",
    "GatewayFetcher",
    "PUBLIC_GATEWAYS",
    "build_gateway_url",
    "merge_gateways",
]
