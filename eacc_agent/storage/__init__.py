"""Content-addressed storage: addressing, gateways, pinning and the facade."""

from __future__ import annotations

from .address import digest_to_locator, is_locator, locator_to_digest
from .facade import ContentStore, PublishedContent
from .gateways import GatewayFetcher, build_gateway_url
from .pinning import (
    FallbackPinningService,
    InMemoryPinningService,
    PinataCredentials,
    PinataPinningService,
    PinningService,
)

__all__ = [
    "ContentStore",
    "FallbackPinningService",
    "GatewayFetcher",
    "InMemoryPinningService",
    "PinataCredentials",
    "PinataPinningService",
    "PinningService",
    "PublishedContent",
    "build_gateway_url",
    "digest_to_locator",
    "is_locator",
    "locator_to_digest",
]
