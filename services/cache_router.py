"""Per-resource-class routing between the response cache and the network."""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

import httpx

from core.log import get_logger
from core.settings import CACHE, ROUTING, CacheSettings, RoutingSettings
from services.response_cache import ResponseCache


OFFLINE_BODY = "Offline - content not available"
IDEMPOTENT_READS = {"GET"}

logger = get_logger("router")


class Policy(str, Enum):
    NETWORK_FIRST = "network-first"
    CACHE_FIRST = "cache-first"
    NETWORK_ONLY = "network-only"


def select_policy(
    method: str,
    url,
    *,
    destination: Optional[str] = None,
    routing: RoutingSettings = ROUTING,
) -> Policy:
    """Pick the policy from the resource class, never from caller flags."""

    if method.upper() not in IDEMPOTENT_READS:
        return Policy.NETWORK_ONLY

    path = httpx.URL(str(url)).path
    if any(path.startswith(prefix) for prefix in routing.api_prefixes):
        return Policy.NETWORK_FIRST
    if destination and destination in routing.static_destinations:
        return Policy.CACHE_FIRST
    if any(path.startswith(prefix) for prefix in routing.static_prefixes):
        return Policy.CACHE_FIRST
    if path.lower().endswith(routing.static_extensions):
        return Policy.CACHE_FIRST
    if any(path.startswith(prefix) for prefix in routing.page_prefixes):
        return Policy.NETWORK_FIRST
    return Policy.NETWORK_ONLY


def _offline_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        503,
        headers={"Content-Type": "text/plain"},
        text=OFFLINE_BODY,
        request=request,
    )


def _not_found_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(404, content=b"", request=request)


class CacheStrategyRouter:
    """Sends reads through network-first / cache-first / network-only.

    The router is the only writer of the response cache: a successful
    network-first fetch lands in the dynamic bucket, a successful
    cache-first fetch in the static bucket.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: ResponseCache,
        *,
        settings: CacheSettings = CACHE,
        routing: RoutingSettings = ROUTING,
    ) -> None:
        self.client = client
        self.cache = cache
        self.settings = settings
        self.routing = routing

    # ------------------------------------------------------------------
    # Public API
    async def fetch(
        self,
        method: str,
        url,
        *,
        destination: Optional[str] = None,
        navigate: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        request = self.client.build_request(method, url, **kwargs)
        policy = select_policy(request.method, request.url, destination=destination, routing=self.routing)
        if policy is Policy.NETWORK_FIRST:
            return await self._network_first(request, navigate=navigate)
        if policy is Policy.CACHE_FIRST:
            return await self._cache_first(request)
        return await self.client.send(request)

    async def send(
        self,
        method: str,
        url,
        *,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Network-only path. Transport errors and timeouts propagate."""

        if timeout is not None:
            kwargs["timeout"] = httpx.Timeout(timeout)
        request = self.client.build_request(method, url, **kwargs)
        return await self.client.send(request)

    async def install(self) -> int:
        """Precache the field app shell into the static bucket."""

        stored = 0
        for path in self.settings.precache_paths:
            request = self.client.build_request("GET", path)
            try:
                response = await self.client.send(request)
            except httpx.TransportError as exc:
                logger.warning("Precache of %s failed: %s", path, exc)
                continue
            if response.is_success:
                self.cache.put(self.cache.static_bucket, request, response)
                stored += 1
        return stored

    def activate(self) -> int:
        return self.cache.purge_stale()

    # ------------------------------------------------------------------
    # Strategies
    async def _network_first(self, request: httpx.Request, *, navigate: bool) -> httpx.Response:
        try:
            response = await self.client.send(request)
        except httpx.TransportError as exc:
            logger.info("Network failed for %s, trying cache: %s", request.url, exc)
            cached = self.cache.match(request.method, request.url)
            if cached is not None:
                return cached
            if navigate:
                fallback_url = self.client.build_request("GET", self.settings.offline_fallback_path).url
                fallback = self.cache.match("GET", fallback_url)
                if fallback is not None:
                    return fallback
            return _offline_response(request)

        if response.is_success:
            self.cache.put(self.cache.dynamic_bucket, request, response)
        return response

    async def _cache_first(self, request: httpx.Request) -> httpx.Response:
        cached = self.cache.match(request.method, request.url)
        if cached is not None:
            return cached
        try:
            response = await self.client.send(request)
        except httpx.TransportError as exc:
            logger.info("Cache miss and network failed for %s: %s", request.url, exc)
            return _not_found_response(request)
        if response.is_success:
            self.cache.put(self.cache.static_bucket, request, response)
        return response


__all__ = ["CacheStrategyRouter", "OFFLINE_BODY", "Policy", "select_policy"]
