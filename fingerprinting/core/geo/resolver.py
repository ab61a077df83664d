"""
Geolocation Resolver

Resolves a client's country with the following fallback chain:
1. Cache by client address
2. Offline timezone table
3. Remote providers, one at a time, each under its own timeout
4. Default "Unknown"/"XX" response

Resolution never raises; every failure advances the chain.
"""

import asyncio
import ipaddress
from typing import List, Mapping, Optional

import aiohttp
import structlog

from fingerprinting.core.geo.cache import GeoCache
from fingerprinting.core.geo.providers import GeoProvider, build_providers
from fingerprinting.core.geo.timezones import country_for_timezone
from fingerprinting.core.models.config import GeoConfig
from fingerprinting.core.models.visits import GeoResponse
from fingerprinting.core.utils.metrics import GEO_LOOKUPS

logger = structlog.get_logger(__name__)

# Checked in order; x-forwarded-for may carry a chain, the first entry wins
CLIENT_ADDRESS_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "x-client-ip",
    "cf-connecting-ip",
    "fastly-client-ip",
    "true-client-ip",
)


def client_address_from_headers(headers: Mapping[str, str]) -> Optional[str]:
    """Pick the originating client address from proxy headers."""
    lowered = {key.lower(): value for key, value in headers.items()}
    for header in CLIENT_ADDRESS_HEADERS:
        value = lowered.get(header)
        if not value:
            continue
        if header == "x-forwarded-for":
            value = value.split(",")[0]
        value = value.strip()
        if value:
            return value
    return None


def is_routable(address: Optional[str]) -> bool:
    """False for missing, malformed, loopback, private and reserved addresses."""
    if not address:
        return False
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return not (ip.is_loopback or ip.is_private or ip.is_reserved
                or ip.is_link_local or ip.is_multicast or ip.is_unspecified)


class GeoResolver:
    """Country resolution with caching and provider fallback."""

    def __init__(self, config: GeoConfig,
                 providers: Optional[List[GeoProvider]] = None,
                 cache: Optional[GeoCache] = None):
        self.config = config
        self.providers = providers if providers is not None else build_providers(config.providers)
        self.cache = cache or GeoCache(config.cache_ttl_seconds)
        self.session: Optional[aiohttp.ClientSession] = None
        self._maintenance_task: Optional[asyncio.Task] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.provider_timeout_seconds),
                headers={
                    "Accept": "application/json",
                    "User-Agent": self.config.user_agent,
                }
            )
        return self.session

    async def resolve(self, client_address: Optional[str] = None,
                      timezone: Optional[str] = None) -> GeoResponse:
        """Resolve a country for the client. Never raises."""
        try:
            return await self._resolve(client_address, timezone)
        except Exception as e:
            logger.warning("Geolocation failed, using default", error=str(e))
            GEO_LOOKUPS.labels(provider="all", status="error").inc()
            return GeoResponse()

    async def _resolve(self, client_address: Optional[str], timezone: Optional[str]) -> GeoResponse:
        if client_address:
            cached = self.cache.get(client_address)
            if cached is not None:
                return cached

        tz_country = country_for_timezone(timezone)
        if tz_country is not None:
            country, country_code = tz_country
            response = GeoResponse(country=country, country_code=country_code)
            GEO_LOOKUPS.labels(provider="timezone", status="success").inc()
            if client_address:
                self.cache.put(client_address, response)
            return response

        if not is_routable(client_address):
            if client_address:
                logger.debug("Skipping providers for non-routable address", client_address=client_address)
            GEO_LOOKUPS.labels(provider="default", status="success").inc()
            return GeoResponse()

        for provider in self.providers:
            response = await self._lookup(provider, client_address)
            if response is not None:
                self.cache.put(client_address, response)
                return response

        logger.info("All geolocation providers failed", client_address=client_address)
        GEO_LOOKUPS.labels(provider="default", status="success").inc()
        return GeoResponse()

    async def _lookup(self, provider: GeoProvider, address: str) -> Optional[GeoResponse]:
        session = await self._get_session()
        try:
            response = await asyncio.wait_for(
                provider.lookup(session, address),
                timeout=self.config.provider_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("Geo provider timed out", provider=provider.name,
                           timeout=self.config.provider_timeout_seconds)
            GEO_LOOKUPS.labels(provider=provider.name, status="timeout").inc()
            return None
        except Exception as e:
            logger.warning("Geo provider failed", provider=provider.name, error=str(e))
            GEO_LOOKUPS.labels(provider=provider.name, status="error").inc()
            return None

        if response is None:
            GEO_LOOKUPS.labels(provider=provider.name, status="error").inc()
            return None

        GEO_LOOKUPS.labels(provider=provider.name, status="success").inc()
        logger.debug("Geo provider succeeded", provider=provider.name, country_code=response.country_code)
        return response

    def start_maintenance(self, interval_seconds: Optional[float] = None) -> None:
        """Purge expired cache entries every interval (defaults to the TTL)."""
        if self._maintenance_task is not None and not self._maintenance_task.done():
            return
        interval = interval_seconds or self.config.cache_ttl_seconds
        self._maintenance_task = asyncio.create_task(self._maintenance_loop(interval))

    async def stop_maintenance(self) -> None:
        if self._maintenance_task is None:
            return
        self._maintenance_task.cancel()
        try:
            await self._maintenance_task
        except asyncio.CancelledError:
            pass
        self._maintenance_task = None

    async def _maintenance_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.cache.purge_expired()
            except Exception as e:
                logger.error("Geo cache maintenance failed", error=str(e))

    async def close(self) -> None:
        """Stop maintenance and release the HTTP session."""
        await self.stop_maintenance()
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None
