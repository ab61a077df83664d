"""
IP geolocation providers.

Each provider turns one HTTP JSON response into a GeoResponse or returns
None. Providers never raise for remote failures: non-2xx status, malformed
JSON, explicit error flags and missing country fields all mean "try the next
provider".
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from fingerprinting.core.models.visits import GeoResponse
from fingerprinting.core.utils.errors import ConfigurationError

logger = structlog.get_logger(__name__)


class GeoProvider(ABC):
    """One remote lookup service."""

    name: str = "provider"

    @abstractmethod
    def url_for(self, address: str) -> str:
        """Lookup URL for a client address."""

    @abstractmethod
    def parse(self, data: Dict[str, Any]) -> Optional[GeoResponse]:
        """Convert a decoded body, None when the body signals failure."""

    async def lookup(self, session: aiohttp.ClientSession, address: str) -> Optional[GeoResponse]:
        try:
            async with session.get(self.url_for(address)) as response:
                if response.status < 200 or response.status >= 300:
                    logger.warning("Geo provider response not ok", provider=self.name, status=response.status)
                    return None
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as e:
            logger.warning("Geo provider lookup failed", provider=self.name, error=str(e))
            return None

        if not isinstance(data, dict):
            logger.warning("Geo provider returned unexpected body", provider=self.name)
            return None

        return self.parse(data)

    @staticmethod
    def _build(country: Any, country_code: Any, region: Any = None, city: Any = None) -> Optional[GeoResponse]:
        if not country or not country_code:
            return None
        return GeoResponse(
            country=str(country),
            country_code=str(country_code),
            region=str(region) if region else None,
            city=str(city) if city else None,
        )


class GeoJSProvider(GeoProvider):
    name = "geojs"

    def url_for(self, address: str) -> str:
        return f"https://get.geojs.io/v1/ip/geo/{address}.json"

    def parse(self, data: Dict[str, Any]) -> Optional[GeoResponse]:
        return self._build(data.get("country"), data.get("country_code"), data.get("region"), data.get("city"))


class IPWhoisProvider(GeoProvider):
    name = "ipwhois"

    def url_for(self, address: str) -> str:
        return f"https://ipwho.is/{address}"

    def parse(self, data: Dict[str, Any]) -> Optional[GeoResponse]:
        if data.get("success") is False:
            logger.warning("Geo provider returned error", provider=self.name, message=data.get("message"))
            return None
        return self._build(data.get("country"), data.get("country_code"), data.get("region"), data.get("city"))


class IpApiProvider(GeoProvider):
    name = "ipapi"

    def url_for(self, address: str) -> str:
        return f"https://ipapi.co/{address}/json/"

    def parse(self, data: Dict[str, Any]) -> Optional[GeoResponse]:
        if data.get("error"):
            logger.warning("Geo provider returned error", provider=self.name, reason=data.get("reason"))
            return None
        return self._build(data.get("country_name"), data.get("country_code"), data.get("region"), data.get("city"))


PROVIDERS = {
    GeoJSProvider.name: GeoJSProvider,
    IPWhoisProvider.name: IPWhoisProvider,
    IpApiProvider.name: IpApiProvider,
}


def build_providers(names: List[str]) -> List[GeoProvider]:
    """Instantiate providers by name, in the given priority order."""
    providers = []
    for name in names:
        provider_cls = PROVIDERS.get(name)
        if provider_cls is None:
            raise ConfigurationError(f"Unknown geo provider: {name}")
        providers.append(provider_cls())
    return providers
