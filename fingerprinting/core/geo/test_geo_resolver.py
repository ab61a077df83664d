"""
Tests for geolocation resolution, caching and provider fallback.
"""

import asyncio

import pytest

from fingerprinting.core.geo.cache import GeoCache
from fingerprinting.core.geo.providers import (
    GeoJSProvider, GeoProvider, IpApiProvider, IPWhoisProvider, build_providers
)
from fingerprinting.core.geo.resolver import GeoResolver, client_address_from_headers, is_routable
from fingerprinting.core.models.config import GeoConfig
from fingerprinting.core.models.visits import GeoResponse
from fingerprinting.core.utils.errors import ConfigurationError

PUBLIC_ADDRESS = "8.8.8.8"


class FakeProvider(GeoProvider):
    """Provider returning a canned result and counting calls."""

    def __init__(self, name, result=None, error=None, delay=0.0):
        self.name = name
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    def url_for(self, address):
        return f"https://example.invalid/{address}"

    def parse(self, data):
        return None

    async def lookup(self, session, address):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _resolve(resolver, *args, **kwargs):
    async def run():
        try:
            return await resolver.resolve(*args, **kwargs)
        finally:
            await resolver.close()
    return asyncio.run(run())


def test_all_providers_failing_returns_default():
    """Failures, errors and empty bodies fall through to Unknown/XX."""
    providers = [
        FakeProvider("geojs"),
        FakeProvider("ipwhois", error=RuntimeError("boom")),
        FakeProvider("ipapi"),
    ]
    resolver = GeoResolver(GeoConfig(), providers=providers)

    response = _resolve(resolver, PUBLIC_ADDRESS)

    assert response == GeoResponse(country="Unknown", country_code="XX")
    assert [provider.calls for provider in providers] == [1, 1, 1]


def test_providers_are_tried_in_order():
    """The first successful provider wins; later ones are not called."""
    germany = GeoResponse(country="Germany", country_code="DE")
    providers = [
        FakeProvider("geojs"),
        FakeProvider("ipwhois", result=germany),
        FakeProvider("ipapi", result=GeoResponse(country="France", country_code="FR")),
    ]
    resolver = GeoResolver(GeoConfig(), providers=providers)

    assert _resolve(resolver, PUBLIC_ADDRESS) == germany
    assert providers[2].calls == 0


def test_timed_out_provider_advances_chain():
    """A slow provider is abandoned after its timeout."""
    providers = [
        FakeProvider("geojs", result=GeoResponse(country="Japan", country_code="JP"), delay=5.0),
        FakeProvider("ipwhois", result=GeoResponse(country="Canada", country_code="CA")),
    ]
    resolver = GeoResolver(GeoConfig(provider_timeout_seconds=0.05), providers=providers)

    assert _resolve(resolver, PUBLIC_ADDRESS).country_code == "CA"


def test_cache_hit_within_ttl_and_refetch_after_expiry():
    """Same address within TTL reuses the cache; after TTL providers run again."""
    clock = FakeClock()
    provider = FakeProvider("geojs", result=GeoResponse(country="Germany", country_code="DE"))
    config = GeoConfig(cache_ttl_seconds=1800)
    resolver = GeoResolver(config, providers=[provider], cache=GeoCache(1800, clock=clock))

    async def run():
        try:
            first = await resolver.resolve(PUBLIC_ADDRESS)
            clock.now += 60
            second = await resolver.resolve(PUBLIC_ADDRESS)
            calls_within_ttl = provider.calls
            clock.now += 1800
            await resolver.resolve(PUBLIC_ADDRESS)
            return first, second, calls_within_ttl
        finally:
            await resolver.close()

    first, second, calls_within_ttl = asyncio.run(run())

    assert first == second
    assert calls_within_ttl == 1
    assert provider.calls == 2


def test_timezone_table_answers_without_providers():
    """A known timezone resolves offline and is cached for the address."""
    provider = FakeProvider("geojs", result=GeoResponse(country="Germany", country_code="DE"))
    resolver = GeoResolver(GeoConfig(), providers=[provider])

    response = _resolve(resolver, PUBLIC_ADDRESS, timezone="Asia/Tokyo")

    assert response == GeoResponse(country="Japan", country_code="JP")
    assert provider.calls == 0
    assert resolver.cache.get(PUBLIC_ADDRESS) == response


@pytest.mark.parametrize("address", [None, "127.0.0.1", "10.0.0.5", "192.168.1.1", "::1", "not-an-ip"])
def test_non_routable_addresses_skip_providers(address):
    """Local, private and malformed addresses never reach the network."""
    provider = FakeProvider("geojs", result=GeoResponse(country="Germany", country_code="DE"))
    resolver = GeoResolver(GeoConfig(), providers=[provider])

    assert _resolve(resolver, address).country_code == "XX"
    assert provider.calls == 0
    assert not is_routable(address)


def test_cache_purge_and_evict():
    """Expired entries are purged; evict removes a single entry."""
    clock = FakeClock()
    cache = GeoCache(10, clock=clock)
    cache.put("a", GeoResponse(country="Spain", country_code="ES"))
    clock.now += 5
    cache.put("b", GeoResponse(country="Italy", country_code="IT"))
    clock.now += 6

    assert cache.purge_expired() == 1
    assert cache.get("a") is None
    assert cache.get("b") is not None
    assert cache.evict("b")
    assert len(cache) == 0


def test_maintenance_task_purges_expired_entries():
    """The background task purges on its interval and stops cleanly."""
    clock = FakeClock()
    cache = GeoCache(10, clock=clock)
    resolver = GeoResolver(GeoConfig(), providers=[], cache=cache)

    async def run():
        cache.put("a", GeoResponse())
        clock.now += 11
        resolver.start_maintenance(interval_seconds=0.01)
        await asyncio.sleep(0.05)
        await resolver.close()

    asyncio.run(run())
    assert len(cache) == 0


def test_client_address_from_headers():
    """First forwarded address wins, then the other proxy headers in order."""
    assert client_address_from_headers({"X-Forwarded-For": "1.2.3.4, 10.0.0.1"}) == "1.2.3.4"
    assert client_address_from_headers({"x-real-ip": "5.6.7.8", "cf-connecting-ip": "9.9.9.9"}) == "5.6.7.8"
    assert client_address_from_headers({"true-client-ip": "4.4.4.4"}) == "4.4.4.4"
    assert client_address_from_headers({}) is None


def test_provider_body_parsing():
    """Each provider maps its own field names and error flags."""
    assert GeoJSProvider().parse({"country": "Germany", "country_code": "DE", "city": "Berlin"}) == \
        GeoResponse(country="Germany", country_code="DE", city="Berlin")
    assert GeoJSProvider().parse({"country_code": "DE"}) is None

    assert IPWhoisProvider().parse({"success": False, "message": "Invalid IP address"}) is None
    assert IPWhoisProvider().parse({"success": True, "country": "France", "country_code": "FR"}).country == "France"

    assert IpApiProvider().parse({"error": True, "reason": "RateLimited"}) is None
    assert IpApiProvider().parse({"country_name": "Spain", "country_code": "ES"}).country_code == "ES"


def test_unknown_provider_name_is_a_configuration_error():
    """Provider names come from configuration and must be known."""
    assert [provider.name for provider in build_providers(["geojs", "ipapi"])] == ["geojs", "ipapi"]
    with pytest.raises(ConfigurationError):
        build_providers(["nope"])
