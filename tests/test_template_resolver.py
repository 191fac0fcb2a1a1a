"""
Test suite for the template resolution chain.

Covers the local cache, Redis and origin fallbacks, write-backs between
tiers, negative caching of the default template and the resolver guard.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, Mock

import httpx

from src.shared.config import ResolverSettings
from src.template_resolver import (
    ConfigurationError,
    LocalTemplateCache,
    OriginFetcher,
    SharedTemplateCache,
    TemplateOrigin,
    TemplateRejectedError,
    TemplateResolver,
    TemplateUrlMap,
)


REMOTE_TEMPLATE = "dummy template {{{flash}}} {{{body}}} {{{head}}} {{{headline}}} {{{title}}}"
DEFAULT_TEMPLATE = "default layout {{{body}}}"
TEMPLATE_URL = "http://www.example.com/some/path"


class FakeClock:
    """Manually advanced clock for cache expiry tests."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class OriginStub:
    """httpx transport handler recording requests and replaying a response."""

    def __init__(self, status_code: int = 200, body: str = REMOTE_TEMPLATE, error: Exception = None):
        self.status_code = status_code
        self.body = body
        self.error = error
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, text=self.body)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return ResolverSettings(
        local_cache_ttl=60,
        local_cache_negative_ttl=10,
        http_timeout=5.0,
        default_template=DEFAULT_TEMPLATE,
    )


@pytest.fixture
def redis_client():
    client = AsyncMock()
    client.get.return_value = None
    client.set.return_value = True
    return client


@pytest.fixture
def origin():
    return OriginStub()


def build_resolver(settings, clock, redis_client, origin, **kwargs):
    fetcher_kwargs = {}
    if 'postprocess' in kwargs:
        fetcher_kwargs['postprocess'] = kwargs.pop('postprocess')

    return TemplateResolver(
        settings=settings,
        local_cache=LocalTemplateCache(clock=clock),
        shared_cache=SharedTemplateCache(redis_client=redis_client),
        origin_fetcher=OriginFetcher(
            timeout=settings.http_timeout,
            client=httpx.AsyncClient(transport=httpx.MockTransport(origin)),
            **fetcher_kwargs,
        ),
        url_for=kwargs.pop('url_for', TemplateUrlMap(url_pattern=TEMPLATE_URL)),
        **kwargs,
    )


@pytest.fixture
def resolver(settings, clock, redis_client, origin):
    return build_resolver(settings, clock, redis_client, origin)


class TestRequestFiltering:
    """Requests this resolver must not answer."""

    @pytest.mark.asyncio
    async def test_name_without_prefix_is_not_applicable(self, resolver, redis_client, origin):
        """Names not starting with redis: yield no template and touch no tier."""
        result = await resolver.find_template("not_redis:template", "layouts")

        assert result is None
        redis_client.get.assert_not_called()
        assert origin.requests == []
        assert len(resolver.local_cache) == 0

    @pytest.mark.asyncio
    async def test_plain_name_is_not_applicable(self, resolver):
        assert await resolver.find_template("foo", "not_a_layout") is None
        assert resolver.stats['not_applicable'] == 1

    @pytest.mark.asyncio
    async def test_guard_rejection_touches_no_tier(self, settings, clock, redis_client, origin):
        """A guard returning False short-circuits without using the default."""
        guard = Mock(return_value=False)
        resolver = build_resolver(settings, clock, redis_client, origin, guard=guard)

        result = await resolver.find_template("redis:template", "layouts")

        assert result is None
        guard.assert_called_once()
        redis_client.get.assert_not_called()
        redis_client.set.assert_not_called()
        assert origin.requests == []
        assert len(resolver.local_cache) == 0

    @pytest.mark.asyncio
    async def test_guard_acceptance_continues(self, settings, clock, redis_client, origin):
        guard = Mock(return_value=True)
        resolver = build_resolver(settings, clock, redis_client, origin, guard=guard)

        result = await resolver.find_template("redis:template", "layouts", details={"application": "web"})

        assert result.source == REMOTE_TEMPLATE
        request = guard.call_args.args[0]
        assert request.identifier == "template"
        assert request.details == {"application": "web"}


class TestLocalCacheTier:
    """Lookups answered by or falling through the local cache."""

    @pytest.mark.asyncio
    async def test_valid_local_entry_skips_network(self, resolver, clock, redis_client, origin):
        resolver.local_cache.put("kabeleins_local", REMOTE_TEMPLATE, 60)
        clock.advance(58)

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == REMOTE_TEMPLATE
        assert result.origin == TemplateOrigin.LOCAL
        redis_client.get.assert_not_called()
        assert origin.requests == []

    @pytest.mark.asyncio
    async def test_expired_local_entry_is_removed(self, resolver, clock, redis_client, origin):
        """An expired entry is deleted and the lookup continues at Redis."""
        resolver.local_cache.put("kabeleins_local", "T1", 60)
        clock.advance(61)
        origin.status_code = 404

        await resolver.find_template("redis:kabeleins_local", "layouts")

        redis_client.get.assert_called_once_with("rlt:kabeleins_local")

    @pytest.mark.asyncio
    async def test_expired_entry_falls_through_to_redis(self, resolver, clock, redis_client, origin):
        resolver.local_cache.put("kabeleins_local", "T1", 1)
        clock.advance(2)
        redis_client.get.return_value = "T2"

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == "T2"
        assert result.origin == TemplateOrigin.SHARED
        assert origin.requests == []

    @pytest.mark.asyncio
    async def test_unknown_template_falls_back_to_redis(self, resolver, redis_client):
        await resolver.find_template("redis:no_such_application", "layouts")
        redis_client.get.assert_called_once_with("rlt:no_such_application")


class TestSharedCacheTier:
    """Lookups answered by Redis."""

    @pytest.mark.asyncio
    async def test_redis_hit_is_written_to_local_cache(self, resolver, clock, redis_client):
        redis_client.get.return_value = REMOTE_TEMPLATE

        await resolver.find_template("redis:kabeleins_local", "layouts")

        entry = resolver.local_cache.entry("kabeleins_local")
        assert entry.template == REMOTE_TEMPLATE
        assert entry.expires_at == clock.now + 60

    @pytest.mark.asyncio
    async def test_redis_hit_does_not_fall_back_to_http(self, resolver, redis_client, origin):
        redis_client.get.return_value = REMOTE_TEMPLATE

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == REMOTE_TEMPLATE
        assert origin.requests == []
        redis_client.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_redis_error_is_treated_as_miss(self, resolver, redis_client, origin):
        from redis.exceptions import ConnectionError as RedisConnectionError
        redis_client.get.side_effect = RedisConnectionError("connection refused")

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == REMOTE_TEMPLATE
        assert len(origin.requests) == 1


class TestOriginTier:
    """Lookups that reach the origin URL."""

    @pytest.mark.asyncio
    async def test_origin_hit_is_stored_in_both_caches(self, resolver, clock, redis_client, origin):
        """Local and Redis miss, origin answers 200 with T1."""
        origin.body = "T1"

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == "T1"
        assert result.origin == TemplateOrigin.ORIGIN
        redis_client.set.assert_called_once_with("rlt:kabeleins_local", "T1")
        entry = resolver.local_cache.entry("kabeleins_local")
        assert entry.template == "T1"
        assert entry.expires_at == clock.now + 60
        assert str(origin.requests[0].url) == TEMPLATE_URL

    @pytest.mark.asyncio
    async def test_second_lookup_uses_local_cache(self, resolver, redis_client, origin):
        first = await resolver.find_template("redis:kabeleins_local", "layouts")
        second = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert first.source == second.source == REMOTE_TEMPLATE
        assert second.origin == TemplateOrigin.LOCAL
        assert redis_client.get.call_count == 1
        assert len(origin.requests) == 1

    @pytest.mark.asyncio
    async def test_empty_body_is_a_valid_template(self, resolver, redis_client, origin):
        origin.body = ""

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == ""
        assert result.origin == TemplateOrigin.ORIGIN
        redis_client.set.assert_called_once_with("rlt:kabeleins_local", "")

    @pytest.mark.asyncio
    async def test_redis_write_failure_still_serves_template(self, resolver, redis_client):
        from redis.exceptions import ConnectionError as RedisConnectionError
        redis_client.set.side_effect = RedisConnectionError("connection lost")

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == REMOTE_TEMPLATE
        assert resolver.local_cache.entry("kabeleins_local").template == REMOTE_TEMPLATE
        assert resolver.shared_cache.stats['errors'] == 1

    @pytest.mark.asyncio
    async def test_postprocess_transforms_body(self, settings, clock, redis_client, origin):
        resolver = build_resolver(settings, clock, redis_client, origin, postprocess=str.upper)

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == REMOTE_TEMPLATE.upper()
        redis_client.set.assert_called_once_with("rlt:kabeleins_local", REMOTE_TEMPLATE.upper())


class TestDefaultTemplate:
    """Every tier misses and the default template is served."""

    @pytest.mark.asyncio
    async def test_timeout_serves_default(self, resolver, clock, redis_client, origin):
        origin.error = httpx.ReadTimeout("timed out")

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == DEFAULT_TEMPLATE
        assert result.origin == TemplateOrigin.DEFAULT
        entry = resolver.local_cache.entry("kabeleins_local")
        assert entry.template == DEFAULT_TEMPLATE
        assert entry.expires_at == clock.now + 10
        redis_client.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_found_serves_default(self, resolver, redis_client, origin):
        origin.status_code = 404

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == DEFAULT_TEMPLATE
        redis_client.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_connection_refused_serves_default(self, resolver, origin):
        origin.error = httpx.ConnectError("connection refused")

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == DEFAULT_TEMPLATE

    @pytest.mark.asyncio
    async def test_rejected_body_serves_default(self, settings, clock, redis_client, origin):
        def reject(body):
            raise TemplateRejectedError("missing {{{body}}} tag")

        resolver = build_resolver(settings, clock, redis_client, origin, postprocess=reject)

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == DEFAULT_TEMPLATE
        redis_client.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_unresolved_url_skips_origin(self, settings, clock, redis_client, origin):
        resolver = build_resolver(
            settings, clock, redis_client, origin, url_for=TemplateUrlMap({"other": TEMPLATE_URL})
        )

        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.source == DEFAULT_TEMPLATE
        assert origin.requests == []

    @pytest.mark.asyncio
    async def test_default_is_retried_after_negative_ttl(self, resolver, clock, redis_client, origin):
        origin.status_code = 404
        await resolver.find_template("redis:kabeleins_local", "layouts")

        clock.advance(5)
        cached = await resolver.find_template("redis:kabeleins_local", "layouts")
        assert cached.origin == TemplateOrigin.LOCAL
        assert len(origin.requests) == 1

        clock.advance(6)
        origin.status_code = 200
        refreshed = await resolver.find_template("redis:kabeleins_local", "layouts")
        assert refreshed.source == REMOTE_TEMPLATE
        assert len(origin.requests) == 2


class TestResolvedTemplate:
    """Shape of the value handed back to the host."""

    @pytest.mark.asyncio
    async def test_template_metadata(self, resolver):
        result = await resolver.find_template("redis:kabeleins_local", "layouts")

        assert result.name == "redis:kabeleins_local"
        assert result.identifier == "kabeleins_local"
        assert result.virtual_path == "layouts/redis:kabeleins_local"
        assert result.handler == "erb"
        assert result.formats == ("html",)

    @pytest.mark.asyncio
    async def test_resolve_template_returns_source(self, resolver):
        assert await resolver.resolve_template("redis:kabeleins_local") == REMOTE_TEMPLATE
        assert await resolver.resolve_template("kabeleins_local") is None


class TestSingleFlightResolution:
    """Opt-in deduplication of concurrent origin fetches."""

    @pytest.mark.asyncio
    async def test_concurrent_misses_fetch_once(self, clock, redis_client):
        settings = ResolverSettings(default_template=DEFAULT_TEMPLATE, single_flight_enabled=True)
        fetcher = Mock(spec=OriginFetcher)
        release = asyncio.Event()

        async def slow_fetch(key, url, timeout=None):
            await release.wait()
            return REMOTE_TEMPLATE

        fetcher.fetch = AsyncMock(side_effect=slow_fetch)
        resolver = TemplateResolver(
            settings=settings,
            local_cache=LocalTemplateCache(clock=clock),
            shared_cache=SharedTemplateCache(redis_client=redis_client),
            origin_fetcher=fetcher,
            url_for=TemplateUrlMap(url_pattern=TEMPLATE_URL),
        )

        tasks = [
            asyncio.create_task(resolver.find_template("redis:kabeleins_local", "layouts"))
            for _ in range(5)
        ]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert [r.source for r in results] == [REMOTE_TEMPLATE] * 5
        assert fetcher.fetch.await_count == 1
        redis_client.set.assert_called_once_with("rlt:kabeleins_local", REMOTE_TEMPLATE)

    @pytest.mark.asyncio
    async def test_without_single_flight_every_miss_fetches(self, settings, clock, redis_client):
        fetcher = Mock(spec=OriginFetcher)
        release = asyncio.Event()

        async def slow_fetch(key, url, timeout=None):
            await release.wait()
            return REMOTE_TEMPLATE

        fetcher.fetch = AsyncMock(side_effect=slow_fetch)
        resolver = TemplateResolver(
            settings=settings,
            local_cache=LocalTemplateCache(clock=clock),
            shared_cache=SharedTemplateCache(redis_client=redis_client),
            origin_fetcher=fetcher,
            url_for=TemplateUrlMap(url_pattern=TEMPLATE_URL),
        )

        tasks = [
            asyncio.create_task(resolver.find_template("redis:kabeleins_local", "layouts"))
            for _ in range(3)
        ]
        await asyncio.sleep(0)
        release.set()
        await asyncio.gather(*tasks)

        assert fetcher.fetch.await_count == 3


class TestResolverLifecycle:
    """Construction, statistics and administration."""

    def test_postprocess_with_explicit_fetcher_is_rejected(self, settings):
        with pytest.raises(ConfigurationError):
            TemplateResolver(
                settings=settings,
                origin_fetcher=Mock(spec=OriginFetcher),
                postprocess=str.strip,
            )

    @pytest.mark.asyncio
    async def test_clear_cache(self, resolver):
        await resolver.find_template("redis:kabeleins_local", "layouts")
        assert "kabeleins_local" in resolver.local_cache

        resolver.clear_cache()

        assert len(resolver.local_cache) == 0

    @pytest.mark.asyncio
    async def test_statistics(self, resolver, redis_client, origin):
        await resolver.find_template("redis:a", "layouts")
        await resolver.find_template("redis:a", "layouts")
        redis_client.get.return_value = "shared"
        await resolver.find_template("redis:b", "layouts")
        await resolver.find_template("other", "layouts")

        stats = resolver.get_stats()
        assert stats['overall']['total_requests'] == 4
        assert stats['overall']['origin_hits'] == 1
        assert stats['overall']['local_hits'] == 1
        assert stats['overall']['shared_hits'] == 1
        assert stats['overall']['not_applicable'] == 1
        assert stats['single_flight'] is None

    @pytest.mark.asyncio
    async def test_shutdown_closes_connections(self, resolver, redis_client):
        await resolver.shutdown()

        redis_client.aclose.assert_awaited_once()
        assert resolver.shared_cache.redis_client is None
        assert resolver.origin_fetcher.client.is_closed

    @pytest.mark.asyncio
    async def test_cancelled_leader_does_not_fail_waiting_lookups(self, clock, redis_client):
        settings = ResolverSettings(default_template=DEFAULT_TEMPLATE, single_flight_enabled=True)
        fetcher = Mock(spec=OriginFetcher)
        release = asyncio.Event()

        async def slow_fetch(key, url, timeout=None):
            await release.wait()
            return REMOTE_TEMPLATE

        fetcher.fetch = AsyncMock(side_effect=slow_fetch)
        resolver = TemplateResolver(
            settings=settings,
            local_cache=LocalTemplateCache(clock=clock),
            shared_cache=SharedTemplateCache(redis_client=redis_client),
            origin_fetcher=fetcher,
            url_for=TemplateUrlMap(url_pattern=TEMPLATE_URL),
        )

        leader = asyncio.create_task(resolver.find_template("redis:kabeleins_local", "layouts"))
        await asyncio.sleep(0)
        follower = asyncio.create_task(resolver.find_template("redis:kabeleins_local", "layouts"))
        await asyncio.sleep(0)

        leader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leader

        release.set()
        result = await follower

        assert result.source == REMOTE_TEMPLATE
        assert fetcher.fetch.await_count == 2
        assert not resolver.single_flight.in_flight("kabeleins_local")
