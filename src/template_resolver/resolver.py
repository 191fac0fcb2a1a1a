"""
Template resolution chain.

Looks up templates in three tiers and falls back to a default:

1. Local cache. A valid entry is returned as is; an expired one is removed.
2. Redis. A hit is written back to the local cache for `local_cache_ttl`
   seconds.
3. Origin URL supplied by the host. A successful fetch is written to Redis
   (without expiry) and to the local cache for `local_cache_ttl` seconds.
4. The default template, cached locally for `local_cache_negative_ttl`
   seconds so a failing origin is not hammered.

Concurrent misses for the same template all fetch from the origin unless
`single_flight_enabled` is set, which collapses them into one fetch per
process. There is no cross-process lock.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from ..shared.config import ResolverSettings, get_settings
from ..shared.logging_config import get_logger
from .exceptions import ConfigurationError
from .keys import TemplateRequest, UrlFor, no_urls
from .local_cache import LocalTemplateCache
from .origin import OriginFetcher, Postprocessor
from .shared_cache import SharedTemplateCache
from .single_flight import SingleFlight


# Decides whether this resolver answers a request at all
Guard = Callable[[TemplateRequest], bool]


def accept_all(request: TemplateRequest) -> bool:
    return True


class TemplateOrigin(str, Enum):
    """Tier that produced a resolved template."""
    LOCAL = "local"
    SHARED = "shared"
    ORIGIN = "origin"
    DEFAULT = "default"


@dataclass(frozen=True)
class ResolvedTemplate:
    """Template handed back to the rendering host."""
    source: str
    name: str
    identifier: str
    virtual_path: str
    origin: TemplateOrigin
    handler: str = "erb"
    formats: Tuple[str, ...] = ("html",)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class TemplateResolver:
    """Resolves templates through local cache, Redis, origin and default."""

    def __init__(
        self,
        settings: Optional[ResolverSettings] = None,
        local_cache: Optional[LocalTemplateCache] = None,
        shared_cache: Optional[SharedTemplateCache] = None,
        origin_fetcher: Optional[OriginFetcher] = None,
        url_for: UrlFor = no_urls,
        guard: Optional[Guard] = None,
        postprocess: Optional[Postprocessor] = None,
    ):
        self.settings = settings or ResolverSettings()

        if origin_fetcher is not None and postprocess is not None:
            raise ConfigurationError(
                "Pass postprocess to the OriginFetcher when supplying one explicitly"
            )

        self.local_cache = local_cache or LocalTemplateCache()
        self.shared_cache = shared_cache or SharedTemplateCache(key_prefix=self.settings.redis_key_prefix)
        self.origin_fetcher = origin_fetcher or OriginFetcher(
            timeout=self.settings.http_timeout,
            postprocess=postprocess,
        )
        self.url_for = url_for
        self.guard = guard or accept_all
        self.single_flight = SingleFlight() if self.settings.single_flight_enabled else None
        self.logger = get_logger(__name__, 'template_resolver')

        self.stats = {
            'total_requests': 0,
            'not_applicable': 0,
            'guard_rejections': 0,
            'local_hits': 0,
            'shared_hits': 0,
            'origin_hits': 0,
            'defaults_served': 0,
        }

    async def initialize(self) -> None:
        """Connect to Redis ahead of the first lookup."""
        try:
            await self.shared_cache.connect()
            self.logger.info("Template resolver initialized successfully", operation="initialize")
        except Exception as e:
            self.logger.error(f"Failed to initialize template resolver: {e}", operation="initialize")
            raise

    async def shutdown(self) -> None:
        """Release the Redis connection and the HTTP client."""
        await self.shared_cache.disconnect()
        await self.origin_fetcher.close()
        self.logger.info("Template resolver shutdown completed", operation="shutdown")

    async def find_template(
        self,
        name: str,
        prefix: str = "",
        partial: bool = False,
        details: Optional[Mapping[str, Any]] = None,
    ) -> Optional[ResolvedTemplate]:
        """
        Look up a template for the rendering host.

        Args:
            name: Requested template name, e.g. "redis:kabeleins_local"
            prefix: Lookup prefix supplied by the host, e.g. "layouts"
            partial: Whether the host is looking for a partial
            details: Host context handed to the guard and URL mapping

        Returns:
            The resolved template, or None if this resolver does not handle
            the request. Once a request is accepted a template is always
            returned, in the worst case the configured default.
        """
        self.stats['total_requests'] += 1

        request = TemplateRequest.from_name(
            name,
            prefix=prefix,
            partial=partial,
            details=details,
            name_prefix=self.settings.template_name_prefix,
        )
        if request is None:
            self.stats['not_applicable'] += 1
            return None

        if not self.guard(request):
            self.stats['guard_rejections'] += 1
            self.logger.debug("Resolver guard declined request", operation="find_template", template=name)
            return None

        self.logger.debug(
            f"Fetching template with identifier {request.identifier}",
            operation="find_template",
            template=name,
        )
        source, origin = await self.resolve(request)

        return ResolvedTemplate(
            source=source,
            name=request.name,
            identifier=request.identifier,
            virtual_path=request.virtual_path,
            origin=origin,
            handler=self.settings.template_handler_name,
        )

    async def resolve_template(self, name: str, details: Optional[Mapping[str, Any]] = None) -> Optional[str]:
        """Return just the template source, or None if the request is not ours."""
        template = await self.find_template(name, details=details)
        return template.source if template is not None else None

    async def resolve(self, request: TemplateRequest) -> Tuple[str, TemplateOrigin]:
        """Run the tier chain for an accepted request."""
        identifier = request.identifier

        template = self.local_cache.get(identifier)
        if template is not None:
            self.stats['local_hits'] += 1
            return template, TemplateOrigin.LOCAL

        template = await self._fetch_from_shared_cache(identifier)
        if template is not None:
            self.stats['shared_hits'] += 1
            return template, TemplateOrigin.SHARED

        if self.single_flight is not None:
            template = await self.single_flight.do(
                identifier, lambda: self._fetch_remote_template_and_store(request)
            )
        else:
            template = await self._fetch_remote_template_and_store(request)
        if template is not None:
            self.stats['origin_hits'] += 1
            return template, TemplateOrigin.ORIGIN

        self.stats['defaults_served'] += 1
        self.logger.warning(
            "All tiers missed, serving default template",
            operation="resolve",
            key=identifier,
            ttl=self.settings.local_cache_negative_ttl,
        )
        template = self.local_cache.put(
            identifier,
            self.settings.default_template,
            self.settings.local_cache_negative_ttl,
        )
        return template, TemplateOrigin.DEFAULT

    async def _fetch_from_shared_cache(self, identifier: str) -> Optional[str]:
        template = await self.shared_cache.get(self.shared_cache.key_for(identifier))
        if template is not None:
            self.local_cache.put(identifier, template, self.settings.local_cache_ttl)
        return template

    async def _fetch_remote_template_and_store(self, request: TemplateRequest) -> Optional[str]:
        identifier = request.identifier
        url = self.url_for(identifier, request)

        template = await self.origin_fetcher.fetch(identifier, url, timeout=self.settings.http_timeout)
        if template is None:
            return None

        self.local_cache.put(identifier, template, self.settings.local_cache_ttl)
        # A failed write is logged by the shared cache; the fetched template is still served
        await self.shared_cache.set(self.shared_cache.key_for(identifier), template)
        return template

    def clear_cache(self) -> None:
        """Clear the local cache completely."""
        self.local_cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get resolution statistics for every tier."""
        return {
            'overall': dict(self.stats),
            'local': self.local_cache.get_stats(),
            'shared': self.shared_cache.get_stats(),
            'origin': self.origin_fetcher.get_stats(),
            'single_flight': self.single_flight.get_stats() if self.single_flight else None,
        }


# Global resolver instance
_template_resolver: Optional[TemplateResolver] = None


def get_template_resolver(
    url_for: UrlFor = no_urls,
    guard: Optional[Guard] = None,
    postprocess: Optional[Postprocessor] = None,
) -> TemplateResolver:
    """Get the process-wide resolver, building it from settings on first use."""
    global _template_resolver
    if _template_resolver is None:
        settings = get_settings()
        _template_resolver = TemplateResolver(
            settings=settings.resolver,
            shared_cache=SharedTemplateCache(
                settings=settings.redis,
                key_prefix=settings.resolver.redis_key_prefix,
            ),
            url_for=url_for,
            guard=guard,
            postprocess=postprocess,
        )
    return _template_resolver


async def initialize_resolver() -> None:
    """Initialize the global template resolver."""
    await get_template_resolver().initialize()


async def shutdown_resolver() -> None:
    """Shutdown the global template resolver."""
    global _template_resolver
    if _template_resolver:
        await _template_resolver.shutdown()
        _template_resolver = None
