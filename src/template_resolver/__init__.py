"""
Tiered template resolution.

Templates are looked up in a process-local cache, then in Redis, then at
their origin URL, with a negatively cached default as the last resort:
- In-memory cache with lazy per-entry expiry
- Redis cache shared by every process, written without expiry
- HTTP origin fetch with timeout and optional post-processing
- Optional per-key single-flight around origin fetches
"""

from .exceptions import (
    TemplateResolverError,
    TemplateRejectedError,
    ConfigurationError
)

from .keys import (
    TemplateRequest,
    TemplateUrlMap,
    UrlFor,
    no_urls
)

from .local_cache import (
    CacheEntry,
    LocalTemplateCache
)

from .shared_cache import SharedTemplateCache

from .origin import (
    OriginFetcher,
    Postprocessor
)

from .single_flight import SingleFlight

from .resolver import (
    Guard,
    ResolvedTemplate,
    TemplateOrigin,
    TemplateResolver,
    get_template_resolver,
    initialize_resolver,
    shutdown_resolver
)

__all__ = [
    # Errors
    'TemplateResolverError',
    'TemplateRejectedError',
    'ConfigurationError',

    # Requests and URL mapping
    'TemplateRequest',
    'TemplateUrlMap',
    'UrlFor',
    'no_urls',

    # Tiers
    'CacheEntry',
    'LocalTemplateCache',
    'SharedTemplateCache',
    'OriginFetcher',
    'Postprocessor',
    'SingleFlight',

    # Resolution
    'Guard',
    'ResolvedTemplate',
    'TemplateOrigin',
    'TemplateResolver',

    # Factory and lifecycle functions
    'get_template_resolver',
    'initialize_resolver',
    'shutdown_resolver'
]
