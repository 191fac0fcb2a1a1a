"""
Origin fetcher: retrieves template bodies from their remote URL over HTTP.

Every failure mode (no URL, 404, timeout, transport error, rejected body)
comes back as None so the caller can fall through to the default template.
"""

import asyncio
from typing import Any, Callable, Dict, Optional

import httpx

from ..shared.logging_config import get_logger
from .exceptions import TemplateRejectedError


DEFAULT_HTTP_TIMEOUT = 5.0

# Receives the raw body; returns the body to cache or raises TemplateRejectedError
Postprocessor = Callable[[str], str]


def passthrough(body: str) -> str:
    return body


class OriginFetcher:
    """Fetches templates from their origin with a bounded timeout."""

    def __init__(
        self,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        postprocess: Optional[Postprocessor] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the origin fetcher.

        Args:
            timeout: Default request timeout in seconds
            postprocess: Optional hook validating or transforming fetched bodies
            client: Pre-built HTTP client (tests inject one with a mock transport)
        """
        self.timeout = timeout
        self.postprocess = postprocess or passthrough
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
        )
        self.logger = get_logger(__name__, 'origin_fetcher')

        self.stats = {
            'fetches': 0,
            'successes': 0,
            'not_found': 0,
            'unresolved': 0,
            'rejections': 0,
            'errors': 0
        }

    async def fetch(self, key: str, url: Optional[str], timeout: Optional[float] = None) -> Optional[str]:
        """
        Fetch the template for `key` from `url`.

        Args:
            key: Template identifier, used for logging
            url: Origin URL; None skips the request entirely
            timeout: Per-call timeout overriding the default

        Returns:
            The (post-processed) template body, or None
        """
        if url is None:
            self.stats['unresolved'] += 1
            self.logger.debug("No origin URL for template", operation="fetch", key=key)
            return None

        self.stats['fetches'] += 1
        self.logger.info(f"Fetching remote template from {url}", operation="fetch", key=key, url=url)

        try:
            response = await self.client.get(url, timeout=timeout or self.timeout)
            self.logger.info(
                f"Got remote template response code {response.status_code}",
                operation="fetch",
                key=key,
                status_code=response.status_code,
            )

            if response.status_code == 404:
                self.stats['not_found'] += 1
                return None

            if not response.is_success:
                self.logger.warning(
                    f"Unexpected origin status {response.status_code}, using body as template",
                    operation="fetch",
                    key=key,
                    url=url,
                )

            body = self.postprocess(response.text)

        except TemplateRejectedError as e:
            self.logger.error(f"Remote template rejected: {e}", operation="fetch", key=key, url=url)
            self.stats['rejections'] += 1
            return None
        except (httpx.RequestError, asyncio.TimeoutError, OSError) as e:
            self.logger.error(
                f"Failed to fetch remote template: {type(e).__name__}: {e}",
                operation="fetch",
                key=key,
                url=url,
            )
            self.stats['errors'] += 1
            return None

        self.stats['successes'] += 1
        return body

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    def get_stats(self) -> Dict[str, Any]:
        """Get origin fetch statistics."""
        return dict(self.stats)
