# FILE: bookcovers/providers/registry.py
"""
Fetcher registry: one fetcher per provider, policy ordering and a
circuit breaker keyed per provider
"""
import asyncio
import logging
from typing import Dict, List, Optional

import httpx

from bookcovers.config import Settings, get_settings
from bookcovers.errors import CoverFetchError, CoverNotFoundError
from bookcovers.models.books import Book
from bookcovers.models.images import CoverImageSource, ImageCandidate
from bookcovers.providers.base import CoverFetcher, build_http_client
from bookcovers.providers.google_books import GoogleBooksFetcher
from bookcovers.providers.longitood import LongitoodFetcher
from bookcovers.providers.open_library import OpenLibraryFetcher
from bookcovers.services.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

FETCHER_CLASSES = {
    CoverImageSource.GOOGLE_BOOKS: GoogleBooksFetcher,
    CoverImageSource.OPEN_LIBRARY: OpenLibraryFetcher,
    CoverImageSource.LONGITOOD: LongitoodFetcher,
}


class FetcherRegistry:
    """Registry of cover fetchers with routing policy and failure tracking"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        fetchers: Optional[Dict[CoverImageSource, CoverFetcher]] = None,
    ):
        self.settings = settings or get_settings()
        self.circuit_breaker = CircuitBreaker(
            threshold=self.settings.circuit_breaker_threshold,
            timeout_seconds=self.settings.circuit_breaker_cooldown_seconds,
        )
        self.provider_order: List[CoverImageSource] = [
            CoverImageSource(name) for name in self.settings.provider_order
        ]
        self._client: Optional[httpx.AsyncClient] = None
        if fetchers is not None:
            self.fetchers = dict(fetchers)
        else:
            self._client = client or build_http_client(self.settings)
            self.fetchers = {
                source: cls(client=self._client, settings=self.settings)
                for source, cls in FETCHER_CLASSES.items()
            }
        logger.info(
            f"Initialized cover fetchers: {[s.value for s in self.fetchers]} "
            f"(order={[s.value for s in self.provider_order]})"
        )

    def get(self, source: CoverImageSource) -> Optional[CoverFetcher]:
        return self.fetchers.get(source)

    def ordered(self, preference: CoverImageSource, allow_fallback: bool = True) -> List[CoverImageSource]:
        """
        Providers to try for a caller preference

        - NONE / UNDEFINED: nothing
        - ANY: every registered provider in quality order
        - a specific provider: that provider, then the rest if fallback is allowed
        """
        in_order = [s for s in self.provider_order if s in self.fetchers]
        # Registered but not configured in provider_order go last
        in_order += [s for s in self.fetchers if s not in in_order]

        if preference in (CoverImageSource.NONE, CoverImageSource.UNDEFINED):
            return []
        if preference == CoverImageSource.ANY:
            return in_order
        if preference not in self.fetchers:
            return in_order if allow_fallback else []
        if not allow_fallback:
            return [preference]
        return [preference] + [s for s in in_order if s != preference]

    def is_available(self, source: CoverImageSource) -> bool:
        return source in self.fetchers and not self.circuit_breaker.is_open(source.value)

    async def fetch(self, source: CoverImageSource, book: Book, timeout: Optional[float] = None) -> ImageCandidate:
        """
        Fetch from one provider, bounded by timeout

        "No cover" answers leave the circuit closed. Transport failures,
        timeouts and unexpected fetcher errors count against it; the last
        are wrapped in CoverFetchError so callers can fall back.
        """
        fetcher = self.fetchers.get(source)
        if fetcher is None:
            raise CoverFetchError(source.value, "provider-not-registered")

        timeout = timeout or self.settings.provider_timeout_seconds
        try:
            candidate = await asyncio.wait_for(fetcher.fetch_cover(book), timeout=timeout)
        except asyncio.TimeoutError as e:
            self.circuit_breaker.record_failure(source.value)
            raise CoverFetchError(source.value, f"timeout after {timeout}s") from e
        except CoverNotFoundError:
            self.circuit_breaker.record_success(source.value)
            raise
        except CoverFetchError:
            self.circuit_breaker.record_failure(source.value)
            raise
        except Exception as e:
            logger.error(f"Unexpected error from {source.value}: {e}", exc_info=True)
            self.circuit_breaker.record_failure(source.value)
            raise CoverFetchError(source.value, f"unexpected-error: {e}") from e

        self.circuit_breaker.record_success(source.value)
        return candidate

    async def download(self, source: CoverImageSource, url: str, timeout: Optional[float] = None) -> ImageCandidate:
        """Download a known image URL through the fetcher for source"""
        fetcher = self.fetchers.get(source)
        if fetcher is None:
            raise CoverFetchError(source.value, "provider-not-registered", url)

        timeout = timeout or self.settings.provider_timeout_seconds
        try:
            return await asyncio.wait_for(fetcher.download_candidate(url), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise CoverFetchError(source.value, f"timeout after {timeout}s", url) from e
        except CoverFetchError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error downloading {url} from {source.value}: {e}", exc_info=True)
            raise CoverFetchError(source.value, f"unexpected-error: {e}", url) from e

    def circuit_status(self) -> Dict[str, Dict]:
        return self.circuit_breaker.status()

    async def close(self):
        for fetcher in self.fetchers.values():
            await fetcher.close()
        if self._client is not None:
            await self._client.aclose()
            self._client = None


_registry: Optional[FetcherRegistry] = None


def get_fetcher_registry() -> FetcherRegistry:
    """Get or create global fetcher registry"""
    global _registry
    if _registry is None:
        _registry = FetcherRegistry()
    return _registry
