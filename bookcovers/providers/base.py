# FILE: bookcovers/providers/base.py
"""
Base class for cover providers

A fetcher either returns a valid ImageCandidate (with the downloaded bytes
attached) or raises CoverFetchError. It never returns an empty success.
"""
import logging
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from typing import Optional

import httpx

from bookcovers.config import Settings, get_settings
from bookcovers.errors import CoverFetchError, CoverNotFoundError
from bookcovers.models.books import Book
from bookcovers.models.images import (
    CoverImageSource, ImageCandidate, ImageResolutionPreference, StorageLocation,
)
from bookcovers.services.image_analysis import CoverHeuristics, detect_content_type, read_dimensions
from bookcovers.services.io_pool import run_blocking
from bookcovers.services.source_mapping import to_image_source_name

logger = logging.getLogger(__name__)

# Content types some CDNs use for images
_GENERIC_CONTENT_TYPES = ("application/octet-stream", "binary/octet-stream")


def build_http_client(settings: Optional[Settings] = None) -> httpx.AsyncClient:
    """Long-lived client shared by all fetchers"""
    settings = settings or get_settings()
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.provider_timeout_seconds),
        headers={"User-Agent": settings.http_user_agent},
        follow_redirects=True,
    )


class CoverFetcher(ABC):
    """Base class for cover image providers"""

    source: CoverImageSource = CoverImageSource.UNDEFINED

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        executor: Optional[Executor] = None,
    ):
        self.settings = settings or get_settings()
        self._owns_client = client is None
        self.client = client or build_http_client(self.settings)
        self.executor = executor
        self.heuristics = CoverHeuristics(self.settings)

    @property
    def name(self) -> str:
        return self.source.value

    @abstractmethod
    async def fetch_cover(self, book: Book) -> ImageCandidate:
        """Fetch the best cover this provider has for book"""
        raise NotImplementedError

    async def _get(self, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.get(url, **kwargs)
        except httpx.TimeoutException as e:
            raise CoverFetchError(self.name, f"timeout: {e}", url) from e
        except httpx.HTTPError as e:
            raise CoverFetchError(self.name, f"http-error: {e}", url) from e

    def _check_status(self, response: httpx.Response, url: str):
        if response.status_code == 404:
            raise CoverNotFoundError(self.name, "not-found", url)
        if response.status_code != 200:
            raise CoverFetchError(self.name, f"http-status-{response.status_code}", url)

    async def download_candidate(
        self,
        url: str,
        source_system_id: Optional[str] = None,
        resolution: ImageResolutionPreference = ImageResolutionPreference.ANY,
    ) -> ImageCandidate:
        """Download url and turn it into a measured candidate"""
        response = await self._get(url)
        self._check_status(response, url)

        data = response.content
        if not data:
            raise CoverFetchError(self.name, "empty-body", url)

        header_type = (response.headers.get("content-type") or "").split(";")[0].strip().lower()
        if header_type and not header_type.startswith("image/") and header_type not in _GENERIC_CONTENT_TYPES:
            raise CoverFetchError(self.name, f"non-image-content: {header_type}", url)

        if self.heuristics.is_placeholder(data):
            raise CoverNotFoundError(self.name, "placeholder-image", url)

        dims = await run_blocking(read_dimensions, data, executor=self.executor)
        if dims is None:
            raise CoverFetchError(self.name, "undecodable-image", url)
        width, height = dims
        if width <= self.settings.min_valid_dimension or height <= self.settings.min_valid_dimension:
            # Providers answer "no cover" with a 1x1 pixel
            raise CoverNotFoundError(self.name, f"blank-image {width}x{height}", url)

        logger.debug(f"{self.name} downloaded {url} ({width}x{height}, {len(data)} bytes)")
        return ImageCandidate(
            location=url,
            source_name=to_image_source_name(self.source),
            cover_source=self.source,
            source_system_id=source_system_id,
            resolution_preference=resolution,
            width=width,
            height=height,
            storage_location=StorageLocation.REMOTE,
            content_type=detect_content_type(data) or header_type or None,
            image_bytes=data,
        )

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
