# FILE: bookcovers/providers/google_books.py
"""
Google Books provider adapter
"""
import logging
from typing import Any, Dict, Optional

from bookcovers.errors import CoverFetchError, CoverNotFoundError
from bookcovers.models.books import Book
from bookcovers.models.images import CoverImageSource, ImageCandidate
from bookcovers.providers.base import CoverFetcher
from bookcovers.services.dimensions import type_priority
from bookcovers.services.identifiers import preferred_isbn
from bookcovers.services.url_enhancer import enhance_google_url

logger = logging.getLogger(__name__)


class GoogleBooksFetcher(CoverFetcher):
    """Google Books volumes API"""

    source = CoverImageSource.GOOGLE_BOOKS

    @property
    def base_url(self) -> str:
        return self.settings.google_books_base_url.rstrip("/")

    async def _lookup_volume(self, book: Book) -> Dict[str, Any]:
        params = {}
        if self.settings.google_books_api_key:
            params["key"] = self.settings.google_books_api_key

        isbn = preferred_isbn(book)
        if isbn:
            url = f"{self.base_url}/volumes"
            params["q"] = f"isbn:{isbn}"
        elif book.id and book.id.strip():
            url = f"{self.base_url}/volumes/{book.id.strip()}"
        else:
            raise CoverFetchError(self.name, "no-identifier")

        response = await self._get(url, params=params)
        self._check_status(response, url)
        try:
            data = response.json()
        except ValueError as e:
            raise CoverFetchError(self.name, f"invalid-json: {e}", url) from e

        if not isinstance(data, dict):
            raise CoverFetchError(self.name, "unexpected-response-shape", url)
        if "volumeInfo" in data:
            return data
        items = [item for item in data.get("items") or [] if isinstance(item, dict)]
        if not items:
            raise CoverNotFoundError(self.name, "no-volume-found", url)
        return items[0]

    async def fetch_cover(self, book: Book) -> ImageCandidate:
        volume = await self._lookup_volume(book)
        volume_info = volume.get("volumeInfo")
        image_links = volume_info.get("imageLinks") if isinstance(volume_info, dict) else None
        if not isinstance(image_links, dict) or not image_links:
            raise CoverNotFoundError(self.name, "no-image-links")

        volume_id: Optional[str] = volume.get("id") or book.id
        last_error: Optional[CoverFetchError] = None

        for image_type, link in sorted(image_links.items(), key=lambda kv: type_priority(kv[0])):
            if not isinstance(link, str):
                continue
            url = enhance_google_url(link, image_type)
            if not url:
                continue
            try:
                return await self.download_candidate(url, source_system_id=volume_id)
            except CoverFetchError as e:
                logger.debug(f"Google Books {image_type} failed for {volume_id}: {e}")
                last_error = e

        raise last_error or CoverNotFoundError(self.name, "no-usable-image-links")
