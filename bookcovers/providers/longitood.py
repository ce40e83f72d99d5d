# FILE: bookcovers/providers/longitood.py
"""
Longitood book cover API adapter
"""
import logging

from bookcovers.errors import CoverFetchError, CoverNotFoundError
from bookcovers.models.books import Book
from bookcovers.models.images import CoverImageSource, ImageCandidate
from bookcovers.providers.base import CoverFetcher
from bookcovers.services.identifiers import preferred_isbn
from bookcovers.services.url_enhancer import enhance_generic_url

logger = logging.getLogger(__name__)


class LongitoodFetcher(CoverFetcher):
    """Resolves an ISBN to a cover URL, then downloads it"""

    source = CoverImageSource.LONGITOOD

    async def fetch_cover(self, book: Book) -> ImageCandidate:
        isbn = preferred_isbn(book)
        if not isbn:
            raise CoverFetchError(self.name, "no-isbn")

        lookup_url = f"{self.settings.longitood_base_url.rstrip('/')}/bookcover/{isbn}"
        response = await self._get(lookup_url)
        self._check_status(response, lookup_url)

        try:
            data = response.json()
        except ValueError as e:
            raise CoverFetchError(self.name, f"invalid-json: {e}", lookup_url) from e

        image_url = enhance_generic_url(data.get("url") if isinstance(data, dict) else None)
        if not image_url:
            raise CoverNotFoundError(self.name, "no-url-in-response", lookup_url)

        return await self.download_candidate(image_url, source_system_id=isbn)
