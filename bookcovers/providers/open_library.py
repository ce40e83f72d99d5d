# FILE: bookcovers/providers/open_library.py
"""
Open Library covers adapter
"""
import logging
from typing import Optional

from bookcovers.errors import CoverFetchError
from bookcovers.models.books import Book
from bookcovers.models.images import CoverImageSource, ImageCandidate
from bookcovers.providers.base import CoverFetcher
from bookcovers.services.identifiers import preferred_isbn
from bookcovers.services.url_enhancer import enhance_open_library_url

logger = logging.getLogger(__name__)

# Largest first
SIZES = ("L", "M", "S")


class OpenLibraryFetcher(CoverFetcher):
    """Open Library covers by ISBN"""

    source = CoverImageSource.OPEN_LIBRARY

    def cover_url(self, isbn: str, size: str = "L") -> str:
        base = self.settings.open_library_covers_url.rstrip("/")
        return enhance_open_library_url(f"{base}/b/isbn/{isbn}-{size}.jpg", size)

    async def fetch_cover(self, book: Book) -> ImageCandidate:
        isbn = preferred_isbn(book)
        if not isbn:
            raise CoverFetchError(self.name, "no-isbn")

        last_error: Optional[CoverFetchError] = None
        for size in SIZES:
            url = self.cover_url(isbn, size)
            try:
                return await self.download_candidate(url, source_system_id=isbn)
            except CoverFetchError as e:
                logger.debug(f"Open Library size {size} failed for {isbn}: {e.reason}")
                last_error = e
        raise last_error
