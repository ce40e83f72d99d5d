# FILE: bookcovers/services/source_mapping.py
"""
Single mapping between source strings, ImageSourceName and CoverImageSource.

Unmapped values become ImageSourceName.UNKNOWN / CoverImageSource.UNDEFINED;
nothing in here raises.
"""
import re
from typing import Dict, Optional, Union
from urllib.parse import urlparse

from bookcovers.models.images import CoverImageSource, ImageSourceName

SourceLike = Union[str, ImageSourceName, CoverImageSource, None]

# Provider identity is shared by both enums
_NAME_TO_COVER: Dict[ImageSourceName, CoverImageSource] = {
    ImageSourceName.GOOGLE_BOOKS: CoverImageSource.GOOGLE_BOOKS,
    ImageSourceName.OPEN_LIBRARY: CoverImageSource.OPEN_LIBRARY,
    ImageSourceName.LONGITOOD: CoverImageSource.LONGITOOD,
}
_COVER_TO_NAME: Dict[CoverImageSource, ImageSourceName] = {v: k for k, v in _NAME_TO_COVER.items()}

# Aliases seen in upstream data, storage keys and older log lines
_ALIASES: Dict[str, ImageSourceName] = {
    "googlebooks": ImageSourceName.GOOGLE_BOOKS,
    "googlebooksapi": ImageSourceName.GOOGLE_BOOKS,
    "google": ImageSourceName.GOOGLE_BOOKS,
    "openlibrary": ImageSourceName.OPEN_LIBRARY,
    "ol": ImageSourceName.OPEN_LIBRARY,
    "longitood": ImageSourceName.LONGITOOD,
    "localcache": ImageSourceName.LOCAL_CACHE,
    "local": ImageSourceName.LOCAL_CACHE,
    "disk": ImageSourceName.LOCAL_CACHE,
    "s3cache": ImageSourceName.S3_CACHE,
    "s3": ImageSourceName.S3_CACHE,
    "objectstorage": ImageSourceName.S3_CACHE,
}

_URL_HOSTS = (
    ("googleapis.com", CoverImageSource.GOOGLE_BOOKS),
    ("books.google.", CoverImageSource.GOOGLE_BOOKS),
    ("googleusercontent.com", CoverImageSource.GOOGLE_BOOKS),
    ("openlibrary.org", CoverImageSource.OPEN_LIBRARY),
    ("longitood.com", CoverImageSource.LONGITOOD),
)

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def _squash(value: str) -> str:
    return _NON_ALNUM.sub("", value.lower())


def to_image_source_name(value: SourceLike) -> ImageSourceName:
    """Map any source representation to ImageSourceName"""
    if value is None:
        return ImageSourceName.UNKNOWN
    if isinstance(value, ImageSourceName):
        return value
    if isinstance(value, CoverImageSource):
        return _COVER_TO_NAME.get(value, ImageSourceName.UNKNOWN)
    text = str(value).strip()
    if not text:
        return ImageSourceName.UNKNOWN
    try:
        return ImageSourceName(text.upper())
    except ValueError:
        pass
    squashed = _squash(text)
    for member in ImageSourceName:
        if _squash(member.value) == squashed:
            return member
    return _ALIASES.get(squashed, ImageSourceName.UNKNOWN)


def to_cover_image_source(value: SourceLike) -> CoverImageSource:
    """Map any source representation to CoverImageSource"""
    if value is None:
        return CoverImageSource.UNDEFINED
    if isinstance(value, CoverImageSource):
        return value
    if isinstance(value, str) and not isinstance(value, ImageSourceName):
        text = value.strip().upper()
        if text in CoverImageSource.__members__:
            return CoverImageSource[text]
    name = to_image_source_name(value)
    return _NAME_TO_COVER.get(name, CoverImageSource.UNDEFINED)


def is_provider(source: SourceLike) -> bool:
    return to_cover_image_source(source) in _COVER_TO_NAME


def source_slug(source: SourceLike) -> str:
    """Lowercase hyphenated tag used inside storage keys and file names"""
    cover = to_cover_image_source(source)
    if cover in _COVER_TO_NAME:
        return cover.value.lower().replace("_", "-")
    return "unknown"


def source_from_slug(slug: Optional[str]) -> CoverImageSource:
    if not slug:
        return CoverImageSource.UNDEFINED
    return to_cover_image_source(slug.replace("-", "_"))


def detect_source_from_url(url: Optional[str]) -> CoverImageSource:
    """Guess the provider of an image URL from its host"""
    if not url:
        return CoverImageSource.UNDEFINED
    host = (urlparse(url).netloc or "").lower()
    for marker, source in _URL_HOSTS:
        if marker in host:
            return source
    return CoverImageSource.UNDEFINED
