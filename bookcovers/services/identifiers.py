# FILE: bookcovers/services/identifiers.py
"""
Canonical cache/lookup key for a book: ISBN-13 > ISBN-10 > provider-native id
"""
import re
from typing import Optional

from bookcovers.models.books import Book

_ISBN_SEPARATORS = re.compile(r"[\s-]+")
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def normalize_isbn(value: Optional[str]) -> Optional[str]:
    """Strip spaces and hyphens, uppercase the check digit; None when blank"""
    if value is None:
        return None
    cleaned = _ISBN_SEPARATORS.sub("", value).upper()
    return cleaned or None


def _has_text(value: Optional[str]) -> bool:
    return value is not None and value.strip() != ""


def preferred_isbn(book: Optional[Book]) -> Optional[str]:
    """ISBN-13 if present, else ISBN-10, else None"""
    if book is None:
        return None
    if _has_text(book.isbn13):
        return normalize_isbn(book.isbn13)
    if _has_text(book.isbn10):
        return normalize_isbn(book.isbn10)
    return None


def resolve_identifier(book: Optional[Book]) -> Optional[str]:
    """
    Resolve the key used for cache lookups, storage keys and log tags.

    Returns None only when the book carries no ISBN and no provider id.
    """
    isbn = preferred_isbn(book)
    if isbn:
        return isbn
    if book is not None and _has_text(book.id):
        return book.id.strip()
    return None


def storage_safe_key(key: str) -> str:
    """Key restricted to characters that are safe in file names and object keys"""
    return _UNSAFE_KEY_CHARS.sub("_", key)
