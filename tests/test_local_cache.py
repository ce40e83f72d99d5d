# FILE: tests/test_local_cache.py

import os
import time

import pytest

from bookcovers.errors import CacheTierError
from bookcovers.models.images import CoverImageSource, ImageSourceName, StorageLocation
from bookcovers.services.local_cache import LocalCoverCache


@pytest.fixture
def cache(settings):
    return LocalCoverCache(settings)


@pytest.mark.asyncio
async def test_store_then_lookup(cache, remote_candidate):
    stored = await cache.store("9780306406157", remote_candidate(CoverImageSource.GOOGLE_BOOKS, 400, 600))

    assert stored.location == "/book-covers/9780306406157-google-books.jpg"
    assert stored.storage_location == StorageLocation.LOCAL_DISK
    assert stored.source_name == ImageSourceName.LOCAL_CACHE
    assert stored.cover_source == CoverImageSource.GOOGLE_BOOKS

    hit = await cache.lookup("9780306406157")
    assert hit is not None
    assert hit.location == stored.location
    assert (hit.width, hit.height) == (400, 600)
    assert hit.cover_source == CoverImageSource.GOOGLE_BOOKS
    assert hit.content_type == "image/jpeg"
    assert hit.is_cache_resident


@pytest.mark.asyncio
async def test_lookup_miss(cache):
    assert await cache.lookup("0000000000") is None


def test_store_is_atomic_and_replaces_variants(cache, remote_candidate):
    key = "9780306406157"
    cache.store_sync(key, remote_candidate(CoverImageSource.OPEN_LIBRARY, 180, 270))
    cache.store_sync(key, remote_candidate(CoverImageSource.LONGITOOD, 300, 450))

    names = sorted(p.name for p in cache.cache_dir.iterdir())
    assert names == [f"{key}-longitood.jpg"]
    assert cache.lookup_sync(key).cover_source == CoverImageSource.LONGITOOD


def test_store_without_bytes_fails(cache, remote_candidate):
    candidate = remote_candidate(CoverImageSource.GOOGLE_BOOKS).model_copy(update={"image_bytes": None})
    with pytest.raises(CacheTierError):
        cache.store_sync("123", candidate)


def test_hyphenated_keys_do_not_collide(cache, remote_candidate):
    cache.store_sync("abc", remote_candidate(CoverImageSource.GOOGLE_BOOKS, 200, 300))
    cache.store_sync("abc-def", remote_candidate(CoverImageSource.GOOGLE_BOOKS, 500, 750))

    assert cache.lookup_sync("abc").width == 200
    assert cache.lookup_sync("abc-def").width == 500
    assert len(list(cache.cache_dir.iterdir())) == 2


def test_unsafe_key_characters(cache, remote_candidate):
    stored = cache.store_sync("vol/../x", remote_candidate(CoverImageSource.GOOGLE_BOOKS))
    assert stored.storage_key == "vol____x-google-books.jpg"
    assert (cache.cache_dir / stored.storage_key).is_file()


def test_expired_entries_are_ignored_and_purged(cache, remote_candidate):
    stored = cache.store_sync("111", remote_candidate(CoverImageSource.GOOGLE_BOOKS))
    cache.store_sync("222", remote_candidate(CoverImageSource.GOOGLE_BOOKS))
    old = time.time() - (cache.max_age_days + 1) * 86400
    os.utime(cache.cache_dir / stored.storage_key, (old, old))

    assert cache.lookup_sync("111") is None
    assert not (cache.cache_dir / stored.storage_key).exists()

    os.utime(cache.cache_dir / "222-google-books.jpg", (old, old))
    assert cache.purge_expired() == 1
    assert cache.get_stats()["total_entries"] == 0


def test_disabled_cache_misses(settings, remote_candidate):
    settings.cover_cache_enabled = False
    cache = LocalCoverCache(settings)
    (cache.cache_dir / "123-google-books.jpg").write_bytes(
        remote_candidate(CoverImageSource.GOOGLE_BOOKS).image_bytes
    )
    assert cache.lookup_sync("123") is None


def test_unreadable_file_is_skipped(cache, remote_candidate):
    (cache.cache_dir / "123-open-library.jpg").write_bytes(b"broken")
    cache_dir_file = cache.cache_dir / "123-google-books.png"
    cache_dir_file.write_bytes(remote_candidate(CoverImageSource.GOOGLE_BOOKS).image_bytes)

    hit = cache.lookup_sync("123")
    assert hit.storage_key == "123-google-books.png"


def test_resolve_web_path(cache, remote_candidate):
    stored = cache.store_sync("123", remote_candidate(CoverImageSource.GOOGLE_BOOKS))

    assert cache.resolve_web_path(stored.location) == cache.cache_dir / stored.storage_key
    assert cache.resolve_web_path("/book-covers/missing.jpg") is None
    assert cache.resolve_web_path("/book-covers/../etc/passwd") is None
    assert cache.resolve_web_path("https://example.com/book-covers/x.jpg") is None
    assert cache.resolve_web_path(None) is None

    hint = cache.candidate_for_web_path_sync("123", stored.location)
    assert hint.storage_location == StorageLocation.LOCAL_DISK
    assert hint.width == 400
