# FILE: tests/test_s3_cache.py

import pytest
from botocore.exceptions import ClientError

from bookcovers.errors import CacheTierError
from bookcovers.models.images import CoverImageSource, ImageSourceName, StorageLocation
from bookcovers.services.s3_cache import S3CoverCache

PREFIX = "images/book-covers/"


@pytest.fixture
def s3_cache(settings, fake_s3):
    return S3CoverCache(settings, client=fake_s3)


@pytest.mark.asyncio
async def test_store_then_lookup(s3_cache, fake_s3, remote_candidate):
    stored = await s3_cache.store("9780306406157", remote_candidate(CoverImageSource.OPEN_LIBRARY, 300, 450))

    object_key = f"{PREFIX}9780306406157-lg-open-library.jpg"
    assert stored.storage_key == object_key
    assert stored.location == f"https://cdn.example.com/{object_key}"
    assert stored.storage_location == StorageLocation.OBJECT_STORAGE
    assert fake_s3.objects[object_key]["Metadata"] == {"source": "open-library", "width": "300", "height": "450"}
    assert fake_s3.objects[object_key]["ContentType"] == "image/jpeg"

    hit = await s3_cache.lookup("9780306406157")
    assert hit.source_name == ImageSourceName.S3_CACHE
    assert hit.cover_source == CoverImageSource.OPEN_LIBRARY
    assert (hit.width, hit.height) == (300, 450)
    assert hit.is_cache_resident
    # Dimensions came from metadata, not a download
    assert ("get_object", object_key) not in fake_s3.calls


def test_lookup_measures_objects_without_metadata(s3_cache, fake_s3, make_image):
    fake_s3.put(f"{PREFIX}123-lg-google-books.jpg", make_image(250, 375))
    hit = s3_cache.lookup_sync("123")
    assert (hit.width, hit.height) == (250, 375)
    assert ("get_object", f"{PREFIX}123-lg-google-books.jpg") in fake_s3.calls


def test_lookup_prefers_provider_order(s3_cache, fake_s3, make_image):
    fake_s3.put(f"{PREFIX}123-lg-longitood.jpg", make_image(900, 1350), {"width": "900", "height": "1350"})
    fake_s3.put(f"{PREFIX}123-lg-google-books.jpg", make_image(300, 450), {"width": "300", "height": "450"})
    fake_s3.put(f"{PREFIX}1234-lg-google-books.jpg", make_image(10, 10))

    hit = s3_cache.lookup_sync("123")
    assert hit.cover_source == CoverImageSource.GOOGLE_BOOKS


def test_lookup_ignores_empty_and_foreign_objects(s3_cache, fake_s3, make_image):
    fake_s3.put(f"{PREFIX}123-lg-google-books.jpg", b"")
    fake_s3.put(f"{PREFIX}123-lg-google-books/nested.jpg", make_image())
    assert s3_cache.lookup_sync("123") is None


def test_unconfigured_cache_misses(tmp_path):
    from bookcovers.config import Settings

    settings = Settings(logs_dir=str(tmp_path / "logs"), cover_cache_dir=str(tmp_path / "covers"))
    cache = S3CoverCache(settings)
    assert not cache.configured
    assert cache.lookup_sync("123") is None
    assert not cache.is_available()


def test_public_url_variants(settings, fake_s3):
    assert S3CoverCache(settings, client=fake_s3).public_url("a/b.jpg") == "https://cdn.example.com/a/b.jpg"

    settings.s3_cdn_url = None
    settings.s3_endpoint_url = "https://minio.local:9000/"
    assert S3CoverCache(settings, client=fake_s3).public_url("a/b.jpg") == "https://minio.local:9000/test-bucket/a/b.jpg"

    settings.s3_endpoint_url = None
    assert S3CoverCache(settings, client=fake_s3).public_url("a/b.jpg") == (
        "https://test-bucket.s3.us-east-1.amazonaws.com/a/b.jpg"
    )


def test_list_objects_paginates(s3_cache, fake_s3, make_image, monkeypatch):
    monkeypatch.setattr("bookcovers.services.s3_cache._MAX_KEYS_PER_PAGE", 2)
    for i in range(5):
        fake_s3.put(f"scan/{i}.jpg", b"x" * (i + 1))
    fake_s3.put("other/9.jpg", b"x")

    assert [o["Key"] for o in s3_cache.list_objects("scan/", 0)] == [f"scan/{i}.jpg" for i in range(5)]
    assert len(s3_cache.list_objects("scan/", -1)) == 5
    limited = s3_cache.list_objects("scan/", 3)
    assert [o["Key"] for o in limited] == ["scan/0.jpg", "scan/1.jpg", "scan/2.jpg"]
    assert limited[2]["Size"] == 3
    assert s3_cache.list_objects("empty/", 0) == []


def test_copy_and_delete(s3_cache, fake_s3):
    fake_s3.put("a.jpg", b"data")
    s3_cache.copy("a.jpg", "q/a.jpg")
    s3_cache.delete("a.jpg")
    assert set(fake_s3.objects) == {"q/a.jpg"}
    assert s3_cache.get_bytes("q/a.jpg") == b"data"


def test_errors_open_circuit(settings, fake_s3):
    settings.circuit_breaker_threshold = 2
    cache = S3CoverCache(settings, client=fake_s3)
    fake_s3.fail.add(("list_objects_v2", None))

    for _ in range(2):
        with pytest.raises(CacheTierError):
            cache.lookup_sync("123")
    assert not cache.is_available()
    assert cache.circuit_status()["S3"]["state"] == "OPEN"

    calls_before = len(fake_s3.calls)
    with pytest.raises(CacheTierError) as exc:
        cache.lookup_sync("123")
    assert exc.value.reason == "circuit-open"
    assert len(fake_s3.calls) == calls_before


def test_missing_object_keeps_circuit_closed(settings, fake_s3):
    settings.circuit_breaker_threshold = 1
    cache = S3CoverCache(settings, client=fake_s3)
    with pytest.raises(ClientError):
        cache.get_bytes("nope.jpg")
    assert cache.is_available()


def test_store_failure_wraps_error(s3_cache, fake_s3, remote_candidate):
    fake_s3.fail.add(("put_object", None))
    with pytest.raises(CacheTierError):
        s3_cache.store_sync("123", remote_candidate(CoverImageSource.GOOGLE_BOOKS))


def test_store_fills_unknown_dimensions_with_default(s3_cache, fake_s3, remote_candidate):
    candidate = remote_candidate(CoverImageSource.LONGITOOD).model_copy(update={"width": None, "height": 1})
    stored = s3_cache.store_sync("123", candidate)
    assert fake_s3.objects[stored.storage_key]["Metadata"]["width"] == "512"
    assert fake_s3.objects[stored.storage_key]["Metadata"]["height"] == "512"


def test_store_replaces_other_variants(s3_cache, fake_s3, remote_candidate):
    s3_cache.store_sync("k1", remote_candidate(CoverImageSource.GOOGLE_BOOKS, 200, 300))
    fake_s3.put(f"{PREFIX}k10-lg-google-books.jpg", b"other book")
    s3_cache.store_sync("k1", remote_candidate(CoverImageSource.OPEN_LIBRARY, 800, 1200))

    assert set(fake_s3.objects) == {f"{PREFIX}k1-lg-open-library.jpg", f"{PREFIX}k10-lg-google-books.jpg"}
    hit = s3_cache.lookup_sync("k1")
    assert hit.cover_source == CoverImageSource.OPEN_LIBRARY
    assert (hit.width, hit.height) == (800, 1200)


def test_stale_variant_cleanup_failure_keeps_new_object(s3_cache, fake_s3, remote_candidate):
    s3_cache.store_sync("k1", remote_candidate(CoverImageSource.GOOGLE_BOOKS, 200, 300))
    fake_s3.fail.add(("delete_object", f"{PREFIX}k1-lg-google-books.jpg"))

    stored = s3_cache.store_sync("k1", remote_candidate(CoverImageSource.OPEN_LIBRARY, 800, 1200))

    assert stored.storage_key == f"{PREFIX}k1-lg-open-library.jpg"
    assert stored.storage_key in fake_s3.objects
