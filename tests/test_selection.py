# FILE: tests/test_selection.py

import itertools

from bookcovers.models.images import (
    CoverImageSource, ImageCandidate, ImageSourceName, StorageLocation, placeholder_candidate,
)
from bookcovers.services.selection import (
    REASON_NO_CANDIDATES, REASON_NO_VALID_CANDIDATES, rank_candidates, select_best, source_tier_rank,
)

PLACEHOLDER = "/images/placeholder-book-cover.svg"


def _remote(source, width, height, location=None):
    return ImageCandidate(
        location=location or f"https://{source.value.lower()}.example/{width}x{height}.jpg",
        source_name=source,
        width=width,
        height=height,
    )


def _local(width, height, location="/book-covers/123-google-books.jpg"):
    return ImageCandidate(
        location=location,
        source_name=ImageSourceName.LOCAL_CACHE,
        cover_source=CoverImageSource.GOOGLE_BOOKS,
        width=width,
        height=height,
        storage_location=StorageLocation.LOCAL_DISK,
    )


def test_empty_input():
    result = select_best([], PLACEHOLDER)
    assert result.winner is None
    assert result.reason == REASON_NO_CANDIDATES
    assert select_best(None, PLACEHOLDER).reason == REASON_NO_CANDIDATES


def test_all_invalid_input():
    candidates = [
        placeholder_candidate(PLACEHOLDER),
        _remote(ImageSourceName.GOOGLE_BOOKS, 1, 1),
        ImageCandidate(location=None, source_name=ImageSourceName.OPEN_LIBRARY, width=300, height=400),
    ]
    result = select_best(candidates, PLACEHOLDER)
    assert result.winner is None
    assert result.reason == REASON_NO_VALID_CANDIDATES


def test_placeholder_never_selected():
    fake = ImageCandidate(location=PLACEHOLDER, source_name=ImageSourceName.GOOGLE_BOOKS, width=2000, height=3000)
    real = _remote(ImageSourceName.LONGITOOD, 100, 150)
    assert select_best([fake, real], PLACEHOLDER).winner == real


def test_larger_area_wins_among_remote():
    small = _remote(ImageSourceName.GOOGLE_BOOKS, 300, 450)
    large = _remote(ImageSourceName.LONGITOOD, 500, 750)
    result = select_best([small, large], PLACEHOLDER)
    assert result.winner == large
    assert result.reason == "best-of-2-candidates:largest-area"


def test_resident_cache_outranks_larger_remote():
    cached = _local(300, 450)
    remote = _remote(ImageSourceName.GOOGLE_BOOKS, 800, 1200)
    result = select_best([remote, cached], PLACEHOLDER)
    assert result.winner == cached
    assert result.reason == "best-of-2-candidates:cache-resident"


def test_object_storage_counts_as_resident():
    s3 = ImageCandidate(location="https://cdn/x.jpg", source_name=ImageSourceName.S3_CACHE, width=200, height=300)
    assert s3.storage_location == StorageLocation.OBJECT_STORAGE
    remote = _remote(ImageSourceName.OPEN_LIBRARY, 600, 900)
    assert select_best([remote, s3], PLACEHOLDER).winner == s3


def test_non_resident_local_label_gets_no_bonus():
    google = _remote(ImageSourceName.GOOGLE_BOOKS, 600, 900)
    labelled = ImageCandidate(
        location="https://elsewhere/x.jpg", source_name=ImageSourceName.LOCAL_CACHE, width=300, height=300,
    )
    assert labelled.storage_location == StorageLocation.REMOTE
    assert select_best([labelled, google], PLACEHOLDER).winner == google


def test_cache_bonus_boundary():
    remote = _remote(ImageSourceName.GOOGLE_BOOKS, 400, 600)
    at_threshold = _local(150, 150)
    above_threshold = _local(151, 151)
    assert select_best([at_threshold, remote], PLACEHOLDER).winner == remote
    assert select_best([above_threshold, remote], PLACEHOLDER).winner == above_threshold


def test_equal_area_prefers_source_tier():
    google = _remote(ImageSourceName.GOOGLE_BOOKS, 400, 600)
    open_library = _remote(ImageSourceName.OPEN_LIBRARY, 400, 600)
    longitood = _remote(ImageSourceName.LONGITOOD, 600, 400)
    result = select_best([longitood, open_library, google], PLACEHOLDER)
    assert result.winner == google
    assert result.reason == "best-of-3-candidates:source-quality"


def test_custom_provider_order():
    google = _remote(ImageSourceName.GOOGLE_BOOKS, 400, 600)
    longitood = _remote(ImageSourceName.LONGITOOD, 400, 600)
    order = [CoverImageSource.LONGITOOD, CoverImageSource.GOOGLE_BOOKS, CoverImageSource.OPEN_LIBRARY]
    assert select_best([google, longitood], PLACEHOLDER, provider_order=order).winner == longitood


def test_tier_ranks():
    assert source_tier_rank(_local(300, 300)) == 0
    s3 = ImageCandidate(location="x", source_name=ImageSourceName.S3_CACHE, width=2, height=2)
    assert source_tier_rank(s3) == 1
    assert source_tier_rank(_remote(ImageSourceName.GOOGLE_BOOKS, 2, 2)) == 2
    assert source_tier_rank(_remote(ImageSourceName.LONGITOOD, 2, 2)) == 4
    unknown = ImageCandidate(location="x", source_name=ImageSourceName.UNKNOWN, width=2, height=2)
    local_label = ImageCandidate(location="x", source_name=ImageSourceName.LOCAL_CACHE, width=2, height=2)
    assert source_tier_rank(local_label) < source_tier_rank(unknown)


def test_selection_is_order_independent():
    candidates = [
        _remote(ImageSourceName.GOOGLE_BOOKS, 400, 600, "https://a.example/1.jpg"),
        _remote(ImageSourceName.GOOGLE_BOOKS, 400, 600, "https://a.example/2.jpg"),
        _remote(ImageSourceName.OPEN_LIBRARY, 400, 600),
        _remote(ImageSourceName.LONGITOOD, 300, 800),
        _local(150, 150),
        placeholder_candidate(PLACEHOLDER),
    ]
    expected = select_best(candidates, PLACEHOLDER)
    for permutation in itertools.permutations(candidates):
        assert select_best(list(permutation), PLACEHOLDER) == expected


def test_rank_candidates_orders_best_first():
    a = _remote(ImageSourceName.OPEN_LIBRARY, 300, 300)
    b = _remote(ImageSourceName.GOOGLE_BOOKS, 500, 500)
    c = _local(200, 300)
    assert rank_candidates([a, b, c]) == [c, b, a]
