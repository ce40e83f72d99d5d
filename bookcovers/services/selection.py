# FILE: bookcovers/services/selection.py
"""
Selection engine: picks one winner from a list of image candidates

Ordering, earliest rule wins:
1. cache-resident candidates larger than the cached threshold on both sides
2. pixel area, descending (unknown area last)
3. source-quality tier: local disk, object storage, then providers in order
4. location string, so input order never changes the result
"""
import logging
from typing import List, NamedTuple, Optional, Sequence, Tuple

from bookcovers.models.images import (
    CoverImageSource, ImageCandidate, ImageSourceName, StorageLocation,
)
from bookcovers.services.source_mapping import is_provider, to_cover_image_source

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_ORDER = (
    CoverImageSource.GOOGLE_BOOKS,
    CoverImageSource.OPEN_LIBRARY,
    CoverImageSource.LONGITOOD,
)
DEFAULT_MIN_CACHED_DIMENSION = 150

REASON_NO_CANDIDATES = "no-candidates-for-selection"
REASON_NO_VALID_CANDIDATES = "no-valid-candidates-for-selection"


class SelectionResult(NamedTuple):
    winner: Optional[ImageCandidate]
    reason: str


def _provider_of(candidate: ImageCandidate) -> CoverImageSource:
    if is_provider(candidate.source_name):
        return to_cover_image_source(candidate.source_name)
    return candidate.cover_source


def source_tier_rank(
    candidate: ImageCandidate,
    provider_order: Sequence[CoverImageSource] = DEFAULT_PROVIDER_ORDER,
) -> int:
    """Lower is better"""
    if candidate.storage_location == StorageLocation.LOCAL_DISK:
        return 0
    if candidate.storage_location == StorageLocation.OBJECT_STORAGE:
        return 1
    provider = _provider_of(candidate)
    if provider in provider_order:
        return 2 + list(provider_order).index(provider)
    if candidate.source_name == ImageSourceName.LOCAL_CACHE:
        return 2 + len(provider_order)
    return 3 + len(provider_order)


def has_cache_bonus(candidate: ImageCandidate, min_cached_dimension: int = DEFAULT_MIN_CACHED_DIMENSION) -> bool:
    return (
        candidate.is_cache_resident
        and candidate.width is not None and candidate.width > min_cached_dimension
        and candidate.height is not None and candidate.height > min_cached_dimension
    )


def _sort_key(
    candidate: ImageCandidate,
    provider_order: Sequence[CoverImageSource],
    min_cached_dimension: int,
) -> Tuple:
    area = candidate.area
    return (
        0 if has_cache_bonus(candidate, min_cached_dimension) else 1,
        area is None,
        -(area or 0),
        source_tier_rank(candidate, provider_order),
        candidate.location or "",
        candidate.source_name.value,
        candidate.storage_key or "",
    )


def rank_candidates(
    candidates: Sequence[ImageCandidate],
    provider_order: Sequence[CoverImageSource] = DEFAULT_PROVIDER_ORDER,
    min_cached_dimension: int = DEFAULT_MIN_CACHED_DIMENSION,
) -> List[ImageCandidate]:
    """Candidates best-first (no validity filtering)"""
    return sorted(candidates, key=lambda c: _sort_key(c, provider_order, min_cached_dimension))


def select_best(
    candidates: Optional[Sequence[ImageCandidate]],
    placeholder_path: Optional[str],
    provider_order: Optional[Sequence[CoverImageSource]] = None,
    min_cached_dimension: int = DEFAULT_MIN_CACHED_DIMENSION,
    book_key: Optional[str] = None,
) -> SelectionResult:
    """
    Pure function: same candidates in any order give the same winner.

    Returns SelectionResult(None, reason) when nothing is selectable, with
    distinct reasons for an empty input and for an input where every
    candidate failed the validity filter.
    """
    order = tuple(provider_order) if provider_order else DEFAULT_PROVIDER_ORDER
    log_tag = book_key or "unknown"

    if not candidates:
        logger.warning(f"[{log_tag}] select_best called with no candidates")
        return SelectionResult(None, REASON_NO_CANDIDATES)

    valid = [c for c in candidates if c is not None and c.is_valid(placeholder_path)]
    if not valid:
        logger.warning(f"[{log_tag}] No valid candidates after filtering {len(candidates)}")
        return SelectionResult(None, REASON_NO_VALID_CANDIDATES)

    ranked = rank_candidates(valid, order, min_cached_dimension)
    winner = ranked[0]

    if has_cache_bonus(winner, min_cached_dimension):
        criterion = "cache-resident"
    elif any(c.area == winner.area for c in ranked[1:]):
        criterion = "source-quality"
    else:
        criterion = "largest-area"
    reason = f"best-of-{len(valid)}-candidates:{criterion}"

    logger.info(
        f"[{log_tag}] Selected {winner.location} from {len(valid)} candidates "
        f"(source={winner.source_name.value}, {winner.dimensions_label}, {criterion})"
    )
    for c in ranked[1:]:
        logger.debug(f"[{log_tag}] Candidate {c.location} source={c.source_name.value} {c.dimensions_label}")

    return SelectionResult(winner, reason)
