# FILE: bookcovers/services/orchestrator.py
"""
Cover resolution orchestrator

State flow for one request:
INIT -> CHECK_LOCAL_CACHE -> CHECK_REMOTE_CACHE -> QUERY_PROVIDERS -> SELECT
-> PERSIST_AND_RESPOND -> BACKGROUND_REFRESH -> DONE

Public entry points never raise; anything unexpected degrades to the
placeholder. Background work (persisting winners, refreshing covers) runs
as deduplicated asyncio tasks keyed by book identifier.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from bookcovers.config import Settings, get_settings
from bookcovers.errors import CacheTierError, CoverFetchError
from bookcovers.models.books import Book
from bookcovers.models.images import (
    CoverImageSource, ImageCandidate, ImageResolutionPreference, ImageSourceName,
    placeholder_candidate,
)
from bookcovers.models.provenance import AttemptStatus, ProvenanceRecord
from bookcovers.providers.registry import FetcherRegistry, get_fetcher_registry
from bookcovers.services.dimensions import DimensionRules
from bookcovers.services.identifiers import resolve_identifier
from bookcovers.services.local_cache import LocalCoverCache, get_local_cover_cache
from bookcovers.services.provenance import ProvenanceLog, ProvenanceTracker, get_provenance_log
from bookcovers.services.s3_cache import S3CoverCache, get_s3_cover_cache
from bookcovers.services.selection import has_cache_bonus, select_best
from bookcovers.services.source_mapping import detect_source_from_url
from bookcovers.services.url_enhancer import (
    enhance_generic_url, enhance_google_url, enhance_open_library_url,
)

logger = logging.getLogger(__name__)

REASON_NO_IDENTIFIER = "no-identifier"
REASON_CACHE_MISS = "cache-miss-placeholder"


class ResolutionState(str, Enum):
    INIT = "INIT"
    CHECK_LOCAL_CACHE = "CHECK_LOCAL_CACHE"
    CHECK_REMOTE_CACHE = "CHECK_REMOTE_CACHE"
    QUERY_PROVIDERS = "QUERY_PROVIDERS"
    SELECT = "SELECT"
    PERSIST_AND_RESPOND = "PERSIST_AND_RESPOND"
    BACKGROUND_REFRESH = "BACKGROUND_REFRESH"
    DONE = "DONE"


class ResolutionRequest(BaseModel):
    """Caller preferences for one resolution"""
    source_preference: CoverImageSource = CoverImageSource.ANY
    resolution_preference: ImageResolutionPreference = ImageResolutionPreference.ANY
    allow_fallback: Optional[bool] = Field(None, description="Defaults to provider_fallback_enabled")
    correlation_id: Optional[str] = None


class CoverResolution(BaseModel):
    """Result handed back to callers"""
    candidate: ImageCandidate
    provenance: ProvenanceRecord
    from_cache: bool = False
    background_refresh_scheduled: bool = False
    states: List[ResolutionState] = Field(default_factory=list)

    @property
    def url(self) -> Optional[str]:
        return self.candidate.location


class _Run:
    """Per-call bookkeeping: key, provenance and state trail"""

    def __init__(self, key: Optional[str], correlation_id: str):
        self.key = key
        self.tag = key or "unknown"
        self.tracker = ProvenanceTracker(key, correlation_id)
        self.states: List[ResolutionState] = [ResolutionState.INIT]

    def advance(self, state: ResolutionState):
        logger.debug(f"[{self.tag}] {self.states[-1].value} -> {state.value}")
        self.states.append(state)


def _details(candidate: ImageCandidate) -> Dict[str, str]:
    return {"fetched_url": candidate.location, "dimensions": candidate.dimensions_label}


class CoverOrchestrator:
    """Coordinates cache tiers, providers, selection, persistence and provenance"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[FetcherRegistry] = None,
        local_cache: Optional[LocalCoverCache] = None,
        s3_cache: Optional[S3CoverCache] = None,
        provenance_log: Optional[ProvenanceLog] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or get_fetcher_registry()
        self.local_cache = local_cache or get_local_cover_cache()
        self.s3_cache = s3_cache or get_s3_cover_cache()
        self.provenance_log = provenance_log or get_provenance_log()
        self.rules = DimensionRules(self.settings)
        self.placeholder_path = self.settings.placeholder_path
        self.provider_order = [CoverImageSource(name) for name in self.settings.provider_order]

        self._background: Dict[str, asyncio.Task] = {}
        # key -> (lock, writers holding or waiting)
        self._write_locks: Dict[str, Tuple[asyncio.Lock, int]] = {}
        self._closing = False

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def get_initial_cover(self, book: Book, request: Optional[ResolutionRequest] = None) -> CoverResolution:
        """
        Fast path for page rendering: cache tiers only, never a provider call.

        A miss answers with the provisional hint when it points into the
        local cache, otherwise with the placeholder, and schedules a refresh.
        """
        request = request or ResolutionRequest()
        run = self._start(book, request)
        try:
            if run.key is None:
                return await self._finish_placeholder(run, REASON_NO_IDENTIFIER)

            cached = await self._check_cache_tiers(run)
            run.advance(ResolutionState.SELECT)
            winner, reason = self._select(run, cached)

            if winner is None and book.cover_url:
                hint = await self._cached_hint(run, book.cover_url)
                if hint is not None:
                    winner, reason = self._select(run, [hint])

            run.advance(ResolutionState.PERSIST_AND_RESPOND)
            from_cache = winner is not None
            if winner is None:
                winner, reason = placeholder_candidate(self.placeholder_path, run.key), REASON_CACHE_MISS
            run.tracker.record_selection(winner.source_name, winner, reason)

            scheduled = False
            if not from_cache or not has_cache_bonus(winner, self.settings.min_cached_dimension):
                run.advance(ResolutionState.BACKGROUND_REFRESH)
                scheduled = self.schedule_background_refresh(book)

            return await self._finish(run, winner, from_cache, scheduled)
        except Exception as e:
            logger.error(f"[{run.tag}] Initial cover lookup failed: {e}", exc_info=True)
            return await self._finish_placeholder(run, f"error: {e}")

    async def resolve_cover(self, book: Book, request: Optional[ResolutionRequest] = None) -> CoverResolution:
        """
        Full resolution bounded by request_timeout_seconds: cache tiers,
        provisional hint, providers, selection. Winners that are not yet
        cached are persisted in the background.
        """
        request = request or ResolutionRequest()
        run = self._start(book, request)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.request_timeout_seconds
        try:
            if run.key is None:
                return await self._finish_placeholder(run, REASON_NO_IDENTIFIER)

            candidates = await self._check_cache_tiers(run)
            cache_satisfied = any(
                has_cache_bonus(c, self.settings.min_cached_dimension)
                and self._meets_resolution(c, request.resolution_preference)
                for c in candidates
            )

            if not cache_satisfied:
                run.advance(ResolutionState.QUERY_PROVIDERS)
                hint = await self._hint_candidate(run, book, deadline)
                if hint is not None:
                    candidates.append(hint)
                if hint is None or not self.rules.is_acceptable(
                    hint, self.placeholder_path, request.resolution_preference
                ):
                    candidates.extend(await self._query_providers(run, book, request, deadline))

            run.advance(ResolutionState.SELECT)
            if request.resolution_preference == ImageResolutionPreference.HIGH_ONLY:
                candidates = [c for c in candidates if self.rules.is_high_resolution(c.width, c.height)]
            winner, reason = self._select(run, candidates)

            run.advance(ResolutionState.PERSIST_AND_RESPOND)
            if winner is None:
                winner = placeholder_candidate(self.placeholder_path, run.key)
            run.tracker.record_selection(winner.source_name, winner, reason)

            scheduled = False
            genuine = winner.is_valid(self.placeholder_path)
            if genuine and not winner.is_cache_resident:
                run.advance(ResolutionState.BACKGROUND_REFRESH)
                scheduled = self.schedule_background_refresh(book, winner)

            return await self._finish(run, winner, genuine and winner.is_cache_resident, scheduled)
        except Exception as e:
            logger.error(f"[{run.tag}] Cover resolution failed: {e}", exc_info=True)
            return await self._finish_placeholder(run, f"error: {e}")

    async def refresh_cover(self, book: Book) -> Optional[ImageCandidate]:
        """
        Background job body: query providers without the request budget and
        write the winner to both cache tiers. Logs failures, never raises.
        """
        key = resolve_identifier(book)
        if key is None:
            logger.debug("Skipping refresh for book without identifier")
            return None

        run = _Run(key, f"refresh-{uuid.uuid4().hex[:12]}")
        try:
            run.advance(ResolutionState.QUERY_PROVIDERS)
            candidates = await self._query_providers(run, book, ResolutionRequest(), deadline=None)
            run.advance(ResolutionState.SELECT)
            winner, reason = self._select(run, candidates)
            if winner is None:
                logger.info(f"[{key}] Refresh found no usable cover ({reason})")
                return None
            run.tracker.record_selection(winner.source_name, winner, reason)
            run.advance(ResolutionState.PERSIST_AND_RESPOND)
            return await self._persist(key, winner)
        except Exception as e:
            logger.error(f"[{key}] Background refresh failed: {e}", exc_info=True)
            return None
        finally:
            run.advance(ResolutionState.DONE)
            await self.provenance_log.append(run.tracker.complete())

    def schedule_background_refresh(self, book: Book, candidate: Optional[ImageCandidate] = None) -> bool:
        """
        Fire-and-forget refresh for book, at most one in flight per key.

        With a candidate that carries image bytes the task only persists it;
        otherwise it runs refresh_cover on a snapshot of the book.
        Returns True when a refresh for the key is in flight.
        """
        key = resolve_identifier(book)
        if key is None or self._closing:
            return False

        existing = self._background.get(key)
        if existing is not None and not existing.done():
            logger.debug(f"[{key}] Background refresh already in flight")
            return True

        snapshot = book.model_copy(deep=True)
        if candidate is not None and candidate.image_bytes:
            coro = self._persist_quietly(key, candidate)
        else:
            coro = self.refresh_cover(snapshot)

        task = asyncio.create_task(coro, name=f"cover-refresh-{key}")
        self._background[key] = task
        task.add_done_callback(lambda t, k=key: self._on_background_done(k, t))
        logger.debug(f"[{key}] Background refresh scheduled")
        return True

    def in_flight(self) -> List[str]:
        return [k for k, t in self._background.items() if not t.done()]

    async def shutdown(self):
        """Stop accepting background work and wait (bounded) for what is running"""
        self._closing = True
        tasks = [t for t in self._background.values() if not t.done()]
        if not tasks:
            return
        logger.info(f"Waiting for {len(tasks)} background cover refreshes")
        _, pending = await asyncio.wait(tasks, timeout=self.settings.background_shutdown_timeout_seconds)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} background cover refreshes at shutdown")
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _start(self, book: Book, request: ResolutionRequest) -> _Run:
        correlation_id = request.correlation_id or uuid.uuid4().hex[:12]
        run = _Run(resolve_identifier(book), correlation_id)
        logger.info(
            f"[{run.tag}] Resolving cover (source={request.source_preference.value}, "
            f"resolution={request.resolution_preference.value}, cid={correlation_id})"
        )
        return run

    async def _check_cache_tiers(self, run: _Run) -> List[ImageCandidate]:
        """Cache hits from both tiers; failures and timeouts read as misses"""
        found: List[ImageCandidate] = []
        tracker = run.tracker
        timeout = self.settings.cache_read_timeout_seconds

        run.advance(ResolutionState.CHECK_LOCAL_CACHE)
        if not self.local_cache.enabled:
            tracker.record_attempt(ImageSourceName.LOCAL_CACHE, None, AttemptStatus.SKIPPED, "disabled")
        else:
            hit = await self._read_tier(run, ImageSourceName.LOCAL_CACHE, self.local_cache.lookup(run.key), timeout)
            if hit is not None:
                found.append(hit)

        run.advance(ResolutionState.CHECK_REMOTE_CACHE)
        if any(has_cache_bonus(c, self.settings.min_cached_dimension) for c in found):
            tracker.record_attempt(ImageSourceName.S3_CACHE, None, AttemptStatus.SKIPPED, "satisfied-by-local-cache")
        elif not self.s3_cache.configured:
            tracker.record_attempt(ImageSourceName.S3_CACHE, None, AttemptStatus.SKIPPED, "not-configured")
        elif not self.s3_cache.is_available():
            tracker.record_attempt(ImageSourceName.S3_CACHE, None, AttemptStatus.SKIPPED, "circuit-open")
        else:
            hit = await self._read_tier(run, ImageSourceName.S3_CACHE, self.s3_cache.lookup(run.key), timeout)
            if hit is not None:
                found.append(hit)
        return found

    async def _read_tier(self, run: _Run, tier: ImageSourceName, lookup, timeout: float) -> Optional[ImageCandidate]:
        try:
            hit = await asyncio.wait_for(lookup, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{run.tag}] {tier.value} lookup timed out after {timeout}s")
            run.tracker.record_attempt(tier, None, AttemptStatus.FAILURE, f"timeout after {timeout}s")
            return None
        except CacheTierError as e:
            logger.warning(f"[{run.tag}] {tier.value} lookup failed: {e.reason}")
            run.tracker.record_attempt(tier, None, AttemptStatus.FAILURE, e.reason)
            return None

        if hit is None or not hit.is_valid(self.placeholder_path):
            run.tracker.record_attempt(tier, None, AttemptStatus.FAILURE, "miss")
            return None
        run.tracker.record_attempt(tier, hit.location, AttemptStatus.SUCCESS, details=_details(hit))
        return hit

    async def _cached_hint(self, run: _Run, url: str) -> Optional[ImageCandidate]:
        """Provisional hint, only when it is a local cache path"""
        try:
            hint = await self.local_cache.candidate_for_web_path(run.key, url)
        except CacheTierError as e:
            run.tracker.record_attempt(ImageSourceName.LOCAL_CACHE, url, AttemptStatus.FAILURE, e.reason)
            return None
        if hint is not None:
            run.tracker.record_attempt(ImageSourceName.LOCAL_CACHE, url, AttemptStatus.SUCCESS, details=_details(hint))
        return hint

    async def _hint_candidate(self, run: _Run, book: Book, deadline: float) -> Optional[ImageCandidate]:
        """Download the provisional hint URL as one more candidate"""
        url = book.cover_url
        if not url or url == self.placeholder_path:
            return None

        cached = await self._cached_hint(run, url)
        if cached is not None:
            return cached

        source = detect_source_from_url(url)
        if source not in self.registry.fetchers:
            logger.debug(f"[{run.tag}] Ignoring hint from unrecognised host: {url}")
            return None

        if source == CoverImageSource.GOOGLE_BOOKS:
            enhanced = enhance_google_url(url)
        elif source == CoverImageSource.OPEN_LIBRARY:
            enhanced = enhance_open_library_url(url)
        else:
            enhanced = enhance_generic_url(url)

        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            run.tracker.record_attempt(source, enhanced, AttemptStatus.SKIPPED, "request-timeout")
            return None
        try:
            hint = await self.registry.download(
                source, enhanced, timeout=min(remaining, self.settings.provider_timeout_seconds)
            )
        except CoverFetchError as e:
            run.tracker.record_attempt(source, enhanced, AttemptStatus.FAILURE, e.reason)
            return None

        if source != CoverImageSource.GOOGLE_BOOKS and not self.rules.meets_threshold(
            hint.width, hint.height, self.settings.min_acceptable_dimension
        ):
            run.tracker.record_attempt(
                source, enhanced, AttemptStatus.FAILURE, "below-minimum-dimensions", details=_details(hint)
            )
            return None

        run.tracker.record_attempt(source, enhanced, AttemptStatus.SUCCESS, details=_details(hint))
        return hint

    def _meets_resolution(self, candidate: ImageCandidate, resolution: ImageResolutionPreference) -> bool:
        if resolution == ImageResolutionPreference.ANY:
            return True
        return self.rules.is_high_resolution(candidate.width, candidate.height)

    async def _query_providers(
        self,
        run: _Run,
        book: Book,
        request: ResolutionRequest,
        deadline: Optional[float],
    ) -> List[ImageCandidate]:
        """
        Ask providers one at a time until an acceptable candidate turns up

        A specifically requested provider ends the search once it answers;
        other providers are only consulted when it fails and fallback is on.
        """
        allow_fallback = request.allow_fallback
        if allow_fallback is None:
            allow_fallback = self.settings.provider_fallback_enabled
        preference = request.source_preference
        specific = preference not in (CoverImageSource.ANY, CoverImageSource.NONE, CoverImageSource.UNDEFINED)

        gathered: List[ImageCandidate] = []
        loop = asyncio.get_running_loop()

        for source in self.registry.ordered(preference, allow_fallback):
            if not self.registry.is_available(source):
                logger.debug(f"[{run.tag}] Skipping {source.value} (circuit open)")
                run.tracker.record_attempt(source, None, AttemptStatus.SKIPPED, "circuit-open")
                continue

            timeout = self.settings.provider_timeout_seconds
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    run.tracker.record_attempt(source, None, AttemptStatus.SKIPPED, "request-timeout")
                    continue
                timeout = min(timeout, remaining)

            try:
                logger.info(f"[{run.tag}] Trying provider: {source.value}")
                candidate = await self.registry.fetch(source, book, timeout=timeout)
            except CoverFetchError as e:
                logger.warning(f"[{run.tag}] Provider {source.value} failed: {e.reason}")
                run.tracker.record_attempt(source, e.url, AttemptStatus.FAILURE, e.reason)
                continue

            candidate = candidate.model_copy(update={"resolution_preference": request.resolution_preference})
            if (
                request.resolution_preference == ImageResolutionPreference.HIGH_ONLY
                and not self.rules.is_high_resolution(candidate.width, candidate.height)
            ):
                run.tracker.record_attempt(
                    source, candidate.location, AttemptStatus.FAILURE, "below-high-resolution",
                    details=_details(candidate),
                )
                continue

            run.tracker.record_attempt(source, candidate.location, AttemptStatus.SUCCESS, details=_details(candidate))
            gathered.append(candidate)

            if specific and source == preference:
                break
            if self.rules.is_acceptable(candidate, self.placeholder_path, request.resolution_preference):
                break

        return gathered

    def _select(self, run: _Run, candidates: List[ImageCandidate]):
        result = select_best(
            candidates,
            self.placeholder_path,
            provider_order=self.provider_order,
            min_cached_dimension=self.settings.min_cached_dimension,
            book_key=run.key,
        )
        return result.winner, result.reason

    @asynccontextmanager
    async def _write_lock(self, key: str):
        """Serialize writes per key; the entry is dropped with its last user"""
        lock, users = self._write_locks.get(key) or (asyncio.Lock(), 0)
        self._write_locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._write_locks[key]
            if users <= 1:
                del self._write_locks[key]
            else:
                self._write_locks[key] = (lock, users - 1)

    async def _persist(self, key: str, candidate: ImageCandidate) -> ImageCandidate:
        """Write candidate to both tiers; returns the best stored copy"""
        if not candidate.image_bytes:
            logger.debug(f"[{key}] Nothing to persist (no image bytes)")
            return candidate

        stored: Optional[ImageCandidate] = None
        async with self._write_lock(key):
            if self.local_cache.enabled:
                try:
                    stored = await self.local_cache.store(key, candidate)
                except CacheTierError as e:
                    logger.warning(f"[{key}] Local cache write failed: {e.reason}")
            if self.s3_cache.is_available():
                try:
                    s3_copy = await self.s3_cache.store(key, candidate)
                    stored = stored or s3_copy
                except CacheTierError as e:
                    logger.warning(f"[{key}] S3 write failed: {e.reason}")

        if stored is not None:
            logger.info(f"[{key}] Persisted cover from {candidate.source_name.value} as {stored.location}")
        return stored or candidate

    async def _persist_quietly(self, key: str, candidate: ImageCandidate):
        try:
            await self._persist(key, candidate)
        except Exception as e:
            logger.error(f"[{key}] Background persist failed: {e}", exc_info=True)

    def _on_background_done(self, key: str, task: asyncio.Task):
        if self._background.get(key) is task:
            del self._background[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{key}] Background task error: {task.exception()}")

    async def _finish(self, run: _Run, winner: ImageCandidate, from_cache: bool, scheduled: bool) -> CoverResolution:
        run.advance(ResolutionState.DONE)
        record = run.tracker.complete()
        await self.provenance_log.append(record)
        logger.info(
            f"[{run.tag}] Cover resolved: {winner.location} "
            f"(source={winner.source_name.value}, {winner.dimensions_label}, from_cache={from_cache})"
        )
        return CoverResolution(
            candidate=winner,
            provenance=record,
            from_cache=from_cache,
            background_refresh_scheduled=scheduled,
            states=list(run.states),
        )

    async def _finish_placeholder(self, run: _Run, reason: str) -> CoverResolution:
        winner = placeholder_candidate(self.placeholder_path, run.key)
        if not run.tracker.is_complete:
            run.tracker.record_selection(winner.source_name, winner, reason)
        return await self._finish(run, winner, False, False)


_orchestrator: Optional[CoverOrchestrator] = None


def get_cover_orchestrator() -> CoverOrchestrator:
    """Get or create global cover orchestrator"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = CoverOrchestrator()
    return _orchestrator
