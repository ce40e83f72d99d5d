# FILE: bookcovers/services/local_cache.py
"""
Local disk cover cache with per-key files and a max age

Files are named <key>-<source>.<ext> under cover_cache_dir and served as
/<cover_cache_dir_name>/<file>. Writes go through a temp file and
os.replace so readers never see a partial image.
"""
import logging
import os
import tempfile
import time
from concurrent.futures import Executor
from pathlib import Path
from typing import Any, Dict, List, Optional

from bookcovers.config import Settings, get_settings
from bookcovers.errors import CacheTierError
from bookcovers.models.images import CoverImageSource, ImageCandidate, ImageSourceName, StorageLocation
from bookcovers.services.identifiers import storage_safe_key
from bookcovers.services.image_analysis import detect_content_type, read_dimensions
from bookcovers.services.io_pool import run_blocking
from bookcovers.services.source_mapping import source_from_slug, source_slug

logger = logging.getLogger(__name__)

TIER_NAME = "LOCAL_DISK"

EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
CONTENT_TYPES = {ext: ctype for ctype, ext in EXTENSIONS.items()}
CONTENT_TYPES[".jpeg"] = "image/jpeg"

# Keys may contain hyphens, so only "<key>-<known slug>" belongs to key
KNOWN_SLUGS = frozenset(source_slug(s) for s in CoverImageSource)


def extension_for(content_type: Optional[str]) -> str:
    return EXTENSIONS.get((content_type or "").lower(), ".jpg")


class LocalCoverCache:
    """Covers cached on the local filesystem"""

    def __init__(self, settings: Optional[Settings] = None, executor: Optional[Executor] = None):
        settings = settings or get_settings()
        self.enabled = settings.cover_cache_enabled
        self.cache_dir = Path(settings.cover_cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.web_prefix = "/" + settings.cover_cache_dir_name.strip("/")
        self.max_age_days = settings.cover_cache_max_age_days
        self.executor = executor

    def _web_path(self, file_name: str) -> str:
        return f"{self.web_prefix}/{file_name}"

    def _file_name(self, key: str, source, content_type: Optional[str]) -> str:
        return f"{storage_safe_key(key)}-{source_slug(source)}{extension_for(content_type)}"

    def _is_expired(self, path: Path, now: Optional[float] = None) -> bool:
        if self.max_age_days <= 0:
            return False
        now = now or time.time()
        return now - path.stat().st_mtime > self.max_age_days * 86400

    def _files_for(self, key: str) -> List[Path]:
        safe = storage_safe_key(key)
        return sorted(
            p for p in self.cache_dir.glob(f"{safe}-*")
            if p.is_file() and p.stem[len(safe) + 1:] in KNOWN_SLUGS
        )

    def _candidate_from_file(self, key: str, path: Path) -> Optional[ImageCandidate]:
        data = path.read_bytes()
        dims = read_dimensions(data)
        if dims is None:
            logger.warning(f"[{key}] Unreadable cached cover {path.name}; ignoring")
            return None
        slug = next((s for s in KNOWN_SLUGS if path.stem.endswith("-" + s)), None)
        width, height = dims
        return ImageCandidate(
            location=self._web_path(path.name),
            source_name=ImageSourceName.LOCAL_CACHE,
            cover_source=source_from_slug(slug),
            source_system_id=key,
            width=width,
            height=height,
            storage_location=StorageLocation.LOCAL_DISK,
            storage_key=path.name,
            content_type=CONTENT_TYPES.get(path.suffix.lower()) or detect_content_type(data),
        )

    def lookup_sync(self, key: str) -> Optional[ImageCandidate]:
        """Largest cached cover for key, or None on a miss"""
        if not self.enabled:
            return None
        try:
            best: Optional[ImageCandidate] = None
            for path in self._files_for(key):
                if self._is_expired(path):
                    logger.debug(f"Cache expired: {path.name}")
                    path.unlink(missing_ok=True)
                    continue
                candidate = self._candidate_from_file(key, path)
                if candidate is None:
                    continue
                if best is None or (candidate.area or 0) > (best.area or 0):
                    best = candidate
        except OSError as e:
            raise CacheTierError(TIER_NAME, f"lookup failed for {key}: {e}") from e

        if best is not None:
            logger.debug(f"Cache hit: {best.storage_key}")
        return best

    def store_sync(self, key: str, candidate: ImageCandidate) -> ImageCandidate:
        """Write candidate bytes atomically, replacing other variants for key"""
        if not candidate.image_bytes:
            raise CacheTierError(TIER_NAME, f"no image bytes to store for {key}")

        file_name = self._file_name(key, candidate.cover_source, candidate.content_type)
        target = self.cache_dir / file_name
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.cache_dir, prefix=".tmp-", suffix=target.suffix)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(candidate.image_bytes)
                os.replace(tmp_path, target)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
            for stale in self._files_for(key):
                if stale.name != file_name:
                    stale.unlink(missing_ok=True)
        except OSError as e:
            raise CacheTierError(TIER_NAME, f"store failed for {key}: {e}") from e

        logger.debug(f"Cache stored: {file_name}")
        return candidate.model_copy(update={
            "location": self._web_path(file_name),
            "source_name": ImageSourceName.LOCAL_CACHE,
            "storage_location": StorageLocation.LOCAL_DISK,
            "storage_key": file_name,
        })

    async def lookup(self, key: str) -> Optional[ImageCandidate]:
        return await run_blocking(self.lookup_sync, key, executor=self.executor)

    async def store(self, key: str, candidate: ImageCandidate) -> ImageCandidate:
        return await run_blocking(self.store_sync, key, candidate, executor=self.executor)

    def resolve_web_path(self, location: Optional[str]) -> Optional[Path]:
        """Filesystem path for a cache web path, if the file exists"""
        if not location or not location.startswith(self.web_prefix + "/"):
            return None
        name = location[len(self.web_prefix) + 1:]
        if not name or "/" in name or name.startswith("."):
            return None
        path = self.cache_dir / name
        return path if path.is_file() else None

    def candidate_for_web_path_sync(self, key: str, location: Optional[str]) -> Optional[ImageCandidate]:
        """Candidate for a provisional URL that points into this cache"""
        path = self.resolve_web_path(location)
        if path is None:
            return None
        try:
            return self._candidate_from_file(key, path)
        except OSError as e:
            raise CacheTierError(TIER_NAME, f"hint read failed for {location}: {e}") from e

    async def candidate_for_web_path(self, key: str, location: Optional[str]) -> Optional[ImageCandidate]:
        return await run_blocking(self.candidate_for_web_path_sync, key, location, executor=self.executor)

    def purge_expired(self) -> int:
        """Delete files older than the max age; returns the count removed"""
        if self.max_age_days <= 0:
            return 0
        removed = 0
        now = time.time()
        for path in self.cache_dir.iterdir():
            try:
                if path.is_file() and self._is_expired(path, now):
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.warning(f"Could not purge {path.name}: {e}")
        if removed:
            logger.info(f"Purged {removed} expired cover files from {self.cache_dir}")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        files = [p for p in self.cache_dir.iterdir() if p.is_file() and not p.name.startswith(".")]
        return {
            "enabled": self.enabled,
            "total_entries": len(files),
            "max_age_days": self.max_age_days,
        }


_local_cache: Optional[LocalCoverCache] = None


def get_local_cover_cache() -> LocalCoverCache:
    """Get or create global local cover cache"""
    global _local_cache
    if _local_cache is None:
        _local_cache = LocalCoverCache()
    return _local_cache
