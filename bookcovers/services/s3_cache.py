# FILE: bookcovers/services/s3_cache.py
"""
Object storage (S3 compatible) cover tier

Keys: <s3_cover_prefix><key>-lg-<source>.<ext>, one object per key (a store
replaces the other provider variants), with the image width and
height stored as object metadata. Every call goes through a circuit
breaker; an open circuit reads as a cache miss upstream.
"""
import logging
from concurrent.futures import Executor
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from bookcovers.config import Settings, get_settings
from bookcovers.errors import CacheTierError
from bookcovers.models.images import CoverImageSource, ImageCandidate, ImageSourceName, StorageLocation
from bookcovers.services.circuit_breaker import CircuitBreaker
from bookcovers.services.dimensions import DimensionRules
from bookcovers.services.identifiers import storage_safe_key
from bookcovers.services.image_analysis import read_dimensions
from bookcovers.services.io_pool import run_blocking
from bookcovers.services.local_cache import CONTENT_TYPES, extension_for
from bookcovers.services.source_mapping import source_from_slug, source_slug

logger = logging.getLogger(__name__)

TIER_NAME = "OBJECT_STORAGE"
CIRCUIT_NAME = "S3"
SIZE_TAG = "-lg-"
_MAX_KEYS_PER_PAGE = 1000
_STORAGE_ERRORS = (ClientError, BotoCoreError)


def _error_code(error: Exception) -> str:
    if isinstance(error, ClientError):
        return str(error.response.get("Error", {}).get("Code", ""))
    return ""


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class S3CoverCache:
    """Covers cached in an S3 compatible bucket"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Any = None,
        executor: Optional[Executor] = None,
    ):
        self.settings = settings or get_settings()
        self.bucket = self.settings.s3_bucket_name
        self.prefix = self.settings.s3_cover_prefix
        self.executor = executor
        self.circuit_breaker = CircuitBreaker(
            threshold=self.settings.circuit_breaker_threshold,
            timeout_seconds=self.settings.circuit_breaker_cooldown_seconds,
        )
        self.rules = DimensionRules(self.settings)
        self.provider_order = [CoverImageSource(name) for name in self.settings.provider_order]
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or self.settings.s3_configured

    @property
    def client(self):
        if self._client is None:
            if not self.settings.s3_configured:
                raise CacheTierError(TIER_NAME, "object storage is not configured")
            self._client = boto3.client(
                "s3",
                endpoint_url=self.settings.s3_endpoint_url,
                region_name=self.settings.s3_region,
                aws_access_key_id=self.settings.s3_access_key_id,
                aws_secret_access_key=self.settings.s3_secret_access_key,
            )
            logger.info(f"S3 client ready (bucket={self.bucket}, endpoint={self.settings.s3_endpoint_url or 'aws'})")
        return self._client

    def is_available(self) -> bool:
        return self.configured and not self.circuit_breaker.is_open(CIRCUIT_NAME)

    def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        """Invoke a client operation with circuit breaker bookkeeping"""
        if self.circuit_breaker.is_open(CIRCUIT_NAME):
            raise CacheTierError(TIER_NAME, "circuit-open")
        try:
            result = getattr(self.client, operation)(Bucket=self.bucket, **kwargs)
        except _STORAGE_ERRORS as e:
            # A missing object is an answer, not an outage
            if _error_code(e) not in ("404", "NoSuchKey", "NotFound"):
                self.circuit_breaker.record_failure(CIRCUIT_NAME)
            raise
        self.circuit_breaker.record_success(CIRCUIT_NAME)
        return result

    def object_key(self, key: str, source, content_type: Optional[str] = None) -> str:
        return f"{self.prefix}{storage_safe_key(key)}{SIZE_TAG}{source_slug(source)}{extension_for(content_type)}"

    def public_url(self, object_key: str) -> str:
        if self.settings.s3_cdn_url:
            return f"{self.settings.s3_cdn_url.rstrip('/')}/{object_key}"
        if self.settings.s3_endpoint_url:
            return f"{self.settings.s3_endpoint_url.rstrip('/')}/{self.bucket}/{object_key}"
        return f"https://{self.bucket}.s3.{self.settings.s3_region}.amazonaws.com/{object_key}"

    def _parse_key(self, key: str, object_key: str) -> Optional[Tuple[CoverImageSource, str]]:
        """(provider, extension) when object_key belongs to key"""
        stem_prefix = f"{self.prefix}{storage_safe_key(key)}{SIZE_TAG}"
        if not object_key.startswith(stem_prefix):
            return None
        rest = object_key[len(stem_prefix):]
        slug, dot, ext = rest.rpartition(".")
        if not dot or "/" in rest:
            return None
        source = source_from_slug(slug)
        if source == CoverImageSource.UNDEFINED and slug != "unknown":
            return None
        return source, "." + ext.lower()

    def _rank(self, source: CoverImageSource) -> int:
        if source in self.provider_order:
            return self.provider_order.index(source)
        return len(self.provider_order)

    # ------------------------------------------------------------------
    # Cover tier
    # ------------------------------------------------------------------

    def lookup_sync(self, key: str) -> Optional[ImageCandidate]:
        """Cached cover for key; provider variants are probed in provider order"""
        if not self.configured:
            return None
        stem_prefix = f"{self.prefix}{storage_safe_key(key)}{SIZE_TAG}"
        try:
            listed = self._list_page(stem_prefix, None, _MAX_KEYS_PER_PAGE)
        except _STORAGE_ERRORS as e:
            raise CacheTierError(TIER_NAME, f"lookup failed for {key}: {e}") from e

        matches = []
        for obj in listed.get("Contents", []):
            if not obj.get("Size"):
                continue
            parsed = self._parse_key(key, obj["Key"])
            if parsed is not None:
                matches.append((self._rank(parsed[0]), obj["Key"], parsed))
        if not matches:
            return None

        for _, object_key, (source, ext) in sorted(matches):
            try:
                width, height = self._dimensions(object_key)
            except _STORAGE_ERRORS as e:
                raise CacheTierError(TIER_NAME, f"metadata read failed for {object_key}: {e}") from e
            if width is None or height is None:
                logger.warning(f"[{key}] Unreadable cached object {object_key}; ignoring")
                continue
            logger.debug(f"S3 hit: {object_key} ({width}x{height})")
            return ImageCandidate(
                location=self.public_url(object_key),
                source_name=ImageSourceName.S3_CACHE,
                cover_source=source,
                source_system_id=key,
                width=width,
                height=height,
                storage_location=StorageLocation.OBJECT_STORAGE,
                storage_key=object_key,
                content_type=CONTENT_TYPES.get(ext),
            )
        return None

    def _dimensions(self, object_key: str) -> Tuple[Optional[int], Optional[int]]:
        head = self._call("head_object", Key=object_key)
        metadata = {k.lower(): v for k, v in (head.get("Metadata") or {}).items()}
        width, height = _int_or_none(metadata.get("width")), _int_or_none(metadata.get("height"))
        if width and height:
            return width, height
        # Objects written by older tooling carry no metadata
        dims = read_dimensions(self.get_bytes(object_key))
        return dims if dims else (None, None)

    def store_sync(self, key: str, candidate: ImageCandidate) -> ImageCandidate:
        if not candidate.image_bytes:
            raise CacheTierError(TIER_NAME, f"no image bytes to store for {key}")
        object_key = self.object_key(key, candidate.cover_source, candidate.content_type)
        # Metadata needs numbers; unknown sides get the default estimate
        metadata = {
            "source": source_slug(candidate.cover_source),
            "width": str(self.rules.normalize(candidate.width)),
            "height": str(self.rules.normalize(candidate.height)),
        }
        try:
            self._call(
                "put_object",
                Key=object_key,
                Body=candidate.image_bytes,
                ContentType=candidate.content_type or "image/jpeg",
                Metadata=metadata,
            )
        except _STORAGE_ERRORS as e:
            raise CacheTierError(TIER_NAME, f"store failed for {key}: {e}") from e

        self._remove_stale_variants(key, object_key)
        logger.debug(f"S3 stored: {object_key}")
        return candidate.model_copy(update={
            "location": self.public_url(object_key),
            "source_name": ImageSourceName.S3_CACHE,
            "storage_location": StorageLocation.OBJECT_STORAGE,
            "storage_key": object_key,
        })

    def _remove_stale_variants(self, key: str, keep: str):
        """Delete other provider variants of key so lookups see only the latest winner"""
        stem_prefix = f"{self.prefix}{storage_safe_key(key)}{SIZE_TAG}"
        try:
            listed = self._list_page(stem_prefix, None, _MAX_KEYS_PER_PAGE)
            for obj in listed.get("Contents", []):
                if obj["Key"] != keep and self._parse_key(key, obj["Key"]) is not None:
                    self.delete(obj["Key"])
                    logger.debug(f"S3 removed stale variant: {obj['Key']}")
        except _STORAGE_ERRORS as e:
            logger.warning(f"[{key}] Could not remove stale S3 variants: {e}")

    async def lookup(self, key: str) -> Optional[ImageCandidate]:
        return await run_blocking(self.lookup_sync, key, executor=self.executor)

    async def store(self, key: str, candidate: ImageCandidate) -> ImageCandidate:
        return await run_blocking(self.store_sync, key, candidate, executor=self.executor)

    # ------------------------------------------------------------------
    # Bucket operations used by the cleanup workflow
    # ------------------------------------------------------------------

    def _list_page(self, prefix: str, token: Optional[str], max_keys: int) -> Dict[str, Any]:
        kwargs = {"Prefix": prefix, "MaxKeys": max_keys}
        if token:
            kwargs["ContinuationToken"] = token
        return self._call("list_objects_v2", **kwargs)

    def list_objects(self, prefix: str, limit: int = 0) -> List[Dict[str, Any]]:
        """
        List objects under prefix, following continuation tokens

        limit <= 0 lists everything. Returns dicts with Key and Size.
        """
        objects: List[Dict[str, Any]] = []
        token = None
        while True:
            page_size = _MAX_KEYS_PER_PAGE
            if limit > 0:
                page_size = min(page_size, limit - len(objects))
            page = self._list_page(prefix, token, page_size)
            for obj in page.get("Contents", []):
                objects.append({"Key": obj["Key"], "Size": obj.get("Size", 0)})
                if 0 < limit <= len(objects):
                    return objects
            if not page.get("IsTruncated"):
                return objects
            token = page.get("NextContinuationToken")
            if not token:
                return objects

    def get_bytes(self, object_key: str) -> bytes:
        response = self._call("get_object", Key=object_key)
        body = response["Body"]
        try:
            return body.read()
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()

    def copy(self, source_key: str, destination_key: str):
        self._call(
            "copy_object",
            Key=destination_key,
            CopySource={"Bucket": self.bucket, "Key": source_key},
        )

    def delete(self, object_key: str):
        self._call("delete_object", Key=object_key)

    def circuit_status(self) -> Dict[str, Dict]:
        return self.circuit_breaker.status()


_s3_cache: Optional[S3CoverCache] = None


def get_s3_cover_cache() -> S3CoverCache:
    """Get or create global S3 cover cache"""
    global _s3_cache
    if _s3_cache is None:
        _s3_cache = S3CoverCache()
    return _s3_cache
