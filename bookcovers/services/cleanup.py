# FILE: bookcovers/services/cleanup.py
"""
Audit and quarantine workflow for cached covers in object storage

Dry runs only read. Move actions copy each flagged object under the
quarantine prefix and delete the original only after the copy succeeded,
so nothing is ever lost. Per-object failures are recorded and the batch
carries on.
"""
import logging
from typing import List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from bookcovers.config import Settings, get_settings
from bookcovers.errors import CacheTierError, CleanupConfigurationError
from bookcovers.models.cleanup import (
    DryRunSummary, FlaggedObject, MoveActionSummary, MoveItemResult, MoveItemStatus,
)
from bookcovers.services.image_analysis import CoverHeuristics
from bookcovers.services.s3_cache import S3CoverCache, get_s3_cover_cache

logger = logging.getLogger(__name__)

_ITEM_ERRORS = (CacheTierError, ClientError, BotoCoreError)


def normalize_prefix(prefix: Optional[str]) -> str:
    """Strip whitespace and leading slashes; non-empty prefixes end with '/'"""
    cleaned = (prefix or "").strip().lstrip("/")
    if cleaned and not cleaned.endswith("/"):
        cleaned += "/"
    return cleaned


def validate_quarantine_prefix(prefix: str, quarantine_prefix: Optional[str]) -> str:
    """
    Normalized quarantine prefix, or CleanupConfigurationError when it is
    blank, equal to the scan prefix, or nested inside it
    """
    if quarantine_prefix is None or not quarantine_prefix.strip():
        raise CleanupConfigurationError("quarantinePrefix must not be blank")
    source = normalize_prefix(prefix)
    target = normalize_prefix(quarantine_prefix)
    if target == source:
        raise CleanupConfigurationError(
            f"quarantinePrefix '{target}' must differ from prefix '{source}'"
        )
    if target.startswith(source):
        raise CleanupConfigurationError(
            f"quarantinePrefix '{target}' must not be inside prefix '{source}'"
        )
    return target


def quarantine_destination(key: str, prefix: str, quarantine_prefix: str) -> str:
    relative = key[len(prefix):] if prefix and key.startswith(prefix) else key.rsplit("/", 1)[-1]
    return f"{quarantine_prefix}{relative}"


class CoverCleanupService:
    """Finds cached objects that are not front covers and moves them aside"""

    def __init__(
        self,
        s3_cache: Optional[S3CoverCache] = None,
        heuristics: Optional[CoverHeuristics] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.s3_cache = s3_cache or get_s3_cover_cache()
        self.heuristics = heuristics or CoverHeuristics(self.settings)

    def _resolve_scope(self, prefix: Optional[str], limit: Optional[int]) -> Tuple[str, int]:
        prefix = normalize_prefix(prefix if prefix is not None else self.settings.cleanup_prefix)
        limit = self.settings.cleanup_default_batch_limit if limit is None else limit
        return prefix, limit

    def _scan(self, prefix: str, limit: int) -> Tuple[int, List[FlaggedObject], List[str]]:
        objects = self.s3_cache.list_objects(prefix, limit)
        flagged: List[FlaggedObject] = []
        errors: List[str] = []

        for obj in objects:
            key = obj["Key"]
            if not obj.get("Size"):
                logger.debug(f"Skipping empty object {key}")
                continue
            try:
                data = self.s3_cache.get_bytes(key)
            except _ITEM_ERRORS as e:
                logger.error(f"Failed to read {key}: {e}")
                errors.append(f"{key}: {e}")
                continue
            assessment = self.heuristics.assess(data, key)
            if assessment.flagged:
                flagged.append(FlaggedObject(key=key, reasons=assessment.reasons))

        return len(objects), flagged, errors

    def perform_dry_run(self, prefix: Optional[str] = None, limit: Optional[int] = None) -> DryRunSummary:
        """Scan and report; never mutates the bucket"""
        prefix, limit = self._resolve_scope(prefix, limit)
        logger.info(f"Cleanup dry run (prefix={prefix}, limit={limit if limit > 0 else 'unlimited'})")

        scanned, flagged, errors = self._scan(prefix, limit)

        logger.info(f"Cleanup dry run scanned {scanned}, flagged {len(flagged)}")
        return DryRunSummary(
            prefix=prefix,
            limit=limit,
            total_scanned=scanned,
            total_flagged=len(flagged),
            flagged_file_keys=[f.key for f in flagged],
            errors=errors,
        )

    def perform_move_action(
        self,
        prefix: Optional[str] = None,
        limit: Optional[int] = None,
        quarantine_prefix: Optional[str] = None,
    ) -> MoveActionSummary:
        """Re-scan, then move each flagged object under the quarantine prefix"""
        prefix, limit = self._resolve_scope(prefix, limit)
        if quarantine_prefix is None:
            quarantine_prefix = self.settings.cleanup_quarantine_prefix
        # Rejected before any listing call
        quarantine_prefix = validate_quarantine_prefix(prefix, quarantine_prefix)

        logger.info(
            f"Cleanup move (prefix={prefix}, quarantine={quarantine_prefix}, "
            f"limit={limit if limit > 0 else 'unlimited'})"
        )
        scanned, flagged, errors = self._scan(prefix, limit)

        summary = MoveActionSummary(
            prefix=prefix,
            quarantine_prefix=quarantine_prefix,
            limit=limit,
            total_scanned=scanned,
            total_flagged=len(flagged),
            flagged_file_keys=[f.key for f in flagged],
            errors=errors,
        )

        for item in flagged:
            summary.items.append(self._move_one(item.key, prefix, quarantine_prefix))

        for result in summary.items:
            if result.status == MoveItemStatus.MOVED:
                summary.moved_file_keys.append(f"{result.key} -> {result.destination}")
            else:
                summary.failed_file_keys.append(result.key)
        summary.moved_count = len(summary.moved_file_keys)
        summary.failed_count = len(summary.failed_file_keys)

        logger.info(
            f"Cleanup move finished: moved {summary.moved_count}, failed {summary.failed_count} "
            f"of {summary.total_flagged} flagged"
        )
        return summary

    def _move_one(self, key: str, prefix: str, quarantine_prefix: str) -> MoveItemResult:
        destination = quarantine_destination(key, prefix, quarantine_prefix)
        try:
            self.s3_cache.copy(key, destination)
        except _ITEM_ERRORS as e:
            logger.error(f"Failed to copy {key} to {destination}: {e}")
            return MoveItemResult(key=key, destination=destination, status=MoveItemStatus.FAILED,
                                  error=f"copy failed: {e}")
        try:
            self.s3_cache.delete(key)
        except _ITEM_ERRORS as e:
            # Copy exists; the original stays in place for a later retry
            logger.error(f"Copied {key} but failed to delete original: {e}")
            return MoveItemResult(key=key, destination=destination, status=MoveItemStatus.FAILED,
                                  error=f"delete failed after copy: {e}")
        logger.info(f"Quarantined {key} -> {destination}")
        return MoveItemResult(key=key, destination=destination, status=MoveItemStatus.MOVED)


_cleanup_service: Optional[CoverCleanupService] = None


def get_cleanup_service() -> CoverCleanupService:
    """Get or create global cleanup service"""
    global _cleanup_service
    if _cleanup_service is None:
        _cleanup_service = CoverCleanupService()
    return _cleanup_service
