# FILE: bookcovers/errors.py
"""
Exception hierarchy for cover resolution and cleanup
"""
from typing import Optional


class CoverEngineError(Exception):
    """Base class for cover engine errors"""


class CoverFetchError(CoverEngineError):
    """A provider could not supply a cover for this book"""

    def __init__(self, source: str, reason: str, url: Optional[str] = None):
        self.source = source
        self.reason = reason
        self.url = url
        super().__init__(f"{source}: {reason}")


class CoverNotFoundError(CoverFetchError):
    """The provider answered, but has no cover for this book"""


class CacheTierError(CoverEngineError):
    """A storage tier read or write failed"""

    def __init__(self, tier: str, reason: str):
        self.tier = tier
        self.reason = reason
        super().__init__(f"{tier}: {reason}")


class CleanupConfigurationError(CoverEngineError):
    """Cleanup request rejected before any scan"""


class ProvenanceClosedError(CoverEngineError):
    """Provenance record is complete and can no longer be appended to"""
