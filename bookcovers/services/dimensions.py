# FILE: bookcovers/services/dimensions.py
"""
Image dimension validation, estimation and normalization
"""
from typing import NamedTuple, Optional

from bookcovers.config import Settings, get_settings
from bookcovers.models.images import ImageCandidate, ImageResolutionPreference

# Google Books imageLinks keys, best first
GOOGLE_TYPE_PRIORITY = {
    "extralarge": 1,
    "large": 2,
    "medium": 3,
    "small": 4,
    "thumbnail": 5,
    "smallthumbnail": 6,
}
UNKNOWN_TYPE_PRIORITY = 7


class DimensionEstimate(NamedTuple):
    width: int
    height: int
    high_res: bool


class DimensionRules:
    """Thresholds for validity, acceptability and high resolution"""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.min_valid = settings.min_valid_dimension
        self.min_cached = settings.min_cached_dimension
        self.min_acceptable = settings.min_acceptable_dimension
        self.default = settings.default_dimension
        self.high_res_pixels = settings.high_res_pixel_threshold

    def normalize(self, dimension: Optional[int]) -> int:
        """Unknown (None or <= min_valid) becomes the default square estimate"""
        if dimension is None or dimension <= self.min_valid:
            return self.default
        return dimension

    def are_valid(self, width: Optional[int], height: Optional[int]) -> bool:
        return (
            width is not None and width > self.min_valid
            and height is not None and height > self.min_valid
        )

    def meets_threshold(self, width: Optional[int], height: Optional[int], threshold: int) -> bool:
        if width is None or height is None:
            return False
        return width >= threshold and height >= threshold

    def is_high_resolution(self, width: Optional[int], height: Optional[int]) -> bool:
        if width is None or height is None:
            return False
        return width * height >= self.high_res_pixels

    def qualifies_for_cache_bonus(self, candidate: ImageCandidate) -> bool:
        return (
            candidate.is_cache_resident
            and candidate.width is not None and candidate.width > self.min_cached
            and candidate.height is not None and candidate.height > self.min_cached
        )

    def is_acceptable(
        self,
        candidate: ImageCandidate,
        placeholder_path: str,
        resolution: ImageResolutionPreference = ImageResolutionPreference.ANY,
    ) -> bool:
        """Good enough to stop asking further providers"""
        if not candidate.is_valid(placeholder_path):
            return False
        if not self.meets_threshold(candidate.width, candidate.height, self.min_acceptable):
            return False
        if resolution in (ImageResolutionPreference.HIGH_ONLY, ImageResolutionPreference.HIGH_FIRST):
            return self.is_high_resolution(candidate.width, candidate.height)
        return True

    def estimate_from_google_type(self, image_type: Optional[str]) -> DimensionEstimate:
        fallback = DimensionEstimate(self.default, self.default * 3 // 2, False)
        if image_type is None:
            return fallback
        return _GOOGLE_ESTIMATES.get(image_type.lower(), fallback)


_GOOGLE_ESTIMATES = {
    "extralarge": DimensionEstimate(800, 1200, True),
    "large": DimensionEstimate(600, 900, True),
    "medium": DimensionEstimate(400, 600, False),
    "small": DimensionEstimate(300, 450, False),
    "thumbnail": DimensionEstimate(128, 192, False),
    "smallthumbnail": DimensionEstimate(64, 96, False),
}


def type_priority(image_type: Optional[str]) -> int:
    """Priority of a Google Books image type; lower is better"""
    if image_type is None:
        return UNKNOWN_TYPE_PRIORITY
    return GOOGLE_TYPE_PRIORITY.get(image_type.lower(), UNKNOWN_TYPE_PRIORITY)
