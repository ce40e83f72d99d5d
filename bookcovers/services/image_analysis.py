# FILE: bookcovers/services/image_analysis.py
"""
Image inspection with Pillow: dimensions, placeholder signatures and the
heuristics that flag cached objects unlikely to be genuine front covers
(scanned interior pages, two-page spreads, slivers, provider placeholders).
"""
import hashlib
import io
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from PIL import Image, ImageChops, UnidentifiedImageError

from bookcovers.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Sampling size for pixel statistics; keeps large covers cheap to analyse
_SAMPLE_SIZE = (128, 128)

REASON_UNREADABLE = "unreadable-image"
REASON_TOO_SMALL = "too-small"
REASON_LANDSCAPE = "landscape-aspect-ratio"
REASON_NARROW = "narrow-aspect-ratio"
REASON_DOMINANTLY_WHITE = "dominantly-white"
REASON_PLACEHOLDER = "placeholder-signature"

_DECODE_ERRORS = (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError)


def sha256_hex(data: bytes) -> str:
    """Legacy signature helper; exact-match only, not a perceptual hash"""
    return hashlib.sha256(data).hexdigest()


def _open(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def read_dimensions(data: Optional[bytes]) -> Optional[Tuple[int, int]]:
    """(width, height) of an encoded image, or None when it cannot be decoded"""
    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except _DECODE_ERRORS as e:
        logger.debug(f"Could not read image dimensions: {e}")
        return None


def detect_content_type(data: Optional[bytes]) -> Optional[str]:
    """MIME type from the decoded image format"""
    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
    except _DECODE_ERRORS:
        return None
    if not fmt:
        return None
    return Image.MIME.get(fmt.upper())


def white_pixel_ratio(img: Image.Image, threshold: int) -> float:
    """Share of sampled pixels whose every channel is at or above threshold"""
    sample = img.convert("RGB")
    sample.thumbnail(_SAMPLE_SIZE)
    masks = [band.point(lambda v, t=threshold: 255 if v >= t else 0) for band in sample.split()]
    combined = ImageChops.darker(ImageChops.darker(masks[0], masks[1]), masks[2])
    histogram = combined.histogram()
    total = sample.width * sample.height
    if total == 0:
        return 0.0
    return histogram[255] / total


@dataclass
class CoverAssessment:
    """Outcome of running the heuristics over one object"""
    width: Optional[int] = None
    height: Optional[int] = None
    reasons: List[str] = field(default_factory=list)

    @property
    def flagged(self) -> bool:
        return bool(self.reasons)


class CoverHeuristics:
    """Flags images that are unlikely to be front covers"""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.white_ratio = settings.cleanup_white_pixel_ratio
        self.white_threshold = settings.cleanup_white_threshold
        self.max_aspect = settings.cleanup_max_aspect_ratio
        self.min_aspect = settings.cleanup_min_aspect_ratio
        self.min_dimension = settings.cleanup_min_dimension
        self.placeholder_signatures = set(settings.placeholder_signatures)

    def is_placeholder(self, data: bytes) -> bool:
        return bool(self.placeholder_signatures) and sha256_hex(data) in self.placeholder_signatures

    def assess(self, data: bytes, key: str = "") -> CoverAssessment:
        assessment = CoverAssessment()

        if self.is_placeholder(data):
            assessment.reasons.append(REASON_PLACEHOLDER)

        try:
            img = _open(data)
        except _DECODE_ERRORS as e:
            logger.debug(f"Unreadable image {key}: {e}")
            assessment.reasons.append(REASON_UNREADABLE)
            return assessment

        with img:
            width, height = img.size
            assessment.width, assessment.height = width, height

            if width < self.min_dimension or height < self.min_dimension:
                assessment.reasons.append(REASON_TOO_SMALL)

            if height > 0:
                aspect = width / height
                if aspect > self.max_aspect:
                    assessment.reasons.append(REASON_LANDSCAPE)
                elif aspect < self.min_aspect:
                    assessment.reasons.append(REASON_NARROW)

            ratio = white_pixel_ratio(img, self.white_threshold)
            if ratio >= self.white_ratio:
                assessment.reasons.append(REASON_DOMINANTLY_WHITE)

        if assessment.flagged:
            logger.debug(f"Flagged {key or 'image'} ({width}x{height}): {assessment.reasons}")
        return assessment
