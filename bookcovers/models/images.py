# FILE: bookcovers/models/images.py
"""
Image candidate models and source enums
"""
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


class ImageSourceName(str, Enum):
    """Where a candidate image came from"""
    GOOGLE_BOOKS = "GOOGLE_BOOKS"
    OPEN_LIBRARY = "OPEN_LIBRARY"
    LONGITOOD = "LONGITOOD"
    LOCAL_CACHE = "LOCAL_CACHE"
    S3_CACHE = "S3_CACHE"
    UNKNOWN = "UNKNOWN"


class CoverImageSource(str, Enum):
    """Provider tag used for caller preference and image origin"""
    GOOGLE_BOOKS = "GOOGLE_BOOKS"
    OPEN_LIBRARY = "OPEN_LIBRARY"
    LONGITOOD = "LONGITOOD"
    ANY = "ANY"
    NONE = "NONE"
    UNDEFINED = "UNDEFINED"


class StorageLocation(str, Enum):
    """Storage tier holding the image, independent of its provider"""
    LOCAL_DISK = "LOCAL_DISK"
    OBJECT_STORAGE = "OBJECT_STORAGE"
    REMOTE = "REMOTE"


class ImageResolutionPreference(str, Enum):
    """Caller's desired quality tier"""
    ANY = "ANY"
    HIGH_ONLY = "HIGH_ONLY"
    HIGH_FIRST = "HIGH_FIRST"


CACHE_RESIDENT_LOCATIONS = (StorageLocation.LOCAL_DISK, StorageLocation.OBJECT_STORAGE)


class ImageCandidate(BaseModel):
    """A fetch or cache result, before a winner is chosen"""

    model_config = ConfigDict(frozen=True)

    location: Optional[str] = Field(None, description="URL or storage path")
    source_name: ImageSourceName = ImageSourceName.UNKNOWN
    cover_source: CoverImageSource = CoverImageSource.UNDEFINED
    source_system_id: Optional[str] = None
    resolution_preference: ImageResolutionPreference = ImageResolutionPreference.ANY
    width: Optional[int] = None
    height: Optional[int] = None
    storage_location: StorageLocation = StorageLocation.REMOTE
    storage_key: Optional[str] = None
    content_type: Optional[str] = None
    image_bytes: Optional[bytes] = Field(None, exclude=True, repr=False)

    @model_validator(mode="before")
    @classmethod
    def _default_storage_location(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("storage_location") is None:
            data = dict(data)
            if data.get("source_name") == ImageSourceName.S3_CACHE:
                data["storage_location"] = StorageLocation.OBJECT_STORAGE
            else:
                data["storage_location"] = StorageLocation.REMOTE
        return data

    def is_valid(self, placeholder_path: Optional[str]) -> bool:
        return (
            self.location is not None
            and self.location != placeholder_path
            and self.width is not None and self.width > 1
            and self.height is not None and self.height > 1
        )

    @property
    def area(self) -> Optional[int]:
        if self.width is None or self.height is None:
            return None
        return self.width * self.height

    @property
    def is_cache_resident(self) -> bool:
        return self.storage_location in CACHE_RESIDENT_LOCATIONS

    @property
    def dimensions_label(self) -> str:
        w = self.width if self.width is not None else "N/A"
        h = self.height if self.height is not None else "N/A"
        return f"{w}x{h}"


def placeholder_candidate(placeholder_path: str, book_key: Optional[str] = None) -> ImageCandidate:
    """Well-defined terminal answer when no genuine cover could be resolved"""
    return ImageCandidate(
        location=placeholder_path,
        source_name=ImageSourceName.LOCAL_CACHE,
        cover_source=CoverImageSource.NONE,
        source_system_id=book_key,
        storage_location=StorageLocation.REMOTE,
    )
