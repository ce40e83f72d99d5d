# FILE: bookcovers/models/provenance.py
"""
Provenance models: every attempted source plus the final selection
"""
from enum import Enum
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from bookcovers.models.images import ImageSourceName, StorageLocation


class AttemptStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    SKIPPED = "SKIPPED"


class AttemptedSource(BaseModel):
    """One attempt against a cache tier or provider"""

    model_config = ConfigDict(frozen=True)

    source_name: ImageSourceName
    url_attempted: Optional[str] = None
    status: AttemptStatus
    failure_reason: Optional[str] = None
    fetched_url: Optional[str] = None
    dimensions: Optional[str] = None
    timestamp: datetime


class SelectedImageInfo(BaseModel):
    """The winning image and why it won"""

    model_config = ConfigDict(frozen=True)

    source_name: ImageSourceName
    final_url: Optional[str] = None
    resolution: str
    dimensions: str
    selection_reason: str
    storage_location: StorageLocation
    storage_key: Optional[str] = None


class ProvenanceRecord(BaseModel):
    """Audit trail for a single resolution run"""

    model_config = ConfigDict(frozen=True)

    book_key: Optional[str] = None
    correlation_id: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    attempts: List[AttemptedSource] = Field(default_factory=list)
    selected: Optional[SelectedImageInfo] = None
    completed: bool = False
