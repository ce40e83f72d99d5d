# FILE: bookcovers/models/cleanup.py
"""
Cleanup workflow summaries (JSON field names are part of the admin contract)
"""
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class MoveItemStatus(str, Enum):
    MOVED = "MOVED"
    FAILED = "FAILED"


class FlaggedObject(BaseModel):
    """An object the heuristics consider unlikely to be a front cover"""
    key: str
    reasons: List[str] = Field(default_factory=list)


class DryRunSummary(BaseModel):
    """Result of a non-mutating scan"""

    model_config = ConfigDict(populate_by_name=True)

    prefix: str
    limit: int
    total_scanned: int = Field(0, alias="totalScanned")
    total_flagged: int = Field(0, alias="totalFlagged")
    flagged_file_keys: List[str] = Field(default_factory=list, alias="flaggedFileKeys")
    errors: List[str] = Field(default_factory=list)

    def to_text(self) -> str:
        """Plain-text report for operators"""
        lines = [
            "S3 Cover Cleanup Dry Run",
            f"Prefix: {self.prefix}",
            f"Limit: {self.limit if self.limit > 0 else 'unlimited'}",
            f"Total scanned: {self.total_scanned}",
            f"Total flagged: {self.total_flagged}",
            "Flagged file keys:",
        ]
        lines.extend(self.flagged_file_keys)
        if self.errors:
            lines.append("Errors:")
            lines.extend(self.errors)
        return "\n".join(lines) + "\n"


class MoveItemResult(BaseModel):
    """Outcome for one flagged object"""
    key: str
    destination: Optional[str] = None
    status: MoveItemStatus
    error: Optional[str] = None


class MoveActionSummary(BaseModel):
    """Result of moving flagged objects to quarantine"""

    model_config = ConfigDict(populate_by_name=True)

    prefix: str
    quarantine_prefix: str = Field(alias="quarantinePrefix")
    limit: int
    total_scanned: int = Field(0, alias="totalScanned")
    total_flagged: int = Field(0, alias="totalFlagged")
    flagged_file_keys: List[str] = Field(default_factory=list, alias="flaggedFileKeys")
    moved_count: int = Field(0, alias="movedCount")
    moved_file_keys: List[str] = Field(default_factory=list, alias="movedFileKeys")
    failed_count: int = Field(0, alias="failedCount")
    failed_file_keys: List[str] = Field(default_factory=list, alias="failedFileKeys")
    items: List[MoveItemResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
