# FILE: bookcovers/models/books.py
"""
Book models
"""
from typing import List, Optional
from pydantic import BaseModel, Field


class Book(BaseModel):
    """Book identity and metadata needed to resolve a cover"""
    id: Optional[str] = Field(None, description="Provider-native id, e.g. a Google Books volume id")
    isbn13: Optional[str] = None
    isbn10: Optional[str] = None
    title: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    cover_url: Optional[str] = Field(None, description="Provisional cover URL hint from upstream metadata")
