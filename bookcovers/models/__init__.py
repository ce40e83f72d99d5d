# FILE: bookcovers/models/__init__.py
"""
Pydantic models for books, image candidates, provenance and cleanup summaries
"""
from bookcovers.models.books import *
from bookcovers.models.images import *
from bookcovers.models.provenance import *
from bookcovers.models.cleanup import *
