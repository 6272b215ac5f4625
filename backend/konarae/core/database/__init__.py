# backend/konarae/core/database/__init__.py
"""
Database package.

Provides SQLAlchemy models, base classes, and the session dependency.
"""

from .base import Base, get_db
from .models import (
    Announcement,
    Attachment,
    CrawlJob,
    DocumentEmbedding,
    ProjectGroup,
    Source,
)

__all__ = [
    "Base",
    "get_db",
    "Source",
    "CrawlJob",
    "Announcement",
    "Attachment",
    "ProjectGroup",
    "DocumentEmbedding",
]
