# backend/konarae/core/database/models.py
"""
SQLAlchemy ORM models for the support-program catalog.

Models:
    - Source: Crawl target supplied by configuration
    - CrawlJob: One execution of a Source
    - Announcement: Catalog record for a support-program announcement
    - Attachment: File linked from an announcement detail page
    - ProjectGroup: Deduplication cluster of announcements
    - DocumentEmbedding: Search chunk (text, keywords, vector)

Column types are portable: PostgreSQL (asyncpg, pgvector) in production,
SQLite for local runs and tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from konarae.config import settings

from .base import Base


# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


class EmbeddingVector(TypeDecorator):
    """pgvector ``vector(n)`` on PostgreSQL, a JSON float list elsewhere."""
    impl = JSON
    cache_ok = True

    def __init__(self, dimensions: int):
        super().__init__()
        self.dimensions = dimensions

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Vector(self.dimensions))
        return dialect.type_descriptor(JSON())

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return [float(v) for v in value]


class KeywordArray(TypeDecorator):
    """``text[]`` on PostgreSQL, a JSON string list elsewhere."""
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(ARRAY(Text))
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        if value is None:
            return []
        return sorted(value)

    def process_result_value(self, value, dialect):
        return list(value or [])


# ============================================================================
# Crawl models
# ============================================================================


class Source(Base):
    """
    Crawl target.

    Created from config.yml via the config loader; the scheduler updates
    ``last_crawled`` after each run.

    Attributes:
        id: Configured source identifier
        name: Display name
        url: Listing page URL
        adapter_type: "plain" (HTTP) or "browser" (rendered)
        is_active: Whether the scheduler creates jobs for it
        wait_for_selector: Optional selector awaited on rendered pages
        region: Default region applied to this source's listings
        last_crawled: Completion time of the last successful job
    """

    __tablename__ = "crawl_sources"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    url = Column(String(2048), nullable=False)
    adapter_type = Column(String(20), nullable=False, default="plain")
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    wait_for_selector = Column(String(255), nullable=True)
    region = Column(String(50), nullable=True)
    last_crawled = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    jobs = relationship("CrawlJob", back_populates="source", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Source(id={self.id}, type={self.adapter_type}, active={self.is_active})>"


class CrawlJob(Base):
    """
    One execution of a Source.

    Status lifecycle: pending → running → completed | failed. Mutated only by
    the job runner and immutable once terminal.
    """

    __tablename__ = "crawl_jobs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    source_id = Column(
        String(100), ForeignKey("crawl_sources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status = Column(String(20), nullable=False, default="pending", index=True)

    # Counters (always reported, zero when untouched)
    projects_found = Column(Integer, nullable=False, default=0)
    projects_new = Column(Integer, nullable=False, default=0)
    projects_updated = Column(Integer, nullable=False, default=0)
    files_processed = Column(Integer, nullable=False, default=0)
    items_failed = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    source = relationship("Source", back_populates="jobs")

    __table_args__ = (
        Index("ix_crawl_jobs_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    def stats(self) -> dict:
        return {
            "projectsFound": self.projects_found or 0,
            "projectsNew": self.projects_new or 0,
            "projectsUpdated": self.projects_updated or 0,
            "filesProcessed": self.files_processed or 0,
        }

    def __repr__(self) -> str:
        return f"<CrawlJob(id={self.id}, source={self.source_id}, status={self.status})>"


# ============================================================================
# Catalog models
# ============================================================================


class ProjectGroup(Base):
    """
    Deduplication cluster: announcements considered the same real-world program.

    Review status:
        - auto_grouped: members agree on category and amount
        - pending_review: members disagree beyond tolerance, needs manual inspection
        - confirmed: an operator confirmed the merge
    """

    __tablename__ = "project_groups"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    normalized_name = Column(String(500), nullable=False)
    normalized_org = Column(String(255), nullable=False, default="")
    project_year = Column(Integer, nullable=True)

    # Not a foreign key: announcements already reference groups
    canonical_project_id = Column(UUID(), nullable=True)
    review_status = Column(String(20), nullable=False, default="auto_grouped", index=True)
    source_count = Column(Integer, nullable=False, default=0)
    merged_data = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    projects = relationship("Announcement", back_populates="group")

    __table_args__ = (
        Index("ix_project_groups_fingerprint", "normalized_name", "normalized_org"),
    )

    def __repr__(self) -> str:
        return f"<ProjectGroup(id={self.id}, name={self.normalized_name}, status={self.review_status})>"


class Announcement(Base):
    """
    Catalog record for a support-program announcement.

    Uniqueness is keyed by (source_id, external_id); a re-crawl updates the
    mutable fields of the same row instead of inserting a duplicate.
    ``normalized_name``/``normalized_org`` form the deduplication fingerprint.
    """

    __tablename__ = "support_projects"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    source_id = Column(
        String(100), ForeignKey("crawl_sources.id", ondelete="SET NULL"), nullable=True, index=True
    )
    external_id = Column(String(255), nullable=False)

    # Core fields
    name = Column(String(500), nullable=False)
    organization = Column(String(255), nullable=False, default="미분류")
    category = Column(String(50), nullable=False, default="기타")
    sub_category = Column(String(100), nullable=True)
    target = Column(String(255), nullable=True)
    region = Column(String(50), nullable=False, default="전국")

    # Amounts and dates
    amount_min = Column(BigInteger, nullable=True)
    amount_max = Column(BigInteger, nullable=True)
    amount_description = Column(Text, nullable=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    deadline = Column(DateTime, nullable=True, index=True)
    is_permanent = Column(Boolean, nullable=False, default=False)

    # Detail page text as crawled
    detail_text = Column(Text, nullable=True)

    # AI-extracted fields
    summary = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    eligibility = Column(Text, nullable=True)
    application_process = Column(Text, nullable=True)
    evaluation_criteria = Column(Text, nullable=True)
    required_documents = Column(JSON, nullable=False, default=list)
    contact_info = Column(Text, nullable=True)
    funding_summary = Column(Text, nullable=True)
    analysis_status = Column(String(20), nullable=False, default="pending")

    # Links
    detail_url = Column(String(2048), nullable=True)
    source_url = Column(String(2048), nullable=True)

    # Deduplication
    normalized_name = Column(String(500), nullable=True, index=True)
    normalized_org = Column(String(255), nullable=True)
    project_year = Column(Integer, nullable=True)
    group_id = Column(
        UUID(), ForeignKey("project_groups.id", ondelete="SET NULL"), nullable=True, index=True
    )
    is_canonical = Column(Boolean, nullable=False, default=True)

    # Status and counters
    status = Column(String(20), nullable=False, default="active", index=True)
    view_count = Column(Integer, nullable=False, default=0)
    bookmark_count = Column(Integer, nullable=False, default=0)
    needs_embedding = Column(Boolean, nullable=False, default=True, index=True)

    crawled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    deleted_at = Column(DateTime, nullable=True)

    group = relationship("ProjectGroup", back_populates="projects")
    attachments = relationship(
        "Attachment", back_populates="project", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("source_id", "external_id", name="uq_support_projects_source_external"),
        Index("ix_support_projects_fingerprint", "normalized_name", "normalized_org"),
        Index("ix_support_projects_group_canonical", "group_id", "is_canonical"),
    )

    def __repr__(self) -> str:
        return f"<Announcement(id={self.id}, name={self.name[:40]}, status={self.status})>"


class Attachment(Base):
    """
    File linked from an announcement detail page.

    ``storage_path`` set means the bytes were retrieved and stored, so the file
    can be re-parsed without hitting the origin; ``storage_path`` null means
    only ``source_url`` is known.

    Analysis status: uploaded → analyzing → analyzed | failed
    (failed → analyzing on manual reanalysis).
    """

    __tablename__ = "project_attachments"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    project_id = Column(
        UUID(), ForeignKey("support_projects.id", ondelete="CASCADE"), nullable=False, index=True
    )

    file_name = Column(String(500), nullable=False)
    file_type = Column(String(20), nullable=False, default="other")  # hwp, hwpx, pdf, other
    mime_type = Column(String(100), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    source_url = Column(String(2048), nullable=False)
    storage_path = Column(String(1024), nullable=True)

    should_parse = Column(Boolean, nullable=False, default=False)
    parsing_priority = Column(Integer, nullable=False, default=10)
    is_parsed = Column(Boolean, nullable=False, default=False)
    parsed_content = Column(Text, nullable=True)
    parse_error = Column(Text, nullable=True)

    analysis_status = Column(String(20), nullable=False, default="uploaded", index=True)
    analysis_summary = Column(Text, nullable=True)
    analysis_data = Column(JSON, nullable=True)
    confidence_score = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    project = relationship("Announcement", back_populates="attachments")

    __table_args__ = (
        Index("ix_project_attachments_project_url", "project_id", "source_url"),
    )

    @property
    def is_stored(self) -> bool:
        return self.storage_path is not None

    def __repr__(self) -> str:
        return f"<Attachment(id={self.id}, file={self.file_name}, status={self.analysis_status})>"


# ============================================================================
# Search models
# ============================================================================


class DocumentEmbedding(Base):
    """
    Search chunk for a source (announcement, attachment, ...).

    Chunks of one (source_type, source_id) are always replaced as a whole.
    """

    __tablename__ = "document_embeddings"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    source_type = Column(String(50), nullable=False)
    source_id = Column(String(255), nullable=False)
    chunk_index = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    keywords = Column(KeywordArray(), nullable=False, default=list)
    embedding = Column(EmbeddingVector(settings.embedding_dimensions), nullable=False)
    chunk_metadata = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "source_type", "source_id", "chunk_index", name="uq_document_embeddings_chunk"
        ),
        Index("ix_document_embeddings_source", "source_type", "source_id"),
    )

    def __repr__(self) -> str:
        return f"<DocumentEmbedding({self.source_type}:{self.source_id}#{self.chunk_index})>"
