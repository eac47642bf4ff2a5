"""SQLAlchemy database models for the segment workflow core."""
from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    Boolean,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False, index=True)
    source_language = Column(String(16), nullable=False)
    target_language = Column(String(16), nullable=False)
    domain = Column(String(100))
    manager_id = Column(String(64), nullable=False)
    reviewer_ids = Column(JSON)  # List of user ids
    translator_ids = Column(JSON)  # List of user ids
    status = Column(String(32), default="pending")
    progress = Column(JSON)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    files = relationship("File", back_populates="project", cascade="all, delete-orphan")


class File(Base):
    __tablename__ = "files"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    source_language = Column(String(16))
    target_language = Column(String(16))
    status = Column(String(32), default="pending")
    progress = Column(JSON)
    error_details = Column(Text)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Foreign key
    project_id = Column(String(64), ForeignKey("projects.id"), nullable=False)

    # Relationships
    project = relationship("Project", back_populates="files")
    segments = relationship("Segment", back_populates="file", cascade="all, delete-orphan")


class Segment(Base):
    __tablename__ = "segments"

    id = Column(String(64), primary_key=True)
    project_id = Column(String(64), nullable=False)
    index = Column(Integer, nullable=False)
    source_text = Column(Text, nullable=False)
    translation = Column(Text)
    translated_length = Column(Integer)
    final_text = Column(Text)
    status = Column(String(32), default="pending", index=True)
    translation_metadata = Column(JSON)
    review_metadata = Column(JSON)
    quality_score = Column(Integer)
    reviewer_id = Column(String(64))
    translator_id = Column(String(64))
    error = Column(Text)
    translation_completed_at = Column(DateTime)
    review_completed_at = Column(DateTime)
    confirmed_at = Column(DateTime)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Foreign key
    file_id = Column(String(64), ForeignKey("files.id"), nullable=False)

    # Relationships
    file = relationship("File", back_populates="segments")
    issues = relationship(
        "SegmentIssue",
        back_populates="segment",
        cascade="all, delete-orphan",
        order_by="SegmentIssue.position_index",
    )

    __table_args__ = (
        Index("idx_segment_file_index", "file_id", "index", unique=True),
    )


class SegmentIssue(Base):
    __tablename__ = "segment_issues"

    id = Column(String(64), primary_key=True)
    position_index = Column(Integer, nullable=False)
    type = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False)
    description = Column(Text, nullable=False)
    span = Column(JSON)
    suggestion = Column(Text)
    status = Column(String(16), nullable=False, default="open")
    resolution = Column(JSON)
    ai_generated = Column(Boolean, default=False)
    created_by = Column(String(64))
    created_at = Column(DateTime, default=func.now())

    # Foreign key
    segment_id = Column(String(64), ForeignKey("segments.id"), nullable=False)

    # Relationships
    segment = relationship("Segment", back_populates="issues")


class TranslationMemory(Base):
    __tablename__ = "translation_memory"

    id = Column(String(64), primary_key=True)
    project_id = Column(String(64))
    source_language = Column(String(16), nullable=False)
    target_language = Column(String(16), nullable=False)
    source_text = Column(Text, nullable=False)
    target_text = Column(Text, nullable=False)
    usage_count = Column(Integer, default=0)
    created_by = Column(String(64))
    created_at = Column(DateTime, default=func.now())
    last_used_at = Column(DateTime)

    # Indexes for performance
    __table_args__ = (
        Index("idx_tm_source_target", "source_language", "target_language"),
        Index("idx_tm_usage_count", "usage_count"),
    )


class TermEntry(Base):
    __tablename__ = "term_entries"

    id = Column(String(64), primary_key=True)
    project_id = Column(String(64), nullable=False)
    source = Column(String(255), nullable=False)
    target = Column(String(255), nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, default=func.now())

    # Indexes
    __table_args__ = (
        Index("idx_term_project", "project_id"),
    )
