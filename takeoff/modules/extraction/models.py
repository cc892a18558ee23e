"""Extraction persistence models.

ExtractionSchema rows are immutable snapshots grouped into families by
``schema_identifier``; ExtractionJob owns its data layers and results, and
its ``meta`` and ``logs`` JSON columns are written concurrently by layer
workers (see ``jobs.merge_job_meta`` / ``jobs.append_job_log``).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from takeoff.core.database import Base, JSONType


def _uuid() -> str:
    return str(uuid.uuid4())


class ExtractionSchema(Base):
    """One immutable version of an organization's extraction schema."""

    __tablename__ = "extraction_schemas"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    schema_identifier: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    definition: Mapped[dict] = mapped_column(JSONType, nullable=False)
    compiled_json_schema: Mapped[dict] = mapped_column(JSONType, nullable=False)
    prompt: Mapped[Optional[str]] = mapped_column(Text)
    examples: Mapped[Optional[list]] = mapped_column(JSONType, default=list)
    agents: Mapped[Optional[list]] = mapped_column(JSONType, default=list)
    change_description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "schema_identifier", "version",
            name="uq_extraction_schemas_org_identifier_version",
        ),
        UniqueConstraint(
            "organization_id", "name", "version",
            name="uq_extraction_schemas_org_name_version",
        ),
        Index("idx_extraction_schemas_family", "organization_id", "schema_identifier"),
    )


class ExtractionJob(Base):
    """A run of one schema over one or more data layers."""

    __tablename__ = "extraction_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    schema_id: Mapped[Optional[str]] = mapped_column(String(36))
    initiated_by: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="queued"
    )  # queued | running | completed | failed | cancelled
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meta: Mapped[Optional[dict]] = mapped_column(JSONType, default=dict)
    logs: Mapped[Optional[list]] = mapped_column(JSONType, default=list)
    compiled_json_schema: Mapped[Optional[dict]] = mapped_column(JSONType)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_extraction_jobs_org", "organization_id"),
        Index("idx_extraction_jobs_schema", "schema_id"),
    )


class JobDataLayer(Base):
    """One input document of a job with its own sub-status."""

    __tablename__ = "extraction_job_data_layers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("extraction_jobs.id", ondelete="CASCADE"), nullable=False
    )
    data_layer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    processing_order: Mapped[int] = mapped_column(Integer, nullable=False)
    sub_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending | processing | completed | failed
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("job_id", "data_layer_id", name="uq_job_data_layers_job_layer"),
    )


class ExtractionResult(Base):
    """One extracted record with its evidence and review state."""

    __tablename__ = "extraction_results"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("extraction_jobs.id", ondelete="CASCADE"), nullable=False
    )
    page_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    raw_extraction: Mapped[dict] = mapped_column(JSONType, nullable=False)
    verified_data: Mapped[Optional[dict]] = mapped_column(JSONType)
    evidence: Mapped[dict] = mapped_column(JSONType, nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending | accepted | rejected | edited
    verified_by: Mapped[Optional[str]] = mapped_column(String(64))
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    agent_execution_metadata: Mapped[Optional[list]] = mapped_column(JSONType)
    source_data_layer_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_extraction_results_job_page", "job_id", "page_number"),
    )
