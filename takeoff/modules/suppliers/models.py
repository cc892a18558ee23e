from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from takeoff.core.database import Base, JSONType


def _uuid() -> str:
    return str(uuid.uuid4())


class Supplier(Base):
    """An organization's supplier and the materials it offers."""

    __tablename__ = "suppliers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    contact_name: Mapped[Optional[str]] = mapped_column(String(200))
    contact_email: Mapped[Optional[str]] = mapped_column(String(320))
    contact_phone: Mapped[Optional[str]] = mapped_column(String(50))
    materials_offered: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    meta: Mapped[Optional[dict]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SupplierMatch(Base):
    """A scored (result, supplier) candidate; at most one selected per result."""

    __tablename__ = "supplier_matches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    extraction_result_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("extraction_results.id", ondelete="CASCADE"), nullable=False
    )
    supplier_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False
    )
    confidence_score: Mapped[Optional[float]] = mapped_column(Float)
    match_reason: Mapped[Optional[str]] = mapped_column(Text)
    match_metadata: Mapped[Optional[dict]] = mapped_column(JSONType, default=dict)
    is_selected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    selected_by: Mapped[Optional[str]] = mapped_column(String(64))
    selected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "extraction_result_id", "supplier_id", name="uq_supplier_matches_result_supplier"
        ),
        Index("idx_supplier_matches_supplier", "supplier_id"),
        # one selected row per result
        Index(
            "uq_supplier_matches_one_selected",
            "extraction_result_id",
            unique=True,
            postgresql_where=text("is_selected"),
            sqlite_where=text("is_selected"),
        ),
    )
