"""Supplier catalog — create, list and look up an organization's suppliers."""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from takeoff.core.exceptions import NotFoundError, ValidationError
from takeoff.modules.suppliers.models import Supplier

logger = structlog.get_logger()


async def create_supplier(
    db: AsyncSession,
    organization_id: str,
    name: str,
    materials_offered: list[str] | None = None,
    contact_name: str | None = None,
    contact_email: str | None = None,
    contact_phone: str | None = None,
    meta: dict[str, Any] | None = None,
) -> Supplier:
    if not name or not name.strip():
        raise ValidationError("Supplier name is required")

    supplier = Supplier(
        organization_id=organization_id,
        name=name.strip(),
        materials_offered=[m.strip() for m in (materials_offered or []) if m and m.strip()],
        contact_name=contact_name,
        contact_email=contact_email,
        contact_phone=contact_phone,
        meta=meta or {},
    )
    db.add(supplier)
    await db.commit()
    await db.refresh(supplier)
    logger.info(
        "Supplier created",
        supplier_id=supplier.id,
        organization_id=organization_id,
        materials=len(supplier.materials_offered),
    )
    return supplier


async def list_suppliers(db: AsyncSession, organization_id: str) -> list[Supplier]:
    query = (
        select(Supplier)
        .where(Supplier.organization_id == organization_id)
        .order_by(Supplier.name, Supplier.id)
    )
    return list((await db.execute(query)).scalars().all())


async def get_supplier(db: AsyncSession, supplier_id: str) -> Supplier:
    supplier = await db.get(Supplier, supplier_id)
    if supplier is None:
        raise NotFoundError(f"Supplier not found: {supplier_id}", {"supplier_id": supplier_id})
    return supplier
