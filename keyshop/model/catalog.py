# model/catalog.py
# Brands and their plans. Read-mostly; the DB copy is always authoritative.
from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import BrandNotFound, ValidationError
from ..helpers import now_ts
from .db import Brand


def brand_to_json(b: Brand) -> Dict[str, Any]:
    return {
        "id": b.id,
        "name": b.name,
        "description": b.description,
        "plans": list(b.plans or []),
    }


async def list_brands(s: AsyncSession) -> List[Brand]:
    return list((await s.execute(select(Brand).order_by(Brand.id))).scalars())


async def get_brand(s: AsyncSession, brand_id: int) -> Optional[Brand]:
    return await s.get(Brand, brand_id)


async def add_brand(s: AsyncSession, name: str,
                    description: Optional[str] = None) -> Brand:
    brand = Brand(
        name=name.strip(),
        description=(description or "").strip() or "No description provided",
        plans=[],
        created_at=now_ts(),
    )
    s.add(brand)
    try:
        await s.flush()
    except IntegrityError:
        raise ValidationError("name", f"brand {name!r} already exists")
    return brand


async def add_plan(s: AsyncSession, brand_id: int, name: str,
                   price: float) -> Brand:
    brand = await get_brand(s, brand_id)
    if brand is None:
        raise BrandNotFound(f"brand {brand_id} not found")
    plans = list(brand.plans or [])
    if any(p.get("name") == name for p in plans):
        raise ValidationError("name", f"plan {name!r} already exists")
    # assign a new list: JSON columns do not track in-place mutation
    brand.plans = plans + [{"name": name, "price": float(price)}]
    await s.flush()
    return brand


def plan_price(brand: Brand, plan_name: str) -> Optional[float]:
    for p in brand.plans or []:
        if p.get("name") == plan_name:
            return float(p["price"])
    return None
