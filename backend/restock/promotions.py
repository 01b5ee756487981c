"""
Supplier promotion resolution.

A promotion applies to a variant on a given date when it is active and
  - links the product (and the variant, when the link names one), or
  - links the variant's brand, or
  - has no brand/product links and belongs to the variant's supplier.
Product links beat brand links beat supplier-wide scope when the same
promotion matches more than one way, since they carry the most specific
discount override.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import SupplierPromotion


@dataclass(frozen=True)
class VariantRef:
    product_id: str
    variant_id: str
    brand_id: str | None = None
    supplier_id: str | None = None
    unit_price: float = 0.0


@dataclass(frozen=True)
class ApplicablePromotion:
    promotion_id: str
    supplier_id: str
    name: str
    scope: str  # product, brand, supplier
    promotion_type: str
    discount_type: str
    discount_value: float
    discount_percent: float
    minimum_quantity: int
    start_date: datetime
    end_date: datetime
    priority: int

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["start_date"] = self.start_date.isoformat()
        data["end_date"] = self.end_date.isoformat()
        return data


def is_active(promotion: SupplierPromotion, as_of: datetime) -> bool:
    return (
        promotion.status == "active"
        and promotion.deleted_at is None
        and promotion.start_date <= as_of <= promotion.end_date
    )


def discount_percent(discount_type: str, value: float, unit_price: float) -> float:
    """Comparable percentage discount; non-monetary promotions count as 0."""
    if value is None or value <= 0:
        return 0.0
    if discount_type == "percentage":
        return round(min(value, 100.0), 2)
    if discount_type == "fixed_amount":
        if unit_price <= 0:
            return 0.0
        return round(min(100.0 * value / unit_price, 100.0), 2)
    return 0.0


def _live(links) -> list:
    return [link for link in links if link.is_active and link.deleted_at is None]


def _match(promotion: SupplierPromotion, variant: VariantRef) -> tuple[str, float | None, int | None] | None:
    product_links = _live(promotion.product_links)
    brand_links = _live(promotion.brand_links)

    for link in product_links:
        if link.product_id == variant.product_id and link.variant_id in (None, variant.variant_id):
            return "product", link.product_discount_override, link.product_minimum_quantity
    if variant.brand_id:
        for link in brand_links:
            if link.brand_id == variant.brand_id:
                return "brand", link.brand_discount_override, None
    if not product_links and not brand_links and promotion.supplier_id == variant.supplier_id:
        return "supplier", None, None
    return None


def applicable_promotions(
    variant: VariantRef,
    promotions: list[SupplierPromotion],
    as_of: datetime,
) -> list[ApplicablePromotion]:
    """Promotions that apply to the variant, best (highest discount, then priority) first."""
    matched = []
    for promotion in promotions:
        if not is_active(promotion, as_of):
            continue
        match = _match(promotion, variant)
        if match is None:
            continue
        scope, override, minimum_override = match
        value = override if override is not None else promotion.discount_value
        matched.append(
            ApplicablePromotion(
                promotion_id=str(promotion.id),
                supplier_id=promotion.supplier_id,
                name=promotion.name,
                scope=scope,
                promotion_type=promotion.promotion_type,
                discount_type=promotion.discount_type,
                discount_value=float(value or 0.0),
                discount_percent=discount_percent(promotion.discount_type, value, variant.unit_price),
                minimum_quantity=int(minimum_override or promotion.minimum_quantity or 1),
                start_date=promotion.start_date,
                end_date=promotion.end_date,
                priority=promotion.priority,
            )
        )
    matched.sort(key=lambda p: (p.discount_percent, p.priority), reverse=True)
    return matched


async def load_active_promotions(db: AsyncSession, as_of: datetime) -> list[SupplierPromotion]:
    """Active supplier promotions with their brand/product links eagerly loaded."""
    result = await db.execute(
        select(SupplierPromotion)
        .where(
            SupplierPromotion.status == "active",
            SupplierPromotion.deleted_at.is_(None),
            SupplierPromotion.start_date <= as_of,
            SupplierPromotion.end_date >= as_of,
        )
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
