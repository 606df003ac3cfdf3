# Overview: Service-layer operations for line pricing; encapsulates business logic and database work.

from __future__ import annotations

from ..models import Product, Variant, Measure
from .stock_service import ZonedStock, is_zone_subdivided


def resolve_price(
    product: Product,
    variant: Variant | None = None,
    measure: Measure | None = None,
    zone_id: int | None = None,
    zone_subdivided: bool | None = None,
) -> int:
    """
    Unit price (cents) of one sale line.

    Order of precedence:
    1. measure zone price, when the product is zone-subdivided
    2. variant zone price, same condition
    3. the product's flat unit_price_cents (0 when unset)

    Raises ZoneRequiredError / ZoneNotStockedError for a zoned item without a
    zone or priced in a zone it is not stocked in. Client-supplied prices are
    never consulted.
    """
    if zone_subdivided is None:
        zone_subdivided = is_zone_subdivided(product)

    if zone_subdivided:
        entity = measure if measure is not None else variant
        if entity is not None:
            return ZonedStock(entity).zone_stock(zone_id).price_cents or 0

    return product.unit_price_cents or 0
