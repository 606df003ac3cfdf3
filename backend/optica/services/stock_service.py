# Overview: Service-layer operations for stock counters; encapsulates business logic and database work.

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func

from ..extensions import db
from ..errors import NotFoundError, ValidationError, ZoneNotStockedError, ZoneRequiredError
from ..models import Product, Variant, Measure, ZoneStock, Zone
from . import movement_service
from .concurrency import begin_write, lock_for_update, run_with_retry
"""
Stock Ledger Invariants (authoritative)

Stock shapes:
- Product.stock_general is the counter for products without variants/measures.
- Variants and measures hold one ZoneStock row per zone (stock + price).
- A product is zone-subdivided when any of its variants or measures has a
  ZoneStock row; its stock_general is then the recomputed SUM of those rows
  and is never decremented directly.

Decrement policy:
- Floor at zero: new = max(0, current - quantity). Oversell is accepted and
  leaves stock at exactly 0, never negative.
- A zoned decrement without a zone raises ZoneRequiredError; a zone the item
  is not stocked in raises ZoneNotStockedError.

Aggregates:
- After any variant/measure stock change the owning product's stock_general
  is recomputed in the same transaction.
"""


KIND_PRODUCT = "product"
KIND_VARIANT = "variant"
KIND_MEASURE = "measure"


def _positive_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return value


def _non_negative_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer")
    return value


# =============================================================================
# STOCK-BEARING ENTITIES
# =============================================================================

@dataclass
class StockChange:
    kind: str
    entity_id: int
    product_id: int
    zone_id: int | None
    quantity: int
    before: int
    after: int

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "entity_id": self.entity_id,
            "product_id": self.product_id,
            "zone_id": self.zone_id,
            "quantity": self.quantity,
            "before": self.before,
            "after": self.after,
        }


class StockBearing:
    """Something that holds stock and can be decremented in place."""
    kind: str = ""

    def __init__(self, entity):
        self.entity = entity

    @property
    def product_id(self) -> int:
        raise NotImplementedError

    def key(self, zone_id: int | None) -> tuple:
        return (self.kind, self.entity.id, zone_id)

    def current(self, zone_id: int | None) -> int:
        raise NotImplementedError

    def _write(self, zone_id: int | None, value: int) -> None:
        raise NotImplementedError

    def decrement(self, zone_id: int | None, quantity: int) -> int:
        _positive_int(quantity, "quantity")
        value = max(0, self.current(zone_id) - quantity)
        self._write(zone_id, value)
        return value

    def increment(self, zone_id: int | None, quantity: int) -> int:
        _positive_int(quantity, "quantity")
        value = self.current(zone_id) + quantity
        self._write(zone_id, value)
        return value


class ScalarStock(StockBearing):
    """Product-level counter (stock_general) of a product with no zones."""
    kind = KIND_PRODUCT

    @property
    def product_id(self) -> int:
        return self.entity.id

    def key(self, zone_id):
        return (self.kind, self.entity.id, None)

    def current(self, zone_id):
        return self.entity.stock_general or 0

    def _write(self, zone_id, value):
        self.entity.stock_general = value


class ZonedStock(StockBearing):
    """Per-zone counters of a Variant or a Measure."""

    def __init__(self, entity):
        super().__init__(entity)
        self.kind = KIND_MEASURE if isinstance(entity, Measure) else KIND_VARIANT
        self._rows: dict[int, ZoneStock] = {}

    @property
    def product_id(self) -> int:
        return self.entity.product_id

    def zone_stock(self, zone_id: int | None) -> ZoneStock:
        if zone_id is None:
            raise ZoneRequiredError(
                f"zone_id is required for {self.kind} {self.entity.code}",
                details={"kind": self.kind, "entity_id": self.entity.id},
            )
        if zone_id in self._rows:
            return self._rows[zone_id]

        owner_column = ZoneStock.measure_id if self.kind == KIND_MEASURE else ZoneStock.variant_id
        row = (
            lock_for_update(
                db.session.query(ZoneStock).filter(
                    owner_column == self.entity.id,
                    ZoneStock.zone_id == zone_id,
                )
            )
            .populate_existing()
            .first()
        )
        if row is None:
            raise ZoneNotStockedError(
                f"{self.kind.capitalize()} {self.entity.code} has no stock in zone {zone_id}",
                details={"kind": self.kind, "entity_id": self.entity.id, "zone_id": zone_id},
            )
        self._rows[zone_id] = row
        return row

    def current(self, zone_id):
        return self.zone_stock(zone_id).stock

    def _write(self, zone_id, value):
        self.zone_stock(zone_id).stock = value


def is_zone_subdivided(product: Product) -> bool:
    """True when any variant or measure of the product is stocked per zone."""
    return any(v.zone_stocks for v in product.variants) or any(m.zone_stocks for m in product.measures)


def is_service_product(product: Product) -> bool:
    """Products with nothing to count (no variants, no measures, zero stock)."""
    return not product.variants and not product.measures and (product.stock_general or 0) == 0


def stock_bearing_for(
    product: Product,
    variant: Variant | None = None,
    measure: Measure | None = None,
    zone_subdivided: bool | None = None,
) -> StockBearing | None:
    """
    Pick the counter a sale line draws from.

    Measure wins over variant; products that are not zone-subdivided use
    their scalar counter; service products have none (None).
    """
    if zone_subdivided is None:
        zone_subdivided = is_zone_subdivided(product)
    if zone_subdivided:
        if measure is not None:
            return ZonedStock(measure)
        if variant is not None:
            return ZonedStock(variant)
        raise ValidationError(
            f"Product {product.code} is stocked per variant/measure; "
            "a variant_id or measure_id is required",
            details={"product_id": product.id},
        )
    if is_service_product(product):
        return None
    return ScalarStock(product)


# =============================================================================
# RESERVATION (SALE DECREMENTS)
# =============================================================================

@dataclass
class StockRequest:
    bearing: StockBearing
    zone_id: int | None
    quantity: int


def reserve(requests: list[StockRequest]) -> list[StockChange]:
    """
    Apply the stock decrements of one sale.

    Requests touching the same counter (same entity and zone) are merged and
    applied once, so two lines hitting one measure combine their quantities
    against a single locked read. Zone-subdivided products get their
    aggregate recomputed afterwards. No commit here.
    """
    merged: dict[tuple, StockRequest] = {}
    order: list[tuple] = []
    for req in requests:
        key = req.bearing.key(req.zone_id)
        if key in merged:
            merged[key].quantity += req.quantity
        else:
            merged[key] = StockRequest(bearing=req.bearing, zone_id=req.zone_id, quantity=req.quantity)
            order.append(key)

    changes = []
    zoned_products: set[int] = set()
    for key in order:
        req = merged[key]
        before = req.bearing.current(req.zone_id)
        after = req.bearing.decrement(req.zone_id, req.quantity)
        changes.append(
            StockChange(
                kind=req.bearing.kind,
                entity_id=req.bearing.entity.id,
                product_id=req.bearing.product_id,
                zone_id=None if req.bearing.kind == KIND_PRODUCT else req.zone_id,
                quantity=req.quantity,
                before=before,
                after=after,
            )
        )
        if req.bearing.kind != KIND_PRODUCT:
            zoned_products.add(req.bearing.product_id)

    db.session.flush()
    for product_id in sorted(zoned_products):
        recompute_product_stock(product_id)
    return changes


def restore(line) -> StockChange | None:
    """
    Give back the stock a sale line took (admin sale deletion).

    A zone tuple removed since the sale is re-created at the line's price so
    the units are not lost. No commit here; caller recomputes aggregates.
    """
    if line.stock_source is None:
        return None

    if line.stock_source == KIND_PRODUCT:
        product = lock_for_update(db.session.query(Product).filter_by(id=line.product_id)).first()
        if product is None:
            return None
        bearing = ScalarStock(product)
        zone_id = None
    else:
        entity = line.measure if line.stock_source == KIND_MEASURE else line.variant
        if entity is None:
            return None
        bearing = ZonedStock(entity)
        zone_id = line.zone_id
        try:
            bearing.zone_stock(zone_id)
        except ZoneNotStockedError:
            row = ZoneStock(zone_id=zone_id, stock=0, price_cents=line.unit_price_cents)
            entity.zone_stocks.append(row)
            db.session.flush()
            bearing = ZonedStock(entity)

    # The full line quantity comes back even when the zero floor took fewer
    # units, so deleting an oversold sale leaves more stock than it found.
    before = bearing.current(zone_id)
    after = bearing.increment(zone_id, line.quantity)
    return StockChange(
        kind=bearing.kind,
        entity_id=bearing.entity.id,
        product_id=bearing.product_id,
        zone_id=zone_id,
        quantity=line.quantity,
        before=before,
        after=after,
    )


def recompute_product_stock(product_id: int) -> int:
    """
    Set Product.stock_general to the SUM of all its variant and measure zone stocks.

    Recomputed from rows, never adjusted incrementally.
    """
    variant_total = (
        db.session.query(func.coalesce(func.sum(ZoneStock.stock), 0))
        .join(Variant, ZoneStock.variant_id == Variant.id)
        .filter(Variant.product_id == product_id)
        .scalar()
    )
    measure_total = (
        db.session.query(func.coalesce(func.sum(ZoneStock.stock), 0))
        .join(Measure, ZoneStock.measure_id == Measure.id)
        .filter(Measure.product_id == product_id)
        .scalar()
    )
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    product.stock_general = int(variant_total or 0) + int(measure_total or 0)
    db.session.flush()
    return product.stock_general


# =============================================================================
# STOCK MAINTENANCE (INITIAL / ADJUST / REMOVE)
# =============================================================================

def _load_zoned_entity(kind: str, entity_id: int):
    if kind == KIND_VARIANT:
        model = Variant
    elif kind == KIND_MEASURE:
        model = Measure
    else:
        raise ValidationError(f"Invalid stock kind: {kind}. Must be one of ['variant', 'measure']")
    entity = db.session.get(model, entity_id)
    if entity is None:
        raise NotFoundError(f"{kind.capitalize()} {entity_id} not found")
    return entity


def _reference_type(kind: str) -> str:
    return movement_service.REFERENCE_MEASURE if kind == KIND_MEASURE else movement_service.REFERENCE_VARIANT


def _entity_ids(kind: str, entity) -> dict:
    if kind == KIND_MEASURE:
        return {"product_id": entity.product_id, "measure_id": entity.id}
    return {"product_id": entity.product_id, "variant_id": entity.id}


def _reference_tag(kind: str, entity, suffix: str = "") -> str:
    prefix = "MEA" if kind == KIND_MEASURE else "VAR"
    return f"{prefix}{suffix}-{entity.id:06d}"


def add_zone_stock(
    kind: str,
    entity_id: int,
    zone_id: int,
    stock: int,
    price_cents: int,
    actor_user_id: int | None = None,
) -> ZoneStock:
    """Stock a variant/measure in a new zone; records the initial income movement."""
    def _op():
        _positive_int(zone_id, "zone_id")
        _non_negative_int(stock, "stock")
        _non_negative_int(price_cents, "price_cents")

        begin_write()
        entity = _load_zoned_entity(kind, entity_id)
        zone = db.session.get(Zone, zone_id)
        if zone is None:
            raise NotFoundError(f"Zone {zone_id} not found")
        if any(zs.zone_id == zone_id for zs in entity.zone_stocks):
            raise ValidationError(
                f"{kind.capitalize()} {entity.code} is already stocked in zone {zone.code}",
                details={"zone_id": zone_id},
            )

        row = ZoneStock(zone_id=zone_id, stock=stock, price_cents=price_cents)
        entity.zone_stocks.append(row)
        db.session.flush()

        if stock > 0:
            movement_service.record(
                reference_type=_reference_type(kind),
                movement_type="income",
                sub_type="initial",
                quantity=stock,
                zone_id=zone_id,
                actor_user_id=actor_user_id,
                related_document_type=kind,
                related_document_reference=_reference_tag(kind, entity),
                note=f"Stock inicial de {kind} {entity.code} en zona {zone.code}",
                **_entity_ids(kind, entity),
            )

        recompute_product_stock(entity.product_id)
        db.session.commit()
        return row

    return run_with_retry(_op)


def set_zone_stock(
    kind: str,
    entity_id: int,
    zone_id: int,
    stock: int,
    price_cents: int | None = None,
    actor_user_id: int | None = None,
) -> ZoneStock:
    """Overwrite a zone's count (and optionally price); records the difference as an adjustment."""
    def _op():
        _non_negative_int(stock, "stock")
        if price_cents is not None:
            _non_negative_int(price_cents, "price_cents")

        begin_write()
        entity = _load_zoned_entity(kind, entity_id)
        row = ZonedStock(entity).zone_stock(zone_id)
        old_stock = row.stock
        row.stock = stock
        if price_cents is not None:
            row.price_cents = price_cents
        db.session.flush()

        difference = stock - old_stock
        if difference:
            movement_service.record(
                reference_type=_reference_type(kind),
                movement_type="income" if difference > 0 else "outflow",
                sub_type="adjustment",
                quantity=abs(difference),
                zone_id=zone_id,
                actor_user_id=actor_user_id,
                related_document_type="inventory",
                related_document_reference=_reference_tag(kind, entity, "-ADJ"),
                note=f"Ajuste de {kind} {entity.code} en zona {row.zone.code} ({old_stock} -> {stock})",
                is_adjustment=True,
                **_entity_ids(kind, entity),
            )

        recompute_product_stock(entity.product_id)
        db.session.commit()
        return row

    return run_with_retry(_op)


def remove_zone_stock(
    kind: str,
    entity_id: int,
    zone_id: int,
    actor_user_id: int | None = None,
) -> None:
    """Drop a zone tuple; any remaining units leave as an adjustment outflow."""
    def _op():
        begin_write()
        entity = _load_zoned_entity(kind, entity_id)
        row = ZonedStock(entity).zone_stock(zone_id)
        zone_code = row.zone.code

        if row.stock > 0:
            movement_service.record(
                reference_type=_reference_type(kind),
                movement_type="outflow",
                sub_type="adjustment",
                quantity=row.stock,
                zone_id=zone_id,
                actor_user_id=actor_user_id,
                related_document_type="inventory",
                related_document_reference=_reference_tag(kind, entity, "-DEL"),
                note=f"Retiro de {kind} {entity.code} de zona {zone_code}",
                is_adjustment=True,
                **_entity_ids(kind, entity),
            )

        entity.zone_stocks.remove(row)
        db.session.flush()
        recompute_product_stock(entity.product_id)
        db.session.commit()

    return run_with_retry(_op)


def set_product_stock(product_id: int, stock: int, actor_user_id: int | None = None) -> Product:
    """Overwrite the scalar counter of a product that has no zone subdivision."""
    def _op():
        _non_negative_int(stock, "stock")

        begin_write()
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        if is_zone_subdivided(product):
            raise ValidationError(
                f"Product {product.code} is stocked per zone; adjust its variants or measures",
                details={"product_id": product_id},
            )

        old_stock = product.stock_general or 0
        product.stock_general = stock
        difference = stock - old_stock
        if difference:
            movement_service.record(
                reference_type=movement_service.REFERENCE_PRODUCT,
                product_id=product.id,
                movement_type="income" if difference > 0 else "outflow",
                sub_type="adjustment",
                quantity=abs(difference),
                actor_user_id=actor_user_id,
                related_document_type="inventory",
                related_document_reference=f"PRD-ADJ-{product.id:06d}",
                note=f"Ajuste de producto {product.code} ({old_stock} -> {stock})",
                is_adjustment=True,
            )

        db.session.commit()
        return product

    return run_with_retry(_op)
