"""
Sales Service - one-shot sale assembly

WHY: An optical sale is recorded whole: the counter staff submit patient,
lines and any deposit together, and the sale either exists completely (OT
number, priced lines, stock taken, movements written, payments applied,
pickup slip linked) or not at all.

ASSEMBLY STAGES:
  VALIDATING -> NUMBERING -> RESOLVING_LINES -> RESERVING_STOCK ->
  RECORDING_MOVEMENTS -> PERSISTING_SALE -> RECONCILING_PAYMENTS ->
  LINKING_DEPENDENT_RECORD -> DONE
Any stage may end in FAILED; the error carries the stage in details["stage"]
and the whole transaction is rolled back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from flask import current_app

from ..extensions import db
from ..errors import ForbiddenFieldError, NotFoundError, OpticaError, ValidationError, ZoneRequiredError
from ..models import Sale, SaleLine, Patient, Store, Product, Variant, Measure, Zone, User
from ..models.sales import DELIVERY_AT_STORE, DELIVERY_DELIVERED, DELIVERY_STATES
from optica.time_utils import utcnow
from . import movement_service, stock_service
from .concurrency import begin_write, lock_for_update, run_with_retry
from .payment_service import PaymentInput, apply_payment, percent_of, validate_payment
from .pickup_service import link_pickup, mirror_delivery_state
from .pricing_service import resolve_price
from .sequence_service import next_ot_number


class SaleStage(str, Enum):
    VALIDATING = "VALIDATING"
    NUMBERING = "NUMBERING"
    RESOLVING_LINES = "RESOLVING_LINES"
    RESERVING_STOCK = "RESERVING_STOCK"
    RECORDING_MOVEMENTS = "RECORDING_MOVEMENTS"
    PERSISTING_SALE = "PERSISTING_SALE"
    RECONCILING_PAYMENTS = "RECONCILING_PAYMENTS"
    LINKING_DEPENDENT_RECORD = "LINKING_DEPENDENT_RECORD"
    DONE = "DONE"
    FAILED = "FAILED"


# Always derived on the server; a client sending any of these is rejected
FORBIDDEN_SALE_FIELDS = [
    "ot_number",
    "ot",
    "total_cents",
    "total",
    "total_paid_cents",
    "balance_cents",
    "balance",
    "percent_paid",
]
FORBIDDEN_ITEM_FIELDS = ["unit_price_cents", "unit_price", "line_total_cents"]

NAME_MAX_LENGTH = 120


# =============================================================================
# REQUEST VALIDATION
# =============================================================================

@dataclass
class LineRequest:
    product_id: int
    quantity: int
    variant_id: int | None = None
    measure_id: int | None = None
    zone_id: int | None = None


@dataclass
class SaleRequest:
    patient_id: int
    store_id: int
    items: list[LineRequest]
    payments: list[PaymentInput] = field(default_factory=list)
    salesperson: str | None = None
    optometrist: str | None = None
    delivery_state: str = DELIVERY_AT_STORE


def _parse_id(value, field_name: str, required: bool = True) -> int | None:
    """Accept an int or a plain digit string; reject bools, floats and junk."""
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field_name} is required", details={"field": field_name})
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a valid identifier", details={"field": field_name})
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise ValidationError(f"{field_name} must be a valid identifier", details={"field": field_name})
    if parsed <= 0:
        raise ValidationError(f"{field_name} must be a valid identifier", details={"field": field_name})
    return parsed


def _optional_name(value, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", details={"field": field_name})
    return value.strip()[:NAME_MAX_LENGTH] or None


def validate_sale_request(payload) -> SaleRequest:
    """Shape checks only; touches no storage."""
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    forbidden = [name for name in FORBIDDEN_SALE_FIELDS if name in payload]
    if forbidden:
        raise ForbiddenFieldError(forbidden)

    patient_id = _parse_id(payload.get("patient_id"), "patient_id")
    store_id = _parse_id(payload.get("store_id"), "store_id")

    raw_items = payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list", details={"field": "items"})

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object", details={"index": index})
        forbidden = [name for name in FORBIDDEN_ITEM_FIELDS if name in raw]
        if forbidden:
            raise ForbiddenFieldError(forbidden, details={"index": index})

        quantity = raw.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(
                f"items[{index}].quantity must be a positive integer",
                details={"index": index, "field": "quantity"},
            )
        items.append(
            LineRequest(
                product_id=_parse_id(raw.get("product_id"), f"items[{index}].product_id"),
                quantity=quantity,
                variant_id=_parse_id(raw.get("variant_id"), f"items[{index}].variant_id", required=False),
                measure_id=_parse_id(raw.get("measure_id"), f"items[{index}].measure_id", required=False),
                zone_id=_parse_id(raw.get("zone_id"), f"items[{index}].zone_id", required=False),
            )
        )

    raw_payments = payload.get("payments") or []
    if not isinstance(raw_payments, list):
        raise ValidationError("payments must be a list", details={"field": "payments"})
    payments = [validate_payment(p) for p in raw_payments]

    delivery_state = payload.get("delivery_state") or DELIVERY_AT_STORE
    if delivery_state not in DELIVERY_STATES:
        raise ValidationError(
            f"Invalid delivery_state: {delivery_state}. Must be one of {DELIVERY_STATES}",
            details={"field": "delivery_state"},
        )

    return SaleRequest(
        patient_id=patient_id,
        store_id=store_id,
        items=items,
        payments=payments,
        salesperson=_optional_name(payload.get("salesperson"), "salesperson"),
        optometrist=_optional_name(payload.get("optometrist"), "optometrist"),
        delivery_state=delivery_state,
    )


# =============================================================================
# LINE RESOLUTION
# =============================================================================

def _load_child(model, entity_id: int | None, product: Product, label: str):
    if entity_id is None:
        return None
    entity = db.session.get(model, entity_id)
    if entity is None or entity.product_id != product.id:
        raise NotFoundError(
            f"{label} {entity_id} not found for product {product.code}",
            details={f"{label.lower()}_id": entity_id, "product_id": product.id},
        )
    return entity


def _resolve_line(item: LineRequest) -> tuple[SaleLine, stock_service.StockRequest | None]:
    product = db.session.get(Product, item.product_id)
    if product is None:
        raise NotFoundError(f"Product {item.product_id} not found", details={"product_id": item.product_id})

    variant = _load_child(Variant, item.variant_id, product, "Variant")
    measure = _load_child(Measure, item.measure_id, product, "Measure")

    zone_subdivided = stock_service.is_zone_subdivided(product)
    zone_id = None
    if zone_subdivided:
        if item.zone_id is None:
            raise ZoneRequiredError(
                f"zone_id is required for product {product.code}",
                details={"product_id": product.id},
            )
        if db.session.get(Zone, item.zone_id) is None:
            raise NotFoundError(f"Zone {item.zone_id} not found", details={"zone_id": item.zone_id})
        zone_id = item.zone_id

    bearing = stock_service.stock_bearing_for(product, variant, measure, zone_subdivided)
    unit_price = resolve_price(product, variant, measure, zone_id, zone_subdivided)

    line = SaleLine(
        product=product,
        product_id=product.id,
        variant=variant,
        variant_id=variant.id if variant is not None else None,
        measure=measure,
        measure_id=measure.id if measure is not None else None,
        zone_id=zone_id,
        quantity=item.quantity,
        unit_price_cents=unit_price,
        line_total_cents=unit_price * item.quantity,
        stock_source=bearing.kind if bearing is not None else None,
    )
    if bearing is None:
        return line, None
    return line, stock_service.StockRequest(bearing=bearing, zone_id=zone_id, quantity=item.quantity)


# =============================================================================
# SALE CREATION
# =============================================================================

class _StageTracker:
    def __init__(self):
        self.current = SaleStage.VALIDATING

    def enter(self, stage: SaleStage) -> None:
        current_app.logger.debug("Sale assembly: %s -> %s", self.current.value, stage.value)
        self.current = stage


def create_sale(payload, actor_user_id: int | None = None) -> Sale:
    """
    Assemble and persist a complete sale in one transaction.

    Payload: {patient_id, store_id, items: [{product_id, variant_id?,
    measure_id?, zone_id?, quantity}], salesperson?, optometrist?,
    delivery_state?, payments?: [{amount_cents, method, receipt_ref?}]}

    Raises:
        ValidationError / ForbiddenFieldError: malformed request
        NotFoundError: unknown patient, store, product, variant, measure or zone
        ZoneRequiredError / ZoneNotStockedError: zone mismatch on a line
        AmountExceedsTotalError: payments exceed the computed total
        ConcurrencyConflictError: retries exhausted
    """
    def _op():
        stages = _StageTracker()
        try:
            request = validate_sale_request(payload)

            begin_write()
            patient = db.session.get(Patient, request.patient_id)
            if patient is None:
                raise NotFoundError(
                    f"Patient {request.patient_id} not found",
                    details={"patient_id": request.patient_id},
                )
            store = db.session.get(Store, request.store_id)
            if store is None:
                raise NotFoundError(
                    f"Store {request.store_id} not found",
                    details={"store_id": request.store_id},
                )

            stages.enter(SaleStage.NUMBERING)
            ot_number = next_ot_number()

            stages.enter(SaleStage.RESOLVING_LINES)
            lines: list[SaleLine] = []
            stock_requests = []
            for item in request.items:
                line, stock_request = _resolve_line(item)
                lines.append(line)
                if stock_request is not None:
                    stock_requests.append(stock_request)
            total_cents = sum(line.line_total_cents for line in lines)

            stages.enter(SaleStage.RESERVING_STOCK)
            stock_service.reserve(stock_requests)

            stages.enter(SaleStage.RECORDING_MOVEMENTS)
            salesperson = request.salesperson
            if salesperson is None and actor_user_id is not None:
                actor = db.session.get(User, actor_user_id)
                salesperson = actor.name if actor is not None else None

            sold_at = utcnow()
            sale = Sale(
                ot_number=ot_number,
                store_id=store.id,
                patient_id=patient.id,
                customer_name=patient.full_name,
                salesperson=salesperson,
                optometrist=request.optometrist,
                created_by_user_id=actor_user_id,
                total_cents=total_cents,
                total_paid_cents=0,
                balance_cents=total_cents,
                percent_paid=percent_of(0, total_cents),
                delivery_state=request.delivery_state,
                sold_at=sold_at,
            )
            if request.delivery_state == DELIVERY_DELIVERED:
                sale.delivered_at = sold_at
            # Flushed now so movements can carry the sale id; invisible until commit
            db.session.add(sale)
            db.session.flush()
            movement_service.record_sale_movements(sale, lines, actor_user_id)

            stages.enter(SaleStage.PERSISTING_SALE)
            for line in lines:
                sale.lines.append(line)
            if total_cents == 0:
                sale.cancelled_at = sold_at
            db.session.flush()

            stages.enter(SaleStage.RECONCILING_PAYMENTS)
            applied = []
            for payment_input in request.payments:
                payment, _ = apply_payment(sale, payment_input, actor_user_id=actor_user_id)
                applied.append(payment)

            stages.enter(SaleStage.LINKING_DEPENDENT_RECORD)
            if applied:
                link_pickup(sale, applied)

            db.session.commit()
            stages.enter(SaleStage.DONE)
        except OpticaError as exc:
            exc.details.setdefault("stage", stages.current.value)
            current_app.logger.debug("Sale assembly failed at %s: %s", stages.current.value, exc)
            raise

        current_app.logger.info(
            "Sale OT %s created: total=%s paid=%s balance=%s lines=%s",
            sale.ot_number,
            sale.total_cents,
            sale.total_paid_cents,
            sale.balance_cents,
            len(sale.lines),
        )
        return sale

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found")
    return sale


def list_sales(
    store_id: int | None = None,
    delivery_state: str | None = None,
    patient_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Sale], int]:
    """Sales newest first, with the total count for pagination."""
    if delivery_state is not None and delivery_state not in DELIVERY_STATES:
        raise ValidationError(f"Invalid delivery_state: {delivery_state}. Must be one of {DELIVERY_STATES}")

    q = db.session.query(Sale)
    if store_id is not None:
        q = q.filter(Sale.store_id == store_id)
    if delivery_state is not None:
        q = q.filter(Sale.delivery_state == delivery_state)
    if patient_id is not None:
        q = q.filter(Sale.patient_id == patient_id)
    if date_from is not None:
        q = q.filter(Sale.sold_at >= date_from)
    if date_to is not None:
        q = q.filter(Sale.sold_at <= date_to)

    total = q.count()
    items = q.order_by(Sale.sold_at.desc(), Sale.id.desc()).limit(limit).offset(offset).all()
    return items, total


def get_sale_movements(sale_id: int, start: datetime | None = None, end: datetime | None = None):
    """Movements of a sale; still available after the sale is deleted."""
    return movement_service.find_by_reference(movement_service.REFERENCE_SALE, sale_id, start, end)


# =============================================================================
# EDITING
# =============================================================================

SALE_EDITABLE_FIELDS = ["salesperson", "optometrist"]

# Owned by the sale flow itself; never edited directly
SALE_LOCKED_FIELDS = FORBIDDEN_SALE_FIELDS + ["payments", "pickups", "pickup_ids", "items", "lines"]


def update_sale(sale_id: int, payload, actor_user_id: int | None = None) -> Sale:
    """
    Edit the staff names on a sale.

    Numbering, lines, payments, balance, percent and pickup slips are locked
    (ForbiddenFieldError). Delivery goes through update_delivery_state.
    """
    def _op():
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")

        locked = [name for name in SALE_LOCKED_FIELDS if name in payload]
        if locked:
            raise ForbiddenFieldError(locked)
        unknown = sorted(name for name in payload if name not in SALE_EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Fields not editable: {', '.join(unknown)}",
                details={"fields": unknown, "editable": SALE_EDITABLE_FIELDS},
            )
        if not payload:
            raise ValidationError("Nothing to update", details={"editable": SALE_EDITABLE_FIELDS})

        changes = {name: _optional_name(payload[name], name) for name in SALE_EDITABLE_FIELDS if name in payload}

        begin_write()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise NotFoundError(f"Sale {sale_id} not found")

        for name, value in changes.items():
            setattr(sale, name, value)
        db.session.commit()

        current_app.logger.info(
            "Sale OT %s updated by user %s: %s",
            sale.ot_number,
            actor_user_id,
            ", ".join(sorted(changes)),
        )
        return sale

    return run_with_retry(_op)


# =============================================================================
# DELIVERY
# =============================================================================

def update_delivery_state(
    sale_id: int,
    delivery_state: str,
    received_by: str | None = None,
    delivered_by: str | None = None,
    actor_user_id: int | None = None,
) -> Sale:
    """
    Move a sale between AT_STORE / AT_LAB / DELIVERED and mirror it onto its
    pickup slips. DELIVERED stamps the confirmation block; leaving DELIVERED
    clears it.
    """
    def _op():
        if delivery_state not in DELIVERY_STATES:
            raise ValidationError(
                f"Invalid delivery_state: {delivery_state}. Must be one of {DELIVERY_STATES}",
                details={"field": "delivery_state"},
            )

        begin_write()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise NotFoundError(f"Sale {sale_id} not found")

        previous = sale.delivery_state
        sale.delivery_state = delivery_state
        if delivery_state == DELIVERY_DELIVERED:
            sale.delivered_at = utcnow()
            sale.received_by = _optional_name(received_by, "received_by")
            sale.delivered_by = _optional_name(delivered_by, "delivered_by")
        else:
            sale.delivered_at = None
            sale.received_by = None
            sale.delivered_by = None

        mirror_delivery_state(sale)
        db.session.commit()
        current_app.logger.info(
            "Sale OT %s delivery state %s -> %s (user=%s)",
            sale.ot_number,
            previous,
            delivery_state,
            actor_user_id,
        )
        return sale

    return run_with_retry(_op)


# =============================================================================
# DELETION (ADMIN)
# =============================================================================

def delete_sale(sale_id: int, actor_user_id: int | None = None) -> dict:
    """
    Remove a sale and undo its stock effects.

    One transaction: every decrement is given back to the counter it came
    from, product aggregates are recomputed, a return movement is written per
    line, then pickups, payments, lines and the sale go.
    """
    def _op():
        begin_write()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise NotFoundError(f"Sale {sale_id} not found")

        zoned_products = set()
        restored = []
        for line in sale.lines:
            change = stock_service.restore(line)
            if change is None:
                continue
            restored.append(change.to_dict())
            if change.kind != stock_service.KIND_PRODUCT:
                zoned_products.add(change.product_id)
        db.session.flush()
        for product_id in sorted(zoned_products):
            stock_service.recompute_product_stock(product_id)

        movement_service.record_sale_reversal_movements(sale, actor_user_id)

        ot_number = sale.ot_number
        for pickup in list(sale.pickups):
            sale.pickups.remove(pickup)
        db.session.flush()
        db.session.delete(sale)
        db.session.commit()

        current_app.logger.info(
            "Sale OT %s deleted by user %s; %s stock counters restored",
            ot_number,
            actor_user_id,
            len(restored),
        )
        return {"sale_id": sale_id, "ot_number": ot_number, "restored": restored}

    return run_with_retry(_op)
