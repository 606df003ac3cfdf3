# Overview: Service-layer operations for stock movements; encapsulates business logic and database work.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..extensions import db
from ..errors import ValidationError
from ..models import Movement
from optica.time_utils import utcnow
from .sequence_service import MOVEMENT_COUNTER, next_value
"""
Movement Ledger Invariants (authoritative)

- Append-only: no update or delete API exists for movements.
- Movements are written inside the same DB transaction as the stock change
  they explain; a failed movement write aborts that transaction.
- Movements never decide current stock; zone stocks and product aggregates
  are maintained on their own rows.
- Every movement has a unique correlating code MV-NNNNNN drawn from the
  "movimiento" counter.
- Quantity is always positive; direction is implied by movement_type.
"""


REFERENCE_PRODUCT = "Product"
REFERENCE_VARIANT = "Variant"
REFERENCE_MEASURE = "Measure"
REFERENCE_SALE = "Sale"

REFERENCE_TYPES = [REFERENCE_PRODUCT, REFERENCE_VARIANT, REFERENCE_MEASURE, REFERENCE_SALE]

MOVEMENT_TYPES = ["income", "outflow", "adjustment", "transfer", "return"]

SUB_TYPES = [
    "purchase",
    "sale",
    "consumption",
    "loss",
    "breakage",
    "donation",
    "transfer",
    "inventory",
    "initial",
    "adjustment",
    "return",
]

CODE_PREFIX = "MV-"
CODE_PAD = 6

NOTE_MAX_LENGTH = 500


def next_movement_code() -> str:
    return f"{CODE_PREFIX}{str(next_value(MOVEMENT_COUNTER)).zfill(CODE_PAD)}"


def record(
    *,
    reference_type: str,
    movement_type: str,
    quantity: int,
    sub_type: str | None = None,
    product_id: int | None = None,
    variant_id: int | None = None,
    measure_id: int | None = None,
    sale_id: int | None = None,
    zone_id: int | None = None,
    actor_user_id: int | None = None,
    related_document_type: str | None = None,
    related_document_reference: str | None = None,
    note: str | None = None,
    is_adjustment: bool = False,
    occurred_at: Optional[datetime] = None,
) -> Movement:
    """
    Append one movement.

    - No commit here; the caller owns the transaction.
    - Raises ValidationError on unknown types or a non-positive quantity.
    """
    if reference_type not in REFERENCE_TYPES:
        raise ValidationError(f"Invalid reference_type: {reference_type}")
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Invalid movement_type: {movement_type}")
    if sub_type is not None and sub_type not in SUB_TYPES:
        raise ValidationError(f"Invalid sub_type: {sub_type}")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Movement quantity must be a positive integer")

    if note and len(note) > NOTE_MAX_LENGTH:
        note = note[:NOTE_MAX_LENGTH]

    movement = Movement(
        code=next_movement_code(),
        reference_type=reference_type,
        product_id=product_id,
        variant_id=variant_id,
        measure_id=measure_id,
        sale_id=sale_id,
        movement_type=movement_type,
        sub_type=sub_type,
        quantity=quantity,
        zone_id=zone_id,
        related_document_type=related_document_type,
        related_document_reference=(related_document_reference or "").upper() or None,
        actor_user_id=actor_user_id,
        status="completed",
        note=note,
        is_adjustment=is_adjustment,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def _line_label(line) -> str:
    label = line.product.name or line.product.code
    if line.variant is not None:
        label += f" ({line.variant.code})"
    elif line.measure is not None:
        label += f" ({line.measure.code})"
    return label


def record_sale_movements(sale, lines, actor_user_id: int | None) -> list[Movement]:
    """One outflow/sale movement per sale line."""
    movements = []
    for line in lines:
        movements.append(
            record(
                reference_type=REFERENCE_SALE,
                sale_id=sale.id,
                product_id=line.product_id,
                variant_id=line.variant_id,
                measure_id=line.measure_id,
                movement_type="outflow",
                sub_type="sale",
                quantity=line.quantity,
                zone_id=line.zone_id,
                actor_user_id=actor_user_id,
                related_document_type="sale",
                related_document_reference=f"OT-{sale.ot_number}",
                note=f"Venta {sale.ot_number} - {_line_label(line)}",
                occurred_at=sale.sold_at,
            )
        )
    return movements


def record_sale_reversal_movements(sale, actor_user_id: int | None) -> list[Movement]:
    """One return movement per line of a sale being deleted."""
    movements = []
    for line in sale.lines:
        movements.append(
            record(
                reference_type=REFERENCE_SALE,
                sale_id=sale.id,
                product_id=line.product_id,
                variant_id=line.variant_id,
                measure_id=line.measure_id,
                movement_type="return",
                sub_type="return",
                quantity=line.quantity,
                zone_id=line.zone_id,
                actor_user_id=actor_user_id,
                related_document_type="sale",
                related_document_reference=f"OT-{sale.ot_number}",
                note=f"Anulacion de venta {sale.ot_number} - {_line_label(line)}",
            )
        )
    return movements


def find_by_reference(
    reference_type: str,
    reference_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[Movement]:
    """
    Movements touching one product, variant, measure or sale, newest first.

    Date bounds are inclusive.
    """
    columns = {
        REFERENCE_PRODUCT: Movement.product_id,
        REFERENCE_VARIANT: Movement.variant_id,
        REFERENCE_MEASURE: Movement.measure_id,
        REFERENCE_SALE: Movement.sale_id,
    }
    column = columns.get(reference_type)
    if column is None:
        raise ValidationError(f"Invalid reference_type: {reference_type}")

    q = db.session.query(Movement).filter(column == reference_id)
    if start is not None:
        q = q.filter(Movement.occurred_at >= start)
    if end is not None:
        q = q.filter(Movement.occurred_at <= end)

    return q.order_by(Movement.occurred_at.desc(), Movement.id.desc()).all()
