# Overview: Service-layer operations for pickup slips; encapsulates business logic and database work.

"""
Pickup / Layaway Linker

A sale that has received money gets exactly one pickup slip. The slip is a
dependent copy: the sale owns balance, classification inputs and delivery
state, and every change flows sale -> slip, never the other way round.

Classification:
- RECOJO      at least half the total paid (ready to be picked up)
- SEPARACION  less than half paid (goods held on layaway)
Re-evaluated on every payment.
"""

from __future__ import annotations

from ..extensions import db
from ..errors import NotFoundError, ValidationError
from ..models import Pickup, PickupLine, PickupAdvance, Sale
from ..models.pickups import PICKUP_KIND_RECOJO, PICKUP_KIND_SEPARACION
from ..models.sales import DELIVERY_DELIVERED, DELIVERY_STATES
from .sequence_service import PICKUP_COUNTER, next_value


PICKUP_KINDS = [PICKUP_KIND_RECOJO, PICKUP_KIND_SEPARACION]


def classify(paid_cents: int, total_cents: int) -> str:
    """
    RECOJO once at least half the total is paid.

    Compared on exact cents; the stored percent is rounded for display and
    would tip 49.9975% over the line.
    """
    return PICKUP_KIND_RECOJO if paid_cents * 2 >= total_cents else PICKUP_KIND_SEPARACION


def _customer_name(sale: Sale) -> str:
    if sale.patient is not None:
        return sale.patient.pickup_name
    return sale.customer_name or ""


def _create_pickup(sale: Sale) -> Pickup:
    pickup = Pickup(
        number=next_value(PICKUP_COUNTER),
        sale_id=sale.id,
        store_id=sale.store_id,
        ot_number=sale.ot_number,
        customer_name=_customer_name(sale),
        purchased_at=sale.sold_at,
        total_cents=sale.total_cents,
        located_at=sale.delivery_state,
    )
    for line in sale.lines:
        pickup.lines.append(
            PickupLine(
                product_id=line.product_id,
                variant_id=line.variant_id,
                measure_id=line.measure_id,
                zone_id=line.zone_id,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                line_total_cents=line.line_total_cents,
            )
        )
    sale.pickups.append(pickup)
    db.session.add(pickup)
    return pickup


def _sync_advances(pickup: Pickup, sale: Sale) -> None:
    """Mirror every sale payment not yet on the slip, with the balance left after it."""
    mirrored = {advance.payment_id for advance in pickup.advances}
    running_paid = 0
    for payment in sale.payments:
        running_paid += payment.amount_cents
        if payment.id in mirrored:
            continue
        pickup.advances.append(
            PickupAdvance(
                payment_id=payment.id,
                paid_at=payment.paid_at,
                ot_number=sale.ot_number,
                amount_cents=payment.amount_cents,
                balance_cents=max(0, sale.total_cents - running_paid),
            )
        )


def link_pickup(sale: Sale, new_payments: list | None = None) -> Pickup | None:
    """
    Create or refresh the sale's pickup slip after payments were applied.

    - Does nothing when the sale has no payments and no slip.
    - First call creates the slip, drawing its number from the recojoOptica
      counter and snapshotting the sale lines.
    - Later calls update paid/balance/classification in place.

    No commit here; runs inside the caller's sale transaction.
    """
    if not new_payments and not sale.pickups:
        return None

    db.session.flush()
    pickup = sale.pickups[0] if sale.pickups else _create_pickup(sale)

    pickup.total_cents = sale.total_cents
    pickup.paid_cents = sale.total_paid_cents
    pickup.balance_cents = sale.balance_cents
    pickup.percent_paid = sale.percent_paid
    pickup.kind = classify(sale.total_paid_cents, sale.total_cents)
    _sync_advances(pickup, sale)

    if sale.balance_cents == 0 and pickup.cancelled_at is None:
        pickup.cancelled_at = sale.cancelled_at
        pickup.cancelled_amount_cents = sale.total_paid_cents

    db.session.flush()
    return pickup


def mirror_delivery_state(sale: Sale) -> None:
    """Copy the sale's delivery state and confirmation block onto its slips."""
    for pickup in sale.pickups:
        pickup.located_at = sale.delivery_state
        if sale.delivery_state == DELIVERY_DELIVERED:
            pickup.delivered_at = sale.delivered_at
            pickup.received_by = sale.received_by
            pickup.delivered_by = sale.delivered_by
        else:
            pickup.delivered_at = None
            pickup.received_by = None
            pickup.delivered_by = None


def mark_delivered(
    pickup_id: int,
    received_by: str | None = None,
    delivered_by: str | None = None,
    actor_user_id: int | None = None,
) -> Pickup:
    """
    Hand the goods of a slip to the customer.

    Goes through the sale's delivery update so the sale stays the single
    source of truth; the slip picks the change up by mirroring.
    """
    from .sales_service import update_delivery_state

    pickup = db.session.get(Pickup, pickup_id)
    if pickup is None:
        raise NotFoundError(f"Pickup {pickup_id} not found")
    if pickup.located_at == DELIVERY_DELIVERED:
        raise ValidationError(
            f"Pickup {pickup.number} was already delivered",
            details={"pickup_id": pickup_id},
        )

    update_delivery_state(
        pickup.sale_id,
        DELIVERY_DELIVERED,
        received_by=received_by,
        delivered_by=delivered_by,
        actor_user_id=actor_user_id,
    )
    return db.session.get(Pickup, pickup_id)


def get_pickup(pickup_id: int) -> Pickup:
    pickup = db.session.get(Pickup, pickup_id)
    if pickup is None:
        raise NotFoundError(f"Pickup {pickup_id} not found")
    return pickup


def list_pickups(
    store_id: int | None = None,
    kind: str | None = None,
    located_at: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Pickup], int]:
    """Pickup slips, newest first, with the total count for pagination."""
    if kind is not None and kind not in PICKUP_KINDS:
        raise ValidationError(f"Invalid kind: {kind}. Must be one of {PICKUP_KINDS}")
    if located_at is not None and located_at not in DELIVERY_STATES:
        raise ValidationError(f"Invalid located_at: {located_at}. Must be one of {DELIVERY_STATES}")

    q = db.session.query(Pickup)
    if store_id is not None:
        q = q.filter(Pickup.store_id == store_id)
    if kind is not None:
        q = q.filter(Pickup.kind == kind)
    if located_at is not None:
        q = q.filter(Pickup.located_at == located_at)

    total = q.count()
    items = q.order_by(Pickup.created_at.desc(), Pickup.id.desc()).limit(limit).offset(offset).all()
    return items, total


def register_pickup_payment(pickup_id: int, payload, actor_user_id: int | None = None) -> Pickup:
    """Payment taken at the pickup counter; booked on the owning sale."""
    from .payment_service import register_payment

    pickup = get_pickup(pickup_id)
    register_payment(pickup.sale_id, payload, actor_user_id=actor_user_id)
    return db.session.get(Pickup, pickup_id)
