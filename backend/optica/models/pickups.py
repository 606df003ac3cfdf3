from __future__ import annotations

from ..extensions import db
from optica.time_utils import to_utc_z
from .sales import DELIVERY_AT_STORE


PICKUP_KIND_RECOJO = "RECOJO"
PICKUP_KIND_SEPARACION = "SEPARACION"


class Pickup(db.Model):
    """
    Pickup / layaway slip (RECOJO or SEPARACION) for a sale's goods.

    OWNERSHIP: owned by its Sale. Created on the sale's first payment and
    updated only by the sale's payment reconciliation and delivery updates.
    The sale_id back-reference is for lookups; the sale stays the source of
    truth for balance and classification.
    """
    __tablename__ = "pickups"
    __table_args__ = (
        db.UniqueConstraint("number", name="uq_pickups_number"),
        db.Index("ix_pickups_store_kind", "store_id", "kind"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(16), nullable=False, default=PICKUP_KIND_RECOJO, index=True)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False)
    ot_number = db.Column(db.String(16), nullable=False, index=True)
    customer_name = db.Column(db.String(255), nullable=False)
    purchased_at = db.Column(db.DateTime(timezone=True), nullable=False)

    total_cents = db.Column(db.Integer, nullable=False)
    paid_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_cents = db.Column(db.Integer, nullable=False, default=0)
    percent_paid = db.Column(db.Float, nullable=False, default=0.0)

    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_amount_cents = db.Column(db.Integer, nullable=True)

    located_at = db.Column(db.String(16), nullable=False, default=DELIVERY_AT_STORE)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    received_by = db.Column(db.String(120), nullable=True)
    delivered_by = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    lines = db.relationship(
        "PickupLine",
        backref="pickup",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="PickupLine.id",
    )
    advances = db.relationship(
        "PickupAdvance",
        backref="pickup",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="PickupAdvance.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "number": self.number,
            "kind": self.kind,
            "sale_id": self.sale_id,
            "store_id": self.store_id,
            "ot_number": self.ot_number,
            "customer_name": self.customer_name,
            "purchased_at": to_utc_z(self.purchased_at),
            "total_cents": self.total_cents,
            "paid_cents": self.paid_cents,
            "balance_cents": self.balance_cents,
            "percent_paid": self.percent_paid,
            "cancelled": {
                "cancelled_at": to_utc_z(self.cancelled_at),
                "amount_cents": self.cancelled_amount_cents,
            },
            "located_at": self.located_at,
            "delivery": {
                "delivered_at": to_utc_z(self.delivered_at),
                "received_by": self.received_by,
                "delivered_by": self.delivered_by,
            },
            "lines": [line.to_dict() for line in self.lines],
            "advances": [advance.to_dict() for advance in self.advances],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

class PickupLine(db.Model):
    """Snapshot of a sale line taken when the pickup slip is created."""
    __tablename__ = "pickup_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    pickup_id = db.Column(db.Integer, db.ForeignKey("pickups.id"), nullable=False, index=True)

    product_id = db.Column(db.Integer, nullable=False)
    variant_id = db.Column(db.Integer, nullable=True)
    measure_id = db.Column(db.Integer, nullable=True)
    zone_id = db.Column(db.Integer, nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "measure_id": self.measure_id,
            "zone_id": self.zone_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }

class PickupAdvance(db.Model):
    """Mirror of one sale payment, with the balance left after it."""
    __tablename__ = "pickup_advances"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    pickup_id = db.Column(db.Integer, db.ForeignKey("pickups.id"), nullable=False, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=False)
    ot_number = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "payment_id": self.payment_id,
            "paid_at": to_utc_z(self.paid_at),
            "ot_number": self.ot_number,
            "amount_cents": self.amount_cents,
            "balance_cents": self.balance_cents,
        }
