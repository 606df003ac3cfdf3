from __future__ import annotations

from ..extensions import db
from optica.time_utils import to_utc_z


DELIVERY_AT_STORE = "AT_STORE"
DELIVERY_AT_LAB = "AT_LAB"
DELIVERY_DELIVERED = "DELIVERED"

DELIVERY_STATES = [DELIVERY_AT_STORE, DELIVERY_AT_LAB, DELIVERY_DELIVERED]


class Sale(db.Model):
    """
    Sale document, identified to humans by its OT (work-ticket) number.

    INVARIANTS:
    - balance_cents = total_cents - total_paid_cents, always >= 0
    - percent_paid = total_paid / total * 100, clamped to [0, 100]
    - total_cents is frozen once the lines are written
    - cancelled_at is set once, when the balance first reaches zero

    LIFECYCLE: created whole by the sale assembler inside one transaction;
    afterwards only payments are appended and the delivery state changes.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("ot_number", name="uq_sales_ot_number"),
        db.Index("ix_sales_store_delivery_sold", "store_id", "delivery_state", "sold_at"),
        db.CheckConstraint("balance_cents >= 0", name="ck_sales_balance_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    ot_number = db.Column(db.String(16), nullable=False)

    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    patient_id = db.Column(db.Integer, db.ForeignKey("patients.id"), nullable=False, index=True)
    customer_name = db.Column(db.String(255), nullable=True)

    salesperson = db.Column(db.String(120), nullable=True)
    optometrist = db.Column(db.String(120), nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    # Amounts in cents
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    total_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_cents = db.Column(db.Integer, nullable=False, default=0)
    percent_paid = db.Column(db.Float, nullable=False, default=0.0)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Fulfilment
    delivery_state = db.Column(db.String(16), nullable=False, default=DELIVERY_AT_STORE, index=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    received_by = db.Column(db.String(120), nullable=True)
    delivered_by = db.Column(db.String(120), nullable=True)

    sold_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store", backref=db.backref("sales", lazy=True))
    patient = db.relationship("Patient", backref=db.backref("sales", lazy=True))
    created_by = db.relationship("User", foreign_keys=[created_by_user_id])
    lines = db.relationship(
        "SaleLine",
        backref="sale",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="SaleLine.id",
    )
    payments = db.relationship(
        "Payment",
        backref="sale",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="Payment.id",
    )
    pickups = db.relationship(
        "Pickup",
        backref="sale",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="Pickup.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Sale id={self.id} ot={self.ot_number!r} total={self.total_cents}>"

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "ot_number": self.ot_number,
            "store_id": self.store_id,
            "store_name": self.store.name if self.store else None,
            "patient_id": self.patient_id,
            "customer_name": self.customer_name,
            "salesperson": self.salesperson,
            "optometrist": self.optometrist,
            "created_by_user_id": self.created_by_user_id,
            "total_cents": self.total_cents,
            "total_paid_cents": self.total_paid_cents,
            "balance_cents": self.balance_cents,
            "percent_paid": self.percent_paid,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "delivery_state": self.delivery_state,
            "delivery": {
                "delivered_at": to_utc_z(self.delivered_at),
                "received_by": self.received_by,
                "delivered_by": self.delivered_by,
            },
            "sold_at": to_utc_z(self.sold_at),
            "updated_at": to_utc_z(self.updated_at),
            "pickup_ids": [p.id for p in self.pickups],
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
            data["payments"] = [payment.to_dict() for payment in self.payments]
        return data

class SaleLine(db.Model):
    """Line item on a sale. Unit price is resolved server-side and frozen."""
    __tablename__ = "sale_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=True)
    measure_id = db.Column(db.Integer, db.ForeignKey("measures.id"), nullable=True)
    zone_id = db.Column(db.Integer, db.ForeignKey("zones.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    # Which stock counter the line decremented: product, variant, measure or None (service)
    stock_source = db.Column(db.String(16), nullable=True)

    product = db.relationship("Product")
    variant = db.relationship("Variant")
    measure = db.relationship("Measure")
    zone = db.relationship("Zone")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_code": self.product.code if self.product else None,
            "product_name": self.product.name if self.product else None,
            "variant_id": self.variant_id,
            "variant_code": self.variant.code if self.variant else None,
            "measure_id": self.measure_id,
            "measure_code": self.measure.code if self.measure else None,
            "zone_id": self.zone_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "stock_source": self.stock_source,
        }

class Payment(db.Model):
    """
    Payment event on a sale. Immutable once appended.

    METHODS: EFECTIVO, YAPE, PLIN, TARJETA, TRANSFERENCIA, OTRO
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(32), nullable=False, index=True)
    receipt_ref = db.Column(db.String(64), nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "receipt_ref": self.receipt_ref,
            "paid_at": to_utc_z(self.paid_at),
            "created_by_user_id": self.created_by_user_id,
        }
