from __future__ import annotations

from ..extensions import db
from optica.time_utils import to_utc_z


class Movement(db.Model):
    """
    Append-only audit record of one stock-affecting event.

    IMMUTABLE: Rows are never updated or deleted. Current stock is NOT derived
    from movements; zone stocks and product aggregates are maintained
    separately and movements only explain them.

    sale_id is deliberately not a foreign key: sale movements outlive an
    administratively deleted sale.
    """
    __tablename__ = "movements"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_movements_code"),
        db.CheckConstraint("quantity > 0", name="ck_movements_quantity_positive"),
        db.Index("ix_movements_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_movements_variant_occurred", "variant_id", "occurred_at"),
        db.Index("ix_movements_measure_occurred", "measure_id", "occurred_at"),
        db.Index("ix_movements_sale_occurred", "sale_id", "occurred_at"),
        db.Index("ix_movements_type_status", "movement_type", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Correlating code, e.g. "MV-000042"
    code = db.Column(db.String(32), nullable=False)

    reference_type = db.Column(db.String(16), nullable=False, index=True)  # Product, Variant, Measure, Sale
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=True)
    measure_id = db.Column(db.Integer, db.ForeignKey("measures.id"), nullable=True)
    sale_id = db.Column(db.Integer, nullable=True)

    movement_type = db.Column(db.String(16), nullable=False)  # income, outflow, adjustment, transfer, return
    sub_type = db.Column(db.String(16), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    zone_id = db.Column(db.Integer, db.ForeignKey("zones.id"), nullable=True, index=True)

    related_document_type = db.Column(db.String(32), nullable=True)
    related_document_reference = db.Column(db.String(64), nullable=True, index=True)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="completed")
    note = db.Column(db.String(500), nullable=True)
    is_adjustment = db.Column(db.Boolean, nullable=False, default=False)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    zone = db.relationship("Zone")
    actor = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "reference_type": self.reference_type,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "measure_id": self.measure_id,
            "sale_id": self.sale_id,
            "movement_type": self.movement_type,
            "sub_type": self.sub_type,
            "quantity": self.quantity,
            "zone_id": self.zone_id,
            "zone_code": self.zone.code if self.zone else None,
            "related_document": {
                "type": self.related_document_type,
                "reference": self.related_document_reference,
            },
            "actor_user_id": self.actor_user_id,
            "actor_name": self.actor.name if self.actor else None,
            "status": self.status,
            "note": self.note,
            "is_adjustment": self.is_adjustment,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }


class Counter(db.Model):
    """
    Named monotonically increasing counter.

    WHY: OT numbers, pickup numbers and movement codes must never collide
    under concurrent writers. Values are advanced only by an UPDATE issued
    by the database (value = value + 1), never read-modify-write in Python.
    """
    __tablename__ = "counters"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_counters_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False, index=True)
    value = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "value": self.value,
            "updated_at": to_utc_z(self.updated_at),
        }
