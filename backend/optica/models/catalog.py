from __future__ import annotations

from ..extensions import db
from optica.time_utils import to_utc_z

class Product(db.Model):
    """
    Product master data (frames, lenses, accessories, services).

    STOCK SHAPES:
    - Simple product: no variants/measures, stock lives in stock_general
    - Service product: simple product with stock_general == 0, never decremented
    - Zone-subdivided product: stock lives in ZoneStock rows of its variants and
      measures; stock_general is a recomputed aggregate, never edited directly

    MULTI-TENANT: Products are scoped to an organization; codes are unique per org.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("org_id", "code", name="uq_products_org_code"),
        db.Index("ix_products_org_name", "org_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    brand = db.Column(db.String(120), nullable=True)
    description = db.Column(db.Text, nullable=True)

    # Flat price, used when the product is not zone-subdivided
    unit_price_cents = db.Column(db.Integer, nullable=True)

    stock_general = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    variants = db.relationship("Variant", backref="product", lazy=True, order_by="Variant.id")
    measures = db.relationship("Measure", backref="product", lazy=True, order_by="Measure.id")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.code!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "code": self.code,
            "name": self.name,
            "brand": self.brand,
            "description": self.description,
            "unit_price_cents": self.unit_price_cents,
            "stock_general": self.stock_general,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

class Variant(db.Model):
    """SKU keyed by color/size/material (frames and the like)."""
    __tablename__ = "variants"
    __table_args__ = (
        db.UniqueConstraint("product_id", "code", name="uq_variants_product_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    code = db.Column(db.String(64), nullable=False)
    color = db.Column(db.String(64), nullable=True)
    size = db.Column(db.String(32), nullable=True)
    material = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    zone_stocks = db.relationship(
        "ZoneStock",
        backref="variant",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="ZoneStock.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "code": self.code,
            "color": self.color,
            "size": self.size,
            "material": self.material,
            "zone_stocks": [zs.to_dict() for zs in self.zone_stocks],
        }

class Measure(db.Model):
    """
    Optical-lens SKU keyed by sphere/cylinder/addition.

    Cylinder is stored as entered (conventionally negative).
    """
    __tablename__ = "measures"
    __table_args__ = (
        db.UniqueConstraint("product_id", "code", name="uq_measures_product_code"),
        db.Index("ix_measures_product_power", "product_id", "sphere", "cylinder"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    code = db.Column(db.String(64), nullable=False)
    sphere = db.Column(db.Float, nullable=False)
    cylinder = db.Column(db.Float, nullable=False)
    add = db.Column(db.Float, nullable=True)
    serie = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    zone_stocks = db.relationship(
        "ZoneStock",
        backref="measure",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="ZoneStock.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "code": self.code,
            "sphere": self.sphere,
            "cylinder": self.cylinder,
            "add": self.add,
            "serie": self.serie,
            "zone_stocks": [zs.to_dict() for zs in self.zone_stocks],
        }

class ZoneStock(db.Model):
    """
    Per-zone stock counter and price of one variant or one measure.

    INVARIANTS:
    - Belongs to exactly one of variant/measure
    - At most one row per (entity, zone)
    - stock >= 0 (enforced by the database as well as by the ledger)

    CONCURRENCY: version_id_col turns a lost update into StaleDataError,
    which the retry helper treats as a transient conflict.
    """
    __tablename__ = "zone_stocks"
    __table_args__ = (
        db.UniqueConstraint("variant_id", "zone_id", name="uq_zone_stocks_variant_zone"),
        db.UniqueConstraint("measure_id", "zone_id", name="uq_zone_stocks_measure_zone"),
        db.CheckConstraint("stock >= 0", name="ck_zone_stocks_stock_non_negative"),
        db.CheckConstraint(
            "(variant_id IS NULL) <> (measure_id IS NULL)",
            name="ck_zone_stocks_single_owner",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    zone_id = db.Column(db.Integer, db.ForeignKey("zones.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=True, index=True)
    measure_id = db.Column(db.Integer, db.ForeignKey("measures.id"), nullable=True, index=True)

    stock = db.Column(db.Integer, nullable=False, default=0)
    price_cents = db.Column(db.Integer, nullable=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    zone = db.relationship("Zone")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "zone_id": self.zone_id,
            "zone_code": self.zone.code if self.zone else None,
            "zone_name": self.zone.name if self.zone else None,
            "variant_id": self.variant_id,
            "measure_id": self.measure_id,
            "stock": self.stock,
            "price_cents": self.price_cents,
        }
