# Overview: Service-layer sales aggregates; read-only queries over sales and their lines.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..errors import ValidationError
from ..models import Product, Sale, SaleLine
from ..models.sales import DELIVERY_STATES


def _filter_sales(query, store_id: int | None, date_from: datetime | None, date_to: datetime | None):
    if store_id is not None:
        query = query.filter(Sale.store_id == store_id)
    if date_from is not None:
        query = query.filter(Sale.sold_at >= date_from)
    if date_to is not None:
        query = query.filter(Sale.sold_at <= date_to)
    return query


def _average(value) -> float:
    return round(float(value or 0), 2)


def sales_by_delivery_state(
    *,
    store_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> list[dict]:
    """Count and total per delivery state; states without sales are omitted."""
    query = db.session.query(
        Sale.delivery_state.label("delivery_state"),
        func.count(Sale.id).label("sales_count"),
        func.coalesce(func.sum(Sale.total_cents), 0).label("total_cents"),
    )
    rows = (
        _filter_sales(query, store_id, date_from, date_to)
        .group_by(Sale.delivery_state)
        .all()
    )
    rows = sorted(rows, key=lambda row: DELIVERY_STATES.index(row.delivery_state))
    return [
        {
            "delivery_state": row.delivery_state,
            "sales_count": int(row.sales_count or 0),
            "total_cents": int(row.total_cents or 0),
        }
        for row in rows
    ]


def sales_by_salesperson(
    *,
    store_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> list[dict]:
    """Sales per salesperson name, biggest seller first."""
    query = db.session.query(
        Sale.salesperson.label("salesperson"),
        func.count(Sale.id).label("sales_count"),
        func.coalesce(func.sum(Sale.total_cents), 0).label("total_cents"),
        func.avg(Sale.total_cents).label("average_cents"),
    )
    rows = (
        _filter_sales(query, store_id, date_from, date_to)
        .group_by(Sale.salesperson)
        .order_by(func.sum(Sale.total_cents).desc(), Sale.salesperson.asc())
        .all()
    )
    return [
        {
            "salesperson": row.salesperson,
            "sales_count": int(row.sales_count or 0),
            "total_cents": int(row.total_cents or 0),
            "average_cents": _average(row.average_cents),
        }
        for row in rows
    ]


def products_sold(
    *,
    store_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 10,
) -> list[dict]:
    """Units and amounts sold per product, most units first."""
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValidationError("limit must be a positive integer", details={"field": "limit"})

    units = func.sum(SaleLine.quantity)
    query = (
        db.session.query(
            Product.id.label("product_id"),
            Product.code.label("code"),
            Product.name.label("name"),
            units.label("quantity_sold"),
            func.coalesce(func.sum(SaleLine.line_total_cents), 0).label("total_cents"),
        )
        .join(SaleLine, SaleLine.product_id == Product.id)
        .join(Sale, Sale.id == SaleLine.sale_id)
    )
    rows = (
        _filter_sales(query, store_id, date_from, date_to)
        .group_by(Product.id, Product.code, Product.name)
        .order_by(units.desc(), Product.code.asc())
        .limit(limit)
        .all()
    )
    return [
        {
            "product_id": row.product_id,
            "code": row.code,
            "name": row.name,
            "quantity_sold": int(row.quantity_sold or 0),
            "total_cents": int(row.total_cents or 0),
        }
        for row in rows
    ]


def general_statistics(
    *,
    store_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> dict:
    """Sale count, revenue, average, largest and smallest sale, plus the per-state breakdown."""
    query = db.session.query(
        func.count(Sale.id).label("sales_count"),
        func.coalesce(func.sum(Sale.total_cents), 0).label("total_cents"),
        func.avg(Sale.total_cents).label("average_cents"),
        func.max(Sale.total_cents).label("max_cents"),
        func.min(Sale.total_cents).label("min_cents"),
    )
    row = _filter_sales(query, store_id, date_from, date_to).one()
    return {
        "sales_count": int(row.sales_count or 0),
        "total_cents": int(row.total_cents or 0),
        "average_cents": _average(row.average_cents),
        "max_cents": int(row.max_cents or 0),
        "min_cents": int(row.min_cents or 0),
        "by_delivery_state": sales_by_delivery_state(
            store_id=store_id,
            date_from=date_from,
            date_to=date_to,
        ),
    }
