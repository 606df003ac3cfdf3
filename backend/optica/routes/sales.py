# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

# backend/optica/routes/sales.py
"""Sales API routes with role enforcement"""

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..errors import OpticaError
from ..models.auth import (
    ROLE_ADMIN,
    ROLE_CASHIER,
    ROLE_INVENTORY,
    ROLE_OPTOMETRIST,
    ROLE_SELLER,
    ROLE_TECHNICIAN,
)
from ..services import payment_service, reporting_service, sales_service
from ..decorators import require_auth, require_role
from optica.time_utils import end_of_day, parse_iso_datetime


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")

SALE_READERS = (ROLE_ADMIN, ROLE_SELLER, ROLE_OPTOMETRIST, ROLE_TECHNICIAN)


def _date_args():
    date_from = parse_iso_datetime(request.args.get("date_from"))
    date_to = parse_iso_datetime(request.args.get("date_to"))
    if date_to is not None:
        date_to = end_of_day(date_to)
    return date_from, date_to


@sales_bp.post("")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SELLER)
def create_sale_route():
    """
    Create a complete sale (lines, stock, movements, payments, pickup slip).

    Available to: admin, vendedor
    """
    try:
        data = request.get_json(silent=True)
        sale = sales_service.create_sale(data, actor_user_id=g.current_user.id)
        return jsonify({"success": True, "message": "Sale created", "sale": sale.to_dict()}), 201

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@sales_bp.get("")
@require_auth
@require_role(*SALE_READERS)
def list_sales_route():
    """
    List sales, newest first.

    Query: store_id, delivery_state, patient_id, date_from, date_to, limit, offset
    """
    store_id = request.args.get("store_id", type=int)
    patient_id = request.args.get("patient_id", type=int)
    delivery_state = request.args.get("delivery_state")
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)

    try:
        date_from, date_to = _date_args()
        sales, total = sales_service.list_sales(
            store_id=store_id,
            delivery_state=delivery_state,
            patient_id=patient_id,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "success": True,
            "items": [sale.to_dict(include_lines=False) for sale in sales],
            "count": total,
            "limit": limit,
            "offset": offset,
        }), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except ValueError:
        return jsonify({"success": False, "message": "Invalid date filter"}), 400
    except Exception:
        current_app.logger.exception("Failed to list sales")
        return jsonify({"success": False, "message": "Internal server error"}), 500


def _report_args():
    date_from, date_to = _date_args()
    return {
        "store_id": request.args.get("store_id", type=int),
        "date_from": date_from,
        "date_to": date_to,
    }


@sales_bp.get("/reports/delivery-states")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SELLER)
def sales_by_delivery_state_route():
    """
    Sale count and total per delivery state.

    Query: store_id, date_from, date_to
    """
    try:
        rows = reporting_service.sales_by_delivery_state(**_report_args())
        return jsonify({"success": True, "rows": rows}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except ValueError:
        return jsonify({"success": False, "message": "Invalid date filter"}), 400
    except Exception:
        current_app.logger.exception("Failed to build delivery state report")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@sales_bp.get("/reports/salespeople")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SELLER)
def sales_by_salesperson_route():
    try:
        rows = reporting_service.sales_by_salesperson(**_report_args())
        return jsonify({"success": True, "rows": rows}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except ValueError:
        return jsonify({"success": False, "message": "Invalid date filter"}), 400
    except Exception:
        current_app.logger.exception("Failed to build salesperson report")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@sales_bp.get("/reports/products")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SELLER)
def products_sold_route():
    """
    Best-selling products by units.

    Query: store_id, date_from, date_to, limit (default 10)
    """
    try:
        rows = reporting_service.products_sold(
            limit=request.args.get("limit", 10, type=int),
            **_report_args(),
        )
        return jsonify({"success": True, "rows": rows}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except ValueError:
        return jsonify({"success": False, "message": "Invalid date filter"}), 400
    except Exception:
        current_app.logger.exception("Failed to build products report")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@sales_bp.get("/stats")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SELLER)
def sales_statistics_route():
    try:
        stats = reporting_service.general_statistics(**_report_args())
        return jsonify({"success": True, **stats}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except ValueError:
        return jsonify({"success": False, "message": "Invalid date filter"}), 400
    except Exception:
        current_app.logger.exception("Failed to build sales statistics")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>")
@require_auth
@require_role(*SALE_READERS)
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
        return jsonify({"success": True, "sale": sale.to_dict()}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load sale")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@sales_bp.put("/<int:sale_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SELLER)
def update_sale_route(sale_id: int):
    """
    Edit salesperson / optometrist on a sale.

    Body: {salesperson?, optometrist?}
    Available to: admin, vendedor
    """
    try:
        data = request.get_json(silent=True)
        sale = sales_service.update_sale(sale_id, data, actor_user_id=g.current_user.id)
        return jsonify({"success": True, "message": "Sale updated", "sale": sale.to_dict()}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update sale")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/payments")
@require_auth
@require_role(ROLE_ADMIN, ROLE_CASHIER, ROLE_SELLER)
def register_payment_route(sale_id: int):
    """
    Register a payment against an existing sale.

    Body: {amount_cents, method, receipt_ref?, paid_at?}
    Available to: admin, cajero, vendedor
    """
    try:
        data = request.get_json(silent=True)
        sale = payment_service.register_payment(sale_id, data, actor_user_id=g.current_user.id)
        return jsonify({"success": True, "message": "Payment registered", "sale": sale.to_dict()}), 201

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to register payment")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>/payments")
@require_auth
@require_role(ROLE_ADMIN, ROLE_CASHIER, ROLE_SELLER)
def list_payments_route(sale_id: int):
    try:
        payments = payment_service.get_sale_payments(sale_id)
        return jsonify({"success": True, "payments": [p.to_dict() for p in payments]}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@sales_bp.put("/<int:sale_id>/delivery")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SELLER, ROLE_TECHNICIAN)
def update_delivery_route(sale_id: int):
    """
    Move a sale between AT_STORE, AT_LAB and DELIVERED.

    Body: {delivery_state, received_by?, delivered_by?}
    """
    try:
        data = request.get_json(silent=True) or {}
        sale = sales_service.update_delivery_state(
            sale_id,
            data.get("delivery_state"),
            received_by=data.get("received_by"),
            delivered_by=data.get("delivered_by") or g.current_user.name,
            actor_user_id=g.current_user.id,
        )
        return jsonify({"success": True, "message": "Delivery state updated", "sale": sale.to_dict()}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update delivery state")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>/movements")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SELLER, ROLE_INVENTORY)
def sale_movements_route(sale_id: int):
    try:
        date_from, date_to = _date_args()
        movements = sales_service.get_sale_movements(sale_id, date_from, date_to)
        return jsonify({
            "success": True,
            "sale_id": sale_id,
            "movements": [m.to_dict() for m in movements],
        }), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except ValueError:
        return jsonify({"success": False, "message": "Invalid date filter"}), 400
    except Exception:
        current_app.logger.exception("Failed to list sale movements")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@sales_bp.delete("/<int:sale_id>")
@require_auth
@require_role(ROLE_ADMIN)
def delete_sale_route(sale_id: int):
    """
    Delete a sale and give its stock back.

    Available to: admin
    """
    try:
        result = sales_service.delete_sale(sale_id, actor_user_id=g.current_user.id)
        return jsonify({"success": True, "message": "Sale deleted", **result}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete sale")
        return jsonify({"success": False, "message": "Internal server error"}), 500
