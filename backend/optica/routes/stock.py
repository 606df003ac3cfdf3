# Overview: Flask API routes for stock maintenance; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..errors import OpticaError
from ..models.auth import ROLE_ADMIN, ROLE_INVENTORY
from ..services import stock_service
from ..decorators import require_auth, require_role


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


@stock_bp.post("/<kind>/<int:entity_id>/zones")
@require_auth
@require_role(ROLE_ADMIN, ROLE_INVENTORY)
def add_zone_stock_route(kind: str, entity_id: int):
    """
    Stock a variant or measure in a new zone.

    Body: {zone_id, stock, price_cents}
    """
    try:
        data = request.get_json(silent=True) or {}
        row = stock_service.add_zone_stock(
            kind,
            entity_id,
            data.get("zone_id"),
            data.get("stock"),
            data.get("price_cents"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"success": True, "zone_stock": row.to_dict()}), 201

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to add zone stock")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@stock_bp.put("/<kind>/<int:entity_id>/zones/<int:zone_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_INVENTORY)
def set_zone_stock_route(kind: str, entity_id: int, zone_id: int):
    """Body: {stock, price_cents?}"""
    try:
        data = request.get_json(silent=True) or {}
        row = stock_service.set_zone_stock(
            kind,
            entity_id,
            zone_id,
            data.get("stock"),
            price_cents=data.get("price_cents"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"success": True, "zone_stock": row.to_dict()}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to set zone stock")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@stock_bp.delete("/<kind>/<int:entity_id>/zones/<int:zone_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_INVENTORY)
def remove_zone_stock_route(kind: str, entity_id: int, zone_id: int):
    try:
        stock_service.remove_zone_stock(kind, entity_id, zone_id, actor_user_id=g.current_user.id)
        return jsonify({"success": True, "message": "Zone stock removed"}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to remove zone stock")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@stock_bp.put("/products/<int:product_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_INVENTORY)
def set_product_stock_route(product_id: int):
    """Body: {stock}; only for products without zone subdivision."""
    try:
        data = request.get_json(silent=True) or {}
        product = stock_service.set_product_stock(
            product_id,
            data.get("stock"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"success": True, "product": product.to_dict()}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to set product stock")
        return jsonify({"success": False, "message": "Internal server error"}), 500
