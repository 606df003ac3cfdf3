# Overview: Flask API routes for pickup slips; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..errors import OpticaError
from ..models.auth import ROLE_ADMIN, ROLE_CASHIER, ROLE_SELLER, ROLE_TECHNICIAN
from ..services import pickup_service
from ..decorators import require_auth, require_role


pickups_bp = Blueprint("pickups", __name__, url_prefix="/api/pickups")


@pickups_bp.get("")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SELLER, ROLE_CASHIER, ROLE_TECHNICIAN)
def list_pickups_route():
    """Query: store_id, kind (RECOJO|SEPARACION), located_at, limit, offset"""
    store_id = request.args.get("store_id", type=int)
    kind = request.args.get("kind")
    located_at = request.args.get("located_at")
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)

    try:
        pickups, total = pickup_service.list_pickups(
            store_id=store_id,
            kind=kind,
            located_at=located_at,
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "success": True,
            "items": [p.to_dict() for p in pickups],
            "count": total,
            "limit": limit,
            "offset": offset,
        }), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list pickups")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@pickups_bp.get("/<int:pickup_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SELLER, ROLE_CASHIER, ROLE_TECHNICIAN)
def get_pickup_route(pickup_id: int):
    try:
        pickup = pickup_service.get_pickup(pickup_id)
        return jsonify({"success": True, "pickup": pickup.to_dict()}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load pickup")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@pickups_bp.post("/<int:pickup_id>/payments")
@require_auth
@require_role(ROLE_ADMIN, ROLE_CASHIER, ROLE_SELLER)
def pickup_payment_route(pickup_id: int):
    """Payment taken at the pickup counter; booked on the owning sale."""
    try:
        data = request.get_json(silent=True)
        pickup = pickup_service.register_pickup_payment(pickup_id, data, actor_user_id=g.current_user.id)
        return jsonify({"success": True, "message": "Payment registered", "pickup": pickup.to_dict()}), 201

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to register pickup payment")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@pickups_bp.post("/<int:pickup_id>/deliver")
@require_auth
@require_role(ROLE_ADMIN, ROLE_SELLER, ROLE_TECHNICIAN)
def deliver_pickup_route(pickup_id: int):
    """Body: {received_by, delivered_by?}"""
    try:
        data = request.get_json(silent=True) or {}
        pickup = pickup_service.mark_delivered(
            pickup_id,
            received_by=data.get("received_by"),
            delivered_by=data.get("delivered_by") or g.current_user.name,
            actor_user_id=g.current_user.id,
        )
        return jsonify({"success": True, "message": "Pickup delivered", "pickup": pickup.to_dict()}), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to deliver pickup")
        return jsonify({"success": False, "message": "Internal server error"}), 500
