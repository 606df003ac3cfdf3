# Overview: Flask API routes for the movement ledger; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify
from flask import current_app

from ..errors import OpticaError
from ..models.auth import ROLE_ADMIN, ROLE_INVENTORY
from ..services import movement_service
from ..decorators import require_auth, require_role
from optica.time_utils import end_of_day, parse_iso_datetime


movements_bp = Blueprint("movements", __name__, url_prefix="/api/movements")


@movements_bp.get("")
@require_auth
@require_role(ROLE_ADMIN, ROLE_INVENTORY)
def list_movements_route():
    """
    Movements of one product, variant, measure or sale, newest first.

    Query: reference_type (Product|Variant|Measure|Sale), reference_id,
    date_from, date_to
    """
    reference_type = request.args.get("reference_type")
    reference_id = request.args.get("reference_id", type=int)
    if not reference_type or reference_id is None:
        return jsonify({"success": False, "message": "reference_type and reference_id required"}), 400

    try:
        date_from = parse_iso_datetime(request.args.get("date_from"))
        date_to = parse_iso_datetime(request.args.get("date_to"))
    except ValueError:
        return jsonify({"success": False, "message": "Invalid date filter"}), 400
    if date_to is not None:
        date_to = end_of_day(date_to)

    try:
        movements = movement_service.find_by_reference(reference_type, reference_id, date_from, date_to)
        return jsonify({
            "success": True,
            "reference_type": reference_type,
            "reference_id": reference_id,
            "movements": [m.to_dict() for m in movements],
        }), 200

    except OpticaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list movements")
        return jsonify({"success": False, "message": "Internal server error"}), 500
