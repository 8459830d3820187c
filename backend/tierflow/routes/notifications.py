# Overview: Flask API routes for the admin notification feed.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import order_service
from ..services.errors import TierflowError
from ..services.hierarchy_service import ROLE_ADMIN
from ..decorators import require_principal, require_role


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
@require_principal
@require_role(ROLE_ADMIN)
def list_notifications_route():
    """
    Orders distributors sent for restock that are neither received nor
    acknowledged, newest first, plus the recent notification batches.
    """
    try:
        orders = order_service.list_admin_notifications(g.principal)
        batches = order_service.list_notification_batches(g.principal)
        return jsonify({
            "orders": [o.to_dict() for o in orders],
            "count": len(orders),
            "batches": [b.to_dict() for b in batches],
        }), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list admin notifications")
        return jsonify({"error": "Internal server error"}), 500


@notifications_bp.post("/acknowledge")
@require_principal
@require_role(ROLE_ADMIN)
def acknowledge_notifications_route():
    """Request body: {"order_ids": [1, 2]}"""
    try:
        data = request.get_json(silent=True) or {}
        result = order_service.acknowledge_notifications(g.principal, data.get("order_ids"))
        return jsonify(result), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to acknowledge notifications")
        return jsonify({"error": "Internal server error"}), 500
