# Overview: Flask API routes for revenue rollups and user statistics.

# backend/tierflow/routes/stats.py
"""
Statistics API Routes

WHY: Revenue and headcount views for every tier from one pair of endpoints;
the caller's scope decides what is visible.

DRILL-DOWN:
- Call revenue-orders with level=distributor
- Pick a breakdown row and call again with level=customer&parent_id=<node_id>
- Nothing is remembered between calls
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import hierarchy_service, rollup_service
from ..services.errors import TierflowError, ValidationError
from ..decorators import require_principal


stats_bp = Blueprint("stats", __name__, url_prefix="/api/stats")


def _arg_int(name: str):
    value = request.args.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


@stats_bp.get("/revenue-orders")
@require_principal
def revenue_orders_route():
    """
    Revenue and order count, optionally broken down by tier.

    Query params:
    - level: all | admin | distributor | customer (default: all)
    - parent_id: drill-down anchor inside the caller's scope
    - date_filter: all | today | thisMonth | thisYear | month | year | custom
    - month, year: for date_filter=month / year
    - start_date, end_date: inclusive, for date_filter=custom

    Returns:
        200: {total, breakdown, level, parent_id, date_filter, date_range}
        400: Unknown level/filter or missing filter parameters
        403: parent_id outside scope, or a tier above the caller
    """
    try:
        result = rollup_service.aggregate(
            g.principal,
            level=request.args.get("level") or rollup_service.LEVEL_ALL,
            parent_id=_arg_int("parent_id"),
            date_filter=request.args.get("date_filter") or rollup_service.DATE_FILTER_ALL,
            month=request.args.get("month"),
            year=request.args.get("year"),
            start_date=request.args.get("start_date"),
            end_date=request.args.get("end_date"),
        )
        return jsonify(result), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to aggregate revenue")
        return jsonify({"error": "Internal server error"}), 500


@stats_bp.get("/users")
@require_principal
def user_stats_route():
    """
    Active nodes below the caller (or parent_id), by role.

    Query params:
    - scope_level: admin | distributor | customer (optional)
    - parent_id: anchor inside the caller's scope (optional)
    """
    try:
        stats = hierarchy_service.user_stats(
            g.principal,
            scope_level=request.args.get("scope_level") or None,
            parent_id=_arg_int("parent_id"),
        )
        return jsonify(stats), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to compute user stats")
        return jsonify({"error": "Internal server error"}), 500
