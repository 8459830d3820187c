# Overview: Flask API routes for order operations; parses input and returns JSON responses.

# backend/tierflow/routes/orders.py
"""
Order Ledger API Routes

WHY: Checkout, fulfillment and collections over REST.

DESIGN:
- Every route acts as the principal resolved by @require_principal
- Scope and state rules live in order_service; routes only parse and map
  domain errors to HTTP statuses
- Bulk routes report per-order outcomes after an all-or-nothing scope check

ERRORS:
- 400 ValidationError, 403 ScopeViolation, 404 NotFound,
  409 InvalidStateTransition / ConcurrentModification
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import order_service
from ..services.errors import TierflowError, ValidationError
from ..services.hierarchy_service import ROLE_ADMIN, ROLE_DISTRIBUTOR
from ..decorators import require_principal, require_role


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _arg_bool(name: str):
    value = request.args.get(name)
    if value is None or value == "":
        return None
    lowered = value.lower()
    if lowered in ("1", "true", "yes"):
        return True
    if lowered in ("0", "false", "no"):
        return False
    raise ValidationError(f"{name} must be true or false")


def _arg_int(name: str):
    value = request.args.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("JSON object body required")
    return data


# =============================================================================
# ORDER CREATION & QUERIES
# =============================================================================

@orders_bp.post("")
@require_principal
def create_order_route():
    """
    Place an order.

    Request body:
    {
        "customer_id": 12,  (optional for customers; required otherwise)
        "desired_delivery_date": "2024-06-01",
        "lines": [{"product_id": 3, "quantity": 2}]
    }

    Returns:
        201: Order created (prices resolved server-side)
        400: Invalid input
        403: Customer outside scope
    """
    try:
        data = _json_body()
        order = order_service.create_order(
            g.principal,
            customer_id=data.get("customer_id"),
            lines=data.get("lines"),
            desired_delivery_date=data.get("desired_delivery_date"),
        )
        return jsonify({"order": order.to_dict()}), 201

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_principal
def list_orders_route():
    """
    List orders in the caller's scope.

    Query params:
    - status, customer_id, marked_for_today, sent_to_admin, received
    - include_cancelled (default: false)
    - partition=delivery_date: group by current delivery date
    """
    try:
        partition = request.args.get("partition") == "delivery_date"
        result = order_service.list_orders(
            g.principal,
            status=request.args.get("status") or None,
            customer_id=_arg_int("customer_id"),
            marked_for_today=_arg_bool("marked_for_today"),
            sent_to_admin=_arg_bool("sent_to_admin"),
            received=_arg_bool("received"),
            include_cancelled=bool(_arg_bool("include_cancelled")),
            partition_by_delivery_date=partition,
        )

        if partition:
            return jsonify({
                "orders_by_date": {
                    day: [o.to_dict() for o in orders]
                    for day, orders in result["orders_by_date"].items()
                },
                "all_orders": [o.to_dict() for o in result["all_orders"]],
            }), 200

        return jsonify({"orders": [o.to_dict() for o in result], "count": len(result)}), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/in-transit-count")
@require_principal
def in_transit_count_route():
    try:
        return jsonify({"count": order_service.in_transit_count(g.principal)}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to count in-transit orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_principal
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(g.principal, order_id)
        return jsonify({"order": order.to_dict()}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/events")
@require_principal
def order_events_route(order_id: int):
    """Audit trail of one order, oldest first."""
    try:
        events = order_service.list_order_events(g.principal, order_id)
        return jsonify({"order_id": order_id, "events": [e.to_dict() for e in events]}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list order events")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# FULFILLMENT TRANSITIONS
# =============================================================================

@orders_bp.post("/mark-for-transit")
@require_principal
@require_role(ROLE_DISTRIBUTOR, ROLE_ADMIN)
def mark_for_transit_route():
    """
    Stage orders for same-day transit.

    Request body: {"order_ids": [1, 2, 3]}

    Returns:
        200: Per-order results (marked / already_marked / error kind)
        403: Any order outside scope (nothing is changed)
        404: Any order unknown (nothing is changed)
    """
    try:
        data = _json_body()
        result = order_service.mark_for_transit(g.principal, data.get("order_ids"))
        return jsonify(result), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to mark orders for transit")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/send-to-admin")
@require_principal
@require_role(ROLE_DISTRIBUTOR)
def send_to_admin_route():
    """
    Forward staged orders to the admin as one restock notification.

    Request body: {"order_ids": [1, 2, 3]}

    Returns:
        200: {orders_count, notification_id, items_summary, already_sent}
        409: Some orders are not marked for transit, or are closed
    """
    try:
        data = _json_body()
        result = order_service.send_to_admin(g.principal, data.get("order_ids"))
        return jsonify(result), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to send orders to admin")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/receive")
@require_principal
def mark_received_route(order_id: int):
    """
    Confirm physical receipt. Idempotent: repeating returns the original
    received_at.

    Returns:
        200: Order
        409: Order not marked for transit (or cancelled)
    """
    try:
        order = order_service.mark_received(g.principal, order_id)
        return jsonify({"order": order.to_dict()}), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to mark order received")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/receive")
@require_principal
def mark_received_bulk_route():
    """Receipt for many orders. Request body: {"order_ids": [1, 2]}"""
    try:
        data = _json_body()
        result = order_service.mark_received_bulk(g.principal, data.get("order_ids"))
        return jsonify({
            "results": result["results"],
            "failed": result["failed"],
            "orders": [o.to_dict() for o in result["orders"]],
        }), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to mark orders received")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_principal
def cancel_order_route(order_id: int):
    try:
        order = order_service.cancel_order(g.principal, order_id)
        return jsonify({"order": order.to_dict()}), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT & DELIVERY DATE
# =============================================================================

@orders_bp.put("/<int:order_id>/payment")
@require_principal
def record_payment_route(order_id: int):
    """
    Record the amount paid so far (absolute, last write wins).

    Request body: {"amount_paid_cents": 60000}

    Returns:
        200: {order, payment, anomaly}; anomaly is "OVERPAYMENT" when the
             amount exceeds the order total
        409: Order not received yet
    """
    try:
        data = _json_body()
        if "amount_paid_cents" not in data:
            return jsonify({"error": "amount_paid_cents required", "kind": "ValidationError"}), 400

        result = order_service.record_payment(g.principal, order_id, data["amount_paid_cents"])
        return jsonify(result.to_dict()), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record payment")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/payments")
@require_principal
def payment_history_route(order_id: int):
    try:
        records = order_service.list_payment_records(g.principal, order_id)
        return jsonify({"order_id": order_id, "payments": [r.to_dict() for r in records]}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/delivery-date")
@require_principal
@require_role(ROLE_DISTRIBUTOR, ROLE_ADMIN)
def revise_delivery_date_route(order_id: int):
    """
    Revise the delivery date (servicing distributor only).

    Request body: {"delivery_date": "2024-06-03"}

    The response order carries delivery_date_changed so the client can tell
    the customer.
    """
    try:
        data = _json_body()
        order = order_service.revise_delivery_date(g.principal, order_id, data.get("delivery_date"))
        return jsonify({"order": order.to_dict()}), 200

    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to revise delivery date")
        return jsonify({"error": "Internal server error"}), 500
