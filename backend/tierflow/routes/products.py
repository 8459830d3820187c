# Overview: Flask API routes for the catalogue; priced product listing and per-node price overrides.

# backend/tierflow/routes/products.py
"""
Product API Routes

WHY: Customers need product ids and their own prices before checkout;
distributors and admins manage the overrides that produce those prices.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import catalog_service
from ..services.errors import TierflowError, ValidationError
from ..services.hierarchy_service import ROLE_ADMIN, ROLE_DISTRIBUTOR
from ..decorators import require_principal, require_role


products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _arg_int(name: str):
    value = request.args.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


@products_bp.get("")
@require_principal
def list_products_route():
    """
    Active products with the unit price a customer would pay today.

    Query params:
    - customer_id: customer to price for (distributors/admins; customers get their own)

    Returns:
        200: {products: [{..., unit_price_cents, unit_price}]}
        403: customer_id outside scope
    """
    try:
        products = catalog_service.list_products_for(g.principal, customer_id=_arg_int("customer_id"))
        return jsonify({"products": products, "count": len(products)}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list products")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/prices")
@require_principal
@require_role(ROLE_DISTRIBUTOR, ROLE_ADMIN)
def list_prices_route():
    """Price overrides the caller manages, optionally for one node (?node_id=)."""
    try:
        prices = catalog_service.list_node_prices(g.principal, node_id=_arg_int("node_id"))
        return jsonify({"prices": [p.to_dict() for p in prices]}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list prices")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.put("/<int:product_id>/prices/<int:node_id>")
@require_principal
@require_role(ROLE_DISTRIBUTOR, ROLE_ADMIN)
def set_price_route(product_id: int, node_id: int):
    """
    Create or replace a price override.

    Request body: {"price_cents": 4500}

    Returns:
        200: {price}
        400: Invalid price, or node is not a distributor/customer
        403: Node outside the caller's pricing scope
        404: Unknown product or node
    """
    try:
        data = request.get_json(silent=True) or {}
        row = catalog_service.set_node_price(
            g.principal,
            product_id=product_id,
            node_id=node_id,
            price_cents=data.get("price_cents"),
        )
        return jsonify({"price": row.to_dict()}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to set price")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.delete("/<int:product_id>/prices/<int:node_id>")
@require_principal
@require_role(ROLE_DISTRIBUTOR, ROLE_ADMIN)
def delete_price_route(product_id: int, node_id: int):
    try:
        catalog_service.delete_node_price(g.principal, product_id=product_id, node_id=node_id)
        return jsonify({"product_id": product_id, "node_id": node_id, "deleted": True}), 200
    except TierflowError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete price")
        return jsonify({"error": "Internal server error"}), 500
