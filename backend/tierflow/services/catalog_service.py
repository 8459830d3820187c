# Overview: Service-layer operations for the product catalogue and price resolution.

"""
Catalogue and pricing

PRICE RESOLUTION (at checkout, snapshotted on the order line):
    price set for the customer
    > price set for the customer's servicing distributor
    > Product.price_cents

WHO MAY SET A PRICE:
    distributor   its own customers only
    admin         distributors and customers in its scope
    super-admin   any distributor or customer
    customer      nobody
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import HierarchyNode, Product, ProductPrice
from ..money import MAX_AMOUNT_CENTS, format_cents
from .concurrency import lock_for_update, run_with_retry
from .errors import NotFound, ScopeViolation, ValidationError
from .hierarchy_service import (
    ROLE_CUSTOMER,
    ROLE_DISTRIBUTOR,
    Principal,
    get_node_or_404,
    resolve_scope,
    servicing_chain,
)


logger = logging.getLogger(__name__)


def _validate_price(price_cents) -> int:
    if isinstance(price_cents, bool) or not isinstance(price_cents, int):
        raise ValidationError("price_cents must be an integer")
    if price_cents < 0:
        raise ValidationError("price_cents cannot be negative")
    if price_cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"price_cents cannot exceed {MAX_AMOUNT_CENTS}")
    return price_cents


def create_product(*, sku: str, name: str, price_cents: int) -> Product:
    def _op():
        if not sku or not name:
            raise ValidationError("sku and name are required")
        price = _validate_price(price_cents)
        if db.session.query(Product).filter_by(sku=sku).first():
            raise ValidationError(f"SKU {sku} already exists")

        product = Product(sku=sku, name=name, price_cents=price, is_active=True)
        db.session.add(product)
        db.session.commit()
        return product

    return run_with_retry(_op)


def update_product_price(product_id: int, price_cents: int) -> Product:
    """Change the base price. Existing orders keep their line snapshots."""
    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if not product:
            raise NotFound(f"Product {product_id} not found")
        product.price_cents = _validate_price(price_cents)
        db.session.commit()
        return product

    return run_with_retry(_op)


def _require_pricing_authority(principal: Principal, node_id: int) -> HierarchyNode:
    """Target node of a price override, if the principal may price it."""
    if principal.role == ROLE_CUSTOMER:
        raise ScopeViolation("Customers cannot set prices")

    node = get_node_or_404(node_id)
    if node.role not in (ROLE_DISTRIBUTOR, ROLE_CUSTOMER):
        raise ValidationError("Prices can only be set for distributors and customers")
    if node.id == principal.node_id or not resolve_scope(principal).contains(node.id):
        raise ScopeViolation(f"Node {node_id} is outside your pricing scope")
    if principal.role == ROLE_DISTRIBUTOR and (
        node.role != ROLE_CUSTOMER or node.parent_id != principal.node_id
    ):
        raise ScopeViolation("Distributors can only price their own customers")
    return node


def set_node_price(principal: Principal, *, product_id: int, node_id: int, price_cents: int) -> ProductPrice:
    """Create or replace the price a distributor or customer pays for a product."""
    def _op():
        price = _validate_price(price_cents)
        _require_pricing_authority(principal, node_id)
        if not db.session.query(Product).filter_by(id=product_id).first():
            raise NotFound(f"Product {product_id} not found")

        override = lock_for_update(
            db.session.query(ProductPrice).filter_by(product_id=product_id, node_id=node_id)
        ).first()
        if override:
            override.price_cents = price
        else:
            override = ProductPrice(product_id=product_id, node_id=node_id, price_cents=price)
            db.session.add(override)

        db.session.commit()
        logger.info(
            "Node %s set price of product %s for node %s to %s",
            principal.node_id, product_id, node_id, price,
        )
        return override

    return run_with_retry(_op)


def delete_node_price(principal: Principal, *, product_id: int, node_id: int) -> None:
    """Drop an override; the node falls back to the next price in line."""
    def _op():
        _require_pricing_authority(principal, node_id)
        override = lock_for_update(
            db.session.query(ProductPrice).filter_by(product_id=product_id, node_id=node_id)
        ).first()
        if not override:
            raise NotFound(f"No price for product {product_id} and node {node_id}")
        db.session.delete(override)
        db.session.commit()
        logger.info("Node %s removed price of product %s for node %s", principal.node_id, product_id, node_id)

    return run_with_retry(_op)


def list_node_prices(principal: Principal, *, node_id: int | None = None) -> list[ProductPrice]:
    """Overrides the principal may manage, optionally for one node."""
    if principal.role == ROLE_CUSTOMER:
        raise ScopeViolation("Customers cannot manage prices")

    query = db.session.query(ProductPrice)
    if node_id is not None:
        _require_pricing_authority(principal, node_id)
        query = query.filter(ProductPrice.node_id == node_id)
    elif principal.role == ROLE_DISTRIBUTOR:
        own_customers = db.session.query(HierarchyNode.id).filter(
            HierarchyNode.parent_id == principal.node_id,
            HierarchyNode.role == ROLE_CUSTOMER,
        )
        query = query.filter(ProductPrice.node_id.in_(own_customers))
    elif not principal.is_super_admin:
        manageable = resolve_scope(principal).descendant_ids
        query = query.filter(ProductPrice.node_id.in_(manageable))

    return query.order_by(ProductPrice.node_id.asc(), ProductPrice.product_id.asc()).all()


def list_products(*, include_inactive: bool = False) -> list[Product]:
    query = db.session.query(Product)
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    return query.order_by(Product.name.asc()).all()


def resolve_unit_price(product: Product, *, customer_id: int, distributor_id: int) -> int:
    """
    Price a customer pays for a product right now.

    customer-specific price > price set for the servicing distributor > base price
    """
    overrides = {
        row.node_id: row.price_cents
        for row in db.session.query(ProductPrice).filter(
            ProductPrice.product_id == product.id,
            ProductPrice.node_id.in_([customer_id, distributor_id]),
        )
    }
    if customer_id in overrides:
        return overrides[customer_id]
    if distributor_id in overrides:
        return overrides[distributor_id]
    return product.price_cents


def list_products_for(principal: Principal, *, customer_id: int | None = None) -> list[dict]:
    """
    Active products priced for one customer.

    Customers always see their own prices. Distributors and admins pass a
    customer in their scope; without one they see base prices.
    """
    if principal.role == ROLE_CUSTOMER:
        if customer_id is not None and customer_id != principal.node_id:
            raise ScopeViolation("Customers can only see their own prices")
        customer_id = principal.node_id
    elif customer_id is not None and not resolve_scope(principal).contains(customer_id):
        raise ScopeViolation(f"Customer {customer_id} is outside your scope")

    distributor_id = servicing_chain(customer_id)[0] if customer_id is not None else None

    result = []
    for product in list_products():
        data = product.to_dict()
        if customer_id is None:
            unit_price = product.price_cents
        else:
            unit_price = resolve_unit_price(product, customer_id=customer_id, distributor_id=distributor_id)
        data["unit_price_cents"] = unit_price
        data["unit_price"] = format_cents(unit_price)
        result.append(data)
    return result
