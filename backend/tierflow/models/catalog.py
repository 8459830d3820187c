from __future__ import annotations

from ..extensions import db
from tierflow.money import format_cents
from tierflow.time_utils import to_utc_z


class Product(db.Model):
    """Catalogue entry referenced by order lines. price_cents is the base price."""
    __tablename__ = "products"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "price": format_cents(self.price_cents),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class ProductPrice(db.Model):
    """
    Per-node price override.

    Resolution at order time: a price set for the customer wins over a price
    set for the servicing distributor, which wins over Product.price_cents.
    """
    __tablename__ = "product_prices"
    __table_args__ = (
        db.UniqueConstraint("product_id", "node_id", name="uq_product_prices_product_node"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    node_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    price_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "node_id": self.node_id,
            "price_cents": self.price_cents,
            "created_at": to_utc_z(self.created_at),
        }
