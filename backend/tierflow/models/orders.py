from __future__ import annotations

import json

from ..extensions import db
from tierflow.money import format_cents
from tierflow.time_utils import to_utc_z, to_iso_date


class Order(db.Model):
    """
    Customer order and its fulfillment state.

    WHY: The order row is the single authority for fulfillment state. Status
    moves PLACED -> MARKED_FOR_TRANSIT -> RECEIVED (or PLACED -> CANCELLED);
    sent_to_admin is an advisory flag alongside the status, not a step.

    MONEY: total_cents is derived from the lines at creation and never
    recomputed from later catalogue prices. amount_paid_cents is the last
    absolute amount recorded (not a running sum).
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_customer_created", "customer_id", "created_at"),
        db.Index("ix_orders_distributor_status", "distributor_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False, unique=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    # Servicing chain captured at placement
    distributor_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    admin_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True, index=True)

    status = db.Column(db.String(24), nullable=False, default="PLACED", index=True)
    total_cents = db.Column(db.Integer, nullable=False)

    desired_delivery_date = db.Column(db.Date, nullable=False)
    current_delivery_date = db.Column(db.Date, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Transit
    marked_for_today = db.Column(db.Boolean, nullable=False, default=False, index=True)
    marked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Restock notification to the admin
    sent_to_admin = db.Column(db.Boolean, nullable=False, default=False, index=True)
    sent_to_admin_at = db.Column(db.DateTime(timezone=True), nullable=True)
    admin_acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Receipt
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    received_by_node_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)

    # Payment tracking
    amount_paid_cents = db.Column(db.Integer, nullable=True)
    payment_status = db.Column(db.String(16), nullable=False, default="UNPAID", index=True)  # UNPAID, PARTIAL, PAID, OVERPAID

    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("HierarchyNode", foreign_keys=[customer_id])
    distributor = db.relationship("HierarchyNode", foreign_keys=[distributor_id])
    lines = db.relationship(
        "OrderLine",
        backref="order",
        lazy="selectin",
        order_by="OrderLine.line_number",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def delivery_date_changed(self) -> bool:
        return self.current_delivery_date != self.desired_delivery_date

    def to_dict(self, *, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "distributor_id": self.distributor_id,
            "admin_id": self.admin_id,
            "status": self.status,
            "total_cents": self.total_cents,
            "total": format_cents(self.total_cents),
            "desired_delivery_date": to_iso_date(self.desired_delivery_date),
            "current_delivery_date": to_iso_date(self.current_delivery_date),
            "delivery_date_changed": self.delivery_date_changed,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "marked_for_today": self.marked_for_today,
            "marked_at": to_utc_z(self.marked_at),
            "sent_to_admin": self.sent_to_admin,
            "sent_to_admin_at": to_utc_z(self.sent_to_admin_at),
            "admin_acknowledged_at": to_utc_z(self.admin_acknowledged_at),
            "received_at": to_utc_z(self.received_at),
            "received_by_node_id": self.received_by_node_id,
            "amount_paid_cents": self.amount_paid_cents,
            "amount_paid": format_cents(self.amount_paid_cents) if self.amount_paid_cents is not None else None,
            "payment_status": self.payment_status,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    """Line item; unit_price_cents is the price snapshot taken at placement."""
    __tablename__ = "order_lines"
    __table_args__ = (
        db.UniqueConstraint("order_id", "line_number", name="uq_order_lines_order_line"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    product = db.relationship("Product", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }


class OrderSequence(db.Model):
    """
    Atomic per-distributor order number sequences.

    WHY: Prevent race conditions when two customers of the same distributor
    check out at once.
    """
    __tablename__ = "order_sequences"
    __table_args__ = (
        db.UniqueConstraint("distributor_id", name="uq_order_sequences_distributor"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    distributor_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())


class OrderEvent(db.Model):
    """
    Append-only audit fact for one applied order transition.

    Written inside the same DB transaction as the state change it records.
    Rows are never updated or deleted; the sync layer reads them by id cursor.
    """
    __tablename__ = "order_events"
    __table_args__ = (
        db.Index("ix_order_events_order_occurred", "order_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    event_type = db.Column(db.String(48), nullable=False, index=True)  # ORDER_PLACED, ORDER_RECEIVED, ...
    from_status = db.Column(db.String(24), nullable=True)
    to_status = db.Column(db.String(24), nullable=True)

    actor_node_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True, index=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    # Optional structured metadata (keep small; do not denormalize order state)
    payload = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "event_type": self.event_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_node_id": self.actor_node_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "payload": json.loads(self.payload) if self.payload else None,
        }


class PaymentRecord(db.Model):
    """
    History of payment amendments.

    The order keeps only the last absolute amount; each amendment is kept
    here with the value it replaced.
    """
    __tablename__ = "payment_records"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    previous_cents = db.Column(db.Integer, nullable=True)
    amount_paid_cents = db.Column(db.Integer, nullable=False)
    exceeds_total = db.Column(db.Boolean, nullable=False, default=False)

    recorded_by_node_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True)
    recorded_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "previous_cents": self.previous_cents,
            "amount_paid_cents": self.amount_paid_cents,
            "exceeds_total": self.exceeds_total,
            "recorded_by_node_id": self.recorded_by_node_id,
            "recorded_at": to_utc_z(self.recorded_at),
        }


class AdminNotification(db.Model):
    """One restock request: a batch of orders a distributor forwarded to its admin."""
    __tablename__ = "admin_notifications"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    distributor_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    admin_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True, index=True)

    orders_count = db.Column(db.Integer, nullable=False)
    order_ids = db.Column(db.JSON, nullable=False)
    items_summary = db.Column(db.JSON, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "distributor_id": self.distributor_id,
            "admin_id": self.admin_id,
            "orders_count": self.orders_count,
            "order_ids": list(self.order_ids or []),
            "items_summary": list(self.items_summary or []),
            "created_at": to_utc_z(self.created_at),
        }
