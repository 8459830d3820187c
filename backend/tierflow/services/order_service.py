# Overview: Service-layer operations for orders; enforces the fulfillment state machine.

"""
Order Ledger

================================================================================
PURPOSE: Hold orders and enforce the fulfillment state machine
================================================================================

STATE MACHINE:
    PLACED -> MARKED_FOR_TRANSIT -> RECEIVED
    PLACED -> CANCELLED

    PLACED:              created at checkout; customer may still cancel
    MARKED_FOR_TRANSIT:  staged by the distributor for same-day movement
    RECEIVED:            physical receipt confirmed; fulfillment is over
    CANCELLED:           terminal, excluded from revenue

SIDE TRANSITIONS (status unchanged):
    sent_to_admin          advisory restock notification; requires transit,
                           never blocks receipt
    current_delivery_date  revised by the servicing distributor before receipt
    amount_paid            absolute, last-write-wins, only after receipt

RULES:
1. Receipt requires marked_for_today; sending to admin requires it too.
2. Re-marking and re-receiving are no-ops, not errors, and write no event.
3. Receipt is applied with a conditional UPDATE so concurrent calls apply once.
4. Bulk requests validate scope all-or-nothing, then transition each order
   independently and report per id.
5. Every applied transition appends one audit event in the same transaction.
================================================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import AdminNotification, HierarchyNode, Order, OrderLine, OrderSequence, PaymentRecord, Product
from ..money import MAX_AMOUNT_CENTS
from tierflow.time_utils import current_business_today, parse_iso_date, utcnow
from . import audit_service
from .catalog_service import resolve_unit_price
from .concurrency import lock_for_update, run_with_retry
from .errors import (
    ConcurrentModification,
    InvalidStateTransition,
    NotFound,
    ScopeViolation,
    TierflowError,
    ValidationError,
)
from .hierarchy_service import (
    ROLE_ADMIN,
    ROLE_CUSTOMER,
    ROLE_DISTRIBUTOR,
    Principal,
    Scope,
    ancestors_of,
    resolve_scope,
    servicing_chain,
)


logger = logging.getLogger(__name__)


# =============================================================================
# ORDER STATUS (CONSTANTS)
# =============================================================================

STATUS_PLACED = "PLACED"
STATUS_MARKED_FOR_TRANSIT = "MARKED_FOR_TRANSIT"
STATUS_RECEIVED = "RECEIVED"
STATUS_CANCELLED = "CANCELLED"

VALID_STATUSES = {STATUS_PLACED, STATUS_MARKED_FOR_TRANSIT, STATUS_RECEIVED, STATUS_CANCELLED}


# =============================================================================
# PAYMENT STATUS (CONSTANTS)
# =============================================================================

PAYMENT_STATUS_UNPAID = "UNPAID"
PAYMENT_STATUS_PARTIAL = "PARTIAL"
PAYMENT_STATUS_PAID = "PAID"
PAYMENT_STATUS_OVERPAID = "OVERPAID"

ANOMALY_OVERPAYMENT = "OVERPAYMENT"


@dataclass
class PaymentResult:
    order: Order
    record: PaymentRecord
    anomaly: str | None = None

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "payment": self.record.to_dict(),
            "anomaly": self.anomaly,
        }


# =============================================================================
# HELPERS
# =============================================================================

def payment_status_for(amount_paid_cents: int | None, total_cents: int) -> str:
    """Derive payment status by comparing amount paid to the order total."""
    paid = amount_paid_cents or 0
    if paid > total_cents:
        return PAYMENT_STATUS_OVERPAID
    if paid == total_cents:
        return PAYMENT_STATUS_PAID
    if paid == 0:
        return PAYMENT_STATUS_UNPAID
    return PAYMENT_STATUS_PARTIAL


def _strict_int(value, field_name: str) -> int:
    # bool is an int subclass; "1.5" and 1.5 are not quantities
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be an integer")
    return value


def _normalize_order_ids(order_ids) -> list[int]:
    if not isinstance(order_ids, (list, tuple)) or not order_ids:
        raise ValidationError("order_ids must be a non-empty list")
    result: list[int] = []
    for raw in order_ids:
        order_id = _strict_int(raw, "order_ids[]")
        if order_id not in result:
            result.append(order_id)
    return result


def _scoped(query, scope: Scope):
    if scope.is_super_admin:
        return query
    return query.filter(Order.customer_id.in_(scope.node_ids))


def _load_in_scope(principal: Principal, order_ids: list[int]) -> dict[int, Order]:
    """
    All-or-nothing validation stage for single and bulk requests.

    Raises NotFound if any id is unknown and ScopeViolation if any order lies
    outside the principal's scope.
    """
    orders = db.session.query(Order).filter(Order.id.in_(order_ids)).all()
    by_id = {o.id: o for o in orders}
    missing = [oid for oid in order_ids if oid not in by_id]
    if missing:
        raise NotFound("Some orders were not found", details={"order_ids": missing})

    scope = resolve_scope(principal)
    foreign = [oid for oid in order_ids if not scope.contains(by_id[oid].customer_id)]
    if foreign:
        raise ScopeViolation("Some orders are outside your scope", details={"order_ids": foreign})
    return by_id


def _fetch_fresh(order_id: int) -> Order:
    order = db.session.query(Order).populate_existing().filter_by(id=order_id).first()
    if not order:
        raise NotFound(f"Order {order_id} not found")
    return order


def _require_servicing_role(principal: Principal) -> None:
    if principal.role not in (ROLE_DISTRIBUTOR, ROLE_ADMIN):
        raise ScopeViolation("Only distributors and admins can stage orders")


def _next_order_number(distributor_id: int) -> str:
    """
    Atomically allocate the next order number for a distributor.

    Runs inside the caller's transaction; the sequence row update takes the
    write lock so concurrent checkouts serialize here.
    """
    stmt = (
        update(OrderSequence)
        .where(OrderSequence.distributor_id == distributor_id)
        .values(next_number=OrderSequence.next_number + 1)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        try:
            with db.session.begin_nested():
                db.session.add(OrderSequence(distributor_id=distributor_id, next_number=2))
            return f"ORD-{distributor_id:03d}-{1:04d}"
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise

    current = (
        db.session.query(OrderSequence.next_number)
        .filter_by(distributor_id=distributor_id)
        .scalar()
    )
    return f"ORD-{distributor_id:03d}-{current - 1:04d}"


# =============================================================================
# ORDER CREATION
# =============================================================================

def create_order(
    principal: Principal,
    *,
    customer_id: int | None,
    lines: list[dict],
    desired_delivery_date,
) -> Order:
    """
    Place an order for a customer.

    WHY: Checkout. Prices are resolved from the catalogue and snapshotted on
    each line; the total is computed here and never taken from input.

    Args:
        principal: The customer, or a distributor/admin placing on its behalf
        customer_id: Owning customer (defaults to the principal when a customer)
        lines: [{"product_id": int, "quantity": int}, ...], non-empty
        desired_delivery_date: date or "YYYY-MM-DD", not in the past

    Raises:
        ValidationError: empty/invalid lines, missing date, inactive customer
        ScopeViolation: customer outside the principal's scope
        NotFound: unknown customer or product
    """
    def _op():
        if customer_id is None:
            if principal.role != ROLE_CUSTOMER:
                raise ValidationError("customer_id is required")
            owner_id = principal.node_id
        else:
            owner_id = _strict_int(customer_id, "customer_id")

        if not resolve_scope(principal).contains(owner_id):
            raise ScopeViolation(f"Customer {owner_id} is outside your scope")

        customer = db.session.query(HierarchyNode).filter_by(id=owner_id).first()
        if not customer:
            raise NotFound(f"Customer {owner_id} not found")
        if customer.role != ROLE_CUSTOMER:
            raise ValidationError(f"Node {owner_id} is not a customer")
        if not customer.is_active:
            raise ValidationError("Customer account is inactive")

        if not isinstance(lines, (list, tuple)) or not lines:
            raise ValidationError("At least one order line is required")

        try:
            desired = parse_iso_date(desired_delivery_date)
        except ValueError:
            raise ValidationError("desired_delivery_date must be an ISO date (YYYY-MM-DD)")
        if desired is None:
            raise ValidationError("desired_delivery_date is required")
        if desired < current_business_today():
            raise ValidationError("desired_delivery_date cannot be in the past")

        distributor_id, admin_id = servicing_chain(owner_id)

        order_lines: list[OrderLine] = []
        total_cents = 0
        for idx, raw in enumerate(lines, start=1):
            if not isinstance(raw, dict):
                raise ValidationError(f"Line {idx} must be an object")
            product_id = _strict_int(raw.get("product_id"), f"lines[{idx}].product_id")
            quantity = _strict_int(raw.get("quantity"), f"lines[{idx}].quantity")
            if quantity <= 0:
                raise ValidationError(f"Line {idx}: quantity must be positive")

            product = db.session.query(Product).filter_by(id=product_id).first()
            if not product or not product.is_active:
                raise ValidationError(f"Product {product_id} not found or not available")

            unit_price = resolve_unit_price(product, customer_id=owner_id, distributor_id=distributor_id)
            if unit_price < 0:
                raise ValidationError(f"Line {idx}: price cannot be negative")

            line_total = unit_price * quantity
            total_cents += line_total
            order_lines.append(
                OrderLine(
                    line_number=idx,
                    product_id=product.id,
                    quantity=quantity,
                    unit_price_cents=unit_price,
                    line_total_cents=line_total,
                )
            )

        if total_cents > MAX_AMOUNT_CENTS:
            raise ValidationError(f"Order total cannot exceed {MAX_AMOUNT_CENTS}")

        now = utcnow()
        order = Order(
            order_number=_next_order_number(distributor_id),
            customer_id=owner_id,
            distributor_id=distributor_id,
            admin_id=admin_id,
            status=STATUS_PLACED,
            total_cents=total_cents,
            desired_delivery_date=desired,
            current_delivery_date=desired,
            created_at=now,
            payment_status=PAYMENT_STATUS_UNPAID,
            lines=order_lines,
        )
        db.session.add(order)
        db.session.flush()

        audit_service.append_order_event(
            order_id=order.id,
            event_type=audit_service.EVENT_ORDER_PLACED,
            from_status=None,
            to_status=STATUS_PLACED,
            actor_node_id=principal.node_id,
            occurred_at=now,
            payload={"total_cents": total_cents, "line_count": len(order_lines)},
        )

        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# TRANSIT
# =============================================================================

def _mark_one(principal: Principal, order_id: int, today: date) -> dict:
    def _op() -> dict:
        now = utcnow()
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == STATUS_PLACED,
                Order.marked_for_today.is_(False),
            )
            .values(
                marked_for_today=True,
                marked_at=now,
                status=STATUS_MARKED_FOR_TRANSIT,
                current_delivery_date=today,
                updated_at=now,
                version_id=Order.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        if result.rowcount == 1:
            audit_service.append_order_event(
                order_id=order_id,
                event_type=audit_service.EVENT_ORDER_MARKED_FOR_TRANSIT,
                from_status=STATUS_PLACED,
                to_status=STATUS_MARKED_FOR_TRANSIT,
                actor_node_id=principal.node_id,
                occurred_at=now,
            )
            db.session.commit()
            return {"order_id": order_id, "ok": True, "result": "marked"}

        db.session.rollback()
        order = _fetch_fresh(order_id)
        if order.marked_for_today:
            return {"order_id": order_id, "ok": True, "result": "already_marked"}
        raise InvalidStateTransition(f"Order {order_id} is {order.status} and cannot be marked for transit")

    return run_with_retry(_op)


def mark_for_transit(principal: Principal, order_ids: list[int]) -> dict:
    """
    Stage orders for same-day transit.

    Validation is all-or-nothing (unknown or foreign ids reject the request);
    after that each order transitions on its own and the outcome is reported
    per id. Re-marking is a no-op success.
    """
    _require_servicing_role(principal)
    ids = _normalize_order_ids(order_ids)
    _load_in_scope(principal, ids)

    today = current_business_today()
    results = []
    for order_id in ids:
        try:
            results.append(_mark_one(principal, order_id, today))
        except TierflowError as exc:
            results.append({"order_id": order_id, "ok": False, **exc.to_dict()})

    return {
        "results": results,
        "marked": sum(1 for r in results if r.get("result") == "marked"),
        "already_marked": sum(1 for r in results if r.get("result") == "already_marked"),
        "failed": sum(1 for r in results if not r["ok"]),
    }


def _is_terminal(order: Order) -> bool:
    """Cancelled, or received and settled. Only payment amendments apply after this."""
    if order.status == STATUS_CANCELLED:
        return True
    return order.received_at is not None and order.payment_status in (
        PAYMENT_STATUS_PAID,
        PAYMENT_STATUS_OVERPAID,
    )


def send_to_admin(principal: Principal, order_ids: list[int]) -> dict:
    """
    Forward staged orders to the admin's notification feed.

    WHY: Restock request. Line items across all orders sent together are
    summed per product into one AdminNotification. Purely advisory: receipt
    does not wait for it.

    Orders already sent are skipped and reported in already_sent; their
    acknowledgement is left untouched. When every order was already sent no
    notification is created and notification_id is None.

    Raises:
        ScopeViolation: caller is not a distributor, or foreign orders
        InvalidStateTransition: any order not marked for transit, or terminal
        ValidationError: distributor has no admin
    """
    if principal.role != ROLE_DISTRIBUTOR:
        raise ScopeViolation("Only distributors can send orders to their admin")
    ids = _normalize_order_ids(order_ids)

    def _op() -> dict:
        orders_by_id = _load_in_scope(principal, ids)
        not_marked = [oid for oid in ids if not orders_by_id[oid].marked_for_today]
        if not_marked:
            raise InvalidStateTransition(
                "Orders must be marked for transit before sending to admin",
                details={"order_ids": not_marked},
            )
        terminal = [oid for oid in ids if _is_terminal(orders_by_id[oid])]
        if terminal:
            raise InvalidStateTransition(
                "Closed orders cannot be sent to admin",
                details={"order_ids": terminal},
            )

        admin_id = next((a.id for a in ancestors_of(principal.node_id) if a.role == ROLE_ADMIN), None)
        if admin_id is None:
            raise ValidationError("No admin associated with this distributor")

        locked = {
            o.id: o
            for o in lock_for_update(
                db.session.query(Order).populate_existing().filter(Order.id.in_(ids))
            ).all()
        }
        already_sent = [oid for oid in ids if locked[oid].sent_to_admin]
        pending = [oid for oid in ids if not locked[oid].sent_to_admin]
        if not pending:
            db.session.rollback()
            return {
                "orders_count": 0,
                "notification_id": None,
                "items_summary": [],
                "already_sent": already_sent,
            }

        items: dict[int, dict] = {}
        for oid in pending:
            for line in locked[oid].lines:
                entry = items.get(line.product_id)
                if entry is None:
                    items[line.product_id] = {
                        "product_id": line.product_id,
                        "product_name": line.product.name if line.product else None,
                        "total_quantity": line.quantity,
                    }
                else:
                    entry["total_quantity"] += line.quantity
        items_summary = list(items.values())

        now = utcnow()
        notification = AdminNotification(
            distributor_id=principal.node_id,
            admin_id=admin_id,
            orders_count=len(pending),
            order_ids=pending,
            items_summary=items_summary,
            created_at=now,
        )
        db.session.add(notification)
        db.session.flush()

        for oid in pending:
            order = locked[oid]
            order.sent_to_admin = True
            order.sent_to_admin_at = now
            order.updated_at = now
            audit_service.append_order_event(
                order_id=order.id,
                event_type=audit_service.EVENT_ORDER_SENT_TO_ADMIN,
                from_status=order.status,
                to_status=order.status,
                actor_node_id=principal.node_id,
                occurred_at=now,
                payload={"notification_id": notification.id},
            )

        db.session.commit()
        logger.info(
            "Distributor %s sent %d order(s) to admin %s (notification %s)",
            principal.node_id, len(pending), admin_id, notification.id,
        )
        return {
            "orders_count": len(pending),
            "notification_id": notification.id,
            "items_summary": items_summary,
            "already_sent": already_sent,
        }

    return run_with_retry(_op)


# =============================================================================
# RECEIPT
# =============================================================================

def _apply_receipt(principal: Principal, order_id: int) -> Order:
    """
    Conditional receipt update. Raises ConcurrentModification when the order
    was already received (by this call's rivals or earlier).
    """
    def _op() -> Order:
        now = utcnow()
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.received_at.is_(None),
                Order.marked_for_today.is_(True),
                Order.status != STATUS_CANCELLED,
            )
            .values(
                received_at=now,
                received_by_node_id=principal.node_id,
                status=STATUS_RECEIVED,
                # Receipt clears a pending admin notification
                admin_acknowledged_at=case(
                    (Order.sent_to_admin.is_(True), func.coalesce(Order.admin_acknowledged_at, now)),
                    else_=Order.admin_acknowledged_at,
                ),
                updated_at=now,
                version_id=Order.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        if result.rowcount == 1:
            audit_service.append_order_event(
                order_id=order_id,
                event_type=audit_service.EVENT_ORDER_RECEIVED,
                from_status=STATUS_MARKED_FOR_TRANSIT,
                to_status=STATUS_RECEIVED,
                actor_node_id=principal.node_id,
                occurred_at=now,
            )
            db.session.commit()
            return _fetch_fresh(order_id)

        db.session.rollback()
        order = _fetch_fresh(order_id)
        if order.received_at is not None:
            raise ConcurrentModification(f"Order {order_id} is already received")
        if order.status == STATUS_CANCELLED:
            raise InvalidStateTransition(f"Order {order_id} is cancelled")
        raise InvalidStateTransition(f"Order {order_id} must be in transit to mark as received")

    return run_with_retry(_op)


def mark_received(principal: Principal, order_id: int) -> Order:
    """
    Confirm physical receipt of one order.

    Idempotent: a second call (concurrent or later) returns the order with
    the original received_at and records nothing.

    Raises:
        InvalidStateTransition: order not marked for transit, or cancelled
        ScopeViolation / NotFound: per the validation stage
    """
    order_id = _strict_int(order_id, "order_id")
    _load_in_scope(principal, [order_id])
    try:
        return _apply_receipt(principal, order_id)
    except ConcurrentModification:
        return _fetch_fresh(order_id)


def mark_received_bulk(principal: Principal, order_ids: list[int]) -> dict:
    """Receipt for many orders; all-or-nothing scope check, per-id outcome."""
    ids = _normalize_order_ids(order_ids)
    _load_in_scope(principal, ids)

    results = []
    orders = []
    for order_id in ids:
        try:
            try:
                order = _apply_receipt(principal, order_id)
                outcome = "received"
            except ConcurrentModification:
                order = _fetch_fresh(order_id)
                outcome = "already_received"
            orders.append(order)
            results.append({"order_id": order_id, "ok": True, "result": outcome})
        except TierflowError as exc:
            results.append({"order_id": order_id, "ok": False, **exc.to_dict()})

    return {
        "results": results,
        "orders": orders,
        "failed": sum(1 for r in results if not r["ok"]),
    }


# =============================================================================
# PAYMENT
# =============================================================================

def record_payment(principal: Principal, order_id: int, amount_paid_cents: int) -> PaymentResult:
    """
    Overwrite the amount paid on a received order.

    WHY: Collections are recorded incrementally as absolute values
    (600 then 1000 means 1000 paid, not 1600). Each amendment is kept in
    payment_records with the value it replaced.

    Amounts above the order total are accepted and flagged as an anomaly;
    over-payment and refunds are legitimate business cases.
    """
    order_id = _strict_int(order_id, "order_id")
    amount = _strict_int(amount_paid_cents, "amount_paid_cents")
    if amount < 0:
        raise ValidationError("amount_paid_cents cannot be negative")
    if amount > MAX_AMOUNT_CENTS:
        raise ValidationError(f"amount_paid_cents cannot exceed {MAX_AMOUNT_CENTS}")

    _load_in_scope(principal, [order_id])

    def _op() -> PaymentResult:
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise NotFound(f"Order {order_id} not found")
        if order.received_at is None:
            raise InvalidStateTransition("Order must be marked as received before recording payment")

        now = utcnow()
        previous = order.amount_paid_cents
        exceeds = amount > order.total_cents

        order.amount_paid_cents = amount
        order.payment_status = payment_status_for(amount, order.total_cents)
        order.updated_at = now

        record = PaymentRecord(
            order_id=order.id,
            previous_cents=previous,
            amount_paid_cents=amount,
            exceeds_total=exceeds,
            recorded_by_node_id=principal.node_id,
            recorded_at=now,
        )
        db.session.add(record)

        audit_service.append_order_event(
            order_id=order.id,
            event_type=audit_service.EVENT_PAYMENT_RECORDED,
            from_status=order.status,
            to_status=order.status,
            actor_node_id=principal.node_id,
            occurred_at=now,
            payload={
                "previous_cents": previous,
                "amount_paid_cents": amount,
                "payment_status": order.payment_status,
            },
        )
        db.session.commit()

        anomaly = ANOMALY_OVERPAYMENT if exceeds else None
        if anomaly:
            logger.warning(
                "Order %s payment %s exceeds total %s", order.id, amount, order.total_cents
            )
        return PaymentResult(order=order, record=record, anomaly=anomaly)

    return run_with_retry(_op)


def list_payment_records(principal: Principal, order_id: int) -> list[PaymentRecord]:
    _load_in_scope(principal, [order_id])
    return (
        db.session.query(PaymentRecord)
        .filter_by(order_id=order_id)
        .order_by(PaymentRecord.id.asc())
        .all()
    )


# =============================================================================
# DELIVERY DATE / CANCELLATION / ACKNOWLEDGEMENT
# =============================================================================

def revise_delivery_date(principal: Principal, order_id: int, new_date) -> Order:
    """
    Move the current delivery date; the desired date is preserved.

    Only the servicing distributor may revise, only before receipt, and only
    to a date after today. A desired/current mismatch is the signal for
    consumers to notify the customer (see Order.delivery_date_changed).
    """
    order_id = _strict_int(order_id, "order_id")
    try:
        revised = parse_iso_date(new_date)
    except ValueError:
        raise ValidationError("delivery_date must be an ISO date (YYYY-MM-DD)")
    if revised is None:
        raise ValidationError("delivery_date is required")
    if revised <= current_business_today():
        raise ValidationError("delivery_date must be later than today")

    def _op() -> Order:
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise NotFound(f"Order {order_id} not found")
        # Servicing follows the live tree, not the chain recorded at checkout
        servicing = (
            principal.role != ROLE_CUSTOMER
            and resolve_scope(principal).contains(order.customer_id)
            and servicing_chain(order.customer_id)[0] == principal.node_id
        )
        if not servicing:
            raise ScopeViolation("Only the servicing distributor can revise the delivery date")
        if order.status in (STATUS_RECEIVED, STATUS_CANCELLED):
            raise InvalidStateTransition(f"Order {order_id} is {order.status}; delivery date is final")

        previous = order.current_delivery_date
        now = utcnow()
        order.current_delivery_date = revised
        order.updated_at = now

        audit_service.append_order_event(
            order_id=order.id,
            event_type=audit_service.EVENT_DELIVERY_DATE_REVISED,
            from_status=order.status,
            to_status=order.status,
            actor_node_id=principal.node_id,
            occurred_at=now,
            payload={
                "previous": previous.isoformat(),
                "current": revised.isoformat(),
                "desired": order.desired_delivery_date.isoformat(),
            },
        )
        db.session.commit()
        return order

    return run_with_retry(_op)


def cancel_order(principal: Principal, order_id: int) -> Order:
    """Cancel a PLACED order. Owner customer or an admin in scope. Idempotent."""
    order_id = _strict_int(order_id, "order_id")
    if principal.role not in (ROLE_CUSTOMER, ROLE_ADMIN):
        raise ScopeViolation("Only the customer or an admin can cancel an order")
    _load_in_scope(principal, [order_id])

    def _op() -> Order:
        now = utcnow()
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == STATUS_PLACED)
            .values(
                status=STATUS_CANCELLED,
                cancelled_at=now,
                updated_at=now,
                version_id=Order.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        if result.rowcount == 1:
            audit_service.append_order_event(
                order_id=order_id,
                event_type=audit_service.EVENT_ORDER_CANCELLED,
                from_status=STATUS_PLACED,
                to_status=STATUS_CANCELLED,
                actor_node_id=principal.node_id,
                occurred_at=now,
            )
            db.session.commit()
            return _fetch_fresh(order_id)

        db.session.rollback()
        order = _fetch_fresh(order_id)
        if order.status == STATUS_CANCELLED:
            return order
        raise InvalidStateTransition(f"Order {order_id} is {order.status} and can no longer be cancelled")

    return run_with_retry(_op)


def acknowledge_notifications(principal: Principal, order_ids: list[int]) -> dict:
    """Admin clears orders from its notification feed."""
    if principal.role != ROLE_ADMIN:
        raise ScopeViolation("Only admins can acknowledge notifications")
    ids = _normalize_order_ids(order_ids)

    def _op() -> dict:
        _load_in_scope(principal, ids)
        now = utcnow()
        acknowledged = []
        orders = lock_for_update(
            db.session.query(Order).filter(
                Order.id.in_(ids),
                Order.sent_to_admin.is_(True),
                Order.admin_acknowledged_at.is_(None),
            )
        ).all()
        for order in orders:
            order.admin_acknowledged_at = now
            order.updated_at = now
            audit_service.append_order_event(
                order_id=order.id,
                event_type=audit_service.EVENT_NOTIFICATION_ACKNOWLEDGED,
                from_status=order.status,
                to_status=order.status,
                actor_node_id=principal.node_id,
                occurred_at=now,
            )
            acknowledged.append(order.id)
        db.session.commit()
        return {"acknowledged": sorted(acknowledged), "count": len(acknowledged)}

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_order(principal: Principal, order_id: int) -> Order:
    order_id = _strict_int(order_id, "order_id")
    return _load_in_scope(principal, [order_id])[order_id]


def list_orders(
    principal: Principal,
    *,
    status: str | None = None,
    customer_id: int | None = None,
    marked_for_today: bool | None = None,
    sent_to_admin: bool | None = None,
    received: bool | None = None,
    include_cancelled: bool = False,
    partition_by_delivery_date: bool = False,
):
    """
    Orders in the principal's scope, earliest delivery first, newest first
    within a day.

    With partition_by_delivery_date the result is
    {"orders_by_date": {iso_date: [...]}, "all_orders": [...]}.
    """
    scope = resolve_scope(principal)
    query = _scoped(db.session.query(Order), scope)

    if status is not None:
        if status not in VALID_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(sorted(VALID_STATUSES))}")
        query = query.filter(Order.status == status)
    elif not include_cancelled:
        query = query.filter(Order.status != STATUS_CANCELLED)

    if customer_id is not None:
        if not scope.contains(customer_id):
            raise ScopeViolation(f"Customer {customer_id} is outside your scope")
        query = query.filter(Order.customer_id == customer_id)
    if marked_for_today is not None:
        query = query.filter(Order.marked_for_today.is_(marked_for_today))
    if sent_to_admin is not None:
        query = query.filter(Order.sent_to_admin.is_(sent_to_admin))
    if received is True:
        query = query.filter(Order.received_at.isnot(None))
    elif received is False:
        query = query.filter(Order.received_at.is_(None))

    orders = query.order_by(
        Order.current_delivery_date.asc(),
        Order.created_at.desc(),
        Order.id.desc(),
    ).all()
    if partition_by_delivery_date:
        return {"orders_by_date": group_by_delivery_date(orders), "all_orders": orders}
    return orders


def group_by_delivery_date(orders: list[Order]) -> dict[str, list[Order]]:
    """Group orders under their current delivery date (ISO string keys, insertion ordered)."""
    grouped: dict[str, list[Order]] = {}
    for order in orders:
        grouped.setdefault(order.current_delivery_date.isoformat(), []).append(order)
    return grouped


def list_admin_notifications(principal: Principal) -> list[Order]:
    """Sent-to-admin orders that are neither received nor acknowledged."""
    if principal.role != ROLE_ADMIN:
        raise ScopeViolation("Only admins have a notification feed")
    scope = resolve_scope(principal)
    return (
        _scoped(db.session.query(Order), scope)
        .filter(
            Order.sent_to_admin.is_(True),
            Order.received_at.is_(None),
            Order.admin_acknowledged_at.is_(None),
            Order.status != STATUS_CANCELLED,
        )
        .order_by(Order.sent_to_admin_at.desc(), Order.id.desc())
        .all()
    )


def list_notification_batches(principal: Principal, *, limit: int = 50) -> list[AdminNotification]:
    if principal.role != ROLE_ADMIN:
        raise ScopeViolation("Only admins have a notification feed")
    query = db.session.query(AdminNotification)
    if not principal.is_super_admin:
        query = query.filter(AdminNotification.admin_id.in_(resolve_scope(principal).node_ids))
    return query.order_by(AdminNotification.id.desc()).limit(limit).all()


def in_transit_count(principal: Principal) -> int:
    scope = resolve_scope(principal)
    return (
        _scoped(db.session.query(func.count(Order.id)), scope)
        .filter(
            Order.marked_for_today.is_(True),
            Order.received_at.is_(None),
            Order.status != STATUS_CANCELLED,
        )
        .scalar()
        or 0
    )


def list_order_events(principal: Principal, order_id: int):
    _load_in_scope(principal, [order_id])
    return audit_service.list_order_events(order_id)
