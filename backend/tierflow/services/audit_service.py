# Overview: Service-layer operations for the order audit trail; append-only order events.

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from ..extensions import db
from ..models import OrderEvent
"""
Order Audit Trail Invariants (authoritative)

- Append-only: one event per applied transition; no updates, no deletes.
- No domain logic in the audit trail itself.
- Events are written inside the same DB transaction as the transition they record.
- A no-op transition (idempotent re-mark, repeated receipt) writes nothing.
"""


EVENT_ORDER_PLACED = "ORDER_PLACED"
EVENT_ORDER_MARKED_FOR_TRANSIT = "ORDER_MARKED_FOR_TRANSIT"
EVENT_ORDER_SENT_TO_ADMIN = "ORDER_SENT_TO_ADMIN"
EVENT_ORDER_RECEIVED = "ORDER_RECEIVED"
EVENT_PAYMENT_RECORDED = "PAYMENT_RECORDED"
EVENT_DELIVERY_DATE_REVISED = "DELIVERY_DATE_REVISED"
EVENT_ORDER_CANCELLED = "ORDER_CANCELLED"
EVENT_NOTIFICATION_ACKNOWLEDGED = "NOTIFICATION_ACKNOWLEDGED"


def append_order_event(
    *,
    order_id: int,
    event_type: str,
    from_status: str | None,
    to_status: str | None,
    actor_node_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    payload: dict | None = None,
) -> OrderEvent:
    """
    Append-only order event.

    - No domain logic here.
    - No deletes/updates of existing events.
    - Caller commits.
    """
    ev = OrderEvent(
        order_id=order_id,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        actor_node_id=actor_node_id,
        occurred_at=occurred_at,  # if None, db default applies
        payload=json.dumps(payload, sort_keys=True, default=str) if payload else None,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def list_order_events(order_id: int, *, event_type: str | None = None) -> list[OrderEvent]:
    query = db.session.query(OrderEvent).filter_by(order_id=order_id)
    if event_type:
        query = query.filter_by(event_type=event_type)
    return query.order_by(OrderEvent.id.asc()).all()
