# Overview: Service-layer operations for revenue rollups; scoped, tiered aggregation over orders.

"""
Rollup Aggregation Engine

One aggregate() call serves every role: the principal's scope decides which
orders are visible, `level` decides how they are partitioned.

RULES:
- Revenue is the sum of order totals (never amount paid). Cancelled orders
  are excluded.
- Every order is attributed to exactly one node per tier by walking the
  current hierarchy up from the owning customer, so breakdown rows always
  sum to the total.
- Drill-down is a re-invocation with parent_id; nothing is remembered
  between calls.
- The order set is read with a single SELECT; no result is cached.
"""

from __future__ import annotations

from datetime import date, datetime

from ..extensions import db
from ..models import Order
from ..money import format_cents
from tierflow.time_utils import (
    business_today,
    current_business_tz,
    local_range_utc,
    parse_iso_date,
    to_utc_z,
)
from .errors import ScopeViolation, ValidationError
from .hierarchy_service import (
    ROLE_ADMIN,
    ROLE_CUSTOMER,
    ROLE_DISTRIBUTOR,
    TIER_RANK,
    NodeIndex,
    Principal,
    narrow_scope,
    resolve_scope,
)


LEVEL_ALL = "all"
VALID_LEVELS = (LEVEL_ALL, ROLE_ADMIN, ROLE_DISTRIBUTOR, ROLE_CUSTOMER)

DATE_FILTER_ALL = "all"
DATE_FILTER_TODAY = "today"
DATE_FILTER_THIS_MONTH = "thisMonth"
DATE_FILTER_THIS_YEAR = "thisYear"
DATE_FILTER_MONTH = "month"
DATE_FILTER_YEAR = "year"
DATE_FILTER_CUSTOM = "custom"

VALID_DATE_FILTERS = (
    DATE_FILTER_ALL,
    DATE_FILTER_TODAY,
    DATE_FILTER_THIS_MONTH,
    DATE_FILTER_THIS_YEAR,
    DATE_FILTER_MONTH,
    DATE_FILTER_YEAR,
    DATE_FILTER_CUSTOM,
)


def _as_int(value, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer")


def _month_bounds(year: int, month: int) -> tuple[date, date]:
    first = date(year, month, 1)
    if month == 12:
        following = date(year + 1, 1, 1)
    else:
        following = date(year, month + 1, 1)
    return first, date.fromordinal(following.toordinal() - 1)


def resolve_date_range(
    date_filter: str | None,
    *,
    month=None,
    year=None,
    start_date=None,
    end_date=None,
    tz_name: str | None = None,
    now: datetime | None = None,
) -> tuple[datetime, datetime] | None:
    """
    Translate a date filter into a half-open UTC-naive [start, end) range.

    Calendar boundaries are taken in the business timezone. Returns None for
    "all".

    Raises:
        ValidationError: unknown filter, or parameters missing/invalid
    """
    date_filter = date_filter or DATE_FILTER_ALL
    if date_filter not in VALID_DATE_FILTERS:
        raise ValidationError(f"date_filter must be one of {', '.join(VALID_DATE_FILTERS)}")
    if date_filter == DATE_FILTER_ALL:
        return None

    today = business_today(tz_name, now=now)

    if date_filter == DATE_FILTER_TODAY:
        return local_range_utc(today, today, tz_name)

    if date_filter == DATE_FILTER_THIS_MONTH:
        first, last = _month_bounds(today.year, today.month)
        return local_range_utc(first, last, tz_name)

    if date_filter == DATE_FILTER_THIS_YEAR:
        return local_range_utc(date(today.year, 1, 1), date(today.year, 12, 31), tz_name)

    if date_filter == DATE_FILTER_MONTH:
        if month in (None, "") or year in (None, ""):
            raise ValidationError("month and year are required for the month filter")
        month_num = _as_int(month, "month")
        year_num = _as_int(year, "year")
        if not 1 <= month_num <= 12:
            raise ValidationError("month must be between 1 and 12")
        if not 1 <= year_num <= 9998:
            raise ValidationError("year is out of range")
        first, last = _month_bounds(year_num, month_num)
        return local_range_utc(first, last, tz_name)

    if date_filter == DATE_FILTER_YEAR:
        if year in (None, ""):
            raise ValidationError("year is required for the year filter")
        year_num = _as_int(year, "year")
        if not 1 <= year_num <= 9998:
            raise ValidationError("year is out of range")
        return local_range_utc(date(year_num, 1, 1), date(year_num, 12, 31), tz_name)

    # custom
    if not start_date or not end_date:
        raise ValidationError("start_date and end_date are required for the custom filter")
    try:
        first = parse_iso_date(start_date)
        last = parse_iso_date(end_date)
    except ValueError:
        raise ValidationError("start_date and end_date must be ISO dates (YYYY-MM-DD)")
    if last < first:
        raise ValidationError("end_date cannot be before start_date")
    return local_range_utc(first, last, tz_name)


def _attribute(index: NodeIndex, customer_id: int, level: str) -> int | None:
    """Node at `level` that an order placed by `customer_id` rolls up to."""
    if level == ROLE_CUSTOMER:
        return customer_id
    if level == ROLE_DISTRIBUTOR:
        distributor_id = index.nearest_with_role(customer_id, ROLE_DISTRIBUTOR)
        if distributor_id is not None:
            return distributor_id
        # Customer served directly by an admin
        customer = index.get(customer_id)
        return customer.parent_id if customer is not None else None
    return index.nearest_with_role(customer_id, ROLE_ADMIN)


def aggregate(
    principal: Principal,
    *,
    level: str = LEVEL_ALL,
    parent_id: int | None = None,
    date_filter: str | None = DATE_FILTER_ALL,
    month=None,
    year=None,
    start_date=None,
    end_date=None,
    now: datetime | None = None,
) -> dict:
    """
    Revenue and order count over the principal's scope.

    Args:
        principal: Acting principal; determines the visible subtree
        level: "all" for a single total, or a tier to break the total down by
        parent_id: Drill-down anchor; must lie inside the principal's scope
        date_filter: all | today | thisMonth | thisYear | month | year | custom

    Returns:
        {"total": {...}, "breakdown": [...], "level", "parent_id",
         "date_filter", "date_range"}

    Raises:
        ValidationError: unknown level/filter or missing filter parameters
        ScopeViolation: parent_id outside scope, or a tier above the caller
    """
    if level not in VALID_LEVELS:
        raise ValidationError(f"level must be one of {', '.join(VALID_LEVELS)}")
    if level != LEVEL_ALL and TIER_RANK[level] < TIER_RANK[principal.role]:
        raise ScopeViolation(f"A {principal.role} cannot aggregate at the {level} tier")

    tz_name = current_business_tz()
    date_range = resolve_date_range(
        date_filter,
        month=month,
        year=year,
        start_date=start_date,
        end_date=end_date,
        tz_name=tz_name,
        now=now,
    )

    index = NodeIndex.load()
    scope = narrow_scope(resolve_scope(principal, index=index), parent_id, index=index)

    query = db.session.query(Order.id, Order.customer_id, Order.total_cents).filter(
        Order.status != "CANCELLED"
    )
    if not scope.is_super_admin:
        query = query.filter(Order.customer_id.in_(scope.node_ids))
    if date_range is not None:
        start, end = date_range
        query = query.filter(Order.created_at >= start, Order.created_at < end)
    rows = query.all()

    total_cents = sum(row.total_cents for row in rows)
    result = {
        "level": level,
        "parent_id": parent_id,
        "date_filter": date_filter or DATE_FILTER_ALL,
        "date_range": (
            {"start": to_utc_z(date_range[0]), "end": to_utc_z(date_range[1])}
            if date_range is not None
            else None
        ),
        "total": {
            "revenue_cents": total_cents,
            "revenue": format_cents(total_cents),
            "order_count": len(rows),
        },
        "breakdown": [],
    }
    if level == LEVEL_ALL:
        return result

    buckets: dict[int, dict] = {}
    for row in rows:
        node_id = _attribute(index, row.customer_id, level)
        bucket = buckets.setdefault(node_id, {"revenue_cents": 0, "order_count": 0})
        bucket["revenue_cents"] += row.total_cents
        bucket["order_count"] += 1

    breakdown = []
    for node_id, bucket in buckets.items():
        node = index.get(node_id) if node_id is not None else None
        breakdown.append(
            {
                "node_id": node_id,
                "name": node.name if node is not None else None,
                "role": node.role if node is not None else None,
                "revenue_cents": bucket["revenue_cents"],
                "revenue": format_cents(bucket["revenue_cents"]),
                "order_count": bucket["order_count"],
            }
        )
    breakdown.sort(key=lambda r: (-r["revenue_cents"], r["node_id"] if r["node_id"] is not None else 0))
    result["breakdown"] = breakdown
    return result


def today_totals(principal: Principal) -> dict:
    """Today's total for the principal's scope (sync snapshots)."""
    return aggregate(principal, level=LEVEL_ALL, date_filter=DATE_FILTER_TODAY)["total"]
