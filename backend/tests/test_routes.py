"""
API route tests.

Verifies:
- Requests without a principal return 401
- Domain errors map to 400 / 403 / 404 / 409
- Checkout -> transit -> receipt -> payment over HTTP
- Stats, notifications, sync and health endpoints
"""

from datetime import timedelta

import pytest


def principal_headers(node_id):
    return {"X-Principal-Id": str(node_id)}


def _create_order(client, headers, product, today, *, quantity=2, customer_id=None):
    body = {
        "desired_delivery_date": today.isoformat(),
        "lines": [{"product_id": product.id, "quantity": quantity}],
    }
    if customer_id is not None:
        body["customer_id"] = customer_id
    resp = client.post("/api/orders", json=body, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["order"]


# =============================================================================
# AUTHENTICATION - 401
# =============================================================================


class TestUnauthenticatedAccess:

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/orders"),
            ("POST", "/api/orders"),
            ("GET", "/api/orders/1"),
            ("POST", "/api/orders/mark-for-transit"),
            ("POST", "/api/orders/1/receive"),
            ("PUT", "/api/orders/1/payment"),
            ("GET", "/api/notifications"),
            ("GET", "/api/stats/revenue-orders"),
            ("GET", "/api/stats/users"),
            ("GET", "/api/scope"),
            ("GET", "/api/nodes"),
            ("POST", "/api/sync/sessions"),
            ("GET", "/api/products"),
            ("PUT", "/api/products/1/prices/1"),
        ],
    )
    def test_requires_principal(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_unknown_principal(self, client, tree):
        resp = client.get("/api/orders", headers=principal_headers(987654))
        assert resp.status_code == 401

    def test_malformed_principal(self, client, tree):
        resp = client.get("/api/orders", headers={"X-Principal-Id": "abc"})
        assert resp.status_code == 401

    def test_deactivated_principal(self, client, tree, admin_headers):
        client.post(f"/api/nodes/{tree.cust_a1b.id}/deactivate", headers=admin_headers)
        resp = client.get("/api/orders", headers=principal_headers(tree.cust_a1b.id))
        assert resp.status_code == 401


# =============================================================================
# ORDER FLOW
# =============================================================================


class TestOrderFlow:

    def test_checkout_to_payment(self, client, tree, product, today, customer_headers, distributor_headers):
        order = _create_order(client, customer_headers, product, today)
        assert order["total_cents"] == 100000
        assert order["total"] == "1000.00"
        assert order["status"] == "PLACED"
        order_id = order["id"]

        resp = client.post(f"/api/orders/{order_id}/receive", headers=customer_headers)
        assert resp.status_code == 409
        assert resp.get_json()["kind"] == "InvalidStateTransition"

        resp = client.post(
            "/api/orders/mark-for-transit", json={"order_ids": [order_id]}, headers=distributor_headers
        )
        assert resp.status_code == 200
        assert resp.get_json()["marked"] == 1

        resp = client.post(f"/api/orders/{order_id}/receive", headers=customer_headers)
        assert resp.status_code == 200
        received_at = resp.get_json()["order"]["received_at"]
        assert received_at is not None

        again = client.post(f"/api/orders/{order_id}/receive", headers=distributor_headers)
        assert again.status_code == 200
        assert again.get_json()["order"]["received_at"] == received_at

        resp = client.put(
            f"/api/orders/{order_id}/payment", json={"amount_paid_cents": 60000}, headers=distributor_headers
        )
        assert resp.status_code == 200
        assert resp.get_json()["order"]["payment_status"] == "PARTIAL"

        resp = client.put(
            f"/api/orders/{order_id}/payment", json={"amount_paid_cents": 100000}, headers=distributor_headers
        )
        body = resp.get_json()
        assert body["order"]["amount_paid_cents"] == 100000
        assert body["order"]["payment_status"] == "PAID"
        assert body["anomaly"] is None

        history = client.get(f"/api/orders/{order_id}/payments", headers=customer_headers).get_json()
        assert [p["amount_paid_cents"] for p in history["payments"]] == [60000, 100000]

        events = client.get(f"/api/orders/{order_id}/events", headers=customer_headers).get_json()
        assert [e["event_type"] for e in events["events"]].count("ORDER_RECEIVED") == 1

    def test_list_and_partition(self, client, tree, product, today, customer_headers, distributor_headers):
        first = _create_order(client, customer_headers, product, today)
        resp = client.get("/api/orders", headers=distributor_headers)
        assert resp.get_json()["count"] == 1

        resp = client.get("/api/orders?partition=delivery_date", headers=distributor_headers)
        body = resp.get_json()
        assert list(body["orders_by_date"]) == [today.isoformat()]
        assert body["all_orders"][0]["id"] == first["id"]

    def test_list_rejects_bad_boolean(self, client, tree, distributor_headers):
        resp = client.get("/api/orders?received=maybe", headers=distributor_headers)
        assert resp.status_code == 400

    def test_in_transit_count(self, client, tree, product, today, customer_headers, distributor_headers):
        order = _create_order(client, customer_headers, product, today)
        client.post("/api/orders/mark-for-transit", json={"order_ids": [order["id"]]}, headers=distributor_headers)

        resp = client.get("/api/orders/in-transit-count", headers=distributor_headers)
        assert resp.get_json() == {"count": 1}

    def test_bulk_receive(self, client, tree, product, today, customer_headers, distributor_headers):
        a = _create_order(client, customer_headers, product, today)
        b = _create_order(client, customer_headers, product, today)
        client.post("/api/orders/mark-for-transit", json={"order_ids": [a["id"]]}, headers=distributor_headers)

        resp = client.post("/api/orders/receive", json={"order_ids": [a["id"], b["id"]]}, headers=distributor_headers)

        body = resp.get_json()
        assert resp.status_code == 200
        assert body["failed"] == 1
        assert [o["id"] for o in body["orders"]] == [a["id"]]

    def test_revise_delivery_date(self, client, tree, product, today, customer_headers, distributor_headers):
        order = _create_order(client, customer_headers, product, today)
        new_date = (today + timedelta(days=2)).isoformat()

        resp = client.put(
            f"/api/orders/{order['id']}/delivery-date",
            json={"delivery_date": new_date},
            headers=distributor_headers,
        )

        body = resp.get_json()["order"]
        assert body["current_delivery_date"] == new_date
        assert body["desired_delivery_date"] == today.isoformat()
        assert body["delivery_date_changed"] is True

    def test_cancel(self, client, tree, product, today, customer_headers):
        order = _create_order(client, customer_headers, product, today)
        resp = client.post(f"/api/orders/{order['id']}/cancel", headers=customer_headers)
        assert resp.status_code == 200
        assert resp.get_json()["order"]["status"] == "CANCELLED"


# =============================================================================
# ERROR MAPPING
# =============================================================================


class TestErrorMapping:

    def test_validation_error_is_400(self, client, tree, product, customer_headers):
        resp = client.post(
            "/api/orders",
            json={"desired_delivery_date": "2099-01-01", "lines": []},
            headers=customer_headers,
        )
        assert resp.status_code == 400
        assert resp.get_json()["kind"] == "ValidationError"

    def test_missing_body_is_400(self, client, tree, distributor_headers):
        resp = client.post("/api/orders/mark-for-transit", headers=distributor_headers)
        assert resp.status_code == 400

    def test_missing_payment_amount_is_400(self, client, tree, distributor_headers):
        resp = client.put("/api/orders/1/payment", json={}, headers=distributor_headers)
        assert resp.status_code == 400

    def test_foreign_order_is_403(self, client, tree, product, today, distributor_headers):
        foreign = _create_order(client, principal_headers(tree.cust_b1a.id), product, today)

        resp = client.post(
            "/api/orders/mark-for-transit", json={"order_ids": [foreign["id"]]}, headers=distributor_headers
        )
        assert resp.status_code == 403
        assert resp.get_json()["details"]["order_ids"] == [foreign["id"]]

        resp = client.get(f"/api/orders/{foreign['id']}", headers=distributor_headers)
        assert resp.status_code == 403

    def test_customer_cannot_stage(self, client, tree, customer_headers):
        resp = client.post("/api/orders/mark-for-transit", json={"order_ids": [1]}, headers=customer_headers)
        assert resp.status_code == 403
        assert resp.get_json()["kind"] == "ScopeViolation"

    def test_unknown_order_is_404(self, client, tree, distributor_headers):
        resp = client.get("/api/orders/987654", headers=distributor_headers)
        assert resp.status_code == 404
        assert resp.get_json()["kind"] == "NotFound"

    def test_send_unmarked_is_409(self, client, tree, product, today, customer_headers, distributor_headers):
        order = _create_order(client, customer_headers, product, today)
        resp = client.post("/api/orders/send-to-admin", json={"order_ids": [order["id"]]}, headers=distributor_headers)
        assert resp.status_code == 409

    def test_string_customer_id_is_400(self, client, tree, product, today, admin_headers):
        body = {
            "customer_id": str(tree.cust_a1a.id),
            "desired_delivery_date": today.isoformat(),
            "lines": [{"product_id": product.id, "quantity": 1}],
        }
        resp = client.post("/api/orders", json=body, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.get_json()["kind"] == "ValidationError"


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class TestNotifications:

    def test_send_and_acknowledge(self, client, tree, product, today, customer_headers, distributor_headers, admin_headers):
        order = _create_order(client, customer_headers, product, today)
        client.post("/api/orders/mark-for-transit", json={"order_ids": [order["id"]]}, headers=distributor_headers)

        resp = client.post("/api/orders/send-to-admin", json={"order_ids": [order["id"]]}, headers=distributor_headers)
        assert resp.status_code == 200
        assert resp.get_json()["items_summary"][0]["total_quantity"] == 2

        feed = client.get("/api/notifications", headers=admin_headers).get_json()
        assert feed["count"] == 1
        assert feed["batches"][0]["orders_count"] == 1

        resp = client.post("/api/notifications/acknowledge", json={"order_ids": [order["id"]]}, headers=admin_headers)
        assert resp.get_json()["count"] == 1
        assert client.get("/api/notifications", headers=admin_headers).get_json()["count"] == 0

    def test_resend_reports_already_sent(self, client, tree, product, today, customer_headers, distributor_headers, admin_headers):
        order = _create_order(client, customer_headers, product, today)
        client.post("/api/orders/mark-for-transit", json={"order_ids": [order["id"]]}, headers=distributor_headers)
        client.post("/api/orders/send-to-admin", json={"order_ids": [order["id"]]}, headers=distributor_headers)

        resp = client.post("/api/orders/send-to-admin", json={"order_ids": [order["id"]]}, headers=distributor_headers)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["already_sent"] == [order["id"]]
        assert body["notification_id"] is None
        assert len(client.get("/api/notifications", headers=admin_headers).get_json()["batches"]) == 1

    def test_admin_only(self, client, tree, distributor_headers):
        resp = client.get("/api/notifications", headers=distributor_headers)
        assert resp.status_code == 403


# =============================================================================
# STATS
# =============================================================================


class TestStats:

    def test_revenue_breakdown_and_drill_down(self, client, tree, product, today, admin_headers):
        _create_order(client, principal_headers(tree.cust_a1a.id), product, today, quantity=2)
        _create_order(client, principal_headers(tree.cust_a2a.id), product, today, quantity=1)

        resp = client.get("/api/stats/revenue-orders?level=distributor", headers=admin_headers)
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["total"]["revenue_cents"] == 150000
        assert [r["node_id"] for r in body["breakdown"]] == [tree.dist_a1.id, tree.dist_a2.id]

        resp = client.get(
            f"/api/stats/revenue-orders?level=customer&parent_id={tree.dist_a1.id}", headers=admin_headers
        )
        assert resp.get_json()["total"]["revenue_cents"] == 100000

    def test_month_filter_requires_parameters(self, client, tree, admin_headers):
        resp = client.get("/api/stats/revenue-orders?date_filter=month&month=1", headers=admin_headers)
        assert resp.status_code == 400

    def test_tier_above_caller_is_403(self, client, tree, distributor_headers):
        resp = client.get("/api/stats/revenue-orders?level=admin", headers=distributor_headers)
        assert resp.status_code == 403

    def test_user_stats(self, client, tree, admin_headers):
        resp = client.get("/api/stats/users", headers=admin_headers)
        assert resp.get_json() == {"total": 6, "admin": 0, "distributor": 2, "customer": 4}

        resp = client.get(f"/api/stats/users?parent_id={tree.dist_a1.id}", headers=admin_headers)
        assert resp.get_json()["customer"] == 2


# =============================================================================
# NODES
# =============================================================================


class TestNodes:

    def test_scope(self, client, tree, distributor_headers):
        scope = client.get("/api/scope", headers=distributor_headers).get_json()["scope"]
        assert scope["node_id"] == tree.dist_a1.id
        assert scope["descendant_ids"] == sorted([tree.cust_a1a.id, tree.cust_a1b.id])

    def test_create_customer(self, client, tree, distributor_headers):
        resp = client.post(
            "/api/nodes",
            json={"name": "Corner Shop", "email": "corner@shop.test", "role": "customer"},
            headers=distributor_headers,
        )
        assert resp.status_code == 201
        assert resp.get_json()["node"]["parent_id"] == tree.dist_a1.id

    def test_reassign_parent_requires_super_admin(self, client, tree, admin_headers, root_headers):
        path = f"/api/nodes/{tree.cust_a1b.id}/parent"
        assert client.put(path, json={"parent_id": tree.dist_a2.id}, headers=admin_headers).status_code == 403

        resp = client.put(path, json={"parent_id": tree.dist_a2.id}, headers=root_headers)
        assert resp.status_code == 200
        assert resp.get_json()["node"]["parent_id"] == tree.dist_a2.id

    def test_ancestors(self, client, tree, customer_headers):
        resp = client.get(f"/api/nodes/{tree.cust_a1a.id}/ancestors", headers=customer_headers)
        assert [a["id"] for a in resp.get_json()["ancestors"]] == [tree.dist_a1.id, tree.admin_a.id, tree.root.id]


# =============================================================================
# PRODUCTS
# =============================================================================


class TestProducts:

    def test_customer_lists_priced_products(self, client, tree, product, customer_headers, distributor_headers):
        resp = client.put(
            f"/api/products/{product.id}/prices/{tree.cust_a1a.id}",
            json={"price_cents": 42000},
            headers=distributor_headers,
        )
        assert resp.status_code == 200
        assert resp.get_json()["price"]["price_cents"] == 42000

        resp = client.get("/api/products", headers=customer_headers)
        assert resp.status_code == 200
        listed = resp.get_json()["products"]
        assert [(p["id"], p["unit_price_cents"], p["unit_price"]) for p in listed] == [(product.id, 42000, "420.00")]

    def test_listed_price_matches_checkout(self, client, tree, product, today, customer_headers):
        listed = client.get("/api/products", headers=customer_headers).get_json()["products"][0]
        order = _create_order(client, customer_headers, product, today, quantity=1)
        assert order["total_cents"] == listed["unit_price_cents"]

    def test_distributor_cannot_price_foreign_customer(self, client, tree, product, distributor_headers):
        resp = client.put(
            f"/api/products/{product.id}/prices/{tree.cust_b1a.id}",
            json={"price_cents": 1},
            headers=distributor_headers,
        )
        assert resp.status_code == 403
        assert resp.get_json()["kind"] == "ScopeViolation"

    def test_customer_cannot_manage_prices(self, client, tree, product, customer_headers):
        resp = client.put(
            f"/api/products/{product.id}/prices/{tree.cust_a1a.id}",
            json={"price_cents": 1},
            headers=customer_headers,
        )
        assert resp.status_code == 403
        assert client.get("/api/products/prices", headers=customer_headers).status_code == 403

    def test_price_list_and_delete(self, client, tree, product, distributor_headers):
        client.put(
            f"/api/products/{product.id}/prices/{tree.cust_a1b.id}",
            json={"price_cents": 100},
            headers=distributor_headers,
        )
        prices = client.get("/api/products/prices", headers=distributor_headers).get_json()["prices"]
        assert [p["node_id"] for p in prices] == [tree.cust_a1b.id]

        resp = client.delete(f"/api/products/{product.id}/prices/{tree.cust_a1b.id}", headers=distributor_headers)
        assert resp.status_code == 200
        resp = client.delete(f"/api/products/{product.id}/prices/{tree.cust_a1b.id}", headers=distributor_headers)
        assert resp.status_code == 404

    def test_invalid_price_is_400(self, client, tree, product, distributor_headers):
        resp = client.put(
            f"/api/products/{product.id}/prices/{tree.cust_a1a.id}",
            json={"price_cents": "12"},
            headers=distributor_headers,
        )
        assert resp.status_code == 400


# =============================================================================
# SYNC & SYSTEM
# =============================================================================


class TestSyncRoutes:

    def test_session_lifecycle(self, app, client, tree, distributor_headers):
        resp = client.post("/api/sync/sessions", json={"interval_seconds": 3}, headers=distributor_headers)
        assert resp.status_code == 201
        session = resp.get_json()["session"]
        assert session["interval_seconds"] == 3
        session_id = session["session_id"]

        events = client.get(f"/api/sync/sessions/{session_id}/events", headers=distributor_headers)
        assert events.get_json()["events"] == []

        other = principal_headers(tree.dist_a2.id)
        assert client.get(f"/api/sync/sessions/{session_id}/events", headers=other).status_code == 404

        resp = client.post(f"/api/sync/sessions/{session_id}/actions", headers=distributor_headers)
        assert resp.status_code == 200

        resp = client.delete(f"/api/sync/sessions/{session_id}", headers=distributor_headers)
        assert resp.get_json() == {"session_id": session_id, "ended": True}
        assert session_id not in app.extensions["sync_manager"].active_session_ids()

    def test_invalid_interval(self, client, tree, distributor_headers):
        resp = client.post("/api/sync/sessions", json={"interval_seconds": 0}, headers=distributor_headers)
        assert resp.status_code == 400


class TestSystem:

    def test_health_degraded_without_scheduler(self, client, db_session):
        resp = client.get("/api/health")
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["status"] == "degraded"
        assert body["checks"]["database"]["status"] == "healthy"

    def test_version(self, client):
        body = client.get("/api/version").get_json()
        assert body["api_version"] == "1.0.0"
        assert body["business_timezone"] == "UTC"
