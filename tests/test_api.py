"""Integration tests for the HTTP API via TestClient."""

import pytest
from fastapi.testclient import TestClient

from main import create_app
from tests.helpers import ADDRESS, auth_headers, register


def _order_body(**overrides):
    body = {
        "items": [{"id": 1, "name": "Smart Watch Series 5", "price": 299.99, "quantity": 1}],
        "total": 336.98,
        "shipping_address": ADDRESS,
    }
    body.update(overrides)
    return body


class TestAuthEndpoints:
    def test_register_returns_token_without_password(self, client):
        response = client.post(
            "/api/register",
            json={"username": "carol", "email": "carol@example.com", "password": "secret123"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["access_token"]
        assert body["user"]["username"] == "carol"
        assert "password" not in body["user"]

    def test_register_duplicate_username(self, client):
        register(client)
        response = client.post(
            "/api/register",
            json={"username": "ALICE", "email": "other@example.com", "password": "secret123"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Username already registered"

    def test_login_and_current_user(self, client):
        headers = auth_headers(client)
        response = client.get("/api/user", headers=headers)
        assert response.status_code == 200
        assert response.json()["is_admin"] is True

    def test_form_token_endpoint_for_openapi_flow(self, client):
        response = client.post("/api/token", data={"username": "admin", "password": "admin123"})
        assert response.status_code == 200
        token = response.json()["access_token"]
        assert client.get("/api/user", headers={"Authorization": f"Bearer {token}"}).status_code == 200

    def test_openapi_points_password_flow_at_form_endpoint(self, client):
        schemes = client.get("/openapi.json").json()["components"]["securitySchemes"]
        assert schemes["OAuth2PasswordBearer"]["flows"]["password"]["tokenUrl"] == "/api/token"

    def test_login_wrong_password(self, client):
        response = client.post("/api/login", json={"username": "admin", "password": "nope"})
        assert response.status_code == 401

    def test_garbage_token(self, client):
        response = client.get("/api/user", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401


class TestCategoryEndpoints:
    def test_list(self, client):
        response = client.get("/api/categories")
        assert response.status_code == 200
        assert [c["slug"] for c in response.json()] == ["electronics", "clothing", "home-kitchen", "beauty"]

    def test_admin_creates(self, client):
        response = client.post(
            "/api/categories",
            json={"name": "Toys", "slug": "toys"},
            headers=auth_headers(client),
        )
        assert response.status_code == 201
        assert response.json()["id"] == 5

    def test_non_admin_forbidden(self, client):
        response = client.post("/api/categories", json={"name": "Toys", "slug": "toys"}, headers=register(client))
        assert response.status_code == 403

    def test_anonymous_unauthorized(self, client):
        response = client.post("/api/categories", json={"name": "Toys", "slug": "toys"})
        assert response.status_code == 401

    def test_duplicate_slug(self, client):
        response = client.post(
            "/api/categories",
            json={"name": "Beauty 2", "slug": "beauty"},
            headers=auth_headers(client),
        )
        assert response.status_code == 400


class TestProductEndpoints:
    def test_list_with_filters(self, client):
        response = client.get("/api/products", params={"search": "wireless", "category": "electronics"})
        assert response.status_code == 200
        assert [p["slug"] for p in response.json()] == ["wireless-headphones", "wireless-bluetooth-earbuds"]

    def test_featured_flag(self, client):
        response = client.get("/api/products", params={"featured": "true", "limit": 2})
        assert [p["is_featured"] for p in response.json()] == [True, True]

    def test_unknown_category_is_empty_list(self, client):
        response = client.get("/api/products", params={"category": "unknown-slug"})
        assert response.status_code == 200
        assert response.json() == []

    def test_non_numeric_limit_rejected(self, client):
        response = client.get("/api/products", params={"limit": "ten"})
        assert response.status_code == 400
        body = response.json()
        assert body["detail"] == "Invalid data"
        assert body["errors"][0]["loc"] == ["query", "limit"]

    def test_new_arrivals(self, client):
        response = client.get("/api/products/new-arrivals")
        assert response.status_code == 200
        slugs = [p["slug"] for p in response.json()]
        assert len(slugs) == 4
        assert slugs[0] == "premium-denim-jacket"

    def test_new_arrivals_limit(self, client):
        assert len(client.get("/api/products/new-arrivals", params={"limit": 2}).json()) == 2

    def test_featured_endpoint(self, client):
        response = client.get("/api/products/featured")
        assert len(response.json()) == 3

    def test_get_by_slug(self, client):
        response = client.get("/api/products/smart-watch-series-5")
        assert response.status_code == 200
        assert response.json()["compare_at_price"] == 349.99

    def test_missing_slug_is_404(self, client):
        response = client.get("/api/products/missing")
        assert response.status_code == 404
        assert response.json()["detail"] == "Product not found"

    def test_admin_creates_product(self, client):
        response = client.post(
            "/api/products",
            json={"name": "Desk Lamp", "slug": "desk-lamp", "price": 39.5, "category_id": 3},
            headers=auth_headers(client),
        )
        assert response.status_code == 201
        product = response.json()
        assert product["rating"] == 0
        assert client.get("/api/products/desk-lamp").json()["id"] == product["id"]

    def test_create_product_validation_errors(self, client):
        response = client.post(
            "/api/products",
            json={"name": "Desk Lamp", "slug": "Desk Lamp", "price": -1},
            headers=auth_headers(client),
        )
        assert response.status_code == 400
        fields = {tuple(err["loc"]) for err in response.json()["errors"]}
        assert ("body", "slug") in fields
        assert ("body", "price") in fields

    def test_create_product_unknown_category(self, client):
        response = client.post(
            "/api/products",
            json={"name": "Desk Lamp", "slug": "desk-lamp", "price": 1, "category_id": 99},
            headers=auth_headers(client),
        )
        assert response.status_code == 400

    def test_non_admin_cannot_create_product(self, client):
        response = client.post(
            "/api/products",
            json={"name": "Desk Lamp", "slug": "desk-lamp", "price": 1},
            headers=register(client),
        )
        assert response.status_code == 403


class TestOrderEndpoints:
    def test_anonymous_list_is_401_without_data(self, client, store):
        headers = register(client)
        client.post("/api/orders", json=_order_body(), headers=headers)

        response = client.get("/api/orders")
        assert response.status_code == 401
        assert response.json() == {"detail": "Not authenticated"}

    def test_create_forces_caller_id(self, client, store):
        headers = register(client)
        response = client.post("/api/orders", json=_order_body(user_id=1), headers=headers)

        assert response.status_code == 201
        order = response.json()
        alice = store.get_user_by_username("alice")
        assert order["user_id"] == alice.id
        assert order["status"] == "pending"

    def test_list_only_callers_orders_newest_first(self, client):
        alice = register(client)
        bob = register(client, username="bob", email="bob@example.com")
        first = client.post("/api/orders", json=_order_body(), headers=alice).json()
        client.post("/api/orders", json=_order_body(), headers=bob)
        second = client.post("/api/orders", json=_order_body(total=10), headers=alice).json()

        orders = client.get("/api/orders", headers=alice).json()
        assert [o["id"] for o in orders] == [second["id"], first["id"]]

    def test_create_requires_auth(self, client):
        assert client.post("/api/orders", json=_order_body()).status_code == 401

    def test_invalid_order(self, client):
        response = client.post(
            "/api/orders",
            json=_order_body(items=[], shipping_address={"full_name": "x"}),
            headers=register(client),
        )
        assert response.status_code == 400
        assert response.json()["errors"]

    def test_replay_with_payment_reference_is_idempotent(self, client, store):
        headers = register(client)
        first = client.post("/api/orders", json=_order_body(payment_intent_id="pi_123"), headers=headers)
        again = client.post("/api/orders", json=_order_body(payment_intent_id="pi_123"), headers=headers)

        assert first.status_code == 201
        assert again.status_code == 200
        assert again.json()["id"] == first.json()["id"]
        assert len(store.orders) == 1

    def test_payment_reference_of_other_user_conflicts(self, client):
        client.post("/api/orders", json=_order_body(payment_intent_id="pi_123"), headers=register(client))
        bob = register(client, username="bob", email="bob@example.com")
        response = client.post("/api/orders", json=_order_body(payment_intent_id="pi_123"), headers=bob)
        assert response.status_code == 409

    def test_admin_updates_status(self, client):
        order = client.post("/api/orders", json=_order_body(), headers=register(client)).json()
        admin = auth_headers(client)

        response = client.patch(f"/api/orders/{order['id']}/status", json={"status": "delivered"}, headers=admin)
        assert response.status_code == 200
        assert response.json()["status"] == "delivered"

        # No transition table: delivered may go back to pending.
        response = client.patch(f"/api/orders/{order['id']}/status", json={"status": "pending"}, headers=admin)
        assert response.json()["status"] == "pending"
        assert response.json()["total"] == order["total"]

    def test_status_update_unknown_value(self, client):
        order = client.post("/api/orders", json=_order_body(), headers=register(client)).json()
        response = client.patch(
            f"/api/orders/{order['id']}/status",
            json={"status": "lost"},
            headers=auth_headers(client),
        )
        assert response.status_code == 400

    def test_status_update_missing_order(self, client):
        response = client.patch("/api/orders/999/status", json={"status": "shipped"}, headers=auth_headers(client))
        assert response.status_code == 404

    def test_status_update_requires_admin(self, client):
        headers = register(client)
        order = client.post("/api/orders", json=_order_body(), headers=headers).json()
        response = client.patch(f"/api/orders/{order['id']}/status", json={"status": "shipped"}, headers=headers)
        assert response.status_code == 403

    def test_admin_lists_all_orders(self, client):
        client.post("/api/orders", json=_order_body(), headers=register(client))
        client.post("/api/orders", json=_order_body(), headers=register(client, username="bob", email="bob@example.com"))
        response = client.get("/api/admin/orders", headers=auth_headers(client))
        assert len(response.json()) == 2


class TestPaymentIntentEndpoint:
    def test_returns_handle(self, client, gateway):
        response = client.post("/api/create-payment-intent", json={"amount": 140.79}, headers=register(client))
        assert response.status_code == 200
        body = response.json()
        assert body["client_secret"].startswith(body["payment_intent_id"])
        assert gateway.intents[body["payment_intent_id"]].amount == 140.79

    def test_shipping_address_reaches_gateway(self, client, gateway):
        response = client.post(
            "/api/create-payment-intent",
            json={"amount": 140.79, "shipping_address": ADDRESS},
            headers=register(client),
        )
        intent = gateway.intents[response.json()["payment_intent_id"]]
        assert intent.shipping.postal_code == "62701"

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amount_rejected(self, client, amount):
        response = client.post("/api/create-payment-intent", json={"amount": amount}, headers=register(client))
        assert response.status_code == 400

    def test_requires_auth(self, client):
        assert client.post("/api/create-payment-intent", json={"amount": 10}).status_code == 401

    def test_provider_failure_is_502(self, client, gateway):
        gateway.configure(fail_on_create=True)
        response = client.post("/api/create-payment-intent", json={"amount": 10}, headers=register(client))
        assert response.status_code == 502


class TestMiscEndpoints:
    def test_shipping_methods_depend_on_subtotal(self, client):
        below = client.get("/api/shipping-methods", params={"subtotal": 50}).json()
        above = client.get("/api/shipping-methods", params={"subtotal": 100}).json()
        assert [m["id"] for m in below] == ["standard", "express"]
        assert [m["id"] for m in above] == ["standard", "express", "free"]

    def test_root_and_health(self, client):
        assert client.get("/").json() == {"message": "ShopHub API running"}
        assert client.get("/api/health").json()["store"]["products"] == 7


def test_unexpected_error_is_generic_500(store, gateway):
    app = create_app(store=store, payment_gateway=gateway, seed=False)

    @app.get("/boom")
    def boom():
        raise RuntimeError("connection string leaked")

    response = TestClient(app, raise_server_exceptions=False).get("/boom")
    assert response.status_code == 500
    assert response.json() == {"detail": "Internal server error"}
