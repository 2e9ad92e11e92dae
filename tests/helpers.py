"""Shared builders for tests."""

from schemas import CartItem

ADDRESS = {
    "full_name": "Alice Shopper",
    "address": "1 Market Street",
    "city": "Springfield",
    "state": "IL",
    "postal_code": "62701",
    "country": "US",
}


def make_item(product_id=1, name="Widget", price=10.0, quantity=1, **kwargs) -> CartItem:
    return CartItem(id=product_id, name=name, price=price, quantity=quantity, **kwargs)


def auth_headers(client, username="admin", password="admin123"):
    response = client.post("/api/login", json={"username": username, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def register(client, username="alice", email="alice@example.com", password="secret123"):
    response = client.post(
        "/api/register",
        json={"username": username, "email": email, "password": password, "full_name": username.title()},
    )
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['access_token']}"}
