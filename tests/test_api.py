import mongomock
import pytest
from fastapi.testclient import TestClient

import config
import main
from context import ContextRegistry

from helpers import campus_email


@pytest.fixture
def client(monkeypatch):
    database = mongomock.MongoClient()["campus_market_api_test"]
    monkeypatch.setattr(main, "registry", ContextRegistry(database, page_delay=0, retry_delay=0))
    with TestClient(main.app) as test_client:
        yield test_client


def register(client, name, **extra):
    body = {
        "full_name": name.title(),
        "email": campus_email(name),
        "password": "secret123",
        "student_id": "R170001",
    }
    body.update(extra)
    return client.post("/api/auth/register", json=body)


def auth(client, name, **extra):
    response = register(client, name, **extra)
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


LAMP = {
    "name": "Desk Lamp",
    "description": "LED, three brightness levels",
    "price": 600,
    "negotiable": True,
    "condition": "Like New",
    "category": "Electronics",
    "location": "Girls Hostel Block C",
    "images": ["https://images.example.com/lamp.jpg"],
}


def test_root_and_database_check(client):
    assert client.get("/").json() == {"message": "Campus Market backend running"}
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"
    assert body["connection_status"] == "Connected"


def test_register_returns_token_and_camel_case_user(client):
    response = register(client, "nisha", hostel_details="Block D")

    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["fullName"] == "Nisha"
    assert body["user"]["hostelDetails"] == "Block D"


def test_register_rejects_foreign_domain(client):
    response = register(client, "nisha", email="nisha@gmail.com")
    assert response.status_code == 400
    assert "campus email" in response.json()["detail"]


def test_register_rejects_short_password(client):
    assert register(client, "nisha", password="123").status_code == 422


def test_login_and_me(client):
    register(client, "omar")
    response = client.post("/api/auth/login", json={"email": campus_email("omar"), "password": "secret123"})
    assert response.status_code == 200
    headers = {"Authorization": f"Bearer {response.json()['access_token']}"}

    me = client.get("/api/auth/me", headers=headers).json()
    assert me["user"]["email"] == campus_email("omar")
    assert me["profile"]["full_name"] == "Omar"


def test_login_with_bad_password(client):
    register(client, "omar")
    response = client.post("/api/auth/login", json={"email": campus_email("omar"), "password": "wrong-one"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid login credentials"


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Token abc"}, {"Authorization": "Bearer nope"}])
def test_protected_routes_need_a_session(client, headers):
    assert client.post("/api/products", json=LAMP, headers=headers).status_code == 401


def test_logout_invalidates_token(client):
    headers = auth(client, "pooja")
    assert client.post("/api/auth/logout", headers=headers).json() == {"status": "logged_out"}
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_update_profile(client):
    headers = auth(client, "pooja")
    response = client.patch("/api/profile", json={"phone_number": "9000011111"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["user"]["phoneNumber"] == "9000011111"
    assert client.patch("/api/profile", json={"full_name": " "}, headers=headers).status_code == 422


def test_listing_lifecycle(client):
    seller = auth(client, "ravi", phone_number="+91 90000 22222")
    buyer = auth(client, "sita")

    created = client.post("/api/products", json=LAMP, headers=seller)
    assert created.status_code == 200
    product_id = created.json()["id"]

    listing = client.get("/api/products", params={"refresh": True}).json()
    assert [p["id"] for p in listing["items"]] == [product_id]
    assert listing["categories"] == ["Electronics"]

    detail = client.get(f"/api/products/{product_id}", headers=buyer).json()
    assert detail["product"]["seller_name"] == "Ravi"
    assert detail["is_owner"] is False

    contact = client.get(f"/api/products/{product_id}/contact").json()
    assert contact["url"].startswith("https://wa.me/919000022222?text=")

    assert client.patch(f"/api/products/{product_id}", json={"price": 550}, headers=buyer).status_code == 400
    updated = client.patch(f"/api/products/{product_id}", json={"price": 550}, headers=seller)
    assert updated.json()["product"]["price"] == 550

    assert client.delete(f"/api/products/{product_id}", headers=seller).json() == {"status": "deleted"}
    assert client.get(f"/api/products/{product_id}", headers=seller).status_code == 404


def test_product_filters_via_query(client):
    seller = auth(client, "ravi")
    client.post("/api/products", json=LAMP, headers=seller)
    client.post("/api/products", json={**LAMP, "name": "Hoodie", "category": "Clothing", "price": 300}, headers=seller)

    items = client.get("/api/products", params={"refresh": True, "max_price": 400}).json()["items"]
    assert [p["name"] for p in items] == ["Hoodie"]
    items = client.get("/api/products", params={"search": "lamp", "sort": "price-low"}).json()["items"]
    assert [p["name"] for p in items] == ["Desk Lamp"]
    assert client.get("/api/products", params={"sort": "random"}).status_code == 422


def test_create_product_validation(client):
    seller = auth(client, "ravi")
    too_many = {**LAMP, "images": [f"https://images.example.com/{i}.jpg" for i in range(6)]}
    assert client.post("/api/products", json=too_many, headers=seller).status_code == 422


def test_wishlist_routes(client):
    seller = auth(client, "ravi")
    buyer = auth(client, "sita")
    product_id = client.post("/api/products", json=LAMP, headers=seller).json()["id"]

    assert client.post(f"/api/wishlist/{product_id}", headers=buyer).json() == {"items": [product_id]}
    assert client.get("/api/wishlist", headers=buyer).json() == {"items": [product_id]}
    [product] = client.get("/api/wishlist/products", headers=buyer).json()["items"]
    assert product["name"] == "Desk Lamp"
    assert client.delete(f"/api/wishlist/{product_id}", headers=buyer).json() == {"items": []}


def test_messaging_routes(client):
    seller = auth(client, "ravi")
    buyer = auth(client, "sita")
    seller_id = client.get("/api/auth/me", headers=seller).json()["user"]["id"]
    buyer_id = client.get("/api/auth/me", headers=buyer).json()["user"]["id"]

    sent = client.post("/api/messages", json={"receiver_id": seller_id, "content": "Still available?"}, headers=buyer)
    assert sent.status_code == 200
    assert client.post("/api/messages", json={"receiver_id": seller_id, "content": "  "}, headers=buyer).status_code == 400

    inbox = client.get("/api/conversations", headers=seller).json()
    assert inbox["unread"] == 1
    assert inbox["items"][0]["user_name"] == "Sita"

    assert client.post(f"/api/messages/{buyer_id}/read", headers=seller).json() == {"status": "ok"}
    assert client.get("/api/conversations", headers=seller).json()["unread"] == 0
    [message] = client.get(f"/api/messages/{buyer_id}", headers=seller).json()["items"]
    assert message["read"] is True


def test_notifications_are_drained(client):
    headers = auth(client, "tara")
    messages = [n["message"] for n in client.get("/api/notifications", headers=headers).json()["items"]]
    assert "Registration successful!" in messages
    assert client.get("/api/notifications", headers=headers).json() == {"items": []}


def test_expired_token_is_rejected_and_context_closed(client, monkeypatch):
    monkeypatch.setattr(config, "JWT_EXPIRE_MINUTES", -5)
    headers = auth(client, "uma")
    assert len(main.registry) == 1

    response = client.get("/api/auth/me", headers=headers)

    assert response.status_code == 401
    assert len(main.registry) == 0


def test_expired_contexts_are_pruned_on_other_requests(client, monkeypatch):
    monkeypatch.setattr(config, "JWT_EXPIRE_MINUTES", -5)
    auth(client, "stale.user")
    monkeypatch.setattr(config, "JWT_EXPIRE_MINUTES", 60)
    headers = auth(client, "fresh.user")
    assert len(main.registry) == 2

    assert client.get("/api/auth/me", headers=headers).status_code == 200
    assert len(main.registry) == 1


def test_logout_releases_context(client):
    headers = auth(client, "vani")
    assert len(main.registry) == 1
    client.post("/api/auth/logout", headers=headers)
    assert len(main.registry) == 0


def test_patch_with_null_name_keeps_listing(client):
    seller = auth(client, "ravi")
    product_id = client.post("/api/products", json=LAMP, headers=seller).json()["id"]

    response = client.patch(f"/api/products/{product_id}", json={"name": None, "price": 500}, headers=seller)

    assert response.status_code == 200
    assert response.json()["product"]["name"] == "Desk Lamp"
    assert response.json()["product"]["price"] == 500
    listing = client.get("/api/products", params={"refresh": True}).json()["items"]
    assert [p["id"] for p in listing] == [product_id]


def test_patch_profile_with_null_name_keeps_name(client):
    headers = auth(client, "wasim")
    response = client.patch("/api/profile", json={"full_name": None, "hostel_details": "Block E"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["user"]["fullName"] == "Wasim"

    login = client.post("/api/auth/login", json={"email": campus_email("wasim"), "password": "secret123"})
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {login.json()['access_token']}"}).json()
    assert me["profile"]["full_name"] == "Wasim"
    assert me["profile"]["hostel_details"] == "Block E"


def test_each_login_gets_its_own_context(client):
    first = auth(client, "xavier")
    login = client.post("/api/auth/login", json={"email": campus_email("xavier"), "password": "secret123"})
    second = {"Authorization": f"Bearer {login.json()['access_token']}"}

    assert first != second
    assert len(main.registry) == 2
    client.post("/api/auth/logout", headers=first)
    assert client.get("/api/auth/me", headers=second).status_code == 200
