"""HTTP surface tests driven through FastAPI's TestClient."""

import re

import pytest

from auth import issue_token
from conftest import PASSWORD

BATCH_ID = re.compile(r"^FARM-\d{4}-\d{4,}$")
ADMIN = {"X-Admin-Token": "test-admin-token"}

NEW_BATCH = {
    "title": "Organic Tomatoes",
    "variety": "Roma",
    "quantity": 100,
    "unit": "kg",
    "harvestDate": "2025-08-15",
    "location": "Salinas Valley, CA",
}


def bearer(user):
    return {"Authorization": f"Bearer {issue_token(user)}"}


def post_event(client, user, batch_id, action, details=None):
    body = {"action": action}
    if details is not None:
        body["details"] = details
    return client.post(f"/api/events/{batch_id}/events", json=body, headers=bearer(user))


@pytest.fixture
def batch_id(client, farmer):
    r = client.post("/api/batches", json=NEW_BATCH, headers=bearer(farmer))
    assert r.status_code == 201
    return r.json()["batch"]["batchId"]


# -----------------------------------------------------------------------------
# Auth
# -----------------------------------------------------------------------------


def test_register_login_and_me(client):
    body = {"name": "Maria Santos", "email": "Maria@Example.com", "password": PASSWORD, "role": "FARMER"}
    r = client.post("/api/auth/register", json=body)
    assert r.status_code == 201
    data = r.json()
    assert data["user"]["email"] == "maria@example.com"
    assert data["user"]["role"] == "FARMER"
    assert "createdAt" in data["user"]
    assert data["token"]

    r = client.post("/api/auth/register", json=body)
    assert r.status_code == 409
    assert r.json() == {"error": "User with this email already exists"}

    r = client.post("/api/auth/login", json={"email": "maria@example.com", "password": "wrong-password"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid email or password"}

    r = client.post("/api/auth/login", json={"email": "maria@example.com", "password": PASSWORD})
    assert r.status_code == 200
    token = r.json()["token"]

    r = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200
    assert r.json()["name"] == "Maria Santos"


@pytest.mark.parametrize(
    "body",
    [
        {"name": "M", "email": "m@example.com", "password": PASSWORD, "role": "FARMER"},
        {"name": "Maria", "email": "not-an-email", "password": PASSWORD, "role": "FARMER"},
        {"name": "Maria", "email": "m@example.com", "password": "short", "role": "FARMER"},
        {"name": "Maria", "email": "m@example.com", "password": PASSWORD, "role": "ADMIN"},
    ],
)
def test_register_rejects_bad_input(client, body):
    r = client.post("/api/auth/register", json=body)
    assert r.status_code == 400
    assert set(r.json()) == {"error"}


def test_token_required(client):
    r = client.get("/api/auth/me")
    assert r.status_code == 401
    assert r.json() == {"error": "Access token required"}

    r = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid token"}


# -----------------------------------------------------------------------------
# Batches
# -----------------------------------------------------------------------------


def test_create_batch_as_farmer(client, farmer):
    r = client.post("/api/batches", json=NEW_BATCH, headers=bearer(farmer))
    assert r.status_code == 201
    batch = r.json()["batch"]
    assert BATCH_ID.match(batch["batchId"])
    assert batch["status"] == "CREATED"
    assert batch["farmer"]["name"] == "Maria Santos"
    assert [e["action"] for e in batch["events"]] == ["CREATED"]
    assert batch["events"][0]["details"]["initialQuantity"] == 100


@pytest.mark.parametrize("role_fixture", ["distributor", "retailer", "consumer"])
def test_create_batch_requires_farmer(client, request, role_fixture):
    user = request.getfixturevalue(role_fixture)
    r = client.post("/api/batches", json=NEW_BATCH, headers=bearer(user))
    assert r.status_code == 403
    assert r.json() == {"error": f"Access denied for role {user.role}"}


def test_create_batch_validates_body(client, farmer):
    r = client.post("/api/batches", json=dict(NEW_BATCH, quantity=0), headers=bearer(farmer))
    assert r.status_code == 400
    assert "quantity" in r.json()["error"]


def test_list_get_and_update(client, farmer, distributor, batch_id):
    r = client.get("/api/batches", headers=bearer(farmer))
    assert [b["batchId"] for b in r.json()["batches"]] == [batch_id]

    r = client.get("/api/batches", headers=bearer(distributor))
    assert [b["batchId"] for b in r.json()["batches"]] == [batch_id]

    r = client.put(f"/api/batches/{batch_id}", json={"quantity": 90}, headers=bearer(farmer))
    assert r.status_code == 200
    assert r.json()["batch"]["quantity"] == 90

    r = client.get(f"/api/batches/{batch_id}")
    assert r.status_code == 200
    assert r.json()["batch"]["quantity"] == 90


def test_unknown_batch_and_route(client):
    r = client.get("/api/batches/FARM-2025-0404")
    assert r.status_code == 404
    assert r.json() == {"error": "Batch not found"}

    r = client.get("/api/nothing-here")
    assert r.status_code == 404
    assert r.json() == {"error": "Route not found"}


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


def test_journey_over_http(client, batch_id, distributor, retailer):
    assert post_event(client, distributor, batch_id, "PICKED_UP", {"location": "Farm gate"}).status_code == 201

    r = post_event(client, distributor, batch_id, "PICKED_UP")
    assert r.status_code == 400
    assert r.json()["allowedActions"] == ["IN_TRANSIT"]
    assert "cannot perform PICKED_UP" in r.json()["error"]

    assert post_event(client, distributor, batch_id, "IN_TRANSIT").status_code == 201
    assert post_event(client, retailer, batch_id, "DELIVERED", {"location": "Corner Market"}).status_code == 201

    r = post_event(client, retailer, batch_id, "PRICE_SET", {"price": 2.50})
    assert r.status_code == 201
    assert r.json()["event"]["details"] == {"price": 2.5}
    assert r.json()["event"]["displayName"] == "Price Updated"

    r = client.get(f"/api/batches/{batch_id}/actions", headers=bearer(retailer))
    assert r.json()["lifecycleStatus"] == "DELIVERED"
    assert "DELIVERED" in r.json()["allowed"]

    assert post_event(client, retailer, batch_id, "DELIVERED").status_code == 201
    r = post_event(client, retailer, batch_id, "PRICE_SET", {"price": 3})
    assert r.status_code == 400
    assert r.json()["allowedActions"] == []

    r = client.get(f"/api/events/{batch_id}/events")
    events = r.json()["events"]
    assert [e["seq"] for e in events] == [1, 2, 3, 4, 5, 6]
    assert events[-1]["actorRole"] == "RETAILER"
    assert events[-1]["actor"]["name"] == "Corner Market"

    r = client.get(f"/api/batches/{batch_id}/actions", headers=bearer(retailer))
    assert r.json()["lifecycleStatus"] == "SOLD"
    assert r.json()["allowed"] == ["VERIFIED_ON_CHAIN"]


def test_event_body_errors(client, batch_id, distributor, consumer):
    r = client.post(f"/api/events/{batch_id}/events", json={"details": {}}, headers=bearer(distributor))
    assert r.status_code == 400

    r = post_event(client, consumer, batch_id, "PICKED_UP")
    assert r.status_code == 400
    assert r.json()["error"] == "Consumers can only verify batches on chain"

    r = post_event(client, distributor, "FARM-2025-0404", "PICKED_UP")
    assert r.status_code == 404


def test_link_transaction_to_event(client, batch_id, distributor):
    event = post_event(client, distributor, batch_id, "PICKED_UP").json()["event"]
    tx = client.post("/api/mock/tx", json={"batchId": batch_id, "action": "PICKED_UP"},
                     headers=bearer(distributor)).json()

    r = client.post(f"/api/events/{batch_id}/events/{event['id']}/tx", json={"txHash": tx["txHash"]},
                    headers=bearer(distributor))
    assert r.status_code == 200
    assert r.json()["event"]["txHash"] == tx["txHash"]
    assert r.json()["event"]["confirmed"] is False

    r = client.post(f"/api/events/{batch_id}/events/{event['id']}/tx", json={"txHash": "0xnothex"},
                    headers=bearer(distributor))
    assert r.status_code == 400


# -----------------------------------------------------------------------------
# Mock chain, verification, trace
# -----------------------------------------------------------------------------


def test_mock_transaction_lifecycle(client, batch_id, distributor):
    r = client.post("/api/mock/tx", json={"batchId": batch_id, "action": "IN_TRANSIT"})
    assert r.status_code == 401

    r = client.post("/api/mock/tx", json={"batchId": batch_id, "action": "IN_TRANSIT"}, headers=bearer(distributor))
    assert r.status_code == 201
    data = r.json()
    assert data["status"] == "pending"
    assert data["explorerUrl"].endswith(data["txHash"])
    assert "submittedAt" in data

    r = client.get(f"/api/mock/tx/{data['txHash']}")
    assert r.json()["status"] == "pending"
    assert r.json()["confirmedAt"] is None

    r = client.post(f"/api/mock/tx/{data['txHash']}/confirm")
    assert r.status_code == 403

    r = client.post(f"/api/mock/tx/{data['txHash']}/confirm", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["transaction"]["status"] == "confirmed"
    assert r.json()["transaction"]["confirmedAt"] is not None

    r = client.get("/api/mock/tx/0x" + "0" * 64)
    assert r.status_code == 404
    assert r.json() == {"error": "Transaction not found"}


def test_admin_listing_is_gated(client, batch_id, distributor):
    client.post("/api/mock/tx", json={"batchId": batch_id, "action": "PICKED_UP"}, headers=bearer(distributor))

    assert client.get("/api/mock/tx").status_code == 403
    assert client.get("/api/mock/tx", headers={"X-Admin-Token": "guess"}).status_code == 403

    r = client.get("/api/mock/tx", headers=ADMIN)
    assert r.status_code == 200
    assert len(r.json()["transactions"]) == 1


def test_verify_and_trace(client, batch_id, consumer):
    r = client.post(f"/api/batches/{batch_id}/verify", headers=bearer(consumer))
    assert r.status_code == 201
    data = r.json()
    assert data["transaction"]["status"] == "confirmed"
    assert data["event"]["action"] == "VERIFIED_ON_CHAIN"
    assert data["event"]["txHash"] == data["transaction"]["txHash"]
    assert data["event"]["confirmed"] is True

    r = client.get(f"/api/trace/{batch_id}")
    assert r.status_code == 200
    trace = r.json()
    assert trace["totalEvents"] == 2
    assert trace["verifiedEvents"] == 1
    assert trace["trustScore"] == 90
    assert trace["currentStatus"] == "VERIFIED_ON_CHAIN"
    assert trace["lifecycleStatus"] == "CREATED"
    assert trace["traceUrl"].endswith(f"/trace/{batch_id}")


def test_qr_codes(client, batch_id):
    r = client.get(f"/api/qr/{batch_id}/qr")
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.content.startswith(b"\x89PNG")

    r = client.get(f"/api/qr/{batch_id}/qr.svg")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("image/svg+xml")
    assert b"<svg" in r.content

    assert client.get("/api/qr/FARM-2025-0404/qr").status_code == 404


# -----------------------------------------------------------------------------
# Uploads
# -----------------------------------------------------------------------------

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def test_upload_and_delete_image(client, farmer):
    r = client.post("/api/upload/image", files={"image": ("leaf.PNG", PNG, "image/png")}, headers=bearer(farmer))
    assert r.status_code == 200
    stored = r.json()["file"]
    assert stored["originalName"] == "leaf.PNG"
    assert stored["size"] == len(PNG)
    assert re.match(r"^/uploads/image-[0-9a-f]{16}\.png$", stored["url"])

    r = client.delete(f"/api/upload/{stored['filename']}", headers=bearer(farmer))
    assert r.status_code == 200
    r = client.delete(f"/api/upload/{stored['filename']}", headers=bearer(farmer))
    assert r.status_code == 404


def test_upload_rejections(client, farmer):
    r = client.post("/api/upload/image", files={"image": ("leaf.png", PNG, "image/png")})
    assert r.status_code == 401

    r = client.post("/api/upload/image", files={"image": ("notes.txt", b"hello", "text/plain")},
                    headers=bearer(farmer))
    assert r.status_code == 400
    assert r.json() == {"error": "Only image files are allowed"}

    r = client.post("/api/upload/image", files={"image": ("big.png", b"\x00" * 2048, "image/png")},
                    headers=bearer(farmer))
    assert r.status_code == 400
    assert r.json()["error"].startswith("File too large")


def test_upload_many(client, farmer):
    files = [("images", (f"p{i}.jpg", PNG, "image/jpeg")) for i in range(2)]
    r = client.post("/api/upload/images", files=files, headers=bearer(farmer))
    assert r.status_code == 200
    assert len(r.json()["files"]) == 2

    files = [("images", (f"p{i}.jpg", PNG, "image/jpeg")) for i in range(6)]
    r = client.post("/api/upload/images", files=files, headers=bearer(farmer))
    assert r.status_code == 400


# -----------------------------------------------------------------------------
# Dev
# -----------------------------------------------------------------------------


def test_seed_demo_then_login(client):
    r = client.post("/api/seed/demo")
    assert r.status_code == 200
    data = r.json()
    assert data["users"] == 5
    assert len(data["batches"]) == 3
    assert all(BATCH_ID.match(b) for b in data["batches"])

    r = client.post("/api/auth/login", json={"email": "retailer@farmchain.io", "password": "password123"})
    assert r.status_code == 200
    assert r.json()["user"]["role"] == "RETAILER"


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["timestamp"].endswith("Z")
