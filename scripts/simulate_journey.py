"""
Walk one batch from farm to shelf through the HTTP API.
Run (against a development server with demo data allowed):
    python scripts/simulate_journey.py [API_URL]
"""
import sys
import time
import random
import requests

API = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
PASSWORD = "password123"


def login(email):
    r = requests.post(f"{API}/api/auth/login", json={"email": email, "password": PASSWORD})
    r.raise_for_status()
    return {"Authorization": f"Bearer {r.json()['token']}"}


def add_event(headers, batch_id, action, details):
    r = requests.post(f"{API}/api/events/{batch_id}/events", json={"action": action, "details": details},
                      headers=headers)
    print(action, r.status_code, r.json().get("error", "ok"))
    return r


def main():
    r = requests.post(f"{API}/api/seed/demo")
    print("Seed:", r.json())

    farmer = login("farmer@farmchain.io")
    distributor = login("distributor@farmchain.io")
    retailer = login("retailer@farmchain.io")
    consumer = login("consumer@farmchain.io")

    r = requests.post(f"{API}/api/batches", headers=farmer, json={
        "title": "Heirloom Carrots",
        "variety": "Purple Haze",
        "quantity": round(random.uniform(50, 200), 1),
        "unit": "kg",
        "harvestDate": time.strftime("%Y-%m-%d"),
        "location": "Salinas Valley, CA",
    })
    batch_id = r.json()["batch"]["batchId"]
    print("created", batch_id)

    add_event(distributor, batch_id, "PICKED_UP", {"location": "Farm gate"})
    add_event(distributor, batch_id, "IN_TRANSIT", {"location": "Truck CA-102", "notes": "Cold chain 4C"})
    add_event(retailer, batch_id, "DELIVERED", {"location": "Corner Market"})
    add_event(retailer, batch_id, "QUALITY_CHECK", {"rating": "excellent"})
    add_event(retailer, batch_id, "PRICE_SET", {"price": 2.5, "currency": "USD"})

    r = requests.post(f"{API}/api/batches/{batch_id}/verify", headers=consumer)
    print("verify:", r.status_code, r.json()["transaction"]["txHash"])

    r = requests.post(f"{API}/api/mock/tx", headers=retailer, json={"batchId": batch_id, "action": "SOLD"})
    tx_hash = r.json()["txHash"]
    add_event(retailer, batch_id, "SOLD", {"notes": "Sold to consumer"})
    for _ in range(20):
        status = requests.get(f"{API}/api/mock/tx/{tx_hash}").json()["status"]
        print("tx", tx_hash[:12], status)
        if status != "pending":
            break
        time.sleep(1)

    trace = requests.get(f"{API}/api/trace/{batch_id}").json()
    print("trust score:", trace["trustScore"], "status:", trace["currentStatus"])


if __name__ == "__main__":
    main()
