import base64
import csv
import hashlib
import hmac
import io
import json

from sqlalchemy.exc import OperationalError

from serial_ledger import ledger, webhooks
from serial_ledger.auth_routes import get_current_user
from serial_ledger.errors import PersistenceFailure
from serial_ledger.main import app

from conftest import SHOP, serial_count, shopify_order_payload

CREATE_URL = "/api/shopify/webhooks/orders/create"
FULFILLED_URL = "/api/shopify/webhooks/orders/fulfilled"


def _headers(topic, body=b"", secret=None, shop=SHOP):
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": shop,
    }
    if secret:
        digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
        headers["X-Shopify-Hmac-Sha256"] = base64.b64encode(digest).decode()
    return headers


async def _post(client, url, topic, payload, secret=None, shop=SHOP):
    body = json.dumps(payload).encode("utf-8")
    return await client.post(url, content=body, headers=_headers(topic, body, secret, shop))


async def _create_and_fulfill(client, order_id, **kwargs):
    r = await _post(client, CREATE_URL, "orders/create", shopify_order_payload(order_id, **kwargs))
    assert r.status_code == 200
    r = await _post(client, FULFILLED_URL, "orders/fulfilled", {"id": order_id})
    assert r.status_code == 200
    return r.json()


async def test_create_then_fulfill_assigns_serials(client, session_factory):
    r = await _post(client, CREATE_URL, "orders/create", shopify_order_payload(7001))
    assert r.status_code == 200
    assert r.json()["status"] == "created"

    r = await _post(client, FULFILLED_URL, "orders/fulfilled", {"id": 7001})
    body = r.json()
    assert r.status_code == 200
    assert body["status"] == "assigned"
    assert len(body["serials"]) == 2

    r = await _post(client, FULFILLED_URL, "orders/fulfilled", {"id": 7001})
    assert r.status_code == 200
    assert r.json()["status"] == "already_processed"
    assert await serial_count(session_factory) == 2


async def test_duplicate_create_is_acknowledged(client):
    payload = shopify_order_payload(7002)
    first = await _post(client, CREATE_URL, "orders/create", payload)
    second = await _post(client, CREATE_URL, "orders/create", payload)

    assert second.status_code == 200
    assert second.json()["status"] == "already_ingested"
    assert second.json()["order_id"] == first.json()["order_id"]


async def test_fulfillment_for_unknown_order_is_acknowledged(client, session_factory):
    r = await _post(client, FULFILLED_URL, "orders/fulfilled", {"id": 123456789})

    assert r.status_code == 200
    assert r.json() == {"ok": True, "status": "order_not_found"}
    assert await serial_count(session_factory) == 0


async def test_wrong_topic_is_ignored(client, session_factory):
    r = await _post(client, FULFILLED_URL, "orders/updated", {"id": 7003})

    assert r.status_code == 200
    assert r.json()["status"] == "ignored"


async def test_malformed_payload_is_rejected(client):
    payload = shopify_order_payload(7004)
    del payload["id"]

    r = await _post(client, CREATE_URL, "orders/create", payload)

    assert r.status_code == 400
    assert r.json()["error"] == "malformed_event"


async def test_bad_hmac_is_rejected(client, monkeypatch):
    monkeypatch.setenv("SHOPIFY_WEBHOOK_SECRET", "topsecret")

    r = await _post(client, CREATE_URL, "orders/create", shopify_order_payload(7005), secret="wrong")
    assert r.status_code == 401

    r = await _post(client, CREATE_URL, "orders/create", shopify_order_payload(7005), secret="topsecret")
    assert r.status_code == 200


async def test_per_shop_webhook_secret(client, monkeypatch):
    monkeypatch.setenv("SHOPIFY_WEBHOOK_SECRET", "default-secret")
    monkeypatch.setenv("SHOPIFY_WEBHOOK_SECRETS", f"{SHOP}=shop-secret")

    r = await _post(client, CREATE_URL, "orders/create", shopify_order_payload(7006), secret="default-secret")
    assert r.status_code == 401

    r = await _post(client, CREATE_URL, "orders/create", shopify_order_payload(7006), secret="shop-secret")
    assert r.status_code == 200


async def test_persistence_failure_asks_for_redelivery(client, monkeypatch):
    await _post(client, CREATE_URL, "orders/create", shopify_order_payload(7007))

    async def _failing_assign(self, event):
        raise PersistenceFailure("database unavailable")

    monkeypatch.setattr(webhooks.SerialAssigner, "assign", _failing_assign)

    r = await _post(client, FULFILLED_URL, "orders/fulfilled", {"id": 7007})

    assert r.status_code == 503
    assert r.json()["retryable"] is True


async def test_orders_index_and_detail(client):
    await _create_and_fulfill(client, 7101)
    await _create_and_fulfill(client, 7102, created_at="2024-04-01T10:00:00Z")

    r = await client.get("/api/orders")
    body = r.json()
    assert r.status_code == 200
    assert body["total"] == 2
    assert [o["orderNumber"] for o in body["orders"]] == ["#7102", "#7101"]

    r = await client.get("/api/orders", params={"q": "#7101"})
    assert [o["orderNumber"] for o in r.json()["orders"]] == ["#7101"]

    order_id = body["orders"][0]["id"]
    r = await client.get(f"/api/orders/{order_id}")
    detail = r.json()
    assert detail["fulfillmentStatus"] == "FULFILLED"
    assert [li["title"] for li in detail["lineItems"]] == ["Dressage Saddle"]
    assert len(detail["lineItems"][0]["serials"]) == 2


async def test_order_serials_display_not_assigned(client):
    r = await _post(client, CREATE_URL, "orders/create", shopify_order_payload(7201))
    order_id = r.json()["order_id"]

    r = await client.get(f"/api/orders/{order_id}/serials")

    assert r.status_code == 200
    assert r.json()["lineItems"][0]["display"] == "Not assigned yet"


async def test_unknown_order_is_404(client):
    assert (await client.get("/api/orders/999999")).status_code == 404
    assert (await client.get("/api/orders/999999/serials")).status_code == 404


async def test_export_csv_endpoint(client):
    await _create_and_fulfill(client, 7301, line_items=[
        {"id": 73011, "title": "Saddle, Youth", "sku": "Y-1", "quantity": 1, "product_type": "Saddle"},
    ])
    await _create_and_fulfill(client, 7302)

    r = await client.get("/api/serials/export.csv")

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert r.headers["content-disposition"] == 'attachment; filename="saddle-serial-numbers.csv"'
    rows = list(csv.reader(io.StringIO(r.text)))
    assert len(rows) == 4
    assert rows[3][2] == "Saddle, Youth"
    assert '"Saddle, Youth"' in r.text


async def test_serial_correction_requires_admin(client, staff_user):
    result = await _create_and_fulfill(client, 7401)
    r = await client.get(f"/api/orders/{result['order_id']}")
    assert r.status_code == 200

    r = await client.patch("/api/serials/1", json={"serial": "AB-12345"})
    assert r.status_code == 403

    staff_user.role = "admin"
    r = await client.patch("/api/serials/1", json={"serial": "ab-12345"})
    assert r.status_code == 200
    assert r.json()["serial"] == "AB-12345"

    r = await client.patch("/api/serials/1", json={"serial": "bogus"})
    assert r.status_code == 422

    r = await client.patch("/api/serials/2", json={"serial": "AB-12345"})
    assert r.status_code == 409

    r = await client.patch("/api/serials/424242", json={"serial": "CD-12345"})
    assert r.status_code == 404


async def test_read_api_requires_login(client):
    app.dependency_overrides.pop(get_current_user, None)

    r = await client.get("/api/orders")
    assert r.status_code == 401

    r = await client.get("/api/serials/export.csv")
    assert r.status_code == 401


async def test_health(client):
    r = await client.get("/api/health")
    assert r.json() == {"ok": True}


async def test_redelivered_create_after_fulfilment_is_acknowledged(client):
    await _create_and_fulfill(client, 7501)

    r = await _post(client, CREATE_URL, "orders/create", shopify_order_payload(7501))

    assert r.status_code == 200
    assert r.json()["status"] == "already_ingested"


async def test_repeated_line_item_id_is_rejected_not_retried(client):
    payload = shopify_order_payload(7502, line_items=[
        {"id": 9, "title": "Trail Saddle", "quantity": 1, "product_type": "Saddle"},
        {"id": 9, "title": "Trail Saddle", "quantity": 1, "product_type": "Saddle"},
    ])

    r = await _post(client, CREATE_URL, "orders/create", payload)

    assert r.status_code == 400
    assert r.json()["error"] == "malformed_event"


async def test_export_storage_error_is_503_not_truncated_csv(client, monkeypatch):
    async def _unreadable_rows(session, *, shop=None):
        raise OperationalError("SELECT", {}, Exception("database is locked"))
        yield

    monkeypatch.setattr(ledger, "iter_serial_rows", _unreadable_rows)

    r = await client.get("/api/serials/export.csv")

    assert r.status_code == 503
    assert not r.headers["content-type"].startswith("text/csv")
