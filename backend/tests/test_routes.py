import pytest

from eventstock.extensions import db
from eventstock.models import B2BStock, Product


def _create_event(client):
    resp = client.post("/api/events", json={
        "name": "Gala",
        "date_from": "2030-01-01T10:00:00Z",
        "date_to": "2030-01-02T10:00:00Z",
    })
    assert resp.status_code == 201
    return resp.get_json()["id"]


def test_health(client, db_session):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["checks"]["database"]["status"] == "healthy"


def test_dispatch_return_invoice_flow(client, make_product):
    product = make_product(stock_qty=10, rate_cents=5000, buy_price_cents=2000)
    event_id = _create_event(client)

    resp = client.post(f"/api/events/{event_id}/dispatch", json={
        "items": [{"product_id": product.id, "quantity": 10}],
    })
    assert resp.status_code == 201
    assert resp.get_json()["total_cents"] == 50000

    form = client.get(f"/api/events/{event_id}/return-form").get_json()
    assert form["lines"][0]["outstanding"] == 10

    resp = client.post(f"/api/events/{event_id}/return", json={
        "items": [{"product_id": product.id, "returned": 6, "already_returned": 0}],
    })
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["summary"]["all_completed"] is False
    assert body["event"]["return_closed"] is False

    resp = client.post(f"/api/events/{event_id}/return", json={
        "items": [{"product_id": product.id, "returned": 4, "already_returned": 6}],
    })
    assert resp.get_json()["summary"]["all_completed"] is True
    assert resp.get_json()["event"]["status"] == "CLOSED"

    summary = client.get(f"/api/events/{event_id}/return-summary").get_json()["summary"]
    assert summary["all_completed"] is True

    preview = client.post(f"/api/events/{event_id}/invoice/preview", json={"discount_pct": 10})
    assert preview.status_code == 200
    assert preview.get_json()["totals"]["grand_total_cents"] == 45000

    resp = client.post(f"/api/events/{event_id}/invoice", json={"discount_pct": 10, "status": "final"})
    assert resp.status_code == 201
    invoice = resp.get_json()
    fetched = client.get(f"/api/invoices/{invoice['id']}").get_json()
    assert fetched["number"] == invoice["number"]
    assert fetched["status"] == "FINAL"


def test_insufficient_stock_error_body(client, make_product):
    product = make_product(stock_qty=1)
    event_id = _create_event(client)

    resp = client.post(f"/api/events/{event_id}/dispatch", json={
        "items": [{"product_id": product.id, "quantity": 3}],
    })

    assert resp.status_code == 400
    assert resp.get_json() == {
        "error": f"Insufficient stock for product {product.id}: requested 3, available 1",
        "code": "INSUFFICIENT_STOCK",
        "product_id": product.id,
        "requested": 3,
        "available": 1,
    }


def test_return_conflict_and_terminal_status_codes(client, make_product):
    product = make_product(stock_qty=10)
    event_id = _create_event(client)
    client.post(f"/api/events/{event_id}/dispatch", json={"items": [{"product_id": product.id, "quantity": 10}]})
    client.post(f"/api/events/{event_id}/return", json={"items": [{"product_id": product.id, "returned": 6}]})

    resp = client.post(f"/api/events/{event_id}/return", json={
        "items": [{"product_id": product.id, "returned": 6, "already_returned": 0}],
    })
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "ALREADY_RETURNED_LINE"
    assert resp.get_json()["product_ids"] == [product.id]

    client.post(f"/api/events/{event_id}/return", json={"items": [{"product_id": product.id, "returned": 4}]})
    resp = client.post(f"/api/events/{event_id}/return", json={"items": [{"product_id": product.id, "returned": 1}]})
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "ALREADY_RETURNED"

    resp = client.post(f"/api/events/{event_id}/dispatch", json={"items": [{"product_id": product.id, "quantity": 1}]})
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "INVALID_STATE"


def test_dispatch_dry_run_route(client, make_product):
    product = make_product(stock_qty=4)
    event_id = _create_event(client)

    resp = client.post(f"/api/events/{event_id}/dispatch", json={
        "items": [{"product_id": product.id, "quantity": 4}],
        "dry_run": True,
    })

    assert resp.status_code == 200
    assert resp.get_json()["dry_run"] is True
    assert db.session.get(Product, product.id).stock_qty == 4


def test_unknown_event_is_404(client, db_session):
    resp = client.get("/api/events/9999")
    assert resp.status_code == 404
    assert resp.get_json()["code"] == "NOT_FOUND"


def test_transfer_routes(client, make_product):
    product = make_product(stock_qty=5)

    resp = client.post(f"/api/stock/products/{product.id}/transfer-to-b2b", json={"quantity": 8})
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "INSUFFICIENT_PRIMARY_STOCK"
    assert db.session.get(Product, product.id).stock_qty == 5
    assert db.session.query(B2BStock).count() == 0

    resp = client.post(f"/api/stock/products/{product.id}/transfer-to-b2b", json={"quantity": 3})
    assert resp.status_code == 200
    pool_id = resp.get_json()["b2b_stock"]["id"]
    assert resp.get_json()["product"]["stock_qty"] == 2

    resp = client.post(f"/api/stock/b2b/{pool_id}/transfer-to-primary", json={"quantity": 1})
    assert resp.status_code == 200
    assert resp.get_json()["b2b_stock"]["quantity_available"] == 2

    ledger = client.get(f"/api/stock/products/{product.id}/ledger").get_json()["entries"]
    assert len(ledger) == 4


def test_b2b_purchase_routes(client, make_product):
    product = make_product(name="Chair")

    resp = client.post("/api/stock/b2b", json={
        "item_name": "Chair", "supplier_name": "Seats Ltd", "quantity": 10, "price_cents": 250,
    })
    assert resp.status_code == 201
    stock = resp.get_json()["b2b_stock"]
    assert stock["product_id"] == product.id

    resp = client.post("/api/stock/b2b", json={
        "item_name": "CHAIR", "supplier_name": "Seats Ltd", "quantity": 5, "price_cents": 250,
    })
    assert resp.status_code == 200
    assert resp.get_json()["merged"] is True

    resp = client.post(f"/api/stock/b2b/{stock['id']}/purchases", json={
        "quantity": 2, "price_cents": 260, "supplier_name": "Seats Ltd",
    })
    assert resp.status_code == 201
    assert resp.get_json()["b2b_stock"]["quantity_available"] == 17
    assert len(resp.get_json()["b2b_stock"]["purchase_logs"]) == 3

    listing = client.get(f"/api/stock/b2b?product_id={product.id}").get_json()["b2b_stock"]
    assert [s["id"] for s in listing] == [stock["id"]]


def test_validation_error_body(client, db_session):
    resp = client.post("/api/events", json={"name": "No dates"})
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "VALIDATION_ERROR"


def test_agreement_and_expand_client(client, make_product, demo_client):
    product = make_product(rate_cents=300)
    resp = client.post("/api/events", json={
        "name": "Gala",
        "date_from": "2030-01-01",
        "date_to": "2030-01-02",
        "client_id": demo_client.id,
    })
    event_id = resp.get_json()["id"]

    resp = client.put(f"/api/events/{event_id}/agreement", json={
        "items": [{"product_id": product.id, "qty": 3}],
        "advance_cents": 100,
    })
    assert resp.status_code == 200
    assert resp.get_json()["agreement_snapshot"]["grand_total_cents"] == 800

    expanded = client.get(f"/api/events/{event_id}?expand=client").get_json()
    assert expanded["client"]["name"] == "Acme Weddings"


@pytest.mark.parametrize("path", [
    "/api/events",
    "/api/stock/b2b",
])
def test_non_object_json_body_is_400(client, db_session, path):
    resp = client.post(path, json=[1])
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Request body must be a JSON object", "code": "VALIDATION_ERROR"}


def test_event_audit_trail_route(client, make_product):
    product = make_product(stock_qty=3)
    event_id = _create_event(client)
    client.post(f"/api/events/{event_id}/dispatch", json={"items": [{"product_id": product.id, "quantity": 3}]})
    client.post(f"/api/events/{event_id}/return", json={"items": [{"product_id": product.id, "returned": 3}]})

    resp = client.get(f"/api/events/{event_id}/audit")

    assert resp.status_code == 200
    assert [entry["action"] for entry in resp.get_json()["audit"]] == ["EVENT_DISPATCHED", "EVENT_RETURNED"]
    assert client.get("/api/events/9999/audit").status_code == 404
