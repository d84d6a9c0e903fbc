import pytest

from eventstock.extensions import db
from eventstock.models import B2BStock, Event, EventDispatch, Product, StockLedgerEntry
from eventstock.services import dispatch_service, return_service
from eventstock.services.ledger_service import get_audit_trail
from eventstock.services.event_state import EventStateError, EVENT_STATUS_CLOSED, EVENT_STATUS_DISPATCHED
from eventstock.services.stock_service import InsufficientStockError
from eventstock.validation import NotFoundError, ValidationError


def test_dispatch_decrements_primary_and_snapshots_prices(make_product, make_event):
    product = make_product(stock_qty=20, rate_cents=500, buy_price_cents=2000, loss_price_cents=2500)
    event = make_event()

    record = dispatch_service.dispatch(event.id, [{"product_id": product.id, "quantity": 10}])

    assert db.session.get(Product, product.id).stock_qty == 10
    line = record.lines[0]
    assert (line.qty_to_send, line.rate_cents, line.buy_price_cents, line.loss_price_cents) == (10, 500, 2000, 2500)
    assert line.amount_cents == 5000
    assert record.total_cents == 5000
    assert db.session.get(Event, event.id).status == EVENT_STATUS_DISPATCHED

    # Later catalog edits never change the snapshot
    db.session.get(Product, product.id).rate_cents = 900
    db.session.commit()
    assert db.session.get(EventDispatch, record.id).lines[0].rate_cents == 500


def test_dispatch_rate_override(make_product, make_event):
    product = make_product(rate_cents=500)
    event = make_event()

    record = dispatch_service.dispatch(event.id, [{"product_id": product.id, "quantity": 2, "rate_cents": 450}])

    assert record.lines[0].rate_cents == 450
    assert record.total_cents == 900


def test_dispatch_is_all_or_nothing(make_product, make_event):
    plenty = make_product(name="Chair", stock_qty=50)
    scarce = make_product(name="Table", stock_qty=2)
    event = make_event()

    with pytest.raises(InsufficientStockError) as exc:
        dispatch_service.dispatch(event.id, [
            {"product_id": plenty.id, "quantity": 10},
            {"product_id": scarce.id, "quantity": 3},
        ])

    assert exc.value.details == {"product_id": scarce.id, "requested": 3, "available": 2}
    assert db.session.get(Product, plenty.id).stock_qty == 50
    assert db.session.get(Product, scarce.id).stock_qty == 2
    assert db.session.query(EventDispatch).count() == 0
    assert db.session.query(StockLedgerEntry).count() == 0
    assert db.session.get(Event, event.id).status == "DRAFT"


def test_dispatch_auto_records_b2b_allocations(make_product, make_b2b, make_event):
    product = make_product(stock_qty=6)
    pool = make_b2b(product, quantity=10, supplier_name="Seats Ltd", unit_price_cents=300)
    event = make_event()

    record = dispatch_service.dispatch(event.id, [{"product_id": product.id, "quantity": 10, "source": "auto"}])

    line = record.lines[0]
    assert (line.primary_qty, line.b2b_qty) == (6, 4)
    assert [(a.b2b_stock_id, a.quantity, a.supplier_name) for a in line.allocations] == [(pool.id, 4, "Seats Ltd")]
    assert db.session.get(Product, product.id).stock_qty == 0
    stock = db.session.get(B2BStock, pool.id)
    assert stock.quantity_available == 6
    assert stock.last_used_at is not None


def test_dispatch_dry_run_persists_nothing(make_product, make_event):
    product = make_product(stock_qty=5)
    event = make_event()

    preview = dispatch_service.preview_dispatch(event.id, [{"product_id": product.id, "quantity": 5}])

    assert preview["dry_run"] is True
    assert preview["lines"][0]["primary_qty"] == 5
    assert db.session.get(Product, product.id).stock_qty == 5
    assert db.session.query(EventDispatch).count() == 0


@pytest.mark.parametrize("items", [
    [],
    [{"product_id": 1, "quantity": 0}],
    [{"product_id": 1, "quantity": 1.5}],
    [{"product_id": 1, "quantity": 1, "source": "warehouse"}],
    [{"product_id": 1, "quantity": 1}, {"product_id": 1, "quantity": 2}],
])
def test_dispatch_rejects_malformed_items(make_event, items):
    event = make_event()
    with pytest.raises(ValidationError):
        dispatch_service.dispatch(event.id, items)


def test_dispatch_unknown_event(make_product):
    product = make_product()
    with pytest.raises(NotFoundError):
        dispatch_service.dispatch(12345, [{"product_id": product.id, "quantity": 1}])


def test_closed_event_rejects_dispatch(make_product, make_event):
    product = make_product()
    event = make_event()
    event.status = EVENT_STATUS_CLOSED
    event.return_closed = True
    db.session.commit()

    with pytest.raises(EventStateError):
        dispatch_service.dispatch(event.id, [{"product_id": product.id, "quantity": 1}])
    assert db.session.get(Product, product.id).stock_qty == 100


def test_dispatch_writes_ledger_and_audit(make_product, make_event):
    product = make_product(stock_qty=10)
    event = make_event()

    record = dispatch_service.dispatch(event.id, [{"product_id": product.id, "quantity": 4}])

    entry = db.session.query(StockLedgerEntry).one()
    assert (entry.pool, entry.reason, entry.qty_change) == ("PRIMARY", "DISPATCH", -4)
    assert entry.dispatch_line_id == record.lines[0].id
    trail = get_audit_trail("event", event.id)
    assert [a.action for a in trail] == ["EVENT_DISPATCHED"]
    assert trail[0].payload["dispatch_id"] == record.id


def test_redispatch_carries_outstanding_units(make_product, make_event):
    chairs = make_product(name="Chair", stock_qty=10)
    tables = make_product(name="Table", stock_qty=10)
    event = make_event()
    dispatch_service.dispatch(event.id, [
        {"product_id": chairs.id, "quantity": 5},
        {"product_id": tables.id, "quantity": 2},
    ])
    return_service.submit_return(event.id, [{"product_id": chairs.id, "returned": 2}])

    record = dispatch_service.dispatch(event.id, [{"product_id": chairs.id, "quantity": 3}])

    lines = {line.product_id: line for line in record.lines}
    assert (lines[chairs.id].qty_to_send, lines[chairs.id].primary_qty, lines[chairs.id].carried_qty) == (6, 3, 3)
    assert (lines[tables.id].qty_to_send, lines[tables.id].primary_qty, lines[tables.id].carried_qty) == (2, 0, 2)
    # Carried units never touch the pools again
    assert db.session.get(Product, chairs.id).stock_qty == 4
    assert db.session.get(Product, tables.id).stock_qty == 8
    assert db.session.get(Event, event.id).status == EVENT_STATUS_DISPATCHED

    outstanding = {b.product_id: b.outstanding for b in return_service.outstanding_lines(event.id)}
    assert outstanding == {chairs.id: 6, tables.id: 2}

    result = return_service.submit_return(event.id, [
        {"product_id": chairs.id, "returned": 6},
        {"product_id": tables.id, "returned": 2},
    ])
    assert result["summary"]["all_completed"] is True
    assert db.session.get(Product, chairs.id).stock_qty == 10
    assert db.session.get(Product, tables.id).stock_qty == 10


def test_redispatch_carries_unrepaid_b2b_debt(make_product, make_b2b, make_event):
    chairs = make_product(name="Chair", stock_qty=2)
    pool = make_b2b(chairs, quantity=4)
    tables = make_product(name="Table", stock_qty=5)
    event = make_event()
    dispatch_service.dispatch(event.id, [{"product_id": chairs.id, "quantity": 5, "source": "auto"}])
    return_service.submit_return(event.id, [{"product_id": chairs.id, "returned": 1}])
    assert db.session.get(B2BStock, pool.id).quantity_available == 2

    record = dispatch_service.dispatch(event.id, [{"product_id": tables.id, "quantity": 1}])

    carried = next(line for line in record.lines if line.product_id == chairs.id)
    assert carried.carried_qty == 4
    assert [(a.b2b_stock_id, a.quantity) for a in carried.allocations] == [(pool.id, 2)]

    return_service.submit_return(event.id, [
        {"product_id": chairs.id, "returned": 4},
        {"product_id": tables.id, "returned": 1},
    ])
    assert db.session.get(B2BStock, pool.id).quantity_available == 4
    assert db.session.get(Product, chairs.id).stock_qty == 2
    assert db.session.get(Product, tables.id).stock_qty == 5


def test_preview_shows_carried_units(make_product, make_event):
    chairs = make_product(name="Chair", stock_qty=10, rate_cents=500)
    tables = make_product(name="Table", stock_qty=10, rate_cents=900)
    event = make_event()
    dispatch_service.dispatch(event.id, [{"product_id": chairs.id, "quantity": 4}])

    preview = dispatch_service.preview_dispatch(event.id, [{"product_id": tables.id, "quantity": 1}])

    by_product = {line["product_id"]: line for line in preview["lines"]}
    assert by_product[chairs.id]["carried_qty"] == 4
    assert by_product[chairs.id]["draws"] == []
    assert by_product[tables.id]["carried_qty"] == 0
    assert preview["total_cents"] == 4 * 500 + 900
    assert db.session.query(EventDispatch).count() == 1
