import pytest

from eventstock.extensions import db
from eventstock.models import B2BPurchaseLog, B2BStock, Product, StockLedgerEntry
from eventstock.services import stock_service
from eventstock.services.stock_service import (
    InsufficientPrimaryStockError,
    InsufficientStockError,
    SOURCE_AUTO,
    SOURCE_B2B,
)
from eventstock.signals import stock_changed
from eventstock.validation import NotFoundError, ValidationError


def _qty(product_id):
    return db.session.get(Product, product_id).stock_qty


def _b2b_qty(stock_id):
    return db.session.get(B2BStock, stock_id).quantity_available


def test_transfer_to_b2b_moves_units_between_pools(make_product, make_b2b):
    product = make_product(stock_qty=50)
    pool = make_b2b(product, quantity=5)

    target = stock_service.transfer_to_b2b(product.id, 20)

    assert target.id == pool.id
    assert _qty(product.id) == 30
    assert _b2b_qty(pool.id) == 25


def test_transfer_to_b2b_insufficient_leaves_pools_unchanged(make_product, make_b2b):
    product = make_product(stock_qty=3)
    pool = make_b2b(product, quantity=7)

    with pytest.raises(InsufficientPrimaryStockError) as exc:
        stock_service.transfer_to_b2b(product.id, 4)

    assert exc.value.details == {"product_id": product.id, "requested": 4, "available": 3}
    assert _qty(product.id) == 3
    assert _b2b_qty(pool.id) == 7
    assert db.session.query(StockLedgerEntry).count() == 0


def test_transfer_to_b2b_creates_linked_pool_when_none(make_product):
    product = make_product(name="Stage Light", stock_qty=10, buy_price_cents=4500)

    target = stock_service.transfer_to_b2b(product.id, 4)

    assert target.product_id == product.id
    assert target.quantity_available == 4
    assert target.unit_price_cents == 4500
    assert _qty(product.id) == 6


def test_transfer_to_b2b_rejects_pool_of_other_product(make_product, make_b2b):
    chair = make_product(name="Chair")
    table = make_product(name="Table")
    pool = make_b2b(table, quantity=1)

    with pytest.raises(ValidationError):
        stock_service.transfer_to_b2b(chair.id, 1, b2b_stock_id=pool.id)


def test_transfer_rejects_non_positive_quantity(make_product):
    product = make_product()
    with pytest.raises(ValidationError):
        stock_service.transfer_to_b2b(product.id, 0)


def test_transfer_from_b2b_returns_units_to_primary(make_product, make_b2b):
    product = make_product(stock_qty=1)
    pool = make_b2b(product, quantity=9)

    stock_service.transfer_from_b2b(pool.id, 9)

    assert _qty(product.id) == 10
    assert _b2b_qty(pool.id) == 0
    reasons = {(e.pool, e.reason, e.qty_change) for e in db.session.query(StockLedgerEntry).all()}
    assert reasons == {("B2B", "TRANSFER_OUT", -9), ("PRIMARY", "TRANSFER_IN", 9)}


def test_transfer_from_b2b_insufficient(make_product, make_b2b):
    product = make_product(stock_qty=1)
    pool = make_b2b(product, quantity=2)

    with pytest.raises(InsufficientStockError):
        stock_service.transfer_from_b2b(pool.id, 3)
    assert _b2b_qty(pool.id) == 2


def test_plan_auto_draws_primary_first(make_product, make_b2b):
    product = make_product(stock_qty=6)
    pool = make_b2b(product, quantity=10)

    plan = stock_service.plan_allocation(product, 10, SOURCE_AUTO)

    assert plan.primary_qty == 6
    assert plan.b2b_qty == 4
    assert plan.draws[1].b2b_stock_id == pool.id


def test_plan_b2b_uses_least_recently_used_pool_first(make_product, make_b2b):
    from eventstock.time_utils import utcnow

    product = make_product(stock_qty=0)
    recent = make_b2b(product, quantity=5, supplier_name="Recent")
    fresh = make_b2b(product, quantity=5, supplier_name="Fresh")
    recent.last_used_at = utcnow()
    db.session.commit()

    plan = stock_service.plan_allocation(product, 7, SOURCE_B2B)

    assert [(d.b2b_stock_id, d.quantity) for d in plan.draws] == [(fresh.id, 5), (recent.id, 2)]


def test_plan_reports_available_on_shortfall(make_product, make_b2b):
    product = make_product(stock_qty=2)
    make_b2b(product, quantity=3)

    with pytest.raises(InsufficientStockError) as exc:
        stock_service.plan_allocation(product, 6, SOURCE_AUTO)
    assert exc.value.available == 5
    assert exc.value.requested == 6


def test_create_b2b_stock_merges_by_normalized_name(make_product):
    product = make_product(name="Chair")

    first, merged_first = stock_service.create_b2b_stock("Chair", "Seats Ltd", 10, 250)
    second, merged_second = stock_service.create_b2b_stock("  chair ", "Other Co", 5, 275)

    assert merged_first is False
    assert merged_second is True
    assert first.id == second.id
    stock = db.session.get(B2BStock, first.id)
    assert stock.quantity_available == 15
    assert stock.unit_price_cents == 275
    assert stock.supplier_name == "Other Co"
    assert stock.product_id == product.id
    assert db.session.query(B2BPurchaseLog).filter_by(b2b_stock_id=stock.id).count() == 2


def test_record_b2b_purchase_requires_supplier(make_b2b):
    pool = make_b2b(quantity=1)
    with pytest.raises(ValidationError):
        stock_service.record_b2b_purchase(pool.id, 1, 100, "  ")


def test_record_b2b_purchase_unknown_pool():
    with pytest.raises(NotFoundError):
        stock_service.record_b2b_purchase(999, 1, 100, "Supplier")


def test_stock_changed_signal_fires_after_commit(app, make_product):
    product = make_product(stock_qty=5)
    received = []

    def _listener(sender, product_ids=None, reason=None, **extra):
        received.append((product_ids, reason, _qty(product.id)))

    stock_changed.connect(_listener, sender=app)
    try:
        stock_service.transfer_to_b2b(product.id, 2)
    finally:
        stock_changed.disconnect(_listener, sender=app)

    assert received == [([product.id], "transfer_to_b2b", 3)]


def test_failing_subscriber_does_not_undo_transfer(app, make_product):
    product = make_product(stock_qty=5)

    def _broken(sender, **kwargs):
        raise RuntimeError("subscriber down")

    stock_changed.connect(_broken, sender=app)
    try:
        stock_service.transfer_to_b2b(product.id, 1)
    finally:
        stock_changed.disconnect(_broken, sender=app)

    assert _qty(product.id) == 4
