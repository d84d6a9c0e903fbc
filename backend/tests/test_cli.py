from eventstock.extensions import db
from eventstock.models import B2BStock, Client, Product
from eventstock.services import dispatch_service, return_service


def test_init_db_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["system", "init-db"])

    assert result.exit_code == 0
    assert "PASS Database tables created." in result.output


def test_reset_db_requires_confirmation(app, make_product):
    make_product()
    runner = app.test_cli_runner()

    aborted = runner.invoke(args=["system", "reset-db"], input="n\n")
    assert aborted.exit_code != 0
    assert db.session.query(Product).count() == 1

    result = runner.invoke(args=["system", "reset-db", "--yes"])
    assert result.exit_code == 0
    assert "PASS Database reset complete." in result.output
    assert db.session.query(Product).count() == 0


def test_seed_demo_skips_existing_and_tops_up_pool(app, db_session):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["stock", "seed-demo"])
    assert first.exit_code == 0
    assert "PASS Created product: CHR-001 Chair (stock 200)" in first.output
    assert "PASS Created B2B pool: Chair (50)" in first.output

    second = runner.invoke(args=["stock", "seed-demo"])
    assert second.exit_code == 0
    assert "WARN  Product CHR-001 already exists, skipping..." in second.output
    assert "PASS Topped up B2B pool: Chair (100)" in second.output

    assert db.session.query(Client).filter_by(name="Demo Client").count() == 1
    assert db.session.query(Product).count() == 4
    pool = db.session.query(B2BStock).one()
    assert pool.product_id == db.session.query(Product).filter_by(sku="CHR-001").one().id


def test_outstanding_lists_lines_still_out(app, make_product, make_event):
    product = make_product(name="Chair", stock_qty=10)
    event = make_event(name="Summer Gala")
    dispatch_service.dispatch(event.id, [{"product_id": product.id, "quantity": 10}])
    return_service.submit_return(event.id, [{"product_id": product.id, "returned": 6}])
    runner = app.test_cli_runner()

    result = runner.invoke(args=["events", "outstanding", str(event.id)])

    assert result.exit_code == 0
    assert f"Event {event.id}: Summer Gala [PARTIALLY_RETURNED]" in result.output
    row = next(line for line in result.output.splitlines() if line.startswith(str(product.id)))
    assert row.split()[-3:] == ["10", "6", "4"]


def test_outstanding_when_nothing_is_out(app, make_event):
    event = make_event()
    runner = app.test_cli_runner()

    result = runner.invoke(args=["events", "outstanding", str(event.id)])

    assert result.exit_code == 0
    assert "Nothing outstanding." in result.output
