import pytest

from eventstock.extensions import db
from eventstock.models import Event
from eventstock.references import Resolved, Unresolved, ref_to, ref_to_dict, resolve
from eventstock.models import Client
from eventstock.services import event_service
from eventstock.validation import NotFoundError, ValidationError


def test_create_event_parses_dates_and_defaults(db_session):
    event = event_service.create_event({
        "name": "Harbour Wedding",
        "date_from": "2026-06-01T10:00:00Z",
        "date_to": "2026-06-03T18:00:00+02:00",
        "advance_cents": 5000,
    })

    stored = db.session.get(Event, event.id)
    assert stored.status == "DRAFT"
    assert stored.return_closed is False
    assert stored.date_to.hour == 16
    assert stored.advance_cents == 5000


@pytest.mark.parametrize("payload", [
    {"name": "X", "date_from": "2026-06-03", "date_to": "2026-06-01"},
    {"name": "X", "date_from": "2026-06-01"},
    {"name": "X", "date_from": "2026-06-01", "date_to": "2026-06-02", "status": "CLOSED"},
    {"name": "X", "date_from": "2026-06-01", "date_to": "2026-06-02", "advance_cents": -1},
])
def test_create_event_rejects_invalid(db_session, payload):
    with pytest.raises(ValidationError):
        event_service.create_event(payload)


def test_create_event_unknown_client(db_session):
    with pytest.raises(NotFoundError):
        event_service.create_event({
            "name": "X", "date_from": "2026-06-01", "date_to": "2026-06-02", "client_id": 77,
        })


def test_client_reference_is_unresolved_until_expanded(make_event, demo_client):
    event = make_event(client=demo_client)

    assert isinstance(event.client_ref, Unresolved)
    assert event_service.event_to_dict(event)["client"] == {"id": demo_client.id}
    expanded = event_service.event_to_dict(event, expand_client=True)
    assert expanded["client"]["name"] == "Acme Weddings"


def test_resolve_passes_resolved_through(demo_client):
    resolved = Resolved(demo_client)
    assert resolve(resolved, Client) is resolved
    assert resolve(None, Client) is None
    assert ref_to(None) is None
    assert ref_to_dict(resolve(ref_to(demo_client.id), Client))["id"] == demo_client.id


def test_resolve_missing_raises(db_session):
    with pytest.raises(NotFoundError):
        resolve(ref_to(999), Client)


def test_save_agreement_snapshot(make_product, make_event):
    chairs = make_product(name="Chair", rate_cents=500)
    tables = make_product(name="Table", rate_cents=1500)
    event = make_event()

    saved = event_service.save_agreement(event.id, {
        "items": [
            {"product_id": chairs.id, "qty": 10},
            {"product_id": tables.id, "qty": 2, "rate_cents": 1200},
        ],
        "advance_cents": 1000,
        "security_cents": 500,
        "terms": "Return by Monday",
    })

    snapshot = db.session.get(Event, saved.id).agreement_snapshot
    assert snapshot["items_total_cents"] == 5000 + 2400
    assert snapshot["grand_total_cents"] == 7400 - 1500
    assert snapshot["terms"] == "Return by Monday"
    assert [i["rate_cents"] for i in snapshot["items"]] == [500, 1200]


def test_save_agreement_rejects_duplicates(make_product, make_event):
    chairs = make_product()
    event = make_event()
    with pytest.raises(ValidationError):
        event_service.save_agreement(event.id, {
            "items": [{"product_id": chairs.id, "qty": 1}, {"product_id": chairs.id, "qty": 2}],
        })
