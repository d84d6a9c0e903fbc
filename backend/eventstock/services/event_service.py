# Overview: Service-layer operations for events; creation, lookup and agreement snapshots.

from __future__ import annotations

from ..extensions import db
from ..models import Client, Event, Product
from ..references import ref_to, ref_to_dict, resolve
from ..time_utils import to_utc_z, utcnow
from ..validation import (
    ModelValidationPolicy,
    NotFoundError,
    ValidationError,
    enforce_rules_event,
    parse_cents,
    parse_int,
    require_list,
    validate_payload,
)
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_audit_event

EVENT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name",
        "location",
        "client_id",
        "date_from",
        "date_to",
        "notes",
        "advance_cents",
        "security_cents",
        "agreement_terms",
    },
    required_on_create={"name", "date_from", "date_to"},
)


def get_event(event_id: int) -> Event:
    event = db.session.get(Event, event_id)
    if not event:
        raise NotFoundError(f"Event {event_id} not found")
    return event


def get_event_for_update(event_id: int) -> Event:
    event = lock_for_update(db.session.query(Event).filter_by(id=event_id)).first()
    if not event:
        raise NotFoundError(f"Event {event_id} not found")
    return event


def event_to_dict(event: Event, *, expand_client: bool = False) -> dict:
    ref = event.client_ref
    if expand_client:
        ref = resolve(ref, Client)
    return event.to_dict(client=ref_to_dict(ref))


def create_event(payload: dict) -> Event:
    patch = validate_payload(model=Event, payload=payload, policy=EVENT_POLICY, partial=False)
    enforce_rules_event(patch)

    def _op() -> Event:
        if patch.get("client_id") is not None:
            resolve(ref_to(patch["client_id"]), Client)
        event = Event(**patch)
        db.session.add(event)
        db.session.flush()
        append_audit_event(
            action="EVENT_CREATED",
            entity_type="event",
            entity_id=event.id,
            payload={"name": event.name},
        )
        db.session.commit()
        return event

    return run_with_retry(_op)


def _agreement_items(raw_items) -> list[dict]:
    items = []
    seen: set[int] = set()
    for idx, raw in enumerate(require_list(raw_items, "items", allow_empty=True)):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{idx}] must be an object")
        product_id = parse_int(raw.get("product_id"), f"items[{idx}].product_id", minimum=1)
        if product_id in seen:
            raise ValidationError(f"Duplicate product_id {product_id} in items")
        seen.add(product_id)
        product = db.session.get(Product, product_id)
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        qty = parse_int(raw.get("qty"), f"items[{idx}].qty", minimum=1)
        rate = raw.get("rate_cents")
        rate_cents = parse_cents(rate, f"items[{idx}].rate_cents") if rate is not None else (product.rate_cents or 0)
        items.append({
            "product_id": product.id,
            "name": product.name,
            "unit_type": product.unit_type,
            "qty": qty,
            "rate_cents": rate_cents,
            "amount_cents": qty * rate_cents,
        })
    return items


def save_agreement(event_id: int, payload: dict) -> Event:
    """
    Store the agreed quote on the event as a JSON snapshot.

    grand_total_cents = items total - advance - security, computed here.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    def _op() -> Event:
        event = get_event_for_update(event_id)
        items = _agreement_items(payload.get("items", []))

        advance = payload.get("advance_cents", event.advance_cents)
        security = payload.get("security_cents", event.security_cents)
        event.advance_cents = parse_cents(advance if advance is not None else 0, "advance_cents")
        event.security_cents = parse_cents(security if security is not None else 0, "security_cents")

        terms = payload.get("terms", event.agreement_terms)
        event.agreement_terms = str(terms).strip() if terms is not None else None

        items_total = sum(item["amount_cents"] for item in items)
        event.agreement_snapshot = {
            "items": items,
            "items_total_cents": items_total,
            "advance_cents": event.advance_cents,
            "security_cents": event.security_cents,
            "terms": event.agreement_terms,
            "grand_total_cents": items_total - event.advance_cents - event.security_cents,
            "saved_at": to_utc_z(utcnow()),
        }
        append_audit_event(
            action="EVENT_AGREEMENT_SAVED",
            entity_type="event",
            entity_id=event.id,
            payload={"items_total_cents": items_total},
        )
        db.session.commit()
        return event

    return run_with_retry(_op)
