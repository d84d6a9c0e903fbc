# backend/eventstock/services/dispatch_service.py
"""
Stock Out: send products to an event.

A dispatch is all-or-nothing. Every line is planned against the pools
first; only when all lines fit are the pools decremented and the
EventDispatch snapshot written. Prices are copied onto the dispatch lines
so later catalog edits never change settlement for this dispatch.

A re-dispatch takes over whatever the previous dispatch still has out;
returns always settle against the latest snapshot.
"""
from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..extensions import db
from ..models import DispatchAllocation, EventDispatch, EventDispatchLine
from ..signals import notify_stock_changed
from ..time_utils import utcnow
from ..validation import ValidationError, parse_cents, parse_int, require_list
from . import event_state
from .concurrency import run_with_retry
from .event_service import get_event, get_event_for_update
from .ledger_service import POOL_B2B, append_audit_event
from .return_service import CarriedLine, carried_lines
from .stock_service import (
    SOURCE_PRIMARY,
    VALID_SOURCES,
    AllocationPlan,
    apply_allocation,
    get_product,
    plan_allocation,
)


@dataclass(frozen=True)
class DispatchItem:
    product_id: int
    quantity: int
    source: str = SOURCE_PRIMARY
    b2b_stock_id: int | None = None
    rate_cents: int | None = None


def parse_dispatch_items(raw_items) -> list[DispatchItem]:
    items = []
    seen: set[int] = set()
    for idx, raw in enumerate(require_list(raw_items, "items")):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{idx}] must be an object")
        product_id = parse_int(raw.get("product_id"), f"items[{idx}].product_id", minimum=1)
        if product_id in seen:
            raise ValidationError(f"Duplicate product_id {product_id} in items")
        seen.add(product_id)

        source = str(raw.get("source") or SOURCE_PRIMARY).strip().lower()
        if source not in VALID_SOURCES:
            raise ValidationError(f"items[{idx}].source must be one of {', '.join(VALID_SOURCES)}")

        b2b_stock_id = raw.get("b2b_stock_id")
        rate = raw.get("rate_cents")
        items.append(DispatchItem(
            product_id=product_id,
            quantity=parse_int(raw.get("quantity"), f"items[{idx}].quantity", minimum=1),
            source=source,
            b2b_stock_id=parse_int(b2b_stock_id, f"items[{idx}].b2b_stock_id", minimum=1) if b2b_stock_id is not None else None,
            rate_cents=parse_cents(rate, f"items[{idx}].rate_cents") if rate is not None else None,
        ))
    return items


def _plan(items: list[DispatchItem], *, lock: bool) -> list[tuple[DispatchItem, object, AllocationPlan]]:
    planned = []
    for item in items:
        product = get_product(item.product_id, lock=lock)
        plan = plan_allocation(product, item.quantity, item.source, item.b2b_stock_id)
        planned.append((item, product, plan))
    return planned


def preview_dispatch(event_id: int, raw_items) -> dict:
    """Plan a dispatch without persisting anything (dry run)."""
    items = parse_dispatch_items(raw_items)
    event = get_event(event_id)
    event_state.require_can_dispatch(event)
    carried = carried_lines(event)

    lines = []
    total = 0
    for item, product, plan in _plan(items, lock=False):
        carry = carried.pop(product.id, None)
        carried_qty = carry.quantity if carry else 0
        rate = item.rate_cents if item.rate_cents is not None else (product.rate_cents or 0)
        amount = rate * (item.quantity + carried_qty)
        total += amount
        lines.append({
            **plan.to_dict(),
            "name": product.name,
            "carried_qty": carried_qty,
            "rate_cents": rate,
            "amount_cents": amount,
        })
    for carry in carried.values():
        src = carry.source_line
        amount = src.rate_cents * carry.quantity
        total += amount
        lines.append({
            "product_id": src.product_id,
            "requested": 0,
            "primary_qty": 0,
            "b2b_qty": 0,
            "draws": [],
            "name": src.name,
            "carried_qty": carry.quantity,
            "rate_cents": src.rate_cents,
            "amount_cents": amount,
        })
    return {"event_id": event.id, "dry_run": True, "total_cents": total, "lines": lines}


def _carry_allocations(line: EventDispatchLine, carry: CarriedLine | None) -> None:
    if carry is None:
        return
    by_pool = {a.b2b_stock_id: a for a in carry.source_line.allocations}
    for b2b_stock_id, qty in carry.b2b_debts:
        source = by_pool[b2b_stock_id]
        db.session.add(DispatchAllocation(
            dispatch_line_id=line.id,
            b2b_stock_id=b2b_stock_id,
            supplier_name=source.supplier_name,
            unit_price_cents=source.unit_price_cents,
            quantity=qty,
        ))


def dispatch(event_id: int, raw_items, *, note: str | None = None, now=None) -> EventDispatch:
    """
    Record a Stock Out for an event.

    Units still outstanding on the previous dispatch are carried onto the new
    snapshot (with the B2B debt they owe) so later returns can settle them.

    Raises:
        ValidationError: malformed items
        InsufficientStockError: first line that cannot be covered (nothing mutated)
        EventStateError: event is CLOSED
    """
    items = parse_dispatch_items(raw_items)

    def _op() -> EventDispatch:
        when = now or utcnow()
        event = get_event_for_update(event_id)
        event_state.require_can_dispatch(event)

        planned = _plan(items, lock=True)
        carried = carried_lines(event)
        carried_summary = {pid: c.quantity for pid, c in carried.items()}

        record = EventDispatch(event=event, note=note, dispatched_at=when)
        db.session.add(record)
        db.session.flush()

        total = 0
        for item, product, plan in planned:
            carry = carried.pop(product.id, None)
            carried_qty = carry.quantity if carry else 0
            rate = item.rate_cents if item.rate_cents is not None else (product.rate_cents or 0)
            line = EventDispatchLine(
                dispatch_id=record.id,
                product_id=product.id,
                name=product.name,
                sku=product.sku,
                unit_type=product.unit_type,
                qty_to_send=item.quantity + carried_qty,
                rate_cents=rate,
                buy_price_cents=product.buy_price_cents,
                loss_price_cents=product.loss_price_cents,
                amount_cents=rate * (item.quantity + carried_qty),
                primary_qty=plan.primary_qty,
                b2b_qty=plan.b2b_qty,
                carried_qty=carried_qty,
            )
            db.session.add(line)
            db.session.flush()

            apply_allocation(plan, event_id=event.id, dispatch_line_id=line.id, now=when)
            for draw in plan.draws:
                if draw.pool != POOL_B2B:
                    continue
                db.session.add(DispatchAllocation(
                    dispatch_line_id=line.id,
                    b2b_stock_id=draw.b2b_stock_id,
                    supplier_name=draw.supplier_name,
                    unit_price_cents=draw.unit_price_cents,
                    quantity=draw.quantity,
                ))
            _carry_allocations(line, carry)
            total += line.amount_cents

        # Carried products not requested again keep their original price snapshot
        for carry in carried.values():
            src = carry.source_line
            line = EventDispatchLine(
                dispatch_id=record.id,
                product_id=src.product_id,
                name=src.name,
                sku=src.sku,
                unit_type=src.unit_type,
                qty_to_send=carry.quantity,
                rate_cents=src.rate_cents,
                buy_price_cents=src.buy_price_cents,
                loss_price_cents=src.loss_price_cents,
                amount_cents=src.rate_cents * carry.quantity,
                carried_qty=carry.quantity,
            )
            db.session.add(line)
            db.session.flush()
            _carry_allocations(line, carry)
            total += line.amount_cents

        record.total_cents = total
        event_state.mark_dispatched(event)
        event.last_dispatched_at = when

        append_audit_event(
            action="EVENT_DISPATCHED",
            entity_type="event",
            entity_id=event.id,
            payload={
                "dispatch_id": record.id,
                "total_cents": total,
                "lines": [plan.to_dict() for _, _, plan in planned],
                "carried": {str(pid): qty for pid, qty in carried_summary.items()},
            },
            occurred_at=when,
        )
        db.session.commit()
        return record

    record = run_with_retry(_op)
    current_app.logger.info(
        "Event %s dispatched: dispatch_id=%s lines=%d total_cents=%s",
        event_id, record.id, len(record.lines), record.total_cents,
    )
    notify_stock_changed([i.product_id for i in items], reason="dispatch", event_id=event_id)
    return record
