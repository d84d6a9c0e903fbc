# backend/eventstock/services/return_service.py
"""
Stock In: settle what came back from an event.

WHY: Returns arrive in several passes. Each pass is an immutable
EventReturn; what is still outstanding is never stored, it is folded from
the passes recorded against the latest dispatch:

    already_returned = sum(returned)
    written_off      = sum(shortage)
    outstanding      = qty_to_send - already_returned - written_off

CHARGES (per submitted line, server-side only):
- shortage: only when the line is closed out, outstanding - returned
- shortage_cost = shortage * effective loss price (loss, else buy, else rate)
- late fee: LATE_FEE_PER_DAY_CENTS * started days past date_to, unless overridden
- line_adjust = shortage_cost + damage + late fee

Returned units go back to the B2B pools the dispatch line drew from first,
then to the primary pool. Shortage units are not restocked.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from flask import current_app

from ..extensions import db
from ..models import Event, EventDispatch, EventDispatchLine, EventReturn, EventReturnLine
from ..signals import notify_stock_changed
from ..time_utils import days_overdue, to_utc_z, utcnow
from ..validation import ConflictError, ValidationError, parse_bool, parse_cents, parse_int, require_list
from . import event_state
from .concurrency import run_with_retry
from .event_service import get_event, get_event_for_update
from .ledger_service import POOL_B2B, POOL_PRIMARY, REASON_RETURN, append_audit_event, b2b_repaid_for_line
from .stock_service import restock


class ReturnError(ValidationError):
    """Raised when a return cannot be processed for the event."""
    code = "RETURN_ERROR"


class AlreadyReturnedError(Exception):
    """Terminal: the event's return is closed or nothing is outstanding."""
    code = "ALREADY_RETURNED"

    def __init__(self, message: str = "Event return already completed"):
        super().__init__(message)
        self.details: dict = {}


class ReturnLineConflictError(ConflictError):
    """Lines were settled by another submission; refetch the form and resubmit."""
    code = "ALREADY_RETURNED_LINE"

    def __init__(self, product_ids: Iterable[int]):
        self.product_ids = sorted(set(product_ids))
        super().__init__(f"Lines already returned for products {self.product_ids}")
        self.details = {"product_ids": self.product_ids}


# =============================================================================
# Pure fold and charge computation
# =============================================================================

@dataclass(frozen=True)
class LineBalance:
    dispatch_line: EventDispatchLine
    already_returned: int
    written_off: int

    @property
    def product_id(self) -> int:
        return self.dispatch_line.product_id

    @property
    def expected(self) -> int:
        return self.dispatch_line.qty_to_send

    @property
    def outstanding(self) -> int:
        return max(0, self.expected - self.already_returned - self.written_off)

    @property
    def settled(self) -> bool:
        return self.outstanding == 0


def fold_balances(
    dispatch_lines: Iterable[EventDispatchLine],
    return_lines: Iterable[EventReturnLine],
) -> dict[int, LineBalance]:
    """Balances per product_id for one dispatch. Reads nothing from the DB."""
    returned: dict[int, int] = {}
    written_off: dict[int, int] = {}
    for rl in return_lines:
        returned[rl.dispatch_line_id] = returned.get(rl.dispatch_line_id, 0) + (rl.returned or 0)
        written_off[rl.dispatch_line_id] = written_off.get(rl.dispatch_line_id, 0) + (rl.shortage or 0)

    return {
        line.product_id: LineBalance(
            dispatch_line=line,
            already_returned=returned.get(line.id, 0),
            written_off=written_off.get(line.id, 0),
        )
        for line in dispatch_lines
    }


def effective_loss_price(loss_price_cents, buy_price_cents, rate_cents) -> int:
    """First configured price of loss, buy, rate. Never negative."""
    for price in (loss_price_cents, buy_price_cents, rate_cents):
        if price is not None:
            return max(0, int(price))
    return 0


def default_late_fee_cents(date_to, now, per_day_cents: int) -> int:
    return per_day_cents * days_overdue(date_to, now)


@dataclass(frozen=True)
class ReturnItem:
    product_id: int
    returned: int
    damage_cents: int = 0
    late_fee_cents: int | None = None
    observed_already_returned: int | None = None
    close_out: bool = False


@dataclass(frozen=True)
class ComputedLine:
    balance: LineBalance
    item: ReturnItem
    shortage: int
    loss_price_cents: int
    shortage_cost_cents: int
    late_fee_cents: int

    @property
    def line_adjust_cents(self) -> int:
        return self.shortage_cost_cents + self.item.damage_cents + self.late_fee_cents


def compute_line(balance: LineBalance, item: ReturnItem, default_late_fee: int) -> ComputedLine:
    line = balance.dispatch_line
    shortage = balance.outstanding - item.returned if item.close_out else 0
    loss_price = effective_loss_price(line.loss_price_cents, line.buy_price_cents, line.rate_cents)
    return ComputedLine(
        balance=balance,
        item=item,
        shortage=shortage,
        loss_price_cents=loss_price,
        shortage_cost_cents=shortage * loss_price,
        late_fee_cents=item.late_fee_cents if item.late_fee_cents is not None else default_late_fee,
    )


def parse_return_items(raw_items) -> list[ReturnItem]:
    items = []
    seen: set[int] = set()
    for idx, raw in enumerate(require_list(raw_items, "items")):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{idx}] must be an object")
        product_id = parse_int(raw.get("product_id"), f"items[{idx}].product_id", minimum=1)
        if product_id in seen:
            raise ValidationError(f"Duplicate product_id {product_id} in items")
        seen.add(product_id)

        returned = parse_int(raw.get("returned", 0), f"items[{idx}].returned", minimum=0)
        close_out = parse_bool(raw.get("close_out", False), f"items[{idx}].close_out")
        if returned == 0 and not close_out:
            raise ValidationError(f"items[{idx}]: returned must be > 0 unless the line is closed out")

        late_fee = raw.get("late_fee_cents")
        observed = raw.get("already_returned")
        items.append(ReturnItem(
            product_id=product_id,
            returned=returned,
            damage_cents=parse_cents(raw.get("damage_cents") or 0, f"items[{idx}].damage_cents"),
            late_fee_cents=parse_cents(late_fee, f"items[{idx}].late_fee_cents") if late_fee is not None else None,
            observed_already_returned=(
                parse_int(observed, f"items[{idx}].already_returned", minimum=0) if observed is not None else None
            ),
            close_out=close_out,
        ))
    return items


def _line_summary(c: ComputedLine) -> dict:
    line = c.balance.dispatch_line
    return {
        "product_id": line.product_id,
        "name": line.name,
        "unit_type": line.unit_type,
        "expected": c.balance.expected,
        "already_returned": c.balance.already_returned,
        "returned": c.item.returned,
        "shortage": c.shortage,
        "close_out": c.item.close_out,
        "rate_cents": line.rate_cents,
        "loss_price_cents": c.loss_price_cents,
        "shortage_cost_cents": c.shortage_cost_cents,
        "damage_cents": c.item.damage_cents,
        "late_fee_cents": c.late_fee_cents,
        "line_adjust_cents": c.line_adjust_cents,
    }


# =============================================================================
# Queries
# =============================================================================

def _latest_balances(event: Event) -> tuple[EventDispatch, dict[int, LineBalance]]:
    dispatch = event.latest_dispatch
    if dispatch is None:
        raise ReturnError(f"Event {event.id} has no dispatch to return against")
    return_lines = [rl for r in event.returns_for(dispatch) for rl in r.lines]
    return dispatch, fold_balances(dispatch.lines, return_lines)


def outstanding_lines(event_id: int) -> list[LineBalance]:
    event = get_event(event_id)
    if event.latest_dispatch is None:
        return []
    _, balances = _latest_balances(event)
    return [b for b in balances.values() if not b.settled]


def return_form(event_id: int, now=None) -> dict:
    """
    Editable lines for the next return pass, prefilled with defaults.

    Raises AlreadyReturnedError when nothing is outstanding.
    """
    event = get_event(event_id)
    if event.return_closed:
        raise AlreadyReturnedError()
    dispatch, balances = _latest_balances(event)

    late_fee = default_late_fee_cents(event.date_to, now or utcnow(), current_app.config["LATE_FEE_PER_DAY_CENTS"])
    lines = []
    for balance in balances.values():
        if balance.settled:
            continue
        # Prefill as if everything outstanding comes back.
        computed = compute_line(balance, ReturnItem(product_id=balance.product_id, returned=balance.outstanding), late_fee)
        lines.append({**_line_summary(computed), "outstanding": balance.outstanding})
    if not lines:
        raise AlreadyReturnedError("Nothing outstanding for this event")

    return {
        "event_id": event.id,
        "dispatch_id": dispatch.id,
        "date_to": to_utc_z(event.date_to),
        "default_late_fee_cents": late_fee,
        "lines": lines,
    }


def last_return_summary(event_id: int) -> dict | None:
    event = get_event(event_id)
    if not event.returns:
        return None
    last = event.returns[-1]
    return {
        "return_id": last.id,
        "dispatch_id": last.dispatch_id,
        "returned_at": to_utc_z(last.returned_at),
        "all_completed": last.all_completed,
        **last.totals_dict(),
    }


# =============================================================================
# Submission
# =============================================================================

def _check_lines(balances: dict[int, LineBalance], items: list[ReturnItem]) -> None:
    conflicts = []
    for item in items:
        balance = balances.get(item.product_id)
        if balance is None:
            raise ValidationError(f"Product {item.product_id} is not part of the latest dispatch")
        if item.returned > balance.expected:
            raise ValidationError(
                f"Returned {item.returned} exceeds dispatched {balance.expected} for product {item.product_id}"
            )
        observed = item.observed_already_returned
        if balance.settled or (observed is not None and observed != balance.already_returned):
            conflicts.append(item.product_id)
            continue
        if item.returned > balance.outstanding:
            # A matching observation rules out a concurrent pass: plain over-return.
            if observed is not None:
                raise ValidationError(
                    f"Returned {item.returned} exceeds outstanding {balance.outstanding} for product {item.product_id}"
                )
            conflicts.append(item.product_id)
    if conflicts:
        raise ReturnLineConflictError(conflicts)


def unrepaid_b2b(line: EventDispatchLine) -> dict[int, int]:
    """Units of a dispatch line still owed to each B2B pool it drew from."""
    owed: dict[int, int] = {}
    for alloc in line.allocations:
        owed[alloc.b2b_stock_id] = owed.get(alloc.b2b_stock_id, 0) + alloc.quantity
    repaid = b2b_repaid_for_line(line.id)
    return {
        b2b_stock_id: qty - repaid.get(b2b_stock_id, 0)
        for b2b_stock_id, qty in owed.items()
        if qty - repaid.get(b2b_stock_id, 0) > 0
    }


def _restock_line(computed: ComputedLine, *, event_id: int, now) -> None:
    line = computed.balance.dispatch_line
    remaining = computed.item.returned
    if remaining <= 0:
        return

    for b2b_stock_id, debt in unrepaid_b2b(line).items():
        take = min(debt, remaining)
        if take <= 0:
            continue
        restock(
            product_id=line.product_id, quantity=take, pool=POOL_B2B, reason=REASON_RETURN,
            b2b_stock_id=b2b_stock_id, event_id=event_id, dispatch_line_id=line.id, now=now,
        )
        remaining -= take

    restock(
        product_id=line.product_id, quantity=remaining, pool=POOL_PRIMARY, reason=REASON_RETURN,
        event_id=event_id, dispatch_line_id=line.id, now=now,
    )


@dataclass(frozen=True)
class CarriedLine:
    """Outstanding units of the latest dispatch, moved onto the next one."""
    source_line: EventDispatchLine
    quantity: int
    b2b_debts: tuple[tuple[int, int], ...] = ()


def carried_lines(event: Event) -> dict[int, CarriedLine]:
    """
    Per product_id, what a new dispatch must take over from the latest one.

    B2B debt is carried up to the outstanding quantity; returns repay B2B
    first, so whatever debt exceeds it belongs to written-off units.
    """
    if event.latest_dispatch is None:
        return {}
    _, balances = _latest_balances(event)
    carried = {}
    for balance in balances.values():
        if balance.settled:
            continue
        left = balance.outstanding
        debts = []
        for b2b_stock_id, debt in unrepaid_b2b(balance.dispatch_line).items():
            take = min(debt, left)
            if take <= 0:
                break
            debts.append((b2b_stock_id, take))
            left -= take
        carried[balance.product_id] = CarriedLine(
            source_line=balance.dispatch_line,
            quantity=balance.outstanding,
            b2b_debts=tuple(debts),
        )
    return carried


def submit_return(event_id: int, raw_items, *, return_due_cents=None, now=None) -> dict:
    """
    Record one return pass for the event's latest dispatch.

    Raises:
        AlreadyReturnedError: return closed or nothing outstanding (terminal)
        ReturnError: the event was never dispatched
        ReturnLineConflictError: lines settled by someone else meanwhile
        ValidationError: malformed or impossible quantities
    """
    items = parse_return_items(raw_items)
    declared = parse_cents(return_due_cents, "return_due_cents") if return_due_cents is not None else None

    def _op() -> dict:
        when = now or utcnow()
        event = get_event_for_update(event_id)
        if event.return_closed:
            raise AlreadyReturnedError()
        dispatch, balances = _latest_balances(event)
        event_state.require_can_return(event)
        if all(b.settled for b in balances.values()):
            raise AlreadyReturnedError("Nothing outstanding for this event")

        _check_lines(balances, items)

        late_fee = default_late_fee_cents(event.date_to, when, current_app.config["LATE_FEE_PER_DAY_CENTS"])
        computed = [compute_line(balances[item.product_id], item, late_fee) for item in items]

        record = EventReturn(
            event=event,
            dispatch_id=dispatch.id,
            shortage_units=sum(c.shortage for c in computed),
            shortage_cents=sum(c.shortage_cost_cents for c in computed),
            damage_cents=sum(c.item.damage_cents for c in computed),
            late_fee_cents=sum(c.late_fee_cents for c in computed),
            return_due_cents=sum(c.line_adjust_cents for c in computed),
            declared_return_due_cents=declared,
            returned_at=when,
        )
        db.session.add(record)
        for c in computed:
            line = c.balance.dispatch_line
            db.session.add(EventReturnLine(
                event_return=record,
                dispatch_line_id=line.id,
                product_id=line.product_id,
                name=line.name,
                unit_type=line.unit_type,
                expected=c.balance.expected,
                already_returned=c.balance.already_returned,
                returned=c.item.returned,
                shortage=c.shortage,
                close_out=c.item.close_out,
                rate_cents=line.rate_cents,
                buy_price_cents=line.buy_price_cents,
                loss_price_cents=c.loss_price_cents,
                damage_cents=c.item.damage_cents,
                late_fee_cents=c.late_fee_cents,
                shortage_cost_cents=c.shortage_cost_cents,
                line_adjust_cents=c.line_adjust_cents,
            ))
        db.session.flush()

        for c in computed:
            _restock_line(c, event_id=event.id, now=when)

        _, after = _latest_balances(event)
        remaining = any(not b.settled for b in after.values())
        record.all_completed = not remaining
        event_state.mark_returned(event, outstanding_remaining=remaining)
        event.last_returned_at = when

        append_audit_event(
            action="EVENT_RETURNED",
            entity_type="event",
            entity_id=event.id,
            payload={"return_id": record.id, "return_due_cents": record.return_due_cents},
            occurred_at=when,
        )
        result = {
            "event": event,
            "return": record,
            "summary": {
                "return_id": record.id,
                "all_completed": record.all_completed,
                "total_shortage_units": record.shortage_units,
                "total_shortage_cents": record.shortage_cents,
                "total_damage_cents": record.damage_cents,
                "total_late_fee_cents": record.late_fee_cents,
                "return_due_cents": record.return_due_cents,
                "declared_return_due_cents": declared,
                "lines": [_line_summary(c) for c in computed],
            },
        }
        db.session.commit()
        return result

    result = run_with_retry(_op)
    summary = result["summary"]
    if declared is not None and declared != summary["return_due_cents"]:
        current_app.logger.warning(
            "Event %s return due mismatch: declared=%s computed=%s",
            event_id, declared, summary["return_due_cents"],
        )
    current_app.logger.info(
        "Event %s return recorded: return_id=%s due_cents=%s completed=%s",
        event_id, summary["return_id"], summary["return_due_cents"], summary["all_completed"],
    )
    notify_stock_changed(
        [line["product_id"] for line in summary["lines"] if line["returned"] > 0],
        reason="return",
        event_id=event_id,
    )
    return result
