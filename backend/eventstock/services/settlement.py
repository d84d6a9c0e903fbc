# backend/eventstock/services/settlement.py
"""
Settlement arithmetic for event invoices. Pure: reads the ORM objects it is
given and never touches the session.

All values are integer cents. The discount is held in basis points
(1250 = 12.5%) and rounded half-up to whole cents:

    sub_total   = base lines + manual lines
    discount    = round_half_up(sub_total * discount_bps / 10000)
    grand_total = sub_total - discount + adjustments_total
    paid        = advance (+ security when included)
    pending     = max(0, grand_total - paid)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from ..models import Event
from ..validation import ValidationError, parse_cents, parse_int, require_list

LINE_KIND_BASE = "BASE"
LINE_KIND_ADJUSTMENT = "ADJUSTMENT"
LINE_KIND_MANUAL = "MANUAL"

BPS_PER_UNIT = 10_000
MAX_DISCOUNT_BPS = 10_000


@dataclass(frozen=True)
class SettlementLine:
    kind: str
    description: str
    qty: int
    rate_cents: int
    unit_type: str = "pcs"
    product_id: int | None = None

    @property
    def amount_cents(self) -> int:
        return self.qty * self.rate_cents

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "product_id": self.product_id,
            "description": self.description,
            "unit_type": self.unit_type,
            "qty": self.qty,
            "rate_cents": self.rate_cents,
            "amount_cents": self.amount_cents,
        }


@dataclass(frozen=True)
class Settlement:
    lines: tuple[SettlementLine, ...]
    discount_bps: int
    sub_total_cents: int
    discount_cents: int
    adjustments_total_cents: int
    grand_total_cents: int
    paid_cents: int
    pending_cents: int
    include_security: bool = False
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "discount_bps": self.discount_bps,
            "include_security": self.include_security,
            "totals": {
                "sub_total_cents": self.sub_total_cents,
                "discount_cents": self.discount_cents,
                "adjustments_total_cents": self.adjustments_total_cents,
                "grand_total_cents": self.grand_total_cents,
                "paid_cents": self.paid_cents,
                "pending_cents": self.pending_cents,
            },
            "lines": [line.to_dict() for line in self.lines],
            "warnings": list(self.warnings),
        }


def parse_discount_bps(value) -> int:
    """Percent (e.g. 12.5 or "12.5") to basis points; must be within [0, 100]."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValidationError("discount_pct must be a number")
    try:
        pct = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError("discount_pct must be a number")
    if not pct.is_finite():
        raise ValidationError("discount_pct must be a number")
    bps = pct * 100
    if bps != bps.to_integral_value():
        raise ValidationError("discount_pct supports at most two decimal places")
    bps = int(bps)
    if bps < 0 or bps > MAX_DISCOUNT_BPS:
        raise ValidationError("discount_pct must be between 0 and 100")
    return bps


def discount_for(sub_total_cents: int, discount_bps: int) -> int:
    """Half-up rounding in integer arithmetic."""
    if sub_total_cents <= 0 or discount_bps <= 0:
        return 0
    return (sub_total_cents * discount_bps + BPS_PER_UNIT // 2) // BPS_PER_UNIT


def parse_manual_lines(raw_lines) -> list[SettlementLine]:
    if raw_lines is None:
        return []
    lines = []
    for idx, raw in enumerate(require_list(raw_lines, "manual_lines", allow_empty=True)):
        if not isinstance(raw, dict):
            raise ValidationError(f"manual_lines[{idx}] must be an object")
        description = str(raw.get("description") or "").strip()
        if not description:
            raise ValidationError(f"manual_lines[{idx}].description is required")
        product_id = raw.get("product_id")
        lines.append(SettlementLine(
            kind=LINE_KIND_MANUAL,
            description=description[:255],
            qty=parse_int(raw.get("qty", 1), f"manual_lines[{idx}].qty", minimum=1),
            rate_cents=parse_cents(raw.get("rate_cents"), f"manual_lines[{idx}].rate_cents"),
            unit_type=str(raw.get("unit_type") or "pcs").strip()[:16],
            product_id=parse_int(product_id, f"manual_lines[{idx}].product_id", minimum=1) if product_id is not None else None,
        ))
    return lines


def base_lines(event: Event) -> list[SettlementLine]:
    dispatch = event.latest_dispatch
    if dispatch is None:
        return []
    return [
        SettlementLine(
            kind=LINE_KIND_BASE,
            description=line.name,
            qty=line.qty_to_send,
            rate_cents=line.rate_cents,
            unit_type=line.unit_type,
            product_id=line.product_id,
        )
        for line in dispatch.lines
    ]


def adjustment_lines(event: Event) -> list[SettlementLine]:
    """
    Shortage and damage per return line, late fees folded into one line.

    Every return pass of the event counts, including passes against an
    earlier dispatch.
    """
    lines = []
    late_fee_total = 0
    for record in event.returns:
        for rl in record.lines:
            if rl.shortage_cost_cents > 0:
                lines.append(SettlementLine(
                    kind=LINE_KIND_ADJUSTMENT,
                    description=f"Shortage - {rl.name}",
                    qty=1,
                    rate_cents=rl.shortage_cost_cents,
                    unit_type=rl.unit_type,
                    product_id=rl.product_id,
                ))
            if rl.damage_cents > 0:
                lines.append(SettlementLine(
                    kind=LINE_KIND_ADJUSTMENT,
                    description=f"Damage - {rl.name}",
                    qty=1,
                    rate_cents=rl.damage_cents,
                    unit_type=rl.unit_type,
                    product_id=rl.product_id,
                ))
            late_fee_total += rl.late_fee_cents or 0
    if late_fee_total > 0:
        lines.append(SettlementLine(
            kind=LINE_KIND_ADJUSTMENT,
            description="Late Fee",
            qty=1,
            rate_cents=late_fee_total,
        ))
    return lines


def calculate_settlement(
    event: Event,
    *,
    manual_lines: list[SettlementLine] | None = None,
    discount_bps: int = 0,
    include_security: bool = False,
) -> Settlement:
    manual = list(manual_lines or [])
    base = base_lines(event)
    adjustments = adjustment_lines(event)

    sub_total = sum(line.amount_cents for line in base) + sum(line.amount_cents for line in manual)
    discount = discount_for(sub_total, discount_bps)
    adjustments_total = sum(line.amount_cents for line in adjustments)
    grand_total = sub_total - discount + adjustments_total
    paid = (event.advance_cents or 0) + ((event.security_cents or 0) if include_security else 0)

    warnings = []
    if event.latest_dispatch is not None and not event.return_closed:
        warnings.append("Event return is not closed; adjustments may be incomplete")

    return Settlement(
        lines=tuple(base + manual + adjustments),
        discount_bps=discount_bps,
        sub_total_cents=sub_total,
        discount_cents=discount,
        adjustments_total_cents=adjustments_total,
        grand_total_cents=grand_total,
        paid_cents=paid,
        pending_cents=max(0, grand_total - paid),
        include_security=include_security,
        warnings=tuple(warnings),
    )
