# Overview: Service-layer operations for the stock ledger and audit trail.

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Optional

from sqlalchemy import func

from ..extensions import db
from ..models import StockLedgerEntry, AuditEvent
"""
Stock Ledger Invariants (authoritative)

- Append-only: rows are never updated or deleted.
- Every pool mutation writes exactly one entry, inside the same DB transaction.
- qty_change is signed: negative leaves the pool, positive enters it.
- Units of a dispatch line already repaid to a B2B pool are derived by summing
  RETURN entries for that line; no separate running counter is stored.
"""

POOL_PRIMARY = "PRIMARY"
POOL_B2B = "B2B"

REASON_DISPATCH = "DISPATCH"
REASON_RETURN = "RETURN"
REASON_TRANSFER_IN = "TRANSFER_IN"
REASON_TRANSFER_OUT = "TRANSFER_OUT"
REASON_PURCHASE = "PURCHASE"


def append_stock_entry(
    *,
    product_id: int | None,
    pool: str,
    qty_change: int,
    reason: str,
    b2b_stock_id: int | None = None,
    event_id: int | None = None,
    dispatch_line_id: int | None = None,
    note: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> StockLedgerEntry:
    if pool not in (POOL_PRIMARY, POOL_B2B):
        raise ValueError(f"Unknown stock pool {pool!r}")
    if pool == POOL_B2B and b2b_stock_id is None:
        raise ValueError("b2b_stock_id is required for B2B ledger entries")

    entry = StockLedgerEntry(
        product_id=product_id,
        pool=pool,
        b2b_stock_id=b2b_stock_id,
        qty_change=qty_change,
        reason=reason,
        event_id=event_id,
        dispatch_line_id=dispatch_line_id,
        note=note,
        occurred_at=occurred_at,  # if None, db default applies
    )
    db.session.add(entry)
    db.session.flush()  # ensures entry.id is assigned without committing
    return entry


def append_audit_event(
    *,
    action: str,
    entity_type: str,
    entity_id: int,
    payload: dict | None = None,
    occurred_at: Optional[datetime] = None,
) -> AuditEvent:
    """
    Append-only audit event.

    - No domain logic here.
    - No deletes/updates of existing events.
    """
    ev = AuditEvent(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload,
        occurred_at=occurred_at,
    )
    db.session.add(ev)
    db.session.flush()
    return ev


def b2b_repaid_for_line(dispatch_line_id: int) -> dict[int, int]:
    """Units already returned to each B2B pool for one dispatch line."""
    rows = (
        db.session.query(
            StockLedgerEntry.b2b_stock_id,
            func.coalesce(func.sum(StockLedgerEntry.qty_change), 0),
        )
        .filter(
            StockLedgerEntry.dispatch_line_id == dispatch_line_id,
            StockLedgerEntry.reason == REASON_RETURN,
            StockLedgerEntry.pool == POOL_B2B,
        )
        .group_by(StockLedgerEntry.b2b_stock_id)
        .all()
    )
    repaid: dict[int, int] = defaultdict(int)
    for b2b_stock_id, qty in rows:
        repaid[b2b_stock_id] += int(qty or 0)
    return dict(repaid)


def get_product_ledger(product_id: int, limit: int = 100) -> list[StockLedgerEntry]:
    return (
        db.session.query(StockLedgerEntry)
        .filter(StockLedgerEntry.product_id == product_id)
        .order_by(StockLedgerEntry.occurred_at.desc(), StockLedgerEntry.id.desc())
        .limit(limit)
        .all()
    )


def get_audit_trail(entity_type: str, entity_id: int) -> list[AuditEvent]:
    return (
        db.session.query(AuditEvent)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(AuditEvent.id.asc())
        .all()
    )
